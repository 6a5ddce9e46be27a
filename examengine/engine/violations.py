"""
Violation tracker.

A pure accumulator: it appends proctoring signals and tells the client when
to stop, but never submits the attempt itself.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from examengine.engine.lifecycle import load_owned_attempt
from examengine.models import SuspiciousFlag, ViolationRequest, ViolationResponse, ViolationType, utcnow
from examengine.storage.repo import AttemptRepository

logger = logging.getLogger(__name__)

# Focus-loss signals; only these move tab_switch_count.
TAB_LOSS_TYPES = frozenset({ViolationType.tab_switch, ViolationType.window_blur})

DEFAULT_TERMINATION_THRESHOLD = 3

_ORDINALS = {1: "First", 2: "Second", 3: "Third", 4: "Fourth"}


def warning_for(total: int, threshold: int = DEFAULT_TERMINATION_THRESHOLD) -> Optional[str]:
    if total <= 0:
        return None
    if total >= threshold:
        return "Exam terminated due to multiple violations."
    label = _ORDINALS.get(total, f"#{total}")
    remaining = threshold - total
    if remaining == 1:
        return f"{label} Warning: This is your last warning. Next violation will terminate your exam."
    return f"{label} Warning: Please follow exam rules. You have {remaining} warnings remaining."


def should_terminate(total: int, threshold: int = DEFAULT_TERMINATION_THRESHOLD) -> bool:
    return total >= threshold


async def record_violation(
    repo: AttemptRepository,
    attempt_id: str,
    user_id: str,
    violation: ViolationRequest,
    *,
    threshold: int = DEFAULT_TERMINATION_THRESHOLD,
    now: Optional[datetime] = None,
) -> ViolationResponse:
    now = now or utcnow()
    attempt = await load_owned_attempt(repo, attempt_id, user_id)

    flag = SuspiciousFlag(type=violation.type, details=violation.details, timestamp=now, count=violation.count)
    updated = await repo.append_violation(
        attempt_id, flag, increment_tab_switch=violation.type in TAB_LOSS_TYPES, now=now
    )

    if updated is None:
        # Completed or expired: acknowledge without recording so clients don't retry.
        logger.debug(f"Ignoring {violation.type} for inactive attempt {attempt_id}")
        return ViolationResponse(
            recorded=False,
            violation_count=len(attempt.suspicious_flags),
            tab_switch_count=attempt.tab_switch_count,
            should_terminate=False,
            warning=None,
        )

    total = len(updated.suspicious_flags)
    terminate = should_terminate(total, threshold)
    if terminate:
        logger.warning(f"Attempt {attempt_id} reached {total} violations; termination signalled")
    else:
        logger.info(f"Attempt {attempt_id} violation #{total}: {flag.type}")

    return ViolationResponse(
        recorded=True,
        violation_count=total,
        tab_switch_count=updated.tab_switch_count,
        should_terminate=terminate,
        warning=warning_for(total, threshold),
    )
