from datetime import timedelta

import pytest

from conftest import T0
from examengine.engine.lifecycle import start_attempt, submit_attempt
from examengine.engine.violations import record_violation, should_terminate, warning_for
from examengine.models import ViolationRequest


@pytest.fixture
async def attempt_id(repo):
    return (await start_attempt(repo, "u1", "exam-1", now=T0)).attempt_id


def test_warning_messages_escalate():
    assert warning_for(0) is None
    assert warning_for(1) == "First Warning: Please follow exam rules. You have 2 warnings remaining."
    assert warning_for(2) == "Second Warning: This is your last warning. Next violation will terminate your exam."
    assert warning_for(3) == "Exam terminated due to multiple violations."
    assert warning_for(7) == "Exam terminated due to multiple violations."


def test_threshold_is_configurable():
    assert should_terminate(4, threshold=5) is False
    assert should_terminate(5, threshold=5) is True
    assert warning_for(1, threshold=5).endswith("You have 4 warnings remaining.")


async def test_violation_escalation(repo, attempt_id):
    first = await record_violation(repo, attempt_id, "u1", ViolationRequest(type="tab_switch"), now=T0)
    second = await record_violation(repo, attempt_id, "u1", ViolationRequest(type="devtools"), now=T0)
    third = await record_violation(
        repo, attempt_id, "u1", ViolationRequest(type="window_blur", details="lost focus"), now=T0
    )

    assert (first.violation_count, first.tab_switch_count, first.should_terminate) == (1, 1, False)
    assert first.warning.startswith("First Warning")
    assert (second.violation_count, second.tab_switch_count, second.should_terminate) == (2, 1, False)
    assert second.warning.startswith("Second Warning")
    assert (third.violation_count, third.tab_switch_count, third.should_terminate) == (3, 2, True)

    stored = await repo.get_attempt(attempt_id)
    assert [f.type for f in stored.suspicious_flags] == ["tab_switch", "devtools", "window_blur"]
    # The tracker only signals; submission is left to the client.
    assert stored.status == "in_progress"


async def test_violation_on_submitted_attempt_is_a_noop(repo, attempt_id, dispatcher):
    await submit_attempt(repo, attempt_id, "u1", dispatcher, now=T0)

    response = await record_violation(repo, attempt_id, "u1", ViolationRequest(type="tab_switch"), now=T0)

    assert response.recorded is False
    assert response.should_terminate is False
    assert (await repo.get_attempt(attempt_id)).suspicious_flags == []


async def test_violation_on_expired_attempt_is_a_noop(repo, attempt_id):
    response = await record_violation(
        repo, attempt_id, "u1", ViolationRequest(type="copy_attempt"), now=T0 + timedelta(hours=2)
    )

    assert response.recorded is False
    assert response.violation_count == 0
