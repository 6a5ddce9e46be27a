import asyncio
import random
from datetime import timedelta

import pytest

from conftest import T0, make_exam
from examengine.engine.lifecycle import fetch_attempt, start_attempt, submit_attempt
from examengine.errors import AlreadyCompletedError, ConflictError, ExpiredError, ForbiddenError, NotFoundError
from examengine.models import Purchase, SubmitResponse


async def test_start_returns_sanitized_session(repo):
    session = await start_attempt(repo, "u1", "exam-1", ip_address="10.0.0.1", now=T0)

    assert session.expires_at == T0 + timedelta(minutes=60)
    assert [q.id for q in session.questions] == ["q1", "q2", "q3"]
    assert [q.sequence for q in session.questions] == [1, 2, 3]
    payload = session.model_dump_json()
    assert "is_correct" not in payload
    assert "explanation" not in payload

    stored = await repo.get_attempt(session.attempt_id)
    assert stored.ip_address == "10.0.0.1"
    assert (await repo.get_exam("exam-1")).total_attempts == 1


async def test_second_start_conflicts_with_resumable_attempt(repo):
    first = await start_attempt(repo, "u1", "exam-1", now=T0)

    with pytest.raises(ConflictError) as exc:
        await start_attempt(repo, "u1", "exam-1", now=T0)

    assert exc.value.attempt_id == first.attempt_id
    assert exc.value.to_dict()["can_resume"] is True


async def test_concurrent_starts_create_one_attempt(repo):
    results = await asyncio.gather(
        start_attempt(repo, "u1", "exam-1", now=T0),
        start_attempt(repo, "u1", "exam-1", now=T0),
        return_exceptions=True,
    )

    assert sum(isinstance(r, ConflictError) for r in results) == 1
    assert len(repo.attempts) == 1


async def test_start_rejects_unpublished_exam(repo):
    repo.add_exam(make_exam("draft", is_published=False))

    with pytest.raises(ForbiddenError):
        await start_attempt(repo, "u1", "draft", now=T0)


async def test_start_unknown_exam_is_not_found(repo):
    with pytest.raises(NotFoundError):
        await start_attempt(repo, "u1", "missing", now=T0)


async def test_paid_exam_requires_valid_purchase(repo):
    repo.add_exam(make_exam("paid", is_free=False))
    repo.add_purchase(Purchase(user_id="u1", exam_id="paid", valid_until=T0 - timedelta(days=1)))

    with pytest.raises(ForbiddenError):
        await start_attempt(repo, "u1", "paid", now=T0)

    repo.add_purchase(Purchase(user_id="u1", exam_id="paid", valid_until=T0 + timedelta(days=30)))
    session = await start_attempt(repo, "u1", "paid", now=T0)
    assert session.exam_id == "paid"


async def test_randomized_order_is_fixed_for_the_attempt(repo):
    questions = make_exam().questions + [make_exam().questions[0].model_copy(update={"question_id": f"x{i}"}) for i in range(7)]
    repo.add_exam(make_exam("shuffled", randomize_order=True, questions=questions))

    session = await start_attempt(repo, "u1", "shuffled", now=T0, rng=random.Random(7))
    again = await fetch_attempt(repo, session.attempt_id, "u1", now=T0 + timedelta(minutes=1))

    order = [q.id for q in session.questions]
    assert sorted(order) == sorted(q.question_id for q in questions)
    assert [q.id for q in again.questions] == order
    assert (await repo.get_attempt(session.attempt_id)).question_order == order


async def test_fetch_checks_owner_and_state(repo, dispatcher):
    session = await start_attempt(repo, "u1", "exam-1", now=T0)

    with pytest.raises(ForbiddenError):
        await fetch_attempt(repo, session.attempt_id, "intruder", now=T0)

    with pytest.raises(ExpiredError):
        await fetch_attempt(repo, session.attempt_id, "u1", now=T0 + timedelta(minutes=61))

    await submit_attempt(repo, session.attempt_id, "u1", dispatcher, now=T0 + timedelta(minutes=5))
    with pytest.raises(AlreadyCompletedError):
        await fetch_attempt(repo, session.attempt_id, "u1", now=T0 + timedelta(minutes=6))


async def test_submit_flips_status_and_dispatches_once(repo, dispatcher):
    session = await start_attempt(repo, "u1", "exam-1", now=T0)

    response = await submit_attempt(repo, session.attempt_id, "u1", dispatcher, now=T0 + timedelta(minutes=10))

    assert response.processing is True
    stored = await repo.get_attempt(session.attempt_id)
    assert stored.status == "completed"
    assert stored.submitted_at == T0 + timedelta(minutes=10)

    with pytest.raises(AlreadyCompletedError):
        await submit_attempt(repo, session.attempt_id, "u1", dispatcher, now=T0 + timedelta(minutes=11))
    assert dispatcher.dispatched == [session.attempt_id]


async def test_racing_submits_have_one_winner(repo, dispatcher):
    session = await start_attempt(repo, "u1", "exam-1", now=T0)

    results = await asyncio.gather(
        submit_attempt(repo, session.attempt_id, "u1", dispatcher, now=T0 + timedelta(minutes=1)),
        submit_attempt(repo, session.attempt_id, "u1", dispatcher, now=T0 + timedelta(minutes=1)),
        return_exceptions=True,
    )

    assert sum(isinstance(r, SubmitResponse) for r in results) == 1
    assert sum(isinstance(r, AlreadyCompletedError) for r in results) == 1
    assert dispatcher.dispatched == [session.attempt_id]


async def test_expired_attempt_can_still_be_submitted(repo, dispatcher):
    session = await start_attempt(repo, "u1", "exam-1", now=T0)

    response = await submit_attempt(repo, session.attempt_id, "u1", dispatcher, now=T0 + timedelta(hours=3))

    assert response.attempt_id == session.attempt_id


async def test_submit_by_other_user_is_forbidden(repo, dispatcher):
    session = await start_attempt(repo, "u1", "exam-1", now=T0)

    with pytest.raises(ForbiddenError):
        await submit_attempt(repo, session.attempt_id, "u2", dispatcher, now=T0)
    assert dispatcher.dispatched == []
