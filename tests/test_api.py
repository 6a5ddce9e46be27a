import pytest
from fastapi import BackgroundTasks
from fastapi.testclient import TestClient

from conftest import make_exam
from examengine.auth.jwt_handler import create_access_token
from examengine.main import create_app
from examengine.storage.inmemory import InMemoryAttemptRepository
from examengine.wiring import get_dispatcher, get_repo
from examengine.workers.dispatch import BackgroundScoringDispatcher


@pytest.fixture
def store():
    repo = InMemoryAttemptRepository()
    repo.add_exam(make_exam())
    return repo


@pytest.fixture
def client(store):
    app = create_app()
    app.dependency_overrides[get_repo] = lambda: store

    def background_dispatcher(background_tasks: BackgroundTasks):
        return BackgroundScoringDispatcher(background_tasks, store)

    app.dependency_overrides[get_dispatcher] = background_dispatcher
    return TestClient(app)


def auth(user_id="student-1"):
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


def start(client, user_id="student-1"):
    resp = client.post("/api/v1/attempts/start", json={"exam_id": "exam-1"}, headers=auth(user_id))
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_health(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_routes_require_a_token(client):
    assert client.post("/api/v1/attempts/start", json={"exam_id": "exam-1"}).status_code == 401
    bad = {"Authorization": "Bearer not-a-token"}
    assert client.get("/api/v1/attempts/abc", headers=bad).status_code == 401


def test_start_hides_answer_key_and_records_ip(client, store):
    resp = client.post(
        "/api/v1/attempts/start",
        json={"exam_id": "exam-1"},
        headers={**auth(), "X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
    )

    body = resp.json()
    assert resp.status_code == 200
    assert body["total_questions"] == 3
    assert "is_correct" not in resp.text
    assert "explanation" not in resp.text
    assert store.attempts[body["attempt_id"]].ip_address == "203.0.113.9"


def test_second_start_is_a_conflict(client):
    first = start(client)

    resp = client.post("/api/v1/attempts/start", json={"exam_id": "exam-1"}, headers=auth())

    assert resp.status_code == 409
    assert resp.json() == {
        "error": "You already have an active attempt",
        "code": "conflict",
        "attempt_id": first["attempt_id"],
        "can_resume": True,
    }


def test_full_attempt_flow(client):
    attempt_id = start(client)["attempt_id"]
    base = f"/api/v1/attempts/{attempt_id}"

    resp = client.post(f"{base}/save", json={"question_id": "q1", "selected_option": "A"}, headers=auth())
    assert resp.status_code == 200 and resp.json()["success"] is True

    resp = client.post(
        f"{base}/save-batch",
        json={"answers": [{"question_id": "q2", "selected_option": "B"}, {"question_id": "q3", "marked_for_review": True}]},
        headers=auth(),
    )
    assert resp.status_code == 200

    session = client.get(base, headers=auth()).json()
    assert session["saved_answers"]["q1"]["selected_option"] == "A"
    assert session["saved_answers"]["q3"]["selected_option"] is None

    resp = client.post(f"{base}/violation", json={"type": "tab_switch"}, headers=auth())
    assert resp.json()["warning"].startswith("First Warning")

    resp = client.get(f"{base}/result", headers=auth())
    assert resp.status_code == 400 and resp.json()["code"] == "not_submitted"

    resp = client.post(f"{base}/submit", headers=auth())
    assert resp.status_code == 200
    assert resp.json()["processing"] is True

    # Background scoring has run by the time TestClient returns.
    result = client.get(f"{base}/result", headers=auth()).json()
    assert result["score"] == 1.5
    assert result["rank"] == 1
    assert result["question_results"][1]["correct_answer"] == "A"

    resp = client.post(f"{base}/submit", headers=auth())
    assert resp.status_code == 400
    assert resp.json()["attempt_id"] == attempt_id

    resp = client.post(f"{base}/save", json={"question_id": "q1", "selected_option": "B"}, headers=auth())
    assert resp.status_code == 400
    assert resp.json()["auto_submit"] is True


def test_error_shapes(client):
    attempt_id = start(client)["attempt_id"]
    base = f"/api/v1/attempts/{attempt_id}"

    resp = client.post(f"{base}/save", json={"question_id": "zzz", "selected_option": "A"}, headers=auth())
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"

    resp = client.post(f"{base}/save", json={"question_id": "q1", "selected_option": "E"}, headers=auth())
    assert resp.status_code == 400
    assert resp.json()["error"] == "Validation failed"
    assert resp.json()["details"][0]["field"] == "selected_option"

    resp = client.post(f"{base}/save-batch", json={"answers": []}, headers=auth())
    assert resp.status_code == 400

    assert client.get(base, headers=auth("someone-else")).status_code == 403
    assert client.get("/api/v1/attempts/missing", headers=auth()).status_code == 404


def test_leaderboards(client):
    for user_id in ("alice", "bob"):
        attempt_id = start(client, user_id)["attempt_id"]
        if user_id == "alice":
            client.post(
                f"/api/v1/attempts/{attempt_id}/save",
                json={"question_id": "q1", "selected_option": "A"},
                headers=auth(user_id),
            )
        client.post(f"/api/v1/attempts/{attempt_id}/submit", headers=auth(user_id))

    board = client.get("/api/v1/leaderboard/exam/exam-1", headers=auth("bob")).json()
    assert [(row["user_id"], row["rank"]) for row in board["entries"]] == [("alice", 1), ("bob", 2)]
    assert board["entries"][1]["is_current_user"] is True

    board = client.get("/api/v1/leaderboard/exam/exam-1?limit=1", headers=auth("bob")).json()
    assert len(board["entries"]) == 1
    assert board["current_user_entry"]["user_id"] == "bob"

    subject = client.get("/api/v1/leaderboard/subject/math").json()
    assert subject["title"] == "Mathematics Exams"
    assert subject["total_participants"] == 2

    glob = client.get("/api/v1/leaderboard/global").json()
    assert glob["entries"][0]["user_id"] == "alice"

    rank = client.get("/api/v1/leaderboard/global/rank", headers=auth("bob")).json()
    assert rank == {"user_id": "bob", "rank": 2, "total_score": 0.0, "total_participants": 2}

    assert client.get("/api/v1/leaderboard/exam/unknown").status_code == 404
