"""
API Contract Tests

Verifies the HTTP surface end to end through the ASGI app:
- response envelope {"success", "data", "message"}
- taxonomy errors mapped to their status codes
- capability checks (teacher vs student, answering for someone else)
- SQL-backed reward and notification sinks after a completed tournament
"""
import httpx
import pytest
import pytest_asyncio
from limits import parse
from sqlalchemy import func, select

from classarena.config import Settings
from classarena.database import get_db
from classarena.main import create_app
from classarena.orm.classroom import StudentProfile
from classarena.orm.ledger import Notification, PointLog
from classarena.routes.tournaments import limiter
from classarena.security.rbac import create_access_token

CLASSROOM_ID = 1


def auth(user_id: int) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user_id)})}"}


@pytest_asyncio.fixture
async def client(session_factory, roster):
    app = create_app()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    limiter.reset()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def teacher(roster):
    return auth(roster.teacher_id)


async def create_tournament(client, headers, bank_id, **fields):
    body = {"classroom_id": CLASSROOM_ID, "name": "API Cup", "question_bank_id": bank_id, "questions_per_match": 3}
    body.update(fields)
    response = await client.post("/api/tournaments", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]["id"]


async def started_duel(client, teacher, roster):
    """Two students in a started final. Returns (tournament_id, match_id, participant ids)."""
    tournament_id = await create_tournament(client, teacher, roster.bank_id)
    response = await client.post(
        f"/api/tournaments/{tournament_id}/participants/bulk",
        json={"participants": [{"student_profile_id": s} for s in roster.student_ids[:2]]},
        headers=teacher,
    )
    assert response.status_code == 201, response.text
    participant_ids = [p["id"] for p in response.json()["data"]]

    response = await client.post(f"/api/tournaments/{tournament_id}/bracket", headers=teacher)
    assert response.status_code == 200, response.text
    match_id = response.json()["data"]["rounds"][0]["matches"][0]["id"]

    response = await client.post(f"/api/tournaments/match/{match_id}/start", headers=teacher)
    assert response.status_code == 200, response.text
    return tournament_id, match_id, participant_ids


# ============================================================================
# Envelope and auth
# ============================================================================

class TestEnvelope:

    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["data"]["status"] == "ok"

    async def test_missing_token_is_401(self, client):
        response = await client.get(f"/api/tournaments/classroom/{CLASSROOM_ID}")
        assert response.status_code == 401
        assert response.json()["success"] is False

    async def test_garbage_token_is_401(self, client):
        response = await client.get(
            f"/api/tournaments/classroom/{CLASSROOM_ID}",
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_INVALID"

    async def test_student_cannot_create(self, client, roster):
        response = await client.post(
            "/api/tournaments",
            json={"classroom_id": CLASSROOM_ID, "name": "Mine", "question_bank_id": roster.bank_id},
            headers=auth(roster.student_user_ids[0]),
        )
        assert response.status_code == 403
        assert response.json()["error"] == "Forbidden"

    async def test_teacher_creates_draft(self, client, teacher, roster):
        tournament_id = await create_tournament(client, teacher, roster.bank_id)

        response = await client.get(f"/api/tournaments/{tournament_id}", headers=teacher)

        body = response.json()
        assert body["success"] is True
        assert body["data"]["status"] == "DRAFT"
        assert body["data"]["participants"] == []

    async def test_students_can_list(self, client, teacher, roster):
        await create_tournament(client, teacher, roster.bank_id)

        response = await client.get(
            f"/api/tournaments/classroom/{CLASSROOM_ID}", headers=auth(roster.student_user_ids[0])
        )

        assert response.status_code == 200
        assert [t["participant_count"] for t in response.json()["data"]] == [0]


# ============================================================================
# Error mapping
# ============================================================================

class TestErrorMapping:

    async def test_unknown_tournament_is_404(self, client, teacher):
        response = await client.get("/api/tournaments/4242", headers=teacher)
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    async def test_foreign_bank_is_400(self, client, teacher, roster):
        response = await client.post(
            "/api/tournaments",
            json={"classroom_id": CLASSROOM_ID, "name": "Bad", "question_bank_id": roster.foreign_bank_id},
            headers=teacher,
        )
        assert response.status_code == 400
        assert response.json()["error"] == "IncompatibleConfig"

    async def test_entry_needs_exactly_one_id(self, client, teacher, roster):
        tournament_id = await create_tournament(client, teacher, roster.bank_id)

        response = await client.post(
            f"/api/tournaments/{tournament_id}/participants",
            json={"student_profile_id": roster.student_ids[0], "team_id": roster.team_ids[0]},
            headers=teacher,
        )

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    async def test_duplicate_participant_is_409(self, client, teacher, roster):
        tournament_id = await create_tournament(client, teacher, roster.bank_id)
        entry = {"student_profile_id": roster.student_ids[0]}
        first = await client.post(f"/api/tournaments/{tournament_id}/participants", json=entry, headers=teacher)
        assert first.status_code == 201

        second = await client.post(f"/api/tournaments/{tournament_id}/participants", json=entry, headers=teacher)

        assert second.status_code == 409
        assert second.json()["error"] == "DuplicateParticipant"

    async def test_team_in_individual_tournament_is_400(self, client, teacher, roster):
        tournament_id = await create_tournament(client, teacher, roster.bank_id)

        response = await client.post(
            f"/api/tournaments/{tournament_id}/participants",
            json={"team_id": roster.team_ids[0]},
            headers=teacher,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "TypeMismatch"

    async def test_bracket_with_one_participant_is_400(self, client, teacher, roster):
        tournament_id = await create_tournament(client, teacher, roster.bank_id)
        await client.post(
            f"/api/tournaments/{tournament_id}/participants",
            json={"student_profile_id": roster.student_ids[0]},
            headers=teacher,
        )

        response = await client.post(f"/api/tournaments/{tournament_id}/bracket", headers=teacher)

        assert response.status_code == 400
        assert response.json()["error"] == "InsufficientParticipants"


# ============================================================================
# Match play
# ============================================================================

class TestMatchPlay:

    async def test_student_answers_for_themselves(self, client, teacher, roster):
        _, match_id, (a, b) = await started_duel(client, teacher, roster)

        response = await client.post(
            f"/api/tournaments/match/{match_id}/answer",
            json={"participant_id": a, "question_index": 0, "content": "true", "elapsed_ms": 900},
            headers=auth(roster.student_user_ids[0]),
        )

        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["is_correct"] is True
        assert data["advanced"] is False
        assert data["match_status"] == "IN_PROGRESS"

    async def test_student_cannot_answer_for_opponent(self, client, teacher, roster):
        _, match_id, (a, b) = await started_duel(client, teacher, roster)

        response = await client.post(
            f"/api/tournaments/match/{match_id}/answer",
            json={"participant_id": a, "question_index": 0, "content": "false"},
            headers=auth(roster.student_user_ids[1]),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "Forbidden"

    async def test_stale_and_duplicate_answers_are_409(self, client, teacher, roster):
        _, match_id, (a, b) = await started_duel(client, teacher, roster)
        url = f"/api/tournaments/match/{match_id}/answer"

        stale = await client.post(url, json={"participant_id": a, "question_index": 2, "content": "true"}, headers=teacher)
        assert stale.status_code == 409
        assert stale.json()["error"] == "StaleQuestion"

        ok = await client.post(url, json={"participant_id": a, "question_index": 0, "content": "true"}, headers=teacher)
        assert ok.status_code == 200
        again = await client.post(url, json={"participant_id": a, "question_index": 0, "content": "true"}, headers=teacher)
        assert again.status_code == 409
        assert again.json()["error"] == "DuplicateAnswer"

    async def test_match_view_never_leaks_the_key(self, client, teacher, roster):
        _, match_id, _ = await started_duel(client, teacher, roster)

        response = await client.get(
            f"/api/tournaments/match/{match_id}", headers=auth(roster.student_user_ids[0])
        )

        question = response.json()["data"]["question"]
        assert question["index"] == 0
        assert "correct_answer" not in question

    async def test_next_question_before_deadline_is_409(self, client, teacher, roster):
        _, match_id, _ = await started_duel(client, teacher, roster)

        response = await client.post(f"/api/tournaments/match/{match_id}/next-question", headers=teacher)

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidState"

    async def test_answer_flood_is_rate_limited_in_envelope(self, client, teacher, roster):
        _, match_id, (a, b) = await started_duel(client, teacher, roster)
        url = f"/api/tournaments/match/{match_id}/answer"
        stale = {"participant_id": a, "question_index": 2, "content": "true"}

        for _ in range(parse(Settings.RATE_LIMIT_DEFAULT).amount):
            response = await client.post(url, json=stale, headers=teacher)
            assert response.status_code == 409

        response = await client.post(url, json=stale, headers=teacher)

        assert response.status_code == 429
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "RateLimited"
        assert body["code"] == "RATE_LIMITED"

    async def test_cancelled_tournament_is_closed(self, client, teacher, roster):
        tournament_id, match_id, (a, b) = await started_duel(client, teacher, roster)

        cancelled = await client.post(f"/api/tournaments/{tournament_id}/cancel", headers=teacher)
        assert cancelled.json()["data"]["status"] == "CANCELLED"

        response = await client.post(
            f"/api/tournaments/match/{match_id}/answer",
            json={"participant_id": a, "question_index": 0, "content": "true"},
            headers=auth(roster.student_user_ids[0]),
        )
        assert response.status_code == 409
        assert response.json()["error"] == "TournamentClosed"


# ============================================================================
# Completion with SQL sinks
# ============================================================================

async def test_forced_final_writes_points_and_notifications(client, teacher, roster, db):
    tournament_id, match_id, (a, b) = await started_duel(client, teacher, roster)

    response = await client.post(
        f"/api/tournaments/match/{match_id}/complete",
        json={"force": True, "winner_participant_id": b},
        headers=teacher,
    )
    assert response.status_code == 200, response.text
    assert response.json()["data"]["winner_id"] == b

    tournament = (await client.get(f"/api/tournaments/{tournament_id}", headers=teacher)).json()["data"]
    assert tournament["status"] == "COMPLETED"
    assert tournament["champion_id"] == b
    assert tournament["runner_up_id"] == a

    logs = (await db.execute(select(PointLog.participant_id, PointLog.amount, PointLog.reason))).all()
    assert sorted((pid, amount) for pid, amount, _ in logs) == sorted([(b, 100), (b, 100), (a, 50)])

    xp = dict((await db.execute(
        select(StudentProfile.id, StudentProfile.xp).where(StudentProfile.id.in_(roster.student_ids[:2]))
    )).all())
    assert xp[roster.student_ids[1]] == 200
    assert xp[roster.student_ids[0]] == 50

    notifications = (await db.execute(select(func.count(Notification.id)))).scalar_one()
    assert notifications == 2
