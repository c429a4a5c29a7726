"""
The database store against in-memory SQLite, both directly and through the API.
"""
import pytest
from sqlalchemy.exc import IntegrityError

from cyberdefense.core.database import build_engine, build_session_factory, check_connection, init_db
from cyberdefense.services import seed
from cyberdefense.services.achievements import AchievementService
from cyberdefense.services.database_storage import DatabaseStorage
from cyberdefense.services.seed import SEEDED_TABLES, seed_database, sync_id_sequences

from conftest import PASSWORD, make_settings, register


@pytest.fixture
def storage():
    engine = build_engine(make_settings(DATABASE_URL="sqlite://"))
    init_db(engine)
    factory = build_session_factory(engine)
    seed_database(factory)
    s = DatabaseStorage(factory)
    yield s
    engine.dispose()


def test_seed_runs_once(storage):
    assert len(storage.get_all_domains()) == len(seed.DOMAINS)
    assert seed_database(storage.session_factory) is False
    assert len(storage.get_all_scenarios()) == len(seed.SCENARIOS)


def test_check_connection():
    engine = build_engine(make_settings(DATABASE_URL="sqlite://"))
    assert check_connection(engine) is True


def test_user_roundtrip_and_case_insensitive_lookup(storage):
    storage.upsert_user({"id": "u1", "email": "mixed@cyberlab.io", "first_name": "Mia", "last_name": "Lee"})
    user = storage.get_user_by_email("MIXED@cyberlab.io")
    assert user.id == "u1"
    assert user.xp == 0 and user.streak == 0
    assert user.created_at is not None

    storage.update_user_xp("u1", 40)
    storage.update_user_xp("u1", 2)
    assert storage.get_user("u1").xp == 42
    assert storage.count_users() == 1


def test_refresh_tokens(storage):
    storage.upsert_user({"id": "u1", "email": "u1@cyberlab.io", "first_name": "U", "last_name": "One"})
    row = storage.store_refresh_token("u1", "tok-a")
    storage.store_refresh_token("u1", "tok-b")
    assert row.expires_at > row.created_at
    assert storage.get_refresh_token("tok-a").user_id == "u1"

    storage.delete_refresh_token("tok-a")
    assert storage.get_refresh_token("tok-a") is None
    storage.delete_user_refresh_tokens("u1")
    assert storage.get_refresh_token("tok-b") is None


def test_award_achievement_once(storage):
    storage.upsert_user({"id": "u1", "email": "u1@cyberlab.io", "first_name": "U", "last_name": "One"})
    assert storage.award_achievement("u1", 1) is True
    assert storage.award_achievement("u1", 1) is False
    assert len(storage.get_user_achievements("u1")) == 1


def test_progress_upsert_merges(storage):
    storage.upsert_user({"id": "u1", "email": "u1@cyberlab.io", "first_name": "U", "last_name": "One"})
    storage.update_user_progress("u1", 2, {"questions_completed": 5})
    row = storage.update_user_progress("u1", 2, {"progress": 30})
    assert (row.progress, row.questions_completed, row.questions_correct) == (30, 5, 0)
    assert storage.get_user_progress_by_domain("u1", 2).progress == 30


def test_delete_scenario_removes_user_rows(storage):
    storage.upsert_user({"id": "u1", "email": "u1@cyberlab.io", "first_name": "U", "last_name": "One"})
    storage.update_user_scenario("u1", 3, {"completed": True})
    assert storage.get_completion_counts() == {3: 1}

    assert storage.delete_scenario(3) is True
    assert storage.get_user_scenarios("u1") == []
    assert storage.delete_scenario(3) is False


def test_engine_runs_on_database_store(storage):
    storage.upsert_user({"id": "u1", "email": "u1@cyberlab.io", "first_name": "U", "last_name": "One"})
    service = AchievementService(storage)
    result = service.complete_scenario("u1", 1, {"completed": True, "score": 100, "time_spent": 12})
    assert result.xp_awarded == 150
    assert result.user.xp == 150
    assert {a.name for a in result.achievements} == {
        "First Steps", "Perfectionist", "Speed Runner", "Domain Master", "Vulnerability Hunter",
    }
    assert service.check_and_award_achievements("u1", {"score": 100, "time_spent": 12}) == []


def test_api_on_database(db_client):
    user = register(db_client)
    r = db_client.post("/api/auth/register", json={
        "firstName": "Alice", "lastName": "Smith", "email": "alice@cyberlab.io", "password": PASSWORD,
    })
    assert r.status_code == 409

    r = db_client.post("/api/auth/login", json={"email": "alice@cyberlab.io", "password": PASSWORD})
    assert r.status_code == 200
    assert r.json()["data"]["user"]["streak"] == 1

    r = db_client.post("/api/scenarios/2/submit", headers=user["headers"], json={"answers": {"1": 1, "2": 2}})
    assert r.json()["data"]["xpEarned"] == 200

    r = db_client.get(f"/api/users/{user['id']}/dashboard", headers=user["headers"])
    assert r.json()["data"]["user"]["xp"] == 200

    r = db_client.post("/api/auth/refresh", json={"refreshToken": user["refresh"]})
    assert r.status_code == 200
    assert db_client.post("/api/auth/refresh", json={"refreshToken": user["refresh"]}).status_code == 401


class _RecordingSession:
    def __init__(self, dialect):
        self.dialect = dialect
        self.statements = []

    def get_bind(self):
        return self

    def execute(self, statement):
        self.statements.append(str(statement))


def test_sequences_synced_on_postgres():
    db = _RecordingSession(type("Dialect", (), {"name": "postgresql"})())
    sync_id_sequences(db)
    assert len(db.statements) == len(SEEDED_TABLES)
    assert "pg_get_serial_sequence('domains', 'id')" in db.statements[0]
    assert "MAX(id) FROM domains" in db.statements[0]

    db = _RecordingSession(type("Dialect", (), {"name": "sqlite"})())
    sync_id_sequences(db)
    assert db.statements == []


def test_creates_after_seed_get_fresh_ids(storage):
    domain = storage.create_domain({"name": "Cloud Security", "description": "Shared responsibility",
                                    "exam_percentage": 10, "icon": "Cloud", "color": "#0EA5E9"})
    assert domain.id == len(seed.DOMAINS) + 1
    achievement = storage.create_achievement({"name": "Night Owl", "description": "Study late",
                                              "icon": "Moon", "xp_reward": 10, "criteria": {"streak": 2}})
    assert achievement.id == len(seed.ACHIEVEMENTS) + 1


def test_admin_create_on_seeded_database(db_client):
    admin = register(db_client, email="admin@cyberlab.io", first_name="Ada", last_name="Admin")
    r = db_client.post("/api/admin/domains", headers=admin["headers"], json={
        "name": "Cloud Security", "description": "Shared responsibility", "examPercentage": 10,
        "icon": "Cloud", "color": "#0EA5E9",
    })
    assert r.status_code == 201
    assert r.json()["data"]["domain"]["id"] == len(seed.DOMAINS) + 1


def test_record_attempt_toggle_keeps_single_award(storage):
    storage.upsert_user({"id": "u1", "email": "u1@cyberlab.io", "first_name": "U", "last_name": "One"})
    row, first = storage.record_scenario_attempt("u1", 1, {"completed": True}, xp_reward=150, count_attempt=True)
    assert first is True
    assert row.attempts == 1

    storage.record_scenario_attempt("u1", 1, {"completed": False}, xp_reward=150)
    row, first = storage.record_scenario_attempt("u1", 1, {"completed": True}, xp_reward=150, count_attempt=True)
    assert first is False
    assert row.attempts == 2
    assert storage.get_user("u1").xp == 150


def test_record_attempt_retries_after_insert_race(storage, monkeypatch):
    storage.upsert_user({"id": "u1", "email": "u1@cyberlab.io", "first_name": "U", "last_name": "One"})
    real = storage._record_scenario_attempt
    calls = []

    def lose_first_insert(*args):
        calls.append(args)
        if len(calls) == 1:
            # Another request creates and completes the row in the meantime
            real("u1", 1, {"completed": True}, 150, False)
            raise IntegrityError("INSERT INTO user_scenarios", {}, Exception("duplicate key"))
        return real(*args)

    monkeypatch.setattr(storage, "_record_scenario_attempt", lose_first_insert)
    row, first = storage.record_scenario_attempt("u1", 1, {"completed": True}, xp_reward=150)
    assert len(calls) == 2
    assert first is False
    assert row.completed is True
    assert storage.get_user("u1").xp == 150
