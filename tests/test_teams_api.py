from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salescrm import audit
from salescrm.core.config import get_settings
from salescrm.core.database import Base, get_db
from salescrm.crm.api import get_current_user
from salescrm.crm.models import User
from salescrm.crm.policy import ActorUser
from salescrm.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("CREATE_TABLES_ON_STARTUP", "false")
    get_settings.cache_clear()
    audit.audit_entries.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()

@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    admin = User(name="Ada Admin", email="ada@example.com", role="A", workspace_id=1)
    rep = User(name="Rae Rep", email="rae@example.com", role="C", workspace_id=1)
    outsider = User(name="Otto Outside", email="otto@example.com", role="A", workspace_id=2)
    db_session.add_all([admin, rep, outsider])
    db_session.commit()
    actors = {
        "admin": ActorUser.from_user(admin, correlation_id="team-corr-admin"),
        "rep": ActorUser.from_user(rep, correlation_id="team-corr-rep"),
        "outsider": ActorUser.from_user(outsider, correlation_id="team-corr-outsider"),
    }
    state = {"current": "admin"}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _user_ids(test_client: TestClient) -> dict[str, int]:
    response = test_client.get("/api/users")
    assert response.status_code == 200
    return {row["email"]: row["id"] for row in response.json()}


def test_team_lifecycle_with_member_assignment(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    rep_id = _user_ids(test_client)["rae@example.com"]

    created = test_client.post("/api/teams", json={"name": " East "})
    assert created.status_code == 201
    team = created.json()
    assert (team["name"], team["workspaceId"]) == ("East", 1)

    renamed = test_client.patch(f"/api/teams/{team['id']}", json={"name": "East Coast"})
    assert renamed.status_code == 200
    assert [row["name"] for row in test_client.get("/api/teams").json()] == ["East Coast"]

    assigned = test_client.patch(f"/api/users/{rep_id}", json={"teamId": team["id"]})
    assert assigned.status_code == 200
    assert assigned.json()["teamId"] == team["id"]
    users = test_client.get("/api/users").json()
    assert {row["email"]: row["teamId"] for row in users} == {
        "ada@example.com": None,
        "rae@example.com": team["id"],
    }

    occupied = test_client.delete(f"/api/teams/{team['id']}")
    assert occupied.status_code == 400
    assert occupied.json()["code"] == "crm_team_delete_failed"
    assert occupied.json()["message"] == "teams with members cannot be deleted"

    cleared = test_client.patch(f"/api/users/{rep_id}", json={"teamId": None})
    assert cleared.status_code == 200
    assert cleared.json()["teamId"] is None
    assert test_client.delete(f"/api/teams/{team['id']}").status_code == 204
    assert test_client.get("/api/teams").json() == []

    user_updates = [entry for entry in audit.audit_entries if entry["entity_type"] == "USER"]
    assert [(entry["before"], entry["after"]) for entry in user_updates] == [
        ({"team_id": None}, {"team_id": team["id"]}),
        ({"team_id": team["id"]}, {"team_id": None}),
    ]
    assert {entry["workspace_id"] for entry in user_updates} == {1}


def test_team_membership_stays_inside_the_workspace(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    rep_id = _user_ids(test_client)["rae@example.com"]
    east = test_client.post("/api/teams", json={"name": "East"}).json()

    set_actor("outsider")
    west = test_client.post("/api/teams", json={"name": "West"}).json()
    assert west["workspaceId"] == 2
    assert [row["name"] for row in test_client.get("/api/teams").json()] == ["West"]
    assert [row["email"] for row in test_client.get("/api/users").json()] == ["otto@example.com"]

    hidden_user = test_client.patch(f"/api/users/{rep_id}", json={"teamId": west["id"]})
    assert hidden_user.status_code == 404
    assert hidden_user.json()["message"] == "user not found"
    hidden_team = test_client.patch(f"/api/teams/{east['id']}", json={"name": "Mine"})
    assert hidden_team.status_code == 404
    assert hidden_team.json()["message"] == "team not found"

    set_actor("admin")
    foreign = test_client.patch(f"/api/users/{rep_id}", json={"teamId": west["id"]})
    assert foreign.status_code == 400
    assert foreign.json()["code"] == "crm_user_update_failed"
    assert foreign.json()["message"] == "team information is invalid"
    unknown = test_client.patch(f"/api/users/{rep_id}", json={"teamId": 999})
    assert unknown.status_code == 400


def test_team_and_user_management_requires_manage_permission(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, set_actor = client
    rep_id = _user_ids(test_client)["rae@example.com"]
    team = test_client.post("/api/teams", json={"name": "East"}).json()

    set_actor("rep")
    assert test_client.get("/api/teams").status_code == 403
    assert test_client.post("/api/teams", json={"name": "Solo"}).status_code == 403
    assert test_client.get("/api/users").status_code == 403
    denied = test_client.patch(f"/api/users/{rep_id}", json={"teamId": team["id"]})
    assert denied.status_code == 403
    assert denied.json()["code"] == "crm_user_update_failed"
    assert test_client.get("/api/users/assignable").status_code == 200
