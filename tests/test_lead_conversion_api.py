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
    db_session.add_all([admin, rep])
    db_session.commit()
    actors = {
        "admin": ActorUser.from_user(admin, correlation_id="lead-corr-admin"),
        "rep": ActorUser.from_user(rep, correlation_id="lead-corr-rep"),
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


def _pipeline(test_client: TestClient) -> tuple[int, int]:
    response = test_client.post("/api/pipelines", json={"name": "Sales", "stages": [{"name": "Qualify"}]})
    assert response.status_code == 201
    body = response.json()
    return body["id"], body["stages"][0]["id"]


def test_convert_lead_creates_deal_once(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    pipeline_id, stage_id = _pipeline(test_client)
    company = test_client.post("/api/companies", json={"name": "Acme"}).json()["record"]
    lead = test_client.post("/api/leads", json={"name": "Acme renewal", "companyId": company["id"]}).json()["record"]

    converted = test_client.post(
        f"/api/leads/{lead['id']}/convert",
        json={"pipelineId": pipeline_id, "stageId": stage_id, "expectedRevenue": 1200},
    )

    assert converted.status_code == 201, converted.text
    deal = converted.json()
    assert deal["name"] == "Acme renewal"
    assert deal["sourceLeadId"] == lead["id"]
    assert deal["companyId"] == company["id"]
    assert deal["ownerId"] == lead["ownerId"]
    assert deal["expectedRevenue"] == 1200

    assert test_client.get(f"/api/leads/{lead['id']}").json()["status"] == "QUALIFIED"

    again = test_client.post(
        f"/api/leads/{lead['id']}/convert",
        json={"pipelineId": pipeline_id, "stageId": stage_id},
    )
    assert again.status_code == 409
    assert again.json()["code"] == "crm_lead_convert_failed"

    conversions = [entry for entry in audit.audit_entries if entry["action"] == "CONVERT"]
    assert conversions[0]["after"] == {"deal_id": deal["id"], "status": "QUALIFIED"}


def test_convert_skips_required_deal_fields(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    pipeline_id, stage_id = _pipeline(test_client)
    field = test_client.post(
        "/api/custom-fields",
        json={"objectType": "DEAL", "label": "Budget", "type": "number", "required": True},
    )
    assert field.status_code == 201
    lead = test_client.post("/api/leads", json={"name": "Walk-in"}).json()["record"]

    converted = test_client.post(
        f"/api/leads/{lead['id']}/convert",
        json={"pipelineId": pipeline_id, "stageId": stage_id, "name": "Walk-in deal"},
    )

    assert converted.status_code == 201
    assert converted.json()["name"] == "Walk-in deal"
    assert converted.json()["fieldValues"] == []


def test_convert_checks_pipeline_and_visibility(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    pipeline_id, stage_id = _pipeline(test_client)
    lead = test_client.post("/api/leads", json={"name": "Admin lead"}).json()["record"]

    invalid = test_client.post(
        f"/api/leads/{lead['id']}/convert",
        json={"pipelineId": pipeline_id, "stageId": stage_id + 100},
    )
    assert invalid.status_code == 400

    set_actor("rep")
    hidden = test_client.post(
        f"/api/leads/{lead['id']}/convert",
        json={"pipelineId": pipeline_id, "stageId": stage_id},
    )
    assert hidden.status_code == 403

    missing = test_client.post("/api/leads/9999/convert", json={"pipelineId": pipeline_id, "stageId": stage_id})
    assert missing.status_code == 404


def test_lead_can_be_converted_again_after_its_deal_is_deleted(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    pipeline_id, stage_id = _pipeline(test_client)
    lead = test_client.post("/api/leads", json={"name": "Second chance"}).json()["record"]
    first = test_client.post(
        f"/api/leads/{lead['id']}/convert",
        json={"pipelineId": pipeline_id, "stageId": stage_id},
    )
    assert first.status_code == 201
    assert test_client.delete(f"/api/deals/{first.json()['id']}").status_code == 204

    second = test_client.post(
        f"/api/leads/{lead['id']}/convert",
        json={"pipelineId": pipeline_id, "stageId": stage_id},
    )

    assert second.status_code == 201
    assert second.json()["id"] != first.json()["id"]
    assert second.json()["sourceLeadId"] == lead["id"]
