from __future__ import annotations

from collections.abc import Callable, Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salescrm import audit
from salescrm.core.config import get_settings
from salescrm.core.database import Base, get_db
from salescrm.crm.api import get_current_user
from salescrm.crm.models import FieldOptionValue, FieldValue, User
from salescrm.crm.policy import ActorUser
from salescrm.crm.storage import LocalFileStorage, get_file_storage
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
def actors(db_session: Session) -> dict[str, ActorUser]:
    admin = User(name="Ada Admin", email="ada@example.com", role="A", workspace_id=1)
    db_session.add(admin)
    db_session.flush()
    manager = User(name="Max Manager", email="max@example.com", role="B", workspace_id=1, manager_id=admin.id)
    db_session.add(manager)
    db_session.flush()
    rep = User(name="Rae Rep", email="rae@example.com", role="C", workspace_id=1, manager_id=manager.id)
    other = User(name="Otto Other", email="otto@example.com", role="C", workspace_id=1)
    db_session.add_all([rep, other])
    db_session.commit()
    return {
        "admin": ActorUser.from_user(admin, correlation_id="records-corr-admin"),
        "manager": ActorUser.from_user(manager, correlation_id="records-corr-manager"),
        "rep": ActorUser.from_user(rep, correlation_id="records-corr-rep"),
        "other": ActorUser.from_user(other, correlation_id="records-corr-other"),
    }


@pytest.fixture()
def client(
    db_session: Session,
    actors: dict[str, ActorUser],
    tmp_path: Path,
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    state = {"current": "admin"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def override_get_file_storage() -> LocalFileStorage:
        return LocalFileStorage(tmp_path, max_bytes=1024 * 1024, allowed_extensions=["pdf", "png"])

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_file_storage] = override_get_file_storage
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_field(test_client: TestClient, **payload: object) -> dict:
    response = test_client.post("/api/custom-fields", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def _create_company(test_client: TestClient, field_values: list[dict] | None = None, **extra: object):
    payload: dict[str, object] = {"name": "Acme", **extra}
    if field_values is not None:
        payload["fieldValues"] = field_values
    return test_client.post("/api/companies", json=payload)


def _values_by_field(record: dict) -> dict[int, dict]:
    return {row["fieldId"]: row for row in record["fieldValues"]}


def test_create_company_with_scalar_values(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    budget = _create_field(test_client, objectType="COMPANY", label="Budget", type="number")
    founded = _create_field(test_client, objectType="COMPANY", label="Founded", type="date")
    partner = _create_field(test_client, objectType="COMPANY", label="Partner", type="boolean")

    response = _create_company(
        test_client,
        [
            {"fieldId": budget["id"], "value": "1250.5"},
            {"fieldId": founded["id"], "value": "2001-04-02"},
            {"fieldId": partner["id"], "value": False},
        ],
    )

    assert response.status_code == 201, response.text
    body = response.json()
    assert body["warnings"] == []
    values = _values_by_field(body["record"])
    assert values[budget["id"]]["valueNumber"] == 1250.5
    assert values[founded["id"]]["valueDate"] == "2001-04-02"
    assert values[partner["id"]]["valueBoolean"] is False

    fetched = test_client.get(f"/api/companies/{body['record']['id']}")
    assert fetched.status_code == 200
    assert _values_by_field(fetched.json())[budget["id"]]["valueNumber"] == 1250.5


def test_invalid_value_is_rejected_with_error_envelope(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    budget = _create_field(test_client, objectType="COMPANY", label="Budget", type="number")

    response = _create_company(test_client, [{"fieldId": budget["id"], "value": "a lot"}])

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "crm_company_create_failed"
    assert body["message"] == "number field value is invalid"
    assert test_client.get("/api/companies").json() == []


def test_unknown_or_foreign_field_rejects_batch(
    db_session: Session,
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    notes = _create_field(test_client, objectType="COMPANY", label="Notes", type="text")
    deal_field = _create_field(test_client, objectType="DEAL", label="Deal Notes", type="text")

    unknown = _create_company(test_client, [{"fieldId": notes["id"], "value": "ok"}, {"fieldId": 9999, "value": "x"}])
    assert unknown.status_code == 400
    assert unknown.json()["message"] == "custom field information is invalid"

    foreign = _create_company(test_client, [{"fieldId": deal_field["id"], "value": "x"}])
    assert foreign.status_code == 400
    assert foreign.json()["message"] == "custom field information is invalid"

    assert db_session.scalars(select(FieldValue)).all() == []


def test_required_number_missing_on_create(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_field(test_client, objectType="COMPANY", label="Employees", type="number", required=True)

    response = _create_company(test_client)

    assert response.status_code == 400
    assert response.json()["message"] == "required custom fields are missing"
    assert response.json()["details"] == {"reason": "required_missing"}


def test_required_number_kept_from_stored_value_on_update(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    employees = _create_field(test_client, objectType="COMPANY", label="Employees", type="number", required=True)
    created = _create_company(test_client, [{"fieldId": employees["id"], "value": 42}])
    assert created.status_code == 201
    company_id = created.json()["record"]["id"]

    renamed = test_client.patch(f"/api/companies/{company_id}", json={"name": "Acme Holdings"})
    assert renamed.status_code == 200, renamed.text
    assert renamed.json()["record"]["name"] == "Acme Holdings"
    assert _values_by_field(renamed.json()["record"])[employees["id"]]["valueNumber"] == 42

    cleared = test_client.patch(
        f"/api/companies/{company_id}",
        json={"fieldValues": [{"fieldId": employees["id"], "value": None}]},
    )
    assert cleared.status_code == 400
    assert cleared.json()["code"] == "crm_company_update_failed"
    assert cleared.json()["message"] == "required custom fields are missing"

    still_named = test_client.get(f"/api/companies/{company_id}").json()
    assert still_named["name"] == "Acme Holdings"


def test_calculation_values_and_warnings(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    revenue = _create_field(test_client, objectType="COMPANY", label="Revenue", type="number")
    seats = _create_field(test_client, objectType="COMPANY", label="Seats", type="number")
    per_seat = _create_field(
        test_client,
        objectType="COMPANY",
        label="Revenue per seat",
        type="calculation",
        formula=f"{{{{{revenue['id']}}}}} / {{{{{seats['id']}}}}}",
    )

    created = _create_company(
        test_client,
        [{"fieldId": revenue["id"], "value": 1000}, {"fieldId": seats["id"], "value": 0}],
    )
    assert created.status_code == 201, created.text
    body = created.json()
    assert body["warnings"] == ["Revenue per seat: division by zero — result not stored"]
    assert _values_by_field(body["record"])[per_seat["id"]]["valueNumber"] is None

    updated = test_client.patch(
        f"/api/companies/{body['record']['id']}",
        json={"fieldValues": [{"fieldId": seats["id"], "value": 4}]},
    )
    assert updated.status_code == 200
    assert updated.json()["warnings"] == []
    assert _values_by_field(updated.json()["record"])[per_seat["id"]]["valueNumber"] == 250


def test_calculation_inputs_are_ignored(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    base = _create_field(test_client, objectType="COMPANY", label="Base", type="number")
    doubled = _create_field(
        test_client,
        objectType="COMPANY",
        label="Doubled",
        type="calculation",
        formula=f"{{{{{base['id']}}}}} * 2",
    )

    created = _create_company(
        test_client,
        [{"fieldId": base["id"], "value": 3}, {"fieldId": doubled["id"], "value": 999}],
    )

    assert created.status_code == 201
    assert _values_by_field(created.json()["record"])[doubled["id"]]["valueNumber"] == 6


def test_masked_values_are_stored_but_never_returned(
    db_session: Session,
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    secret = _create_field(test_client, objectType="COMPANY", label="Margin", type="number", masked=True)
    public = _create_field(test_client, objectType="COMPANY", label="Region", type="text")

    created = _create_company(
        test_client,
        [{"fieldId": secret["id"], "value": 12}, {"fieldId": public["id"], "value": "EMEA"}],
    )
    assert created.status_code == 201
    record_id = created.json()["record"]["id"]

    assert set(_values_by_field(created.json()["record"])) == {public["id"]}
    assert set(_values_by_field(test_client.get(f"/api/companies/{record_id}").json())) == {public["id"]}
    listed = test_client.get("/api/companies").json()
    assert set(_values_by_field(listed[0])) == {public["id"]}

    stored = db_session.scalars(select(FieldValue).where(FieldValue.field_id == secret["id"])).one()
    assert stored.value_number == 12


def test_multi_select_values_are_replaced_wholesale(
    db_session: Session,
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    tags = _create_field(
        test_client,
        objectType="COMPANY",
        label="Tags",
        type="multi_select",
        options=["Hot", "Enterprise", "Churn risk"],
    )
    hot, enterprise, churn = (option["id"] for option in tags["options"])

    created = _create_company(test_client, [{"fieldId": tags["id"], "value": [hot, enterprise, hot]}])
    assert created.status_code == 201
    record = created.json()["record"]
    assert [row["label"] for row in record["optionValues"]] == ["Hot", "Enterprise"]

    updated = test_client.patch(
        f"/api/companies/{record['id']}",
        json={"fieldValues": [{"fieldId": tags["id"], "value": [churn]}]},
    )
    assert updated.status_code == 200
    assert [row["optionId"] for row in updated.json()["record"]["optionValues"]] == [churn]
    assert len(db_session.scalars(select(FieldOptionValue)).all()) == 1

    invalid = test_client.patch(
        f"/api/companies/{record['id']}",
        json={"fieldValues": [{"fieldId": tags["id"], "value": [churn, 12345]}]},
    )
    assert invalid.status_code == 400
    assert invalid.json()["message"] == "selected option is invalid"


def test_deleted_option_is_no_longer_selectable(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    tier = _create_field(test_client, objectType="COMPANY", label="Tier", type="single_select", options=["Gold", "Silver"])
    gold = tier["options"][0]["id"]

    assert test_client.delete(f"/api/custom-field-options/{gold}").status_code == 204

    response = _create_company(test_client, [{"fieldId": tier["id"], "value": gold}])
    assert response.status_code == 400
    assert response.json()["message"] == "selected option is invalid"


def test_user_fields_are_limited_to_assignable_users(
    actors: dict[str, ActorUser],
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, set_actor = client
    reviewer = _create_field(test_client, objectType="COMPANY", label="Reviewer", type="user")
    watchers = _create_field(test_client, objectType="COMPANY", label="Watchers", type="users")

    set_actor("rep")
    rejected = _create_company(test_client, [{"fieldId": reviewer["id"], "value": actors["admin"].user_id}])
    assert rejected.status_code == 400
    assert rejected.json()["message"] == "selected user is invalid"

    accepted = _create_company(
        test_client,
        [
            {"fieldId": reviewer["id"], "value": str(actors["rep"].user_id)},
            {"fieldId": watchers["id"], "value": [actors["rep"].user_id]},
        ],
    )
    assert accepted.status_code == 201
    record = accepted.json()["record"]
    assert _values_by_field(record)[reviewer["id"]]["valueUserId"] == actors["rep"].user_id
    assert record["userValues"] == [{"fieldId": watchers["id"], "userId": actors["rep"].user_id, "name": "Rae Rep"}]


def test_visibility_follows_role_hierarchy(
    actors: dict[str, ActorUser],
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, set_actor = client

    set_actor("rep")
    created = _create_company(test_client)
    assert created.status_code == 201
    company_id = created.json()["record"]["id"]
    assert created.json()["record"]["ownerId"] == actors["rep"].user_id

    set_actor("other")
    hidden = test_client.get(f"/api/companies/{company_id}")
    assert hidden.status_code == 403
    assert hidden.json()["code"] == "crm_company_get_failed"
    assert test_client.get("/api/companies").json() == []

    set_actor("manager")
    assert test_client.get(f"/api/companies/{company_id}").status_code == 200

    set_actor("admin")
    assert len(test_client.get("/api/companies").json()) == 1


def test_owner_assignment_rules(
    actors: dict[str, ActorUser],
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, set_actor = client

    set_actor("rep")
    denied = _create_company(test_client, ownerId=actors["other"].user_id)
    assert denied.status_code == 403

    set_actor("manager")
    to_report = _create_company(test_client, ownerId=actors["rep"].user_id)
    assert to_report.status_code == 201
    outside_team = _create_company(test_client, ownerId=actors["other"].user_id)
    assert outside_team.status_code == 403

    set_actor("admin")
    anyone = _create_company(test_client, ownerId=actors["other"].user_id)
    assert anyone.status_code == 201


def test_delete_requires_manager_and_hides_record(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client

    set_actor("rep")
    company_id = _create_company(test_client).json()["record"]["id"]
    assert test_client.delete(f"/api/companies/{company_id}").status_code == 403

    set_actor("manager")
    assert test_client.delete(f"/api/companies/{company_id}").status_code == 204
    missing = test_client.get(f"/api/companies/{company_id}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "crm_company_get_failed"


def test_contacts_and_leads_share_the_field_engine(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    title = _create_field(test_client, objectType="CONTACT", label="Title", type="text", required=True)
    score = _create_field(test_client, objectType="LEAD", label="Score", type="number")

    missing = test_client.post("/api/contacts", json={"name": "Jane"})
    assert missing.status_code == 400
    assert missing.json()["code"] == "crm_contact_create_failed"

    contact = test_client.post(
        "/api/contacts",
        json={"name": "Jane", "fieldValues": [{"fieldId": title["id"], "value": "CTO"}]},
    )
    assert contact.status_code == 201
    assert _values_by_field(contact.json()["record"])[title["id"]]["valueText"] == "CTO"

    lead = test_client.post(
        "/api/leads",
        json={"name": "Inbound", "source": "web", "fieldValues": [{"fieldId": score["id"], "value": 80}]},
    )
    assert lead.status_code == 201
    assert lead.json()["record"]["status"] == "NEW"

    filtered = test_client.get("/api/leads", params={"status": "NEW"})
    assert [row["id"] for row in filtered.json()] == [lead.json()["record"]["id"]]


def test_contact_company_must_exist(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post("/api/contacts", json={"name": "Jane", "companyId": 4242})

    assert response.status_code == 400
    assert response.json()["message"] == "company information is invalid"


def test_deals_need_a_matching_pipeline_and_stage(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    pipeline = test_client.post(
        "/api/pipelines",
        json={"name": "Sales", "stages": [{"name": "New"}, {"name": "Won", "probability": 100}]},
    )
    assert pipeline.status_code == 201
    pipeline_id = pipeline.json()["id"]
    new_stage, won_stage = (stage["id"] for stage in pipeline.json()["stages"])

    other = test_client.post("/api/pipelines", json={"name": "Renewals", "stages": [{"name": "Open"}]})
    other_stage = other.json()["stages"][0]["id"]

    mismatched = test_client.post(
        "/api/deals",
        json={"name": "Big deal", "pipelineId": pipeline_id, "stageId": other_stage},
    )
    assert mismatched.status_code == 400
    assert mismatched.json()["message"] == "pipeline or stage information is invalid"

    created = test_client.post(
        "/api/deals",
        json={"name": "Big deal", "pipelineId": pipeline_id, "stageId": new_stage, "expectedRevenue": 5000},
    )
    assert created.status_code == 201, created.text

    moved = test_client.patch(f"/api/deals/{created.json()['record']['id']}", json={"stageId": won_stage})
    assert moved.status_code == 200
    assert moved.json()["record"]["stageId"] == won_stage

    assert test_client.get("/api/deals").status_code == 400
    listed = test_client.get("/api/deals", params={"pipelineId": pipeline_id, "stageId": won_stage})
    assert [row["name"] for row in listed.json()] == ["Big deal"]


def test_assignable_users_per_role(
    actors: dict[str, ActorUser],
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, set_actor = client

    set_actor("manager")
    ids = {row["id"] for row in test_client.get("/api/users/assignable").json()}
    assert ids == {actors["manager"].user_id, actors["rep"].user_id}

    set_actor("rep")
    assert [row["id"] for row in test_client.get("/api/users/assignable").json()] == [actors["rep"].user_id]

    set_actor("admin")
    assert len(test_client.get("/api/users/assignable").json()) == 4


def test_writes_are_audited(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    company_id = _create_company(test_client).json()["record"]["id"]
    test_client.patch(f"/api/companies/{company_id}", json={"industry": "Software"})

    entries = [entry for entry in audit.audit_entries if entry["entity_type"] == "COMPANY"]
    assert [entry["action"] for entry in entries] == ["CREATE", "UPDATE"]
    assert entries[1]["before"]["industry"] is None
    assert entries[1]["after"]["industry"] == "Software"
    assert entries[1]["correlation_id"] == "records-corr-admin"
