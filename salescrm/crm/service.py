from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Generic, Mapping, Sequence, TypeVar

from fastapi import UploadFile
from fastapi.encoders import jsonable_encoder
from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from salescrm import audit
from salescrm.crm.errors import (
    AuthorizationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
)
from salescrm.crm.models import (
    Company,
    Contact,
    CustomField,
    CustomFieldOption,
    Deal,
    FieldFile,
    Lead,
    Pipeline,
    RECORD_MODELS,
    Stage,
    Team,
    User,
)
from salescrm.crm.policy import AccessPolicy, ActorUser, Permission
from salescrm.crm.repositories import RecordFieldValues, field_value_repository
from salescrm.crm.schemas import (
    CompanyRead,
    ContactRead,
    CustomFieldCreate,
    CustomFieldOptionCreate,
    CustomFieldOptionRead,
    CustomFieldOptionUpdate,
    CustomFieldRead,
    CustomFieldUpdate,
    DealRead,
    FieldValueIn,
    FieldValueRead,
    FileRead,
    LeadConvertRequest,
    LeadRead,
    OptionValueRead,
    PipelineCreate,
    PipelineRead,
    PipelineUpdate,
    RecordValuesRead,
    ReorderRequest,
    StageCreate,
    StageRead,
    StageUpdate,
    TeamCreate,
    TeamRead,
    TeamUpdate,
    UserSummary,
    UserTeamUpdate,
    UserValueRead,
)
from salescrm.crm.storage import LocalFileStorage, StoredFile
from salescrm.fields.completeness import StoredFieldState
from salescrm.fields.errors import FieldValidationError
from salescrm.fields.formula import calculation_order, extract_field_ids, validate_formula_syntax
from salescrm.fields.masking import filter_masked
from salescrm.fields.engine import field_value_engine
from salescrm.fields.types import NUMERIC_KINDS, SELECT_KINDS, FieldKind, FieldValueInput, ObjectType
from salescrm.metrics import observe_file_operation

logger = logging.getLogger("salescrm.crm.records")
files_logger = logging.getLogger("salescrm.crm.files")

ReadT = TypeVar("ReadT", bound=RecordValuesRead)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _renumber(rows: Sequence[Any]) -> None:
    for index, row in enumerate(rows):
        row.position = index


def _normalize_label(label: str) -> str:
    return label.strip().lower()


class CustomFieldService:
    def list_fields(self, session: Session, actor: ActorUser, object_type: ObjectType) -> list[CustomFieldRead]:
        rows = field_value_repository.load_fields(session, object_type, actor.workspace_id)
        return [self._to_read(session, row) for row in rows]

    def create_field(self, session: Session, actor: ActorUser, dto: CustomFieldCreate) -> CustomFieldRead:
        AccessPolicy(session, actor).require(Permission.MANAGE)

        formula: str | None = None
        if dto.kind == FieldKind.CALCULATION:
            formula = (dto.formula or "").strip()
            self._check_formula(session, actor, dto.object_type, formula)
        elif dto.formula:
            raise FieldValidationError("formula is only allowed on calculation fields", reason="formula")

        options: list[str] = []
        if dto.kind in SELECT_KINDS:
            options = [label.strip() for label in dto.options or []]
            if not options:
                raise FieldValidationError("select fields need at least one option", reason="options")
            if any(not label for label in options):
                raise FieldValidationError("option labels cannot be blank", reason="options")
            if len({_normalize_label(label) for label in options}) != len(options):
                raise FieldValidationError("option labels must be unique", reason="options")

        position = len(field_value_repository.load_fields(session, dto.object_type, actor.workspace_id))
        row = CustomField(
            workspace_id=actor.workspace_id,
            object_type=str(dto.object_type),
            label=dto.label.strip(),
            kind=str(dto.kind),
            required=dto.required,
            masked=dto.masked,
            visible_in_create=dto.visible_in_create,
            visible_in_pipeline=dto.visible_in_pipeline,
            position=position,
            formula=formula,
        )
        session.add(row)
        session.flush()
        session.add_all(
            CustomFieldOption(field_id=row.id, label=label, position=index) for index, label in enumerate(options)
        )
        session.commit()
        session.refresh(row)

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="CUSTOM_FIELD",
            entity_id=row.id,
            action="CREATE",
            after={"label": row.label, "object_type": row.object_type, "type": row.kind},
            correlation_id=actor.correlation_id,
        )
        return self._to_read(session, row)

    def update_field(
        self,
        session: Session,
        actor: ActorUser,
        field_id: int,
        dto: CustomFieldUpdate,
    ) -> CustomFieldRead:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        row = self._get_field(session, actor, field_id)
        payload = dto.model_dump(exclude_unset=True)
        before = {"label": row.label, "type": row.kind, "required": row.required, "formula": row.formula}

        if payload.get("masked") is not None and payload["masked"] != row.masked:
            raise FieldValidationError("masked setting cannot be changed after creation", reason="masked")

        next_kind = FieldKind(payload.get("kind") or row.kind)
        if next_kind != row.kind and field_value_repository.count_values_for_field(session, row.id) > 0:
            raise FieldValidationError("field type cannot be changed once values exist", reason="kind")

        next_formula = row.formula
        if next_kind == FieldKind.CALCULATION:
            if "formula" in payload or row.formula is None:
                next_formula = (payload.get("formula") or "").strip()
                self._check_formula(session, actor, ObjectType(row.object_type), next_formula, field_id=row.id)
        elif payload.get("formula"):
            raise FieldValidationError("formula is only allowed on calculation fields", reason="formula")
        else:
            next_formula = None

        row.kind = str(next_kind)
        row.formula = next_formula

        for key in ("label", "required", "visible_in_create", "visible_in_pipeline"):
            if payload.get(key) is not None:
                setattr(row, key, payload[key].strip() if key == "label" else payload[key])

        if payload.get("position") is not None and payload["position"] != row.position:
            siblings = [
                item
                for item in field_value_repository.load_fields(session, ObjectType(row.object_type), actor.workspace_id)
                if item.id != row.id
            ]
            siblings.insert(min(payload["position"], len(siblings)), row)
            _renumber(siblings)

        row.updated_at = utcnow()
        session.commit()
        session.refresh(row)

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="CUSTOM_FIELD",
            entity_id=row.id,
            action="UPDATE",
            before=before,
            after={"label": row.label, "type": row.kind, "required": row.required, "formula": row.formula},
            correlation_id=actor.correlation_id,
        )
        return self._to_read(session, row)

    def delete_field(self, session: Session, actor: ActorUser, field_id: int) -> None:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        row = self._get_field(session, actor, field_id)
        row.deleted_at = utcnow()
        session.flush()
        _renumber(field_value_repository.load_fields(session, ObjectType(row.object_type), actor.workspace_id))
        session.commit()

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="CUSTOM_FIELD",
            entity_id=row.id,
            action="DELETE",
            before={"label": row.label, "object_type": row.object_type, "type": row.kind},
            correlation_id=actor.correlation_id,
        )

    def add_option(
        self,
        session: Session,
        actor: ActorUser,
        field_id: int,
        dto: CustomFieldOptionCreate,
    ) -> CustomFieldOptionRead:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        row = self._get_field(session, actor, field_id)
        if row.kind not in SELECT_KINDS:
            raise FieldValidationError("options are only available on select fields", reason="options")

        label = dto.label.strip()
        siblings = self._active_options(session, row.id)
        self._ensure_unique_label(label, siblings)
        option = CustomFieldOption(field_id=row.id, label=label, position=len(siblings))
        session.add(option)
        session.commit()
        session.refresh(option)

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="CUSTOM_FIELD_OPTION",
            entity_id=option.id,
            action="CREATE",
            after={"field_id": row.id, "label": option.label},
            correlation_id=actor.correlation_id,
        )
        return CustomFieldOptionRead.model_validate(option)

    def update_option(
        self,
        session: Session,
        actor: ActorUser,
        option_id: int,
        dto: CustomFieldOptionUpdate,
    ) -> CustomFieldOptionRead:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        option = self._get_option(session, actor, option_id)
        payload = dto.model_dump(exclude_unset=True)
        before = {"label": option.label, "position": option.position}

        siblings = [item for item in self._active_options(session, option.field_id) if item.id != option.id]
        if payload.get("label") is not None:
            label = payload["label"].strip()
            self._ensure_unique_label(label, siblings)
            option.label = label
        if payload.get("position") is not None and payload["position"] != option.position:
            siblings.insert(min(payload["position"], len(siblings)), option)
            _renumber(siblings)

        session.commit()
        session.refresh(option)

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="CUSTOM_FIELD_OPTION",
            entity_id=option.id,
            action="UPDATE",
            before=before,
            after={"label": option.label, "position": option.position},
            correlation_id=actor.correlation_id,
        )
        return CustomFieldOptionRead.model_validate(option)

    def delete_option(self, session: Session, actor: ActorUser, option_id: int) -> None:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        option = self._get_option(session, actor, option_id)
        option.deleted_at = utcnow()
        session.flush()
        _renumber(self._active_options(session, option.field_id))
        session.commit()

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="CUSTOM_FIELD_OPTION",
            entity_id=option.id,
            action="DELETE",
            before={"field_id": option.field_id, "label": option.label},
            correlation_id=actor.correlation_id,
        )

    def _check_formula(
        self,
        session: Session,
        actor: ActorUser,
        object_type: ObjectType,
        formula: str,
        *,
        field_id: int | None = None,
    ) -> None:
        validate_formula_syntax(formula)
        referenced = extract_field_ids(formula)
        if not referenced:
            return
        if field_id is not None and field_id in referenced:
            raise FieldValidationError("a formula cannot reference its own field", reason="formula")

        rows = field_value_repository.load_fields(session, object_type, actor.workspace_id)
        candidates = {row.id: row for row in rows if row.id in referenced}
        for referenced_id in referenced:
            candidate = candidates.get(referenced_id)
            if candidate is None or candidate.kind not in NUMERIC_KINDS:
                raise FieldValidationError(
                    "formulas may only reference number or calculation fields",
                    reason="formula",
                )

        if field_id is not None:
            formulas = {row.id: row.formula for row in rows if row.kind == FieldKind.CALCULATION}
            formulas[field_id] = formula
            _, cyclic = calculation_order(formulas)
            if field_id in cyclic:
                raise FieldValidationError("formulas cannot reference each other in a cycle", reason="formula")

    def _get_field(self, session: Session, actor: ActorUser, field_id: int) -> CustomField:
        row = session.get(CustomField, field_id)
        if row is None or row.deleted_at is not None:
            raise NotFoundError("custom field not found")
        if actor.workspace_id is not None and row.workspace_id != actor.workspace_id:
            raise NotFoundError("custom field not found")
        return row

    def _get_option(self, session: Session, actor: ActorUser, option_id: int) -> CustomFieldOption:
        option = session.get(CustomFieldOption, option_id)
        if option is None or option.deleted_at is not None:
            raise NotFoundError("custom field option not found")
        self._get_field(session, actor, option.field_id)
        return option

    @staticmethod
    def _active_options(session: Session, field_id: int) -> list[CustomFieldOption]:
        stmt = (
            select(CustomFieldOption)
            .where(CustomFieldOption.field_id == field_id, CustomFieldOption.deleted_at.is_(None))
            .order_by(CustomFieldOption.position.asc(), CustomFieldOption.id.asc())
        )
        return list(session.scalars(stmt).all())

    @staticmethod
    def _ensure_unique_label(label: str, siblings: Sequence[CustomFieldOption]) -> None:
        if not label:
            raise FieldValidationError("option labels cannot be blank", reason="options")
        normalized = _normalize_label(label)
        if any(_normalize_label(item.label) == normalized for item in siblings):
            raise FieldValidationError("option labels must be unique", reason="options")

    def _to_read(self, session: Session, row: CustomField) -> CustomFieldRead:
        options = self._active_options(session, row.id)
        return CustomFieldRead(
            id=row.id,
            workspace_id=row.workspace_id,
            object_type=ObjectType(row.object_type),
            label=row.label,
            kind=FieldKind(row.kind),
            required=row.required,
            masked=row.masked,
            visible_in_create=row.visible_in_create,
            visible_in_pipeline=row.visible_in_pipeline,
            position=row.position,
            formula=row.formula,
            options=[CustomFieldOptionRead.model_validate(option) for option in options],
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


@dataclass
class RecordWriteResult(Generic[ReadT]):
    record: ReadT
    warnings: list[str] = field(default_factory=list)


def _to_values_read(bundle: RecordFieldValues, masked_field_ids: set[int]) -> dict[str, Any]:
    return {
        "field_values": [
            FieldValueRead.model_validate(row) for row in filter_masked(bundle.field_values, masked_field_ids)
        ],
        "option_values": [
            OptionValueRead.model_validate(row) for row in filter_masked(bundle.option_values, masked_field_ids)
        ],
        "user_values": [
            UserValueRead.model_validate(row) for row in filter_masked(bundle.user_values, masked_field_ids)
        ],
        "files": [FileRead.model_validate(row) for row in filter_masked(bundle.files, masked_field_ids)],
    }


class RecordService(Generic[ReadT]):
    """Create/read/update/delete for one object type; custom fields go through the shared engine.

    Subclasses only describe their base columns and any cross-record checks.
    """

    object_type: ClassVar[ObjectType]
    model: ClassVar[Any]
    read_schema: ClassVar[type[RecordValuesRead]]
    required_columns: ClassVar[frozenset[str]] = frozenset({"name"})

    def list_records(self, session: Session, actor: ActorUser, **filters: Any) -> list[ReadT]:
        policy = AccessPolicy(session, actor)
        policy.require(Permission.READ)

        stmt = select(self.model).where(self.model.deleted_at.is_(None))
        if actor.workspace_id is not None:
            stmt = stmt.where(self.model.workspace_id == actor.workspace_id)
        visible = policy.visible_owner_ids()
        if visible is not None:
            stmt = stmt.where(self.model.owner_id.in_(visible))
        stmt = self._apply_filters(stmt, filters)
        rows = list(session.scalars(stmt.order_by(self.model.created_at.desc(), self.model.id.desc())).all())
        return self._to_reads(session, actor, rows)

    def get_record(self, session: Session, actor: ActorUser, record_id: int) -> ReadT:
        policy = AccessPolicy(session, actor)
        policy.require(Permission.READ)
        row = self._get_visible(session, actor, policy, record_id)
        return self._to_reads(session, actor, [row])[0]

    def create_record(
        self,
        session: Session,
        actor: ActorUser,
        dto: Any,
        *,
        uploads: Mapping[int, Sequence[UploadFile]] | None = None,
        storage: LocalFileStorage,
    ) -> RecordWriteResult[ReadT]:
        policy = AccessPolicy(session, actor)
        policy.require(Permission.WRITE)

        values = dto.model_dump(exclude={"field_values"})
        owner_id = values.get("owner_id") or actor.user_id
        policy.ensure_can_assign(owner_id)
        values["owner_id"] = owner_id
        self._validate_base(session, policy, values, None)

        row = self.model(workspace_id=actor.workspace_id, **values)
        return self._write(
            session,
            actor,
            policy,
            row,
            field_values=dto.field_values,
            uploads=uploads or {},
            storage=storage,
            action="CREATE",
            before=None,
        )

    def update_record(
        self,
        session: Session,
        actor: ActorUser,
        record_id: int,
        dto: Any,
        *,
        uploads: Mapping[int, Sequence[UploadFile]] | None = None,
        storage: LocalFileStorage,
    ) -> RecordWriteResult[ReadT]:
        policy = AccessPolicy(session, actor)
        policy.require(Permission.WRITE)
        row = self._get_visible(session, actor, policy, record_id)
        before = self._snapshot(row)

        values = dto.model_dump(exclude_unset=True, exclude={"field_values"})
        if values.get("owner_id") is not None and values["owner_id"] != row.owner_id:
            policy.ensure_can_assign(values["owner_id"])
        elif "owner_id" in values:
            values.pop("owner_id")
        for key in [key for key, value in values.items() if value is None and key in self.required_columns]:
            values.pop(key)
        self._validate_base(session, policy, values, row)

        for key, value in values.items():
            setattr(row, key, value)
        return self._write(
            session,
            actor,
            policy,
            row,
            field_values=dto.field_values,
            uploads=uploads or {},
            storage=storage,
            action="UPDATE",
            before=before,
        )

    def delete_record(self, session: Session, actor: ActorUser, record_id: int) -> None:
        policy = AccessPolicy(session, actor)
        policy.require(Permission.DELETE)
        row = self._get_visible(session, actor, policy, record_id)
        row.deleted_at = utcnow()
        session.commit()

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type=str(self.object_type),
            entity_id=row.id,
            action="DELETE",
            before=self._snapshot(row),
            correlation_id=actor.correlation_id,
        )

    def _apply_filters(self, stmt: Select[Any], filters: Mapping[str, Any]) -> Select[Any]:
        return stmt

    def _validate_base(
        self,
        session: Session,
        policy: AccessPolicy,
        values: dict[str, Any],
        row: Any | None,
    ) -> None:
        return None

    def _write(
        self,
        session: Session,
        actor: ActorUser,
        policy: AccessPolicy,
        row: Any,
        *,
        field_values: list[FieldValueIn] | None,
        uploads: Mapping[int, Sequence[UploadFile]],
        storage: LocalFileStorage,
        action: str,
        before: dict[str, Any] | None,
    ) -> RecordWriteResult[ReadT]:
        definitions = field_value_repository.load_definitions(session, self.object_type, actor.workspace_id)
        option_map = field_value_repository.load_option_map(
            session,
            [definition.id for definition in definitions if definition.kind in SELECT_KINDS],
        )
        stored = (
            field_value_repository.load_stored_state(session, self.object_type, row.id)
            if row.id is not None
            else StoredFieldState()
        )

        saved: list[tuple[int, StoredFile]] = []
        try:
            plan = field_value_engine.prepare(
                object_type=self.object_type,
                fields=definitions,
                inputs=[FieldValueInput(item.field_id, item.value) for item in field_values or []],
                option_map=option_map,
                allowed_user_ids=policy.assignable_user_ids(),
                stored=stored,
                incoming_file_counts={field_id: len(files) for field_id, files in uploads.items()},
            )
            for field_id, files in uploads.items():
                for upload in files:
                    saved.append((field_id, storage.save_file(upload, str(self.object_type), field_id)))

            session.add(row)
            session.flush()
            field_value_repository.apply_plan(session, self.object_type, row.id, plan)
            field_value_repository.add_files(
                session,
                self.object_type,
                row.id,
                saved,
                uploaded_by_id=actor.user_id,
            )
            row.updated_at = utcnow()
            session.commit()
        except Exception:
            session.rollback()
            for _, stored_file in saved:
                storage.delete_file(stored_file.storage_path)
            files_logger.warning(
                "record.write_rolled_back",
                extra={"object_type": str(self.object_type), "record_id": row.id},
            )
            raise
        session.refresh(row)

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type=str(self.object_type),
            entity_id=row.id,
            action=action,
            before=before,
            after=self._snapshot(row),
            correlation_id=actor.correlation_id,
        )
        if saved:
            audit.record(
                actor_user_id=actor.user_id,
                workspace_id=actor.workspace_id,
                entity_type="FILE",
                entity_id=row.id,
                action="FILE_UPLOAD",
                meta={"object_type": str(self.object_type), "record_id": row.id, "count": len(saved)},
                correlation_id=actor.correlation_id,
            )
            observe_file_operation(str(self.object_type), "upload", len(saved))

        logger.info(
            "record.saved",
            extra={
                "object_type": str(self.object_type),
                "record_id": row.id,
                "warning_count": len(plan.warnings),
            },
        )
        record = self._to_reads(session, actor, [row])[0]
        return RecordWriteResult(record=record, warnings=plan.warnings)

    def _get_visible(self, session: Session, actor: ActorUser, policy: AccessPolicy, record_id: int) -> Any:
        row = session.get(self.model, record_id)
        if row is None or row.deleted_at is not None:
            raise NotFoundError(f"{self.object_type.lower()} not found")
        if actor.workspace_id is not None and row.workspace_id != actor.workspace_id:
            raise NotFoundError(f"{self.object_type.lower()} not found")
        policy.ensure_owner_visible(row.owner_id)
        return row

    def _to_reads(self, session: Session, actor: ActorUser, rows: Sequence[Any]) -> list[ReadT]:
        masked = field_value_repository.masked_field_ids(session, self.object_type, actor.workspace_id)
        bundles = field_value_repository.load_record_values(session, self.object_type, [row.id for row in rows])
        reads: list[ReadT] = []
        for row in rows:
            base = {column.key: getattr(row, column.key) for column in self.model.__table__.columns}
            base.update(_to_values_read(bundles[row.id], masked))
            reads.append(self.read_schema.model_validate(base))  # type: ignore[arg-type]
        return reads

    def _snapshot(self, row: Any) -> dict[str, Any]:
        data = {
            column.key: getattr(row, column.key)
            for column in self.model.__table__.columns
            if column.key not in {"created_at", "updated_at", "deleted_at"}
        }
        return jsonable_encoder(data)

    @staticmethod
    def _ensure_related_visible(session: Session, policy: AccessPolicy, model: Any, record_id: int | None) -> None:
        if record_id is None:
            return
        related = session.get(model, record_id)
        if related is None or related.deleted_at is not None:
            raise BadRequestError(f"{model.__tablename__.removeprefix('crm_')} information is invalid")
        if policy.actor.workspace_id is not None and related.workspace_id != policy.actor.workspace_id:
            raise BadRequestError(f"{model.__tablename__.removeprefix('crm_')} information is invalid")
        if not policy.can_see_owner(related.owner_id):
            raise AuthorizationError(f"{model.__tablename__.removeprefix('crm_')} is not visible")


class CompanyService(RecordService[CompanyRead]):
    object_type = ObjectType.COMPANY
    model = Company
    read_schema = CompanyRead


class ContactService(RecordService[ContactRead]):
    object_type = ObjectType.CONTACT
    model = Contact
    read_schema = ContactRead

    def _apply_filters(self, stmt: Select[Any], filters: Mapping[str, Any]) -> Select[Any]:
        if filters.get("company_id") is not None:
            stmt = stmt.where(Contact.company_id == filters["company_id"])
        return stmt

    def _validate_base(self, session: Session, policy: AccessPolicy, values: dict[str, Any], row: Any | None) -> None:
        if "company_id" in values:
            self._ensure_related_visible(session, policy, Company, values["company_id"])


class LeadService(RecordService[LeadRead]):
    object_type = ObjectType.LEAD
    model = Lead
    read_schema = LeadRead
    required_columns = frozenset({"name", "status"})

    def _apply_filters(self, stmt: Select[Any], filters: Mapping[str, Any]) -> Select[Any]:
        if filters.get("status"):
            stmt = stmt.where(Lead.status == filters["status"])
        return stmt

    def _validate_base(self, session: Session, policy: AccessPolicy, values: dict[str, Any], row: Any | None) -> None:
        if "company_id" in values:
            self._ensure_related_visible(session, policy, Company, values["company_id"])

    def convert_lead(
        self,
        session: Session,
        actor: ActorUser,
        lead_id: int,
        dto: LeadConvertRequest,
    ) -> DealRead:
        policy = AccessPolicy(session, actor)
        policy.require(Permission.WRITE)
        lead = self._get_visible(session, actor, policy, lead_id)

        stage = session.get(Stage, dto.stage_id)
        pipeline = session.get(Pipeline, dto.pipeline_id)
        if pipeline is None or stage is None or stage.pipeline_id != pipeline.id:
            raise BadRequestError("pipeline or stage information is invalid")
        if actor.workspace_id is not None and pipeline.workspace_id != actor.workspace_id:
            raise BadRequestError("pipeline or stage information is invalid")

        existing = session.scalar(
            select(Deal.id).where(Deal.source_lead_id == lead.id, Deal.deleted_at.is_(None))
        )
        if existing is not None:
            raise ConflictError("lead has already been converted")

        deal = Deal(
            workspace_id=lead.workspace_id,
            name=(dto.name or lead.name).strip(),
            pipeline_id=pipeline.id,
            stage_id=stage.id,
            expected_revenue=dto.expected_revenue,
            company_id=lead.company_id,
            source_lead_id=lead.id,
            owner_id=lead.owner_id,
        )
        lead.status = "QUALIFIED"
        session.add(deal)
        session.commit()
        session.refresh(deal)

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type=str(ObjectType.LEAD),
            entity_id=lead.id,
            action="CONVERT",
            after={"deal_id": deal.id, "status": lead.status},
            correlation_id=actor.correlation_id,
        )
        logger.info("lead.converted", extra={"object_type": "LEAD", "record_id": lead.id})
        return deal_service._to_reads(session, actor, [deal])[0]


class DealService(RecordService[DealRead]):
    object_type = ObjectType.DEAL
    model = Deal
    read_schema = DealRead
    required_columns = frozenset({"name", "pipeline_id", "stage_id"})

    def _apply_filters(self, stmt: Select[Any], filters: Mapping[str, Any]) -> Select[Any]:
        if filters.get("pipeline_id") is not None:
            stmt = stmt.where(Deal.pipeline_id == filters["pipeline_id"])
        if filters.get("stage_id") is not None:
            stmt = stmt.where(Deal.stage_id == filters["stage_id"])
        return stmt

    def _validate_base(self, session: Session, policy: AccessPolicy, values: dict[str, Any], row: Any | None) -> None:
        pipeline_id = values.get("pipeline_id", row.pipeline_id if row is not None else None)
        stage_id = values.get("stage_id", row.stage_id if row is not None else None)
        if "pipeline_id" in values or "stage_id" in values:
            pipeline = session.get(Pipeline, pipeline_id) if pipeline_id is not None else None
            stage = session.get(Stage, stage_id) if stage_id is not None else None
            if pipeline is None or stage is None or stage.pipeline_id != pipeline.id:
                raise BadRequestError("pipeline or stage information is invalid")
            if policy.actor.workspace_id is not None and pipeline.workspace_id != policy.actor.workspace_id:
                raise BadRequestError("pipeline or stage information is invalid")
        if "company_id" in values:
            self._ensure_related_visible(session, policy, Company, values["company_id"])
        if "contact_id" in values:
            self._ensure_related_visible(session, policy, Contact, values["contact_id"])


class FileService:
    def download(
        self,
        session: Session,
        actor: ActorUser,
        object_type: ObjectType,
        file_id: int,
        storage: LocalFileStorage,
    ) -> tuple[FieldFile, bytes]:
        policy = AccessPolicy(session, actor)
        policy.require(Permission.READ)
        row = self._get_accessible(session, actor, policy, object_type, file_id)
        self._ensure_not_masked(session, row)
        return row, storage.read_file(row.storage_path)

    def delete_file(
        self,
        session: Session,
        actor: ActorUser,
        object_type: ObjectType,
        file_id: int,
        storage: LocalFileStorage,
    ) -> None:
        policy = AccessPolicy(session, actor)
        policy.require(Permission.WRITE)
        row = self._get_accessible(session, actor, policy, object_type, file_id)
        storage_path = row.storage_path
        meta = {"object_type": str(object_type), "field_id": row.field_id, "version": row.version}
        session.delete(row)
        session.commit()

        try:
            storage.delete_file(storage_path)
        except Exception as exc:
            files_logger.warning(
                "file.blob_delete_failed",
                extra={"object_type": str(object_type), "file_id": file_id, "error": str(exc)},
            )

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="FILE",
            entity_id=file_id,
            action="FILE_DELETE",
            meta=meta,
            correlation_id=actor.correlation_id,
        )
        observe_file_operation(str(object_type), "delete")

    def replace_file(
        self,
        session: Session,
        actor: ActorUser,
        object_type: ObjectType,
        file_id: int,
        upload: UploadFile,
        storage: LocalFileStorage,
    ) -> FileRead:
        policy = AccessPolicy(session, actor)
        policy.require(Permission.WRITE)
        current = self._get_accessible(session, actor, policy, object_type, file_id)
        self._ensure_not_masked(session, current)

        stored = storage.save_file(upload, str(object_type), current.field_id)
        try:
            latest = session.scalar(select(func.max(FieldFile.version)).where(FieldFile.group_key == current.group_key))
            now = utcnow()
            for previous in session.scalars(
                select(FieldFile).where(FieldFile.group_key == current.group_key, FieldFile.is_current.is_(True))
            ).all():
                previous.is_current = False
                previous.replaced_at = now

            created = FieldFile(
                object_type=current.object_type,
                record_id=current.record_id,
                field_id=current.field_id,
                original_name=stored.original_name,
                storage_path=stored.storage_path,
                mime_type=stored.mime_type,
                size=stored.size,
                group_key=current.group_key,
                version=(latest or 1) + 1,
                is_current=True,
                uploaded_by_id=actor.user_id,
            )
            session.add(created)
            session.commit()
        except Exception:
            session.rollback()
            storage.delete_file(stored.storage_path)
            raise
        session.refresh(created)

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="FILE",
            entity_id=created.id,
            action="FILE_REPLACE",
            meta={"object_type": str(object_type), "field_id": created.field_id, "version": created.version},
            correlation_id=actor.correlation_id,
        )
        observe_file_operation(str(object_type), "replace")
        files_logger.info(
            "file.replaced",
            extra={"object_type": str(object_type), "file_id": created.id, "version": created.version},
        )
        return FileRead.model_validate(created)

    @staticmethod
    def _get_accessible(
        session: Session,
        actor: ActorUser,
        policy: AccessPolicy,
        object_type: ObjectType,
        file_id: int,
    ) -> FieldFile:
        row = session.get(FieldFile, file_id)
        if row is None or row.object_type != str(object_type):
            raise NotFoundError("file not found")
        record = session.get(RECORD_MODELS[str(object_type)], row.record_id)
        if record is None or record.deleted_at is not None:
            raise NotFoundError("file not found")
        if actor.workspace_id is not None and record.workspace_id != actor.workspace_id:
            raise NotFoundError("file not found")
        if not policy.can_see_owner(record.owner_id):
            raise AuthorizationError("file is not accessible to the current user")
        return row

    @staticmethod
    def _ensure_not_masked(session: Session, row: FieldFile) -> None:
        definition = session.get(CustomField, row.field_id)
        if definition is not None and definition.masked:
            raise AuthorizationError("files on masked fields are not accessible")


DEFAULT_STAGES = (
    StageCreate(name="Proposal", probability=30, description="Offer sent to the customer", stagnation_days=14),
    StageCreate(name="Won", probability=100, description="Deal closed successfully", stagnation_days=0),
    StageCreate(name="Lost", probability=0, description="Deal closed without a sale", stagnation_days=0),
)
MIN_STAGES_PER_PIPELINE = 3


class PipelineService:
    def list_pipelines(self, session: Session, actor: ActorUser) -> list[PipelineRead]:
        AccessPolicy(session, actor).require(Permission.READ)
        return [PipelineRead.model_validate(row) for row in self._workspace_pipelines(session, actor)]

    def create_pipeline(self, session: Session, actor: ActorUser, dto: PipelineCreate) -> PipelineRead:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        position = len(self._workspace_pipelines(session, actor))

        pipeline = Pipeline(workspace_id=actor.workspace_id, name=dto.name.strip(), position=position)
        pipeline.stages = [
            self._new_stage(stage, index) for index, stage in enumerate(dto.stages or DEFAULT_STAGES)
        ]
        session.add(pipeline)
        session.commit()
        session.refresh(pipeline)

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="PIPELINE",
            entity_id=pipeline.id,
            action="CREATE",
            after={"name": pipeline.name, "stages": [stage.name for stage in pipeline.stages]},
            correlation_id=actor.correlation_id,
        )
        return PipelineRead.model_validate(pipeline)

    def update_pipeline(
        self,
        session: Session,
        actor: ActorUser,
        pipeline_id: int,
        dto: PipelineUpdate,
    ) -> PipelineRead:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        pipeline = self._get_pipeline(session, actor, pipeline_id)
        before = {"name": pipeline.name}
        pipeline.name = dto.name.strip()
        session.commit()
        session.refresh(pipeline)

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="PIPELINE",
            entity_id=pipeline.id,
            action="UPDATE",
            before=before,
            after={"name": pipeline.name},
            correlation_id=actor.correlation_id,
        )
        return PipelineRead.model_validate(pipeline)

    def delete_pipeline(self, session: Session, actor: ActorUser, pipeline_id: int) -> None:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        pipeline = self._get_pipeline(session, actor, pipeline_id)
        if len(self._workspace_pipelines(session, actor)) <= 1:
            raise BadRequestError("a workspace needs at least one pipeline")
        if self._count_deals(session, Deal.pipeline_id == pipeline.id):
            raise BadRequestError("pipelines with deals cannot be deleted")

        before = {"name": pipeline.name, "stages": [stage.name for stage in pipeline.stages]}
        session.delete(pipeline)
        session.flush()
        _renumber(self._workspace_pipelines(session, actor))
        session.commit()

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="PIPELINE",
            entity_id=pipeline_id,
            action="DELETE",
            before=before,
            correlation_id=actor.correlation_id,
        )

    def reorder_pipelines(self, session: Session, actor: ActorUser, dto: ReorderRequest) -> list[PipelineRead]:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        rows = self._workspace_pipelines(session, actor)
        ordered = self._apply_order(rows, dto.ordered_ids, "pipeline order is invalid")
        session.commit()

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="PIPELINE",
            entity_id=None,
            action="REORDER",
            after={"ordered_ids": [row.id for row in ordered]},
            correlation_id=actor.correlation_id,
        )
        return [PipelineRead.model_validate(row) for row in ordered]

    def list_stages(self, session: Session, actor: ActorUser, pipeline_id: int) -> list[StageRead]:
        AccessPolicy(session, actor).require(Permission.READ)
        pipeline = self._get_pipeline(session, actor, pipeline_id)
        return [StageRead.model_validate(stage) for stage in pipeline.stages]

    def create_stage(self, session: Session, actor: ActorUser, pipeline_id: int, dto: StageCreate) -> StageRead:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        pipeline = self._get_pipeline(session, actor, pipeline_id)
        count = len(pipeline.stages)
        position = count if dto.position is None else min(dto.position, count)

        stage = self._new_stage(dto, position)
        pipeline.stages.insert(position, stage)
        _renumber(pipeline.stages)
        session.commit()
        session.refresh(stage)

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="STAGE",
            entity_id=stage.id,
            action="CREATE",
            after={"pipeline_id": pipeline.id, "name": stage.name, "position": stage.position},
            correlation_id=actor.correlation_id,
        )
        return StageRead.model_validate(stage)

    def update_stage(self, session: Session, actor: ActorUser, stage_id: int, dto: StageUpdate) -> StageRead:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        stage = self._get_stage(session, actor, stage_id)
        payload = dto.model_dump(exclude_unset=True)
        before = self._stage_snapshot(stage)

        if payload.get("name") is not None:
            stage.name = payload["name"].strip()
        if payload.get("probability") is not None:
            stage.probability = payload["probability"]
        for key in ("description", "stagnation_days"):
            if key in payload:
                setattr(stage, key, payload[key])
        session.commit()
        session.refresh(stage)

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="STAGE",
            entity_id=stage.id,
            action="UPDATE",
            before=before,
            after=self._stage_snapshot(stage),
            correlation_id=actor.correlation_id,
        )
        return StageRead.model_validate(stage)

    def delete_stage(self, session: Session, actor: ActorUser, stage_id: int) -> None:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        stage = self._get_stage(session, actor, stage_id)
        pipeline = stage.pipeline
        if self._count_deals(session, Deal.stage_id == stage.id):
            raise BadRequestError("stages with deals cannot be deleted")
        if len(pipeline.stages) <= MIN_STAGES_PER_PIPELINE:
            raise BadRequestError(f"a pipeline needs at least {MIN_STAGES_PER_PIPELINE} stages")

        before = self._stage_snapshot(stage)
        pipeline.stages.remove(stage)
        session.flush()
        _renumber(pipeline.stages)
        session.commit()

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="STAGE",
            entity_id=stage_id,
            action="DELETE",
            before={"pipeline_id": pipeline.id, **before},
            correlation_id=actor.correlation_id,
        )

    def reorder_stages(
        self,
        session: Session,
        actor: ActorUser,
        pipeline_id: int,
        dto: ReorderRequest,
    ) -> list[StageRead]:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        pipeline = self._get_pipeline(session, actor, pipeline_id)
        ordered = self._apply_order(list(pipeline.stages), dto.ordered_ids, "stage order is invalid")
        session.commit()

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="STAGE",
            entity_id=None,
            action="REORDER",
            meta={"pipeline_id": pipeline.id},
            after={"ordered_ids": [row.id for row in ordered]},
            correlation_id=actor.correlation_id,
        )
        return [StageRead.model_validate(row) for row in ordered]

    @staticmethod
    def _new_stage(dto: StageCreate, position: int) -> Stage:
        return Stage(
            name=dto.name.strip(),
            probability=dto.probability,
            description=dto.description,
            stagnation_days=dto.stagnation_days,
            position=position,
        )

    @staticmethod
    def _stage_snapshot(stage: Stage) -> dict[str, Any]:
        return {
            "name": stage.name,
            "probability": stage.probability,
            "description": stage.description,
            "stagnation_days": stage.stagnation_days,
        }

    @staticmethod
    def _apply_order(rows: Sequence[Any], ordered_ids: Sequence[int], message: str) -> list[Any]:
        by_id = {row.id: row for row in rows}
        if len(ordered_ids) != len(by_id) or set(ordered_ids) != set(by_id):
            raise BadRequestError(message)
        ordered = [by_id[row_id] for row_id in ordered_ids]
        _renumber(ordered)
        return ordered

    @staticmethod
    def _count_deals(session: Session, condition: Any) -> int:
        # soft-deleted deals still hold the foreign key
        return session.scalar(select(func.count()).select_from(Deal).where(condition)) or 0

    @staticmethod
    def _workspace_pipelines(session: Session, actor: ActorUser) -> list[Pipeline]:
        stmt = select(Pipeline).order_by(Pipeline.position.asc(), Pipeline.id.asc())
        if actor.workspace_id is not None:
            stmt = stmt.where(Pipeline.workspace_id == actor.workspace_id)
        return list(session.scalars(stmt).all())

    def _get_pipeline(self, session: Session, actor: ActorUser, pipeline_id: int) -> Pipeline:
        pipeline = session.get(Pipeline, pipeline_id)
        if pipeline is None:
            raise NotFoundError("pipeline not found")
        if actor.workspace_id is not None and pipeline.workspace_id != actor.workspace_id:
            raise NotFoundError("pipeline not found")
        return pipeline

    def _get_stage(self, session: Session, actor: ActorUser, stage_id: int) -> Stage:
        stage = session.get(Stage, stage_id)
        if stage is None:
            raise NotFoundError("stage not found")
        if actor.workspace_id is not None and stage.pipeline.workspace_id != actor.workspace_id:
            raise NotFoundError("stage not found")
        return stage


class TeamService:
    def list_teams(self, session: Session, actor: ActorUser) -> list[TeamRead]:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        stmt = select(Team).order_by(Team.name.asc(), Team.id.asc())
        if actor.workspace_id is not None:
            stmt = stmt.where(Team.workspace_id == actor.workspace_id)
        return [TeamRead.model_validate(row) for row in session.scalars(stmt).all()]

    def create_team(self, session: Session, actor: ActorUser, dto: TeamCreate) -> TeamRead:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        if actor.workspace_id is None:
            raise BadRequestError("workspace information is invalid")
        team = Team(workspace_id=actor.workspace_id, name=dto.name.strip())
        session.add(team)
        session.commit()
        session.refresh(team)

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="TEAM",
            entity_id=team.id,
            action="CREATE",
            after={"name": team.name},
            correlation_id=actor.correlation_id,
        )
        return TeamRead.model_validate(team)

    def update_team(self, session: Session, actor: ActorUser, team_id: int, dto: TeamUpdate) -> TeamRead:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        team = self._get_team(session, actor, team_id)
        before = {"name": team.name}
        team.name = dto.name.strip()
        session.commit()
        session.refresh(team)

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="TEAM",
            entity_id=team.id,
            action="UPDATE",
            before=before,
            after={"name": team.name},
            correlation_id=actor.correlation_id,
        )
        return TeamRead.model_validate(team)

    def delete_team(self, session: Session, actor: ActorUser, team_id: int) -> None:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        team = self._get_team(session, actor, team_id)
        members = session.scalar(select(func.count()).select_from(User).where(User.team_id == team.id)) or 0
        if members:
            raise BadRequestError("teams with members cannot be deleted")
        before = {"name": team.name}
        session.delete(team)
        session.commit()

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="TEAM",
            entity_id=team_id,
            action="DELETE",
            before=before,
            correlation_id=actor.correlation_id,
        )

    def _get_team(self, session: Session, actor: ActorUser, team_id: int) -> Team:
        team = session.get(Team, team_id)
        if team is None:
            raise NotFoundError("team not found")
        if actor.workspace_id is not None and team.workspace_id != actor.workspace_id:
            raise NotFoundError("team not found")
        return team


class UserService:
    def list_users(self, session: Session, actor: ActorUser) -> list[UserSummary]:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        stmt = select(User).order_by(User.id.asc())
        if actor.workspace_id is not None:
            stmt = stmt.where(User.workspace_id == actor.workspace_id)
        return [UserSummary.model_validate(row) for row in session.scalars(stmt).all()]

    def assign_team(self, session: Session, actor: ActorUser, user_id: int, dto: UserTeamUpdate) -> UserSummary:
        AccessPolicy(session, actor).require(Permission.MANAGE)
        user = session.get(User, user_id)
        if user is None or (actor.workspace_id is not None and user.workspace_id != actor.workspace_id):
            raise NotFoundError("user not found")
        if dto.team_id is not None:
            team = session.get(Team, dto.team_id)
            if team is None or team.workspace_id != user.workspace_id:
                raise BadRequestError("team information is invalid")

        before = {"team_id": user.team_id}
        user.team_id = dto.team_id
        session.commit()
        session.refresh(user)

        audit.record(
            actor_user_id=actor.user_id,
            workspace_id=actor.workspace_id,
            entity_type="USER",
            entity_id=user.id,
            action="UPDATE",
            before=before,
            after={"team_id": user.team_id},
            correlation_id=actor.correlation_id,
        )
        return UserSummary.model_validate(user)


custom_field_service = CustomFieldService()
company_service = CompanyService()
contact_service = ContactService()
lead_service = LeadService()
deal_service = DealService()
file_service = FileService()
pipeline_service = PipelineService()
team_service = TeamService()
user_service = UserService()
