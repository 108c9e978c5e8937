from __future__ import annotations

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy import Select, delete, func, select
from sqlalchemy.orm import Session

from salescrm.crm.models import (
    CustomField,
    CustomFieldOption,
    FieldFile,
    FieldOptionValue,
    FieldUserValue,
    FieldValue,
    User,
)
from salescrm.crm.storage import StoredFile
from salescrm.fields.completeness import StoredFieldState
from salescrm.fields.engine import FieldWritePlan
from salescrm.fields.types import SCALAR_COLUMNS, FieldDefinition, ObjectType


@dataclass(slots=True)
class RecordFieldValues:
    field_values: list[FieldValue] = field(default_factory=list)
    option_values: list[dict[str, Any]] = field(default_factory=list)
    user_values: list[dict[str, Any]] = field(default_factory=list)
    files: list[FieldFile] = field(default_factory=list)


def _scoped_fields(object_type: ObjectType, workspace_id: int | None) -> Select[tuple[CustomField]]:
    stmt = select(CustomField).where(
        CustomField.object_type == str(object_type),
        CustomField.deleted_at.is_(None),
    )
    if workspace_id is not None:
        stmt = stmt.where(CustomField.workspace_id == workspace_id)
    return stmt


class FieldValueRepository:
    """Reads and writes the per-record custom-field tables shared by all object types."""

    def load_fields(self, session: Session, object_type: ObjectType, workspace_id: int | None) -> list[CustomField]:
        stmt = _scoped_fields(object_type, workspace_id).order_by(CustomField.position.asc(), CustomField.id.asc())
        return list(session.scalars(stmt).all())

    def load_definitions(
        self,
        session: Session,
        object_type: ObjectType,
        workspace_id: int | None,
    ) -> list[FieldDefinition]:
        return [FieldDefinition.from_model(row) for row in self.load_fields(session, object_type, workspace_id)]

    def masked_field_ids(self, session: Session, object_type: ObjectType, workspace_id: int | None) -> set[int]:
        stmt = _scoped_fields(object_type, workspace_id).where(CustomField.masked.is_(True))
        return {row.id for row in session.scalars(stmt).all()}

    def load_option_map(self, session: Session, field_ids: Iterable[int]) -> dict[int, set[int]]:
        ids = list(field_ids)
        if not ids:
            return {}
        rows = session.execute(
            select(CustomFieldOption.field_id, CustomFieldOption.id).where(
                CustomFieldOption.field_id.in_(ids),
                CustomFieldOption.deleted_at.is_(None),
            )
        ).all()
        option_map: dict[int, set[int]] = defaultdict(set)
        for field_id, option_id in rows:
            option_map[field_id].add(option_id)
        return dict(option_map)

    def load_stored_state(self, session: Session, object_type: ObjectType, record_id: int) -> StoredFieldState:
        scalar_rows = {
            row.field_id: {column: getattr(row, column) for column in SCALAR_COLUMNS}
            for row in session.scalars(
                select(FieldValue).where(
                    FieldValue.object_type == str(object_type),
                    FieldValue.record_id == record_id,
                )
            ).all()
        }
        return StoredFieldState(
            scalar_rows=scalar_rows,
            option_counts=self._count_by_field(session, FieldOptionValue, object_type, record_id),
            user_counts=self._count_by_field(session, FieldUserValue, object_type, record_id),
            file_counts=self._count_by_field(
                session,
                FieldFile,
                object_type,
                record_id,
                FieldFile.is_current.is_(True),
            ),
        )

    def count_values_for_field(self, session: Session, field_id: int) -> int:
        total = 0
        for model in (FieldValue, FieldOptionValue, FieldUserValue, FieldFile):
            total += session.scalar(select(func.count()).select_from(model).where(model.field_id == field_id)) or 0
        return total

    def apply_plan(self, session: Session, object_type: ObjectType, record_id: int, plan: FieldWritePlan) -> None:
        """Upsert scalar rows and replace multi-value sets. Caller owns the transaction."""
        existing: dict[int, FieldValue] = {}
        if plan.value_rows:
            rows = session.scalars(
                select(FieldValue).where(
                    FieldValue.object_type == str(object_type),
                    FieldValue.record_id == record_id,
                    FieldValue.field_id.in_(list(plan.value_rows)),
                )
            ).all()
            existing = {row.field_id: row for row in rows}

        for field_id, columns in plan.value_rows.items():
            row = existing.get(field_id)
            if row is None:
                row = FieldValue(object_type=str(object_type), record_id=record_id, field_id=field_id)
                session.add(row)
            for column in SCALAR_COLUMNS:
                setattr(row, column, columns.get(column))

        for field_id, option_ids in plan.option_values.items():
            session.execute(
                delete(FieldOptionValue).where(
                    FieldOptionValue.object_type == str(object_type),
                    FieldOptionValue.record_id == record_id,
                    FieldOptionValue.field_id == field_id,
                )
            )
            session.add_all(
                FieldOptionValue(object_type=str(object_type), record_id=record_id, field_id=field_id, option_id=oid)
                for oid in option_ids
            )

        for field_id, user_ids in plan.user_values.items():
            session.execute(
                delete(FieldUserValue).where(
                    FieldUserValue.object_type == str(object_type),
                    FieldUserValue.record_id == record_id,
                    FieldUserValue.field_id == field_id,
                )
            )
            session.add_all(
                FieldUserValue(object_type=str(object_type), record_id=record_id, field_id=field_id, user_id=uid)
                for uid in user_ids
            )
        session.flush()

    def add_files(
        self,
        session: Session,
        object_type: ObjectType,
        record_id: int,
        stored_files: Iterable[tuple[int, StoredFile]],
        *,
        uploaded_by_id: int | None,
    ) -> list[FieldFile]:
        rows = [
            FieldFile(
                object_type=str(object_type),
                record_id=record_id,
                field_id=field_id,
                original_name=stored.original_name,
                storage_path=stored.storage_path,
                mime_type=stored.mime_type,
                size=stored.size,
                group_key=uuid.uuid4().hex,
                version=1,
                is_current=True,
                uploaded_by_id=uploaded_by_id,
            )
            for field_id, stored in stored_files
        ]
        session.add_all(rows)
        session.flush()
        return rows

    def load_record_values(
        self,
        session: Session,
        object_type: ObjectType,
        record_ids: Iterable[int],
    ) -> dict[int, RecordFieldValues]:
        ids = list(record_ids)
        bundles: dict[int, RecordFieldValues] = {record_id: RecordFieldValues() for record_id in ids}
        if not ids:
            return bundles
        kind = str(object_type)

        for row in session.scalars(
            select(FieldValue)
            .where(FieldValue.object_type == kind, FieldValue.record_id.in_(ids))
            .order_by(FieldValue.field_id.asc())
        ).all():
            bundles[row.record_id].field_values.append(row)

        option_rows = session.execute(
            select(FieldOptionValue, CustomFieldOption.label)
            .join(CustomFieldOption, CustomFieldOption.id == FieldOptionValue.option_id)
            .where(FieldOptionValue.object_type == kind, FieldOptionValue.record_id.in_(ids))
            .order_by(FieldOptionValue.field_id.asc(), CustomFieldOption.position.asc())
        ).all()
        for value, label in option_rows:
            bundles[value.record_id].option_values.append(
                {"field_id": value.field_id, "option_id": value.option_id, "label": label}
            )

        user_rows = session.execute(
            select(FieldUserValue, User.name)
            .join(User, User.id == FieldUserValue.user_id)
            .where(FieldUserValue.object_type == kind, FieldUserValue.record_id.in_(ids))
            .order_by(FieldUserValue.field_id.asc(), FieldUserValue.id.asc())
        ).all()
        for value, name in user_rows:
            bundles[value.record_id].user_values.append(
                {"field_id": value.field_id, "user_id": value.user_id, "name": name}
            )

        for row in session.scalars(
            select(FieldFile)
            .where(
                FieldFile.object_type == kind,
                FieldFile.record_id.in_(ids),
                FieldFile.is_current.is_(True),
            )
            .order_by(FieldFile.field_id.asc(), FieldFile.id.asc())
        ).all():
            bundles[row.record_id].files.append(row)

        return bundles

    @staticmethod
    def _count_by_field(
        session: Session,
        model: Any,
        object_type: ObjectType,
        record_id: int,
        *criteria: Any,
    ) -> dict[int, int]:
        rows = session.execute(
            select(model.field_id, func.count())
            .where(model.object_type == str(object_type), model.record_id == record_id, *criteria)
            .group_by(model.field_id)
        ).all()
        return {field_id: count for field_id, count in rows}


field_value_repository = FieldValueRepository()
