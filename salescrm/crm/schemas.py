from __future__ import annotations

from datetime import date, datetime
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from salescrm.fields.types import FieldKind, ObjectType


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


LeadStatus = Literal["NEW", "CONTACTED", "QUALIFIED", "LOST"]


class FieldValueIn(CamelModel):
    field_id: int
    value: Any = None


class FieldValueRead(CamelModel):
    field_id: int
    value_text: str | None = None
    value_number: float | None = None
    value_date: date | None = None
    value_datetime: datetime | None = None
    value_boolean: bool | None = None
    value_user_id: int | None = None
    value_option_id: int | None = None


class OptionValueRead(CamelModel):
    field_id: int
    option_id: int
    label: str | None = None


class UserValueRead(CamelModel):
    field_id: int
    user_id: int
    name: str | None = None


class FileRead(CamelModel):
    id: int
    field_id: int
    original_name: str
    mime_type: str
    size: int
    group_key: str
    version: int
    is_current: bool
    replaced_at: datetime | None = None
    created_at: datetime


class RecordValuesRead(CamelModel):
    field_values: list[FieldValueRead] = Field(default_factory=list)
    option_values: list[OptionValueRead] = Field(default_factory=list)
    user_values: list[UserValueRead] = Field(default_factory=list)
    files: list[FileRead] = Field(default_factory=list)


class CompanyCreate(CamelModel):
    name: str = Field(min_length=1)
    industry: str | None = None
    size: str | None = None
    owner_id: int | None = None
    field_values: list[FieldValueIn] = Field(default_factory=list)


class CompanyUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1)
    industry: str | None = None
    size: str | None = None
    owner_id: int | None = None
    field_values: list[FieldValueIn] | None = None


class CompanyRead(RecordValuesRead):
    id: int
    workspace_id: int | None
    name: str
    industry: str | None
    size: str | None
    owner_id: int
    created_at: datetime
    updated_at: datetime


class ContactCreate(CamelModel):
    name: str = Field(min_length=1)
    email: str | None = None
    phone: str | None = None
    company_id: int | None = None
    owner_id: int | None = None
    field_values: list[FieldValueIn] = Field(default_factory=list)


class ContactUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1)
    email: str | None = None
    phone: str | None = None
    company_id: int | None = None
    owner_id: int | None = None
    field_values: list[FieldValueIn] | None = None


class ContactRead(RecordValuesRead):
    id: int
    workspace_id: int | None
    name: str
    email: str | None
    phone: str | None
    company_id: int | None
    owner_id: int
    created_at: datetime
    updated_at: datetime


class LeadCreate(CamelModel):
    name: str = Field(min_length=1)
    email: str | None = None
    phone: str | None = None
    source: str | None = None
    status: LeadStatus = "NEW"
    company_id: int | None = None
    owner_id: int | None = None
    field_values: list[FieldValueIn] = Field(default_factory=list)


class LeadUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1)
    email: str | None = None
    phone: str | None = None
    source: str | None = None
    status: LeadStatus | None = None
    company_id: int | None = None
    owner_id: int | None = None
    field_values: list[FieldValueIn] | None = None


class LeadRead(RecordValuesRead):
    id: int
    workspace_id: int | None
    name: str
    email: str | None
    phone: str | None
    source: str | None
    status: str
    company_id: int | None
    owner_id: int
    created_at: datetime
    updated_at: datetime


class LeadConvertRequest(CamelModel):
    pipeline_id: int
    stage_id: int
    name: str | None = None
    expected_revenue: float | None = None


class DealCreate(CamelModel):
    name: str = Field(min_length=1)
    pipeline_id: int
    stage_id: int
    owner_id: int | None = None
    expected_revenue: float | None = None
    close_date: date | None = None
    company_id: int | None = None
    contact_id: int | None = None
    field_values: list[FieldValueIn] = Field(default_factory=list)


class DealUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1)
    pipeline_id: int | None = None
    stage_id: int | None = None
    owner_id: int | None = None
    expected_revenue: float | None = None
    close_date: date | None = None
    company_id: int | None = None
    contact_id: int | None = None
    field_values: list[FieldValueIn] | None = None


class DealRead(RecordValuesRead):
    id: int
    workspace_id: int | None
    name: str
    pipeline_id: int
    stage_id: int
    expected_revenue: float | None
    close_date: date | None
    company_id: int | None
    contact_id: int | None
    source_lead_id: int | None
    owner_id: int
    created_at: datetime
    updated_at: datetime


RecordT = TypeVar("RecordT", bound=RecordValuesRead)


class RecordWriteResponse(CamelModel, Generic[RecordT]):
    record: RecordT
    warnings: list[str] = Field(default_factory=list)


class CustomFieldOptionRead(CamelModel):
    id: int
    field_id: int
    label: str
    position: int


class CustomFieldOptionCreate(CamelModel):
    label: str = Field(min_length=1)


class CustomFieldOptionUpdate(CamelModel):
    label: str | None = Field(default=None, min_length=1)
    position: int | None = Field(default=None, ge=0)


class CustomFieldCreate(CamelModel):
    object_type: ObjectType
    label: str = Field(min_length=1)
    kind: FieldKind = Field(alias="type")
    required: bool = False
    masked: bool = False
    visible_in_create: bool = True
    visible_in_pipeline: bool = False
    formula: str | None = None
    options: list[str] | None = None


class CustomFieldUpdate(CamelModel):
    label: str | None = Field(default=None, min_length=1)
    kind: FieldKind | None = Field(default=None, alias="type")
    required: bool | None = None
    masked: bool | None = None
    visible_in_create: bool | None = None
    visible_in_pipeline: bool | None = None
    position: int | None = Field(default=None, ge=0)
    formula: str | None = None


class CustomFieldRead(CamelModel):
    id: int
    workspace_id: int | None
    object_type: ObjectType
    label: str
    kind: FieldKind = Field(alias="type")
    required: bool
    masked: bool
    visible_in_create: bool
    visible_in_pipeline: bool
    position: int
    formula: str | None
    options: list[CustomFieldOptionRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class StageCreate(CamelModel):
    name: str = Field(min_length=1)
    probability: int = Field(default=0, ge=0, le=100)
    description: str | None = None
    stagnation_days: int | None = Field(default=None, ge=0)
    position: int | None = Field(default=None, ge=0)


class StageUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1)
    probability: int | None = Field(default=None, ge=0, le=100)
    description: str | None = None
    stagnation_days: int | None = Field(default=None, ge=0)


class StageRead(CamelModel):
    id: int
    pipeline_id: int
    name: str
    probability: int
    description: str | None = None
    stagnation_days: int | None = None
    position: int


class PipelineCreate(CamelModel):
    name: str = Field(min_length=1)
    stages: list[StageCreate] = Field(default_factory=list)


class PipelineUpdate(CamelModel):
    name: str = Field(min_length=1)


class PipelineRead(CamelModel):
    id: int
    workspace_id: int | None
    name: str
    position: int
    stages: list[StageRead] = Field(default_factory=list)


class ReorderRequest(CamelModel):
    ordered_ids: list[int] = Field(min_length=1)


class TeamCreate(CamelModel):
    name: str = Field(min_length=1)


class TeamUpdate(CamelModel):
    name: str = Field(min_length=1)


class TeamRead(CamelModel):
    id: int
    workspace_id: int | None
    name: str


class UserSummary(CamelModel):
    id: int
    name: str
    email: str
    role: str
    team_id: int | None = None
    manager_id: int | None = None


class UserTeamUpdate(CamelModel):
    team_id: int | None


class AuditRead(CamelModel):
    id: str
    actor_user_id: int
    workspace_id: int | None = None
    entity_type: str
    entity_id: int | None
    action: str
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    meta: dict[str, Any] | None = None
    correlation_id: str | None = None
    occurred_at: str
