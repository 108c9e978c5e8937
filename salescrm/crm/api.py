from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session
from starlette.datastructures import UploadFile as StarletteUploadFile

from salescrm import audit
from salescrm.context import get_correlation_id
from salescrm.core.auth import AuthClaims, get_auth_claims
from salescrm.core.database import get_db
from salescrm.crm.errors import BadRequestError, NotAuthenticatedError
from salescrm.crm.models import User
from salescrm.crm.policy import AccessPolicy, ActorUser, Permission
from salescrm.crm.schemas import (
    AuditRead,
    CompanyCreate,
    CompanyRead,
    CompanyUpdate,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    CustomFieldCreate,
    CustomFieldOptionCreate,
    CustomFieldOptionRead,
    CustomFieldOptionUpdate,
    CustomFieldRead,
    CustomFieldUpdate,
    DealCreate,
    DealRead,
    DealUpdate,
    FileRead,
    LeadConvertRequest,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    PipelineCreate,
    PipelineRead,
    PipelineUpdate,
    RecordWriteResponse,
    ReorderRequest,
    StageCreate,
    StageRead,
    StageUpdate,
    TeamCreate,
    TeamRead,
    TeamUpdate,
    UserSummary,
    UserTeamUpdate,
)
from salescrm.crm.service import (
    RecordService,
    company_service,
    contact_service,
    custom_field_service,
    deal_service,
    file_service,
    lead_service,
    pipeline_service,
    team_service,
    user_service,
)
from salescrm.crm.storage import LocalFileStorage, get_file_storage
from salescrm.fields.errors import FieldValidationError
from salescrm.fields.types import ObjectType

custom_fields_router = APIRouter(prefix="/api", tags=["crm.custom_fields"])
files_router = APIRouter(prefix="/api/files", tags=["crm.files"])
pipelines_router = APIRouter(prefix="/api/pipelines", tags=["crm.pipelines"])
stages_router = APIRouter(prefix="/api/stages", tags=["crm.pipelines"])
teams_router = APIRouter(prefix="/api/teams", tags=["crm.teams"])
users_router = APIRouter(prefix="/api/users", tags=["crm.users"])
audit_router = APIRouter(prefix="/api/audit-logs", tags=["crm.audit"])

FILE_PART_PREFIX = "file-"
FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=get_correlation_id() or request.headers.get("x-correlation-id"),
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def failure_response(request: Request, code: str, exc: Exception) -> JSONResponse:
    if isinstance(exc, FieldValidationError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=code,
            message=exc.message,
            details={"reason": exc.reason},
        )
    if isinstance(exc, ValidationError):
        return error_response(
            request,
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message="request body is invalid",
            details=[{"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()],
        )
    if isinstance(exc, HTTPException):
        return error_response(
            request,
            status_code=exc.status_code,
            code=code,
            message=str(exc.detail),
            details=exc.detail,
        )
    raise exc


HANDLED_ERRORS = (HTTPException, FieldValidationError, ValidationError)


def get_current_user(
    claims: AuthClaims = Depends(get_auth_claims),
    db: Session = Depends(get_db),
) -> ActorUser:
    if claims.sub is None or not claims.sub.isdigit():
        raise NotAuthenticatedError()
    user = db.get(User, int(claims.sub))
    if user is None:
        raise NotAuthenticatedError()
    return ActorUser.from_user(user, correlation_id=get_correlation_id())


@dataclass
class RecordPayload:
    """Raw request body plus uploads keyed by field id, decoded inside the endpoint."""

    raw: bytes | str | None
    files: dict[int, list[UploadFile]] = field(default_factory=dict)

    def body(self) -> dict[str, Any]:
        if self.raw is None or self.raw in (b"", ""):
            return {}
        try:
            decoded = json.loads(self.raw)
        except (TypeError, ValueError) as exc:
            raise BadRequestError("request body is not valid JSON") from exc
        if not isinstance(decoded, dict):
            raise BadRequestError("request body must be a JSON object")
        return decoded

    def parse(self, schema: type[BaseModel]) -> Any:
        return schema.model_validate(self.body())


async def read_record_payload(request: Request) -> RecordPayload:
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith(FORM_CONTENT_TYPES):
        return RecordPayload(raw=await request.body())

    form = await request.form()
    files: dict[int, list[UploadFile]] = {}
    for key in form.keys():
        if not key.startswith(FILE_PART_PREFIX):
            continue
        field_id_raw = key[len(FILE_PART_PREFIX):]
        uploads = [item for item in form.getlist(key) if isinstance(item, StarletteUploadFile)]
        if field_id_raw.isdigit() and uploads:
            files.setdefault(int(field_id_raw), []).extend(uploads)
    payload = form.get("payload")
    return RecordPayload(raw=payload if isinstance(payload, str) else None, files=files)


def _parse_object_type(raw: str) -> ObjectType:
    try:
        return ObjectType(raw.upper())
    except ValueError as exc:
        raise BadRequestError("object type is invalid") from exc


def build_record_router(
    *,
    prefix: str,
    tag: str,
    code: str,
    service: RecordService[Any],
    create_schema: type[BaseModel],
    update_schema: type[BaseModel],
    read_schema: type[BaseModel],
    list_endpoint: Callable[..., Any],
) -> APIRouter:
    """Create/get/update/delete routes shared by the four record types."""
    record_router = APIRouter(prefix=prefix, tags=[tag])
    write_response = RecordWriteResponse[read_schema]  # type: ignore[valid-type]

    record_router.add_api_route("", list_endpoint, methods=["GET"], response_model=list[read_schema])

    @record_router.post("", response_model=write_response, status_code=status.HTTP_201_CREATED)
    def create_record(
        request: Request,
        payload: RecordPayload = Depends(read_record_payload),
        db: Session = Depends(get_db),
        user: ActorUser = Depends(get_current_user),
        storage: LocalFileStorage = Depends(get_file_storage),
    ) -> Any:
        try:
            dto = payload.parse(create_schema)
            result = service.create_record(db, user, dto, uploads=payload.files, storage=storage)
            return write_response(record=result.record, warnings=result.warnings)
        except HANDLED_ERRORS as exc:
            return failure_response(request, f"crm_{code}_create_failed", exc)

    @record_router.get("/{record_id}", response_model=read_schema)
    def get_record(
        request: Request,
        record_id: int,
        db: Session = Depends(get_db),
        user: ActorUser = Depends(get_current_user),
    ) -> Any:
        try:
            return service.get_record(db, user, record_id)
        except HANDLED_ERRORS as exc:
            return failure_response(request, f"crm_{code}_get_failed", exc)

    @record_router.patch("/{record_id}", response_model=write_response)
    def update_record(
        request: Request,
        record_id: int,
        payload: RecordPayload = Depends(read_record_payload),
        db: Session = Depends(get_db),
        user: ActorUser = Depends(get_current_user),
        storage: LocalFileStorage = Depends(get_file_storage),
    ) -> Any:
        try:
            dto = payload.parse(update_schema)
            result = service.update_record(db, user, record_id, dto, uploads=payload.files, storage=storage)
            return write_response(record=result.record, warnings=result.warnings)
        except HANDLED_ERRORS as exc:
            return failure_response(request, f"crm_{code}_update_failed", exc)

    @record_router.delete("/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_record(
        request: Request,
        record_id: int,
        db: Session = Depends(get_db),
        user: ActorUser = Depends(get_current_user),
    ) -> Response:
        try:
            service.delete_record(db, user, record_id)
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        except HANDLED_ERRORS as exc:
            return failure_response(request, f"crm_{code}_delete_failed", exc)

    return record_router


def list_companies(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return company_service.list_records(db, user)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_company_list_failed", exc)


def list_contacts(
    request: Request,
    company_id: int | None = Query(default=None, alias="companyId"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return contact_service.list_records(db, user, company_id=company_id)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_contact_list_failed", exc)


def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return lead_service.list_records(db, user, status=status_filter)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_lead_list_failed", exc)


def list_deals(
    request: Request,
    pipeline_id: int | None = Query(default=None, alias="pipelineId"),
    stage_id: int | None = Query(default=None, alias="stageId"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        if pipeline_id is None:
            raise BadRequestError("pipeline information is invalid")
        return deal_service.list_records(db, user, pipeline_id=pipeline_id, stage_id=stage_id)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_deal_list_failed", exc)


companies_router = build_record_router(
    prefix="/api/companies",
    tag="crm.companies",
    code="company",
    service=company_service,
    create_schema=CompanyCreate,
    update_schema=CompanyUpdate,
    read_schema=CompanyRead,
    list_endpoint=list_companies,
)
contacts_router = build_record_router(
    prefix="/api/contacts",
    tag="crm.contacts",
    code="contact",
    service=contact_service,
    create_schema=ContactCreate,
    update_schema=ContactUpdate,
    read_schema=ContactRead,
    list_endpoint=list_contacts,
)
leads_router = build_record_router(
    prefix="/api/leads",
    tag="crm.leads",
    code="lead",
    service=lead_service,
    create_schema=LeadCreate,
    update_schema=LeadUpdate,
    read_schema=LeadRead,
    list_endpoint=list_leads,
)
deals_router = build_record_router(
    prefix="/api/deals",
    tag="crm.deals",
    code="deal",
    service=deal_service,
    create_schema=DealCreate,
    update_schema=DealUpdate,
    read_schema=DealRead,
    list_endpoint=list_deals,
)


@leads_router.post("/{lead_id}/convert", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def convert_lead(
    request: Request,
    lead_id: int,
    dto: LeadConvertRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return lead_service.convert_lead(db, user, lead_id, dto)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_lead_convert_failed", exc)


@custom_fields_router.get("/custom-fields", response_model=list[CustomFieldRead])
def list_custom_fields(
    request: Request,
    object_type: str = Query(default="DEAL", alias="objectType"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CustomFieldRead] | JSONResponse:
    try:
        return custom_field_service.list_fields(db, user, _parse_object_type(object_type))
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_custom_field_list_failed", exc)


@custom_fields_router.post("/custom-fields", response_model=CustomFieldRead, status_code=status.HTTP_201_CREATED)
def create_custom_field(
    request: Request,
    dto: CustomFieldCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomFieldRead | JSONResponse:
    try:
        return custom_field_service.create_field(db, user, dto)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_custom_field_create_failed", exc)


@custom_fields_router.patch("/custom-fields/{field_id}", response_model=CustomFieldRead)
def update_custom_field(
    request: Request,
    field_id: int,
    dto: CustomFieldUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomFieldRead | JSONResponse:
    try:
        return custom_field_service.update_field(db, user, field_id, dto)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_custom_field_update_failed", exc)


@custom_fields_router.delete("/custom-fields/{field_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_custom_field(
    request: Request,
    field_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        custom_field_service.delete_field(db, user, field_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_custom_field_delete_failed", exc)


@custom_fields_router.post(
    "/custom-fields/{field_id}/options",
    response_model=CustomFieldOptionRead,
    status_code=status.HTTP_201_CREATED,
)
def create_custom_field_option(
    request: Request,
    field_id: int,
    dto: CustomFieldOptionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomFieldOptionRead | JSONResponse:
    try:
        return custom_field_service.add_option(db, user, field_id, dto)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_custom_field_option_create_failed", exc)


@custom_fields_router.patch("/custom-field-options/{option_id}", response_model=CustomFieldOptionRead)
def update_custom_field_option(
    request: Request,
    option_id: int,
    dto: CustomFieldOptionUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomFieldOptionRead | JSONResponse:
    try:
        return custom_field_service.update_option(db, user, option_id, dto)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_custom_field_option_update_failed", exc)


@custom_fields_router.delete("/custom-field-options/{option_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_custom_field_option(
    request: Request,
    option_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        custom_field_service.delete_option(db, user, option_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_custom_field_option_delete_failed", exc)


@files_router.get("/{object_type}/{file_id}")
def download_file(
    request: Request,
    object_type: str,
    file_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    storage: LocalFileStorage = Depends(get_file_storage),
) -> Response:
    try:
        row, content = file_service.download(db, user, _parse_object_type(object_type), file_id, storage)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_file_download_failed", exc)
    return Response(
        content=content,
        media_type=row.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{row.original_name}"'},
    )


@files_router.delete("/{object_type}/{file_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_file(
    request: Request,
    object_type: str,
    file_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    storage: LocalFileStorage = Depends(get_file_storage),
) -> Response:
    try:
        file_service.delete_file(db, user, _parse_object_type(object_type), file_id, storage)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_file_delete_failed", exc)


@files_router.post("/{object_type}/{file_id}/replace", response_model=FileRead, status_code=status.HTTP_201_CREATED)
def replace_file(
    request: Request,
    object_type: str,
    file_id: int,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    storage: LocalFileStorage = Depends(get_file_storage),
) -> FileRead | JSONResponse:
    try:
        return file_service.replace_file(db, user, _parse_object_type(object_type), file_id, file, storage)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_file_replace_failed", exc)


@pipelines_router.get("", response_model=list[PipelineRead])
def list_pipelines(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineRead] | JSONResponse:
    try:
        return pipeline_service.list_pipelines(db, user)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_pipeline_list_failed", exc)


@pipelines_router.post("", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        return pipeline_service.create_pipeline(db, user, dto)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_pipeline_create_failed", exc)


@pipelines_router.post("/reorder", response_model=list[PipelineRead])
def reorder_pipelines(
    request: Request,
    dto: ReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineRead] | JSONResponse:
    try:
        return pipeline_service.reorder_pipelines(db, user, dto)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_pipeline_reorder_failed", exc)


@pipelines_router.patch("/{pipeline_id}", response_model=PipelineRead)
def update_pipeline(
    request: Request,
    pipeline_id: int,
    dto: PipelineUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        return pipeline_service.update_pipeline(db, user, pipeline_id, dto)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_pipeline_update_failed", exc)


@pipelines_router.delete("/{pipeline_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_pipeline(
    request: Request,
    pipeline_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        pipeline_service.delete_pipeline(db, user, pipeline_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_pipeline_delete_failed", exc)


@pipelines_router.get("/{pipeline_id}/stages", response_model=list[StageRead])
def list_stages(
    request: Request,
    pipeline_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageRead] | JSONResponse:
    try:
        return pipeline_service.list_stages(db, user, pipeline_id)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_stage_list_failed", exc)


@pipelines_router.post("/{pipeline_id}/stages", response_model=StageRead, status_code=status.HTTP_201_CREATED)
def create_stage(
    request: Request,
    pipeline_id: int,
    dto: StageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageRead | JSONResponse:
    try:
        return pipeline_service.create_stage(db, user, pipeline_id, dto)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_stage_create_failed", exc)


@pipelines_router.post("/{pipeline_id}/stages/reorder", response_model=list[StageRead])
def reorder_stages(
    request: Request,
    pipeline_id: int,
    dto: ReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageRead] | JSONResponse:
    try:
        return pipeline_service.reorder_stages(db, user, pipeline_id, dto)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_stage_reorder_failed", exc)


@stages_router.patch("/{stage_id}", response_model=StageRead)
def update_stage(
    request: Request,
    stage_id: int,
    dto: StageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageRead | JSONResponse:
    try:
        return pipeline_service.update_stage(db, user, stage_id, dto)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_stage_update_failed", exc)


@stages_router.delete("/{stage_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_stage(
    request: Request,
    stage_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        pipeline_service.delete_stage(db, user, stage_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_stage_delete_failed", exc)


@teams_router.get("", response_model=list[TeamRead])
def list_teams(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TeamRead] | JSONResponse:
    try:
        return team_service.list_teams(db, user)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_team_list_failed", exc)


@teams_router.post("", response_model=TeamRead, status_code=status.HTTP_201_CREATED)
def create_team(
    request: Request,
    dto: TeamCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TeamRead | JSONResponse:
    try:
        return team_service.create_team(db, user, dto)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_team_create_failed", exc)


@teams_router.patch("/{team_id}", response_model=TeamRead)
def update_team(
    request: Request,
    team_id: int,
    dto: TeamUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TeamRead | JSONResponse:
    try:
        return team_service.update_team(db, user, team_id, dto)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_team_update_failed", exc)


@teams_router.delete("/{team_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_team(
    request: Request,
    team_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        team_service.delete_team(db, user, team_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_team_delete_failed", exc)


@users_router.get("/assignable", response_model=list[UserSummary])
def list_assignable_users(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[UserSummary]:
    return [UserSummary.model_validate(row) for row in AccessPolicy(db, user).assignable_users()]


@users_router.get("", response_model=list[UserSummary])
def list_users(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[UserSummary] | JSONResponse:
    try:
        return user_service.list_users(db, user)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_user_list_failed", exc)


@users_router.patch("/{user_id}", response_model=UserSummary)
def update_user_team(
    request: Request,
    user_id: int,
    dto: UserTeamUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserSummary | JSONResponse:
    try:
        return user_service.assign_team(db, user, user_id, dto)
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_user_update_failed", exc)


@audit_router.get("", response_model=list[AuditRead])
def list_audit_logs(
    request: Request,
    entity_type: str | None = Query(default=None, alias="entityType"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AuditRead] | JSONResponse:
    try:
        AccessPolicy(db, user).require(Permission.MANAGE)
        entries = audit.list_entries(workspace_id=user.workspace_id, entity_type=entity_type, limit=limit)
        return [AuditRead.model_validate(entry) for entry in entries]
    except HANDLED_ERRORS as exc:
        return failure_response(request, "crm_audit_list_failed", exc)
