"""FastAPI application exposing the enrollment core to the route layer."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator, model_validator

from .capacity import RosterPartition
from .config import Settings, load_settings
from .errors import (
    CoreError,
    InvalidContact,
    NotFound,
    PersistError,
    RecordStoreError,
    Rejection,
    UpstreamTimeout,
)
from .exchange import CourseExchange
from .identity import IdentityResolver
from .importer import RosterImporter
from .models import ClassRef, Enrollment, Role, StudentRef
from .record_store import RecordStore
from .roles import RoleLinker
from .roster import RosterService
from .security import build_auth

logger = logging.getLogger("enrollment.api")


class ResolveIdentityRequest(BaseModel):
    phone: str = Field(..., min_length=1, max_length=64)

    @field_validator("phone")
    @classmethod
    def _normalize_phone_input(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("phone must not be empty")
        return stripped


class ResolveIdentityResponse(BaseModel):
    status: Literal["found", "not_found"]
    normalized: str
    bare_variant: Optional[str] = None
    role: Optional[Role] = None
    entity_id: Optional[int] = None
    document_id: Optional[str] = None


class LinkRoleRequest(BaseModel):
    role: Literal["admin", "mentor", "student"]
    entity_id: int = Field(..., ge=1)
    override: bool = False


class LinkRoleResponse(BaseModel):
    account_id: int
    role: Role
    entity_id: int
    outcome: str


class EnrollmentView(BaseModel):
    rank: int
    student_id: int
    student_name: str
    document_id: Optional[str]
    enrolled_at: datetime


class RosterResponse(BaseModel):
    class_id: int
    document_id: Optional[str]
    title: str
    enrollment_open: bool
    capacity: int
    seats_left: int
    enrolled: List[EnrollmentView]
    overflow: List[EnrollmentView]


class AvailableClassView(BaseModel):
    id: int
    document_id: Optional[str]
    title: str
    slug: str
    level: str
    enrolled: int
    capacity: int


class AvailableClassesResponse(BaseModel):
    classes: List[AvailableClassView]
    total: int


class OverflowClassView(BaseModel):
    class_id: int
    title: str
    slug: str
    level: str
    total: int
    enrolled: int
    overflow_count: int
    overflow: List[EnrollmentView]


class ExceededReportResponse(BaseModel):
    classes: List[OverflowClassView]
    total_overflow: int
    total_enabled: int
    overflow_percentage: float


class _StudentTarget(BaseModel):
    student_id: Optional[int] = Field(default=None, ge=1)
    student_document_id: Optional[str] = Field(default=None, min_length=1, max_length=64)

    @model_validator(mode="after")
    def _require_student(self):  # type: ignore[override]
        if self.student_id is None and not self.student_document_id:
            raise ValueError("student_id or student_document_id is required")
        return self

    def student_ref(self) -> StudentRef:
        return StudentRef(id=self.student_id, document_id=self.student_document_id)


def _class_target(value: Union[int, str]) -> Union[int, str]:
    if isinstance(value, int):
        if value < 1:
            raise ValueError("class id must be positive")
        return value
    stripped = value.strip()
    if not stripped:
        raise ValueError("class id must not be empty")
    return stripped


class EnrollRequest(_StudentTarget):
    class_id: Union[int, str]
    class_document_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("class_id")
    @classmethod
    def _normalize_class_id(cls, value: Union[int, str]) -> Union[int, str]:
        return _class_target(value)


class EnrollResponse(BaseModel):
    class_id: int
    title: str


class ExchangeRequest(_StudentTarget):
    from_class_id: int = Field(..., ge=1)
    to_class_id: Union[int, str]
    to_class_document_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("to_class_id")
    @classmethod
    def _normalize_to_class_id(cls, value: Union[int, str]) -> Union[int, str]:
        return _class_target(value)


class ExchangeResponse(BaseModel):
    student_id: Any
    from_class_id: int
    from_class_title: Optional[str]
    to_class_id: int
    to_class_title: str


class ImportRosterRequest(BaseModel):
    rows: List[Dict[str, Any]] = Field(..., min_length=1)
    offset: int = Field(default=0, ge=0)


class ImportRowErrorView(BaseModel):
    row: int
    name: str
    message: str


class ImportRosterResponse(BaseModel):
    imported: int
    skipped: int
    errors: List[ImportRowErrorView]
    duplicates_removed: int
    total_rows: int
    processed: int
    next_offset: Optional[int]
    phase: str


def _enrollment_views(enrollments: tuple[Enrollment, ...], start: int = 1) -> List[EnrollmentView]:
    return [
        EnrollmentView(
            rank=rank,
            student_id=item.student_id,
            student_name=item.student_name,
            document_id=item.document_id,
            enrolled_at=item.enrolled_at,
        )
        for rank, item in enumerate(enrollments, start=start)
    ]


def _overflow_views(split: RosterPartition) -> List[EnrollmentView]:
    return _enrollment_views(split.overflow, start=len(split.enrolled) + 1)


def _status_for(exc: CoreError) -> int:
    if isinstance(exc, InvalidContact):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, NotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, Rejection):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, UpstreamTimeout):
        return status.HTTP_504_GATEWAY_TIMEOUT
    if isinstance(exc, (RecordStoreError, PersistError)):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(
    *,
    settings: Settings | None = None,
    store: RecordStore | None = None,
) -> FastAPI:
    if settings is None:
        settings = load_settings()
    owns_store = store is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.store is None:
            app.state.store = RecordStore(settings.record_store)
        try:
            yield
        finally:
            if owns_store and app.state.store is not None:
                await app.state.store.aclose()
                app.state.store = None

    app = FastAPI(
        title="Enrollment Core",
        description="Identity resolution, seat limits, exchanges and roster imports",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store

    @app.exception_handler(CoreError)
    async def _core_error_handler(_request: Request, exc: CoreError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.warning("Request failed with %s: %s", exc.code, exc.message)
        return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})

    def get_store() -> RecordStore:
        current = app.state.store
        if current is None:  # pragma: no cover - lifespan always provides one
            raise RuntimeError("Record store is not initialised")
        return current

    def get_rosters(store: RecordStore = Depends(get_store)) -> RosterService:
        return RosterService(store, capacity=settings.enrollment.max_seats)

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    auth = build_auth(settings.api_tokens)
    protected_router = APIRouter(dependencies=[Depends(auth)] if auth else [])

    @protected_router.post("/v1/identity/resolve", response_model=ResolveIdentityResponse)
    async def resolve_identity(
        payload: ResolveIdentityRequest,
        store: RecordStore = Depends(get_store),
    ) -> ResolveIdentityResponse:
        resolver = IdentityResolver(store, country_code=settings.enrollment.country_code)
        contact, resolution = await resolver.resolve_identity(payload.phone)
        if resolution is None:
            return ResolveIdentityResponse(
                status="not_found",
                normalized=contact.normalized,
                bare_variant=contact.bare_variant,
            )
        return ResolveIdentityResponse(
            status="found",
            normalized=contact.normalized,
            bare_variant=contact.bare_variant,
            role=resolution.role,
            entity_id=resolution.entity_id,
            document_id=resolution.document_id,
        )

    @protected_router.post("/v1/accounts/{account_id}/role", response_model=LinkRoleResponse)
    async def link_role(
        account_id: int,
        payload: LinkRoleRequest,
        store: RecordStore = Depends(get_store),
    ) -> LinkRoleResponse:
        linker = RoleLinker(store, role_ids=settings.enrollment.role_ids)
        result = await linker.link(
            account_id, Role(payload.role), payload.entity_id, override=payload.override
        )
        return LinkRoleResponse(
            account_id=result.account_id,
            role=result.role,
            entity_id=result.entity_id,
            outcome=result.outcome,
        )

    @protected_router.get("/v1/classes/available", response_model=AvailableClassesResponse)
    async def available_classes(
        rosters: RosterService = Depends(get_rosters),
    ) -> AvailableClassesResponse:
        available = await rosters.available_classes()
        return AvailableClassesResponse(
            classes=[
                AvailableClassView(
                    id=item.course.id,
                    document_id=item.course.document_id,
                    title=item.course.title,
                    slug=item.course.slug,
                    level=item.course.level,
                    enrolled=item.enrolled,
                    capacity=item.capacity,
                )
                for item in available
            ],
            total=len(available),
        )

    @protected_router.get("/v1/classes/{class_id}/roster", response_model=RosterResponse)
    async def classify_roster(
        class_id: int,
        rosters: RosterService = Depends(get_rosters),
    ) -> RosterResponse:
        report = await rosters.classify_roster(class_id)
        split = report.partition
        return RosterResponse(
            class_id=report.course.id,
            document_id=report.course.document_id,
            title=report.course.title,
            enrollment_open=report.course.enrollment_open,
            capacity=split.capacity,
            seats_left=split.seats_left,
            enrolled=_enrollment_views(split.enrolled),
            overflow=_overflow_views(split),
        )

    @protected_router.get("/v1/reports/exceeded", response_model=ExceededReportResponse)
    async def exceeded_report(
        rosters: RosterService = Depends(get_rosters),
    ) -> ExceededReportResponse:
        report = await rosters.exceeded_report()
        return ExceededReportResponse(
            classes=[
                OverflowClassView(
                    class_id=item.class_id,
                    title=item.title,
                    slug=item.slug,
                    level=item.level,
                    total=item.partition.total,
                    enrolled=len(item.partition.enrolled),
                    overflow_count=len(item.partition.overflow),
                    overflow=_overflow_views(item.partition),
                )
                for item in report.classes
            ],
            total_overflow=report.total_overflow,
            total_enabled=report.total_enabled,
            overflow_percentage=report.overflow_percentage,
        )

    @protected_router.post(
        "/v1/enrollments",
        response_model=EnrollResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def enroll(
        payload: EnrollRequest,
        rosters: RosterService = Depends(get_rosters),
    ) -> EnrollResponse:
        course = await rosters.enroll(
            payload.student_ref(), ClassRef.parse(payload.class_id, payload.class_document_id)
        )
        return EnrollResponse(class_id=course.id, title=course.title)

    @protected_router.post("/v1/enrollments/exchange", response_model=ExchangeResponse)
    async def exchange_enrollment(
        payload: ExchangeRequest,
        rosters: RosterService = Depends(get_rosters),
    ) -> ExchangeResponse:
        result = await CourseExchange(rosters).exchange(
            payload.student_ref(),
            payload.from_class_id,
            ClassRef.parse(payload.to_class_id, payload.to_class_document_id),
        )
        return ExchangeResponse(
            student_id=result.student_id,
            from_class_id=result.from_class_id,
            from_class_title=result.from_class_title,
            to_class_id=result.to_class_id,
            to_class_title=result.to_class_title,
        )

    @protected_router.post("/v1/imports/roster", response_model=ImportRosterResponse)
    async def import_roster(
        payload: ImportRosterRequest,
        store: RecordStore = Depends(get_store),
    ) -> ImportRosterResponse:
        report = await RosterImporter(store, settings.imports).run(payload.rows, payload.offset)
        return ImportRosterResponse(**report.to_dict())

    app.include_router(protected_router)

    return app


__all__ = ["create_app"]
