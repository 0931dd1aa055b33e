"""
Offline Sync Engine - Reference Remote API

A small FastAPI application implementing the resource API the engine talks
to. Records live in memory; every write stamps ``updatedAt`` so conflict
detection has a server-side marker to compare against.

It is the in-process reference server the test suite mounts through
``httpx.ASGITransport``; it is not shipped as a runnable service.
"""

import logging
import uuid
from datetime import datetime
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .models import Clock, utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# Schemas
# =============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    status_code: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    version: str


class ActionReceipt(BaseModel):
    """Acknowledgement for a custom action call."""
    action: str
    accepted: bool = True
    received_at: datetime


# =============================================================================
# Repository
# =============================================================================

class ResourceRepository:
    """
    In-memory resource storage with failure injection.

    ``fail_next(n)`` makes the next ``n`` resource or action requests answer
    503, which is how tests drive the retry and error paths.
    """

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock
        self.resources: dict[str, dict[str, dict[str, Any]]] = {}
        self.actions: list[dict[str, Any]] = []
        self.failures_remaining = 0

    def _stamp(self) -> str:
        return self.clock().isoformat()

    def seed(
        self,
        resource_type: str,
        record_id: str,
        payload: dict[str, Any],
        updated_at: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Insert a record directly, optionally with an explicit last-modified time."""
        stamp = updated_at.isoformat() if updated_at else self._stamp()
        record = {**payload, "id": record_id, "updatedAt": stamp}
        self.resources.setdefault(resource_type, {})[record_id] = record
        return record

    def fail_next(self, count: int) -> None:
        self.failures_remaining = count

    def consume_failure(self) -> bool:
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            return True
        return False

    def get(self, resource_type: str, record_id: str) -> Optional[dict[str, Any]]:
        return self.resources.get(resource_type, {}).get(record_id)

    def records(self, resource_type: str) -> list[dict[str, Any]]:
        return list(self.resources.get(resource_type, {}).values())

    def create(self, resource_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        record_id = str(payload.get("id") or uuid.uuid4().hex)
        record = {**payload, "id": record_id, "updatedAt": self._stamp()}
        self.resources.setdefault(resource_type, {})[record_id] = record
        return record

    def update(
        self, resource_type: str, record_id: str, payload: dict[str, Any]
    ) -> Optional[dict[str, Any]]:
        if self.get(resource_type, record_id) is None:
            return None
        record = {**payload, "id": record_id, "updatedAt": self._stamp()}
        self.resources[resource_type][record_id] = record
        return record

    def delete(self, resource_type: str, record_id: str) -> bool:
        return self.resources.get(resource_type, {}).pop(record_id, None) is not None

    def record_action(self, name: str, body: Any) -> datetime:
        received_at = self.clock()
        self.actions.append({"action": name, "body": body, "received_at": received_at})
        return received_at


def get_repository(request: Request) -> ResourceRepository:
    return request.app.state.repository


Repository = Annotated[ResourceRepository, Depends(get_repository)]


# =============================================================================
# Routes
# =============================================================================

router = APIRouter(prefix="/api")


@router.api_route(
    "/health",
    methods=["GET", "HEAD"],
    response_model=HealthResponse,
    tags=["Health"],
    summary="Health check",
)
async def health_check() -> HealthResponse:
    """Reachability probe target. Never subject to failure injection."""
    return HealthResponse(status="healthy", version=__version__)


@router.post(
    "/actions/{name}",
    response_model=ActionReceipt,
    tags=["Actions"],
    summary="Invoke a custom action",
)
async def invoke_action(
    name: str,
    repository: Repository,
    body: Annotated[Any, Body()] = None,
) -> ActionReceipt:
    received_at = repository.record_action(name, body)
    logger.info(f"Action received: {name}")
    return ActionReceipt(action=name, received_at=received_at)


@router.get("/{resource_type}", tags=["Resources"], summary="List records")
async def list_records(resource_type: str, repository: Repository) -> list[dict[str, Any]]:
    return repository.records(resource_type)


@router.get(
    "/{resource_type}/{record_id}",
    tags=["Resources"],
    responses={404: {"description": "Record not found", "model": ErrorResponse}},
    summary="Get a record",
)
async def get_record(
    resource_type: str, record_id: str, repository: Repository
) -> dict[str, Any]:
    record = repository.get(resource_type, record_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Record not found")
    return record


@router.post(
    "/{resource_type}",
    status_code=status.HTTP_201_CREATED,
    tags=["Resources"],
    responses={409: {"description": "Record already exists", "model": ErrorResponse}},
    summary="Create a record",
)
async def create_record(
    resource_type: str,
    payload: Annotated[dict[str, Any], Body()],
    repository: Repository,
) -> dict[str, Any]:
    if payload.get("id") is not None and repository.get(resource_type, str(payload["id"])):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Record already exists")
    record = repository.create(resource_type, payload)
    logger.info(f"Created {resource_type} {record['id']}")
    return record


@router.put(
    "/{resource_type}/{record_id}",
    tags=["Resources"],
    responses={404: {"description": "Record not found", "model": ErrorResponse}},
    summary="Replace a record",
)
async def update_record(
    resource_type: str,
    record_id: str,
    payload: Annotated[dict[str, Any], Body()],
    repository: Repository,
) -> dict[str, Any]:
    record = repository.update(resource_type, record_id, payload)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Record not found")
    logger.info(f"Updated {resource_type} {record_id}")
    return record


@router.delete(
    "/{resource_type}/{record_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Resources"],
    responses={404: {"description": "Record not found", "model": ErrorResponse}},
    summary="Delete a record",
)
async def delete_record(resource_type: str, record_id: str, repository: Repository) -> Response:
    if not repository.delete(resource_type, record_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Record not found")
    logger.info(f"Deleted {resource_type} {record_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Application
# =============================================================================

def create_app(repository: Optional[ResourceRepository] = None) -> FastAPI:
    """
    Build the reference API.

    Args:
        repository: Optional pre-seeded repository; a fresh one is created if omitted

    Returns:
        FastAPI application with ``app.state.repository`` set
    """
    app = FastAPI(
        title="Offline Sync Reference API",
        version=__version__,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
    )
    app.state.repository = repository or ResourceRepository()

    @app.middleware("http")
    async def inject_failures(request: Request, call_next):
        """Answer 503 while the repository has injected failures queued."""
        repo: ResourceRepository = request.app.state.repository
        if not request.url.path.endswith("/health") and repo.consume_failure():
            logger.debug(f"Injected failure: {request.method} {request.url.path}")
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content=ErrorResponse(error="Service Unavailable", status_code=503).model_dump(),
            )
        return await call_next(request)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle HTTP exceptions with consistent format."""
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=exc.detail if isinstance(exc.detail, str) else "Error",
                status_code=exc.status_code,
            ).model_dump(),
            headers=getattr(exc, "headers", None),
        )

    app.include_router(router)
    return app
