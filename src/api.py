"""FastAPI boundary for the interpret / act pipeline.

Endpoints are sync so request work runs on FastAPI's thread pool; the
service itself owns the LLM, retrieval and step executors.
"""

# FastAPI reads the annotations at runtime; keep them unstringified.

import math
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from errors import AssistantError, NoMatchFound, RateLimitExceeded, TenantIsolationViolation
from health import get_health_status
from logging_utils import log_security_event, logger
from models import ActionType, EntityType, EntryKind, TenantContext, Utterance
from retrieval import IndexedEntity
from security_utils import MAX_UTTERANCE_LENGTH
from service import ActionCommand, AssistantService

MAX_RETRY_AFTER_SECONDS = 86400


class TenantContextModel(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=64)
    user_id: str = Field(..., min_length=1, max_length=64)
    project_id: Optional[str] = None
    active_sprint_id: Optional[str] = None
    entity_type_hint: Optional[EntityType] = None

    def to_context(self) -> TenantContext:
        return TenantContext(
            tenant_id=self.tenant_id,
            user_id=self.user_id,
            project_id=self.project_id,
            active_sprint_id=self.active_sprint_id,
            entity_type_hint=self.entity_type_hint,
        )


class InterpretRequest(BaseModel):
    utterance: str = Field(..., min_length=1, max_length=MAX_UTTERANCE_LENGTH)
    tenant_context: TenantContextModel


class DraftSelection(BaseModel):
    action_type: ActionType
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ActionCommandModel(BaseModel):
    interpret_id: str
    selected_candidate_id: str
    draft: DraftSelection
    confirmed: bool = False


class ActRequest(BaseModel):
    action_command: ActionCommandModel
    idempotency_key: str = Field(..., min_length=1, max_length=128)
    tenant_context: TenantContextModel


class DismissRequest(BaseModel):
    tenant_context: TenantContextModel
    reason: Optional[str] = Field(default=None, max_length=500)


class EntityModel(BaseModel):
    id: str
    tenant_id: str
    entity_type: EntityType
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    status: Optional[str] = None
    updated_at: Optional[str] = None
    assignee: Optional[str] = None
    pull_requests: List[str] = Field(default_factory=list)
    commits: List[str] = Field(default_factory=list)
    mentions: List[str] = Field(default_factory=list)


class IndexRequest(BaseModel):
    tenant_context: TenantContextModel
    entities: List[EntityModel]


def _error_body(exc: AssistantError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": type(exc).__name__, "message": exc.message}
    if isinstance(exc, NoMatchFound):
        body["suggestion"] = exc.suggestion
    return body


def create_app(service: AssistantService) -> FastAPI:
    """
    Build the HTTP app around an assembled service.

    Args:
        service: Interpret/act facade; its executors are shut down with the app

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Sprint assistant API starting", extra={"extra": {"environment": service.config.environment}})
        yield
        service.shutdown()
        logger.info("Sprint assistant API stopped")

    app = FastAPI(
        title="Sprint Assistant",
        description="Natural-language actions for stories, tasks and sprints",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(RateLimitExceeded)
    async def rate_limited(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        retry_after = math.ceil(min(exc.retry_after_seconds, MAX_RETRY_AFTER_SECONDS))
        body = _error_body(exc)
        body["retry_after_seconds"] = retry_after
        return JSONResponse(status_code=exc.status_code, content=body, headers={"Retry-After": str(retry_after)})

    @app.exception_handler(AssistantError)
    async def assistant_error(request: Request, exc: AssistantError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Request failed", extra={"extra": {"path": request.url.path, "error": exc.message}})
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc))

    @app.post("/interpret")
    def interpret(body: InterpretRequest) -> Dict[str, Any]:
        context = body.tenant_context.to_context()
        utterance = Utterance(tenant_id=context.tenant_id, user_id=context.user_id, text=body.utterance)
        return service.interpret(utterance, context).to_dict()

    @app.post("/act")
    def act(body: ActRequest) -> Dict[str, Any]:
        command = body.action_command
        result = service.act(
            ActionCommand(
                interpret_id=command.interpret_id,
                selected_candidate_id=command.selected_candidate_id,
                action_type=command.draft.action_type,
                parameters=command.draft.parameters,
                confirmed=command.confirmed,
            ),
            body.idempotency_key,
            body.tenant_context.to_context(),
        )
        return result.to_dict()

    @app.post("/interpret/{interpret_id}/dismiss")
    def dismiss(interpret_id: str, body: DismissRequest) -> Dict[str, Any]:
        entry = service.dismiss(interpret_id, body.tenant_context.to_context(), body.reason)
        return entry.to_dict()

    @app.get("/history")
    def history(
        tenant_id: str = Query(..., min_length=1),
        user_id: str = Query(..., min_length=1),
        limit: int = Query(50, ge=1, le=500),
        kind: Optional[EntryKind] = None,
    ) -> Dict[str, Any]:
        entries = service.history_for(TenantContext(tenant_id=tenant_id, user_id=user_id), limit=limit, kind=kind)
        return {"entries": [entry.to_dict() for entry in entries]}

    @app.post("/entities")
    def index_entities(body: IndexRequest) -> Dict[str, Any]:
        tenant_id = body.tenant_context.tenant_id
        foreign = [entity.id for entity in body.entities if entity.tenant_id != tenant_id]
        if foreign:
            log_security_event("Index request with cross-tenant entities", {"tenant_id": tenant_id, "entity_ids": foreign})
            raise TenantIsolationViolation("Entities must belong to the requesting tenant")
        indexed = service.retrieval.index(IndexedEntity.from_dict(entity.model_dump(mode="json")) for entity in body.entities)
        return {"indexed": indexed}

    @app.get("/health")
    def health(full: bool = False) -> JSONResponse:
        status = get_health_status(service, include_llm_check=full)
        return JSONResponse(status_code=200 if status.healthy else 503, content=status.to_dict())

    return app
