"""FastAPI routes for ideas, actions and verification."""

from __future__ import annotations

from datetime import datetime, timedelta
import hmac
import logging
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from agent.errors import (
    AgentError,
    InvalidStateError,
    NotFoundError,
    QueueSubmissionError,
    ValidationError,
)
from agent.runtime import AgentRuntime
from models import ActionRecord, EventRecord, IdeaRecord, RunRecord, VerificationRecord
from services.database import check_connection
from time_utils import utc_now

logger = logging.getLogger(__name__)


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class CreateActionRequest(_Request):
    owner: str = Field(alias="userToken")
    site_url: str = Field(alias="siteUrl")
    action_type: str = Field(alias="actionType")
    title: str
    description: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    policy: Optional[dict[str, Any]] = None
    priority_score: Optional[int] = Field(default=None, alias="priorityScore")
    scheduled_for: Optional[datetime] = Field(default=None, alias="scheduledFor")
    idea_id: Optional[str] = Field(default=None, alias="ideaId")


class UpdateActionRequest(_Request):
    owner: str = Field(alias="userToken")
    status: Optional[str] = None
    updates: dict[str, Any] = Field(default_factory=dict)
    policy: Optional[dict[str, Any]] = None
    queue_for_execution: bool = Field(default=False, alias="queueForExecution")


class ApproveActionRequest(_Request):
    owner: str = Field(alias="userToken")
    approved_by: str = Field(alias="approvedBy")


class CreateIdeaRequest(_Request):
    owner: str = Field(alias="userToken")
    site_url: str = Field(alias="siteUrl")
    title: str
    hypothesis: Optional[str] = None
    evidence: dict[str, Any] = Field(default_factory=dict)
    ice_score: Optional[int] = Field(default=None, alias="iceScore")
    tags: list[str] = Field(default_factory=list)


class UpdateIdeaRequest(_Request):
    idea_id: str = Field(alias="ideaId")
    owner: str = Field(alias="userToken")
    status: Optional[str] = None
    updates: dict[str, Any] = Field(default_factory=dict)


class VerifyRequest(_Request):
    action_id: str = Field(alias="actionId")
    run_id: str = Field(alias="runId")
    owner: str = Field(alias="userToken")


def _dump(model: type[BaseModel], obj: Any) -> dict[str, Any]:
    return model.model_validate(obj).model_dump(mode="json")


def _require_owner(owner: str | None) -> str:
    if not owner:
        raise _Unauthorized("User token required")
    return owner


class _Unauthorized(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def create_app(runtime: AgentRuntime) -> FastAPI:
    """Create the API bound to an already-built runtime."""
    app = FastAPI(title="seo-agent-core", version="0.1.0")
    app.state.runtime = runtime

    @app.exception_handler(AgentError)
    async def _agent_error(_request: Request, exc: AgentError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Request failed: code=%s error=%s", exc.code, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc), "code": exc.code},
        )

    @app.exception_handler(_Unauthorized)
    async def _unauthorized(_request: Request, exc: _Unauthorized) -> JSONResponse:
        return JSONResponse(status_code=401, content={"error": exc.message, "code": "unauthorized"})

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(_request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        return JSONResponse(
            status_code=400,
            content={
                "error": f"Invalid request: {location}: {first.get('msg', 'invalid')}",
                "code": ValidationError.code,
            },
        )

    @app.get("/health")
    def health() -> JSONResponse:
        healthy = check_connection(runtime.engine)
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "ok" if healthy else "degraded", "database": healthy},
        )

    # Actions

    @app.post("/actions", status_code=201)
    def create_action(body: CreateActionRequest) -> dict[str, Any]:
        try:
            action = runtime.lifecycle.create_action(
                body.owner,
                body.site_url,
                body.action_type,
                body.title,
                payload=body.payload,
                policy=body.policy,
                priority_score=body.priority_score,
                scheduled_for=body.scheduled_for,
                description=body.description,
                idea_id=body.idea_id,
            )
        except NotFoundError as exc:
            raise ValidationError(f"Invalid idea: {exc}") from exc
        return {"action": _dump(ActionRecord, action)}

    @app.get("/actions")
    def list_actions(
        owner: Optional[str] = Query(default=None, alias="userToken"),
        site_url: Optional[str] = Query(default=None, alias="siteUrl"),
        status: Optional[str] = None,
        idea_id: Optional[str] = Query(default=None, alias="ideaId"),
        limit: int = Query(default=50, ge=1, le=200),
    ) -> dict[str, Any]:
        owner = _require_owner(owner)
        actions = runtime.lifecycle.list_actions(
            owner,
            site_url=site_url,
            status=status,
            idea_id=idea_id,
            limit=limit,
        )
        return {
            "actions": [_dump(ActionRecord, action) for action in actions],
            "stats": runtime.lifecycle.action_stats(owner, site_url=site_url),
        }

    @app.get("/actions/{action_id}")
    def get_action(
        action_id: str,
        owner: Optional[str] = Query(default=None, alias="userToken"),
    ) -> dict[str, Any]:
        owner = _require_owner(owner)
        action = runtime.lifecycle.get_action(action_id, owner)
        runs = runtime.runs.list_for_action(action.id)
        return {
            "action": _dump(ActionRecord, action),
            "runs": [_dump(RunRecord, run) for run in runs],
        }

    @app.put("/actions/{action_id}")
    def update_action(action_id: str, body: UpdateActionRequest) -> dict[str, Any]:
        lifecycle = runtime.lifecycle
        if body.status is not None:
            action = lifecycle.transition(
                action_id, body.owner, body.status, body.updates, policy=body.policy
            )
        elif body.updates or body.policy is not None:
            action = lifecycle.update_action(action_id, body.owner, body.updates, policy=body.policy)
        else:
            action = lifecycle.get_action(action_id, body.owner)

        response: dict[str, Any] = {}
        if body.queue_for_execution and action.status == "queued":
            try:
                response["jobId"] = lifecycle.submit_for_execution(action_id, body.owner)
            except QueueSubmissionError as exc:
                return JSONResponse(
                    status_code=500,
                    content={"error": f"Failed to queue action for execution: {exc}", "code": exc.code},
                )
            action = lifecycle.get_action(action_id, body.owner)
        response["action"] = _dump(ActionRecord, action)
        return response

    @app.post("/actions/{action_id}/approve")
    def approve_action(action_id: str, body: ApproveActionRequest) -> dict[str, Any]:
        action = runtime.lifecycle.approve_action(action_id, body.owner, body.approved_by)
        return {"action": _dump(ActionRecord, action)}

    # Verification

    @app.post("/verify")
    def queue_verification(body: VerifyRequest) -> dict[str, Any]:
        # Validate ownership and state before handing off to the background runner.
        action = runtime.lifecycle.get_action(body.action_id, body.owner)
        if action.status != "completed":
            raise InvalidStateError(
                "action", action.status, "verified", "verification requires a completed action"
            )
        runtime.verification.schedule_verification(action.id, body.run_id)
        job_id = runtime.background.submit(
            "verification",
            runtime.verification.verify_action,
            action.id,
            body.run_id,
            owner=body.owner,
        )
        estimated = utc_now() + timedelta(seconds=runtime.verification.config.probe_timeout_seconds)
        return {"jobId": job_id, "estimated_completion": estimated.isoformat()}

    @app.get("/verify")
    def get_verification(
        owner: Optional[str] = Query(default=None, alias="userToken"),
        action_id: Optional[str] = Query(default=None, alias="actionId"),
        run_id: Optional[str] = Query(default=None, alias="runId"),
        limit: int = Query(default=10, ge=1, le=100),
    ) -> dict[str, Any]:
        owner = _require_owner(owner)
        if action_id and run_id:
            record = runtime.verification.verify_action(action_id, run_id, owner=owner)
            return {"verification": _dump(VerificationRecord, record)}
        events = runtime.verification.verification_history(owner, limit=limit)
        return {"verifications": [_dump(EventRecord, event) for event in events]}

    @app.post("/verify/sweep")
    def run_sweep(
        owner: Optional[str] = Query(default=None, alias="userToken"),
        site_url: Optional[str] = Query(default=None, alias="siteUrl"),
        force: bool = False,
        authorization: Optional[str] = Header(default=None),
        x_cron_secret: Optional[str] = Header(default=None),
    ) -> dict[str, Any]:
        _check_cron_secret(runtime.settings.http.cron_secret, authorization, x_cron_secret)
        report = runtime.verification.sweep(owner=owner, site_url=site_url, force=force)
        return {"success": True, **report.to_dict()}

    @app.get("/verify/pending")
    def pending_verifications(
        owner: Optional[str] = Query(default=None, alias="userToken"),
        site_url: Optional[str] = Query(default=None, alias="siteUrl"),
    ) -> dict[str, Any]:
        owner = _require_owner(owner)
        summary = runtime.verification.pending_summary(owner=owner, site_url=site_url)
        due = runtime.verification.list_due(owner=owner, site_url=site_url, force=True, limit=10)
        return {
            "summary": {
                "due_for_check": summary.due_for_check,
                "pending": summary.pending,
                "needs_recheck": summary.needs_recheck,
            },
            "items": [_dump(VerificationRecord, record) for record in due],
        }

    # Ideas

    @app.get("/ideas")
    def list_ideas(
        owner: Optional[str] = Query(default=None, alias="userToken"),
        site_url: Optional[str] = Query(default=None, alias="siteUrl"),
        status: Optional[str] = None,
        idea_id: Optional[str] = Query(default=None, alias="ideaId"),
        limit: int = Query(default=50, ge=1, le=200),
    ) -> dict[str, Any]:
        owner = _require_owner(owner)
        ideas = runtime.ideas.list_ideas(
            owner,
            site_url=site_url,
            status=status,
            idea_id=idea_id,
            limit=limit,
        )
        return {"ideas": [_dump(IdeaRecord, idea) for idea in ideas]}

    @app.post("/ideas", status_code=201)
    def create_idea(body: CreateIdeaRequest) -> dict[str, Any]:
        idea = runtime.ideas.create_idea(
            body.owner,
            body.site_url,
            body.title,
            hypothesis=body.hypothesis,
            evidence=body.evidence,
            ice_score=body.ice_score,
            tags=body.tags,
        )
        return {"idea": _dump(IdeaRecord, idea)}

    @app.put("/ideas")
    def update_idea(body: UpdateIdeaRequest) -> dict[str, Any]:
        if body.status is not None:
            idea = runtime.ideas.update_idea_status(
                body.idea_id, body.owner, body.status, body.updates
            )
        elif body.updates:
            idea = runtime.ideas.update_idea(body.idea_id, body.owner, body.updates)
        else:
            raise ValidationError("Nothing to update: provide status or updates.")
        return {"idea": _dump(IdeaRecord, idea)}

    @app.get("/ideas/{idea_id}/progress")
    def idea_progress(
        idea_id: str,
        owner: Optional[str] = Query(default=None, alias="userToken"),
    ) -> dict[str, Any]:
        owner = _require_owner(owner)
        progress = runtime.ideas.track_idea_progress(idea_id, owner)
        return {
            "idea": _dump(IdeaRecord, progress.idea),
            "actions": [_dump(ActionRecord, action) for action in progress.actions],
            "status_counts": progress.status_counts,
            "total_actions": progress.total_actions,
            "completed_actions": progress.completed_actions,
        }

    return app


def _check_cron_secret(
    expected: str | None,
    authorization: str | None,
    x_cron_secret: str | None,
) -> None:
    """Reject sweep calls that do not carry the configured cron secret."""
    if not expected:
        raise _Unauthorized("Cron secret is not configured")
    provided = x_cron_secret
    if authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()
    if not provided or not hmac.compare_digest(provided, expected):
        raise _Unauthorized("Invalid cron secret")


def run_app(app: FastAPI, *, host: str, port: int, log_level: str = "info") -> None:
    """Serve the app through uvicorn."""
    uvicorn.run(app, host=host, port=port, log_level=log_level.lower())
