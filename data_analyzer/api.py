"""
FastAPI REST API for the data analyzer report workflow.

Each login gets a session entry holding the user's SessionContext and their
ReportExecutionController. Controllers keep their poll timers on the server's
event loop, so every endpoint touching one is ``async``.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from data_analyzer.access import fetch_accessible_datasets
from data_analyzer.clients import DataStoreClient, WorkflowClient, create_clients_from_env
from data_analyzer.controller import ControllerState, ReportExecutionController, build_guided_prompt
from data_analyzer.errors import InputValidationError, InvalidTransitionError, RequestFailure
from data_analyzer.models import ConversationRecord, FilterValue, PromptDialogQuestion
from data_analyzer.session import SessionContext, SessionStore
from data_analyzer.settings import Settings, load_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["data-analyzer-v1"])

# In-memory session table; controllers hold live asyncio tasks and cannot be persisted
_SESSIONS: dict[str, dict[str, Any]] = {}
_SERVICES: dict[str, Any] = {}


class LoginRequest(BaseModel):
    email: str
    model: str = ""


class ModelRequest(BaseModel):
    model: str


class PlanRequest(BaseModel):
    prompt: str
    dataset_ids: list[str] = Field(default_factory=list)
    model: str | None = None
    questions: list[PromptDialogQuestion] = Field(default_factory=list)
    answers: dict[str, str] = Field(default_factory=dict)


class StepPatch(BaseModel):
    field: str
    value: Any = None


class FilterUpdate(BaseModel):
    value: FilterValue = ""
    new_key: str | None = None


class PlanJsonBody(BaseModel):
    text: str


class ExecuteRequest(BaseModel):
    batched: bool = False


class SaveReportRequest(BaseModel):
    content: str | None = None


def configure_services(
    workflow: WorkflowClient | Any,
    store: DataStoreClient | Any,
    settings: Settings | None = None,
    session_store: SessionStore | None = None,
) -> None:
    settings = settings or load_settings()
    _SERVICES.clear()
    _SERVICES.update(
        {
            "workflow": workflow,
            "store": store,
            "settings": settings,
            "session_store": session_store or SessionStore(settings.session_dir, settings.redis_url),
        }
    )


def _services() -> dict[str, Any]:
    if not _SERVICES:
        settings = load_settings()
        workflow, store = create_clients_from_env(settings)
        configure_services(workflow, store, settings)
    return _SERVICES


def shutdown_services() -> None:
    for entry in _SESSIONS.values():
        entry["controller"].dispose()
    _SESSIONS.clear()
    for name in ("workflow", "store"):
        close = getattr(_SERVICES.get(name), "close", None)
        if close is not None:
            close()
    _SERVICES.clear()


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except InputValidationError as exc:
        raise HTTPException(status_code=422, detail={"message": str(exc), "field": exc.field}) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except RequestFailure as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


def _drop_session(session_id: str) -> None:
    entry = _SESSIONS.pop(session_id, None)
    if entry is not None:
        entry["controller"].dispose()


def _assert_session(session_id: str) -> dict[str, Any]:
    entry = _SESSIONS.get(session_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found.")
    if entry["context"].init() is None:
        _drop_session(session_id)
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' has expired.")
    return entry


def _controller(session_id: str) -> ReportExecutionController:
    return _assert_session(session_id)["controller"]


@router.get("/api/v1/health")
def health_check() -> dict[str, str]:
    return {"status": "ok", "service": "data-analyzer", "version": "0.1.0"}


@router.post("/api/v1/sessions")
async def create_session(body: LoginRequest) -> dict[str, Any]:
    email = body.email.strip()
    if not email:
        raise HTTPException(status_code=422, detail={"message": "Email is required", "field": "email"})
    services = _services()
    settings: Settings = services["settings"]
    with _translate_errors():
        profile = await asyncio.to_thread(services["store"].get_user_profile, email)
    if profile is None:
        logger.warning("Login rejected for unknown user")
        raise HTTPException(status_code=401, detail="Unknown user.")

    session_id = f"sess_{uuid.uuid4().hex[:8]}"
    context = SessionContext(
        services["session_store"], key=session_id, expiry_hours=settings.session_expiry_hours
    )
    session = context.login(email, body.model, profile.profile)
    controller = ReportExecutionController(
        services["workflow"],
        email=email,
        model=body.model,
        store=services["store"],
        template_id=profile.template_id,
        settings=settings,
    )
    _SESSIONS[session_id] = {
        "session_id": session_id,
        "context": context,
        "controller": controller,
        "dataset_names": {},
    }
    logger.info("Session created", extra={"session_id": session_id})
    return {"session_id": session_id, **session.model_dump(mode="json")}


@router.delete("/api/v1/sessions/{session_id}")
async def delete_session(session_id: str) -> dict[str, str]:
    entry = _SESSIONS.get(session_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found.")
    entry["context"].logout()
    _drop_session(session_id)
    return {"session_id": session_id, "status": "logged_out"}


@router.patch("/api/v1/sessions/{session_id}/model")
async def set_model(session_id: str, body: ModelRequest) -> dict[str, Any]:
    entry = _assert_session(session_id)
    session = entry["context"].set_ai_model(body.model)
    entry["controller"].model = body.model
    return session.model_dump(mode="json")


@router.post("/api/v1/sessions/{session_id}/validate")
async def validate_session(session_id: str) -> dict[str, Any]:
    entry = _assert_session(session_id)
    valid = await asyncio.to_thread(entry["context"].validate, _services()["store"])
    if not valid:
        _drop_session(session_id)
    return {"session_id": session_id, "valid": valid}


@router.get("/api/v1/sessions/{session_id}/datasets")
async def list_datasets(session_id: str) -> dict[str, Any]:
    entry = _assert_session(session_id)
    services = _services()
    with _translate_errors():
        datasets = await asyncio.to_thread(
            fetch_accessible_datasets,
            services["store"],
            entry["context"].identity,
            services["settings"].access_policy,
        )
    entry["dataset_names"] = {dataset.id: dataset.name for dataset in datasets}
    return {"datasets": [dataset.model_dump(mode="json") for dataset in datasets]}


@router.post("/api/v1/sessions/{session_id}/plan/questions")
async def plan_questions(session_id: str, body: PlanRequest) -> dict[str, Any]:
    controller = _controller(session_id)
    with _translate_errors():
        questions = await controller.request_guided_questions(body.prompt, body.dataset_ids, body.model)
    return {"questions": [question.model_dump(mode="json") for question in questions]}


@router.post("/api/v1/sessions/{session_id}/plan")
async def request_plan(session_id: str, body: PlanRequest) -> dict[str, Any]:
    controller = _controller(session_id)
    prompt = body.prompt
    if body.questions:
        prompt = build_guided_prompt(prompt, body.questions, body.answers)
    with _translate_errors():
        await controller.request_plan(prompt, body.dataset_ids, body.model)
    return controller.snapshot()


@router.get("/api/v1/sessions/{session_id}/plan")
async def get_plan(session_id: str) -> dict[str, Any]:
    return _controller(session_id).snapshot()


@router.patch("/api/v1/sessions/{session_id}/plan/steps/{step_index}")
async def patch_step(session_id: str, step_index: int, body: StepPatch) -> dict[str, Any]:
    controller = _controller(session_id)
    with _translate_errors():
        controller.edit_step(step_index, body.field, body.value)
    return controller.snapshot()


@router.post("/api/v1/sessions/{session_id}/plan/steps/{step_index}/filters")
async def create_filter(session_id: str, step_index: int) -> dict[str, Any]:
    controller = _controller(session_id)
    with _translate_errors():
        key = controller.add_filter(step_index)
    return {"key": key, **controller.snapshot()}


@router.put("/api/v1/sessions/{session_id}/plan/steps/{step_index}/filters/{key}")
async def put_filter(session_id: str, step_index: int, key: str, body: FilterUpdate) -> dict[str, Any]:
    controller = _controller(session_id)
    with _translate_errors():
        if body.new_key is not None and body.new_key.strip() and body.new_key.strip() != key:
            controller.rename_filter(step_index, key, body.new_key)
            key = body.new_key.strip()
        controller.edit_filter(step_index, key, body.value)
    return controller.snapshot()


@router.delete("/api/v1/sessions/{session_id}/plan/steps/{step_index}/filters/{key}")
async def remove_filter(session_id: str, step_index: int, key: str) -> dict[str, Any]:
    controller = _controller(session_id)
    with _translate_errors():
        controller.delete_filter(step_index, key)
    return controller.snapshot()


@router.patch("/api/v1/sessions/{session_id}/plan/steps/{step_index}/query")
async def patch_query(session_id: str, step_index: int, body: StepPatch) -> dict[str, Any]:
    controller = _controller(session_id)
    with _translate_errors():
        controller.edit_query_field(step_index, body.field, body.value)
    return controller.snapshot()


@router.get("/api/v1/sessions/{session_id}/plan/json")
async def open_plan_json(session_id: str) -> dict[str, Any]:
    controller = _controller(session_id)
    with _translate_errors():
        if controller.state is not ControllerState.EDITING:
            controller.toggle_json_view()
    return {"text": controller.json_text, "json_error": controller.json_error}


@router.put("/api/v1/sessions/{session_id}/plan/json")
async def save_plan_json(session_id: str, body: PlanJsonBody) -> dict[str, Any]:
    controller = _controller(session_id)
    with _translate_errors():
        if controller.state is not ControllerState.EDITING:
            controller.toggle_json_view()
        controller.toggle_json_view(body.text)
    return controller.snapshot()


@router.post("/api/v1/sessions/{session_id}/execute")
async def execute(session_id: str, body: ExecuteRequest | None = None) -> dict[str, Any]:
    controller = _controller(session_id)
    with _translate_errors():
        await controller.execute_plan(batched=body.batched if body else False)
    return controller.snapshot()


@router.get("/api/v1/sessions/{session_id}/progress")
async def get_progress(session_id: str, refresh: bool = False) -> dict[str, Any]:
    controller = _controller(session_id)
    if refresh:
        await controller.poll_once()
    return controller.snapshot()


@router.post("/api/v1/sessions/{session_id}/stop")
async def stop(session_id: str) -> dict[str, Any]:
    controller = _controller(session_id)
    stopped = controller.stop_execution()
    return {"stopped": stopped, **controller.snapshot()}


@router.post("/api/v1/sessions/{session_id}/report/save")
async def save_report(session_id: str, body: SaveReportRequest | None = None) -> dict[str, Any]:
    entry = _assert_session(session_id)
    controller: ReportExecutionController = entry["controller"]
    with _translate_errors():
        record_id = await controller.save_report(body.content if body else None, entry["dataset_names"])
    return {"saved": record_id is not None, "record_id": record_id}


@router.post("/api/v1/sessions/{session_id}/history/load")
async def load_history(session_id: str, record: ConversationRecord) -> dict[str, Any]:
    controller = _controller(session_id)
    with _translate_errors():
        controller.load_from_history(record)
    return controller.snapshot()


@router.get("/api/v1/sessions/{session_id}/history")
async def list_history(session_id: str) -> dict[str, Any]:
    entry = _assert_session(session_id)
    with _translate_errors():
        records = await asyncio.to_thread(
            _services()["store"].get_conversation_history, entry["context"].identity.email
        )
    datasets = sorted({record.dataset_name for record in records if record.dataset_name})
    return {"records": [record.model_dump(mode="json") for record in records], "datasets": datasets}


async def _history_record(entry: dict[str, Any], record_id: str) -> ConversationRecord:
    with _translate_errors():
        records = await asyncio.to_thread(
            _services()["store"].get_conversation_history, entry["context"].identity.email
        )
    for record in records:
        if record.id == record_id:
            return record
    raise HTTPException(status_code=404, detail=f"History record '{record_id}' not found.")


@router.post("/api/v1/sessions/{session_id}/history/{record_id}/load")
async def load_history_record(session_id: str, record_id: str) -> dict[str, Any]:
    entry = _assert_session(session_id)
    record = await _history_record(entry, record_id)
    controller: ReportExecutionController = entry["controller"]
    with _translate_errors():
        controller.load_from_history(record)
    return controller.snapshot()


@router.delete("/api/v1/sessions/{session_id}/history/{record_id}")
async def delete_history_record(session_id: str, record_id: str) -> dict[str, Any]:
    entry = _assert_session(session_id)
    await _history_record(entry, record_id)
    with _translate_errors():
        await asyncio.to_thread(_services()["store"].delete_conversation, record_id)
    controller: ReportExecutionController = entry["controller"]
    if controller.saved_record_id == record_id:
        controller.saved_record_id = None
    logger.info("History record deleted", extra={"session_id": session_id})
    return {"deleted": True, "record_id": record_id}
