"""
Boundary normalization for workflow and data-store responses.

The workflow gateway wraps its payloads inconsistently: the useful object may
sit at the top level, under ``data``, ``data.data``, ``result``, ``output`` or
``json``, inside a one-element list, or serialized as a JSON string. All of
that searching happens here; everything past this module only sees validated
``ReportPlan`` / ``ExecutionProgress`` / ``ExecutionTicket`` models or a
``RequestFailure``.
"""
from __future__ import annotations

import json
from typing import Any, Callable, Iterator

from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import ValidationError

from data_analyzer.errors import InputValidationError, RequestFailure
from data_analyzer.models import ExecutionProgress, ExecutionTicket, PromptDialogQuestion, ReportPlan
from data_analyzer.schemas import (
    EXECUTION_PROGRESS_SCHEMA,
    EXECUTION_TICKET_SCHEMA,
    PROMPT_DIALOG_SCHEMA,
    REPORT_PLAN_SCHEMA,
)

_WRAPPER_KEYS = ("data", "result", "output", "json", "body", "plan", "progress")
_MAX_DEPTH = 8
_PROGRESS_STATUSES = {"starting", "in_progress", "completed", "error"}


class SchemaValidationError(ValueError):
    pass


def validate_schema(output: dict[str, Any], schema: dict[str, Any]) -> None:
    try:
        validate(instance=output, schema=schema)
    except JSONSchemaValidationError as exc:
        raise SchemaValidationError(exc.message) from exc


def _loads_if_json(text: str) -> Any:
    stripped = text.strip()
    if not stripped or stripped[0] not in "{[\"":
        return None
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return None


def _candidates(node: Any, depth: int = 0) -> Iterator[dict[str, Any]]:
    if depth > _MAX_DEPTH:
        return
    if isinstance(node, str):
        parsed = _loads_if_json(node)
        if parsed is not None:
            yield from _candidates(parsed, depth + 1)
        return
    if isinstance(node, dict):
        yield node
        for key in _WRAPPER_KEYS:
            if key in node:
                yield from _candidates(node[key], depth + 1)
    elif isinstance(node, list):
        for item in node:
            yield from _candidates(item, depth + 1)


def find_payload(raw: Any, predicate: Callable[[dict[str, Any]], bool]) -> dict[str, Any] | None:
    for candidate in _candidates(raw):
        if predicate(candidate):
            return candidate
    return None


def error_message(raw: Any) -> str | None:
    """Return the first error text the gateway put anywhere in the envelope."""
    for candidate in _candidates(raw):
        error = candidate.get("error")
        if isinstance(error, str) and error.strip():
            return error.strip()
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if candidate.get("status") == "error" and candidate.get("message"):
            return str(candidate["message"])
    return None


def _is_plan(node: dict[str, Any]) -> bool:
    return isinstance(node.get("steps"), list) and "plan_id" in node


def _is_progress(node: dict[str, Any]) -> bool:
    return node.get("status") in _PROGRESS_STATUSES and ("steps" in node or "report_id" in node)


def _is_ticket(node: dict[str, Any]) -> bool:
    return isinstance(node.get("report_id"), str) and bool(node["report_id"])


def _is_questions(node: dict[str, Any]) -> bool:
    return isinstance(node.get("questions"), list)


def _require(raw: Any, predicate: Callable[[dict[str, Any]], bool], what: str) -> dict[str, Any]:
    payload = find_payload(raw, predicate)
    if payload is None:
        raise RequestFailure(error_message(raw) or f"Response did not contain a {what}.")
    return payload


def _clean_text_fields(step: dict[str, Any], keys: tuple[str, ...]) -> dict[str, Any]:
    cleaned = dict(step)
    for key in keys:
        if cleaned.get(key) is None:
            cleaned[key] = ""
    return cleaned


def normalize_plan(raw: Any) -> ReportPlan:
    payload = _require(raw, _is_plan, "report plan")
    try:
        validate_schema(payload, REPORT_PLAN_SCHEMA)
        plan = ReportPlan.model_validate(payload)
    except (SchemaValidationError, ValidationError) as exc:
        raise RequestFailure(f"Planner returned an invalid plan: {exc}") from exc
    if not plan.total_steps:
        plan = plan.model_copy(update={"total_steps": len(plan.steps)})
    return plan


def normalize_progress(raw: Any, report_id: str) -> ExecutionProgress:
    payload = dict(_require(raw, _is_progress, "progress record"))
    payload.setdefault("report_id", report_id)
    payload["steps"] = [
        _clean_text_fields(step, ("purpose", "dataset_id")) if isinstance(step, dict) else step
        for step in payload.get("steps") or []
    ]
    try:
        validate_schema(payload, EXECUTION_PROGRESS_SCHEMA)
        return ExecutionProgress.model_validate(payload)
    except (SchemaValidationError, ValidationError) as exc:
        raise RequestFailure(f"Executor returned malformed progress: {exc}") from exc


def normalize_ticket(raw: Any, fallback_report_id: str | None = None) -> ExecutionTicket:
    payload = find_payload(raw, _is_ticket)
    if payload is None:
        if fallback_report_id is None:
            raise RequestFailure(error_message(raw) or "Executor did not return a report_id.")
        message = error_message(raw)
        if message:
            raise RequestFailure(message)
        payload = {"report_id": fallback_report_id}
    try:
        validate_schema(payload, EXECUTION_TICKET_SCHEMA)
        return ExecutionTicket.model_validate(payload)
    except (SchemaValidationError, ValidationError) as exc:
        raise RequestFailure(f"Executor returned an invalid submission receipt: {exc}") from exc


def normalize_questions(raw: Any) -> list[PromptDialogQuestion]:
    payload = _require(raw, _is_questions, "question list")
    try:
        validate_schema(payload, PROMPT_DIALOG_SCHEMA)
        return [PromptDialogQuestion.model_validate(item) for item in payload["questions"]]
    except (SchemaValidationError, ValidationError) as exc:
        raise RequestFailure(f"Planner returned invalid questions: {exc}") from exc


def parse_plan_text(text: str, field: str = "plan_json") -> ReportPlan:
    """Parse user-supplied plan JSON, tolerating a double-stringified document."""
    try:
        parsed: Any = json.loads(text)
        if isinstance(parsed, str):
            parsed = json.loads(parsed)
    except (TypeError, json.JSONDecodeError) as exc:
        raise InputValidationError(f"Invalid JSON: {exc}", field=field) from exc

    if not isinstance(parsed, dict) or not isinstance(parsed.get("steps"), list):
        raise InputValidationError('JSON must contain a "steps" array', field=field)
    try:
        validate_schema(parsed, REPORT_PLAN_SCHEMA)
        return ReportPlan.model_validate(parsed)
    except SchemaValidationError as exc:
        raise InputValidationError(str(exc), field=field) from exc
    except ValidationError as exc:
        raise InputValidationError(_first_error(exc), field=field) from exc


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def extract_report_html(raw: str | None) -> str:
    """Pull the report body out of a formatter result that may be HTML or ``{subject, content}``."""
    if not raw or not raw.strip():
        return ""
    trimmed = raw.strip()
    if trimmed.startswith("{"):
        try:
            parsed = json.loads(trimmed)
        except json.JSONDecodeError:
            return raw
        if isinstance(parsed, dict):
            if parsed.get("content"):
                return str(parsed["content"])
            if not parsed:
                return ""
    return raw
