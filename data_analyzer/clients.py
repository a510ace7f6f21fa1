from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from data_analyzer.errors import RequestFailure
from data_analyzer.models import (
    ConversationRecord,
    Dataset,
    ExecutionProgress,
    ExecutionTicket,
    ProfileAssignment,
    PromptDialogQuestion,
    ReportPlan,
    UserProfile,
)
from data_analyzer.normalize import (
    error_message,
    find_payload,
    normalize_plan,
    normalize_progress,
    normalize_questions,
    normalize_ticket,
)
from data_analyzer.settings import Settings, load_settings

logger = logging.getLogger(__name__)

PLAN_REPORT_WEBHOOK_PATH = "webhook/plan-report"
PROMPT_DIALOG_WEBHOOK_PATH = "webhook/prompt-dialog"
EXECUTE_PLAN_WEBHOOK_PATH = "webhook/execute-plan"
CHECK_PROGRESS_WEBHOOK_PATH = "webhook/check-report-progress"
RUN_FORMATTER_WEBHOOK_PATH = "webhook/run-formatter"
LIST_DATASETS_WEBHOOK_PATH = "webhook/list-datasets"
PROFILE_ASSIGNMENTS_WEBHOOK_PATH = "webhook/list-profile-assignments"

USER_PROFILE_COLLECTION = "data_analyzer_user_profile"
CONVERSATION_COLLECTION = "conversation_history"
DATASET_COLLECTION = "datasets"
LIST_PAGE_SIZE = 500


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _conversation_record(raw: dict[str, Any], fallback_created: str) -> ConversationRecord:
    record = dict(raw)
    record["created"] = record.get("created_at") or record.get("created") or fallback_created
    return ConversationRecord.model_validate(record)


class McpTransport:
    """Posts skill invocations to an MCP gateway's ``/mcp/execute`` endpoint."""

    def __init__(self, base_url: str, timeout: float = 120, http: Any | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = http or requests.Session()

    def execute(self, skill: str, params: dict[str, Any], input_data: dict[str, Any] | None = None) -> Any:
        body: dict[str, Any] = {"skill": skill, "params": params}
        if input_data is not None:
            body["input"] = input_data
        try:
            response = self._http.post(f"{self.base_url}/mcp/execute", json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RequestFailure(f"{skill} request failed: {exc}") from exc
        if response.status_code >= 400:
            detail = response.text
            try:
                detail = response.json().get("error", detail)
            except (ValueError, AttributeError):
                pass
            raise RequestFailure(f"{response.status_code}: {detail}")
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise RequestFailure(f"{skill} returned a non-JSON body.") from exc

    def webhook(self, path: str, input_data: dict[str, Any]) -> Any:
        return self.execute("n8n-webhook", {"webhookPath": path}, input_data)

    def close(self) -> None:
        self._http.close()


class DataStoreClient(ABC):
    @abstractmethod
    def get_datasets_for_user(self, email: str) -> list[Dataset]:
        raise NotImplementedError

    @abstractmethod
    def get_all_datasets(self) -> list[Dataset]:
        raise NotImplementedError

    @abstractmethod
    def get_profile_assignments(self) -> list[ProfileAssignment]:
        raise NotImplementedError

    @abstractmethod
    def get_user_profile(self, email: str) -> UserProfile | None:
        raise NotImplementedError

    @abstractmethod
    def save_conversation(
        self,
        *,
        email: str,
        prompt: str,
        response: str,
        model: str,
        dataset_id: str,
        dataset_name: str,
        duration_seconds: int | None = None,
        report_plan: str | None = None,
        report_id: str | None = None,
    ) -> ConversationRecord:
        raise NotImplementedError

    @abstractmethod
    def update_conversation(self, record_id: str, response: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_conversation_history(self, email: str) -> list[ConversationRecord]:
        raise NotImplementedError

    @abstractmethod
    def delete_conversation(self, record_id: str) -> None:
        raise NotImplementedError

    def get_history_datasets(self, email: str) -> list[str]:
        """Sorted, unique dataset names across the user's saved conversations."""
        names = {record.dataset_name for record in self.get_conversation_history(email) if record.dataset_name}
        return sorted(names)

    def close(self) -> None:
        pass


class WorkflowClient(ABC):
    @abstractmethod
    def plan_report(self, prompt: str, dataset_ids: list[str], model: str, email: str) -> ReportPlan:
        raise NotImplementedError

    @abstractmethod
    def prompt_dialog(
        self, prompt: str, dataset_ids: list[str], model: str, email: str
    ) -> list[PromptDialogQuestion]:
        raise NotImplementedError

    @abstractmethod
    def execute_plan(
        self,
        plan: ReportPlan,
        email: str,
        model: str,
        *,
        template_id: str | None = None,
        report_id: str | None = None,
        steps_only: bool = False,
    ) -> ExecutionTicket:
        raise NotImplementedError

    @abstractmethod
    def check_progress(self, report_id: str) -> ExecutionProgress:
        raise NotImplementedError

    @abstractmethod
    def run_formatter(
        self, report_id: str, email: str, model: str, template_id: str | None = None
    ) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


_retry_reads = retry(
    retry=retry_if_exception_type(RequestFailure),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    reraise=True,
)


class McpDataStoreClient(DataStoreClient):
    def __init__(self, n8n: McpTransport, pocketbase: McpTransport) -> None:
        self._n8n = n8n
        self._pocketbase = pocketbase

    @_retry_reads
    def _list_records(self, collection: str, **params: Any) -> list[dict[str, Any]]:
        raw = self._pocketbase.execute("pb-list-records", {"collection": collection, **params})
        if isinstance(raw, dict) and raw.get("status") == "error":
            raise RequestFailure(error_message(raw) or f"Failed to list {collection}")
        payload = find_payload(raw, lambda node: isinstance(node.get("items"), list))
        return list(payload["items"]) if payload else []

    @_retry_reads
    def _list_webhook_items(self, path: str, input_data: dict[str, Any]) -> list[dict[str, Any]]:
        raw = self._n8n.webhook(path, input_data)
        payload = find_payload(raw, lambda node: isinstance(node.get("items"), list))
        if payload is None:
            message = error_message(raw)
            if message:
                raise RequestFailure(message)
            return []
        return list(payload["items"])

    def get_datasets_for_user(self, email: str) -> list[Dataset]:
        items = self._list_webhook_items(LIST_DATASETS_WEBHOOK_PATH, {"email": email})
        return [Dataset.model_validate(item) for item in items if isinstance(item, dict) and item.get("id")]

    def get_all_datasets(self) -> list[Dataset]:
        items = self._list_records(DATASET_COLLECTION, sort="name", perPage=LIST_PAGE_SIZE)
        return [Dataset.model_validate(item) for item in items if isinstance(item, dict) and item.get("id")]

    def get_profile_assignments(self) -> list[ProfileAssignment]:
        items = self._list_webhook_items(PROFILE_ASSIGNMENTS_WEBHOOK_PATH, {})
        assignments = []
        for item in items:
            if not isinstance(item, dict):
                continue
            dataset_id = item.get("dataset_id") or item.get("datasetId")
            if not dataset_id:
                continue
            code = item.get("profile_code", item.get("profileCode"))
            assignments.append(ProfileAssignment(dataset_id=str(dataset_id), profile_code=code))
        return assignments

    def get_user_profile(self, email: str) -> UserProfile | None:
        items = self._list_records(USER_PROFILE_COLLECTION, filter=f'user_email="{email}"', perPage=1)
        if not items:
            return None
        return UserProfile.model_validate(items[0])

    def save_conversation(
        self,
        *,
        email: str,
        prompt: str,
        response: str,
        model: str,
        dataset_id: str,
        dataset_name: str,
        duration_seconds: int | None = None,
        report_plan: str | None = None,
        report_id: str | None = None,
    ) -> ConversationRecord:
        # always stored in UTC; conversion happens at display time
        now = _utc_now_iso()
        data: dict[str, Any] = {
            "user_email": email,
            "prompt": prompt,
            "response": response,
            "ai_model": model,
            "dataset_id": dataset_id,
            "dataset_name": dataset_name,
            "created_at": now,
        }
        if duration_seconds is not None:
            data["duration_seconds"] = duration_seconds
        if report_plan is not None:
            data["report_plan"] = report_plan
        if report_id is not None:
            data["report_id"] = report_id

        raw = self._pocketbase.execute(
            "pb-create-record", {"collection": CONVERSATION_COLLECTION, "data": data}
        )
        record = find_payload(raw, lambda node: "user_email" in node and "id" in node)
        if record is None:
            raise RequestFailure(error_message(raw) or "Failed to save conversation")
        return _conversation_record(record, now)

    def update_conversation(self, record_id: str, response: str) -> None:
        raw = self._pocketbase.execute(
            "pb-update-record",
            {"collection": CONVERSATION_COLLECTION, "id": record_id, "data": {"response": response}},
        )
        if isinstance(raw, dict) and raw.get("status") == "error":
            raise RequestFailure(error_message(raw) or "Failed to update conversation")

    def get_conversation_history(self, email: str) -> list[ConversationRecord]:
        items = self._list_records(
            CONVERSATION_COLLECTION,
            filter=f'user_email="{email}"',
            sort="-created_at,-created",
            perPage=LIST_PAGE_SIZE,
        )
        now = _utc_now_iso()
        return [_conversation_record(item, now) for item in items if isinstance(item, dict) and item.get("id")]

    def delete_conversation(self, record_id: str) -> None:
        raw = self._pocketbase.execute(
            "pb-delete-record", {"collection": CONVERSATION_COLLECTION, "id": record_id}
        )
        if isinstance(raw, dict) and raw.get("status") == "error":
            raise RequestFailure(error_message(raw) or "Failed to delete conversation")

    def close(self) -> None:
        self._n8n.close()
        self._pocketbase.close()


class McpWorkflowClient(WorkflowClient):
    def __init__(self, n8n: McpTransport) -> None:
        self._n8n = n8n

    def close(self) -> None:
        self._n8n.close()

    def plan_report(self, prompt: str, dataset_ids: list[str], model: str, email: str) -> ReportPlan:
        raw = self._n8n.webhook(
            PLAN_REPORT_WEBHOOK_PATH,
            {"prompt": prompt, "email": email, "datasetIds": list(dataset_ids), "model": model},
        )
        return normalize_plan(raw)

    def prompt_dialog(
        self, prompt: str, dataset_ids: list[str], model: str, email: str
    ) -> list[PromptDialogQuestion]:
        raw = self._n8n.webhook(
            PROMPT_DIALOG_WEBHOOK_PATH,
            {"prompt": prompt, "email": email, "datasetIds": list(dataset_ids), "model": model},
        )
        return normalize_questions(raw)

    def execute_plan(
        self,
        plan: ReportPlan,
        email: str,
        model: str,
        *,
        template_id: str | None = None,
        report_id: str | None = None,
        steps_only: bool = False,
    ) -> ExecutionTicket:
        input_data: dict[str, Any] = {
            "plan": json.dumps(plan.model_dump(mode="json")),
            "email": email,
            "model": model,
        }
        if template_id:
            input_data["templateId"] = template_id
        if report_id:
            input_data["reportId"] = report_id
        if steps_only:
            input_data["stepsOnly"] = True
        raw = self._n8n.webhook(EXECUTE_PLAN_WEBHOOK_PATH, input_data)
        ticket = normalize_ticket(raw, fallback_report_id=report_id)
        if not ticket.total_steps:
            ticket = ticket.model_copy(update={"total_steps": len(plan.steps)})
        return ticket

    def check_progress(self, report_id: str) -> ExecutionProgress:
        raw = self._n8n.webhook(CHECK_PROGRESS_WEBHOOK_PATH, {"reportId": report_id})
        return normalize_progress(raw, report_id)

    def run_formatter(
        self, report_id: str, email: str, model: str, template_id: str | None = None
    ) -> None:
        input_data: dict[str, Any] = {"reportId": report_id, "email": email, "model": model}
        if template_id:
            input_data["templateId"] = template_id
        raw = self._n8n.webhook(RUN_FORMATTER_WEBHOOK_PATH, input_data)
        if isinstance(raw, dict) and raw.get("status") == "error":
            raise RequestFailure(error_message(raw) or "Formatter failed to start")


def create_clients_from_env(settings: Settings | None = None) -> tuple[WorkflowClient, DataStoreClient]:
    settings = settings or load_settings()
    if not settings.n8n_url or not settings.pocketbase_url:
        raise RuntimeError("MCP_N8N_URL and MCP_POCKETBASE_URL must both be configured.")
    n8n = McpTransport(settings.n8n_url, timeout=settings.request_timeout)
    pocketbase = McpTransport(settings.pocketbase_url, timeout=settings.request_timeout)
    logger.info("Workflow gateway at %s, data store gateway at %s", settings.n8n_url, settings.pocketbase_url)
    return McpWorkflowClient(n8n), McpDataStoreClient(n8n, pocketbase)
