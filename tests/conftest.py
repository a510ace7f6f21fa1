import asyncio
from typing import Any

import pytest
import uvloop

from data_analyzer.errors import RequestFailure
from data_analyzer.models import (
    ConversationRecord,
    Dataset,
    ExecutionProgress,
    ExecutionTicket,
    ProfileAssignment,
    ReportPlan,
    StepProgress,
    UserProfile,
)

# This environment blocks writes to the default asyncio selector wakeup socket.
# uvloop uses a different mechanism that keeps TestClient responsive.
asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())


def make_plan(plan_id: str = "plan_1") -> ReportPlan:
    return ReportPlan.model_validate(
        {
            "plan_id": plan_id,
            "total_steps": 3,
            "steps": [
                {
                    "step_number": 1,
                    "dataset_id": "ds_sales",
                    "purpose": "Load monthly sales",
                    "query_strategy": {"filters": {"region": "EMEA"}, "columns": ["month", "revenue"]},
                },
                {
                    "step_number": 2,
                    "dataset_id": "ds_costs",
                    "purpose": "Load monthly costs",
                    "query_strategy": {"filters": {"year": ["2025", "2026"]}, "columns": ["month", "cost"]},
                },
                {
                    "step_number": 3,
                    "dataset_id": "ds_sales",
                    "purpose": "Compute margin",
                    "query_strategy": {"logic": "revenue - cost", "join_on": "month"},
                    "dependencies": [1, 2],
                    "expected_output": ["margin table"],
                },
            ],
        }
    )


def make_progress(
    statuses: list[str],
    status: str = "in_progress",
    report_id: str = "r1",
    final_report: str | None = None,
    error_message: str | None = None,
) -> ExecutionProgress:
    return ExecutionProgress(
        report_id=report_id,
        status=status,
        final_report=final_report,
        error_message=error_message,
        steps=[
            StepProgress(step_number=index, purpose=f"step {index}", dataset_id="ds", status=step_status)
            for index, step_status in enumerate(statuses, start=1)
        ],
    )


class FakeWorkflow:
    """In-memory planner/executor; progress responses are served in order, then the default repeats."""

    def __init__(self) -> None:
        self.plan = make_plan()
        self.plan_error: Exception | None = None
        self.questions: list[Any] = []
        self.ticket_report_id = "r1"
        self.execute_error: Exception | None = None
        self.progress_responses: list[Any] = []
        self.default_progress: ExecutionProgress | None = make_progress(["started", "started", "started"])
        self.after_formatter: ExecutionProgress | None = None
        self.gate: asyncio.Event | None = None
        self.plan_calls: list[dict[str, Any]] = []
        self.execute_calls: list[dict[str, Any]] = []
        self.formatter_calls: list[str] = []
        self.progress_calls = 0
        self.closed = False

    async def plan_report(self, prompt, dataset_ids, model, email):
        self.plan_calls.append({"prompt": prompt, "dataset_ids": dataset_ids, "model": model, "email": email})
        if self.plan_error is not None:
            raise self.plan_error
        return self.plan

    async def prompt_dialog(self, prompt, dataset_ids, model, email):
        return list(self.questions)

    async def execute_plan(self, plan, email, model, *, template_id=None, report_id=None, steps_only=False):
        self.execute_calls.append(
            {"plan": plan, "report_id": report_id, "steps_only": steps_only, "template_id": template_id}
        )
        if self.execute_error is not None:
            raise self.execute_error
        return ExecutionTicket(report_id=report_id or self.ticket_report_id, total_steps=len(plan.steps))

    async def check_progress(self, report_id):
        self.progress_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        item = self.progress_responses.pop(0) if self.progress_responses else self.default_progress
        if isinstance(item, Exception):
            raise item
        return item.model_copy(update={"report_id": report_id})

    async def run_formatter(self, report_id, email, model, template_id=None):
        self.formatter_calls.append(report_id)
        if self.after_formatter is not None:
            self.default_progress = self.after_formatter

    def close(self):
        self.closed = True


class FakeStore:
    def __init__(self) -> None:
        self.datasets = [
            Dataset(id="ds_sales", name="Sales", owner_email="owner@example.com"),
            Dataset(id="ds_costs", name="Costs", owner_email="someone@example.com"),
            Dataset(id="ds_hr", name="HR", owner_email="someone@example.com"),
        ]
        self.assignments = [
            ProfileAssignment(dataset_id="ds_costs", profile_code="abc000000"),
            ProfileAssignment(dataset_id="ds_hr", profile_code="xyz111111"),
        ]
        self.profiles: dict[str, UserProfile] = {
            "owner@example.com": UserProfile(
                id="p1", user_email="owner@example.com", template_id="tpl_1", profile="abc123456"
            )
        }
        self.profile_error: Exception | None = None
        self.save_error: Exception | None = None
        self.saved: list[dict[str, Any]] = []
        self.updates: list[tuple[str, str]] = []
        self.history: list[ConversationRecord] = []
        self.deleted: list[str] = []
        self.closed = False

    def get_datasets_for_user(self, email):
        return list(self.datasets)

    def get_all_datasets(self):
        return list(self.datasets)

    def get_profile_assignments(self):
        return list(self.assignments)

    def get_user_profile(self, email):
        if self.profile_error is not None:
            raise self.profile_error
        return self.profiles.get(email)

    def save_conversation(self, **fields):
        if self.save_error is not None:
            raise self.save_error
        self.saved.append(fields)
        return ConversationRecord(
            id=f"rec_{len(self.saved)}",
            user_email=fields["email"],
            prompt=fields["prompt"],
            response=fields["response"],
            ai_model=fields["model"],
            dataset_id=fields["dataset_id"],
            dataset_name=fields["dataset_name"],
            report_plan=fields.get("report_plan"),
            report_id=fields.get("report_id"),
        )

    def update_conversation(self, record_id, response):
        if self.save_error is not None:
            raise self.save_error
        self.updates.append((record_id, response))

    def get_conversation_history(self, email):
        return [record for record in self.history if record.user_email == email]

    def get_history_datasets(self, email):
        return sorted({record.dataset_name for record in self.get_conversation_history(email) if record.dataset_name})

    def delete_conversation(self, record_id):
        self.deleted.append(record_id)
        self.history = [record for record in self.history if record.id != record_id]

    def close(self):
        self.closed = True


@pytest.fixture
def workflow() -> FakeWorkflow:
    return FakeWorkflow()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def transient_failure() -> RequestFailure:
    return RequestFailure("gateway timeout")
