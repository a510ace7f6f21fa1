"""
Report execution controller.

Drives one user's report workflow: plan request, plan editing, execution
submission, progress polling and the terminal outcome. The state machine is an
explicit enum plus a transition table; the only background work is a single
poll timer task that exists while the controller is EXECUTING.

Every timer tick and every progress response is checked against the active
execution token. Responses that arrive after a stop, a new execution or
disposal are dropped.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping

from data_analyzer.errors import (
    ExecutionStepError,
    InputValidationError,
    InvalidTransitionError,
    RequestFailure,
    StallTimeout,
)
from data_analyzer.models import (
    ConversationRecord,
    ExecutionProgress,
    FilterValue,
    PromptDialogQuestion,
    ReportPlan,
    StepProgress,
)
from data_analyzer.normalize import extract_report_html, parse_plan_text
from data_analyzer.plan_editing import (
    add_filter,
    delete_filter,
    group_steps_by_batch,
    rename_filter_key,
    single_step_plan,
    update_filter,
    update_query_field,
    update_step,
)
from data_analyzer.settings import Settings

logger = logging.getLogger(__name__)

STEP_FAILURE_MESSAGE = "Execution failed: one or more steps encountered an error"
STALL_WITH_ERRORS_MESSAGE = (
    "Steps completed with errors. The report formatter failed to produce a final report."
)
STALL_NO_REPORT_MESSAGE = (
    "All steps completed but the final report was never generated. The formatter may have crashed."
)


class ControllerState(str, Enum):
    IDLE = "idle"
    PLAN_REQUESTED = "plan_requested"
    PLAN_READY = "plan_ready"
    EDITING = "editing"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


TERMINAL_STATES = frozenset({ControllerState.COMPLETED, ControllerState.FAILED, ControllerState.STOPPED})
_PLAN_HOLDING_STATES = frozenset({ControllerState.PLAN_READY}) | TERMINAL_STATES


def _build_transitions() -> dict[tuple[ControllerState, str], ControllerState]:
    table: dict[tuple[ControllerState, str], ControllerState] = {
        (ControllerState.IDLE, "request_plan"): ControllerState.PLAN_REQUESTED,
        (ControllerState.PLAN_REQUESTED, "plan_received"): ControllerState.PLAN_READY,
        (ControllerState.EDITING, "close_editor"): ControllerState.PLAN_READY,
        # a fresh plan replaces the one open in the JSON editor
        (ControllerState.EDITING, "request_plan"): ControllerState.PLAN_REQUESTED,
        (ControllerState.EXECUTING, "complete"): ControllerState.COMPLETED,
        (ControllerState.EXECUTING, "fail"): ControllerState.FAILED,
        (ControllerState.EXECUTING, "stop"): ControllerState.STOPPED,
        (ControllerState.IDLE, "load_plan"): ControllerState.PLAN_READY,
        (ControllerState.IDLE, "load_report"): ControllerState.COMPLETED,
    }
    for state in _PLAN_HOLDING_STATES:
        table[(state, "request_plan")] = ControllerState.PLAN_REQUESTED
        table[(state, "open_editor")] = ControllerState.EDITING
        table[(state, "execute")] = ControllerState.EXECUTING
        table[(state, "load_plan")] = ControllerState.PLAN_READY
        table[(state, "load_report")] = ControllerState.COMPLETED
    return table


_TRANSITIONS = _build_transitions()


def transition(state: ControllerState, event: str) -> ControllerState:
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(f"Cannot {event.replace('_', ' ')} while {state.value}") from None


async def _call(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Await async collaborators directly; run blocking ones in a worker thread."""
    if inspect.iscoroutinefunction(fn):
        return await fn(*args, **kwargs)
    return await asyncio.to_thread(fn, *args, **kwargs)


def new_report_id() -> str:
    return f"rpt_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def build_guided_prompt(
    prompt: str,
    questions: list[PromptDialogQuestion],
    answers: Mapping[str, str],
) -> str:
    answered = []
    for question in questions:
        answer = (answers.get(question.id) or "").strip()
        if not answer:
            continue
        text = question.question[:-1] if question.question.endswith("?") else question.question
        answered.append(f"- {text}: {answer}")
    if not answered:
        return prompt
    return f"{prompt.strip()}\n\nAdditional context:\n" + "\n".join(answered)


@dataclass(eq=False)
class ExecutionToken:
    report_id: str
    started_at: float = field(default_factory=time.monotonic)


class ReportExecutionController:
    def __init__(
        self,
        workflow: Any,
        *,
        email: str,
        model: str = "",
        store: Any | None = None,
        template_id: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or Settings()
        self.workflow = workflow
        self.store = store
        self.email = email
        self.model = model
        self.template_id = template_id
        self.poll_interval = settings.poll_interval
        self.initial_poll_delay = settings.initial_poll_delay
        self.stall_threshold = settings.stall_threshold

        self.state = ControllerState.IDLE
        self.prompt = ""
        self.selected_dataset_ids: list[str] = []
        self.plan: ReportPlan | None = None
        self.progress: ExecutionProgress | None = None
        self.report = ""
        self.report_id: str | None = None
        self.error_message: str | None = None
        self.failure: Exception | None = None
        self.json_text: str | None = None
        self.json_error: str | None = None
        self.stall_count = 0
        self.saved_record_id: str | None = None
        self.duration_seconds: int | None = None

        self._active: ExecutionToken | None = None
        self._timer: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._driver: asyncio.Task | None = None
        self._poll_lock = asyncio.Lock()
        self._submitting = False
        self._disposed = False

    # ------------------------------------------------------------------
    # state helpers
    # ------------------------------------------------------------------
    def _apply(self, event: str) -> None:
        previous = self.state
        self.state = transition(previous, event)
        logger.debug("Controller %s -> %s on %s", previous.value, self.state.value, event)

    def _ensure_idle_submission(self) -> None:
        if self._submitting:
            raise InvalidTransitionError("An execution is being submitted")
        if self._disposed:
            raise InvalidTransitionError("Controller has been disposed")

    def _reset_results(self) -> None:
        self.progress = None
        self.report = ""
        self.report_id = None
        self.error_message = None
        self.failure = None
        self.stall_count = 0
        self.saved_record_id = None
        self.duration_seconds = None

    @property
    def is_polling(self) -> bool:
        return self._timer is not None and not self._timer.done()

    # ------------------------------------------------------------------
    # planning
    # ------------------------------------------------------------------
    @staticmethod
    def _validate_request(prompt: str, dataset_ids: list[str]) -> list[str]:
        if not prompt or not prompt.strip():
            raise InputValidationError("Please enter report requirements", field="prompt")
        selected = [dataset_id for dataset_id in dataset_ids if dataset_id]
        if not selected:
            raise InputValidationError("Select at least one dataset", field="dataset_ids")
        return selected

    async def request_plan(self, prompt: str, dataset_ids: list[str], model: str | None = None) -> ReportPlan:
        selected = self._validate_request(prompt, dataset_ids)
        self._ensure_idle_submission()
        prior = self.state
        self._apply("request_plan")
        if model:
            self.model = model
        logger.info("Requesting report plan for %d dataset(s)", len(selected))
        try:
            plan = await _call(self.workflow.plan_report, prompt, selected, self.model, self.email)
        except RequestFailure as exc:
            # stay where we were so the user can retry
            self.state = prior
            logger.warning("Plan request failed: %s", exc)
            raise
        except BaseException:
            self.state = prior
            raise
        if self._disposed:
            return plan

        self._apply("plan_received")
        self.plan = plan
        self.prompt = prompt
        self.selected_dataset_ids = selected
        self.json_text = None
        self.json_error = None
        self._reset_results()
        logger.info("Received plan %s with %d step(s)", plan.plan_id, len(plan.steps))
        return plan

    async def request_guided_questions(
        self, prompt: str, dataset_ids: list[str], model: str | None = None
    ) -> list[PromptDialogQuestion]:
        selected = self._validate_request(prompt, dataset_ids)
        return await _call(self.workflow.prompt_dialog, prompt, selected, model or self.model, self.email)

    # ------------------------------------------------------------------
    # plan editing
    # ------------------------------------------------------------------
    def _editable_plan(self) -> ReportPlan:
        if self.state not in _PLAN_HOLDING_STATES or self._submitting:
            raise InvalidTransitionError(f"Plan cannot be edited while {self.state.value}")
        if self.plan is None:
            raise InputValidationError("No plan to edit", field="plan")
        return self.plan

    def edit_step(self, step_index: int, field: str, value: Any) -> ReportPlan:
        self.plan = update_step(self._editable_plan(), step_index, field, value)
        return self.plan

    def edit_filter(self, step_index: int, key: str, value: FilterValue) -> ReportPlan:
        self.plan = update_filter(self._editable_plan(), step_index, key, value)
        return self.plan

    def add_filter(self, step_index: int) -> str:
        self.plan, key = add_filter(self._editable_plan(), step_index)
        return key

    def delete_filter(self, step_index: int, key: str) -> ReportPlan:
        self.plan = delete_filter(self._editable_plan(), step_index, key)
        return self.plan

    def rename_filter(self, step_index: int, old_key: str, new_key: str) -> ReportPlan:
        self.plan = rename_filter_key(self._editable_plan(), step_index, old_key, new_key)
        return self.plan

    def edit_query_field(self, step_index: int, field: str, value: Any) -> ReportPlan:
        self.plan = update_query_field(self._editable_plan(), step_index, field, value)
        return self.plan

    def toggle_json_view(self, text: str | None = None) -> str | None:
        """Open the raw JSON editor, or close it and accept ``text`` as the new plan.

        Returns the serialized plan when opening and None when closing. A
        closing attempt with invalid JSON or no ``steps`` array keeps the prior
        plan, records ``json_error`` and leaves the editor open.
        """
        if self.state is not ControllerState.EDITING:
            plan = self._editable_plan()
            self._apply("open_editor")
            self.json_text = json.dumps(plan.model_dump(mode="json"), indent=2)
            self.json_error = None
            return self.json_text

        candidate = self.json_text if text is None else text
        if candidate:
            try:
                plan = parse_plan_text(candidate)
            except InputValidationError as exc:
                self.json_text = candidate
                self.json_error = str(exc)
                raise
            self.plan = plan
        self.json_text = None
        self.json_error = None
        self._apply("close_editor")
        return None

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------
    async def execute_plan(self, batched: bool = False) -> str:
        if self.plan is None:
            raise InputValidationError("No plan to execute", field="plan")
        self._ensure_idle_submission()
        transition(self.state, "execute")
        self._cancel_background()

        if batched:
            return self._start_batched(self.plan)

        plan = self.plan
        self._submitting = True
        try:
            ticket = await _call(
                self.workflow.execute_plan,
                plan,
                self.email,
                self.model,
                template_id=self.template_id,
            )
        except RequestFailure as exc:
            logger.warning("Plan submission failed: %s", exc)
            raise
        finally:
            self._submitting = False
        if self._disposed:
            return ticket.report_id

        token = self._begin_execution(
            ticket.report_id,
            ExecutionProgress(report_id=ticket.report_id, status="starting", steps=[]),
        )
        logger.info(
            "Execution submitted with %d step(s)", ticket.total_steps, extra={"report_id": ticket.report_id}
        )
        self._start_timer(token)
        return ticket.report_id

    def _begin_execution(self, report_id: str, progress: ExecutionProgress) -> ExecutionToken:
        self._apply("execute")
        self._reset_results()
        token = ExecutionToken(report_id=report_id)
        self._active = token
        self.report_id = report_id
        self.progress = progress
        return token

    def _start_timer(self, token: ExecutionToken) -> None:
        self._cancel_task(self._timer)
        self._timer = asyncio.create_task(self._run_timer(token), name=f"report-poll-{token.report_id}")

    async def _run_timer(self, token: ExecutionToken) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        catch_up_at: float | None = started + self.initial_poll_delay
        next_tick = started + self.poll_interval
        while self._active is token:
            if catch_up_at is not None and catch_up_at <= next_tick:
                due, catch_up_at = catch_up_at, None
            else:
                due = next_tick
                next_tick += self.poll_interval
            await asyncio.sleep(max(0.0, due - loop.time()))
            if self._active is not token:
                break
            self._tick()

    def _tick(self) -> None:
        if self._inflight is not None and not self._inflight.done():
            logger.debug("Previous progress check still running, skipping tick")
            return
        self._inflight = asyncio.create_task(self._poll_active())

    async def _poll_active(self) -> None:
        token = self._active
        if token is not None:
            await self.poll_once(token.report_id)

    async def poll_once(self, report_id: str | None = None) -> ExecutionProgress | None:
        """Fetch progress once and apply it if this controller still owns ``report_id``.

        Returns the applied progress, or None when the response was dropped
        (stale) or the fetch failed. Fetch failures are retried by the next
        tick and leave the stall counter untouched.
        """
        token = self._active
        if token is None or (report_id is not None and report_id != token.report_id):
            return None
        async with self._poll_lock:
            if self._active is not token:
                return None
            try:
                progress = await _call(self.workflow.check_progress, token.report_id)
            except RequestFailure as exc:
                logger.warning("Progress check failed: %s", exc, extra={"report_id": token.report_id})
                return None
            if self._active is not token:
                logger.debug("Dropping stale progress response", extra={"report_id": token.report_id})
                return None
            self._apply_progress(progress)
            return progress

    def _apply_progress(self, progress: ExecutionProgress) -> None:
        self.progress = progress
        if progress.status == "completed":
            self.stall_count = 0
            self.report = extract_report_html(progress.final_report)
            if not self.report:
                logger.warning(
                    "Report completed but content was empty; the formatter may have returned invalid output",
                    extra={"report_id": progress.report_id},
                )
            self._finish("complete")
        elif progress.status == "error":
            self.stall_count = 0
            self.error_message = progress.error_message or STEP_FAILURE_MESSAGE
            failed = [step.step_number for step in progress.steps if step.status == "error"]
            self.failure = ExecutionStepError(self.error_message, failed)
            self._finish("fail")
        elif progress.all_steps_terminal():
            self.stall_count += 1
            if self.stall_count >= self.stall_threshold:
                self._escalate_stall(progress)
        else:
            self.stall_count = 0

    def _escalate_stall(self, progress: ExecutionProgress) -> None:
        has_errors = progress.has_step_errors()
        message = STALL_WITH_ERRORS_MESSAGE if has_errors else STALL_NO_REPORT_MESSAGE
        self.failure = StallTimeout(message, has_step_errors=has_errors)
        self.progress = progress.model_copy(update={"status": "error", "error_message": message})
        self.error_message = message
        logger.error(
            "Execution stalled after %d polls with every step finished", self.stall_count,
            extra={"report_id": progress.report_id},
        )
        self._finish("fail")

    def _finish(self, event: str) -> None:
        token = self._active
        self._active = None
        self._cancel_background(keep_inflight=True)
        if token is not None:
            self.duration_seconds = round(time.monotonic() - token.started_at)
        self._apply(event)
        logger.info("Execution %s", self.state.value, extra={"report_id": self.report_id})

    def stop_execution(self) -> bool:
        if self.state is not ControllerState.EXECUTING:
            return False
        self._finish("stop")
        return True

    # ------------------------------------------------------------------
    # batched execution
    # ------------------------------------------------------------------
    def _start_batched(self, plan: ReportPlan) -> str:
        report_id = new_report_id()
        progress = ExecutionProgress(
            report_id=report_id,
            status="in_progress",
            steps=[
                StepProgress(
                    step_number=step.step_number,
                    purpose=step.purpose,
                    dataset_id=step.dataset_id,
                    status="started",
                )
                for step in plan.steps
            ],
        )
        token = self._begin_execution(report_id, progress)
        logger.info("Batched execution started", extra={"report_id": report_id})
        self._driver = asyncio.create_task(self._drive_batches(token, plan), name=f"report-batches-{report_id}")
        return report_id

    async def _drive_batches(self, token: ExecutionToken, plan: ReportPlan) -> None:
        try:
            for batch in group_steps_by_batch(plan.steps):
                if self._active is not token:
                    return
                await asyncio.gather(
                    *(
                        _call(
                            self.workflow.execute_plan,
                            single_step_plan(plan, step),
                            self.email,
                            self.model,
                            template_id=self.template_id,
                            report_id=token.report_id,
                            steps_only=True,
                        )
                        for step in batch
                    )
                )
                await self._wait_for_batch(token, [step.step_number for step in batch])
            if self._active is not token:
                return
            await _call(self.workflow.run_formatter, token.report_id, self.email, self.model, self.template_id)
        except (RequestFailure, ExecutionStepError) as exc:
            if self._active is not token:
                return
            logger.warning("Batched execution failed: %s", exc, extra={"report_id": token.report_id})
            self.error_message = str(exc)
            self.failure = exc
            if self.progress is not None:
                self.progress = self.progress.model_copy(update={"status": "error", "error_message": str(exc)})
            self._finish("fail")
            return
        if self._active is token:
            self._start_timer(token)

    async def _wait_for_batch(self, token: ExecutionToken, step_numbers: list[int]) -> None:
        while self._active is token:
            await asyncio.sleep(self.poll_interval)
            if self._active is not token:
                return
            try:
                progress = await _call(self.workflow.check_progress, token.report_id)
            except RequestFailure as exc:
                logger.warning("Progress check failed: %s", exc, extra={"report_id": token.report_id})
                continue
            if self._active is not token:
                return
            self.progress = progress
            by_number = {step.step_number: step for step in progress.steps}
            failed = [
                number for number in step_numbers
                if number in by_number and by_number[number].status == "error"
            ]
            if failed:
                raise ExecutionStepError("One or more steps failed during execution", failed)
            if all(number in by_number and by_number[number].status == "completed" for number in step_numbers):
                return

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    async def save_report(
        self,
        content: str | None = None,
        dataset_names: Mapping[str, str] | None = None,
    ) -> str | None:
        """Save (or update) the report in conversation history; returns the record id.

        Store failures are logged and reported as None.
        """
        body = self.report if content is None else content
        if not body:
            raise InputValidationError("No report to save", field="report")
        if self.store is None:
            logger.warning("No conversation store configured; report not saved")
            return None
        self.report = body

        try:
            if self.saved_record_id:
                await _call(self.store.update_conversation, self.saved_record_id, body)
                return self.saved_record_id

            names = dataset_names or {}
            selected_names = ", ".join(names[d] for d in self.selected_dataset_ids if d in names)
            record: ConversationRecord = await _call(
                self.store.save_conversation,
                email=self.email,
                prompt=f"[Execute Plan] {self.plan.plan_id if self.plan else 'unknown'}",
                response=body,
                model=self.model,
                dataset_id=",".join(self.selected_dataset_ids) or "all",
                dataset_name=selected_names or "All Datasets",
                duration_seconds=self.duration_seconds,
                report_plan=json.dumps(self.plan.model_dump(mode="json")) if self.plan else "",
                report_id=self.report_id,
            )
        except RequestFailure as exc:
            logger.warning("Failed to save report: %s", exc, extra={"report_id": self.report_id})
            return None
        self.saved_record_id = record.id
        return record.id

    def load_from_history(self, record: ConversationRecord) -> None:
        """Restore plan, report and selection from a saved conversation."""
        self._ensure_idle_submission()
        plan = parse_plan_text(record.report_plan, field="report_plan") if record.report_plan else None
        report = extract_report_html(record.response)
        if plan is None and not report:
            raise InputValidationError("Saved conversation has neither a plan nor a report", field="report_plan")
        self._apply("load_report" if report else "load_plan")

        self._reset_results()
        self.plan = plan
        self.report = report
        self.report_id = record.report_id
        self.prompt = record.prompt
        self.selected_dataset_ids = [
            dataset_id for dataset_id in record.dataset_id.split(",") if dataset_id and dataset_id != "all"
        ]
        if record.ai_model:
            self.model = record.ai_model
        self.saved_record_id = record.id
        self.json_text = None
        self.json_error = None

    # ------------------------------------------------------------------
    # teardown
    # ------------------------------------------------------------------
    @staticmethod
    def _cancel_task(task: asyncio.Task | None) -> None:
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def _cancel_background(self, keep_inflight: bool = False) -> None:
        self._cancel_task(self._timer)
        self._cancel_task(self._driver)
        self._timer = None
        self._driver = None
        if not keep_inflight:
            self._cancel_task(self._inflight)
            self._inflight = None

    def dispose(self) -> None:
        self._disposed = True
        self._active = None
        self._cancel_background()

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "prompt": self.prompt,
            "dataset_ids": list(self.selected_dataset_ids),
            "model": self.model,
            "plan": self.plan.model_dump(mode="json") if self.plan else None,
            "progress": self.progress.model_dump(mode="json") if self.progress else None,
            "report": self.report,
            "report_id": self.report_id,
            "error_message": self.error_message,
            "json_error": self.json_error,
            "stall_count": self.stall_count,
            "saved_record_id": self.saved_record_id,
            "duration_seconds": self.duration_seconds,
            "polling": self.is_polling,
        }
