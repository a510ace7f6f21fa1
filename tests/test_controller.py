import asyncio
import json
import logging

import pytest

from conftest import make_plan, make_progress
from data_analyzer.controller import (
    STALL_NO_REPORT_MESSAGE,
    STALL_WITH_ERRORS_MESSAGE,
    STEP_FAILURE_MESSAGE,
    ControllerState,
    ReportExecutionController,
    build_guided_prompt,
    transition,
)
from data_analyzer.errors import (
    ExecutionStepError,
    InputValidationError,
    InvalidTransitionError,
    RequestFailure,
    StallTimeout,
)
from data_analyzer.models import ConversationRecord, PromptDialogQuestion
from data_analyzer.settings import Settings

ALL_DONE = ["completed", "completed", "completed"]


def _controller(workflow, store=None, **overrides) -> ReportExecutionController:
    values = {"poll_interval": 3600.0, "initial_poll_delay": 3600.0}
    values.update(overrides)
    return ReportExecutionController(
        workflow, email="owner@example.com", model="gpt-4o", store=store, settings=Settings(**values)
    )


async def _ready(controller: ReportExecutionController) -> None:
    await controller.request_plan("Monthly margin by region", ["ds_sales", "ds_costs"])


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    async def _spin() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_spin(), timeout)


def test_transition_table_rejects_undefined_pairs() -> None:
    assert transition(ControllerState.EXECUTING, "stop") is ControllerState.STOPPED
    assert transition(ControllerState.COMPLETED, "execute") is ControllerState.EXECUTING
    with pytest.raises(InvalidTransitionError):
        transition(ControllerState.IDLE, "execute")
    with pytest.raises(InvalidTransitionError):
        transition(ControllerState.EXECUTING, "request_plan")


def test_request_plan_validates_input(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        with pytest.raises(InputValidationError) as excinfo:
            await controller.request_plan("   ", ["ds_sales"])
        assert excinfo.value.field == "prompt"
        with pytest.raises(InputValidationError) as excinfo:
            await controller.request_plan("Sales", [])
        assert excinfo.value.field == "dataset_ids"
        assert workflow.plan_calls == []
        assert controller.state is ControllerState.IDLE

    asyncio.run(scenario())


def test_plan_request_failure_restores_state_and_can_retry(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        workflow.plan_error = RequestFailure("planner down")
        with pytest.raises(RequestFailure):
            await _ready(controller)
        assert controller.state is ControllerState.IDLE
        assert controller.plan is None

        workflow.plan_error = None
        await _ready(controller)
        assert controller.state is ControllerState.PLAN_READY
        assert controller.plan.plan_id == "plan_1"
        assert workflow.plan_calls[-1]["email"] == "owner@example.com"

    asyncio.run(scenario())


def test_unexpected_planner_error_restores_state(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        await _ready(controller)
        workflow.plan_error = ValueError("malformed planner payload")
        with pytest.raises(ValueError):
            await _ready(controller)
        assert controller.state is ControllerState.PLAN_READY
        assert controller.plan.plan_id == "plan_1"

    asyncio.run(scenario())


def test_cancelled_plan_request_restores_state(workflow) -> None:
    release = asyncio.Event()

    async def slow_plan(prompt, dataset_ids, model, email):
        await release.wait()
        return workflow.plan

    workflow.plan_report = slow_plan

    async def scenario() -> None:
        controller = _controller(workflow)
        task = asyncio.create_task(_ready(controller))
        await _wait_until(lambda: controller.state is ControllerState.PLAN_REQUESTED)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert controller.state is ControllerState.IDLE
        assert controller.plan is None

    asyncio.run(scenario())


def test_request_plan_from_json_editor_closes_it(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        await _ready(controller)
        controller.toggle_json_view()
        assert controller.state is ControllerState.EDITING

        workflow.plan = make_plan("plan_2")
        await controller.request_plan("Weekly margin", ["ds_sales"])
        assert controller.state is ControllerState.PLAN_READY
        assert controller.plan.plan_id == "plan_2"
        assert controller.json_text is None
        assert controller.json_error is None

        workflow.plan_error = RequestFailure("planner down")
        controller.toggle_json_view()
        with pytest.raises(RequestFailure):
            await controller.request_plan("Weekly margin", ["ds_sales"])
        assert controller.state is ControllerState.EDITING
        assert controller.json_text is not None

    asyncio.run(scenario())


def test_first_poll_with_partial_progress_keeps_executing(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        await _ready(controller)

        report_id = await controller.execute_plan()
        assert report_id == "r1"
        assert controller.state is ControllerState.EXECUTING
        assert controller.progress.status == "starting"
        assert controller.progress.steps == []
        assert controller.is_polling

        workflow.progress_responses = [make_progress(["completed", "completed", "started"])]
        progress = await controller.poll_once()
        assert progress is not None
        assert controller.state is ControllerState.EXECUTING
        assert controller.stall_count == 0
        controller.dispose()

    asyncio.run(scenario())


def test_identical_responses_give_identical_state(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        await _ready(controller)
        await controller.execute_plan()
        workflow.default_progress = make_progress(["completed", "started", "started"])

        await controller.poll_once()
        first = controller.snapshot()
        await controller.poll_once()
        assert controller.snapshot() == first
        controller.dispose()

    asyncio.run(scenario())


def test_stall_escalates_after_threshold_without_further_polls(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        await _ready(controller)
        await controller.execute_plan()
        workflow.default_progress = make_progress(ALL_DONE)

        for _ in range(23):
            await controller.poll_once()
        assert controller.state is ControllerState.EXECUTING
        assert controller.stall_count == 23

        await controller.poll_once()
        assert controller.state is ControllerState.FAILED
        assert controller.error_message == STALL_NO_REPORT_MESSAGE
        assert controller.progress.status == "error"
        assert isinstance(controller.failure, StallTimeout)
        assert not controller.is_polling

        assert await controller.poll_once() is None
        assert workflow.progress_calls == 24

    asyncio.run(scenario())


def test_stall_message_mentions_step_errors(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow, stall_threshold=3)
        await _ready(controller)
        await controller.execute_plan()
        workflow.default_progress = make_progress(["completed", "error", "completed"])

        for _ in range(3):
            await controller.poll_once()
        assert controller.state is ControllerState.FAILED
        assert controller.error_message == STALL_WITH_ERRORS_MESSAGE
        assert controller.failure.has_step_errors is True

    asyncio.run(scenario())


def test_running_step_resets_stall_counter(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        await _ready(controller)
        await controller.execute_plan()
        workflow.progress_responses = [
            make_progress(ALL_DONE),
            make_progress(ALL_DONE),
            make_progress(["completed", "completed", "started"]),
        ]
        await controller.poll_once()
        await controller.poll_once()
        assert controller.stall_count == 2
        await controller.poll_once()
        assert controller.stall_count == 0
        controller.dispose()

    asyncio.run(scenario())


def test_transient_poll_failure_keeps_polling_and_counter(workflow, caplog) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        await _ready(controller)
        await controller.execute_plan()
        workflow.progress_responses = [
            make_progress(ALL_DONE),
            RequestFailure("gateway timeout"),
            make_progress(ALL_DONE),
        ]
        await controller.poll_once()
        assert await controller.poll_once() is None
        assert controller.state is ControllerState.EXECUTING
        assert controller.stall_count == 1
        assert controller.is_polling
        await controller.poll_once()
        assert controller.stall_count == 2
        controller.dispose()

    with caplog.at_level(logging.WARNING, logger="data_analyzer"):
        asyncio.run(scenario())
    assert any("gateway timeout" in record.getMessage() for record in caplog.records)


def test_completed_progress_extracts_report(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        await _ready(controller)
        await controller.execute_plan()
        workflow.default_progress = make_progress(
            ALL_DONE,
            status="completed",
            final_report=json.dumps({"subject": "Margin", "content": "<h1>Margin</h1>"}),
        )
        await controller.poll_once()
        assert controller.state is ControllerState.COMPLETED
        assert controller.report == "<h1>Margin</h1>"
        assert controller.stall_count == 0
        assert isinstance(controller.duration_seconds, int)
        assert not controller.is_polling

    asyncio.run(scenario())


def test_error_progress_fails_with_step_numbers(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        await _ready(controller)
        await controller.execute_plan()
        workflow.default_progress = make_progress(["completed", "error", "started"], status="error")
        await controller.poll_once()
        assert controller.state is ControllerState.FAILED
        assert controller.error_message == STEP_FAILURE_MESSAGE
        assert isinstance(controller.failure, ExecutionStepError)
        assert controller.failure.step_numbers == [2]

    asyncio.run(scenario())


def test_stop_discards_late_completed_response(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        await _ready(controller)
        await controller.execute_plan()

        workflow.gate = asyncio.Event()
        pending = asyncio.create_task(controller.poll_once())
        await _wait_until(lambda: workflow.progress_calls == 1)

        assert controller.stop_execution() is True
        assert controller.state is ControllerState.STOPPED
        assert not controller.is_polling

        workflow.progress_responses = [make_progress(ALL_DONE, status="completed", final_report="<p>late</p>")]
        workflow.gate.set()
        assert await pending is None
        assert controller.state is ControllerState.STOPPED
        assert controller.report == ""
        assert controller.stop_execution() is False

    asyncio.run(scenario())


def test_submission_failure_leaves_plan_ready(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        await _ready(controller)
        workflow.execute_error = RequestFailure("executor unavailable")
        with pytest.raises(RequestFailure):
            await controller.execute_plan()
        assert controller.state is ControllerState.PLAN_READY
        assert controller.report_id is None
        assert not controller.is_polling

    asyncio.run(scenario())


def test_timer_runs_catch_up_poll_before_first_interval(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow, poll_interval=30.0, initial_poll_delay=0.01)
        await _ready(controller)
        workflow.default_progress = make_progress(ALL_DONE, status="completed", final_report="<p>ok</p>")
        await controller.execute_plan()
        await _wait_until(lambda: controller.state is ControllerState.COMPLETED)
        assert workflow.progress_calls == 1
        assert controller.report == "<p>ok</p>"

    asyncio.run(scenario())


def test_ticks_are_skipped_while_a_poll_is_in_flight(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow, poll_interval=0.02, initial_poll_delay=0.0)
        await _ready(controller)
        workflow.gate = asyncio.Event()
        await controller.execute_plan()
        await asyncio.sleep(0.2)
        assert workflow.progress_calls == 1

        controller.dispose()
        assert not controller.is_polling
        workflow.gate.set()
        await asyncio.sleep(0.05)
        assert controller.state is ControllerState.EXECUTING
        assert controller.progress.status == "starting"
        assert workflow.progress_calls == 1

    asyncio.run(scenario())


def test_dispose_drops_later_polls(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        await _ready(controller)
        await controller.execute_plan()
        controller.dispose()
        assert not controller.is_polling
        assert await controller.poll_once() is None
        assert workflow.progress_calls == 0

    asyncio.run(scenario())


def test_edits_are_rejected_while_executing(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        await _ready(controller)
        controller.edit_step(0, "purpose", "Load weekly sales")
        key = controller.add_filter(1)
        assert key == "new_filter"
        await controller.execute_plan()
        with pytest.raises(InvalidTransitionError):
            controller.edit_step(0, "purpose", "again")
        with pytest.raises(InvalidTransitionError):
            controller.toggle_json_view()
        assert workflow.execute_calls[0]["plan"].steps[0].purpose == "Load weekly sales"
        controller.dispose()

    asyncio.run(scenario())


def test_json_view_rejects_plan_without_steps(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        await _ready(controller)
        original = controller.plan

        text = controller.toggle_json_view()
        assert controller.state is ControllerState.EDITING
        assert json.loads(text)["plan_id"] == "plan_1"

        with pytest.raises(InputValidationError) as excinfo:
            controller.toggle_json_view('{"plan_id": "plan_1"}')
        assert excinfo.value.field == "plan_json"
        assert controller.state is ControllerState.EDITING
        assert controller.plan == original
        assert "steps" in controller.json_error

        edited = json.loads(text)
        edited["steps"][0]["purpose"] = "Edited in JSON"
        assert controller.toggle_json_view(json.dumps(edited)) is None
        assert controller.state is ControllerState.PLAN_READY
        assert controller.plan.steps[0].purpose == "Edited in JSON"
        assert controller.json_error is None

    asyncio.run(scenario())


def test_batched_execution_runs_dependency_levels_then_formatter(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow, poll_interval=0.01, initial_poll_delay=0.0)
        await _ready(controller)
        workflow.default_progress = make_progress(ALL_DONE)
        workflow.after_formatter = make_progress(ALL_DONE, status="completed", final_report="<p>done</p>")

        report_id = await controller.execute_plan(batched=True)
        assert report_id.startswith("rpt_")
        assert controller.state is ControllerState.EXECUTING
        assert [step.status for step in controller.progress.steps] == ["started"] * 3

        await _wait_until(lambda: controller.state is ControllerState.COMPLETED)
        calls = workflow.execute_calls
        assert len(calls) == 3
        assert all(call["steps_only"] and call["report_id"] == report_id for call in calls)
        assert {call["plan"].steps[0].step_number for call in calls[:2]} == {1, 2}
        assert calls[2]["plan"].steps[0].step_number == 3
        assert workflow.formatter_calls == [report_id]
        assert controller.report == "<p>done</p>"

    asyncio.run(scenario())


def test_batched_execution_fails_on_step_error(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow, poll_interval=0.01, initial_poll_delay=0.0)
        await _ready(controller)
        workflow.default_progress = make_progress(["error", "completed", "started"])

        await controller.execute_plan(batched=True)
        await _wait_until(lambda: controller.state is ControllerState.FAILED)
        assert isinstance(controller.failure, ExecutionStepError)
        assert controller.failure.step_numbers == [1]
        assert workflow.formatter_calls == []
        assert len(workflow.execute_calls) == 2

    asyncio.run(scenario())


def test_save_report_creates_then_updates(workflow, store) -> None:
    async def scenario() -> None:
        controller = _controller(workflow, store=store)
        await _ready(controller)
        with pytest.raises(InputValidationError):
            await controller.save_report()

        await controller.execute_plan()
        workflow.default_progress = make_progress(ALL_DONE, status="completed", final_report="<p>r</p>")
        await controller.poll_once()

        record_id = await controller.save_report(dataset_names={"ds_sales": "Sales", "ds_costs": "Costs"})
        assert record_id == "rec_1"
        saved = store.saved[0]
        assert saved["prompt"] == "[Execute Plan] plan_1"
        assert saved["dataset_id"] == "ds_sales,ds_costs"
        assert saved["dataset_name"] == "Sales, Costs"
        assert saved["report_id"] == "r1"
        assert json.loads(saved["report_plan"])["plan_id"] == "plan_1"

        assert await controller.save_report("<p>edited</p>") == "rec_1"
        assert store.updates == [("rec_1", "<p>edited</p>")]
        assert len(store.saved) == 1

    asyncio.run(scenario())


def test_save_report_failure_is_logged_not_raised(workflow, store, caplog) -> None:
    async def scenario() -> None:
        controller = _controller(workflow, store=store)
        await _ready(controller)
        controller.report = "<p>r</p>"
        store.save_error = RequestFailure("store offline")
        assert await controller.save_report() is None
        assert controller.saved_record_id is None

    with caplog.at_level(logging.WARNING, logger="data_analyzer"):
        asyncio.run(scenario())
    assert any("store offline" in record.getMessage() for record in caplog.records)


def test_load_from_history_restores_plan_and_report(workflow) -> None:
    async def scenario() -> None:
        controller = _controller(workflow)
        plan_text = json.dumps(json.dumps(make_plan("plan_old").model_dump(mode="json")))
        record = ConversationRecord(
            id="rec_9",
            user_email="owner@example.com",
            prompt="[Execute Plan] plan_old",
            response=json.dumps({"subject": "Old", "content": "<p>old</p>"}),
            ai_model="claude",
            dataset_id="ds_sales,ds_costs",
            report_plan=plan_text,
            report_id="r_old",
        )
        controller.load_from_history(record)
        assert controller.state is ControllerState.COMPLETED
        assert controller.plan.plan_id == "plan_old"
        assert controller.report == "<p>old</p>"
        assert controller.selected_dataset_ids == ["ds_sales", "ds_costs"]
        assert controller.saved_record_id == "rec_9"
        assert controller.model == "claude"

        plan_only = record.model_copy(update={"response": "", "dataset_id": "all"})
        controller.load_from_history(plan_only)
        assert controller.state is ControllerState.PLAN_READY
        assert controller.selected_dataset_ids == []

        await controller.execute_plan()
        with pytest.raises(InvalidTransitionError):
            controller.load_from_history(record)
        controller.dispose()

    asyncio.run(scenario())


def test_guided_questions_and_prompt(workflow) -> None:
    questions = [
        PromptDialogQuestion(id="q1", question="Which region?"),
        PromptDialogQuestion(id="q2", question="Which period?"),
    ]
    workflow.questions = questions

    async def scenario() -> None:
        controller = _controller(workflow)
        assert await controller.request_guided_questions("Sales", ["ds_sales"]) == questions

    asyncio.run(scenario())

    prompt = build_guided_prompt("Sales report", questions, {"q1": " EMEA ", "q2": "  "})
    assert prompt == "Sales report\n\nAdditional context:\n- Which region: EMEA"
    assert build_guided_prompt("Sales report", questions, {}) == "Sales report"
