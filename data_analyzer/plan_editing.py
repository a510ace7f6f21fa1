"""Pure helpers that return an edited copy of a ReportPlan."""
from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from data_analyzer.errors import InputValidationError
from data_analyzer.models import FilterValue, ReportPlan, ReportPlanStep

EDITABLE_STEP_FIELDS = frozenset({"dataset_id", "purpose", "query_strategy", "dependencies", "expected_output"})
EDITABLE_QUERY_FIELDS = frozenset({"columns", "logic", "join_on"})
NEW_FILTER_KEY = "new_filter"


def _rebuild(data: dict[str, Any], field: str) -> ReportPlan:
    try:
        return ReportPlan.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {"msg": str(exc)}
        raise InputValidationError(str(first.get("msg")), field=field) from exc


def _step_data(plan: ReportPlan, step_index: int) -> tuple[dict[str, Any], dict[str, Any]]:
    if not 0 <= step_index < len(plan.steps):
        raise InputValidationError(f"No step at index {step_index}", field="step_index")
    data = plan.model_dump()
    return data, data["steps"][step_index]


def update_step(plan: ReportPlan, step_index: int, field: str, value: Any) -> ReportPlan:
    if field not in EDITABLE_STEP_FIELDS:
        raise InputValidationError(f"Step field '{field}' cannot be edited", field=field)
    data, step = _step_data(plan, step_index)
    step[field] = value
    return _rebuild(data, field)


def update_filter(plan: ReportPlan, step_index: int, key: str, value: FilterValue) -> ReportPlan:
    data, step = _step_data(plan, step_index)
    step["query_strategy"]["filters"][key] = value
    return _rebuild(data, "filters")


def delete_filter(plan: ReportPlan, step_index: int, key: str) -> ReportPlan:
    data, step = _step_data(plan, step_index)
    step["query_strategy"]["filters"].pop(key, None)
    return _rebuild(data, "filters")


def add_filter(plan: ReportPlan, step_index: int) -> tuple[ReportPlan, str]:
    """Add an empty filter under the first free ``new_filter[_n]`` key."""
    data, step = _step_data(plan, step_index)
    filters = step["query_strategy"]["filters"]
    key = NEW_FILTER_KEY
    counter = 1
    while key in filters:
        key = f"{NEW_FILTER_KEY}_{counter}"
        counter += 1
    filters[key] = ""
    return _rebuild(data, "filters"), key


def rename_filter_key(plan: ReportPlan, step_index: int, old_key: str, new_key: str) -> ReportPlan:
    new_key = new_key.strip()
    if not new_key or old_key == new_key:
        return plan
    data, step = _step_data(plan, step_index)
    filters = step["query_strategy"]["filters"]
    if old_key not in filters:
        raise InputValidationError(f"Unknown filter '{old_key}'", field="filters")
    value = filters.pop(old_key)
    filters[new_key] = value
    return _rebuild(data, "filters")


def update_query_field(plan: ReportPlan, step_index: int, field: str, value: Any) -> ReportPlan:
    if field not in EDITABLE_QUERY_FIELDS:
        raise InputValidationError(f"Query field '{field}' cannot be edited", field=field)
    data, step = _step_data(plan, step_index)
    step["query_strategy"][field] = value
    return _rebuild(data, field)


def group_steps_by_batch(steps: list[ReportPlanStep]) -> list[list[ReportPlanStep]]:
    """Group steps into dependency levels; steps in one batch can run concurrently."""
    batches: list[list[ReportPlanStep]] = []
    completed: set[int] = set()
    remaining = list(steps)
    while remaining:
        batch = [step for step in remaining if all(dep in completed for dep in step.dependencies)]
        if not batch:
            # unresolvable dependencies: run what is left one at a time
            batches.extend([step] for step in remaining)
            break
        batches.append(batch)
        completed.update(step.step_number for step in batch)
        remaining = [step for step in remaining if step.step_number not in completed]
    return batches


def single_step_plan(plan: ReportPlan, step: ReportPlanStep) -> ReportPlan:
    return plan.model_copy(update={"steps": [step]})
