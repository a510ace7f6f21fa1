from __future__ import annotations

from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

StepStatus = Literal["started", "completed", "error"]
ExecutionStatus = Literal["starting", "in_progress", "completed", "error"]
FilterValue = Union[str, list[str]]

TERMINAL_STEP_STATUSES = frozenset({"completed", "error"})


class UserIdentity(BaseModel):
    email: str
    profile: str | None = None


class Dataset(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    description: str | None = None
    owner_email: str = ""
    created: str = ""
    updated: str = ""


class ProfileAssignment(BaseModel):
    dataset_id: str
    profile_code: str | None = None


class DatasetAccessRecord(BaseModel):
    dataset_id: str
    owner_email: str
    profile_code: str | None = None


class UserProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_email: str
    template_id: str | None = None
    user_timezone: str | None = None
    profile: str | None = None


class QueryStrategy(BaseModel):
    model_config = ConfigDict(extra="allow")

    filters: dict[str, FilterValue] = Field(default_factory=dict)
    columns: list[str] = Field(default_factory=list)
    logic: str = ""
    join_on: str | None = None


class ReportPlanStep(BaseModel):
    model_config = ConfigDict(extra="allow")

    step_number: int
    dataset_id: str
    purpose: str = ""
    query_strategy: QueryStrategy = Field(default_factory=QueryStrategy)
    dependencies: list[int] = Field(default_factory=list)
    expected_output: list[str] = Field(default_factory=list)


class ReportPlan(BaseModel):
    model_config = ConfigDict(extra="allow")

    plan_id: str
    total_steps: int = 0
    steps: list[ReportPlanStep]

    @model_validator(mode="after")
    def _check_step_graph(self) -> "ReportPlan":
        numbers = [step.step_number for step in self.steps]
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError(f"step_number values must be 1..{len(numbers)} in order, got {numbers}")
        for step in self.steps:
            invalid = [dep for dep in step.dependencies if dep < 1 or dep >= step.step_number]
            if invalid:
                raise ValueError(
                    f"step {step.step_number} may only depend on earlier steps, got {invalid}"
                )
        return self


class StepProgress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    step_number: int
    purpose: str = ""
    dataset_id: str = ""
    status: StepStatus
    step_result: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES


class ExecutionProgress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    report_id: str
    steps: list[StepProgress] = Field(default_factory=list)
    final_report: str | None = None
    status: ExecutionStatus
    error_message: str | None = None

    def all_steps_terminal(self) -> bool:
        return bool(self.steps) and all(step.is_terminal for step in self.steps)

    def has_step_errors(self) -> bool:
        return any(step.status == "error" for step in self.steps)


class ExecutionTicket(BaseModel):
    report_id: str
    total_steps: int = 0


class PromptDialogQuestion(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    question: str
    hint: str = ""


class ConversationRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_email: str
    prompt: str
    response: str
    ai_model: str = ""
    dataset_id: str = ""
    dataset_name: str = ""
    duration_seconds: int | None = None
    report_plan: str | None = None
    report_id: str | None = None
    created: str = ""


class Session(BaseModel):
    email: str
    ai_model: str = ""
    login_time: int
    profile: str | None = None

    def identity(self) -> UserIdentity:
        return UserIdentity(email=self.email, profile=self.profile)
