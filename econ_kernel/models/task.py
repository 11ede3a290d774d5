"""Tasks: one agent request travelling created -> quoted -> authorized -> executing -> settled."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from econ_kernel.models.entity import InfrastructureTier


class TaskState(str, Enum):
    CREATED = "created"
    QUOTED = "quoted"
    AUTHORIZED = "authorized"
    EXECUTING = "executing"
    SETTLED = "settled"       # Terminal success
    REJECTED = "rejected"     # Terminal
    EXPIRED = "expired"       # Terminal

    @property
    def terminal(self) -> bool:
        return self in (TaskState.SETTLED, TaskState.REJECTED, TaskState.EXPIRED)


class RejectionReason(str, Enum):
    NO_CANDIDATE = "NoCandidate"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    EXECUTION_FAILED = "ExecutionFailed"
    CANCELLED = "Cancelled"
    SETTLEMENT_FAILED = "SettlementFailed"


class Task(BaseModel):
    """An agent's request to have an operation performed within a budget and deadline."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    requesting_agent: str
    operation_tag: str
    parameters: dict = {}
    budget_ceiling: int = Field(gt=0)
    deadline: datetime
    latency_constraint: Optional[float] = None      # Seconds; falls back to the agent's limit
    required_tier: Optional[InfrastructureTier] = None

    @field_validator("deadline")
    @classmethod
    def _deadline_is_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ExecutionSuccess(BaseModel):
    """Reported by a service after doing the work."""

    cost_actual: int = Field(ge=0)
    output: dict = {}
    quality_score: Optional[float] = None


class ExecutionFailure(BaseModel):
    reason: str


class SlippageAnomaly(BaseModel):
    """Non-fatal: settled cost exceeded the quote beyond tolerance."""

    task_id: str
    service_id: str
    quoted_price: int
    actual_cost: int
    tolerance: float
    detected_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def slippage(self) -> int:
        return self.actual_cost - self.quoted_price


class TaskTransition(BaseModel):
    from_state: Optional[TaskState]
    to_state: TaskState
    at: datetime
    detail: str = ""


class TaskAttempt(BaseModel):
    """One execution attempt against one ranked candidate."""

    service_id: str
    quoted_price: int
    success: bool = False
    failure_reason: Optional[str] = None
    actual_cost: Optional[int] = None


class TaskOutcome(BaseModel):
    """Typed result of a task pipeline."""

    task_id: str
    state: TaskState
    reason: Optional[RejectionReason] = None
    detail: str = ""
    service_id: Optional[str] = None
    quoted_price: Optional[int] = None
    actual_cost: Optional[int] = None
    settlement_sequence: Optional[int] = None
    output: Optional[dict] = None
    anomalies: List[SlippageAnomaly] = []
    attempts: List[TaskAttempt] = []
    transitions: List[TaskTransition] = []

    @property
    def settled(self) -> bool:
        return self.state == TaskState.SETTLED
