"""Event channel messages. Delivery is at-least-once, so every kind carries its dedup key."""

from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from econ_kernel.models.aggregation import LearningUpdate
from econ_kernel.models.task import Task


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_id: str = Field(default_factory=lambda: f"msg_{uuid4().hex[:12]}")
    sent_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TaskRequest(_Message):
    kind: Literal["task_request"] = "task_request"
    task: Task
    service_id: Optional[str] = None    # Set when dispatched to a remote service

    @property
    def dedup_key(self) -> str:
        return self.task.task_id


class TaskResult(_Message):
    kind: Literal["task_result"] = "task_result"
    task_id: str
    service_id: str
    success: bool
    cost_actual: int = 0
    output: dict = {}
    quality_score: Optional[float] = None
    failure_reason: Optional[str] = None

    @property
    def dedup_key(self) -> str:
        return f"{self.task_id}:{self.service_id}"


class LearningUpdateMessage(_Message):
    kind: Literal["learning_update"] = "learning_update"
    update: LearningUpdate

    @property
    def dedup_key(self) -> str:
        return f"{self.update.producer_id}:{self.update.cycle_id}"


class PriceUpdate(_Message):
    kind: Literal["price_update"] = "price_update"
    operation_tag: str
    multiplier: float
    epoch: int
    boundary_sequence: int

    @property
    def dedup_key(self) -> str:
        return f"{self.operation_tag}:{self.epoch}"


class AggregatePublished(_Message):
    kind: Literal["aggregate_published"] = "aggregate_published"
    cycle_id: int
    reference: str
    recipients: List[str]

    @property
    def dedup_key(self) -> str:
        return str(self.cycle_id)


EventMessage = Annotated[
    Union[TaskRequest, TaskResult, LearningUpdateMessage, PriceUpdate, AggregatePublished],
    Field(discriminator="kind"),
]
