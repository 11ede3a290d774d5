"""econ kernel data models."""

from econ_kernel.models.aggregation import (
    AggregateCandidate,
    AggregationCycle,
    CycleOutcome,
    CycleState,
    DiscardReason,
    LearningUpdate,
    PublishedAggregate,
    SubmitOutcome,
    SubmitStatus,
)
from econ_kernel.models.config import (
    AggregationConfig,
    KernelConfig,
    LedgerConfig,
    PricingConfig,
    RoutingConfig,
    TaskConfig,
)
from econ_kernel.models.entity import (
    AgentEntity,
    Entity,
    EntityKind,
    InfrastructureTier,
    ResourceEntity,
    ServiceEntity,
    ServiceStats,
)
from econ_kernel.models.events import (
    AggregatePublished,
    EventMessage,
    LearningUpdateMessage,
    PriceUpdate,
    TaskRequest,
    TaskResult,
)
from econ_kernel.models.ledger import MINT_SOURCE, MINT_TAG, Transaction
from econ_kernel.models.pricing import PriceQuote
from econ_kernel.models.task import (
    ExecutionFailure,
    ExecutionSuccess,
    RejectionReason,
    SlippageAnomaly,
    Task,
    TaskAttempt,
    TaskOutcome,
    TaskState,
    TaskTransition,
)

__all__ = [
    "AgentEntity",
    "AggregateCandidate",
    "AggregatePublished",
    "AggregationConfig",
    "AggregationCycle",
    "CycleOutcome",
    "CycleState",
    "DiscardReason",
    "Entity",
    "EntityKind",
    "EventMessage",
    "ExecutionFailure",
    "ExecutionSuccess",
    "InfrastructureTier",
    "KernelConfig",
    "LearningUpdate",
    "LearningUpdateMessage",
    "LedgerConfig",
    "MINT_SOURCE",
    "MINT_TAG",
    "PriceQuote",
    "PriceUpdate",
    "PricingConfig",
    "PublishedAggregate",
    "RejectionReason",
    "ResourceEntity",
    "RoutingConfig",
    "ServiceEntity",
    "ServiceStats",
    "SlippageAnomaly",
    "SubmitOutcome",
    "SubmitStatus",
    "Task",
    "TaskAttempt",
    "TaskConfig",
    "TaskOutcome",
    "TaskRequest",
    "TaskResult",
    "TaskState",
    "TaskTransition",
    "Transaction",
]
