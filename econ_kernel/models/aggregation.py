"""Federated aggregation: learning updates and the cycles that combine them."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CycleState(str, Enum):
    COLLECTING = "collecting"
    AGGREGATING = "aggregating"
    VALIDATING = "validating"
    PUBLISHED = "published"     # Terminal
    DISCARDED = "discarded"     # Terminal


class DiscardReason(str, Enum):
    NO_VALID_UPDATES = "NoValidUpdates"
    INCOMPATIBLE_UPDATES = "IncompatibleUpdates"
    QUORUM_NOT_MET = "QuorumNotMet"
    VALIDATION_REJECTED = "ValidationRejected"


class LearningUpdate(BaseModel):
    """A producer's local model delta. The blob is opaque to everything but the weighting step."""

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64", val_json_bytes="base64")

    producer_id: str
    cycle_id: int
    delta_weights: bytes
    quality_score: float
    produced_at: datetime = Field(default_factory=_utc_now)


class AggregationCycle(BaseModel):
    cycle_id: int
    expected_producers: FrozenSet[str]
    received: Dict[str, LearningUpdate] = {}
    state: CycleState = CycleState.COLLECTING
    opened_at: datetime = Field(default_factory=_utc_now)

    @property
    def complete(self) -> bool:
        return self.expected_producers.issubset(self.received.keys())

    @property
    def missing(self) -> FrozenSet[str]:
        return self.expected_producers - frozenset(self.received)


class SubmitStatus(str, Enum):
    ACCEPTED = "accepted"
    REPLACED = "replaced"           # Same producer resent; last write wins
    WRONG_CYCLE = "wrong_cycle"
    UNEXPECTED_PRODUCER = "unexpected_producer"
    CLOSED = "closed"               # Cycle no longer collecting


class SubmitOutcome(BaseModel):
    status: SubmitStatus
    cycle_id: int

    @property
    def accepted(self) -> bool:
        return self.status in (SubmitStatus.ACCEPTED, SubmitStatus.REPLACED)


class AggregateCandidate(BaseModel):
    """Proposed aggregate handed to the validation collaborator."""

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    cycle_id: int
    weights: bytes
    dtype: str
    contributors: Dict[str, float]      # producer_id -> normalized weight
    excluded: List[str] = []
    reference: str                      # SHA-256 of weights


class CycleOutcome(BaseModel):
    """Durable record of how a cycle ended. Raw deltas are not retained."""

    cycle_id: int
    state: CycleState
    reason: Optional[DiscardReason] = None
    detail: str = ""
    expected_producers: List[str]
    responders: List[str]
    contributors: Dict[str, float] = {}
    update_digests: Dict[str, str] = {}
    reference: Optional[str] = None
    validation_score: Optional[float] = None
    opened_at: datetime
    closed_at: datetime = Field(default_factory=_utc_now)

    @property
    def published(self) -> bool:
        return self.state == CycleState.PUBLISHED


class PublishedAggregate(BaseModel):
    """The authoritative base artifact produced by the last published cycle."""

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    cycle_id: int
    reference: str
    weights: bytes
    dtype: str
    validation_score: float
    published_at: datetime = Field(default_factory=_utc_now)
