"""Entities: the agents, services and resources known to the Registry."""

from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, Literal, Optional, Union

from pydantic import BaseModel, Field, PositiveInt


class EntityKind(str, Enum):
    AGENT = "agent"
    SERVICE = "service"
    RESOURCE = "resource"


class InfrastructureTier(str, Enum):
    EDGE = "edge"
    CLOUD = "cloud"


class ServiceStats(BaseModel):
    """Execution history of a service, owned by the Registry."""

    successes: int = 0
    failures: int = 0

    @property
    def success_rate(self) -> float:
        total = self.successes + self.failures
        if total == 0:
            return 1.0
        return self.successes / total


class _EntityBase(BaseModel):
    id: str
    capabilities: FrozenSet[str] = frozenset()
    constraints: Dict[str, Any] = {}        # e.g. {"max_latency": 2.0}
    state: Dict[str, Any] = {}              # Mutated only by the owning subsystem

    def has_capability(self, capability: str) -> bool:
        return capability in self.capabilities


class AgentEntity(_EntityBase):
    """An autonomous agent that requests tasks and pays for them."""

    kind: Literal["agent"] = "agent"
    max_latency_seconds: Optional[float] = None


class ServiceEntity(_EntityBase):
    """A service that executes operations for a price."""

    kind: Literal["service"] = "service"
    latency_seconds: float = Field(ge=0)
    tier: InfrastructureTier = InfrastructureTier.CLOUD
    price_schedule: Dict[str, PositiveInt] = {}     # operation_tag -> base price in credits
    stats: ServiceStats = Field(default_factory=ServiceStats)

    @property
    def success_rate(self) -> float:
        return self.stats.success_rate


class ResourceEntity(_EntityBase):
    """A compute or storage resource backing services."""

    kind: Literal["resource"] = "resource"
    infrastructure_class: InfrastructureTier = InfrastructureTier.CLOUD
    capacity: int = 0


Entity = Annotated[
    Union[AgentEntity, ServiceEntity, ResourceEntity],
    Field(discriminator="kind"),
]
