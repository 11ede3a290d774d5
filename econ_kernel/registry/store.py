"""
Registry: every agent, service and resource the kernel knows about.

Updated by: explicit register/deregister calls, bootstrap at startup,
            execution outcomes (service success statistics)
Queried by: Router, TaskCoordinator, AggregationCoordinator

Writes are copy-on-write: each mutation publishes a new immutable
RegistrySnapshot, so readers never lock and always see a consistent view.
The capability index is maintained incrementally on every mutation.
"""

import logging
import threading
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

from econ_kernel.models.entity import Entity, EntityKind, ServiceEntity

logger = logging.getLogger(__name__)


class DuplicateId(Exception):
    """Raised when registering an id that is already present."""

    def __init__(self, entity_id: str) -> None:
        self.entity_id = entity_id
        super().__init__(f"Entity already registered: {entity_id}")


class NotFound(Exception):
    """Raised when an entity id is not registered."""

    def __init__(self, entity_id: str) -> None:
        self.entity_id = entity_id
        super().__init__(f"Entity not found: {entity_id}")


def _kind_value(kind: Union[EntityKind, str]) -> str:
    return kind.value if isinstance(kind, EntityKind) else str(kind)


class RegistrySnapshot:
    """Immutable view of the registry at one version."""

    def __init__(
        self,
        entities: Mapping[str, Entity],
        by_capability: Mapping[str, FrozenSet[str]],
        by_kind: Mapping[str, FrozenSet[str]],
        version: int,
    ):
        self._entities = entities
        self._by_capability = by_capability
        self._by_kind = by_kind
        self.version = version

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def __len__(self) -> int:
        return len(self._entities)

    def get(self, entity_id: str) -> Entity:
        entity = self._entities.get(entity_id)
        if entity is None:
            raise NotFound(entity_id)
        return entity

    def find_by_capability(
        self,
        capability: str,
        kind_filter: Optional[Union[EntityKind, str]] = None,
    ) -> FrozenSet[str]:
        ids = self._by_capability.get(capability, frozenset())
        if kind_filter is not None:
            ids = ids & self._by_kind.get(_kind_value(kind_filter), frozenset())
        return ids

    def services_for(self, operation_tag: str) -> List[ServiceEntity]:
        """Services advertising a capability, in id order."""
        ids = self.find_by_capability(operation_tag, EntityKind.SERVICE)
        return [self._entities[i] for i in sorted(ids)]

    def entities(self, kind: Optional[Union[EntityKind, str]] = None) -> List[Entity]:
        if kind is None:
            return [self._entities[i] for i in sorted(self._entities)]
        ids = self._by_kind.get(_kind_value(kind), frozenset())
        return [self._entities[i] for i in sorted(ids)]


class Registry:
    """
    Process-scoped entity registry. Holds exclusive ownership of entities.
    Contents are rebuilt from a bootstrap list at startup; not persisted.
    """

    def __init__(self, entities: Optional[Iterable[Entity]] = None):
        self._lock = threading.Lock()
        self._snapshot = RegistrySnapshot({}, {}, {}, 0)
        for entity in entities or []:
            self.register(entity)

    def snapshot(self) -> RegistrySnapshot:
        """Current consistent view. Safe to hold across later mutations."""
        return self._snapshot

    def register(self, entity: Entity) -> None:
        """Add an entity. Raises DuplicateId if the id is taken."""
        with self._lock:
            current = self._snapshot
            if entity.id in current:
                raise DuplicateId(entity.id)

            entities = dict(current._entities)
            entities[entity.id] = entity
            by_capability = dict(current._by_capability)
            for capability in entity.capabilities:
                by_capability[capability] = by_capability.get(capability, frozenset()) | {entity.id}
            by_kind = dict(current._by_kind)
            by_kind[entity.kind] = by_kind.get(entity.kind, frozenset()) | {entity.id}

            self._snapshot = RegistrySnapshot(
                entities, by_capability, by_kind, current.version + 1
            )
        logger.info("Registered %s %s", entity.kind, entity.id)

    def deregister(self, entity_id: str) -> None:
        """Remove an entity. Raises NotFound if absent, including on repeat calls."""
        with self._lock:
            current = self._snapshot
            entity = current.get(entity_id)

            entities = dict(current._entities)
            del entities[entity_id]
            by_capability = dict(current._by_capability)
            for capability in entity.capabilities:
                remaining = by_capability[capability] - {entity_id}
                if remaining:
                    by_capability[capability] = remaining
                else:
                    del by_capability[capability]
            by_kind = dict(current._by_kind)
            by_kind[entity.kind] = by_kind[entity.kind] - {entity_id}

            self._snapshot = RegistrySnapshot(
                entities, by_capability, by_kind, current.version + 1
            )
        logger.info("Deregistered %s %s", entity.kind, entity_id)

    def get(self, entity_id: str) -> Entity:
        return self._snapshot.get(entity_id)

    def find_by_capability(
        self,
        capability: str,
        kind_filter: Optional[Union[EntityKind, str]] = None,
    ) -> FrozenSet[str]:
        return self._snapshot.find_by_capability(capability, kind_filter)

    def entities(self, kind: Optional[Union[EntityKind, str]] = None) -> List[Entity]:
        return self._snapshot.entities(kind)

    def record_outcome(self, service_id: str, success: bool) -> ServiceEntity:
        """Fold one execution result into a service's success statistics."""
        with self._lock:
            current = self._snapshot
            service = current.get(service_id)
            if not isinstance(service, ServiceEntity):
                raise NotFound(service_id)

            stats = service.stats.model_copy(update={
                "successes": service.stats.successes + (1 if success else 0),
                "failures": service.stats.failures + (0 if success else 1),
            })
            updated = service.model_copy(update={"stats": stats})
            entities = dict(current._entities)
            entities[service_id] = updated
            self._snapshot = RegistrySnapshot(
                entities, current._by_capability, current._by_kind, current.version + 1
            )
        return updated

    def update_state(self, entity_id: str, updates: Dict[str, object]) -> Entity:
        """Merge keys into an entity's mutable state mapping."""
        with self._lock:
            current = self._snapshot
            entity = current.get(entity_id)
            updated = entity.model_copy(update={"state": {**entity.state, **updates}})
            entities = dict(current._entities)
            entities[entity_id] = updated
            self._snapshot = RegistrySnapshot(
                entities, current._by_capability, current._by_kind, current.version + 1
            )
        return updated

    def count(self) -> int:
        return len(self._snapshot)
