"""
Event dispatcher: turns channel messages into kernel calls.

Every handler is idempotent on the message's dedup key, so redelivery has
no additional effect: a TaskRequest starts at most one pipeline, and a
TaskResult resolves at most one execution (and so settles at most once).
Only the most recent dedup keys are remembered; an older redelivery still
meets the coordinator's task_id idempotence and finds no waiting execution.

Handlers never await a task pipeline. A pipeline executing on a remote
service is itself waiting for a TaskResult from this same channel.
"""

import logging
from collections import OrderedDict
from typing import Dict, Optional

from econ_kernel.aggregation.coordinator import AggregationCoordinator
from econ_kernel.events.channel import EventChannel
from econ_kernel.execution.fabric import ExecutionFabric
from econ_kernel.models.events import (
    AggregatePublished,
    LearningUpdateMessage,
    PriceUpdate,
    TaskRequest,
    TaskResult,
)
from econ_kernel.tasks.coordinator import TaskCoordinator

logger = logging.getLogger(__name__)


class SeenKeys:
    """Most recently seen dedup keys, up to a fixed capacity (oldest dropped first)."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._keys: "OrderedDict[str, None]" = OrderedDict()

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: str) -> None:
        self._keys[key] = None
        self._keys.move_to_end(key)
        while len(self._keys) > self.capacity:
            self._keys.popitem(last=False)


class EventDispatcher:
    def __init__(
        self,
        channel: EventChannel,
        tasks: TaskCoordinator,
        fabric: ExecutionFabric,
        aggregation: Optional[AggregationCoordinator] = None,
        dedup_capacity: int = 10_000,
    ):
        self.channel = channel
        self.tasks = tasks
        self.fabric = fabric
        self.aggregation = aggregation

        self._seen_requests = SeenKeys(dedup_capacity)
        self._seen_results = SeenKeys(dedup_capacity)
        self.latest_prices: Dict[str, PriceUpdate] = {}
        self.last_published: Optional[AggregatePublished] = None

        channel.subscribe("task_request", self.on_task_request)
        channel.subscribe("task_result", self.on_task_result)
        channel.subscribe("learning_update", self.on_learning_update)
        channel.subscribe("price_update", self.on_price_update)
        channel.subscribe("aggregate_published", self.on_aggregate_published)

    def on_task_request(self, message: TaskRequest) -> None:
        # Requests addressed to a service are for that service, not for us
        if message.service_id is not None:
            return
        if message.dedup_key in self._seen_requests:
            logger.debug("Duplicate task request %s ignored", message.dedup_key)
            return
        self._seen_requests.add(message.dedup_key)
        self.tasks.submit(message.task)

    def on_task_result(self, message: TaskResult) -> None:
        if message.dedup_key in self._seen_results:
            logger.debug("Duplicate task result %s ignored", message.dedup_key)
            return
        self._seen_results.add(message.dedup_key)
        if not self.fabric.resolve(message):
            logger.info("No execution waiting for result %s", message.dedup_key)

    def on_learning_update(self, message: LearningUpdateMessage) -> None:
        if self.aggregation is None:
            return
        self.aggregation.submit(message.update)

    def on_price_update(self, message: PriceUpdate) -> None:
        current = self.latest_prices.get(message.operation_tag)
        if current is None or message.epoch >= current.epoch:
            self.latest_prices[message.operation_tag] = message

    def on_aggregate_published(self, message: AggregatePublished) -> None:
        if self.last_published is None or message.cycle_id > self.last_published.cycle_id:
            self.last_published = message
