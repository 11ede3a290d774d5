"""
EconKernel: wires the ledger, registry, pricing, routing, tasks and
aggregation into one process and runs their loops.

Startup:
  1. Load config (YAML or defaults), open the ledger and verify its chain
  2. Register bootstrap entities
  3. On an empty ledger, mint the treasury and grant initial allocations
  4. Run the channel, aggregation and mint loops until stopped
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from croniter import croniter

from econ_kernel.aggregation.coordinator import AggregationCoordinator, ValidationCollaborator
from econ_kernel.aggregation.outcomes import OutcomeStore
from econ_kernel.events.channel import EventChannel, InMemoryChannel
from econ_kernel.events.dispatcher import EventDispatcher
from econ_kernel.execution.fabric import ExecutionCollaborator, ExecutionFabric
from econ_kernel.ledger.store import Ledger
from econ_kernel.models.config import KernelConfig
from econ_kernel.models.entity import ServiceEntity
from econ_kernel.models.ledger import Transaction
from econ_kernel.pricing.engine import PricingEngine
from econ_kernel.registry.store import Registry
from econ_kernel.routing.router import Router
from econ_kernel.tasks.coordinator import TaskCoordinator

logger = logging.getLogger(__name__)

ALLOCATION_TAG = "allocation"


class EconKernel:
    def __init__(
        self,
        config: Optional[KernelConfig] = None,
        validator: Optional[ValidationCollaborator] = None,
        channel: Optional[EventChannel] = None,
    ):
        self.config = config or KernelConfig()
        logging.getLogger("econ_kernel").setLevel(self.config.log_level.upper())

        self.channel = channel or InMemoryChannel()
        self.ledger = Ledger.from_config(self.config.ledger)
        self.registry = Registry(self.config.bootstrap_entities)
        self.pricing = PricingEngine(self.ledger, self.config.pricing)
        self.pricing.subscribe(self.channel.publish)
        self.router = Router(self.registry, self.pricing)
        self.fabric = ExecutionFabric()
        self.tasks = TaskCoordinator(
            self.router,
            self.ledger,
            self.fabric,
            registry=self.registry,
            config=self.config.tasks,
            default_latency_constraint=self.config.routing.default_latency_constraint,
        )
        self.aggregation = AggregationCoordinator(
            self.registry,
            validator=validator,
            config=self.config.aggregation,
            outcome_store=OutcomeStore(self.config.aggregation.db_path),
            publisher=self.channel.publish,
        )
        self.dispatcher = EventDispatcher(self.channel, self.tasks, self.fabric, self.aggregation)
        self._running = False

    @classmethod
    def from_yaml(cls, path: Union[str, Path], **kwargs) -> "EconKernel":
        return cls(KernelConfig.from_yaml(path), **kwargs)

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    @property
    def treasury(self) -> str:
        return self.config.ledger.treasury

    def start(self) -> bool:
        """
        Seed an empty ledger: mint the treasury, then grant initial allocations.
        Returns False (and changes nothing) when the ledger already has history.
        """
        if self.ledger.head > 0:
            logger.info("Ledger already at sequence %d; skipping bootstrap", self.ledger.head)
            return False

        self.mint_epoch(memo="genesis")
        for entity_id, amount in sorted(self.config.initial_allocations.items()):
            self.ledger.transfer(
                self.treasury, entity_id, amount, ALLOCATION_TAG, memo="initial allocation"
            )
        logger.info(
            "Bootstrapped ledger: %d credits to %s, %d allocation(s)",
            self.config.ledger.mint_amount, self.treasury, len(self.config.initial_allocations),
        )
        return True

    def mint_epoch(self, memo: str = "") -> Transaction:
        """Issue one fixed-supply mint event into the treasury."""
        return self.ledger.mint(
            self.treasury,
            self.config.ledger.mint_amount,
            memo=memo or f"mint:{datetime.now(timezone.utc).isoformat()}",
        )

    def register_service(self, service: ServiceEntity, collaborator: ExecutionCollaborator) -> None:
        """Register a service entity together with the collaborator that executes for it."""
        self.registry.register(service)
        self.fabric.register_service(service.id, collaborator)

    def deregister_service(self, service_id: str) -> None:
        self.registry.deregister(service_id)
        self.fabric.unregister_service(service_id)

    async def _mint_loop(self, stop_event: asyncio.Event) -> None:
        schedule = self.config.ledger.mint_schedule
        cron = croniter(schedule, datetime.now(timezone.utc))
        while not stop_event.is_set():
            next_fire = cron.get_next(datetime)
            delay = (next_fire - datetime.now(timezone.utc)).total_seconds()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(delay, 0))
            except asyncio.TimeoutError:
                txn = self.mint_epoch()
                logger.info("Scheduled mint of %d at sequence %d", txn.amount, txn.sequence_number)

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Bootstrap if needed and run every kernel loop until stop_event is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        self.start()
        loops = [
            self.channel.run(stop_event),
            self.aggregation.run_async(stop_event),
        ]
        if self.config.ledger.mint_schedule:
            loops.append(self._mint_loop(stop_event))

        try:
            await asyncio.gather(*loops)
        finally:
            self._running = False

    def close(self) -> None:
        self.ledger.close()
        self.aggregation.outcome_store.close()
