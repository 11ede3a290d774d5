"""
Aggregation Coordinator: federated combination of producer updates.

States (per cycle):
  COLLECTING → AGGREGATING → VALIDATING → (PUBLISHED | DISCARDED) → next cycle

Behavioral Contract:
- Collection ends when every expected producer has reported or the timeout
  elapses; a partial set is aggregated from whoever responded. Never blocks
  indefinitely.
- A producer resending in the same cycle replaces its earlier update.
- Producers with quality_score <= 0 do not take part in the weighted sum.
- Only an aggregate scoring above the acceptance threshold is published;
  otherwise the previous base stays authoritative.
- A failed or discarded cycle ends only that cycle. The outcome is durably
  recorded and the next cycle opens with cycle_id + 1.
- Raw deltas are dropped once the cycle ends.
"""

import asyncio
import inspect
import logging
import math
import threading
from typing import Callable, List, Optional, Protocol

from econ_kernel.aggregation.outcomes import OutcomeStore
from econ_kernel.aggregation.weighting import (
    IncompatibleUpdates,
    NoValidUpdates,
    digest,
    weighted_average,
)
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
from econ_kernel.models.config import AggregationConfig
from econ_kernel.models.events import AggregatePublished
from econ_kernel.registry.store import Registry

logger = logging.getLogger(__name__)


class ValidationCollaborator(Protocol):
    """Scores a proposed aggregate, e.g. on a held-out set."""

    async def validate(self, candidate: AggregateCandidate) -> float: ...


class AggregationCoordinator:
    def __init__(
        self,
        registry: Registry,
        validator: Optional[ValidationCollaborator] = None,
        config: Optional[AggregationConfig] = None,
        outcome_store: Optional[OutcomeStore] = None,
        publisher: Optional[Callable[[AggregatePublished], object]] = None,
    ):
        self.registry = registry
        self.validator = validator
        self.config = config or AggregationConfig()
        self.outcome_store = outcome_store or OutcomeStore(self.config.db_path)
        self.publisher = publisher

        self._lock = threading.Lock()
        self._running = False
        self.current_base: Optional[PublishedAggregate] = None
        self._cycle = self._open_cycle(self.outcome_store.last_cycle_id() + 1)

    @property
    def status(self) -> str:
        return "running" if self._running else "stopped"

    @property
    def cycle(self) -> AggregationCycle:
        """The active cycle (a copy; mutate only through submit)."""
        with self._lock:
            return self._cycle.model_copy(update={"received": dict(self._cycle.received)})

    def expected_producers(self) -> frozenset:
        return self.registry.find_by_capability(self.config.producer_capability)

    def _open_cycle(self, cycle_id: int) -> AggregationCycle:
        # Set when every expected producer has reported / when the cycle has ended
        self._complete = asyncio.Event()
        self._closed = asyncio.Event()
        cycle = AggregationCycle(
            cycle_id=cycle_id,
            expected_producers=self.expected_producers(),
        )
        logger.info(
            "Opened aggregation cycle %d expecting %d producer(s)",
            cycle_id, len(cycle.expected_producers),
        )
        return cycle

    # --- Collecting ---

    def submit(self, update: LearningUpdate) -> SubmitOutcome:
        """Record a producer's update for the active cycle. Last write wins."""
        with self._lock:
            cycle = self._cycle
            complete_event = self._complete
            if update.cycle_id != cycle.cycle_id:
                status = SubmitStatus.WRONG_CYCLE
            elif cycle.state != CycleState.COLLECTING:
                status = SubmitStatus.CLOSED
            elif update.producer_id not in cycle.expected_producers:
                status = SubmitStatus.UNEXPECTED_PRODUCER
            else:
                replaced = update.producer_id in cycle.received
                cycle.received[update.producer_id] = update
                status = SubmitStatus.REPLACED if replaced else SubmitStatus.ACCEPTED
            complete = bool(cycle.expected_producers) and cycle.complete

        if complete:
            complete_event.set()
        if status not in (SubmitStatus.ACCEPTED, SubmitStatus.REPLACED):
            logger.debug(
                "Ignored update from %s for cycle %d: %s",
                update.producer_id, update.cycle_id, status.value,
            )
        return SubmitOutcome(status=status, cycle_id=cycle.cycle_id)

    async def run_cycle(self, stop_event: Optional[asyncio.Event] = None) -> Optional[CycleOutcome]:
        """
        Wait for all expected producers (bounded by the collection timeout),
        then close the cycle.

        Returns None if stopped while collecting, or if the cycle was closed
        by another caller in the meantime (the next call picks up the cycle
        that replaced it, with a full collection window).
        """
        with self._lock:
            cycle = self._cycle
            collecting = cycle.state == CycleState.COLLECTING
            complete, closed = self._complete, self._closed

        events = [closed]
        if collecting:
            events.append(complete)
        if stop_event is not None:
            events.append(stop_event)
        # A cycle someone else is closing is waited out without a timeout
        await self._wait_any(
            events, self.config.collection_timeout_seconds if collecting else None
        )

        if closed.is_set() or not collecting:
            return None
        if stop_event is not None and stop_event.is_set() and not complete.is_set():
            return None
        if not complete.is_set():
            logger.info(
                "Cycle %d collection timed out: %d of %d producer(s) responded",
                cycle.cycle_id, len(cycle.received), len(cycle.expected_producers),
            )
        return await self.close_cycle(cycle.cycle_id)

    @staticmethod
    async def _wait_any(events: List[asyncio.Event], timeout: Optional[float]) -> None:
        waiters = [asyncio.ensure_future(event.wait()) for event in events]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    # --- Aggregating / validating ---

    async def close_cycle(self, cycle_id: Optional[int] = None) -> Optional[CycleOutcome]:
        """
        Stop collecting and run the active cycle to a terminal state.

        Only a collecting cycle can be closed, and only once. Returns None
        (and changes nothing) when the active cycle is already being closed,
        or when cycle_id names a cycle that is no longer active.
        """
        with self._lock:
            cycle = self._cycle
            if cycle.state != CycleState.COLLECTING or (
                cycle_id is not None and cycle_id != cycle.cycle_id
            ):
                logger.debug(
                    "Close of cycle %s skipped: active cycle %d is %s",
                    cycle_id, cycle.cycle_id, cycle.state.value,
                )
                return None
            cycle.state = CycleState.AGGREGATING
            received = dict(cycle.received)

        responders = sorted(received)
        digests = {p: digest(u.delta_weights) for p, u in received.items()}

        if len(received) < self.config.min_quorum:
            return await self._finish(
                cycle, CycleState.DISCARDED, responders, digests,
                reason=DiscardReason.QUORUM_NOT_MET,
                detail=f"{len(received)} of required {self.config.min_quorum} responded",
            )

        try:
            weights, contributors, excluded = weighted_average(
                received.values(), self.config.dtype
            )
        except NoValidUpdates as e:
            return await self._finish(
                cycle, CycleState.DISCARDED, responders, digests,
                reason=DiscardReason.NO_VALID_UPDATES, detail=str(e),
            )
        except IncompatibleUpdates as e:
            return await self._finish(
                cycle, CycleState.DISCARDED, responders, digests,
                reason=DiscardReason.INCOMPATIBLE_UPDATES, detail=str(e),
            )

        candidate = AggregateCandidate(
            cycle_id=cycle.cycle_id,
            weights=weights,
            dtype=self.config.dtype,
            contributors=contributors,
            excluded=excluded,
            reference=digest(weights),
        )
        cycle.state = CycleState.VALIDATING

        score = await self._validate(candidate)
        if score is None or score <= self.config.acceptance_threshold:
            if self.validator is None:
                detail = "no validator configured"
            elif score is None:
                detail = "validator produced no usable score"
            else:
                detail = f"score {score} did not exceed {self.config.acceptance_threshold}"
            return await self._finish(
                cycle, CycleState.DISCARDED, responders, digests,
                reason=DiscardReason.VALIDATION_REJECTED,
                detail=detail,
                candidate=candidate,
                score=score,
            )

        return await self._finish(
            cycle, CycleState.PUBLISHED, responders, digests,
            candidate=candidate, score=score,
        )

    async def _validate(self, candidate: AggregateCandidate) -> Optional[float]:
        if self.validator is None:
            return None
        try:
            result = self.validator.validate(candidate)
            if inspect.isawaitable(result):
                result = await result
            score = float(result)
        except Exception:
            logger.exception("Validator failed on cycle %d", candidate.cycle_id)
            return None
        if not math.isfinite(score):
            logger.warning("Validator returned non-finite score %s on cycle %d", score, candidate.cycle_id)
            return None
        return score

    async def _finish(
        self,
        cycle: AggregationCycle,
        state: CycleState,
        responders: List[str],
        digests: dict,
        reason: Optional[DiscardReason] = None,
        detail: str = "",
        candidate: Optional[AggregateCandidate] = None,
        score: Optional[float] = None,
    ) -> CycleOutcome:
        outcome = CycleOutcome(
            cycle_id=cycle.cycle_id,
            state=state,
            reason=reason,
            detail=detail,
            expected_producers=sorted(cycle.expected_producers),
            responders=responders,
            contributors=candidate.contributors if candidate else {},
            update_digests=digests,
            reference=candidate.reference if candidate else None,
            validation_score=score,
            opened_at=cycle.opened_at,
        )
        self.outcome_store.append(outcome)

        if state == CycleState.PUBLISHED:
            self.current_base = PublishedAggregate(
                cycle_id=cycle.cycle_id,
                reference=candidate.reference,
                weights=candidate.weights,
                dtype=candidate.dtype,
                validation_score=score,
            )
            logger.info("Cycle %d published %s (score %.4f)", cycle.cycle_id, candidate.reference, score)
        else:
            logger.warning("Cycle %d discarded: %s %s", cycle.cycle_id, reason.value, detail)

        with self._lock:
            closed = self._closed
            cycle.state = state
            cycle.received.clear()
            self._cycle = self._open_cycle(cycle.cycle_id + 1)
        closed.set()

        if state == CycleState.PUBLISHED:
            await self._broadcast(outcome)
        return outcome

    async def _broadcast(self, outcome: CycleOutcome) -> None:
        if self.publisher is None:
            return
        message = AggregatePublished(
            cycle_id=outcome.cycle_id,
            reference=outcome.reference,
            recipients=sorted(self.expected_producers()),
        )
        result = self.publisher(message)
        if inspect.isawaitable(result):
            await result

    # --- Loop ---

    def outcomes(self, limit: int = 50) -> List[CycleOutcome]:
        return self.outcome_store.query_recent(limit)

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run aggregation cycles back to back until stopped."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                await self.run_cycle(stop_event)
        finally:
            self._running = False
