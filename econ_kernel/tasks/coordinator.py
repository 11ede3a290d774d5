"""
Task Coordinator: runs each task through request → route → execute → settle.

States:
  created → quoted → authorized → executing → settled
  created → rejected                     (no candidate)
  quoted → rejected                      (insufficient balance)
  executing → authorized                 (retry on the next ranked candidate)
  executing → rejected                   (every candidate failed)
  any non-terminal → expired             (deadline passed, or execution timed out)

Behavioral Contract:
- One independent asyncio pipeline per in-flight task. A failing pipeline
  never affects the others.
- Execution is the only suspension point and is bounded by the task deadline.
  A timeout expires the task; it is not a rejection.
- Authorization reserves the quoted price against the agent's balance until
  the attempt settles or fails, so concurrent tasks cannot spend the same credits.
- Settlement appends exactly one ledger transaction per task. A cost beyond the
  slippage tolerance is still settled and reported as an anomaly.
- Cancellation is honoured before execution. Once executing it is best-effort:
  the outcome is awaited and settled normally.
"""

import asyncio
import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from econ_kernel.execution.fabric import ExecutionFabric
from econ_kernel.ledger.store import InsufficientBalance, Ledger
from econ_kernel.models.config import TaskConfig
from econ_kernel.models.entity import AgentEntity
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
from econ_kernel.registry.store import NotFound, Registry
from econ_kernel.routing.router import Candidate, Router

logger = logging.getLogger(__name__)


_ALLOWED_TRANSITIONS = {
    None: {TaskState.CREATED},
    TaskState.CREATED: {TaskState.QUOTED, TaskState.REJECTED, TaskState.EXPIRED},
    TaskState.QUOTED: {TaskState.AUTHORIZED, TaskState.REJECTED, TaskState.EXPIRED},
    TaskState.AUTHORIZED: {TaskState.EXECUTING, TaskState.REJECTED, TaskState.EXPIRED},
    TaskState.EXECUTING: {
        TaskState.SETTLED,
        TaskState.REJECTED,
        TaskState.EXPIRED,
        TaskState.AUTHORIZED,
    },
}


class InvalidTransition(Exception):
    """Raised when a task is moved along an edge the state machine doesn't have."""

    def __init__(self, task_id: str, from_state: Optional[TaskState], to_state: TaskState):
        self.task_id = task_id
        self.from_state = from_state
        self.to_state = to_state
        source = from_state.value if from_state else "none"
        super().__init__(f"Task {task_id}: cannot move {source} -> {to_state.value}")


class UnknownTask(Exception):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Unknown task: {task_id}")


class TaskRecord:
    """Mutable pipeline state for one task. Owned by the coordinator."""

    def __init__(self, task: Task):
        self.task = task
        self.state: Optional[TaskState] = None
        self.reason: Optional[RejectionReason] = None
        self.detail = ""
        self.candidates: List[Candidate] = []
        self.attempts: List[TaskAttempt] = []
        self.transitions: List[TaskTransition] = []
        self.anomalies: List[SlippageAnomaly] = []
        self.service_id: Optional[str] = None
        self.quoted_price: Optional[int] = None
        self.actual_cost: Optional[int] = None
        self.settlement_sequence: Optional[int] = None
        self.output: Optional[dict] = None
        self.cancel_requested = False

    @property
    def terminal(self) -> bool:
        return self.state is not None and self.state.terminal

    def outcome(self) -> TaskOutcome:
        return TaskOutcome(
            task_id=self.task.task_id,
            state=self.state,
            reason=self.reason,
            detail=self.detail,
            service_id=self.service_id,
            quoted_price=self.quoted_price,
            actual_cost=self.actual_cost,
            settlement_sequence=self.settlement_sequence,
            output=self.output,
            anomalies=list(self.anomalies),
            attempts=list(self.attempts),
            transitions=list(self.transitions),
        )


class TaskCoordinator:
    def __init__(
        self,
        router: Router,
        ledger: Ledger,
        fabric: ExecutionFabric,
        registry: Optional[Registry] = None,
        config: Optional[TaskConfig] = None,
        default_latency_constraint: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.router = router
        self.pricing = router.pricing
        self.ledger = ledger
        self.fabric = fabric
        self.registry = registry or router.registry
        self.config = config or TaskConfig()
        self.default_latency_constraint = default_latency_constraint
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._records: Dict[str, TaskRecord] = {}
        self._pipelines: Dict[str, asyncio.Future] = {}
        # task_id -> time it reached a terminal state, oldest first
        self._finished: "OrderedDict[str, datetime]" = OrderedDict()
        self._reserved: Dict[str, int] = {}
        self._reserve_lock = threading.Lock()

    # --- Public API ---

    def submit(self, task: Task) -> TaskOutcome:
        """
        Start a pipeline for a task on the running event loop.
        Idempotent on task_id while the task is retained: a resubmitted task
        returns its current outcome.
        """
        self.prune()
        existing = self._records.get(task.task_id)
        if existing is not None:
            logger.debug("Task %s already submitted; ignoring duplicate", task.task_id)
            return existing.outcome()

        record = TaskRecord(task)
        self._records[task.task_id] = record
        self._transition(record, TaskState.CREATED)

        pipeline = asyncio.ensure_future(self._run_pipeline(record))
        pipeline.add_done_callback(self._on_pipeline_done)
        self._pipelines[task.task_id] = pipeline
        return record.outcome()

    async def run(self, task: Task) -> TaskOutcome:
        """Submit a task (or join its pipeline) and wait for the terminal outcome."""
        self.submit(task)
        return await self.wait(task.task_id)

    async def wait(self, task_id: str) -> TaskOutcome:
        pipeline = self._pipelines.get(task_id)
        if pipeline is None:
            raise UnknownTask(task_id)
        return await asyncio.shield(pipeline)

    def get(self, task_id: str) -> TaskOutcome:
        record = self._records.get(task_id)
        if record is None:
            raise UnknownTask(task_id)
        return record.outcome()

    def cancel(self, task_id: str) -> bool:
        """
        Request cancellation. Returns True when the task will stop before
        executing; False when it is already executing or finished.
        """
        record = self._records.get(task_id)
        if record is None:
            raise UnknownTask(task_id)
        if record.terminal:
            return False

        record.cancel_requested = True
        if record.state == TaskState.EXECUTING:
            logger.info("Task %s is executing; cancellation is best-effort", task_id)
            return False
        return True

    def reserved(self, agent_id: str) -> int:
        """Credits currently held by authorized attempts of an agent."""
        return self._reserved.get(agent_id, 0)

    def outcomes(self) -> List[TaskOutcome]:
        return [r.outcome() for r in self._records.values()]

    def prune(self) -> int:
        """Forget tasks that finished more than retention_seconds ago. Returns how many."""
        cutoff = self._clock() - timedelta(seconds=self.config.retention_seconds)
        evicted = 0
        while self._finished:
            task_id, finished_at = next(iter(self._finished.items()))
            if finished_at > cutoff:
                break
            self._finished.popitem(last=False)
            self._records.pop(task_id, None)
            self._pipelines.pop(task_id, None)
            evicted += 1
        if evicted:
            logger.debug("Pruned %d finished task(s)", evicted)
        return evicted

    # --- Pipeline ---

    async def _run_pipeline(self, record: TaskRecord) -> TaskOutcome:
        task = record.task

        if self._deadline_passed(task):
            return self._expire(record, "deadline passed before quoting")
        if record.cancel_requested:
            return self._reject(record, RejectionReason.CANCELLED, "cancelled before quoting")

        candidates, summary = self.router.explain(
            task.operation_tag,
            task.budget_ceiling,
            self._latency_constraint(task),
            task.required_tier,
        )
        if not candidates:
            return self._reject(
                record,
                RejectionReason.NO_CANDIDATE,
                f"capable={summary.capable} within_latency={summary.within_latency} "
                f"within_budget={summary.within_budget}",
            )

        record.candidates = candidates[: self.config.max_attempts]
        top = record.candidates[0]
        record.service_id = top.service_id
        record.quoted_price = top.price
        self._transition(record, TaskState.QUOTED, f"{len(candidates)} candidate(s)")

        for candidate in record.candidates:
            if self._deadline_passed(task):
                return self._expire(record, "deadline passed before execution")
            if record.cancel_requested:
                return self._reject(record, RejectionReason.CANCELLED, "cancelled before execution")

            quote = candidate.quote
            if self.pricing.is_stale(quote):
                quote = self.pricing.refresh(quote)
                logger.debug("Task %s: refreshed stale quote for %s", task.task_id, quote.service_id)
            if quote.unit_price > task.budget_ceiling:
                record.attempts.append(TaskAttempt(
                    service_id=quote.service_id,
                    quoted_price=quote.unit_price,
                    failure_reason="requote exceeds budget",
                ))
                continue

            if not self._reserve(task.requesting_agent, quote.unit_price):
                available = self.ledger.balance(task.requesting_agent) - self.reserved(task.requesting_agent)
                return self._reject(
                    record,
                    RejectionReason.INSUFFICIENT_BALANCE,
                    f"needs {quote.unit_price}, has {available}",
                )

            try:
                record.service_id = quote.service_id
                record.quoted_price = quote.unit_price
                self._transition(record, TaskState.AUTHORIZED, quote.service_id)

                if record.cancel_requested:
                    return self._reject(record, RejectionReason.CANCELLED, "cancelled after authorization")

                self._transition(record, TaskState.EXECUTING, quote.service_id)
                try:
                    result = await self._execute(quote.service_id, task)
                except asyncio.TimeoutError:
                    record.attempts.append(TaskAttempt(
                        service_id=quote.service_id,
                        quoted_price=quote.unit_price,
                        failure_reason="timeout",
                    ))
                    return self._expire(record, f"execution on {quote.service_id} timed out")

                if isinstance(result, ExecutionSuccess):
                    self._record_service_outcome(quote.service_id, True)
                    return self._settle(record, quote, result)

                self._record_service_outcome(quote.service_id, False)
                record.attempts.append(TaskAttempt(
                    service_id=quote.service_id,
                    quoted_price=quote.unit_price,
                    failure_reason=result.reason,
                ))
                logger.info(
                    "Task %s failed on %s: %s", task.task_id, quote.service_id, result.reason
                )
                if record.cancel_requested:
                    return self._reject(record, RejectionReason.CANCELLED, "cancelled during execution")
            finally:
                self._release(task.requesting_agent, quote.unit_price)

        if self._deadline_passed(task):
            return self._expire(record, "deadline passed after failed attempts")
        return self._reject(
            record,
            RejectionReason.EXECUTION_FAILED,
            f"{len(record.attempts)} attempt(s) failed",
        )

    async def _execute(self, service_id: str, task: Task):
        remaining = (task.deadline - self._clock()).total_seconds()
        if remaining <= 0:
            raise asyncio.TimeoutError()
        return await asyncio.wait_for(self.fabric.execute(service_id, task), timeout=remaining)

    def _settle(self, record: TaskRecord, quote: PriceQuote, result: ExecutionSuccess) -> TaskOutcome:
        """Pay the service. Never appends twice for one task."""
        task = record.task
        if record.state == TaskState.SETTLED:
            return record.outcome()

        cost = result.cost_actual
        record.attempts.append(TaskAttempt(
            service_id=quote.service_id,
            quoted_price=quote.unit_price,
            success=True,
            actual_cost=cost,
        ))
        record.actual_cost = cost
        record.output = result.output

        limit = quote.unit_price * (1 + self.config.slippage_tolerance)
        if cost > limit:
            anomaly = SlippageAnomaly(
                task_id=task.task_id,
                service_id=quote.service_id,
                quoted_price=quote.unit_price,
                actual_cost=cost,
                tolerance=self.config.slippage_tolerance,
            )
            record.anomalies.append(anomaly)
            logger.warning(
                "Slippage on task %s: %s quoted %d, charged %d (tolerance %.0f%%)",
                task.task_id, quote.service_id, quote.unit_price, cost,
                self.config.slippage_tolerance * 100,
            )

        if cost > 0:
            try:
                txn = self.ledger.transfer(
                    task.requesting_agent,
                    quote.service_id,
                    cost,
                    task.operation_tag,
                    task_id=task.task_id,
                    memo=f"settle:{task.task_id}",
                )
            except InsufficientBalance as e:
                logger.error("Settlement failed for task %s: %s", task.task_id, e)
                return self._reject(record, RejectionReason.SETTLEMENT_FAILED, str(e))
            record.settlement_sequence = txn.sequence_number

        self._transition(record, TaskState.SETTLED, f"cost={cost}")
        return record.outcome()

    # --- Helpers ---

    def _transition(self, record: TaskRecord, to_state: TaskState, detail: str = "") -> None:
        allowed = _ALLOWED_TRANSITIONS.get(record.state, set())
        if to_state not in allowed:
            raise InvalidTransition(record.task.task_id, record.state, to_state)
        at = self._clock()
        record.transitions.append(TaskTransition(
            from_state=record.state,
            to_state=to_state,
            at=at,
            detail=detail,
        ))
        if to_state.terminal:
            self._finished[record.task.task_id] = at
        logger.debug(
            "Task %s: %s -> %s %s",
            record.task.task_id,
            record.state.value if record.state else "none",
            to_state.value,
            detail,
        )
        record.state = to_state

    def _reject(self, record: TaskRecord, reason: RejectionReason, detail: str = "") -> TaskOutcome:
        record.reason = reason
        record.detail = detail
        self._transition(record, TaskState.REJECTED, reason.value)
        logger.info("Task %s rejected: %s %s", record.task.task_id, reason.value, detail)
        return record.outcome()

    def _expire(self, record: TaskRecord, detail: str) -> TaskOutcome:
        record.detail = detail
        self._transition(record, TaskState.EXPIRED, detail)
        logger.info("Task %s expired: %s", record.task.task_id, detail)
        return record.outcome()

    def _deadline_passed(self, task: Task) -> bool:
        return self._clock() >= task.deadline

    def _latency_constraint(self, task: Task) -> Optional[float]:
        if task.latency_constraint is not None:
            return task.latency_constraint
        try:
            agent = self.registry.get(task.requesting_agent)
        except NotFound:
            agent = None
        if isinstance(agent, AgentEntity) and agent.max_latency_seconds is not None:
            return agent.max_latency_seconds
        return self.default_latency_constraint

    def _reserve(self, agent_id: str, amount: int) -> bool:
        with self._reserve_lock:
            held = self._reserved.get(agent_id, 0)
            if self.ledger.balance(agent_id) - held < amount:
                return False
            self._reserved[agent_id] = held + amount
            return True

    def _release(self, agent_id: str, amount: int) -> None:
        with self._reserve_lock:
            remaining = self._reserved.get(agent_id, 0) - amount
            if remaining > 0:
                self._reserved[agent_id] = remaining
            else:
                self._reserved.pop(agent_id, None)

    def _record_service_outcome(self, service_id: str, success: bool) -> None:
        try:
            self.registry.record_outcome(service_id, success)
        except NotFound:
            # Deregistered while the task was executing
            logger.debug("Service %s no longer registered; outcome not recorded", service_id)

    def _on_pipeline_done(self, pipeline: asyncio.Future) -> None:
        if pipeline.cancelled():
            return
        error = pipeline.exception()
        if error is not None:
            logger.error("Task pipeline crashed", exc_info=error)
