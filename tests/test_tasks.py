"""Tests for the Task Coordinator pipeline."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import pytest

from econ_kernel.execution.fabric import ExecutionFabric, SimulatedService
from econ_kernel.ledger.store import Ledger
from econ_kernel.models.config import TaskConfig
from econ_kernel.models.entity import AgentEntity, ServiceEntity
from econ_kernel.models.task import RejectionReason, Task, TaskState
from econ_kernel.pricing.engine import PricingEngine
from econ_kernel.registry.store import Registry
from econ_kernel.routing.router import Router
from econ_kernel.tasks.coordinator import InvalidTransition, TaskCoordinator, UnknownTask


def _make_coordinator(
    services: List[Tuple[ServiceEntity, SimulatedService]],
    balance: int = 100,
    agent: Optional[AgentEntity] = None,
    config: Optional[TaskConfig] = None,
    clock=None,
) -> TaskCoordinator:
    ledger = Ledger()
    ledger.mint("pool", 10_000)
    ledger.transfer("pool", "agent1", balance, "allocation")

    registry = Registry([agent or AgentEntity(id="agent1")])
    fabric = ExecutionFabric()
    for entity, collaborator in services:
        registry.register(entity)
        fabric.register_service(entity.id, collaborator)

    router = Router(registry, PricingEngine(ledger))
    return TaskCoordinator(router, ledger, fabric, config=config, clock=clock)


def _make_service(
    service_id: str,
    price: int,
    latency: float = 1.0,
    **behaviour,
) -> Tuple[ServiceEntity, SimulatedService]:
    entity = ServiceEntity(
        id=service_id,
        capabilities=frozenset({"summarize"}),
        latency_seconds=latency,
        price_schedule={"summarize": price},
    )
    return entity, SimulatedService(service_id, {"summarize": price}, **behaviour)


def _make_task(
    task_id: str = "task_1",
    budget: int = 100,
    deadline_in: float = 5.0,
    **kwargs,
) -> Task:
    return Task(
        task_id=task_id,
        requesting_agent="agent1",
        operation_tag="summarize",
        parameters={"text": "hello"},
        budget_ceiling=budget,
        deadline=datetime.now(timezone.utc) + timedelta(seconds=deadline_in),
        **kwargs,
    )


def _states(outcome) -> List[TaskState]:
    return [t.to_state for t in outcome.transitions]


class TestTaskSettlement:
    def test_happy_path_settles_once(self):
        coordinator = _make_coordinator([_make_service("svc_a", 30)])
        outcome = asyncio.run(coordinator.run(_make_task()))

        assert outcome.state == TaskState.SETTLED
        assert outcome.service_id == "svc_a"
        assert outcome.quoted_price == 30
        assert outcome.actual_cost == 30
        assert outcome.settlement_sequence == 3
        assert _states(outcome) == [
            TaskState.CREATED,
            TaskState.QUOTED,
            TaskState.AUTHORIZED,
            TaskState.EXECUTING,
            TaskState.SETTLED,
        ]

        ledger = coordinator.ledger
        assert ledger.balance("agent1") == 70
        assert ledger.balance("svc_a") == 30
        assert len(ledger.find_by_task("task_1")) == 1
        assert coordinator.reserved("agent1") == 0
        assert coordinator.registry.get("svc_a").stats.successes == 1

    def test_picks_cheapest_candidate(self):
        coordinator = _make_coordinator([
            _make_service("svc_a", 40),
            _make_service("svc_b", 25),
        ])
        outcome = asyncio.run(coordinator.run(_make_task()))
        assert outcome.service_id == "svc_b"
        assert coordinator.ledger.balance("svc_b") == 25

    def test_zero_cost_settles_without_transaction(self):
        coordinator = _make_coordinator([_make_service("svc_a", 30, cost_actual=0)])
        outcome = asyncio.run(coordinator.run(_make_task()))

        assert outcome.state == TaskState.SETTLED
        assert outcome.settlement_sequence is None
        assert coordinator.ledger.head == 2

    def test_slippage_beyond_tolerance_is_reported(self):
        coordinator = _make_coordinator([_make_service("svc_a", 30, cost_actual=40)])
        outcome = asyncio.run(coordinator.run(_make_task()))

        assert outcome.state == TaskState.SETTLED
        assert outcome.actual_cost == 40
        assert len(outcome.anomalies) == 1
        anomaly = outcome.anomalies[0]
        assert anomaly.quoted_price == 30
        assert anomaly.slippage == 10
        assert coordinator.ledger.balance("agent1") == 60

    def test_slippage_within_tolerance_is_silent(self):
        coordinator = _make_coordinator([_make_service("svc_a", 30, cost_actual=33)])
        outcome = asyncio.run(coordinator.run(_make_task()))
        assert outcome.anomalies == []
        assert coordinator.ledger.balance("agent1") == 67

    def test_settlement_failure_when_balance_drained(self):
        coordinator = _make_coordinator([_make_service("svc_a", 30, delay_seconds=0.05)])

        async def scenario():
            coordinator.submit(_make_task())
            await asyncio.sleep(0.01)
            coordinator.ledger.transfer("agent1", "pool", 100, "withdrawal")
            return await coordinator.wait("task_1")

        outcome = asyncio.run(scenario())
        assert outcome.state == TaskState.REJECTED
        assert outcome.reason == RejectionReason.SETTLEMENT_FAILED
        assert coordinator.ledger.find_by_task("task_1") == []


class TestTaskRejection:
    def test_no_candidate_within_budget(self):
        coordinator = _make_coordinator([_make_service("svc_a", 30)])
        outcome = asyncio.run(coordinator.run(_make_task(budget=10)))

        assert outcome.state == TaskState.REJECTED
        assert outcome.reason == RejectionReason.NO_CANDIDATE
        assert _states(outcome) == [TaskState.CREATED, TaskState.REJECTED]
        assert coordinator.ledger.head == 2

    def test_agent_latency_limit_applies(self):
        agent = AgentEntity(id="agent1", max_latency_seconds=1.5)
        coordinator = _make_coordinator([_make_service("svc_a", 30, latency=2.0)], agent=agent)
        outcome = asyncio.run(coordinator.run(_make_task()))
        assert outcome.reason == RejectionReason.NO_CANDIDATE

        # An explicit constraint on the task wins over the agent's limit
        outcome = asyncio.run(coordinator.run(_make_task("task_2", latency_constraint=3.0)))
        assert outcome.state == TaskState.SETTLED

    def test_insufficient_balance(self):
        coordinator = _make_coordinator([_make_service("svc_a", 30)], balance=20)
        outcome = asyncio.run(coordinator.run(_make_task()))

        assert outcome.state == TaskState.REJECTED
        assert outcome.reason == RejectionReason.INSUFFICIENT_BALANCE
        assert _states(outcome) == [TaskState.CREATED, TaskState.QUOTED, TaskState.REJECTED]
        assert coordinator.ledger.balance("agent1") == 20

    def test_every_candidate_fails(self):
        coordinator = _make_coordinator([
            _make_service("svc_a", 20, fail_reason="model crashed"),
            _make_service("svc_b", 30, fail_reason="out of memory"),
        ])
        outcome = asyncio.run(coordinator.run(_make_task()))

        assert outcome.state == TaskState.REJECTED
        assert outcome.reason == RejectionReason.EXECUTION_FAILED
        assert [a.failure_reason for a in outcome.attempts] == ["model crashed", "out of memory"]
        assert coordinator.ledger.head == 2
        assert coordinator.reserved("agent1") == 0

    def test_max_attempts_limits_fallback(self):
        coordinator = _make_coordinator(
            [
                _make_service("svc_a", 20, fail_reason="down"),
                _make_service("svc_b", 30),
            ],
            config=TaskConfig(max_attempts=1),
        )
        outcome = asyncio.run(coordinator.run(_make_task()))
        assert outcome.reason == RejectionReason.EXECUTION_FAILED
        assert len(outcome.attempts) == 1


class TestTaskRetry:
    def test_falls_back_to_next_candidate(self):
        coordinator = _make_coordinator([
            _make_service("svc_a", 20, fail_reason="model crashed"),
            _make_service("svc_b", 30),
        ])
        outcome = asyncio.run(coordinator.run(_make_task()))

        assert outcome.state == TaskState.SETTLED
        assert outcome.service_id == "svc_b"
        assert [a.service_id for a in outcome.attempts] == ["svc_a", "svc_b"]
        assert [a.success for a in outcome.attempts] == [False, True]
        assert _states(outcome) == [
            TaskState.CREATED,
            TaskState.QUOTED,
            TaskState.AUTHORIZED,
            TaskState.EXECUTING,
            TaskState.AUTHORIZED,
            TaskState.EXECUTING,
            TaskState.SETTLED,
        ]
        assert coordinator.ledger.balance("agent1") == 70
        assert coordinator.registry.get("svc_a").stats.failures == 1

    def test_raising_service_is_a_failed_attempt(self):
        entity, service = _make_service("svc_a", 20)

        async def explode(parameters, deadline, task):
            raise RuntimeError("connection reset")

        service.execute = explode
        coordinator = _make_coordinator([(entity, service), _make_service("svc_b", 30)])
        outcome = asyncio.run(coordinator.run(_make_task()))

        assert outcome.service_id == "svc_b"
        assert outcome.attempts[0].failure_reason == "connection reset"


class TestTaskDeadlines:
    def test_execution_timeout_expires_task(self):
        coordinator = _make_coordinator([_make_service("svc_a", 30, delay_seconds=1.0)])
        outcome = asyncio.run(coordinator.run(_make_task(deadline_in=0.1)))

        assert outcome.state == TaskState.EXPIRED
        assert outcome.reason is None
        assert outcome.attempts[0].failure_reason == "timeout"
        assert coordinator.ledger.head == 2
        assert coordinator.reserved("agent1") == 0

    def test_service_timeout_expires_task(self):
        entity, service = _make_service("svc_a", 20)

        async def stall(parameters, deadline, task):
            raise TimeoutError("upstream timed out")

        service.execute = stall
        coordinator = _make_coordinator([(entity, service), _make_service("svc_b", 30)])
        outcome = asyncio.run(coordinator.run(_make_task()))

        assert outcome.state == TaskState.EXPIRED
        assert [a.service_id for a in outcome.attempts] == ["svc_a"]
        assert outcome.attempts[0].failure_reason == "timeout"
        assert coordinator.ledger.head == 2
        assert coordinator.reserved("agent1") == 0

    def test_past_deadline_expires_before_quoting(self):
        coordinator = _make_coordinator([_make_service("svc_a", 30)])
        outcome = asyncio.run(coordinator.run(_make_task(deadline_in=-1.0)))

        assert outcome.state == TaskState.EXPIRED
        assert _states(outcome) == [TaskState.CREATED, TaskState.EXPIRED]

    def test_naive_deadline_is_treated_as_utc(self):
        task = Task(
            task_id="t",
            requesting_agent="agent1",
            operation_tag="summarize",
            budget_ceiling=10,
            deadline=datetime(2030, 1, 1, 12, 0),
        )
        assert task.deadline.tzinfo == timezone.utc


class TestTaskLifecycle:
    def test_cancel_before_execution(self):
        entity, service = _make_service("svc_a", 30)
        coordinator = _make_coordinator([(entity, service)])

        async def scenario():
            coordinator.submit(_make_task())
            assert coordinator.cancel("task_1") is True
            return await coordinator.wait("task_1")

        outcome = asyncio.run(scenario())
        assert outcome.state == TaskState.REJECTED
        assert outcome.reason == RejectionReason.CANCELLED
        assert service.calls == 0
        assert coordinator.ledger.head == 2

    def test_cancel_while_executing_is_best_effort(self):
        coordinator = _make_coordinator([_make_service("svc_a", 30, delay_seconds=0.05)])

        async def scenario():
            coordinator.submit(_make_task())
            await asyncio.sleep(0.01)
            assert coordinator.get("task_1").state == TaskState.EXECUTING
            assert coordinator.cancel("task_1") is False
            return await coordinator.wait("task_1")

        outcome = asyncio.run(scenario())
        assert outcome.state == TaskState.SETTLED

    def test_cancel_finished_task(self):
        coordinator = _make_coordinator([_make_service("svc_a", 30)])
        asyncio.run(coordinator.run(_make_task()))
        assert coordinator.cancel("task_1") is False

    def test_duplicate_submit_runs_once(self):
        entity, service = _make_service("svc_a", 30)
        coordinator = _make_coordinator([(entity, service)])

        async def scenario():
            task = _make_task()
            coordinator.submit(task)
            coordinator.submit(task)
            return await coordinator.run(task)

        outcome = asyncio.run(scenario())
        assert outcome.state == TaskState.SETTLED
        assert service.calls == 1
        assert len(coordinator.ledger.find_by_task("task_1")) == 1

    def test_concurrent_tasks_cannot_double_spend(self):
        coordinator = _make_coordinator(
            [_make_service("svc_a", 30, delay_seconds=0.05)], balance=50
        )

        async def scenario():
            coordinator.submit(_make_task("task_1"))
            coordinator.submit(_make_task("task_2"))
            return await asyncio.gather(
                coordinator.wait("task_1"), coordinator.wait("task_2")
            )

        first, second = asyncio.run(scenario())
        assert first.state == TaskState.SETTLED
        assert second.reason == RejectionReason.INSUFFICIENT_BALANCE
        assert coordinator.ledger.balance("agent1") == 20

    def test_independent_pipelines(self):
        coordinator = _make_coordinator([_make_service("svc_a", 10, delay_seconds=0.02)])

        async def scenario():
            tasks = [_make_task(f"task_{i}") for i in range(5)]
            return await asyncio.gather(*(coordinator.run(t) for t in tasks))

        outcomes = asyncio.run(scenario())
        assert all(o.settled for o in outcomes)
        assert coordinator.ledger.balance("agent1") == 50
        assert len(coordinator.outcomes()) == 5

    def test_unknown_task(self):
        coordinator = _make_coordinator([])
        with pytest.raises(UnknownTask):
            coordinator.get("missing")
        with pytest.raises(UnknownTask):
            coordinator.cancel("missing")

    def test_terminal_state_cannot_be_left(self):
        coordinator = _make_coordinator([_make_service("svc_a", 30)])
        asyncio.run(coordinator.run(_make_task()))
        record = coordinator._records["task_1"]
        with pytest.raises(InvalidTransition):
            coordinator._transition(record, TaskState.EXECUTING)


class TestTaskRetention:
    def test_finished_tasks_are_forgotten_after_retention(self):
        now = [datetime.now(timezone.utc)]
        coordinator = _make_coordinator(
            [_make_service("svc_a", 30)],
            config=TaskConfig(retention_seconds=60),
            clock=lambda: now[0],
        )
        first = asyncio.run(coordinator.run(_make_task("task_1", deadline_in=300)))
        assert first.settled
        assert coordinator.prune() == 0

        now[0] += timedelta(seconds=61)
        second = asyncio.run(coordinator.run(_make_task("task_2", deadline_in=300)))

        assert second.settled
        with pytest.raises(UnknownTask):
            coordinator.get("task_1")
        assert [o.task_id for o in coordinator.outcomes()] == ["task_2"]
        assert coordinator.ledger.balance("agent1") == 40

    def test_unfinished_tasks_are_kept(self):
        now = [datetime.now(timezone.utc)]
        coordinator = _make_coordinator(
            [_make_service("svc_a", 30, delay_seconds=0.05)],
            config=TaskConfig(retention_seconds=1),
            clock=lambda: now[0],
        )

        async def scenario():
            coordinator.submit(_make_task("task_1", deadline_in=300))
            now[0] += timedelta(seconds=10)
            assert coordinator.prune() == 0
            return await coordinator.wait("task_1")

        assert asyncio.run(scenario()).settled
