"""
Execution Fabric: hands authorized tasks to the services that perform them.

The kernel never runs inference itself. Each registered service is an
execution collaborator that can estimate a cost and execute a task, either
in-process or over the event channel.

Behavioral Contract:
- A service raising during execution is reported as an ExecutionFailure, not propagated.
  Timeouts are the exception: they propagate as asyncio.TimeoutError and the
  caller expires the task.
- Unknown services fail the attempt; they never stall the pipeline.
- Remote results arrive as TaskResult messages and resolve the waiting
  execution exactly once; later copies are ignored.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional, Protocol, Union

from econ_kernel.models.events import TaskRequest, TaskResult
from econ_kernel.models.task import ExecutionFailure, ExecutionSuccess, Task

logger = logging.getLogger(__name__)

ExecutionOutcome = Union[ExecutionSuccess, ExecutionFailure]


class ExecutionCollaborator(Protocol):
    """What the kernel needs from a service."""

    def estimate_cost(self, operation_tag: str) -> int: ...

    async def execute(
        self, parameters: dict, deadline: datetime, task: Task
    ) -> ExecutionOutcome: ...


class SimulatedService:
    """
    In-process service with fixed costs. Used for local runs and tests.
    cost_actual defaults to the estimate; override it to model slippage.
    """

    def __init__(
        self,
        service_id: str,
        costs: Dict[str, int],
        delay_seconds: float = 0.0,
        cost_actual: Optional[int] = None,
        fail_reason: Optional[str] = None,
        output: Optional[dict] = None,
    ):
        self.service_id = service_id
        self.costs = costs
        self.delay_seconds = delay_seconds
        self.cost_actual = cost_actual
        self.fail_reason = fail_reason
        self.output = output or {}
        self.calls = 0

    def estimate_cost(self, operation_tag: str) -> int:
        return self.costs[operation_tag]

    async def execute(
        self, parameters: dict, deadline: datetime, task: Task
    ) -> ExecutionOutcome:
        self.calls += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.fail_reason:
            return ExecutionFailure(reason=self.fail_reason)
        cost = self.cost_actual
        if cost is None:
            cost = self.estimate_cost(task.operation_tag)
        return ExecutionSuccess(
            cost_actual=cost,
            output={"service_id": self.service_id, **self.output},
        )


class ChannelService:
    """
    A service reached over the event channel. execute() publishes a
    TaskRequest addressed to the service and waits for its TaskResult.
    """

    def __init__(self, service_id: str, channel, costs: Dict[str, int]):
        self.service_id = service_id
        self.channel = channel
        self.costs = costs
        self._pending: Dict[str, asyncio.Future] = {}

    def estimate_cost(self, operation_tag: str) -> int:
        return self.costs[operation_tag]

    async def execute(
        self, parameters: dict, deadline: datetime, task: Task
    ) -> ExecutionOutcome:
        future = asyncio.get_running_loop().create_future()
        self._pending[task.task_id] = future
        try:
            self.channel.publish(TaskRequest(task=task, service_id=self.service_id))
            return await future
        finally:
            self._pending.pop(task.task_id, None)

    def resolve(self, result: TaskResult) -> bool:
        """Deliver a result. Returns False when nothing was waiting (duplicate or late)."""
        future = self._pending.get(result.task_id)
        if future is None or future.done():
            return False
        if result.success:
            future.set_result(ExecutionSuccess(
                cost_actual=result.cost_actual,
                output=result.output,
                quality_score=result.quality_score,
            ))
        else:
            future.set_result(ExecutionFailure(
                reason=result.failure_reason or "remote service reported failure"
            ))
        return True


class ExecutionFabric:
    """Registry of execution collaborators keyed by service id."""

    def __init__(self):
        self._services: Dict[str, ExecutionCollaborator] = {}

    def register_service(self, service_id: str, collaborator: ExecutionCollaborator) -> None:
        self._services[service_id] = collaborator

    def unregister_service(self, service_id: str) -> None:
        self._services.pop(service_id, None)

    def get(self, service_id: str) -> Optional[ExecutionCollaborator]:
        return self._services.get(service_id)

    def estimate_cost(self, service_id: str, operation_tag: str) -> Optional[int]:
        collaborator = self._services.get(service_id)
        if collaborator is None:
            return None
        return collaborator.estimate_cost(operation_tag)

    async def execute(self, service_id: str, task: Task) -> ExecutionOutcome:
        """Run a task on a service. Failures come back as values; timeouts raise."""
        collaborator = self._services.get(service_id)
        if collaborator is None:
            return ExecutionFailure(reason=f"No executor registered for service: {service_id}")

        try:
            return await collaborator.execute(dict(task.parameters), task.deadline, task)
        except asyncio.TimeoutError:
            raise
        except TimeoutError as e:
            # Distinct from asyncio.TimeoutError before Python 3.11
            raise asyncio.TimeoutError(str(e)) from e
        except Exception as e:
            logger.warning("Service %s raised on task %s: %s", service_id, task.task_id, e)
            return ExecutionFailure(reason=str(e))

    def resolve(self, result: TaskResult) -> bool:
        """Route a remote TaskResult to the channel service awaiting it."""
        collaborator = self._services.get(result.service_id)
        if not isinstance(collaborator, ChannelService):
            return False
        return collaborator.resolve(result)
