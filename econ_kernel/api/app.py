"""
Econ Kernel API: FastAPI endpoints.

Exposes the kernel's functionality via a REST API for:
- Ledger operations and integrity checks
- Entity registration and capability lookup
- Prices and routing decisions
- Task submission and cancellation
- Federated aggregation cycles
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import uuid4

import numpy as np
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from econ_kernel.execution.fabric import SimulatedService
from econ_kernel.ledger.store import (
    InsufficientBalance,
    InvalidAmount,
    TransactionNotFound,
    UnauthorizedIssuance,
)
from econ_kernel.models.aggregation import LearningUpdate
from econ_kernel.models.entity import Entity, EntityKind, InfrastructureTier, ServiceEntity
from econ_kernel.models.task import Task
from econ_kernel.registry.store import DuplicateId, NotFound
from econ_kernel.runtime.kernel import EconKernel
from econ_kernel.tasks.coordinator import UnknownTask


# --- Request/Response Models ---

class MintRequest(BaseModel):
    memo: str = ""


class TransferRequest(BaseModel):
    from_entity: str
    to_entity: str
    amount: int
    operation_tag: str
    memo: str = ""


class EntityRegisterRequest(BaseModel):
    entity: Entity
    simulate: bool = False      # Attach an in-process executor charging the price schedule


class RouteRequest(BaseModel):
    operation_tag: str
    budget: int
    latency_constraint: Optional[float] = None
    required_tier: Optional[InfrastructureTier] = None


class TaskCreateRequest(BaseModel):
    task_id: Optional[str] = None
    requesting_agent: str
    operation_tag: str
    parameters: dict = {}
    budget_ceiling: int = Field(gt=0)
    timeout_seconds: float = Field(gt=0, default=30.0)
    latency_constraint: Optional[float] = None
    required_tier: Optional[InfrastructureTier] = None


class UpdateSubmitRequest(BaseModel):
    producer_id: str
    cycle_id: int
    delta_weights: List[float]
    quality_score: float


# --- Application Factory ---

def create_app(kernel: Optional[EconKernel] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Econ Kernel API",
        description="Agent economy kernel: ledger, pricing, routing, tasks, aggregation",
        version="0.1.0-alpha",
    )

    if kernel is None:
        kernel = EconKernel()
        kernel.start()

    app.state.kernel = kernel
    ledger = kernel.ledger
    registry = kernel.registry
    pricing = kernel.pricing
    router = kernel.router
    tasks = kernel.tasks
    aggregation = kernel.aggregation

    # === ERROR MAPPING ===

    @app.exception_handler(NotFound)
    @app.exception_handler(UnknownTask)
    @app.exception_handler(TransactionNotFound)
    async def not_found(request: Request, exc: Exception):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(DuplicateId)
    async def duplicate_id(request: Request, exc: DuplicateId):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(InsufficientBalance)
    async def insufficient_balance(request: Request, exc: InsufficientBalance):
        return JSONResponse(status_code=422, content={
            "detail": str(exc),
            "entity": exc.entity,
            "required": exc.required,
            "available": exc.available,
        })

    @app.exception_handler(InvalidAmount)
    async def invalid_amount(request: Request, exc: InvalidAmount):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(UnauthorizedIssuance)
    async def unauthorized_issuance(request: Request, exc: UnauthorizedIssuance):
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.get("/status")
    def kernel_status():
        """Kernel summary."""
        return {
            "status": kernel.status,
            "ledger_head": ledger.head,
            "pricing_epoch": pricing.epoch,
            "registered_entities": registry.count(),
            "aggregation_cycle": aggregation.cycle.cycle_id,
        }

    # === LEDGER ===

    @app.post("/ledger/mint")
    def mint(req: MintRequest):
        """Trigger one fixed-supply mint event into the treasury."""
        txn = kernel.mint_epoch(memo=req.memo)
        return txn.model_dump(mode="json")

    @app.post("/ledger/transfer")
    def transfer(req: TransferRequest):
        """Move credits between entities."""
        txn = ledger.transfer(
            req.from_entity, req.to_entity, req.amount, req.operation_tag, memo=req.memo
        )
        return txn.model_dump(mode="json")

    @app.get("/ledger/balance/{entity_id}")
    def get_balance(entity_id: str, as_of_sequence: Optional[int] = None):
        return {
            "entity": entity_id,
            "balance": ledger.balance(entity_id, as_of_sequence),
            "as_of_sequence": ledger.head if as_of_sequence is None else as_of_sequence,
        }

    @app.get("/ledger/balances")
    def get_balances():
        return ledger.balances()

    @app.get("/ledger/history")
    def get_history(entity: Optional[str] = None, start: int = 1, end: Optional[int] = None):
        """Transactions in sequence order."""
        return [t.model_dump(mode="json") for t in ledger.history(entity, start, end)]

    @app.get("/ledger/transactions/{sequence_number}")
    def get_transaction(sequence_number: int):
        return ledger.get(sequence_number).model_dump(mode="json")

    @app.get("/ledger/verify")
    def verify_ledger():
        """Verify chain integrity."""
        return {
            "integrity_valid": ledger.verify_chain(),
            "total_transactions": ledger.count(),
        }

    # === REGISTRY ===

    @app.post("/registry/entities")
    def register_entity(req: EntityRegisterRequest):
        entity = req.entity
        if req.simulate and isinstance(entity, ServiceEntity):
            kernel.register_service(
                entity, SimulatedService(entity.id, dict(entity.price_schedule))
            )
        else:
            registry.register(entity)
        return {"status": "registered", "entity_id": entity.id}

    @app.get("/registry/entities")
    def list_entities(kind: Optional[EntityKind] = None):
        return [e.model_dump(mode="json") for e in registry.entities(kind)]

    @app.get("/registry/entities/{entity_id}")
    def get_entity(entity_id: str):
        return registry.get(entity_id).model_dump(mode="json")

    @app.delete("/registry/entities/{entity_id}")
    def deregister_entity(entity_id: str):
        registry.deregister(entity_id)
        kernel.fabric.unregister_service(entity_id)
        return {"status": "deregistered", "entity_id": entity_id}

    @app.get("/registry/capabilities/{capability}")
    def find_by_capability(capability: str, kind: Optional[EntityKind] = None):
        return sorted(registry.find_by_capability(capability, kind))

    # === PRICING / ROUTING ===

    @app.get("/pricing")
    def pricing_snapshot():
        """Multipliers cached for the current epoch."""
        return {"epoch": pricing.epoch, "multipliers": pricing.snapshot()}

    @app.get("/pricing/{operation_tag}")
    def get_price(operation_tag: str, window: Optional[int] = None):
        return {
            "operation_tag": operation_tag,
            "price": pricing.price(operation_tag, window),
            "multiplier": pricing.demand_multiplier(operation_tag, window),
            "epoch": pricing.epoch,
        }

    @app.post("/routing/candidates")
    def route(req: RouteRequest):
        """Ranked candidates for an operation, with filter counts."""
        ranked, summary = router.explain(
            req.operation_tag, req.budget, req.latency_constraint, req.required_tier
        )
        return {
            "candidates": [
                {
                    "service_id": c.service_id,
                    "price": c.price,
                    "latency": c.latency,
                    "success_rate": c.success_rate,
                }
                for c in ranked
            ],
            "summary": summary.model_dump(mode="json"),
        }

    # === TASKS ===

    @app.post("/tasks")
    async def run_task(req: TaskCreateRequest):
        """Submit a task and wait for its terminal outcome."""
        task = Task(
            task_id=req.task_id or f"task_{uuid4().hex[:12]}",
            requesting_agent=req.requesting_agent,
            operation_tag=req.operation_tag,
            parameters=req.parameters,
            budget_ceiling=req.budget_ceiling,
            deadline=datetime.now(timezone.utc) + timedelta(seconds=req.timeout_seconds),
            latency_constraint=req.latency_constraint,
            required_tier=req.required_tier,
        )
        outcome = await tasks.run(task)
        return outcome.model_dump(mode="json")

    @app.get("/tasks")
    def list_tasks():
        return [o.model_dump(mode="json") for o in tasks.outcomes()]

    @app.get("/tasks/{task_id}")
    def get_task(task_id: str):
        return tasks.get(task_id).model_dump(mode="json")

    @app.post("/tasks/{task_id}/cancel")
    def cancel_task(task_id: str):
        return {"task_id": task_id, "cancelled": tasks.cancel(task_id)}

    # === AGGREGATION ===

    @app.post("/aggregation/updates")
    def submit_update(req: UpdateSubmitRequest):
        """Submit a producer's delta for the active cycle."""
        update = LearningUpdate(
            producer_id=req.producer_id,
            cycle_id=req.cycle_id,
            delta_weights=np.asarray(req.delta_weights, dtype=aggregation.config.dtype).tobytes(),
            quality_score=req.quality_score,
        )
        return aggregation.submit(update).model_dump(mode="json")

    @app.get("/aggregation/cycle")
    def get_cycle():
        cycle = aggregation.cycle
        return {
            "cycle_id": cycle.cycle_id,
            "state": cycle.state.value,
            "expected_producers": sorted(cycle.expected_producers),
            "received": sorted(cycle.received),
            "missing": sorted(cycle.missing),
        }

    @app.post("/aggregation/close")
    async def close_cycle():
        """Force the active cycle to aggregate with whatever has arrived."""
        outcome = await aggregation.close_cycle()
        if outcome is None:
            raise HTTPException(409, "Active cycle is already being closed")
        return outcome.model_dump(mode="json")

    @app.get("/aggregation/outcomes")
    def get_outcomes(limit: int = 50):
        return [o.model_dump(mode="json") for o in aggregation.outcomes(limit)]

    @app.get("/aggregation/outcomes/verify")
    def verify_outcomes():
        store = aggregation.outcome_store
        return {
            "integrity_valid": store.verify_chain_integrity(),
            "total_records": store.count(),
        }

    @app.get("/aggregation/base")
    def get_base():
        """The currently authoritative aggregate."""
        base = aggregation.current_base
        if base is None:
            raise HTTPException(404, "No aggregate published yet")
        return {
            "cycle_id": base.cycle_id,
            "reference": base.reference,
            "weights": np.frombuffer(base.weights, dtype=base.dtype).tolist(),
            "validation_score": base.validation_score,
        }

    return app


# Default application instance
app = create_app()
