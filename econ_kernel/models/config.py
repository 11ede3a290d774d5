"""Kernel configuration. Loadable from YAML; every field has a working default."""

from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, PositiveInt, model_validator

from econ_kernel.models.entity import Entity
from econ_kernel.models.ledger import MINT_SOURCE


class LedgerConfig(BaseModel):
    db_path: str = ":memory:"
    mint_source: str = MINT_SOURCE
    treasury: str = "pool"
    mint_amount: int = Field(gt=0, default=10_000)
    mint_schedule: Optional[str] = None     # Cron expression for fixed-supply mint events
    verify_on_load: bool = True


class PricingConfig(BaseModel):
    base_prices: Dict[str, PositiveInt] = {}
    default_base_price: int = Field(gt=0, default=10)
    cycle_length: int = Field(gt=0, default=50)         # Ledger sequences per recompute
    window: int = Field(gt=0, default=100)              # Trailing sequences counted as "recent"
    lookback_windows: int = Field(ge=0, default=4)
    ewma_alpha: float = Field(gt=0, le=1, default=0.3)
    min_multiplier: float = Field(gt=0, default=0.5)
    max_multiplier: float = Field(gt=0, default=2.0)
    staleness_window: int = Field(ge=0, default=100)

    @model_validator(mode="after")
    def _check_bounds(self) -> "PricingConfig":
        if self.min_multiplier > self.max_multiplier:
            raise ValueError("min_multiplier must not exceed max_multiplier")
        return self

    def base_price(self, operation_tag: str) -> int:
        return self.base_prices.get(operation_tag, self.default_base_price)


class RoutingConfig(BaseModel):
    default_latency_constraint: Optional[float] = None


class TaskConfig(BaseModel):
    slippage_tolerance: float = Field(ge=0, default=0.10)   # Fraction of the quoted price
    max_attempts: int = Field(ge=1, default=3)
    retention_seconds: float = Field(gt=0, default=3600.0)    # Terminal tasks are forgotten after this


class AggregationConfig(BaseModel):
    producer_capability: str = "federated_learning"
    collection_timeout_seconds: float = Field(gt=0, default=30.0)
    acceptance_threshold: float = 0.5
    min_quorum: int = Field(ge=1, default=1)
    dtype: str = "<f8"
    db_path: str = ":memory:"


class KernelConfig(BaseModel):
    ledger: LedgerConfig = LedgerConfig()
    pricing: PricingConfig = PricingConfig()
    routing: RoutingConfig = RoutingConfig()
    tasks: TaskConfig = TaskConfig()
    aggregation: AggregationConfig = AggregationConfig()
    bootstrap_entities: List[Entity] = []
    initial_allocations: Dict[str, int] = {}     # entity -> credits granted from the treasury
    log_level: str = "INFO"

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "KernelConfig":
        """Load configuration from a YAML file. A missing file yields defaults.

        Raises:
            ValueError: if the file is not a YAML mapping.
        """
        p = Path(path)
        if not p.exists():
            return cls()

        with open(p, "r") as f:
            data = yaml.safe_load(f)

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError(f"Kernel config must be a YAML mapping: {p}")
        return cls.model_validate(data)
