"""
Pricing Engine: per-operation prices derived from recent ledger demand.

price = base_price × demand_multiplier, where the multiplier compares the
operation's transaction count over the trailing window against an
exponentially weighted baseline of earlier windows.

Behavioral Contract:
- Prices are recomputed on fixed ledger-sequence boundaries, never per transaction.
  Every caller within one pricing epoch gets the same price.
- The multiplier is clamped to [min_multiplier, max_multiplier] (0.5 to 2.0 by default)
  and is non-decreasing in recent demand.
- An operation with no history is priced at its base price (cold start), never an error.
- Prices are whole credits and always positive.
"""

import logging
import math
import threading
from typing import Callable, Dict, List, Optional, Tuple

from econ_kernel.ledger.store import Ledger
from econ_kernel.models.config import PricingConfig
from econ_kernel.models.entity import ServiceEntity
from econ_kernel.models.events import PriceUpdate
from econ_kernel.models.pricing import PriceQuote

logger = logging.getLogger(__name__)


def demand_multiplier_at(
    ledger: Ledger,
    operation_tag: str,
    window: int,
    boundary: int,
    config: PricingConfig,
) -> float:
    """Demand multiplier for an operation as of a ledger sequence boundary."""
    if not ledger.has_activity(operation_tag, boundary):
        return 1.0

    recent = ledger.volume(operation_tag, boundary - window, boundary)

    # Earlier equal-sized buckets, oldest first; only those inside recorded history
    buckets = []
    for i in range(config.lookback_windows, 0, -1):
        upper = boundary - i * window
        if upper < 1:
            continue
        buckets.append(ledger.volume(operation_tag, upper - window, upper))

    values = buckets + [recent]
    baseline = float(values[0])
    for v in values[1:]:
        baseline = config.ewma_alpha * v + (1 - config.ewma_alpha) * baseline

    if baseline <= 0:
        return 1.0
    ratio = recent / baseline
    return min(config.max_multiplier, max(config.min_multiplier, ratio))


def apply_multiplier(base_price: int, multiplier: float, config: PricingConfig) -> int:
    """Whole-credit price for base × multiplier, kept inside the clamp band and above zero."""
    if base_price <= 0:
        raise ValueError(f"Base price must be positive, got {base_price}")
    lo = max(1, math.ceil(base_price * config.min_multiplier))
    hi = max(lo, math.floor(base_price * config.max_multiplier))
    raw = math.floor(base_price * multiplier + 0.5)
    return min(hi, max(lo, raw))


class PricingEngine:
    """
    Caches demand multipliers per (operation_tag, window) for the current
    pricing epoch. The epoch is ledger.head // cycle_length; crossing an epoch
    boundary recomputes every cached entry and notifies subscribers.
    """

    def __init__(self, ledger: Ledger, config: Optional[PricingConfig] = None):
        self.ledger = ledger
        self.config = config or PricingConfig()
        self._lock = threading.Lock()
        self._epoch = -1
        self._cache: Dict[Tuple[str, int], float] = {}
        self._listeners: List[Callable[[PriceUpdate], None]] = []

    @property
    def epoch(self) -> int:
        return self.ledger.head // self.config.cycle_length

    def boundary(self, epoch: Optional[int] = None) -> int:
        """Ledger sequence that prices of an epoch are computed at."""
        if epoch is None:
            epoch = self.epoch
        return epoch * self.config.cycle_length

    def subscribe(self, listener: Callable[[PriceUpdate], None]) -> None:
        """Register a callback invoked with a PriceUpdate for each recomputed operation."""
        self._listeners.append(listener)

    def demand_multiplier(self, operation_tag: str, window: Optional[int] = None) -> float:
        window = window or self.config.window
        epoch = self.epoch
        updates: List[PriceUpdate] = []

        with self._lock:
            if epoch > self._epoch:
                updates = self._roll_epoch(epoch)
            key = (operation_tag, window)
            multiplier = self._cache.get(key)
            if multiplier is None:
                multiplier = demand_multiplier_at(
                    self.ledger, operation_tag, window, self.boundary(self._epoch), self.config
                )
                self._cache[key] = multiplier

        self._notify(updates)
        return multiplier

    def price(
        self,
        operation_tag: str,
        window: Optional[int] = None,
        base_price: Optional[int] = None,
    ) -> int:
        """Unit price for an operation in the current epoch."""
        if base_price is None:
            base_price = self.config.base_price(operation_tag)
        multiplier = self.demand_multiplier(operation_tag, window)
        return apply_multiplier(base_price, multiplier, self.config)

    def quote(
        self,
        operation_tag: str,
        service: ServiceEntity,
        window: Optional[int] = None,
    ) -> PriceQuote:
        """Price a specific service for an operation, stamped with the current ledger head."""
        base = service.price_schedule.get(operation_tag, self.config.base_price(operation_tag))
        multiplier = self.demand_multiplier(operation_tag, window)
        return PriceQuote(
            operation_tag=operation_tag,
            service_id=service.id,
            unit_price=apply_multiplier(base, multiplier, self.config),
            base_price=base,
            estimated_latency=service.latency_seconds,
            quoted_at_sequence=self.ledger.head,
            multiplier=multiplier,
        )

    def is_stale(self, quote: PriceQuote) -> bool:
        return self.ledger.head - quote.quoted_at_sequence > self.config.staleness_window

    def refresh(self, quote: PriceQuote, window: Optional[int] = None) -> PriceQuote:
        """Re-derive a quote against the current ledger state."""
        multiplier = self.demand_multiplier(quote.operation_tag, window)
        return quote.model_copy(update={
            "unit_price": apply_multiplier(quote.base_price, multiplier, self.config),
            "multiplier": multiplier,
            "quoted_at_sequence": self.ledger.head,
        })

    def snapshot(self) -> Dict[str, float]:
        """Cached multipliers for the current epoch, keyed 'operation_tag:window'."""
        with self._lock:
            return {f"{op}:{window}": m for (op, window), m in self._cache.items()}

    def _roll_epoch(self, epoch: int) -> List[PriceUpdate]:
        """Recompute cached multipliers at the new boundary. Caller holds the lock."""
        self._epoch = epoch
        boundary = self.boundary(epoch)
        updates = []
        for (op, window) in list(self._cache):
            multiplier = demand_multiplier_at(self.ledger, op, window, boundary, self.config)
            self._cache[(op, window)] = multiplier
            updates.append(PriceUpdate(
                operation_tag=op,
                multiplier=multiplier,
                epoch=epoch,
                boundary_sequence=boundary,
            ))
        if updates:
            logger.info("Pricing epoch %d: recomputed %d multipliers", epoch, len(updates))
        return updates

    def _notify(self, updates: List[PriceUpdate]) -> None:
        for update in updates:
            for listener in self._listeners:
                listener(update)
