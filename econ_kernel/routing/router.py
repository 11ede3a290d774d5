"""
Router: picks services for an operation within a budget and latency bound.

Routing is a pure function of (registry snapshot, pricing epoch, inputs):
there is no routing state of its own, so identical inputs against the same
snapshot always produce the same ranking.

"No service fits" is an expected outcome and is returned as a NoCandidate
value, never raised.
"""

import logging
import math
from typing import Callable, List, Optional, Tuple, Union

from pydantic import BaseModel

from econ_kernel.models.entity import InfrastructureTier, ServiceEntity
from econ_kernel.models.pricing import PriceQuote
from econ_kernel.pricing.engine import PricingEngine
from econ_kernel.registry.store import Registry, RegistrySnapshot

logger = logging.getLogger(__name__)


class Candidate(BaseModel):
    """A service that passed every filter, with the quote it was ranked on."""

    service: ServiceEntity
    quote: PriceQuote

    @property
    def service_id(self) -> str:
        return self.service.id

    @property
    def price(self) -> int:
        return self.quote.unit_price

    @property
    def latency(self) -> float:
        return self.service.latency_seconds

    @property
    def success_rate(self) -> float:
        return self.service.success_rate


class NoCandidate(BaseModel):
    """Nothing matched. Counts explain which filter emptied the set."""

    operation_tag: str
    budget: int
    latency_constraint: Optional[float] = None
    capable: int = 0            # Services advertising the operation
    within_latency: int = 0
    within_budget: int = 0


ScoringFunction = Callable[[Candidate], Tuple]


def default_score(candidate: Candidate) -> Tuple:
    """Cheapest first, then faster, then more reliable, then by id."""
    return (
        candidate.price,
        candidate.latency,
        -candidate.success_rate,
        candidate.service_id,
    )


class Router:
    def __init__(
        self,
        registry: Registry,
        pricing: PricingEngine,
        scoring: Optional[ScoringFunction] = None,
        window: Optional[int] = None,
    ):
        self.registry = registry
        self.pricing = pricing
        self.scoring = scoring or default_score
        self.window = window

    def find_best_service(
        self,
        operation_tag: str,
        budget: int,
        latency_constraint: Optional[float] = None,
        required_tier: Optional[InfrastructureTier] = None,
    ) -> Union[Candidate, NoCandidate]:
        """Top-ranked candidate, or NoCandidate when the filtered set is empty."""
        ranked, rejection = self._rank(
            self.registry.snapshot(), operation_tag, budget, latency_constraint, required_tier
        )
        if not ranked:
            return rejection
        return ranked[0]

    def route_with_fallback(
        self,
        operation_tag: str,
        budget: int,
        latency_constraint: Optional[float] = None,
        required_tier: Optional[InfrastructureTier] = None,
    ) -> List[Candidate]:
        """Every surviving candidate in rank order (possibly empty)."""
        ranked, _ = self._rank(
            self.registry.snapshot(), operation_tag, budget, latency_constraint, required_tier
        )
        return ranked

    def explain(
        self,
        operation_tag: str,
        budget: int,
        latency_constraint: Optional[float] = None,
        required_tier: Optional[InfrastructureTier] = None,
    ) -> Tuple[List[Candidate], NoCandidate]:
        """Ranking plus the filter counts (the counts are filled in either way)."""
        return self._rank(
            self.registry.snapshot(), operation_tag, budget, latency_constraint, required_tier
        )

    def _rank(
        self,
        snapshot: RegistrySnapshot,
        operation_tag: str,
        budget: int,
        latency_constraint: Optional[float],
        required_tier: Optional[InfrastructureTier],
    ) -> Tuple[List[Candidate], NoCandidate]:
        max_latency = math.inf if latency_constraint is None else latency_constraint

        capable = snapshot.services_for(operation_tag)
        if required_tier is not None:
            capable = [s for s in capable if s.tier == required_tier]

        fast_enough = [s for s in capable if s.latency_seconds <= max_latency]

        affordable = []
        for service in fast_enough:
            quote = self.pricing.quote(operation_tag, service, self.window)
            if quote.unit_price <= budget:
                affordable.append(Candidate(service=service, quote=quote))

        ranked = sorted(affordable, key=self.scoring)
        summary = NoCandidate(
            operation_tag=operation_tag,
            budget=budget,
            latency_constraint=latency_constraint,
            capable=len(capable),
            within_latency=len(fast_enough),
            within_budget=len(affordable),
        )
        if not ranked:
            logger.debug(
                "No candidate for %s: capable=%d within_latency=%d within_budget=%d",
                operation_tag, summary.capable, summary.within_latency, summary.within_budget,
            )
        return ranked, summary
