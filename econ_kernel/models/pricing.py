"""Price quotes: valid only against the ledger sequence they were computed at."""

from pydantic import BaseModel, ConfigDict, Field


class PriceQuote(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation_tag: str
    service_id: str
    unit_price: int = Field(gt=0)
    base_price: int = Field(gt=0)
    estimated_latency: float
    quoted_at_sequence: int
    multiplier: float = 1.0
