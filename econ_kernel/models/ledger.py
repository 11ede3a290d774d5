"""Ledger records: immutable credit movements."""

import hashlib
import json
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

MINT_SOURCE = "mint"
MINT_TAG = "mint"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Transaction(BaseModel):
    """
    A single credit movement. Positive amounts flow from_entity -> to_entity,
    negative amounts flow the other way. Never mutated once appended.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"txn_{uuid4().hex[:12]}")
    from_entity: str
    to_entity: str
    amount: int
    operation_tag: str
    timestamp: datetime = Field(default_factory=_utc_now)
    sequence_number: Optional[int] = None   # Assigned by the Ledger on append
    task_id: Optional[str] = None
    memo: str = ""

    # INTEGRITY
    prev_hash: str = ""
    hash: str = ""

    @property
    def payer(self) -> str:
        """The entity whose balance decreases."""
        return self.from_entity if self.amount > 0 else self.to_entity

    @property
    def payee(self) -> str:
        return self.to_entity if self.amount > 0 else self.from_entity

    def involves(self, entity: str) -> bool:
        return entity in (self.from_entity, self.to_entity)

    def compute_hash(self) -> str:
        """SHA-256 over the record content, excluding its own hash."""
        payload = self.model_dump(mode="json", exclude={"hash"})
        return hashlib.sha256(
            json.dumps(payload, sort_keys=True, default=str).encode()
        ).hexdigest()
