"""
Credit Ledger: append-only transaction log with derived per-entity balances.

Behavioral Contract:
- Append-only. No transaction is ever modified or removed.
- One writer at a time: sequence assignment, validation and commit happen under a lock.
- Readers never take the write lock. They observe the prefix committed when they were called.
- No append may drive the paying entity's balance below zero. The mint source is exempt,
  but it only ever pays in mint events: credits appear nowhere else.
- A transaction is durable (SQLite commit) before it becomes visible to readers.
- Each record is hashed and chained to the previous record (tamper-evident).
- A rejected append leaves the ledger exactly as it was.
"""

import bisect
import logging
import sqlite3
import threading
from typing import Dict, Iterator, List, Optional

from econ_kernel.models.config import LedgerConfig
from econ_kernel.models.ledger import MINT_SOURCE, MINT_TAG, Transaction

logger = logging.getLogger(__name__)


class InvalidAmount(Exception):
    """Raised when a transaction amount is zero (or a mint is not positive)."""

    def __init__(self, amount: int) -> None:
        self.amount = amount
        super().__init__(f"Invalid amount: {amount} (must be non-zero)")


class InsufficientBalance(Exception):
    """Raised when the paying entity cannot cover a transaction."""

    def __init__(self, entity: str, required: int, available: int) -> None:
        self.entity = entity
        self.required = required
        self.available = available
        super().__init__(
            f"{entity} has insufficient balance: needs {required}, has {available}"
        )


class UnauthorizedIssuance(Exception):
    """Raised when a transaction other than a mint event would draw on the mint source."""

    def __init__(self, transaction: Transaction) -> None:
        self.transaction = transaction
        super().__init__(
            f"Only mint events may draw on the mint source: {transaction.from_entity} -> "
            f"{transaction.to_entity} amount={transaction.amount} tag={transaction.operation_tag}"
        )


class TransactionNotFound(Exception):
    def __init__(self, sequence_number: int) -> None:
        self.sequence_number = sequence_number
        super().__init__(f"No transaction at sequence {sequence_number}")


class ChainIntegrityError(Exception):
    """Raised when persisted history fails hash-chain verification on load."""
    pass


class LedgerHistory:
    """
    Lazy, restartable view over a committed range of the ledger.
    The range is fixed when the view is created; iterating again starts over.
    """

    def __init__(
        self,
        ledger: "Ledger",
        entity: Optional[str],
        start: int,
        end: int,
    ):
        self._ledger = ledger
        self.entity = entity
        self.start = max(1, start)
        self.end = end

    def __iter__(self) -> Iterator[Transaction]:
        transactions = self._ledger._transactions
        if self.entity is None:
            for seq in range(self.start, self.end + 1):
                yield transactions[seq - 1]
            return

        seqs = self._ledger._entity_seqs.get(self.entity, [])
        lo = bisect.bisect_left(seqs, self.start)
        hi = bisect.bisect_right(seqs, self.end)
        for i in range(lo, hi):
            yield transactions[seqs[i] - 1]

    def __len__(self) -> int:
        if self.end < self.start:
            return 0
        if self.entity is None:
            return self.end - self.start + 1
        seqs = self._ledger._entity_seqs.get(self.entity, [])
        return bisect.bisect_right(seqs, self.end) - bisect.bisect_left(seqs, self.start)


class Ledger:
    """
    Process-scoped credit ledger.
    Storage: SQLite (":memory:" by default). Balances are derived and
    indexed in memory so reads never touch the write path.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        mint_source: str = MINT_SOURCE,
        verify_on_load: bool = True,
    ):
        self.db_path = db_path
        self.mint_source = mint_source

        self._lock = threading.Lock()
        self._transactions: List[Transaction] = []
        # entity -> ascending sequence numbers touching it, and the running balance after each
        self._entity_seqs: Dict[str, List[int]] = {}
        self._entity_balances: Dict[str, List[int]] = {}
        # operation_tag -> ascending sequence numbers, feeds the demand signal
        self._tag_seqs: Dict[str, List[int]] = {}
        self._head = 0

        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()
        self._load(verify_on_load)

    @classmethod
    def from_config(cls, config: LedgerConfig) -> "Ledger":
        return cls(
            db_path=config.db_path,
            mint_source=config.mint_source,
            verify_on_load=config.verify_on_load,
        )

    def _init_schema(self) -> None:
        """Create the transactions table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS transactions (
                sequence_number INTEGER PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                from_entity TEXT NOT NULL,
                to_entity TEXT NOT NULL,
                amount INTEGER NOT NULL,
                operation_tag TEXT NOT NULL,
                task_id TEXT,
                hash TEXT NOT NULL,
                prev_hash TEXT NOT NULL,
                record_json TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_txn_operation_tag ON transactions(operation_tag)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_txn_task_id ON transactions(task_id)
        """)
        self._conn.commit()

    def _load(self, verify: bool) -> None:
        """Replay persisted history into the in-memory index."""
        rows = self._conn.execute(
            "SELECT record_json FROM transactions ORDER BY sequence_number"
        ).fetchall()
        for row in rows:
            txn = Transaction.model_validate_json(row["record_json"])
            self._index(txn)
            self._head = txn.sequence_number

        if rows:
            logger.info("Loaded %d ledger transactions from %s", len(rows), self.db_path)
        if verify and not self.verify_chain():
            raise ChainIntegrityError(f"Ledger hash chain broken in {self.db_path}")

    # --- Write path ---

    def append(self, transaction: Transaction) -> int:
        """
        Validate and append a transaction. Returns its sequence number.

        Raises:
            InvalidAmount: if the amount is zero.
            InsufficientBalance: if the payer's balance would go negative.
            UnauthorizedIssuance: if the mint source would pay for anything but a mint event.
        """
        if transaction.amount == 0:
            raise InvalidAmount(transaction.amount)
        if transaction.sequence_number is not None:
            raise ValueError(
                f"Transaction {transaction.id} already carries sequence "
                f"{transaction.sequence_number}"
            )
        if transaction.payer == self.mint_source and not self._is_mint_event(transaction):
            raise UnauthorizedIssuance(transaction)

        with self._lock:
            payer = transaction.payer
            required = abs(transaction.amount)
            if payer != self.mint_source:
                available = self._balance_at(payer, self._head)
                if available < required:
                    raise InsufficientBalance(payer, required, available)

            seq = self._head + 1
            prev_hash = self._transactions[-1].hash if self._transactions else ""
            committed = transaction.model_copy(
                update={"sequence_number": seq, "prev_hash": prev_hash}
            )
            committed = committed.model_copy(update={"hash": committed.compute_hash()})

            self._persist(committed)
            self._index(committed)
            self._head = seq

        logger.debug(
            "Appended #%d %s -> %s amount=%d tag=%s",
            seq, committed.from_entity, committed.to_entity,
            committed.amount, committed.operation_tag,
        )
        return seq

    def _is_mint_event(self, transaction: Transaction) -> bool:
        return (
            transaction.from_entity == self.mint_source
            and transaction.to_entity != self.mint_source
            and transaction.amount > 0
            and transaction.operation_tag == MINT_TAG
        )

    def mint(self, to_entity: str, amount: int, memo: str = "") -> Transaction:
        """Create credits from the mint source. The only way new credits appear."""
        if amount <= 0:
            raise InvalidAmount(amount)
        seq = self.append(Transaction(
            from_entity=self.mint_source,
            to_entity=to_entity,
            amount=amount,
            operation_tag=MINT_TAG,
            memo=memo,
        ))
        return self.get(seq)

    def transfer(
        self,
        from_entity: str,
        to_entity: str,
        amount: int,
        operation_tag: str,
        task_id: Optional[str] = None,
        memo: str = "",
    ) -> Transaction:
        """Move credits between two entities and return the committed transaction."""
        transaction = Transaction(
            from_entity=from_entity,
            to_entity=to_entity,
            amount=amount,
            operation_tag=operation_tag,
            task_id=task_id,
            memo=memo,
        )
        # Issuance goes through mint() only
        if transaction.amount != 0 and transaction.payer == self.mint_source:
            raise UnauthorizedIssuance(transaction)
        return self.get(self.append(transaction))

    def _persist(self, txn: Transaction) -> None:
        try:
            self._conn.execute(
                """
                INSERT INTO transactions (
                    sequence_number, id, from_entity, to_entity, amount,
                    operation_tag, task_id, hash, prev_hash, record_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    txn.sequence_number,
                    txn.id,
                    txn.from_entity,
                    txn.to_entity,
                    txn.amount,
                    txn.operation_tag,
                    txn.task_id,
                    txn.hash,
                    txn.prev_hash,
                    txn.model_dump_json(),
                ),
            )
            self._conn.commit()
        except sqlite3.Error:
            self._conn.rollback()
            raise

    def _index(self, txn: Transaction) -> None:
        seq = txn.sequence_number
        self._transactions.append(txn)
        if txn.from_entity == txn.to_entity:
            self._apply(txn.from_entity, seq, 0)
        else:
            self._apply(txn.from_entity, seq, -txn.amount)
            self._apply(txn.to_entity, seq, txn.amount)
        self._tag_seqs.setdefault(txn.operation_tag, []).append(seq)

    def _apply(self, entity: str, seq: int, delta: int) -> None:
        # Balances list is created first so a reader that finds the seq list also finds it
        balances = self._entity_balances.setdefault(entity, [])
        seqs = self._entity_seqs.setdefault(entity, [])
        balances.append((balances[-1] if balances else 0) + delta)
        seqs.append(seq)

    # --- Read path ---

    @property
    def head(self) -> int:
        """Sequence number of the latest committed transaction (0 when empty)."""
        return self._head

    def get(self, sequence_number: int) -> Transaction:
        if not 1 <= sequence_number <= self._head:
            raise TransactionNotFound(sequence_number)
        return self._transactions[sequence_number - 1]

    def balance(self, entity: str, as_of_sequence: Optional[int] = None) -> int:
        """Balance of an entity as of a sequence number (latest by default)."""
        head = self._head
        as_of = head if as_of_sequence is None else min(as_of_sequence, head)
        return self._balance_at(entity, as_of)

    def _balance_at(self, entity: str, as_of: int) -> int:
        seqs = self._entity_seqs.get(entity)
        if not seqs:
            return 0
        idx = bisect.bisect_right(seqs, as_of) - 1
        if idx < 0:
            return 0
        return self._entity_balances[entity][idx]

    def balances(self, as_of_sequence: Optional[int] = None) -> Dict[str, int]:
        """All entity balances at one consistent point in history."""
        head = self._head
        as_of = head if as_of_sequence is None else min(as_of_sequence, head)
        return {
            entity: self._balance_at(entity, as_of)
            for entity in list(self._entity_seqs)
        }

    def history(
        self,
        entity: Optional[str] = None,
        start: int = 1,
        end: Optional[int] = None,
    ) -> LedgerHistory:
        """Transactions in [start, end] in sequence order, optionally for one entity."""
        head = self._head
        end = head if end is None else min(end, head)
        return LedgerHistory(self, entity, start, end)

    def volume(self, operation_tag: str, after_sequence: int, up_to_sequence: int) -> int:
        """Number of transactions tagged operation_tag in (after_sequence, up_to_sequence]."""
        seqs = self._tag_seqs.get(operation_tag)
        if not seqs or up_to_sequence <= after_sequence:
            return 0
        return (
            bisect.bisect_right(seqs, up_to_sequence)
            - bisect.bisect_right(seqs, max(after_sequence, 0))
        )

    def has_activity(self, operation_tag: str, up_to_sequence: Optional[int] = None) -> bool:
        up_to = self._head if up_to_sequence is None else up_to_sequence
        return self.volume(operation_tag, 0, up_to) > 0

    def find_by_task(self, task_id: str) -> List[Transaction]:
        head = self._head
        return [t for t in self._transactions[:head] if t.task_id == task_id]

    def verify_chain(self) -> bool:
        """Verify no transaction has been tampered with."""
        prev_hash = ""
        for i, txn in enumerate(self._transactions, start=1):
            if txn.sequence_number != i:
                return False
            if txn.prev_hash != prev_hash:
                return False
            if txn.hash != txn.compute_hash():
                return False
            prev_hash = txn.hash
        return True

    def count(self) -> int:
        return self._head

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
