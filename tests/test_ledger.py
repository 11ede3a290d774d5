"""Tests for the Credit Ledger."""

import threading

import pytest

from econ_kernel.ledger.store import (
    ChainIntegrityError,
    InsufficientBalance,
    InvalidAmount,
    Ledger,
    TransactionNotFound,
    UnauthorizedIssuance,
)
from econ_kernel.models.ledger import MINT_SOURCE, MINT_TAG, Transaction


def _make_funded_ledger(db_path: str = ":memory:") -> Ledger:
    """Mint 10,000 to the pool and allocate 100 to agent1."""
    ledger = Ledger(db_path=db_path)
    ledger.mint("pool", 10_000, memo="genesis")
    ledger.transfer("pool", "agent1", 100, "allocation")
    return ledger


class TestLedgerScenario:
    def test_mint_allocate_and_pay(self):
        ledger = _make_funded_ledger()
        txn = ledger.transfer("agent1", "service1", 28, "summarize")

        assert txn.sequence_number == 3
        assert ledger.balance("agent1") == 72
        assert ledger.balance("service1") == 28
        assert len(ledger.history()) == 3
        assert [t.operation_tag for t in ledger.history()] == ["mint", "allocation", "summarize"]

    def test_empty_ledger(self):
        ledger = Ledger()
        assert ledger.head == 0
        assert ledger.balance("anyone") == 0
        assert list(ledger.history()) == []


class TestLedgerInvariants:
    def setup_method(self):
        self.ledger = _make_funded_ledger()

    def test_signed_amounts_sum_to_zero(self):
        self.ledger.transfer("agent1", "service1", 28, "summarize")
        self.ledger.transfer("service1", "agent1", -5, "refund")
        self.ledger.mint("pool", 500)

        balances = self.ledger.balances()
        assert sum(balances.values()) == 0
        assert balances[MINT_SOURCE] == -10_500

    def test_negative_amount_is_paid_by_to_entity(self):
        self.ledger.transfer("agent1", "service1", 28, "summarize")
        txn = self.ledger.transfer("agent1", "service1", -8, "reversal")

        assert txn.payer == "service1"
        assert self.ledger.balance("agent1") == 80
        assert self.ledger.balance("service1") == 20

    def test_overdraft_rejected_and_ledger_unchanged(self):
        head = self.ledger.head
        balances = self.ledger.balances()

        with pytest.raises(InsufficientBalance) as exc:
            self.ledger.transfer("agent1", "service1", 101, "summarize")

        assert exc.value.entity == "agent1"
        assert exc.value.required == 101
        assert exc.value.available == 100
        assert self.ledger.head == head
        assert self.ledger.balances() == balances
        assert self.ledger.count() == head

    def test_negative_amount_overdraft_checks_to_entity(self):
        with pytest.raises(InsufficientBalance) as exc:
            self.ledger.transfer("agent1", "service1", -1, "reversal")
        assert exc.value.entity == "service1"

    def test_zero_amount_rejected(self):
        with pytest.raises(InvalidAmount):
            self.ledger.transfer("agent1", "service1", 0, "summarize")

    def test_mint_must_be_positive(self):
        with pytest.raises(InvalidAmount):
            self.ledger.mint("pool", -10)

    def test_mint_source_may_go_negative(self):
        assert self.ledger.balance(MINT_SOURCE) == -10_000

    def test_reversed_transfer_cannot_draw_on_mint(self):
        head = self.ledger.head
        with pytest.raises(UnauthorizedIssuance):
            self.ledger.transfer("agent1", MINT_SOURCE, -1_000_000, "summarize")
        assert self.ledger.balance("agent1") == 100
        assert self.ledger.head == head

    def test_transfer_from_mint_rejected(self):
        with pytest.raises(UnauthorizedIssuance):
            self.ledger.transfer(MINT_SOURCE, "agent1", 50, "summarize")
        with pytest.raises(UnauthorizedIssuance):
            self.ledger.transfer(MINT_SOURCE, "agent1", 50, MINT_TAG)
        assert self.ledger.balance("agent1") == 100

    def test_append_only_accepts_mint_events_from_mint_source(self):
        with pytest.raises(UnauthorizedIssuance):
            self.ledger.append(Transaction(
                from_entity=MINT_SOURCE, to_entity="agent1", amount=50, operation_tag="bonus",
            ))
        with pytest.raises(UnauthorizedIssuance):
            self.ledger.append(Transaction(
                from_entity="agent1", to_entity=MINT_SOURCE, amount=-50, operation_tag=MINT_TAG,
            ))

        seq = self.ledger.append(Transaction(
            from_entity=MINT_SOURCE, to_entity="pool", amount=50, operation_tag=MINT_TAG,
        ))
        assert self.ledger.get(seq).payer == MINT_SOURCE
        assert sum(self.ledger.balances().values()) == 0

    def test_paying_into_mint_source_is_allowed(self):
        self.ledger.transfer("agent1", MINT_SOURCE, 10, "burn")
        assert self.ledger.balance("agent1") == 90
        assert self.ledger.balance(MINT_SOURCE) == -9_990

    def test_sequenced_transaction_cannot_be_appended_again(self):
        txn = self.ledger.get(1)
        with pytest.raises(ValueError):
            self.ledger.append(txn)

    def test_sequence_numbers_are_gapless(self):
        for i in range(5):
            self.ledger.transfer("agent1", "service1", 1, "summarize")
        seqs = [t.sequence_number for t in self.ledger.history()]
        assert seqs == list(range(1, 8))


class TestLedgerQueries:
    def setup_method(self):
        self.ledger = _make_funded_ledger()
        self.ledger.transfer("agent1", "service1", 10, "summarize", task_id="task_a")
        self.ledger.transfer("agent1", "service2", 20, "classify", task_id="task_b")
        self.ledger.transfer("agent1", "service1", 5, "summarize")

    def test_balance_as_of_sequence(self):
        assert self.ledger.balance("agent1", as_of_sequence=2) == 100
        assert self.ledger.balance("agent1", as_of_sequence=3) == 90
        assert self.ledger.balance("agent1") == 65

    def test_history_for_entity(self):
        history = self.ledger.history("service1")
        assert [t.sequence_number for t in history] == [3, 5]
        assert len(history) == 2

    def test_history_range(self):
        history = self.ledger.history(start=2, end=4)
        assert [t.sequence_number for t in history] == [2, 3, 4]

    def test_history_is_restartable(self):
        history = self.ledger.history("agent1")
        first = list(history)
        second = list(history)
        assert first == second

    def test_history_is_fixed_at_creation(self):
        history = self.ledger.history()
        self.ledger.transfer("agent1", "service1", 1, "summarize")
        assert len(list(history)) == 5

    def test_volume_by_operation_tag(self):
        assert self.ledger.volume("summarize", 0, self.ledger.head) == 2
        assert self.ledger.volume("summarize", 3, self.ledger.head) == 1
        assert self.ledger.volume("classify", 0, 3) == 0
        assert self.ledger.has_activity("classify")
        assert not self.ledger.has_activity("translate")

    def test_find_by_task(self):
        txns = self.ledger.find_by_task("task_b")
        assert len(txns) == 1
        assert txns[0].to_entity == "service2"

    def test_get_unknown_sequence(self):
        with pytest.raises(TransactionNotFound):
            self.ledger.get(99)


class TestLedgerIntegrity:
    def test_chain_verifies(self):
        ledger = _make_funded_ledger()
        ledger.transfer("agent1", "service1", 28, "summarize")
        assert ledger.verify_chain()

        first, second = ledger.get(1), ledger.get(2)
        assert first.prev_hash == ""
        assert second.prev_hash == first.hash
        assert first.hash == first.compute_hash()

    def test_restart_replays_history(self, tmp_path):
        db = str(tmp_path / "ledger.db")
        ledger = _make_funded_ledger(db)
        ledger.transfer("agent1", "service1", 28, "summarize")
        ledger.close()

        reopened = Ledger(db_path=db)
        assert reopened.head == 3
        assert reopened.balance("agent1") == 72
        assert reopened.balance("service1") == 28
        assert reopened.verify_chain()

        txn = reopened.transfer("agent1", "service1", 2, "summarize")
        assert txn.sequence_number == 4
        assert txn.prev_hash == reopened.get(3).hash
        reopened.close()

    def test_tampered_history_detected_on_load(self, tmp_path):
        db = str(tmp_path / "ledger.db")
        ledger = _make_funded_ledger(db)
        tampered = ledger.get(2).model_copy(update={"amount": 5000})
        ledger._conn.execute(
            "UPDATE transactions SET record_json = ? WHERE sequence_number = 2",
            (tampered.model_dump_json(),),
        )
        ledger._conn.commit()
        ledger.close()

        with pytest.raises(ChainIntegrityError):
            Ledger(db_path=db)


class TestLedgerConcurrency:
    def test_concurrent_spends_never_overdraw(self):
        ledger = _make_funded_ledger()
        errors = []

        def spend():
            for _ in range(10):
                try:
                    ledger.transfer("agent1", "service1", 3, "summarize")
                except InsufficientBalance as e:
                    errors.append(e)

        threads = [threading.Thread(target=spend) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # 100 credits cover 33 spends of 3
        assert ledger.balance("agent1") == 1
        assert ledger.balance("service1") == 99
        assert len(errors) == 80 - 33
        assert ledger.verify_chain()
        assert sum(ledger.balances().values()) == 0

    def test_transaction_model_is_frozen(self):
        txn = Transaction(from_entity="a", to_entity="b", amount=1, operation_tag="x")
        with pytest.raises(Exception):
            txn.amount = 2
