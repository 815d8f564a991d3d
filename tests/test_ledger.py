from concurrent.futures import ThreadPoolExecutor

import pytest

from genqueue import ledger
from genqueue.errors import InsufficientBalance, NotFound, ValidationError
from genqueue.models import TransactionKind


def test_grant_and_spend_update_balance() -> None:
    ledger.grant("acct", 100, "starter pack")
    tx = ledger.spend("acct", 8, "image generation", {"job_id": "job-1", "num_images": 1})

    assert tx.kind == TransactionKind.SPEND
    assert tx.amount == -8
    assert tx.job_id == "job-1"
    assert tx.resulting_balance == 92
    assert tx.metadata["num_images"] == 1
    assert ledger.get_balance("acct") == 92

    account = ledger.get_account("acct")
    assert account["total_earned"] == 100
    assert account["total_spent"] == 8


def test_unknown_account_has_zero_balance() -> None:
    assert ledger.get_balance("ghost") == 0
    assert ledger.get_account("ghost")["balance"] == 0
    assert ledger.list_transactions("ghost") == []


def test_insufficient_balance_writes_nothing() -> None:
    ledger.grant("acct", 5, "tiny grant")

    with pytest.raises(InsufficientBalance) as info:
        ledger.spend("acct", 8, "image generation")

    assert info.value.balance == 5
    assert info.value.required == 8
    assert ledger.get_balance("acct") == 5
    assert [t.kind for t in ledger.list_transactions("acct")] == [TransactionKind.PURCHASE]


def test_amounts_must_be_positive_integers() -> None:
    for bad in (0, -3, 2.5, True):
        with pytest.raises(ValidationError):
            ledger.spend("acct", bad, "nope")
    with pytest.raises(ValidationError):
        ledger.grant("acct", 10, "not a grant", kind=TransactionKind.SPEND)


def test_refund_references_original_spend() -> None:
    ledger.grant("acct", 20, "grant")
    spent = ledger.spend("acct", 8, "image generation", {"job_id": "job-1"})

    refunded = ledger.refund(
        "acct", 8, "refund: generation_failed", {"original_transaction_id": spent.transaction_id}
    )
    assert refunded.kind == TransactionKind.REFUND
    assert refunded.amount == 8
    assert refunded.original_transaction_id == spent.transaction_id
    assert refunded.job_id == "job-1"
    assert refunded.metadata["job_id"] == "job-1"
    assert ledger.get_balance("acct") == 20
    assert ledger.get_account("acct")["total_spent"] == 0


def test_refund_of_different_amount_is_not_masked_by_earlier_refund() -> None:
    ledger.grant("acct", 20, "grant")
    spent = ledger.spend("acct", 8, "image generation")
    meta = {"original_transaction_id": spent.transaction_id}

    ledger.refund("acct", 8, "refund", meta)
    with pytest.raises(ValidationError):
        ledger.refund("acct", 3, "refund remainder", meta)
    assert ledger.get_balance("acct") == 20
    assert len([t for t in ledger.list_transactions("acct") if t.kind == TransactionKind.REFUND]) == 1


def test_refund_is_idempotent_per_spend() -> None:
    ledger.grant("acct", 20, "grant")
    spent = ledger.spend("acct", 8, "image generation")
    meta = {"original_transaction_id": spent.transaction_id}

    first = ledger.refund("acct", 8, "refund", meta)
    second = ledger.refund("acct", 8, "refund again", meta)

    assert second.transaction_id == first.transaction_id
    assert ledger.get_balance("acct") == 20


def test_refund_validation() -> None:
    ledger.grant("acct", 20, "grant")
    spent = ledger.spend("acct", 8, "image generation")
    purchase = ledger.list_transactions("acct")[-1]

    with pytest.raises(ValidationError):
        ledger.refund("acct", 8, "missing pointer", {})
    with pytest.raises(NotFound):
        ledger.refund("acct", 8, "dangling", {"original_transaction_id": "tx_missing"})
    with pytest.raises(ValidationError):
        ledger.refund("acct", 9, "too much", {"original_transaction_id": spent.transaction_id})
    with pytest.raises(ValidationError):
        ledger.refund("acct", 4, "partial", {"original_transaction_id": spent.transaction_id})
    with pytest.raises(ValidationError):
        ledger.refund("other", 8, "wrong account", {"original_transaction_id": spent.transaction_id})
    with pytest.raises(ValidationError):
        ledger.refund("acct", 8, "not a spend", {"original_transaction_id": purchase.transaction_id})


def test_balance_matches_transaction_sum() -> None:
    ledger.grant("acct", 50, "grant")
    ledger.grant("acct", 5, "welcome", kind=TransactionKind.BONUS)
    first = ledger.spend("acct", 8, "image")
    ledger.spend("acct", 30, "video")
    ledger.refund("acct", 8, "refund", {"original_transaction_id": first.transaction_id})
    with pytest.raises(InsufficientBalance):
        ledger.spend("acct", 100, "too big")

    assert ledger.get_balance("acct") == 25
    assert ledger.transaction_sum("acct") == 25
    latest = ledger.list_transactions("acct", limit=1)[0]
    assert latest.kind == TransactionKind.REFUND
    assert latest.resulting_balance == 25


def test_concurrent_spends_never_overdraw() -> None:
    ledger.grant("acct", 50, "grant")

    def attempt(i):
        try:
            ledger.spend("acct", 8, f"image {i}")
            return True
        except InsufficientBalance:
            return False

    with ThreadPoolExecutor(max_workers=10) as pool:
        outcomes = list(pool.map(attempt, range(10)))

    assert outcomes.count(True) == 6
    assert ledger.get_balance("acct") == 2
    assert ledger.transaction_sum("acct") == 2


def test_outstanding_spends_and_refund_outstanding() -> None:
    ledger.grant("acct", 50, "grant")
    first = ledger.spend("acct", 8, "image", {"job_id": "job-9"})
    second = ledger.spend("acct", 6, "video", {"job_id": "job-9"})
    ledger.spend("acct", 1, "other job", {"job_id": "job-10"})
    ledger.refund("acct", 8, "refund", {"original_transaction_id": first.transaction_id})

    assert [t.transaction_id for t in ledger.outstanding_spends("job-9")] == [second.transaction_id]

    refunds = ledger.refund_outstanding("job-9", "cancelled")
    assert len(refunds) == 1
    assert refunds[0].original_transaction_id == second.transaction_id
    assert refunds[0].metadata["reason"] == "cancelled"
    assert ledger.outstanding_spends("job-9") == []
    assert ledger.refund_outstanding("job-9", "cancelled") == []
    assert ledger.get_balance("acct") == 49
