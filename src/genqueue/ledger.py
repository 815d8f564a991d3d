"""Credit Ledger: per-account balance plus an append-only transaction log.

The balance column is a cache of ``SUM(amount)`` over the account's
transactions; both are written in the same SQLite transaction.
"""

import logging
import sqlite3
from typing import Any
from uuid import uuid4

from genqueue.db import connect, dumps, now
from genqueue.errors import InsufficientBalance, NotFound, ValidationError
from genqueue.models import Charge, CreditTransaction, TransactionKind

logger = logging.getLogger(__name__)

GRANT_KINDS = frozenset({TransactionKind.PURCHASE, TransactionKind.BONUS, TransactionKind.REDEEM})


def _check_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"amount must be a positive integer, got {amount!r}")
    return amount


def _ensure_account(conn: sqlite3.Connection, account_id: str) -> None:
    ts = now()
    conn.execute(
        """
        INSERT INTO credit_accounts (account_id, balance, created_at, updated_at)
        VALUES (?, 0, ?, ?)
        ON CONFLICT(account_id) DO NOTHING
        """,
        (account_id, ts, ts),
    )


def _balance(conn: sqlite3.Connection, account_id: str) -> int:
    row = conn.execute("SELECT balance FROM credit_accounts WHERE account_id = ?", (account_id,)).fetchone()
    return int(row["balance"]) if row else 0


def _append(
    conn: sqlite3.Connection,
    account_id: str,
    kind: TransactionKind,
    amount: int,
    description: str,
    metadata: dict[str, Any],
    job_id: str | None = None,
    original_transaction_id: str | None = None,
) -> CreditTransaction:
    transaction_id = f"tx_{uuid4().hex}"
    conn.execute(
        """
        INSERT INTO credit_transactions (
          transaction_id, account_id, kind, amount, description, metadata,
          job_id, original_transaction_id, resulting_balance, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            transaction_id,
            account_id,
            kind.value,
            amount,
            description,
            dumps(metadata),
            job_id,
            original_transaction_id,
            _balance(conn, account_id),
            now(),
        ),
    )
    row = conn.execute("SELECT * FROM credit_transactions WHERE transaction_id = ?", (transaction_id,)).fetchone()
    return CreditTransaction.from_row(row)


def spend(
    account_id: str,
    amount: int,
    description: str,
    metadata: dict[str, Any] | None = None,
) -> CreditTransaction:
    """Deduct ``amount`` if the balance covers it, as one atomic check-and-write.

    Raises InsufficientBalance without writing anything otherwise.
    """
    _check_amount(amount)
    metadata = dict(metadata or {})
    with connect() as conn:
        _ensure_account(conn, account_id)
        cur = conn.execute(
            """
            UPDATE credit_accounts
            SET balance = balance - ?, total_spent = total_spent + ?, updated_at = ?
            WHERE account_id = ? AND balance >= ?
            """,
            (amount, amount, now(), account_id, amount),
        )
        if cur.rowcount != 1:
            raise InsufficientBalance(account_id, _balance(conn, account_id), amount)
        tx = _append(
            conn,
            account_id,
            TransactionKind.SPEND,
            -amount,
            description,
            metadata,
            job_id=metadata.get("job_id"),
        )

    logger.info(f"Spent {amount} credits from {account_id} (tx {tx.transaction_id}, balance {tx.resulting_balance})")
    return tx


def refund(
    account_id: str,
    amount: int,
    description: str,
    metadata: dict[str, Any],
) -> CreditTransaction:
    """Credit back a spend. Never balance-checked.

    ``metadata["original_transaction_id"]`` must name a spend of the same
    account and ``amount`` must equal the spent amount. Refunding the same
    spend twice returns the first refund.
    """
    _check_amount(amount)
    metadata = dict(metadata or {})
    original_id = metadata.get("original_transaction_id")
    if not original_id:
        raise ValidationError("refund metadata must include original_transaction_id")

    with connect() as conn:
        # take the write lock before checking for an earlier refund
        _ensure_account(conn, account_id)
        original = conn.execute(
            "SELECT * FROM credit_transactions WHERE transaction_id = ?", (original_id,)
        ).fetchone()
        if not original:
            raise NotFound(f"transaction {original_id} not found")
        if original["kind"] != TransactionKind.SPEND.value or original["account_id"] != account_id:
            raise ValidationError(f"transaction {original_id} is not a spend of account {account_id}")
        if amount != -int(original["amount"]):
            raise ValidationError(f"refund {amount} does not match original spend {-int(original['amount'])}")

        existing = conn.execute(
            "SELECT * FROM credit_transactions WHERE kind = 'refund' AND original_transaction_id = ?",
            (original_id,),
        ).fetchone()
        if existing:
            logger.debug(f"Spend {original_id} already refunded by {existing['transaction_id']}")
            return CreditTransaction.from_row(existing)

        job_id = original["job_id"]
        if job_id:
            metadata.setdefault("job_id", job_id)
        conn.execute(
            """
            UPDATE credit_accounts
            SET balance = balance + ?, total_spent = MAX(total_spent - ?, 0), updated_at = ?
            WHERE account_id = ?
            """,
            (amount, amount, now(), account_id),
        )
        tx = _append(
            conn,
            account_id,
            TransactionKind.REFUND,
            amount,
            description,
            metadata,
            job_id=job_id,
            original_transaction_id=original_id,
        )

    logger.info(f"Refunded {amount} credits to {account_id} for spend {original_id}")
    return tx


def refund_charge(charge: Charge, reason: str) -> CreditTransaction:
    return refund(
        charge.account_id,
        charge.amount,
        f"refund: {reason}",
        {"job_id": charge.job_id, "original_transaction_id": charge.transaction_id, "reason": reason},
    )


def grant(
    account_id: str,
    amount: int,
    description: str,
    kind: TransactionKind = TransactionKind.PURCHASE,
    metadata: dict[str, Any] | None = None,
) -> CreditTransaction:
    _check_amount(amount)
    kind = TransactionKind(kind)
    if kind not in GRANT_KINDS:
        raise ValidationError(f"{kind.value} is not a grant kind")
    with connect() as conn:
        _ensure_account(conn, account_id)
        conn.execute(
            """
            UPDATE credit_accounts
            SET balance = balance + ?, total_earned = total_earned + ?, updated_at = ?
            WHERE account_id = ?
            """,
            (amount, amount, now(), account_id),
        )
        tx = _append(conn, account_id, kind, amount, description, dict(metadata or {}))
    logger.info(f"Granted {amount} credits to {account_id} ({kind.value})")
    return tx


def get_balance(account_id: str) -> int:
    with connect() as conn:
        return _balance(conn, account_id)


def get_account(account_id: str) -> dict:
    with connect() as conn:
        row = conn.execute("SELECT * FROM credit_accounts WHERE account_id = ?", (account_id,)).fetchone()
    if not row:
        return {"account_id": account_id, "balance": 0, "total_earned": 0, "total_spent": 0}
    return {
        "account_id": row["account_id"],
        "balance": int(row["balance"]),
        "total_earned": int(row["total_earned"]),
        "total_spent": int(row["total_spent"]),
    }


def transaction_sum(account_id: str) -> int:
    with connect() as conn:
        row = conn.execute(
            "SELECT COALESCE(SUM(amount), 0) s FROM credit_transactions WHERE account_id = ?", (account_id,)
        ).fetchone()
    return int(row["s"])


def list_transactions(account_id: str, limit: int = 20) -> list[CreditTransaction]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM credit_transactions WHERE account_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (account_id, limit),
        ).fetchall()
    return [CreditTransaction.from_row(r) for r in rows]


def outstanding_spends(job_id: str) -> list[CreditTransaction]:
    """Spends tagged with ``job_id`` that no refund compensates yet."""
    with connect() as conn:
        rows = conn.execute(
            """
            SELECT * FROM credit_transactions s
            WHERE s.job_id = ? AND s.kind = 'spend'
              AND NOT EXISTS (
                SELECT 1 FROM credit_transactions r
                WHERE r.kind = 'refund' AND r.original_transaction_id = s.transaction_id
              )
            ORDER BY s.created_at ASC
            """,
            (job_id,),
        ).fetchall()
    return [CreditTransaction.from_row(r) for r in rows]


def refund_outstanding(job_id: str, reason: str) -> list[CreditTransaction]:
    refunds = []
    for tx in outstanding_spends(job_id):
        charge = Charge(transaction_id=tx.transaction_id, account_id=tx.account_id, amount=-tx.amount, job_id=job_id)
        refunds.append(refund_charge(charge, reason))
    return refunds
