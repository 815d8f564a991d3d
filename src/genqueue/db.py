import asyncio
import json
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from genqueue.config import settings

T = TypeVar("T")


def now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@contextmanager
def connect() -> Iterator[sqlite3.Connection]:
    """Open a connection that commits on success and always closes."""
    Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(settings.database_path, timeout=settings.database_timeout_sec)
    conn.row_factory = sqlite3.Row
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def loads(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def _has_col(conn: sqlite3.Connection, table: str, col: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(r["name"] == col for r in rows)


def init_db() -> None:
    with connect() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
              job_id TEXT PRIMARY KEY,
              owner_id TEXT NOT NULL,
              scope_id TEXT,
              type TEXT NOT NULL,
              status TEXT NOT NULL,
              parent_job_id TEXT,
              progress INTEGER NOT NULL DEFAULT 0,
              current_step INTEGER,
              total_steps INTEGER,
              progress_message TEXT,
              input_data TEXT NOT NULL,
              result_data TEXT,
              error_message TEXT,
              created_at TEXT NOT NULL,
              started_at TEXT,
              completed_at TEXT,
              updated_at TEXT NOT NULL
            )
            """
        )

        if not _has_col(conn, "jobs", "scope_id"):
            conn.execute("ALTER TABLE jobs ADD COLUMN scope_id TEXT")
        if not _has_col(conn, "jobs", "parent_job_id"):
            conn.execute("ALTER TABLE jobs ADD COLUMN parent_job_id TEXT")
        if not _has_col(conn, "jobs", "current_step"):
            conn.execute("ALTER TABLE jobs ADD COLUMN current_step INTEGER")
        if not _has_col(conn, "jobs", "total_steps"):
            conn.execute("ALTER TABLE jobs ADD COLUMN total_steps INTEGER")

        conn.execute("CREATE INDEX IF NOT EXISTS ix_jobs_owner_status ON jobs (owner_id, status)")
        conn.execute("CREATE INDEX IF NOT EXISTS ix_jobs_status_created ON jobs (status, created_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS ix_jobs_parent ON jobs (parent_job_id)")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS credit_accounts (
              account_id TEXT PRIMARY KEY,
              balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
              total_earned INTEGER NOT NULL DEFAULT 0,
              total_spent INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS credit_transactions (
              transaction_id TEXT PRIMARY KEY,
              account_id TEXT NOT NULL,
              kind TEXT NOT NULL,
              amount INTEGER NOT NULL,
              description TEXT NOT NULL,
              metadata TEXT NOT NULL,
              job_id TEXT,
              original_transaction_id TEXT,
              resulting_balance INTEGER NOT NULL,
              created_at TEXT NOT NULL
            )
            """
        )

        if not _has_col(conn, "credit_transactions", "original_transaction_id"):
            conn.execute("ALTER TABLE credit_transactions ADD COLUMN original_transaction_id TEXT")

        conn.execute("CREATE INDEX IF NOT EXISTS ix_tx_account ON credit_transactions (account_id, created_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS ix_tx_job ON credit_transactions (job_id)")


async def offload(fn: Callable[..., T], *args: Any) -> T:
    """Run a blocking store or ledger call in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, fn, *args)
