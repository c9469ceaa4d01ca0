"""Membership store — one row per normalized email in Postgres.

The table is the only shared mutable resource. It is never locked here:
each write is a single INSERT ... ON CONFLICT (email) DO UPDATE statement,
so concurrent deliveries for the same member resolve at the database.
The one multi-statement operation, moving a customer's row to a new email,
runs in a transaction with the affected rows locked.

Merge semantics: only the columns passed in `fields` are overwritten on
conflict; everything else on the existing row is kept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from membersync.errors import ConfigurationError

logger = logging.getLogger(__name__)

TABLE = "memberships"

# Columns a write may set (email is the key and is passed separately)
WRITABLE_COLUMNS = (
    "tier",
    "status",
    "processor_customer_id",
    "processor_subscription_id",
    "price_id",
    "current_period_end",
    "cancel_at_period_end",
    "updated_at",
)


@dataclass(frozen=True)
class MembershipRecord:
    """A stored memberships row."""

    email: str
    tier: str = "unknown"
    status: str = "unknown"
    processor_customer_id: str | None = None
    processor_subscription_id: str | None = None
    price_id: str | None = None
    current_period_end: str | None = None
    cancel_at_period_end: bool = False
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MembershipRecord":
        def _iso(value: Any) -> str | None:
            if isinstance(value, datetime):
                return value.isoformat()
            return value

        return cls(
            email=row["email"],
            tier=row.get("tier") or "unknown",
            status=row.get("status") or "unknown",
            processor_customer_id=row.get("processor_customer_id"),
            processor_subscription_id=row.get("processor_subscription_id"),
            price_id=row.get("price_id"),
            current_period_end=_iso(row.get("current_period_end")),
            cancel_at_period_end=bool(row.get("cancel_at_period_end")),
            updated_at=_iso(row.get("updated_at")),
        )


@runtime_checkable
class MembershipStore(Protocol):
    """Read/write contract the writer and access query depend on."""

    def upsert_by_email(self, email: str, fields: dict[str, Any]) -> None:
        """Insert or merge `fields` into the row keyed by `email`."""
        ...

    def update_by_email(self, email: str, fields: dict[str, Any]) -> int:
        """Update the row keyed by `email` without inserting; return rows matched."""
        ...

    def update_by_customer_id(self, customer_id: str, fields: dict[str, Any]) -> int:
        """Update rows for a processor customer id; return rows matched."""
        ...

    def reassign_customer_email(self, customer_id: str, email: str) -> int:
        """Fold rows this customer holds under other emails into `email`."""
        ...

    def get_by_email(self, email: str) -> MembershipRecord | None:
        """Read-only lookup used for access gating."""
        ...


def _check_columns(fields: dict[str, Any]) -> None:
    unknown = set(fields) - set(WRITABLE_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown membership columns: {sorted(unknown)}")


class PostgresMembershipStore:
    """psycopg-backed store. Opens one short-lived connection per call."""

    def __init__(self, database_url: str):
        self._database_url = database_url

    def _get_conn(self) -> psycopg.Connection:
        if not self._database_url:
            raise ConfigurationError("DATABASE_URL is not set")
        return psycopg.connect(self._database_url, autocommit=True, row_factory=dict_row)

    def init_tables(self) -> None:
        """Create the memberships table if it doesn't exist.  Idempotent."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS memberships (
                    email                     TEXT PRIMARY KEY,
                    tier                      TEXT NOT NULL DEFAULT 'unknown',
                    status                    TEXT NOT NULL DEFAULT 'unknown'
                        CHECK (status IN ('active', 'inactive', 'past_due', 'unknown')),
                    processor_customer_id     TEXT,
                    processor_subscription_id TEXT,
                    price_id                  TEXT,
                    current_period_end        TIMESTAMPTZ,
                    cancel_at_period_end      BOOLEAN NOT NULL DEFAULT false,
                    updated_at                TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_memberships_customer
                ON memberships (processor_customer_id)
            """)
        logger.info("Memberships table initialized")

    def upsert_by_email(self, email: str, fields: dict[str, Any]) -> None:
        _check_columns(fields)
        if not fields:
            raise ValueError("upsert_by_email needs at least one column to write")
        columns = ["email", *fields]
        updates = [
            sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(col))
            for col in fields
        ]
        query = sql.SQL(
            "INSERT INTO {table} ({cols}) VALUES ({vals}) "
            "ON CONFLICT (email) DO UPDATE SET {updates}"
        ).format(
            table=sql.Identifier(TABLE),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            vals=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
            updates=sql.SQL(", ").join(updates),
        )
        with self._get_conn() as conn:
            conn.execute(query, (email, *fields.values()))

    def _update_where(self, key_column: str, key: str, fields: dict[str, Any]) -> int:
        _check_columns(fields)
        if not fields:
            raise ValueError("update needs at least one column to write")
        query = sql.SQL("UPDATE {table} SET {assignments} WHERE {key} = %s").format(
            table=sql.Identifier(TABLE),
            assignments=sql.SQL(", ").join(
                sql.SQL("{col} = %s").format(col=sql.Identifier(col)) for col in fields
            ),
            key=sql.Identifier(key_column),
        )
        with self._get_conn() as conn:
            cur = conn.execute(query, (*fields.values(), key))
            return cur.rowcount

    def update_by_email(self, email: str, fields: dict[str, Any]) -> int:
        return self._update_where("email", email, fields)

    def update_by_customer_id(self, customer_id: str, fields: dict[str, Any]) -> int:
        return self._update_where("processor_customer_id", customer_id, fields)

    def reassign_customer_email(self, customer_id: str, email: str) -> int:
        """Move rows held by `customer_id` under other emails onto `email`.

        The first stale row is renamed when no row for `email` exists yet;
        every other stale row is dropped. Returns the number of stale rows.
        """
        with self._get_conn() as conn, conn.transaction():
            stale = conn.execute(
                "SELECT email FROM memberships"
                " WHERE processor_customer_id = %s AND email <> %s FOR UPDATE",
                (customer_id, email),
            ).fetchall()
            if not stale:
                return 0
            target = conn.execute(
                "SELECT email FROM memberships WHERE email = %s FOR UPDATE", (email,)
            ).fetchone()
            if target is None:
                conn.execute(
                    "UPDATE memberships SET email = %s WHERE email = %s",
                    (email, stale[0]["email"]),
                )
            conn.execute(
                "DELETE FROM memberships WHERE processor_customer_id = %s AND email <> %s",
                (customer_id, email),
            )
        logger.info("Re-keyed %d membership row(s) for customer %s", len(stale), customer_id)
        return len(stale)

    def get_by_email(self, email: str) -> MembershipRecord | None:
        with self._get_conn() as conn:
            row = conn.execute(
                """SELECT email, tier, status, processor_customer_id,
                          processor_subscription_id, price_id, current_period_end,
                          cancel_at_period_end, updated_at
                   FROM memberships WHERE email = %s""",
                (email,),
            ).fetchone()
        return MembershipRecord.from_row(row) if row else None
