"""
ratelimit/store.py -- SQLAlchemy Core persistence for rate-limit counters.

Pattern: Repository + Data Mapper. RateLimitStore is the repository;
_row_to_record is the mapper. The limiter never touches SQL directly.

Keying:
  One table, one row per (purpose, client_identity, account_identity). The
  purpose column keeps login, reset-request and reset-failure counters apart
  without encoding it into the client identity string.

Atomicity:
  increment_attempts() runs UPDATE ... SET attempt_count = attempt_count + 1
  first, inside a transaction, then reads the row back and applies the
  escalation callback before committing. The UPDATE takes the row lock (or
  the SQLite write lock), so concurrent failures against the same key are
  serialized instead of losing updates between read and write.

Security: all queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, auth/ or notify/.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, UniqueConstraint, and_, or_, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from core.db import from_iso, make_engine, to_iso
from ratelimit.models import Purpose, RateLimitKey, RateLimitRecord

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'authgate_ratelimit.db'}"

# Escalation hook: receives the freshly incremented record, returns the
# fields to write in the same transaction (or None to leave it as is).
Escalation = Callable[[RateLimitRecord], Optional[dict]]

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_rate_limits = Table(
    "rate_limits",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("purpose", String(32), nullable=False),
    Column("client_identity", String(255), nullable=False),
    Column("account_identity", String(255), nullable=False),
    Column("attempt_count", Integer, nullable=False, server_default="0"),
    Column("block_count", Integer, nullable=False, server_default="0"),
    Column("blocked_until", String(32)),  # NULL when not blocked
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("purpose", "client_identity", "account_identity", name="uq_rate_limit_key"),
)


def _where(key: RateLimitKey):
    return and_(
        _rate_limits.c.purpose == key.purpose.value,
        _rate_limits.c.client_identity == key.client_identity,
        _rate_limits.c.account_identity == key.account_identity,
    )


def _to_columns(fields: dict) -> dict:
    """Convert domain field values to their column representation."""
    out = dict(fields)
    if "blocked_until" in out:
        value = out["blocked_until"]
        out["blocked_until"] = to_iso(value) if value is not None else None
    return out


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class RateLimitStore:
    """Repository for RateLimitRecord rows.

    Usage:
        store = RateLimitStore("sqlite:///:memory:")
        rec = store.increment_attempts(key, now)
        store.delete(key)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(select(1))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: RateLimitKey) -> RateLimitRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_rate_limits.select().where(_where(key))).fetchone()
        return _row_to_record(row) if row is not None else None

    def list_for_account(self, account_identity: str) -> list[RateLimitRecord]:
        """Every counter that targets one account, across clients and purposes."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _rate_limits.select()
                .where(_rate_limits.c.account_identity == account_identity)
                .order_by(_rate_limits.c.purpose, _rate_limits.c.client_identity)
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def increment_attempts(
        self,
        key: RateLimitKey,
        now: datetime,
        *,
        create: bool = True,
        block_count_below: int | None = None,
        escalate: Escalation | None = None,
    ) -> RateLimitRecord | None:
        """Atomically add one attempt and apply escalation in the same transaction.

        create=False leaves a missing record missing. block_count_below skips
        the increment once the stored block_count has reached the ceiling.
        Returns the record as committed, or None when nothing was written.

        A concurrent insert of the same key raises IntegrityError on our
        INSERT; the second pass then takes the UPDATE path.
        """
        for _ in range(2):
            try:
                with self.engine.begin() as conn:
                    return self._increment(conn, key, now, create, block_count_below, escalate)
            except IntegrityError:
                continue
        return None

    def _increment(
        self,
        conn: Connection,
        key: RateLimitKey,
        now: datetime,
        create: bool,
        block_count_below: int | None,
        escalate: Escalation | None,
    ) -> RateLimitRecord | None:
        stamp = to_iso(now)
        condition = _where(key)
        if block_count_below is not None:
            condition = and_(condition, _rate_limits.c.block_count < block_count_below)
        result = conn.execute(
            _rate_limits.update()
            .where(condition)
            .values(attempt_count=_rate_limits.c.attempt_count + 1, updated_at=stamp)
        )
        if result.rowcount == 0:
            if not create:
                return None
            if block_count_below is not None and conn.execute(select(_rate_limits.c.id).where(_where(key))).first():
                # Row exists but is at the ceiling
                return None
            conn.execute(
                _rate_limits.insert().values(
                    purpose=key.purpose.value,
                    client_identity=key.client_identity,
                    account_identity=key.account_identity,
                    attempt_count=1,
                    block_count=0,
                    blocked_until=None,
                    created_at=stamp,
                    updated_at=stamp,
                )
            )

        record = _row_to_record(conn.execute(_rate_limits.select().where(_where(key))).fetchone())
        if escalate is None:
            return record
        changes = escalate(record)
        if not changes:
            return record
        conn.execute(_rate_limits.update().where(_where(key)).values(**_to_columns(changes), updated_at=stamp))
        for name, value in changes.items():
            setattr(record, name, value)
        record.updated_at = stamp
        return record

    def update(self, key: RateLimitKey, now: datetime, **fields) -> bool:
        """Update attempt_count, block_count and/or blocked_until on an existing record.

        Returns True if a row was updated, False if the key has no record.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _rate_limits.update().where(_where(key)).values(**_to_columns(fields), updated_at=to_iso(now))
            )
        return result.rowcount > 0

    def delete(self, key: RateLimitKey) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_rate_limits.delete().where(_where(key)))
        return result.rowcount > 0

    def delete_for(self, client_identity: str, account_identity: str, purposes: Iterable[Purpose]) -> int:
        """Delete the (client, account) counters of several purposes at once."""
        values = [p.value for p in purposes]
        with self.engine.begin() as conn:
            result = conn.execute(
                _rate_limits.delete().where(
                    (_rate_limits.c.client_identity == client_identity)
                    & (_rate_limits.c.account_identity == account_identity)
                    & (_rate_limits.c.purpose.in_(values))
                )
            )
        return result.rowcount

    def purge_stale(self, now: datetime, untouched_since: datetime) -> int:
        """Delete records with no active block that nobody has touched since the cutoff."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _rate_limits.delete().where(
                    or_(_rate_limits.c.blocked_until.is_(None), _rate_limits.c.blocked_until < to_iso(now))
                    & (_rate_limits.c.updated_at < to_iso(untouched_since))
                )
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_record(row) -> RateLimitRecord:
    return RateLimitRecord(
        id=row.id,
        key=RateLimitKey(
            purpose=Purpose(row.purpose),
            client_identity=row.client_identity,
            account_identity=row.account_identity,
        ),
        attempt_count=row.attempt_count,
        block_count=row.block_count,
        blocked_until=from_iso(row.blocked_until),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
