"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and codes.

Pattern: Repository + Data Mapper (same as ratelimit/store.py).
AccountStore is the repository; the _row_to_* functions are the mappers.
Flow and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Reset codes are UNIQUE at the table level. issue_reset_token() raises
  IntegrityError on a collision so the caller can draw a fresh code.

Transactions:
  issue_reset_token() (expiry purge + bounded-pool eviction + insert),
  complete_password_reset() (password + mark used + delete all tokens) and
  mark_verified() each run in a single engine.begin() block. Either every
  statement lands or none does.

Layer rule: no imports from api/, ratelimit/ or notify/.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, select, text
from sqlalchemy.engine import Engine

from auth.models import PROFILE_FIELDS, Account, AccountProfile, EmailVerification, PasswordResetToken
from core.db import from_iso, make_engine, to_iso, utcnow

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'authgate_accounts.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(30), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_user_details = Table(
    "user_details",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, unique=True),  # 1:1 with users
    Column("first_name", String(50)),
    Column("last_name", String(50)),
    Column("gender", String(10)),
    Column("date_of_birth", String(10)),
    Column("phone_number", String(32)),
    Column("profile_picture", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("email", String(255), nullable=False),
    Column("code", String(6), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_verifications = Table(
    "email_verifications",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("code", String(6), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account, AccountProfile, PasswordResetToken and EmailVerification.

    Usage:
        store = AccountStore()
        user_id = store.create_account(Account(username="alice", email="a@x.io", hashed_password=digest))
        account = store.get_by_email("a@x.io")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def ping(self) -> None:
        """Round-trip a trivial query. Raises if the database is unreachable."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. Callers treat that as a registration conflict.
        """
        stamp = to_iso(utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=account.username,
                    email=account.email,
                    hashed_password=account.hashed_password,
                    is_verified=1 if account.is_verified else 0,
                    created_at=stamp,
                    updated_at=stamp,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_email(self, email: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_username(self, username: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_account(row) if row is not None else None

    def update_password(self, user_id: int, hashed_password: str) -> bool:
        """Returns True if a row was updated, False if user_id was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(hashed_password=hashed_password, updated_at=to_iso(utcnow()))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Profile details
    # ------------------------------------------------------------------

    def get_profile(self, user_id: int) -> AccountProfile | None:
        with self.engine.connect() as conn:
            row = conn.execute(_user_details.select().where(_user_details.c.user_id == user_id)).fetchone()
        return _row_to_profile(row) if row is not None else None

    def upsert_profile(self, user_id: int, **fields) -> AccountProfile:
        """Update profile fields, creating the detail row on first use.

        Only names in PROFILE_FIELDS are accepted. Unknown keys raise
        ValueError rather than being silently dropped.
        """
        unknown = set(fields) - set(PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown profile fields: {unknown!r}")
        stamp = to_iso(utcnow())
        with self.engine.begin() as conn:
            exists = conn.execute(select(_user_details.c.id).where(_user_details.c.user_id == user_id)).first()
            if exists is None:
                conn.execute(_user_details.insert().values(user_id=user_id, created_at=stamp, updated_at=stamp, **fields))
            elif fields:
                conn.execute(
                    _user_details.update().where(_user_details.c.user_id == user_id).values(updated_at=stamp, **fields)
                )
            conn.execute(_users.update().where(_users.c.id == user_id).values(updated_at=stamp))
            row = conn.execute(_user_details.select().where(_user_details.c.user_id == user_id)).fetchone()
        return _row_to_profile(row)

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def issue_reset_token(
        self,
        account: Account,
        code: str,
        now: datetime,
        expires_at: datetime,
        max_active: int,
    ) -> PasswordResetToken:
        """Store a new reset code, keeping at most max_active unused codes per account.

        Expired codes for the account are deleted first; then the oldest
        active codes are evicted until max_active - 1 remain, so the new code
        brings the pool back to max_active.

        Raises sqlalchemy.exc.IntegrityError if the code is already taken.
        """
        stamp = to_iso(now)
        with self.engine.begin() as conn:
            conn.execute(
                _reset_tokens.delete().where(
                    (_reset_tokens.c.user_id == account.id) & (_reset_tokens.c.expires_at < stamp)
                )
            )
            active_ids = [
                row.id
                for row in conn.execute(
                    select(_reset_tokens.c.id)
                    .where((_reset_tokens.c.user_id == account.id) & (_reset_tokens.c.used == 0))
                    .order_by(_reset_tokens.c.created_at, _reset_tokens.c.id)
                )
            ]
            excess = len(active_ids) - (max_active - 1)
            if excess > 0:
                conn.execute(_reset_tokens.delete().where(_reset_tokens.c.id.in_(active_ids[:excess])))
            result = conn.execute(
                _reset_tokens.insert().values(
                    user_id=account.id,
                    email=account.email,
                    code=code,
                    expires_at=to_iso(expires_at),
                    used=0,
                    created_at=stamp,
                )
            )
            token_id = result.inserted_primary_key[0]
        return PasswordResetToken(
            id=token_id,
            user_id=account.id,
            email=account.email,
            code=code,
            expires_at=expires_at,
            used=False,
            created_at=stamp,
        )

    def find_active_token(self, code: str, now: datetime) -> PasswordResetToken | None:
        """Return the unused, unexpired token carrying this code, if any."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _reset_tokens.select().where(
                    (_reset_tokens.c.code == code)
                    & (_reset_tokens.c.used == 0)
                    & (_reset_tokens.c.expires_at > to_iso(now))
                )
            ).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def purge_expired_tokens(self, now: datetime, user_id: int | None = None) -> int:
        """Delete expired tokens, globally or for one account. Returns the row count."""
        condition = _reset_tokens.c.expires_at < to_iso(now)
        if user_id is not None:
            condition = condition & (_reset_tokens.c.user_id == user_id)
        with self.engine.connect() as conn:
            result = conn.execute(_reset_tokens.delete().where(condition))
            conn.commit()
        return result.rowcount

    def complete_password_reset(self, token: PasswordResetToken, hashed_password: str, now: datetime) -> bool:
        """Consume the token, set the new digest and drop every token of the account.

        The token is claimed first with a conditional UPDATE. If another
        request already used it, or it expired since the lookup, nothing is
        written and False is returned.
        """
        stamp = to_iso(now)
        with self.engine.begin() as conn:
            claimed = conn.execute(
                _reset_tokens.update()
                .where(
                    (_reset_tokens.c.id == token.id)
                    & (_reset_tokens.c.used == 0)
                    & (_reset_tokens.c.expires_at > stamp)
                )
                .values(used=1)
            )
            if claimed.rowcount != 1:
                return False
            conn.execute(
                _users.update()
                .where(_users.c.id == token.user_id)
                .values(hashed_password=hashed_password, updated_at=stamp)
            )
            conn.execute(_reset_tokens.delete().where(_reset_tokens.c.user_id == token.user_id))
        return True

    # ------------------------------------------------------------------
    # Email verification codes
    # ------------------------------------------------------------------

    def replace_verification(
        self, user_id: int, code: str, now: datetime, expires_at: datetime
    ) -> EmailVerification:
        """Delete every pending code for the account and store a new one."""
        stamp = to_iso(now)
        with self.engine.begin() as conn:
            conn.execute(
                _verifications.delete().where((_verifications.c.user_id == user_id) & (_verifications.c.verified == 0))
            )
            result = conn.execute(
                _verifications.insert().values(
                    user_id=user_id,
                    code=code,
                    expires_at=to_iso(expires_at),
                    attempts=0,
                    verified=0,
                    created_at=stamp,
                )
            )
            verification_id = result.inserted_primary_key[0]
        return EmailVerification(
            id=verification_id,
            user_id=user_id,
            code=code,
            expires_at=expires_at,
            created_at=stamp,
        )

    def get_pending_verification(self, user_id: int) -> EmailVerification | None:
        """Most recent unverified code for the account."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _verifications.select()
                .where((_verifications.c.user_id == user_id) & (_verifications.c.verified == 0))
                .order_by(_verifications.c.created_at.desc(), _verifications.c.id.desc())
                .limit(1)
            ).fetchone()
        return _row_to_verification(row) if row is not None else None

    def increment_verification_attempts(self, verification_id: int) -> int:
        """Atomically add one attempt and return the new count (0 if the row is gone)."""
        with self.engine.begin() as conn:
            conn.execute(
                _verifications.update()
                .where(_verifications.c.id == verification_id)
                .values(attempts=_verifications.c.attempts + 1)
            )
            attempts = conn.execute(
                select(_verifications.c.attempts).where(_verifications.c.id == verification_id)
            ).scalar()
        return attempts or 0

    def delete_verification(self, verification_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_verifications.delete().where(_verifications.c.id == verification_id))
            conn.commit()

    def delete_verifications(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_verifications.delete().where(_verifications.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def mark_verified(self, user_id: int, now: datetime) -> None:
        """Flag the account verified and remove all its verification codes."""
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(is_verified=1, updated_at=to_iso(now)))
            conn.execute(_verifications.delete().where(_verifications.c.user_id == user_id))

    def purge_expired_verifications(self, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_verifications.delete().where(_verifications.c.expires_at < to_iso(now)))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        is_verified=bool(row.is_verified),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_profile(row) -> AccountProfile:
    return AccountProfile(
        id=row.id,
        user_id=row.user_id,
        first_name=row.first_name,
        last_name=row.last_name,
        gender=row.gender,
        date_of_birth=row.date_of_birth,
        phone_number=row.phone_number,
        profile_picture=row.profile_picture,
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        email=row.email,
        code=row.code,
        expires_at=from_iso(row.expires_at),
        used=bool(row.used),
        created_at=row.created_at,
    )


def _row_to_verification(row) -> EmailVerification:
    return EmailVerification(
        id=row.id,
        user_id=row.user_id,
        code=row.code,
        expires_at=from_iso(row.expires_at),
        attempts=row.attempts,
        verified=bool(row.verified),
        created_at=row.created_at,
    )
