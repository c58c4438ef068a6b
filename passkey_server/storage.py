"""SQLite persistence for users, credentials and ceremony challenges.

One :class:`Storage` instance owns one connection. All statements run under
a re-entrant lock, and operations that must not interleave (consuming a
challenge, compare-and-swap of a signature counter, creating a user together
with its first credential) run inside a single ``BEGIN IMMEDIATE``
transaction, so the same database file can also be shared between
processes.
"""
from __future__ import annotations

import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from fido2 import cbor

from .encoding import websafe_decode_strict
from .errors import Conflict

__all__ = [
    "Challenge",
    "ChallengeKind",
    "Credential",
    "Storage",
    "User",
    "normalize_email",
]

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        name TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credentials (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        credential_id TEXT UNIQUE NOT NULL,
        public_key TEXT NOT NULL,
        algorithm INTEGER NOT NULL,
        counter INTEGER NOT NULL DEFAULT 0 CHECK (counter >= 0),
        created_at REAL NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users (id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS credentials_user_id ON credentials (user_id)",
    """
    CREATE TABLE IF NOT EXISTS challenges (
        id TEXT PRIMARY KEY,
        challenge TEXT NOT NULL,
        user_email TEXT,
        user_id TEXT,
        user_name TEXT,
        type TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS challenges_created_at ON challenges (created_at)",
)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _to_datetime(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class ChallengeKind(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


@dataclass(frozen=True)
class User:
    id: str
    email: str
    name: str
    created_at: datetime

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "createdAt": self.created_at.isoformat().replace("+00:00", "Z"),
        }


@dataclass(frozen=True)
class Credential:
    id: str
    user_id: str
    credential_id: str
    public_key: str
    algorithm: int
    sign_count: int
    created_at: datetime

    @property
    def cose_key(self) -> Dict[int, Any]:
        """The stored public key as a COSE map."""

        return dict(cbor.decode(websafe_decode_strict(self.public_key, "public_key")))


@dataclass(frozen=True)
class Challenge:
    id: str
    value: str
    kind: ChallengeKind
    subject_email: Optional[str]
    subject_id: Optional[str]
    subject_name: Optional[str]
    created_at: datetime


def _user_from_row(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        created_at=_to_datetime(row["created_at"]),
    )


def _credential_from_row(row: sqlite3.Row) -> Credential:
    return Credential(
        id=row["id"],
        user_id=row["user_id"],
        credential_id=row["credential_id"],
        public_key=row["public_key"],
        algorithm=row["algorithm"],
        sign_count=row["counter"],
        created_at=_to_datetime(row["created_at"]),
    )


def _challenge_from_row(row: sqlite3.Row) -> Challenge:
    return Challenge(
        id=row["id"],
        value=row["challenge"],
        kind=ChallengeKind(row["type"]),
        subject_email=row["user_email"],
        subject_id=row["user_id"],
        subject_name=row["user_name"],
        created_at=_to_datetime(row["created_at"]),
    )


def _conflict_from_integrity_error(exc: sqlite3.IntegrityError) -> Optional[Conflict]:
    message = str(exc)
    if "users.email" in message:
        return Conflict("User with this email already exists")
    if "users.id" in message:
        return Conflict("User already exists")
    if "credentials.credential_id" in message:
        return Conflict("Credential is already registered")
    return None


class Storage:
    """Challenge store and credential repository over one SQLite database."""

    def __init__(
        self,
        path: str = ":memory:",
        *,
        challenge_max_age: float = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = path
        self.challenge_max_age = challenge_max_age
        self._clock = clock
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            path, check_same_thread=False, isolation_level=None, timeout=10.0
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        with self._transaction() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except BaseException:
                # A failed COMMIT can leave the transaction open.
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise

    def _query_one(self, sql: str, params: Tuple[Any, ...]) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _expiry_cutoff(self, max_age: Optional[float] = None) -> float:
        return self._clock() - (self.challenge_max_age if max_age is None else max_age)

    # Challenges

    def create_challenge(
        self,
        challenge_id: str,
        value: str,
        kind: ChallengeKind,
        subject_email: Optional[str] = None,
        subject_id: Optional[str] = None,
        subject_name: Optional[str] = None,
    ) -> Challenge:
        created_at = self._clock()
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO challenges (id, challenge, user_email, user_id, user_name, type, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                (challenge_id, value, subject_email, subject_id, subject_name, kind.value, created_at),
            )
        return Challenge(
            id=challenge_id,
            value=value,
            kind=kind,
            subject_email=subject_email,
            subject_id=subject_id,
            subject_name=subject_name,
            created_at=_to_datetime(created_at),
        )

    def get_challenge(self, challenge_id: str) -> Optional[Challenge]:
        """Return a live challenge, or ``None`` if unknown, consumed or expired."""

        row = self._query_one(
            "SELECT * FROM challenges WHERE id = ? AND created_at >= ?",
            (challenge_id, self._expiry_cutoff()),
        )
        return _challenge_from_row(row) if row else None

    def delete_challenge(self, challenge_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM challenges WHERE id = ?", (challenge_id,))
        return cursor.rowcount > 0

    def consume_challenge(self, challenge_id: str) -> Optional[Challenge]:
        """Atomically fetch and delete a challenge.

        Exactly one caller receives a given challenge. Expired rows are
        removed as well but reported as ``None``.
        """

        cutoff = self._expiry_cutoff()
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM challenges WHERE id = ?", (challenge_id,)).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM challenges WHERE id = ?", (challenge_id,))
        if row["created_at"] < cutoff:
            return None
        return _challenge_from_row(row)

    def sweep_expired(self, max_age: Optional[float] = None) -> int:
        """Delete challenges older than ``max_age`` seconds; return how many."""

        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM challenges WHERE created_at < ?", (self._expiry_cutoff(max_age),)
            )
        return cursor.rowcount

    # Users

    def create_user(self, user_id: str, email: str, name: str) -> User:
        created_at = self._clock()
        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT INTO users (id, email, name, created_at) VALUES (?, ?, ?, ?)",
                    (user_id, normalize_email(email), name, created_at),
                )
        except sqlite3.IntegrityError as exc:
            conflict = _conflict_from_integrity_error(exc)
            if conflict is None:
                raise
            raise conflict from exc
        return User(id=user_id, email=normalize_email(email), name=name, created_at=_to_datetime(created_at))

    def get_user_by_email(self, email: str) -> Optional[User]:
        row = self._query_one("SELECT * FROM users WHERE email = ?", (normalize_email(email),))
        return _user_from_row(row) if row else None

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        row = self._query_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return _user_from_row(row) if row else None

    # Credentials

    def _insert_credential(
        self,
        conn: sqlite3.Connection,
        record_id: str,
        user_id: str,
        credential_id: str,
        public_key: str,
        algorithm: int,
        sign_count: int,
        created_at: float,
    ) -> Credential:
        conn.execute(
            "INSERT INTO credentials (id, user_id, credential_id, public_key, algorithm, counter, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?)",
            (record_id, user_id, credential_id, public_key, algorithm, sign_count, created_at),
        )
        return Credential(
            id=record_id,
            user_id=user_id,
            credential_id=credential_id,
            public_key=public_key,
            algorithm=algorithm,
            sign_count=sign_count,
            created_at=_to_datetime(created_at),
        )

    def save_credential(
        self,
        record_id: str,
        user_id: str,
        credential_id: str,
        public_key: str,
        algorithm: int,
        sign_count: int = 0,
    ) -> Credential:
        try:
            with self._transaction() as conn:
                return self._insert_credential(
                    conn, record_id, user_id, credential_id, public_key, algorithm, sign_count, self._clock()
                )
        except sqlite3.IntegrityError as exc:
            conflict = _conflict_from_integrity_error(exc)
            if conflict is None:
                raise
            raise conflict from exc

    def register_user_with_credential(
        self,
        user_id: str,
        email: str,
        name: str,
        record_id: str,
        credential_id: str,
        public_key: str,
        algorithm: int,
        sign_count: int,
    ) -> Tuple[User, Credential]:
        """Create a user and its first credential, or neither."""

        created_at = self._clock()
        email = normalize_email(email)
        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT INTO users (id, email, name, created_at) VALUES (?, ?, ?, ?)",
                    (user_id, email, name, created_at),
                )
                credential = self._insert_credential(
                    conn, record_id, user_id, credential_id, public_key, algorithm, sign_count, created_at
                )
        except sqlite3.IntegrityError as exc:
            conflict = _conflict_from_integrity_error(exc)
            if conflict is None:
                raise
            raise conflict from exc
        user = User(id=user_id, email=email, name=name, created_at=_to_datetime(created_at))
        return user, credential

    def get_credential_by_credential_id(self, credential_id: str) -> Optional[Credential]:
        row = self._query_one("SELECT * FROM credentials WHERE credential_id = ?", (credential_id,))
        return _credential_from_row(row) if row else None

    def get_credentials_by_user_id(self, user_id: str) -> List[Credential]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM credentials WHERE user_id = ? ORDER BY created_at", (user_id,)
            ).fetchall()
        return [_credential_from_row(row) for row in rows]

    def update_counter(
        self, credential_id: str, new_counter: int, expected: Optional[int] = None
    ) -> bool:
        """Store a new signature counter.

        With ``expected`` the row is only updated while it still holds that
        value. Returns ``False`` when nothing was updated.
        """

        sql = "UPDATE credentials SET counter = ? WHERE credential_id = ?"
        params: Tuple[Any, ...] = (new_counter, credential_id)
        if expected is not None:
            sql += " AND counter = ?"
            params += (expected,)
        with self._transaction() as conn:
            cursor = conn.execute(sql, params)
        return cursor.rowcount > 0
