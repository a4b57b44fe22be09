"""
Claim Store Abstraction

This module defines the ClaimStore interface and provides two implementations:
- InMemoryClaimStore: For development and testing
- PostgresClaimStore: For production with full durability and concurrency safety

The ClaimStore is responsible for:
- Persisting claims, messages, document records, users and targets
- Per-claim mutual exclusion (claim_lock)
- Per-target mutual exclusion for opening claims (target_lock)
- The compare-and-set that applies an ownership grant, written together
  with the VERIFIED claim

ClaimService retains responsibility for:
- The state machine and every business rule
- Audit entry construction and chaining
- Deciding when a grant happens

LOCKING CONTRACT:
Every mutation of a claim, its thread or its documents runs inside

    with store.claim_lock(claim_id):
        claim = store.get_claim(claim_id)
        ...
        store.save_claim(updated)

The lock is not reentrant. Take it once per public operation.
"""

import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Generator, Iterable, Optional
from uuid import UUID
from weakref import WeakValueDictionary

import psycopg2
from psycopg2.extras import Json

from ..schemas import (
    ACTIVE_STATUSES,
    Claim,
    ClaimableEntity,
    ClaimMessage,
    ClaimStatus,
    ClaimTarget,
    DocumentApproval,
    TargetKind,
    UserRecord,
)
from ..observability import get_logger
from .config import (
    DEFAULT_LOCK_TIMEOUT_MS,
    DEFAULT_STATEMENT_TIMEOUT_MS,
    DatabaseConfig,
    StoreDriver,
    get_database_config,
    get_store_driver,
)


logger = get_logger(__name__)


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(Exception):
    """Base exception for claim store errors."""
    pass


class LockTimeoutError(StoreError):
    """Raised when a claim lock cannot be acquired in time (claim busy)."""
    pass


class DuplicateClaimError(StoreError):
    """Raised when a user already has an open claim on the same target."""
    pass


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class ClaimStore(ABC):
    """
    Where claims, users and claim targets live.

    Every backend guarantees:
    1. claim_lock(claim_id) excludes every other holder of the same id,
       and target_lock(target) does the same per claimable target
    2. claim_target is a compare-and-set: it never overwrites a grant
       held by a different user
    3. grant_and_save_claim writes the grant and the claim together,
       or writes neither
    4. Reads return copies; mutating a returned object changes nothing
    """

    # ---------------------------------------------------------------
    # Locking
    # ---------------------------------------------------------------

    @contextmanager
    @abstractmethod
    def claim_lock(self, claim_id: UUID) -> Generator[None, None, None]:
        """Hold the per-claim lock for the duration of the block."""
        pass

    @contextmanager
    @abstractmethod
    def target_lock(self, target: ClaimTarget) -> Generator[None, None, None]:
        """Hold the per-target lock; opening a claim on `target` runs under it."""
        pass

    # ---------------------------------------------------------------
    # Users
    # ---------------------------------------------------------------

    @abstractmethod
    def get_user(self, user_id: UUID) -> Optional[UserRecord]:
        pass

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        pass

    @abstractmethod
    def save_user(self, user: UserRecord) -> UserRecord:
        """Insert or replace a directory entry."""
        pass

    # ---------------------------------------------------------------
    # Claimable targets
    # ---------------------------------------------------------------

    @abstractmethod
    def get_target(self, kind: TargetKind, target_id: UUID) -> Optional[ClaimableEntity]:
        pass

    @abstractmethod
    def save_target(self, entity: ClaimableEntity) -> ClaimableEntity:
        """Insert or replace an institution or group."""
        pass

    @abstractmethod
    def claim_target(
        self,
        kind: TargetKind,
        target_id: UUID,
        *,
        user_id: UUID,
        claim_id: UUID,
        at: datetime,
    ) -> Optional[ClaimableEntity]:
        """
        Set claimed_by on an unclaimed target.

        Returns the target as stored afterwards, or None when it is held
        by a different user. A target already held by user_id is
        returned untouched.
        """
        pass

    @abstractmethod
    def grant_and_save_claim(self, claim: Claim, at: datetime) -> Optional[ClaimableEntity]:
        """
        Grant claim.target to claim.user_id and replace the stored claim, atomically.

        Returns the target as stored afterwards. When a different user
        holds the target, returns None and writes nothing.
        """
        pass

    # ---------------------------------------------------------------
    # Claims
    # ---------------------------------------------------------------

    @abstractmethod
    def get_claim(self, claim_id: UUID) -> Optional[Claim]:
        pass

    @abstractmethod
    def insert_claim(self, claim: Claim) -> Claim:
        """Store a new claim. Raises DuplicateClaimError if it would be a second open claim."""
        pass

    @abstractmethod
    def save_claim(self, claim: Claim) -> Claim:
        """Replace a stored claim with `claim` in one write."""
        pass

    @abstractmethod
    def delete_claim(self, claim_id: UUID) -> None:
        """Remove a claim together with its messages and document records."""
        pass

    @abstractmethod
    def list_claims_for_user(self, user_id: UUID) -> list[Claim]:
        """A user's claims, newest first."""
        pass

    @abstractmethod
    def list_claims(self, status: Optional[ClaimStatus] = None) -> list[Claim]:
        """All claims (optionally one status), ordered by status then newest first."""
        pass

    @abstractmethod
    def find_active_claim(self, user_id: UUID, target: ClaimTarget) -> Optional[Claim]:
        """The user's open claim on `target`, if any."""
        pass

    @abstractmethod
    def count_claims(self) -> int:
        pass

    # ---------------------------------------------------------------
    # Messages
    # ---------------------------------------------------------------

    @abstractmethod
    def add_message(self, message: ClaimMessage) -> ClaimMessage:
        pass

    @abstractmethod
    def get_message(self, message_id: UUID) -> Optional[ClaimMessage]:
        pass

    @abstractmethod
    def list_messages(self, claim_id: UUID) -> list[ClaimMessage]:
        """A claim's thread in posting order."""
        pass

    # ---------------------------------------------------------------
    # Document approvals
    # ---------------------------------------------------------------

    @abstractmethod
    def get_document(self, document_id: UUID) -> Optional[DocumentApproval]:
        pass

    @abstractmethod
    def list_documents(self, claim_id: UUID) -> list[DocumentApproval]:
        """A claim's document records in creation order."""
        pass

    @abstractmethod
    def add_documents(self, documents: Iterable[DocumentApproval]) -> None:
        pass

    @abstractmethod
    def save_document(self, document: DocumentApproval) -> DocumentApproval:
        pass

    @abstractmethod
    def delete_documents(self, document_ids: Iterable[UUID]) -> None:
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryClaimStore(ClaimStore):
    """
    Dict-backed store for tests, the demo and single-process runs.

    Nothing survives a restart, and the claim locks are process-local
    threading locks, so two workers would not see each other.
    """

    def __init__(self):
        self._users: dict[UUID, UserRecord] = {}
        self._targets: dict[tuple[TargetKind, UUID], ClaimableEntity] = {}
        self._claims: dict[UUID, Claim] = {}
        self._messages: dict[UUID, ClaimMessage] = {}
        self._documents: dict[UUID, DocumentApproval] = {}

        # Guards the dicts above for single operations
        self._data_lock = Lock()
        # Guards creation of per-claim and per-target locks. Entries go
        # away once no thread holds or waits on the lock.
        self._registry_lock = Lock()
        self._claim_locks: "WeakValueDictionary[UUID, Lock]" = WeakValueDictionary()
        self._target_locks: "WeakValueDictionary[tuple, Lock]" = WeakValueDictionary()

    def _lock_for(self, registry: WeakValueDictionary, key) -> Lock:
        with self._registry_lock:
            lock = registry.get(key)
            if lock is None:
                lock = Lock()
                registry[key] = lock
            return lock

    @contextmanager
    def claim_lock(self, claim_id: UUID) -> Generator[None, None, None]:
        with self._lock_for(self._claim_locks, claim_id):
            yield

    @contextmanager
    def target_lock(self, target: ClaimTarget) -> Generator[None, None, None]:
        with self._lock_for(self._target_locks, (TargetKind(target.kind), target.id)):
            yield

    # -- users ------------------------------------------------------

    def get_user(self, user_id: UUID) -> Optional[UserRecord]:
        with self._data_lock:
            user = self._users.get(user_id)
            return user.model_copy() if user else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._data_lock:
            for user in self._users.values():
                if user.email.lower() == email.lower():
                    return user.model_copy()
        return None

    def save_user(self, user: UserRecord) -> UserRecord:
        with self._data_lock:
            self._users[user.id] = user.model_copy()
        return user

    # -- targets ----------------------------------------------------

    def get_target(self, kind: TargetKind, target_id: UUID) -> Optional[ClaimableEntity]:
        with self._data_lock:
            entity = self._targets.get((TargetKind(kind), target_id))
            return entity.model_copy() if entity else None

    def save_target(self, entity: ClaimableEntity) -> ClaimableEntity:
        with self._data_lock:
            self._targets[(entity.kind, entity.id)] = entity.model_copy()
        return entity

    def claim_target(
        self,
        kind: TargetKind,
        target_id: UUID,
        *,
        user_id: UUID,
        claim_id: UUID,
        at: datetime,
    ) -> Optional[ClaimableEntity]:
        with self._data_lock:
            return self._grant_locked((TargetKind(kind), target_id), user_id, claim_id, at)

    def grant_and_save_claim(self, claim: Claim, at: datetime) -> Optional[ClaimableEntity]:
        target = claim.target
        with self._data_lock:
            if claim.id not in self._claims:
                raise StoreError(f"Claim {claim.id} does not exist")
            granted = self._grant_locked((target.kind, target.id), claim.user_id, claim.id, at)
            if granted is not None:
                self._claims[claim.id] = claim.model_copy(deep=True)
            return granted

    def _grant_locked(
        self, key: tuple, user_id: UUID, claim_id: UUID, at: datetime
    ) -> Optional[ClaimableEntity]:
        # _data_lock held
        entity = self._targets.get(key)
        if entity is None:
            raise StoreError(f"No {key[0].value} with id {key[1]}")
        if entity.claimed_by is not None:
            return entity.model_copy() if entity.claimed_by == user_id else None
        granted = entity.model_copy(update={
            "claimed_by": user_id,
            "claimed_at": at,
            "claimed_via": claim_id,
        })
        self._targets[key] = granted
        return granted.model_copy()

    # -- claims -----------------------------------------------------

    def get_claim(self, claim_id: UUID) -> Optional[Claim]:
        with self._data_lock:
            claim = self._claims.get(claim_id)
            return claim.model_copy(deep=True) if claim else None

    def insert_claim(self, claim: Claim) -> Claim:
        with self._data_lock:
            if claim.id in self._claims:
                raise StoreError(f"Claim {claim.id} already exists")
            if claim.status in ACTIVE_STATUSES:
                existing = self._active_claim_locked(claim.user_id, claim.target)
                if existing is not None:
                    raise DuplicateClaimError(
                        f"User {claim.user_id} already has open claim {existing.id} on this target"
                    )
            self._claims[claim.id] = claim.model_copy(deep=True)
        return claim

    def save_claim(self, claim: Claim) -> Claim:
        with self._data_lock:
            if claim.id not in self._claims:
                raise StoreError(f"Claim {claim.id} does not exist")
            self._claims[claim.id] = claim.model_copy(deep=True)
        return claim

    def delete_claim(self, claim_id: UUID) -> None:
        with self._data_lock:
            self._claims.pop(claim_id, None)
            self._messages = {
                k: m for k, m in self._messages.items() if m.claim_id != claim_id
            }
            self._documents = {
                k: d for k, d in self._documents.items() if d.claim_id != claim_id
            }

    def list_claims_for_user(self, user_id: UUID) -> list[Claim]:
        with self._data_lock:
            claims = [c.model_copy(deep=True) for c in self._claims.values() if c.user_id == user_id]
        return sorted(claims, key=lambda c: c.created_at, reverse=True)

    def list_claims(self, status: Optional[ClaimStatus] = None) -> list[Claim]:
        with self._data_lock:
            claims = [
                c.model_copy(deep=True) for c in self._claims.values()
                if status is None or c.status == status
            ]
        # Newest first within each status
        claims.sort(key=lambda c: c.created_at, reverse=True)
        claims.sort(key=lambda c: c.status.value)
        return claims

    def find_active_claim(self, user_id: UUID, target: ClaimTarget) -> Optional[Claim]:
        with self._data_lock:
            claim = self._active_claim_locked(user_id, target)
            return claim.model_copy(deep=True) if claim else None

    def _active_claim_locked(self, user_id: UUID, target: ClaimTarget) -> Optional[Claim]:
        for claim in self._claims.values():
            if (
                claim.user_id == user_id
                and claim.target == target
                and claim.status in ACTIVE_STATUSES
            ):
                return claim
        return None

    def count_claims(self) -> int:
        with self._data_lock:
            return len(self._claims)

    # -- messages ---------------------------------------------------

    def add_message(self, message: ClaimMessage) -> ClaimMessage:
        with self._data_lock:
            self._messages[message.id] = message
        return message

    def get_message(self, message_id: UUID) -> Optional[ClaimMessage]:
        with self._data_lock:
            return self._messages.get(message_id)

    def list_messages(self, claim_id: UUID) -> list[ClaimMessage]:
        # dicts keep insertion order, which is posting order
        with self._data_lock:
            return [m for m in self._messages.values() if m.claim_id == claim_id]

    # -- documents --------------------------------------------------

    def get_document(self, document_id: UUID) -> Optional[DocumentApproval]:
        with self._data_lock:
            doc = self._documents.get(document_id)
            return doc.model_copy() if doc else None

    def list_documents(self, claim_id: UUID) -> list[DocumentApproval]:
        with self._data_lock:
            return [d.model_copy() for d in self._documents.values() if d.claim_id == claim_id]

    def add_documents(self, documents: Iterable[DocumentApproval]) -> None:
        with self._data_lock:
            for doc in documents:
                self._documents[doc.id] = doc.model_copy()

    def save_document(self, document: DocumentApproval) -> DocumentApproval:
        with self._data_lock:
            if document.id not in self._documents:
                raise StoreError(f"Document {document.id} does not exist")
            self._documents[document.id] = document.model_copy()
        return document

    def delete_documents(self, document_ids: Iterable[UUID]) -> None:
        with self._data_lock:
            for doc_id in document_ids:
                self._documents.pop(doc_id, None)

    def clear(self) -> None:
        """Drop everything (for testing only)."""
        with self._data_lock:
            self._users.clear()
            self._targets.clear()
            self._claims.clear()
            self._messages.clear()
            self._documents.clear()


# ============================================================
# POSTGRESQL IMPLEMENTATION (SYNC)
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id          UUID PRIMARY KEY,
    email       TEXT NOT NULL UNIQUE,
    first_name  TEXT NOT NULL DEFAULT '',
    last_name   TEXT NOT NULL DEFAULT '',
    role        TEXT NOT NULL DEFAULT 'USER' CHECK (role IN ('ADMIN', 'USER'))
);

CREATE TABLE IF NOT EXISTS claimable_entities (
    kind        TEXT NOT NULL CHECK (kind IN ('institution', 'group')),
    id          UUID NOT NULL,
    name        TEXT NOT NULL,
    claimed_by  UUID REFERENCES users (id),
    claimed_at  TIMESTAMPTZ,
    claimed_via UUID,
    PRIMARY KEY (kind, id)
);

CREATE TABLE IF NOT EXISTS claims (
    id              UUID PRIMARY KEY,
    user_id         UUID NOT NULL REFERENCES users (id),
    institution_id  UUID,
    group_id        UUID,
    status          TEXT NOT NULL,
    created_at      TIMESTAMPTZ NOT NULL,
    body            JSONB NOT NULL,
    CHECK ((institution_id IS NULL) <> (group_id IS NULL))
);
CREATE INDEX IF NOT EXISTS claims_user_idx ON claims (user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS claims_status_idx ON claims (status, created_at DESC);
-- At most one open claim per user and target
CREATE UNIQUE INDEX IF NOT EXISTS claims_one_open_idx
    ON claims (user_id, COALESCE(institution_id, group_id))
    WHERE status IN ('PENDING', 'UNDER_REVIEW', 'ACTION_REQUIRED');

CREATE TABLE IF NOT EXISTS claim_messages (
    seq         BIGSERIAL,
    id          UUID PRIMARY KEY,
    claim_id    UUID NOT NULL REFERENCES claims (id) ON DELETE CASCADE,
    body        JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS claim_messages_claim_idx ON claim_messages (claim_id, seq);

CREATE TABLE IF NOT EXISTS document_approvals (
    seq         BIGSERIAL,
    id          UUID PRIMARY KEY,
    claim_id    UUID NOT NULL REFERENCES claims (id) ON DELETE CASCADE,
    body        JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS document_approvals_claim_idx ON document_approvals (claim_id, seq);
"""

_TARGET_COLUMNS = "id, kind, name, claimed_by, claimed_at, claimed_via"
_USER_COLUMNS = "id, email, first_name, last_name, role"


def _load_json(value: Any) -> Any:
    # JSONB may come back as str or already decoded, depending on driver setup
    if isinstance(value, str):
        return json.loads(value)
    return value


def _advisory_key(claim_id: UUID) -> int:
    """Signed 64-bit advisory lock key for a claim."""
    return int.from_bytes(claim_id.bytes[:8], "big", signed=True)


# Two-key advisory locks live in a separate key space from the one-key claim locks
_TARGET_LOCK_CLASS = {TargetKind.INSTITUTION: 1, TargetKind.GROUP: 2}


def _target_advisory_keys(target: ClaimTarget) -> tuple[int, int]:
    """(class, object) pair of signed 32-bit keys for a claimable target."""
    kind = TargetKind(target.kind)
    return _TARGET_LOCK_CLASS[kind], int.from_bytes(target.id.bytes[:4], "big", signed=True)


class PostgresClaimStore(ClaimStore):
    """
    Durable store on PostgreSQL.

    Each operation is one transaction. Claim locks are session-level
    advisory locks, so they hold across processes. Ownership grants are
    a conditional UPDATE. Lock waits and statements are capped by the
    configured timeouts.

    Claims, messages and document records are stored as JSONB bodies
    next to the few columns that queries filter and sort on.
    """

    # psycopg2 error codes for lock/statement timeout
    PGCODE_LOCK_NOT_AVAILABLE = "55P03"
    PGCODE_QUERY_CANCELED = "57014"
    PGCODE_UNIQUE_VIOLATION = "23505"

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS,
    ):
        """
        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for a claim lock (ms).
            statement_timeout_ms: Max statement execution time (ms).
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = int(lock_timeout_ms)
        self._statement_timeout_ms = int(statement_timeout_ms)

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "PostgresClaimStore":
        def connection_factory():
            return psycopg2.connect(config.to_dsn())

        return cls(
            connection_factory,
            lock_timeout_ms=config.lock_timeout_ms,
            statement_timeout_ms=config.statement_timeout_ms,
        )

    # -- plumbing ---------------------------------------------------

    @contextmanager
    def _cursor(self) -> Generator[Any, None, None]:
        """One short transaction on its own connection."""
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        try:
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
            yield cursor
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            if self._timeout_kind(e) == "statement":
                raise StoreError("Query timed out - statement took too long.") from e
            if self._violates_one_open_claim(e):
                raise DuplicateClaimError(str(e)) from e
            raise StoreError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()
            conn.close()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Which timeout a PostgreSQL error came from.

        Returns "lock", "statement", "timeout" (canceled, unclear why) or None.
        PostgreSQL uses 57014 for both lock_timeout and statement_timeout,
        so the message decides which one it was.
        """
        pgcode = getattr(e, "pgcode", None)
        err_msg = (getattr(e, "pgerror", None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        if pgcode == self.PGCODE_QUERY_CANCELED:
            if "lock timeout" in err_msg or "lock_timeout" in err_msg:
                return "lock"
            if "statement timeout" in err_msg or "statement_timeout" in err_msg:
                return "statement"
            return "timeout"

        return None

    @staticmethod
    def _violates_one_open_claim(e: Exception) -> bool:
        diag = getattr(e, "diag", None)
        return (
            getattr(e, "pgcode", None) == PostgresClaimStore.PGCODE_UNIQUE_VIOLATION
            and getattr(diag, "constraint_name", None) == "claims_one_open_idx"
        )

    def create_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        with self._cursor() as cursor:
            cursor.execute(SCHEMA_SQL)

    # -- locking ----------------------------------------------------

    @contextmanager
    def _advisory_lock(self, key_args: tuple, busy: str) -> Generator[None, None, None]:
        """
        Hold pg_advisory_lock(*key_args) on a dedicated session.

        The session outlives the short transactions run inside the block,
        so the lock covers all of them.
        """
        placeholders = ", ".join(["%s"] * len(key_args))
        conn = self._connection_factory()
        conn.autocommit = True
        cursor = conn.cursor()
        try:
            cursor.execute(f"SET lock_timeout = '{self._lock_timeout_ms}ms'")
            try:
                cursor.execute(f"SELECT pg_advisory_lock({placeholders})", key_args)
            except psycopg2.Error as e:
                if self._timeout_kind(e) in ("lock", "timeout"):
                    raise LockTimeoutError(f"{busy} is busy - could not acquire lock. Try again.") from e
                raise StoreError(str(e)) from e
            try:
                yield
            finally:
                cursor.execute(f"SELECT pg_advisory_unlock({placeholders})", key_args)
        finally:
            cursor.close()
            conn.close()

    @contextmanager
    def claim_lock(self, claim_id: UUID) -> Generator[None, None, None]:
        with self._advisory_lock((_advisory_key(claim_id),), f"Claim {claim_id}"):
            yield

    @contextmanager
    def target_lock(self, target: ClaimTarget) -> Generator[None, None, None]:
        kind = TargetKind(target.kind)
        with self._advisory_lock(_target_advisory_keys(target), f"{kind.value.capitalize()} {target.id}"):
            yield

    # -- users ------------------------------------------------------

    @staticmethod
    def _row_to_user(row: tuple) -> UserRecord:
        return UserRecord(
            id=row[0], email=row[1], first_name=row[2], last_name=row[3], role=row[4],
        )

    def get_user(self, user_id: UUID) -> Optional[UserRecord]:
        with self._cursor() as cursor:
            cursor.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (str(user_id),))
            row = cursor.fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE lower(email) = lower(%s)",
                (email,),
            )
            row = cursor.fetchone()
        return self._row_to_user(row) if row else None

    def save_user(self, user: UserRecord) -> UserRecord:
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT INTO users (id, email, first_name, last_name, role)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    email = EXCLUDED.email,
                    first_name = EXCLUDED.first_name,
                    last_name = EXCLUDED.last_name,
                    role = EXCLUDED.role
            """, (str(user.id), user.email, user.first_name, user.last_name, user.role.value))
        return user

    # -- targets ----------------------------------------------------

    @staticmethod
    def _row_to_target(row: tuple) -> ClaimableEntity:
        return ClaimableEntity(
            id=row[0], kind=row[1], name=row[2],
            claimed_by=row[3], claimed_at=row[4], claimed_via=row[5],
        )

    def get_target(self, kind: TargetKind, target_id: UUID) -> Optional[ClaimableEntity]:
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT {_TARGET_COLUMNS} FROM claimable_entities WHERE kind = %s AND id = %s",
                (TargetKind(kind).value, str(target_id)),
            )
            row = cursor.fetchone()
        return self._row_to_target(row) if row else None

    def save_target(self, entity: ClaimableEntity) -> ClaimableEntity:
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT INTO claimable_entities (kind, id, name, claimed_by, claimed_at, claimed_via)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (kind, id) DO UPDATE SET
                    name = EXCLUDED.name,
                    claimed_by = EXCLUDED.claimed_by,
                    claimed_at = EXCLUDED.claimed_at,
                    claimed_via = EXCLUDED.claimed_via
            """, (
                entity.kind.value,
                str(entity.id),
                entity.name,
                str(entity.claimed_by) if entity.claimed_by else None,
                entity.claimed_at,
                str(entity.claimed_via) if entity.claimed_via else None,
            ))
        return entity

    def claim_target(
        self,
        kind: TargetKind,
        target_id: UUID,
        *,
        user_id: UUID,
        claim_id: UUID,
        at: datetime,
    ) -> Optional[ClaimableEntity]:
        with self._cursor() as cursor:
            return self._grant(cursor, TargetKind(kind), target_id, user_id, claim_id, at)

    def grant_and_save_claim(self, claim: Claim, at: datetime) -> Optional[ClaimableEntity]:
        target = claim.target
        with self._cursor() as cursor:
            granted = self._grant(cursor, target.kind, target.id, claim.user_id, claim.id, at)
            if granted is None:
                return None
            self._update_claim(cursor, claim)
        return granted

    def _grant(
        self,
        cursor,
        kind: TargetKind,
        target_id: UUID,
        user_id: UUID,
        claim_id: UUID,
        at: datetime,
    ) -> Optional[ClaimableEntity]:
        cursor.execute(f"""
            UPDATE claimable_entities
            SET claimed_by = %s, claimed_at = %s, claimed_via = %s
            WHERE kind = %s AND id = %s AND claimed_by IS NULL
            RETURNING {_TARGET_COLUMNS}
        """, (str(user_id), at, str(claim_id), kind.value, str(target_id)))
        row = cursor.fetchone()
        if row is None:
            cursor.execute(
                f"SELECT {_TARGET_COLUMNS} FROM claimable_entities"
                " WHERE kind = %s AND id = %s FOR UPDATE",
                (kind.value, str(target_id)),
            )
            row = cursor.fetchone()
            if row is None:
                raise StoreError(f"No {kind.value} with id {target_id}")
        entity = self._row_to_target(row)
        return entity if entity.claimed_by == user_id else None

    # -- claims -----------------------------------------------------

    @staticmethod
    def _claim_params(claim: Claim) -> tuple:
        return (
            str(claim.id),
            str(claim.user_id),
            str(claim.institution_id) if claim.institution_id else None,
            str(claim.group_id) if claim.group_id else None,
            claim.status.value,
            claim.created_at,
            Json(claim.model_dump(mode="json")),
        )

    def get_claim(self, claim_id: UUID) -> Optional[Claim]:
        with self._cursor() as cursor:
            cursor.execute("SELECT body FROM claims WHERE id = %s", (str(claim_id),))
            row = cursor.fetchone()
        return Claim.model_validate(_load_json(row[0])) if row else None

    def insert_claim(self, claim: Claim) -> Claim:
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT INTO claims (id, user_id, institution_id, group_id, status, created_at, body)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
            """, self._claim_params(claim))
        return claim

    def save_claim(self, claim: Claim) -> Claim:
        with self._cursor() as cursor:
            self._update_claim(cursor, claim)
        return claim

    @staticmethod
    def _update_claim(cursor, claim: Claim) -> None:
        cursor.execute(
            "UPDATE claims SET status = %s, body = %s WHERE id = %s",
            (claim.status.value, Json(claim.model_dump(mode="json")), str(claim.id)),
        )
        if cursor.rowcount != 1:
            raise StoreError(f"Claim {claim.id} does not exist")

    def delete_claim(self, claim_id: UUID) -> None:
        # Messages and document records go with it (ON DELETE CASCADE)
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM claims WHERE id = %s", (str(claim_id),))

    def list_claims_for_user(self, user_id: UUID) -> list[Claim]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT body FROM claims WHERE user_id = %s ORDER BY created_at DESC",
                (str(user_id),),
            )
            rows = cursor.fetchall()
        return [Claim.model_validate(_load_json(r[0])) for r in rows]

    def list_claims(self, status: Optional[ClaimStatus] = None) -> list[Claim]:
        with self._cursor() as cursor:
            if status is None:
                cursor.execute("SELECT body FROM claims ORDER BY status, created_at DESC")
            else:
                cursor.execute(
                    "SELECT body FROM claims WHERE status = %s ORDER BY created_at DESC",
                    (ClaimStatus(status).value,),
                )
            rows = cursor.fetchall()
        return [Claim.model_validate(_load_json(r[0])) for r in rows]

    def find_active_claim(self, user_id: UUID, target: ClaimTarget) -> Optional[Claim]:
        column = "institution_id" if target.kind == TargetKind.INSTITUTION else "group_id"
        with self._cursor() as cursor:
            cursor.execute(f"""
                SELECT body FROM claims
                WHERE user_id = %s AND {column} = %s AND status = ANY(%s)
                LIMIT 1
            """, (str(user_id), str(target.id), [s.value for s in ACTIVE_STATUSES]))
            row = cursor.fetchone()
        return Claim.model_validate(_load_json(row[0])) if row else None

    def count_claims(self) -> int:
        with self._cursor() as cursor:
            cursor.execute("SELECT COUNT(*) FROM claims")
            return cursor.fetchone()[0]

    # -- messages ---------------------------------------------------

    def add_message(self, message: ClaimMessage) -> ClaimMessage:
        with self._cursor() as cursor:
            cursor.execute(
                "INSERT INTO claim_messages (id, claim_id, body) VALUES (%s, %s, %s)",
                (str(message.id), str(message.claim_id), Json(message.model_dump(mode="json"))),
            )
        return message

    def get_message(self, message_id: UUID) -> Optional[ClaimMessage]:
        with self._cursor() as cursor:
            cursor.execute("SELECT body FROM claim_messages WHERE id = %s", (str(message_id),))
            row = cursor.fetchone()
        return ClaimMessage.model_validate(_load_json(row[0])) if row else None

    def list_messages(self, claim_id: UUID) -> list[ClaimMessage]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT body FROM claim_messages WHERE claim_id = %s ORDER BY seq",
                (str(claim_id),),
            )
            rows = cursor.fetchall()
        return [ClaimMessage.model_validate(_load_json(r[0])) for r in rows]

    # -- documents --------------------------------------------------

    def get_document(self, document_id: UUID) -> Optional[DocumentApproval]:
        with self._cursor() as cursor:
            cursor.execute("SELECT body FROM document_approvals WHERE id = %s", (str(document_id),))
            row = cursor.fetchone()
        return DocumentApproval.model_validate(_load_json(row[0])) if row else None

    def list_documents(self, claim_id: UUID) -> list[DocumentApproval]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT body FROM document_approvals WHERE claim_id = %s ORDER BY seq",
                (str(claim_id),),
            )
            rows = cursor.fetchall()
        return [DocumentApproval.model_validate(_load_json(r[0])) for r in rows]

    def add_documents(self, documents: Iterable[DocumentApproval]) -> None:
        documents = list(documents)
        if not documents:
            return
        with self._cursor() as cursor:
            for doc in documents:
                cursor.execute(
                    "INSERT INTO document_approvals (id, claim_id, body) VALUES (%s, %s, %s)",
                    (str(doc.id), str(doc.claim_id), Json(doc.model_dump(mode="json"))),
                )

    def save_document(self, document: DocumentApproval) -> DocumentApproval:
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE document_approvals SET body = %s WHERE id = %s",
                (Json(document.model_dump(mode="json")), str(document.id)),
            )
            if cursor.rowcount != 1:
                raise StoreError(f"Document {document.id} does not exist")
        return document

    def delete_documents(self, document_ids: Iterable[UUID]) -> None:
        ids = [str(i) for i in document_ids]
        if not ids:
            return
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM document_approvals WHERE id = ANY(%s::uuid[])", (ids,))


# ============================================================
# FACTORY
# ============================================================

def create_store() -> ClaimStore:
    """
    Create the ClaimStore the environment asks for.

    Returns:
        InMemoryClaimStore when no database is configured
        PostgresClaimStore when CLAIMFLOW_STORE_DRIVER / DATABASE_URL say so
    """
    driver = get_store_driver()

    if driver == StoreDriver.MEMORY:
        logger.info("Using in-memory claim store (no persistence)")
        return InMemoryClaimStore()

    config = get_database_config()
    if config is None:
        raise StoreError(
            f"CLAIMFLOW_STORE_DRIVER is {driver.value} but no database is configured. "
            "Set DATABASE_URL or DATABASE_HOST."
        )

    store = PostgresClaimStore.from_config(config)
    logger.info(
        "Using PostgreSQL claim store",
        host=config.host,
        port=config.port,
        database=config.database,
    )
    return store
