"""
Audit Log

Append-only, hash-chained trail attached to every claim.

There is no update and no delete here. The only way to change a log is
to get a longer one back from append_entry().
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from ..schemas import AuditLogEntry, ClaimStatus
from .hasher import HASHED_FIELDS, Hasher


def entry_content(entry: AuditLogEntry) -> dict:
    """The part of an entry covered by its hash."""
    return {name: getattr(entry, name) for name in HASHED_FIELDS}


def new_entry(
    log: tuple[AuditLogEntry, ...],
    *,
    user_id: UUID,
    user_name: str,
    action: str,
    from_status: Optional[ClaimStatus] = None,
    to_status: Optional[ClaimStatus] = None,
    note: Optional[str] = None,
    at: Optional[datetime] = None,
) -> AuditLogEntry:
    """Build the next entry for `log`, linked to its current head."""
    previous_hash = log[-1].entry_hash if log else None
    content = {
        "timestamp": at or datetime.now(timezone.utc),
        "user_id": user_id,
        "user_name": user_name,
        "action": action,
        "from_status": from_status,
        "to_status": to_status,
        "note": note,
    }
    return AuditLogEntry(
        **content,
        previous_hash=previous_hash,
        entry_hash=Hasher.hash_entry(content, previous_hash),
    )


def append_entry(log: tuple[AuditLogEntry, ...], entry: AuditLogEntry) -> tuple[AuditLogEntry, ...]:
    """
    Return a new log with `entry` at the end.

    Refuses entries that were built against a different head, so two
    writers racing on stale copies cannot both land.
    """
    head = log[-1].entry_hash if log else None
    if entry.previous_hash != head:
        raise ValueError(
            "Audit entry does not link to the current head of the log. "
            "Entries cannot be inserted out of order."
        )
    return (*log, entry)


def record(log: tuple[AuditLogEntry, ...], **fields) -> tuple[AuditLogEntry, ...]:
    """Build and append in one step."""
    return append_entry(log, new_entry(log, **fields))


def verify_chain(log: tuple[AuditLogEntry, ...]) -> bool:
    """Re-derive every hash and check every link."""
    return first_broken_index(log) is None


def first_broken_index(log: tuple[AuditLogEntry, ...]) -> Optional[int]:
    """Index of the first entry whose hash or link does not verify."""
    previous_hash = None
    for i, entry in enumerate(log):
        if entry.previous_hash != previous_hash:
            return i
        if not Hasher.matches(entry_content(entry), entry.entry_hash, previous_hash):
            return i
        previous_hash = entry.entry_hash
    return None
