# Stratus Activity Log: append-only, tamper-evident audit trail
#
# Every billing charge, suspension request, instance lifecycle change and
# SSH key sync outcome is recorded as an immutable event. Each event carries
# the SHA-256 hash of its predecessor, so replaying the chain detects any
# modification of history.
#
# record_activity() is the fire-and-forget entry point used by the core:
# a failing audit write is logged and never propagates to the caller.

import hashlib
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

from db import Database, get_db

log = logging.getLogger("stratus")


class EventType(str, Enum):
    # Resource lifecycle
    INSTANCE_CREATED = "instance.created"
    INSTANCE_ACTION = "instance.action"
    INSTANCE_STATUS_CHANGED = "instance.status_changed"
    INSTANCE_SUSPENSION_REQUESTED = "instance.suspension_requested"

    # Billing
    BILLING_CHARGED = "billing.charged"
    BILLING_PARTIAL_CHARGE = "billing.partial_charge"
    BILLING_PASS_COMPLETED = "billing.pass_completed"
    BILLING_PASS_FAILED = "billing.pass_failed"
    WALLET_CREDITED = "wallet.credited"

    # Credentials
    CREDENTIAL_ADDED = "credential.added"
    CREDENTIAL_SYNC_PARTIAL = "credential.sync_partial"
    CREDENTIAL_DELETED = "credential.deleted"

    # Catalog
    PROVIDER_UPDATED = "provider.updated"


class ActivityStatus(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    INFO = "info"


@dataclass
class Event:
    """Immutable activity record.

    prev_hash is the event_hash of the preceding event; event_hash covers
    every field except itself.
    """
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    seq: int = 0
    event_type: str = ""
    entity_type: str = ""      # "instance", "wallet", "ssh_key", "billing", "provider"
    entity_id: str = ""
    actor: str = "system"      # "billing:<driver>", "user:<user_id>", "system"
    organization_id: str = ""
    user_id: str = ""
    status: str = ActivityStatus.INFO.value
    message: str = ""
    data: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    prev_hash: str = ""
    event_hash: str = ""

    def compute_hash(self) -> str:
        canonical = json.dumps({
            "event_id": self.event_id,
            "seq": self.seq,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor": self.actor,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "status": self.status,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp,
            "prev_hash": self.prev_hash,
        }, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict:
        return asdict(self)


def _row_to_event(db: Database, r) -> Event:
    return Event(
        event_id=r["event_id"],
        seq=int(r["seq"]),
        event_type=r["event_type"],
        entity_type=r["entity_type"],
        entity_id=r["entity_id"],
        actor=r["actor"],
        organization_id=r["organization_id"],
        user_id=r["user_id"],
        status=r["status"],
        message=r["message"],
        data=db.decode_json(r["data"], {}),
        timestamp=float(r["timestamp"]),
        prev_hash=r["prev_hash"] or "",
        event_hash=r["event_hash"] or "",
    )


# ── Event Store ───────────────────────────────────────────────────────


class EventStore:
    """Append-only activity store on the shared database."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_db()

    def append(self, event: Event) -> Event:
        """Append an event, linking it to the current chain head."""
        # Stringify enums and Decimals so the stored JSON matches the hashed form
        event.event_type = getattr(event.event_type, "value", event.event_type)
        event.status = getattr(event.status, "value", event.status)
        event.data = json.loads(json.dumps(event.data, default=str))
        with self.db.transaction() as conn:
            if self.db.is_postgres:
                conn.execute("SELECT pg_advisory_xact_lock(727001)")
            row = conn.execute(
                "SELECT seq, event_hash FROM activity_events ORDER BY seq DESC LIMIT 1"
            ).fetchone()
            event.seq = (int(row["seq"]) + 1) if row else 1
            event.prev_hash = row["event_hash"] if row and row["event_hash"] else ""
            event.event_hash = event.compute_hash()

            conn.execute(
                """INSERT INTO activity_events
                   (event_id, seq, event_type, entity_type, entity_id, actor,
                    organization_id, user_id, status, message, data,
                    timestamp, prev_hash, event_hash)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event.event_id, event.seq, event.event_type,
                    event.entity_type, event.entity_id, event.actor,
                    event.organization_id, event.user_id, event.status,
                    event.message, self.db.encode_json(event.data),
                    event.timestamp, event.prev_hash, event.event_hash,
                ),
            )
        return event

    def verify_chain(self, limit: int = 0) -> dict:
        """Replay the hash chain.

        Returns {"valid": bool, "events_checked": int, "broken_at": event_id or None}.
        """
        query = "SELECT * FROM activity_events ORDER BY seq ASC"
        params: tuple = ()
        if limit > 0:
            query += " LIMIT ?"
            params = (limit,)
        with self.db.connection() as conn:
            rows = conn.execute(query, params).fetchall()

        prev_hash = ""
        for i, row in enumerate(rows):
            evt = _row_to_event(self.db, row)
            if evt.prev_hash != prev_hash:
                return {
                    "valid": False,
                    "events_checked": i + 1,
                    "broken_at": evt.event_id,
                    "reason": f"prev_hash mismatch at event {evt.event_id}",
                }
            if evt.compute_hash() != evt.event_hash:
                return {
                    "valid": False,
                    "events_checked": i + 1,
                    "broken_at": evt.event_id,
                    "reason": f"event_hash tampered at event {evt.event_id}",
                }
            prev_hash = evt.event_hash

        return {"valid": True, "events_checked": len(rows), "broken_at": None}

    def get_events(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        event_type: Optional[str] = None,
        organization_id: Optional[str] = None,
        since: Optional[float] = None,
        limit: int = 1000,
    ) -> list[Event]:
        """Query events with optional filters, oldest first."""
        clauses = []
        params = []
        if entity_type:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        if event_type:
            clauses.append("event_type = ?")
            params.append(getattr(event_type, "value", event_type))
        if organization_id:
            clauses.append("organization_id = ?")
            params.append(organization_id)
        if since:
            clauses.append("timestamp >= ?")
            params.append(since)

        where = " AND ".join(clauses) if clauses else "1=1"
        params.append(limit)

        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM activity_events WHERE {where} ORDER BY seq ASC LIMIT ?",
                params,
            ).fetchall()
        return [_row_to_event(self.db, r) for r in rows]

    def get_entity_history(self, entity_type: str, entity_id: str) -> list[Event]:
        return self.get_events(entity_type=entity_type, entity_id=entity_id, limit=10000)


# ── Fire-and-forget sink ─────────────────────────────────────────────


def record_activity(
    event_type,
    *,
    entity_type: str = "",
    entity_id: str = "",
    message: str = "",
    status=ActivityStatus.INFO,
    actor: str = "system",
    organization_id: str = "",
    user_id: str = "",
    data: Optional[dict] = None,
    db: Optional[Database] = None,
) -> Optional[Event]:
    """Append an activity event. Never raises; returns None if the write failed."""
    try:
        return EventStore(db).append(Event(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=str(entity_id or ""),
            actor=actor,
            organization_id=organization_id or "",
            user_id=user_id or "",
            status=status,
            message=message,
            data=data or {},
        ))
    except Exception as e:
        log.warning("ACTIVITY LOG write failed (%s %s): %s",
                    getattr(event_type, "value", event_type), entity_id, e)
        return None
