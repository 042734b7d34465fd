# Stratus Resource Instance Store
#
# Instance lifecycle:  provisioning → running ⇄ stopped → deleted
#                      error is reachable from every non-deleted state
#
# Status changes are only applied from confirmed upstream state. The one
# optimistic write is "provisioning" at creation time. last_billed_at is the
# billing checkpoint and is only ever moved forward by the billing engine.

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

from db import Database, get_db
from errors import InvalidTransition, NotFound

log = logging.getLogger("stratus")


class InstanceStatus(str, Enum):
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    DELETED = "deleted"
    ERROR = "error"


BILLABLE_STATES = frozenset({InstanceStatus.RUNNING, InstanceStatus.STOPPED})

VALID_TRANSITIONS = {
    InstanceStatus.PROVISIONING: {InstanceStatus.RUNNING, InstanceStatus.STOPPED,
                                  InstanceStatus.ERROR, InstanceStatus.DELETED},
    InstanceStatus.RUNNING:      {InstanceStatus.STOPPED, InstanceStatus.ERROR,
                                  InstanceStatus.DELETED},
    InstanceStatus.STOPPED:      {InstanceStatus.RUNNING, InstanceStatus.ERROR,
                                  InstanceStatus.DELETED},
    InstanceStatus.ERROR:        {InstanceStatus.RUNNING, InstanceStatus.STOPPED,
                                  InstanceStatus.DELETED},
    InstanceStatus.DELETED:      set(),  # Terminal
}


def can_transition(current, target) -> bool:
    current, target = InstanceStatus(current), InstanceStatus(target)
    return current == target or target in VALID_TRANSITIONS[current]


@dataclass
class ResourceInstance:
    instance_id: str = field(default_factory=lambda: f"vps-{uuid.uuid4().hex[:12]}")
    organization_id: str = ""
    provider_id: str = ""
    external_id: str = ""
    plan_id: str = ""
    label: str = ""
    region: str = ""
    status: str = InstanceStatus.PROVISIONING.value
    ipv4: list = field(default_factory=list)
    ipv6: str = ""
    created_at: float = field(default_factory=time.time)
    last_billed_at: float = 0.0
    updated_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.last_billed_at == 0.0:
            self.last_billed_at = self.created_at

    def to_dict(self) -> dict:
        return asdict(self)


def row_to_instance(db: Database, r) -> ResourceInstance:
    return ResourceInstance(
        instance_id=r["instance_id"],
        organization_id=r["organization_id"],
        provider_id=r["provider_id"],
        external_id=r["external_id"],
        plan_id=r["plan_id"],
        label=r["label"],
        region=r["region"],
        status=r["status"],
        ipv4=db.decode_json(r["ipv4"], []),
        ipv6=r["ipv6"] or "",
        created_at=float(r["created_at"]),
        last_billed_at=float(r["last_billed_at"]),
        updated_at=float(r["updated_at"]),
    )


class InstanceStore:
    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_db()

    def insert(self, inst: ResourceInstance) -> ResourceInstance:
        with self.db.transaction() as conn:
            conn.execute(
                """INSERT INTO resource_instances
                   (instance_id, organization_id, provider_id, external_id,
                    plan_id, label, region, status, ipv4, ipv6,
                    created_at, last_billed_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (inst.instance_id, inst.organization_id, inst.provider_id,
                 inst.external_id, inst.plan_id, inst.label, inst.region,
                 inst.status, self.db.encode_json(inst.ipv4), inst.ipv6,
                 inst.created_at, inst.last_billed_at, inst.updated_at),
            )
        log.info("INSTANCE %s recorded provider=%s external=%s status=%s",
                 inst.instance_id, inst.provider_id, inst.external_id, inst.status)
        return inst

    def get(self, instance_id: str) -> Optional[ResourceInstance]:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM resource_instances WHERE instance_id = ?", (instance_id,)
            ).fetchone()
        return row_to_instance(self.db, row) if row else None

    def require(self, instance_id: str) -> ResourceInstance:
        inst = self.get(instance_id)
        if inst is None:
            raise NotFound(f"Instance not found: {instance_id}")
        return inst

    def get_by_external(self, provider_id: str, external_id: str) -> Optional[ResourceInstance]:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM resource_instances WHERE provider_id = ? AND external_id = ?",
                (provider_id, str(external_id)),
            ).fetchone()
        return row_to_instance(self.db, row) if row else None

    def list_instances(self, organization_id: Optional[str] = None,
                       provider_id: Optional[str] = None,
                       include_deleted: bool = False) -> list[ResourceInstance]:
        clauses, params = [], []
        if organization_id:
            clauses.append("organization_id = ?")
            params.append(organization_id)
        if provider_id:
            clauses.append("provider_id = ?")
            params.append(provider_id)
        if not include_deleted:
            clauses.append("status <> ?")
            params.append(InstanceStatus.DELETED.value)
        where = " AND ".join(clauses) if clauses else "1=1"
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM resource_instances WHERE {where} "
                "ORDER BY created_at ASC, instance_id ASC",
                params,
            ).fetchall()
        return [row_to_instance(self.db, r) for r in rows]

    def list_billable(self, cutoff: float) -> list[ResourceInstance]:
        """Instances in a billable state whose checkpoint is at or before cutoff."""
        states = [s.value for s in BILLABLE_STATES]
        with self.db.connection() as conn:
            rows = conn.execute(
                f"""SELECT * FROM resource_instances
                    WHERE status IN ({", ".join("?" for _ in states)})
                      AND last_billed_at <= ?
                    ORDER BY last_billed_at ASC, instance_id ASC""",
                (*sorted(states), cutoff),
            ).fetchall()
        return [row_to_instance(self.db, r) for r in rows]

    def apply_status(self, instance_id: str, new_status, *,
                     ipv4: Optional[list] = None, ipv6: Optional[str] = None) -> tuple[ResourceInstance, bool]:
        """Apply a confirmed upstream status. Returns (instance, changed).

        Raises InvalidTransition for moves the state machine forbids
        (anything out of deleted).
        """
        new_status = InstanceStatus(new_status)
        with self.db.transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM resource_instances WHERE instance_id = ?{self.db.for_update}",
                (instance_id,),
            ).fetchone()
            if row is None:
                raise NotFound(f"Instance not found: {instance_id}")
            inst = row_to_instance(self.db, row)
            if not can_transition(inst.status, new_status):
                raise InvalidTransition(
                    f"Invalid transition {inst.status} → {new_status.value} for {instance_id}"
                )
            changed = inst.status != new_status.value
            inst.status = new_status.value
            if ipv4 is not None:
                inst.ipv4 = list(ipv4)
            if ipv6 is not None:
                inst.ipv6 = ipv6
            inst.updated_at = time.time()
            conn.execute(
                """UPDATE resource_instances
                   SET status = ?, ipv4 = ?, ipv6 = ?, updated_at = ?
                   WHERE instance_id = ?""",
                (inst.status, self.db.encode_json(inst.ipv4), inst.ipv6,
                 inst.updated_at, instance_id),
            )
        if changed:
            log.info("INSTANCE %s → %s", instance_id, inst.status)
        return inst, changed
