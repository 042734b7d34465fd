# Stratus Provider & Plan Catalog
# Providers hold an encrypted upstream API token; plans hold the hourly
# price (upstream base cost + reseller markup) used by the billing engine.
# Deactivating a provider never touches its plans or instances.

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from credentials import decrypt_secret, encrypt_secret, mask_secret
from db import Database, get_db, to_money
from errors import NotFound, ProviderInactive, ProviderNotFound, ValidationError

log = logging.getLogger("stratus")


class ProviderKind(str, Enum):
    LINODE = "linode"
    DIGITALOCEAN = "digitalocean"


def parse_kind(value) -> ProviderKind:
    try:
        return ProviderKind(str(getattr(value, "value", value)).lower())
    except ValueError:
        raise ValidationError(f"Unsupported provider kind: {value}", field="kind")


@dataclass
class Provider:
    provider_id: str = field(default_factory=lambda: f"prov-{uuid.uuid4().hex[:10]}")
    name: str = ""
    kind: str = ProviderKind.LINODE.value
    api_token_encrypted: str = ""
    active: bool = True
    allowed_regions: list = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def api_token(self) -> str:
        return decrypt_secret(self.api_token_encrypted)

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_token_encrypted)

    def allows_region(self, region: str) -> bool:
        return not self.allowed_regions or region in self.allowed_regions

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("api_token_encrypted")
        d["has_credentials"] = self.has_credentials
        d["token_hint"] = mask_secret(self.api_token)
        return d


@dataclass
class Plan:
    plan_id: str = field(default_factory=lambda: f"plan-{uuid.uuid4().hex[:10]}")
    provider_id: str = ""
    upstream_plan_id: str = ""
    label: str = ""
    vcpus: int = 0
    memory_mb: int = 0
    disk_gb: int = 0
    transfer_gb: int = 0
    base_hourly: Decimal = Decimal("0.0000")
    markup_hourly: Decimal = Decimal("0.0000")
    # Fraction of the hourly rate charged while the instance is stopped.
    # Upstream providers keep billing powered-off servers, so the default is 1.
    stopped_rate_factor: Decimal = Decimal("1")
    active: bool = True
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def hourly_rate(self) -> Decimal:
        return to_money(self.base_hourly + self.markup_hourly)

    def rate_for_status(self, status: str) -> Decimal:
        if status == "stopped":
            return to_money(self.hourly_rate * self.stopped_rate_factor)
        return self.hourly_rate

    def to_dict(self) -> dict:
        d = asdict(self)
        for k in ("base_hourly", "markup_hourly", "stopped_rate_factor"):
            d[k] = str(d[k])
        d["hourly_rate"] = str(self.hourly_rate)
        return d


def _row_to_provider(db: Database, r) -> Provider:
    return Provider(
        provider_id=r["provider_id"],
        name=r["name"],
        kind=r["kind"],
        api_token_encrypted=r["api_token_encrypted"] or "",
        active=bool(r["active"]),
        allowed_regions=db.decode_json(r["allowed_regions"], []),
        created_at=float(r["created_at"]),
        updated_at=float(r["updated_at"]),
    )


def row_to_plan(r) -> Plan:
    return Plan(
        plan_id=r["plan_id"],
        provider_id=r["provider_id"],
        upstream_plan_id=r["upstream_plan_id"],
        label=r["label"],
        vcpus=int(r["vcpus"]),
        memory_mb=int(r["memory_mb"]),
        disk_gb=int(r["disk_gb"]),
        transfer_gb=int(r["transfer_gb"]),
        base_hourly=to_money(r["base_hourly"]),
        markup_hourly=to_money(r["markup_hourly"]),
        stopped_rate_factor=Decimal(str(r["stopped_rate_factor"])),
        active=bool(r["active"]),
        created_at=float(r["created_at"]),
        updated_at=float(r["updated_at"]),
    )


class CatalogStore:
    """CRUD over providers and plans."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_db()

    # ── Providers ─────────────────────────────────────────────────────

    def add_provider(self, name: str, kind, api_token: str = "",
                     active: bool = True, allowed_regions: Optional[list] = None) -> Provider:
        kind = parse_kind(kind)
        if not name.strip():
            raise ValidationError("Provider name is required", field="name")
        p = Provider(
            name=name.strip(),
            kind=kind.value,
            api_token_encrypted=encrypt_secret(api_token),
            active=active,
            allowed_regions=list(allowed_regions or []),
        )
        with self.db.transaction() as conn:
            conn.execute(
                """INSERT INTO providers
                   (provider_id, name, kind, api_token_encrypted, active,
                    allowed_regions, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (p.provider_id, p.name, p.kind, p.api_token_encrypted,
                 self.db.encode_bool(p.active),
                 self.db.encode_json(p.allowed_regions),
                 p.created_at, p.updated_at),
            )
        log.info("PROVIDER ADDED %s kind=%s name=%s", p.provider_id, p.kind, p.name)
        return p

    def get_provider(self, provider_id: str) -> Optional[Provider]:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM providers WHERE provider_id = ?", (provider_id,)
            ).fetchone()
        return _row_to_provider(self.db, row) if row else None

    def require_active_provider(self, provider_id: str) -> Provider:
        p = self.get_provider(provider_id)
        if p is None:
            raise ProviderNotFound(f"Provider not found: {provider_id}")
        if not p.active:
            raise ProviderInactive(f"Provider is not active: {p.name}", provider=p.kind)
        return p

    def list_providers(self, active_only: bool = False) -> list[Provider]:
        sql = "SELECT * FROM providers"
        params: tuple = ()
        if active_only:
            sql += " WHERE active = ?"
            params = (self.db.encode_bool(True),)
        sql += " ORDER BY created_at ASC, provider_id ASC"
        with self.db.connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_provider(self.db, r) for r in rows]

    def first_active_provider(self, kind) -> Optional[Provider]:
        """Oldest active provider of a kind; credential sync targets this one."""
        kind = parse_kind(kind)
        with self.db.connection() as conn:
            row = conn.execute(
                """SELECT * FROM providers WHERE kind = ? AND active = ?
                   ORDER BY created_at ASC, provider_id ASC LIMIT 1""",
                (kind.value, self.db.encode_bool(True)),
            ).fetchone()
        return _row_to_provider(self.db, row) if row else None

    def set_provider_active(self, provider_id: str, active: bool) -> Provider:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE providers SET active = ?, updated_at = ? WHERE provider_id = ?",
                (self.db.encode_bool(active), time.time(), provider_id),
            )
            if cur.rowcount == 0:
                raise ProviderNotFound(f"Provider not found: {provider_id}")
        log.info("PROVIDER %s %s", provider_id, "ACTIVATED" if active else "DEACTIVATED")
        return self.get_provider(provider_id)

    def set_provider_token(self, provider_id: str, api_token: str) -> Provider:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE providers SET api_token_encrypted = ?, updated_at = ? "
                "WHERE provider_id = ?",
                (encrypt_secret(api_token), time.time(), provider_id),
            )
            if cur.rowcount == 0:
                raise ProviderNotFound(f"Provider not found: {provider_id}")
        log.info("PROVIDER %s token rotated (%s)", provider_id, mask_secret(api_token))
        return self.get_provider(provider_id)

    # ── Plans ─────────────────────────────────────────────────────────

    def add_plan(self, provider_id: str, upstream_plan_id: str,
                 base_hourly, markup_hourly=0, label: str = "",
                 vcpus: int = 0, memory_mb: int = 0, disk_gb: int = 0,
                 transfer_gb: int = 0, stopped_rate_factor="1") -> Plan:
        if self.get_provider(provider_id) is None:
            raise ProviderNotFound(f"Provider not found: {provider_id}")
        base = to_money(base_hourly)
        markup = to_money(markup_hourly)
        if base < 0 or markup < 0:
            raise ValidationError("Plan prices must be non-negative", field="base_hourly")
        factor = Decimal(str(stopped_rate_factor))
        if not (Decimal("0") <= factor <= Decimal("1")):
            raise ValidationError("stopped_rate_factor must be between 0 and 1",
                                  field="stopped_rate_factor")
        plan = Plan(
            provider_id=provider_id,
            upstream_plan_id=upstream_plan_id,
            label=label or upstream_plan_id,
            vcpus=int(vcpus), memory_mb=int(memory_mb),
            disk_gb=int(disk_gb), transfer_gb=int(transfer_gb),
            base_hourly=base, markup_hourly=markup,
            stopped_rate_factor=factor,
        )
        with self.db.transaction() as conn:
            conn.execute(
                """INSERT INTO plans
                   (plan_id, provider_id, upstream_plan_id, label, vcpus,
                    memory_mb, disk_gb, transfer_gb, base_hourly,
                    markup_hourly, stopped_rate_factor, active,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (plan.plan_id, plan.provider_id, plan.upstream_plan_id,
                 plan.label, plan.vcpus, plan.memory_mb, plan.disk_gb,
                 plan.transfer_gb, self.db.encode_money(base),
                 self.db.encode_money(markup),
                 factor if self.db.is_postgres else str(factor),
                 self.db.encode_bool(True), plan.created_at, plan.updated_at),
            )
        log.info("PLAN ADDED %s provider=%s upstream=%s rate=$%s/h",
                 plan.plan_id, provider_id, upstream_plan_id, plan.hourly_rate)
        return plan

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM plans WHERE plan_id = ?", (plan_id,)).fetchone()
        return row_to_plan(row) if row else None

    def require_plan(self, plan_id: str) -> Plan:
        plan = self.get_plan(plan_id)
        if plan is None:
            raise NotFound(f"Plan not found: {plan_id}")
        return plan

    def list_plans(self, provider_id: Optional[str] = None) -> list[Plan]:
        sql = "SELECT * FROM plans"
        params: tuple = ()
        if provider_id:
            sql += " WHERE provider_id = ?"
            params = (provider_id,)
        sql += " ORDER BY created_at ASC, plan_id ASC"
        with self.db.connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [row_to_plan(r) for r in rows]

    def set_plan_active(self, plan_id: str, active: bool) -> Plan:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE plans SET active = ?, updated_at = ? WHERE plan_id = ?",
                (self.db.encode_bool(active), time.time(), plan_id),
            )
            if cur.rowcount == 0:
                raise NotFound(f"Plan not found: {plan_id}")
        return self.get_plan(plan_id)
