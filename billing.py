# Stratus Billing Reconciliation Engine
#
# Hourly usage billing against prepaid wallets. A pass:
#   1. selects running/stopped instances whose checkpoint (last_billed_at) is
#      at least the safety margin in the past,
#   2. per instance, in ONE transaction: re-reads and locks the checkpoint,
#      bills floor(elapsed / 1h) whole hours, writes the ledger entry and
#      advances the checkpoint by exactly the time that was paid for,
#   3. after commit, audits the charge and asks the lifecycle mutator to
#      suspend instances whose wallet ran dry.
#
# The checkpoint is the idempotency token: a crashed or concurrent pass
# re-derives the window from the persisted checkpoint, and the checkpoint
# update is a compare-and-set, so no hour is ever billed twice.
# Wallet balances never go negative: a short wallet is drained to zero and
# the checkpoint only moves forward by the whole seconds that balance covered.

import logging
import os
import time
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from typing import Callable, Optional

from catalog import row_to_plan
from db import Database, get_db, to_money
from errors import NotFound, StratusError
from events import ActivityStatus, EventType, record_activity
from instances import BILLABLE_STATES, InstanceStatus, InstanceStore, ResourceInstance, row_to_instance
from wallets import WalletLedger

log = logging.getLogger("stratus.billing")

SECONDS_PER_HOUR = 3600
BILLING_SAFETY_MARGIN_SEC = int(os.environ.get("STRATUS_BILLING_SAFETY_MARGIN_SEC", "300"))

Suspender = Callable[[ResourceInstance, str], bool]


class _CheckpointMoved(Exception):
    """Another pass advanced the checkpoint first; roll back and skip."""


@dataclass
class ChargeOutcome:
    instance_id: str
    organization_id: str
    hours: int = 0
    seconds_paid: int = 0
    rate: Decimal = Decimal("0")
    owed: Decimal = Decimal("0")
    charged: Decimal = Decimal("0")
    balance_after: Optional[Decimal] = None
    previous_checkpoint: float = 0.0
    new_checkpoint: float = 0.0
    tx_id: Optional[str] = None
    partial: bool = False
    suspend: bool = False

    def to_dict(self) -> dict:
        return {
            "instance_id": self.instance_id,
            "organization_id": self.organization_id,
            "hours": self.hours,
            "seconds_paid": self.seconds_paid,
            "rate": str(self.rate),
            "owed": str(self.owed),
            "charged": str(self.charged),
            "balance_after": str(self.balance_after) if self.balance_after is not None else None,
            "previous_checkpoint": self.previous_checkpoint,
            "new_checkpoint": self.new_checkpoint,
            "tx_id": self.tx_id,
            "partial": self.partial,
            "suspend": self.suspend,
        }


@dataclass
class BillingPassResult:
    started_at: float = field(default_factory=time.time)
    finished_at: float = 0.0
    instances_considered: int = 0
    instances_billed: int = 0
    total_amount: Decimal = Decimal("0.0000")
    total_hours: int = 0
    errors: list = field(default_factory=list)
    failed_instances: list = field(default_factory=list)
    suspensions: list = field(default_factory=list)
    charges: list = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed_instances

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "instances_considered": self.instances_considered,
            "instances_billed": self.instances_billed,
            "total_amount": str(to_money(self.total_amount)),
            "total_hours": self.total_hours,
            "errors": list(self.errors),
            "failed_instances": list(self.failed_instances),
            "suspensions": list(self.suspensions),
        }


def seconds_covered(balance: Decimal, rate: Decimal) -> int:
    """Whole seconds of usage a balance pays for at an hourly rate."""
    if rate <= 0:
        return 0
    return int((balance * SECONDS_PER_HOUR / rate).to_integral_value(rounding=ROUND_FLOOR))


class BillingEngine:
    def __init__(self, db: Optional[Database] = None,
                 suspender: Optional[Suspender] = None,
                 safety_margin_sec: Optional[int] = None):
        self.db = db or get_db()
        self.instances = InstanceStore(self.db)
        self.ledger = WalletLedger(self.db)
        self.safety_margin_sec = (BILLING_SAFETY_MARGIN_SEC if safety_margin_sec is None
                                  else safety_margin_sec)
        self._suspender = suspender

    def _suspend(self, inst: ResourceInstance, reason: str) -> bool:
        if self._suspender is None:
            from vps import InstanceService
            self._suspender = InstanceService(self.db).request_suspension
        try:
            return bool(self._suspender(inst, reason))
        except Exception as e:
            log.error("SUSPEND %s raised: %s", inst.instance_id, e)
            return False

    # ── Pass ──────────────────────────────────────────────────────────

    def run_billing_pass(self, now: Optional[float] = None) -> BillingPassResult:
        """Bill every eligible instance once. Safe to run concurrently or repeatedly.

        Per-instance failures are collected in the result. Database
        failures while selecting instances propagate to the caller.
        """
        now = time.time() if now is None else float(now)
        result = BillingPassResult(started_at=now)
        candidates = self.instances.list_billable(now - self.safety_margin_sec)
        result.instances_considered = len(candidates)
        log.info("BILLING PASS start: %d candidate instance(s)", len(candidates))

        for inst in candidates:
            try:
                outcome = self._bill_instance(inst.instance_id, now)
            except (StratusError, ArithmeticError, ValueError) as e:
                msg = getattr(e, "message", str(e))
                log.error("BILLING %s failed: %s", inst.instance_id, msg)
                result.failed_instances.append(inst.instance_id)
                result.errors.append(f"Error billing {inst.label or inst.instance_id}: {msg}")
                continue
            if outcome is None:
                continue

            result.charges.append(outcome)
            if outcome.charged > 0:
                result.instances_billed += 1
            result.total_amount = to_money(result.total_amount + outcome.charged)
            result.total_hours += outcome.seconds_paid // SECONDS_PER_HOUR
            self._audit_charge(outcome)

            if outcome.suspend:
                current = self.instances.get(outcome.instance_id) or inst
                if current.status == InstanceStatus.RUNNING.value:
                    reason = (f"Wallet {outcome.organization_id} exhausted: "
                              f"owed ${outcome.owed}, charged ${outcome.charged}")
                    self._suspend(current, reason)
                    result.suspensions.append(outcome.instance_id)
                else:
                    log.warning("FUNDS EXHAUSTED %s (already %s)",
                                outcome.instance_id, current.status)

        result.finished_at = time.time()
        log.info("BILLING PASS done: %d billed, %d failed, $%s total, %d suspension(s)",
                 result.instances_billed, len(result.failed_instances),
                 to_money(result.total_amount), len(result.suspensions))
        return result

    def _bill_instance(self, instance_id: str, now: float) -> Optional[ChargeOutcome]:
        try:
            return self._charge_in_tx(instance_id, now)
        except _CheckpointMoved:
            log.info("BILLING %s checkpoint already advanced — skipped", instance_id)
            return None

    def _charge_in_tx(self, instance_id: str, now: float) -> Optional[ChargeOutcome]:
        with self.db.transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM resource_instances WHERE instance_id = ?{self.db.for_update}",
                (instance_id,),
            ).fetchone()
            if row is None:
                return None
            inst = row_to_instance(self.db, row)
            if InstanceStatus(inst.status) not in BILLABLE_STATES:
                return None

            checkpoint = inst.last_billed_at
            hours = int((now - checkpoint) // SECONDS_PER_HOUR)
            if hours <= 0:
                return None

            plan_row = conn.execute(
                "SELECT * FROM plans WHERE plan_id = ?", (inst.plan_id,)
            ).fetchone()
            if plan_row is None:
                raise NotFound(f"plan {inst.plan_id} not found")
            rate = row_to_plan(plan_row).rate_for_status(inst.status)

            outcome = ChargeOutcome(
                instance_id=inst.instance_id,
                organization_id=inst.organization_id,
                hours=hours,
                rate=rate,
                owed=to_money(rate * hours),
                previous_checkpoint=checkpoint,
            )

            if rate <= 0:
                outcome.seconds_paid = hours * SECONDS_PER_HOUR
            else:
                wallet = self.ledger.lock_wallet(conn, inst.organization_id)
                if wallet is None:
                    raise NotFound(f"wallet for {inst.organization_id} not found")

                if wallet.balance >= outcome.owed:
                    outcome.charged = outcome.owed
                    outcome.seconds_paid = hours * SECONDS_PER_HOUR
                else:
                    outcome.partial = True
                    outcome.suspend = True
                    outcome.charged = wallet.balance
                    outcome.seconds_paid = min(seconds_covered(wallet.balance, rate),
                                               hours * SECONDS_PER_HOUR)

                if outcome.charged > 0:
                    paid_hours = Decimal(outcome.seconds_paid) / SECONDS_PER_HOUR
                    tx = self.ledger.debit_in_tx(
                        conn, wallet, outcome.charged,
                        description=(f"VPS {inst.label or inst.instance_id}: "
                                     f"{paid_hours.quantize(Decimal('0.01'))}h @ ${rate}/h"),
                        instance_id=inst.instance_id, hours=paid_hours, now=now,
                    )
                    outcome.tx_id = tx.tx_id
                outcome.balance_after = wallet.balance

            outcome.new_checkpoint = checkpoint + outcome.seconds_paid
            if outcome.seconds_paid > 0:
                cur = conn.execute(
                    """UPDATE resource_instances
                       SET last_billed_at = ?, updated_at = ?
                       WHERE instance_id = ? AND last_billed_at = ?""",
                    (outcome.new_checkpoint, now, instance_id, checkpoint),
                )
                if cur.rowcount != 1:
                    raise _CheckpointMoved(instance_id)

        if outcome.partial:
            log.warning("PARTIAL CHARGE %s org=%s -$%s of $%s (%ds paid) balance=$0",
                        instance_id, outcome.organization_id, outcome.charged,
                        outcome.owed, outcome.seconds_paid)
        elif outcome.charged > 0:
            log.info("CHARGE %s org=%s -$%s (%dh @ $%s/h) balance=$%s",
                     instance_id, outcome.organization_id, outcome.charged,
                     hours, rate, outcome.balance_after)
        return outcome

    def _audit_charge(self, o: ChargeOutcome):
        if o.charged <= 0 and not o.partial:
            return
        record_activity(
            EventType.BILLING_PARTIAL_CHARGE if o.partial else EventType.BILLING_CHARGED,
            entity_type="instance", entity_id=o.instance_id,
            organization_id=o.organization_id, actor="billing",
            status=ActivityStatus.WARNING if o.partial else ActivityStatus.SUCCESS,
            message=(f"Charged ${o.charged} of ${o.owed} owed — wallet exhausted"
                     if o.partial else f"Charged ${o.charged} for {o.hours}h"),
            data=o.to_dict(), db=self.db,
        )

    # ── Reporting ─────────────────────────────────────────────────────

    def burn_rate(self, organization_id: str) -> dict:
        """Current hourly spend of an organization and the hours its balance covers."""
        from catalog import CatalogStore

        catalog = CatalogStore(self.db)
        hourly = Decimal("0")
        count = 0
        for inst in self.instances.list_instances(organization_id=organization_id):
            if InstanceStatus(inst.status) not in BILLABLE_STATES:
                continue
            plan = catalog.get_plan(inst.plan_id)
            if plan is None:
                continue
            hourly += plan.rate_for_status(inst.status)
            count += 1
        balance = self.ledger.get_wallet(organization_id).balance
        hours_left = (balance / hourly).quantize(Decimal("0.01")) if hourly > 0 else None
        return {
            "organization_id": organization_id,
            "billable_instances": count,
            "hourly_rate": str(to_money(hourly)),
            "balance": str(balance),
            "hours_remaining": str(hours_left) if hours_left is not None else None,
        }


# ── Singleton ─────────────────────────────────────────────────────────

_billing_engine: Optional[BillingEngine] = None


def get_billing_engine() -> BillingEngine:
    global _billing_engine
    if _billing_engine is None:
        _billing_engine = BillingEngine()
    return _billing_engine
