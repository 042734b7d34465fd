# Stratus Billing Driver Coordination
#
# Two drivers can run billing passes: the standalone daemon (billing_daemon.py)
# and the in-process fallback (scheduler.BuiltinBillingDriver). Each upserts
# its own billing_daemon_status row. The in-process driver only reads daemon
# rows: if any non-stopped daemon heartbeat is newer than the stale threshold
# it defers, otherwise it bills. Rows are written without locking; readers
# tolerate slightly stale values.

import logging
import os
import platform
import socket
import time
from enum import Enum
from typing import Optional

from db import Database, get_db, to_money

log = logging.getLogger("stratus.billing")

DAEMON_STALE_AFTER_SEC = int(os.environ.get("STRATUS_DAEMON_STALE_AFTER_SEC", str(90 * 60)))
BILLING_INTERVAL_MINUTES = int(os.environ.get("STRATUS_BILLING_INTERVAL_MINUTES", "60"))


class DriverKind(str, Enum):
    DAEMON = "daemon"
    BUILTIN = "builtin"


class DriverState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


def default_driver_id(kind: DriverKind = DriverKind.DAEMON) -> str:
    base = f"{socket.gethostname()}-{os.getpid()}"
    return base if kind == DriverKind.DAEMON else f"builtin-{base}"


def default_metadata(interval_minutes: int) -> dict:
    return {
        "hostname": socket.gethostname(),
        "pid": os.getpid(),
        "interval_minutes": interval_minutes,
        "python": platform.python_version(),
    }


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(ts))


class DaemonStatusService:
    def __init__(self, db: Optional[Database] = None,
                 stale_after_sec: Optional[int] = None,
                 interval_minutes: Optional[int] = None):
        self.db = db or get_db()
        self.stale_after_sec = DAEMON_STALE_AFTER_SEC if stale_after_sec is None else stale_after_sec
        self.interval_minutes = (BILLING_INTERVAL_MINUTES if interval_minutes is None
                                 else interval_minutes)

    # ── Writers (each driver only writes its own row) ─────────────────

    def initialize(self, driver_id: str, kind: DriverKind = DriverKind.DAEMON,
                   metadata: Optional[dict] = None, now: Optional[float] = None):
        now = time.time() if now is None else now
        meta = metadata if metadata is not None else default_metadata(self.interval_minutes)
        with self.db.transaction() as conn:
            conn.execute(
                """INSERT INTO billing_daemon_status
                   (daemon_instance_id, driver_kind, status, started_at,
                    heartbeat_at, metadata, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(daemon_instance_id) DO UPDATE SET
                       driver_kind = excluded.driver_kind,
                       status = excluded.status,
                       started_at = excluded.started_at,
                       heartbeat_at = excluded.heartbeat_at,
                       error_message = NULL,
                       metadata = excluded.metadata,
                       updated_at = excluded.updated_at""",
                (driver_id, DriverKind(kind).value, DriverState.RUNNING.value,
                 now, now, self.db.encode_json(meta), now),
            )
        log.info("DRIVER %s (%s) registered", driver_id, DriverKind(kind).value)

    def heartbeat(self, driver_id: str, kind: DriverKind = DriverKind.DAEMON,
                  now: Optional[float] = None):
        now = time.time() if now is None else now
        with self.db.transaction() as conn:
            cur = conn.execute(
                """UPDATE billing_daemon_status
                   SET heartbeat_at = ?, status = ?, updated_at = ?
                   WHERE daemon_instance_id = ?""",
                (now, DriverState.RUNNING.value, now, driver_id),
            )
            updated = cur.rowcount
        if not updated:
            self.initialize(driver_id, kind, now=now)

    def record_run(self, driver_id: str, result=None, error: Optional[str] = None,
                   now: Optional[float] = None):
        """Store the outcome of a pass. ``result`` is a BillingPassResult."""
        now = time.time() if now is None else now
        success = error is None and (result is None or result.success)
        if result is not None:
            billed, amount, hours = result.instances_billed, result.total_amount, result.total_hours
            if error is None and result.errors:
                error = "; ".join(result.errors)[:1000]
        else:
            billed, amount, hours = 0, 0, 0
        with self.db.transaction() as conn:
            conn.execute(
                """UPDATE billing_daemon_status
                   SET last_run_at = ?, last_run_success = ?, instances_billed = ?,
                       total_amount = ?, total_hours = ?, error_message = ?,
                       status = ?, heartbeat_at = ?, updated_at = ?,
                       run_count = run_count + 1,
                       failed_run_count = failed_run_count + ?
                   WHERE daemon_instance_id = ?""",
                (now, self.db.encode_bool(success), billed,
                 self.db.encode_money(amount), int(hours), error,
                 DriverState.RUNNING.value if success else DriverState.ERROR.value,
                 now, now, 0 if success else 1, driver_id),
            )
        from events import ActivityStatus, EventType, record_activity
        record_activity(
            EventType.BILLING_PASS_COMPLETED if success else EventType.BILLING_PASS_FAILED,
            entity_type="billing_driver", entity_id=driver_id,
            status=ActivityStatus.SUCCESS if success else ActivityStatus.ERROR,
            message=(f"Billing pass: {billed} billed, ${to_money(amount)}" if success
                     else f"Billing pass failed: {error}"),
            data={"instances_billed": billed, "total_amount": str(to_money(amount)),
                  "total_hours": int(hours), "error": error},
            db=self.db,
        )

    def mark_stopped(self, driver_id: str, now: Optional[float] = None):
        now = time.time() if now is None else now
        with self.db.transaction() as conn:
            conn.execute(
                """UPDATE billing_daemon_status SET status = ?, updated_at = ?
                   WHERE daemon_instance_id = ?""",
                (DriverState.STOPPED.value, now, driver_id),
            )
        log.info("DRIVER %s stopped", driver_id)

    # ── Readers ───────────────────────────────────────────────────────

    def _latest_row(self, kind: Optional[DriverKind] = DriverKind.DAEMON, live_only: bool = False):
        sql = "SELECT * FROM billing_daemon_status WHERE 1=1"
        params: tuple = ()
        if kind is not None:
            sql += " AND driver_kind = ?"
            params += (DriverKind(kind).value,)
        if live_only:
            sql += " AND status <> ? AND heartbeat_at IS NOT NULL"
            params += (DriverState.STOPPED.value,)
        sql += " ORDER BY heartbeat_at DESC, updated_at DESC LIMIT 1"
        with self.db.connection() as conn:
            return conn.execute(sql, params).fetchone()

    def get_row(self, driver_id: str) -> Optional[dict]:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM billing_daemon_status WHERE daemon_instance_id = ?",
                (driver_id,),
            ).fetchone()
        return dict(row) if row else None

    def _row_is_active(self, row, now: float) -> bool:
        if row is None or row["heartbeat_at"] is None:
            return False
        if row["status"] == DriverState.STOPPED.value:
            return False
        return now - float(row["heartbeat_at"]) < self.stale_after_sec

    def is_daemon_active(self, now: Optional[float] = None) -> bool:
        """True when some standalone daemon has heartbeated within the threshold."""
        now = time.time() if now is None else now
        return self._row_is_active(self._latest_row(DriverKind.DAEMON, live_only=True), now)

    def should_run_builtin_billing(self, now: Optional[float] = None) -> bool:
        return not self.is_daemon_active(now)

    def _warning_threshold_exceeded(self, row, now: float) -> bool:
        if row["heartbeat_at"] is None and row["last_run_at"] is None:
            return True
        if row["heartbeat_at"] is not None and now - float(row["heartbeat_at"]) >= self.stale_after_sec:
            return True
        if row["last_run_at"] is not None and now - float(row["last_run_at"]) >= self.stale_after_sec:
            return True
        return False

    def get_status(self, now: Optional[float] = None) -> dict:
        """Observability view of the standalone daemon.

        Also reports whether the in-process fallback is currently expected
        to be billing.
        """
        now = time.time() if now is None else now
        # A stopped row with a newer heartbeat must not hide a live daemon
        row = (self._latest_row(DriverKind.DAEMON, live_only=True)
               or self._latest_row(DriverKind.DAEMON))
        builtin = self._latest_row(DriverKind.BUILTIN)
        builtin_info = None
        if builtin is not None:
            builtin_info = {
                "driver_id": builtin["daemon_instance_id"],
                "last_run_at": _iso(builtin["last_run_at"]),
                "last_run_success": (bool(builtin["last_run_success"])
                                     if builtin["last_run_success"] is not None else None),
            }

        if row is None:
            return {
                "status": "unknown",
                "daemon_instance_id": None,
                "last_run": None,
                "last_run_success": False,
                "instances_billed": 0,
                "total_amount": "0.0000",
                "total_hours": 0,
                "next_scheduled_run": None,
                "uptime_minutes": None,
                "is_stale": True,
                "warning_threshold_exceeded": True,
                "error_message": None,
                "builtin_fallback_active": True,
                "builtin": builtin_info,
            }

        active = self._row_is_active(row, now)
        uptime = None
        if active and row["started_at"] is not None:
            uptime = int((now - float(row["started_at"])) // 60)
        next_run = None
        if active and row["last_run_at"] is not None:
            next_run = _iso(float(row["last_run_at"]) + self.interval_minutes * 60)

        return {
            "status": row["status"] if active else DriverState.STOPPED.value,
            "daemon_instance_id": row["daemon_instance_id"],
            "last_run": _iso(row["last_run_at"]),
            "last_run_success": bool(row["last_run_success"]) if row["last_run_success"] is not None else False,
            "instances_billed": int(row["instances_billed"] or 0),
            "total_amount": str(to_money(row["total_amount"])),
            "total_hours": int(row["total_hours"] or 0),
            "heartbeat_at": _iso(row["heartbeat_at"]),
            "next_scheduled_run": next_run,
            "uptime_minutes": uptime,
            "is_stale": not active,
            "warning_threshold_exceeded": self._warning_threshold_exceeded(row, now),
            "error_message": row["error_message"],
            "builtin_fallback_active": not active,
            "builtin": builtin_info,
        }

    def get_metrics(self) -> dict:
        """Aggregate run counters across every driver row."""
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM billing_daemon_status WHERE last_run_at IS NOT NULL"
            ).fetchall()
        total_runs = sum(int(r["run_count"] or 0) for r in rows)
        failed = sum(int(r["failed_run_count"] or 0) for r in rows)
        return {
            "drivers": len(rows),
            "total_runs": total_runs,
            "successful_runs": total_runs - failed,
            "failed_runs": failed,
            "last_run_instances_billed": sum(int(r["instances_billed"] or 0) for r in rows),
            "last_run_amount_billed": str(to_money(sum(to_money(r["total_amount"]) for r in rows))),
        }
