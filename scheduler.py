# Stratus in-process scheduler: the billing fallback driver and background monitors.
# Runs inside the API process. When a standalone billing daemon is
# heartbeating it stays out of the way; when the daemon goes quiet it bills.

import logging
import os
import threading
import time
from typing import Callable, Optional

from billing import BillingEngine
from daemon_status import DaemonStatusService, DriverKind, default_driver_id
from db import Database, get_db

LOG_FILE = os.environ.get(
    "STRATUS_LOG_FILE", os.path.join(os.path.dirname(__file__), "stratus.log")
)
BUILTIN_BILLING_ENABLED = os.environ.get("STRATUS_BUILTIN_BILLING", "1").lower() not in {
    "0", "false", "no", "off",
}
STATUS_SYNC_INTERVAL_SEC = int(os.environ.get("STRATUS_STATUS_SYNC_INTERVAL_SEC", "300"))

log = logging.getLogger("stratus")


# ── Logging ──────────────────────────────────────────────────────────


def setup_logging(log_file=None, level=logging.INFO):
    """Console + file handlers on the "stratus" logger. Idempotent."""
    log_file = log_file or LOG_FILE
    logger = logging.getLogger("stratus")

    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


# ── Built-in billing driver ──────────────────────────────────────────


class BuiltinBillingDriver:
    """Fallback billing driver.

    Each tick reads the daemon heartbeat first. A fresh heartbeat means the
    tick ends there, having written nothing. Otherwise the driver heartbeats
    its own row, runs one pass and records the outcome.
    """

    def __init__(self, db: Optional[Database] = None,
                 engine: Optional[BillingEngine] = None,
                 status: Optional[DaemonStatusService] = None,
                 driver_id: Optional[str] = None):
        self.db = db or get_db()
        self.engine = engine or BillingEngine(self.db)
        self.status = status or DaemonStatusService(self.db)
        self.driver_id = driver_id or default_driver_id(DriverKind.BUILTIN)
        self._registered = False

    def run_once(self, now: Optional[float] = None) -> Optional[dict]:
        """One tick. Returns the pass summary, or None when deferring to the daemon."""
        if not self.status.should_run_builtin_billing(now):
            log.info("BILLING DEFERRED to standalone daemon (heartbeat fresh)")
            return None

        if not self._registered:
            self.status.initialize(self.driver_id, DriverKind.BUILTIN, now=now)
            self._registered = True
        else:
            self.status.heartbeat(self.driver_id, DriverKind.BUILTIN, now=now)

        try:
            result = self.engine.run_billing_pass(now)
        except Exception as e:
            log.error("BILLING PASS FAILED (builtin): %s", e)
            self._record_failure(str(e), now)
            raise
        self.status.record_run(self.driver_id, result, now=now)
        return result.to_dict()

    def _record_failure(self, message: str, now: Optional[float]):
        try:
            self.status.record_run(self.driver_id, error=message, now=now)
        except Exception as e:
            log.error("Could not record billing failure for %s: %s", self.driver_id, e)


def billing_loop(driver: BuiltinBillingDriver, interval: int,
                 stop: Optional[threading.Event] = None,
                 callback: Optional[Callable] = None):
    """Tick the fallback driver every `interval` seconds until `stop` is set."""
    stop = stop or threading.Event()
    while not stop.is_set():
        try:
            summary = driver.run_once()
            if callback and summary is not None:
                callback(summary)
        except Exception as e:
            # Already recorded in billing_daemon_status; try again next tick
            log.error("Builtin billing tick failed: %s", e)
        stop.wait(interval)


def start_billing_monitor(interval=None, callback=None, driver=None, stop=None):
    """Start the fallback billing driver in a background thread. Fire and forget."""
    if interval is None:
        from daemon_status import BILLING_INTERVAL_MINUTES
        interval = BILLING_INTERVAL_MINUTES * 60
    driver = driver or BuiltinBillingDriver()
    t = threading.Thread(target=billing_loop, args=(driver, interval, stop, callback),
                         daemon=True, name="stratus-billing")
    t.start()
    log.info("Builtin billing monitor started (every %ss, driver=%s)", interval, driver.driver_id)
    return t


# ── Status sync ──────────────────────────────────────────────────────


def sync_all_providers(service=None, catalog=None) -> dict:
    """Pull confirmed upstream status for every instance of every active provider."""
    from catalog import CatalogStore
    from vps import InstanceService

    service = service or InstanceService()
    catalog = catalog or CatalogStore(service.db)
    summary = {}
    for provider in catalog.list_providers(active_only=True):
        summary[provider.provider_id] = service.sync_provider(provider.provider_id)
    return summary


def start_status_sync_monitor(interval=None, callback=None, stop=None):
    """Periodically reconcile local instance state with the providers."""
    interval = interval or STATUS_SYNC_INTERVAL_SEC
    stop = stop or threading.Event()

    def loop():
        while not stop.is_set():
            try:
                summary = sync_all_providers()
                if callback:
                    callback(summary)
            except Exception as e:
                log.error("Status sync failed: %s", e)
            stop.wait(interval)

    t = threading.Thread(target=loop, daemon=True, name="stratus-status-sync")
    t.start()
    return t


# ── Observability ────────────────────────────────────────────────────


def storage_healthcheck(db: Optional[Database] = None) -> dict:
    db = db or get_db()
    try:
        db.ping()
        return {"ok": True, "backend": db.backend}
    except Exception as exc:
        return {"ok": False, "backend": db.backend, "error": str(exc)}


def get_metrics_snapshot(db: Optional[Database] = None) -> dict:
    """Counters for the /metrics endpoint."""
    db = db or get_db()
    with db.connection() as conn:
        rows = conn.execute(
            "SELECT status, COUNT(*) AS n FROM resource_instances GROUP BY status"
        ).fetchall()
        providers = conn.execute(
            "SELECT COUNT(*) AS n FROM providers WHERE active = ?", (db.encode_bool(True),)
        ).fetchone()
    by_status = {r["status"]: int(r["n"]) for r in rows}
    return {
        "instances_by_status": by_status,
        "billable_instances": by_status.get("running", 0) + by_status.get("stopped", 0),
        "active_providers": int(providers["n"]) if providers else 0,
        "billing": DaemonStatusService(db).get_metrics(),
    }
