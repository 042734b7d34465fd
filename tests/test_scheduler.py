"""Tests for the billing drivers: the in-process fallback and the standalone daemon."""

import threading

import pytest

import billing_daemon
from billing import BillingEngine
from billing_daemon import BillingDaemon
from catalog import CatalogStore
from daemon_status import DaemonStatusService, DriverKind
from instances import InstanceStore, ResourceInstance
from scheduler import (
    BuiltinBillingDriver,
    billing_loop,
    get_metrics_snapshot,
    storage_healthcheck,
    sync_all_providers,
)
from wallets import WalletLedger

T0 = 1767225600.0
HOUR = 3600


@pytest.fixture
def status(db):
    return DaemonStatusService(db, stale_after_sec=90 * 60, interval_minutes=60)


@pytest.fixture
def engine(db):
    return BillingEngine(db, suspender=lambda inst, reason: True, safety_margin_sec=300)


@pytest.fixture
def billable(db, linode_provider):
    plan = CatalogStore(db).add_plan(linode_provider.provider_id, "g6", "0.03")
    WalletLedger(db).credit("org-1", 10)
    return InstanceStore(db).insert(ResourceInstance(
        organization_id="org-1", provider_id=linode_provider.provider_id,
        external_id="100", plan_id=plan.plan_id, status="running", created_at=T0,
    ))


def _snapshot(db):
    with db.connection() as conn:
        drivers = [dict(r) for r in conn.execute(
            "SELECT * FROM billing_daemon_status ORDER BY daemon_instance_id").fetchall()]
        txs = [dict(r) for r in conn.execute(
            "SELECT * FROM wallet_transactions ORDER BY tx_id").fetchall()]
        checkpoints = [dict(r) for r in conn.execute(
            "SELECT instance_id, last_billed_at FROM resource_instances").fetchall()]
    return drivers, txs, checkpoints


class _FailingEngine:
    def run_billing_pass(self, now=None):
        raise RuntimeError("database unavailable")


# ── Built-in fallback driver ─────────────────────────────────────────


class TestBuiltinBillingDriver:
    def test_runs_when_no_daemon(self, db, engine, status, billable):
        driver = BuiltinBillingDriver(db, engine, status, driver_id="builtin-1")
        summary = driver.run_once(now=T0 + 3 * HOUR)
        assert summary["instances_billed"] == 1
        row = status.get_row("builtin-1")
        assert row["driver_kind"] == DriverKind.BUILTIN.value
        assert row["run_count"] == 1
        assert bool(row["last_run_success"]) is True

    def test_fresh_daemon_heartbeat_means_zero_writes(self, db, engine, status, billable):
        status.initialize("daemon-1", DriverKind.DAEMON, metadata={}, now=T0 + 3 * HOUR - 60)
        before = _snapshot(db)
        driver = BuiltinBillingDriver(db, engine, status, driver_id="builtin-1")
        assert driver.run_once(now=T0 + 3 * HOUR) is None
        assert _snapshot(db) == before

    def test_stale_daemon_heartbeat_triggers_pass(self, db, engine, status, billable):
        status.initialize("daemon-1", DriverKind.DAEMON, metadata={}, now=T0)
        driver = BuiltinBillingDriver(db, engine, status, driver_id="builtin-1")
        summary = driver.run_once(now=T0 + 2 * HOUR)
        assert summary is not None
        assert summary["total_amount"] == "0.0600"
        # The daemon's row is only read, never written, by the fallback
        assert status.get_row("daemon-1")["run_count"] == 0

    def test_second_tick_heartbeats_own_row(self, db, engine, status, billable):
        driver = BuiltinBillingDriver(db, engine, status, driver_id="builtin-1")
        driver.run_once(now=T0 + 2 * HOUR)
        driver.run_once(now=T0 + 3 * HOUR)
        row = status.get_row("builtin-1")
        assert row["run_count"] == 2
        assert row["heartbeat_at"] == T0 + 3 * HOUR

    def test_failed_pass_is_recorded_and_raised(self, db, status):
        driver = BuiltinBillingDriver(db, _FailingEngine(), status, driver_id="builtin-1")
        with pytest.raises(RuntimeError):
            driver.run_once(now=T0)
        row = status.get_row("builtin-1")
        assert row["status"] == "error"
        assert row["error_message"] == "database unavailable"
        assert row["failed_run_count"] == 1

    def test_billing_loop_survives_failures(self, db, status):
        driver = BuiltinBillingDriver(db, _FailingEngine(), status, driver_id="builtin-1")
        stop = threading.Event()
        ticks = []

        original = driver.run_once

        def counting_run_once(now=None):
            ticks.append(1)
            if len(ticks) >= 2:
                stop.set()
            return original(now)

        driver.run_once = counting_run_once
        billing_loop(driver, interval=0, stop=stop)
        assert len(ticks) == 2


# ── Standalone daemon ────────────────────────────────────────────────


class TestBillingDaemon:
    def test_start_and_stop(self, db, engine, status):
        d = BillingDaemon(db, engine, status, driver_id="daemon-1",
                          interval_minutes=60, heartbeat_interval=3600)
        d.start()
        assert status.get_row("daemon-1")["status"] == "running"
        assert status.is_daemon_active()
        d.stop()
        assert status.get_row("daemon-1")["status"] == "stopped"
        assert not status.is_daemon_active()

    def test_run_pass_records_result(self, db, engine, status):
        d = BillingDaemon(db, engine, status, driver_id="daemon-1", heartbeat_interval=3600)
        d.start()
        try:
            assert d.run_pass() is True
            row = status.get_row("daemon-1")
            assert row["run_count"] == 1
            assert bool(row["last_run_success"]) is True
        finally:
            d.stop()

    def test_run_pass_failure_returns_false(self, db, status):
        d = BillingDaemon(db, _FailingEngine(), status, driver_id="daemon-1",
                          heartbeat_interval=3600)
        d.start()
        try:
            assert d.run_pass() is False
            assert status.get_row("daemon-1")["failed_run_count"] == 1
        finally:
            d.stop()

    def test_run_forever_gives_up_after_repeated_failures(self, db, status, monkeypatch):
        monkeypatch.setattr(billing_daemon, "MAX_CONSECUTIVE_FAILURES", 1)
        d = BillingDaemon(db, _FailingEngine(), status, driver_id="daemon-1",
                          heartbeat_interval=3600)
        waits = []
        d.shutdown.wait = lambda timeout=None: waits.append(timeout) or False
        d.status.initialize("daemon-1", DriverKind.DAEMON, metadata={})
        d.run_forever()
        assert waits == [2]
        assert status.get_row("daemon-1")["failed_run_count"] == 2

    def test_main_once(self, tmp_path, monkeypatch):
        import db as db_module

        monkeypatch.setenv("STRATUS_DB_PATH", str(tmp_path / "daemon.db"))
        monkeypatch.setattr(billing_daemon.signal, "signal", lambda *a: None)
        db_module.reset_db()
        try:
            assert billing_daemon.main(["--once"]) == 0
            rows = DaemonStatusService(db_module.get_db()).get_metrics()
            assert rows["total_runs"] == 1
        finally:
            db_module.reset_db()


# ── Helpers ──────────────────────────────────────────────────────────


class TestObservability:
    def test_storage_healthcheck(self, db):
        assert storage_healthcheck(db) == {"ok": True, "backend": "sqlite"}

    def test_metrics_snapshot(self, db, billable):
        snap = get_metrics_snapshot(db)
        assert snap["instances_by_status"] == {"running": 1}
        assert snap["billable_instances"] == 1
        assert snap["active_providers"] == 1
        assert snap["billing"]["total_runs"] == 0

    def test_sync_all_providers_visits_active_only(self, db, catalog):
        a = catalog.add_provider("A", "linode", "t")
        b = catalog.add_provider("B", "digitalocean", "t")
        catalog.set_provider_active(b.provider_id, False)
        seen = []

        class _Service:
            def sync_provider(self, provider_id):
                seen.append(provider_id)
                return {"synced": 0}

        summary = sync_all_providers(service=_Service(), catalog=catalog)
        assert seen == [a.provider_id]
        assert summary == {a.provider_id: {"synced": 0}}
