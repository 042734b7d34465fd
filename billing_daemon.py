#!/usr/bin/env python3
# Stratus Billing Daemon: standalone process that owns hourly billing.
#
# Heartbeats every STRATUS_HEARTBEAT_INTERVAL_SEC into billing_daemon_status so
# the in-process fallback driver knows to stand down, runs a pass at start-up
# and then every STRATUS_BILLING_INTERVAL_MINUTES, and marks itself stopped on
# SIGTERM/SIGINT.
#
# Usage:
#   python billing_daemon.py            # run forever
#   python billing_daemon.py --once     # single pass, then exit

import argparse
import logging
import os
import signal
import sys
import threading
from typing import Optional

from billing import BillingEngine
from daemon_status import (
    BILLING_INTERVAL_MINUTES,
    DaemonStatusService,
    DriverKind,
    default_driver_id,
    default_metadata,
)
from db import Database, get_db

VERSION = "1.0.0"

HEARTBEAT_INTERVAL_SEC = int(os.environ.get("STRATUS_HEARTBEAT_INTERVAL_SEC", "60"))
MAX_CONSECUTIVE_FAILURES = int(os.environ.get("STRATUS_DAEMON_MAX_FAILURES", "10"))

log = logging.getLogger("stratus.daemon")


class BillingDaemon:
    def __init__(self, db: Optional[Database] = None,
                 engine: Optional[BillingEngine] = None,
                 status: Optional[DaemonStatusService] = None,
                 driver_id: Optional[str] = None,
                 interval_minutes: Optional[int] = None,
                 heartbeat_interval: Optional[int] = None):
        self.db = db or get_db()
        self.engine = engine or BillingEngine(self.db)
        self.interval_minutes = interval_minutes or BILLING_INTERVAL_MINUTES
        self.status = status or DaemonStatusService(self.db, interval_minutes=self.interval_minutes)
        self.driver_id = driver_id or default_driver_id(DriverKind.DAEMON)
        self.heartbeat_interval = heartbeat_interval or HEARTBEAT_INTERVAL_SEC
        self.shutdown = threading.Event()
        self._heartbeat_thread: Optional[threading.Thread] = None

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self):
        self.status.initialize(self.driver_id, DriverKind.DAEMON,
                               metadata=default_metadata(self.interval_minutes))
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop, name="billing-heartbeat", daemon=True,
        )
        self._heartbeat_thread.start()

    def stop(self):
        self.shutdown.set()
        if self._heartbeat_thread is not None:
            self._heartbeat_thread.join(timeout=5)
        try:
            self.status.mark_stopped(self.driver_id)
        except Exception as e:
            log.error("Could not mark daemon %s stopped: %s", self.driver_id, e)
        log.info("Billing daemon %s stopped.", self.driver_id)

    def _heartbeat_loop(self):
        while not self.shutdown.wait(self.heartbeat_interval):
            try:
                self.status.heartbeat(self.driver_id, DriverKind.DAEMON)
            except Exception as e:
                log.error("Heartbeat failed: %s", e)

    # ── Billing ───────────────────────────────────────────────────────

    def run_pass(self) -> bool:
        """Run one pass and record it. Returns False on an infrastructure failure."""
        try:
            result = self.engine.run_billing_pass()
        except Exception as e:
            log.error("BILLING PASS FAILED: %s", e, exc_info=True)
            try:
                self.status.record_run(self.driver_id, error=str(e))
            except Exception as rec_err:
                log.error("Could not record failure: %s", rec_err)
            return False
        self.status.record_run(self.driver_id, result)
        log.info("Pass complete: %d billed, $%s, %d error(s)",
                 result.instances_billed, result.total_amount, len(result.errors))
        return True

    def run_forever(self):
        interval = self.interval_minutes * 60
        consecutive_failures = 0
        while not self.shutdown.is_set():
            if self.run_pass():
                consecutive_failures = 0
                wait = interval
            else:
                consecutive_failures += 1
                if consecutive_failures > MAX_CONSECUTIVE_FAILURES:
                    log.error("Too many consecutive billing failures (%d) — shutting down",
                              consecutive_failures)
                    break
                wait = min(2 ** consecutive_failures, interval)
                log.warning("Backing off %ds before next pass", wait)
            if self.shutdown.wait(wait):
                break

    def print_banner(self):
        log.info("=" * 64)
        log.info("  Stratus Billing Daemon v%s", VERSION)
        log.info("=" * 64)
        log.info("  Driver ID:      %s", self.driver_id)
        log.info("  Database:       %s", self.db.backend)
        log.info("  Interval:       %d min", self.interval_minutes)
        log.info("  Heartbeat:      %ds", self.heartbeat_interval)
        log.info("  Stale after:    %ds", self.status.stale_after_sec)
        log.info("=" * 64)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Stratus standalone billing daemon")
    parser.add_argument("--once", action="store_true", help="Run a single billing pass and exit")
    parser.add_argument("--interval", type=int, default=None, help="Minutes between passes")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)-8s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    daemon = BillingDaemon(interval_minutes=args.interval)

    def _signal_handler(signum, frame):
        log.info("Received %s — initiating graceful shutdown", signal.Signals(signum).name)
        daemon.shutdown.set()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    daemon.print_banner()
    daemon.start()
    try:
        if args.once:
            ok = daemon.run_pass()
            return 0 if ok else 1
        daemon.run_forever()
        return 0
    finally:
        daemon.stop()


if __name__ == "__main__":
    sys.exit(main())
