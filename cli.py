#!/usr/bin/env python3
# Stratus CLI v1.0.0
# argparse. Operator tooling for providers, plans, billing and wallets.

import argparse
import json
import sys

from errors import StratusError, user_message


def cmd_serve(args):
    """Start the API server with the builtin billing fallback."""
    import uvicorn

    from api import app, start_background_workers
    from scheduler import setup_logging

    setup_logging()
    if not args.no_workers:
        start_background_workers()
    print(f"Starting Stratus API on port {args.port}...")
    uvicorn.run(app, host=args.bind, port=args.port)


def cmd_daemon(args):
    """Run the standalone billing daemon in the foreground."""
    from billing_daemon import main as daemon_main

    argv = ["--once"] if args.once else []
    if args.interval:
        argv += ["--interval", str(args.interval)]
    sys.exit(daemon_main(argv))


def cmd_billing_run(args):
    """Run one billing pass now."""
    from billing import get_billing_engine

    result = get_billing_engine().run_billing_pass()
    print(f"Billing pass: {result.instances_billed} billed | ${result.total_amount} "
          f"| {result.total_hours}h | {len(result.errors)} error(s)")
    for err in result.errors:
        print(f"  ! {err}")
    for inst_id in result.suspensions:
        print(f"  suspended: {inst_id}")


def cmd_billing_status(args):
    """Show the standalone daemon heartbeat and last run."""
    from daemon_status import DaemonStatusService

    status = DaemonStatusService().get_status()
    if args.json:
        print(json.dumps(status, indent=2))
        return
    print(f"Daemon:    {status['daemon_instance_id'] or '—'} [{status['status']}]")
    print(f"  Heartbeat:  {status.get('heartbeat_at') or '—'}")
    print(f"  Last run:   {status['last_run'] or '—'} "
          f"({'ok' if status['last_run_success'] else 'failed'})")
    print(f"  Billed:     {status['instances_billed']} instance(s), ${status['total_amount']}")
    print(f"  Next run:   {status['next_scheduled_run'] or '—'}")
    if status["error_message"]:
        print(f"  Error:      {status['error_message']}")
    if status["builtin_fallback_active"]:
        print("  Builtin fallback is billing (daemon stale or absent)")


def cmd_wallet(args):
    """Show a wallet balance and recent transactions."""
    from wallets import WalletLedger

    ledger = WalletLedger()
    wallet = ledger.get_wallet(args.organization_id)
    print(f"Organization: {wallet.organization_id}")
    print(f"  Balance: ${wallet.balance} {wallet.currency}")
    for tx in ledger.history(args.organization_id, limit=args.limit):
        print(f"  [{tx.tx_type:>10}] {tx.tx_id} | {tx.amount:>12} | bal {tx.balance_after} | {tx.description}")


def cmd_credit(args):
    """Credit a wallet (payment captured elsewhere)."""
    from wallets import WalletLedger

    tx = WalletLedger().credit(args.organization_id, args.amount, args.description)
    print(f"Credited ${tx.amount} to {args.organization_id}")
    print(f"  New balance: ${tx.balance_after}")


def cmd_providers(args):
    """List configured providers."""
    from catalog import CatalogStore

    providers = CatalogStore().list_providers(active_only=args.active_only)
    if not providers:
        print("No providers.")
        return
    for p in providers:
        state = "active" if p.active else "inactive"
        creds = "token set" if p.has_credentials else "NO TOKEN"
        regions = ",".join(p.allowed_regions) or "all regions"
        print(f"  [{state:>8}] {p.provider_id} | {p.kind} | {p.name} | {creds} | {regions}")


def cmd_provider_add(args):
    """Register an upstream provider account."""
    from catalog import CatalogStore

    regions = [r.strip() for r in (args.regions or "").split(",") if r.strip()]
    p = CatalogStore().add_provider(args.name, args.kind, args.token or "",
                                    allowed_regions=regions)
    print(f"Provider added: {p.provider_id} | {p.kind} | {p.name}")


def cmd_plan_add(args):
    """Add a sellable plan on a provider."""
    from catalog import CatalogStore

    plan = CatalogStore().add_plan(
        args.provider_id, args.upstream_plan_id, args.base_hourly, args.markup_hourly,
        label=args.label, vcpus=args.vcpus, memory_mb=args.memory_mb,
        disk_gb=args.disk_gb, transfer_gb=args.transfer_gb,
        stopped_rate_factor=args.stopped_rate_factor,
    )
    print(f"Plan added: {plan.plan_id} | {plan.label} | ${plan.hourly_rate}/h")


def cmd_instances(args):
    """List locally recorded instances."""
    from instances import InstanceStore

    items = InstanceStore().list_instances(organization_id=args.organization_id,
                                           include_deleted=args.all)
    if not items:
        print("No instances.")
        return
    for i in items:
        print(f"  [{i.status:>12}] {i.instance_id} | {i.label} | {i.provider_id}/{i.external_id} "
              f"| org {i.organization_id}")


def cmd_ssh_keys(args):
    """List a user's SSH keys and where they are synced."""
    from ssh_keys import get_credential_service

    keys = get_credential_service().list_keys(args.user_id)
    if not keys:
        print("No SSH keys.")
        return
    for k in keys:
        synced = ", ".join(f"{kind}={kid or '—'}" for kind, kid in sorted(k.provider_key_ids.items()))
        print(f"  {k.key_id} | {k.name} | {k.fingerprint} | {synced}")


def cmd_audit_verify(args):
    """Verify the activity log hash chain."""
    from events import EventStore

    result = EventStore().verify_chain()
    if result["valid"]:
        print(f"Activity chain OK ({result['events_checked']} events)")
    else:
        print(f"Activity chain BROKEN at {result['broken_at']}: {result.get('reason')}")
        sys.exit(2)


def main():
    parser = argparse.ArgumentParser(
        prog="stratus",
        description="Stratus — multi-provider VPS lifecycle and billing",
    )
    sub = parser.add_subparsers(dest="command")

    # stratus serve
    p_serve = sub.add_parser("serve", help="Start the API server")
    p_serve.add_argument("--port", type=int, default=8000, help="Port (default 8000)")
    p_serve.add_argument("--bind", default="0.0.0.0", help="Bind address")
    p_serve.add_argument("--no-workers", action="store_true",
                         help="Do not start builtin billing or status sync threads")
    p_serve.set_defaults(func=cmd_serve)

    # stratus daemon
    p_daemon = sub.add_parser("daemon", help="Run the standalone billing daemon")
    p_daemon.add_argument("--once", action="store_true", help="Single pass, then exit")
    p_daemon.add_argument("--interval", type=int, default=None, help="Minutes between passes")
    p_daemon.set_defaults(func=cmd_daemon)

    # stratus billing-run
    p_run = sub.add_parser("billing-run", help="Run one billing pass now")
    p_run.set_defaults(func=cmd_billing_run)

    # stratus billing-status
    p_status = sub.add_parser("billing-status", help="Show billing daemon status")
    p_status.add_argument("--json", action="store_true", help="Raw JSON output")
    p_status.set_defaults(func=cmd_billing_status)

    # stratus wallet <org>
    p_wallet = sub.add_parser("wallet", help="Show a wallet balance")
    p_wallet.add_argument("organization_id", help="Organization ID")
    p_wallet.add_argument("--limit", type=int, default=10, help="Transactions to show")
    p_wallet.set_defaults(func=cmd_wallet)

    # stratus credit <org> <amount>
    p_credit = sub.add_parser("credit", help="Credit a wallet")
    p_credit.add_argument("organization_id", help="Organization ID")
    p_credit.add_argument("amount", help="Amount, e.g. 25.00")
    p_credit.add_argument("--description", default="Manual credit", help="Ledger description")
    p_credit.set_defaults(func=cmd_credit)

    # stratus providers
    p_providers = sub.add_parser("providers", help="List providers")
    p_providers.add_argument("--active-only", action="store_true", help="Only active providers")
    p_providers.set_defaults(func=cmd_providers)

    # stratus provider-add <name> <kind>
    p_padd = sub.add_parser("provider-add", help="Register a provider account")
    p_padd.add_argument("name", help="Display name")
    p_padd.add_argument("kind", choices=["linode", "digitalocean"], help="Provider kind")
    p_padd.add_argument("--token", default="", help="Upstream API token")
    p_padd.add_argument("--regions", default="", help="Comma-separated region allow-list")
    p_padd.set_defaults(func=cmd_provider_add)

    # stratus plan-add <provider_id> <upstream_plan_id> <base_hourly>
    p_plan = sub.add_parser("plan-add", help="Add a plan to a provider")
    p_plan.add_argument("provider_id", help="Provider ID")
    p_plan.add_argument("upstream_plan_id", help="Upstream type/size id, e.g. g6-nanode-1")
    p_plan.add_argument("base_hourly", help="Upstream hourly cost")
    p_plan.add_argument("--markup-hourly", default="0", help="Hourly markup")
    p_plan.add_argument("--label", default="", help="Display label")
    p_plan.add_argument("--vcpus", type=int, default=0)
    p_plan.add_argument("--memory-mb", type=int, default=0)
    p_plan.add_argument("--disk-gb", type=int, default=0)
    p_plan.add_argument("--transfer-gb", type=int, default=0)
    p_plan.add_argument("--stopped-rate-factor", default="1",
                        help="Fraction of the rate billed while stopped (0-1)")
    p_plan.set_defaults(func=cmd_plan_add)

    # stratus instances
    p_inst = sub.add_parser("instances", help="List recorded instances")
    p_inst.add_argument("--organization-id", default=None, help="Filter by organization")
    p_inst.add_argument("--all", action="store_true", help="Include deleted instances")
    p_inst.set_defaults(func=cmd_instances)

    # stratus ssh-keys <user_id>
    p_keys = sub.add_parser("ssh-keys", help="List a user's SSH keys")
    p_keys.add_argument("user_id", help="User ID")
    p_keys.set_defaults(func=cmd_ssh_keys)

    # stratus audit-verify
    p_audit = sub.add_parser("audit-verify", help="Verify the activity log hash chain")
    p_audit.set_defaults(func=cmd_audit_verify)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except StratusError as e:
        print(f"Error: {user_message(e)} ({e.message})", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
