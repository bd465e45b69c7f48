#!/usr/bin/env python3
# Meridian CLI
# argparse. Operator commands for hosts, servers, executions, and payouts.

import argparse
import json
import sys

from detection import StaticDetector
from dispatcher import DEFAULT_COST_CREDITS, ServiceUnavailable, get_dispatcher
from registry import HostNotFound, HostStatus, ProtocolType
from servers import ServerCatalog, get_server_catalog
from settlement import AlreadySettled, PaymentNotFound, PaymentStatus

PROTOCOLS = [p.value for p in ProtocolType]


def _csv(value):
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def cmd_host_add(args):
    """Register a host."""
    h = get_dispatcher().registry.register_host(
        name=args.name,
        endpoint=args.endpoint,
        owner_id=args.owner,
        host_id=args.id,
        location=args.location,
        server_type=args.type,
        compatible_server_types=_csv(args.compat),
        capabilities=_csv(args.caps),
        profit_share_percentage=args.share,
    )
    compat = ",".join(h.compatible_server_types) or "—"
    print(f"Host registered: {h.host_id} | {h.name} | {h.endpoint} | {h.server_type} (compat: {compat}) | {h.profit_share_percentage}% share")


def cmd_hosts(args):
    """List hosts."""
    hosts = get_dispatcher().registry.list_hosts(status=args.status)
    if not hosts:
        print("No hosts.")
        return
    for h in hosts:
        compat = ",".join(h.compatible_server_types) or "—"
        print(f"  [{h.status:>11}] {h.host_id} | {h.name} | {h.server_type} ({compat}) | {h.location or '—'} | runs: {h.successful_executions}/{h.total_executions} | earned: {h.total_earnings}")


def cmd_host_status(args):
    """Set a host's status."""
    try:
        h = get_dispatcher().registry.set_status(args.id, args.status)
    except HostNotFound as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
    print(f"Host {h.host_id} is now {h.status}")


def cmd_host_share(args):
    """Set a host's profit share."""
    try:
        h = get_dispatcher().registry.set_profit_share(args.id, args.share)
    except HostNotFound as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
    print(f"Host {h.host_id} profit share: {h.profit_share_percentage}%")


def cmd_server_add(args):
    """Register a server. Omit --type to detect it from the server's /info."""
    catalog = get_server_catalog()
    if args.no_detect:
        catalog = ServerCatalog(catalog.store, StaticDetector())
    s = catalog.register_server(
        name=args.name,
        endpoint=args.endpoint,
        server_type=args.type,
        owner_id=args.owner,
        is_public=args.public,
        description=args.desc,
    )
    print(f"Server registered: {s.server_id} | {s.name} | {s.server_type} | {'public' if s.is_public else 'private'}")


def cmd_servers(args):
    """List servers."""
    servers = get_server_catalog().list_servers(
        server_type=args.type, owner_id=args.owner, public_only=args.public,
    )
    if not servers:
        print("No servers.")
        return
    for s in servers:
        print(f"  [{s.server_type:>4}] {s.server_id} | {s.name} | {s.endpoint} | {'public' if s.is_public else 'private'}")


def cmd_execute(args):
    """Dispatch a function call."""
    try:
        parameters = json.loads(args.params) if args.params else None
    except json.JSONDecodeError as e:
        print(f"--params is not valid JSON: {e}", file=sys.stderr)
        sys.exit(2)

    outcome = get_dispatcher().dispatch(
        requester_id=args.requester,
        server_name=args.server,
        function_name=args.function,
        parameters=parameters,
        required_capabilities=_csv(args.caps),
        preferred_location=args.location,
        protocol_type=args.type,
        cost=args.cost,
    )
    if isinstance(outcome, ServiceUnavailable):
        print(outcome.reason, file=sys.stderr)
        sys.exit(1)
    print(json.dumps(outcome.to_dict(), indent=2))
    if not outcome.success:
        sys.exit(1)


def cmd_executions(args):
    """List executions."""
    executions = get_dispatcher().ledger.list_executions(
        requester_id=args.requester, host_id=args.host, status=args.status, limit=args.limit,
    )
    if not executions:
        print("No executions.")
        return
    for e in executions:
        print(f"  [{e.status:>9}] {e.execution_id} | {e.server_name}.{e.function_name} | host: {e.host_id or '—'} | cost: {e.cost} | {e.execution_time_ms if e.execution_time_ms is not None else '—'}ms")


def cmd_payments(args):
    """List host payments."""
    payments = get_dispatcher().settlement.list_payments(host_id=args.host, status=args.status)
    if not payments:
        print("No payments.")
        return
    for p in payments:
        print(f"  [{p.status:>7}] {p.payment_id} | host: {p.host_id} | execution: {p.execution_id} | {p.amount}")


def cmd_pay(args):
    """Mark a payment as paid."""
    try:
        p = get_dispatcher().settlement.mark_paid(args.payment_id)
    except (PaymentNotFound, AlreadySettled) as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
    print(f"Payment {p.payment_id} paid: {p.amount} to {p.host_id}")


def cmd_serve(args):
    """Start the API server."""
    import uvicorn
    from api import app
    print(f"Starting Meridian API on port {args.port}...")
    uvicorn.run(app, host=args.bind, port=args.port)


def build_parser():
    parser = argparse.ArgumentParser(
        prog="meridian",
        description="Meridian: compute-execution dispatcher",
    )
    sub = parser.add_subparsers(dest="command")

    # meridian host-add
    p_hadd = sub.add_parser("host-add", help="Register a host")
    p_hadd.add_argument("--id", default=None, help="Host ID (generated if omitted)")
    p_hadd.add_argument("--name", required=True, help="Host name")
    p_hadd.add_argument("--endpoint", required=True, help="Base URL, e.g. https://host:8443")
    p_hadd.add_argument("--owner", default="", help="Owner ID")
    p_hadd.add_argument("--location", default=None, help="Location tag")
    p_hadd.add_argument("--type", default="misc", choices=PROTOCOLS, help="Primary protocol")
    p_hadd.add_argument("--compat", default="", help="Comma-separated compatible protocols")
    p_hadd.add_argument("--caps", default="", help="Comma-separated capability tags")
    p_hadd.add_argument("--share", default=None, help="Profit share percentage (default 70)")
    p_hadd.set_defaults(func=cmd_host_add)

    # meridian hosts
    p_hosts = sub.add_parser("hosts", help="List hosts")
    p_hosts.add_argument("--status", choices=[s.value for s in HostStatus], help="Filter by status")
    p_hosts.set_defaults(func=cmd_hosts)

    # meridian host-status <id> <status>
    p_hstat = sub.add_parser("host-status", help="Set host status")
    p_hstat.add_argument("id", help="Host ID")
    p_hstat.add_argument("status", choices=[s.value for s in HostStatus])
    p_hstat.set_defaults(func=cmd_host_status)

    # meridian host-share <id> <pct>
    p_hshare = sub.add_parser("host-share", help="Set host profit share")
    p_hshare.add_argument("id", help="Host ID")
    p_hshare.add_argument("share", help="Percentage, 0-100")
    p_hshare.set_defaults(func=cmd_host_share)

    # meridian server-add
    p_sadd = sub.add_parser("server-add", help="Register a server")
    p_sadd.add_argument("--name", required=True, help="Server name")
    p_sadd.add_argument("--endpoint", required=True, help="Server URL")
    p_sadd.add_argument("--type", default=None, choices=PROTOCOLS,
                        help="Protocol (detected from /info if omitted)")
    p_sadd.add_argument("--owner", default="", help="Owner ID")
    p_sadd.add_argument("--public", action="store_true", help="List publicly")
    p_sadd.add_argument("--no-detect", action="store_true",
                        help="Skip the /info probe; untyped servers register as misc")
    p_sadd.add_argument("--desc", default=None, help="Description")
    p_sadd.set_defaults(func=cmd_server_add)

    # meridian servers
    p_servers = sub.add_parser("servers", help="List servers")
    p_servers.add_argument("--type", default=None, choices=PROTOCOLS, help="Filter by protocol")
    p_servers.add_argument("--owner", default=None, help="Filter by owner")
    p_servers.add_argument("--public", action="store_true", help="Public servers only")
    p_servers.set_defaults(func=cmd_servers)

    # meridian execute
    p_exec = sub.add_parser("execute", help="Dispatch a function call to a host")
    p_exec.add_argument("--requester", required=True, help="Requester ID")
    p_exec.add_argument("--server", required=True, help="Server name")
    p_exec.add_argument("--function", required=True, help="Function name")
    p_exec.add_argument("--params", default=None, help="Parameters as JSON")
    p_exec.add_argument("--type", default=None, choices=PROTOCOLS, help="Required protocol")
    p_exec.add_argument("--caps", default="", help="Comma-separated required capabilities")
    p_exec.add_argument("--location", default=None, help="Preferred location")
    p_exec.add_argument("--cost", default=str(DEFAULT_COST_CREDITS),
                        help=f"Cost in credits (default {DEFAULT_COST_CREDITS})")
    p_exec.set_defaults(func=cmd_execute)

    # meridian executions
    p_execs = sub.add_parser("executions", help="List executions")
    p_execs.add_argument("--requester", default=None, help="Filter by requester")
    p_execs.add_argument("--host", default=None, help="Filter by host")
    p_execs.add_argument("--status", default=None, help="Filter by status")
    p_execs.add_argument("--limit", type=int, default=50, help="Max rows (default 50)")
    p_execs.set_defaults(func=cmd_executions)

    # meridian payments
    p_pays = sub.add_parser("payments", help="List host payments")
    p_pays.add_argument("--host", default=None, help="Filter by host")
    p_pays.add_argument("--status", default=None, choices=[s.value for s in PaymentStatus])
    p_pays.set_defaults(func=cmd_payments)

    # meridian pay <payment_id>
    p_pay = sub.add_parser("pay", help="Mark a payment as paid")
    p_pay.add_argument("payment_id", help="Payment ID")
    p_pay.set_defaults(func=cmd_pay)

    # meridian serve
    p_serve = sub.add_parser("serve", help="Start the API server")
    p_serve.add_argument("--port", type=int, default=8000, help="Port (default 8000)")
    p_serve.add_argument("--bind", default="0.0.0.0", help="Bind address")
    p_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
