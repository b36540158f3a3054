"""IPWarden control CLI.

Runs the ban daemon (``run``) or performs one-shot rule operations against
the platform firewall. Exit status is 0 on success, 1 on failure and 2 when
the platform does not support the operation.
"""
from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Iterable, List, Optional

from rich.console import Console
from rich.table import Table

from ipwarden import __version__
from ipwarden.core.config import WardenConfig, load_config
from ipwarden.core.errors import PrivilegeRequired, WardenError
from ipwarden.core.firewall import BLOCK_PREFIX, Firewall, FirewallResult, ResultStatus

from ipwctl.daemon import WardenDaemon, build_firewall

logger = logging.getLogger("ipwctl")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NOT_SUPPORTED = 2


def exit_code(result: FirewallResult) -> int:
    if result:
        return EXIT_OK
    if result.status is ResultStatus.NOT_SUPPORTED:
        return EXIT_NOT_SUPPORTED
    return EXIT_FAILED


def _report(console: Console, result: FirewallResult, done: str) -> int:
    if result:
        console.print(done)
    else:
        console.print(f"[red]{result.status.value}[/red]: {result.message}")
    return exit_code(result)


def _parse_ports(values: Optional[List[str]]) -> Optional[List[str]]:
    if not values:
        return None
    ports: List[str] = []
    for value in values:
        ports.extend(p.strip() for p in value.split(",") if p.strip())
    return ports


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
def cmd_run(config: WardenConfig, firewall: Firewall) -> int:
    """Run the daemon until SIGINT/SIGTERM."""
    daemon = WardenDaemon(firewall=firewall, config=config)
    stop = threading.Event()

    def _handler(sig, frame):
        stop.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

    daemon.start()
    try:
        while not stop.is_set():
            stop.wait(1)
    except KeyboardInterrupt:
        stop.set()
    daemon.stop()
    return EXIT_OK


def cmd_block(console: Console, firewall: Firewall, addresses: List[str], prefix: str,
              ports: Optional[List[str]]) -> int:
    result = firewall.block_delta(prefix, [(a, True) for a in addresses], ports=ports)
    return _report(console, result, f"Blocked {len(addresses)} address(es) in {prefix}")


def cmd_unblock(console: Console, firewall: Firewall, addresses: List[str], prefix: str) -> int:
    result = firewall.block_delta(prefix, [(a, False) for a in addresses])
    return _report(console, result, f"Unblocked {len(addresses)} address(es) from {prefix}")


def cmd_allow(console: Console, firewall: Firewall, addresses: List[str], ports: Optional[List[str]]) -> int:
    current = firewall.enumerate_allowed_addresses()
    if current.status is ResultStatus.NOT_SUPPORTED:
        return _report(console, current, "")
    existing = list(current.value or [])
    result = firewall.allow(existing + list(addresses), ports=ports)
    return _report(console, result, f"Allowed {len(addresses)} address(es)")


def cmd_list(console: Console, firewall: Firewall, prefix: Optional[str]) -> int:
    table = Table(title="Firewall addresses")
    table.add_column("Kind")
    table.add_column("Range")
    if prefix:
        result = firewall.enumerate_ip_addresses(prefix)
        if not result:
            return _report(console, result, "")
        for rng in result.value or []:
            table.add_row(prefix, str(rng))
    else:
        for kind, query in (("blocked", firewall.enumerate_banned_addresses),
                            ("allowed", firewall.enumerate_allowed_addresses)):
            result = query()
            if not result:
                return _report(console, result, "")
            for rng in result.value or []:
                table.add_row(kind, str(rng))
    console.print(table)
    return EXIT_OK


def cmd_check(console: Console, firewall: Firewall, address: str, port: Optional[int]) -> int:
    blocked = firewall.is_ip_address_blocked(address, port)
    if not blocked:
        return _report(console, blocked, "")
    allowed = firewall.is_ip_address_allowed(address, port)
    if not allowed:
        return _report(console, allowed, "")
    is_blocked, rule = blocked.value
    if is_blocked:
        console.print(f"{address}: [red]blocked[/red] by {rule}")
    elif allowed.value:
        console.print(f"{address}: [green]allowed[/green]")
    else:
        console.print(f"{address}: no matching rule")
    return EXIT_OK


def cmd_rules(console: Console, firewall: Firewall, prefix: Optional[str]) -> int:
    result = firewall.get_rule_names(prefix)
    if not result:
        return _report(console, result, "")
    for name in result.value or []:
        console.print(name)
    return EXIT_OK


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ipwctl", description="IPWarden firewall control CLI")
    parser.add_argument("--config", help="Path to ipwarden YAML (default: $IPWARDEN_CONFIG)")
    parser.add_argument("--platform", help="Force a firewall variant (linux, windows, macos, memory)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Run the ban daemon")

    p_block = sub.add_parser("block", help="Add addresses to a block rule")
    p_block.add_argument("addresses", nargs="+")
    p_block.add_argument("--prefix", default=BLOCK_PREFIX, help="Rule name prefix (default: Block)")
    p_block.add_argument("--port", action="append", help="Only block these ports (repeatable, a-b ranges)")

    p_unblock = sub.add_parser("unblock", help="Remove addresses from a block rule")
    p_unblock.add_argument("addresses", nargs="+")
    p_unblock.add_argument("--prefix", default=BLOCK_PREFIX, help="Rule name prefix (default: Block)")

    p_allow = sub.add_parser("allow", help="Add addresses to the allow rule")
    p_allow.add_argument("addresses", nargs="+")
    p_allow.add_argument("--port", action="append", help="Only allow these ports")

    p_list = sub.add_parser("list", help="List blocked and allowed ranges")
    p_list.add_argument("--prefix", help="Only rules under this prefix")

    p_check = sub.add_parser("check", help="Show whether an address is blocked or allowed")
    p_check.add_argument("address")
    p_check.add_argument("--port", type=int)

    p_rules = sub.add_parser("rules", help="List rule names")
    p_rules.add_argument("--prefix", help="Only rules under this prefix")

    p_delete = sub.add_parser("delete-rule", help="Delete one rule")
    p_delete.add_argument("name")

    sub.add_parser("truncate", help="Delete every rule owned by IPWarden")

    p_save = sub.add_parser("save", help="Save firewall state")
    p_save.add_argument("path", nargs="?", help="State file (default: firewall.state_file)")

    p_restore = sub.add_parser("restore", help="Restore firewall state")
    p_restore.add_argument("path", nargs="?", help="State file (default: firewall.state_file)")
    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not args.command:
        parser.print_help()
        return EXIT_FAILED

    console = Console()
    try:
        config = load_config(args.config)
        firewall = build_firewall(config, args.platform)
    except PrivilegeRequired as e:
        return _report(console, FirewallResult.from_error(e), "")
    except (OSError, ValueError, WardenError) as e:
        console.print(f"[red]error[/red]: {e}")
        return EXIT_FAILED

    state_file = getattr(args, "path", None) or config.section("firewall").get("state_file")

    if args.command == "run":
        return cmd_run(config, firewall)
    if args.command == "block":
        return cmd_block(console, firewall, args.addresses, args.prefix, _parse_ports(args.port))
    if args.command == "unblock":
        return cmd_unblock(console, firewall, args.addresses, args.prefix)
    if args.command == "allow":
        return cmd_allow(console, firewall, args.addresses, _parse_ports(args.port))
    if args.command == "list":
        return cmd_list(console, firewall, args.prefix)
    if args.command == "check":
        return cmd_check(console, firewall, args.address, args.port)
    if args.command == "rules":
        return cmd_rules(console, firewall, args.prefix)
    if args.command == "delete-rule":
        result = firewall.delete_rule(args.name)
        if result and result.value is False:
            console.print(f"No rule named {args.name}")
            return EXIT_OK
        return _report(console, result, f"Deleted {args.name}")
    if args.command == "truncate":
        result = firewall.truncate()
        return _report(console, result, f"Deleted {len(result.value or [])} rule(s)")
    if args.command == "save":
        return _report(console, firewall.save_state(state_file), f"Saved state to {state_file}")
    if args.command == "restore":
        return _report(console, firewall.restore_state(state_file), f"Restored state from {state_file}")

    parser.print_help()
    return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
