#!/usr/bin/env python3
"""
EditDesk Management CLI

Commands:
- rollups: Compute editor rollups from a JSON order export
- resolve-role: Show which role an address gets
- roster: Print the configured editor roster

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage rollups --orders orders.json
    python -m tools.manage rollups --orders orders.json --email tarun@mm.com
    python -m tools.manage resolve-role --email vivek@mm.com
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _load_orders(path: str):
    from app.schemas import Order

    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        # Exports keyed by document id: {"abc": {...}, ...}
        data = [{"id": key, **value} for key, value in data.items()]
    return [Order.model_validate(item) for item in data]


def cmd_rollups(args):
    """Print rollups for an order export."""
    from app.core import AggregationScope, average_turnaround_hours, compute_rollups
    from app.db.config import DeskConfig
    from app.schemas import Identity

    config = DeskConfig.from_env()
    orders = _load_orders(args.orders)

    if args.email:
        scope = AggregationScope.single_editor(Identity(email=args.email))
    else:
        scope = AggregationScope.all_editors()

    rollups = compute_rollups(scope, orders, config.roster)

    if args.json:
        print(json.dumps([r.model_dump(mode="json") for r in rollups], indent=2))
        return 0

    print(f"{len(orders)} orders, {len(rollups)} editors\n")
    for r in rollups:
        print(f"{r.name} <{r.email}>")
        print(f"  Assigned: {r.total_assigned}")
        print(f"  Completed: {r.total_completed}")
        print(f"  Workload: {r.current_workload}")
        print(f"  Avg turnaround: {average_turnaround_hours(r)}h")
        for month, stat in r.monthly_stats.items():
            print(f"  {month}: {stat.completed}/{stat.assigned}")
    return 0


def cmd_resolve_role(args):
    """Show the role for an address."""
    from app.core import resolve_role
    from app.db.config import DeskConfig

    config = DeskConfig.from_env()
    role = resolve_role(args.email, config.team_leader_email)
    print(f"{args.email}: {role.value}")
    return 0


def cmd_roster(args):
    """Print the configured roster."""
    from app.db.config import DeskConfig

    config = DeskConfig.from_env()
    print(f"Team leader: {config.team_leader_email}")
    for editor in config.roster:
        print(f"  {editor.name:<12} {editor.email}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="EditDesk Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    rollups_parser = subparsers.add_parser("rollups", help="Compute rollups from an order export")
    rollups_parser.add_argument("--orders", required=True, help="JSON file of orders")
    rollups_parser.add_argument("--email", help="Roll up a single editor")
    rollups_parser.add_argument("--json", action="store_true", help="Print JSON")

    role_parser = subparsers.add_parser("resolve-role", help="Show the role for an address")
    role_parser.add_argument("--email", required=True)

    subparsers.add_parser("roster", help="Print the configured roster")

    args = parser.parse_args(argv)

    commands = {
        "rollups": cmd_rollups,
        "resolve-role": cmd_resolve_role,
        "roster": cmd_roster,
    }

    if args.command not in commands:
        parser.print_help()
        return 1

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
