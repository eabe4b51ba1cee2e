#!/usr/bin/env python3
"""
Daily digest sender.

Recomputes today's snapshot (sends, replies, meetings, pending approvals)
from the state store and posts it to the approval channel. Safe to run more
than once a day; each run sends a fresh snapshot.

Usage:
    python execution/send_daily_digest.py
    python execution/send_daily_digest.py --date 2026-01-20 --dry-run
"""

import argparse
import asyncio
import sys
from datetime import date
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from core.notifications import get_notification_manager, shutdown_notification_manager

console = Console()


def render(stats: dict) -> None:
    table = Table(title=f"Daily digest {stats['date']}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Outreach sent", str(stats["outreach_sent"]))
    table.add_row("Responses", f"{stats['responses']} ({stats['response_rate']}%)")
    table.add_row("Meetings booked", str(stats["meetings_booked"]))
    table.add_row("Pending approvals", str(stats["pending_approvals"]))
    console.print(table)

    if stats["top_accounts"]:
        lines = "\n".join(f"- {a['name']}: {a['metric']}" for a in stats["top_accounts"])
        console.print(Panel(lines, title="Top accounts", border_style="cyan"))


async def run(day, dry_run: bool) -> dict:
    manager = get_notification_manager()
    try:
        if dry_run:
            return manager.gather_daily_stats(day)
        return await manager.send_daily_digest(day)
    finally:
        await shutdown_notification_manager()


def main():
    load_dotenv()

    parser = argparse.ArgumentParser(description="Send the daily activity digest")
    parser.add_argument("--date", type=date.fromisoformat, default=None, help="Day to summarize (YYYY-MM-DD)")
    parser.add_argument("--dry-run", action="store_true", help="Print the snapshot without sending")
    args = parser.parse_args()

    stats = asyncio.run(run(args.date, args.dry_run))
    render(stats)
    if args.dry_run:
        console.print("[yellow]Dry run - digest not sent[/yellow]")


if __name__ == "__main__":
    main()
