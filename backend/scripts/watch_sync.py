#!/usr/bin/env python3
"""
Trigger an email sync for one user and print progress until it finishes.

Authenticates with a JWT (--token / $INBOX_TASKS_TOKEN) or the static API key
(--api-key / $API_KEY, mapped to API_KEY_USER_ID on the server).

Usage (from repo root):
  python backend/scripts/watch_sync.py --base-url http://localhost:8000 --token <jwt>
  python backend/scripts/watch_sync.py --api-key <key> --max-emails 25 --all
  python backend/scripts/watch_sync.py --token <jwt> --status-only
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

# Ensure backend app is importable when run as script from backend or project root
_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)

import httpx

from app.config import settings
from app.schemas import SyncStatus
from app.sync_client import SyncSubscriptionManager

logger = logging.getLogger("watch_sync")


def _print_status(status: SyncStatus) -> None:
    line = (
        f"[{status.progress:3d}%] {status.current_step or '-'}"
        f"  emails {status.processed_emails}+{status.emails_failed}/{status.total_emails}"
        f"  tasks {status.tasks_created}"
    )
    if status.error:
        line += f"  error: {status.error}"
    print(line, flush=True)


def _headers(args: argparse.Namespace) -> dict:
    if args.token:
        return {"Authorization": f"Bearer {args.token}"}
    if args.api_key:
        return {settings.api_key_header: args.api_key}
    return {}


async def _run(args: argparse.Namespace) -> int:
    async with httpx.AsyncClient(base_url=args.base_url, headers=_headers(args), timeout=args.timeout) as http:
        manager = SyncSubscriptionManager(
            http,
            poll_interval_s=args.interval,
            retry_interval_s=max(args.interval * 2, settings.poll_retry_interval_s),
        )
        if args.status_only:
            _print_status(await manager.check_status())
            return 0

        await manager.check_status()
        last = {"value": None}

        def on_change(status: SyncStatus) -> None:
            key = (status.progress, status.current_step, status.processed_emails, status.emails_failed, status.error)
            if key != last["value"]:
                last["value"] = key
                _print_status(status)

        unsubscribe = manager.subscribe(on_change)
        try:
            accepted = await manager.trigger_sync(max_emails=args.max_emails, only_unread=not args.all)
            if not accepted:
                reason = manager.current_status.error or "a sync is already running"
                print(f"Sync not started: {reason}", file=sys.stderr)
                return 1
            final = await manager.wait()
        finally:
            unsubscribe()
            manager.stop()

    if final.error:
        return 1
    print(f"Done: {final.tasks_created} task(s) created from {final.total_emails} email(s).")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Trigger an email sync and watch its progress.")
    parser.add_argument("--base-url", default=os.getenv("INBOX_TASKS_URL", "http://localhost:8000"))
    parser.add_argument("--token", default=os.getenv("INBOX_TASKS_TOKEN"), help="JWT from /api/login")
    parser.add_argument("--api-key", default=os.getenv("API_KEY"), help="Static API key")
    parser.add_argument("--max-emails", type=int, default=None, help="1-50 (server default when omitted)")
    parser.add_argument("--all", action="store_true", help="Include read emails (default: unread only)")
    parser.add_argument("--interval", type=float, default=settings.poll_interval_s, help="Poll interval seconds")
    parser.add_argument("--timeout", type=float, default=10.0, help="HTTP timeout seconds")
    parser.add_argument("--status-only", action="store_true", help="Print current status and exit")
    args = parser.parse_args()

    if not args.token and not args.api_key:
        print("Provide --token or --api-key (or INBOX_TASKS_TOKEN / API_KEY).", file=sys.stderr)
        return 2
    if args.max_emails is not None and not 1 <= args.max_emails <= settings.sync_max_emails_limit:
        print(f"--max-emails must be between 1 and {settings.sync_max_emails_limit}", file=sys.stderr)
        return 2

    logging.basicConfig(level=logging.WARNING, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
