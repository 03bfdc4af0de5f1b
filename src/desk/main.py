"""CLI entry point for the service desk sync core.

Usage:
    python -m src.desk.main --email me@example.com --password ... requests
    python -m src.desk.main --email ... --password ... requests --status pending --search bosch
    python -m src.desk.main --email ... --password ... thread 42
    python -m src.desk.main --email ... --password ... notifications --mark-all-read
    python -m src.desk.main --email ... --password ... watch --seconds 120
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from src.common.exceptions import ServiceDeskError
from src.common.logging import setup_logging
from src.gateway.auth import SessionHandle
from src.gateway.client import SupabaseGateway
from src.gateway.email import EmailNotifier
from src.gateway.storage import MediaStorage

from . import status as workflow
from .repository import STATUS_FILTERS, filter_requests
from .service import ServiceDesk

logger = logging.getLogger(__name__)


def _print_requests(desk: ServiceDesk, search: str, status_filter: str) -> None:
    unread = desk.unread_map
    rows = filter_requests(desk.requests, search, status_filter)
    if not rows:
        print("No requests.")
        return
    for req in rows:
        marker = "*" if unread.get(req.id) else " "
        print(
            f"{marker} #{req.short_id:<6} {req.created_at:%Y-%m-%d}  "
            f"{workflow.label(req.status):<18} {req.device}  ({req.full_name})"
        )


def _print_thread(desk: ServiceDesk) -> None:
    for note in desk.thread:
        author = note.author.full_name if note.author else "Unknown"
        attachment = f" [{note.media_type.value}: {note.media_url}]" if note.media_url else ""
        print(f"{note.created_at:%Y-%m-%d %H:%M}  {author}: {note.note}{attachment}")


def _print_notifications(desk: ServiceDesk) -> None:
    print(f"{desk.feed.unread_count} unread")
    for n in desk.notifications:
        flag = " " if n.is_read else "*"
        print(f"{flag} [{n.type.value}] {n.title}: {n.message}")


async def _run(args: argparse.Namespace) -> int:
    gateway = SupabaseGateway()
    session = SessionHandle(gateway)
    await session.start()
    if session.profile is None:
        await session.sign_in(args.email, args.password)

    email = EmailNotifier()
    desk = ServiceDesk(gateway, session, storage=MediaStorage(gateway), email=email)
    try:
        await desk.start()
        requests_status = desk.sync_status()
        if requests_status.error:
            logger.error("Could not load requests: %s", requests_status.error)
            return 1

        if args.command == "requests":
            _print_requests(desk, args.search, args.status)
        elif args.command == "thread":
            await desk.open_thread(args.request_id)
            if args.say:
                await desk.send_note(args.say)
            _print_thread(desk)
        elif args.command == "notifications":
            if args.mark_all_read:
                await desk.mark_all_read()
            _print_notifications(desk)
        elif args.command == "watch":
            logger.info("Watching for changes for %ds (Ctrl+C to stop)", args.seconds)
            await asyncio.sleep(args.seconds)
            _print_requests(desk, "", "all")
        return 0
    finally:
        await desk.dispose()
        await gateway.drain()
        await email.drain()
        email.close()
        session.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Repair service desk sync client")
    parser.add_argument("--email", default=os.getenv("DESK_EMAIL", ""), help="Account email")
    parser.add_argument("--password", default=os.getenv("DESK_PASSWORD", ""), help="Account password")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p_requests = sub.add_parser("requests", help="List service requests")
    p_requests.add_argument("--search", default="", help="Filter by name/brand/model")
    p_requests.add_argument("--status", default="all", choices=STATUS_FILTERS)

    p_thread = sub.add_parser("thread", help="Show a request's note thread")
    p_thread.add_argument("request_id")
    p_thread.add_argument("--say", default="", help="Append a note before printing")

    p_notifications = sub.add_parser("notifications", help="Show the notification feed")
    p_notifications.add_argument("--mark-all-read", action="store_true")

    p_watch = sub.add_parser("watch", help="Stay subscribed and log push events")
    p_watch.add_argument("--seconds", type=int, default=60)

    args = parser.parse_args()
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        code = asyncio.run(_run(args))
    except ServiceDeskError as e:
        logger.error("%s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
