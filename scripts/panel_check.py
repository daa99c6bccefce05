from __future__ import annotations

import argparse
import asyncio
from datetime import datetime
import sys

from panelsync.core.errors import (
    NotImplementedForFamilyError,
    PanelAuthError,
    PanelConfigError,
    PanelNotFoundError,
    PanelSyncError,
    TransportError,
    TransportTimeoutError,
)
from panelsync.core.logging import configure_logging
from panelsync.domain.provisioning import DateRange
from panelsync.persistence.db import SessionLocal
from panelsync.providers.panels.http import close_panel_http_client
from panelsync.services.registry import check_panel_health, fetch_panel_stats


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Log in to a configured panel, refresh its health status and print user stats."
    )
    parser.add_argument("--panel", required=True, help="Panel id")
    parser.add_argument("--stats", action="store_true", help="Also fetch system stats")
    parser.add_argument("--start", help="ISO datetime; with --end, request date-ranged usage")
    parser.add_argument("--end", help="ISO datetime")
    return parser


def _format_error(exc: Exception) -> tuple[int, str]:
    if isinstance(exc, (PanelNotFoundError, PanelConfigError)):
        return 2, f"{exc.kind}: {exc}"
    if isinstance(exc, PanelAuthError):
        return 3, f"{exc.kind}: {exc}"
    if isinstance(exc, (TransportTimeoutError, TransportError)):
        return 4, f"{exc.kind}: {exc}"
    if isinstance(exc, NotImplementedForFamilyError):
        return 5, f"{exc.kind}: {exc}"
    if isinstance(exc, PanelSyncError):
        return 1, f"{exc.kind}: {exc}"
    return 1, f"internal_error: {exc}"


def _date_range(args: argparse.Namespace) -> DateRange | None:
    if not args.start and not args.end:
        return None
    if not (args.start and args.end):
        raise SystemExit("--start and --end must be given together")
    return DateRange(start=datetime.fromisoformat(args.start), end=datetime.fromisoformat(args.end))


async def _run(args: argparse.Namespace) -> int:
    date_range = _date_range(args)
    try:
        async with SessionLocal() as session:
            report = await check_panel_health(session, args.panel)
            print(
                f"panel={report.panel_name} family={report.family} status={report.health_status} "
                f"authenticated={report.authenticated}"
            )
            if report.error:
                print(f"{report.error_kind}: {report.error}", file=sys.stderr)
                return 3 if report.error_kind == PanelAuthError.kind else 4
            if args.stats or date_range is not None:
                stats = await fetch_panel_stats(session, args.panel, date_range=date_range)
                print(
                    f"users total={stats.total_users} active={stats.active_users} "
                    f"expired={stats.expired_users} limited={stats.limited_users} "
                    f"on_hold={stats.on_hold_users} online={stats.online_users}"
                )
                if stats.traffic_in_range is not None:
                    print(f"traffic_in_range_bytes={stats.traffic_in_range}")
    finally:
        await close_panel_http_client()
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except PanelSyncError as exc:
        code, message = _format_error(exc)
        print(message, file=sys.stderr)
        return code


if __name__ == "__main__":
    raise SystemExit(main())
