from __future__ import annotations

import argparse
import asyncio
import sys

from panelsync.core.errors import PanelSyncError
from panelsync.core.logging import configure_logging
from panelsync.domain.provisioning import DiagnosticReport, ProvisionResult
from panelsync.persistence.db import SessionLocal
from panelsync.providers.panels.http import close_panel_http_client
from panelsync.services.diagnostics import diagnose, repair


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Explain a subscription's provisioning state; optionally repair it."
    )
    parser.add_argument("--subscription", required=True, help="Subscription id")
    parser.add_argument(
        "--repair",
        action="store_true",
        help="Re-provision with relaxed panel selection after printing the report",
    )
    return parser


def _print_report(report: DiagnosticReport) -> None:
    print(f"subscription={report.subscription_id} valid={report.is_valid}")
    for issue, recommendation in zip(report.issues, report.recommendations):
        print(f"- issue: {issue}")
        print(f"  fix:   {recommendation}")
    for panel in report.available_panels:
        print(f"  panel {panel.name} family={panel.family} health={panel.health_status}")
    last = report.last_attempt
    if last is not None:
        outcome = "ok" if last.success else f"{last.error_kind}: {last.error_message}"
        print(f"last attempt #{last.id} {last.operation} on {last.panel_name}: {outcome}")


def _print_result(result: ProvisionResult) -> None:
    if result.success:
        print(f"repaired on {result.panel_name}: {result.access_url} (expires {result.expire_at})")
    else:
        print(f"repair failed {result.error_kind}: {result.error}", file=sys.stderr)


async def _run(args: argparse.Namespace) -> int:
    try:
        async with SessionLocal() as session:
            report = await diagnose(session, args.subscription)
            _print_report(report)
            if not args.repair:
                return 0 if report.is_valid else 2
            result = await repair(session, args.subscription)
            _print_result(result)
            return 0 if result.success else 3
    finally:
        await close_panel_http_client()


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except PanelSyncError as exc:
        print(f"{exc.kind}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
