#!/usr/bin/env python3
"""
Check parent order statuses against their sub-orders
Run: python -m marketplace_orders.diagnose [--limit N] [--order NUMBER]

Exits 1 when a desync is found, 2 when the order is unknown.
"""
import argparse
import sys

from marketplace_orders.common_logging import setup_logging
from marketplace_orders.config import settings
from marketplace_orders.db import database
from marketplace_orders.models.schemas import DesyncReport
from marketplace_orders.services.diagnostics import DiagnosticsService


def print_report(report: DesyncReport):
    marker = "✅" if report.in_sync else "🚨"
    print(f"{marker} {report.order_number} ({report.parent_order_id})")
    print(f"   stored:  {report.stored_status.value}")
    print(f"   derived: {report.derived_status.value}")
    print(f"   suborders: {', '.join(s.value for s in report.suborder_statuses) or '-'}")
    print(f"   in live queue: {'yes' if report.visible_in_live_queue else 'no'}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Detect parent order status desync")
    parser.add_argument("--limit", type=int, default=settings.diagnostics_recent_limit,
                        help="How many recent parent orders to scan")
    parser.add_argument("--order", help="Inspect a single parent or sub-order number")
    parser.add_argument("--database-url", default=settings.database_url)
    args = parser.parse_args(argv)

    setup_logging(settings.service_name, settings.log_level, log_format="text")
    database.init_database(args.database_url)

    db = database.SessionLocal()
    try:
        if args.order:
            inspection = DiagnosticsService.inspect_order(db, args.order)
            if inspection is None:
                print(f"❌ No order with number {args.order}")
                return 2
            if inspection.suborder:
                print(f"Sub-order {inspection.suborder.order_number}: {inspection.suborder.status.value}")
            print_report(inspection.report)
            return 0 if inspection.report.in_sync else 1

        scan = DiagnosticsService.find_desynced_orders(db, limit=args.limit)
        print("=" * 60)
        print(f"Scanned {scan.scanned} parent orders, {scan.desynced} out of sync")
        print("=" * 60)
        for report in scan.reports:
            print_report(report)
        return 1 if scan.desynced else 0
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
