"""
Derivation desync diagnostics

A parent whose stored status differs from the status derived from its
sub-orders means the aggregation did not run with the sub-order write.
Desyncs are reported and logged, never corrected here: fixing the row would
hide the atomicity bug that produced it.
"""
from sqlalchemy.orm import Session
from marketplace_orders.models.order import ParentOrder, ParentOrderStatus
from marketplace_orders.models.schemas import (
    DesyncReport, DesyncScanResponse, OrderInspection, ParentOrderSummary, SubOrderResponse
)
from marketplace_orders.services.aggregation import derive_parent_status
from marketplace_orders.services.errors import store_errors
from marketplace_orders.services.order_service import OrderService
from opentelemetry import trace
from typing import Optional
import logging

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class DiagnosticsService:
    """Compare stored parent statuses against the aggregation rule"""

    @staticmethod
    def check_parent_order(parent: ParentOrder) -> DesyncReport:
        """Build the report for one parent order"""
        statuses = [suborder.status for suborder in parent.suborders]
        derived = derive_parent_status(statuses, parent.status)
        in_sync = derived == parent.status

        if not in_sync:
            logger.warning(
                f"Status desync on parent order {parent.order_number}: stored={parent.status.value}, "
                f"derived={derived.value}, suborders={[s.value for s in statuses]}"
            )

        return DesyncReport(
            parent_order_id=parent.id,
            order_number=parent.order_number,
            stored_status=parent.status,
            derived_status=derived,
            suborder_statuses=statuses,
            in_sync=in_sync,
            visible_in_live_queue=(
                parent.status == ParentOrderStatus.READY_FOR_PICKUP and parent.delivery_user_id is None
            ),
            created_at=parent.created_at
        )

    @staticmethod
    def find_desynced_orders(db: Session, limit: int = 20) -> DesyncScanResponse:
        """Scan the most recent parent orders"""
        with tracer.start_as_current_span("diagnostics.find_desynced_orders") as span:
            span.set_attribute("scan.limit", limit)

            with store_errors("desync scan"):
                parents = (
                    db.query(ParentOrder)
                    .order_by(ParentOrder.created_at.desc())
                    .limit(limit)
                    .all()
                )
                reports = [DiagnosticsService.check_parent_order(parent) for parent in parents]

            desynced = [report for report in reports if not report.in_sync]
            span.set_attribute("scan.desynced", len(desynced))
            if desynced:
                logger.error(f"{len(desynced)} of {len(reports)} recent parent orders are out of sync")
            else:
                logger.info(f"All {len(reports)} recent parent orders in sync")

            return DesyncScanResponse(
                scanned=len(reports),
                desynced=len(desynced),
                reports=desynced
            )

    @staticmethod
    def inspect_order(db: Session, order_number: str) -> Optional[OrderInspection]:
        """
        Resolve an order number as a sub-order and/or a parent order

        Shop dashboards show sub-order numbers, couriers see parent numbers;
        both are accepted.
        """
        suborder = OrderService.get_suborder_by_number(db, order_number)
        parent = OrderService.get_parent_order_by_number(db, order_number)

        if suborder is None and parent is None:
            return None
        if parent is None:
            parent = suborder.parent

        return OrderInspection(
            order_number=order_number,
            suborder=SubOrderResponse.model_validate(suborder) if suborder else None,
            parent=ParentOrderSummary.model_validate(parent) if parent else None,
            report=DiagnosticsService.check_parent_order(parent) if parent else None
        )
