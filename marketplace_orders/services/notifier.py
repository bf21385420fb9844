"""
Courier notifier - tell opted-in couriers when an order is ready for pickup

Listens to sub-order changes on the change feed. The feed callback only
schedules work; lookups and Telegram calls happen on a worker thread.
"""
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from sqlalchemy.orm import sessionmaker
from marketplace_orders.models.order import ParentOrder, SubOrderStatus
from marketplace_orders.services.change_feed import INSERT, UPDATE, ChangeEvent, ChangeFeed, Subscription
from opentelemetry import trace
import httpx
import logging

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(frozen=True)
class NotificationSettings:
    """Notification options, passed to the notifier instead of read globally"""
    enabled: bool = False
    bot_token: Optional[str] = None
    courier_chat_ids: Tuple[str, ...] = ()
    timeout: float = 10.0
    api_base_url: str = "https://api.telegram.org"

    @classmethod
    def from_settings(cls, settings) -> "NotificationSettings":
        return cls(
            enabled=settings.notifications_enabled,
            bot_token=settings.telegram_bot_token,
            courier_chat_ids=tuple(settings.courier_chat_ids),
            timeout=settings.notification_timeout
        )


class CourierNotifier:
    """
    Send "order ready" messages to couriers over Telegram

    Features:
    - Triggered by a sub-order entering READY_FOR_PICKUP
    - Skips parents that already have a courier
    - Never blocks the change feed publisher
    """

    def __init__(
        self,
        notification_settings: NotificationSettings,
        session_factory: sessionmaker,
        client: Optional[httpx.Client] = None,
        executor: Optional[ThreadPoolExecutor] = None
    ):
        self.settings = notification_settings
        self.session_factory = session_factory
        self.client = client or httpx.Client(timeout=notification_settings.timeout)
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="courier-notifier")
        self._subscription: Optional[Subscription] = None

        self.enabled = bool(
            notification_settings.enabled
            and notification_settings.bot_token
            and notification_settings.courier_chat_ids
        )
        if self.enabled:
            logger.info(f"CourierNotifier initialized for {len(notification_settings.courier_chat_ids)} courier(s)")
        else:
            logger.warning("Courier notifications disabled (no bot token, chat ids, or switched off)")

        # Statistics
        self.notifications_sent = 0
        self.notifications_failed = 0
        self.notifications_skipped = 0

    def is_enabled(self) -> bool:
        """Check if courier notifications are enabled"""
        return self.enabled

    def start(self, feed: ChangeFeed):
        """Subscribe to sub-order changes"""
        self._subscription = feed.subscribe("courier-notifications", "orders", self._on_change)

    def stop(self):
        """Unsubscribe and release the worker and HTTP client"""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        # Sends already running finish before the client closes; queued ones are dropped
        self._executor.shutdown(wait=True, cancel_futures=True)
        self.client.close()

    @staticmethod
    def is_ready_transition(change: ChangeEvent) -> bool:
        """A sub-order just became READY_FOR_PICKUP"""
        new = change.new or {}
        if new.get("status") != SubOrderStatus.READY_FOR_PICKUP.value:
            return False
        if change.event_type == INSERT:
            return True
        if change.event_type == UPDATE:
            return (change.old or {}).get("status") != SubOrderStatus.READY_FOR_PICKUP.value
        return False

    def _on_change(self, change: ChangeEvent) -> Optional[Future]:
        if not self.enabled or not self.is_ready_transition(change):
            return None
        return self._executor.submit(
            self._run_notify,
            change.new["parent_order_id"],
            change.new.get("order_number")
        )

    def _run_notify(self, parent_order_id: str, suborder_number: Optional[str]) -> bool:
        try:
            return self.notify_ready(parent_order_id, suborder_number)
        except Exception as e:
            self.notifications_failed += 1
            logger.error(f"Ready notification for parent order {parent_order_id} failed: {e}", exc_info=True)
            return False

    def notify_ready(self, parent_order_id: str, suborder_number: Optional[str] = None) -> bool:
        """
        Notify couriers about a ready sub-order if its parent is unassigned

        Returns:
            True if every courier was notified, False otherwise
        """
        with tracer.start_as_current_span("courier_notifier.notify_ready") as span:
            span.set_attribute("order.id", parent_order_id)

            db = self.session_factory()
            try:
                parent = db.query(ParentOrder).filter(ParentOrder.id == parent_order_id).first()
                if parent is None or parent.delivery_user_id is not None:
                    self.notifications_skipped += 1
                    logger.info(f"No ready notification for parent order {parent_order_id}: missing or assigned")
                    return False
                text = self.format_message(parent, suborder_number)
            finally:
                db.close()

            return self.broadcast(text)

    @staticmethod
    def format_message(parent: ParentOrder, suborder_number: Optional[str] = None) -> str:
        """Plain-text message body"""
        lines = [
            f"📦 Order {parent.order_number} has a pickup ready",
            f"Status: {parent.status.value}",
            f"Delivery to: {parent.delivery_address}",
            f"Delivery fee: {parent.total_delivery_fee:.2f}",
        ]
        if suborder_number:
            lines.insert(1, f"Shop order: {suborder_number}")
        if parent.route_km is not None:
            lines.append(f"Route: {parent.route_km:.1f} km")
        return "\n".join(lines)

    def broadcast(self, text: str) -> bool:
        """Send one message to every opted-in courier chat"""
        url = f"{self.settings.api_base_url}/bot{self.settings.bot_token}/sendMessage"
        all_sent = True

        for chat_id in self.settings.courier_chat_ids:
            try:
                response = self.client.post(url, json={"chat_id": chat_id, "text": text})
                response.raise_for_status()
                self.notifications_sent += 1
            except httpx.HTTPError as e:
                self.notifications_failed += 1
                all_sent = False
                logger.error(f"Telegram send to chat {chat_id} failed: {e}")

        return all_sent

    def get_stats(self) -> Dict:
        """Get notification statistics"""
        return {
            "enabled": self.enabled,
            "notifications_sent": self.notifications_sent,
            "notifications_failed": self.notifications_failed,
            "notifications_skipped": self.notifications_skipped,
        }
