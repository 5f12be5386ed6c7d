"""
events emitted by the engine and the notification inbox that consumes them.

the engine only knows the EventSink protocol. NotificationCenter is the
process-owned sink: created at startup, closed at shutdown, it turns events
into per-user notifications and hands each one to subscribed delivery
callbacks (push, email, ... live outside this repo).
"""

import itertools
import math
import threading
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Protocol, Union

from loguru import logger
from pydantic import BaseModel, Field

from models import utcnow


# ---------
# events
# ---------


class ReferralAdded(BaseModel):
    kind: Literal["referral_added"] = "referral_added"
    sponsor_id: int
    new_account: Dict[str, Any]


class EarningComputed(BaseModel):
    kind: Literal["earning_computed"] = "earning_computed"
    beneficiary_id: int
    amount: Decimal
    transaction_id: str
    is_direct: bool
    level: int
    purchaser_id: Optional[int] = None


class PurchaseCompleted(BaseModel):
    kind: Literal["purchase_completed"] = "purchase_completed"
    purchaser_id: int
    amount: Decimal
    product_label: str
    transaction_id: str


Event = Annotated[
    Union[ReferralAdded, EarningComputed, PurchaseCompleted],
    Field(discriminator="kind"),
]


class EventSink(Protocol):
    def emit(self, event: Event) -> Any: ...


class NullSink:
    """drops every event."""

    def emit(self, event: Event) -> None:
        return None


class RecordingSink:
    """keeps every event in order; handy for tests and dry runs."""

    def __init__(self) -> None:
        self.events: List[Any] = []

    def emit(self, event: Event) -> None:
        self.events.append(event)

    def of_kind(self, kind: str) -> List[Any]:
        return [e for e in self.events if e.kind == kind]


# ---------
# notifications
# ---------

Priority = Literal["low", "medium", "high"]

NOTIFICATION_TTL = timedelta(days=30)


class _NotificationBase(BaseModel):
    id: int
    recipient_id: int
    title: str = Field(..., max_length=100)
    message: str = Field(..., max_length=500)
    priority: Priority = "medium"
    is_read: bool = False
    is_delivered: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None


class EarningNotification(_NotificationBase):
    kind: Literal["earning"] = "earning"
    amount: Decimal
    transaction_id: str
    referral_type: Literal["direct", "indirect"]
    level: int


class ReferralNotification(_NotificationBase):
    kind: Literal["referral"] = "referral"
    new_referral_id: int
    referral_code: str


class PurchaseNotification(_NotificationBase):
    kind: Literal["purchase"] = "purchase"
    amount: Decimal
    product_name: str
    transaction_id: str


class SystemNotification(_NotificationBase):
    kind: Literal["system"] = "system"


Notification = Annotated[
    Union[EarningNotification, ReferralNotification, PurchaseNotification, SystemNotification],
    Field(discriminator="kind"),
]

Delivery = Callable[[Any], None]


class NotificationCenter:
    """in-process inbox + fan-out to delivery callbacks."""

    def __init__(self, ttl: timedelta = NOTIFICATION_TTL) -> None:
        self._ttl = ttl
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._inbox: Dict[int, List[Any]] = defaultdict(list)
        self._subscribers: List[Delivery] = []
        self._closed = False

    # lifecycle

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, delivery: Delivery) -> None:
        with self._lock:
            self._subscribers.append(delivery)

    def unsubscribe(self, delivery: Delivery) -> None:
        with self._lock:
            if delivery in self._subscribers:
                self._subscribers.remove(delivery)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._subscribers.clear()
        logger.info("Notification center closed")

    # producing

    def _common(self, recipient_id: int) -> Dict[str, Any]:
        now = utcnow()
        return {
            "id": next(self._ids),
            "recipient_id": recipient_id,
            "created_at": now,
            "expires_at": now + self._ttl,
        }

    def _build(self, event: Event):
        if isinstance(event, EarningComputed):
            referral_type = "direct" if event.is_direct else "indirect"
            return EarningNotification(
                **self._common(event.beneficiary_id),
                title=f"{referral_type.capitalize()} Referral Earnings!",
                message=(
                    f"You earned {event.amount:.2f} from your {referral_type} "
                    f"referral's purchase (Transaction: {event.transaction_id})"
                ),
                priority="high",
                amount=event.amount,
                transaction_id=event.transaction_id,
                referral_type=referral_type,
                level=event.level,
            )
        if isinstance(event, ReferralAdded):
            code = event.new_account.get("referral_code", "")
            return ReferralNotification(
                **self._common(event.sponsor_id),
                title="New Referral Added!",
                message=(
                    "Congratulations! You have a new direct referral: "
                    f"{event.new_account.get('username', '')} ({code})"
                ),
                new_referral_id=event.new_account["id"],
                referral_code=code,
            )
        if isinstance(event, PurchaseCompleted):
            return PurchaseNotification(
                **self._common(event.purchaser_id),
                title="Purchase Completed!",
                message=(
                    f"Your purchase of {event.product_label} for "
                    f"{event.amount:.2f} has been completed successfully."
                ),
                amount=event.amount,
                product_name=event.product_label,
                transaction_id=event.transaction_id,
            )
        raise TypeError(f"unsupported event: {event!r}")

    def _publish(self, notification) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("notification center is closed")
            self._live(notification.recipient_id)
            self._inbox[notification.recipient_id].append(notification)
            subscribers = list(self._subscribers)

        delivered = bool(subscribers)
        for delivery in subscribers:
            try:
                delivery(notification)
            except Exception:
                delivered = False
                logger.exception(
                    f"Delivery of notification {notification.id} "
                    f"to account {notification.recipient_id} failed"
                )
        notification.is_delivered = delivered

    def emit(self, event: Event):
        notification = self._build(event)
        self._publish(notification)
        return notification

    def notify_system(self, recipient_id: int, title: str, message: str) -> SystemNotification:
        notification = SystemNotification(
            **self._common(recipient_id),
            title=title,
            message=message,
            priority="low",
        )
        self._publish(notification)
        return notification

    # reading

    def _live(self, recipient_id: int) -> List[Any]:
        """drop expired notifications from the inbox; caller holds the lock."""
        inbox = self._inbox.get(recipient_id)
        if not inbox:
            return []
        now = utcnow()
        live = [n for n in inbox if n.expires_at is None or n.expires_at > now]
        if not live:
            del self._inbox[recipient_id]
        elif len(live) != len(inbox):
            self._inbox[recipient_id] = live
        return list(live)

    def list_for(
        self,
        recipient_id: int,
        page: int = 1,
        limit: int = 20,
        kind: Optional[str] = None,
    ) -> Dict[str, Any]:
        with self._lock:
            items = self._live(recipient_id)
        if kind is not None:
            items = [n for n in items if n.kind == kind]
        items.sort(key=lambda n: (n.created_at, n.id), reverse=True)

        total = len(items)
        skip = (page - 1) * limit
        return {
            "notifications": items[skip:skip + limit],
            "pagination": {
                "current_page": page,
                "total_pages": math.ceil(total / limit) if limit else 0,
                "total_notifications": total,
                "has_next": skip + limit < total,
                "has_prev": page > 1,
            },
        }

    def unread_count(self, recipient_id: int) -> int:
        with self._lock:
            return sum(1 for n in self._live(recipient_id) if not n.is_read)

    def mark_read(self, recipient_id: int, notification_ids: Optional[List[int]] = None) -> int:
        wanted = set(notification_ids) if notification_ids is not None else None
        changed = 0
        with self._lock:
            for n in self._live(recipient_id):
                if n.is_read:
                    continue
                if wanted is not None and n.id not in wanted:
                    continue
                n.is_read = True
                changed += 1
        return changed

    def delete(self, recipient_id: int, notification_id: int) -> bool:
        with self._lock:
            inbox = self._inbox.get(recipient_id, [])
            for i, n in enumerate(inbox):
                if n.id == notification_id:
                    del inbox[i]
                    return True
        return False

    def clear(self, recipient_id: int) -> int:
        with self._lock:
            removed = len(self._inbox.get(recipient_id, []))
            self._inbox.pop(recipient_id, None)
        return removed

    def stats(self, recipient_id: int) -> Dict[str, Any]:
        with self._lock:
            items = self._live(recipient_id)
        by_kind: Dict[str, int] = {}
        for n in items:
            by_kind[n.kind] = by_kind.get(n.kind, 0) + 1
        return {
            "total": len(items),
            "unread": sum(1 for n in items if not n.is_read),
            "by_kind": by_kind,
        }
