from datetime import datetime, timedelta, timezone
from functools import reduce
from typing import Dict, Optional, Tuple

from storefront.backend import Backend
from storefront.domain import TrackingEntry
from storefront.errors import CartError, Unauthenticated
from storefront.ftypes import Either, Maybe, attempt
from storefront.transforms import tracking_from_row


# ============ Лента отслеживания ============


async def fetch_tracking(
    backend: Backend, order_id: str, user_id: Optional[str]
) -> Either[CartError, Tuple[TrackingEntry, ...]]:
    """Записи отслеживания заказа по возрастанию времени"""
    if not user_id:
        return Either.left(Unauthenticated())
    rows = await attempt(
        "load tracking",
        lambda: backend.select("order_tracking", {"order_id": order_id}, order_by="timestamp"),
    )
    return rows.map(lambda found: tuple(map(tracking_from_row, found)))


def current_status(entries: Tuple[TrackingEntry, ...]) -> Maybe[str]:
    """Текущий статус - последняя по времени запись"""
    latest = reduce(
        lambda acc, e: e if acc is None or e.timestamp >= acc.timestamp else acc, entries, None
    )
    return Maybe.of(latest.status if latest else None)


def is_delivered(entries: Tuple[TrackingEntry, ...]) -> bool:
    return current_status(entries).get_or_else("") == "delivered"


# ============ Демонстрационные данные ============


def sample_tracking(order_id: str, now: datetime) -> Tuple[Dict, ...]:
    """Четыре шага доставки: оформлен, собирается, отправлен, доставлен"""
    steps = (
        ("ordered", "Order placed successfully", None, 5),
        ("processing", "Order is being prepared", "Warehouse - Mumbai", 4),
        ("shipped", "Package shipped via courier", "Mumbai Distribution Center", 2),
        ("delivered", "Package delivered successfully", "Customer Address", 0),
    )
    return tuple(
        {
            "order_id": order_id,
            "status": status,
            "description": description,
            "location": location,
            "timestamp": (now - timedelta(days=days_ago)).isoformat(),
        }
        for status, description, location, days_ago in steps
    )


async def seed_sample_tracking(
    backend: Backend, order_id: str, now: Optional[datetime] = None
) -> Either[CartError, Tuple[TrackingEntry, ...]]:
    if not order_id:
        raise ValueError("order_id is required")
    now = now or datetime.now(timezone.utc)

    async def insert_all():
        return [await backend.insert("order_tracking", row) for row in sample_tracking(order_id, now)]

    inserted = await attempt("seed tracking", insert_all)
    return inserted.map(lambda rows: tuple(map(tracking_from_row, rows)))
