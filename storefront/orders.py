import asyncio
import logging
from typing import Tuple

from .async_ops import retry_on_conflict, settle_each
from .backend import Backend, Identity
from .cart import CartStore
from .domain import Order, OrderItem
from .errors import (
    BackendError,
    CartError,
    EmptyCart,
    InsufficientStock,
    OrderCreationFailed,
    PersistenceUnavailable,
    ProductNotFound,
    StockUnavailable,
    Unauthenticated,
)
from .ftypes import Either, attempt
from .products import ProductStore
from .transforms import floored_stock, freeze_items, order_from_row, order_row, stock_violations

logger = logging.getLogger("shop.orders")


class OrderBuilder:
    """
    Оформление заказа из снимка корзины.

    Порядок: дождаться операций корзины в полёте -> создать заказ ->
    списать остатки -> очистить корзину.
    Это НЕ транзакция. Списание - "по возможности": сбой по одной позиции
    логируется и не отменяет заказ, поэтому при высокой конкуренции
    возможна перепродажа. Худший исход - заказ с устаревшим остатком
    или непустая корзина, но никогда не пустая корзина без заказа.
    """

    def __init__(
        self,
        backend: Backend,
        cart: CartStore,
        products: ProductStore,
        identity: Identity,
        stock_retries: int = 3,
    ):
        self._backend = backend
        self._cart = cart
        self._products = products
        self._identity = identity
        self._stock_retries = stock_retries
        self._placing = asyncio.Lock()

    async def place_order(self) -> Either[CartError, Order]:
        user_id = self._identity.current_user_id()
        if not user_id:
            return Either.left(Unauthenticated())

        async with self._placing, self._cart.settled(user_id) as held:
            rows = self._cart.snapshot()
            if not rows:
                return Either.left(EmptyCart())

            unknown = next((r for r in rows if not r.known_product), None)
            if unknown is not None:
                return Either.left(ProductNotFound(unknown.product_id))
            violation = next(iter(stock_violations(rows)), None)
            if violation is not None:
                return Either.left(InsufficientStock(violation.product_id, violation.stock))
            for row in rows:
                if row.stock is None:
                    logger.warning("ordering %s with unknown stock", row.product_id)

            items = freeze_items(rows)
            created = await attempt(
                "create order", lambda: self._backend.insert("orders", order_row(user_id, items))
            )
            if created.is_left:
                logger.error("order creation failed: %s", created.error.reason)
                return Either.left(OrderCreationFailed(created.error.reason))

            order = order_from_row(created.value)
            logger.info("order created: %s total=%s", order.id, order.total)

            await self._decrement_stock(order.items)

            cleared = await self._cart.clear(owned=held)
            if cleared.is_left:
                logger.warning("order %s placed but cart not cleared: %s", order.id, cleared.error.message)
            return Either.right(order)

    async def _decrement_stock(self, items: Tuple[OrderItem, ...]) -> None:
        for item, outcome in await settle_each(items, self._decrement_one):
            if outcome.is_left:
                logger.error("stock not decremented for %s: %s", item.product_id, outcome.error.message)

    async def _decrement_one(self, item: OrderItem) -> Either[CartError, int]:
        async def read_then_write() -> int:
            row = await self._backend.get("products", item.product_id)
            if row is None or row.get("stock") is None:
                raise LookupError(item.product_id)
            current = int(row["stock"])
            new_stock = floored_stock(current, item.quantity)
            await self._backend.update(
                "products", item.product_id, {"stock": new_stock}, expected={"stock": current}
            )
            logger.info("stock %s: %d -> %d", item.product_id, current, new_stock)
            return new_stock

        try:
            new_stock = await retry_on_conflict(read_then_write, attempts=self._stock_retries)
        except LookupError:
            return Either.left(StockUnavailable(item.product_id))
        except (ValueError, TypeError) as exc:
            logger.error("malformed stock for %s: %s", item.product_id, exc)
            return Either.left(StockUnavailable(item.product_id))
        except BackendError as exc:
            return Either.left(PersistenceUnavailable("decrement stock", str(exc)))
        self._products.apply_stock_delta(item.product_id, new_stock)
        return Either.right(new_stock)


class OrderHistory:
    def __init__(self, backend: Backend, identity: Identity):
        self._backend = backend
        self._identity = identity

    async def list_orders(self) -> Either[CartError, Tuple[Order, ...]]:
        """Заказы пользователя, новые сверху"""
        user_id = self._identity.current_user_id()
        if not user_id:
            return Either.left(Unauthenticated())
        rows = await attempt(
            "load orders",
            lambda: self._backend.select(
                "orders", {"user_id": user_id}, order_by="created_at", descending=True
            ),
        )
        return rows.map(lambda found: tuple(map(order_from_row, found)))
