import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Dict, Optional, Tuple

from .backend import Backend, Identity
from .cart import CartStore
from .config import Settings
from .domain import CartLine, CartRow, Order, Product
from .errors import CartError
from .ftypes import Either
from .orders import OrderBuilder, OrderHistory
from .products import ProductStore
from .realtime import ReconciliationListener

logger = logging.getLogger("shop.session")


@dataclass(frozen=True)
class OperationStatus:
    loading: bool = False
    error: Optional[CartError] = None


class OperationTracker:
    """Состояние загрузки и последняя ошибка по каждой операции (для UI)"""

    def __init__(self):
        self._in_flight: Dict[str, int] = {}
        self._errors: Dict[str, Optional[CartError]] = {}

    def status(self, operation: str) -> OperationStatus:
        return OperationStatus(
            loading=self._in_flight.get(operation, 0) > 0,
            error=self._errors.get(operation),
        )

    async def track(self, operation: str, call: Awaitable[Either]) -> Either:
        self._in_flight[operation] = self._in_flight.get(operation, 0) + 1
        try:
            result = await call
        finally:
            self._in_flight[operation] -= 1
        self._errors[operation] = result.error
        if result.is_left:
            logger.info("%s rejected: %s", operation, result.error.message)
        return result


class StorefrontSession:
    """
    Фасад одной логической сессии: владеет каталогом, корзиной,
    оформлением заказа и слушателем уведомлений. Глобального
    состояния нет - на каждую сессию свой экземпляр.
    """

    def __init__(self, backend: Backend, identity: Identity, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.identity = identity
        self.backend = backend
        self.products = ProductStore(backend)
        self.cart = CartStore(backend, self.products, identity)
        self.orders = OrderBuilder(
            backend, self.cart, self.products, identity, stock_retries=self.settings.stock_retries
        )
        self.history = OrderHistory(backend, identity)
        self.listener = ReconciliationListener(backend, self.products, self.cart, identity)
        self.tracker = OperationTracker()

    async def open(self, live: bool = True) -> None:
        """
        Загружает каталог и корзину, подписывается на уведомления.
        live=False - без фонового разбора очереди (см. sync()).
        """
        await self.tracker.track("load products", self.products.refresh())
        if self.identity.current_user_id():
            await self.tracker.track("load cart", self.cart.refresh())
        if live:
            self.listener.start()
        else:
            self.listener.attach()

    async def sync(self) -> int:
        return await self.listener.process_pending()

    async def close(self) -> None:
        await self.listener.stop()
        self.cart.detach()

    def status(self, operation: str) -> OperationStatus:
        return self.tracker.status(operation)

    # ============ Каталог ============

    def list_products(self) -> Tuple[Product, ...]:
        return self.products.list()

    # ============ Корзина ============

    async def add_item(self, product_id: str) -> Either[CartError, CartLine]:
        return await self.tracker.track("add item", self.cart.add_item(product_id))

    async def set_quantity(
        self, line_id: str, new_quantity: int, product_id: str
    ) -> Either[CartError, Optional[CartLine]]:
        return await self.tracker.track(
            "set quantity", self.cart.set_quantity(line_id, new_quantity, product_id)
        )

    async def remove_item(self, line_id: str) -> Either[CartError, str]:
        return await self.tracker.track("remove item", self.cart.remove_item(line_id))

    def snapshot(self) -> Tuple[CartRow, ...]:
        return self.cart.snapshot()

    def item_count(self) -> int:
        return self.cart.item_count()

    def total(self) -> Decimal:
        return self.cart.total()

    # ============ Заказы ============

    async def place_order(self) -> Either[CartError, Order]:
        return await self.tracker.track("place order", self.orders.place_order())

    async def list_orders(self) -> Either[CartError, Tuple[Order, ...]]:
        return await self.tracker.track("load orders", self.history.list_orders())


class SessionRegistry:
    """
    Сессии вкладок UI по ключу вкладки. Вкладка, не появлявшаяся
    дольше ttl секунд, считается брошенной: её сессия закрывается,
    подписки на хранилище снимаются.
    """

    def __init__(self, ttl: float):
        self.ttl = ttl
        self._sessions: Dict[str, Tuple[StorefrontSession, float]] = {}
        self._mutex = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, key: str, now: float) -> Optional[StorefrontSession]:
        """Сессия вкладки с отметкой активности"""
        with self._mutex:
            entry = self._sessions.get(key)
            if entry is None:
                return None
            self._sessions[key] = (entry[0], now)
            return entry[0]

    def put(self, key: str, session: StorefrontSession, now: float) -> None:
        with self._mutex:
            self._sessions[key] = (session, now)

    async def drop(self, key: str) -> None:
        with self._mutex:
            entry = self._sessions.pop(key, None)
        if entry is not None:
            await entry[0].close()

    async def expire(self, now: float) -> int:
        """Закрывает брошенные сессии; возвращает их число"""
        with self._mutex:
            stale = [k for k, (_, seen) in self._sessions.items() if now - seen > self.ttl]
            closing = [self._sessions.pop(k)[0] for k in stale]
        for session in closing:
            await session.close()
        if closing:
            logger.info("closed %d abandoned sessions", len(closing))
        return len(closing)
