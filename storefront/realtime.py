import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple

from .backend import Backend, Identity
from .cart import CartStore
from .domain import ChangeEvent
from .errors import PersistenceUnavailable
from .products import ProductStore
from .transforms import product_from_row

logger = logging.getLogger("shop.realtime")

Handler = Callable[[ChangeEvent], Awaitable[None]]


@dataclass(frozen=True)
class EventBus:
    """
    Иммутабельная таблица подписчиков: (таблица, тип события) -> обработчик.
    "*" в типе события - любые события таблицы.
    """

    subscribers: Tuple[Tuple[str, str, Handler], ...] = ()

    def subscribe(self, table: str, event_type: str, handler: Handler) -> "EventBus":
        return EventBus(subscribers=self.subscribers + ((table, event_type, handler),))

    def handlers_for(self, event: ChangeEvent) -> Tuple[Handler, ...]:
        return tuple(
            handler
            for table, event_type, handler in self.subscribers
            if table == event.table and event_type in ("*", event.event_type)
        )

    async def publish(self, event: ChangeEvent) -> int:
        """Последовательно вызывает обработчики; возвращает их число"""
        handlers = self.handlers_for(event)
        for handler in handlers:
            await handler(event)
        return len(handlers)


class ReconciliationListener:
    """
    Push-уведомления хранилища -> патчи ProductStore / CartStore.

    События складываются во входную очередь и разбираются по одному.
    Каждое событие перечитывает затронутую строку: слушатель только
    ускоряет сходимость, источником правды остаются прямые чтения.
    """

    def __init__(
        self,
        backend: Backend,
        products: ProductStore,
        cart: CartStore,
        identity: Identity,
    ):
        self._backend = backend
        self._products = products
        self._cart = cart
        self._identity = identity
        self._queue: Optional[asyncio.Queue] = None
        self._unsubscribe: List[Callable[[], None]] = []
        self._task: Optional[asyncio.Task] = None
        self.processed = 0
        self.bus = (
            EventBus()
            .subscribe("products", "*", self._on_product)
            .subscribe("cart", "*", self._on_cart_line)
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def attach(self) -> None:
        """Подписывается на каналы, не запуская фоновый разбор очереди"""
        if self._queue is not None:
            return
        self._queue = asyncio.Queue()
        self._unsubscribe.append(self._backend.subscribe("products", self._queue))
        user_id = self._identity.current_user_id()
        if user_id:
            self._unsubscribe.append(
                self._backend.subscribe("cart", self._queue, {"user_id": user_id})
            )

    def start(self) -> None:
        self.attach()
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._consume())

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._queue = None

    async def process_pending(self) -> int:
        """Разбирает всё, что уже лежит в очереди; возвращает число событий"""
        if self._queue is None:
            return 0
        handled = 0
        while not self._queue.empty():
            await self._dispatch(self._queue.get_nowait())
            handled += 1
        return handled

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            await self._dispatch(event)

    async def _dispatch(self, event: ChangeEvent) -> None:
        try:
            await self.bus.publish(event)
        except Exception:
            logger.exception("change event %s/%s not applied", event.table, event.event_type)
        self.processed += 1

    # ============ Обработчики ============

    async def _on_product(self, event: ChangeEvent) -> None:
        product_id = event.row.get("id")
        if not product_id:
            return
        if event.event_type == "DELETE":
            self._products.discard(product_id)
            return
        reloaded = await self._products.load(product_id)
        if reloaded.is_left and isinstance(reloaded.error, PersistenceUnavailable) and event.new:
            # перечитать не удалось - берём строку из события
            pushed = product_from_row(event.new)
            if self._products.get(product_id).is_some() and pushed.stock is not None:
                self._products.apply_stock_delta(product_id, pushed.stock)
            else:
                self._products.put(pushed, newest=True)

    async def _on_cart_line(self, event: ChangeEvent) -> None:
        row = event.row
        if row.get("id") and row.get("product_id"):
            await self._cart.reload_line(str(row["product_id"]), str(row["id"]))
