import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Hashable, Iterable, List, Tuple, TypeVar

from .errors import ConflictError

T = TypeVar("T")
R = TypeVar("R")

logger = logging.getLogger("shop.async")


# ============ Сериализация по ключу ============


class KeyedLock:
    """
    Очередь операций на ключ (user, product).
    Операции с одним ключом идут строго по порядку вызова,
    с разными ключами - параллельно. Неиспользуемые замки удаляются.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._holders: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    def is_busy(self, key: Hashable) -> bool:
        return key in self._holders

    def __len__(self) -> int:
        return len(self._locks)


# ============ Параллельная обработка "по возможности" ============


async def settle_each(
    items: Iterable[T], fn: Callable[[T], Awaitable[R]]
) -> List[Tuple[T, R]]:
    """
    Запускает fn для каждого элемента параллельно.
    Возвращает пары (элемент, результат) в исходном порядке.
    """
    items = list(items)
    results = await asyncio.gather(*(fn(item) for item in items))
    return list(zip(items, results))


async def retry_on_conflict(
    fn: Callable[[], Awaitable[T]], attempts: int = 3, backoff: float = 0.0
) -> T:
    """Повторяет read-then-write при ConflictError; последнюю ошибку пробрасывает"""
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except ConflictError as exc:
            if attempt >= attempts:
                raise
            logger.warning("[retry] conflict (%d/%d): %s", attempt, attempts, exc)
            await asyncio.sleep(backoff * attempt)
    raise ValueError("attempts must be >= 1")


# ============ Синхронная обёртка для UI ============


class LoopThread:
    """
    Фоновый event loop в отдельном потоке.
    Streamlit вызывает корутины синхронно, а замки и очереди сессии
    должны жить в одном и том же цикле.
    """

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self._thread.start()

    def run(self, coro: Awaitable[T], timeout: float = 30.0) -> T:
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def stop(self) -> None:
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)
