import logging
import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import replace
from decimal import Decimal
from typing import AsyncIterator, Dict, Iterable, Optional, Tuple

from .async_ops import KeyedLock, settle_each
from .backend import Backend, Identity
from .domain import CartLine, CartRow, LineState
from .errors import (
    CartError,
    InsufficientStock,
    LineNotFound,
    OutOfStock,
    Unauthenticated,
)
from .ftypes import Either, attempt
from .products import ProductStore
from .transforms import cart_item_count, cart_total, find_line, join_cart, line_from_row

logger = logging.getLogger("shop.cart")

CART_CONFLICT_KEY = ("user_id", "product_id")


# ============ Машина состояний строки корзины ============

TRANSITIONS: Dict[Tuple[LineState, str], LineState] = {
    (LineState.ABSENT, "add"): LineState.PENDING_CREATE,
    (LineState.PENDING_CREATE, "confirm"): LineState.PERSISTED,
    (LineState.PENDING_CREATE, "revert"): LineState.ABSENT,
    (LineState.PERSISTED, "update"): LineState.PENDING_UPDATE,
    (LineState.PERSISTED, "delete"): LineState.PENDING_DELETE,
    (LineState.PENDING_UPDATE, "confirm"): LineState.PERSISTED,
    (LineState.PENDING_UPDATE, "revert"): LineState.PERSISTED,
    (LineState.PENDING_DELETE, "confirm"): LineState.ABSENT,
    (LineState.PENDING_DELETE, "revert"): LineState.PERSISTED,
}


class IllegalTransition(Exception):
    def __init__(self, state: LineState, action: str):
        super().__init__(f"{action!r} is not allowed from {state.value!r}")
        self.state = state
        self.action = action


def next_state(state: LineState, action: str) -> LineState:
    try:
        return TRANSITIONS[(state, action)]
    except KeyError:
        raise IllegalTransition(state, action) from None


class _LocalPatch:
    """
    Оптимистичная правка одной строки: снимок до, применение,
    подтверждение или откат. Все переходы идут через TRANSITIONS.
    """

    def __init__(self, store: "CartStore", product_id: str):
        self._store = store
        self.product_id = product_id
        self.before: Optional[CartLine] = store._lines.get(product_id)
        self.applied: Optional[CartLine] = None

    def apply(self, action: str, line: CartLine) -> CartLine:
        origin = self.before.state if self.before else LineState.ABSENT
        self.applied = replace(line, state=next_state(origin, action))
        self._store._write(self.product_id, self.applied)
        return self.applied

    def confirm(self, line: Optional[CartLine] = None) -> Optional[CartLine]:
        state = next_state(self.applied.state, "confirm")
        final = None if state is LineState.ABSENT else replace(line, state=state)
        self._store._write(self.product_id, final)
        return final

    def revert(self) -> None:
        state = next_state(self.applied.state, "revert")
        final = None if state is LineState.ABSENT else replace(self.before, state=state)
        self._store._write(self.product_id, final)


class CartStore:
    """
    Корзина одного пользователя сессии.

    Каждая операция проверяет остаток до обращения к хранилищу,
    применяет изменение локально (оптимистично) и откатывает его при сбое.
    Операции над одной парой (пользователь, товар) сериализуются,
    поэтому поздний ответ хранилища не перетирает более новое намерение.
    """

    def __init__(self, backend: Backend, products: ProductStore, identity: Identity):
        self._backend = backend
        self._products = products
        self._identity = identity
        self._lines: Dict[str, CartLine] = {}
        self._aliases: Dict[str, str] = {}
        self._locks = KeyedLock()
        self._closed = False
        self.status = "idle"  # idle | loading | ready | degraded
        self.last_error: Optional[CartError] = None

    # ============ Чтение ============

    def lines(self) -> Tuple[CartLine, ...]:
        return tuple(self._lines.values())

    def snapshot(self) -> Tuple[CartRow, ...]:
        return join_cart(self._lines.values(), self._products.as_mapping())

    def item_count(self) -> int:
        return cart_item_count(self.snapshot())

    def total(self) -> Decimal:
        return cart_total(self.snapshot())

    def line_for(self, product_id: str) -> Optional[CartLine]:
        return self._lines.get(product_id)

    @property
    def pending_keys(self) -> int:
        return len(self._locks)

    # ============ Внутреннее ============

    def _user(self) -> Either[CartError, str]:
        user_id = self._identity.current_user_id()
        return Either.right(user_id) if user_id else Either.left(Unauthenticated())

    def _write(self, product_id: str, line: Optional[CartLine]) -> None:
        if self._closed:
            return
        if line is None:
            self._lines.pop(product_id, None)
        else:
            self._lines[product_id] = line

    def _resolve(self, line_id: str) -> Optional[CartLine]:
        return find_line(self._lines.values(), self._aliases.get(line_id, line_id))

    def _forget(self, line_id: str) -> None:
        self._aliases = {tmp: real for tmp, real in self._aliases.items() if real != line_id}

    async def _recover(self, patch: _LocalPatch, user_id: str) -> None:
        """После сбоя записи: полная перечитка корзины, если и она не удалась - откат"""
        reloaded = await self._refetch(user_id, owned=patch.product_id)
        if reloaded.is_left:
            patch.revert()

    # ============ Операции ============

    async def add_item(self, product_id: str) -> Either[CartError, CartLine]:
        user = self._user()
        if user.is_left:
            return user
        user_id = user.value

        async with self._locks.hold((user_id, product_id)):
            stock = await self._products.cached_stock(product_id)
            if stock.is_left:
                return stock
            if stock.value <= 0:
                return Either.left(OutOfStock(product_id))

            current = self._lines.get(product_id)
            quantity = current.quantity if current else 0
            if quantity >= stock.value:
                return Either.left(InsufficientStock(product_id, stock.value))

            patch = _LocalPatch(self, product_id)
            if current is None:
                placeholder = CartLine(f"tmp-{uuid.uuid4().hex}", user_id, product_id, 1)
                optimistic = patch.apply("add", placeholder)
            else:
                optimistic = patch.apply("update", replace(current, quantity=quantity + 1))

            row = {"user_id": user_id, "product_id": product_id, "quantity": quantity + 1}
            saved = await attempt(
                "add to cart",
                lambda: self._backend.upsert("cart", row, on_conflict=CART_CONFLICT_KEY),
            )
            if saved.is_left:
                logger.error("add %s failed: %s", product_id, saved.error.reason)
                await self._recover(patch, user_id)
                return saved

            line = patch.confirm(line_from_row(saved.value))
            if current is None:
                self._aliases[optimistic.id] = line.id
            logger.info("cart %s: %s x%d", user_id, product_id, line.quantity)
            return Either.right(line)

    async def set_quantity(
        self, line_id: str, new_quantity: int, product_id: str
    ) -> Either[CartError, Optional[CartLine]]:
        if new_quantity < 1:
            removed = await self.remove_item(line_id)
            return removed.map(lambda _: None)

        user = self._user()
        if user.is_left:
            return user

        async with self._locks.hold((user.value, product_id)):
            current = self._resolve(line_id)
            if current is None or current.product_id != product_id:
                return Either.left(LineNotFound(line_id))

            patch = _LocalPatch(self, product_id)
            patch.apply("update", replace(current, quantity=new_quantity))

            # кэш мог устареть: проверяем по хранилищу
            stock = await self._products.fetch_stock(product_id)
            if stock.is_left:
                patch.revert()
                return stock
            if new_quantity > stock.value:
                patch.revert()
                return Either.left(InsufficientStock(product_id, stock.value))

            saved = await attempt(
                "update cart",
                lambda: self._backend.update("cart", current.id, {"quantity": new_quantity}),
            )
            if saved.is_left:
                logger.error("quantity update %s failed: %s", current.id, saved.error.reason)
                patch.revert()
                return saved
            return Either.right(patch.confirm(line_from_row(saved.value)))

    async def remove_item(self, line_id: str) -> Either[CartError, str]:
        user = self._user()
        if user.is_left:
            return user
        line = self._resolve(line_id)
        if line is None:
            return Either.left(LineNotFound(line_id))

        async with self._locks.hold((user.value, line.product_id)):
            current = self._resolve(line_id)
            if current is None:
                return Either.left(LineNotFound(line_id))

            patch = _LocalPatch(self, current.product_id)
            patch.apply("delete", current)
            deleted = await attempt(
                "remove from cart", lambda: self._backend.delete("cart", {"id": current.id})
            )
            if deleted.is_left:
                logger.error("remove %s failed: %s", current.id, deleted.error.reason)
                patch.revert()
                return deleted
            patch.confirm()
            self._forget(current.id)
            return Either.right(current.id)

    @asynccontextmanager
    async def settled(self, user_id: str) -> AsyncIterator[Tuple[str, ...]]:
        """
        Дожидается операций в полёте над всеми строками корзины и держит
        их замки до выхода. Внутри snapshot() содержит только подтверждённые
        количества. Отдаёт товары, чьи замки удерживаются.
        """
        held = []
        async with AsyncExitStack() as stack:
            # пока ждали, могли появиться новые строки
            while True:
                waiting = sorted(set(self._lines) - set(held))
                if not waiting:
                    break
                for product_id in waiting:
                    await stack.enter_async_context(self._locks.hold((user_id, product_id)))
                    held.append(product_id)
            yield tuple(held)

    async def clear(self, owned: Iterable[str] = ()) -> Either[CartError, int]:
        """
        Удаляет все строки пользователя (после оформления заказа).
        owned - товары, чьи замки держит вызывающий: их строки снимаются тоже.
        """
        user = self._user()
        if user.is_left:
            return user
        deleted = await attempt(
            "clear cart", lambda: self._backend.delete("cart", {"user_id": user.value})
        )
        if deleted.is_left:
            return deleted
        owned = set(owned)
        for product_id in list(self._lines):
            if product_id in owned or not self._locks.is_busy((user.value, product_id)):
                self._write(product_id, None)
        self._aliases.clear()
        return deleted

    async def refresh(self) -> Either[CartError, Tuple[CartLine, ...]]:
        """Авторитетная перечитка корзины; строки с операцией в полёте не трогаем"""
        user = self._user()
        if user.is_left:
            self._lines = {}
            return user
        return await self._refetch(user.value)

    async def _refetch(
        self, user_id: str, owned: Optional[str] = None
    ) -> Either[CartError, Tuple[CartLine, ...]]:
        self.status = "loading"
        rows = await attempt(
            "load cart",
            lambda: self._backend.select("cart", {"user_id": user_id}, order_by="created_at"),
        )
        if rows.is_left:
            logger.error("cart reload failed: %s", rows.error.reason)
            self.status = "degraded"
            self.last_error = rows.error
            return rows

        fresh = {line.product_id: line for line in map(line_from_row, rows.value)}
        merged: Dict[str, CartLine] = {}
        for product_id in list(fresh) + [k for k in self._lines if k not in fresh]:
            if product_id != owned and self._locks.is_busy((user_id, product_id)):
                if product_id in self._lines:
                    merged[product_id] = self._lines[product_id]
            elif product_id in fresh:
                merged[product_id] = fresh[product_id]
        if not self._closed:
            self._lines = merged

        missing = [pid for pid in fresh if self._products.get(pid).is_none()]
        for pid, loaded in await settle_each(missing, self._products.load):
            if loaded.is_left:
                logger.warning("cart product %s not loaded: %s", pid, loaded.error.message)

        self.status = "ready"
        self.last_error = None
        return Either.right(tuple(merged.values()))

    async def reload_line(self, product_id: str, line_id: str) -> None:
        """
        Точка входа для push-уведомлений: перечитывает одну строку
        под тем же замком, что и пользовательские операции.
        """
        user_id = self._identity.current_user_id()
        if not user_id:
            return
        async with self._locks.hold((user_id, product_id)):
            current = self._lines.get(product_id)
            if self._closed or (current and current.state is not LineState.PERSISTED):
                return
            row = await attempt("reload cart line", lambda: self._backend.get("cart", line_id))
            if row.is_left:
                logger.warning("cart line %s reload failed: %s", line_id, row.error.reason)
                return
            if row.value is None:
                if current is not None and current.id == line_id:
                    self._write(product_id, None)
                return
            if row.value.get("user_id") != user_id:
                return
            self._write(product_id, line_from_row(row.value))
        if self._products.get(product_id).is_none():
            await self._products.load(product_id)

    def detach(self) -> None:
        """Уход со страницы: незавершённые операции доработают, не трогая состояние"""
        self._closed = True
