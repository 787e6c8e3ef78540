# storefront/ftypes.py
# Maybe и Either для результатов операций витрины.
# Ошибки - значения в левой ветке, исключения бэкенда превращаются в них на границе хранилищ.

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

from .errors import BackendError, PersistenceUnavailable

T = TypeVar("T")
U = TypeVar("U")
L = TypeVar("L")
R = TypeVar("R")


@dataclass(frozen=True)
class Maybe(Generic[T]):
    """
    Значение, которого может не быть (товар не найден, строки нет в корзине).
    Maybe.of(x) строит Nothing для None.
    """

    value: Optional[T]

    @staticmethod
    def some(value: T) -> "Maybe[T]":
        return Maybe(value)

    @staticmethod
    def nothing() -> "Maybe[Any]":
        return Maybe(None)

    @staticmethod
    def of(value: Optional[T]) -> "Maybe[T]":
        return Maybe(value)

    def is_some(self) -> bool:
        return self.value is not None

    def is_none(self) -> bool:
        return self.value is None

    def map(self, fn: Callable[[T], U]) -> "Maybe[U]":
        return Maybe.of(fn(self.value)) if self.is_some() else Maybe.nothing()

    def get_or_else(self, default: U) -> T | U:
        return self.value if self.is_some() else default

    def to_either(self, error: L) -> "Either[L, T]":
        """Nothing -> Left(error), Some(x) -> Right(x)"""
        return Either.right(self.value) if self.is_some() else Either.left(error)

    def __repr__(self) -> str:
        return f"Some({self.value!r})" if self.is_some() else "Nothing"


@dataclass(frozen=True)
class Either(Generic[L, R]):
    """
    Left - ошибка (CartError), Right - результат.
    Операции корзины и заказа всегда возвращают Either и не бросают CartError.
    """

    is_left: bool
    value: Union[L, R]

    @staticmethod
    def left(value: L) -> "Either[L, Any]":
        return Either(True, value)

    @staticmethod
    def right(value: R) -> "Either[Any, R]":
        return Either(False, value)

    @property
    def is_right(self) -> bool:
        return not self.is_left

    @property
    def error(self) -> Optional[L]:
        return self.value if self.is_left else None  # type: ignore[return-value]

    def map(self, fn: Callable[[R], U]) -> "Either[L, U]":
        return Either.right(fn(self.value)) if self.is_right else self  # type: ignore[return-value]

    def bind(self, fn: Callable[[R], "Either[L, U]"]) -> "Either[L, U]":
        return fn(self.value) if self.is_right else self  # type: ignore[return-value]

    def fold(self, on_left: Callable[[L], U], on_right: Callable[[R], U]) -> U:
        return on_left(self.value) if self.is_left else on_right(self.value)  # type: ignore[arg-type]

    def get_or_else(self, default: U) -> R | U:
        return self.value if self.is_right else default  # type: ignore[return-value]

    def __repr__(self) -> str:
        return f"Left({self.value!r})" if self.is_left else f"Right({self.value!r})"


async def attempt(
    operation: str, call: Callable[[], Awaitable[T]]
) -> Either[PersistenceUnavailable, T]:
    """
    Выполняет вызов бэкенда и переводит BackendError в Left(PersistenceUnavailable).
    Прочие исключения не перехватываются.
    """
    try:
        return Either.right(await call())
    except BackendError as exc:
        return Either.left(PersistenceUnavailable(operation, str(exc)))
