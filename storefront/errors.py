"""
Ошибки витрины.

Два слоя:
- исключения бэкенда (BackendError и наследники) - их бросает хранилище;
- значения ошибок (CartError и наследники) - их возвращают операции
  в левой ветке Either, до UI они доходят без исключений.
"""

from dataclasses import dataclass
from typing import Optional


# ============ Исключения бэкенда ============


class BackendError(Exception):
    """Сбой вызова внешнего хранилища"""


class RowNotFound(BackendError):
    pass


class ConflictError(BackendError):
    """Условие compare-and-set не выполнено"""


# ============ Значения ошибок (Left) ============


@dataclass(frozen=True)
class CartError:
    @property
    def message(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class Unauthenticated(CartError):
    @property
    def message(self) -> str:
        return "Войдите, чтобы продолжить"


@dataclass(frozen=True)
class OutOfStock(CartError):
    product_id: str

    @property
    def message(self) -> str:
        return f"Товара {self.product_id} нет в наличии"


@dataclass(frozen=True)
class InsufficientStock(CartError):
    product_id: str
    available: int

    @property
    def message(self) -> str:
        return f"Доступно только {self.available} шт."


@dataclass(frozen=True)
class StockUnavailable(CartError):
    """У товара нет значения остатка - отказываем явно, а не считаем его нулём"""

    product_id: str

    @property
    def message(self) -> str:
        return f"Остаток товара {self.product_id} неизвестен"


@dataclass(frozen=True)
class ProductNotFound(CartError):
    product_id: str

    @property
    def message(self) -> str:
        return f"Товар {self.product_id} не найден"


@dataclass(frozen=True)
class LineNotFound(CartError):
    line_id: str

    @property
    def message(self) -> str:
        return f"Строка корзины {self.line_id} не найдена"


@dataclass(frozen=True)
class EmptyCart(CartError):
    @property
    def message(self) -> str:
        return "Корзина пуста"


@dataclass(frozen=True)
class OrderCreationFailed(CartError):
    reason: str = ""

    @property
    def message(self) -> str:
        return f"Не удалось оформить заказ: {self.reason}"


@dataclass(frozen=True)
class PersistenceUnavailable(CartError):
    operation: str
    reason: str = ""

    @property
    def message(self) -> str:
        return f"Хранилище недоступно ({self.operation}): {self.reason}"


@dataclass(frozen=True)
class SellerNotApproved(CartError):
    user_id: Optional[str] = None

    @property
    def message(self) -> str:
        return "Добавлять товары могут только одобренные продавцы"


@dataclass(frozen=True)
class InvalidProduct(CartError):
    reason: str

    @property
    def message(self) -> str:
        return f"Некорректный товар: {self.reason}"


@dataclass(frozen=True)
class InvalidPaymentProof(CartError):
    reason: str

    @property
    def message(self) -> str:
        return f"Некорректный скриншот оплаты: {self.reason}"


@dataclass(frozen=True)
class InvalidProfile(CartError):
    reason: str

    @property
    def message(self) -> str:
        return f"Некорректный профиль: {self.reason}"
