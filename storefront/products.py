import logging
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from .backend import Backend
from .domain import Product
from .errors import CartError, ProductNotFound, StockUnavailable
from .ftypes import Either, Maybe, attempt
from .transforms import product_from_row

logger = logging.getLogger("shop.products")


class ProductStore:
    """
    Кэш каталога: id -> Product.
    Чтение почти всегда из кэша; остаток патчится оптимистично
    и из push-уведомлений, авторитетным остаётся хранилище.
    """

    def __init__(self, backend: Backend):
        self._backend = backend
        self._products: Dict[str, Product] = {}
        self._order: List[str] = []
        self.status = "idle"  # idle | loading | ready | degraded
        self.last_error: Optional[CartError] = None

    @property
    def degraded(self) -> bool:
        return self.status == "degraded"

    def list(self) -> Tuple[Product, ...]:
        return tuple(self._products[pid] for pid in self._order)

    def get(self, product_id: str) -> Maybe[Product]:
        return Maybe.of(self._products.get(product_id))

    def as_mapping(self) -> Dict[str, Product]:
        return dict(self._products)

    def put(self, product: Product, newest: bool = False) -> None:
        if product.id not in self._products:
            if newest:
                self._order.insert(0, product.id)
            else:
                self._order.append(product.id)
        self._products[product.id] = product

    def discard(self, product_id: str) -> None:
        if self._products.pop(product_id, None) is not None:
            self._order.remove(product_id)

    def apply_stock_delta(self, product_id: str, new_stock: int) -> bool:
        """
        Идемпотентно записывает остаток в кэш.
        Побеждает последнее пришедшее значение. False - товара нет в кэше.
        """
        if new_stock < 0:
            raise ValueError(f"stock must be >= 0, got {new_stock}")
        product = self._products.get(product_id)
        if product is None:
            return False
        if product.stock != new_stock:
            self._products[product_id] = replace(product, stock=new_stock)
        return True

    async def refresh(self) -> Either[CartError, Tuple[Product, ...]]:
        """Полная перезагрузка каталога; при сбое кэш сохраняется, статус degraded"""
        self.status = "loading"
        result = await attempt(
            "load products",
            lambda: self._backend.select("products", order_by="created_at", descending=True),
        )
        if result.is_left:
            logger.error("products refresh failed: %s", result.error.reason)
            self.status = "degraded"
            self.last_error = result.error
            return result

        products = tuple(map(product_from_row, result.value))
        self._products = {p.id: p for p in products}
        self._order = [p.id for p in products]
        self.status = "ready"
        self.last_error = None
        unknown = [p.id for p in products if p.stock is None]
        if unknown:
            logger.warning("products without stock value: %s", ", ".join(unknown))
        return Either.right(products)

    async def load(self, product_id: str) -> Either[CartError, Product]:
        """Авторитетное чтение одного товара с обновлением кэша"""
        result = await attempt("load product", lambda: self._backend.get("products", product_id))
        if result.is_left:
            logger.warning("product %s reload failed: %s", product_id, result.error.reason)
            return result
        if result.value is None:
            self.discard(product_id)
            return Either.left(ProductNotFound(product_id))
        product = product_from_row(result.value)
        self.put(product, newest=True)
        return Either.right(product)

    async def fetch_stock(self, product_id: str) -> Either[CartError, int]:
        def require_stock(product: Product) -> Either[CartError, int]:
            if product.stock is None:
                return Either.left(StockUnavailable(product_id))
            return Either.right(product.stock)

        return (await self.load(product_id)).bind(require_stock)

    async def cached_stock(self, product_id: str) -> Either[CartError, int]:
        """Остаток из кэша; если товара нет или остаток неизвестен - читаем хранилище"""
        product = self._products.get(product_id)
        if product is not None and product.stock is not None:
            return Either.right(product.stock)
        return await self.fetch_stock(product_id)

    async def set_stock(self, product_id: str, new_stock: int) -> Either[CartError, Product]:
        """Оптимистичная запись остатка; при сбое - полная перезагрузка каталога"""
        self.apply_stock_delta(product_id, new_stock)
        result = await attempt(
            "update stock",
            lambda: self._backend.update("products", product_id, {"stock": new_stock}),
        )
        if result.is_left:
            logger.error("stock update for %s failed: %s", product_id, result.error.reason)
            await self.refresh()
            return result
        product = product_from_row(result.value)
        self.put(product)
        return Either.right(product)
