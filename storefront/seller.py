import logging
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from .backend import Backend, Identity
from .domain import Product, SellerProfile
from .errors import CartError, InvalidProduct, SellerNotApproved, Unauthenticated
from .ftypes import Either, Maybe, attempt
from .products import ProductStore
from .transforms import product_from_row, seller_from_row

logger = logging.getLogger("shop.seller")


def validate_product(data: Mapping) -> Either[CartError, dict]:
    """Проверка формы товара продавца: имя, цена >= 0, целый остаток >= 0"""
    name = str(data.get("name") or "").strip()
    if not name:
        return Either.left(InvalidProduct("name is required"))
    try:
        price = Decimal(str(data.get("price")))
    except (InvalidOperation, ValueError):
        return Either.left(InvalidProduct("price must be a number"))
    if not price.is_finite() or price < 0:
        return Either.left(InvalidProduct("price must be >= 0"))
    stock = data.get("stock")
    if isinstance(stock, bool) or not isinstance(stock, int) or stock < 0:
        return Either.left(InvalidProduct("stock must be an integer >= 0"))
    return Either.right(
        {
            "name": name,
            "description": str(data.get("description") or ""),
            "price": price,
            "image_url": str(data.get("image_url") or ""),
            "stock": stock,
            "category": str(data.get("category") or ""),
        }
    )


class SellerService:
    """Онбординг продавца. Одобрение профиля делает администратор вне системы."""

    def __init__(self, backend: Backend, identity: Identity, products: ProductStore):
        self._backend = backend
        self._identity = identity
        self._products = products
        self.profile: Optional[SellerProfile] = None

    async def fetch_profile(self) -> Either[CartError, Maybe[SellerProfile]]:
        user_id = self._identity.current_user_id()
        if not user_id:
            self.profile = None
            return Either.left(Unauthenticated())
        rows = await attempt(
            "load seller profile",
            lambda: self._backend.select("seller_profiles", {"user_id": user_id}),
        )
        if rows.is_left:
            return rows
        self.profile = seller_from_row(rows.value[0]) if rows.value else None
        return Either.right(Maybe.of(self.profile))

    async def create_profile(
        self, business_name: str, business_address: str
    ) -> Either[CartError, SellerProfile]:
        user_id = self._identity.current_user_id()
        if not user_id:
            return Either.left(Unauthenticated())
        row = {
            "user_id": user_id,
            "business_name": business_name,
            "business_address": business_address,
            "is_approved": False,
        }
        created = await attempt(
            "create seller profile",
            lambda: self._backend.upsert("seller_profiles", row, on_conflict=("user_id",)),
        )
        if created.is_left:
            return created
        self.profile = seller_from_row(created.value)
        logger.info("seller profile %s created, waiting for approval", self.profile.id)
        return Either.right(self.profile)

    def _approved_seller(self) -> Either[CartError, str]:
        user_id = self._identity.current_user_id()
        if not user_id:
            return Either.left(Unauthenticated())
        if self.profile is None or self.profile.user_id != user_id or not self.profile.is_approved:
            return Either.left(SellerNotApproved(user_id))
        return Either.right(user_id)

    async def add_product(self, data: Mapping) -> Either[CartError, Product]:
        seller = self._approved_seller()
        if seller.is_left:
            return seller
        form = validate_product(data)
        if form.is_left:
            return form
        created = await attempt(
            "add product",
            lambda: self._backend.insert("products", {**form.value, "seller_id": seller.value}),
        )
        if created.is_left:
            return created
        product = product_from_row(created.value)
        self._products.put(product, newest=True)
        logger.info("seller %s added product %s", seller.value, product.id)
        return Either.right(product)

    async def restock(self, product_id: str, new_stock: int) -> Either[CartError, Product]:
        seller = self._approved_seller()
        if seller.is_left:
            return seller
        if new_stock < 0:
            return Either.left(InvalidProduct("stock must be >= 0"))
        owned = self._products.get(product_id).map(lambda p: p.seller_id == seller.value)
        if not owned.get_or_else(False):
            return Either.left(SellerNotApproved(seller.value))
        return await self._products.set_stock(product_id, new_stock)
