import json
from decimal import Decimal
from functools import reduce
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple

from .domain import (
    CartLine,
    CartRow,
    LineState,
    Order,
    OrderItem,
    PaymentProof,
    Product,
    SellerProfile,
    TrackingEntry,
    UserProfile,
)


def load_seed(path: str) -> Tuple[Dict, ...]:
    """Загружает seed.json и возвращает строки таблицы products"""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return tuple(dict(p) for p in data.get("products", []))


def to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value or 0))


# ============ Строки хранилища -> доменные объекты ============


def product_from_row(row: Mapping) -> Product:
    """
    Строка products -> Product.
    Отсутствующий остаток остаётся None: подставлять 0 нельзя,
    иначе валидная покупка будет заблокирована.
    """
    stock = row.get("stock")
    return Product(
        id=str(row["id"]),
        name=str(row.get("name") or ""),
        price=to_decimal(row.get("price")),
        image_url=str(row.get("image_url") or ""),
        stock=int(stock) if stock is not None else None,
        seller_id=row.get("seller_id"),
        description=str(row.get("description") or ""),
        category=str(row.get("category") or ""),
        created_at=str(row.get("created_at") or ""),
    )


def line_from_row(row: Mapping) -> CartLine:
    return CartLine(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        product_id=str(row["product_id"]),
        quantity=int(row.get("quantity") or 1),
        state=LineState.PERSISTED,
    )


def order_from_row(row: Mapping) -> Order:
    items = tuple(
        OrderItem(
            product_id=str(i["product_id"]),
            name=str(i.get("name", "")),
            price=to_decimal(i.get("price")),
            quantity=int(i["quantity"]),
            image_url=str(i.get("image_url", "")),
        )
        for i in row.get("items", [])
    )
    return Order(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        items=items,
        total=to_decimal(row.get("amount")),
        status=str(row.get("status") or "pending"),
        created_at=str(row.get("created_at") or ""),
    )


def proof_from_row(row: Mapping) -> PaymentProof:
    return PaymentProof(
        id=str(row["id"]),
        order_id=str(row["order_id"]),
        user_id=str(row["user_id"]),
        amount=to_decimal(row.get("payment_amount")),
        uploaded_file=str(row.get("uploaded_file") or ""),
        status=str(row.get("status") or "pending"),
        created_at=str(row.get("created_at") or ""),
    )


def tracking_from_row(row: Mapping) -> TrackingEntry:
    return TrackingEntry(
        id=str(row["id"]),
        order_id=str(row["order_id"]),
        status=str(row["status"]),
        timestamp=str(row["timestamp"]),
        location=row.get("location"),
        description=row.get("description"),
    )


def seller_from_row(row: Mapping) -> SellerProfile:
    return SellerProfile(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        business_name=row.get("business_name"),
        business_address=row.get("business_address"),
        is_approved=bool(row.get("is_approved")),
        created_at=str(row.get("created_at") or ""),
    )


def user_profile_from_row(row: Mapping) -> UserProfile:
    return UserProfile(
        id=str(row["id"]),
        name=str(row.get("name") or ""),
        email=str(row.get("email") or ""),
        mobile=str(row.get("mobile") or ""),
        address=str(row.get("address") or ""),
        created_at=str(row.get("created_at") or ""),
    )


# ============ Корзина: проекция и свёртки ============


def join_cart(
    lines: Iterable[CartLine], products: Mapping[str, Product]
) -> Tuple[CartRow, ...]:
    """Строки корзины + витринные поля товара; удаляемые строки скрыты"""

    def to_row(line: CartLine) -> CartRow:
        product = products.get(line.product_id)
        return CartRow(
            line_id=line.id,
            product_id=line.product_id,
            name=product.name if product else "",
            price=product.price if product else Decimal("0"),
            image_url=product.image_url if product else "",
            stock=product.stock if product else None,
            quantity=line.quantity,
            state=line.state,
            known_product=product is not None,
        )

    visible = filter(lambda l: l.state is not LineState.PENDING_DELETE, lines)
    return tuple(map(to_row, visible))


def cart_item_count(rows: Iterable[CartRow]) -> int:
    return reduce(lambda acc, r: acc + r.quantity, rows, 0)


def cart_total(rows: Iterable[CartRow]) -> Decimal:
    return reduce(lambda acc, r: acc + r.subtotal, rows, Decimal("0"))


def stock_violations(rows: Iterable[CartRow]) -> Tuple[CartRow, ...]:
    """Строки, которые блокируют оформление: количество больше известного остатка"""
    return tuple(r for r in rows if r.stock is not None and r.quantity > r.stock)


# ============ Заказ ============


def freeze_items(rows: Iterable[CartRow]) -> Tuple[OrderItem, ...]:
    """Снимок позиций заказа: имя, цена и картинка фиксируются сейчас"""
    return tuple(
        OrderItem(
            product_id=r.product_id,
            name=r.name,
            price=r.price,
            quantity=r.quantity,
            image_url=r.image_url,
        )
        for r in rows
    )


def order_total(items: Iterable[OrderItem]) -> Decimal:
    return reduce(lambda acc, i: acc + i.price * i.quantity, items, Decimal("0"))


def order_row(user_id: str, items: Tuple[OrderItem, ...]) -> Dict:
    return {
        "user_id": user_id,
        "amount": order_total(items),
        "status": "pending",
        "quantity": sum(i.quantity for i in items),
        "items": [
            {
                "product_id": i.product_id,
                "name": i.name,
                "price": i.price,
                "quantity": i.quantity,
                "image_url": i.image_url,
            }
            for i in items
        ],
    }


def floored_stock(current: int, ordered: int) -> int:
    return max(0, current - ordered)


# ============ Замыкания-фильтры каталога ============


def by_price_range(min_price: Decimal, max_price: Decimal) -> Callable[[Product], bool]:
    return lambda p: min_price <= p.price <= max_price


def by_name(query: str) -> Callable[[Product], bool]:
    """Поиск по подстроке в названии и описании, без учёта регистра"""
    needle = (query or "").strip().lower()
    return lambda p: needle in p.name.lower() or needle in p.description.lower()


def in_stock() -> Callable[[Product], bool]:
    return lambda p: p.stock is None or p.stock > 0


def filter_products(
    products: Iterable[Product], *predicates: Callable[[Product], bool]
) -> Tuple[Product, ...]:
    return tuple(p for p in products if all(pred(p) for pred in predicates))


def find_line(lines: Iterable[CartLine], line_id: str) -> Optional[CartLine]:
    return next((l for l in lines if l.id == line_id), None)


SORT_KEYS: Dict[str, Callable[[Product], object]] = {
    "name": lambda p: p.name.lower(),
    "price-low": lambda p: p.price,
    "price-high": lambda p: -p.price,
}


def sort_products(products: Iterable[Product], sort_by: str = "newest") -> Tuple[Product, ...]:
    """Сортировка каталога; "newest" и неизвестный ключ - порядок загрузки"""
    key = SORT_KEYS.get(sort_by)
    return tuple(sorted(products, key=key)) if key else tuple(products)


def max_price(products: Iterable[Product]) -> Decimal:
    return reduce(lambda acc, p: max(acc, p.price), products, Decimal("0"))
