import sys
import os

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import asyncio
from decimal import Decimal

import pytest

from storefront.backend import Identity, InMemoryBackend
from storefront.errors import (
    EmptyCart,
    InsufficientStock,
    OrderCreationFailed,
    ProductNotFound,
    Unauthenticated,
)
from storefront.orders import OrderHistory
from storefront.service import StorefrontSession

SEED = os.path.join(os.path.dirname(__file__), "..", "data", "seed.json")


@pytest.fixture
def backend():
    return InMemoryBackend.from_seed(SEED)


async def opened(backend, user_id="u1"):
    session = StorefrontSession(backend, Identity(user_id))
    await session.open(live=False)
    return session


async def stock_of(backend, product_id):
    return (await backend.get("products", product_id))["stock"]


@pytest.mark.asyncio
async def test_empty_cart_makes_no_calls(backend):
    """Пустая корзина: отказ без единого обращения к хранилищу"""
    session = await opened(backend)
    calls = len(backend.calls)
    result = await session.place_order()
    assert result.error == EmptyCart()
    assert len(backend.calls) == calls


@pytest.mark.asyncio
async def test_unauthenticated(backend):
    session = await opened(backend, user_id=None)
    assert (await session.place_order()).error == Unauthenticated()


@pytest.mark.asyncio
async def test_place_order(backend):
    session = await opened(backend)
    await session.add_item("p1")
    await session.add_item("p1")
    await session.add_item("p3")

    result = await session.place_order()
    order = result.value
    assert order.total == Decimal("209.97")
    assert order.status == "pending"
    assert {(i.product_id, i.quantity) for i in order.items} == {("p1", 2), ("p3", 1)}

    assert await stock_of(backend, "p1") == 10
    assert await stock_of(backend, "p3") == 19
    assert session.products.get("p1").value.stock == 10

    assert session.snapshot() == ()
    assert [r for r in backend.rows("cart") if r["user_id"] == "u1"] == []
    assert len(backend.rows("orders")) == 1


@pytest.mark.asyncio
async def test_order_items_are_frozen(backend):
    """Цена в заказе фиксируется в момент оформления"""
    session = await opened(backend)
    await session.add_item("p2")
    order = (await session.place_order()).value

    await backend.update("products", "p2", {"price": Decimal("1.00")})
    history = (await session.list_orders()).value
    assert history[0].items[0].price == Decimal("299.99")
    assert history[0].items[0].name == "Smart Watch"
    assert history[0].id == order.id


@pytest.mark.asyncio
async def test_checkout_blocked_by_known_stock(backend):
    session = await opened(backend)
    await session.add_item("p4")
    await session.add_item("p4")
    await backend.update("products", "p4", {"stock": 1})
    await session.sync()

    result = await session.place_order()
    assert result.error == InsufficientStock("p4", 1)
    assert backend.rows("orders") == []
    assert session.item_count() == 2


@pytest.mark.asyncio
async def test_checkout_blocked_by_unknown_product(backend):
    backend.seed("cart", [{"user_id": "u1", "product_id": "ghost", "quantity": 1}])
    session = await opened(backend)
    result = await session.place_order()
    assert result.error == ProductNotFound("ghost")
    assert backend.rows("orders") == []


@pytest.mark.asyncio
async def test_checkout_allows_unknown_stock(backend):
    backend.seed("products", [{"id": "px", "name": "Gift card", "price": 10}])
    backend.seed("cart", [{"user_id": "u1", "product_id": "px", "quantity": 3}])
    session = await opened(backend)
    result = await session.place_order()
    assert result.value.total == Decimal("30")


@pytest.mark.asyncio
async def test_order_creation_failure_keeps_cart(backend):
    session = await opened(backend)
    await session.add_item("p1")
    backend.fail_next("insert", "orders")

    result = await session.place_order()
    assert isinstance(result.error, OrderCreationFailed)
    assert session.item_count() == 1
    assert await stock_of(backend, "p1") == 12


@pytest.mark.asyncio
async def test_stock_decrement_is_best_effort(backend):
    """Сбой списания остатка не отменяет заказ"""
    session = await opened(backend)
    await session.add_item("p1")
    backend.fail_next("update", "products")

    result = await session.place_order()
    assert result.is_right
    assert await stock_of(backend, "p1") == 12
    assert session.snapshot() == ()


@pytest.mark.asyncio
async def test_cart_clear_failure_still_returns_order(backend):
    session = await opened(backend)
    await session.add_item("p1")
    backend.fail_next("delete", "cart")

    result = await session.place_order()
    assert result.is_right
    assert len(backend.rows("orders")) == 1
    assert session.item_count() == 1


@pytest.mark.asyncio
async def test_concurrent_buyers_do_not_lose_updates(backend):
    """Два покупателя одного товара: оба списания доходят до хранилища"""
    first = await opened(backend, "u1")
    second = await opened(backend, "u2")
    for session in (first, second):
        await session.add_item("p2")
        await session.add_item("p2")

    results = await asyncio.gather(first.place_order(), second.place_order())
    assert all(r.is_right for r in results)
    assert await stock_of(backend, "p2") == 1


@pytest.mark.asyncio
async def test_double_submit_places_one_order(backend):
    session = await opened(backend)
    await session.add_item("p1")
    results = await asyncio.gather(session.place_order(), session.place_order())
    assert sorted(r.is_right for r in results) == [False, True]
    assert EmptyCart() in [r.error for r in results]
    assert len(backend.rows("orders")) == 1


@pytest.mark.asyncio
async def test_history_newest_first(backend):
    backend.seed(
        "orders",
        [
            {"id": "o1", "user_id": "u1", "amount": 10, "status": "delivered", "items": [], "created_at": "2025-06-01"},
            {"id": "o2", "user_id": "u1", "amount": 20, "status": "pending", "items": [], "created_at": "2025-06-05"},
            {"id": "o3", "user_id": "u2", "amount": 30, "status": "pending", "items": [], "created_at": "2025-06-07"},
        ],
    )
    history = OrderHistory(backend, Identity("u1"))
    orders = (await history.list_orders()).value
    assert [o.id for o in orders] == ["o2", "o1"]
    assert orders[1].is_terminal
    assert (await OrderHistory(backend, Identity()).list_orders()).error == Unauthenticated()


@pytest.mark.asyncio
async def test_two_buyers_on_last_units_converge(backend):
    """Остаток 3, два покупателя по одной штуке: ровно два списания, остаток 1"""
    first = await opened(backend, "u1")
    second = await opened(backend, "u2")
    assert (await first.add_item("p4")).is_right
    assert (await second.add_item("p4")).is_right

    results = await asyncio.gather(first.place_order(), second.place_order())
    assert all(r.is_right for r in results)
    assert await stock_of(backend, "p4") == 1

    await first.sync()
    await second.sync()
    assert first.products.get("p4").value.stock == 1
    assert second.products.get("p4").value.stock == 1


@pytest.mark.asyncio
async def test_checkout_waits_for_quantity_change_in_flight(backend):
    """Оформление ждёт set_quantity: отклонённое количество в заказ не попадает"""
    session = await opened(backend)
    line = (await session.add_item("p2")).value
    await backend.update("products", "p2", {"stock": 2})

    backend.delay("get", "products", 0.05)
    change = asyncio.create_task(session.set_quantity(line.id, 5, "p2"))
    await asyncio.sleep(0.01)
    assert session.cart.line_for("p2").quantity == 5

    order = await session.place_order()
    assert (await change).error == InsufficientStock("p2", 2)
    assert [(i.product_id, i.quantity) for i in order.value.items] == [("p2", 1)]
    assert order.value.total == Decimal("299.99")
    assert await stock_of(backend, "p2") == 1
    assert session.snapshot() == ()


@pytest.mark.asyncio
async def test_checkout_waits_for_new_line(backend):
    session = await opened(backend)
    await session.add_item("p3")
    backend.delay("upsert", "cart", 0.05)
    adding = asyncio.create_task(session.add_item("p1"))
    await asyncio.sleep(0.01)

    order = (await session.place_order()).value
    assert (await adding).is_right
    assert {(i.product_id, i.quantity) for i in order.items} == {("p1", 1), ("p3", 1)}
    assert session.snapshot() == ()
    assert [r for r in backend.rows("cart") if r["user_id"] == "u1"] == []
    assert session.cart.pending_keys == 0


@pytest.mark.asyncio
async def test_malformed_stock_does_not_break_checkout(backend):
    """Испорченный остаток в хранилище: заказ создан, корзина очищена"""
    session = await opened(backend)
    await session.add_item("p1")
    await session.add_item("p3")
    await backend.update("products", "p1", {"stock": "n/a"})

    result = await session.place_order()
    assert result.is_right
    assert await stock_of(backend, "p1") == "n/a"
    assert await stock_of(backend, "p3") == 19
    assert session.snapshot() == ()
