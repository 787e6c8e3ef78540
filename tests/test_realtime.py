import sys
import os

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import asyncio

import pytest

from storefront.backend import Identity, InMemoryBackend
from storefront.domain import ChangeEvent, LineState
from storefront.realtime import EventBus
from storefront.service import StorefrontSession

SEED = os.path.join(os.path.dirname(__file__), "..", "data", "seed.json")


@pytest.fixture
def backend():
    return InMemoryBackend.from_seed(SEED)


async def opened(backend, user_id="u1", live=False):
    session = StorefrontSession(backend, Identity(user_id))
    await session.open(live=live)
    return session


def test_event_bus_is_immutable():
    async def handler(event):
        pass

    bus = EventBus()
    subscribed = bus.subscribe("products", "UPDATE", handler)
    assert bus.subscribers == ()
    assert len(subscribed.subscribers) == 1


def test_event_bus_wildcard():
    async def any_event(event):
        pass

    async def deletes(event):
        pass

    bus = EventBus().subscribe("cart", "*", any_event).subscribe("cart", "DELETE", deletes)
    assert bus.handlers_for(ChangeEvent("cart", "INSERT")) == (any_event,)
    assert bus.handlers_for(ChangeEvent("cart", "DELETE")) == (any_event, deletes)
    assert bus.handlers_for(ChangeEvent("orders", "INSERT")) == ()


@pytest.mark.asyncio
async def test_event_bus_publish():
    seen = []

    async def record(event):
        seen.append(event.event_type)

    bus = EventBus().subscribe("products", "*", record)
    assert await bus.publish(ChangeEvent("products", "UPDATE", {"id": "p1"})) == 1
    assert seen == ["UPDATE"]


@pytest.mark.asyncio
async def test_stock_change_from_another_client(backend):
    """Изменение остатка другим клиентом доходит до кэша"""
    session = await opened(backend)
    await backend.update("products", "p1", {"stock": 7})
    assert await session.sync() == 1
    assert session.products.get("p1").value.stock == 7


@pytest.mark.asyncio
async def test_new_and_deleted_products(backend):
    session = await opened(backend)
    await backend.insert("products", {"id": "p7", "name": "Desk Lamp", "price": 25, "stock": 4})
    await backend.delete("products", {"id": "p2"})
    await session.sync()
    assert session.list_products()[0].id == "p7"
    assert session.products.get("p2").is_none()


@pytest.mark.asyncio
async def test_pushed_row_used_when_reload_fails(backend):
    session = await opened(backend)
    await backend.update("products", "p1", {"stock": 7})
    backend.fail_next("get", "products")
    await session.sync()
    assert session.products.get("p1").value.stock == 7


@pytest.mark.asyncio
async def test_cart_change_from_another_device(backend):
    session = await opened(backend)
    line = (await session.add_item("p1")).value
    await session.sync()

    await backend.update("cart", line.id, {"quantity": 3})
    await session.sync()
    assert session.cart.line_for("p1").quantity == 3

    await backend.delete("cart", {"id": line.id})
    await session.sync()
    assert session.snapshot() == ()


@pytest.mark.asyncio
async def test_other_users_cart_not_delivered(backend):
    mine = await opened(backend, "u1")
    theirs = await opened(backend, "u2")
    await theirs.add_item("p1")
    assert await mine.sync() == 0
    assert mine.snapshot() == ()


@pytest.mark.asyncio
async def test_close_unsubscribes(backend):
    session = await opened(backend)
    await session.close()
    await backend.update("products", "p1", {"stock": 1})
    assert await session.sync() == 0
    assert session.products.get("p1").value.stock == 12


@pytest.mark.asyncio
async def test_live_listener(backend):
    """Фоновый разбор очереди в режиме live"""
    session = await opened(backend, live=True)
    assert session.listener.running
    await backend.update("products", "p3", {"stock": 2})
    await asyncio.sleep(0.02)
    assert session.listener.processed == 1
    assert session.products.get("p3").value.stock == 2
    await session.close()
    assert not session.listener.running


@pytest.mark.asyncio
async def test_push_during_pending_update_waits(backend):
    """Уведомление во время оптимистичной правки не перетирает её"""
    session = await opened(backend)
    line = (await session.add_item("p1")).value
    await session.sync()

    backend.delay("update", "cart", 0.05)
    changing = asyncio.create_task(session.set_quantity(line.id, 3, "p1"))
    await asyncio.sleep(0.01)

    # другое устройство пишет ту же строку
    await backend.upsert(
        "cart", {"user_id": "u1", "product_id": "p1", "quantity": 7}, ("user_id", "product_id")
    )
    syncing = asyncio.create_task(session.sync())
    await asyncio.sleep(0.01)
    pending = session.cart.line_for("p1")
    assert pending.state is LineState.PENDING_UPDATE
    assert pending.quantity == 3

    await asyncio.gather(changing, syncing)
    assert session.cart.line_for("p1").quantity == 3
    assert session.cart.line_for("p1").state is LineState.PERSISTED
    assert [r["quantity"] for r in backend.rows("cart")] == [3]
