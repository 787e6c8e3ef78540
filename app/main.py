import sys
import os
import time
import uuid
from decimal import ROUND_CEILING, Decimal

import streamlit as st

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from storefront.async_ops import LoopThread
from storefront.backend import Identity, InMemoryBackend
from storefront.config import configure_logging, load_settings
from storefront.profile import ProfileService
from storefront.seller import SellerService
from storefront.service import SessionRegistry, StorefrontSession
from storefront.transforms import by_name, by_price_range, filter_products, in_stock, max_price, sort_products
from Fulfillment_Service.payments import PaymentFlow
from Fulfillment_Service.tracking import current_status, fetch_tracking, seed_sample_tracking


# ============ Общие ресурсы ============
settings = load_settings()
configure_logging(settings.log_level)


@st.cache_resource
def get_loop():
    return LoopThread()


@st.cache_resource
def get_backend():
    return InMemoryBackend.from_seed(settings.seed_path, latency=settings.backend_latency)


@st.cache_resource
def get_registry():
    return SessionRegistry(settings.session_ttl)


loop = get_loop()
backend = get_backend()
registry = get_registry()


def run(coro):
    return loop.run(coro)


def open_session(user_id):
    """Одна сессия на вкладку; при смене пользователя - новая, брошенные закрываются"""
    tab_id = st.session_state.setdefault("tab_id", uuid.uuid4().hex)
    now = time.monotonic()
    run(registry.expire(now))
    current = registry.get(tab_id, now)
    if current is not None and current.identity.current_user_id() == user_id:
        return current
    if current is not None:
        run(registry.drop(tab_id))
    session = StorefrontSession(backend, Identity(user_id), settings)
    run(session.open())
    registry.put(tab_id, session, now)
    return session


def format_price(amount: Decimal) -> str:
    return f"₹{amount:.2f}"


def show_result(result, success: str):
    """Результат показывается после st.rerun(), иначе сообщение теряется"""
    if result.is_right:
        st.session_state.flash = ("success", f"✅ {success}")
    else:
        st.session_state.flash = ("error", f"❌ {result.error.message}")


SORT_OPTIONS = {"По названию": "name", "Сначала дешёвые": "price-low", "Сначала дорогие": "price-high"}


# ============ Инициализация ============
st.set_page_config(page_title="ShopHub", page_icon="🛍️", layout="wide")

with st.sidebar:
    st.header("👤 Вход")
    user_id = st.text_input("ID пользователя", value=st.session_state.get("user_id", ""))
    st.session_state.user_id = user_id.strip()

session = open_session(st.session_state.user_id or None)
seller = SellerService(backend, session.identity, session.products)
profiles = ProfileService(backend, session.identity)

with st.sidebar:
    st.divider()
    page = st.radio(
        "Раздел:",
        [
            "🏪 Каталог",
            f"🛒 Корзина ({session.item_count()})",
            "💳 Оплата",
            "📦 Заказы",
            "👤 Профиль",
            "🏷️ Продавец",
        ],
        label_visibility="collapsed",
    )
    if session.products.degraded:
        st.warning("⚠️ Каталог может быть устаревшим")
    if st.button("🔄 Обновить"):
        run(session.sync())
        st.rerun()

st.title("🛍️ ShopHub")

flash = st.session_state.pop("flash", None)
if flash is not None:
    kind, text = flash
    if kind == "success":
        st.success(text)
    else:
        st.error(text)


# ============ PAGE: КАТАЛОГ ============
if page == "🏪 Каталог":
    catalog = session.list_products()
    upper = max(1, int(max_price(catalog).to_integral_value(rounding=ROUND_CEILING)))

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        query = st.text_input("🔍 Поиск", key="catalog_query")
    with col2:
        price_range = st.slider("💰 Цена (₹)", 0, upper, (0, upper), step=1)
    with col3:
        sort_label = st.selectbox("Сортировка", list(SORT_OPTIONS))
    with col4:
        only_available = st.checkbox("Только в наличии", value=False)

    predicates = [by_name(query), by_price_range(Decimal(price_range[0]), Decimal(price_range[1]))]
    if only_available:
        predicates.append(in_stock())
    products = sort_products(filter_products(catalog, *predicates), SORT_OPTIONS[sort_label])

    st.info(f"🔍 Найдено товаров: **{len(products)}**")
    for p in products:
        cols = st.columns([1, 4, 2, 2])
        with cols[0]:
            if p.image_url:
                st.image(p.image_url, width=80)
        with cols[1]:
            st.markdown(f"**{p.name}**")
            st.caption(p.description)
        with cols[2]:
            st.write(format_price(p.price))
            st.caption("остаток неизвестен" if p.stock is None else f"В наличии: {p.stock}")
        with cols[3]:
            sold_out = p.stock == 0
            if st.button("Нет в наличии" if sold_out else "➕ В корзину", key=f"add_{p.id}", disabled=sold_out):
                show_result(run(session.add_item(p.id)), f"{p.name} в корзине")
                st.rerun()


# ============ PAGE: КОРЗИНА ============
elif page.startswith("🛒"):
    rows = session.snapshot()
    if not rows:
        st.info("🛍️ Корзина пуста. Перейдите в каталог!")
    else:
        for row in rows:
            cols = st.columns([4, 1, 1, 1, 2, 1])
            with cols[0]:
                st.write(f"**{row.name or row.product_id}**")
                if row.stock is not None and row.quantity > row.stock:
                    st.caption(f"⚠️ Доступно только {row.stock}")
            with cols[1]:
                if st.button("➖", key=f"dec_{row.line_id}"):
                    show_result(run(session.set_quantity(row.line_id, row.quantity - 1, row.product_id)), "Обновлено")
                    st.rerun()
            with cols[2]:
                st.write(f"× {row.quantity}")
            with cols[3]:
                plus_disabled = row.stock is not None and row.quantity >= row.stock
                if st.button("➕", key=f"inc_{row.line_id}", disabled=plus_disabled):
                    show_result(run(session.set_quantity(row.line_id, row.quantity + 1, row.product_id)), "Обновлено")
                    st.rerun()
            with cols[4]:
                st.write(format_price(row.subtotal))
            with cols[5]:
                if st.button("🗑️", key=f"rm_{row.line_id}"):
                    show_result(run(session.remove_item(row.line_id)), "Удалено из корзины")
                    st.rerun()

        st.divider()
        st.markdown(f"### 💰 Итого: **{format_price(session.total())}**")


# ============ PAGE: ОПЛАТА ============
elif page == "💳 Оплата":
    flow = PaymentFlow(session)
    if not session.identity.current_user_id():
        st.warning("Войдите, чтобы перейти к оплате")
    elif not session.snapshot():
        st.info("Корзина пуста")
    else:
        st.metric("К оплате", format_price(session.total()))
        st.code(flow.payment_link())
        st.caption("Оплатите через любое UPI-приложение и загрузите скриншот платежа.")
        screenshot = st.file_uploader("Скриншот оплаты", type=["png", "jpg", "jpeg"])
        if st.button("✅ Подтвердить оплату", type="primary", disabled=screenshot is None):
            result = run(flow.confirm_payment(screenshot.name, screenshot.getvalue(), screenshot.type))
            if result.is_right:
                st.success(f"🎉 Заказ {result.value.order.id} отправлен на проверку")
                st.balloons()
            else:
                st.error(f"❌ {result.error.message}")


# ============ PAGE: ЗАКАЗЫ ============
elif page == "📦 Заказы":
    result = run(session.list_orders())
    if result.is_left:
        st.warning(result.error.message)
    elif not result.value:
        st.info("Заказов пока нет")
    else:
        for order in result.value:
            with st.expander(f"Заказ #{order.id[:8]} — {format_price(order.total)} — {order.status}"):
                for item in order.items:
                    st.write(f"• {item.name} × {item.quantity} — {format_price(item.price * item.quantity)}")
                tracking = run(fetch_tracking(backend, order.id, session.identity.current_user_id()))
                entries = tracking.get_or_else(())
                if entries:
                    st.caption(f"Текущий статус: **{current_status(entries).get_or_else('—')}**")
                    for entry in entries:
                        st.write(f"`{entry.timestamp[:16]}` {entry.status} {entry.location or ''}")
                elif st.button("Сгенерировать трекинг (демо)", key=f"track_{order.id}"):
                    show_result(run(seed_sample_tracking(backend, order.id)), "Трекинг создан")
                    st.rerun()


# ============ PAGE: ПРОФИЛЬ ============
elif page == "👤 Профиль":
    loaded = run(profiles.fetch_profile())
    if loaded.is_left:
        st.warning(loaded.error.message)
    else:
        current = loaded.value.get_or_else(None)
        with st.form("user_profile"):
            data = {
                "name": st.text_input("Имя", value=current.name if current else ""),
                "email": st.text_input("Email", value=current.email if current else ""),
                "mobile": st.text_input("Телефон", value=current.mobile if current else ""),
                "address": st.text_area("Адрес доставки", value=current.address if current else ""),
            }
            if st.form_submit_button("Сохранить"):
                show_result(run(profiles.update_profile(data)), "Профиль сохранён")
                st.rerun()


# ============ PAGE: ПРОДАВЕЦ ============
elif page == "🏷️ Продавец":
    profile = run(seller.fetch_profile())
    if profile.is_left:
        st.warning(profile.error.message)
    elif profile.value.is_none():
        with st.form("seller_register"):
            name = st.text_input("Название бизнеса")
            address = st.text_area("Адрес")
            if st.form_submit_button("Стать продавцом"):
                show_result(run(seller.create_profile(name, address)), "Заявка отправлена")
                st.rerun()
    elif not seller.profile.is_approved:
        st.info("⏳ Профиль ожидает одобрения администратора")
    else:
        with st.form("seller_product"):
            data = {
                "name": st.text_input("Название"),
                "description": st.text_area("Описание"),
                "price": st.number_input("Цена (₹)", min_value=0.0, step=1.0),
                "image_url": st.text_input("URL картинки"),
                "stock": int(st.number_input("Количество", min_value=0, step=1)),
                "category": st.text_input("Категория"),
            }
            if st.form_submit_button("Добавить товар"):
                show_result(run(seller.add_product(data)), "Товар добавлен")
                st.rerun()
