import sys
import os

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import pytest
from streamlit.testing.v1 import AppTest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
APP = os.path.join(ROOT, "app", "main.py")


@pytest.fixture
def app(monkeypatch):
    monkeypatch.setenv("STOREFRONT_SEED_PATH", os.path.join(ROOT, "data", "seed.json"))
    at = AppTest.from_file(APP, default_timeout=30)
    at.run()
    return at


def test_catalog_renders(app):
    assert not app.exception
    assert app.title[0].value == "🛍️ ShopHub"
    assert any("Найдено товаров" in i.value for i in app.info)


def test_error_survives_rerun(app):
    """Ошибка операции видна после перерисовки страницы"""
    app.button(key="add_p1").click().run()
    assert not app.exception
    assert [e.value for e in app.error] == ["❌ Войдите, чтобы продолжить"]


def test_success_message_after_add(app):
    app.sidebar.text_input[0].input("buyer-1").run()
    app.button(key="add_p1").click().run()
    assert not app.exception
    assert any("Wireless Headphones" in s.value for s in app.success)
    assert len(app.error) == 0


def test_price_filter_covers_whole_catalog(app):
    """Верхняя граница фильтра цены - самый дорогой товар каталога"""
    assert app.slider[0].max == 300
    assert app.slider[0].value == (0, 300)
    assert app.selectbox[0].value == "По названию"
