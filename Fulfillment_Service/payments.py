import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from urllib.parse import quote, urlencode

from storefront.backend import Backend
from storefront.domain import Order, PaymentProof
from storefront.errors import CartError, EmptyCart, InvalidPaymentProof, Unauthenticated
from storefront.ftypes import Either, attempt
from storefront.service import StorefrontSession
from storefront.transforms import proof_from_row

logger = logging.getLogger("shop.payments")


def upi_link(upi_id: str, merchant_name: str, amount: Decimal) -> str:
    """Ссылка upi://pay для QR-кода и копирования"""
    query = urlencode(
        {"pa": upi_id, "pn": merchant_name, "am": f"{amount:.2f}", "cu": "INR"}, safe="@", quote_via=quote
    )
    return f"upi://pay?{query}"


def validate_screenshot(file_name: str, data: bytes, content_type: str) -> Either[CartError, str]:
    """Принимаем только изображения; возвращает расширение файла"""
    if not (content_type or "").startswith("image/"):
        return Either.left(InvalidPaymentProof("upload an image file (JPG, PNG, JPEG)"))
    if not data:
        return Either.left(InvalidPaymentProof("file is empty"))
    ext = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else content_type.split("/", 1)[1]
    return Either.right(ext)


def screenshot_name(user_id: str, ext: str, now_ms: Optional[int] = None) -> str:
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    return f"{user_id}-{now_ms}.{ext}"


async def submit_payment_proof(
    backend: Backend,
    bucket: str,
    user_id: str,
    order: Order,
    file_name: str,
    data: bytes,
    content_type: str,
) -> Either[CartError, PaymentProof]:
    """Загружает скриншот и создаёт заявку на проверку со статусом pending"""
    ext = validate_screenshot(file_name, data, content_type)
    if ext.is_left:
        return ext
    uploaded = await attempt(
        "upload screenshot",
        lambda: backend.upload(bucket, screenshot_name(user_id, ext.value), data, content_type),
    )
    if uploaded.is_left:
        return uploaded
    return await _record_proof(backend, user_id, order, uploaded.value)


async def _record_proof(
    backend: Backend, user_id: str, order: Order, file_ref: str
) -> Either[CartError, PaymentProof]:
    row = {
        "user_id": user_id,
        "order_id": order.id,
        "payment_amount": order.total,
        "uploaded_file": file_ref,
        "status": "pending",
    }
    created = await attempt("record payment proof", lambda: backend.insert("payment_proofs", row))
    return created.map(proof_from_row)


@dataclass(frozen=True)
class PaymentReceipt:
    order: Order
    proof: PaymentProof


class PaymentFlow:
    """
    Оплата по UPI: скриншот -> заказ -> заявка на проверку.
    Подтверждает оплату администратор, шлюза нет.
    """

    def __init__(self, session: StorefrontSession):
        self._session = session

    def payment_link(self) -> str:
        settings = self._session.settings
        return upi_link(settings.upi_id, settings.merchant_name, self._session.total())

    async def confirm_payment(
        self, file_name: str, data: bytes, content_type: str, now_ms: Optional[int] = None
    ) -> Either[CartError, PaymentReceipt]:
        session = self._session
        user_id = session.identity.current_user_id()
        if not user_id:
            return Either.left(Unauthenticated())
        ext = validate_screenshot(file_name, data, content_type)
        if ext.is_left:
            return ext
        if not session.snapshot():
            return Either.left(EmptyCart())

        uploaded = await attempt(
            "upload screenshot",
            lambda: session.backend.upload(
                session.settings.screenshot_bucket,
                screenshot_name(user_id, ext.value, now_ms),
                data,
                content_type,
            ),
        )
        if uploaded.is_left:
            return uploaded

        placed = await session.place_order()
        if placed.is_left:
            return placed
        order = placed.value

        proof = await _record_proof(session.backend, user_id, order, uploaded.value)
        if proof.is_left:
            logger.error("order %s placed but payment proof not recorded: %s", order.id, proof.error.message)
            return proof
        logger.info("payment proof %s submitted for order %s", proof.value.id, order.id)
        return Either.right(PaymentReceipt(order, proof.value))
