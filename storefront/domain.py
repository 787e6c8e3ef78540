from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple, Dict


class LineState(str, Enum):
    """Жизненный цикл строки корзины"""

    ABSENT = "absent"
    PENDING_CREATE = "pending-create"
    PERSISTED = "persisted"
    PENDING_UPDATE = "pending-update"
    PENDING_DELETE = "pending-delete"


ORDER_STATUSES = ("pending", "processing", "shipped", "delivered")
PROOF_STATUSES = ("pending", "approved", "rejected")


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    price: Decimal
    image_url: str
    stock: Optional[int]  # None - остаток неизвестен, но не 0
    seller_id: Optional[str] = None
    description: str = ""
    category: str = ""
    created_at: str = ""


@dataclass(frozen=True)
class CartLine:
    id: str
    user_id: str
    product_id: str
    quantity: int
    state: LineState = LineState.PERSISTED


@dataclass(frozen=True)
class CartRow:
    """Строка корзины, соединённая с витринными полями товара"""

    line_id: str
    product_id: str
    name: str
    price: Decimal
    image_url: str
    stock: Optional[int]
    quantity: int
    state: LineState
    known_product: bool = True

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


@dataclass(frozen=True)
class OrderItem:
    product_id: str
    name: str
    price: Decimal
    quantity: int
    image_url: str


@dataclass(frozen=True)
class Order:
    id: str
    user_id: str
    items: Tuple[OrderItem, ...]
    total: Decimal
    status: str
    created_at: str

    @property
    def is_terminal(self) -> bool:
        return self.status == "delivered"


@dataclass(frozen=True)
class PaymentProof:
    id: str
    order_id: str
    user_id: str
    amount: Decimal
    uploaded_file: str
    status: str
    created_at: str = ""


@dataclass(frozen=True)
class TrackingEntry:
    id: str
    order_id: str
    status: str
    timestamp: str
    location: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class UserProfile:
    id: str  # совпадает с id пользователя
    name: str = ""
    email: str = ""
    mobile: str = ""
    address: str = ""
    created_at: str = ""


@dataclass(frozen=True)
class SellerProfile:
    id: str
    user_id: str
    business_name: Optional[str]
    business_address: Optional[str]
    is_approved: bool
    created_at: str = ""


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str  # "INSERT" | "UPDATE" | "DELETE"
    new: Dict = field(default_factory=dict)
    old: Dict = field(default_factory=dict)

    @property
    def row(self) -> Dict:
        """Актуальная строка события (для DELETE - удалённая)"""
        return self.old if self.event_type == "DELETE" else self.new
