from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Tuple

ORDERS = "orders"
INVENTORY = "inventory"
CUSTOMERS = "customers"

COLLECTIONS = (CUSTOMERS, INVENTORY, ORDERS)


def _to_decimal(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True, slots=True)
class CartItem:
    sku: int | str
    quantity: int
    unit_price: Decimal
    name: str = ""

    def to_document(self) -> Dict[str, Any]:
        return {"name": self.name, "sku": self.sku, "qty": self.quantity, "price": self.unit_price}

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "CartItem":
        return cls(
            sku=doc["sku"],
            quantity=int(doc["qty"]),
            unit_price=_to_decimal(doc["price"]),
            name=doc.get("name", ""),
        )


@dataclass(frozen=True, slots=True)
class Payment:
    customer_id: Any
    total: Decimal


@dataclass(frozen=True, slots=True)
class Order:
    """
    Заказ в том виде, в каком он лежит в коллекции ``orders``.
    Создаётся один раз на успешный запрос и больше не меняется.
    """

    id: Any
    customer_id: Any
    items: Tuple[CartItem, ...]
    total: Decimal
    request_id: str

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Order":
        return cls(
            id=doc["_id"],
            customer_id=doc["customer"],
            items=tuple(CartItem.from_document(item) for item in doc.get("items", [])),
            total=_to_decimal(doc["total"]),
            request_id=doc.get("request_id", ""),
        )


def order_document(cart: Tuple[CartItem, ...], payment: Payment, request_id: str) -> Dict[str, Any]:
    return {
        "customer": payment.customer_id,
        "items": [item.to_document() for item in cart],
        "total": payment.total,
        "request_id": request_id,
    }


@dataclass(slots=True)
class InventoryRecord:
    sku: int | str
    quantity_on_hand: int
    name: str = ""

    def to_document(self) -> Dict[str, Any]:
        return {"name": self.name, "sku": self.sku, "qty": self.quantity_on_hand}

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "InventoryRecord":
        return cls(sku=doc["sku"], quantity_on_hand=int(doc["qty"]), name=doc.get("name", ""))


@dataclass(slots=True)
class CustomerRecord:
    id: Any
    order_ids: List[Any] = field(default_factory=list)

    def to_document(self) -> Dict[str, Any]:
        return {"_id": self.id, "orders": list(self.order_ids)}

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "CustomerRecord":
        return cls(id=doc["_id"], order_ids=list(doc.get("orders", [])))
