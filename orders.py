"""
Order placement and order management.

Creating an order writes the order and takes stock for every line inside
one transaction: either the order exists and every product was decremented,
or neither happened.
"""
import logging
import secrets
import string
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple

from access import can_update_order
from database import Database, Transaction, pagination, serialize, to_id, utcnow
from errors import Forbidden, InsufficientStock, InvalidRequest, NotFound
from schemas import Address, Order, OrderItem, OrderPatch

logger = logging.getLogger(__name__)

TAX_RATE = Decimal("0.10")
SHIPPING_FLAT = Decimal("10.00")
CENT = Decimal("0.01")
CANCELLABLE_STATUSES = ("pending", "processing")
ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_totals(items: List[OrderItem]) -> Dict[str, float]:
    """Price a basket: 10% tax, flat shipping, no discount."""
    subtotal = _money(sum((Decimal(str(it.price)) * it.quantity for it in items), Decimal("0")))
    tax = _money(subtotal * TAX_RATE)
    shipping = SHIPPING_FLAT
    discount = Decimal("0.00")
    total = subtotal + tax + shipping - discount
    return {
        "subtotal": float(subtotal),
        "tax": float(tax),
        "shipping": float(shipping),
        "discount": float(discount),
        "total_amount": float(total),
    }


def calculate_total(order: dict) -> float:
    total = (_money(order.get("subtotal", 0)) + _money(order.get("tax", 0))
             + _money(order.get("shipping", 0)) - _money(order.get("discount", 0)))
    return float(total)


def generate_order_number() -> str:
    token = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(9))
    return f"ORD-{int(time.time() * 1000)}-{token}"


def can_be_cancelled(order: dict) -> bool:
    return order.get("status") in CANCELLABLE_STATUSES


def order_summary(order: dict) -> dict:
    return {
        "id": str(order["_id"]),
        "order_number": order.get("order_number"),
        "total_amount": order.get("total_amount"),
        "status": order.get("status"),
        "payment_status": order.get("payment_status"),
        "item_count": len(order.get("items") or []),
        "created_at": order.get("created_at"),
    }


class OrderService:
    def __init__(self, db: Database):
        self.db = db

    # Presentation

    def present(self, orders: List[dict]) -> List[dict]:
        """Serialize orders joined with their owner's id, name and email."""
        user_ids = {to_id(o.get("user_id")) for o in orders} - {None}
        users = {}
        if user_ids:
            for u in self.db["user"].find({"_id": {"$in": list(user_ids)}}, {"name": 1, "email": 1}):
                users[str(u["_id"])] = {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")}
        out = []
        for order in orders:
            doc = serialize(order)
            doc["user"] = users.get(order.get("user_id"))
            doc["can_be_cancelled"] = can_be_cancelled(order)
            out.append(doc)
        return out

    def present_one(self, order: dict) -> dict:
        return self.present([order])[0]

    # Lookups

    def find(self, order_id) -> Optional[dict]:
        oid = to_id(order_id)
        if oid is None:
            return None
        return self.db["order"].find_one({"_id": oid})

    def find_owned(self, user_id: str, order_id) -> dict:
        """Return the order only if it belongs to `user_id`."""
        oid = to_id(order_id)
        order = self.db["order"].find_one({"_id": oid, "user_id": user_id}) if oid else None
        if not order:
            raise NotFound("Order")
        return order

    # Operations

    def create_order(self, user: dict, items: Optional[List[OrderItem]], shipping_address: Optional[Address],
                     billing_address: Optional[Address] = None, notes: Optional[str] = None,
                     payment_method: Optional[str] = None) -> dict:
        if not items:
            raise InvalidRequest("Items are required and must be a non-empty array")
        if shipping_address is None:
            raise InvalidRequest("Shipping address is required")

        order = Order(
            user_id=str(user["_id"]),
            items=items,
            shipping_address=shipping_address,
            billing_address=billing_address or shipping_address,
            notes=notes,
            payment_method=payment_method,
            **compute_totals(items),
        )
        if not order.order_number:
            order.order_number = generate_order_number()

        def place(txn: Transaction) -> str:
            order_id = self.db.create_document("order", order, session=txn.session)
            txn.on_rollback(lambda: self.db["order"].delete_one({"_id": to_id(order_id)}))
            for item in items:
                self._take_stock(txn, item)
            return order_id

        order_id = self.db.run_in_transaction(place)
        logger.info("Order %s created for user %s (total %.2f)", order.order_number, order.user_id, order.total_amount)
        return self.present_one(self.db["order"].find_one({"_id": to_id(order_id)}))

    def _take_stock(self, txn: Transaction, item: OrderItem) -> None:
        product_id = to_id(item.product_id)
        if product_id is None:
            raise NotFound("Product")
        updated = self.db["product"].find_one_and_update(
            {"_id": product_id, "stock": {"$gte": item.quantity}},
            {"$inc": {"stock": -item.quantity}},
            session=txn.session,
        )
        if updated is None:
            if self.db["product"].find_one({"_id": product_id}, {"_id": 1}, session=txn.session) is None:
                raise NotFound("Product")
            raise InsufficientStock(item.product_id, item.quantity)
        txn.on_rollback(lambda: self.db["product"].update_one({"_id": product_id}, {"$inc": {"stock": item.quantity}}))

    def list_orders(self, user_id: str, status: Optional[str] = None, page: int = 1, limit: int = 10) -> Tuple[List[dict], dict]:
        filt = {"user_id": user_id}
        if status:
            filt["status"] = status
        return self._page(filt, page, limit)

    def list_all_orders(self, status: Optional[str] = None, page: int = 1, limit: int = 10) -> Tuple[List[dict], dict]:
        filt = {}
        if status:
            filt["status"] = status
        return self._page(filt, page, limit)

    def _page(self, filt: dict, page: int, limit: int) -> Tuple[List[dict], dict]:
        docs, total = self.db.paginate("order", filt, page, limit)
        return self.present(docs), pagination(page, limit, total)

    def get_order(self, user_id: str, order_id) -> dict:
        return self.present_one(self.find_owned(user_id, order_id))

    def update_order(self, actor: dict, order_id, patch: OrderPatch) -> dict:
        """Apply only the fields present in `patch`."""
        order = self.find(order_id)
        if not order:
            raise NotFound("Order")
        owns = order.get("user_id") == str(actor["_id"])
        if not can_update_order(actor.get("role", "user"), owns):
            raise Forbidden()

        changes = {k: v for k, v in patch.model_dump(exclude_unset=True).items() if v is not None}
        if changes:
            now = utcnow()
            if changes.get("status") == "cancelled" and order.get("status") != "cancelled":
                changes["cancelled_at"] = now
                changes["cancelled_by"] = str(actor["_id"])
            changes["updated_at"] = now
            self.db["order"].update_one({"_id": order["_id"]}, {"$set": changes})
            logger.info("Order %s updated by %s: %s", order.get("order_number"), actor["_id"], sorted(changes))
        return self.present_one(self.db["order"].find_one({"_id": order["_id"]}))
