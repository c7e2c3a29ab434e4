"""Read-only aggregates for the admin dashboard."""
from typing import List, Optional, Tuple

from database import Database, NEWEST_FIRST
from orders import OrderService

RECENT_ORDERS = 5


class AdminService:
    def __init__(self, db: Database, orders: OrderService):
        self.db = db
        self.orders = orders

    def total_revenue(self) -> float:
        rows = list(self.db["order"].aggregate([
            {"$match": {"payment_status": "paid"}},
            {"$group": {"_id": None, "total": {"$sum": "$total_amount"}}},
        ]))
        return round(float(rows[0]["total"]), 2) if rows else 0.0

    def dashboard(self) -> dict:
        recent = self.db.get_documents("order", {}, limit=RECENT_ORDERS, sort=NEWEST_FIRST)
        return {
            "total_users": self.db["user"].count_documents({}),
            "total_products": self.db["product"].count_documents({}),
            "total_orders": self.db["order"].count_documents({}),
            "total_revenue": self.total_revenue(),
            "recent_orders": self.orders.present(recent),
        }

    def list_orders(self, status: Optional[str] = None, page: int = 1, limit: int = 10) -> Tuple[List[dict], dict]:
        return self.orders.list_all_orders(status, page, limit)
