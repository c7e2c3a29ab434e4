"""Product catalog. Stock moves only through order placement."""
import logging
from typing import List, Optional, Tuple

from database import Database, pagination, serialize, to_id, utcnow
from errors import NotFound
from schemas import Product, ProductIn, ProductPatch

logger = logging.getLogger(__name__)


class ProductService:
    def __init__(self, db: Database):
        self.db = db

    def list_products(self, category: Optional[str] = None, page: int = 1, limit: int = 10) -> Tuple[List[dict], dict]:
        filt = {"is_active": True}
        if category:
            filt["category"] = category
        docs, total = self.db.paginate("product", filt, page, limit)
        return [serialize(p) for p in docs], pagination(page, limit, total)

    def categories(self) -> List[str]:
        return sorted(c for c in self.db["product"].distinct("category", {"is_active": True}) if c)

    def _get(self, product_id) -> dict:
        pid = to_id(product_id)
        doc = self.db["product"].find_one({"_id": pid}) if pid else None
        if not doc:
            raise NotFound("Product")
        return doc

    def get_product(self, product_id) -> dict:
        doc = self._get(product_id)
        if not doc.get("is_active", True):
            raise NotFound("Product")
        return serialize(doc)

    def create_product(self, actor: dict, payload: ProductIn) -> dict:
        product = Product(**payload.model_dump(), created_by=str(actor["_id"]))
        pid = self.db.create_document("product", product)
        logger.info("Product %s created by %s", pid, actor["_id"])
        return serialize(self._get(pid))

    def update_product(self, product_id, patch: ProductPatch) -> dict:
        doc = self._get(product_id)
        changes = {k: v for k, v in patch.model_dump(exclude_unset=True).items() if v is not None}
        if changes:
            changes["updated_at"] = utcnow()
            self.db["product"].update_one({"_id": doc["_id"]}, {"$set": changes})
        return serialize(self._get(doc["_id"]))

    def delete_product(self, product_id) -> None:
        doc = self._get(product_id)
        self.db["product"].delete_one({"_id": doc["_id"]})
        logger.info("Product %s deleted", doc["_id"])
