"""
Accounts: registration, login, bearer-token resolution and admin user
management.
"""
import logging
from typing import List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from access import can_assign_role, can_delete_user, can_modify_user
from config import Settings
from database import NEWEST_FIRST, Database, Transaction, pagination, to_id, utcnow
from errors import Conflict, Forbidden, NotFound, Unauthorized
from orders import order_summary
from schemas import RegisterRequest, User, UserPatch
from security import create_token, decode_token, hash_password, verify_password

logger = logging.getLogger(__name__)

PUBLIC_PROJECTION = {"hashed_password": 0}


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role", "user"),
        "is_active": user.get("is_active", True),
        "created_at": user.get("created_at"),
        "updated_at": user.get("updated_at"),
    }


class UserService:
    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings

    def _token(self, user: dict) -> str:
        return create_token(user, self.settings.jwt_secret, self.settings.jwt_expires_min)

    def register(self, payload: RegisterRequest) -> dict:
        if self.db["user"].find_one({"email": payload.email}):
            raise Conflict("Email already registered")
        user = User(name=payload.name, email=payload.email, hashed_password=hash_password(payload.password))
        try:
            user_id = self.db.create_document("user", user)
        except DuplicateKeyError:
            raise Conflict("Email already registered")
        doc = self.db["user"].find_one({"_id": to_id(user_id)})
        logger.info("Registered user %s", user_id)
        return {"token": self._token(doc), "user": public_user(doc)}

    def login(self, email: str, password: str) -> dict:
        user = self.db["user"].find_one({"email": email})
        if not user or not verify_password(password, user.get("hashed_password", "")):
            raise Unauthorized("Invalid credentials")
        if not user.get("is_active", True):
            raise Unauthorized("Account is disabled")
        return {"token": self._token(user), "user": public_user(user)}

    def resolve_token(self, token: str) -> dict:
        """Map a bearer token to a live, active user document."""
        payload = decode_token(token, self.settings.jwt_secret)
        uid = to_id(payload.get("sub"))
        user = self.db["user"].find_one({"_id": uid}, PUBLIC_PROJECTION) if uid else None
        if not user:
            raise Unauthorized("User not found")
        if not user.get("is_active", True):
            raise Unauthorized("Account is disabled")
        return user

    # Admin user management

    def list_users(self, role: Optional[str] = None, page: int = 1, limit: int = 10) -> Tuple[List[dict], dict]:
        filt = {"role": role} if role else {}
        docs, total = self.db.paginate("user", filt, page, limit, projection=PUBLIC_PROJECTION)
        return [public_user(u) for u in docs], pagination(page, limit, total)

    def _get(self, user_id) -> dict:
        uid = to_id(user_id)
        user = self.db["user"].find_one({"_id": uid}, PUBLIC_PROJECTION) if uid else None
        if not user:
            raise NotFound("User")
        return user

    def get_user(self, user_id) -> dict:
        user = self._get(user_id)
        orders = self.db.get_documents("order", {"user_id": str(user["_id"])}, sort=NEWEST_FIRST)
        data = public_user(user)
        data["orders"] = [order_summary(o) for o in orders]
        return data

    def update_user(self, actor: dict, user_id, patch: UserPatch) -> dict:
        user = self._get(user_id)
        actor_role = actor.get("role", "user")
        if not can_modify_user(actor_role, user.get("role", "user")):
            raise Forbidden("Cannot modify super admin user")

        changes = {k: v for k, v in patch.model_dump(exclude_unset=True).items() if v is not None}
        if "role" in changes and not can_assign_role(actor_role, changes["role"]):
            raise Forbidden("Only a super admin can grant the super admin role")
        if "email" in changes and changes["email"] != user.get("email"):
            if self.db["user"].find_one({"email": changes["email"], "_id": {"$ne": user["_id"]}}):
                raise Conflict("Email already in use")

        if changes:
            changes["updated_at"] = utcnow()
            try:
                self.db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
            except DuplicateKeyError:
                raise Conflict("Email already in use")
            logger.info("User %s updated by %s: %s", user["_id"], actor["_id"], sorted(changes))
        return public_user(self._get(user["_id"]))

    def delete_user(self, actor: dict, user_id) -> None:
        """Delete a user, their orders, and detach the products they created."""
        user = self._get(user_id)
        if not can_delete_user(actor.get("role", "user"), user.get("role", "user")):
            raise Forbidden("Cannot delete super admin user")
        uid = str(user["_id"])

        def remove(txn: Transaction) -> None:
            orders = list(self.db["order"].find({"user_id": uid}, session=txn.session))
            products = [p["_id"] for p in self.db["product"].find({"created_by": uid}, {"_id": 1}, session=txn.session)]

            self.db["order"].delete_many({"user_id": uid}, session=txn.session)
            if orders:
                txn.on_rollback(lambda: self.db["order"].insert_many(orders))
            if products:
                self.db["product"].update_many({"_id": {"$in": products}}, {"$set": {"created_by": None}},
                                               session=txn.session)
                txn.on_rollback(lambda: self.db["product"].update_many({"_id": {"$in": products}},
                                                                       {"$set": {"created_by": uid}}))
            self.db["user"].delete_one({"_id": user["_id"]}, session=txn.session)

        self.db.run_in_transaction(remove)
        logger.info("User %s deleted by %s", uid, actor["_id"])
