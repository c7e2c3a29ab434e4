"""
MongoDB access for the shop.

A Database is built once at process startup from Settings (or handed a
client directly in tests) and passed to every service. Collections:
- user
- product
- order
"""
import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

from config import Settings
from errors import TransactionConflict

logger = logging.getLogger(__name__)

NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]

TRANSIENT_TRANSACTION_ERROR = "TransientTransactionError"
UNKNOWN_COMMIT_RESULT = "UnknownTransactionCommitResult"

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_id(value: Any) -> Optional[ObjectId]:
    """Parse an id from a path or payload. Malformed ids map to None."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def serialize(doc: Optional[dict]) -> Optional[dict]:
    """Rename `_id` to `id` and turn ObjectId values into strings."""
    if doc is None:
        return None
    out = {}
    for key, value in doc.items():
        if key == "_id":
            out["id"] = str(value)
        elif isinstance(value, ObjectId):
            out[key] = str(value)
        else:
            out[key] = value
    return out


def pagination(page: int, limit: int, total: int) -> dict:
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if limit else 0}


class Transaction:
    """Handle for writes that must persist together.

    With a session, the server commits or aborts everything written with
    `session`. Without one, callers register compensating actions which run
    in reverse order if the callback fails. Those writes are visible to other
    readers before the callback finishes, and a crash mid-way leaves them in
    place.
    """

    def __init__(self, session=None):
        self.session = session
        self._undo: List[Callable[[], Any]] = []

    def on_rollback(self, action: Callable[[], Any]) -> None:
        if self.session is None:
            self._undo.append(action)

    def rollback(self) -> None:
        while self._undo:
            action = self._undo.pop()
            try:
                action()
            except Exception:
                logger.exception("Compensating write failed during rollback")


class Database:
    def __init__(self, client: MongoClient, name: str, use_transactions: bool = True, transaction_attempts: int = 3):
        self.client = client
        self.db = client[name]
        self.use_transactions = use_transactions
        self.transaction_attempts = max(1, transaction_attempts)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        client = MongoClient(settings.database_url, tz_aware=True, serverSelectionTimeoutMS=5000)
        return cls(client, settings.database_name, settings.database_transactions,
                   settings.database_transaction_attempts)

    def __getitem__(self, name: str):
        return self.db[name]

    def ensure_indexes(self) -> None:
        self.db["user"].create_index([("email", ASCENDING)], unique=True)
        self.db["order"].create_index([("order_number", ASCENDING)], unique=True)
        self.db["order"].create_index([("user_id", ASCENDING)])
        self.db["order"].create_index([("status", ASCENDING)])
        self.db["order"].create_index([("payment_status", ASCENDING)])
        self.db["product"].create_index([("category", ASCENDING)])

    def ping(self) -> bool:
        try:
            self.client.admin.command("ping")
            return True
        except Exception as e:
            logger.warning("Database ping failed: %s", e)
            return False

    def close(self) -> None:
        self.client.close()

    def run_in_transaction(self, callback: Callable[[Transaction], T]) -> T:
        """Run `callback(txn)` so that its writes persist together or not at all.

        A transient transaction error (write conflict, primary stepdown) aborts
        the attempt and runs the callback again. An unknown commit result only
        retries the commit. Either failure still present after the last attempt
        raises TransactionConflict.
        """
        if not self.use_transactions:
            txn = Transaction()
            try:
                return callback(txn)
            except Exception:
                txn.rollback()
                raise

        last_error = None
        for attempt in range(1, self.transaction_attempts + 1):
            try:
                return self._run_once(callback)
            except PyMongoError as e:
                if e.has_error_label(UNKNOWN_COMMIT_RESULT):
                    raise TransactionConflict() from e
                if not e.has_error_label(TRANSIENT_TRANSACTION_ERROR):
                    raise
                logger.warning("Transaction attempt %d/%d failed: %s", attempt, self.transaction_attempts, e)
                last_error = e
        raise TransactionConflict() from last_error

    def _run_once(self, callback: Callable[[Transaction], T]) -> T:
        with self.client.start_session() as session:
            session.start_transaction()
            try:
                result = callback(Transaction(session))
            except Exception:
                if session.in_transaction:
                    session.abort_transaction()
                raise
            self._commit(session)
            return result

    def _commit(self, session) -> None:
        for attempt in range(1, self.transaction_attempts + 1):
            try:
                session.commit_transaction()
                return
            except PyMongoError as e:
                if not e.has_error_label(UNKNOWN_COMMIT_RESULT) or attempt == self.transaction_attempts:
                    raise
                logger.warning("Commit attempt %d/%d has an unknown result: %s", attempt, self.transaction_attempts, e)

    def create_document(self, collection_name: str, data: Union[BaseModel, Dict[str, Any]], session=None) -> str:
        """Insert a document, stamping created_at/updated_at. Returns the new id."""
        if isinstance(data, BaseModel):
            doc = data.model_dump()
        else:
            doc = dict(data)
        now = utcnow()
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        result = self.db[collection_name].insert_one(doc, session=session)
        return str(result.inserted_id)

    def get_documents(self, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                      sort: Optional[list] = None) -> List[dict]:
        cursor = self.db[collection_name].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def paginate(self, collection_name: str, filter_dict: dict, page: int, limit: int,
                 projection: Optional[dict] = None, sort: Optional[list] = None) -> Tuple[List[dict], int]:
        collection = self.db[collection_name]
        total = collection.count_documents(filter_dict)
        cursor = collection.find(filter_dict, projection).sort(sort or NEWEST_FIRST)
        docs = list(cursor.skip((page - 1) * limit).limit(limit))
        return docs, total
