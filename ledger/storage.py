"""
Document store used by every service.

Collections hold plain dicts keyed by document id. All writes go through
``transaction()``, which serialises writers on a single re-entrant lock and
journals every change so a failed unit of work leaves no partial effect.
Subscribers receive the full current contents of each collection that
changed, once the outermost transaction commits.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Callable, Iterator, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)

USERS = "users"
CREDENTIALS = "credentials"
SESSIONS = "sessions"
GIGS = "gigs"
WALLET_REQUESTS = "wallet_requests"
WITHDRAWAL_REQUESTS = "withdrawal_requests"
TRANSACTIONS = "transactions"
COUPONS = "coupons"
PLATFORM_CONFIG = "platform_config"

PLATFORM_CONFIG_ID = "main"

_MISSING = object()

Subscriber = Callable[[str, list], None]


class InMemoryStorage:
    COLLECTIONS = (
        USERS, CREDENTIALS, SESSIONS, GIGS, WALLET_REQUESTS,
        WITHDRAWAL_REQUESTS, TRANSACTIONS, COUPONS, PLATFORM_CONFIG,
    )

    def __init__(self, platform_fee: Decimal = Decimal("0.2"), offer_bar_text: str = ""):
        self.collections: dict[str, dict[str, dict]] = {name: {} for name in self.COLLECTIONS}
        self._lock = threading.RLock()
        self._depth = 0
        self._journal: Optional[list] = None
        self._changed: set[str] = set()
        self._subscribers: list[Subscriber] = []
        self.collections[PLATFORM_CONFIG][PLATFORM_CONFIG_ID] = {
            "id": PLATFORM_CONFIG_ID,
            "fee": platform_fee,
            "offer_bar_text": offer_bar_text,
        }

    @staticmethod
    def new_id() -> str:
        return str(uuid4())

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        """Run a read-modify-write unit atomically.

        Nested calls join the enclosing transaction; a failure inside a nested
        block only undoes the writes made since that block started.
        """
        self._lock.acquire()
        outermost = self._depth == 0
        if outermost:
            self._journal = []
            self._changed = set()
        marker = len(self._journal)
        self._depth += 1
        committed = False
        snapshots = {}
        try:
            yield self
            committed = True
        except BaseException:
            self._rollback_to(marker)
            raise
        finally:
            self._depth -= 1
            if outermost:
                if committed:
                    snapshots = {name: self.find(name) for name in sorted(self._changed)}
                self._journal = None
                self._changed = set()
            self._lock.release()
        for name, docs in snapshots.items():
            self._notify(name, docs)

    def _rollback_to(self, marker: int) -> None:
        while len(self._journal) > marker:
            collection, doc_id, previous = self._journal.pop()
            if previous is _MISSING:
                self.collections[collection].pop(doc_id, None)
            else:
                self.collections[collection][doc_id] = previous
        if marker == 0:
            logger.warning("Transaction rolled back")

    def _record(self, collection: str, doc_id: str) -> None:
        self._journal.append((collection, doc_id, self.collections[collection].get(doc_id, _MISSING)))
        self._changed.add(collection)

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._lock:
            doc = self.collections[collection].get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def find(self, collection: str, predicate: Optional[Callable[[dict], bool]] = None) -> list[dict]:
        with self._lock:
            return [
                copy.deepcopy(doc) for doc in self.collections[collection].values()
                if predicate is None or predicate(doc)
            ]

    def find_one(self, collection: str, predicate: Callable[[dict], bool]) -> Optional[dict]:
        with self._lock:
            for doc in self.collections[collection].values():
                if predicate(doc):
                    return copy.deepcopy(doc)
        return None

    def put(self, collection: str, doc: dict) -> dict:
        with self.transaction():
            self._record(collection, doc["id"])
            self.collections[collection][doc["id"]] = copy.deepcopy(doc)
        return doc

    def update(self, collection: str, doc_id: str, changes: dict) -> dict:
        with self.transaction():
            current = self.collections[collection].get(doc_id)
            if current is None:
                raise KeyError(f"{collection}/{doc_id} does not exist")
            updated = {**copy.deepcopy(current), **copy.deepcopy(changes)}
            self._record(collection, doc_id)
            self.collections[collection][doc_id] = updated
        return copy.deepcopy(updated)

    def delete(self, collection: str, doc_id: str) -> bool:
        with self.transaction():
            if doc_id not in self.collections[collection]:
                return False
            self._record(collection, doc_id)
            del self.collections[collection][doc_id]
        return True

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a change listener; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, collection: str, docs: list) -> None:
        for callback in list(self._subscribers):
            try:
                callback(collection, docs)
            except Exception:
                logger.exception(f"Subscriber failed handling change to {collection}")
