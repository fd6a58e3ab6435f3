from __future__ import annotations

import logging
import uuid
from typing import Optional

from aggregation import parse_transactions
from docstore import (
    DocumentSnapshot,
    DocumentStore,
    ErrorListener,
    SnapshotListener,
    Unsubscribe,
    collection_path,
    doc_path,
)
from models import TransactionType
from schemas import Category, CategoryIn, CategoryUpdate, Transaction, TransactionIn, User
from sessions import user_path

logger = logging.getLogger(__name__)

UNGROUPED = "Ungrouped"


def category_from_snapshot(snapshot: DocumentSnapshot) -> Optional[Category]:
    data = snapshot.data
    try:
        category_type = TransactionType(data.get("type"))
    except ValueError:
        logger.debug(f"skip_category: id={snapshot.id} reason=unknown_type")
        return None
    return Category(
        id=snapshot.id,
        name=data.get("name") or "",
        group=(data.get("group") or "").strip() or None,
        type=category_type,
    )


def group_label(category: Category) -> str:
    return (category.group or "").strip() or UNGROUPED


class CategoryService:
    def __init__(self, store: DocumentStore, user_id: str) -> None:
        self.store = store
        self.user_id = user_id

    def _collection(self) -> str:
        return collection_path("users", self.user_id, "categories")

    def _path(self, category_id: str) -> str:
        return doc_path(self._collection(), category_id)

    def list_all(self, type: Optional[TransactionType] = None) -> list[Category]:
        categories = [
            cat
            for cat in map(category_from_snapshot, self.store.list(self._collection()))
            if cat is not None
        ]
        if type is not None:
            categories = [cat for cat in categories if cat.type == type]
        categories.sort(key=lambda c: ((c.group or "").lower(), c.name.lower()))
        return categories

    def grouped(self, type: TransactionType) -> dict[str, list[Category]]:
        groups: dict[str, list[Category]] = {}
        for category in self.list_all(type):
            groups.setdefault(group_label(category), []).append(category)
        return {label: groups[label] for label in sorted(groups)}

    def get(self, category_id: str) -> Category:
        snapshot = self.store.get(self._path(category_id))
        category = category_from_snapshot(snapshot) if snapshot else None
        if category is None:
            raise ValueError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        category_id = str(uuid.uuid4())
        self.store.set(
            self._path(category_id),
            {
                "id": category_id,
                "name": data.name,
                "group": data.group or "",
                "type": data.type.value,
            },
        )
        logger.info(f"category_created: user={self.user_id} id={category_id}")
        return self.get(category_id)

    def update(self, category_id: str, data: CategoryUpdate) -> Category:
        self.get(category_id)
        fields: dict[str, object] = {}
        if data.name is not None:
            fields["name"] = data.name
        if data.group is not None:
            fields["group"] = data.group.strip()
        if data.type is not None:
            fields["type"] = data.type.value
        if fields:
            self.store.set(self._path(category_id), fields, merge=True)
        logger.info(
            f"category_updated: user={self.user_id} id={category_id} "
            f"fields={sorted(fields)}"
        )
        return self.get(category_id)

    def delete(self, category_id: str) -> None:
        # Transactions keep their frozen category fields; nothing cascades.
        self.store.delete(self._path(category_id))
        logger.info(f"category_deleted: user={self.user_id} id={category_id}")


class TransactionService:
    def __init__(
        self,
        store: DocumentStore,
        user_id: str,
        categories: Optional[CategoryService] = None,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.categories = categories or CategoryService(store, user_id)

    def _collection(self) -> str:
        return collection_path("users", self.user_id, "transactions")

    def _path(self, transaction_id: str) -> str:
        return doc_path(self._collection(), transaction_id)

    def list_all(self) -> list[Transaction]:
        transactions = parse_transactions(self.store.list(self._collection()))
        transactions.sort(key=lambda t: (t.date, t.id), reverse=True)
        return transactions

    def get(self, transaction_id: str) -> Transaction:
        snapshot = self.store.get(self._path(transaction_id))
        parsed = parse_transactions([snapshot]) if snapshot else []
        if not parsed:
            raise ValueError("Transaction not found")
        return parsed[0]

    def subscribe(
        self, on_next: SnapshotListener, on_error: Optional[ErrorListener] = None
    ) -> Unsubscribe:
        return self.store.on_snapshot(self._collection(), on_next, on_error)

    def _payload(self, data: TransactionIn) -> dict[str, object]:
        category = self.categories.get(data.category_id)
        return {
            "amount": data.amount,
            "categoryId": category.id,
            "categoryName": category.name,
            "categoryType": category.type.value,
            "date": data.date.isoformat(),
            "note": data.note,
        }

    def create(self, data: TransactionIn) -> Transaction:
        payload = self._payload(data)
        transaction_id = str(uuid.uuid4())
        self.store.set(self._path(transaction_id), payload)
        logger.info(f"transaction_created: user={self.user_id} id={transaction_id}")
        return self.get(transaction_id)

    def update(self, transaction_id: str, data: TransactionIn) -> Transaction:
        if self.store.get(self._path(transaction_id)) is None:
            raise ValueError("Transaction not found")
        payload = self._payload(data)
        self.store.set(self._path(transaction_id), payload, merge=True)
        logger.info(f"transaction_updated: user={self.user_id} id={transaction_id}")
        return self.get(transaction_id)

    def delete(self, transaction_id: str) -> None:
        self.store.delete(self._path(transaction_id))
        logger.info(f"transaction_deleted: user={self.user_id} id={transaction_id}")


class ProfileService:
    def __init__(self, store: DocumentStore, user_id: str) -> None:
        self.store = store
        self.user_id = user_id

    def get(self) -> User:
        snapshot = self.store.get(user_path(self.user_id))
        if snapshot is None:
            raise ValueError("User not found")
        return User(**{**snapshot.data, "id": self.user_id})

    def rename(self, name: str) -> User:
        self.store.set(user_path(self.user_id), {"name": name.strip()}, merge=True)
        logger.info(f"profile_updated: user={self.user_id}")
        return self.get()


def list_users(store: DocumentStore) -> list[User]:
    return [
        User(**{**snapshot.data, "id": snapshot.id})
        for snapshot in store.list(collection_path("users"))
    ]
