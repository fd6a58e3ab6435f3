from datetime import date, datetime

import pytest
from pydantic import ValidationError

from models import TransactionType
from schemas import CategoryIn, CategoryUpdate, TransactionIn
from services import UNGROUPED, CategoryService, ProfileService, TransactionService


def test_category_update_merges_only_supplied_fields(store) -> None:
    service = CategoryService(store, "u1")
    food = service.create(
        CategoryIn(name="Food", group="Daily", type=TransactionType.expense)
    )

    updated = service.update(food.id, CategoryUpdate(group="Living"))

    assert updated.name == "Food"
    assert updated.group == "Living"
    assert updated.type == TransactionType.expense
    assert store.get(f"users/u1/categories/{food.id}").data["id"] == food.id


def test_category_update_missing_raises(store) -> None:
    service = CategoryService(store, "u1")

    with pytest.raises(ValueError, match="Category not found"):
        service.update("missing", CategoryUpdate(name="Other"))


def test_categories_listed_by_group_then_name(store) -> None:
    service = CategoryService(store, "u1")
    service.create(CategoryIn(name="taxi", group="Transport"))
    service.create(CategoryIn(name="Bus", group="Transport"))
    service.create(CategoryIn(name="Snacks"))
    service.create(CategoryIn(name="Salary", type=TransactionType.income))

    expenses = service.list_all(TransactionType.expense)
    grouped = service.grouped(TransactionType.expense)

    assert [c.name for c in expenses] == ["Snacks", "Bus", "taxi"]
    assert list(grouped) == ["Transport", UNGROUPED]
    assert [c.name for c in grouped[UNGROUPED]] == ["Snacks"]
    assert [c.name for c in service.list_all(TransactionType.income)] == ["Salary"]


def test_categories_are_scoped_to_their_user(store) -> None:
    CategoryService(store, "u1").create(CategoryIn(name="Food"))

    assert CategoryService(store, "u2").list_all() == []


def test_transaction_keeps_category_snapshot_after_rename(store) -> None:
    categories = CategoryService(store, "u1")
    food = categories.create(CategoryIn(name="Food"))
    transactions = TransactionService(store, "u1", categories)
    txn = transactions.create(
        TransactionIn(amount=25_000, category_id=food.id, date=datetime(2025, 6, 2, 12))
    )

    categories.update(food.id, CategoryUpdate(name="Groceries"))

    stored = transactions.get(txn.id)
    assert stored.category_name == "Food"
    assert stored.category_type == "expense"
    assert stored.amount == 25_000


def test_transaction_update_refreshes_category_snapshot(store) -> None:
    categories = CategoryService(store, "u1")
    food = categories.create(CategoryIn(name="Food"))
    bonus = categories.create(CategoryIn(name="Bonus", type=TransactionType.income))
    transactions = TransactionService(store, "u1", categories)
    txn = transactions.create(
        TransactionIn(amount=100, category_id=food.id, date=date(2025, 6, 2), note="x")
    )

    updated = transactions.update(
        txn.id,
        TransactionIn(amount=300, category_id=bonus.id, date=date(2025, 6, 3)),
    )

    assert updated.category_name == "Bonus"
    assert updated.category_type == "income"
    assert updated.amount == 300
    assert updated.date == datetime(2025, 6, 3)
    assert updated.note == ""


def test_transaction_requires_existing_category(store) -> None:
    transactions = TransactionService(store, "u1")

    with pytest.raises(ValueError, match="Category not found"):
        transactions.create(
            TransactionIn(amount=100, category_id="nope", date=datetime(2025, 6, 2))
        )
    assert transactions.list_all() == []


def test_transaction_update_missing_raises(store) -> None:
    categories = CategoryService(store, "u1")
    food = categories.create(CategoryIn(name="Food"))
    transactions = TransactionService(store, "u1", categories)

    with pytest.raises(ValueError, match="Transaction not found"):
        transactions.update(
            "missing",
            TransactionIn(amount=1, category_id=food.id, date=datetime(2025, 6, 2)),
        )


def test_deleting_category_leaves_transactions(store) -> None:
    categories = CategoryService(store, "u1")
    food = categories.create(CategoryIn(name="Food"))
    transactions = TransactionService(store, "u1", categories)
    transactions.create(
        TransactionIn(amount=100, category_id=food.id, date=datetime(2025, 6, 2))
    )

    categories.delete(food.id)
    categories.delete(food.id)

    (remaining,) = transactions.list_all()
    assert remaining.category_id == food.id
    assert remaining.category_name == "Food"


def test_transactions_listed_newest_first(store) -> None:
    categories = CategoryService(store, "u1")
    food = categories.create(CategoryIn(name="Food"))
    transactions = TransactionService(store, "u1", categories)
    for day in (3, 9, 5):
        transactions.create(
            TransactionIn(amount=day, category_id=food.id, date=datetime(2025, 6, day))
        )

    assert [t.amount for t in transactions.list_all()] == [9, 5, 3]


def test_profile_rename_keeps_role(store) -> None:
    store.set("users/u1", {"id": "u1", "email": "a@example.com", "name": "A", "role": "admin"})

    user = ProfileService(store, "u1").rename("  Ana  ")

    assert user.name == "Ana"
    assert user.role == "admin"


def test_profile_missing_user_raises(store) -> None:
    with pytest.raises(ValueError, match="User not found"):
        ProfileService(store, "ghost").get()


def test_dates_outside_local_range_are_rejected_before_writing(store) -> None:
    categories = CategoryService(store, "u1")
    food = categories.create(CategoryIn(name="Food"))

    for value in ("0001-01-01T00:00:00+14:00", "9999-12-31T23:00:00-10:00"):
        with pytest.raises(ValidationError, match="Date is out of range"):
            TransactionIn(amount=1, category_id=food.id, date=value)

    assert store.list("users/u1/transactions") == []
