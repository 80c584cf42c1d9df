from datetime import datetime
from decimal import Decimal

import pytest

from models import FieldType
from schemas import CategoryIn, ExpenseIn, FieldIn
from services import (
    CategoryService,
    Conflict,
    ExpenseService,
    NotFound,
    ValidationFailed,
)


def test_list_is_ordered_by_name_and_scoped_to_owner(session, user, other_user) -> None:
    service = CategoryService(session, user.id)
    service.create(CategoryIn(name="Rent"))
    service.create(CategoryIn(name="Fuel"))
    CategoryService(session, other_user.id).create(CategoryIn(name="Books"))

    assert [c.name for c in service.list_all()] == ["Fuel", "Rent"]


def test_create_rejects_duplicate_name_per_user(session, user, other_user) -> None:
    CategoryService(session, user.id).create(CategoryIn(name="Food"))

    with pytest.raises(Conflict):
        CategoryService(session, user.id).create(CategoryIn(name=" Food "))

    other = CategoryService(session, other_user.id).create(CategoryIn(name="Food"))
    assert other.user_id == other_user.id


def test_create_stores_normalized_field_schema(session, user) -> None:
    category = CategoryService(session, user.id).create(
        CategoryIn(
            name="Fuel",
            fields=[
                FieldIn(key="liters", label="Liters", type=FieldType.number, options=["x"]),
                FieldIn(key="grade", label="Grade", type=FieldType.select, options=["95", "98"]),
            ],
        )
    )

    assert category.fields == [
        {"key": "liters", "label": "Liters", "type": "number", "options": []},
        {"key": "grade", "label": "Grade", "type": "select", "options": ["95", "98"]},
    ]


def test_create_rejects_select_without_options(session, user) -> None:
    with pytest.raises(ValidationFailed):
        CategoryService(session, user.id).create(
            CategoryIn(name="Fuel", fields=[FieldIn(key="grade", type=FieldType.select)])
        )


def test_seed_defaults_is_idempotent(session, user) -> None:
    service = CategoryService(session, user.id)
    service.create(CategoryIn(name="Rice"))

    assert service.seed_defaults(["Rice", "Gas", "Gas", " ", "Kids"]) == 2
    assert service.seed_defaults(["Rice", "Gas", "Kids"]) == 0
    assert [c.name for c in service.list_all()] == ["Gas", "Kids", "Rice"]


def test_seed_defaults_falls_back_to_configured_names(session, user) -> None:
    service = CategoryService(session, user.id)

    created = service.seed_defaults([])

    assert created > 0
    assert service.seed_defaults([]) == 0


def test_update_replaces_fields_wholesale(session, user) -> None:
    service = CategoryService(session, user.id)
    category = service.create(
        CategoryIn(name="Food", fields=[FieldIn(key="store", label="Store")])
    )

    updated = service.update(
        category.id,
        CategoryIn(name="Groceries", fields=[FieldIn(key="organic", type=FieldType.boolean)]),
    )

    assert updated.name == "Groceries"
    assert [f["key"] for f in updated.fields] == ["organic"]


def test_update_conflicts_with_another_category_name(session, user) -> None:
    service = CategoryService(session, user.id)
    food = service.create(CategoryIn(name="Food"))
    service.create(CategoryIn(name="Rent"))

    with pytest.raises(Conflict):
        service.update(food.id, CategoryIn(name="Rent"))

    # keeping its own name is not a conflict
    assert service.update(food.id, CategoryIn(name="Food")).name == "Food"


def test_update_and_delete_of_foreign_category_is_not_found(session, user, other_user) -> None:
    theirs = CategoryService(session, other_user.id).create(CategoryIn(name="Food"))
    service = CategoryService(session, user.id)

    with pytest.raises(NotFound):
        service.update(theirs.id, CategoryIn(name="Mine"))
    with pytest.raises(NotFound):
        service.delete(theirs.id)
    with pytest.raises(NotFound):
        service.delete(9999)


def test_delete_blocked_while_expenses_reference_category(session, user) -> None:
    service = CategoryService(session, user.id)
    food = service.create(CategoryIn(name="Food"))
    rent = service.create(CategoryIn(name="Rent"))
    expense = ExpenseService(session, user.id).create(
        ExpenseIn(category_id=food.id, amount=Decimal("5"), date=datetime(2024, 1, 1))
    )

    with pytest.raises(Conflict):
        service.delete(food.id)

    service.delete(rent.id)
    ExpenseService(session, user.id).delete(expense.id)
    service.delete(food.id)

    assert service.list_all() == []


def test_concurrent_create_with_same_name_conflicts(session_factory, user, monkeypatch) -> None:
    with session_factory() as first, session_factory() as second:
        CategoryService(first, user.id).create(CategoryIn(name="Fuel"))
        # the second request passed its name check before the first committed
        monkeypatch.setattr(CategoryService, "_find_by_name", lambda self, name: None)

        with pytest.raises(Conflict):
            CategoryService(second, user.id).create(CategoryIn(name="Fuel"))

        assert [c.name for c in CategoryService(second, user.id).list_all()] == ["Fuel"]


def test_concurrent_rename_to_taken_name_conflicts(session_factory, user, monkeypatch) -> None:
    with session_factory() as first, session_factory() as second:
        CategoryService(first, user.id).create(CategoryIn(name="Fuel"))
        rent = CategoryService(second, user.id).create(CategoryIn(name="Rent"))
        monkeypatch.setattr(CategoryService, "_find_by_name", lambda self, name: None)

        with pytest.raises(Conflict):
            CategoryService(second, user.id).update(rent.id, CategoryIn(name="Fuel"))
