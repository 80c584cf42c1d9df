from datetime import datetime
from decimal import Decimal

import pytest

from schemas import CategoryIn, ExpenseIn, PaymentIn
from services import CategoryService, ExpenseService, NotFound, PaymentService


@pytest.fixture
def categories(session, user):
    service = CategoryService(session, user.id)
    return {name: service.create(CategoryIn(name=name)) for name in ("Food", "Rent", "Fuel")}


def spend(session, user, category, amount, when=datetime(2024, 1, 1)):
    ExpenseService(session, user.id).create(
        ExpenseIn(category_id=category.id, amount=Decimal(str(amount)), date=when)
    )


def pay(session, user, category, amount, when=None):
    return PaymentService(session, user.id).record(
        PaymentIn(category_id=category.id, amount=Decimal(str(amount)), date=when),
        now=datetime(2024, 5, 1, 9, 30),
    )


def test_record_defaults_date_to_now(session, user, categories) -> None:
    payment = pay(session, user, categories["Food"], 25)

    assert payment.date == datetime(2024, 5, 1, 9, 30)
    assert payment.amount_cents == 2500


def test_record_rejects_foreign_category(session, user, other_user, categories) -> None:
    with pytest.raises(NotFound, match="Invalid category"):
        PaymentService(session, other_user.id).record(
            PaymentIn(category_id=categories["Food"].id, amount=Decimal("1"))
        )


def test_summary_for_one_category(session, user, categories) -> None:
    food = categories["Food"]
    spend(session, user, food, 100)
    spend(session, user, food, 200)
    pay(session, user, food, 120)

    rows = PaymentService(session, user.id).summary(food.id)

    assert rows == [
        {
            "category_id": food.id,
            "name": "Food",
            "total_expenses_cents": 30000,
            "total_paid_cents": 12000,
            "balance_cents": 18000,
        }
    ]


def test_global_summary_keeps_partially_paid_categories_only(session, user, categories) -> None:
    spend(session, user, categories["Food"], 300)
    pay(session, user, categories["Food"], 120)
    spend(session, user, categories["Rent"], 500)
    spend(session, user, categories["Fuel"], 50)
    pay(session, user, categories["Fuel"], 80)

    service = PaymentService(session, user.id)
    rows = service.summary()

    assert [r["name"] for r in rows] == ["Food"]
    assert rows[0]["balance_cents"] == 18000

    everything = service.summary(include_all=True)
    assert [r["name"] for r in everything] == ["Food", "Fuel", "Rent"]
    fuel = everything[1]
    assert fuel["total_paid_cents"] == 8000
    assert fuel["balance_cents"] == 0


def test_summary_for_idle_owned_category_is_a_zero_row(session, user, categories) -> None:
    rows = PaymentService(session, user.id).summary(categories["Rent"].id)

    assert rows == [
        {
            "category_id": categories["Rent"].id,
            "name": "Rent",
            "total_expenses_cents": 0,
            "total_paid_cents": 0,
            "balance_cents": 0,
        }
    ]


def test_summary_of_foreign_category_shows_nothing(session, user, other_user, categories) -> None:
    food = categories["Food"]
    spend(session, user, food, 100)
    pay(session, user, food, 40)

    service = PaymentService(session, other_user.id)

    assert service.summary(food.id) == []
    assert service.history(food.id) == []


def test_deleted_category_keeps_summary_and_history(session, user, categories) -> None:
    fuel = categories["Fuel"]
    payment = pay(session, user, fuel, 10)
    CategoryService(session, user.id).delete(fuel.id)

    service = PaymentService(session, user.id)

    assert service.summary(fuel.id) == [
        {
            "category_id": fuel.id,
            "name": "Unknown",
            "total_expenses_cents": 0,
            "total_paid_cents": 1000,
            "balance_cents": 0,
        }
    ]
    assert [p.id for p in service.history(fuel.id)] == [payment.id]


def test_payments_outlive_deleted_category(session, user, categories) -> None:
    rent = categories["Rent"]
    pay(session, user, rent, 40)
    CategoryService(session, user.id).delete(rent.id)

    rows = PaymentService(session, user.id).summary(include_all=True)

    assert rows == [
        {
            "category_id": rent.id,
            "name": "Unknown",
            "total_expenses_cents": 0,
            "total_paid_cents": 4000,
            "balance_cents": 0,
        }
    ]


def test_summary_is_scoped_to_user(session, user, other_user, categories) -> None:
    theirs = CategoryService(session, other_user.id).create(CategoryIn(name="Books"))
    spend(session, other_user, theirs, 90)
    pay(session, other_user, theirs, 10)

    assert PaymentService(session, user.id).summary(include_all=True) == []


def test_history_is_newest_first(session, user, categories) -> None:
    food = categories["Food"]
    first = pay(session, user, food, 1, datetime(2024, 1, 1))
    second = pay(session, user, food, 2, datetime(2024, 3, 1))
    third = pay(session, user, food, 3, datetime(2024, 3, 1))
    pay(session, user, categories["Rent"], 4, datetime(2024, 4, 1))

    history = PaymentService(session, user.id).history(food.id)

    assert [p.id for p in history] == [third.id, second.id, first.id]
