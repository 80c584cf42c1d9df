from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, contains_eager

from auth import hash_password, verify_password
from config import get_settings
from csv_utils import export_expenses
from custom_fields import (
    FieldSpec,
    FieldValueError,
    load_schema,
    normalize_schema,
    sanitize_custom_fields,
)
from models import Category, Expense, Payment, User
from periods import resolve_window
from schemas import CategoryIn, ExpenseIn, FieldIn, PaymentIn, SignupIn

logger = logging.getLogger(__name__)

UNKNOWN_CATEGORY = "Unknown"
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


class ServiceError(ValueError):
    status_code = 400

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class ValidationFailed(ServiceError):
    status_code = 400


class Unauthorized(ServiceError):
    status_code = 401


class NotFound(ServiceError):
    status_code = 404


class Conflict(ServiceError):
    status_code = 409


def cents_to_amount(cents: int) -> float:
    return cents / 100


def amount_to_cents(amount: Decimal) -> int:
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents <= 0:
        raise ValidationFailed("Amount must be greater than 0", field="amount")
    return cents


def parse_search_amount(text: str) -> Optional[int]:
    """Cents for a search string that reads as a plain number, else None."""
    try:
        value = Decimal(text.strip())
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    scaled = value * 100
    if scaled != scaled.to_integral_value():
        return None
    return int(scaled)


def _like_pattern(text: str) -> str:
    escaped = text.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


@dataclass
class ExpenseFilters:
    category_id: Optional[int] = None
    query: Optional[str] = None


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def signup(self, data: SignupIn) -> User:
        existing = self.session.scalar(select(User).where(User.email == data.email))
        if existing:
            raise Conflict("Email already registered", field="email")
        user = User(
            name=data.name,
            email=data.email,
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict("Email already registered", field="email") from exc
        self.session.refresh(user)
        logger.info(f"user_signup: user_id={user.id}")
        return user

    def authenticate(self, email: str, password: str) -> User:
        user = self.session.scalar(
            select(User).where(User.email == email.strip().lower())
        )
        if not user or not verify_password(password, user.password_hash):
            logger.info("user_login: result=rejected")
            raise Unauthorized("Invalid credentials")
        logger.info(f"user_login: user_id={user.id}")
        return user


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name, Category.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        return category

    def _find_by_name(self, name: str) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id, Category.name == name
            )
        )

    def _commit_names(self, message: str) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict(message, field="name") from exc

    @staticmethod
    def _schema(fields: Iterable[FieldIn]) -> list[dict[str, object]]:
        specs = [
            FieldSpec(key=f.key, label=f.label, type=f.type, options=tuple(f.options))
            for f in fields
        ]
        try:
            return [spec.to_dict() for spec in normalize_schema(specs)]
        except FieldValueError as exc:
            raise ValidationFailed(str(exc), field=exc.key) from exc

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if self._find_by_name(name):
            raise Conflict("Category already exists", field="name")
        category = Category(
            user_id=self.user_id, name=name, fields=self._schema(data.fields)
        )
        self.session.add(category)
        self._commit_names("Category already exists")
        self.session.refresh(category)
        logger.info(f"category_create: user_id={self.user_id} category_id={category.id}")
        return category

    def seed_defaults(self, names: Iterable[str]) -> int:
        requested = [n.strip() for n in names if n and n.strip()]
        if not requested:
            requested = list(get_settings().default_categories)
        existing = set(
            self.session.scalars(
                select(Category.name).where(Category.user_id == self.user_id)
            ).all()
        )
        to_create = [n for n in dict.fromkeys(requested) if n not in existing]
        for name in to_create:
            self.session.add(Category(user_id=self.user_id, name=name, fields=[]))
        if to_create:
            self._commit_names("Category already exists")
        logger.info(
            f"category_seed: user_id={self.user_id} requested={len(requested)} "
            f"created={len(to_create)}"
        )
        return len(to_create)

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        name = data.name.strip()
        clash = self._find_by_name(name)
        if clash and clash.id != category.id:
            raise Conflict("Category with this name already exists", field="name")
        category.name = name
        category.fields = self._schema(data.fields)
        self._commit_names("Category with this name already exists")
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        usage = self.session.execute(
            select(func.count(Expense.id)).where(
                Expense.user_id == self.user_id, Expense.category_id == category.id
            )
        ).scalar_one()
        if usage:
            raise Conflict("Category has related expenses")
        self.session.delete(category)
        self.session.commit()
        logger.info(f"category_delete: user_id={self.user_id} category_id={category_id}")


class ExpenseService:
    SORT_COLUMNS = {
        "date": Expense.date,
        "amount": Expense.amount_cents,
        "itemName": Expense.item_name,
        "description": Expense.description,
        "category": Category.name,
        "createdAt": Expense.created_at,
    }

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _category_for_write(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Invalid category", field="categoryId")
        return category

    def _conditions(self, filters: ExpenseFilters) -> list:
        conditions = [Expense.user_id == self.user_id]
        if filters.category_id:
            conditions.append(Expense.category_id == filters.category_id)
        if filters.query and filters.query.strip():
            query = filters.query.strip()
            clauses = [
                func.lower(func.coalesce(Expense.description, "")).like(
                    _like_pattern(query), escape="\\"
                )
            ]
            cents = parse_search_amount(query)
            if cents is not None:
                clauses.append(Expense.amount_cents == cents)
            conditions.append(or_(*clauses))
        return conditions

    def _select(self, filters: ExpenseFilters):
        return (
            select(Expense)
            .outerjoin(Expense.category)
            .options(contains_eager(Expense.category))
            .where(*self._conditions(filters))
        )

    def list(
        self,
        filters: ExpenseFilters,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        sort_key: str = "date",
        sort_dir: str = "desc",
    ) -> tuple[list[Expense], int]:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        column = self.SORT_COLUMNS.get(sort_key, Expense.date)
        if sort_dir == "asc":
            order = (column.asc(), Expense.id.asc())
        else:
            order = (column.desc(), Expense.id.desc())
        stmt = (
            self._select(filters)
            .order_by(*order)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = self.session.scalars(stmt).all()
        total = self.session.execute(
            select(func.count(Expense.id)).where(*self._conditions(filters))
        ).scalar_one()
        return items, int(total or 0)

    def get(self, expense_id: int) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if not expense or expense.user_id != self.user_id:
            raise NotFound("Expense not found")
        return expense

    def _clean_fields(self, category: Category, data: ExpenseIn) -> dict[str, object]:
        try:
            return sanitize_custom_fields(
                load_schema(category.fields), data.custom_fields
            )
        except FieldValueError as exc:
            raise ValidationFailed(str(exc), field=f"customFields.{exc.key}") from exc

    def create(self, data: ExpenseIn) -> Expense:
        category = self._category_for_write(data.category_id)
        expense = Expense(
            user_id=self.user_id,
            category_id=category.id,
            item_name=(data.item_name or "").strip() or None,
            amount_cents=amount_to_cents(data.amount),
            date=data.date,
            description=data.description,
            custom_fields=self._clean_fields(category, data),
        )
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def update(self, expense_id: int, data: ExpenseIn) -> Expense:
        category = self._category_for_write(data.category_id)
        expense = self.get(expense_id)
        expense.category_id = category.id
        expense.item_name = (data.item_name or "").strip() or None
        expense.amount_cents = amount_to_cents(data.amount)
        expense.date = data.date
        expense.description = data.description
        expense.custom_fields = self._clean_fields(category, data)
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        self.session.delete(expense)
        self.session.commit()

    def bulk_delete(
        self,
        category_id: int,
        *,
        days: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> int:
        category = self._category_for_write(category_id)
        try:
            window = resolve_window(days, start, end, now=now)
        except ValueError as exc:
            raise ValidationFailed(str(exc)) from exc
        stmt = delete(Expense).where(
            Expense.user_id == self.user_id,
            Expense.category_id == category.id,
            Expense.date >= window.start,
        )
        if window.end is not None:
            stmt = stmt.where(Expense.date <= window.end)
        result = self.session.execute(stmt.execution_options(synchronize_session=False))
        self.session.commit()
        deleted = int(result.rowcount or 0)
        logger.info(
            f"expense_bulk_delete: user_id={self.user_id} category_id={category.id} "
            f"mode={window.slug} deleted={deleted}"
        )
        return deleted

    def export_rows(self, filters: ExpenseFilters) -> list[dict[str, object]]:
        stmt = self._select(filters).order_by(Expense.date.desc(), Expense.id.desc())
        return [
            {
                "date": expense.date,
                "category": expense.category.name if expense.category else None,
                "amount_cents": expense.amount_cents,
                "description": expense.description,
            }
            for expense in self.session.scalars(stmt).all()
        ]


class PaymentService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def record(self, data: PaymentIn, *, now: Optional[datetime] = None) -> Payment:
        category = self.session.get(Category, data.category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Invalid category", field="categoryId")
        payment = Payment(
            user_id=self.user_id,
            category_id=category.id,
            amount_cents=amount_to_cents(data.amount),
            date=data.date or now or datetime.utcnow(),
            note=data.note,
        )
        self.session.add(payment)
        self.session.commit()
        self.session.refresh(payment)
        logger.info(
            f"payment_recorded: user_id={self.user_id} category_id={category.id} "
            f"amount_cents={payment.amount_cents}"
        )
        return payment

    def history(self, category_id: int) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.user_id == self.user_id, Payment.category_id == category_id)
            .order_by(Payment.date.desc(), Payment.id.desc())
        )
        return self.session.scalars(stmt).all()

    def _totals(self, model, category_id: Optional[int]) -> dict[int, int]:
        stmt = (
            select(
                model.category_id,
                func.coalesce(func.sum(model.amount_cents), 0).label("total"),
            )
            .where(model.user_id == self.user_id)
            .group_by(model.category_id)
        )
        if category_id is not None:
            stmt = stmt.where(model.category_id == category_id)
        return {row.category_id: int(row.total or 0) for row in self.session.execute(stmt)}

    def summary(
        self,
        category_id: Optional[int] = None,
        *,
        include_all: Optional[bool] = None,
    ) -> list[dict[str, object]]:
        """Per-category expense total, amount paid and outstanding balance.

        Expense and payment sums are computed independently and outer-joined
        on category. ``include_all=False`` keeps only categories that have
        some payment and a remaining balance; it defaults to ``True`` when a
        single category is requested.
        """
        names = {
            row.id: row.name
            for row in self.session.execute(
                select(Category.id, Category.name).where(
                    Category.user_id == self.user_id
                )
            )
        }
        if include_all is None:
            include_all = category_id is not None

        expenses = self._totals(Expense, category_id)
        paid = self._totals(Payment, category_id)
        if category_id in names:
            expenses.setdefault(category_id, 0)

        rows: list[dict[str, object]] = []
        for cat_id in set(expenses) | set(paid):
            total_expenses = expenses.get(cat_id, 0)
            total_paid = paid.get(cat_id, 0)
            balance = max(0, total_expenses - total_paid)
            if not include_all and not (total_paid > 0 and balance > 0):
                continue
            rows.append(
                {
                    "category_id": cat_id,
                    "name": names.get(cat_id, UNKNOWN_CATEGORY),
                    "total_expenses_cents": total_expenses,
                    "total_paid_cents": total_paid,
                    "balance_cents": balance,
                }
            )
        rows.sort(key=lambda r: (str(r["name"]).lower(), r["category_id"]))
        return rows


class StatsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def summary(self) -> dict[str, list[dict[str, object]]]:
        total = func.sum(Expense.amount_cents).label("total")
        by_category = self.session.execute(
            select(Category.id, Category.name, total)
            .select_from(Expense)
            .join(Category, Category.id == Expense.category_id)
            .where(Expense.user_id == self.user_id)
            .group_by(Category.id, Category.name)
            .order_by(total.desc(), Category.name)
        ).all()

        day = func.date(Expense.date).label("day")
        by_date = self.session.execute(
            select(day, func.sum(Expense.amount_cents).label("total"))
            .where(Expense.user_id == self.user_id)
            .group_by(day)
            .order_by(day)
        ).all()

        return {
            "by_category": [
                {"category_id": row.id, "name": row.name, "total_cents": int(row.total)}
                for row in by_category
            ],
            "by_date": [
                {"date": str(row.day), "total_cents": int(row.total)} for row in by_date
            ],
        }


class CSVService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def export(self, filters: ExpenseFilters) -> str:
        rows = ExpenseService(self.session, self.user_id).export_rows(filters)
        return export_expenses(rows)


class ReportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def gather_data(self, filters: ExpenseFilters) -> dict[str, object]:
        rows = ExpenseService(self.session, self.user_id).export_rows(filters)
        category_name = None
        if filters.category_id:
            category = self.session.get(Category, filters.category_id)
            if category and category.user_id == self.user_id:
                category_name = category.name
        return {
            "rows": rows,
            "total_cents": sum(int(r["amount_cents"]) for r in rows),
            "category_name": category_name,
            "search": filters.query,
        }
