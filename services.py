from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Iterable, Iterator, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from errors import (
    AuthorizationError,
    BudgetyError,
    ConflictError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from models import BudgetOverride, Category, Transaction, User, UserId, utcnow
from money import format_cents
from periods import Month, Period, local_now, to_local_naive
from schemas import BudgetOverrideIn, CategoryIn, DefaultBudgetIn, TransactionIn

logger = logging.getLogger(__name__)


@contextmanager
def store_guard(session: Session, action: str) -> Iterator[None]:
    """Roll back on failure and surface store errors as ``TransientError``."""
    try:
        yield
    except BudgetyError:
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception(f"store_failure: action={action}")
        raise TransientError() from exc


def resolve_budget(override_cents: Optional[int], default_cents: Optional[int]) -> int:
    """Effective budget: the month's override, else the category default, else 0."""
    if override_cents is not None:
        return override_cents
    if default_cents is not None:
        return default_cents
    return 0


def parse_payer(value: Optional[str]) -> Optional[UserId]:
    if not value:
        return None
    try:
        return UserId(value)
    except ValueError:
        return None


def parse_category_ids(values: Iterable[object]) -> frozenset[int]:
    ids: set[int] = set()
    for raw in values:
        text = str(raw).strip()
        if not text:
            continue
        try:
            ids.add(int(text))
        except ValueError as exc:
            raise ValidationError(f"Invalid category id: {text}") from exc
    return frozenset(ids)


@dataclass(frozen=True)
class TransactionFilters:
    category_ids: frozenset[int] = field(default_factory=frozenset)
    payer: Optional[UserId] = None

    @classmethod
    def from_params(
        cls, category_ids: Iterable[object], payer: Optional[str]
    ) -> "TransactionFilters":
        return cls(category_ids=parse_category_ids(category_ids), payer=parse_payer(payer))


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def ensure_seeded(self, owner_name: str, partner_name: str) -> None:
        wanted = {
            UserId.owner: (owner_name, True),
            UserId.partner: (partner_name, False),
        }
        with store_guard(self.session, "seed_users"):
            for user_id, (display_name, is_owner) in wanted.items():
                user = self.session.get(User, user_id)
                if user is None:
                    self.session.add(
                        User(id=user_id, display_name=display_name, is_owner=is_owner)
                    )
                    logger.info(f"user_seeded: id={user_id.value}")
                else:
                    user.display_name = display_name
                    user.is_owner = is_owner
            self.session.commit()

    def get(self, user_id: UserId) -> User:
        with store_guard(self.session, "get_user"):
            user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        with store_guard(self.session, "list_categories"):
            return self.session.scalars(
                select(Category).order_by(Category.name_key, Category.id)
            ).all()

    def get(self, category_id: int) -> Category:
        with store_guard(self.session, "get_category"):
            category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def find_by_name(self, name: str) -> Optional[Category]:
        with store_guard(self.session, "find_category"):
            return self.session.scalar(
                select(Category).where(Category.name_key == name.strip().lower())
            )

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name is required")
        if self.find_by_name(name):
            raise ConflictError("Category already exists")
        category = Category(name=name, name_key=name.lower())
        with store_guard(self.session, "create_category"):
            self.session.add(category)
            try:
                self.session.commit()
            except IntegrityError as exc:
                # lost a race against a concurrent create of the same name
                self.session.rollback()
                raise ConflictError("Category already exists") from exc
            self.session.refresh(category)
        logger.info(f"category_created: id={category.id} name={category.name!r}")
        return category

    def get_or_create(self, name: str) -> Category:
        existing = self.find_by_name(name)
        if existing:
            return existing
        try:
            return self.create(CategoryIn(name=name.strip()))
        except ConflictError:
            existing = self.find_by_name(name)
            if existing is None:
                raise
            return existing

    def set_default_budget(self, data: DefaultBudgetIn) -> Category:
        category = self.get(data.category_id)
        with store_guard(self.session, "set_default_budget"):
            category.default_budget_cents = data.amount_cents
            self.session.commit()
            self.session.refresh(category)
        logger.info(
            f"default_budget_set: category_id={category.id} "
            f"amount={'unset' if data.amount_cents is None else format_cents(data.amount_cents)}"
        )
        return category


@dataclass(frozen=True)
class BudgetLine:
    category_id: int
    category_name: str
    default_budget_cents: Optional[int]
    override_budget_cents: Optional[int]
    effective_budget_cents: int
    spent_cents: int
    left_cents: int
    has_override: bool
    is_overspent: bool


@dataclass(frozen=True)
class MonthBudget:
    month: str
    budgets: list[BudgetLine]
    effective_budget_cents: int
    spent_cents: int
    left_cents: int


class BudgetService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_override(self, category_id: int, month: Month) -> Optional[BudgetOverride]:
        with store_guard(self.session, "find_override"):
            return self.session.scalar(
                select(BudgetOverride)
                .where(
                    BudgetOverride.category_id == category_id,
                    BudgetOverride.year == month.year,
                    BudgetOverride.month == month.month,
                )
                .execution_options(populate_existing=True)
            )

    def upsert_override(self, data: BudgetOverrideIn) -> BudgetOverride:
        CategoryService(self.session).get(data.category_id)
        month = Month(data.year, data.month)
        now = utcnow()
        values = {
            "category_id": data.category_id,
            "year": data.year,
            "month": data.month,
            "amount_cents": data.amount_cents,
            "created_at": now,
            "updated_at": now,
        }
        with store_guard(self.session, "upsert_override"):
            insert = _dialect_insert(self.session)
            if insert is not None:
                stmt = insert(BudgetOverride).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["category_id", "year", "month"],
                    set_={
                        "amount_cents": stmt.excluded.amount_cents,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                self.session.execute(stmt)
            else:
                self._upsert_override_portable(values)
            self.session.commit()
        override = self.find_override(data.category_id, month)
        if override is None:
            raise TransientError()
        logger.info(
            f"override_set: category_id={data.category_id} month={month.key} "
            f"amount={format_cents(data.amount_cents)}"
        )
        return override

    def _upsert_override_portable(self, values: dict[str, object]) -> None:
        try:
            with self.session.begin_nested():
                self.session.add(BudgetOverride(**values))
        except IntegrityError:
            existing = self.session.scalar(
                select(BudgetOverride).where(
                    BudgetOverride.category_id == values["category_id"],
                    BudgetOverride.year == values["year"],
                    BudgetOverride.month == values["month"],
                )
            )
            existing.amount_cents = values["amount_cents"]
            existing.updated_at = values["updated_at"]

    def clear_override(self, category_id: int, month: Month) -> bool:
        CategoryService(self.session).get(category_id)
        override = self.find_override(category_id, month)
        if override is None:
            return False
        with store_guard(self.session, "clear_override"):
            self.session.delete(override)
            self.session.commit()
        logger.info(f"override_cleared: category_id={category_id} month={month.key}")
        return True

    def spent_by_category(self, period: Period) -> dict[int, int]:
        stmt = (
            select(
                Transaction.category_id,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("spent"),
            )
            .where(
                Transaction.amount_cents > 0,
                Transaction.occurred_at.between(period.start, period.end),
            )
            .group_by(Transaction.category_id)
        )
        with store_guard(self.session, "spent_by_category"):
            return {
                row.category_id: int(row.spent or 0)
                for row in self.session.execute(stmt)
            }

    def budgets_for_month(self, month: Month) -> MonthBudget:
        stmt = (
            select(Category, BudgetOverride.amount_cents.label("override_cents"))
            .outerjoin(
                BudgetOverride,
                and_(
                    BudgetOverride.category_id == Category.id,
                    BudgetOverride.year == month.year,
                    BudgetOverride.month == month.month,
                ),
            )
            .order_by(Category.name_key, Category.id)
        )
        with store_guard(self.session, "budgets_for_month"):
            rows = self.session.execute(stmt).all()
        spent_by_category = self.spent_by_category(month.as_period())

        lines: list[BudgetLine] = []
        for category, override_cents in rows:
            effective = resolve_budget(override_cents, category.default_budget_cents)
            spent = spent_by_category.get(category.id, 0)
            left = effective - spent
            lines.append(
                BudgetLine(
                    category_id=category.id,
                    category_name=category.name,
                    default_budget_cents=category.default_budget_cents,
                    override_budget_cents=override_cents,
                    effective_budget_cents=effective,
                    spent_cents=spent,
                    left_cents=left,
                    has_override=override_cents is not None,
                    is_overspent=left < 0,
                )
            )
        total_effective = sum(line.effective_budget_cents for line in lines)
        total_spent = sum(line.spent_cents for line in lines)
        return MonthBudget(
            month=month.key,
            budgets=lines,
            effective_budget_cents=total_effective,
            spent_cents=total_spent,
            left_cents=total_effective - total_spent,
        )


def _dialect_insert(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert

        return insert
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert

        return insert
    return None


def can_delete(actor: User, txn: Transaction) -> bool:
    if txn.payer_id == actor.id:
        return True
    return actor.is_owner and txn.payer_id == UserId.partner


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: TransactionIn, payer: UserId) -> Transaction:
        categories = CategoryService(self.session)
        if data.category_id is not None:
            category = categories.get(data.category_id)
        elif data.category_name and data.category_name.strip():
            category = categories.get_or_create(data.category_name)
        else:
            raise ValidationError("Category is required")
        occurred_at = (
            to_local_naive(data.occurred_at) if data.occurred_at else local_now()
        )
        note = data.note.strip() if data.note and data.note.strip() else None
        txn = Transaction(
            amount_cents=data.amount_cents,
            category_id=category.id,
            payer_id=payer,
            occurred_at=occurred_at,
            note=note,
        )
        with store_guard(self.session, "create_transaction"):
            self.session.add(txn)
            self.session.commit()
        created = self.get(txn.id)
        logger.info(
            f"transaction_created: id={created.id} payer={payer.value} "
            f"category_id={category.id} amount={format_cents(created.amount_cents)}"
        )
        return created

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.payer))
            .where(Transaction.id == transaction_id)
        )
        with store_guard(self.session, "get_transaction"):
            txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.payer))
            .where(Transaction.amount_cents > 0)
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
        )
        if start is not None:
            stmt = stmt.where(Transaction.occurred_at >= start)
        if end is not None:
            stmt = stmt.where(Transaction.occurred_at <= end)
        if filters.category_ids:
            stmt = stmt.where(Transaction.category_id.in_(sorted(filters.category_ids)))
        if filters.payer:
            stmt = stmt.where(Transaction.payer_id == filters.payer)
        with store_guard(self.session, "list_transactions"):
            return self.session.scalars(stmt).all()

    def delete(self, transaction_id: int, actor: User) -> None:
        txn = self.get(transaction_id)
        if not can_delete(actor, txn):
            logger.warning(
                f"transaction_delete_denied: id={txn.id} actor={actor.id.value} "
                f"payer={txn.payer_id.value}"
            )
            raise AuthorizationError("Not authorized to delete this transaction")
        with store_guard(self.session, "delete_transaction"):
            self.session.delete(txn)
            self.session.commit()
        logger.info(f"transaction_deleted: id={transaction_id} actor={actor.id.value}")


@dataclass(frozen=True)
class CategorySpending:
    category_id: int
    category_name: str
    amount_cents: int
    count: int
    percentage: float


@dataclass(frozen=True)
class PayerSpending:
    payer_id: UserId
    payer_name: str
    amount_cents: int


@dataclass(frozen=True)
class TransactionView:
    id: int
    amount_cents: int
    category_id: int
    category_name: str
    payer_id: UserId
    payer_name: str
    occurred_at: datetime
    note: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class Summary:
    period: str
    start: datetime
    end: datetime
    total_spending_cents: int
    spending_by_category: list[CategorySpending]
    spending_by_payer: list[PayerSpending]
    transactions: list[TransactionView]

    def to_payload(self) -> dict:
        """JSON body for the summary endpoint, with bounds as ``from``/``to``."""
        body = asdict(self)
        return {
            "period": body.pop("period"),
            "from": body.pop("start").isoformat(),
            "to": body.pop("end").isoformat(),
            **body,
        }


def transaction_view(txn: Transaction) -> TransactionView:
    return TransactionView(
        id=txn.id,
        amount_cents=txn.amount_cents,
        category_id=txn.category_id,
        category_name=txn.category.name if txn.category else "Unknown",
        payer_id=txn.payer_id,
        payer_name=txn.payer.display_name if txn.payer else "Unknown",
        occurred_at=txn.occurred_at,
        note=txn.note,
        created_at=txn.created_at,
    )


class SummaryService:
    """Spending summaries over a period.

    Totals, groupings and the transaction list are all derived from one query
    result, so they always describe the same set of transactions.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def summary(
        self, period: Period, filters: Optional[TransactionFilters] = None
    ) -> Summary:
        filters = filters or TransactionFilters()
        matched = TransactionService(self.session).list(
            filters, start=period.start, end=period.end
        )
        matched = [txn for txn in matched if txn.amount_cents > 0]
        total = sum(txn.amount_cents for txn in matched)

        by_category: dict[int, dict[str, object]] = {}
        by_payer: dict[UserId, dict[str, object]] = {}
        for txn in matched:
            bucket = by_category.setdefault(
                txn.category_id,
                {
                    "name": txn.category.name if txn.category else "Unknown",
                    "amount": 0,
                    "count": 0,
                },
            )
            bucket["amount"] = int(bucket["amount"]) + txn.amount_cents
            bucket["count"] = int(bucket["count"]) + 1

            payer_bucket = by_payer.setdefault(
                txn.payer_id,
                {
                    "name": txn.payer.display_name if txn.payer else "Unknown",
                    "amount": 0,
                },
            )
            payer_bucket["amount"] = int(payer_bucket["amount"]) + txn.amount_cents

        category_rows = [
            CategorySpending(
                category_id=category_id,
                category_name=str(bucket["name"]),
                amount_cents=int(bucket["amount"]),
                count=int(bucket["count"]),
                percentage=(int(bucket["amount"]) / total * 100) if total else 0.0,
            )
            for category_id, bucket in by_category.items()
        ]
        category_rows.sort(key=lambda r: (-r.amount_cents, r.category_name.lower()))

        payer_rows = [
            PayerSpending(
                payer_id=payer_id,
                payer_name=str(bucket["name"]),
                amount_cents=int(bucket["amount"]),
            )
            for payer_id, bucket in by_payer.items()
        ]
        payer_rows.sort(key=lambda r: (-r.amount_cents, r.payer_id.value))

        return Summary(
            period=period.slug,
            start=period.start,
            end=period.end,
            total_spending_cents=total,
            spending_by_category=category_rows,
            spending_by_payer=payer_rows,
            transactions=[transaction_view(txn) for txn in matched],
        )
