from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Sequence, Union
from zoneinfo import ZoneInfo

from pydantic import ValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from bank_client import BankClient
from categorizer import (
    DEFAULT_CATEGORIES,
    FALLBACK_CATEGORY,
    KeywordTable,
    category_color,
    classify,
    get_keyword_table,
)
from config import get_settings
from models import (
    Account,
    Budget,
    BudgetCategory,
    MonthlyBudgetGoal,
    Transaction,
    TransactionSource,
    User,
    utcnow,
)
from oauth import is_expired
from periods import (
    MonthProgress,
    from_millis,
    local_today,
    month_progress,
    month_window,
    trailing_months,
)
from schemas import BankAccountIn, BankTransactionIn, BudgetIn, MonthlyGoalIn

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class ResourceNotFound(ValueError):
    def __init__(self, message: str, code: str = "not_found") -> None:
        super().__init__(message)
        self.code = code


class TokenExpired(ValueError):
    pass


def require_fresh_token(expires_at: Optional[datetime]) -> None:
    """Reject an access token whose known expiry has passed.

    Tokens are never refreshed here; the caller owns its credentials.
    """
    if is_expired(expires_at):
        raise TokenExpired("Access token has expired, refresh it via /oauth/refresh")


def _natural_key_filter(amount: Decimal, txn_date: int, description: Optional[str]):
    """WHERE clause for the (amount, date, description) natural key.

    NULL descriptions compare equal to each other.
    """
    return (
        Transaction.amount == amount,
        Transaction.date == txn_date,
        Transaction.description.is_(None)
        if description is None
        else Transaction.description == description,
    )


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_ids(self) -> list[int]:
        return list(self.session.scalars(select(User.id).order_by(User.id)).all())

    def get_or_create(self, email: str, name: Optional[str] = None) -> User:
        email = email.strip()
        user = self.session.scalar(select(User).where(User.email == email))
        if user:
            return user
        user = User(email=email, name=name)
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError:
            # created concurrently by another request
            self.session.rollback()
            user = self.session.scalar(select(User).where(User.email == email))
            if not user:
                raise
            return user
        self.session.refresh(user)
        logger.info(f"user_created: id={user.id}")
        return user


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name.asc(), Account.id.asc())
        )
        return self.session.scalars(stmt).all()

    def get_by_key(self, key: str) -> Optional[Account]:
        return self.session.scalar(
            select(Account).where(Account.user_id == self.user_id, Account.key == key)
        )

    def synced_today(self, *, today: Optional[date] = None) -> bool:
        tz = ZoneInfo(get_settings().timezone)
        today = today or local_today()
        midnight_utc = (
            datetime.combine(today, time.min, tzinfo=tz)
            .astimezone(timezone.utc)
            .replace(tzinfo=None)
        )
        stmt = select(func.count(Account.id)).where(
            Account.user_id == self.user_id,
            Account.synced_at.is_not(None),
            Account.synced_at >= midnight_utc,
        )
        return (self.session.execute(stmt).scalar_one() or 0) > 0

    def upsert_many(self, payloads: Sequence[dict[str, Any]]) -> int:
        """Insert or update accounts by provider key. Returns the number stored."""
        stored = 0
        now = utcnow()
        for idx, raw in enumerate(payloads):
            try:
                data = BankAccountIn.model_validate(raw)
            except ValidationError as exc:
                logger.warning(f"account_sync_invalid: index={idx} error={exc}")
                continue

            fields = data.model_dump(exclude={"key"})
            account = self.session.scalar(select(Account).where(Account.key == data.key))
            if account and account.user_id != self.user_id:
                logger.warning(
                    f"account_sync_conflict: key={data.key} owner={account.user_id}"
                )
                continue
            if not account:
                account = Account(user_id=self.user_id, key=data.key)
                self.session.add(account)
            for name, value in fields.items():
                setattr(account, name, value)
            account.synced_at = now
            stored += 1
        self.session.commit()
        logger.info(f"account_sync: user_id={self.user_id} stored={stored}")
        return stored


@dataclass
class TransactionPage:
    items: list[Transaction]
    page: int
    limit: int
    total: int

    @property
    def has_more(self) -> bool:
        return (self.page - 1) * self.limit + self.limit < self.total


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        account_id: Optional[int] = None,
        search: Optional[str] = None,
        from_ms: Optional[int] = None,
        to_ms: Optional[int] = None,
    ) -> TransactionPage:
        conditions = [Transaction.user_id == self.user_id]
        if account_id:
            conditions.append(Transaction.account_id == account_id)
        if search:
            like = f"%{search.lower()}%"
            conditions.append(
                func.lower(func.coalesce(Transaction.description, "")).like(like)
            )
        if from_ms is not None:
            conditions.append(Transaction.date >= from_ms)
        if to_ms is not None:
            conditions.append(Transaction.date <= to_ms)

        total = self.session.execute(
            select(func.count(Transaction.id)).where(*conditions)
        ).scalar_one()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account))
            .where(*conditions)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = self.session.scalars(stmt).all()
        return TransactionPage(items=items, page=page, limit=limit, total=total or 0)


class SkipReason(str, Enum):
    duplicate = "duplicate"
    unknown_account = "unknown_account"


@dataclass(frozen=True)
class Saved:
    index: int
    transaction_id: int


@dataclass(frozen=True)
class Skipped:
    index: int
    reason: SkipReason


@dataclass(frozen=True)
class Failed:
    index: int
    error: str


Outcome = Union[Saved, Skipped, Failed]


@dataclass
class ReconcileResult:
    outcomes: list[Outcome] = field(default_factory=list)

    @property
    def saved(self) -> int:
        return sum(1 for o in self.outcomes if isinstance(o, Saved))

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if isinstance(o, Skipped))

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if isinstance(o, Failed))


class ReconcileService:
    """Persists the new members of a batch of bank transactions.

    Every record is checked and inserted in its own database transaction, so
    records later in the batch see rows saved earlier in the same batch.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def reconcile(
        self, records: Sequence[Union[dict[str, Any], BankTransactionIn]]
    ) -> ReconcileResult:
        result = ReconcileResult()
        for index, raw in enumerate(records):
            try:
                outcome = self._reconcile_one(index, raw)
            except (ValidationError, InvalidOperation, SQLAlchemyError) as exc:
                self.session.rollback()
                logger.error(f"reconcile_failed: index={index} error={exc}")
                outcome = Failed(index=index, error=str(exc))
            result.outcomes.append(outcome)

        logger.info(
            f"reconcile: user_id={self.user_id} saved={result.saved} "
            f"skipped={result.skipped} failed={result.failed}"
        )
        return result

    def _reconcile_one(
        self, index: int, raw: Union[dict[str, Any], BankTransactionIn]
    ) -> Outcome:
        data = (
            raw
            if isinstance(raw, BankTransactionIn)
            else BankTransactionIn.model_validate(raw)
        )
        amount = data.amount.quantize(CENT)

        existing = self.session.scalar(
            select(Transaction.id)
            .where(
                Transaction.user_id == self.user_id,
                *_natural_key_filter(amount, data.date, data.description),
            )
            .limit(1)
        )
        if existing is not None:
            logger.info(
                f"reconcile_duplicate: index={index} amount={amount} "
                f"date={data.date} existing_id={existing}"
            )
            return Skipped(index=index, reason=SkipReason.duplicate)

        account = AccountService(self.session, self.user_id).get_by_key(
            data.account_key
        )
        if not account:
            logger.warning(
                f"reconcile_unknown_account: index={index} account_key={data.account_key}"
            )
            return Skipped(index=index, reason=SkipReason.unknown_account)

        txn = Transaction(
            user_id=self.user_id,
            account_id=account.id,
            sparebank1_id=data.id,
            non_unique_id=data.non_unique_id,
            description=data.description,
            cleaned_description=data.cleaned_description,
            remote_account_number=data.remote_account_number,
            remote_account_name=data.remote_account_name,
            amount=amount,
            date=data.date,
            type_code=data.type_code,
            currency_code=data.currency_code,
            can_show_details=data.can_show_details,
            source=data.source.value if data.source else None,
            is_confidential=data.is_confidential,
            booking_status=data.booking_status.value if data.booking_status else None,
            account_name=data.account_name,
            account_key=data.account_key,
            account_currency=data.account_currency,
            is_from_currency_account=data.is_from_currency_account,
            kid_or_message=data.kid_or_message,
            account_number=data.account_number,
            classification_input=data.classification_input,
            merchant=data.merchant,
            synced_at=utcnow(),
        )
        self.session.add(txn)
        self.session.commit()
        return Saved(index=index, transaction_id=txn.id)


@dataclass(frozen=True)
class DuplicateGroup:
    amount: Decimal
    date: int
    description: Optional[str]
    count: int
    kept: int
    removed: list[int]

    def as_dict(self) -> dict[str, object]:
        return {
            "amount": float(self.amount),
            "date": self.date,
            "dateIso": from_millis(self.date).isoformat(),
            "description": self.description,
            "count": self.count,
            "kept": self.kept,
            "removed": self.removed,
        }


@dataclass
class CollapseResult:
    groups: list[DuplicateGroup] = field(default_factory=list)

    @property
    def duplicates_found(self) -> int:
        return sum(g.count for g in self.groups)

    @property
    def duplicates_removed(self) -> int:
        return sum(len(g.removed) for g in self.groups)

    def as_dict(self) -> dict[str, object]:
        return {
            "duplicatesFound": self.duplicates_found,
            "duplicatesRemoved": self.duplicates_removed,
            "duplicateGroups": [g.as_dict() for g in self.groups],
        }


class DuplicateService:
    """Collapses transactions sharing (amount, date, description) to the oldest row."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def find_duplicate_keys(self) -> list[tuple[Decimal, int, Optional[str]]]:
        stmt = (
            select(Transaction.amount, Transaction.date, Transaction.description)
            .where(Transaction.user_id == self.user_id)
            .group_by(Transaction.amount, Transaction.date, Transaction.description)
            .having(func.count(Transaction.id) > 1)
        )
        return [(row.amount, row.date, row.description) for row in self.session.execute(stmt)]

    def collapse(self) -> CollapseResult:
        result = CollapseResult()
        keys = self.find_duplicate_keys()
        for amount, txn_date, description in keys:
            members = self.session.scalars(
                select(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    *_natural_key_filter(amount, txn_date, description),
                )
                .order_by(Transaction.created_at.asc(), Transaction.id.asc())
            ).all()
            if len(members) < 2:
                continue

            keep, *remove = members
            removed_ids = [t.id for t in remove]
            self.session.execute(
                delete(Transaction).where(Transaction.id.in_(removed_ids))
            )
            self.session.commit()
            result.groups.append(
                DuplicateGroup(
                    amount=amount,
                    date=txn_date,
                    description=description,
                    count=len(members),
                    kept=keep.id,
                    removed=removed_ids,
                )
            )

        logger.info(
            f"collapse: user_id={self.user_id} groups={len(result.groups)} "
            f"found={result.duplicates_found} removed={result.duplicates_removed}"
        )
        return result


@dataclass
class CategorySpending:
    category: str
    amount: Decimal = Decimal("0")
    transaction_count: int = 0

    def as_dict(self) -> dict[str, object]:
        return {
            "name": self.category,
            "amount": float(self.amount),
            "transactionCount": self.transaction_count,
            "color": category_color(self.category),
        }


class SpendingService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        keyword_table: Optional[KeywordTable] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.keyword_table = keyword_table or get_keyword_table()

    def expense_category_names(self) -> list[str]:
        stmt = (
            select(BudgetCategory.name)
            .where(BudgetCategory.is_income.is_(False))
            .order_by(BudgetCategory.name.asc())
        )
        return list(self.session.scalars(stmt).all())

    def spending_by_category(self, year: int, month: int) -> list[CategorySpending]:
        window = month_window(year, month)
        known = self.expense_category_names()
        buckets = {name: CategorySpending(category=name) for name in known}
        if FALLBACK_CATEGORY not in buckets:
            buckets[FALLBACK_CATEGORY] = CategorySpending(category=FALLBACK_CATEGORY)

        rows = self.session.execute(
            select(Transaction.amount, Transaction.description).where(
                Transaction.user_id == self.user_id,
                Transaction.date >= window.start_ms,
                Transaction.date <= window.end_ms,
                Transaction.amount < 0,
            )
        ).all()
        for row in rows:
            if row.amount >= 0:
                continue
            name = classify(row.description, self.keyword_table, known=buckets.keys())
            bucket = buckets[name]
            bucket.amount += abs(row.amount)
            bucket.transaction_count += 1
        return list(buckets.values())

    def monthly_income(self, year: int, month: int) -> Decimal:
        window = month_window(year, month)
        total = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.date >= window.start_ms,
                Transaction.date <= window.end_ms,
                Transaction.amount > 0,
            )
        ).scalar_one()
        return Decimal(str(total or 0)).quantize(CENT)

    def transaction_count(self, year: int, month: int) -> int:
        window = month_window(year, month)
        stmt = select(func.count(Transaction.id)).where(
            Transaction.user_id == self.user_id,
            Transaction.date >= window.start_ms,
            Transaction.date <= window.end_ms,
        )
        return self.session.execute(stmt).scalar_one() or 0


@dataclass(frozen=True)
class BudgetFigures:
    budgeted: float
    spent: float
    remaining: float
    percentage_used: float
    is_over_budget: bool
    daily_spent_average: float
    projected_total_spending: float
    projected_over_budget: float
    is_projected_over_budget: bool


def budget_figures(
    budgeted: float, spent: float, *, days_elapsed: int, days_in_month: int
) -> BudgetFigures:
    """Progress and linear month-end projection for one budget line."""
    days = max(1, days_elapsed)
    percentage_used = spent / budgeted * 100 if budgeted > 0 else 0.0
    daily = spent / days
    projected = daily * days_in_month
    return BudgetFigures(
        budgeted=budgeted,
        spent=spent,
        remaining=budgeted - spent,
        percentage_used=percentage_used,
        is_over_budget=spent > budgeted,
        daily_spent_average=daily,
        projected_total_spending=projected,
        projected_over_budget=projected - budgeted,
        is_projected_over_budget=projected > budgeted,
    )


@dataclass(frozen=True)
class CategoryBudgetStatus:
    budget_id: int
    category: BudgetCategory
    alert_percentage: int
    transaction_count: int
    figures: BudgetFigures

    @property
    def should_alert(self) -> bool:
        return self.figures.percentage_used >= self.alert_percentage

    def as_dict(self, *, projections: bool = True) -> dict[str, object]:
        f = self.figures
        data: dict[str, object] = {
            "id": self.budget_id,
            "category": {
                "id": self.category.id,
                "name": self.category.name,
                "icon": self.category.icon,
                "color": self.category.color,
            },
            "budgetedAmount": f.budgeted,
            "actualSpent": f.spent,
            "remaining": f.remaining,
            "percentageUsed": f.percentage_used,
            "isOverBudget": f.is_over_budget,
            "transactionCount": self.transaction_count,
            "alertPercentage": self.alert_percentage,
            "shouldAlert": self.should_alert,
        }
        if projections:
            data.update(
                {
                    "dailySpentAverage": f.daily_spent_average,
                    "projectedTotalSpending": f.projected_total_spending,
                    "projectedOverBudget": f.projected_over_budget,
                    "isProjectedOverBudget": f.is_projected_over_budget,
                }
            )
        return data


@dataclass(frozen=True)
class BudgetAnalysis:
    progress: MonthProgress
    categories: list[CategoryBudgetStatus]
    totals: BudgetFigures
    unbudgeted_spent: float
    goal: Optional[MonthlyBudgetGoal]
    transaction_count: int

    @property
    def over_budget_count(self) -> int:
        return sum(1 for c in self.categories if c.figures.is_over_budget)

    @property
    def projected_over_budget_count(self) -> int:
        return sum(1 for c in self.categories if c.figures.is_projected_over_budget)

    @property
    def alert_count(self) -> int:
        return sum(1 for c in self.categories if c.should_alert)

    def goal_dict(self) -> dict[str, object]:
        if not self.goal:
            return {
                "isSet": False,
                "totalBudget": 0.0,
                "notes": None,
                "difference": 0.0,
                "goalPercentageUsed": 0.0,
            }
        total_budget = float(self.goal.total_budget)
        return {
            "isSet": True,
            "totalBudget": total_budget,
            "notes": self.goal.notes,
            "difference": total_budget - self.totals.budgeted,
            "goalPercentageUsed": (
                self.totals.spent / total_budget * 100 if total_budget > 0 else 0.0
            ),
        }

    def as_dict(self) -> dict[str, object]:
        t = self.totals
        days = self.progress.days_in_month
        return {
            "month": self.progress.month,
            "monthName": calendar.month_name[self.progress.month],
            "year": self.progress.year,
            "period": self.progress.as_dict(),
            "monthlyGoal": self.goal_dict(),
            "totals": {
                "budgeted": t.budgeted,
                "spent": t.spent,
                "remaining": t.remaining,
                "percentageUsed": t.percentage_used,
                "unbudgetedSpent": self.unbudgeted_spent,
            },
            "projections": {
                "dailyBudget": t.budgeted / days,
                "dailySpentAverage": t.daily_spent_average,
                "projectedTotalSpending": t.projected_total_spending,
                "projectedOverBudget": t.projected_over_budget,
                "isProjectedOverBudget": t.is_projected_over_budget,
            },
            "categories": [c.as_dict() for c in self.categories],
            "transactions": {"thisMonth": self.transaction_count},
            "alerts": {
                "overBudgetCount": self.over_budget_count,
                "projectedOverBudgetCount": self.projected_over_budget_count,
                "alertCount": self.alert_count,
            },
        }


class BudgetService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        keyword_table: Optional[KeywordTable] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.keyword_table = keyword_table

    def _require_user(self) -> int:
        if self.user_id is None:
            raise ValueError("A user is required for budget operations")
        return self.user_id

    def initialize_categories(self) -> int:
        existing = {c.name: c for c in self.session.scalars(select(BudgetCategory))}
        for seed in DEFAULT_CATEGORIES:
            category = existing.get(seed.name)
            if not category:
                category = BudgetCategory(name=seed.name)
                self.session.add(category)
            category.icon = seed.icon
            category.color = seed.color
            category.is_income = seed.is_income
        self.session.commit()
        logger.info(f"categories_initialized: count={len(DEFAULT_CATEGORIES)}")
        return len(DEFAULT_CATEGORIES)

    def list_categories(self, include_income: bool = True) -> list[BudgetCategory]:
        stmt = select(BudgetCategory).order_by(
            BudgetCategory.is_income.desc(), BudgetCategory.name.asc()
        )
        if not include_income:
            stmt = stmt.where(BudgetCategory.is_income.is_(False))
        return self.session.scalars(stmt).all()

    def upsert_budget(self, data: BudgetIn) -> Budget:
        user_id = self._require_user()
        category = self.session.get(BudgetCategory, data.category_id)
        if not category:
            raise ResourceNotFound("Category not found", code="category_not_found")
        if category.is_income:
            raise ValueError("Budgets can only be set for expense categories")

        existing = self.session.scalar(
            select(Budget).where(
                Budget.user_id == user_id,
                Budget.category_id == data.category_id,
                Budget.month == data.month,
                Budget.year == data.year,
            )
        )
        if existing:
            existing.budgeted_amount = data.budgeted_amount
            existing.alert_percentage = data.alert_percentage
            existing.is_active = True
            self.session.commit()
            self.session.refresh(existing)
            return existing

        budget = Budget(
            user_id=user_id,
            category_id=data.category_id,
            month=data.month,
            year=data.year,
            budgeted_amount=data.budgeted_amount,
            alert_percentage=data.alert_percentage,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def list_budgets(self, year: int, month: int) -> list[Budget]:
        stmt = (
            select(Budget)
            .join(Budget.category)
            .options(joinedload(Budget.category))
            .where(
                Budget.user_id == self._require_user(),
                Budget.year == year,
                Budget.month == month,
                Budget.is_active.is_(True),
            )
            .order_by(BudgetCategory.name.asc())
        )
        return self.session.scalars(stmt).all()

    def get_goal(self, year: int, month: int) -> Optional[MonthlyBudgetGoal]:
        return self.session.scalar(
            select(MonthlyBudgetGoal).where(
                MonthlyBudgetGoal.user_id == self._require_user(),
                MonthlyBudgetGoal.year == year,
                MonthlyBudgetGoal.month == month,
            )
        )

    def set_goal(self, data: MonthlyGoalIn) -> MonthlyBudgetGoal:
        user_id = self._require_user()
        goal = self.get_goal(data.year, data.month)
        if not goal:
            goal = MonthlyBudgetGoal(user_id=user_id, month=data.month, year=data.year)
            self.session.add(goal)
        goal.total_budget = data.total_budget
        goal.notes = data.notes or None
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def _statuses(
        self,
        year: int,
        month: int,
        progress: MonthProgress,
        spending: list[CategorySpending],
    ) -> list[CategoryBudgetStatus]:
        by_name = {s.category: s for s in spending}
        statuses: list[CategoryBudgetStatus] = []
        for budget in self.list_budgets(year, month):
            spent = by_name.get(budget.category.name)
            statuses.append(
                CategoryBudgetStatus(
                    budget_id=budget.id,
                    category=budget.category,
                    alert_percentage=budget.alert_percentage,
                    transaction_count=spent.transaction_count if spent else 0,
                    figures=budget_figures(
                        float(budget.budgeted_amount),
                        float(spent.amount) if spent else 0.0,
                        days_elapsed=progress.days_elapsed,
                        days_in_month=progress.days_in_month,
                    ),
                )
            )
        return statuses

    def _spending(self) -> SpendingService:
        return SpendingService(self.session, self._require_user(), self.keyword_table)

    def summary(
        self, year: int, month: int, *, today: Optional[date] = None
    ) -> dict[str, object]:
        progress = month_progress(year, month, today=today)
        spending = self._spending().spending_by_category(year, month)
        statuses = self._statuses(year, month, progress, spending)

        budgeted = sum(s.figures.budgeted for s in statuses)
        spent = sum(s.figures.spent for s in statuses)
        overall = spent / budgeted * 100 if budgeted > 0 else 0.0
        alert_count = sum(1 for s in statuses if s.should_alert)
        over_count = sum(1 for s in statuses if s.figures.is_over_budget)
        return {
            "summary": [s.as_dict(projections=False) for s in statuses],
            "totals": {
                "budgeted": budgeted,
                "spent": spent,
                "remaining": budgeted - spent,
                "percentageUsed": round(overall, 2),
            },
            "alerts": {
                "alertCount": alert_count,
                "overBudgetCount": over_count,
                "hasAlerts": alert_count > 0 or over_count > 0,
            },
            "period": {"month": month, "year": year},
        }

    def analysis(
        self, year: int, month: int, *, today: Optional[date] = None
    ) -> BudgetAnalysis:
        progress = month_progress(year, month, today=today)
        spending_service = self._spending()
        spending = spending_service.spending_by_category(year, month)
        statuses = self._statuses(year, month, progress, spending)

        budgeted = sum(s.figures.budgeted for s in statuses)
        budgeted_spent = sum(s.figures.spent for s in statuses)
        # whole-month spending, budgeted or not
        all_spent = sum(float(s.amount) for s in spending)
        totals = budget_figures(
            budgeted,
            all_spent,
            days_elapsed=progress.days_elapsed,
            days_in_month=progress.days_in_month,
        )
        return BudgetAnalysis(
            progress=progress,
            categories=statuses,
            totals=totals,
            unbudgeted_spent=all_spent - budgeted_spent,
            goal=self.get_goal(year, month),
            transaction_count=spending_service.transaction_count(year, month),
        )


HEALTH_BANDS = (
    (80, "Excellent", "#10B981"),
    (65, "Good", "#84CC16"),
    (50, "Fair", "#F59E0B"),
)


def financial_health(income: float, expenses: float) -> dict[str, object]:
    net = income - expenses
    savings_rate = (income - expenses) / income * 100 if income > 0 else 0.0

    score = 50
    if savings_rate > 20:
        score += 20
    if savings_rate > 10:
        score += 10
    if net > 0:
        score += 15
    if expenses < income * 0.8:
        score += 10
    score = min(100, max(0, score))

    status, color = "Poor", "#EF4444"
    for threshold, band_status, band_color in HEALTH_BANDS:
        if score >= threshold:
            status, color = band_status, band_color
            break

    return {
        "score": score,
        "status": status,
        "color": color,
        "metrics": {
            "totalIncome": income,
            "totalExpenses": expenses,
            "netAmount": net,
            "savingsRate": round(savings_rate, 2),
        },
    }


class AnalyticsService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        keyword_table: Optional[KeywordTable] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.spending = SpendingService(session, user_id, keyword_table)
        self.budgets = BudgetService(session, user_id, keyword_table)

    def monthly_trends(self, year: int, month: int, count: int = 6) -> list[dict]:
        trends = []
        for y, m in trailing_months(year, month, count):
            income = float(self.spending.monthly_income(y, m))
            expenses = sum(
                float(s.amount) for s in self.spending.spending_by_category(y, m)
            )
            trends.append(
                {
                    "month": m,
                    "year": y,
                    "monthName": calendar.month_abbr[m],
                    "income": income,
                    "expenses": expenses,
                    "net": income - expenses,
                }
            )
        return trends

    def overview(
        self, year: int, month: int, *, today: Optional[date] = None
    ) -> dict[str, object]:
        spending = self.spending.spending_by_category(year, month)
        income = float(self.spending.monthly_income(year, month))
        expenses = sum(float(s.amount) for s in spending)
        return {
            "currentMonth": {"month": month, "year": year},
            "spendingByCategory": [s.as_dict() for s in spending],
            "budgetSummary": self.budgets.summary(year, month, today=today)["summary"],
            "financialHealth": financial_health(income, expenses),
            "monthlyTrends": self.monthly_trends(year, month),
        }


@dataclass
class AccountSyncResult:
    accounts: list[Account]
    cached: bool
    synced_at: datetime


@dataclass
class TransactionSyncResult:
    result: ReconcileResult
    total: int
    from_date: date
    to_date: date


class SyncService:
    """Pulls accounts and transactions from the bank into the store."""

    def __init__(self, session: Session, user_id: int, client: BankClient) -> None:
        self.session = session
        self.user_id = user_id
        self.client = client
        self.settings = get_settings()

    def sync_accounts(self, *, force: bool = False) -> AccountSyncResult:
        accounts = AccountService(self.session, self.user_id)
        if not force and accounts.synced_today():
            logger.info(f"account_sync_cached: user_id={self.user_id}")
            return AccountSyncResult(
                accounts=accounts.list_all(), cached=True, synced_at=utcnow()
            )

        payloads = self.client.get_accounts()
        wanted = self.settings.account_numbers
        if wanted:
            payloads = [p for p in payloads if p.get("accountNumber") in wanted]
            if not payloads:
                raise ResourceNotFound(
                    "No target accounts found in bank response",
                    code="no_target_accounts",
                )
        accounts.upsert_many(payloads)
        return AccountSyncResult(
            accounts=accounts.list_all(), cached=False, synced_at=utcnow()
        )

    def sync_transactions(self, *, today: Optional[date] = None) -> TransactionSyncResult:
        accounts = AccountService(self.session, self.user_id).list_all()
        if not accounts:
            raise ResourceNotFound(
                "No accounts found. Sync accounts first via /sync/accounts",
                code="no_accounts",
            )

        to_date = today or local_today()
        from_date = to_date - timedelta(days=self.settings.sync_lookback_days)
        records = self.client.get_transactions(
            [a.key for a in accounts],
            from_date=from_date,
            to_date=to_date,
            row_limit=self.settings.sync_row_limit,
            source=TransactionSource.all,
        )
        logger.info(
            f"transaction_sync_fetched: user_id={self.user_id} count={len(records)} "
            f"from={from_date} to={to_date}"
        )
        result = ReconcileService(self.session, self.user_id).reconcile(records)
        return TransactionSyncResult(
            result=result, total=len(records), from_date=from_date, to_date=to_date
        )

