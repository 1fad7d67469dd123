from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base
from transaction_time import unix_time_from_transaction_time


class TransactionType(str, Enum):
    """Transaction type as seen by callers; a transfer is one logical item."""

    modify_balance = "modify_balance"
    income = "income"
    expense = "expense"
    transfer = "transfer"


class TransactionRowType(str, Enum):
    """Transaction type as stored; a transfer is persisted as an out/in pair."""

    modify_balance = "modify_balance"
    income = "income"
    expense = "expense"
    transfer_out = "transfer_out"
    transfer_in = "transfer_in"


ROW_TYPE_BY_TYPE = {
    TransactionType.modify_balance: TransactionRowType.modify_balance,
    TransactionType.income: TransactionRowType.income,
    TransactionType.expense: TransactionRowType.expense,
    TransactionType.transfer: TransactionRowType.transfer_out,
}

TYPE_BY_ROW_TYPE = {
    TransactionRowType.modify_balance: TransactionType.modify_balance,
    TransactionRowType.income: TransactionType.income,
    TransactionRowType.expense: TransactionType.expense,
    TransactionRowType.transfer_out: TransactionType.transfer,
    TransactionRowType.transfer_in: TransactionType.transfer,
}


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


CATEGORY_TYPE_BY_TYPE = {
    TransactionType.income: CategoryType.income,
    TransactionType.expense: CategoryType.expense,
    TransactionType.transfer: CategoryType.transfer,
}


class AccountType(str, Enum):
    single_account = "single_account"
    multi_sub_accounts = "multi_sub_accounts"


class AccountCategory(str, Enum):
    cash = "cash"
    checking = "checking"
    credit_card = "credit_card"
    virtual = "virtual"
    debt = "debt"
    receivables = "receivables"
    investment = "investment"


class TransactionEditScope(str, Enum):
    none = "none"
    all = "all"
    today_or_later = "today_or_later"
    last_24h_or_later = "last_24h_or_later"
    this_week_or_later = "this_week_or_later"
    this_month_or_later = "this_month_or_later"
    this_year_or_later = "this_year_or_later"


# Containers never hold money themselves, so they carry this instead of ISO 4217.
PARENT_ACCOUNT_CURRENCY_PLACEHOLDER = "---"

MIN_AMOUNT = -99_999_999_999
MAX_AMOUNT = 99_999_999_999

MIN_UTC_OFFSET = -720
MAX_UTC_OFFSET = 840


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class SoftDeleteMixin:
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    def mark_deleted(self, now: datetime) -> None:
        self.deleted = True
        self.deleted_at = now


class User(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    nickname: Mapped[str] = mapped_column(String(64), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    default_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    default_account_id: Mapped[Optional[int]] = mapped_column(Integer)
    transaction_edit_scope: Mapped[TransactionEditScope] = mapped_column(
        SAEnum(TransactionEditScope),
        default=TransactionEditScope.all,
        nullable=False,
    )
    first_day_of_week: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    language: Mapped[str] = mapped_column(String(10), default="en", nullable=False)
    disabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "first_day_of_week BETWEEN 0 AND 6", name="ck_users_first_day_of_week"
        ),
    )


class Account(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    # None marks a top-level account
    parent_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    category: Mapped[AccountCategory] = mapped_column(
        SAEnum(AccountCategory), nullable=False
    )
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    name: Mapped[str] = mapped_column(String(32), nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    icon: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    color: Mapped[str] = mapped_column(String(6), default="000000", nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    comment: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    hidden: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    @property
    def is_container(self) -> bool:
        return self.type == AccountType.multi_sub_accounts

    __table_args__ = (
        Index(
            "ix_accounts_user_deleted_category_order",
            "user_id",
            "deleted",
            "category",
            "display_order",
        ),
        Index("ix_accounts_user_parent", "user_id", "parent_account_id"),
    )


class TransactionCategory(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "transaction_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(32), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    # None marks a primary category
    parent_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transaction_categories.id")
    )
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    icon: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    color: Mapped[str] = mapped_column(String(6), default="000000", nullable=False)
    comment: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    hidden: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index(
            "ix_categories_user_deleted_type_parent_order",
            "user_id",
            "deleted",
            "type",
            "parent_category_id",
            "display_order",
        ),
    )


class TransactionTag(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "transaction_tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(32), nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    hidden: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_tags_user_deleted_order", "user_id", "deleted", "display_order"),
    )


class TransactionTagIndex(Base, TimestampMixin):
    __tablename__ = "transaction_tag_index"

    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), primary_key=True
    )
    tag_id: Mapped[int] = mapped_column(
        ForeignKey("transaction_tags.id"), primary_key=True
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)

    __table_args__ = (
        Index("ix_tag_index_user_tag", "user_id", "tag_id"),
        Index("ix_tag_index_user_transaction", "user_id", "transaction_id"),
    )


class Transaction(Base, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    type: Mapped[TransactionRowType] = mapped_column(
        SAEnum(TransactionRowType), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transaction_categories.id")
    )
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    # packed, see transaction_time.py
    transaction_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    timezone_utc_offset: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # transfer rows point at their counterpart
    related_id: Mapped[Optional[int]] = mapped_column(Integer)
    related_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    related_account_amount: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False
    )
    hide_amount: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    comment: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    geo_longitude: Mapped[Optional[float]] = mapped_column(Float)
    geo_latitude: Mapped[Optional[float]] = mapped_column(Float)
    created_ip: Mapped[Optional[str]] = mapped_column(String(39))

    @property
    def unix_time(self) -> int:
        return unix_time_from_transaction_time(self.transaction_time)

    __table_args__ = (
        UniqueConstraint("user_id", "transaction_time", name="uq_txn_user_time"),
        Index("ix_txn_user_deleted_time", "user_id", "deleted", "transaction_time"),
        Index(
            "ix_txn_user_deleted_type_time",
            "user_id",
            "deleted",
            "type",
            "transaction_time",
        ),
        Index(
            "ix_txn_user_deleted_category_time",
            "user_id",
            "deleted",
            "category_id",
            "transaction_time",
        ),
        Index(
            "ix_txn_user_deleted_account_time",
            "user_id",
            "deleted",
            "account_id",
            "transaction_time",
        ),
        CheckConstraint(
            f"timezone_utc_offset BETWEEN {MIN_UTC_OFFSET} AND {MAX_UTC_OFFSET}",
            name="ck_txn_utc_offset_range",
        ),
    )
