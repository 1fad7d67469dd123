from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from passlib.context import CryptContext
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from amounts_query import AmountsQueryItem, parse_amounts_query
from config import get_settings
from database import atomic
from edit_window import can_edit, is_editable
from errors import (
    EditWindowViolation,
    EmptyQueryItems,
    InvalidRequest,
    NotFound,
    NothingToUpdate,
    OperationFailed,
    TooManyQueryItems,
    WrongTransactionType,
)
from models import (
    CATEGORY_TYPE_BY_TYPE,
    MAX_UTC_OFFSET,
    MIN_UTC_OFFSET,
    PARENT_ACCOUNT_CURRENCY_PLACEHOLDER,
    ROW_TYPE_BY_TYPE,
    TYPE_BY_ROW_TYPE,
    Account,
    AccountType,
    CategoryType,
    Transaction,
    TransactionCategory,
    TransactionRowType,
    TransactionTag,
    TransactionTagIndex,
    TransactionType,
    User,
)
from notifications import NotificationDispatcher
from periods import (
    TimeRange,
    iter_months,
    month_range,
    utc_now,
    year_month_key,
    year_month_of,
)
from schemas import (
    AccountIn,
    AccountModifyIn,
    CategoryIn,
    CategoryModifyIn,
    DisplayOrderIn,
    GeoLocation,
    TagIn,
    TransactionCreateIn,
    TransactionFieldsIn,
    TransactionModifyIn,
    UserRegisterIn,
    UserSettingsIn,
)
from transaction_time import (
    max_transaction_time,
    min_transaction_time,
    unix_time_from_transaction_time,
)


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

MAX_PAGE_SIZE = 50
MAX_AMOUNTS_QUERY_ITEMS = 20
# widest possible distance between two recorded UTC offsets
TIMEZONE_SPREAD_SECONDS = (MAX_UTC_OFFSET - MIN_UTC_OFFSET) * 60


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def server_zone() -> ZoneInfo:
    return ZoneInfo(get_settings().timezone)


def _naive_utc(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def _unique(ids: Iterable[int]) -> list[int]:
    seen: set[int] = set()
    result: list[int] = []
    for value in ids:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def load_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if not user or user.deleted:
        raise NotFound("User not found")
    return user


@dataclass
class AccountTree:
    account: Account
    sub_accounts: list[Account] = field(default_factory=list)


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_ids: list[int] = field(default_factory=list)
    account_ids: list[int] = field(default_factory=list)
    keyword: Optional[str] = None
    # unix seconds, both bounds inclusive
    min_time: Optional[int] = None
    max_time: Optional[int] = None
    include_transfer_in_rows: bool = False


@dataclass
class TransactionView:
    id: int
    time_sequence_id: int
    type: TransactionType
    category_id: Optional[int]
    time: int
    utc_offset: int
    source_account_id: int
    source_amount: int
    destination_account_id: Optional[int]
    destination_amount: int
    hide_amount: bool
    tag_ids: list[int]
    comment: str
    geo_location: Optional[GeoLocation]
    editable: bool


@dataclass
class TransactionPage:
    items: list[TransactionView]
    next_time_sequence_id: Optional[int]
    total_count: Optional[int] = None


@dataclass
class CategoryAccountTotal:
    account_id: int
    category_id: Optional[int]
    type: TransactionType
    amount: int


@dataclass
class CurrencyAmount:
    currency: str
    income_amount: int = 0
    expense_amount: int = 0


@dataclass
class AmountsResult:
    start_time: int
    end_time: int
    amounts: list[CurrencyAmount]


@dataclass
class DataStatistics:
    total_account_count: int
    total_transaction_category_count: int
    total_transaction_tag_count: int
    total_transaction_count: int


class AccountService:
    def __init__(
        self, session: Session, user_id: int, clock: Optional[Clock] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.clock = clock or utc_now

    def _live(self):
        return select(Account).where(
            Account.user_id == self.user_id, Account.deleted.is_(False)
        )

    def _reject(self, message: str) -> InvalidRequest:
        logger.warning(f"account_rejected: user_id={self.user_id} reason={message}")
        return InvalidRequest(message)

    def get(self, account_id: int) -> Account:
        account = self.session.scalar(self._live().where(Account.id == account_id))
        if not account:
            raise NotFound("Account not found")
        return account

    def get_leaf_account(self, account_id: int) -> Account:
        account = self.get(account_id)
        if account.is_container:
            raise self._reject("Container account cannot hold transactions")
        return account

    def get_sub_accounts(self, account_id: int) -> list[Account]:
        stmt = (
            self._live()
            .where(Account.parent_account_id == account_id)
            .order_by(Account.display_order, Account.id)
        )
        return list(self.session.scalars(stmt).all())

    def get_with_sub_accounts(self, account_id: int) -> AccountTree:
        account = self.get(account_id)
        return AccountTree(account, self.get_sub_accounts(account.id))

    def list_all(self, include_hidden: bool = True) -> list[AccountTree]:
        stmt = self._live().order_by(
            Account.category, Account.display_order, Account.id
        )
        if not include_hidden:
            stmt = stmt.where(Account.hidden.is_(False))
        accounts = self.session.scalars(stmt).all()

        trees: dict[int, AccountTree] = {}
        children: dict[int, list[Account]] = defaultdict(list)
        for account in accounts:
            if account.parent_account_id is None:
                trees[account.id] = AccountTree(account)
            else:
                children[account.parent_account_id].append(account)
        for parent_id, subs in children.items():
            if parent_id in trees:
                trees[parent_id].sub_accounts = sorted(
                    subs, key=lambda a: (a.display_order, a.id)
                )
        return list(trees.values())

    def accounts_by_id(self) -> dict[int, Account]:
        return {account.id: account for account in self.session.scalars(self._live())}

    def resolve_account_group(self, account_id: Optional[int]) -> list[int]:
        """Expand an account filter into the leaf account ids it covers.

        No filter and an unknown id both resolve to an empty list; callers treat
        an empty list as "no account restriction".
        """
        if not account_id:
            return []
        account = self.session.scalar(self._live().where(Account.id == account_id))
        if account is None:
            return []
        if account.is_container:
            sub_ids = [sub.id for sub in self.get_sub_accounts(account.id)]
            if sub_ids:
                return sub_ids
        return [account.id]

    def _next_display_order(self, data: AccountIn) -> int:
        current = self.session.scalar(
            select(func.max(Account.display_order)).where(
                Account.user_id == self.user_id,
                Account.deleted.is_(False),
                Account.category == data.category,
                Account.parent_account_id.is_(None),
            )
        )
        return (current or 0) + 1

    def _validate_new_account(self, data: AccountIn) -> None:
        currency = data.currency.upper()
        if data.type == AccountType.single_account:
            if data.sub_accounts:
                raise self._reject("Single account cannot have sub-accounts")
            if currency == PARENT_ACCOUNT_CURRENCY_PLACEHOLDER:
                raise self._reject("Single account requires a currency")
            return

        if not data.sub_accounts:
            raise self._reject("Account with sub-accounts requires at least one sub-account")
        if currency != PARENT_ACCOUNT_CURRENCY_PLACEHOLDER:
            raise self._reject("Account with sub-accounts cannot have a currency")
        if data.balance != 0:
            raise self._reject("Account with sub-accounts cannot have a balance")
        for sub in data.sub_accounts:
            if sub.type != AccountType.single_account or sub.sub_accounts:
                raise self._reject("Sub-account must be a single account")
            if sub.category != data.category:
                raise self._reject("Sub-account category must match its parent")
            if sub.currency.upper() == PARENT_ACCOUNT_CURRENCY_PLACEHOLDER:
                raise self._reject("Sub-account requires a currency")

    def create(self, data: AccountIn, utc_offset: int = 0) -> AccountTree:
        self._validate_new_account(data)
        ledger = TransactionService(self.session, self.user_id, clock=self.clock)

        with atomic(self.session):
            main = Account(
                user_id=self.user_id,
                category=data.category,
                type=data.type,
                name=data.name.strip(),
                display_order=self._next_display_order(data),
                icon=data.icon,
                color=data.color,
                currency=data.currency.upper(),
                balance=0,
                comment=data.comment,
            )
            self.session.add(main)
            self.session.flush()

            subs: list[Account] = []
            for order, sub in enumerate(data.sub_accounts, start=1):
                account = Account(
                    user_id=self.user_id,
                    parent_account_id=main.id,
                    category=data.category,
                    type=AccountType.single_account,
                    name=sub.name.strip(),
                    display_order=order,
                    icon=sub.icon,
                    color=sub.color,
                    currency=sub.currency.upper(),
                    balance=0,
                    comment=sub.comment,
                )
                self.session.add(account)
                subs.append(account)
            self.session.flush()

            opening = [(main, data.balance)] if not main.is_container else []
            opening += [(acc, sub.balance) for acc, sub in zip(subs, data.sub_accounts)]
            for account, balance in opening:
                if balance:
                    ledger.add_balance_modification(account, balance, utc_offset)

        logger.info(
            f"account_created: user_id={self.user_id} account_id={main.id} "
            f"sub_accounts={len(subs)}"
        )
        return AccountTree(main, subs)

    def modify(self, account_id: int, data: AccountModifyIn) -> AccountTree:
        main = self.get(account_id)
        if main.parent_account_id is not None:
            raise self._reject("Sub-account must be modified through its parent")
        subs = self.get_sub_accounts(main.id)
        if len(data.sub_accounts) != len(subs):
            raise self._reject("Cannot add or delete sub-accounts when modifying")
        subs_by_id = {sub.id: sub for sub in subs}

        changes: list[tuple[Account, dict[str, object]]] = []
        main_fields = {
            "name": data.name.strip(),
            "category": data.category,
            "icon": data.icon,
            "color": data.color,
            "comment": data.comment,
            "hidden": data.hidden,
        }
        changes.append((main, main_fields))
        for sub_data in data.sub_accounts:
            sub = subs_by_id.get(sub_data.id)
            if sub is None:
                raise NotFound("Sub-account not found")
            changes.append(
                (
                    sub,
                    {
                        "name": sub_data.name.strip(),
                        "category": data.category,
                        "icon": sub_data.icon,
                        "color": sub_data.color,
                        "comment": sub_data.comment,
                        "hidden": sub_data.hidden,
                    },
                )
            )

        dirty = [
            (account, fields)
            for account, fields in changes
            if any(getattr(account, key) != value for key, value in fields.items())
        ]
        if not dirty:
            raise NothingToUpdate("Nothing will be updated")

        with atomic(self.session):
            for account, fields in dirty:
                for key, value in fields.items():
                    setattr(account, key, value)

        logger.info(f"account_modified: user_id={self.user_id} account_id={main.id}")
        return AccountTree(main, subs)

    def hide(self, account_ids: list[int], hidden: bool) -> None:
        ids = _unique(account_ids)
        found = self.session.scalars(self._live().where(Account.id.in_(ids))).all()
        if len(found) != len(ids):
            raise NotFound("Account not found")
        with atomic(self.session):
            self.session.execute(
                update(Account)
                .where(
                    Account.user_id == self.user_id,
                    Account.deleted.is_(False),
                    or_(Account.id.in_(ids), Account.parent_account_id.in_(ids)),
                )
                .values(hidden=hidden, updated_at=datetime.utcnow())
            )
        logger.info(f"account_hidden: user_id={self.user_id} ids={ids} hidden={hidden}")

    def move(self, orders: list[DisplayOrderIn]) -> None:
        if not orders:
            raise self._reject("No display orders given")
        with atomic(self.session):
            for item in orders:
                account = self.get(item.id)
                account.display_order = item.display_order
        logger.info(f"account_moved: user_id={self.user_id} count={len(orders)}")

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        ids = [account.id] + [sub.id for sub in self.get_sub_accounts(account.id)]
        in_use = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                Transaction.deleted.is_(False),
                or_(
                    Transaction.account_id.in_(ids),
                    Transaction.related_account_id.in_(ids),
                ),
            )
        )
        if in_use:
            raise self._reject("Account is in use and cannot be deleted")

        now = _naive_utc(self.clock())
        with atomic(self.session):
            for row in self.session.scalars(self._live().where(Account.id.in_(ids))):
                row.mark_deleted(now)
            self.session.execute(
                update(User)
                .where(User.id == self.user_id, User.default_account_id.in_(ids))
                .values(default_account_id=None)
            )
        logger.info(f"account_deleted: user_id={self.user_id} account_ids={ids}")


class CategoryService:
    def __init__(
        self, session: Session, user_id: int, clock: Optional[Clock] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.clock = clock or utc_now

    def _live(self):
        return select(TransactionCategory).where(
            TransactionCategory.user_id == self.user_id,
            TransactionCategory.deleted.is_(False),
        )

    def _reject(self, message: str) -> InvalidRequest:
        logger.warning(f"category_rejected: user_id={self.user_id} reason={message}")
        return InvalidRequest(message)

    def get(self, category_id: int) -> TransactionCategory:
        category = self.session.scalar(
            self._live().where(TransactionCategory.id == category_id)
        )
        if not category:
            raise NotFound("Category not found")
        return category

    def list_all(
        self,
        type: Optional[CategoryType] = None,
        parent_id: Optional[int] = None,
        primary_only: bool = False,
    ) -> list[TransactionCategory]:
        stmt = self._live().order_by(
            TransactionCategory.type,
            TransactionCategory.display_order,
            TransactionCategory.id,
        )
        if type is not None:
            stmt = stmt.where(TransactionCategory.type == type)
        if parent_id is not None:
            stmt = stmt.where(TransactionCategory.parent_category_id == parent_id)
        elif primary_only:
            stmt = stmt.where(TransactionCategory.parent_category_id.is_(None))
        return list(self.session.scalars(stmt).all())

    def get_sub_categories(self, category_id: int) -> list[TransactionCategory]:
        return self.list_all(parent_id=category_id)

    def resolve_category_group(self, category_id: Optional[int]) -> list[int]:
        """Same contract as ``AccountService.resolve_account_group``."""
        if not category_id:
            return []
        category = self.session.scalar(
            self._live().where(TransactionCategory.id == category_id)
        )
        if category is None:
            return []
        if category.parent_category_id is None:
            sub_ids = [sub.id for sub in self.get_sub_categories(category.id)]
            if sub_ids:
                return sub_ids
        return [category.id]

    def get_transaction_category(
        self, category_id: int, category_type: CategoryType
    ) -> TransactionCategory:
        category = self.get(category_id)
        if category.parent_category_id is None:
            raise self._reject("Primary category cannot be used for transactions")
        if category.type != category_type:
            raise self._reject("Category type does not match transaction type")
        return category

    def create(self, data: CategoryIn) -> TransactionCategory:
        if data.parent_id is not None:
            parent = self.get(data.parent_id)
            if parent.parent_category_id is not None:
                raise self._reject("Parent category must be a primary category")
            if parent.type != data.type:
                raise self._reject("Parent category type does not match")

        if data.parent_id is None:
            parent_clause = TransactionCategory.parent_category_id.is_(None)
        else:
            parent_clause = TransactionCategory.parent_category_id == data.parent_id
        current = self.session.scalar(
            select(func.max(TransactionCategory.display_order)).where(
                TransactionCategory.user_id == self.user_id,
                TransactionCategory.deleted.is_(False),
                TransactionCategory.type == data.type,
                parent_clause,
            )
        )
        category = TransactionCategory(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            parent_category_id=data.parent_id,
            display_order=(current or 0) + 1,
            icon=data.icon,
            color=data.color,
            comment=data.comment,
        )
        with atomic(self.session):
            self.session.add(category)
        logger.info(
            f"category_created: user_id={self.user_id} category_id={category.id}"
        )
        return category

    def modify(self, category_id: int, data: CategoryModifyIn) -> TransactionCategory:
        category = self.get(category_id)
        fields = {
            "name": data.name.strip(),
            "icon": data.icon,
            "color": data.color,
            "comment": data.comment,
            "hidden": data.hidden,
        }
        if all(getattr(category, key) == value for key, value in fields.items()):
            raise NothingToUpdate("Nothing will be updated")
        with atomic(self.session):
            for key, value in fields.items():
                setattr(category, key, value)
        return category

    def hide(self, category_id: int, hidden: bool) -> None:
        category = self.get(category_id)
        with atomic(self.session):
            category.hidden = hidden

    def move(self, orders: list[DisplayOrderIn]) -> None:
        if not orders:
            raise self._reject("No display orders given")
        with atomic(self.session):
            for item in orders:
                self.get(item.id).display_order = item.display_order

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        ids = [category.id] + [sub.id for sub in self.get_sub_categories(category.id)]
        in_use = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                Transaction.deleted.is_(False),
                Transaction.category_id.in_(ids),
            )
        )
        if in_use:
            raise self._reject("Category is in use and cannot be deleted")
        now = _naive_utc(self.clock())
        with atomic(self.session):
            for row in self.session.scalars(
                self._live().where(TransactionCategory.id.in_(ids))
            ):
                row.mark_deleted(now)
        logger.info(f"category_deleted: user_id={self.user_id} category_ids={ids}")

    def delete_all_rows(self, now: datetime) -> None:
        self.session.execute(
            update(TransactionCategory)
            .where(
                TransactionCategory.user_id == self.user_id,
                TransactionCategory.deleted.is_(False),
            )
            .values(deleted=True, deleted_at=now)
        )


class TagService:
    def __init__(
        self, session: Session, user_id: int, clock: Optional[Clock] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.clock = clock or utc_now

    def _live(self):
        return select(TransactionTag).where(
            TransactionTag.user_id == self.user_id,
            TransactionTag.deleted.is_(False),
        )

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = self._live().where(func.lower(TransactionTag.name) == name.lower())
        if exclude_id is not None:
            stmt = stmt.where(TransactionTag.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def list_all(self) -> list[TransactionTag]:
        stmt = self._live().order_by(TransactionTag.display_order, TransactionTag.id)
        return list(self.session.scalars(stmt).all())

    def get(self, tag_id: int) -> TransactionTag:
        tag = self.session.scalar(self._live().where(TransactionTag.id == tag_id))
        if not tag:
            raise NotFound("Tag not found")
        return tag

    def create(self, data: TagIn) -> TransactionTag:
        clean_name = data.name.strip()
        if not clean_name:
            raise InvalidRequest("Tag name cannot be empty")
        if self._name_taken(clean_name):
            raise InvalidRequest("Tag already exists")

        current = self.session.scalar(
            select(func.max(TransactionTag.display_order)).where(
                TransactionTag.user_id == self.user_id,
                TransactionTag.deleted.is_(False),
            )
        )
        tag = TransactionTag(
            user_id=self.user_id, name=clean_name, display_order=(current or 0) + 1
        )
        with atomic(self.session):
            self.session.add(tag)
        return tag

    def modify(self, tag_id: int, data: TagIn) -> TransactionTag:
        tag = self.get(tag_id)
        clean_name = data.name.strip()
        if not clean_name:
            raise InvalidRequest("Tag name cannot be empty")
        if clean_name == tag.name:
            raise NothingToUpdate("Nothing will be updated")
        if self._name_taken(clean_name, exclude_id=tag.id):
            raise InvalidRequest("Tag with this name already exists")
        with atomic(self.session):
            tag.name = clean_name
        return tag

    def hide(self, tag_id: int, hidden: bool) -> None:
        tag = self.get(tag_id)
        with atomic(self.session):
            tag.hidden = hidden

    def move(self, orders: list[DisplayOrderIn]) -> None:
        if not orders:
            raise InvalidRequest("No display orders given")
        with atomic(self.session):
            for item in orders:
                self.get(item.id).display_order = item.display_order

    def delete(self, tag_id: int) -> None:
        tag = self.get(tag_id)
        with atomic(self.session):
            self.session.execute(
                delete(TransactionTagIndex).where(
                    TransactionTagIndex.user_id == self.user_id,
                    TransactionTagIndex.tag_id == tag.id,
                )
            )
            tag.mark_deleted(_naive_utc(self.clock()))
        logger.info(f"tag_deleted: user_id={self.user_id} tag_id={tag.id}")

    def delete_all_rows(self, now: datetime) -> None:
        self.session.execute(
            delete(TransactionTagIndex).where(
                TransactionTagIndex.user_id == self.user_id
            )
        )
        self.session.execute(
            update(TransactionTag)
            .where(
                TransactionTag.user_id == self.user_id,
                TransactionTag.deleted.is_(False),
            )
            .values(deleted=True, deleted_at=now)
        )


class TagIndexService:
    """Transaction <-> tag associations, always scoped to one user."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get_all_tag_ids_of_transactions(
        self, transaction_ids: Iterable[int]
    ) -> dict[int, list[int]]:
        ids = _unique(transaction_ids)
        if not ids:
            return {}
        stmt = (
            select(TransactionTagIndex.transaction_id, TransactionTagIndex.tag_id)
            .join(TransactionTag, TransactionTag.id == TransactionTagIndex.tag_id)
            .where(
                TransactionTagIndex.user_id == self.user_id,
                TransactionTagIndex.transaction_id.in_(ids),
                TransactionTag.user_id == self.user_id,
                TransactionTag.deleted.is_(False),
            )
            .order_by(
                TransactionTagIndex.transaction_id,
                TransactionTag.display_order,
                TransactionTag.id,
            )
        )
        result: dict[int, list[int]] = defaultdict(list)
        for transaction_id, tag_id in self.session.execute(stmt):
            result[transaction_id].append(tag_id)
        return dict(result)

    def validate_tag_ids(self, tag_ids: Iterable[int]) -> list[int]:
        ids = _unique(tag_ids)
        if not ids:
            return []
        found = set(
            self.session.scalars(
                select(TransactionTag.id).where(
                    TransactionTag.user_id == self.user_id,
                    TransactionTag.deleted.is_(False),
                    TransactionTag.id.in_(ids),
                )
            )
        )
        if len(found) != len(ids):
            logger.warning(
                f"tag_rejected: user_id={self.user_id} missing={sorted(set(ids) - found)}"
            )
            raise NotFound("Tag not found")
        return ids

    def replace_tags(
        self,
        transaction_id: int,
        add_tag_ids: Iterable[int],
        remove_tag_ids: Iterable[int],
    ) -> None:
        """Apply a tag delta; runs inside the caller's storage transaction."""
        remove_ids = _unique(remove_tag_ids)
        if remove_ids:
            self.session.execute(
                delete(TransactionTagIndex).where(
                    TransactionTagIndex.user_id == self.user_id,
                    TransactionTagIndex.transaction_id == transaction_id,
                    TransactionTagIndex.tag_id.in_(remove_ids),
                )
            )
        for tag_id in _unique(add_tag_ids):
            self.session.add(
                TransactionTagIndex(
                    transaction_id=transaction_id, tag_id=tag_id, user_id=self.user_id
                )
            )
        self.session.flush()


class TransactionService:
    def __init__(
        self, session: Session, user_id: int, clock: Optional[Clock] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.clock = clock or utc_now
        self.tag_index = TagIndexService(session, user_id)

    def _reject(self, message: str) -> InvalidRequest:
        logger.warning(f"transaction_rejected: user_id={self.user_id} reason={message}")
        return InvalidRequest(message)

    def _user(self) -> User:
        return load_user(self.session, self.user_id)

    def _validate_fields(self, type: TransactionType, data: TransactionFieldsIn) -> None:
        if type == TransactionType.modify_balance and data.category_id is not None:
            raise self._reject("Balance modification cannot have a category")
        if type != TransactionType.modify_balance and data.category_id is None:
            raise self._reject("Transaction requires a category")
        if type != TransactionType.transfer and (
            data.destination_account_id is not None
            or data.destination_amount is not None
        ):
            raise self._reject("Only transfers can have a destination account")
        if type == TransactionType.transfer:
            if data.destination_account_id is None or data.destination_amount is None:
                raise self._reject("Transfer requires a destination account and amount")
            if data.source_account_id == data.destination_account_id:
                raise self._reject("Cannot transfer to the same account")

    def _check_references(self, type: TransactionType, data: TransactionFieldsIn) -> None:
        accounts = AccountService(self.session, self.user_id)
        accounts.get_leaf_account(data.source_account_id)
        if type == TransactionType.transfer:
            accounts.get_leaf_account(data.destination_account_id)
        if type != TransactionType.modify_balance:
            CategoryService(self.session, self.user_id).get_transaction_category(
                data.category_id, CATEGORY_TYPE_BY_TYPE[type]
            )

    def _check_edit_window(
        self, transaction_time: int, utc_offset: int, message: str
    ) -> None:
        user = self._user()
        if not can_edit(
            user.transaction_edit_scope,
            transaction_time,
            self.clock(),
            utc_offset,
            user.first_day_of_week,
            server_zone(),
        ):
            logger.warning(
                f"transaction_rejected: user_id={self.user_id} "
                f"scope={user.transaction_edit_scope.value} time={transaction_time}"
            )
            raise EditWindowViolation(message)

    def _check_accounts_visible(
        self, account_ids: Iterable[Optional[int]], message: str
    ) -> None:
        for account_id in account_ids:
            if account_id is None:
                continue
            account = self.session.get(Account, account_id)
            if account is None or account.deleted or account.hidden:
                logger.warning(
                    f"transaction_rejected: user_id={self.user_id} "
                    f"account_id={account_id} reason=hidden_account"
                )
                raise EditWindowViolation(message)

    def _next_transaction_time(self, unix_time: int, slots: int = 1) -> int:
        lowest = min_transaction_time(unix_time)
        highest = max_transaction_time(unix_time)
        # Soft-deleted rows still hold their slot in the unique key. Two writers
        # racing for the same second can pick the same slot: the loser hits
        # uq_txn_user_time, atomic() rolls it back and raises OperationFailed.
        current = self.session.scalar(
            select(func.max(Transaction.transaction_time)).where(
                Transaction.user_id == self.user_id,
                Transaction.transaction_time.between(lowest, highest),
            )
        )
        candidate = lowest if current is None else current + 1
        if candidate + slots - 1 > highest:
            raise OperationFailed("Too many transactions at the same second")
        return candidate

    def _apply_balance(self, txn: Transaction, sign: int) -> None:
        account = self.session.get(Account, txn.account_id)
        if txn.type in (TransactionRowType.income, TransactionRowType.modify_balance):
            account.balance += sign * txn.amount
        elif txn.type == TransactionRowType.expense:
            account.balance -= sign * txn.amount
        elif txn.type == TransactionRowType.transfer_out:
            account.balance -= sign * txn.amount
            related = self.session.get(Account, txn.related_account_id)
            related.balance += sign * txn.related_account_amount

    @staticmethod
    def _sync_mirror(out: Transaction, mirror: Transaction) -> None:
        mirror.category_id = out.category_id
        mirror.account_id = out.related_account_id
        mirror.amount = out.related_account_amount
        mirror.related_id = out.id
        mirror.related_account_id = out.account_id
        mirror.related_account_amount = out.amount
        mirror.transaction_time = out.transaction_time + 1
        mirror.timezone_utc_offset = out.timezone_utc_offset
        mirror.hide_amount = out.hide_amount
        mirror.comment = out.comment
        mirror.geo_longitude = out.geo_longitude
        mirror.geo_latitude = out.geo_latitude

    @staticmethod
    def _assign_fields(
        txn: Transaction, type: TransactionType, data: TransactionFieldsIn
    ) -> None:
        is_transfer = type == TransactionType.transfer
        txn.category_id = data.category_id
        txn.timezone_utc_offset = data.utc_offset
        txn.account_id = data.source_account_id
        txn.amount = data.source_amount
        txn.related_account_id = data.destination_account_id if is_transfer else None
        txn.related_account_amount = data.destination_amount if is_transfer else 0
        txn.hide_amount = data.hide_amount
        txn.comment = data.comment
        txn.geo_longitude = data.geo_location.longitude if data.geo_location else None
        txn.geo_latitude = data.geo_location.latitude if data.geo_location else None

    def _get_row(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.id == transaction_id,
                Transaction.deleted.is_(False),
            )
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def _get_mirror(self, out: Transaction) -> Transaction:
        mirror = self.session.get(Transaction, out.related_id) if out.related_id else None
        if mirror is None or mirror.user_id != self.user_id:
            raise OperationFailed("Transfer mirror row is missing")
        return mirror

    def create(
        self, data: TransactionCreateIn, client_ip: Optional[str] = None
    ) -> Transaction:
        self._validate_fields(data.type, data)
        tag_ids = self.tag_index.validate_tag_ids(data.tag_ids)
        self._check_references(data.type, data)
        self._check_edit_window(
            min_transaction_time(data.time),
            data.utc_offset,
            "Cannot create transaction with this transaction time",
        )

        is_transfer = data.type == TransactionType.transfer
        with atomic(self.session):
            txn = Transaction(
                user_id=self.user_id,
                type=ROW_TYPE_BY_TYPE[data.type],
                transaction_time=self._next_transaction_time(
                    data.time, slots=2 if is_transfer else 1
                ),
                created_ip=client_ip,
            )
            self._assign_fields(txn, data.type, data)
            self.session.add(txn)
            self.session.flush()

            if is_transfer:
                mirror = Transaction(
                    user_id=self.user_id, type=TransactionRowType.transfer_in
                )
                self._sync_mirror(txn, mirror)
                self.session.add(mirror)
                self.session.flush()
                txn.related_id = mirror.id

            self._apply_balance(txn, 1)
            self.tag_index.replace_tags(txn.id, tag_ids, [])

        logger.info(
            f"transaction_created: user_id={self.user_id} transaction_id={txn.id} "
            f"type={data.type.value}"
        )
        return txn

    def add_balance_modification(
        self, account: Account, amount: int, utc_offset: int = 0
    ) -> Transaction:
        """Record an opening/adjusting balance; runs inside the caller's transaction."""
        now_unix = int(self.clock().timestamp())
        txn = Transaction(
            user_id=self.user_id,
            type=TransactionRowType.modify_balance,
            account_id=account.id,
            transaction_time=self._next_transaction_time(now_unix),
            timezone_utc_offset=utc_offset,
            amount=amount,
        )
        self.session.add(txn)
        self.session.flush()
        self._apply_balance(txn, 1)
        return txn

    @staticmethod
    def _comparable(txn: Transaction) -> tuple:
        return (
            txn.category_id,
            unix_time_from_transaction_time(txn.transaction_time),
            txn.timezone_utc_offset,
            txn.account_id,
            txn.amount,
            txn.related_account_id,
            txn.related_account_amount,
            txn.hide_amount,
            txn.comment,
            txn.geo_longitude,
            txn.geo_latitude,
        )

    def modify(self, transaction_id: int, data: TransactionModifyIn) -> Transaction:
        txn = self._get_row(transaction_id)
        if txn.type == TransactionRowType.transfer_in:
            logger.warning(
                f"transaction_rejected: user_id={self.user_id} "
                f"transaction_id={txn.id} reason=transfer_in_modify"
            )
            raise WrongTransactionType(
                "Transfer-in transaction cannot be modified directly"
            )
        type = TYPE_BY_ROW_TYPE[txn.type]
        is_transfer = type == TransactionType.transfer

        self._validate_fields(type, data)
        tag_ids = self.tag_index.validate_tag_ids(data.tag_ids)
        current_tag_ids = self.tag_index.get_all_tag_ids_of_transactions([txn.id]).get(
            txn.id, []
        )

        requested = (
            data.category_id,
            data.time,
            data.utc_offset,
            data.source_account_id,
            data.source_amount,
            data.destination_account_id if is_transfer else None,
            data.destination_amount if is_transfer else 0,
            data.hide_amount,
            data.comment,
            data.geo_location.longitude if data.geo_location else None,
            data.geo_location.latitude if data.geo_location else None,
        )
        tags_changed = set(tag_ids) != set(current_tag_ids)
        if requested == self._comparable(txn) and not tags_changed:
            raise NothingToUpdate("Nothing will be updated")

        self._check_references(type, data)
        message = "Cannot modify transaction with this transaction time"
        self._check_edit_window(txn.transaction_time, txn.timezone_utc_offset, message)
        self._check_edit_window(
            min_transaction_time(data.time), data.utc_offset, message
        )
        self._check_accounts_visible(
            [
                txn.account_id,
                txn.related_account_id if is_transfer else None,
                data.source_account_id,
                data.destination_account_id if is_transfer else None,
            ],
            message,
        )

        with atomic(self.session):
            self._apply_balance(txn, -1)
            if data.time != unix_time_from_transaction_time(txn.transaction_time):
                txn.transaction_time = self._next_transaction_time(
                    data.time, slots=2 if is_transfer else 1
                )
            self._assign_fields(txn, type, data)
            if is_transfer:
                self._sync_mirror(txn, self._get_mirror(txn))
            self._apply_balance(txn, 1)
            if tags_changed:
                self.tag_index.replace_tags(
                    txn.id,
                    [t for t in tag_ids if t not in current_tag_ids],
                    [t for t in current_tag_ids if t not in tag_ids],
                )

        logger.info(
            f"transaction_modified: user_id={self.user_id} transaction_id={txn.id}"
        )
        return txn

    def delete(self, transaction_id: int, utc_offset: int = 0) -> None:
        txn = self._get_row(transaction_id)
        if txn.type == TransactionRowType.transfer_in:
            logger.warning(
                f"transaction_rejected: user_id={self.user_id} "
                f"transaction_id={txn.id} reason=transfer_in_delete"
            )
            raise WrongTransactionType(
                "Transfer-in transaction cannot be deleted directly"
            )
        message = "Cannot delete transaction with this transaction time"
        self._check_edit_window(txn.transaction_time, utc_offset, message)
        self._check_accounts_visible(
            [
                txn.account_id,
                txn.related_account_id
                if txn.type == TransactionRowType.transfer_out
                else None,
            ],
            message,
        )

        now = _naive_utc(self.clock())
        with atomic(self.session):
            self._apply_balance(txn, -1)
            txn.mark_deleted(now)
            if txn.type == TransactionRowType.transfer_out:
                self._get_mirror(txn).mark_deleted(now)

        logger.info(
            f"transaction_deleted: user_id={self.user_id} transaction_id={txn.id}"
        )

    def delete_all(self) -> None:
        with atomic(self.session):
            self.delete_all_rows(_naive_utc(self.clock()))
        logger.info(f"transactions_cleared: user_id={self.user_id}")

    def delete_all_rows(self, now: datetime) -> None:
        self.session.execute(
            update(Transaction)
            .where(Transaction.user_id == self.user_id, Transaction.deleted.is_(False))
            .values(deleted=True, deleted_at=now)
        )
        self.session.execute(
            delete(TransactionTagIndex).where(
                TransactionTagIndex.user_id == self.user_id
            )
        )
        self.session.execute(
            update(Account)
            .where(Account.user_id == self.user_id)
            .values(balance=0)
        )

    def _apply_filters(self, stmt, filters: TransactionFilters):
        stmt = stmt.where(
            Transaction.user_id == self.user_id, Transaction.deleted.is_(False)
        )
        if filters.type == TransactionType.transfer:
            stmt = stmt.where(
                Transaction.type.in_(
                    [TransactionRowType.transfer_out, TransactionRowType.transfer_in]
                )
            )
        elif filters.type is not None:
            stmt = stmt.where(Transaction.type == ROW_TYPE_BY_TYPE[filters.type])
        if filters.category_ids:
            stmt = stmt.where(Transaction.category_id.in_(filters.category_ids))
        if filters.account_ids:
            stmt = stmt.where(Transaction.account_id.in_(filters.account_ids))
            if not filters.include_transfer_in_rows:
                # the out-row already matches when both ends are in the filter
                stmt = stmt.where(
                    or_(
                        Transaction.type != TransactionRowType.transfer_in,
                        Transaction.related_account_id.not_in(filters.account_ids),
                    )
                )
        elif not filters.include_transfer_in_rows:
            stmt = stmt.where(Transaction.type != TransactionRowType.transfer_in)
        if filters.keyword:
            stmt = stmt.where(
                func.lower(Transaction.comment).contains(
                    filters.keyword.lower(), autoescape=True
                )
            )
        if filters.min_time is not None:
            stmt = stmt.where(
                Transaction.transaction_time >= min_transaction_time(filters.min_time)
            )
        if filters.max_time is not None:
            stmt = stmt.where(
                Transaction.transaction_time <= max_transaction_time(filters.max_time)
            )
        return stmt

    def _to_views(
        self,
        rows: list[Transaction],
        filters: TransactionFilters,
        utc_offset: int,
    ) -> list[TransactionView]:
        if not filters.include_transfer_in_rows:
            out_ids = [
                row.related_id
                for row in rows
                if row.type == TransactionRowType.transfer_in
            ]
            out_rows: dict[int, Transaction] = {}
            if out_ids:
                out_rows = {
                    row.id: row
                    for row in self.session.scalars(
                        select(Transaction).where(
                            Transaction.user_id == self.user_id,
                            Transaction.deleted.is_(False),
                            Transaction.id.in_(out_ids),
                        )
                    )
                }
            surfaced: list[Transaction] = []
            for row in rows:
                if row.type == TransactionRowType.transfer_in:
                    out = out_rows.get(row.related_id)
                    if out is None:
                        continue
                    row = out
                surfaced.append(row)
            rows = surfaced

        accounts = AccountService(self.session, self.user_id).accounts_by_id()
        rows = [
            row
            for row in rows
            if row.account_id in accounts
            and (row.related_account_id is None or row.related_account_id in accounts)
        ]

        def canonical_id(row: Transaction) -> int:
            if row.type == TransactionRowType.transfer_in:
                return row.related_id
            return row.id

        tag_ids = self.tag_index.get_all_tag_ids_of_transactions(
            canonical_id(row) for row in rows
        )
        user = self._user()
        now = self.clock()
        zone = server_zone()

        views: list[TransactionView] = []
        for row in rows:
            if row.type == TransactionRowType.transfer_in:
                source_id, source_amount = row.related_account_id, row.related_account_amount
                dest_id, dest_amount = row.account_id, row.amount
            else:
                source_id, source_amount = row.account_id, row.amount
                dest_id, dest_amount = row.related_account_id, row.related_account_amount
            geo = None
            if row.geo_latitude is not None and row.geo_longitude is not None:
                geo = GeoLocation(latitude=row.geo_latitude, longitude=row.geo_longitude)
            views.append(
                TransactionView(
                    id=row.id,
                    time_sequence_id=row.transaction_time,
                    type=TYPE_BY_ROW_TYPE[row.type],
                    category_id=row.category_id,
                    time=unix_time_from_transaction_time(row.transaction_time),
                    utc_offset=row.timezone_utc_offset,
                    source_account_id=source_id,
                    source_amount=source_amount,
                    destination_account_id=dest_id,
                    destination_amount=dest_amount,
                    hide_amount=row.hide_amount,
                    tag_ids=tag_ids.get(canonical_id(row), []),
                    comment=row.comment,
                    geo_location=geo,
                    editable=is_editable(
                        user.transaction_edit_scope,
                        row,
                        accounts.get(row.account_id),
                        accounts.get(row.related_account_id),
                        now,
                        utc_offset,
                        user.first_day_of_week,
                        zone,
                    ),
                )
            )
        return views

    def get(self, transaction_id: int, utc_offset: int = 0) -> TransactionView:
        row = self._get_row(transaction_id)
        views = self._to_views([row], TransactionFilters(), utc_offset)
        if not views:
            raise NotFound("Transaction not found")
        return views[0]

    def is_editable(self, transaction_id: int, utc_offset: int = 0) -> bool:
        return self.get(transaction_id, utc_offset).editable

    def count(self, filters: Optional[TransactionFilters] = None) -> int:
        filters = filters or TransactionFilters()
        stmt = self._apply_filters(select(func.count(Transaction.id)), filters)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def list_by_max_time(
        self,
        filters: Optional[TransactionFilters] = None,
        count: int = MAX_PAGE_SIZE,
        before_time: Optional[int] = None,
        page: int = 1,
        with_count: bool = False,
        utc_offset: int = 0,
    ) -> TransactionPage:
        """Newest-first page of transactions.

        ``before_time`` is an exclusive packed-time cursor; pass the previous
        page's ``next_time_sequence_id`` to continue.
        """
        if not 1 <= count <= MAX_PAGE_SIZE:
            raise InvalidRequest(f"Page size must be between 1 and {MAX_PAGE_SIZE}")
        if page < 1:
            raise InvalidRequest("Page must be positive")
        filters = filters or TransactionFilters()

        stmt = self._apply_filters(select(Transaction), filters)
        if before_time is not None:
            stmt = stmt.where(Transaction.transaction_time < before_time)
        stmt = (
            stmt.order_by(Transaction.transaction_time.desc(), Transaction.id.desc())
            .offset((page - 1) * count)
            .limit(count + 1)
        )
        rows = list(self.session.scalars(stmt).all())
        has_more = len(rows) > count
        rows = rows[:count]

        return TransactionPage(
            items=self._to_views(rows, filters, utc_offset),
            next_time_sequence_id=rows[-1].transaction_time if has_more else None,
            total_count=self.count(filters) if with_count else None,
        )

    def list_in_month(
        self,
        year: int,
        month: int,
        filters: Optional[TransactionFilters] = None,
        utc_offset: int = 0,
    ) -> list[TransactionView]:
        if not 1 <= month <= 12:
            raise InvalidRequest("Month must be between 1 and 12")
        filters = filters or TransactionFilters()
        window = month_range(year, month, utc_offset)
        stmt = (
            self._apply_filters(select(Transaction), filters)
            .where(
                Transaction.transaction_time >= min_transaction_time(window.start),
                Transaction.transaction_time < min_transaction_time(window.end),
            )
            .order_by(Transaction.transaction_time.desc(), Transaction.id.desc())
        )
        rows = list(self.session.scalars(stmt).all())
        return self._to_views(rows, filters, utc_offset)


class StatisticsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _window_clauses(
        self, window: TimeRange, utc_offset: int, use_transaction_timezone: bool
    ) -> list:
        start, end = window.start, window.end
        if use_transaction_timezone:
            start -= TIMEZONE_SPREAD_SECONDS
            end += TIMEZONE_SPREAD_SECONDS
        clauses = [
            Transaction.user_id == self.user_id,
            Transaction.deleted.is_(False),
            Transaction.type.in_([TransactionRowType.income, TransactionRowType.expense]),
            Transaction.transaction_time >= min_transaction_time(start),
            Transaction.transaction_time < min_transaction_time(end),
        ]
        if use_transaction_timezone:
            # compare each row's wall-clock time in its own recorded offset
            local_time = (
                Transaction.transaction_time // 1000
                + (Transaction.timezone_utc_offset - utc_offset) * 60
            )
            clauses += [local_time >= window.start, local_time < window.end]
        return clauses

    def total_income_and_expense(
        self,
        start_time: int,
        end_time: int,
        utc_offset: int = 0,
        use_transaction_timezone: bool = False,
    ) -> tuple[dict[int, int], dict[int, int]]:
        window = TimeRange(start_time, end_time)
        stmt = (
            select(
                Transaction.account_id,
                Transaction.type,
                func.sum(Transaction.amount),
            )
            .where(*self._window_clauses(window, utc_offset, use_transaction_timezone))
            .group_by(Transaction.account_id, Transaction.type)
        )
        income: dict[int, int] = {}
        expense: dict[int, int] = {}
        for account_id, row_type, amount in self.session.execute(stmt):
            target = income if row_type == TransactionRowType.income else expense
            target[account_id] = int(amount or 0)
        return income, expense

    def accounts_and_categories_totals(
        self,
        start_time: int,
        end_time: int,
        utc_offset: int = 0,
        use_transaction_timezone: bool = False,
    ) -> list[CategoryAccountTotal]:
        window = TimeRange(start_time, end_time)
        stmt = (
            select(
                Transaction.account_id,
                Transaction.category_id,
                Transaction.type,
                func.sum(Transaction.amount),
            )
            .where(*self._window_clauses(window, utc_offset, use_transaction_timezone))
            .group_by(Transaction.account_id, Transaction.category_id, Transaction.type)
            .order_by(Transaction.account_id, Transaction.category_id, Transaction.type)
        )
        return [
            CategoryAccountTotal(
                account_id=account_id,
                category_id=category_id,
                type=TYPE_BY_ROW_TYPE[row_type],
                amount=int(amount or 0),
            )
            for account_id, category_id, row_type, amount in self.session.execute(stmt)
        ]

    def monthly_income_and_expense(
        self,
        start_year: int,
        start_month: int,
        end_year: int,
        end_month: int,
        utc_offset: int = 0,
        use_transaction_timezone: bool = False,
    ) -> dict[int, list[CategoryAccountTotal]]:
        if (start_year, start_month) > (end_year, end_month):
            raise InvalidRequest("Start month must not be after end month")
        months = list(iter_months(start_year, start_month, end_year, end_month))
        window = TimeRange(
            month_range(start_year, start_month, utc_offset).start,
            month_range(end_year, end_month, utc_offset).end,
        )
        if use_transaction_timezone:
            window = TimeRange(
                window.start - TIMEZONE_SPREAD_SECONDS,
                window.end + TIMEZONE_SPREAD_SECONDS,
            )
        stmt = select(
            Transaction.account_id,
            Transaction.category_id,
            Transaction.type,
            Transaction.amount,
            Transaction.transaction_time,
            Transaction.timezone_utc_offset,
        ).where(*self._window_clauses(window, utc_offset, False))

        keys = {year_month_key(year, month) for year, month in months}
        totals: dict[int, dict[tuple, int]] = {key: defaultdict(int) for key in keys}
        result_rows = self.session.execute(stmt.execution_options(yield_per=1000))
        for account_id, category_id, row_type, amount, packed, row_offset in result_rows:
            offset = row_offset if use_transaction_timezone else utc_offset
            key = year_month_key(
                *year_month_of(unix_time_from_transaction_time(packed), offset)
            )
            if key in totals:
                totals[key][(account_id, category_id, row_type)] += amount

        return {
            year_month_key(year, month): [
                CategoryAccountTotal(
                    account_id=account_id,
                    category_id=category_id,
                    type=TYPE_BY_ROW_TYPE[row_type],
                    amount=int(amount),
                )
                for (account_id, category_id, row_type), amount in sorted(
                    totals[year_month_key(year, month)].items(),
                    key=lambda item: (item[0][0], item[0][1] or 0, item[0][2].value),
                )
            ]
            for year, month in months
        }

    def amounts(
        self,
        query: str,
        utc_offset: int = 0,
        use_transaction_timezone: bool = False,
    ) -> dict[str, AmountsResult]:
        return self.amounts_for_items(
            parse_amounts_query(query), utc_offset, use_transaction_timezone
        )

    def amounts_for_items(
        self,
        items: list[AmountsQueryItem],
        utc_offset: int = 0,
        use_transaction_timezone: bool = False,
    ) -> dict[str, AmountsResult]:
        if not items:
            raise EmptyQueryItems("No query items")
        if len(items) > MAX_AMOUNTS_QUERY_ITEMS:
            raise TooManyQueryItems(
                f"At most {MAX_AMOUNTS_QUERY_ITEMS} query items are allowed"
            )

        accounts = AccountService(self.session, self.user_id).accounts_by_id()
        results: dict[str, AmountsResult] = {}
        for item in items:
            income, expense = self.total_income_and_expense(
                item.start_time, item.end_time, utc_offset, use_transaction_timezone
            )
            by_currency: dict[str, CurrencyAmount] = {}
            for totals, attr in ((income, "income_amount"), (expense, "expense_amount")):
                for account_id, amount in totals.items():
                    account = accounts.get(account_id)
                    if account is None:
                        logger.warning(
                            f"amounts_skipped: user_id={self.user_id} "
                            f"account_id={account_id} reason=missing_account"
                        )
                        continue
                    entry = by_currency.setdefault(
                        account.currency, CurrencyAmount(account.currency)
                    )
                    setattr(entry, attr, getattr(entry, attr) + amount)
            results[item.name] = AmountsResult(
                start_time=item.start_time,
                end_time=item.end_time,
                amounts=sorted(by_currency.values(), key=lambda a: a.currency),
            )
        return results


class UserService:
    def __init__(
        self,
        session: Session,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.session = session
        self.dispatcher = dispatcher
        self.clock = clock or utc_now

    def get(self, user_id: int) -> User:
        return load_user(self.session, user_id)

    def register(self, data: UserRegisterIn) -> User:
        username = data.username.strip()
        email = data.email.strip()
        if self.session.scalar(
            select(User).where(func.lower(User.username) == username.lower())
        ):
            raise InvalidRequest("Username already exists")
        if self.session.scalar(select(User).where(func.lower(User.email) == email.lower())):
            raise InvalidRequest("Email already exists")

        user = User(
            username=username,
            email=email,
            nickname=data.nickname.strip(),
            password_hash=hash_password(data.password),
            default_currency=data.default_currency.upper(),
            first_day_of_week=data.first_day_of_week,
            language=data.language,
        )
        with atomic(self.session):
            self.session.add(user)
        logger.info(f"user_registered: user_id={user.id} username={user.username}")

        if self.dispatcher is not None:
            self.dispatcher.send_mail(
                user.email,
                "Verify your email address",
                f"Hi {user.nickname}, please confirm the address for {user.username}.",
            )
        return user

    def verify_password(self, user_id: int, password: str) -> bool:
        return verify_password(password, self.get(user_id).password_hash)

    def update_settings(self, user_id: int, data: UserSettingsIn) -> User:
        user = self.get(user_id)
        requested = data.model_dump(exclude_none=True)
        if "default_currency" in requested:
            requested["default_currency"] = requested["default_currency"].upper()
        if "default_account_id" in requested:
            AccountService(self.session, user_id).get_leaf_account(
                requested["default_account_id"]
            )

        changes = {
            key: value
            for key, value in requested.items()
            if getattr(user, key) != value
        }
        if not changes:
            raise NothingToUpdate("Nothing will be updated")
        with atomic(self.session):
            for key, value in changes.items():
                setattr(user, key, value)
        logger.info(f"user_updated: user_id={user_id} fields={sorted(changes)}")
        return user

    def clear_data(self, user_id: int, password: str) -> None:
        if not self.verify_password(user_id, password):
            logger.warning(f"clear_data_rejected: user_id={user_id} reason=password")
            raise InvalidRequest("Password is incorrect")
        now = _naive_utc(self.clock())
        with atomic(self.session):
            TransactionService(self.session, user_id).delete_all_rows(now)
            CategoryService(self.session, user_id).delete_all_rows(now)
            TagService(self.session, user_id).delete_all_rows(now)
        logger.info(f"user_data_cleared: user_id={user_id}")

    def data_statistics(self, user_id: int) -> DataStatistics:
        self.get(user_id)

        def live_count(model) -> int:
            stmt = select(func.count(model.id)).where(
                model.user_id == user_id, model.deleted.is_(False)
            )
            return int(self.session.execute(stmt).scalar_one() or 0)

        return DataStatistics(
            total_account_count=live_count(Account),
            total_transaction_category_count=live_count(TransactionCategory),
            total_transaction_tag_count=live_count(TransactionTag),
            total_transaction_count=TransactionService(self.session, user_id).count(),
        )
