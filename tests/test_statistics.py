from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from amounts_query import AmountsQueryItem, encode_amounts_query
from database import Base
from errors import EmptyQueryItems, InvalidRequest, TooManyQueryItems
from models import AccountCategory, CategoryType, TransactionType, User
from schemas import AccountIn, CategoryIn, TransactionCreateIn
from services import (
    AccountService,
    CategoryAccountTotal,
    CategoryService,
    CurrencyAmount,
    StatisticsService,
    TransactionService,
)

NOW = datetime(2024, 5, 15, 12, 0, 0, tzinfo=timezone.utc)
MAY_START = int(datetime(2024, 5, 1, tzinfo=timezone.utc).timestamp())
JUNE_START = int(datetime(2024, 6, 1, tzinfo=timezone.utc).timestamp())
APRIL_START = int(datetime(2024, 4, 1, tzinfo=timezone.utc).timestamp())


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


class Fixture:
    def __init__(self) -> None:
        self.session = make_session()
        self.user = User(
            username="alice",
            email="alice@example.com",
            nickname="Alice",
            password_hash="x",
            default_currency="USD",
        )
        self.session.add(self.user)
        self.session.commit()

        accounts = AccountService(self.session, self.user.id, clock=lambda: NOW)
        # opening balance lands in May as a balance modification
        self.wallet = accounts.create(
            AccountIn(
                name="Wallet",
                category=AccountCategory.cash,
                currency="USD",
                balance=10_000,
            )
        ).account
        self.euro = accounts.create(
            AccountIn(name="Konto", category=AccountCategory.checking, currency="EUR")
        ).account

        categories = CategoryService(self.session, self.user.id)

        def sub(name: str, type: CategoryType) -> int:
            parent = categories.create(CategoryIn(name=f"{name} group", type=type))
            return categories.create(
                CategoryIn(name=name, type=type, parent_id=parent.id)
            ).id

        self.wage = sub("Wage", CategoryType.income)
        self.lunch = sub("Lunch", CategoryType.expense)
        self.rent = sub("Rent", CategoryType.expense)
        self.internal = sub("Internal", CategoryType.transfer)
        self.ledger = TransactionService(self.session, self.user.id, clock=lambda: NOW)
        self.stats = StatisticsService(self.session, self.user.id)

    def add(
        self,
        type: TransactionType,
        category_id: int,
        time: int,
        amount: int,
        account_id=None,
        utc_offset: int = 0,
    ) -> None:
        self.ledger.create(
            TransactionCreateIn(
                type=type,
                category_id=category_id,
                time=time,
                utc_offset=utc_offset,
                source_account_id=account_id or self.wallet.id,
                source_amount=amount,
            )
        )

    def transfer(self, time: int, amount: int) -> None:
        self.ledger.create(
            TransactionCreateIn(
                type=TransactionType.transfer,
                category_id=self.internal,
                time=time,
                source_account_id=self.wallet.id,
                source_amount=amount,
                destination_account_id=self.euro.id,
                destination_amount=amount,
            )
        )


def test_totals_use_half_open_window_and_skip_non_flow_rows() -> None:
    f = Fixture()
    f.add(TransactionType.expense, f.lunch, MAY_START, 100)
    f.add(TransactionType.expense, f.lunch, JUNE_START, 200)
    f.add(TransactionType.expense, f.lunch, MAY_START - 1, 400)
    f.add(TransactionType.income, f.wage, MAY_START + 86400, 5000)
    f.transfer(MAY_START + 3600, 700)

    income, expense = f.stats.total_income_and_expense(MAY_START, JUNE_START)

    assert income == {f.wallet.id: 5000}
    assert expense == {f.wallet.id: 100}


def test_transaction_timezone_moves_rows_across_the_boundary() -> None:
    f = Fixture()
    tokyo = timezone(timedelta(hours=9))
    # 1 May 01:00 in Tokyo, still 30 April in UTC
    early = int(datetime(2024, 5, 1, 1, 0, tzinfo=tokyo).timestamp())
    f.add(TransactionType.expense, f.lunch, early, 300, utc_offset=540)
    # 31 May 22:00 UTC recorded at +02:00 is already June locally
    late = int(datetime(2024, 5, 31, 22, 0, tzinfo=timezone.utc).timestamp())
    f.add(TransactionType.expense, f.rent, late, 800, utc_offset=120)

    _, client_view = f.stats.total_income_and_expense(MAY_START, JUNE_START)
    _, local_view = f.stats.total_income_and_expense(
        MAY_START, JUNE_START, use_transaction_timezone=True
    )

    assert client_view == {f.wallet.id: 800}
    assert local_view == {f.wallet.id: 300}


def test_totals_are_grouped_by_account_and_category() -> None:
    f = Fixture()
    f.add(TransactionType.expense, f.lunch, MAY_START + 10, 100)
    f.add(TransactionType.expense, f.lunch, MAY_START + 20, 150)
    f.add(TransactionType.expense, f.rent, MAY_START + 30, 900)
    f.add(TransactionType.income, f.wage, MAY_START + 40, 3000, account_id=f.euro.id)

    totals = f.stats.accounts_and_categories_totals(MAY_START, JUNE_START)

    assert totals == [
        CategoryAccountTotal(f.wallet.id, f.lunch, TransactionType.expense, 250),
        CategoryAccountTotal(f.wallet.id, f.rent, TransactionType.expense, 900),
        CategoryAccountTotal(f.euro.id, f.wage, TransactionType.income, 3000),
    ]


def test_monthly_totals_include_empty_months() -> None:
    f = Fixture()
    f.add(TransactionType.expense, f.lunch, APRIL_START + 60, 100)
    f.add(TransactionType.expense, f.lunch, MAY_START + 60, 200)
    f.add(TransactionType.income, f.wage, MAY_START + 120, 1000)

    monthly = f.stats.monthly_income_and_expense(2024, 3, 2024, 5)

    assert list(monthly) == [202403, 202404, 202405]
    assert monthly[202403] == []
    assert monthly[202404] == [
        CategoryAccountTotal(f.wallet.id, f.lunch, TransactionType.expense, 100)
    ]
    assert sorted(total.amount for total in monthly[202405]) == [200, 1000]

    with pytest.raises(InvalidRequest):
        f.stats.monthly_income_and_expense(2024, 6, 2024, 5)


def test_monthly_totals_follow_client_offset() -> None:
    f = Fixture()
    # 30 April 20:00 UTC is already May at +08:00
    f.add(TransactionType.expense, f.lunch, MAY_START - 4 * 3600, 100)

    utc = f.stats.monthly_income_and_expense(2024, 4, 2024, 5)
    shanghai = f.stats.monthly_income_and_expense(2024, 4, 2024, 5, utc_offset=480)

    assert [t.amount for t in utc[202404]] == [100]
    assert utc[202405] == []
    assert shanghai[202404] == []
    assert [t.amount for t in shanghai[202405]] == [100]


def test_amounts_are_grouped_by_currency() -> None:
    f = Fixture()
    f.add(TransactionType.expense, f.lunch, MAY_START + 60, 100)
    f.add(TransactionType.income, f.wage, MAY_START + 120, 2000)
    f.add(TransactionType.income, f.wage, MAY_START + 180, 3000, account_id=f.euro.id)
    f.add(TransactionType.expense, f.lunch, APRIL_START + 60, 40)

    query = encode_amounts_query(
        [
            AmountsQueryItem("thisMonth", MAY_START, JUNE_START),
            AmountsQueryItem("lastMonth", APRIL_START, MAY_START),
        ]
    )
    results = f.stats.amounts(query)

    assert list(results) == ["thisMonth", "lastMonth"]
    assert results["thisMonth"].amounts == [
        CurrencyAmount("EUR", income_amount=3000),
        CurrencyAmount("USD", income_amount=2000, expense_amount=100),
    ]
    assert results["lastMonth"].amounts == [CurrencyAmount("USD", expense_amount=40)]
    assert results["lastMonth"].start_time == APRIL_START


def test_amounts_query_limits() -> None:
    f = Fixture()
    too_many = "|".join(f"item{i}_{MAY_START}_{JUNE_START}" for i in range(21))

    with pytest.raises(TooManyQueryItems):
        f.stats.amounts(too_many)
    with pytest.raises(EmptyQueryItems):
        f.stats.amounts("")
    with pytest.raises(InvalidRequest):
        f.stats.amounts("thisMonth_abc_1")

    twenty = "|".join(f"item{i}_{MAY_START}_{JUNE_START}" for i in range(20))
    assert len(f.stats.amounts(twenty)) == 20
