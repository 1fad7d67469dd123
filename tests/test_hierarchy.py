from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import AccountCategory, AccountType, CategoryType, User
from schemas import AccountIn, CategoryIn
from services import AccountService, CategoryService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_user(session, username: str = "alice") -> User:
    user = User(
        username=username,
        email=f"{username}@example.com",
        nickname=username.title(),
        password_hash="x",
        default_currency="USD",
    )
    session.add(user)
    session.commit()
    return user


def container_in(name: str = "Bank") -> AccountIn:
    return AccountIn(
        name=name,
        category=AccountCategory.checking,
        type=AccountType.multi_sub_accounts,
        currency="---",
        sub_accounts=[
            AccountIn(name="Main", category=AccountCategory.checking, currency="USD"),
            AccountIn(name="Savings", category=AccountCategory.checking, currency="EUR"),
        ],
    )


def test_container_resolves_to_sub_accounts_only() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)

    tree = accounts.create(container_in())

    resolved = accounts.resolve_account_group(tree.account.id)
    assert sorted(resolved) == sorted(sub.id for sub in tree.sub_accounts)
    assert tree.account.id not in resolved


def test_leaf_and_sub_account_resolve_to_themselves() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)

    leaf = accounts.create(
        AccountIn(name="Wallet", category=AccountCategory.cash, currency="USD")
    ).account
    tree = accounts.create(container_in())

    assert accounts.resolve_account_group(leaf.id) == [leaf.id]
    sub = tree.sub_accounts[0]
    assert accounts.resolve_account_group(sub.id) == [sub.id]


def test_no_filter_and_unknown_account_both_resolve_empty() -> None:
    session = make_session()
    user = make_user(session)
    other = make_user(session, "bob")
    accounts = AccountService(session, user.id)
    foreign = AccountService(session, other.id).create(
        AccountIn(name="Wallet", category=AccountCategory.cash, currency="USD")
    ).account

    assert accounts.resolve_account_group(None) == []
    assert accounts.resolve_account_group(0) == []
    assert accounts.resolve_account_group(9999) == []
    assert accounts.resolve_account_group(foreign.id) == []


def test_container_without_live_sub_accounts_resolves_to_itself() -> None:
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    tree = accounts.create(container_in())

    for sub in tree.sub_accounts:
        accounts.delete(sub.id)

    assert accounts.resolve_account_group(tree.account.id) == [tree.account.id]


def test_category_resolver_mirrors_account_resolver() -> None:
    session = make_session()
    user = make_user(session)
    categories = CategoryService(session, user.id)

    food = categories.create(CategoryIn(name="Food", type=CategoryType.expense))
    lunch = categories.create(
        CategoryIn(name="Lunch", type=CategoryType.expense, parent_id=food.id)
    )
    dinner = categories.create(
        CategoryIn(name="Dinner", type=CategoryType.expense, parent_id=food.id)
    )
    empty = categories.create(CategoryIn(name="Misc", type=CategoryType.expense))

    assert sorted(categories.resolve_category_group(food.id)) == sorted(
        [lunch.id, dinner.id]
    )
    assert categories.resolve_category_group(lunch.id) == [lunch.id]
    assert categories.resolve_category_group(empty.id) == [empty.id]
    assert categories.resolve_category_group(None) == []
    assert categories.resolve_category_group(4242) == []
