from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from errors import InvalidRequest, NotFound, NothingToUpdate
from models import (
    AccountCategory,
    CategoryType,
    TransactionTagIndex,
    TransactionType,
    User,
)
from schemas import AccountIn, CategoryIn, TagIn, TransactionCreateIn
from services import (
    AccountService,
    CategoryService,
    TagIndexService,
    TagService,
    TransactionService,
)

NOW = datetime(2024, 5, 15, 12, 0, 0, tzinfo=timezone.utc)
T = int(NOW.timestamp()) - 600


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


def lunch_category(session, user_id: int) -> int:
    categories = CategoryService(session, user_id)
    food = categories.create(CategoryIn(name="Food", type=CategoryType.expense))
    return categories.create(
        CategoryIn(name="Lunch", type=CategoryType.expense, parent_id=food.id)
    ).id


def wallet(session, user_id: int, name: str = "Wallet") -> int:
    return (
        AccountService(session, user_id)
        .create(AccountIn(name=name, category=AccountCategory.cash, currency="USD"))
        .account.id
    )


def test_tags_are_attached_to_transactions() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine, expire_on_commit=False) as session:
        user = make_user(session)
        tags = TagService(session, user.id)
        work = tags.create(TagIn(name="Work"))
        trip = tags.create(TagIn(name="Trip"))
        ledger = TransactionService(session, user.id, clock=lambda: NOW)

        txn = ledger.create(
            TransactionCreateIn(
                type=TransactionType.expense,
                category_id=lunch_category(session, user.id),
                time=T,
                source_account_id=wallet(session, user.id),
                source_amount=900,
                tag_ids=[trip.id, work.id, trip.id],
            )
        )

        index = TagIndexService(session, user.id)
        assert index.get_all_tag_ids_of_transactions([txn.id]) == {
            txn.id: [work.id, trip.id]
        }
        assert index.get_all_tag_ids_of_transactions([]) == {}


def test_transfer_tags_live_on_the_out_row() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine, expire_on_commit=False) as session:
        user = make_user(session)
        tag = TagService(session, user.id).create(TagIn(name="Savings"))
        categories = CategoryService(session, user.id)
        moves = categories.create(CategoryIn(name="Moves", type=CategoryType.transfer))
        internal = categories.create(
            CategoryIn(name="Internal", type=CategoryType.transfer, parent_id=moves.id)
        )
        source = wallet(session, user.id, "Wallet")
        destination = wallet(session, user.id, "Jar")
        ledger = TransactionService(session, user.id, clock=lambda: NOW)

        out = ledger.create(
            TransactionCreateIn(
                type=TransactionType.transfer,
                category_id=internal.id,
                time=T,
                source_account_id=source,
                source_amount=100,
                destination_account_id=destination,
                destination_amount=100,
                tag_ids=[tag.id],
            )
        )

        rows = session.scalars(select(TransactionTagIndex)).all()
        assert [(row.transaction_id, row.tag_id) for row in rows] == [(out.id, tag.id)]
        # the in-row reports the tags of its out-row
        assert ledger.get(out.related_id).tag_ids == [tag.id]


def test_deleting_used_tag_clears_associations() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine, expire_on_commit=False) as session:
        user = make_user(session)
        tags = TagService(session, user.id)
        dining = tags.create(TagIn(name="Dining"))
        ledger = TransactionService(session, user.id, clock=lambda: NOW)
        txn = ledger.create(
            TransactionCreateIn(
                type=TransactionType.expense,
                category_id=lunch_category(session, user.id),
                time=T,
                source_account_id=wallet(session, user.id),
                source_amount=1299,
                comment="Lunch",
                tag_ids=[dining.id],
            )
        )

        tags.delete(dining.id)

        assert ledger.get(txn.id).tag_ids == []
        assert session.scalars(select(TransactionTagIndex)).all() == []
        with pytest.raises(NotFound):
            tags.get(dining.id)


def test_tag_names_are_unique_case_insensitive() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine, expire_on_commit=False) as session:
        user = make_user(session)
        tags = TagService(session, user.id)
        dining = tags.create(TagIn(name="Dining"))

        with pytest.raises(InvalidRequest):
            tags.create(TagIn(name=" dining "))
        with pytest.raises(NothingToUpdate):
            tags.modify(dining.id, TagIn(name="Dining"))

        tags.modify(dining.id, TagIn(name="Restaurants"))
        assert [tag.name for tag in tags.list_all()] == ["Restaurants"]


def test_tags_of_other_users_are_invisible() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine, expire_on_commit=False) as session:
        alice = make_user(session)
        bob = make_user(session, "bob")
        bobs_tag = TagService(session, bob.id).create(TagIn(name="Dining"))

        assert TagService(session, alice.id).list_all() == []
        with pytest.raises(NotFound):
            TagIndexService(session, alice.id).validate_tag_ids([bobs_tag.id])
        # the same name is free for another user
        TagService(session, alice.id).create(TagIn(name="Dining"))


def test_replace_tags_applies_a_delta() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine, expire_on_commit=False) as session:
        user = make_user(session)
        tags = TagService(session, user.id)
        first, second, third = (
            tags.create(TagIn(name=name)) for name in ("One", "Two", "Three")
        )
        ledger = TransactionService(session, user.id, clock=lambda: NOW)
        txn = ledger.create(
            TransactionCreateIn(
                type=TransactionType.expense,
                category_id=lunch_category(session, user.id),
                time=T,
                source_account_id=wallet(session, user.id),
                source_amount=50,
                tag_ids=[first.id, second.id],
            )
        )

        index = TagIndexService(session, user.id)
        index.replace_tags(txn.id, [third.id], [first.id])
        session.commit()

        assert index.get_all_tag_ids_of_transactions([txn.id]) == {
            txn.id: [second.id, third.id]
        }
