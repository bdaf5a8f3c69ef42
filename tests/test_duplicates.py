from datetime import datetime
from decimal import Decimal

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import Account, Transaction, User
from services import DuplicateService

DAY_MS = 1709636400000


def _seed_user(session: Session, email: str = "kari@example.no", key: str = "acc-1"):
    user = User(email=email)
    session.add(user)
    session.flush()
    account = Account(user_id=user.id, key=key, name="Brukskonto")
    session.add(account)
    session.commit()
    return user, account


def _txn(user, account, created_at, amount="-250.00", description="REMA 1000", day=DAY_MS):
    return Transaction(
        user_id=user.id,
        account_id=account.id,
        amount=Decimal(amount),
        date=day,
        description=description,
        created_at=created_at,
    )


def test_collapse_keeps_earliest_created_row() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account = _seed_user(session)
        # inserted out of order so the survivor is not the lowest id
        t2 = _txn(user, account, datetime(2024, 3, 5, 10, 0, 0, 2000))
        t3 = _txn(user, account, datetime(2024, 3, 5, 10, 0, 0, 3000))
        t1 = _txn(user, account, datetime(2024, 3, 5, 10, 0, 0, 1000))
        session.add_all([t2, t3])
        session.flush()
        session.add(t1)
        session.commit()

        result = DuplicateService(session, user.id).collapse()
        assert result.duplicates_found == 3
        assert result.duplicates_removed == 2
        assert len(result.groups) == 1
        assert result.groups[0].kept == t1.id
        assert sorted(result.groups[0].removed) == sorted([t2.id, t3.id])

        remaining = session.scalars(select(Transaction.id)).all()
        assert remaining == [t1.id]


def test_collapse_is_idempotent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account = _seed_user(session)
        session.add_all(
            [
                _txn(user, account, datetime(2024, 3, 5, 10, 0)),
                _txn(user, account, datetime(2024, 3, 5, 11, 0)),
            ]
        )
        session.commit()

        service = DuplicateService(session, user.id)
        assert service.collapse().duplicates_removed == 1
        again = service.collapse()
        assert again.duplicates_found == 0
        assert again.duplicates_removed == 0
        assert again.as_dict()["duplicateGroups"] == []


def test_collapse_groups_missing_descriptions_together() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account = _seed_user(session)
        first = _txn(user, account, datetime(2024, 3, 5, 9, 0), description=None)
        session.add_all(
            [first, _txn(user, account, datetime(2024, 3, 5, 9, 30), description=None)]
        )
        session.commit()

        result = DuplicateService(session, user.id).collapse()
        assert result.duplicates_removed == 1
        assert result.groups[0].kept == first.id
        assert result.groups[0].description is None


def test_collapse_ties_on_created_at_keep_lowest_id() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account = _seed_user(session)
        same_moment = datetime(2024, 3, 5, 12, 0)
        a = _txn(user, account, same_moment)
        b = _txn(user, account, same_moment)
        session.add(a)
        session.flush()
        session.add(b)
        session.commit()

        result = DuplicateService(session, user.id).collapse()
        assert result.groups[0].kept == a.id


def test_collapse_leaves_distinct_keys_and_other_users_alone() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        kari, kari_account = _seed_user(session)
        ola, ola_account = _seed_user(session, email="ola@example.no", key="acc-2")
        session.add_all(
            [
                _txn(kari, kari_account, datetime(2024, 3, 5, 9, 0)),
                _txn(kari, kari_account, datetime(2024, 3, 5, 9, 1), amount="-251.00"),
                _txn(kari, kari_account, datetime(2024, 3, 5, 9, 2), day=DAY_MS + 1),
                _txn(ola, ola_account, datetime(2024, 3, 5, 9, 3)),
            ]
        )
        session.commit()

        result = DuplicateService(session, kari.id).collapse()
        assert result.duplicates_found == 0
        total = session.scalars(select(Transaction.id)).all()
        assert len(total) == 4


def test_collapse_report_shape() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user, account = _seed_user(session)
        session.add_all(
            [
                _txn(user, account, datetime(2024, 3, 5, 9, 0)),
                _txn(user, account, datetime(2024, 3, 5, 9, 1)),
            ]
        )
        session.commit()

        report = DuplicateService(session, user.id).collapse().as_dict()
        assert report["duplicatesFound"] == 2
        assert report["duplicatesRemoved"] == 1
        group = report["duplicateGroups"][0]
        assert group["amount"] == -250.0
        assert group["date"] == DAY_MS
        assert group["description"] == "REMA 1000"
        assert group["count"] == 2
