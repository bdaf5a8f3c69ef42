from datetime import date

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base
from models import Account, Transaction, User
from periods import day_start_ms
from services import Failed, ReconcileService, Saved, SkipReason, Skipped

NOON_MS = 12 * 60 * 60 * 1000


def _seed_user(session: Session, email: str = "kari@example.no", key: str = "acc-1"):
    user = User(email=email)
    session.add(user)
    session.flush()
    session.add(Account(user_id=user.id, key=key, name="Brukskonto"))
    session.commit()
    return user


def _record(amount, day: date, description, account_key: str = "acc-1", **extra):
    data = {
        "amount": amount,
        "date": day_start_ms(day) + NOON_MS,
        "description": description,
        "accountKey": account_key,
    }
    data.update(extra)
    return data


def _count(session: Session, user_id: int) -> int:
    return session.execute(
        select(func.count(Transaction.id)).where(Transaction.user_id == user_id)
    ).scalar_one()


def test_known_natural_key_is_skipped_as_duplicate() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _seed_user(session)
        record = _record(-250.0, date(2024, 3, 5), "REMA 1000 TRONDHEIM")

        first = ReconcileService(session, user.id).reconcile([record])
        assert (first.saved, first.skipped, first.failed) == (1, 0, 0)
        assert isinstance(first.outcomes[0], Saved)

        second = ReconcileService(session, user.id).reconcile([record])
        assert (second.saved, second.skipped, second.failed) == (0, 1, 0)
        assert second.outcomes[0] == Skipped(index=0, reason=SkipReason.duplicate)
        assert _count(session, user.id) == 1


def test_duplicate_within_one_batch_sees_earlier_insert() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _seed_user(session)
        record = _record(-99.9, date(2024, 3, 6), "Kiwi Lade")

        result = ReconcileService(session, user.id).reconcile([record, dict(record)])
        assert result.saved == 1
        assert result.skipped == 1
        assert isinstance(result.outcomes[0], Saved)
        assert result.outcomes[1].reason == SkipReason.duplicate
        assert _count(session, user.id) == 1


def test_same_amount_and_date_with_other_description_is_saved() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _seed_user(session)
        day = date(2024, 3, 7)
        result = ReconcileService(session, user.id).reconcile(
            [_record(-50, day, "Coffee"), _record(-50, day, "Tea")]
        )
        assert result.saved == 2
        assert _count(session, user.id) == 2


def test_missing_descriptions_match_each_other() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _seed_user(session)
        day = date(2024, 3, 8)
        result = ReconcileService(session, user.id).reconcile(
            [_record(-10, day, None), _record(-10, day, None)]
        )
        assert (result.saved, result.skipped) == (1, 1)


def test_unknown_account_key_is_skipped_without_insert() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _seed_user(session)
        result = ReconcileService(session, user.id).reconcile(
            [_record(-10, date(2024, 3, 9), "Orphan", account_key="closed-account")]
        )
        assert result.outcomes == [Skipped(index=0, reason=SkipReason.unknown_account)]
        assert _count(session, user.id) == 0


def test_account_of_another_user_is_not_resolved() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed_user(session, email="owner@example.no", key="acc-owner")
        other = _seed_user(session, email="other@example.no", key="acc-other")
        result = ReconcileService(session, other.id).reconcile(
            [_record(-10, date(2024, 3, 9), "Lunch", account_key="acc-owner")]
        )
        assert result.outcomes[0].reason == SkipReason.unknown_account


def test_malformed_record_fails_and_batch_continues() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _seed_user(session)
        broken = {"description": "No amount", "accountKey": "acc-1"}
        good = _record(-75.5, date(2024, 3, 10), "Narvesen")

        result = ReconcileService(session, user.id).reconcile([broken, good])
        assert (result.saved, result.skipped, result.failed) == (1, 0, 1)
        assert isinstance(result.outcomes[0], Failed)
        assert "amount" in result.outcomes[0].error
        assert isinstance(result.outcomes[1], Saved)


def test_out_of_range_amount_fails_and_batch_continues() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _seed_user(session)
        huge = _record("1e30", date(2024, 3, 10), "Overflow")
        good = _record(-75.5, date(2024, 3, 10), "Narvesen")

        result = ReconcileService(session, user.id).reconcile([huge, good])
        assert (result.saved, result.skipped, result.failed) == (1, 0, 1)
        assert isinstance(result.outcomes[0], Failed)
        assert isinstance(result.outcomes[1], Saved)
        assert _count(session, user.id) == 1


def test_database_error_fails_one_record_and_rolls_back(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _seed_user(session)
        real_commit = session.commit
        calls = []

        def flaky_commit():
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            real_commit()

        monkeypatch.setattr(session, "commit", flaky_commit)
        first = _record(-120.0, date(2024, 3, 11), "Kiwi")
        second = _record(-75.5, date(2024, 3, 11), "Narvesen")

        result = ReconcileService(session, user.id).reconcile([first, second])
        assert (result.saved, result.skipped, result.failed) == (1, 0, 1)
        assert isinstance(result.outcomes[0], Failed)
        assert "database is locked" in result.outcomes[0].error
        assert isinstance(result.outcomes[1], Saved)
        descriptions = session.scalars(select(Transaction.description)).all()
        assert descriptions == ["Narvesen"]


def test_natural_key_is_scoped_per_user() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        kari = _seed_user(session, email="kari@example.no", key="acc-kari")
        ola = _seed_user(session, email="ola@example.no", key="acc-ola")
        day = date(2024, 3, 11)

        ReconcileService(session, kari.id).reconcile(
            [_record(-300, day, "Vinmonopolet", account_key="acc-kari")]
        )
        result = ReconcileService(session, ola.id).reconcile(
            [_record(-300, day, "Vinmonopolet", account_key="acc-ola")]
        )
        assert result.saved == 1


def test_saved_row_keeps_provider_fields() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _seed_user(session)
        record = _record(
            -129.0,
            date(2024, 3, 12),
            "Spotify",
            id="bank-123",
            currencyCode="NOK",
            bookingStatus="BOOKED",
            source="RECENT",
            merchant={"name": "Spotify AB"},
        )
        result = ReconcileService(session, user.id).reconcile([record])

        txn = session.get(Transaction, result.outcomes[0].transaction_id)
        assert txn.sparebank1_id == "bank-123"
        assert txn.currency_code == "NOK"
        assert txn.booking_status == "BOOKED"
        assert txn.source == "RECENT"
        assert txn.merchant == {"name": "Spotify AB"}
        assert txn.account.key == "acc-1"
        assert txn.date == record["date"]
