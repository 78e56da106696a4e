"""Entity store contract, run against both the memory and the SQL store."""
from datetime import datetime, timedelta, timezone

import pytest

from db import make_engine
from matching import Conflict, NotFound, SqlStore, StoreUnavailable
from models import Condition, Donation, DonationStatus, Match, Request, Urgency

START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def new_donation(offset=0, **fields):
    values = dict(
        donor_org_id="donor-1",
        category="food",
        quantity="3 bags",
        condition=Condition.GOOD,
        description="rice",
        created_at=START + timedelta(seconds=offset),
        updated_at=START + timedelta(seconds=offset),
    )
    values.update(fields)
    return Donation(**values)


def test_create_then_get_returns_a_copy(store):
    donation_id = store.create(Donation, new_donation())

    fetched = store.get(Donation, donation_id)
    fetched.status = DonationStatus.CANCELLED

    again = store.get(Donation, donation_id)
    assert again.status == DonationStatus.OPEN
    assert again.version == 1
    assert again.category == "food"


def test_timestamps_come_back_in_utc(store):
    donation_id = store.create(Donation, new_donation())

    fetched = store.get(Donation, donation_id)

    assert fetched.created_at == START
    assert fetched.created_at.tzinfo is not None
    assert fetched.updated_at.utcoffset() == timedelta(0)


def test_get_unknown_id_raises_not_found(store):
    with pytest.raises(NotFound):
        store.get(Match, "missing")


def test_create_duplicate_id_conflicts(store):
    donation = new_donation()
    store.create(Donation, donation)
    with pytest.raises(Conflict):
        store.create(Donation, donation)


def test_compare_and_update_bumps_version(store):
    donation_id = store.create(Donation, new_donation())

    def take(record):
        record.status = DonationStatus.MATCHED
        record.match_id = "m-1"

    assert store.compare_and_update(Donation, donation_id, 1, take) == 2

    stored = store.get(Donation, donation_id)
    assert stored.version == 2
    assert stored.status == DonationStatus.MATCHED
    assert stored.match_id == "m-1"


def test_compare_and_update_with_stale_version_conflicts(store):
    donation_id = store.create(Donation, new_donation())
    store.compare_and_update(Donation, donation_id, 1, lambda r: setattr(r, "quantity", "4 bags"))

    with pytest.raises(Conflict):
        store.compare_and_update(
            Donation, donation_id, 1, lambda r: setattr(r, "status", DonationStatus.CANCELLED)
        )

    stored = store.get(Donation, donation_id)
    assert stored.status == DonationStatus.OPEN
    assert stored.quantity == "4 bags"
    assert stored.version == 2


def test_compare_and_update_unknown_id(store):
    with pytest.raises(NotFound):
        store.compare_and_update(Donation, "missing", 1, lambda r: None)


def test_mutator_cannot_change_identity(store):
    donation_id = store.create(Donation, new_donation())

    def tamper(record):
        record.id = "other"
        record.version = 99

    assert store.compare_and_update(Donation, donation_id, 1, tamper) == 2
    assert store.get(Donation, donation_id).version == 2
    with pytest.raises(NotFound):
        store.get(Donation, "other")


def test_query_filters_and_keeps_creation_order(store):
    first = store.create(Donation, new_donation(0, category="food"))
    store.create(Donation, new_donation(1, category="books"))
    third = store.create(Donation, new_donation(2, category="food"))

    food = store.query(Donation, category="food")
    assert [d.id for d in food] == [first, third]

    newest_food = store.query(Donation, lambda d: d.created_at > START, category="food")
    assert [d.id for d in newest_food] == [third]


def test_query_by_boolean_field(store):
    kept = store.create(
        Request,
        Request(requesting_org_id="ngo-a", category="food", quantity="1", urgency=Urgency.LOW),
    )
    store.create(
        Request,
        Request(
            requesting_org_id="ngo-a",
            category="food",
            quantity="1",
            urgency=Urgency.LOW,
            fulfilled=True,
        ),
    )
    assert [r.id for r in store.query(Request, fulfilled=False)] == [kept]


def test_unsupported_kind_rejected(store):
    with pytest.raises(TypeError):
        store.query(dict)


def test_sql_store_surfaces_database_errors(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'missing' / 'nowhere.db'}")
    store = SqlStore(engine)
    with pytest.raises(StoreUnavailable):
        store.get(Donation, "anything")
