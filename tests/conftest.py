from datetime import datetime

import pytest
from sqlmodel import Session as DbSession, select

from backend.ledger import BookingLedger
from backend.models import (
    BOOKED, OPEN_STATUSES, AVAILABLE, Booking, ParkingSpace, Slot, Vehicle,
    create_db_and_tables, make_engine,
)

PARKING = "parking-t"
CAR_SLOT = "parking-t-slot-1"
CAR_SLOT_2 = "parking-t-slot-2"
BIKE_SLOT = "parking-t-slot-3"

TEN = datetime(2030, 1, 1, 10, 0)
NOON = datetime(2030, 1, 1, 12, 0)


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def empty_ledger(engine):
    return BookingLedger(engine)


@pytest.fixture
def ledger(empty_ledger):
    empty_ledger.add_parking_space(
        "owner-1", "Test Lot", car_slots=2, bike_slots=1,
        car_price=10, bike_price=4, parking_id=PARKING,
    )
    with DbSession(empty_ledger.engine) as db:
        db.add(Vehicle(id="car-1", user_id="u1", type="car", number="NY-1234"))
        db.add(Vehicle(id="bike-1", user_id="u1", type="bike", number="NY-5678"))
        db.add(Vehicle(id="car-2", user_id="u2", type="car", number="NJ-0001"))
        db.commit()
    return empty_ledger


def load(engine, model, key):
    with DbSession(engine) as db:
        return db.get(model, key)


def available_count(engine, parking_id=PARKING):
    return load(engine, ParkingSpace, parking_id).available_slots


def assert_consistent(engine):
    with DbSession(engine) as db:
        for space in db.exec(select(ParkingSpace)).all():
            slots = db.exec(select(Slot).where(Slot.parking_id == space.id)).all()
            assert space.total_slots == len(slots)
            assert space.available_slots == len([s for s in slots if s.status == AVAILABLE])
            for slot in slots:
                holders = [
                    b for b in db.exec(select(Booking).where(Booking.slot_id == slot.id)).all()
                    if b.status in OPEN_STATUSES
                ]
                if slot.status == BOOKED:
                    assert len(holders) == 1
                    assert slot.current_booking_id == holders[0].id
                else:
                    assert holders == []
                    assert slot.current_booking_id is None
