from datetime import datetime

import pytest
from sqlmodel import Session as DbSession

from backend.errors import NotFound, SlotOccupied, SlotUnavailable
from backend.models import ParkingSpace, Slot
from backend.registry import SlotRegistry
from conftest import BIKE_SLOT, CAR_SLOT, CAR_SLOT_2, PARKING, assert_consistent, available_count, load

END = datetime(2030, 1, 1, 12)


def test_new_parking_space_slots(ledger):
    space = load(ledger.engine, ParkingSpace, PARKING)
    assert space.total_slots == 3
    assert space.available_slots == 3
    bike = load(ledger.engine, Slot, BIKE_SLOT)
    assert (bike.slot_number, bike.vehicle_type, bike.price_per_hour) == (3, "bike", 4)


def test_reserve_and_release_in_one_session(ledger):
    registry = SlotRegistry()
    with DbSession(ledger.engine) as db:
        slot = registry.reserve(db, CAR_SLOT, "booking-x", END)
        assert slot.status == "booked"
        with pytest.raises(SlotUnavailable):
            registry.reserve(db, CAR_SLOT, "booking-y", END)
        db.commit()
    assert available_count(ledger.engine) == 2

    with DbSession(ledger.engine) as db:
        assert registry.release(db, CAR_SLOT) is True
        assert registry.release(db, CAR_SLOT) is False
        db.commit()
    assert available_count(ledger.engine) == 3


def test_release_ignores_other_booking(ledger):
    registry = SlotRegistry()
    with DbSession(ledger.engine) as db:
        registry.reserve(db, CAR_SLOT, "booking-x", END)
        assert registry.release(db, CAR_SLOT, "booking-other") is False
        db.commit()
    assert load(ledger.engine, Slot, CAR_SLOT).current_booking_id == "booking-x"


def test_uncommitted_reserve_leaves_no_trace(ledger):
    registry = SlotRegistry()
    with DbSession(ledger.engine) as db:
        registry.reserve(db, CAR_SLOT, "booking-x", END)
    assert load(ledger.engine, Slot, CAR_SLOT).status == "available"
    assert available_count(ledger.engine) == 3


def test_close_and_open(ledger):
    ledger.close_slot(CAR_SLOT)
    ledger.close_slot(CAR_SLOT)
    assert load(ledger.engine, Slot, CAR_SLOT).status == "closed"
    assert available_count(ledger.engine) == 2

    with pytest.raises(SlotUnavailable):
        ledger.create("u1", PARKING, CAR_SLOT, "car-1", datetime(2030, 1, 1, 10), END, "cash")

    ledger.open_slot(CAR_SLOT)
    ledger.open_slot(CAR_SLOT)
    assert load(ledger.engine, Slot, CAR_SLOT).status == "available"
    assert available_count(ledger.engine) == 3
    assert_consistent(ledger.engine)


def test_close_booked_slot_is_refused(ledger):
    booking_id = ledger.create("u1", PARKING, CAR_SLOT, "car-1", datetime(2030, 1, 1, 10), END, "cash")
    with pytest.raises(SlotOccupied):
        ledger.close_slot(CAR_SLOT)
    with pytest.raises(SlotOccupied):
        ledger.open_slot(CAR_SLOT)
    slot = load(ledger.engine, Slot, CAR_SLOT)
    assert (slot.status, slot.current_booking_id) == ("booked", booking_id)


def test_unknown_slot(ledger):
    with pytest.raises(NotFound):
        ledger.close_slot("nope")


def test_add_and_remove_slots(ledger):
    slot_id = ledger.add_slot(PARKING, "car")
    assert slot_id == "parking-t-slot-4"
    assert load(ledger.engine, Slot, slot_id).price_per_hour == 10
    assert available_count(ledger.engine) == 4

    ledger.close_slot(CAR_SLOT_2)
    ledger.remove_slot(PARKING, CAR_SLOT_2)
    ledger.remove_slot(PARKING, slot_id)
    space = load(ledger.engine, ParkingSpace, PARKING)
    assert (space.total_slots, space.available_slots) == (2, 2)
    assert_consistent(ledger.engine)


def test_remove_booked_slot_is_refused(ledger):
    ledger.create("u1", PARKING, CAR_SLOT, "car-1", datetime(2030, 1, 1, 10), END, "cash")
    with pytest.raises(SlotOccupied):
        ledger.remove_slot(PARKING, CAR_SLOT)
    with pytest.raises(SlotOccupied):
        ledger.delete_parking_space(PARKING)
    assert load(ledger.engine, ParkingSpace, PARKING) is not None


def test_delete_parking_space(ledger):
    ledger.delete_parking_space(PARKING)
    assert load(ledger.engine, ParkingSpace, PARKING) is None
    assert load(ledger.engine, Slot, CAR_SLOT) is None
    with pytest.raises(NotFound):
        ledger.delete_parking_space(PARKING)
