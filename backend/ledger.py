import logging
import math
import secrets
import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlmodel import Session as DbSession, col, select

from .errors import (
    AlreadyTerminal, InvalidTimeRange, InvalidVehicle, NotFound, SlotOccupied, SlotUnavailable,
)
from .models import (
    ACTIVE, BOOKED, CANCELLED, COMPLETED, OPEN_STATUSES, UPCOMING, VEHICLE_TYPES,
    Booking, ParkingSpace, Slot, Vehicle,
)
from .registry import SlotRegistry

logger = logging.getLogger("BookingLedger")

HOUR = timedelta(hours=1)
SLOT_EVENTS = {"open": "slot_opened", "close": "slot_closed"}
EDITABLE_PARKING_FIELDS = {
    "name", "address", "description", "category", "latitude", "longitude", "price_per_hour", "is_open",
}


def _naive(dt: datetime) -> datetime:
    # Stored times are naive local time; convert aware input once at the edge.
    if dt.tzinfo is not None:
        return dt.astimezone().replace(tzinfo=None)
    return dt


class BookingLedger:
    """Owns the booking lifecycle and keeps slot state in step with it.

    All writes for one parking space go through that space's lock, so the
    check-then-reserve in ``create`` and the release in ``cancel``/``complete``
    never interleave. The registry's conditional update covers the case of
    several processes sharing one database.
    """

    def __init__(self, engine, registry: Optional[SlotRegistry] = None):
        self.engine = engine
        self.registry = registry or SlotRegistry()
        self._locks = {}
        self._locks_guard = threading.Lock()
        self._listeners: List[Callable[[str, dict], None]] = []

    # --- plumbing ---

    def subscribe(self, callback: Callable[[str, dict], None]):
        self._listeners.append(callback)

    def unsubscribe(self, callback: Callable[[str, dict], None]):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _emit(self, event_type: str, data: dict):
        for callback in self._listeners:
            try:
                callback(event_type, data)
            except Exception as e:
                logger.error(f"Listener failed on {event_type}: {e}")

    def _lock_for(self, parking_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(parking_id)
            if lock is None:
                lock = self._locks[parking_id] = threading.Lock()
            return lock

    def _existing_lock(self, parking_id: str) -> threading.Lock:
        # Unknown ids never get a lock entry.
        with DbSession(self.engine) as db:
            if not db.get(ParkingSpace, parking_id):
                raise NotFound(f"Parking {parking_id} not found")
        return self._lock_for(parking_id)

    def _parking_of_booking(self, booking_id: str) -> str:
        with DbSession(self.engine) as db:
            booking = db.get(Booking, booking_id)
            if not booking:
                raise NotFound(f"Booking {booking_id} not found")
            return booking.parking_id

    def _parking_of_slot(self, slot_id: str) -> str:
        with DbSession(self.engine) as db:
            return self.registry.get(db, slot_id).parking_id

    # --- bookings ---

    def create(
        self,
        user_id: str,
        parking_id: str,
        slot_id: str,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        payment_method: str,
    ) -> str:
        start, end = _naive(start), _naive(end)
        if start >= end:
            raise InvalidTimeRange(f"Start {start.isoformat()} is not before end {end.isoformat()}")

        with self._existing_lock(parking_id):
            with DbSession(self.engine) as db:
                space = db.get(ParkingSpace, parking_id)
                if not space:
                    raise NotFound(f"Parking {parking_id} not found")
                if not space.is_open:
                    raise SlotUnavailable(f"Parking {parking_id} is closed for bookings")
                slot = self.registry.get(db, slot_id)
                if slot.parking_id != parking_id:
                    raise NotFound(f"Slot {slot_id} is not part of parking {parking_id}")
                vehicle = db.get(Vehicle, vehicle_id)
                if not vehicle:
                    raise NotFound(f"Vehicle {vehicle_id} not found")
                if vehicle.user_id != user_id:
                    raise InvalidVehicle(f"Vehicle {vehicle_id} does not belong to {user_id}")
                if vehicle.type != slot.vehicle_type:
                    raise InvalidVehicle(
                        f"Slot {slot_id} takes {slot.vehicle_type}, vehicle {vehicle_id} is a {vehicle.type}"
                    )

                booking_id = f"booking-{secrets.token_hex(8)}"
                duration = math.ceil((end - start) / HOUR)
                # Raises SlotUnavailable before anything is written.
                self.registry.reserve(db, slot_id, booking_id, end)
                booking = Booking(
                    id=booking_id,
                    user_id=user_id,
                    parking_id=parking_id,
                    slot_id=slot_id,
                    vehicle_id=vehicle_id,
                    vehicle_number=vehicle.number,
                    vehicle_type=vehicle.type,
                    start_time=start,
                    end_time=end,
                    duration=duration,
                    total_price=duration * slot.price_per_hour,
                    payment_method=payment_method,
                    status=UPCOMING,
                )
                db.add(booking)
                db.commit()
                data = {"booking": booking_id, "parking": parking_id, "slot": slot_id}

        logger.info(f"Booking {booking_id} created on slot {slot_id} ({duration}h)")
        self._emit("booking_created", data)
        return booking_id

    def cancel(self, booking_id: str) -> None:
        self._finish(booking_id, CANCELLED)

    def complete(self, booking_id: str) -> None:
        self._finish(booking_id, COMPLETED)

    def _finish(self, booking_id: str, status: str):
        parking_id = self._parking_of_booking(booking_id)
        with self._lock_for(parking_id):
            with DbSession(self.engine) as db:
                booking = db.get(Booking, booking_id)
                if booking.status not in OPEN_STATUSES:
                    raise AlreadyTerminal(f"Booking {booking_id} is already {booking.status}")
                booking.status = status
                db.add(booking)
                slot_id = booking.slot_id
                released = self.registry.release(db, slot_id, booking_id)
                db.commit()
                data = {"booking": booking_id, "parking": parking_id, "slot": slot_id}

        logger.info(f"Booking {booking_id} {status}; slot released={released}")
        self._emit(f"booking_{status}", data)

    def activate(self, booking_id: str) -> None:
        """Check-in: upcoming -> active. Calling it on an active booking is a no-op."""
        parking_id = self._parking_of_booking(booking_id)
        with self._lock_for(parking_id):
            with DbSession(self.engine) as db:
                booking = db.get(Booking, booking_id)
                if booking.status not in OPEN_STATUSES:
                    raise AlreadyTerminal(f"Booking {booking_id} is already {booking.status}")
                if booking.status == ACTIVE:
                    return
                booking.status = ACTIVE
                db.add(booking)
                db.commit()

        logger.info(f"Booking {booking_id} active")
        self._emit("booking_activated", {"booking": booking_id, "parking": parking_id})

    def due_booking_ids(self, now: datetime) -> List[str]:
        with DbSession(self.engine) as db:
            return list(db.exec(
                select(Booking.id)
                .where(col(Booking.status).in_(OPEN_STATUSES), Booking.end_time <= now)
                .order_by(Booking.end_time)
            ).all())

    # --- slots ---

    def open_slot(self, slot_id: str) -> None:
        self._toggle_slot(slot_id, "open")

    def close_slot(self, slot_id: str) -> None:
        self._toggle_slot(slot_id, "close")

    def _toggle_slot(self, slot_id: str, action: str):
        parking_id = self._parking_of_slot(slot_id)
        with self._lock_for(parking_id):
            with DbSession(self.engine) as db:
                getattr(self.registry, action)(db, slot_id)
                db.commit()

        logger.info(f"Slot {slot_id} {action}")
        self._emit(SLOT_EVENTS[action], {"slot": slot_id, "parking": parking_id})

    def add_slot(self, parking_id: str, vehicle_type: str, price_per_hour: Optional[float] = None) -> str:
        if vehicle_type not in VEHICLE_TYPES:
            raise InvalidVehicle(f"Unknown vehicle type {vehicle_type}")
        with self._existing_lock(parking_id):
            with DbSession(self.engine) as db:
                space = db.get(ParkingSpace, parking_id)
                if not space:
                    raise NotFound(f"Parking {parking_id} not found")
                price = space.price_per_hour if price_per_hour is None else price_per_hour
                slot_id = self.registry.add(db, parking_id, vehicle_type, price).id
                db.commit()
        logger.info(f"Slot {slot_id} added to {parking_id}")
        return slot_id

    def remove_slot(self, parking_id: str, slot_id: str) -> None:
        with self._existing_lock(parking_id):
            with DbSession(self.engine) as db:
                if self.registry.get(db, slot_id).parking_id != parking_id:
                    raise NotFound(f"Slot {slot_id} is not part of parking {parking_id}")
                self.registry.remove(db, slot_id)
                db.commit()
        logger.info(f"Slot {slot_id} removed from {parking_id}")

    # --- parking spaces ---

    def add_parking_space(
        self,
        owner_id: str,
        name: str,
        car_slots: int = 0,
        bike_slots: int = 0,
        car_price: float = 0.0,
        bike_price: float = 0.0,
        parking_id: Optional[str] = None,
        **details,
    ) -> str:
        parking_id = parking_id or f"parking-{secrets.token_hex(4)}"
        with self._lock_for(parking_id):
            with DbSession(self.engine) as db:
                db.add(ParkingSpace(id=parking_id, owner_id=owner_id, name=name, price_per_hour=car_price or bike_price, **details))
                db.flush()
                for _ in range(car_slots):
                    self.registry.add(db, parking_id, "car", car_price)
                for _ in range(bike_slots):
                    self.registry.add(db, parking_id, "bike", bike_price)
                db.commit()
        logger.info(f"Parking {parking_id} added with {car_slots} car / {bike_slots} bike slots")
        return parking_id

    def update_parking_space(self, parking_id: str, **changes) -> None:
        """Edit details or toggle ``is_open``. Slot prices and counts are left alone."""
        unknown = set(changes) - EDITABLE_PARKING_FIELDS
        if unknown:
            raise ValueError(f"Cannot update {', '.join(sorted(unknown))}")
        with self._existing_lock(parking_id):
            with DbSession(self.engine) as db:
                space = db.get(ParkingSpace, parking_id)
                for field, value in changes.items():
                    setattr(space, field, value)
                db.add(space)
                db.commit()
        logger.info(f"Parking {parking_id} updated: {', '.join(sorted(changes))}")
        self._emit("parking_updated", {"parking": parking_id})

    def delete_parking_space(self, parking_id: str) -> None:
        with self._existing_lock(parking_id):
            with DbSession(self.engine) as db:
                space = db.get(ParkingSpace, parking_id)
                if not space:
                    raise NotFound(f"Parking {parking_id} not found")
                slots = db.exec(select(Slot).where(Slot.parking_id == parking_id)).all()
                booked = [s.id for s in slots if s.status == BOOKED]
                if booked:
                    raise SlotOccupied(f"Parking {parking_id} has booked slots: {', '.join(booked)}")
                for slot in slots:
                    db.delete(slot)
                db.delete(space)
                db.commit()
        with self._locks_guard:
            self._locks.pop(parking_id, None)
        logger.info(f"Parking {parking_id} deleted")

    def add_vehicle(self, user_id: str, vehicle_type: str, number: str, model: Optional[str] = None) -> str:
        if vehicle_type not in VEHICLE_TYPES:
            raise InvalidVehicle(f"Unknown vehicle type {vehicle_type}")
        vehicle_id = f"vehicle-{secrets.token_hex(4)}"
        with DbSession(self.engine) as db:
            db.add(Vehicle(id=vehicle_id, user_id=user_id, type=vehicle_type, number=number, model=model))
            db.commit()
        return vehicle_id
