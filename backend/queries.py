from collections import Counter
from typing import List, Optional

from geopy.distance import geodesic
from sqlmodel import Session as DbSession, col, select

from .errors import NotFound
from .models import CANCELLED, OPEN_STATUSES, TERMINAL_STATUSES, Booking, ParkingSpace, Slot, Vehicle


def list_parkings(
    db: DbSession,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    vehicle_type: Optional[str] = None,
) -> List[dict]:
    """Parking spaces open for bookings, nearest first when a location is given.

    With ``vehicle_type`` only spaces that have at least one slot for it are listed.
    """
    query = select(ParkingSpace).where(ParkingSpace.is_open == True)  # noqa: E712
    if vehicle_type:
        query = query.where(col(ParkingSpace.id).in_(
            select(Slot.parking_id).where(Slot.vehicle_type == vehicle_type)
        ))
    spaces = db.exec(query.order_by(ParkingSpace.name)).all()
    rows = [space.model_dump() for space in spaces]
    if lat is None or lng is None:
        return rows
    for row in rows:
        row["distance_km"] = round(geodesic((lat, lng), (row["latitude"], row["longitude"])).km, 2)
    rows.sort(key=lambda r: r["distance_km"])
    return rows


def get_parking(db: DbSession, parking_id: str) -> dict:
    space = db.get(ParkingSpace, parking_id)
    if not space:
        raise NotFound(f"Parking {parking_id} not found")
    slots = db.exec(
        select(Slot).where(Slot.parking_id == parking_id).order_by(Slot.slot_number)
    ).all()
    return {**space.model_dump(), "slots": [s.model_dump() for s in slots]}


def parkings_for_owner(db: DbSession, owner_id: str) -> List[ParkingSpace]:
    return db.exec(select(ParkingSpace).where(ParkingSpace.owner_id == owner_id)).all()


def get_booking(db: DbSession, booking_id: str) -> Booking:
    booking = db.get(Booking, booking_id)
    if not booking:
        raise NotFound(f"Booking {booking_id} not found")
    return booking


def bookings_for_user(db: DbSession, user_id: str, scope: Optional[str] = None) -> List[Booking]:
    query = select(Booking).where(Booking.user_id == user_id)
    if scope == "upcoming":
        query = query.where(col(Booking.status).in_(OPEN_STATUSES))
    elif scope == "past":
        query = query.where(col(Booking.status).in_(TERMINAL_STATUSES))
    return db.exec(query.order_by(col(Booking.start_time).desc())).all()


def vehicles_for_user(db: DbSession, user_id: str) -> List[Vehicle]:
    return db.exec(select(Vehicle).where(Vehicle.user_id == user_id).order_by(Vehicle.id)).all()


def owner_analytics(db: DbSession, owner_id: str) -> dict:
    spaces = parkings_for_owner(db, owner_id)
    parking_ids = [s.id for s in spaces]
    bookings = []
    if parking_ids:
        bookings = db.exec(select(Booking).where(col(Booking.parking_id).in_(parking_ids))).all()

    total_slots = sum(s.total_slots for s in spaces)
    available = sum(s.available_slots for s in spaces)
    occupancy = 0.0
    if total_slots:
        occupancy = round(100.0 * (total_slots - available) / total_slots, 1)

    by_type = Counter(b.vehicle_type for b in bookings)
    by_slot = Counter(b.slot_id for b in bookings)
    return {
        "total_bookings": len(bookings),
        "total_revenue": sum(b.total_price for b in bookings if b.status != CANCELLED),
        "average_occupancy": occupancy,
        "top_performing_slots": [
            {"slot_id": slot_id, "bookings": n} for slot_id, n in by_slot.most_common(5)
        ],
        "bookings_by_vehicle_type": [
            {"type": t, "count": by_type.get(t, 0)} for t in ("car", "bike")
        ],
    }
