import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, update
from sqlmodel import Session as DbSession, select

from .errors import NotFound, SlotOccupied, SlotUnavailable
from .models import AVAILABLE, BOOKED, CLOSED, ParkingSpace, Slot

logger = logging.getLogger("SlotRegistry")


class SlotRegistry:
    """Per-slot status transitions.

    Every method works inside the caller's session and leaves the commit to
    the caller, so a slot change and the matching ``available_slots``
    adjustment always land in the same transaction.
    """

    def get(self, db: DbSession, slot_id: str) -> Slot:
        slot = db.get(Slot, slot_id)
        if not slot:
            raise NotFound(f"Slot {slot_id} not found")
        return slot

    def reserve(self, db: DbSession, slot_id: str, booking_id: str, end_time: datetime) -> Slot:
        slot = self.get(db, slot_id)
        # Compare-and-set on status: only one writer can move it off "available".
        result = db.exec(
            update(Slot)
            .where(Slot.id == slot_id, Slot.status == AVAILABLE)
            .values(status=BOOKED, current_booking_id=booking_id, booking_end_time=end_time)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise SlotUnavailable(f"Slot {slot_id} is {slot.status}")
        self._adjust_available(db, slot.parking_id, -1)
        db.refresh(slot)
        return slot

    def release(self, db: DbSession, slot_id: str, booking_id: Optional[str] = None) -> bool:
        """Free a booked slot. Returns False when there was nothing to release."""
        slot = self.get(db, slot_id)
        if slot.status != BOOKED:
            return False
        if booking_id is not None and slot.current_booking_id != booking_id:
            logger.warning(
                f"Slot {slot_id} held by {slot.current_booking_id}, not {booking_id}; left as is"
            )
            return False
        slot.status = AVAILABLE
        slot.current_booking_id = None
        slot.booking_end_time = None
        db.add(slot)
        self._adjust_available(db, slot.parking_id, 1)
        return True

    def close(self, db: DbSession, slot_id: str) -> Slot:
        slot = self.get(db, slot_id)
        if slot.status == BOOKED:
            raise SlotOccupied(f"Slot {slot_id} is booked by {slot.current_booking_id}")
        if slot.status == AVAILABLE:
            slot.status = CLOSED
            db.add(slot)
            self._adjust_available(db, slot.parking_id, -1)
        return slot

    def open(self, db: DbSession, slot_id: str) -> Slot:
        slot = self.get(db, slot_id)
        if slot.status == BOOKED:
            raise SlotOccupied(f"Slot {slot_id} is booked by {slot.current_booking_id}")
        if slot.status == CLOSED:
            slot.status = AVAILABLE
            db.add(slot)
            self._adjust_available(db, slot.parking_id, 1)
        return slot

    def add(self, db: DbSession, parking_id: str, vehicle_type: str, price_per_hour: float) -> Slot:
        last = db.exec(
            select(func.max(Slot.slot_number)).where(Slot.parking_id == parking_id)
        ).one()
        number = (last or 0) + 1
        slot = Slot(
            id=f"{parking_id}-slot-{number}",
            parking_id=parking_id,
            slot_number=number,
            vehicle_type=vehicle_type,
            price_per_hour=price_per_hour,
        )
        db.add(slot)
        self._adjust_available(db, parking_id, 1, total=1)
        return slot

    def remove(self, db: DbSession, slot_id: str) -> None:
        slot = self.get(db, slot_id)
        if slot.status == BOOKED:
            raise SlotOccupied(f"Slot {slot_id} is booked by {slot.current_booking_id}")
        delta = -1 if slot.status == AVAILABLE else 0
        db.delete(slot)
        self._adjust_available(db, slot.parking_id, delta, total=-1)

    def count_available(self, db: DbSession, parking_id: str) -> int:
        return db.exec(
            select(func.count()).select_from(Slot).where(
                Slot.parking_id == parking_id, Slot.status == AVAILABLE
            )
        ).one()

    def _adjust_available(self, db: DbSession, parking_id: str, delta: int, total: int = 0):
        if not delta and not total:
            return
        db.exec(
            update(ParkingSpace)
            .where(ParkingSpace.id == parking_id)
            .values(
                available_slots=ParkingSpace.available_slots + delta,
                total_slots=ParkingSpace.total_slots + total,
            )
            .execution_options(synchronize_session="fetch")
        )
