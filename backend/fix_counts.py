from sqlmodel import Session as DbSession, select
from backend.models import engine, ParkingSpace
from backend.registry import SlotRegistry


def fix_counts(bind=engine):
    """Recompute every cached available_slots from slot statuses. Returns {parking_id: (old, new)}."""
    registry = SlotRegistry()
    drift = {}
    with DbSession(bind) as db:
        for space in db.exec(select(ParkingSpace)).all():
            actual = registry.count_available(db, space.id)
            if space.available_slots != actual:
                drift[space.id] = (space.available_slots, actual)
                space.available_slots = actual
                db.add(space)
        db.commit()
    return drift


if __name__ == "__main__":
    print("Checking available slot counts...")
    drift = fix_counts()
    for parking_id, (old, new) in drift.items():
        print(f"Fixed {parking_id}: {old} -> {new}")
    print(f"Done. {len(drift)} parking space(s) corrected.")
