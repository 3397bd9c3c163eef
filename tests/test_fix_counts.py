from sqlmodel import Session as DbSession

from backend.fix_counts import fix_counts
from backend.models import ParkingSpace
from conftest import PARKING, assert_consistent, available_count


def test_fix_counts_repairs_drift(ledger):
    with DbSession(ledger.engine) as db:
        space = db.get(ParkingSpace, PARKING)
        space.available_slots = 7
        db.add(space)
        db.commit()

    assert fix_counts(ledger.engine) == {PARKING: (7, 3)}
    assert available_count(ledger.engine) == 3
    assert_consistent(ledger.engine)
    assert fix_counts(ledger.engine) == {}
