from backend.models import engine, Booking
from sqlmodel import Session as DbSession, select

with DbSession(engine) as db:
    bookings = db.exec(select(Booking).order_by(Booking.start_time)).all()
    if not bookings:
        print('NO_BOOKINGS')
    for b in bookings:
        print(b.id, b.slot_id, b.status, b.start_time, b.end_time, b.total_price)
