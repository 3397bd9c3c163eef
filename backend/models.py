import os
from datetime import datetime
from typing import Optional
from sqlmodel import Field, SQLModel, create_engine

VEHICLE_TYPES = ("car", "bike")

# Slot status
AVAILABLE = "available"
BOOKED = "booked"
CLOSED = "closed"

# Booking status
UPCOMING = "upcoming"
ACTIVE = "active"
COMPLETED = "completed"
CANCELLED = "cancelled"

OPEN_STATUSES = (UPCOMING, ACTIVE)
TERMINAL_STATUSES = (COMPLETED, CANCELLED)


class ParkingSpace(SQLModel, table=True):
    id: str = Field(primary_key=True)
    owner_id: str = Field(index=True)
    name: str
    address: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    category: str = "commercial"  # commercial, free, private
    total_slots: int = 0
    # Cached count of slots with status == available, kept in the same
    # transaction as every slot status change.
    available_slots: int = 0
    price_per_hour: float = 0.0
    is_open: bool = True
    description: Optional[str] = None


class Slot(SQLModel, table=True):
    id: str = Field(primary_key=True)
    parking_id: str = Field(index=True)
    slot_number: int
    vehicle_type: str = "car"  # car, bike
    status: str = Field(default=AVAILABLE)  # available, booked, closed
    price_per_hour: float = 0.0
    current_booking_id: Optional[str] = Field(default=None)
    booking_end_time: Optional[datetime] = None


class Vehicle(SQLModel, table=True):
    id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    type: str  # car, bike
    number: str
    model: Optional[str] = None


class Booking(SQLModel, table=True):
    id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    parking_id: str = Field(index=True)
    slot_id: str = Field(index=True)
    vehicle_id: str
    vehicle_number: str
    vehicle_type: str
    start_time: datetime
    end_time: datetime
    duration: int  # whole hours
    total_price: float
    payment_method: str
    status: str = Field(default=UPCOMING, index=True)  # upcoming, active, completed, cancelled
    created_at: datetime = Field(default_factory=datetime.now)


# Database Setup
DATABASE_URL = os.getenv("PARKING_DATABASE_URL", "sqlite:///parking.db")


def make_engine(url: str = DATABASE_URL):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


engine = make_engine()


def create_db_and_tables(bind=None):
    SQLModel.metadata.create_all(bind if bind is not None else engine)
