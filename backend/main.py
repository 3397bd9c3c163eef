from fastapi import APIRouter, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session as DbSession, select
from contextlib import asynccontextmanager
import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel

from .errors import LedgerError
from .ledger import BookingLedger
from .models import create_db_and_tables, engine, ParkingSpace, Vehicle
from .sweeper import ExpirySweeper
from . import queries

logger = logging.getLogger("ParkingAPI")

# --- CONFIGURATION ---
SWEEP_INTERVAL = float(os.getenv("PARKING_SWEEP_INTERVAL", "60"))  # seconds
SEED_DEMO_DATA = os.getenv("PARKING_SEED_DEMO", "1") == "1"

ERROR_STATUS = {
    "NotFound": 404,
    "SlotUnavailable": 409,
    "SlotOccupied": 409,
    "AlreadyTerminal": 409,
    "InvalidVehicle": 400,
    "InvalidTimeRange": 400,
}

# (id, name, address, lat, lng, category, car slots, bike slots, car price, bike price)
DEMO_PARKINGS = [
    ("parking-1", "Times Square Parking", "1560 Broadway, New York, NY 10036", 40.758, -73.9855, "commercial", 40, 10, 12, 5),
    ("parking-2", "Central Park South Parking", "59th St, New York, NY 10019", 40.7662, -73.9794, "commercial", 25, 5, 15, 6),
    ("parking-3", "Bryant Park Garage", "42nd St, New York, NY 10018", 40.7544, -73.9835, "commercial", 30, 10, 10, 4),
    ("parking-5", "Battery Park Lot", "Battery Pl, New York, NY 10004", 40.7033, -74.0170, "free", 20, 10, 0, 0),
    ("parking-6", "Bike Only Parking - Brooklyn Bridge", "Centre St, New York, NY 10007", 40.7061, -73.9969, "free", 0, 30, 0, 0),
]


def seed_demo_data(ledger: BookingLedger):
    with DbSession(ledger.engine) as db:
        if db.exec(select(ParkingSpace)).first():
            return
        db.add(Vehicle(id="vehicle-1", user_id="customer-1", type="car", number="NY-1234", model="Honda Civic"))
        db.add(Vehicle(id="vehicle-2", user_id="customer-1", type="bike", number="NY-5678", model="Yamaha R15"))
        db.commit()

    for pid, name, address, lat, lng, category, cars, bikes, car_price, bike_price in DEMO_PARKINGS:
        ledger.add_parking_space(
            "owner-1", name, car_slots=cars, bike_slots=bikes,
            car_price=car_price, bike_price=bike_price, parking_id=pid,
            address=address, latitude=lat, longitude=lng, category=category,
        )
    logger.info(f"Seeded {len(DEMO_PARKINGS)} demo parking spaces")


# --- MODELS ---
class CreateBookingRequest(BaseModel):
    user_id: str
    parking_id: str
    slot_id: str
    vehicle_id: str
    start_time: datetime
    end_time: datetime
    payment_method: Literal["upi", "qr", "netbanking", "cash", "card"] = "cash"


class CreateParkingRequest(BaseModel):
    owner_id: str
    name: str
    address: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    category: Literal["commercial", "free", "private"] = "commercial"
    description: Optional[str] = None
    car_slots: int = 0
    bike_slots: int = 0
    car_price: float = 0.0
    bike_price: float = 0.0


class UpdateParkingRequest(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    description: Optional[str] = None
    category: Optional[Literal["commercial", "free", "private"]] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    price_per_hour: Optional[float] = None
    is_open: Optional[bool] = None


class AddSlotRequest(BaseModel):
    vehicle_type: Literal["car", "bike"]
    price_per_hour: Optional[float] = None


class AddVehicleRequest(BaseModel):
    user_id: str
    type: Literal["car", "bike"]
    number: str
    model: Optional[str] = None


# --- DEPENDENCIES ---
def get_ledger(request: Request) -> BookingLedger:
    return request.app.state.ledger


def get_db(ledger: BookingLedger = Depends(get_ledger)):
    db = DbSession(ledger.engine)
    try:
        yield db
    finally:
        db.close()


# --- HELPERS ---
async def broadcast_event(app: FastAPI, event_type: str, data: dict):
    message = {"type": event_type, **data}
    json_msg = json.dumps(message)
    to_remove = []
    for ws in app.state.websockets:
        try:
            await ws.send_text(json_msg)
        except Exception:
            to_remove.append(ws)
    for ws in to_remove:
        app.state.websockets.remove(ws)


# --- API ---
router = APIRouter()


@router.get("/api/parkings")
def list_parkings(lat: Optional[float] = None, lng: Optional[float] = None,
                  vehicle_type: Optional[Literal["car", "bike"]] = None, db: DbSession = Depends(get_db)):
    return queries.list_parkings(db, lat, lng, vehicle_type)


@router.get("/api/parkings/{parking_id}")
def get_parking(parking_id: str, db: DbSession = Depends(get_db)):
    return queries.get_parking(db, parking_id)


@router.post("/api/parkings", status_code=201)
def add_parking(req: CreateParkingRequest, ledger: BookingLedger = Depends(get_ledger)):
    details = req.model_dump()
    owner_id, name = details.pop("owner_id"), details.pop("name")
    parking_id = ledger.add_parking_space(owner_id, name, **details)
    return {"ok": True, "parking": parking_id}


@router.patch("/api/parkings/{parking_id}")
def update_parking(parking_id: str, req: UpdateParkingRequest, ledger: BookingLedger = Depends(get_ledger)):
    ledger.update_parking_space(parking_id, **req.model_dump(exclude_unset=True, exclude_none=True))
    return {"ok": True}


@router.delete("/api/parkings/{parking_id}")
def delete_parking(parking_id: str, ledger: BookingLedger = Depends(get_ledger)):
    ledger.delete_parking_space(parking_id)
    return {"ok": True}


@router.post("/api/parkings/{parking_id}/slots", status_code=201)
def add_slot(parking_id: str, req: AddSlotRequest, ledger: BookingLedger = Depends(get_ledger)):
    slot_id = ledger.add_slot(parking_id, req.vehicle_type, req.price_per_hour)
    return {"ok": True, "slot": slot_id}


@router.delete("/api/parkings/{parking_id}/slots/{slot_id}")
def remove_slot(parking_id: str, slot_id: str, ledger: BookingLedger = Depends(get_ledger)):
    ledger.remove_slot(parking_id, slot_id)
    return {"ok": True}


@router.post("/api/slots/{slot_id}/open")
def open_slot(slot_id: str, ledger: BookingLedger = Depends(get_ledger)):
    ledger.open_slot(slot_id)
    return {"ok": True}


@router.post("/api/slots/{slot_id}/close")
def close_slot(slot_id: str, ledger: BookingLedger = Depends(get_ledger)):
    ledger.close_slot(slot_id)
    return {"ok": True}


@router.post("/api/vehicles", status_code=201)
def add_vehicle(req: AddVehicleRequest, ledger: BookingLedger = Depends(get_ledger)):
    vehicle_id = ledger.add_vehicle(req.user_id, req.type, req.number, req.model)
    return {"ok": True, "vehicle": vehicle_id}


@router.get("/api/users/{user_id}/vehicles")
def user_vehicles(user_id: str, db: DbSession = Depends(get_db)):
    return queries.vehicles_for_user(db, user_id)


@router.post("/api/bookings", status_code=201)
def create_booking(req: CreateBookingRequest, ledger: BookingLedger = Depends(get_ledger)):
    booking_id = ledger.create(
        req.user_id, req.parking_id, req.slot_id, req.vehicle_id,
        req.start_time, req.end_time, req.payment_method,
    )
    return {"ok": True, "booking": booking_id}


@router.get("/api/bookings/{booking_id}")
def get_booking(booking_id: str, db: DbSession = Depends(get_db)):
    return queries.get_booking(db, booking_id)


@router.post("/api/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: str, ledger: BookingLedger = Depends(get_ledger)):
    ledger.cancel(booking_id)
    return {"ok": True}


@router.post("/api/bookings/{booking_id}/complete")
def complete_booking(booking_id: str, ledger: BookingLedger = Depends(get_ledger)):
    ledger.complete(booking_id)
    return {"ok": True}


@router.post("/api/bookings/{booking_id}/activate")
def activate_booking(booking_id: str, ledger: BookingLedger = Depends(get_ledger)):
    ledger.activate(booking_id)
    return {"ok": True}


@router.get("/api/users/{user_id}/bookings")
def user_bookings(user_id: str, scope: Optional[Literal["upcoming", "past"]] = None, db: DbSession = Depends(get_db)):
    return queries.bookings_for_user(db, user_id, scope)


@router.get("/api/owners/{owner_id}/parkings")
def owner_parkings(owner_id: str, db: DbSession = Depends(get_db)):
    return queries.parkings_for_owner(db, owner_id)


@router.get("/api/owners/{owner_id}/analytics")
def owner_analytics(owner_id: str, db: DbSession = Depends(get_db)):
    return queries.owner_analytics(db, owner_id)


@router.websocket("/ws/events")
async def websocket_endpoint(websocket: WebSocket):
    sockets = websocket.app.state.websockets
    await websocket.accept()
    sockets.append(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        sockets.remove(websocket)


def create_app(ledger: Optional[BookingLedger] = None, sweep_interval: float = SWEEP_INTERVAL,
               start_sweeper: bool = True, seed: bool = SEED_DEMO_DATA) -> FastAPI:
    ledger = ledger or BookingLedger(engine)
    sweeper = ExpirySweeper(ledger, interval=sweep_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        create_db_and_tables(ledger.engine)
        if seed:
            seed_demo_data(ledger)

        app_loop = asyncio.get_running_loop()

        def handle_ledger_event(event_type: str, data: dict):
            # Ledger calls come from worker threads and the sweeper thread.
            asyncio.run_coroutine_threadsafe(broadcast_event(app, event_type, data), app_loop)

        ledger.subscribe(handle_ledger_event)
        if start_sweeper:
            sweeper.start()
        yield
        sweeper.stop()
        ledger.unsubscribe(handle_ledger_event)

    app = FastAPI(title="Parking Booking API", lifespan=lifespan)
    app.state.ledger = ledger
    app.state.sweeper = sweeper
    app.state.websockets = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(
            status_code=ERROR_STATUS.get(exc.kind, 400),
            content={"ok": False, "error": exc.kind, "detail": str(exc)},
        )

    app.include_router(router)
    return app


app = create_app()
