import threading
import logging
from datetime import datetime

from .errors import AlreadyTerminal, LedgerError

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ExpirySweeper")


class ExpirySweeper:
    def __init__(self, ledger, interval=60, clock=datetime.now):
        self.ledger = ledger
        self.interval = interval
        self.clock = clock
        self.running = False
        self._stop_event = threading.Event()
        self._thread = None

    def start(self):
        self.running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="expiry-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"Sweeping every {self.interval}s")

    def _run_loop(self):
        while self.running:
            try:
                self.sweep_once()
            except Exception as e:
                logger.error(f"Sweep failed: {e}")
            if self._stop_event.wait(self.interval):
                break

    def sweep_once(self):
        """Complete every open booking whose end time has passed. Returns how many were completed."""
        now = self.clock()
        completed = 0
        for booking_id in self.ledger.due_booking_ids(now):
            try:
                self.ledger.complete(booking_id)
                completed += 1
            except AlreadyTerminal:
                # Lost a race with a cancel or a manual "end now".
                logger.info(f"Booking {booking_id} already closed, skipping")
            except LedgerError as e:
                logger.error(f"Unexpected {e.kind} completing {booking_id}: {e}")
        if completed:
            logger.info(f"Expired {completed} booking(s)")
        return completed

    def stop(self):
        self.running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
