class LedgerError(Exception):
    """Base class for every recoverable booking/slot error.

    ``kind`` is the stable name callers switch on; the message is for humans.
    """

    kind = "LedgerError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)


class SlotUnavailable(LedgerError):
    kind = "SlotUnavailable"


class SlotOccupied(LedgerError):
    kind = "SlotOccupied"


class InvalidVehicle(LedgerError):
    kind = "InvalidVehicle"


class NotFound(LedgerError):
    kind = "NotFound"


class AlreadyTerminal(LedgerError):
    kind = "AlreadyTerminal"


class InvalidTimeRange(LedgerError):
    kind = "InvalidTimeRange"
