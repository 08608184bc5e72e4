'''
Define variables used across the entire applications
'''
import enum


MOTION_SPEED_CUTOFF = 2.0    # km/h, in-motion pairs need both samples above this with ignition on
MIN_HALT_MINUTES = 1         # shorter halts are not added to parked_duration

RAW_PATH_KEY = "{device_id}:rawTripPath"     # per-device list of buffered samples (JSON strings)
LAST_POSITION_KEYS = ("{device_id}:lat", "{device_id}:lng", "{device_id}:dt_tracker")


class TripStage(str, enum.Enum):
    PLANNED = "Planned"
    START_DELAYED = "Start Delayed"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    ABORTED = "Aborted"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TripStage.COMPLETED, TripStage.ABORTED, TripStage.CANCELLED)


class MovementStatus(str, enum.Enum):
    DRIVING = "Driving"
    HALTED = "Halted"
    UNKNOWN = "Unknown"


class RuleState(str, enum.Enum):
    GOOD = "Good"
    VIOLATED = "Violated"


PENDING_STAGES = (TripStage.PLANNED, TripStage.START_DELAYED)
SCHEDULABLE_STAGES = (TripStage.PLANNED, TripStage.START_DELAYED, TripStage.ACTIVE)
