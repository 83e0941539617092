"""Remote campaign platform clients."""

from kickoff.remote.base import (
    ConfigurationError,
    RemotePlatformError,
    RemoteSchedule,
    RemoteTimeoutError,
    ScheduleCreated,
    SchedulePlatform,
    SendResult,
)
from kickoff.remote.braze import BrazeClient, team_audience

__all__ = [
    "BrazeClient",
    "ConfigurationError",
    "RemotePlatformError",
    "RemoteSchedule",
    "RemoteTimeoutError",
    "ScheduleCreated",
    "SchedulePlatform",
    "SendResult",
    "team_audience",
]
