"""Abstract campaign platform interface and its data transfer objects."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


class ConfigurationError(RuntimeError):
    """Required remote credentials or identifiers are missing. Fatal for the run."""


class RemotePlatformError(RuntimeError):
    """A campaign platform call failed (non-2xx or transport error)."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RemoteTimeoutError(RemotePlatformError):
    """A campaign platform call exceeded its timeout."""


@dataclass
class RemoteSchedule:
    """Scheduled broadcast as observed through the list endpoint."""

    schedule_id: str
    next_send_time: Optional[datetime]
    trigger_properties: dict = field(default_factory=dict)
    campaign_id: Optional[str] = None

    @property
    def match_id(self) -> Optional[int]:
        """Fixture identity embedded at create time, if any."""
        raw = self.trigger_properties.get("match_id")
        try:
            return int(raw) if raw is not None else None
        except (TypeError, ValueError):
            return None

    @property
    def signature(self) -> Optional[str]:
        return self.trigger_properties.get("sig")

    @property
    def origin(self) -> Optional[str]:
        return self.trigger_properties.get("origin")


@dataclass
class ScheduleCreated:
    """Result of a successful create-schedule call."""

    schedule_id: str
    dispatch_id: Optional[str] = None
    send_id: Optional[str] = None


@dataclass
class SendResult:
    """Result of a send-immediate call."""

    dispatch_id: Optional[str] = None


class SchedulePlatform(ABC):
    """Abstract base class for the remote campaign platform."""

    @abstractmethod
    async def create_schedule(
        self,
        send_at: datetime,
        audience: dict,
        trigger_properties: dict,
    ) -> ScheduleCreated:
        """
        Schedule a campaign send.

        Args:
            send_at: Send instant (naive UTC).
            audience: Connected-audience filter.
            trigger_properties: Payload rendered into the message.

        Returns:
            ScheduleCreated with the remote schedule id.
        """
        pass

    @abstractmethod
    async def update_schedule(
        self,
        schedule_id: str,
        send_at: datetime,
        audience: dict,
        trigger_properties: dict,
    ) -> None:
        """Replace the send instant and payload of an existing schedule."""
        pass

    @abstractmethod
    async def delete_schedule(self, schedule_id: str) -> bool:
        """
        Cancel a schedule.

        Returns:
            True if it was deleted, False if the platform no longer knew it.
        """
        pass

    @abstractmethod
    async def list_schedules(self, end_time: datetime) -> list[RemoteSchedule]:
        """Schedules of this campaign whose next send falls before end_time."""
        pass

    @abstractmethod
    async def send_now(
        self,
        audience: dict,
        trigger_properties: dict,
        campaign_id: Optional[str] = None,
    ) -> SendResult:
        """Send immediately to an audience (defaults to the schedule campaign)."""
        pass

    @abstractmethod
    async def send_to_recipients(
        self,
        external_user_ids: list[str],
        trigger_properties: dict,
        campaign_id: Optional[str] = None,
    ) -> SendResult:
        """Send immediately to explicit users."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close any open connections."""
        pass
