"""Braze REST implementation of the campaign platform interface."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Optional

import httpx

from kickoff.config import Settings, get_settings
from kickoff.remote.base import (
    ConfigurationError,
    RemotePlatformError,
    RemoteSchedule,
    RemoteTimeoutError,
    ScheduleCreated,
    SchedulePlatform,
    SendResult,
)
from kickoff.telemetry.metrics import record_remote_request
from kickoff.utils.dates import isoformat_z, parse_remote_datetime

logger = logging.getLogger(__name__)

# Braze returns the owning campaign under any of these keys depending on API version
CAMPAIGN_ID_KEYS = ("campaign_id", "campaign_api_id", "campaign_api_identifier")


def team_audience(audience_keys: list[str]) -> dict:
    """Connected audience: users whose 'Team 1/2/3' custom attribute equals any key."""
    return {
        "OR": [
            {
                "custom_attribute": {
                    "custom_attribute_name": attribute,
                    "comparison": "equals",
                    "value": key,
                }
            }
            for key in sorted(set(audience_keys))
            for attribute in ("Team 1", "Team 2", "Team 3")
        ]
    }


class BrazeClient(SchedulePlatform):
    """
    Thin wrapper over the Braze campaign schedule endpoints.

    Writes (create/update/delete/send) are attempted exactly once: a timeout
    on create may or may not have created a remote object, and the caller's
    rollback plus the reconciler handle that. Reads retry with exponential
    backoff on timeouts, 429 and 5xx.
    """

    def __init__(
        self,
        api_key: str,
        rest_endpoint: str,
        campaign_id: str,
        timeout: float = 30.0,
        list_retries: int = 3,
        retry_delay: float = 2.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key or not rest_endpoint or not campaign_id:
            raise ConfigurationError(
                "Braze is not configured (BRAZE_API_KEY, BRAZE_REST_ENDPOINT and BRAZE_CAMPAIGN_ID are required)"
            )
        self.campaign_id = campaign_id
        self.list_retries = max(1, list_retries)
        self.retry_delay = retry_delay
        self.client = http_client or httpx.AsyncClient(
            base_url=rest_endpoint.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "BrazeClient":
        settings = settings or get_settings()
        return cls(
            api_key=settings.BRAZE_API_KEY,
            rest_endpoint=settings.BRAZE_REST_ENDPOINT,
            campaign_id=settings.BRAZE_CAMPAIGN_ID,
            timeout=settings.BRAZE_TIMEOUT_SECONDS,
            list_retries=settings.BRAZE_LIST_RETRIES,
        )

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        attempts: int = 1,
        allow_not_found: bool = False,
    ) -> Optional[dict]:
        """
        Perform a request and return the decoded JSON body.

        Returns None for a 404 when allow_not_found is set.

        Raises:
            RemoteTimeoutError: the final attempt timed out.
            RemotePlatformError: non-2xx status or transport error on the final attempt.
        """
        delay = self.retry_delay
        for attempt in range(attempts):
            last_attempt = attempt == attempts - 1
            start_time = time.time()
            try:
                response = await self.client.request(method, path, json=json, params=params)
            except httpx.TimeoutException as e:
                record_remote_request(operation, 0, (time.time() - start_time) * 1000, is_timeout=True)
                logger.error(f"[BRAZE] {operation} timed out (attempt {attempt + 1}/{attempts}): {e}")
                if last_attempt:
                    raise RemoteTimeoutError(f"Braze {operation} timed out") from e
                await asyncio.sleep(delay)
                delay *= 2
                continue
            except httpx.RequestError as e:
                record_remote_request(operation, 0, (time.time() - start_time) * 1000)
                logger.error(f"[BRAZE] {operation} request error (attempt {attempt + 1}/{attempts}): {e}")
                if last_attempt:
                    raise RemotePlatformError(f"Braze {operation} request failed: {e}") from e
                await asyncio.sleep(delay)
                delay *= 2
                continue

            latency_ms = (time.time() - start_time) * 1000
            record_remote_request(operation, response.status_code, latency_ms)

            if response.status_code == 404 and allow_not_found:
                return None

            if response.status_code == 429 or response.status_code >= 500:
                if not last_attempt:
                    logger.warning(
                        f"[BRAZE] {operation} got {response.status_code}, retrying in {delay}s"
                    )
                    await asyncio.sleep(delay)
                    delay *= 2
                    continue

            if response.status_code >= 400:
                body = response.text[:500]
                logger.error(f"[BRAZE] {operation} failed: HTTP {response.status_code} {body}")
                raise RemotePlatformError(
                    f"Braze {operation} failed with HTTP {response.status_code}",
                    status_code=response.status_code,
                    body=body,
                )

            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError:
                return {}

        return None

    async def create_schedule(
        self,
        send_at: datetime,
        audience: dict,
        trigger_properties: dict,
    ) -> ScheduleCreated:
        data = await self._request(
            "create",
            "POST",
            "/campaigns/trigger/schedule/create",
            json={
                "campaign_id": self.campaign_id,
                "schedule": {"time": isoformat_z(send_at)},
                "audience": audience,
                "trigger_properties": trigger_properties,
            },
        )
        schedule_id = (data or {}).get("schedule_id")
        if not schedule_id:
            raise RemotePlatformError("Braze create returned no schedule_id", body=str(data)[:500])
        return ScheduleCreated(
            schedule_id=schedule_id,
            dispatch_id=data.get("dispatch_id"),
            send_id=data.get("send_id"),
        )

    async def update_schedule(
        self,
        schedule_id: str,
        send_at: datetime,
        audience: dict,
        trigger_properties: dict,
    ) -> None:
        await self._request(
            "update",
            "POST",
            "/campaigns/trigger/schedule/update",
            json={
                "campaign_id": self.campaign_id,
                "schedule_id": schedule_id,
                "schedule": {"time": isoformat_z(send_at)},
                "audience": audience,
                "trigger_properties": trigger_properties,
            },
        )

    async def delete_schedule(self, schedule_id: str) -> bool:
        data = await self._request(
            "delete",
            "POST",
            "/campaigns/trigger/schedule/delete",
            json={"campaign_id": self.campaign_id, "schedule_id": schedule_id},
            allow_not_found=True,
        )
        if data is None:
            logger.info(f"[BRAZE] Schedule {schedule_id} already gone (404)")
            return False
        return True

    async def list_schedules(self, end_time: datetime) -> list[RemoteSchedule]:
        data = await self._request(
            "list",
            "GET",
            "/messages/scheduled_broadcasts",
            params={"end_time": isoformat_z(end_time)},
            attempts=self.list_retries,
        )
        schedules = []
        for broadcast in (data or {}).get("scheduled_broadcasts", []):
            if not any(broadcast.get(key) == self.campaign_id for key in CAMPAIGN_ID_KEYS):
                continue
            schedule_id = broadcast.get("schedule_id")
            if not schedule_id:
                continue
            schedules.append(
                RemoteSchedule(
                    schedule_id=schedule_id,
                    next_send_time=parse_remote_datetime(broadcast.get("next_send_time")),
                    trigger_properties=broadcast.get("trigger_properties") or {},
                    campaign_id=self.campaign_id,
                )
            )
        return schedules

    async def send_now(
        self,
        audience: dict,
        trigger_properties: dict,
        campaign_id: Optional[str] = None,
    ) -> SendResult:
        data = await self._request(
            "send",
            "POST",
            "/campaigns/trigger/send",
            json={
                "campaign_id": campaign_id or self.campaign_id,
                "broadcast": True,
                "audience": audience,
                "trigger_properties": trigger_properties,
            },
        )
        return SendResult(dispatch_id=(data or {}).get("dispatch_id"))

    async def send_to_recipients(
        self,
        external_user_ids: list[str],
        trigger_properties: dict,
        campaign_id: Optional[str] = None,
    ) -> SendResult:
        data = await self._request(
            "send",
            "POST",
            "/campaigns/trigger/send",
            json={
                "campaign_id": campaign_id or self.campaign_id,
                "recipients": [{"external_user_id": user_id} for user_id in external_user_ids],
                "trigger_properties": trigger_properties,
            },
        )
        return SendResult(dispatch_id=(data or {}).get("dispatch_id"))

    async def close(self) -> None:
        await self.client.aclose()
