"""Tests for the Braze REST client using httpx.MockTransport."""

import json
from datetime import datetime

import httpx
import pytest

from kickoff.remote import BrazeClient, ConfigurationError, RemotePlatformError, RemoteTimeoutError, team_audience

BASE_URL = "https://rest.test.braze.eu"


class Recorder:
    """Serves queued responses and keeps every request it saw."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


def make_client(recorder: Recorder, list_retries: int = 3) -> BrazeClient:
    http_client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(recorder))
    return BrazeClient(
        api_key="key",
        rest_endpoint=BASE_URL,
        campaign_id="campaign-1",
        list_retries=list_retries,
        retry_delay=0,
        http_client=http_client,
    )


class TestConfiguration:
    @pytest.mark.parametrize("missing", ["api_key", "rest_endpoint", "campaign_id"])
    def test_missing_setting_raises(self, missing):
        values = {"api_key": "key", "rest_endpoint": BASE_URL, "campaign_id": "campaign-1"}
        values[missing] = ""
        with pytest.raises(ConfigurationError):
            BrazeClient(**values)

    def test_from_settings(self, make_settings):
        client = BrazeClient.from_settings(make_settings(BRAZE_CAMPAIGN_ID="campaign-9"))
        assert client.campaign_id == "campaign-9"
        assert client.client.headers["Authorization"] == "Bearer test-key"


class TestWrites:
    @pytest.mark.asyncio
    async def test_create_schedule(self):
        recorder = Recorder(httpx.Response(201, json={"schedule_id": "s-1", "dispatch_id": "d-1", "message": "success"}))
        client = make_client(recorder)

        created = await client.create_schedule(
            datetime(2026, 3, 1, 17, 0), {"OR": []}, {"match_id": "1", "sig": "abc"}
        )

        assert created.schedule_id == "s-1"
        assert created.dispatch_id == "d-1"
        assert created.send_id is None
        request = recorder.requests[0]
        assert request.url.path == "/campaigns/trigger/schedule/create"
        body = recorder.body()
        assert body["campaign_id"] == "campaign-1"
        assert body["schedule"] == {"time": "2026-03-01T17:00:00.000Z"}
        assert body["trigger_properties"] == {"match_id": "1", "sig": "abc"}

    @pytest.mark.asyncio
    async def test_create_without_schedule_id_raises(self):
        client = make_client(Recorder(httpx.Response(201, json={"message": "success"})))
        with pytest.raises(RemotePlatformError):
            await client.create_schedule(datetime(2026, 3, 1, 17, 0), {}, {})

    @pytest.mark.asyncio
    async def test_create_is_not_retried(self):
        recorder = Recorder(httpx.Response(503, text="unavailable"))
        client = make_client(recorder)
        with pytest.raises(RemotePlatformError) as exc_info:
            await client.create_schedule(datetime(2026, 3, 1, 17, 0), {}, {})
        assert exc_info.value.status_code == 503
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_update_schedule(self):
        recorder = Recorder(httpx.Response(201, json={"message": "success"}))
        client = make_client(recorder)

        await client.update_schedule("s-1", datetime(2026, 3, 1, 17, 30), {"OR": []}, {"sig": "new"})

        body = recorder.body()
        assert recorder.requests[0].url.path == "/campaigns/trigger/schedule/update"
        assert body["schedule_id"] == "s-1"
        assert body["schedule"]["time"] == "2026-03-01T17:30:00.000Z"

    @pytest.mark.asyncio
    async def test_bad_request_carries_status_and_body(self):
        client = make_client(Recorder(httpx.Response(400, text="invalid audience")))
        with pytest.raises(RemotePlatformError) as exc_info:
            await client.update_schedule("s-1", datetime(2026, 3, 1, 17, 30), {}, {})
        assert exc_info.value.status_code == 400
        assert exc_info.value.body == "invalid audience"

    @pytest.mark.asyncio
    async def test_delete(self):
        recorder = Recorder(httpx.Response(201, json={"message": "success"}))
        assert await make_client(recorder).delete_schedule("s-1") is True
        assert recorder.body() == {"campaign_id": "campaign-1", "schedule_id": "s-1"}

    @pytest.mark.asyncio
    async def test_delete_unknown_schedule(self):
        client = make_client(Recorder(httpx.Response(404, json={"message": "not found"})))
        assert await client.delete_schedule("s-1") is False

    @pytest.mark.asyncio
    async def test_timeout(self):
        client = make_client(Recorder(httpx.ReadTimeout("slow")))
        with pytest.raises(RemoteTimeoutError):
            await client.delete_schedule("s-1")

    @pytest.mark.asyncio
    async def test_send_now(self):
        recorder = Recorder(httpx.Response(201, json={"dispatch_id": "d-7"}))
        result = await make_client(recorder).send_now({"OR": []}, {"x": 1}, campaign_id="congrats")

        assert result.dispatch_id == "d-7"
        body = recorder.body()
        assert recorder.requests[0].url.path == "/campaigns/trigger/send"
        assert body["campaign_id"] == "congrats"
        assert body["broadcast"] is True
        assert body["audience"] == {"OR": []}

    @pytest.mark.asyncio
    async def test_send_to_recipients(self):
        recorder = Recorder(httpx.Response(201, json={"dispatch_id": "d-8"}))
        await make_client(recorder).send_to_recipients(["u1", "u2"], {"x": 1})

        body = recorder.body()
        assert body["campaign_id"] == "campaign-1"
        assert body["recipients"] == [{"external_user_id": "u1"}, {"external_user_id": "u2"}]
        assert "broadcast" not in body


class TestListSchedules:
    @pytest.mark.asyncio
    async def test_filters_to_campaign(self):
        recorder = Recorder(httpx.Response(200, json={
            "scheduled_broadcasts": [
                {
                    "campaign_id": "campaign-1",
                    "schedule_id": "s-1",
                    "next_send_time": "2026-03-01T17:00:00Z",
                    "trigger_properties": {"match_id": "1", "sig": "abc", "origin": "kickoff-notifier"},
                },
                {"campaign_api_id": "campaign-1", "schedule_id": "s-2", "next_send_time": "2026-03-02T17:00:00Z"},
                {"campaign_id": "other", "schedule_id": "s-3", "next_send_time": "2026-03-01T17:00:00Z"},
                {"campaign_id": "campaign-1", "next_send_time": "2026-03-01T17:00:00Z"},
            ]
        }))
        client = make_client(recorder)

        schedules = await client.list_schedules(datetime(2026, 4, 1))

        assert [s.schedule_id for s in schedules] == ["s-1", "s-2"]
        assert schedules[0].next_send_time == datetime(2026, 3, 1, 17, 0)
        assert schedules[0].match_id == 1
        assert schedules[0].signature == "abc"
        assert schedules[0].origin == "kickoff-notifier"
        assert schedules[1].match_id is None
        assert recorder.requests[0].url.params["end_time"] == "2026-04-01T00:00:00.000Z"

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        recorder = Recorder(
            httpx.Response(503, text="busy"),
            httpx.Response(429, text="slow down"),
            httpx.Response(200, json={"scheduled_broadcasts": []}),
        )
        assert await make_client(recorder).list_schedules(datetime(2026, 4, 1)) == []
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        recorder = Recorder(httpx.Response(503, text="busy"))
        with pytest.raises(RemotePlatformError) as exc_info:
            await make_client(recorder, list_retries=2).list_schedules(datetime(2026, 4, 1))
        assert exc_info.value.status_code == 503
        assert len(recorder.requests) == 2


class TestTeamAudience:
    def test_one_filter_per_key_and_attribute(self):
        audience = team_audience(["real_madrid", "barca", "barca"])
        assert len(audience["OR"]) == 6
        first = audience["OR"][0]["custom_attribute"]
        assert first == {"custom_attribute_name": "Team 1", "comparison": "equals", "value": "barca"}
