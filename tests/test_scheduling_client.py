"""
Tests for the scheduling backend client.

These tests verify that:
1. Both list envelope shapes decode to CustomerMatch objects
2. Caller-ID numbers are normalised before searching
3. Identical searches are served from the short-lived cache
4. HTTP and payload failures raise SchedulingAPIError
5. Customers and appointments are created with the expected bodies
"""

import json
from typing import List

import httpx
import pytest

from app.models import AppointmentType, CreateAppointmentPayload
from app.scheduling_client import SchedulingAPIError, SchedulingClient, normalize_phone_for_search


def _client(handler) -> SchedulingClient:
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://test/api"
    )
    return SchedulingClient(base_url="http://test", token="secret", http_client=http_client)


class _Recorder:
    def __init__(self, payload, status_code: int = 200):
        self.payload = payload
        self.status_code = status_code
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)


class TestSearchCustomers:

    @pytest.mark.asyncio
    async def test_customers_envelope(self):
        recorder = _Recorder({
            "success": True,
            "data": {"customers": [
                {"id": 7, "firstName": "Ana", "lastName": "López", "phone": "3055550101"},
                {"firstName": "Sin", "lastName": "Id"},
            ]},
        })
        client = _client(recorder)

        results = await client.search_customers("Ana")

        assert [c.id for c in results] == [7]
        assert results[0].display_name == "Ana López"
        request = recorder.requests[0]
        assert request.url.path == "/api/customers"
        assert request.url.params["search"] == "Ana"
        assert request.url.params["pageSize"] == "5"
        assert request.headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_data_envelope_and_pascal_case(self):
        recorder = _Recorder({
            "success": True,
            "data": {"data": [{"Id": 9, "FirstName": "Luis", "LastName": "Gil", "AccountManagerId": 3}]},
        })
        client = _client(recorder)

        results = await client.search_customers("Luis")

        assert results[0].id == 9
        assert results[0].account_manager_id == 3

    @pytest.mark.asyncio
    async def test_blank_term_skips_request(self):
        recorder = _Recorder({"data": {"customers": []}})
        client = _client(recorder)

        assert await client.search_customers("   ") == []
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_repeated_search_is_cached(self):
        recorder = _Recorder({"data": {"customers": [{"id": 1, "firstName": "Ana"}]}})
        client = _client(recorder)

        await client.search_customers("Ana")
        await client.search_customers("ana")

        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_phone_search_is_normalized(self):
        recorder = _Recorder({"data": {"customers": []}})
        client = _client(recorder)

        await client.search_customers_by_phone("+1 (305) 555-0199")

        assert recorder.requests[0].url.params["search"] == "3055550199"

    @pytest.mark.asyncio
    async def test_account_manager_filter(self):
        recorder = _Recorder({"data": {"customers": [
            {"id": 1, "firstName": "Ana", "accountManagerId": 3},
            {"id": 2, "firstName": "Ana", "accountManagerId": 4},
        ]}})
        client = _client(recorder)

        results = await client.search_customers_by_account_manager("Ana", 3)

        assert [c.id for c in results] == [1]
        assert recorder.requests[0].url.params["pageSize"] == "20"

    @pytest.mark.asyncio
    async def test_list_shaped_data_is_empty(self):
        client = _client(_Recorder({"success": True, "data": []}))

        assert await client.search_customers("Juan Perez") == []

    @pytest.mark.asyncio
    async def test_unusable_envelope_raises(self):
        client = _client(_Recorder({"success": "maybe", "data": {}}))

        with pytest.raises(SchedulingAPIError):
            await client.search_team_members("Pedro")

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        client = _client(_Recorder({"error": "boom"}, status_code=500))

        with pytest.raises(SchedulingAPIError):
            await client.search_customers("Ana")

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = _client(handler)

        with pytest.raises(SchedulingAPIError):
            await client.search_customers("Ana")


class TestTeamMembers:

    @pytest.mark.asyncio
    async def test_members_envelope(self):
        recorder = _Recorder({"data": {"members": [
            {"id": 3, "firstName": "Pedro", "lastName": "Gil"},
            {"id": 4, "username": "mvega"},
        ]}})
        client = _client(recorder)

        members = await client.search_team_members("Pedro")

        assert [(m.id, m.display_name) for m in members] == [(3, "Pedro Gil"), (4, "mvega")]
        assert recorder.requests[0].url.path == "/api/team/members"


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_customer(self):
        recorder = _Recorder({"success": True, "data": {"id": 900}})
        client = _client(recorder)

        customer_id = await client.create_customer("Rosa", "Díaz", "3055550199")

        assert customer_id == 900
        body = json.loads(recorder.requests[0].content)
        assert body == {"firstName": "Rosa", "lastName": "Díaz", "phone": "3055550199"}

    @pytest.mark.asyncio
    async def test_create_customer_without_id_raises(self):
        client = _client(_Recorder({"success": True, "data": {}}))

        with pytest.raises(SchedulingAPIError):
            await client.create_customer("Rosa", "Díaz", "")

    @pytest.mark.asyncio
    async def test_create_customer_pascal_case_id(self):
        client = _client(_Recorder({"success": True, "data": {"Id": "901"}}))

        assert await client.create_customer("Rosa", "Díaz", "") == 901

    @pytest.mark.asyncio
    async def test_create_customer_non_numeric_id_raises(self):
        client = _client(_Recorder({"success": True, "data": {"id": "abc"}}))

        with pytest.raises(SchedulingAPIError):
            await client.create_customer("Rosa", "Díaz", "")

    @pytest.mark.asyncio
    async def test_create_appointment(self):
        recorder = _Recorder({"success": True, "data": {"id": 501, "status": 0}})
        client = _client(recorder)
        payload = CreateAppointmentPayload(
            customerId=7,
            type=AppointmentType.INSTALLATION,
            startDate="2026-10-18T10:00:00-04:00",
        )

        appointment = await client.create_appointment(payload)

        assert appointment.id == 501
        body = json.loads(recorder.requests[0].content)
        assert body == {
            "customerId": 7,
            "type": 1,
            "startDate": "2026-10-18T10:00:00-04:00",
            "duration": "01:00:00",
            "status": 0,
        }

    @pytest.mark.asyncio
    async def test_create_appointment_pascal_case_id(self):
        client = _client(_Recorder({"success": True, "data": {"Id": 502}}))
        payload = CreateAppointmentPayload(
            customerId=7, type=AppointmentType.REPAIR, startDate="2026-10-18T10:00:00-04:00"
        )

        appointment = await client.create_appointment(payload)

        assert appointment.id == 502

    @pytest.mark.asyncio
    async def test_create_appointment_without_id_raises(self):
        client = _client(_Recorder({"success": True, "data": {"status": 0}}))
        payload = CreateAppointmentPayload(
            customerId=7, type=AppointmentType.QUOTE, startDate="2026-10-18T10:00:00-04:00"
        )

        with pytest.raises(SchedulingAPIError):
            await client.create_appointment(payload)


@pytest.mark.parametrize("raw,expected", [
    ("+1 (305) 555-0199", "3055550199"),
    ("305.555.0199", "3055550199"),
])
def test_normalize_phone_for_search(raw, expected):
    assert normalize_phone_for_search(raw) == expected
