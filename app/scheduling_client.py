"""
Scheduling backend client (customers, team members, appointments).

Every list response is normalised through ListEnvelope on receipt, so the
rest of the engine only ever sees CustomerMatch / TeamMember objects.

Errors are raised as SchedulingAPIError. Callers that must keep a phone
conversation moving (the identification funnel) decide how to degrade;
this client never swallows a failure.

Python 3.9 compatible - uses typing.Dict, typing.List, typing.Optional
"""

import logging
import os
import re
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
import phonenumbers
from phonenumbers import NumberParseException
from pydantic import ValidationError

from .models import (
    Appointment,
    CreateAppointmentPayload,
    CustomerMatch,
    ListEnvelope,
    TeamMember,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 5
ACCOUNT_MANAGER_PAGE_SIZE = 20
MIN_PHONE_SEARCH_DIGITS = 3


class SchedulingAPIError(RuntimeError):
    """Raised when the scheduling backend fails or answers an unusable payload."""


def normalize_phone_for_search(phone: str, region: str = "US") -> str:
    """
    Strip punctuation and the country-code prefix from a caller-ID number.

    The backend stores national numbers, so "+1 (305) 555-0199" must be
    searched as "3055550199".

    Examples:
        >>> normalize_phone_for_search("+1 (305) 555-0199")
        '3055550199'
        >>> normalize_phone_for_search("305.555.0199")
        '3055550199'
    """
    raw = phone.strip()
    try:
        parsed = phonenumbers.parse(raw, region)
        national = str(parsed.national_number)
        if national:
            return national
    except NumberParseException:
        pass
    return re.sub(r"\D", "", raw)


def _to_customer(record: Dict[str, Any]) -> Optional[CustomerMatch]:
    try:
        return CustomerMatch.model_validate(record)
    except ValidationError:
        logger.warning(f"Skipping customer record without a usable id: keys={list(record.keys())}")
        return None


def _to_envelope(data: Any, path: str) -> ListEnvelope:
    try:
        return ListEnvelope.model_validate(data if isinstance(data, dict) else {})
    except ValidationError as e:
        logger.error(f"METRIC scheduling_api_error method=GET path={path} error=bad_envelope")
        raise SchedulingAPIError(f"GET {path} returned an unusable payload") from e


def _created_id(data: Any) -> Optional[int]:
    """Id of a freshly created record, from data.id / data.Id or the top level."""
    if not isinstance(data, dict):
        return None
    inner = data.get("data")
    for source in (inner, data):
        if not isinstance(source, dict):
            continue
        value = source.get("id", source.get("Id"))
        if value is None:
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric record id: {value!r}")
            return None
    return None


def _to_team_member(record: Dict[str, Any]) -> Optional[TeamMember]:
    member_id = record.get("id", record.get("Id"))
    if member_id is None:
        return None
    first = (record.get("firstName") or record.get("FirstName") or "").strip()
    last = (record.get("lastName") or record.get("LastName") or "").strip()
    username = record.get("username") or record.get("Username") or ""
    display = f"{first} {last}".strip() or str(username)
    try:
        return TeamMember(id=int(member_id), display_name=display)
    except (TypeError, ValueError):
        return None


class SchedulingClient:
    """Async client for the scheduling REST API."""

    # Cross-call cache for identical searches (callers often repeat a name)
    SEARCH_CACHE_TTL_SECONDS = 60.0
    SEARCH_CACHE_MAX_ENTRIES = 500

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        base = base_url or os.getenv("BLINDSBOOK_API_BASE_URL", "http://localhost:3000")
        self.base_url = f"{base.rstrip('/')}/api"
        self.token = token if token is not None else os.getenv("BLINDSBOOK_API_TOKEN", "")
        self.phone_region = os.getenv("DEFAULT_PHONE_REGION", "US")
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.base_url, timeout=10.0
        )
        self._search_cache: Dict[Tuple[str, int], Tuple[List[CustomerMatch], float]] = {}
        logger.info(f"Scheduling client initialized: base_url={self.base_url}")

    async def close(self):
        """Close the HTTP client."""
        await self.http_client.aclose()
        logger.info("Scheduling client closed")

    def _headers(self) -> Dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self.http_client.request(
                method, path, headers=self._headers(), **kwargs
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"METRIC scheduling_api_error method={method} path={path} "
                f"status={e.response.status_code}"
            )
            raise SchedulingAPIError(
                f"{method} {path} failed with status {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                f"METRIC scheduling_api_error method={method} path={path} "
                f"error={type(e).__name__}"
            )
            raise SchedulingAPIError(f"{method} {path} failed: {e}") from e

    # =========================================================================
    # CUSTOMERS
    # =========================================================================

    def _cached_search(self, key: Tuple[str, int]) -> Optional[List[CustomerMatch]]:
        entry = self._search_cache.get(key)
        if entry is None:
            return None
        results, stored_at = entry
        if time.monotonic() - stored_at < self.SEARCH_CACHE_TTL_SECONDS:
            return results
        del self._search_cache[key]
        return None

    def _store_search(self, key: Tuple[str, int], results: List[CustomerMatch]) -> None:
        self._search_cache[key] = (results, time.monotonic())
        if len(self._search_cache) > self.SEARCH_CACHE_MAX_ENTRIES:
            cutoff = time.monotonic() - self.SEARCH_CACHE_TTL_SECONDS
            expired = [k for k, (_, ts) in self._search_cache.items() if ts < cutoff]
            for k in expired:
                del self._search_cache[k]

    async def search_customers(
        self, term: str, page_size: int = DEFAULT_PAGE_SIZE
    ) -> List[CustomerMatch]:
        """
        Search customers by name, phone or email.

        Args:
            term: Free-text search term
            page_size: Maximum number of records to return

        Returns:
            Matching customers in backend order (empty for a blank term)
        """
        term = term.strip()
        if not term:
            return []

        key = (term.lower(), page_size)
        cached = self._cached_search(key)
        if cached is not None:
            logger.debug(f"Customer search cache hit: term='{term}'")
            return cached

        data = await self._request(
            "GET", "/customers", params={"search": term, "page": 1, "pageSize": page_size}
        )
        envelope = _to_envelope(data, "/customers")
        results = [c for c in map(_to_customer, envelope.records("customers")) if c is not None]

        logger.info(f"Customer search: term='{term}' results={len(results)}")
        self._store_search(key, results)
        return results

    async def search_customers_by_phone(self, phone: str) -> List[CustomerMatch]:
        """Search customers by a caller-ID number in any common format."""
        normalized = normalize_phone_for_search(phone, self.phone_region)
        if len(normalized) < MIN_PHONE_SEARCH_DIGITS:
            return []
        return await self.search_customers(normalized, DEFAULT_PAGE_SIZE)

    async def search_customers_by_account_manager(
        self, term: str, account_manager_id: int
    ) -> List[CustomerMatch]:
        """General search, filtered client-side by account manager."""
        results = await self.search_customers(term, ACCOUNT_MANAGER_PAGE_SIZE)
        return [c for c in results if c.account_manager_id == account_manager_id]

    async def create_customer(self, first_name: str, last_name: str, phone: str) -> int:
        """
        Register a new customer.

        Returns:
            The new customer id

        Raises:
            SchedulingAPIError: the call failed or no id came back
        """
        data = await self._request(
            "POST",
            "/customers",
            json={"firstName": first_name, "lastName": last_name, "phone": phone},
        )
        customer_id = _created_id(data)
        if customer_id is None:
            raise SchedulingAPIError("Failed to create customer: no id returned")

        logger.info(f"Customer created: id={customer_id}")
        return customer_id

    # =========================================================================
    # TEAM
    # =========================================================================

    async def search_team_members(self, term: str) -> List[TeamMember]:
        """Search salespeople/advisors by name."""
        term = term.strip()
        if not term:
            return []

        data = await self._request(
            "GET",
            "/team/members",
            params={"search": term, "page": 1, "pageSize": DEFAULT_PAGE_SIZE},
        )
        envelope = _to_envelope(data, "/team/members")
        members = [m for m in map(_to_team_member, envelope.records("members")) if m is not None]
        logger.info(f"Team search: term='{term}' results={len(members)}")
        return members

    # =========================================================================
    # APPOINTMENTS
    # =========================================================================

    async def create_appointment(self, payload: CreateAppointmentPayload) -> Appointment:
        """Book an appointment and return the stored record."""
        body = payload.model_dump(mode="json", exclude_none=True)
        data = await self._request("POST", "/appointments", json=body)
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        try:
            appointment = Appointment.model_validate(data)
        except ValidationError as e:
            raise SchedulingAPIError("Appointment created without an id") from e

        logger.info(
            f"Appointment created: id={appointment.id} customer={payload.customerId} "
            f"type={int(payload.type)} start={payload.startDate}"
        )
        return appointment


# Singleton instance
_scheduling_client: Optional[SchedulingClient] = None


def get_scheduling_client() -> SchedulingClient:
    """Get or create the scheduling client singleton."""
    global _scheduling_client
    if _scheduling_client is None:
        _scheduling_client = SchedulingClient()
    return _scheduling_client
