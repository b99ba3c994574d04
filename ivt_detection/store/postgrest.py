from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError

from ..core.exceptions import StoreError, StoreUnavailableError
from ..core.models import Impression, ImpressionUpdate, IPFrequencyRecord, PostgrestSettings
from .base import EventStore

IMPRESSIONS_TABLE = "ivt_impressions"
IP_FREQUENCY_TABLE = "ivt_ip_frequency"

# PostgREST error codes for a missing function / relation.
_MISSING_CODES = {"PGRST202", "42883", "42P01", "PGRST205"}


class PostgrestEventStore(EventStore):
    """
    Event store backed by the Supabase Postgres database, reached through
    its PostgREST interface.

    Frequency aggregation uses the ``get_ifa_frequency`` / ``get_ip_frequency``
    SQL functions; when they have not been deployed the calls raise
    ``StoreUnavailableError``.
    """

    def __init__(
        self,
        settings: PostgrestSettings,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=f"{settings.url}/rest/v1",
            headers={
                "apikey": settings.service_key,
                "Authorization": f"Bearer {settings.service_key}",
            },
            timeout=settings.timeout_seconds,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """
        Issue one request and translate transport / status failures to StoreError.

        Raises
        ------
        StoreUnavailableError
            The table or RPC function does not exist on the server.
        StoreError
            Any other transport error or non-2xx status.
        """
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise StoreError(f"{method} {path} failed: {exc}") from exc

        if response.is_success:
            return response

        code, message = _error_details(response)
        if response.status_code == 404 or code in _MISSING_CODES:
            raise StoreUnavailableError(f"{method} {path}: {message}")
        raise StoreError(f"{method} {path} returned {response.status_code}: {message}")

    async def _rpc(self, function: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        response = await self._request(
            "POST",
            f"/rpc/{function}",
            json={"start_ts": start.isoformat(), "end_ts": end.isoformat()},
        )
        return _json_rows(response)

    async def fetch_unanalyzed(self, limit: int) -> List[Impression]:
        response = await self._request(
            "GET",
            f"/{IMPRESSIONS_TABLE}",
            params={
                "select": "*",
                "analyzed_at": "is.null",
                "order": "id.asc",
                "limit": str(limit),
            },
        )
        rows = _json_rows(response)
        try:
            return [Impression.model_validate(row) for row in rows]
        except ValidationError as exc:
            raise StoreError(f"Malformed row from /{IMPRESSIONS_TABLE}: {exc}") from exc

    async def ifa_frequency(
        self, start: datetime, end: datetime, min_count: int = 0
    ) -> Dict[str, int]:
        # The SQL function applies its own HAVING bound; min_count narrows further.
        rows = await self._rpc("get_ifa_frequency", start, end)
        counts = _counts(rows, "ifa")
        return {k: v for k, v in counts.items() if v > min_count}

    async def ip_frequency(
        self, start: datetime, end: datetime, min_count: int = 0
    ) -> Dict[str, int]:
        rows = await self._rpc("get_ip_frequency", start, end)
        counts = _counts(rows, "ip")
        return {k: v for k, v in counts.items() if v > min_count}

    async def update_impression(self, update: ImpressionUpdate) -> None:
        await self._request(
            "PATCH",
            f"/{IMPRESSIONS_TABLE}",
            params={"id": f"eq.{update.id}"},
            json=update.model_dump(mode="json", exclude={"id"}),
            headers={"Prefer": "return=minimal"},
        )

    async def upsert_ip_frequency(self, records: Sequence[IPFrequencyRecord]) -> None:
        if not records:
            return
        await self._request(
            "POST",
            f"/{IP_FREQUENCY_TABLE}",
            params={"on_conflict": "ip"},
            json=[r.model_dump(mode="json") for r in records],
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_details(response: httpx.Response) -> tuple:
    try:
        body = response.json()
    except ValueError:
        return None, response.text
    if isinstance(body, dict):
        return body.get("code"), body.get("message") or response.text
    return None, response.text


def _json_rows(response: httpx.Response) -> List[Dict[str, Any]]:
    """Decode a 2xx body that must be a JSON array of objects."""
    try:
        body = response.json()
    except ValueError as exc:
        raise StoreError(f"{response.request.url.path}: response is not JSON") from exc
    if body is None:
        return []
    if not isinstance(body, list) or not all(isinstance(row, dict) for row in body):
        raise StoreError(f"{response.request.url.path}: expected a JSON array of rows")
    return body


def _counts(rows: List[Dict[str, Any]], key: str) -> Dict[str, int]:
    try:
        return {row[key]: int(row["cnt"]) for row in rows if row.get(key)}
    except (KeyError, TypeError, ValueError) as exc:
        raise StoreError(f"Malformed {key} frequency row: {exc!r}") from exc
