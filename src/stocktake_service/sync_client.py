"""HTTP client used by the offline queue to talk to the stocktake API."""
from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx

from . import schemas
from .errors import StocktakeNotActive, SyncFailure, SyncRejected

logger = logging.getLogger(__name__)

_TRANSIENT_CLIENT_ERRORS = {httpx.codes.REQUEST_TIMEOUT, httpx.codes.TOO_MANY_REQUESTS}


class SyncClient:
    """Thin async wrapper around the count sync endpoints.

    Transport errors, timeouts and ``5xx`` responses are raised as
    :class:`SyncFailure`; a ``409`` becomes :class:`StocktakeNotActive` and any
    other ``4xx`` becomes :class:`SyncRejected`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "SyncClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self, method: str, url: str, stocktake_id: str, **kwargs: object
    ) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, **kwargs)  # type: ignore[arg-type]
        except httpx.HTTPError as exc:
            raise SyncFailure(f"{method} {url} failed: {exc!r}") from exc
        if resp.status_code == httpx.codes.CONFLICT:
            raise StocktakeNotActive(stocktake_id, "is not accepting changes")
        if resp.is_client_error and resp.status_code not in _TRANSIENT_CLIENT_ERRORS:
            raise SyncRejected(
                resp.status_code,
                f"{method} {url} was rejected with {resp.status_code}: {resp.text[:200]}",
            )
        if resp.is_error:
            raise SyncFailure(f"{method} {url} returned {resp.status_code}: {resp.text[:200]}")
        return resp

    async def push_counts(
        self, stocktake_id: str, events: Sequence[schemas.CountEventBase]
    ) -> schemas.SyncPushResponse:
        payload = schemas.SyncPushRequest(events=list(events)).model_dump(mode="json")
        resp = await self._request(
            "POST", f"/stocktakes/{stocktake_id}/counts", stocktake_id, json=payload
        )
        return schemas.SyncPushResponse.model_validate(resp.json())

    async def push_deletions(
        self, stocktake_id: str, sync_ids: Sequence[str]
    ) -> schemas.DeleteCountsResponse:
        payload = schemas.DeleteCountsRequest(sync_ids=list(sync_ids)).model_dump()
        resp = await self._request(
            "POST", f"/stocktakes/{stocktake_id}/counts/delete", stocktake_id, json=payload
        )
        return schemas.DeleteCountsResponse.model_validate(resp.json())

    async def fetch_snapshot(self, stocktake_id: str) -> schemas.StocktakeSnapshot:
        resp = await self._request("GET", f"/stocktakes/{stocktake_id}/snapshot", stocktake_id)
        return schemas.StocktakeSnapshot.model_validate(resp.json())

    async def fetch_counts(
        self, stocktake_id: str, *, recorded_by: str | None = None
    ) -> list[schemas.CountEventOut]:
        params = {"recorded_by": recorded_by} if recorded_by else None
        resp = await self._request(
            "GET", f"/stocktakes/{stocktake_id}/counts", stocktake_id, params=params
        )
        return [schemas.CountEventOut.model_validate(item) for item in resp.json()]


__all__ = ["SyncClient"]
