"""Google Calendar REST client (events.list / events.watch / channels.stop) over httpx."""

from __future__ import annotations

import abc
import asyncio
import logging
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx

from calpush.core.state import KeyValueStore
from calpush.providers.base import (
    CalendarClient,
    CalendarClientError,
    CalendarClientFactory,
    CalendarRequestError,
    EventRecord,
    FetchResult,
    Subscription,
    SubscriptionError,
    SyncTokenExpiredError,
)

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CREDENTIALS_KEY_PREFIX = "credentials::"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0


class AccessTokenSource(abc.ABC):
    """Hands out bearer tokens for a user.  Acquisition and refresh live upstream."""

    @abc.abstractmethod
    async def get_access_token(self, user_id: str, *, force_refresh: bool = False) -> str: ...


class StoredAccessTokenSource(AccessTokenSource):
    """Reads ``credentials::{user_id}`` (``{"access_token": ...}``) from a key-value store.

    The authentication layer that owns the OAuth flow writes these entries on
    sign-in and after every refresh.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    @staticmethod
    def key_for(user_id: str) -> str:
        return f"{CREDENTIALS_KEY_PREFIX}{user_id}"

    async def put(self, user_id: str, access_token: str) -> None:
        await self._store.set(self.key_for(user_id), {"access_token": access_token})

    async def remove(self, user_id: str) -> None:
        await self._store.delete(self.key_for(user_id))

    async def get_access_token(self, user_id: str, *, force_refresh: bool = False) -> str:
        payload = await self._store.get(self.key_for(user_id))
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token.strip():
            raise CalendarRequestError(
                status_code=401,
                message=f"No stored access token for user '{user_id}'",
            )
        return token.strip()


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _parse_expiration_ms(value: Any) -> datetime | None:
    try:
        expiration_ms = int(value)
    except (TypeError, ValueError):
        return None
    if expiration_ms <= 0:
        return None
    return datetime.fromtimestamp(expiration_ms / 1000, UTC)


class GoogleCalendarClient(CalendarClient):
    """Credentialed Google Calendar client for one user and one calendar."""

    def __init__(
        self,
        *,
        user_id: str,
        token_source: AccessTokenSource,
        http_client: httpx.AsyncClient | None = None,
        calendar_id: str = "primary",
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
    ) -> None:
        self._user_id = user_id
        self._token_source = token_source
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._calendar_id = calendar_id
        self._base_url = base_url.rstrip("/")

    @property
    def _events_path(self) -> str:
        return f"/calendars/{quote(self._calendar_id, safe='')}/events"

    async def fetch_full(self, *, window_start: datetime) -> FetchResult:
        params: dict[str, Any] = {
            "timeMin": _google_rfc3339(window_start),
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        return await self._list_all_pages(params)

    async def fetch_delta(self, *, token: str) -> FetchResult:
        # Must repeat singleEvents from the initial sync; timeMin and orderBy are rejected here.
        return await self._list_all_pages({"syncToken": token, "singleEvents": "true"})

    async def _list_all_pages(self, base_params: dict[str, Any]) -> FetchResult:
        """Follow ``nextPageToken`` to the last page; that page carries ``nextSyncToken``."""
        items: list[EventRecord] = []
        next_page_token: str | None = None
        next_sync_token: str | None = None

        while True:
            params = dict(base_params)
            if next_page_token is not None:
                params["pageToken"] = next_page_token

            response = await self._request("GET", self._events_path, params=params)

            # 410 Gone means the sync token is expired; caller must do a full re-sync.
            if response.status_code == 410:
                raise SyncTokenExpiredError(
                    f"Sync token expired for calendar '{self._calendar_id}'; full re-sync required"
                )
            payload = self._json_or_raise(response)

            raw_items = payload.get("items")
            if isinstance(raw_items, list):
                for item in raw_items:
                    if not isinstance(item, dict):
                        continue
                    try:
                        items.append(EventRecord.from_payload(item))
                    except ValueError:
                        logger.debug("Skipping calendar item without an id: %r", item)

            page_token = payload.get("nextPageToken")
            next_page_token = page_token if isinstance(page_token, str) and page_token else None
            candidate = payload.get("nextSyncToken")
            if isinstance(candidate, str) and candidate.strip():
                next_sync_token = candidate.strip()

            if next_page_token is None:
                break

        if next_sync_token is None:
            logger.warning(
                "Calendar list for '%s' ended without nextSyncToken",
                self._calendar_id,
            )
        return FetchResult(items=items, continuation_token=next_sync_token)

    async def create_subscription(
        self,
        address: str,
        *,
        channel_id: str,
        token: str | None = None,
        ttl_seconds: int | None = None,
    ) -> Subscription:
        body: dict[str, Any] = {"id": channel_id, "type": "web_hook", "address": address}
        if token:
            body["token"] = token
        if ttl_seconds:
            body["params"] = {"ttl": str(ttl_seconds)}

        try:
            response = await self._request("POST", f"{self._events_path}/watch", json_body=body)
            payload = self._json_or_raise(response)
        except CalendarClientError as exc:
            raise SubscriptionError(f"Failed to create calendar watch channel: {exc}") from exc

        issued_id = payload.get("id")
        resource_id = payload.get("resourceId")
        return Subscription(
            channel_id=issued_id if isinstance(issued_id, str) and issued_id else channel_id,
            resource_id=resource_id if isinstance(resource_id, str) and resource_id else None,
            expires_at=_parse_expiration_ms(payload.get("expiration")),
        )

    async def stop_subscription(self, *, channel_id: str, resource_id: str | None) -> None:
        body: dict[str, Any] = {"id": channel_id}
        if resource_id:
            body["resourceId"] = resource_id
        response = await self._request("POST", "/channels/stop", json_body=body)
        # 404: the channel already expired on Google's side.
        if response.status_code == 404:
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )

    def _json_or_raise(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )
        if response.status_code == 204:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarClientError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarClientError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        response = await self._request_once(method, url, params, json_body, force_refresh=False)

        if response.status_code == 401:
            response = await self._request_once(method, url, params, json_body, force_refresh=True)

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(method, url, params, json_body, force_refresh=False)
            retry += 1

        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        *,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._token_source.get_access_token(
            self._user_id, force_refresh=force_refresh
        )
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarRequestError(status_code=None, message=str(exc)) from exc

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


class GoogleClientFactory(CalendarClientFactory):
    """Builds per-user :class:`GoogleCalendarClient` instances on one shared connection pool."""

    def __init__(
        self,
        token_source: AccessTokenSource,
        *,
        calendar_id: str = "primary",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token_source = token_source
        self._calendar_id = calendar_id
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    async def client_for(self, user_id: str) -> GoogleCalendarClient:
        return GoogleCalendarClient(
            user_id=user_id,
            token_source=self._token_source,
            http_client=self._http_client,
            calendar_id=self._calendar_id,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
