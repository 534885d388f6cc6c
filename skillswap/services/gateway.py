"""Remote Data Gateway.

Typed request/response boundary around the hosted store's PostgREST API.
Every call is a single HTTP request; failures are translated into
:class:`~skillswap.services.errors.GatewayError` with a machine-readable
code and nothing is retried here (see ``skillswap.services.retry`` for the
read-only retry wrapper).

The access token is never written to logs.
"""
from __future__ import annotations

import logging

import httpx

from skillswap.config import settings
from skillswap.contracts.json_types import JSONValue, Record
from skillswap.services.errors import ErrorCode, GatewayError
from skillswap.services.query import ALL, Filter, Order

logger = logging.getLogger(__name__)

# PostgREST / Postgres error codes with a stable meaning for the client.
_PG_UNIQUE_VIOLATION = "23505"
_PG_INSUFFICIENT_PRIVILEGE = "42501"
_PGRST_NO_ROWS = "PGRST116"

_TRANSIENT_STATUSES = frozenset({408, 425, 429})

_CONNECTION_LIMITS = httpx.Limits(
    max_connections=20,
    max_keepalive_connections=10,
    keepalive_expiry=30.0,
)


def classify_response(response: httpx.Response) -> GatewayError:
    """Translate a non-2xx store response into a GatewayError."""
    status = response.status_code
    body: dict[str, JSONValue] = {}
    try:
        parsed = response.json()
        if isinstance(parsed, dict):
            body = parsed
    except ValueError:
        pass
    pg_code = str(body.get("code") or "")
    message = str(body.get("message") or body.get("error") or response.reason_phrase or f"HTTP {status}")

    if status >= 500 or status in _TRANSIENT_STATUSES:
        code = ErrorCode.TRANSIENT
    elif status == 404 or pg_code == _PGRST_NO_ROWS:
        code = ErrorCode.NOT_FOUND
    elif status == 409 or pg_code == _PG_UNIQUE_VIOLATION:
        code = ErrorCode.CONFLICT
    elif status in (401, 403) or pg_code == _PG_INSUFFICIENT_PRIVILEGE:
        code = ErrorCode.PERMISSION_DENIED
    else:
        code = ErrorCode.INVALID
    return GatewayError(code, message, status=status)


class RemoteDataGateway:
    """
    Async client for the hosted store's table API.

    Uses a long-lived ``httpx.AsyncClient`` with keepalive pooling; the
    gateway holds no other state and is shared by every collection.

    Args:
        base_url: PostgREST base URL (defaults to ``settings.rest_url``).
        api_key: Project API key sent as ``apikey``.
        access_token: Signed-in user's JWT; falls back to the API key.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        access_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.rest_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.store_anon_key
        self.timeout = timeout or settings.request_timeout
        self._access_token = access_token
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # ------------------------------------------------------------------
    # Client lifecycle
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        bearer = self._access_token or self.api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                limits=_CONNECTION_LIMITS,
                transport=self._transport,
            )
        return self._client

    def set_access_token(self, token: str | None) -> None:
        """Swap the bearer token (sign-in / token refresh)."""
        self._access_token = token
        if self._client is not None:
            self._client.headers.update(self._headers())
            if not token and not self.api_key:
                self._client.headers.pop("Authorization", None)
        logger.debug("✅ Gateway auth header updated (Bearer ***)")

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        resource: str,
        *,
        params: list[tuple[str, str]] | None = None,
        json: JSONValue = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self.client.request(
                method, f"/{resource}", params=params, json=json, headers=headers
            )
        except httpx.TimeoutException as exc:
            logger.warning(f"⚠️ {method} {resource} timed out: {exc}")
            raise GatewayError(ErrorCode.TRANSIENT, f"Request to {resource} timed out") from exc
        except httpx.TransportError as exc:
            logger.warning(f"⚠️ {method} {resource} transport error: {exc}")
            raise GatewayError(ErrorCode.TRANSIENT, f"Could not reach the store: {exc}") from exc

        if response.is_error:
            error = classify_response(response)
            logger.warning(
                f"❌ {method} {resource} failed: {error.code.value} "
                f"(HTTP {response.status_code}) {error.message}"
            )
            raise error
        return response

    @staticmethod
    def _rows(response: httpx.Response) -> list[Record]:
        if not response.content:
            return []
        data = response.json()
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            return [data]
        raise GatewayError(ErrorCode.INVALID, f"Unexpected response body: {type(data).__name__}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch(
        self,
        resource: str,
        filter: Filter = ALL,
        order: Order | None = None,
        limit: int | None = None,
        columns: str = "*",
    ) -> list[Record]:
        """Return rows of *resource* matching *filter*."""
        params = [("select", columns), *filter.to_params()]
        if order is not None:
            params.append(("order", order.to_param()))
        if limit is not None:
            params.append(("limit", str(limit)))
        response = await self._send("GET", resource, params=params)
        rows = self._rows(response)
        logger.debug(f"Fetched {len(rows)} {resource} row(s) where {filter}")
        return rows

    async def fetch_one(self, resource: str, filter: Filter, columns: str = "*") -> Record:
        """Return the single row matching *filter*; not-found when absent."""
        rows = await self.fetch(resource, filter, limit=1, columns=columns)
        if not rows:
            raise GatewayError(ErrorCode.NOT_FOUND, f"No {resource} row where {filter}", status=None)
        return rows[0]

    # ------------------------------------------------------------------
    # Writes (never retried)
    # ------------------------------------------------------------------

    async def insert(self, resource: str, record: Record) -> Record:
        """Insert one row and return the stored representation."""
        response = await self._send("POST", resource, json=record, prefer="return=representation")
        rows = self._rows(response)
        if not rows:
            raise GatewayError(ErrorCode.INVALID, f"Insert into {resource} returned no row")
        logger.info(f"✅ Inserted {resource} {rows[0].get('id')}")
        return rows[0]

    async def insert_many(self, resource: str, records: list[Record]) -> list[Record]:
        """Insert several rows in one request."""
        response = await self._send(
            "POST", resource, json=list(records), prefer="return=representation"
        )
        rows = self._rows(response)
        logger.info(f"✅ Inserted {len(rows)} {resource} row(s)")
        return rows

    async def update(
        self,
        resource: str,
        key: str,
        patch: Record,
        key_field: str = "id",
    ) -> Record:
        """Patch the row with *key* and return its new representation."""
        params = Filter().eq(key_field, key).to_params()
        response = await self._send(
            "PATCH", resource, params=params, json=patch, prefer="return=representation"
        )
        rows = self._rows(response)
        if not rows:
            raise GatewayError(ErrorCode.NOT_FOUND, f"No {resource} row with {key_field}={key}")
        logger.info(f"✅ Updated {resource} {key}")
        return rows[0]

    async def delete(
        self,
        resource: str,
        key: str,
        filter: Filter = ALL,
        key_field: str = "id",
    ) -> None:
        """Delete the row with *key*; *filter* narrows it further (e.g. owner)."""
        params = Filter((*Filter().eq(key_field, key).clauses, *filter.clauses)).to_params()
        await self._send("DELETE", resource, params=params)
        logger.info(f"✅ Deleted {resource} {key}")


# ---------------------------------------------------------------------------
# Module-level singleton, shared across all collections so the connection
# pool is reused rather than recreated per screen.
# ---------------------------------------------------------------------------

_shared_gateway: RemoteDataGateway | None = None


def get_gateway() -> RemoteDataGateway:
    """Return the process-wide RemoteDataGateway singleton."""
    global _shared_gateway
    if _shared_gateway is None:
        _shared_gateway = RemoteDataGateway()
    return _shared_gateway


async def close_gateway() -> None:
    """Close the singleton gateway."""
    global _shared_gateway
    if _shared_gateway is not None:
        await _shared_gateway.close()
        _shared_gateway = None
