"""Shared REST plumbing for the remote repository and gateway adapters."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from labcare.core.errors import (
    ConflictError,
    EncounterNotFoundError,
    NetworkError,
    TerminalStateError,
    ValidationError,
    WorkflowError,
)

logger = logging.getLogger(__name__)


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("message") or body)
    return str(body)


def error_for_response(response: httpx.Response) -> Optional[WorkflowError]:
    """Translate a non-success response into the workflow error taxonomy."""
    status = response.status_code
    if status < 400:
        return None

    message = f"{response.request.method} {response.request.url.path} -> {status}: {_detail(response)}"
    if status == 404:
        return EncounterNotFoundError(message)
    if status == 409:
        return ConflictError(message)
    if status in (400, 422):
        return ValidationError(message)
    if status in (410, 423):
        return TerminalStateError(message)
    # 5xx and anything unexpected: the server may or may not have applied it.
    return NetworkError(message)


class RestClient:
    """Thin httpx wrapper with error mapping and retries for idempotent reads.

    Writes are sent exactly once. A timeout on a write surfaces as
    NetworkError and the caller resynchronizes.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.backoff = backoff
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            transport=transport,
            headers=headers,
        )

    async def _send(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method} {path} timed out; outcome unknown") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

        error = error_for_response(response)
        if error is not None:
            raise error
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(
                f"{method} {path} returned {response.status_code} with a non-JSON body"
            ) from e

    async def get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        """GET with exponential-backoff retries on transport failures."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(NetworkError),
            stop=stop_after_attempt(max(1, self.max_retries)),
            wait=wait_exponential(multiplier=self.backoff, max=10),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "Retrying GET %s (attempt %d)", path, attempt.retry_state.attempt_number
                    )
                return await self._send("GET", path, params=params)

    async def post(self, path: str, json: Optional[dict[str, Any]] = None) -> Any:
        return await self._send("POST", path, json=json)

    async def close(self) -> None:
        await self._client.aclose()
