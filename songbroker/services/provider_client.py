"""HTTP client for the music provider's task status API."""

import asyncio
import logging
from typing import Any, Optional

import httpx

from songbroker.config import Settings, get_settings
from songbroker.services.exceptions import (
    ProviderConnectionError,
    ProviderHTTPError,
    ProviderResponseError,
)
from songbroker.services.status_mapper import ProviderTask

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
_SUCCESS_BODY_CODES = frozenset({0, 200})


class ProviderClient:
    """Batched task status lookups with short, in-call retries."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.settings.provider_api_key,
            "Accept": "application/json",
            "User-Agent": "songbroker/1.0",
        }

    async def check_status(self, task_ids: list[str]) -> list[ProviderTask]:
        """
        Fetch the current state of one or more provider tasks in one call.

        Args:
            task_ids: Provider task ids, sent comma-joined

        Returns:
            Parsed task entries. Ids the provider does not know are simply absent.

        Raises:
            ProviderHTTPError: error status after retries
            ProviderConnectionError: transport failure after retries
            ProviderResponseError: unparseable success body
        """
        if not task_ids:
            return []

        body = await self._get(
            self.settings.provider_status_url,
            params={"ids": ",".join(task_ids)},
        )

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            raise ProviderResponseError("Status response has no 'data' list")

        tasks = []
        for entry in data:
            if not isinstance(entry, dict):
                logger.warning(f"Ignoring malformed task entry: {entry!r}")
                continue
            task = ProviderTask.from_payload(entry)
            if task.task_id:
                tasks.append(task)
        return tasks

    async def _get(self, url: str, params: dict[str, Any]) -> Any:
        attempts = max(1, self.settings.provider_retry_attempts)
        last_error: Optional[Exception] = None

        async with httpx.AsyncClient(
            timeout=self.settings.provider_timeout,
            transport=self.transport,
            headers=self._headers(),
        ) as client:
            for attempt in range(1, attempts + 1):
                try:
                    response = await client.get(url, params=params)
                except httpx.TransportError as e:
                    last_error = ProviderConnectionError(f"Connection to provider failed: {e}")
                    logger.warning(f"Provider request failed (attempt {attempt}/{attempts}): {e}")
                else:
                    if response.status_code in RETRYABLE_STATUS_CODES:
                        last_error = ProviderHTTPError(response.status_code, _error_message(response))
                        logger.warning(
                            f"Provider returned {response.status_code} "
                            f"(attempt {attempt}/{attempts})"
                        )
                    elif response.is_error:
                        raise ProviderHTTPError(
                            response.status_code,
                            _error_message(response),
                            _provider_code(response),
                        )
                    else:
                        return _parse_body(response)

                if attempt < attempts:
                    await asyncio.sleep(self.settings.provider_retry_delay_ms / 1000 * attempt)

        assert last_error is not None
        raise last_error


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    body = _json_or_none(response)
    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            if isinstance(body.get(key), str):
                return body[key]
    return response.text[:200]


def _provider_code(response: httpx.Response) -> Optional[int]:
    body = _json_or_none(response)
    if not isinstance(body, dict):
        return None
    for key in ("code", "status"):
        value = body.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _parse_body(response: httpx.Response) -> Any:
    body = _json_or_none(response)
    if body is None:
        raise ProviderResponseError("Provider returned a non-JSON body")

    # Some errors (e.g. quota) arrive as 200 with an error code in the body
    if isinstance(body, dict) and "data" not in body:
        code = _provider_code(response)
        if code is not None and code not in _SUCCESS_BODY_CODES:
            raise ProviderHTTPError(response.status_code, _error_message(response), code)
    return body
