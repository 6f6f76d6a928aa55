"""
Shared HTTP plumbing for the REST providers.

Unary calls are JSON over HTTP. Streams are newline-delimited JSON where each
line is ``{"result": {...}}`` or ``{"error": {...}}``.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
from loguru import logger

from arkwallet.providers.errors import ProviderError, maybe_ark_error
from arkwallet.streams import next_or_cancel


class RestClient:
    """
    Base for REST providers.

    Args:
        base_url: Server URL, e.g. ``http://localhost:7070``
        timeout: Timeout of unary calls in seconds
        client: Optional pre-configured client (tests pass a MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> RestClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def _status_error(self, endpoint: str, status_code: int, body: str) -> ProviderError:
        logger.error(f"Ark API call failed: {endpoint} - {status_code} {body}")
        return ProviderError(
            f"{endpoint} failed with status {status_code}: {body}",
            status_code=status_code,
            body=body,
            ark_error=maybe_ark_error(body),
        )

    async def _api_call(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.base_url}/{endpoint}"

        try:
            if method == "GET":
                response = await self.client.get(url, params=params)
            elif method == "POST":
                response = await self.client.post(url, json=data)
            else:
                raise ValueError(f"Unsupported HTTP method: {method}")

            response.raise_for_status()
            if not response.content:
                return {}
            return response.json()

        except httpx.HTTPStatusError as e:
            raise self._status_error(endpoint, e.response.status_code, e.response.text) from e
        except httpx.HTTPError as e:
            logger.error(f"Ark API call failed: {endpoint} - {e}")
            raise ProviderError(f"{endpoint} failed: {e}") from e

    async def _stream(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield the ``result`` object of every streamed line until EOF or cancel."""
        url = f"{self.base_url}/{endpoint}"
        try:
            async with self.client.stream(
                "GET", url, params=params, headers={"Accept": "application/json"}, timeout=None
            ) as response:
                if response.is_error:
                    body = (await response.aread()).decode(errors="replace")
                    raise self._status_error(endpoint, response.status_code, body)

                lines = response.aiter_lines()
                while True:
                    line = await next_or_cancel(lines, cancel)
                    if line is None:
                        return
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        message = json.loads(line)
                    except ValueError as e:
                        raise ProviderError(f"Invalid stream message on {endpoint}") from e
                    if message.get("error"):
                        raise ProviderError(
                            f"Stream error on {endpoint}: {message['error']}",
                            body=line,
                            ark_error=maybe_ark_error(message["error"]),
                        )
                    result = message.get("result")
                    if result is not None:
                        yield result

        except httpx.HTTPError as e:
            logger.error(f"Ark stream failed: {endpoint} - {e}")
            raise ProviderError(f"{endpoint} stream failed: {e}") from e
