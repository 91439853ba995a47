"""
HTTP ingestion sink (Fluentd `in_http` style).

POSTs each event payload as JSON to the destination URL. Transport failures,
408/425/429 and 5xx responses are connection problems: the sink retries them
itself with doubling delays (`retries` times, waiting after every failure) and
then raises ConnectionProblem. Any other non-2xx response is a permanent
DeliveryError.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import httpx
from loguru import logger

from ..pipeline.errors import ConnectionProblem, DeliveryError
from ..pipeline.types import Event, Sink

_RETRIABLE_STATUS = {408, 425, 429}
MAX_RETRY_DELAY = 10.0


class HttpSink(Sink):
    def __init__(
        self,
        *,
        timeout: float = 10.0,
        ca: Optional[Path] = None,
        cert: Optional[Path] = None,
        key: Optional[Path] = None,
        retries: int = 3,
        retry_delay: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if retries < 0:
            raise ValueError("retries must be >= 0")
        if retry_delay <= 0:
            raise ValueError("retry_delay must be > 0")

        self._timeout = timeout
        self._ca = ca
        self._cert = cert
        self._key = key
        self._retries = retries
        self._retry_delay = retry_delay
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        if self._client is not None:
            return
        kwargs = {"timeout": self._timeout}
        if self._ca is not None:
            kwargs["verify"] = str(self._ca)
        if self._cert is not None and self._key is not None:
            kwargs["cert"] = (str(self._cert), str(self._key))
        if self._transport is not None:
            kwargs["transport"] = self._transport
        self._client = httpx.AsyncClient(**kwargs)
        logger.debug("HTTP sink client started")

    async def close(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        logger.debug("HTTP sink client closed")

    async def send(self, url: str, event: Event) -> None:
        if self._client is None:
            await self.start()

        delay = self._retry_delay
        attempt = 0
        while True:
            try:
                await self._post(url, event)
                return
            except ConnectionProblem as e:
                attempt += 1
                logger.warning(f"Sink delivery of {event.id} failed (attempt {attempt}): {e}")
                await asyncio.sleep(delay)
                if attempt > self._retries:
                    raise
                delay = min(delay * 2, MAX_RETRY_DELAY)

    async def _post(self, url: str, event: Event) -> None:
        try:
            response = await self._client.post(url, json=event.payload or event.model_dump(mode="json"))
        except httpx.TransportError as e:
            raise ConnectionProblem(f"{type(e).__name__} sending to {url}: {e}") from e

        status = response.status_code
        if 200 <= status < 300:
            return
        if status >= 500 or status in _RETRIABLE_STATUS:
            raise ConnectionProblem(f"Sink returned {status} for {url}")
        raise DeliveryError(f"Sink rejected event {event.id} with {status}: {response.text[:200]}")
