from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx


class WebhookReceiver:
    """Records webhook requests and answers with scripted status codes."""

    def __init__(self, *, statuses: list[int] | None = None, default_status: int = 200) -> None:
        self.requests: list[httpx.Request] = []
        self.statuses = list(statuses or [])
        self.default_status = default_status
        # When set, every request fails at the transport layer instead of returning a response.
        self.refuse_connections = False
        # When set, requests are held open until the event fires.
        self.gate: asyncio.Event | None = None

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.refuse_connections:
            raise httpx.ConnectError("connection refused", request=request)
        status = self.statuses.pop(0) if self.statuses else self.default_status
        return httpx.Response(status, json={"received": status < 300})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def payloads(self, event: str | None = None) -> list[dict[str, Any]]:
        decoded = [json.loads(request.content) for request in self.requests]
        if event is None:
            return decoded
        return [payload for payload in decoded if payload["event"] == event]

    async def wait_for(self, count: int, *, timeout: float = 2.0) -> None:
        # Poll until at least count requests arrived; deliveries run in background tasks.
        deadline = asyncio.get_running_loop().time() + timeout
        while len(self.requests) < count:
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError(f"expected {count} webhook requests, got {len(self.requests)}")
            await asyncio.sleep(0.01)
