"""Launch migration jobs on the worker service with bounded concurrency.

The worker acknowledges a job start and keeps running in the background, so a
read timeout after the connection was accepted still counts as a launch.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, AsyncIterator, Iterable, Optional

import httpx
from loguru import logger

from .config import Settings
from .constants import (
    RESPONSE_PREVIEW_CHARS,
    SINGLE_CONNECT_TIMEOUT,
    SINGLE_TOTAL_TIMEOUT,
    STATUS_ERROR,
    STATUS_IN_PROGRESS,
)
from .errors import DispatchError
from .models import DispatchRequest, DispatchResult
from .utils import _coerce_int


def build_worker_params(request: DispatchRequest, settings: Settings) -> dict[str, Any]:
    """Query parameters for the worker's job-start endpoint.

    Raises:
        ValueError: If the request lacks a source id, target id or credentials.
    """
    if not request.source_id:
        raise ValueError("source id is required")
    if not request.target_id or int(request.target_id) <= 0:
        raise ValueError(f"target id is required for {request.source_id}")
    site_id = request.site_id or settings.mb_site_id
    secret = request.secret or settings.mb_secret
    if not site_id or not secret:
        raise ValueError("mb_site_id and mb_secret are required")

    params: dict[str, Any] = {
        "mb_project_uuid": request.source_id,
        "brz_project_id": int(request.target_id),
        "mb_site_id": site_id,
        "mb_secret": secret,
    }
    if request.workspace_id:
        params["brz_workspaces_id"] = int(request.workspace_id)
    if request.page_slug:
        params["mb_page_slug"] = request.page_slug
    params["mgr_manual"] = 1 if request.manual_mode else 0
    params["quality_analysis"] = "true" if request.quality_analysis else "false"
    if request.wave_id:
        params["wave_id"] = request.wave_id
    if settings.webhook_url:
        params["webhookUrl"] = settings.webhook_url
    return params


def _ack_target_id(body: str) -> Optional[int]:
    if not body:
        return None
    try:
        data = json.loads(body)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    for key in ("brizy_project_id", "target_id"):
        value = _coerce_int(data.get(key))
        if value > 0:
            return value
    value = data.get("value")
    if isinstance(value, dict):
        value_id = _coerce_int(value.get("brizy_project_id"))
        if value_id > 0:
            return value_id
    return None


def _ack_payload(body: str) -> dict[str, Any]:
    if not body:
        return {}
    try:
        data = json.loads(body)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def classify_outcome(
    source_id: str,
    target_id: Optional[int],
    http_code: int,
    error: Optional[str],
    body: str = "",
    timed_out: Optional[bool] = None,
) -> DispatchResult:
    """Turn a transport outcome into a launch verdict.

    A timeout means the worker accepted (or is still accepting) the job unless
    the connection was refused outright. `timed_out` comes from the exception
    type when known; otherwise the error text decides.
    """
    body = body or ""
    ack_target = _ack_target_id(body)
    resolved_target = ack_target or target_id
    payload = _ack_payload(body)

    if not error and http_code in (200, 202):
        return DispatchResult(
            source_id=source_id,
            target_id=resolved_target,
            success=True,
            status=STATUS_IN_PROGRESS,
            http_code=http_code,
            message="Migration started",
            payload=payload,
        )

    if error:
        lowered = error.lower()
        if timed_out is None:
            is_timeout = "timed out" in lowered or "timeout" in lowered
        else:
            is_timeout = timed_out
        refused = "connection refused" in lowered
        if is_timeout and (http_code > 0 or not refused):
            return DispatchResult(
                source_id=source_id,
                target_id=resolved_target,
                success=True,
                status=STATUS_IN_PROGRESS,
                http_code=http_code,
                message="Migration started in background",
                payload=payload,
            )
        return DispatchResult(
            source_id=source_id,
            target_id=resolved_target,
            success=False,
            status=STATUS_ERROR,
            http_code=http_code,
            error=error,
        )

    return DispatchResult(
        source_id=source_id,
        target_id=resolved_target,
        success=False,
        status=STATUS_ERROR,
        http_code=http_code,
        error=f"Unknown launch status (HTTP {http_code})",
        response_preview=body[:RESPONSE_PREVIEW_CHARS] or None,
        payload=payload,
    )


def _describe_transport_error(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.PoolTimeout):
        return "No free connection to the worker service"
    if isinstance(exc, httpx.ConnectTimeout):
        return "Connection timed out"
    if isinstance(exc, httpx.TimeoutException):
        return "Operation timed out"
    return str(exc) or exc.__class__.__name__


def _is_launch_timeout(exc: httpx.HTTPError) -> bool:
    # A pool timeout means the request never left this process.
    return isinstance(exc, httpx.TimeoutException) and not isinstance(exc, httpx.PoolTimeout)


async def _deliver(client: httpx.AsyncClient, outgoing: httpx.Request, deadline: float) -> tuple[int, str]:
    """Send one request and return (HTTP code, body) within `deadline` seconds.

    Raises:
        DispatchError: On transport failure or when the deadline passes. The
            HTTP code is kept when headers arrived before the failure.
    """
    seen = {"http_code": 0}

    async def _exchange() -> str:
        response = await client.send(outgoing, stream=True)
        seen["http_code"] = response.status_code
        try:
            return (await response.aread()).decode("utf-8", errors="replace")
        finally:
            await response.aclose()

    try:
        body = await asyncio.wait_for(_exchange(), timeout=deadline)
    except asyncio.TimeoutError as exc:
        raise DispatchError("Operation timed out", seen["http_code"], timed_out=True) from exc
    except httpx.HTTPError as exc:
        raise DispatchError(
            _describe_transport_error(exc), seen["http_code"], timed_out=_is_launch_timeout(exc)
        ) from exc
    return seen["http_code"], body


def _deliver_sync(client: httpx.Client, url: str, params: dict[str, Any], deadline: float) -> tuple[int, str]:
    http_code = 0
    chunks: list[bytes] = []
    expires = time.monotonic() + deadline
    try:
        with client.stream("GET", url, params=params) as response:
            http_code = response.status_code
            for chunk in response.iter_bytes():
                chunks.append(chunk)
                if time.monotonic() > expires:
                    raise DispatchError("Operation timed out", http_code, timed_out=True)
    except httpx.HTTPError as exc:
        raise DispatchError(_describe_transport_error(exc), http_code, timed_out=_is_launch_timeout(exc)) from exc
    return http_code, b"".join(chunks).decode("utf-8", errors="replace")


class BatchDispatcher:
    """Send job-start requests to the worker service.

    `transport` lets tests plug in an `httpx.MockTransport`.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sync_transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._sync_transport = sync_transport

    @property
    def endpoint(self) -> str:
        return f"{self.settings.worker_url}/"

    def _batch_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.settings.total_timeout, connect=self.settings.connect_timeout)

    async def _send(self, client: httpx.AsyncClient, request: DispatchRequest) -> DispatchResult:
        try:
            params = build_worker_params(request, self.settings)
            outgoing = client.build_request("GET", self.endpoint, params=params)
        except (ValueError, httpx.HTTPError) as exc:
            logger.error("Could not build launch request for {}: {}", request.source_id, exc)
            return DispatchResult(
                source_id=request.source_id,
                target_id=request.target_id,
                success=False,
                status=STATUS_ERROR,
                error=str(exc),
                stage="initialization",
            )

        error: Optional[str] = None
        timed_out: Optional[bool] = None
        try:
            http_code, body = await _deliver(client, outgoing, self.settings.total_timeout)
        except DispatchError as exc:
            http_code, body, error, timed_out = exc.http_code, "", str(exc), exc.timed_out

        result = classify_outcome(request.source_id, request.target_id, http_code, error, body, timed_out)
        logger.info(
            "Launch {} -> target {}: {} (HTTP {}{})",
            request.source_id,
            result.target_id,
            result.status,
            http_code,
            f", {error}" if error else "",
        )
        return result

    async def stream(
        self,
        requests: Iterable[DispatchRequest],
        concurrency_limit: int,
    ) -> AsyncIterator[DispatchResult]:
        """Yield one result per request in completion order."""
        pending = list(requests)
        if not pending:
            return
        limit = max(1, int(concurrency_limit))
        semaphore = asyncio.Semaphore(limit)

        async with httpx.AsyncClient(
            timeout=self._batch_timeout(),
            limits=httpx.Limits(max_connections=limit, max_keepalive_connections=limit),
            follow_redirects=True,
            transport=self._transport,
        ) as client:

            async def _bounded(request: DispatchRequest) -> DispatchResult:
                async with semaphore:
                    try:
                        return await self._send(client, request)
                    except Exception as exc:
                        logger.exception("Launch of {} failed unexpectedly", request.source_id)
                        return DispatchResult(
                            source_id=request.source_id,
                            target_id=request.target_id,
                            success=False,
                            status=STATUS_ERROR,
                            error=str(exc),
                            stage="initialization",
                        )

            tasks = [asyncio.create_task(_bounded(request)) for request in pending]
            for next_done in asyncio.as_completed(tasks):
                yield await next_done

    async def _collect(self, requests: list[DispatchRequest], concurrency_limit: int) -> list[DispatchResult]:
        return [result async for result in self.stream(requests, concurrency_limit)]

    def dispatch_batch(self, requests: Iterable[DispatchRequest], concurrency_limit: int) -> list[DispatchResult]:
        """Blocking wrapper around `stream`; call it from a worker thread."""
        batch = list(requests)
        if not batch:
            return []
        logger.info("Dispatching {} migrations (concurrency {})", len(batch), concurrency_limit)
        return asyncio.run(self._collect(batch, concurrency_limit))

    def dispatch_one(self, request: DispatchRequest) -> DispatchResult:
        """Launch a single job with the longer single-request timeouts."""
        try:
            params = build_worker_params(request, self.settings)
        except ValueError as exc:
            return DispatchResult(
                source_id=request.source_id,
                target_id=request.target_id,
                success=False,
                status=STATUS_ERROR,
                error=str(exc),
                stage="initialization",
            )

        error: Optional[str] = None
        timed_out: Optional[bool] = None
        timeout = httpx.Timeout(SINGLE_TOTAL_TIMEOUT, connect=SINGLE_CONNECT_TIMEOUT)
        with httpx.Client(timeout=timeout, follow_redirects=True, transport=self._sync_transport) as client:
            try:
                http_code, body = _deliver_sync(client, self.endpoint, params, SINGLE_TOTAL_TIMEOUT)
            except DispatchError as exc:
                http_code, body, error, timed_out = exc.http_code, "", str(exc), exc.timed_out

        result = classify_outcome(request.source_id, request.target_id, http_code, error, body, timed_out)
        logger.info("Launch {} -> target {}: {} (HTTP {})", request.source_id, result.target_id, result.status, http_code)
        return result
