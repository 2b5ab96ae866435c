"""
Client-side polling contract for discovery sessions and research requests.

Intervals adapt to the snapshot: poll every 3s while work is active (and
during the warm-up), every 5s below 50% progress, every 10s after that.
Jobs are created right after discovery returns, so a session is never
declared complete during the first 30 seconds.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

ACTIVE_INTERVAL_SECONDS = 3.0
EARLY_INTERVAL_SECONDS = 5.0
LATE_INTERVAL_SECONDS = 10.0
WARMUP_SECONDS = 30.0

_ACTIVE_JOB_STATUSES = {"queued", "running"}
_TERMINAL_JOB_STATUSES = {"done", "failed"}
_ACTIVE_DOSSIER_STATUSES = {"queued", "researching"}
_TERMINAL_DOSSIER_STATUSES = {"ready", "failed"}
_TERMINAL_REQUEST_STATUSES = {"completed", "failed"}

Snapshot = Dict[str, Any]


@dataclass
class PollContext:
    """State carried between polls of one subject."""

    started_at: float
    warmup_seconds: float = WARMUP_SECONDS
    polls: int = 0
    errors: int = 0
    progress: int = 0
    has_active_work: bool = True
    last_snapshot: Optional[Snapshot] = None

    def in_warmup(self, now: float) -> bool:
        if self.warmup_seconds <= 0:
            return False
        return now - self.started_at < self.warmup_seconds


@dataclass(frozen=True)
class PollResult:
    snapshot: Optional[Snapshot]
    complete: bool
    polls: int


def adaptive_interval(progress: int, has_active_work: bool) -> float:
    if has_active_work:
        return ACTIVE_INTERVAL_SECONDS
    if progress < 50:
        return EARLY_INTERVAL_SECONDS
    return LATE_INTERVAL_SECONDS


def session_has_active_work(snapshot: Snapshot) -> bool:
    jobs = snapshot.get("jobs") or []
    prospects = snapshot.get("prospects") or []
    return any(j.get("status") in _ACTIVE_JOB_STATUSES for j in jobs) or any(
        p.get("researchStatus") in _ACTIVE_DOSSIER_STATUSES for p in prospects
    )


def session_is_complete(snapshot: Snapshot) -> bool:
    """
    Progress reached 100, or there are jobs and prospects and all of them
    are in a terminal state. No jobs yet never counts as complete.
    """
    jobs = snapshot.get("jobs") or []
    prospects = snapshot.get("prospects") or []
    if (snapshot.get("progress") or 0) >= 100:
        return True
    return bool(
        jobs
        and prospects
        and all(j.get("status") in _TERMINAL_JOB_STATUSES for j in jobs)
        and all(p.get("researchStatus") in _TERMINAL_DOSSIER_STATUSES for p in prospects)
    )


def request_is_terminal(snapshot: Snapshot) -> bool:
    return (snapshot.get("status") or "") in _TERMINAL_REQUEST_STATUSES


def request_has_active_work(snapshot: Snapshot) -> bool:
    return not request_is_terminal(snapshot)


async def poll_until(
    fetch: Callable[[], Awaitable[Snapshot]],
    is_complete: Callable[[Snapshot], bool],
    has_active_work: Callable[[Snapshot], bool] = session_has_active_work,
    ctx: PollContext | None = None,
    max_polls: int | None = None,
    on_update: Callable[[Snapshot], None] | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> PollResult:
    """
    Poll ``fetch`` until ``is_complete`` holds outside the warm-up window.

    A failed fetch is logged and retried on the next tick with the last known
    progress. ``max_polls`` bounds the number of fetch attempts.
    """
    ctx = ctx or PollContext(started_at=clock())

    while max_polls is None or ctx.polls < max_polls:
        ctx.polls += 1
        try:
            snapshot = await fetch()
        except (httpx.HTTPError, ValueError) as e:
            ctx.errors += 1
            logger.warning("Status poll failed (%d errors so far): %s", ctx.errors, e)
            await sleep(adaptive_interval(ctx.progress, False))
            continue

        ctx.last_snapshot = snapshot
        ctx.progress = int(snapshot.get("progress") or 0)
        if on_update is not None:
            on_update(snapshot)

        in_warmup = ctx.in_warmup(clock())
        if not in_warmup and is_complete(snapshot):
            return PollResult(snapshot=snapshot, complete=True, polls=ctx.polls)

        ctx.has_active_work = has_active_work(snapshot) or in_warmup
        await sleep(adaptive_interval(ctx.progress, ctx.has_active_work))

    return PollResult(snapshot=ctx.last_snapshot, complete=False, polls=ctx.polls)


class ApiStatusFetcher:
    """Fetch status snapshots from the HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        bearer_token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers: Dict[str, str] = {}
        if api_key:
            headers["X-API-Key"] = api_key
        if bearer_token:
            headers["Authorization"] = f"Bearer {bearer_token}"
        self.base_url = base_url.rstrip("/")
        self.headers = headers
        self.timeout = timeout
        self.transport = transport

    async def _get(self, path: str) -> Snapshot:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            resp = await client.get(path)
            resp.raise_for_status()
            return resp.json()

    async def session(self, session_id: str) -> Snapshot:
        return await self._get(f"/discovery/sessions/{session_id}")

    async def research_request(self, request_id: str) -> Snapshot:
        return await self._get(f"/research-requests/{request_id}")


async def wait_for_session(
    fetcher: ApiStatusFetcher,
    session_id: str,
    **kwargs: Any,
) -> PollResult:
    return await poll_until(
        lambda: fetcher.session(session_id),
        session_is_complete,
        session_has_active_work,
        **kwargs,
    )


async def wait_for_research_request(
    fetcher: ApiStatusFetcher,
    request_id: str,
    **kwargs: Any,
) -> PollResult:
    kwargs.setdefault("ctx", PollContext(started_at=time.monotonic(), warmup_seconds=0.0))
    return await poll_until(
        lambda: fetcher.research_request(request_id),
        request_is_terminal,
        request_has_active_work,
        **kwargs,
    )
