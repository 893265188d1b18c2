from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generic, TypeVar

import httpx

from .errors import FetchError
from .logging_utils import log_event
from .settings import settings

T = TypeVar("T")


@dataclass(frozen=True)
class TaskOutcome(Generic[T]):
    index: int
    ok: bool
    value: T | None = None
    error: Exception | None = None


@dataclass(frozen=True)
class FetchTask:
    name: str
    url: str
    destination: Path

    def cache_hit(self) -> bool:
        return self.destination.exists()


@dataclass
class FetchReport:
    requested: int = 0
    downloaded: int = 0
    cached: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)


async def run_bounded(
    thunks: Sequence[Callable[[], Awaitable[T]]],
    limit: int,
) -> list[TaskOutcome[T]]:
    """Run every thunk with at most ``limit`` in flight.

    A slot frees as soon as any thunk settles, success or failure. Failures are
    captured per index and never raised to the caller.
    """
    sem = asyncio.Semaphore(max(1, int(limit)))

    async def one(idx: int) -> TaskOutcome[T]:
        async with sem:
            try:
                value = await thunks[idx]()
            except Exception as exc:
                return TaskOutcome(index=idx, ok=False, error=exc)
            return TaskOutcome(index=idx, ok=True, value=value)

    return list(await asyncio.gather(*[one(i) for i in range(len(thunks))]))


def _make_client(timeout_s: float) -> httpx.AsyncClient:
    # Tile host answers with at least one redirect before the PNG.
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_s, connect=min(10.0, timeout_s)),
        follow_redirects=True,
        headers={"User-Agent": settings.user_agent},
    )


async def download(client: httpx.AsyncClient, url: str) -> bytes:
    try:
        resp = await client.get(url)
    except httpx.RequestError as exc:
        # httpx exceptions can stringify to "" (e.g. some timeouts), so include the type.
        msg = str(exc).strip() or repr(exc)
        raise FetchError(f"{url} -> {type(exc).__name__}: {msg}", details={"url": url}) from exc
    if resp.status_code != 200:
        raise FetchError(f"{url} -> HTTP {resp.status_code}", details={"url": url, "status": resp.status_code})
    return resp.content


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.part")
    tmp.write_bytes(data)
    os.replace(tmp, path)


async def _fetch_all(
    tasks: Sequence[FetchTask],
    *,
    concurrency: int,
    client: httpx.AsyncClient,
) -> list[TaskOutcome[bool]]:
    async def fetch_one(task: FetchTask) -> bool:
        if task.cache_hit():
            return False
        data = await download(client, task.url)
        try:
            _write_atomic(task.destination, data)
        except OSError as exc:
            raise FetchError(f"{task.url} -> OS error: {exc}", details={"url": task.url}) from exc
        return True

    thunks = [lambda task=task: fetch_one(task) for task in tasks]
    return await run_bounded(thunks, concurrency)


async def _fetch_report(
    tasks: Sequence[FetchTask],
    *,
    limit: int,
    client: httpx.AsyncClient,
    label: str,
) -> FetchReport:
    outcomes = await _fetch_all(tasks, concurrency=limit, client=client)

    report = FetchReport(requested=len(tasks))
    for outcome in outcomes:
        if outcome.ok:
            if outcome.value:
                report.downloaded += 1
            else:
                report.cached += 1
        else:
            report.failures.append(str(outcome.error) or type(outcome.error).__name__)

    log_event(
        f"{label}_complete",
        requested=report.requested,
        downloaded=report.downloaded,
        cached=report.cached,
        failed=report.failed,
        concurrency=limit,
    )
    for message in report.failures:
        log_event(f"{label}_failed", level=logging.WARNING, reason_code="fetch_failed", detail=message)
    return report


def fetch_batches(
    batches: Mapping[str, Sequence[FetchTask]],
    *,
    concurrency: int | None = None,
    timeout_s: float | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict[str, FetchReport]:
    """Fetch each labelled batch in turn, all on one event loop and one client.

    An injected ``client`` is used as-is and left open; otherwise one is created
    and closed here.
    """
    limit = int(concurrency or settings.fetch_concurrency)
    timeout = float(timeout_s or settings.fetch_timeout_s)

    async def _all(active: httpx.AsyncClient) -> dict[str, FetchReport]:
        reports: dict[str, FetchReport] = {}
        for label, tasks in batches.items():
            reports[label] = await _fetch_report(tasks, limit=limit, client=active, label=label)
        return reports

    async def _run() -> dict[str, FetchReport]:
        if client is not None:
            return await _all(client)
        async with _make_client(timeout) as owned:
            return await _all(owned)

    return asyncio.run(_run())


def fetch_to_cache(
    tasks: Sequence[FetchTask],
    *,
    concurrency: int | None = None,
    timeout_s: float | None = None,
    client: httpx.AsyncClient | None = None,
    label: str = "fetch",
) -> FetchReport:
    """Download every task not already on disk; returns counts and failure messages."""
    reports = fetch_batches({label: tasks}, concurrency=concurrency, timeout_s=timeout_s, client=client)
    return reports[label]


def write_fetch_manifest(path: Path, report: FetchReport, *, source: str) -> Path:
    manifest: dict[str, Any] = {
        "generated_at_utc": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "source": source,
        "requested": report.requested,
        "downloaded": report.downloaded,
        "cached": report.cached,
        "failures": report.failures,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    return path
