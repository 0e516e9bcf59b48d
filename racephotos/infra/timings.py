# racephotos/infra/timings.py
from __future__ import annotations
import gzip
import json
import logging
import os
import socket
import statistics
import time
from typing import Dict, List, Optional

import httpx
from fastapi import FastAPI

logger = logging.getLogger(__name__)

# one list of durations (seconds) per kind; the event loop is the only writer
_TIMINGS: Dict[str, List[float]] = {}


def record_timing(kind: str, value: float) -> None:
    _TIMINGS.setdefault(kind, []).append(float(value))


def reset() -> None:
    _TIMINGS.clear()


class timeit:
    """Wall time of a block, filed under ``kind``.

        async with timeit("storage.sign"):
            await storage.signed_url(...)

    Plain ``with`` works too, for CPU work such as building an archive.
    """
    __slots__ = ("kind", "_t0")

    def __init__(self, kind: str):
        self.kind = kind
        self._t0 = 0.0

    def __enter__(self):
        self._t0 = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        record_timing(self.kind, time.perf_counter() - self._t0)

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc, tb):
        self.__exit__(exc_type, exc, tb)


def _summary(kind: str, vals: List[float]) -> Dict[str, float]:
    ordered = sorted(vals)
    p95 = ordered[min(len(ordered) - 1, int(round(0.95 * (len(ordered) - 1))))]
    return {
        "kind": kind,
        "n": len(vals),
        "mean": statistics.mean(vals),
        "std": statistics.stdev(vals) if len(vals) > 1 else 0.0,
        "p95": p95,
        "max": ordered[-1],
    }


def aggregates() -> List[Dict[str, float]]:
    return [_summary(k, v) for k, v in sorted(_TIMINGS.items()) if v]


def to_ndjson(records: List[Dict[str, float]]) -> bytes:
    return "".join(
        json.dumps(rec, separators=(",", ":")) + "\n" for rec in records
    ).encode("utf-8")


async def flush_timings(
    http: httpx.AsyncClient,
    collector_url: str,
    run_id: str,
    worker_id: Optional[str] = None,
    compress: bool = False,
) -> int:
    """POST the aggregates as NDJSON; returns how many the collector
    accepted. Local timings are dropped once the collector has them."""
    records = aggregates()
    if not records:
        return 0
    body = to_ndjson(records)
    headers = {
        "content-type": "application/x-ndjson",
        "x-run-id": run_id,
        "x-worker-id": worker_id or f"{os.getpid()}@{socket.gethostname()}",
    }
    if compress:
        body = gzip.compress(body)
        headers["content-encoding"] = "gzip"

    r = await http.post(
        f"{collector_url.rstrip('/')}/v1/metric/flush",
        content=body,
        headers=headers,
    )
    r.raise_for_status()
    reset()
    return int(r.json().get("accepted", 0))


def install_shutdown_flush(
    app: FastAPI, *, url: str = "", run_id: str = "",
    fallback_dump: str = "",
) -> None:
    """Log the aggregates on shutdown and, when ``url`` and ``run_id`` are
    set, ship them to a collector. Must be installed before the handler that
    closes ``app.state.http``."""

    @app.on_event("shutdown")
    async def _flush_on_shutdown():
        for rec in aggregates():
            logger.info(
                "timing %(kind)s n=%(n)d mean=%(mean).4fs p95=%(p95).4fs",
                rec,
            )
        http = getattr(app.state, "http", None)
        if not url or not run_id or http is None:
            return
        try:
            accepted = await flush_timings(http, url, run_id)
            logger.info("flushed %d timing kinds to %s", accepted, url)
        except httpx.HTTPError:
            logger.warning("timings flush to %s failed", url, exc_info=True)
            if fallback_dump:
                with gzip.open(fallback_dump, "ab") as f:
                    f.write(to_ndjson(aggregates()))
            reset()
