# flowerscan/infra/timings.py
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

logger = logging.getLogger(__name__)

# one list per stage; appended to from the event loop only
_TIMINGS: Dict[str, List[float]] = {}


def record_timing(kind: str, value: float) -> None:
    _TIMINGS.setdefault(kind, []).append(float(value))


class timeit:
    """async usage:
        async with timeit("ledger.redeem"):
            await ledger.redeem(...)
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, time.perf_counter() - self._t0)


def aggregates() -> List[Dict[str, float]]:
    out = []
    for kind, vals in _TIMINGS.items():
        n = len(vals)
        mean = statistics.mean(vals) if vals else 0.0
        std = statistics.stdev(vals) if n > 1 else 0.0
        out.append({"kind": kind, "n": n, "mean": mean, "std": std})
    return out


def reset() -> None:
    _TIMINGS.clear()


def _ndjson() -> bytes:
    lines = [json.dumps(rec, separators=(",", ":")) + "\n"
             for rec in aggregates()]
    return "".join(lines).encode("utf-8")


async def flush_to_bench(
    bench_url: str,
    run_id: str,
    worker_id: Optional[str] = None,
    compress: bool = False,
    timeout: float = 10.0,
) -> int:
    """
    POST per-stage aggregates as NDJSON to the bench collector.
    Returns the number of records the collector accepted.
    """
    if not _TIMINGS:
        return 0

    raw = _ndjson()
    headers = {
        "content-type": "application/x-ndjson",
        "x-run-id": run_id,
        "x-worker-id": worker_id or f"{os.getpid()}@{socket.gethostname()}",
    }
    body = gzip.compress(raw) if compress else raw
    if compress:
        headers["content-encoding"] = "gzip"

    async with httpx.AsyncClient(timeout=timeout) as client:
        r = await client.post(
            f"{bench_url.rstrip('/')}/v1/metric/flush",
            content=body,
            headers=headers,
        )
        r.raise_for_status()
        accepted = int(r.json().get("accepted", 0))

    reset()
    return accepted


async def flush_on_shutdown() -> None:
    """
    BENCH_URL / BENCH_RUN_ID select the collector; when the POST fails the
    aggregates are appended to BENCH_FALLBACK_DUMP (gzip NDJSON) if set.
    """
    bench_url = os.getenv("BENCH_URL", "")
    run_id = os.getenv("BENCH_RUN_ID", "")
    if not bench_url or not run_id:
        return
    try:
        accepted = await flush_to_bench(bench_url=bench_url, run_id=run_id)
        logger.info("flushed %d timing aggregates to %s", accepted, bench_url)
    except httpx.HTTPError as e:
        logger.warning("timing flush to %s failed: %s", bench_url, e)
        dump = os.getenv("BENCH_FALLBACK_DUMP", "")
        if not dump:
            return
        try:
            with gzip.open(dump, "ab") as f:
                f.write(_ndjson())
        finally:
            reset()
