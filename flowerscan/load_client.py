#!/usr/bin/env python3
"""
FlowerScan concurrent-scan client (async)

Simulates many devices of ONE participant scanning ONE credential at the
same moment:
  1) mint the participant's session cookie (same format as Starlette's
     SessionMiddleware, signed with SESSION_SECRET)
  2) fire --total POST /api/attendance/scan with the same credential,
     --concurrency at a time
  3) report how many came back added=true (must be exactly one on a fresh
     participant/session pair) and the counter spread

Usage:
  python -m flowerscan.load_client --base http://localhost:8000 \
      --participant <id> --credential '{"sid":...}' \
      --total 200 --concurrency 50
"""

import argparse
import asyncio
import json
import os
import time
from base64 import b64encode
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx
from itsdangerous import TimestampSigner


def session_cookie(secret: str, participant_id: str) -> str:
    data = b64encode(json.dumps({"participant_id": participant_id}).encode())
    return TimestampSigner(secret).sign(data).decode("utf-8")


@dataclass
class Result:
    status: int
    added: Optional[bool] = None
    counter: Optional[int] = None
    latency_s: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def summary(self) -> Dict[str, float]:
        ok = [r for r in self.results if r.status == 200]
        lat = sorted(r.latency_s for r in ok)

        def pct(p):
            if not lat:
                return 0.0
            k = int(max(0, min(len(lat)-1, round(p/100*(len(lat)-1)))))
            return lat[k]
        counters = [r.counter for r in ok if r.counter is not None]
        return {
            "total": len(self.results),
            "ok": len(ok),
            "added": sum(1 for r in ok if r.added),
            "already": sum(1 for r in ok if r.added is False),
            "busy": sum(1 for r in self.results if r.status == 503),
            "error": sum(
                1 for r in self.results if r.status not in (200, 503)
            ),
            "counter_min": min(counters) if counters else 0,
            "counter_max": max(counters) if counters else 0,
            "p50_s": pct(50),
            "p99_s": pct(99),
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Scan Summary ===")
        print(
            f"Total: {s['total']}   OK: {s['ok']}   ADDED: {s['added']}   "
            f"ALREADY: {s['already']}   BUSY: {s['busy']}   "
            f"ERROR: {s['error']}"
        )
        print(f"Counter seen: {s['counter_min']}..{s['counter_max']}")
        print(
            f"Latency: p50 {s['p50_s']:.3f}s   p99 {s['p99_s']:.3f}s   "
            f"Wall time: {elapsed_s:.3f}s"
        )
        if s["added"] > 1:
            print("❌ more than one scan was credited")
        elif s["added"] == 1:
            print("✅ exactly one scan credited")


async def one_scan(client: httpx.AsyncClient, base: str,
                   credential: str) -> Result:
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/attendance/scan",
            json={"qr_code": credential},
            timeout=30.0,
        )
    except httpx.HTTPError as e:
        return Result(status=0, err=str(e))
    r = Result(status=resp.status_code,
               latency_s=time.perf_counter() - t0)
    if resp.status_code == 200:
        data = resp.json()["data"]
        r.added = data["added"]
        r.counter = data["counter"]
    else:
        r.err = resp.text
    return r


async def run_load(base: str, cookie: str, credential: str,
                   total: int, concurrency: int) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()
    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits,
        cookies={"session": cookie},
        headers={"User-Agent": "FlowerScanLoad/1.0"},
    ) as client:

        async def worker():
            async with sem:
                stats.add(await one_scan(client, base, credential))

        await asyncio.gather(*(worker() for _ in range(total)))
    return stats


def main():
    ap = argparse.ArgumentParser(description="FlowerScan scan load client")
    ap.add_argument("--base", default="http://localhost:8000")
    ap.add_argument("--participant", required=True,
                    help="participant id to scan as")
    ap.add_argument("--credential", required=True,
                    help="credential text (JSON or URL form)")
    ap.add_argument("--session-secret",
                    default=os.getenv("SESSION_SECRET", "dev-secret-change-me"))
    ap.add_argument("--total", type=int, default=100)
    ap.add_argument("--concurrency", type=int, default=20)
    args = ap.parse_args()

    cookie = session_cookie(args.session_secret, args.participant)
    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base.rstrip("/"),
        cookie=cookie,
        credential=args.credential,
        total=args.total,
        concurrency=args.concurrency,
    ))
    stats.print(time.perf_counter() - t_start)


if __name__ == "__main__":
    main()
