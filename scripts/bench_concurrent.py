#!/usr/bin/env python3
"""Concurrency benchmark: N parallel HTTP requests to /generate.
Requests are served one at a time by the worker, so latency grows with queue
position; this reports wall time, p50/p95 latency and aggregate tokens/sec.
"""
from __future__ import annotations

import argparse
import asyncio
import statistics
import time

import httpx

PROMPT = "Write a 3-line haiku about caching. Use vivid imagery.\nHaiku:\n"


def _pctl(values: list[float], q: float) -> float:
    if not values:
        return 0.0
    xs = sorted(values)
    idx = int(q * (len(xs) - 1))
    return xs[idx]


def _summary(values: list[float]) -> str:
    if not values:
        return "n=0"
    return (
        f"n={len(values)} "
        f"avg={statistics.mean(values):.3f} "
        f"p50={_pctl(values, 0.50):.3f} "
        f"p95={_pctl(values, 0.95):.3f} "
        f"min={min(values):.3f} "
        f"max={max(values):.3f}"
    )


async def generate(client: httpx.AsyncClient, url: str, i: int, max_tokens: int) -> tuple[int, float, int, str]:
    """Single request. Returns (request_idx, latency_s, tokens_generated, finish_reason)."""
    t0 = time.perf_counter()
    resp = await client.post(
        url,
        json={
            "prompt": PROMPT,
            "max_tokens": max_tokens,
            "temperature": 0.0,
            "seed": i,
        },
    )
    resp.raise_for_status()
    latency = time.perf_counter() - t0
    data = resp.json()
    return i, latency, len(data["token_ids"]), data["finish_reason"]


async def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--url", default="http://127.0.0.1:8000/generate")
    parser.add_argument("--requests", type=int, default=8)
    parser.add_argument("--max-tokens", type=int, default=64)
    args = parser.parse_args()

    t_wall_start = time.perf_counter()
    async with httpx.AsyncClient(timeout=300.0) as client:
        tasks = [generate(client, args.url, i, args.max_tokens) for i in range(args.requests)]
        results = await asyncio.gather(*tasks)
    t_wall = time.perf_counter() - t_wall_start

    latencies = [r[1] for r in results]
    total_tokens = sum(r[2] for r in results)
    tokens_per_sec = total_tokens / t_wall if t_wall > 0 else 0

    print(f"=== {args.requests} parallel /generate requests ===")
    print(f"Total wall time:    {t_wall:.3f}s")
    print(f"Latency (s):        {_summary(latencies)}")
    print(f"Total tokens:       {total_tokens}")
    print(f"Throughput:         {tokens_per_sec:.1f} tokens/sec (aggregate)")
    print("")
    print("Per-request snapshot:")
    for req_idx, latency_s, tokens, reason in sorted(results, key=lambda r: r[0]):
        print(f"  req={req_idx:02d} lat={latency_s:.3f}s tokens={tokens:3d} finish={reason}")


if __name__ == "__main__":
    asyncio.run(main())
