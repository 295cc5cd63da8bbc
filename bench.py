import argparse
import json
import math
import statistics
import time
import uuid
from collections import Counter

import requests

GATEKEEPER = "http://localhost/query"

N_WRITES = 200
N_READS = 200
N_REJECTS = 50

SLEEP_SEC = 0.005

REJECTED_STATEMENTS = [
    "DROP TABLE bench_writes",
    "SELECT 1; DELETE FROM bench_writes",
    "delete from bench_writes",
]


def call(url, statement, parameters=(), binding=None, api_key=None):
    payload = {"statement": statement, "parameters": list(parameters)}
    if binding:
        payload["targetBinding"] = binding
    headers = {"Content-Type": "application/json", "X-Request-Id": str(uuid.uuid4())}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    t0 = time.time()
    r = requests.post(url, data=json.dumps(payload), headers=headers, timeout=20)
    dt_ms = (time.time() - t0) * 1000.0
    return dt_ms, r.status_code


STAT_KEYS = ("avg_ms", "p50_ms", "p95_ms", "max_ms")


def percentile(ordered, fraction):
    """Nearest-rank value at ``fraction`` of an ascending list, rank rounded down."""
    if not ordered:
        return None
    return ordered[math.floor(fraction * (len(ordered) - 1))]


def stats(latencies):
    if not latencies:
        return {"count": 0, **dict.fromkeys(STAT_KEYS)}
    ordered = sorted(latencies)
    return {
        "count": len(ordered),
        "avg_ms": statistics.fmean(ordered),
        "p50_ms": percentile(ordered, 0.50),
        "p95_ms": percentile(ordered, 0.95),
        "max_ms": ordered[-1],
    }


def run(url, writes=N_WRITES, reads=N_READS, rejects=N_REJECTS, binding=None, api_key=None, sleep=SLEEP_SEC):
    latencies = {"writes": [], "reads": [], "rejects": []}
    statuses = Counter()

    def record(kind, dt, status):
        statuses[status] += 1
        latencies[kind].append(dt)

    for i in range(writes):
        dt, status = call(url, "INSERT INTO bench_writes (name) VALUES (?)", [f"bench_{i}"], binding, api_key)
        record("writes", dt, status)
        time.sleep(sleep)

    for _ in range(reads):
        dt, status = call(url, "SELECT COUNT(*) AS n FROM bench_writes", (), binding, api_key)
        record("reads", dt, status)
        time.sleep(sleep)

    for i in range(rejects):
        dt, status = call(url, REJECTED_STATEMENTS[i % len(REJECTED_STATEMENTS)], (), binding, api_key)
        record("rejects", dt, status)
        time.sleep(sleep)

    return {
        "writes": stats(latencies["writes"]),
        "reads": stats(latencies["reads"]),
        "rejects": stats(latencies["rejects"]),
        "statuses": dict(sorted(statuses.items())),
    }


def main(argv=None):
    parser = argparse.ArgumentParser(description="Latency benchmark for a running gatekeeper.")
    parser.add_argument("--url", default=GATEKEEPER)
    parser.add_argument("--writes", type=int, default=N_WRITES)
    parser.add_argument("--reads", type=int, default=N_READS)
    parser.add_argument("--rejects", type=int, default=N_REJECTS)
    parser.add_argument("--binding", default=None)
    parser.add_argument("--api-key", default=None)
    args = parser.parse_args(argv)

    print("=" * 60)
    print(run(args.url, args.writes, args.reads, args.rejects, args.binding, args.api_key))


if __name__ == "__main__":
    main()
