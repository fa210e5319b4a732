"""Hammer CalculatorService.add from many threads and check nothing was lost.

    python -m pg_calculator.pg_benchmark [THREADS ITERS DELTA]

Talks to the database named by DATABASE_URL directly, without HTTP. The
positional arguments fall back to BENCH_THREADS, BENCH_ITERS and BENCH_DELTA.
"""
import math
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from .config import load_config
from .service import CalculatorService
from .store import CalculatorStore, create_pool

THREADS = 10
ITERS = 1000
DELTA = 1.0


def worker(service: CalculatorService, iters: int, delta: float, barrier: threading.Barrier):
    barrier.wait()
    returned = []
    for _ in range(iters):
        returned.append(service.add(delta))
    return returned


def run(service: CalculatorService, threads: int = THREADS, iters: int = ITERS, delta: float = DELTA):
    before = service.get_current()
    barrier = threading.Barrier(threads)

    t0 = time.perf_counter()
    with ThreadPoolExecutor(max_workers=threads) as ex:
        futures = [ex.submit(worker, service, iters, delta, barrier) for _ in range(threads)]
        returned = [v for f in futures for v in f.result()]
    dt = time.perf_counter() - t0

    after = service.get_current()
    total = threads * iters
    expected = before + total * delta
    # every add saw a distinct committed state
    distinct = delta == 0 or len(set(returned)) == total
    return {
        "threads": threads,
        "iters": iters,
        "total_ops": total,
        "time_sec": dt,
        "rps": total / dt if dt > 0 else float("inf"),
        "before": before,
        "after": after,
        "expected": expected,
        "distinct_results": distinct,
        "ok": distinct and math.isclose(after, expected, rel_tol=1e-9, abs_tol=1e-9),
    }


def report(stats) -> None:
    print(f"threads={stats['threads']} iters={stats['iters']} total_ops={stats['total_ops']}")
    print(f"time_sec={stats['time_sec']:.6f} rps={stats['rps']:.2f}")
    print(f"value_before={stats['before']} value_after={stats['after']} "
          f"expected={stats['expected']} ok={stats['ok']}")
    print("-" * 60)


def _setting(argv, index: int, env_name: str, default, cast):
    raw = argv[index] if len(argv) > index else os.getenv(env_name, "")
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        raise SystemExit(f"{env_name} must be a number, got {raw!r}") from None


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    threads = _setting(argv, 0, "BENCH_THREADS", THREADS, int)
    iters = _setting(argv, 1, "BENCH_ITERS", ITERS, int)
    delta = _setting(argv, 2, "BENCH_DELTA", DELTA, float)

    config = load_config()
    store = CalculatorStore(create_pool(config))
    try:
        store.open(config.startup_timeout)
        stats = run(CalculatorService(store), threads, iters, delta)
    finally:
        store.close()
    report(stats)
    return 0 if stats["ok"] else 1


if __name__ == "__main__":
    sys.exit(main())
