import math
import sys
import time
from concurrent.futures import ThreadPoolExecutor

import requests
from requests.adapters import HTTPAdapter

BASE = "http://127.0.0.1:3000"
CLIENTS = 10
N = 1000
DELTA = 1.0


def make_session(clients: int = CLIENTS):
    s = requests.Session()
    adapter = HTTPAdapter(pool_connections=clients, pool_maxsize=clients, max_retries=0)
    s.mount("http://", adapter)
    s.headers.update({"Connection": "keep-alive"})
    return s


def worker(base: str, n: int, delta: float):
    s = make_session()
    for _ in range(n):
        r = s.post(f"{base}/api/add", json={"a": delta}, timeout=10)
        r.raise_for_status()


def get_value(base: str) -> float:
    r = make_session().get(f"{base}/api/result", timeout=10)
    r.raise_for_status()
    return float(r.json()["value"])


def run(base: str = BASE, clients: int = CLIENTS, n: int = N, delta: float = DELTA):
    before = get_value(base)
    t0 = time.perf_counter()

    with ThreadPoolExecutor(max_workers=clients) as ex:
        futures = [ex.submit(worker, base, n, delta) for _ in range(clients)]
        for f in futures:
            f.result()

    dt = time.perf_counter() - t0
    after = get_value(base)

    total = clients * n
    expected = before + total * delta
    return {
        "clients": clients,
        "calls_per_client": n,
        "total_calls": total,
        "time_sec": dt,
        "rps": total / dt if dt > 0 else float("inf"),
        "before": before,
        "after": after,
        "expected": expected,
        "ok": math.isclose(after, expected, rel_tol=1e-9, abs_tol=1e-9),
    }


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    base = argv[0] if len(argv) > 0 else BASE
    clients = int(argv[1]) if len(argv) > 1 else CLIENTS
    n = int(argv[2]) if len(argv) > 2 else N
    delta = float(argv[3]) if len(argv) > 3 else DELTA

    stats = run(base, clients, n, delta)
    print(f"clients={stats['clients']} calls_per_client={stats['calls_per_client']} "
          f"total_calls={stats['total_calls']}")
    print(f"time_sec={stats['time_sec']:.6f} rps={stats['rps']:.2f}")
    print(f"value_before={stats['before']} value_after={stats['after']} "
          f"expected={stats['expected']} ok={stats['ok']}")
    return 0 if stats["ok"] else 1


if __name__ == "__main__":
    sys.exit(main())
