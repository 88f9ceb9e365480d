"""Benchmark slice: symbolic Jacobian construction, lowering and jitted evaluation."""

from __future__ import annotations

import argparse
import json
import platform
import statistics
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path

import jax
import jax.numpy as jnp

from eqjax import ConstraintsSystem, Equation, Variable, build_function, lowering_cache_stats, parameters

PROFILE_PRESETS: dict[str, dict[str, object]] = {
    "quick": {"sizes": (4, 16, 32), "samples": 3},
    "full": {"sizes": (4, 16, 64, 128), "samples": 7},
}


@dataclass(frozen=True)
class JacobianRow:
    size: int
    sparse: bool
    simplify: bool
    nonzeros: int
    symbolic_ms: float
    lower_ms: float
    first_call_ms: float
    call_p50_ms: float


def _chain_system(n: int) -> ConstraintsSystem:
    xs = tuple(Variable(f"x{i}") for i in range(n))
    k, c = parameters("k c")
    eqs = []
    for i in range(n):
        left = xs[i - 1] if i > 0 else 0
        right = xs[i + 1] if i + 1 < n else 0
        eqs.append(Equation(k * (left - 2 * xs[i] + right) - c * xs[i] * xs[i], 0))
    return ConstraintsSystem(eqs, xs, (k, c), name=f"chain{n}")


def _block(value) -> None:
    target = getattr(value, "data", value)
    if hasattr(target, "block_until_ready"):
        target.block_until_ready()


def _run_case(n: int, *, sparse: bool, simplify: bool, samples: int) -> JacobianRow:
    sys = _chain_system(n)

    t0 = time.perf_counter()
    jac = sys.calculate_jacobian(sparse=sparse, simplify=simplify)
    symbolic_ms = (time.perf_counter() - t0) * 1e3
    nonzeros = len(jac) if sparse else n * n

    t0 = time.perf_counter()
    fn = build_function(jac, sys.unknowns(), sys.parameters(), use_cache=False).jit()
    lower_ms = (time.perf_counter() - t0) * 1e3

    u = jnp.linspace(0.0, 1.0, n)
    p = jnp.asarray([1.5, 0.25])
    t0 = time.perf_counter()
    _block(fn(u, p))
    first_call_ms = (time.perf_counter() - t0) * 1e3

    timings = []
    for _ in range(samples):
        t0 = time.perf_counter()
        _block(fn(u, p))
        timings.append((time.perf_counter() - t0) * 1e3)
    return JacobianRow(
        size=n,
        sparse=sparse,
        simplify=simplify,
        nonzeros=nonzeros,
        symbolic_ms=symbolic_ms,
        lower_ms=lower_ms,
        first_call_ms=first_call_ms,
        call_p50_ms=statistics.median(timings),
    )


def run_benchmarks(*, sizes: tuple[int, ...], samples: int) -> list[JacobianRow]:
    rows = []
    print(f"{'n':>5} {'sparse':>6} {'simp':>5} {'nnz':>6} {'symbolic':>10} {'lower':>9} {'first':>9} {'p50':>9}")
    for n in sizes:
        for sparse in (False, True):
            for simplify in (False, True):
                row = _run_case(n, sparse=sparse, simplify=simplify, samples=samples)
                rows.append(row)
                print(
                    f"{row.size:>5} {str(row.sparse):>6} {str(row.simplify):>5} {row.nonzeros:>6} "
                    f"{row.symbolic_ms:>9.2f}ms {row.lower_ms:>7.2f}ms {row.first_call_ms:>7.2f}ms {row.call_p50_ms:>7.3f}ms"
                )
    return rows


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--profile", choices=sorted(PROFILE_PRESETS), default="quick", help="fixed benchmark profile")
    parser.add_argument("--samples", type=int, default=None, help="override sample count")
    parser.add_argument(
        "--json-out",
        default="",
        help="optional path to write machine-readable results",
    )
    args = parser.parse_args()

    profile = PROFILE_PRESETS[args.profile]
    samples = int(profile["samples"] if args.samples is None else args.samples)
    rows = run_benchmarks(sizes=tuple(profile["sizes"]), samples=samples)
    if args.json_out:
        outpath = Path(args.json_out)
        outpath.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "timestamp_utc": datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ"),
            "profile": args.profile,
            "samples": samples,
            "host": {
                "platform": platform.platform(),
                "python": platform.python_version(),
                "jax": getattr(jax, "__version__", "unknown"),
                "backend": jax.default_backend(),
            },
            "lowering_cache": lowering_cache_stats(),
            "rows": [asdict(row) for row in rows],
        }
        outpath.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        print(f"Wrote JSON benchmark output: {outpath}")
