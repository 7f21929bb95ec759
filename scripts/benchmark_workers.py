#!/usr/bin/env python3
import argparse
from pathlib import Path
import sys
import time

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from retirement_sim import run_retirement_simulation


def run_case(name, config):
    t0 = time.perf_counter()
    try:
        result = run_retirement_simulation(config=config, verbose=False)
    except Exception as exc:
        elapsed = time.perf_counter() - t0
        print(f"\n{name}")
        print(f"  elapsed_s:             {elapsed:.3f}")
        print(f"  status:                FAILED")
        print(f"  error:                 {exc!r}")
        return None, None
    elapsed = time.perf_counter() - t0
    execution = result["execution"]
    last_year = result["rows"][-1]
    print(f"\n{name}")
    print(f"  elapsed_s:             {elapsed:.3f}")
    print(f"  mode:                  {execution['mode']}")
    print(f"  workers_used:          {execution['workers_used']}")
    print(f"  shard_trials:          {execution['shard_trials']}")
    print(f"  fallback_reason:       {execution['fallback_reason']}")
    print(f"  final_portfolio_mean:  {last_year['portfolio_mean']:.2f}")
    print(f"  final_bust_fraction:   {last_year['bust_fraction']:.4%}")
    return elapsed, result


def main():
    parser = argparse.ArgumentParser(description="Benchmark single-process vs multi-process trial runs.")
    parser.add_argument("--trials", type=int, default=200_000)
    parser.add_argument("--years", type=int, default=30)
    parser.add_argument("--periods", type=int, default=12)
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--batch-size", type=int, default=4_096)
    args = parser.parse_args()

    base = {
        "model": {
            "portfolio": 1_000_000.0,
            "income": 40_000.0,
            "min_income": 25_000.0,
            "crash_interval": 10,
            "crash_prop": 40.0,
            "trials": args.trials,
            "years": args.years,
            "periods": args.periods,
        },
        "simulation": {
            "seed": 123,
            "batch_size": args.batch_size,
        },
    }

    single_cfg = {**base, "simulation": {**base["simulation"], "parallel_enabled": False}}
    parallel_cfg = {
        **base,
        "simulation": {**base["simulation"], "parallel_enabled": True, "parallel_workers": args.workers},
    }

    single_elapsed, _ = run_case("Single Process", single_cfg)
    parallel_elapsed, _ = run_case("Process Pool", parallel_cfg)

    if parallel_elapsed is not None and parallel_elapsed > 0 and single_elapsed is not None:
        print(f"\nSpeedup (single/parallel): {single_elapsed / parallel_elapsed:.2f}x")


if __name__ == "__main__":
    main()
