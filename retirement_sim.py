#!/usr/bin/env python3
import argparse
import json
import logging
import sys

from model_config import (
    DEFAULT_CONFIG,
    InvalidConfiguration,
    deep_merge,
    build_model_config,
    resolve_config,
)
from report import build_report_rows, print_run
from simulator import emit_progress, simulate


def run_retirement_simulation(config=None, verbose=True, progress_callback=None):
    merged_config = resolve_config(config)
    model = build_model_config(merged_config)
    report = merged_config["report"]

    if verbose:
        print(f"Running {model.trials:,} trials over {model.years} years...\n")

    years, execution = simulate(
        model,
        simulation=merged_config["simulation"],
        progress_callback=progress_callback,
    )
    rows = build_report_rows(years, model, report["show_every_n_years"])

    result = {
        "model": model,
        "config": merged_config,
        "years": years,
        "rows": rows,
        "execution": execution,
    }

    if verbose:
        print_run(result, report)

    emit_progress(
        progress_callback,
        "run_complete",
        {"years": model.years, "trials": model.trials, "elapsed_s": execution["elapsed_s"]},
    )
    return result


# (flags, section, key, type, help)
_MODEL_OPTIONS = (
    (("-p", "--portfolio"), "model", "portfolio", float,
     "the starting size of your retirement portfolio (required)"),
    (("-i", "--income"), "model", "income", float,
     "your desired retirement income (required)"),
    (("--min-income",), "model", "min_income", float,
     "the lowest income that you can afford to receive"),
    (("--ei", "--inflation"), "model", "inflation", float,
     "your expected percentage inflation rate"),
    (("-r", "--return"), "model", "return", float,
     "your expected annual percentage return on the portfolio"),
    (("--sd", "--return-range"), "model", "return_range", float,
     "the standard deviation of the annual percentage return"),
    (("--min-return",), "model", "min_return", float,
     "a desired minimum real percentage growth of the portfolio; income is "
     "reduced (down to the minimum income) to try to achieve it"),
    (("-d", "--defer"), "model", "defer", int,
     "the number of years to defer the start of withdrawing funds"),
    (("--ci", "--crash-interval"), "model", "crash_interval", int,
     "the average number of years between market crashes; 0 disables crashes"),
    (("--cp", "--crash-prop"), "model", "crash_prop", float,
     "the percentage by which the portfolio declines in a market crash"),
    (("--periods", "--drawings-per-year"), "model", "periods", int,
     "how many times a year income is drawn (1, 4, 12, 13 or 52, say)"),
    (("-y", "--years"), "model", "years", int,
     "the number of years to simulate over"),
    (("-t", "--trials"), "model", "trials", int,
     "the number of trials to run"),
    (("--extreme-set-size",), "model", "extreme_set_size", int,
     "the size of the set of extreme values; the minimum and maximum reported "
     "are the averages of this many smallest and largest values"),
    (("--show-yrs", "--show-every-n-years"), "report", "show_every_n_years", int,
     "only report every nth year (and the last)"),
    (("--seed",), "simulation", "seed", int,
     "seed for reproducible runs"),
    (("--workers",), "simulation", "parallel_workers", int,
     "the number of worker processes (default: cpu count minus one)"),
    (("--start-method",), "simulation", "parallel_start_method", str,
     "the multiprocessing start method for the workers"),
    (("--batch-size",), "simulation", "batch_size", int,
     "the number of trials each worker advances together"),
)

_FLAG_OPTIONS = (
    ("--show-intro", "report", "show_intro",
     "print a description of the model before showing the results"),
    ("--show-model-params", "report", "show_model_params",
     "report the parameters to the model before showing the results"),
    ("--show-model-metrics", "report", "show_model_metrics",
     "show the execution mode and time taken"),
)


def _build_parser():
    parser = argparse.ArgumentParser(
        description=(
            "Simulate a retirement portfolio under random returns, inflation and "
            "market crashes, and report how the portfolio and income evolve."
        ),
    )
    for flags, _, key, value_type, help_text in _MODEL_OPTIONS:
        parser.add_argument(*flags, dest=key, type=value_type, default=None, help=help_text)
    for flag, _, key, help_text in _FLAG_OPTIONS:
        parser.add_argument(flag, dest=key, action="store_true", default=None, help=help_text)
    parser.add_argument(
        "--no-parallel",
        dest="parallel_enabled",
        action="store_false",
        default=None,
        help="run every trial in this process",
    )
    parser.add_argument("--config", help="JSON file of configuration overrides")
    parser.add_argument("--verbose-log", action="store_true", help="log debug messages")
    return parser


def _overrides_from_args(args):
    overrides = {"model": {}, "simulation": {}, "report": {}}
    for _, section, key, _, _ in _MODEL_OPTIONS:
        value = getattr(args, key)
        if value is not None:
            overrides[section][key] = value
    for _, section, key, _ in _FLAG_OPTIONS:
        if getattr(args, key) is not None:
            overrides[section][key] = True
    if args.parallel_enabled is not None:
        overrides["simulation"]["parallel_enabled"] = args.parallel_enabled
    return overrides


def main(argv=None):
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose_log else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = {}
    if args.config:
        try:
            with open(args.config, encoding="utf-8") as handle:
                config = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            print(f"Cannot read config file {args.config}: {exc}", file=sys.stderr)
            return 2
        if not isinstance(config, dict):
            print(f"Config file {args.config} must hold a JSON object.", file=sys.stderr)
            return 2

    config = deep_merge(config, _overrides_from_args(args))
    try:
        run_retirement_simulation(config=config, verbose=True)
    except InvalidConfiguration as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2
    return 0


__all__ = ["DEFAULT_CONFIG", "main", "run_retirement_simulation"]


if __name__ == "__main__":
    sys.exit(main())
