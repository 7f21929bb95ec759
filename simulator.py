import concurrent.futures
import logging
import math
import multiprocessing
import os
import queue
import threading
import time

import numpy as np

from model_config import DEFAULT_CONFIG, deep_merge
from trials import merge_year_aggregates, new_year_aggregates, run_trials


logger = logging.getLogger(__name__)

_PARALLEL_MODEL = None
_PARALLEL_BATCH_SIZE = None

_CLOSED = object()


def emit_progress(progress_callback, event, payload):
    if progress_callback is not None:
        progress_callback(event, payload)


def _init_parallel_worker(model, batch_size):
    global _PARALLEL_MODEL
    global _PARALLEL_BATCH_SIZE
    _PARALLEL_MODEL = model
    _PARALLEL_BATCH_SIZE = batch_size


def _run_shard_task(task):
    idx, trials, seed_seq = task

    if _PARALLEL_MODEL is None or _PARALLEL_BATCH_SIZE is None:
        raise RuntimeError("Parallel worker is not initialized.")

    return _run_shard_direct(idx, trials, seed_seq, _PARALLEL_MODEL, _PARALLEL_BATCH_SIZE)


def _run_shard_direct(idx, trials, seed_seq, model, batch_size):
    rng = np.random.default_rng(seed_seq)
    return idx, run_trials(trials, model, rng, batch_size=batch_size)


def _default_parallel_start_method():
    methods = multiprocessing.get_all_start_methods()
    if os.name == "posix" and "fork" in methods:
        return "fork"
    if "spawn" in methods:
        return "spawn"
    return methods[0]


def _default_worker_count():
    # Leave one hardware thread for the merger and the main process.
    return max(1, (os.cpu_count() or 1) - 1)


def _partition_trials(trials, shards):
    """Split trials into contiguous shard counts, the last taking the remainder."""
    if trials <= 0:
        return [0]
    shards = max(1, min(trials, shards))
    per_shard = int(math.ceil(trials / shards))
    shards = int(math.ceil(trials / per_shard))
    counts = [per_shard] * (shards - 1)
    counts.append(trials - per_shard * (shards - 1))
    return counts


def _spawn_seeds(seed, shards):
    return np.random.SeedSequence(seed).spawn(shards)


def _resolve_execution_settings(trials, simulation):
    resolved_workers = simulation["parallel_workers"]
    if resolved_workers is None:
        resolved_workers = _default_worker_count()
    if not simulation["parallel_enabled"]:
        resolved_workers = 1

    shard_trials = _partition_trials(trials, resolved_workers)
    execution = {
        "mode": "single",
        "workers_used": 1,
        "backend": "single",
        "start_method": None,
        "shard_trials": shard_trials,
        "fallback_reason": None,
        "elapsed_s": None,
    }

    if len(shard_trials) <= 1:
        return execution

    execution["mode"] = "parallel"
    execution["workers_used"] = len(shard_trials)
    execution["backend"] = "multiprocessing"
    execution["start_method"] = (
        simulation["parallel_start_method"] or _default_parallel_start_method()
    )
    return execution


def _merge_partial_results(results, results_queue, errors):
    while True:
        partial = results_queue.get()
        if partial is _CLOSED:
            return
        if errors:
            continue
        try:
            merge_year_aggregates(results, partial)
        except Exception as exc:
            errors.append(exc)


def _fan_in(model, tasks, execute, queue_size, progress_callback):
    """Run `execute` and merge every partial result it delivers.

    A single merger thread owns the final results. Delivering blocks while
    `queue_size` partial results are waiting to be merged.
    """
    results = new_year_aggregates(model)
    results_queue = queue.Queue(maxsize=queue_size)
    errors = []
    merger = threading.Thread(
        target=_merge_partial_results,
        args=(results, results_queue, errors),
        name="retirement-merger",
        daemon=True,
    )
    merger.start()

    completed = []

    def deliver(idx, trials, partial):
        results_queue.put(partial)
        completed.append(idx)
        logger.debug("shard %d finished %d trials", idx, trials)
        emit_progress(
            progress_callback,
            "shard_complete",
            {"shard": idx, "trials": trials, "completed": len(completed), "shards": len(tasks)},
        )

    try:
        execute(tasks, deliver)
    finally:
        results_queue.put(_CLOSED)
        merger.join()

    if errors:
        raise errors[0]
    return results


def _execute_single_thread(model, batch_size):
    def execute(tasks, deliver):
        for idx, trials, seed_seq in tasks:
            _, partial = _run_shard_direct(idx, trials, seed_seq, model, batch_size)
            deliver(idx, trials, partial)

    return execute


def _execute_parallel(model, batch_size, execution):
    def execute(tasks, deliver):
        trials_by_future = {}
        mp_context = multiprocessing.get_context(execution["start_method"])

        with concurrent.futures.ProcessPoolExecutor(
            max_workers=execution["workers_used"],
            mp_context=mp_context,
            initializer=_init_parallel_worker,
            initargs=(model, batch_size),
        ) as executor:
            for task in tasks:
                future = executor.submit(_run_shard_task, task)
                trials_by_future[future] = task[1]

            for future in concurrent.futures.as_completed(trials_by_future):
                idx, partial = future.result()
                deliver(idx, trials_by_future[future], partial)

    return execute


def simulate(model, simulation=None, progress_callback=None):
    """Run all the trials of the model and return (results, execution).

    The results hold one YearAggregate per simulated year, merged over every
    shard of trials. The execution dict describes how the work was run.
    """
    simulation = deep_merge(DEFAULT_CONFIG["simulation"], simulation or {})
    batch_size = simulation["batch_size"]

    execution = _resolve_execution_settings(model.trials, simulation)
    shard_trials = execution["shard_trials"]
    seeds = _spawn_seeds(simulation["seed"], len(shard_trials))
    tasks = [(idx, trials, seeds[idx]) for idx, trials in enumerate(shard_trials)]
    queue_size = 2 * len(tasks)

    emit_progress(
        progress_callback,
        "run_start",
        {"trials": model.trials, "years": model.years, "shards": len(tasks), "mode": execution["mode"]},
    )
    logger.debug(
        "running %d trials in %d shard(s), mode=%s", model.trials, len(tasks), execution["mode"]
    )

    t0 = time.perf_counter()
    if execution["mode"] == "parallel":
        try:
            results = _fan_in(
                model,
                tasks,
                _execute_parallel(model, batch_size, execution),
                queue_size,
                progress_callback,
            )
        except Exception as exc:
            logger.warning("parallel execution failed, running shards in-process: %s", exc)
            execution["mode"] = "single"
            execution["workers_used"] = 1
            execution["backend"] = "single"
            execution["start_method"] = None
            execution["fallback_reason"] = str(exc)
            results = _fan_in(
                model,
                tasks,
                _execute_single_thread(model, batch_size),
                queue_size,
                progress_callback,
            )
    else:
        results = _fan_in(
            model,
            tasks,
            _execute_single_thread(model, batch_size),
            queue_size,
            progress_callback,
        )
    execution["elapsed_s"] = time.perf_counter() - t0

    emit_progress(progress_callback, "merge_complete", {"years": len(results)})
    return results, execution
