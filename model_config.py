from copy import deepcopy
from dataclasses import dataclass
import multiprocessing


DEFAULT_CONFIG = {
    "model": {
        "portfolio": None,
        "income": None,
        "min_income": 0.0,
        # Rates are percentages, as entered on the command line.
        "inflation": 2.5,
        "return": 7.0,
        "return_range": 3.0,
        "min_return": 0.0,
        "defer": 0,
        "crash_interval": 0,
        "crash_prop": 0.0,
        "periods": 12,
        "years": 30,
        "trials": 250_000,
        "extreme_set_size": 10,
    },
    "simulation": {
        "seed": None,
        "parallel_enabled": True,
        "parallel_workers": None,
        "parallel_start_method": None,
        "batch_size": 4_096,
    },
    "report": {
        "show_every_n_years": 1,
        "show_intro": False,
        "show_model_params": False,
        "show_model_metrics": False,
    },
}

PERCENT_OPTIONS = ("inflation", "return", "return_range", "min_return", "crash_prop")


class InvalidConfiguration(ValueError):
    pass


def deep_merge(base, overrides):
    merged = deepcopy(base)
    _deep_merge_in_place(merged, overrides)
    return merged


def _deep_merge_in_place(target, overrides):
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge_in_place(target[key], value)
        else:
            target[key] = value


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _require_positive_int(section, name, value):
    if not _is_int(value) or value <= 0:
        raise InvalidConfiguration(f"{section}.{name} must be an int > 0.")


def _require_non_negative_int(section, name, value):
    if not _is_int(value) or value < 0:
        raise InvalidConfiguration(f"{section}.{name} must be an int >= 0.")


def validate_config(config):
    for key in ("model", "simulation", "report"):
        if key not in config:
            raise InvalidConfiguration(f"Missing top-level config section '{key}'.")

    model = config["model"]
    simulation = config["simulation"]
    report = config["report"]

    for name in ("portfolio", "income"):
        if model[name] is None:
            raise InvalidConfiguration(f"model.{name} is required.")
        if not _is_number(model[name]) or model[name] <= 0:
            raise InvalidConfiguration(f"model.{name} must be > 0.")
    if not _is_number(model["min_income"]) or model["min_income"] < 0:
        raise InvalidConfiguration("model.min_income must be >= 0.")
    if model["min_income"] > model["income"]:
        raise InvalidConfiguration(
            f"model.min_income ({model['min_income']:.1f}) must be less than "
            f"or equal to model.income ({model['income']:.1f})."
        )
    for name in PERCENT_OPTIONS:
        if not _is_number(model[name]):
            raise InvalidConfiguration(f"model.{name} must be a number.")
    if model["return_range"] < 0:
        raise InvalidConfiguration("model.return_range must be >= 0.")
    if not (0 <= model["crash_prop"] <= 100):
        raise InvalidConfiguration("model.crash_prop must be in [0, 100].")
    _require_non_negative_int("model", "defer", model["defer"])
    _require_non_negative_int("model", "crash_interval", model["crash_interval"])
    for name in ("periods", "years", "trials", "extreme_set_size"):
        _require_positive_int("model", name, model[name])

    seed = simulation["seed"]
    if seed is not None and (not _is_int(seed) or seed < 0):
        raise InvalidConfiguration("simulation.seed must be an int >= 0 or None.")
    if not isinstance(simulation["parallel_enabled"], bool):
        raise InvalidConfiguration("simulation.parallel_enabled must be a bool.")
    workers = simulation["parallel_workers"]
    if workers is not None and (not _is_int(workers) or workers <= 0):
        raise InvalidConfiguration("simulation.parallel_workers must be > 0 or None.")
    if simulation["parallel_start_method"] is not None:
        available_methods = multiprocessing.get_all_start_methods()
        if simulation["parallel_start_method"] not in available_methods:
            available = ", ".join(available_methods)
            raise InvalidConfiguration(
                "simulation.parallel_start_method must be one of "
                f"[{available}] or None."
            )
    _require_positive_int("simulation", "batch_size", simulation["batch_size"])

    _require_positive_int("report", "show_every_n_years", report["show_every_n_years"])
    for name in ("show_intro", "show_model_params", "show_model_metrics"):
        if not isinstance(report[name], bool):
            raise InvalidConfiguration(f"report.{name} must be a bool.")


@dataclass(frozen=True)
class ModelConfig:
    """The parameters of one retirement model run.

    Rates are fractions (0.07 for 7%) and money amounts are in year-0
    currency. Instances are immutable and shared read-only by all workers.
    """

    initial_portfolio: float
    target_income: float
    min_income: float = 0.0
    rtn_mean: float = 0.0
    rtn_sd: float = 0.0
    min_growth: float = 0.0
    inflation: float = 0.0
    crash_interval: int = 0
    crash_loss: float = 0.0
    years_deferred: int = 0
    years: int = 1
    trials: int = 1
    draws_per_year: int = 1
    tail_size: int = 1

    def __post_init__(self):
        for name in ("crash_interval", "years_deferred", "years", "trials", "draws_per_year", "tail_size"):
            value = getattr(self, name)
            if not _is_int(value):
                raise InvalidConfiguration(f"{name} must be an int (is {value!r})")
        if self.min_income > self.target_income:
            raise InvalidConfiguration(
                f"the minimum income ({self.min_income:.1f}) must be less than "
                f"or equal to the target ({self.target_income:.1f})"
            )
        if self.tail_size < 1:
            raise InvalidConfiguration(f"tail_size must be >= 1 (is {self.tail_size})")
        if self.years < 1:
            raise InvalidConfiguration(f"years must be >= 1 (is {self.years})")
        if self.trials < 1:
            raise InvalidConfiguration(f"trials must be >= 1 (is {self.trials})")
        if self.draws_per_year < 1:
            raise InvalidConfiguration(f"draws_per_year must be >= 1 (is {self.draws_per_year})")
        if self.years_deferred < 0:
            raise InvalidConfiguration(f"years_deferred must be >= 0 (is {self.years_deferred})")
        if self.crash_interval < 0:
            raise InvalidConfiguration(f"crash_interval must be >= 0 (is {self.crash_interval})")

    @property
    def crash_probability(self):
        if self.crash_interval <= 0:
            return 0.0
        return 1.0 / self.crash_interval


def build_model_config(config):
    model = config["model"]
    return ModelConfig(
        initial_portfolio=float(model["portfolio"]),
        target_income=float(model["income"]),
        min_income=float(model["min_income"]),
        rtn_mean=model["return"] / 100,
        rtn_sd=model["return_range"] / 100,
        min_growth=model["min_return"] / 100,
        inflation=model["inflation"] / 100,
        crash_interval=int(model["crash_interval"]),
        crash_loss=model["crash_prop"] / 100,
        years_deferred=int(model["defer"]),
        years=int(model["years"]),
        trials=int(model["trials"]),
        draws_per_year=int(model["periods"]),
        tail_size=int(model["extreme_set_size"]),
    )


def resolve_config(config=None):
    merged_config = deep_merge(DEFAULT_CONFIG, config or {})
    validate_config(merged_config)
    return merged_config
