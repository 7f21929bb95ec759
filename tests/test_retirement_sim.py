import json
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import model_config
from model_config import InvalidConfiguration
import retirement_sim


def _base_config():
    return {
        "model": {
            "portfolio": 800_000.0,
            "income": 40_000.0,
            "min_income": 30_000.0,
            "crash_interval": 12,
            "crash_prop": 40.0,
            "years": 10,
            "trials": 500,
        },
        "simulation": {
            "seed": 123,
            "parallel_enabled": False,
        },
    }


def _assert_core_result_shape(result, expected_rows):
    assert "model" in result
    assert "years" in result
    assert "rows" in result
    assert "execution" in result
    assert len(result["rows"]) == expected_rows
    for row in result["rows"]:
        assert 0.0 <= row["bust_fraction"] <= 1.0
        assert 0.0 <= row["shrink_fraction"] <= 1.0


def test_single_thread_run_returns_every_year():
    result = retirement_sim.run_retirement_simulation(config=_base_config(), verbose=False)

    _assert_core_result_shape(result, expected_rows=10)
    assert result["execution"]["mode"] == "single"
    assert result["model"].trials == 500
    assert len(result["years"]) == 10


def test_parallel_run_matches_single_counts_for_deterministic_model():
    base = _base_config()
    base["model"].update({"return_range": 0.0, "crash_interval": 0})
    single = retirement_sim.run_retirement_simulation(config=base, verbose=False)

    parallel_cfg = model_config.deep_merge(
        base,
        {"simulation": {"parallel_enabled": True, "parallel_workers": 2}},
    )
    parallel = retirement_sim.run_retirement_simulation(config=parallel_cfg, verbose=False)

    assert parallel["execution"]["workers_used"] >= 1
    for left, right in zip(single["rows"], parallel["rows"]):
        assert left["bust_fraction"] == right["bust_fraction"]
        assert left["drawing_minimal_fraction"] == right["drawing_minimal_fraction"]
        assert left["portfolio_min"] == pytest.approx(right["portfolio_min"])
        assert left["portfolio_mean"] == pytest.approx(right["portfolio_mean"])


def test_stride_is_applied_to_rows():
    cfg = _base_config()
    cfg["report"] = {"show_every_n_years": 4}
    result = retirement_sim.run_retirement_simulation(config=cfg, verbose=False)
    assert [row["year"] for row in result["rows"]] == [0, 4, 8, 9]


def test_missing_portfolio_is_rejected():
    cfg = _base_config()
    cfg["model"]["portfolio"] = None
    with pytest.raises(InvalidConfiguration, match="model.portfolio is required"):
        retirement_sim.run_retirement_simulation(config=cfg, verbose=False)


def test_progress_callback_emits_lifecycle_events():
    events = []

    def progress_callback(event, payload):
        events.append((event, payload))

    retirement_sim.run_retirement_simulation(
        config=_base_config(),
        verbose=False,
        progress_callback=progress_callback,
    )

    event_names = [name for name, _ in events]
    assert event_names[0] == "run_start"
    assert "shard_complete" in event_names
    assert "merge_complete" in event_names
    assert event_names[-1] == "run_complete"


def test_verbose_run_prints_report(capsys):
    cfg = _base_config()
    cfg["report"] = {"show_intro": True, "show_model_params": True, "show_model_metrics": True}
    retirement_sim.run_retirement_simulation(config=cfg, verbose=True)

    out = capsys.readouterr().out
    assert "Running 500 trials over 10 years" in out
    assert "inflation adjusted" in out
    assert "Model parameters:" in out
    assert "Model metrics:" in out
    assert "Time taken (us):" in out


def test_cli_runs_and_prints_table(capsys):
    code = retirement_sim.main(
        [
            "-p", "500000",
            "-i", "20000",
            "--min-income", "15000",
            "-y", "5",
            "-t", "200",
            "--periods", "4",
            "--seed", "1",
            "--no-parallel",
        ]
    )

    out = capsys.readouterr().out
    assert code == 0
    assert "Running 200 trials over 5 years" in out
    data_lines = [line for line in out.splitlines() if line.strip()[:1].isdigit()]
    assert len(data_lines) == 5


def test_cli_rejects_min_income_above_target(capsys):
    code = retirement_sim.main(["-p", "1000", "-i", "50", "--min-income", "60", "-t", "10"])

    err = capsys.readouterr().err
    assert code == 2
    assert "Invalid configuration" in err
    assert "model.min_income" in err


def test_cli_requires_portfolio(capsys):
    code = retirement_sim.main(["-i", "50", "-t", "10"])
    assert code == 2
    assert "model.portfolio is required" in capsys.readouterr().err


def test_cli_reads_config_file_and_lets_flags_override(tmp_path, capsys):
    config_path = tmp_path / "retirement.json"
    config_path.write_text(
        json.dumps(
            {
                "model": {"portfolio": 250_000, "income": 10_000, "years": 8, "trials": 50},
                "simulation": {"seed": 9, "parallel_enabled": False},
                "report": {"show_every_n_years": 3},
            }
        ),
        encoding="utf-8",
    )

    code = retirement_sim.main(["--config", str(config_path), "-y", "4"])

    out = capsys.readouterr().out
    assert code == 0
    assert "Running 50 trials over 4 years" in out


def test_cli_reports_unreadable_config_file(tmp_path, capsys):
    code = retirement_sim.main(["--config", str(tmp_path / "missing.json")])
    assert code == 2
    assert "Cannot read config file" in capsys.readouterr().err
