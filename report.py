INTRO_TEXT = """\
This simulates a retirement portfolio over many independent trials. Each
year the portfolio earns a random return (normally distributed around the
expected return) and may suffer a market crash instead. Income is drawn in
equal instalments through the year. The income for the year is set from
that year's return: whatever the return yields beyond inflation plus the
minimum growth is drawn, but never more than the target income nor less
than the minimum income. A trial is bust once the portfolio is exhausted.

All money values are inflation adjusted, in today's currency. The minimum
and maximum values are the averages of the most extreme results observed,
which steadies them between runs."""


def _year_row(agg, trials, last_portfolio_mean):
    pfl_min, pfl_mean, pfl_sd, pfl_max, pfl_count = agg.portfolio.summary()
    inc_min, inc_mean, inc_sd, inc_max, inc_count = agg.income.summary()

    income_fraction = 0.0
    if pfl_mean != 0:
        income_fraction = inc_mean / pfl_mean
    nett_return = 0.0
    if last_portfolio_mean != 0:
        nett_return = (pfl_mean - last_portfolio_mean) / last_portfolio_mean

    return {
        "year": agg.year,
        "withdrawal_deferred": agg.withdrawal_deferred,
        "portfolio_min": pfl_min,
        "portfolio_mean": pfl_mean,
        "portfolio_sd": pfl_sd,
        "portfolio_max": pfl_max,
        "portfolio_count": pfl_count,
        "income_min": inc_min,
        "income_mean": inc_mean,
        "income_sd": inc_sd,
        "income_max": inc_max,
        "income_count": inc_count,
        "shrink_fraction": agg.portfolio_shrunk_count / trials,
        "drawing_covered_fraction": agg.surplus_count / trials,
        "drawing_minimal_fraction": agg.minimal_income_count / trials,
        "bust_fraction": agg.bust_count / trials,
        "crash_fraction": agg.crash_count / trials,
        "mean_income_as_portfolio_fraction": income_fraction,
        "mean_nett_return": nett_return,
    }


def build_report_rows(results, model, show_every_n_years=1):
    """Derive the per-year report values, keeping every nth year and the last."""
    rows = []
    last_portfolio_mean = model.initial_portfolio
    last_index = len(results) - 1
    for idx, agg in enumerate(results):
        row = _year_row(agg, model.trials, last_portfolio_mean)
        last_portfolio_mean = row["portfolio_mean"]
        if idx % show_every_n_years == 0 or idx == last_index:
            rows.append(row)
    return rows


# (group, label, key, width, kind)
_COLUMNS = (
    ("", "Year", "year", 4, "int"),
    ("Portfolio", "min", "portfolio_min", 12, "money"),
    ("Portfolio", "shrunk", "shrink_fraction", 7, "pct"),
    ("Portfolio", "avg", "portfolio_mean", 12, "money"),
    ("Portfolio", "SD", "portfolio_sd", 11, "money"),
    ("Portfolio", "max", "portfolio_max", 12, "money"),
    ("Drawing", "min", "income_min", 9, "money"),
    ("Drawing", "avg", "income_mean", 9, "money"),
    ("Drawing", "SD", "income_sd", 8, "money"),
    ("Drawing", "max", "income_max", 9, "money"),
    ("Average", "%savings", "mean_income_as_portfolio_fraction", 8, "pct"),
    ("Average", "return", "mean_nett_return", 8, "pct"),
    ("Drawing", "covered", "drawing_covered_fraction", 7, "pct"),
    ("Drawing", "minimal", "drawing_minimal_fraction", 7, "pct"),
    ("", "bust", "bust_fraction", 7, "pct"),
)


def _format_value(value, width, kind):
    if kind == "int":
        return f"{value:>{width}d}"
    if kind == "pct":
        return f"{value:>{width}.2%}"
    return f"{value:>{width},.0f}"


def format_report(rows):
    groups = " | ".join(f"{group:>{width}}" for group, _, _, width, _ in _COLUMNS)
    labels = " | ".join(f"{label:>{width}}" for _, label, _, width, _ in _COLUMNS)
    lines = [
        "All money values are inflation adjusted",
        groups,
        labels,
        "-" * len(labels),
    ]
    for row in rows:
        line = " | ".join(
            _format_value(row[key], width, kind) for _, _, key, width, kind in _COLUMNS
        )
        if row["withdrawal_deferred"]:
            line += "  (withdrawal deferred)"
        lines.append(line)
    return lines


def format_model_params(model, show_every_n_years):
    return [
        "Model parameters:",
        f"  Inflation:                   {model.inflation:.2%}",
        f"  Initial portfolio:           {model.initial_portfolio:,.0f}",
        f"  Growth mean:                 {model.rtn_mean:.2%}",
        f"  Growth SD:                   {model.rtn_sd:.2%}",
        f"  Growth target minimum:       {model.min_growth:.2%}",
        f"  Income target:               {model.target_income:,.0f}",
        f"  Income minimum:              {model.min_income:,.0f}",
        f"  Drawings per year:           {model.draws_per_year}",
        f"  Years deferred:              {model.years_deferred}",
        f"  Crash interval:              {model.crash_interval}",
        f"  Crash loss:                  {model.crash_loss:.2%}",
        f"  Years:                       {model.years}",
        f"  Trials:                      {model.trials:,}",
        f"  Years shown:                 every {show_every_n_years}",
        f"  Extreme set size:            {model.tail_size}",
    ]


def format_model_metrics(execution):
    lines = [
        "Model metrics:",
        f"  Execution mode:              {execution['mode']} "
        f"({execution['backend']}, workers={execution['workers_used']})",
        f"  Shards:                      {len(execution['shard_trials'])}",
    ]
    if execution["start_method"] is not None:
        lines.append(f"  Parallel start method:       {execution['start_method']}")
    if execution["fallback_reason"] is not None:
        lines.append(f"  Backend fallback reason:     {execution['fallback_reason']}")
    if execution["elapsed_s"] is not None:
        lines.append(f"  Time taken (us):             {execution['elapsed_s'] * 1e6:,.0f}")
    return lines


def print_run(result, report):
    model = result["model"]
    if report["show_intro"]:
        print(INTRO_TEXT)
        print()
    if report["show_model_params"]:
        for line in format_model_params(model, report["show_every_n_years"]):
            print(line)
        print()
    for line in format_report(result["rows"]):
        print(line)
    if report["show_model_metrics"]:
        print()
        for line in format_model_metrics(result["execution"]):
            print(line)
