from dataclasses import dataclass, field

import numpy as np

from model_config import ModelConfig
from tail_stat import TailStat


@dataclass
class YearAggregate:
    year: int
    withdrawal_deferred: bool
    portfolio: TailStat
    income: TailStat
    crash_count: int = 0
    bust_count: int = 0
    portfolio_shrunk_count: int = 0
    surplus_count: int = 0
    minimal_income_count: int = 0

    def merge(self, other):
        self.crash_count += other.crash_count
        self.bust_count += other.bust_count
        self.portfolio_shrunk_count += other.portfolio_shrunk_count
        self.surplus_count += other.surplus_count
        self.minimal_income_count += other.minimal_income_count
        self.portfolio.merge(other.portfolio)
        self.income.merge(other.income)


def new_year_aggregates(model):
    return [
        YearAggregate(
            year=year,
            withdrawal_deferred=year < model.years_deferred,
            portfolio=TailStat(model.tail_size),
            income=TailStat(model.tail_size),
        )
        for year in range(model.years)
    ]


def merge_year_aggregates(results, partial):
    if len(results) != len(partial):
        raise ValueError(
            f"cannot merge {len(partial)} years of results into {len(results)} years"
        )
    for target, source in zip(results, partial):
        target.merge(source)
    return results


@dataclass(eq=False)
class TrialState:
    """The mutable state of a block of independent trials.

    Each element of the array fields is one trial (a lane). Inflation is the
    same for every lane so the inflation-driven fields are scalars.
    """

    model: ModelConfig
    rng: np.random.Generator
    size: int
    portfolio: np.ndarray = field(init=False)
    current_income: np.ndarray = field(init=False)
    current_return: np.ndarray = field(init=False)
    bust: np.ndarray = field(init=False)
    inflation_factor: float = field(init=False)
    nominal_target_income: float = field(init=False)
    nominal_min_income: float = field(init=False)

    def __post_init__(self):
        self.reset()

    def reset(self):
        model = self.model
        self.portfolio = np.full(self.size, model.initial_portfolio, dtype=np.float64)
        self.current_income = np.full(self.size, model.target_income, dtype=np.float64)
        self.current_return = np.full(self.size, model.rtn_mean, dtype=np.float64)
        self.bust = np.zeros(self.size, dtype=bool)
        self.inflation_factor = 1.0
        self.nominal_target_income = model.target_income
        self.nominal_min_income = model.min_income

    def draw_return(self, agg, active):
        model = self.model
        rtn = self.rng.normal(model.rtn_mean, model.rtn_sd, size=self.size)
        if model.crash_interval > 0:
            crashed = (self.rng.random(self.size) < model.crash_probability) & active
            rtn[crashed] = -model.crash_loss
            agg.crash_count += int(np.count_nonzero(crashed))
        return rtn

    def choose_income(self, year, agg, active):
        model = self.model
        if year < model.years_deferred:
            self.current_income[active] = 0.0
            return

        # Drawing starts from the (inflated) target once the deferral is over.
        if year == model.years_deferred and model.years_deferred > 0:
            self.current_income[active] = self.nominal_target_income

        agg.income.add_many(self.current_income[active] / self.inflation_factor)

        # Draw what this year's return yields beyond inflation plus the
        # minimum growth.
        available = self.portfolio * self.current_return
        desired_growth = self.portfolio * (model.inflation + model.min_growth)
        income = available - desired_growth

        surplus = (income > self.nominal_target_income) & active
        minimal = (income < self.nominal_min_income) & active & ~surplus
        income[surplus] = self.nominal_target_income
        income[minimal] = self.nominal_min_income
        agg.surplus_count += int(np.count_nonzero(surplus))
        agg.minimal_income_count += int(np.count_nonzero(minimal))

        self.current_income = np.where(active, income, self.current_income)

    def evolve_portfolio(self, rtn, active):
        periods = self.model.draws_per_year
        period_mult = np.maximum(1.0 + rtn, 0.0) ** (1.0 / periods)
        period_income = self.current_income / periods

        running = active.copy()
        for _ in range(periods):
            self.portfolio = np.where(running, self.portfolio - period_income, self.portfolio)
            depleted = running & (self.portfolio <= 0.0)
            if depleted.any():
                self.portfolio[depleted] = 0.0
                self.bust |= depleted
                running &= ~depleted
            self.portfolio = np.where(running, self.portfolio * period_mult, self.portfolio)

    def record_portfolio(self, agg, survivors):
        real_portfolio = self.portfolio[survivors] / self.inflation_factor
        agg.portfolio.add_many(real_portfolio)
        agg.portfolio_shrunk_count += int(
            np.count_nonzero(real_portfolio < self.model.initial_portfolio)
        )

    def adjust_for_inflation(self):
        yearly_inflation = 1.0 + self.model.inflation
        self.inflation_factor *= yearly_inflation
        self.nominal_target_income *= yearly_inflation
        self.nominal_min_income *= yearly_inflation

    def run_year(self, year, agg):
        """Advance every live trial by one year; return how many went bust."""
        active = ~self.bust
        rtn = self.draw_return(agg, active)
        self.current_return = rtn
        self.choose_income(year, agg, active)
        self.evolve_portfolio(rtn, active)

        newly_bust = int(np.count_nonzero(self.bust & active))
        self.record_portfolio(agg, active & ~self.bust)
        self.adjust_for_inflation()
        return newly_bust


def run_trials(trials, model, rng, batch_size=4_096):
    """Run `trials` independent trials and return their per-year aggregates."""
    results = new_year_aggregates(model)
    remaining = int(trials)
    while remaining > 0:
        size = min(batch_size, remaining)
        state = TrialState(model=model, rng=rng, size=size)
        for year in range(model.years):
            newly_bust = state.run_year(year, results[year])
            if newly_bust:
                for later in results[year:]:
                    later.bust_count += newly_bust
            if state.bust.all():
                break
        remaining -= size
    return results
