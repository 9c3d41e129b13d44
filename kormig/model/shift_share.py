"""
Shift-share exposure construction.

Trade shocks are built per (reporter, flow, industry) from deflated
Comtrade values, normalized by national industry employment, and
allocated to commuting zones through pre-period employment shares:

    x_c,p = sum_k [ shock_KOR,k,p / emp_k,base(p) ] * share_c,k   (treatment)
    z_c,p = sum_k [ sum_{j in donors} shock_j,k,p / emp_k,1999 ] * share_c,k,1999   (instrument)

Shares are always measured in a benchmark year no later than the start of
the shock period, never in the outcome period.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from kormig.crosswalk.region import CommutingZoneMapper

logger = logging.getLogger(__name__)

SHOCK_GROUP = ["reporter_iso", "flow_code", "ksic10"]
SHOCK_SORT_KEY = SHOCK_GROUP + ["period"]

SHOCK_COLUMNS = [
    "period",
    "reporter_code",
    "reporter_iso",
    "partner_code",
    "partner_iso",
    "flow_code",
    "ksic10",
    "shock",
]


# =============================================================================
# Deflation and shocks
# =============================================================================


def cumulative_deflator(
    deflators: pd.DataFrame,
    base_year: int,
    reference_year: int = 2019,
    country: str = "usa",
) -> float:
    """
    Product of annual deflator ratios from base_year up to reference_year.

    Args:
        deflators: Table with columns country_iso, year_from, gdp_deflator
            (ratio of year_from + 1 prices to year_from prices)
        base_year: Year the values are expressed in
        reference_year: Constant-price target year

    Returns:
        Multiplicative factor converting base_year values to reference_year
    """
    rows = deflators[
        (deflators["country_iso"].str.lower() == country.lower())
        & (deflators["year_from"].astype(int) >= base_year)
        & (deflators["year_from"].astype(int) < reference_year)
    ]
    expected = reference_year - base_year
    if len(rows) != max(expected, 0):
        logger.warning(
            f"Deflator {base_year}->{reference_year}: expected {expected} annual ratios, "
            f"found {len(rows)}"
        )
    return float(np.prod(rows["gdp_deflator"].astype(float)))


def deflate_trade(
    trade: pd.DataFrame,
    deflators: pd.DataFrame,
    reference_year: int = 2019,
    country: str = "usa",
) -> pd.DataFrame:
    """Express every period's trade value in reference_year prices."""
    result = trade.copy()
    result["period"] = result["period"].astype(int)
    for period in sorted(result["period"].unique()):
        if period >= reference_year:
            continue
        factor = cumulative_deflator(deflators, int(period), reference_year, country)
        result.loc[result["period"] == period, "value"] *= factor
        logger.info(f"Deflated {period} trade values by {factor:.4f}")
    return result


def compute_trade_shocks(
    trade: pd.DataFrame,
    periods: list[int],
    scale: float = 1000.0,
) -> pd.DataFrame:
    """
    Difference deflated trade values between consecutive benchmark periods.

    Rows are sorted by (reporter_iso, flow_code, ksic10, period) before the
    lag is taken; the lagged value of a group is its value in the previous
    entry of `periods`, or 0 when that period has no record. The first
    entry of `periods` only serves as a lag and is not returned.

    Args:
        trade: Deflated trade with columns period, reporter_*, partner_*,
            flow_code, ksic10, value
        periods: Benchmark periods in increasing order, e.g. [2001, 2019]
        scale: Shock units (value change per `scale` currency units)

    Returns:
        DataFrame with SHOCK_COLUMNS for periods[1:]
    """
    periods = sorted(periods)
    data = trade[trade["period"].astype(int).isin(periods)].copy()
    data["period"] = data["period"].astype(int)
    data = data[data["ksic10"].notna() & (data["ksic10"].astype(str) != "")]
    data = data.sort_values(SHOCK_SORT_KEY, kind="mergesort").reset_index(drop=True)

    previous = {later: earlier for earlier, later in zip(periods[:-1], periods[1:])}
    lagged = data[SHOCK_GROUP + ["period", "value"]].copy()
    lagged = lagged.groupby(SHOCK_GROUP + ["period"], as_index=False)["value"].sum()
    lagged["period"] = lagged["period"].map({v: k for k, v in previous.items()})
    lagged = lagged.dropna(subset=["period"]).rename(columns={"value": "value_lag"})
    lagged["period"] = lagged["period"].astype(int)

    current = data[data["period"].isin(periods[1:])]
    shocks = current.merge(lagged, on=SHOCK_GROUP + ["period"], how="left")
    shocks["value_lag"] = shocks["value_lag"].fillna(0.0)
    shocks["shock"] = (shocks["value"] - shocks["value_lag"]) / scale

    logger.info(
        f"Trade shocks over {periods}: {len(shocks):,} rows, "
        f"{shocks['reporter_iso'].nunique()} reporters"
    )
    return shocks[SHOCK_COLUMNS].sort_values(SHOCK_SORT_KEY, kind="mergesort").reset_index(drop=True)


# =============================================================================
# Employment
# =============================================================================


def national_industry_employment(est: pd.DataFrame, years: list[int]) -> pd.DataFrame:
    """Wide national employment per industry: ksic10, emp_<year>... (missing -> 0)."""
    data = est[est["year"].astype(int).isin(years)]
    totals = data.groupby(["year", "ksic10"], as_index=False)["emp_all"].sum()
    wide = totals.pivot(index="ksic10", columns="year", values="emp_all")
    wide = wide.reindex(columns=sorted(years)).fillna(0.0)
    wide.columns = [f"emp_{int(y)}" for y in wide.columns]
    return wide.reset_index()


def attach_national_employment(shocks: pd.DataFrame, employment: pd.DataFrame) -> pd.DataFrame:
    """Left-join national industry employment onto shocks."""
    return shocks.merge(employment, on="ksic10", how="left")


def local_employment_shares(
    est: pd.DataFrame,
    cz_mapper: CommutingZoneMapper,
    years: list[int],
) -> pd.DataFrame:
    """
    Industry employment shares per commuting zone.

    Returns:
        Wide DataFrame with columns cz_id, ksic10, emp_share_<year>...
        (missing -> 0). Districts without a commuting zone are excluded.
    """
    data = est[est["year"].astype(int).isin(years)][["iso", "year", "ksic10", "emp_all"]]
    data = cz_mapper.attach(data, "iso", "cz_id")
    data = data.dropna(subset=["cz_id"])

    emp = data.groupby(["year", "cz_id", "ksic10"], as_index=False)["emp_all"].sum()
    total = emp.groupby(["year", "cz_id"])["emp_all"].transform("sum")
    emp["share"] = emp["emp_all"] / total

    wide = emp.pivot_table(
        index=["cz_id", "ksic10"], columns="year", values="share", aggfunc="sum"
    )
    wide = wide.reindex(columns=sorted(years)).fillna(0.0)
    wide = wide.replace([np.inf, -np.inf], 0.0)
    wide.columns = [f"emp_share_{int(y)}" for y in wide.columns]
    wide = wide.reset_index()
    wide["cz_id"] = wide["cz_id"].astype(int)
    return wide


def _coerce_finite(values: pd.Series) -> pd.Series:
    """NaN and +/-inf become 0."""
    return values.replace([np.inf, -np.inf], np.nan).fillna(0.0)


# =============================================================================
# Exposure builder
# =============================================================================


@dataclass
class ExposureSet:
    """CZ-level exposure tables for one donor set."""

    donors: list[str]
    industry: pd.DataFrame
    instruments: pd.DataFrame
    treatments: pd.DataFrame
    local_shares: pd.DataFrame


class ExposureBuilder:
    """
    Build treatment and instrument exposures from stacked shocks and shares.

    Args:
        shocks: Stacked shocks (period = benchmark end year) with national
            employment columns emp_<year>
        shares: Output of local_employment_shares
        period_years: Benchmark years bounding the periods, e.g.
            [2001, 2010, 2019] -> period 1 = 2001-2010, period 2 = 2010-2019
        home_country: Reporter whose shock is the treatment
        treatment_share_year: Share year for the treatment; None uses the
            base year of each period
        instrument_share_year: Share year for the instrument
        instrument_denominator_year: National employment year dividing
            donor shocks
    """

    def __init__(
        self,
        shocks: pd.DataFrame,
        shares: pd.DataFrame,
        period_years: list[int],
        home_country: str = "KOR",
        treatment_share_year: int | None = 1999,
        instrument_share_year: int = 1999,
        instrument_denominator_year: int = 1999,
    ):
        self.period_years = sorted(period_years)
        self.periods = list(range(1, len(self.period_years)))
        self.home_country = home_country
        self.treatment_share_year = treatment_share_year
        self.instrument_share_year = instrument_share_year
        self.instrument_denominator_year = instrument_denominator_year

        for year in (treatment_share_year, instrument_share_year):
            if year is not None and year > self.period_years[0]:
                raise ValueError(
                    f"Share year {year} is after the first shock period start {self.period_years[0]}"
                )

        self.shocks = self._index_periods(shocks)
        self.shares = shares

    def base_year(self, period: int) -> int:
        return self.period_years[period - 1]

    def end_year(self, period: int) -> int:
        return self.period_years[period]

    def _index_periods(self, shocks: pd.DataFrame) -> pd.DataFrame:
        """Replace benchmark end years with period indices 1..n."""
        index = {self.end_year(p): p for p in self.periods}
        data = shocks.copy()
        data["period"] = data["period"].astype(int).map(index)
        dropped = data["period"].isna()
        if dropped.any():
            logger.warning(f"Ignoring {int(dropped.sum())} shock rows outside the period years")
        data = data[~dropped].copy()
        data["period"] = data["period"].astype(int)
        return data

    def treatment_shocks(self) -> pd.DataFrame:
        """Home-country shock per industry, normalized by base-year employment."""
        data = self.shocks[self.shocks["reporter_iso"] == self.home_country].copy()
        denominator = pd.Series(np.nan, index=data.index)
        for period in self.periods:
            col = f"emp_{self.base_year(period)}"
            mask = data["period"] == period
            denominator[mask] = data.loc[mask, col]
        data["treatment"] = _coerce_finite(data["shock"] / denominator)
        return data.groupby(["period", "flow_code", "ksic10"], as_index=False)["treatment"].sum()

    def instrument_shocks(self, donors: list[str]) -> pd.DataFrame:
        """Summed donor shocks per industry, normalized by pre-period employment."""
        if self.home_country in donors:
            raise ValueError(f"Donor set must exclude {self.home_country}")
        data = self.shocks[self.shocks["reporter_iso"].isin(donors)].copy()
        col = f"emp_{self.instrument_denominator_year}"
        data["iv_var"] = _coerce_finite(data["shock"] / data[col])
        return data.groupby(["period", "flow_code", "ksic10"], as_index=False)["iv_var"].sum()

    def industry_table(self, donors: list[str]) -> pd.DataFrame:
        """
        Wide industry table with treatment_M/X and iv_var_M/X.

        Industries missing any of the four values are dropped.
        """
        treat = self.treatment_shocks()
        iv = self.instrument_shocks(donors)
        merged = treat.merge(iv, on=["period", "flow_code", "ksic10"], how="left")

        wide = merged.set_index(["period", "ksic10", "flow_code"])[["treatment", "iv_var"]].unstack(
            "flow_code"
        )
        wide.columns = [f"{value}_{flow}" for value, flow in wide.columns]
        wide = wide.reset_index()
        for col in ("treatment_M", "treatment_X", "iv_var_M", "iv_var_X"):
            if col not in wide.columns:
                wide[col] = np.nan

        complete = wide[["treatment_M", "treatment_X", "iv_var_M", "iv_var_X"]].notna().all(axis=1)
        if (~complete).any():
            logger.info(f"Dropping {int((~complete).sum())} industry-periods without both flows")
        return wide[complete].reset_index(drop=True)

    def _shares_long(self, year: int | None) -> pd.DataFrame:
        """(cz_id, ksic10, period, share) using a fixed year or period base years."""
        frames = []
        for period in self.periods:
            col = f"emp_share_{year if year is not None else self.base_year(period)}"
            frame = self.shares[["cz_id", "ksic10", col]].rename(columns={col: "share"})
            frame["period"] = period
            frames.append(frame)
        long = pd.concat(frames, ignore_index=True)
        long["share"] = long["share"].fillna(0.0)
        return long

    def _allocate(
        self,
        industry: pd.DataFrame,
        share_year: int | None,
        columns: dict[str, str],
    ) -> pd.DataFrame:
        """Sum industry values x CZ shares by (period, cz_id)."""
        shares = self._shares_long(share_year)
        merged = shares.merge(
            industry[["period", "ksic10"] + list(columns)], on=["period", "ksic10"], how="left"
        )
        for col in columns:
            merged[col] = merged[col] * merged["share"]
        result = merged.groupby(["period", "cz_id"], as_index=False)[list(columns)].sum()
        return result.rename(columns=columns)

    def instruments(self, industry: pd.DataFrame) -> pd.DataFrame:
        return self._allocate(
            industry,
            self.instrument_share_year,
            {"iv_var_M": "z_import", "iv_var_X": "z_export"},
        )

    def treatments(self, industry: pd.DataFrame) -> pd.DataFrame:
        return self._allocate(
            industry,
            self.treatment_share_year,
            {"treatment_M": "x_import", "treatment_X": "x_export"},
        )

    def local_shares(self, industry: pd.DataFrame) -> pd.DataFrame:
        """
        Share of 1999 employment in industries with a non-zero home shock.

        Controls for incomplete shares in the shift-share design.
        """
        shares = self._shares_long(self.instrument_share_year)
        merged = shares.merge(
            industry[["period", "ksic10", "treatment_M", "treatment_X"]],
            on=["period", "ksic10"],
            how="left",
        )
        result = None
        for flow, name in (("M", "local_share_m"), ("X", "local_share_x")):
            exposed = merged[merged[f"treatment_{flow}"].abs() > 0]
            part = exposed.groupby(["period", "cz_id"], as_index=False)["share"].sum()
            part = part.rename(columns={"share": name})
            result = part if result is None else result.merge(part, on=["period", "cz_id"], how="outer")
        return result

    def build(self, donors: list[str]) -> ExposureSet:
        """Build every exposure table for one donor set."""
        industry = self.industry_table(donors)
        exposure = ExposureSet(
            donors=list(donors),
            industry=industry,
            instruments=self.instruments(industry),
            treatments=self.treatments(industry),
            local_shares=self.local_shares(industry),
        )
        logger.info(
            f"Exposure ({'+'.join(donors)}): {len(industry):,} industry-periods, "
            f"{exposure.instruments['cz_id'].nunique()} commuting zones"
        )
        return exposure
