"""
Commuting-zone control variables.

Pre-period covariates keyed by commuting zone: manufacturing employment
share (2000), college-educated and foreign-born population shares (2000
census), census population, and the 1996-2000 log change in outflows.
District-level 2001 population is built separately as the regression
weight.
"""

import logging
from pathlib import Path

import numpy as np
import pandas as pd

from kormig.crosswalk.region import CommutingZoneMapper, RegionResolver
from kormig.data.loaders import read_table

logger = logging.getLogger(__name__)

MANUFACTURING_DIVISIONS = range(10, 35)
CENSUS_TOTAL_LABEL = "00 계"

CONTROL_COLUMNS = [
    "manu_share",
    "college_educated_share",
    "foreign_born_share",
    "population",
    "pre_migration_change",
]


def manufacturing_share(
    est: pd.DataFrame,
    cz_mapper: CommutingZoneMapper,
    year: int = 2000,
) -> pd.DataFrame:
    """Share of employment in KSIC10 divisions 10-34 per commuting zone."""
    data = est[est["year"].astype(int) == year][["iso", "ksic10", "emp_all"]].copy()
    division = pd.to_numeric(data["ksic10"].astype(str).str[:2], errors="coerce")
    data["manufacturing"] = division.isin(MANUFACTURING_DIVISIONS)
    data = cz_mapper.attach(data, "iso", "cz_id").dropna(subset=["cz_id"])

    total = data.groupby("cz_id")["emp_all"].sum()
    manu = data[data["manufacturing"]].groupby("cz_id")["emp_all"].sum()
    share = (manu.reindex(total.index).fillna(0.0) / total).rename("manu_share")
    return share.reset_index()


def _clean_census_codes(
    df: pd.DataFrame,
    code_corrections: dict[str, str],
) -> pd.DataFrame:
    """Keep five-digit district rows (XXXX0) and apply the code corrections."""
    data = df.copy()
    data["iso"] = data["iso"].astype(str).str.strip()
    data = data[data["iso"].str.match(r"^\d{5}")].copy()
    data["iso"] = data["iso"].str[:5]
    data = data[data["iso"].str[4] == "0"]
    data["iso"] = data["iso"].replace(code_corrections)
    return data


def college_share(
    college: pd.DataFrame,
    cz_mapper: CommutingZoneMapper,
    code_corrections: dict[str, str],
) -> pd.DataFrame:
    """
    College-educated share and total population per commuting zone.

    Args:
        college: Census table with columns iso, age, college_educated, pop;
            the row labelled "00 계" holds the district total

    Returns:
        DataFrame with columns cz_id, college_educated_share, population
    """
    data = _clean_census_codes(college, code_corrections)
    data["pop"] = pd.to_numeric(data["pop"], errors="coerce")
    data["is_total"] = data["college_educated"].astype(str).str.strip() == CENSUS_TOTAL_LABEL
    data = cz_mapper.attach(data, "iso", "cz_id").dropna(subset=["cz_id"])

    grouped = data.groupby(["cz_id", "is_total"])["pop"].sum().unstack("is_total")
    grouped = grouped.reindex(columns=[False, True])
    result = pd.DataFrame({
        "population": grouped[True],
        "college_educated_share": grouped[False] / grouped[True],
    })
    result["college_educated_share"] = result["college_educated_share"].replace(
        [np.inf, -np.inf], np.nan
    )
    return result.reset_index()


def foreign_born_share(
    foreign: pd.DataFrame,
    population: pd.DataFrame,
    cz_mapper: CommutingZoneMapper,
    code_corrections: dict[str, str],
) -> pd.DataFrame:
    """Foreign-born population over census population per commuting zone."""
    data = _clean_census_codes(foreign, code_corrections)
    data["foreign_born_pop"] = pd.to_numeric(data["foreign_born_pop"], errors="coerce")
    data = cz_mapper.attach(data, "iso", "cz_id").dropna(subset=["cz_id"])

    result = data.groupby("cz_id", as_index=False)["foreign_born_pop"].sum()
    result = result.merge(population[["cz_id", "population"]], on="cz_id", how="left")
    result["foreign_born_share"] = result["foreign_born_pop"] / result["population"]
    result["foreign_born_share"] = result["foreign_born_share"].replace([np.inf, -np.inf], np.nan)
    return result[["cz_id", "foreign_born_share"]]


def region_population(
    pop: pd.DataFrame,
    resolver: RegionResolver,
    province_recodes: dict[str, str],
) -> pd.DataFrame:
    """
    District population from the 2001 register, resolved to canonical codes.

    Args:
        pop: Table with a district label column (five-digit code embedded)
            and a population column, in that order
        resolver: Resolver without normalization and with strict KOSIS
            matching
        province_recodes: Two-digit province prefix remaps

    Returns:
        DataFrame with columns iso, pop
    """
    data = pop.iloc[:, :2].copy()
    data.columns = ["label", "pop"]
    data["iso_raw"] = data["label"].astype(str).str.extract(r"(\d{5})", expand=False)
    data = data.dropna(subset=["iso_raw"])
    prefix = data["iso_raw"].str[:2]
    data["iso_raw"] = prefix.map(province_recodes).fillna(prefix) + data["iso_raw"].str[2:]
    data["pop"] = pd.to_numeric(data["pop"], errors="coerce")

    data, n_dropped = resolver.resolve_frame(data, {"iso_raw": "iso"})
    result = data.groupby("iso", as_index=False)["pop"].sum()
    logger.info(f"Population 2001: {len(result)} districts ({n_dropped} rows unresolved)")
    return result


def pre_period_migration_change(
    outflows: pd.DataFrame,
    cz_mapper: CommutingZoneMapper,
    years: tuple[int, int] = (1996, 2000),
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Log change in total outflows between two pre-period years.

    Args:
        outflows: Columns year, iso_o, migration
        years: (start, end)

    Returns:
        (district-level change with columns iso_o, year, migration_change,
        cz_id; CZ-level change with columns cz_id, pre_migration_change)
    """
    start, end = years
    data = outflows[outflows["year"].astype(int).isin(years)].copy()
    data["year"] = data["year"].astype(int)

    by_origin = data.groupby(["iso_o", "year"])["migration"].sum().unstack("year")
    by_origin = by_origin.reindex(columns=[start, end])
    with np.errstate(divide="ignore", invalid="ignore"):
        change = np.log(by_origin[end]) - np.log(by_origin[start])
    district = change.rename("migration_change").dropna().reset_index()
    district["year"] = end
    district = cz_mapper.attach(district, "iso_o", "cz_id")

    data = cz_mapper.attach(data, "iso_o", "cz_id").dropna(subset=["cz_id"])
    by_cz = data.groupby(["cz_id", "year"])["migration"].sum().unstack("year")
    by_cz = by_cz.reindex(columns=[start, end])
    with np.errstate(divide="ignore", invalid="ignore"):
        cz_change = np.log(by_cz[end]) - np.log(by_cz[start])
    cz_change = cz_change.replace([np.inf, -np.inf], np.nan).rename("pre_migration_change")

    return district[["iso_o", "year", "migration_change", "cz_id"]], cz_change.reset_index()


def build_controls(
    manu: pd.DataFrame,
    college: pd.DataFrame,
    foreign: pd.DataFrame,
    pre_migration: pd.DataFrame,
) -> pd.DataFrame:
    """
    Join CZ covariates onto the manufacturing-share frame.

    Missing covariates stay null.
    """
    controls = manu.merge(college, on="cz_id", how="left")
    controls = controls.merge(foreign, on="cz_id", how="left")
    controls = controls.merge(pre_migration, on="cz_id", how="left")
    controls["cz_id"] = controls["cz_id"].astype(int)

    n_missing = controls[CONTROL_COLUMNS].isna().any(axis=1).sum()
    if n_missing:
        logger.warning(f"{n_missing} commuting zones have at least one missing control")
    return controls[["cz_id"] + CONTROL_COLUMNS].sort_values("cz_id").reset_index(drop=True)


def load_covariate_tables(covariates_dir: Path) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Read the 2000 census covariate extracts (two header rows each)."""
    college = read_table(covariates_dir / "college_educated2000.csv", skiprows=2, header=None)
    college = college.iloc[:, :4]
    college.columns = ["iso", "age", "college_educated", "pop"]

    foreign = read_table(covariates_dir / "foreign_born2000.csv", skiprows=2, header=None)
    foreign = foreign.iloc[:, :2]
    foreign.columns = ["iso", "foreign_born_pop"]
    return college, foreign
