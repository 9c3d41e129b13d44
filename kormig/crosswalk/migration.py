"""
Internal migration harmonization.

Register years are loaded era by era, resolved to canonical district
codes, stripped of intra-district moves and aggregated to bilateral
(year, destination, origin) flows. Each year's records are folded into
the era table and discarded immediately to bound peak memory.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd

from kormig.crosswalk.region import RegionResolver
from kormig.data.loaders import MIGRATION_ERAS, MigrationEra, load_migration_year

logger = logging.getLogger(__name__)

FLOW_KEYS = ["year", "iso_d", "iso_o"]


@dataclass
class MigrationBuildStats:
    """Record counts dropped while harmonizing the register."""

    records: int = 0
    unresolved: int = 0
    same_region: int = 0
    missing_years: list[int] = field(default_factory=list)


def harmonize_migration(
    records: pd.DataFrame,
    resolver: RegionResolver,
) -> tuple[pd.DataFrame, int, int]:
    """
    Resolve origin/destination codes and drop intra-district moves.

    Args:
        records: Output of load_migration_year
        resolver: Resolver configured for the migration register

    Returns:
        (records with iso_d/iso_o, unresolved count, same-region count)
    """
    resolved, n_unresolved = resolver.resolve_frame(
        records, {"iso_d_raw": "iso_d", "iso_o_raw": "iso_o"}
    )
    moved = resolved["iso_d"] != resolved["iso_o"]
    n_same = int((~moved).sum())
    return resolved[moved].drop(columns=["iso_d_raw", "iso_o_raw"]), n_unresolved, n_same


def aggregate_flows(records: pd.DataFrame) -> pd.DataFrame:
    """Sum migration counts by (year, iso_d, iso_o)."""
    return records.groupby(FLOW_KEYS, as_index=False)["migration"].sum()


def build_migration_flows(
    migration_dir: Path,
    resolver: RegionResolver,
    years: list[int],
    eras: list[MigrationEra] | None = None,
) -> tuple[pd.DataFrame, MigrationBuildStats]:
    """
    Build bilateral flows for every available register year.

    Files are expected as migration{year}.csv in migration_dir. Missing
    years are logged and skipped.

    Returns:
        (flows with columns year, iso_d, iso_o, migration, build stats)
    """
    stats = MigrationBuildStats()
    era_tables = []

    for era in eras or MIGRATION_ERAS:
        era_years = [y for y in years if era.covers(y)]
        if not era_years:
            continue

        era_flows = []
        for year in era_years:
            path = migration_dir / f"migration{year}.csv"
            if not path.exists():
                logger.warning(f"Missing migration register for {year}: {path}")
                stats.missing_years.append(year)
                continue

            records = load_migration_year(path, era, year)
            stats.records += len(records)
            harmonized, n_unresolved, n_same = harmonize_migration(records, resolver)
            stats.unresolved += n_unresolved
            stats.same_region += n_same
            era_flows.append(aggregate_flows(harmonized))
            del records, harmonized

        if era_flows:
            era_table = pd.concat(era_flows, ignore_index=True)
            logger.info(f"Era {era.name}: {len(era_table):,} bilateral flow rows")
            era_tables.append(era_table)

    if not era_tables:
        raise ValueError("CRITICAL: no migration register files found")

    flows = pd.concat(era_tables, ignore_index=True)
    flows = aggregate_flows(flows).sort_values(FLOW_KEYS, kind="mergesort").reset_index(drop=True)

    logger.info(
        f"Migration flows: {stats.records:,} records, {stats.unresolved:,} unresolved, "
        f"{stats.same_region:,} intra-district, {len(flows):,} flow rows, "
        f"{flows['iso_d'].nunique()} destination districts"
    )
    return flows, stats


def exclude_regions(flows: pd.DataFrame, excluded: list[str]) -> pd.DataFrame:
    """Drop flows touching any excluded district."""
    mask = flows["iso_d"].isin(excluded) | flows["iso_o"].isin(excluded)
    if mask.any():
        logger.info(f"Excluding {int(mask.sum()):,} flow rows touching {excluded}")
    return flows[~mask].reset_index(drop=True)


def origin_outflows(flows: pd.DataFrame, years: list[int]) -> pd.DataFrame:
    """Total outflow by (year, iso_o) for the given years."""
    data = flows[flows["year"].isin(years)]
    return data.groupby(["year", "iso_o"], as_index=False)["migration"].sum()
