"""
Establishment census harmonization.

Seven census years (1994-2019) are mapped to canonical district codes and
to a single industry classification (KSIC10) so that employment by
district and industry is comparable across years.
"""

import logging
from pathlib import Path

import pandas as pd

from kormig.crosswalk.concordance import (
    ConcordanceStep,
    build_proportional_concordance,
    chain_concordance,
)
from kormig.crosswalk.region import RegionResolver
from kormig.data.loaders import (
    ESTABLISHMENT_SCHEMAS,
    load_establishment,
    read_fill_down_sheet,
)

logger = logging.getLogger(__name__)

EMPLOYMENT_COLUMNS = ["emp_all", "emp_female", "emp_male"]

KSIC_SHEET_COLUMNS = ["src", "src_des", "dst", "dst_des", "weight", "misc"]


def match_establishment_regions(
    df: pd.DataFrame,
    resolver: RegionResolver,
) -> tuple[pd.DataFrame, int]:
    """
    Attach canonical district codes to census records.

    iso is built from the province and district columns and resolved with
    the establishment resolver (every code truncated to XXXX0, stat-code
    changes applied with fallback to the code itself).

    Returns:
        (records with iso, number of dropped records)
    """
    data = df.copy()
    data["iso_raw"] = data["sido"].fillna("").astype(str) + data["sigungu"].fillna("").astype(str)
    data, n_dropped = resolver.resolve_frame(data, {"iso_raw": "iso"})
    return data.drop(columns=["iso_raw", "sido", "sigungu"]), n_dropped


def load_ksic_concordance_sheet(path: str | Path, source: str, destination: str) -> pd.DataFrame:
    """Read a KSIC revision table (second sheet, two header rows)."""
    raw = read_fill_down_sheet(path, names=KSIC_SHEET_COLUMNS, skip=2, sheet=1)
    return raw.rename(columns={"src": source, "dst": destination})


def build_ksic_tables(
    ksic8_9_raw: pd.DataFrame,
    ksic9_10_raw: pd.DataFrame,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Build equal-split KSIC8 -> KSIC9 and KSIC9 -> KSIC10 tables.

    The published weight column is ignored; every destination of a source
    code receives 1 / number of destinations.
    """
    ksic8_9 = build_proportional_concordance(ksic8_9_raw, "ksic8", "ksic9")
    ksic9_10 = build_proportional_concordance(ksic9_10_raw, "ksic9", "ksic10")
    return ksic8_9, ksic9_10


def harmonize_year(
    records: pd.DataFrame,
    revision: str,
    ksic8_9: pd.DataFrame,
    ksic9_10: pd.DataFrame,
) -> pd.DataFrame:
    """Convert one census year to KSIC10, aggregated by (iso, year, ksic10)."""
    by = ["iso", "year"]
    if revision == "ksic10":
        return (
            records.groupby(by + ["ksic10"], as_index=False)[EMPLOYMENT_COLUMNS]
            .sum(min_count=1)
        )

    steps = []
    if revision == "ksic8":
        steps.append(ConcordanceStep(ksic8_9, "ksic8", "ksic9"))
    steps.append(ConcordanceStep(ksic9_10, "ksic9", "ksic10"))

    return chain_concordance(records, steps, value_columns=EMPLOYMENT_COLUMNS, by=by)


def harmonize_industries(
    frames: dict[int, pd.DataFrame],
    ksic8_9: pd.DataFrame,
    ksic9_10: pd.DataFrame,
    gender_start_year: int = 2000,
) -> pd.DataFrame:
    """
    Harmonize region-matched census years to KSIC10.

    Args:
        frames: Census year -> region-matched records. Frames are removed
            from the dict as they are folded in.
        ksic8_9: KSIC8 -> KSIC9 table
        ksic9_10: KSIC9 -> KSIC10 table
        gender_start_year: Gender splits before this year are forced null

    Returns:
        DataFrame with columns iso, year, ksic10, emp_all, emp_female, emp_male
    """
    harmonized = []
    for year in sorted(frames):
        records = frames.pop(year)
        revision = ESTABLISHMENT_SCHEMAS[year].revision
        result = harmonize_year(records, revision, ksic8_9, ksic9_10)
        if year < gender_start_year:
            result["emp_female"] = float("nan")
            result["emp_male"] = float("nan")
        logger.info(f"Harmonized {year} ({revision} -> ksic10): {len(result):,} rows")
        harmonized.append(result)
        del records

    est = pd.concat(harmonized, ignore_index=True)
    return est[["iso", "year", "ksic10"] + EMPLOYMENT_COLUMNS]


def build_establishment_panel(
    est_dir: Path,
    resolver: RegionResolver,
    years: list[int] | None = None,
) -> tuple[pd.DataFrame, dict[int, int]]:
    """
    Load and region-match every census year.

    Returns:
        (stacked region-matched records, dropped-record count per year)
    """
    frames = []
    dropped = {}
    for year in years or sorted(ESTABLISHMENT_SCHEMAS):
        schema = ESTABLISHMENT_SCHEMAS[year]
        raw = load_establishment(est_dir / f"est{year}.csv", schema)
        matched, dropped[year] = match_establishment_regions(raw, resolver)
        matched = matched.rename(columns={schema.revision: "industry_code"})
        matched["revision"] = schema.revision
        frames.append(matched)
        del raw

    return pd.concat(frames, ignore_index=True), dropped


def split_by_year(est_matched: pd.DataFrame) -> dict[int, pd.DataFrame]:
    """Split stacked region-matched records back into per-year frames."""
    frames = {}
    for year, group in est_matched.groupby("year"):
        revision = ESTABLISHMENT_SCHEMAS[int(year)].revision
        frames[int(year)] = (
            group.drop(columns=["revision"])
            .rename(columns={"industry_code": revision})
            .reset_index(drop=True)
        )
    return frames
