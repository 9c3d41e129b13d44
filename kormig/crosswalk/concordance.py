"""
Proportional (equal-split) classification concordances.

A concordance maps each source code to one or more destination codes with
weights summing to 1 per source code. Values are redistributed
multiplicatively and folded back by group-sum, so totals over matched
source codes are conserved.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from kormig.errors import ConcordanceError

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 1e-9


@dataclass
class ConcordanceStep:
    """One link of a concordance chain."""

    table: pd.DataFrame
    source: str
    destination: str


def build_proportional_concordance(
    raw: pd.DataFrame,
    source: str,
    destination: str,
    fill_down: bool = True,
) -> pd.DataFrame:
    """
    Build an equal-split concordance table.

    Args:
        raw: Table with at least the source and destination columns. Source
            cells may be blank below the first row of a merged block.
        source: Source code column
        destination: Destination code column
        fill_down: Carry the last non-blank source code into blank cells

    Returns:
        DataFrame with columns [source, destination, weight], sorted by
        source then destination, weight = 1 / number of destinations
    """
    missing = {source, destination} - set(raw.columns)
    if missing:
        raise ConcordanceError(f"Concordance table missing columns: {sorted(missing)}")

    table = raw[[source, destination]].copy()
    for col in (source, destination):
        table[col] = table[col].astype("string").str.strip().replace("", pd.NA)

    if fill_down:
        table[source] = table[source].ffill()

    table = table.dropna(subset=[source, destination])
    table = table.drop_duplicates(subset=[source, destination])
    table = table.sort_values([source, destination], kind="mergesort").reset_index(drop=True)

    counts = table.groupby(source)[destination].transform("count")
    table["weight"] = 1.0 / counts

    logger.info(
        f"Concordance {source}->{destination}: {table[source].nunique()} source codes, "
        f"{table[destination].nunique()} destination codes, "
        f"{(counts > 1).sum()} split rows"
    )
    return table.astype({source: str, destination: str})


def validate_weights(
    table: pd.DataFrame,
    source: str,
    weight: str = "weight",
    tol: float = WEIGHT_TOLERANCE,
    strict: bool = False,
) -> list[str]:
    """Return source codes whose weights do not sum to 1 within tolerance."""
    sums = table.groupby(source)[weight].sum()
    bad = sums[~np.isclose(sums, 1.0, atol=tol)].index.astype(str).tolist()

    if bad:
        message = f"{len(bad)} {source} codes have weights not summing to 1 (e.g. {bad[:5]})"
        if strict:
            raise ConcordanceError(message)
        logger.warning(message)

    return bad


def apply_concordance(
    records: pd.DataFrame,
    table: pd.DataFrame,
    source: str,
    destination: str,
    value_columns: list[str],
    by: list[str],
    weight: str = "weight",
) -> pd.DataFrame:
    """
    Reclassify records from source to destination codes.

    Every record emits one row per destination with each value column
    multiplied by the weight; rows are then summed over by + [destination].
    Summation skips missing values, but a group whose inputs are all missing
    stays missing (so gender splits absent in early years remain null).
    Records whose source code is absent from the table are dropped and
    logged.

    Args:
        records: Input records keyed by source code
        table: Concordance table from build_proportional_concordance
        source: Source code column (shared by records and table)
        destination: Destination code column produced
        value_columns: Numeric columns redistributed by weight
        by: Grouping columns kept alongside the destination code

    Returns:
        Aggregated DataFrame with columns by + [destination] + value_columns
    """
    links = table[[source, destination, weight]].copy()
    links[source] = links[source].astype(str)

    data = records.copy()
    data[source] = data[source].astype(str)
    if destination in data.columns and destination != source:
        data = data.drop(columns=destination)

    matched = data[source].isin(links[source])
    n_unmatched = int((~matched).sum())
    if n_unmatched:
        unmatched_codes = sorted(map(str, data.loc[~matched, source].unique()))
        logger.warning(
            f"Dropping {n_unmatched} records with {source} codes absent from the "
            f"concordance: {unmatched_codes[:10]}"
        )
    data = data[matched]

    merged = data.merge(links, on=source, how="inner")
    for col in value_columns:
        merged[col] = merged[col].astype(float) * merged[weight]

    keys = [c for c in by if c != source] + [destination]
    result = merged.groupby(keys, as_index=False, dropna=False)[value_columns].sum(min_count=1)

    logger.debug(
        f"Applied {source}->{destination}: {len(records)} records -> {len(result)} rows"
    )
    return result


def chain_concordance(
    records: pd.DataFrame,
    steps: list[ConcordanceStep],
    value_columns: list[str],
    by: list[str],
) -> pd.DataFrame:
    """Apply a sequence of concordances, e.g. KSIC8 -> KSIC9 -> KSIC10."""
    result = records
    for step in steps:
        result = apply_concordance(
            result,
            step.table,
            source=step.source,
            destination=step.destination,
            value_columns=value_columns,
            by=by,
        )
    return result
