"""
Bilateral district panel assembly.

One row per ordered (destination, origin) district pair and regression
period, excluding same-district and same-commuting-zone pairs. Outcomes,
exposures, instruments, controls and population weights are left-joined
on separately for the destination (_d) and origin (_o) side.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from kormig.crosswalk.region import CommutingZoneMapper
from kormig.model.shift_share import ExposureSet

logger = logging.getLogger(__name__)

PAIR_KEYS = ["iso_d", "iso_o", "period"]
SIDES = ("d", "o")


@dataclass
class PanelInputs:
    """Everything joined onto the panel skeleton."""

    flows: pd.DataFrame
    controls: pd.DataFrame
    population: pd.DataFrame


def assign_period(years: pd.Series, period_years: list[int]) -> pd.Series:
    """
    Map calendar years to period indices.

    Period p covers (period_years[p-1], period_years[p]] with the first
    period also including its start year; years after the last bound fall
    in the last period and years before the first bound get <NA>.
    """
    bounds = sorted(period_years)
    years = years.astype(int)
    period = pd.Series(pd.NA, index=years.index, dtype="Int64")
    last = len(bounds) - 1
    for p in range(last, 0, -1):
        period[years <= bounds[p]] = p
    period[years > bounds[-1]] = last
    period[years < bounds[0]] = pd.NA
    return period


class PanelBuilder:
    """
    Builds the bilateral migration panel.

    Args:
        cz_mapper: Commuting-zone mapper used for both sides of a pair
        period_years: Benchmark years bounding the periods
    """

    def __init__(self, cz_mapper: CommutingZoneMapper, period_years: list[int]):
        self.cz_mapper = cz_mapper
        self.period_years = sorted(period_years)
        self.periods = list(range(1, len(self.period_years)))

    def create_skeleton(self, regions: list[str]) -> pd.DataFrame:
        """
        Full ordered cross product of regions x periods without same-region
        or same-CZ pairs. Pairs with an unmapped side are dropped.
        """
        regions = sorted(set(regions))
        grid = pd.MultiIndex.from_product(
            [regions, regions, self.periods], names=PAIR_KEYS
        ).to_frame(index=False)
        grid = grid[grid["iso_d"] != grid["iso_o"]]

        grid = self.cz_mapper.attach(grid, "iso_d", "cz_id_d")
        grid = self.cz_mapper.attach(grid, "iso_o", "cz_id_o")

        unmapped = grid["cz_id_d"].isna() | grid["cz_id_o"].isna()
        if unmapped.any():
            logger.warning(f"Dropping {int(unmapped.sum()):,} pair-periods with an unmapped CZ")
        grid = grid[~unmapped].astype({"cz_id_d": int, "cz_id_o": int})
        grid = grid[grid["cz_id_d"] != grid["cz_id_o"]]

        logger.info(
            f"Panel skeleton: {len(regions)} districts, {len(grid):,} pair-periods"
        )
        return grid.sort_values(PAIR_KEYS, kind="mergesort").reset_index(drop=True)

    def period_migration(self, flows: pd.DataFrame) -> pd.DataFrame:
        """Sum yearly bilateral flows into periods."""
        data = flows.copy()
        data["period"] = assign_period(data["year"], self.period_years)
        data = data.dropna(subset=["period"])
        data["period"] = data["period"].astype(int)
        return data.groupby(PAIR_KEYS, as_index=False)["migration"].sum()

    def migration_change(self, flows: pd.DataFrame) -> pd.DataFrame:
        """
        Log change in bilateral flows between consecutive benchmark years.

        Rows are sorted by (iso_d, iso_o, year) before differencing; a zero
        flow yields a non-finite change that is kept for the regression
        layer to filter.
        """
        data = flows[flows["year"].astype(int).isin(self.period_years)].copy()
        data["year"] = data["year"].astype(int)
        data = data.sort_values(["iso_d", "iso_o", "year"], kind="mergesort")
        wide = data.pivot_table(
            index=["iso_d", "iso_o"], columns="year", values="migration", aggfunc="sum"
        ).reindex(columns=self.period_years)

        frames = []
        with np.errstate(divide="ignore", invalid="ignore"):
            for period in self.periods:
                start, end = self.period_years[period - 1], self.period_years[period]
                change = np.log(wide[end]) - np.log(wide[start])
                frame = change.rename("migration_change").reset_index()
                frame["period"] = period
                frames.append(frame)

        result = pd.concat(frames, ignore_index=True)
        return result.dropna(subset=["migration_change"])[PAIR_KEYS + ["migration_change"]]

    @staticmethod
    def _join_sides(
        panel: pd.DataFrame,
        table: pd.DataFrame,
        key: str,
        panel_key: str,
        on_period: bool = True,
    ) -> pd.DataFrame:
        """Left-join a table once per side, suffixing its value columns."""
        value_cols = [c for c in table.columns if c not in (key, "period")]
        for side in SIDES:
            renamed = table.rename(columns={key: f"{panel_key}_{side}"})
            renamed = renamed.rename(columns={c: f"{c}_{side}" for c in value_cols})
            keys = [f"{panel_key}_{side}"] + (["period"] if on_period else [])
            panel = panel.merge(renamed, on=keys, how="left")
        return panel

    def attach_exposures(self, panel: pd.DataFrame, exposure: ExposureSet) -> pd.DataFrame:
        """Join instruments and treatments by (CZ, period)."""
        result = panel
        for table in (exposure.instruments, exposure.treatments):
            result = self._join_sides(result, table, "cz_id", "cz_id")
        return result

    def build(
        self,
        regions: list[str],
        inputs: PanelInputs,
        exposure: ExposureSet,
    ) -> pd.DataFrame:
        """
        Assemble one panel variant.

        Migration counts missing for a pair-period default to 0; every other
        joined value keeps its nulls.
        """
        panel = self.create_skeleton(regions)
        n_rows = len(panel)

        panel = panel.merge(self.period_migration(inputs.flows), on=PAIR_KEYS, how="left")
        panel = panel.merge(self.migration_change(inputs.flows), on=PAIR_KEYS, how="left")
        panel["migration"] = panel["migration"].fillna(0.0)

        panel = self.attach_exposures(panel, exposure)
        panel = self._join_sides(panel, inputs.controls, "cz_id", "cz_id", on_period=False)
        panel = self._join_sides(panel, exposure.local_shares, "cz_id", "cz_id")

        population = inputs.population[["iso", "pop"]]
        panel = self._join_sides(panel, population, "iso", "iso", on_period=False)

        if len(panel) != n_rows:
            raise ValueError(
                f"CRITICAL: panel joins changed row count from {n_rows} to {len(panel)}"
            )
        return panel.sort_values(PAIR_KEYS, kind="mergesort").reset_index(drop=True)

    def build_variants(
        self,
        regions: list[str],
        inputs: PanelInputs,
        multi_donor: ExposureSet,
        single_donor: ExposureSet,
    ) -> dict[str, pd.DataFrame]:
        """
        Build the multi-donor panel and the mixed panel whose export-side
        instruments come from the single-donor set.

        Returns:
            {"adh": panel, "mixed": panel}
        """
        adh = self.build(regions, inputs, multi_donor)

        single = single_donor.instruments[["period", "cz_id", "z_export"]]
        mixed = adh.drop(columns=["z_export_d", "z_export_o"])
        mixed = self._join_sides(mixed, single, "cz_id", "cz_id")
        mixed = mixed[adh.columns]

        return {"adh": adh, "mixed": mixed}

    @staticmethod
    def exposure_descriptive(panel: pd.DataFrame) -> pd.DataFrame:
        """Pair-level outcomes with treatments and instruments only."""
        cols = [
            c for c in panel.columns
            if c in PAIR_KEYS
            or c.startswith(("cz_id_", "migration", "x_", "z_"))
        ]
        return panel[cols]


def panel_regions(flows: pd.DataFrame, excluded: list[str]) -> list[str]:
    """Canonical districts appearing in the flows, minus excluded codes."""
    regions = set(flows["iso_d"].astype(str)) | set(flows["iso_o"].astype(str))
    return sorted(regions - set(excluded))
