"""
Filesystem staging area shared by pipeline stages.

Each staged table has exactly one producer stage. Consumers read whole
tables; code columns are always read as strings to keep leading zeros.
"""

import logging
from pathlib import Path

import pandas as pd

from kormig.errors import MissingStageInputError

logger = logging.getLogger(__name__)

CODE_COLUMNS = {
    "iso",
    "iso_d",
    "iso_o",
    "isic4",
    "ksic8",
    "ksic9",
    "ksic10",
    "hs_code",
    "industry_code",
    "cmd_code",
    "city_kosis",
    "city_stat",
    "city_stat_raw",
    "cz_code",
    "reporter_code",
    "reporter_iso",
    "partner_code",
    "partner_iso",
    "flow_code",
}

# Staged table -> producing stage
PRODUCERS = {
    "comtrade_isic4.csv": "crosswalk-trade",
    "isic4_ksic10_table.csv": "crosswalk-trade",
    "comtrade_ksic10.csv": "crosswalk-trade",
    "est_region_matched.csv": "crosswalk-establishment",
    "ksic8_9.csv": "crosswalk-industry",
    "ksic9_10.csv": "crosswalk-industry",
    "est_region_industry_matched.csv": "crosswalk-industry",
    "migration_flows_all.csv": "migration",
    "migration_flows.csv": "migration",
    "migration_origin_pre_period.csv": "migration",
    "ssiv_shock_long.csv": "exposure",
    "ssiv_shock_stacked.csv": "exposure",
    "ssiv_share.csv": "exposure",
    "controls.csv": "controls",
    "population.csv": "controls",
    "migration_change_pre_period.csv": "controls",
    "baseline_data.csv": "baseline",
    "baseline_data_mixed.csv": "baseline",
    "exposure_descriptive.csv": "baseline",
}


class StagingArea:
    """Reads and writes whole staged tables under a single directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def path(self, name: str) -> Path:
        return self.root / name

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def require(self, name: str) -> Path:
        """Return the path of a staged table, failing if it was never produced."""
        path = self.path(name)
        if not path.exists():
            raise MissingStageInputError(name, PRODUCERS.get(name))
        return path

    def read(self, name: str, code_columns: set[str] | None = None) -> pd.DataFrame:
        """Read a staged table with string dtype for code columns."""
        path = self.require(name)
        codes = CODE_COLUMNS | (code_columns or set())
        header = pd.read_csv(path, nrows=0).columns
        dtype = {col: str for col in header if col in codes}
        df = pd.read_csv(path, dtype=dtype, keep_default_na=True)
        logger.debug(f"Read {name}: {len(df):,} rows")
        return df

    def write(self, df: pd.DataFrame, name: str) -> Path:
        """Write a staged table, replacing any previous version."""
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path(name)
        df.to_csv(path, index=False)
        logger.info(f"Staged {name}: {len(df):,} rows -> {path}")
        return path
