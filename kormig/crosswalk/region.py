"""
Region code resolution and commuting-zone assignment.

Raw district codes change across decades of administrative mergers,
renames and new special cities. RegionResolver maps a raw code to the
canonical 5-digit stat code through a fixed sequence:

    legacy override -> normalization -> KOSIS lookup -> stat-code-change lookup

CommutingZoneMapper then maps canonical codes to commuting-zone ids, with
prefix overrides for metropolitan cities that always win over the table.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import pandas as pd
import yaml

from config.settings import get_settings

logger = logging.getLogger(__name__)

METRO_PREFIX_THRESHOLD = 40


@dataclass
class OverrideMaps:
    """Versioned manual override maps loaded from YAML."""

    version: int
    cz_prefix_overrides: dict[str, int] = field(default_factory=dict)
    legacy_code_remaps: dict[str, str] = field(default_factory=dict)
    province_recodes: dict[str, str] = field(default_factory=dict)
    covariate_code_corrections: dict[str, str] = field(default_factory=dict)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "OverrideMaps":
        """Load override maps, defaulting to the configured YAML file."""
        if path is None:
            settings = get_settings()
            path = settings.project_root / settings.overrides_path
        path = Path(path)

        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        maps = cls(
            version=int(raw.get("version", 0)),
            cz_prefix_overrides={
                str(k): int(v) for k, v in (raw.get("cz_prefix_overrides") or {}).items()
            },
            legacy_code_remaps={
                str(k): str(v) for k, v in (raw.get("legacy_code_remaps") or {}).items()
            },
            province_recodes={
                str(k): str(v) for k, v in (raw.get("province_recodes") or {}).items()
            },
            covariate_code_corrections={
                str(k): str(v)
                for k, v in (raw.get("covariate_code_corrections") or {}).items()
            },
        )
        logger.info(f"Loaded override maps v{maps.version} from {path}")
        return maps


def _lookup_dict(table: pd.DataFrame, key: str, value: str, width: int | None = None) -> dict[str, str]:
    """Build a key->value dict; duplicate keys resolve to the smallest value."""
    data = table[[key, value]].dropna().astype(str)
    data[key] = data[key].str.strip()
    data[value] = data[value].str.strip()
    if width is not None:
        data[value] = data[value].str[:width]
    data = data.sort_values([key, value], kind="mergesort").drop_duplicates(subset=key)
    return dict(zip(data[key], data[value]))


class RegionResolver:
    """
    Resolve raw district codes to canonical stat codes.

    Resolution is a pure function of the raw code and the lookup tables, so
    results do not depend on record order.

    Args:
        kosis: Table with columns city_kosis, city_stat, or None to skip the
            KOSIS step (establishment censuses already use stat codes)
        stat_changes: Table with columns city_stat_raw, city_stat
        legacy_remaps: Legacy code -> new special-city code, applied first
        normalize: "metro" truncates digit 5 only for prefixes >= 40,
            "all" truncates every code (establishment censuses), "none" keeps
            the code as is (population register)
        strict_kosis: Treat a KOSIS miss as unresolved instead of keeping
            the normalized code
    """

    def __init__(
        self,
        kosis: pd.DataFrame | None,
        stat_changes: pd.DataFrame,
        legacy_remaps: dict[str, str] | None = None,
        normalize: Literal["metro", "all", "none"] = "metro",
        strict_kosis: bool = False,
    ):
        self.kosis = (
            _lookup_dict(kosis, "city_kosis", "city_stat", width=5) if kosis is not None else None
        )
        self.stat_changes = _lookup_dict(stat_changes, "city_stat_raw", "city_stat")
        self.legacy_remaps = dict(legacy_remaps or {})
        self.normalize = normalize
        self.strict_kosis = strict_kosis

    def normalize_code(self, code: str) -> str:
        """Truncate the fifth digit to zero per the normalization mode."""
        if self.normalize == "none":
            return code
        if self.normalize == "all":
            return code[:4] + "0"
        if int(code[:2]) >= METRO_PREFIX_THRESHOLD:
            return code[:4] + "0"
        return code

    def resolve(self, raw_code: object) -> str | None:
        """Resolve one raw code, or return None if unresolvable."""
        if raw_code is None or pd.isna(raw_code):
            return None
        code = str(raw_code).strip()
        if code.endswith(".0"):
            code = code[:-2]
        if not code.isdigit() or len(code) < 4:
            return None

        code = self.legacy_remaps.get(code, code)
        code = self.normalize_code(code)

        if self.kosis is not None:
            if code in self.kosis:
                code = self.kosis[code]
            elif self.strict_kosis:
                return None

        return self.stat_changes.get(code, code)

    def resolve_series(self, codes: pd.Series) -> pd.Series:
        """Resolve a column of raw codes (memoized over unique codes)."""
        unique = pd.unique(codes.dropna())
        mapping = {code: self.resolve(code) for code in unique}
        resolved = codes.map(mapping)
        return resolved.astype(object).where(resolved.notna(), None)

    def resolve_frame(
        self,
        df: pd.DataFrame,
        columns: dict[str, str],
    ) -> tuple[pd.DataFrame, int]:
        """
        Resolve several code columns and drop rows with any unresolved code.

        Args:
            df: Input frame
            columns: Raw column -> resolved column name

        Returns:
            (resolved frame, number of dropped rows)
        """
        result = df.copy()
        keep = pd.Series(True, index=result.index)
        for raw_col, out_col in columns.items():
            result[out_col] = self.resolve_series(result[raw_col])
            keep &= result[out_col].notna()

        n_dropped = int((~keep).sum())
        if n_dropped:
            unresolved = set()
            for raw_col, out_col in columns.items():
                unresolved |= set(map(str, result.loc[result[out_col].isna(), raw_col]))
            logger.warning(
                f"Dropping {n_dropped} records with unresolved region codes "
                f"({len(unresolved)} distinct, e.g. {sorted(unresolved)[:5]})"
            )
        return result[keep].reset_index(drop=True), n_dropped


class CommutingZoneMapper:
    """
    Map canonical region codes to commuting-zone ids.

    Args:
        cz_table: Table with columns cz_code (canonical region code) and cz_id
        prefix_overrides: Two-digit prefix -> CZ id, applied after the table
            lookup and always winning
    """

    def __init__(
        self,
        cz_table: pd.DataFrame,
        prefix_overrides: dict[str, int] | None = None,
    ):
        table = cz_table[["cz_code", "cz_id"]].dropna().copy()
        table["cz_code"] = table["cz_code"].astype(str).str.strip()
        table["cz_id"] = pd.to_numeric(table["cz_id"], errors="coerce")
        table = table.dropna(subset=["cz_id"]).sort_values(["cz_code", "cz_id"], kind="mergesort")
        table = table.drop_duplicates(subset="cz_code")
        self.lookup = dict(zip(table["cz_code"], table["cz_id"].astype(int)))
        self.prefix_overrides = {str(k): int(v) for k, v in (prefix_overrides or {}).items()}

    def assign_code(self, code: str) -> int | None:
        """CZ id for a single canonical code."""
        override = self.prefix_overrides.get(str(code)[:2])
        if override is not None:
            return override
        return self.lookup.get(str(code))

    def assign(self, codes: pd.Series) -> pd.Series:
        """CZ ids for a column of canonical codes (nullable Int64)."""
        mapped = codes.astype(str).map(self.lookup)
        prefix = codes.astype(str).str[:2].map(self.prefix_overrides)
        result = prefix.where(prefix.notna(), mapped)
        return result.astype("Int64")

    def attach(self, df: pd.DataFrame, code_col: str, cz_col: str = "cz_id") -> pd.DataFrame:
        """Add a CZ id column; unmapped codes are logged and left null."""
        result = df.copy()
        result[cz_col] = self.assign(result[code_col])
        unmapped = result.loc[result[cz_col].isna(), code_col].unique()
        if len(unmapped):
            logger.warning(
                f"{len(unmapped)} region codes in '{code_col}' have no commuting zone: "
                f"{sorted(map(str, unmapped))[:10]}"
            )
        return result


def load_region_tables(data_dir: Path) -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """
    Load the three region reference tables.

    Returns:
        (kosis, stat_changes, cz_table)
    """
    from kormig.data.loaders import read_table

    region_dir = data_dir / "concordance" / "region"
    kosis = read_table(region_dir / "region_kosis.xlsx")
    stat_changes = read_table(region_dir / "region_stat.xlsx")
    cz_table = read_table(data_dir / "cz" / "cz_data.xlsx")
    return kosis, stat_changes, cz_table
