"""
Trade classification crosswalk: HS -> ISIC4 -> KSIC10.

Comtrade bilateral records with China are reclassified from six-digit HS
product codes to ISIC4 using weighted concordance tables (one per HS
revision), then to KSIC10 with the equal-split ISIC4 -> KSIC10 table.
"""

import logging
from pathlib import Path

import pandas as pd

from kormig.crosswalk.concordance import (
    apply_concordance,
    build_proportional_concordance,
    validate_weights,
)
from kormig.data.loaders import read_table, read_fill_down_sheet

logger = logging.getLogger(__name__)

# HS revision -> benchmark year whose flows are classified in that revision
HS_REVISION_YEARS = {
    1: 2001,  # HS1996
    3: 2010,  # HS2007
    5: 2019,  # HS2017
}

# ISO3 -> Comtrade (M49) reporter code
COMTRADE_COUNTRIES = {
    "AUS": "36",
    "CHE": "757",
    "CHN": "156",
    "DEU": "276",
    "DNK": "208",
    "ESP": "724",
    "FIN": "246",
    "GBR": "826",
    "JPN": "392",
    "KOR": "410",
    "NZL": "554",
}
COMTRADE_ISO = {code: iso for iso, code in COMTRADE_COUNTRIES.items()}

TRADE_FLOWS = ("X", "M")

KSIC_KEYS = [
    "period",
    "reporter_code",
    "reporter_iso",
    "partner_code",
    "partner_iso",
    "flow_code",
]


def prepare_comtrade(
    df: pd.DataFrame,
    hs_revision: int,
    partner_code: int | str = 156,
) -> pd.DataFrame:
    """
    Filter raw Comtrade records to six-digit products traded with the
    partner in the benchmark year of the HS revision.

    Missing FOB/CIF values become 0.
    """
    data = df.copy()
    data["cmd_code"] = data["cmd_code"].astype(str).str.strip()
    data["partner_code"] = data["partner_code"].astype(str).str.strip()
    data["period"] = pd.to_numeric(data["period"], errors="coerce")

    year = HS_REVISION_YEARS[hs_revision]
    mask = (
        data["cmd_code"].str.fullmatch(r"\d{6}")
        & (data["partner_code"] == str(partner_code))
        & (data["period"] == year)
    )
    data = data[mask].copy()

    for col in ("fobvalue", "cifvalue"):
        data[col] = pd.to_numeric(data[col], errors="coerce").fillna(0.0)

    logger.info(
        f"Comtrade HS{hs_revision} ({year}): kept {len(data):,} of {len(df):,} records"
    )
    return data.reset_index(drop=True)


def hs_to_isic(trade: pd.DataFrame, hs_isic: pd.DataFrame) -> pd.DataFrame:
    """
    Reclassify prepared Comtrade records from HS to ISIC4.

    Args:
        trade: Output of prepare_comtrade
        hs_isic: Weighted table with columns cmd_code, isic4, weight

    Returns:
        DataFrame keyed by (period, reporter_code, reporter_iso, partner_code,
        partner_iso, flow_code, isic4) with fobvalue, cifvalue and value
        (FOB for exports, CIF for imports)
    """
    table = hs_isic.copy()
    table["weight"] = pd.to_numeric(table["weight"], errors="coerce")
    table = table.dropna(subset=["isic4", "weight"])
    validate_weights(table, "cmd_code")

    data = trade[trade["flow_code"].isin(TRADE_FLOWS)]
    result = apply_concordance(
        data,
        table,
        source="cmd_code",
        destination="isic4",
        value_columns=["fobvalue", "cifvalue"],
        by=["period", "reporter_code", "partner_code", "flow_code"],
    )
    result[["fobvalue", "cifvalue"]] = result[["fobvalue", "cifvalue"]].fillna(0.0)
    result["value"] = result["fobvalue"].where(result["flow_code"] == "X", result["cifvalue"])
    result["reporter_code"] = result["reporter_code"].astype(str)
    result["partner_code"] = result["partner_code"].astype(str)
    result["reporter_iso"] = result["reporter_code"].map(COMTRADE_ISO)
    result["partner_iso"] = result["partner_code"].map(COMTRADE_ISO)

    return result[
        ["period", "reporter_code", "reporter_iso", "partner_code", "partner_iso",
         "flow_code", "isic4", "fobvalue", "cifvalue", "value"]
    ]


def build_isic_ksic_table(raw: pd.DataFrame) -> pd.DataFrame:
    """Equal-split ISIC4 -> KSIC10 table from the four-column sheet."""
    return build_proportional_concordance(raw, source="isic4", destination="ksic10")


def isic_to_ksic(trade: pd.DataFrame, table: pd.DataFrame) -> pd.DataFrame:
    """Reclassify ISIC4 trade values to KSIC10 and aggregate."""
    result = apply_concordance(
        trade,
        table,
        source="isic4",
        destination="ksic10",
        value_columns=["value"],
        by=KSIC_KEYS,
    )
    result["value"] = result["value"].fillna(0.0)
    return result


def load_isic_ksic_sheet(path: str | Path) -> pd.DataFrame:
    """Read the ISIC4 -> KSIC10 correspondence workbook."""
    return read_fill_down_sheet(
        path,
        names=["isic4", "isic_eng", "ksic10", "ksic_kor"],
        skip=2,
        fill=["isic4", "isic_eng"],
    )


def build_trade_crosswalk(
    comtrade_dir: Path,
    concordance_dir: Path,
    countries: list[str],
    partner_code: int | str = 156,
) -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """
    Run the full HS -> ISIC4 -> KSIC10 crosswalk over every available
    country file.

    Files are expected as comtrade_{ISO}_h{revision}.csv in comtrade_dir and
    hs{revision}_isic4.csv plus isic/isic4_ksic10.xlsx in concordance_dir.

    Returns:
        (comtrade_isic4, isic4_ksic10_table, comtrade_ksic10)
    """
    frames = []
    for revision in HS_REVISION_YEARS:
        table_path = concordance_dir / "hs" / f"hs{revision}_isic4.csv"
        if not table_path.exists():
            logger.warning(f"No HS{revision} -> ISIC4 table at {table_path}, skipping revision")
            continue
        hs_isic = read_table(table_path)

        for iso in countries:
            path = comtrade_dir / f"comtrade_{iso}_h{revision}.csv"
            if not path.exists():
                logger.warning(f"Missing Comtrade file {path.name}")
                continue
            prepared = prepare_comtrade(read_table(path), revision, partner_code)
            frames.append(hs_to_isic(prepared, hs_isic))
            del prepared

    if not frames:
        raise ValueError("CRITICAL: no Comtrade files found for the trade crosswalk")

    comtrade_isic4 = pd.concat(frames, ignore_index=True)
    table = build_isic_ksic_table(
        load_isic_ksic_sheet(concordance_dir / "isic" / "isic4_ksic10.xlsx")
    )
    comtrade_ksic10 = isic_to_ksic(comtrade_isic4, table)

    logger.info(
        f"Trade crosswalk: {len(comtrade_isic4):,} ISIC4 rows -> {len(comtrade_ksic10):,} KSIC10 rows"
    )
    return comtrade_isic4, table, comtrade_ksic10
