"""
Synthetic reference tables and panels for tests.

Small deterministic stand-ins for the region tables, trade shocks,
employment shares and bilateral panels. Seeds are fixed so that every
fixture is reproducible.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pandas as pd

from kormig.crosswalk.trade import COMTRADE_COUNTRIES, HS_REVISION_YEARS
from kormig.data.loaders import ESTABLISHMENT_SCHEMAS, era_for_year
from kormig.model.controls import CONTROL_COLUMNS
from kormig.model.shift_share import ExposureSet

DONOR = "DEU"
SINGLE_DONOR = "JPN"
ISO_CODES = {"KOR": "410", "DEU": "276", "JPN": "392", "AUS": "36", "CHN": "156"}


# =============================================================================
# Region tables
# =============================================================================


def make_region_tables() -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """(kosis, stat_changes, cz_table) covering a handful of districts."""
    kosis = pd.DataFrame({
        "city_kosis": ["41110", "41110", "42110", "11010", "70000"],
        "city_stat": ["31012", "31011", "32010", "11010", "29010"],
    })
    stat_changes = pd.DataFrame({
        "city_stat_raw": ["31011", "35010"],
        "city_stat": ["31010", "35020"],
    })
    cz_table = pd.DataFrame({
        "cz_code": ["11010", "21010", "31010", "31020", "32010"],
        "cz_id": ["10", "20", "30", "30", "31"],
    })
    return kosis, stat_changes, cz_table


def make_abc_cz_table() -> pd.DataFrame:
    """Districts A, B in commuting zone 1 and C in commuting zone 2."""
    return pd.DataFrame({
        "cz_code": ["31010", "31020", "32010"],
        "cz_id": [1, 1, 2],
    })


# =============================================================================
# Shift-share inputs
# =============================================================================


def make_exposure_inputs() -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Stacked shocks and CZ shares for two industries and two commuting zones.

    Home shocks are 10 (industry 10000) and 20 (industry 20000) in both
    flows and periods; national employment is 50 in 1999, 100 in 2001 and
    200 in 2010. DEU shocks are 5 and JPN shocks 2.5 everywhere.
    Industry 30000 has zero national employment (non-finite ratios) and
    industry 40000 only reports imports.
    """
    rows = []
    employment = {
        "10000": (50.0, 100.0, 200.0),
        "20000": (50.0, 100.0, 200.0),
        "30000": (0.0, 0.0, 0.0),
        "40000": (50.0, 100.0, 200.0),
    }
    home_shock = {"10000": 10.0, "20000": 20.0, "30000": 7.0, "40000": 3.0}
    donor_shock = {"KOR": None, DONOR: 5.0, SINGLE_DONOR: 2.5}

    for period in (2010, 2019):
        for ksic10, (emp_1999, emp_2001, emp_2010) in employment.items():
            flows = ("M",) if ksic10 == "40000" else ("M", "X")
            for flow in flows:
                for reporter, shock in donor_shock.items():
                    rows.append({
                        "period": period,
                        "reporter_code": ISO_CODES[reporter],
                        "reporter_iso": reporter,
                        "partner_code": "156",
                        "partner_iso": "CHN",
                        "flow_code": flow,
                        "ksic10": ksic10,
                        "shock": home_shock[ksic10] if shock is None else shock,
                        "emp_1999": emp_1999,
                        "emp_2001": emp_2001,
                        "emp_2010": emp_2010,
                    })
    shocks = pd.DataFrame(rows)

    shares = pd.DataFrame({
        "cz_id": [1, 1, 2, 2],
        "ksic10": ["10000", "20000", "10000", "20000"],
        "emp_share_1999": [0.6, 0.4, 0.0, 1.0],
        "emp_share_2001": [0.5, 0.5, 0.0, 1.0],
        "emp_share_2010": [0.5, 0.5, 0.2, 0.8],
    })
    return shocks, shares


def make_trade(values: dict[tuple[str, str, int], float], reporter: str = "KOR") -> pd.DataFrame:
    """Trade records from {(flow_code, ksic10, period): value}."""
    rows = [
        {
            "period": period,
            "reporter_code": ISO_CODES[reporter],
            "reporter_iso": reporter,
            "partner_code": "156",
            "partner_iso": "CHN",
            "flow_code": flow,
            "ksic10": ksic10,
            "value": value,
        }
        for (flow, ksic10, period), value in values.items()
    ]
    return pd.DataFrame(rows)


# =============================================================================
# Panel inputs
# =============================================================================


def make_cz_exposure(cz_ids: list[int], periods: list[int], seed: int = 0) -> ExposureSet:
    """Exposure set with random CZ-level values."""
    rng = np.random.default_rng(seed)
    index = pd.MultiIndex.from_product([periods, cz_ids], names=["period", "cz_id"]).to_frame(
        index=False
    )
    n = len(index)
    instruments = index.assign(z_import=rng.normal(size=n), z_export=rng.normal(size=n))
    treatments = index.assign(x_import=rng.normal(size=n), x_export=rng.normal(size=n))
    local_shares = index.assign(
        local_share_m=rng.uniform(0.2, 0.8, n), local_share_x=rng.uniform(0.2, 0.8, n)
    )
    return ExposureSet(
        donors=[DONOR],
        industry=pd.DataFrame(),
        instruments=instruments,
        treatments=treatments,
        local_shares=local_shares,
    )


def make_controls(cz_ids: list[int]) -> pd.DataFrame:
    data = {"cz_id": cz_ids}
    for i, col in enumerate(CONTROL_COLUMNS):
        data[col] = [0.1 * (i + 1) + 0.01 * cz for cz in cz_ids]
    return pd.DataFrame(data)


def make_iv_panel(n_cz: int = 8, seed: int = 42, beta: float = 0.5) -> pd.DataFrame:
    """
    Bilateral panel with a known effect of x_import_d on migration_change.

    Instruments vary by (CZ, period) beyond the fixed effects and the
    treatments load strongly on them.
    """
    rng = np.random.default_rng(seed)
    cz_ids = list(range(1, n_cz + 1))
    periods = [1, 2]

    cz_period = pd.MultiIndex.from_product([cz_ids, periods], names=["cz_id", "period"]).to_frame(
        index=False
    )
    n = len(cz_period)
    for name in ("z_import", "z_export"):
        cz_period[name] = rng.normal(size=n)
    for name in ("local_share_m", "local_share_x"):
        cz_period[name] = rng.uniform(0.2, 0.9, n)
    cz_period["x_import"] = cz_period["z_import"] * 0.9 + rng.normal(0, 0.1, n)
    cz_period["x_export"] = cz_period["z_export"] * 0.9 + rng.normal(0, 0.1, n)

    pairs = [(d, o) for d in cz_ids for o in cz_ids if d != o]
    rows = []
    for d, o in pairs:
        for period in periods:
            rows.append({
                "iso_d": f"{30000 + d * 10}",
                "iso_o": f"{30000 + o * 10}",
                "period": period,
                "cz_id_d": d,
                "cz_id_o": o,
            })
    panel = pd.DataFrame(rows)

    for side in ("d", "o"):
        renamed = cz_period.rename(
            columns={c: f"{c}_{side}" for c in cz_period.columns if c != "period"}
        )
        panel = panel.merge(renamed, on=[f"cz_id_{side}", "period"], how="left")

    m = len(panel)
    panel["pop_o"] = rng.uniform(1_000, 10_000, m)
    panel["migration"] = rng.integers(1, 500, m).astype(float)
    panel["migration_change"] = (
        beta * panel["x_import_d"]
        - 0.3 * panel["x_import_o"]
        + 0.1 * panel["period"]
        + rng.normal(0, 0.05, m)
    )
    return panel


# =============================================================================
# Pipeline world
# =============================================================================


SMOKE_DISTRICTS = ["31010", "31020", "32010", "33010", "34010", "35010"]
SMOKE_INDUSTRIES = ["10110", "20110", "46100", "58110"]
EXCLUDED_DISTRICT = "37430"
SMOKE_REPORTERS = ["KOR", "DEU", "AUS", "JPN"]
MIGRATION_YEARS = [1996, 2000, 2001, 2005, 2010, 2015, 2019]

# Industry codes reported by census years of each revision
CENSUS_INDUSTRIES = {
    "ksic8": ["K8A", "K8B", "K8C"],
    "ksic9": ["K9A", "K9B", "K9C", "K9D"],
    "ksic10": SMOKE_INDUSTRIES,
}

# Concordance sheet rows; a blank source continues the code above
KSIC8_9_ROWS = [("K8A", "K9A"), ("K8B", "K9B"), (None, "K9C"), ("K8C", "K9D")]
KSIC9_10_ROWS = [("K9A", "10110"), ("K9B", "20110"), ("K9C", "46100"), ("K9D", "58110")]
ISIC_KSIC_ROWS = [("I1", "10110"), ("I2", "20110"), (None, "46100"), ("I3", "58110")]
HS_ISIC_ROWS = [
    ("010121", "I1", "1"),
    ("020110", "I2", "1"),
    ("030110", "I3", "1"),
    ("040110", "I1", "0.5"),
    ("040110", "I3", "0.5"),
]


def _write_rows(path: Path, rows: list[list[str]]) -> None:
    pd.DataFrame(rows).to_csv(path, header=False, index=False)


def _write_concordance_workbook(path: Path, rows: list[tuple[str | None, str]]) -> None:
    """Two-sheet KSIC revision workbook; the table sits on the second sheet."""
    table = [
        ["KSIC revision table", None, None, None, None, None],
        ["src", "src_des", "dst", "dst_des", "weight", "misc"],
    ]
    table += [[src, "industry", dst, "industry", "1", "-"] for src, dst in rows]
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        pd.DataFrame([["notes"]]).to_excel(writer, sheet_name="notes", index=False, header=False)
        pd.DataFrame(table).to_excel(writer, sheet_name="table", index=False, header=False)


def _census_row(schema, iso: str, code: str, emp: int) -> list[str]:
    cells = ["0"] * schema.width
    cells[schema.sido] = iso[:2]
    cells[schema.sigungu] = iso[2:]
    for pos in schema.industry:
        cells[pos] = ""
    cells[schema.industry[0]] = code
    cells[schema.emp_all] = str(emp)
    if schema.has_gender:
        cells[schema.emp_female] = str(emp * 2 // 5)
        cells[schema.emp_male] = str(emp - emp * 2 // 5)
    return cells


def _migration_row(era, iso_d: str, iso_o: str, count: int) -> list[str]:
    cells = ["0"] * era.width
    cells[era.dest_sido] = iso_d[:2]
    cells[era.dest_sigungu] = iso_d[2:]
    cells[era.orig_sido] = iso_o[:2]
    cells[era.orig_sigungu] = iso_o[2:]
    cells[era.count_columns[0]] = str(count)
    return cells


def write_raw_inputs(data: Path, rng: np.random.Generator) -> None:
    """Comtrade extracts, concordance sheets, census and register files."""
    for directory in (
        data / "comtrade",
        data / "concordance" / "hs",
        data / "concordance" / "isic",
        data / "concordance" / "ksic",
        data / "est",
        data / "migration",
    ):
        directory.mkdir(parents=True, exist_ok=True)

    # Trade with China by HS product, one file per reporter and revision
    for revision, year in HS_REVISION_YEARS.items():
        pd.DataFrame(
            HS_ISIC_ROWS, columns=["cmd_code", "isic4", "weight"]
        ).to_csv(data / "concordance" / "hs" / f"hs{revision}_isic4.csv", index=False)

        for reporter in SMOKE_REPORTERS:
            rows = []
            for flow in ("M", "X"):
                for cmd_code in ["TOTAL"] + sorted({row[0] for row in HS_ISIC_ROWS}):
                    value = float(rng.integers(1_000, 1_000_000))
                    rows.append({
                        "period": year,
                        "reporter_code": COMTRADE_COUNTRIES[reporter],
                        "partner_code": "156",
                        "flow_code": flow,
                        "cmd_code": cmd_code,
                        "fobvalue": value,
                        "cifvalue": value * 1.1,
                    })
            pd.DataFrame(rows).to_csv(
                data / "comtrade" / f"comtrade_{reporter}_h{revision}.csv", index=False
            )

    isic_sheet = [["ISIC4 to KSIC10", None, None, None], ["isic4", "isic_eng", "ksic10", "ksic_kor"]]
    isic_sheet += [
        [isic, None if isic is None else f"{isic} eng", ksic, "k"] for isic, ksic in ISIC_KSIC_ROWS
    ]
    pd.DataFrame(isic_sheet).to_excel(
        data / "concordance" / "isic" / "isic4_ksic10.xlsx", index=False, header=False
    )

    _write_concordance_workbook(data / "concordance" / "ksic" / "ksic9_8.xlsx", KSIC8_9_ROWS)
    _write_concordance_workbook(data / "concordance" / "ksic" / "ksic9_10.xlsx", KSIC9_10_ROWS)

    # Establishment censuses, each with one record lacking a region code
    for year, schema in ESTABLISHMENT_SCHEMAS.items():
        rows = [
            _census_row(schema, iso, code, 5 * int(rng.integers(2, 200)))
            for iso in SMOKE_DISTRICTS
            for code in CENSUS_INDUSTRIES[schema.revision]
        ]
        unlocated = _census_row(schema, "31010", CENSUS_INDUSTRIES[schema.revision][0], 50)
        unlocated[schema.sido] = ""
        unlocated[schema.sigungu] = ""
        rows.append(unlocated)
        _write_rows(data / "est" / f"est{year}.csv", rows)

    # Migration register: bilateral moves plus an excluded district, an
    # intra-district move and a malformed code
    for year in MIGRATION_YEARS:
        era = era_for_year(year)
        rows = [["header"] * era.width] if era.skip_rows else []
        for iso_d in SMOKE_DISTRICTS:
            for iso_o in SMOKE_DISTRICTS:
                if iso_d != iso_o:
                    rows.append(_migration_row(era, iso_d, iso_o, int(rng.integers(1, 300))))
        rows.append(_migration_row(era, EXCLUDED_DISTRICT, SMOKE_DISTRICTS[0], 40))
        rows.append(_migration_row(era, SMOKE_DISTRICTS[1], SMOKE_DISTRICTS[1], 25))
        rows.append(_migration_row(era, "xxyyy", SMOKE_DISTRICTS[2], 10))
        _write_rows(data / "migration" / f"migration{year}.csv", rows)


def write_pipeline_world(root: Path, seed: int = 7) -> None:
    """
    Write every raw input a full pipeline run reads, from the Comtrade
    extracts through the 2001 population register.
    """
    rng = np.random.default_rng(seed)
    data = root / "data"
    for directory in (
        data / "concordance" / "region",
        data / "cz",
        data / "deflator",
        data / "covariates",
        data / "population",
    ):
        directory.mkdir(parents=True, exist_ok=True)

    pd.DataFrame({"city_kosis": SMOKE_DISTRICTS, "city_stat": SMOKE_DISTRICTS}).to_excel(
        data / "concordance" / "region" / "region_kosis.xlsx", index=False
    )
    pd.DataFrame({"city_stat_raw": ["99990"], "city_stat": ["99990"]}).to_excel(
        data / "concordance" / "region" / "region_stat.xlsx", index=False
    )
    pd.DataFrame({"cz_code": SMOKE_DISTRICTS, "cz_id": range(1, len(SMOKE_DISTRICTS) + 1)}).to_excel(
        data / "cz" / "cz_data.xlsx", index=False
    )

    pd.DataFrame({
        "country_iso": "usa",
        "year_from": range(1990, 2019),
        "gdp_deflator": 1.02,
    }).to_csv(data / "deflator" / "gdp_deflator.csv", index=False)

    write_raw_inputs(data, rng)

    # 2000 census covariates: two header rows, then data
    college_lines = ["census 2000", "iso,age,education,pop"]
    foreign_lines = ["census 2000", "iso,foreign_born"]
    for iso in SMOKE_DISTRICTS:
        total = int(rng.integers(10_000, 50_000))
        college_lines.append(f"{iso},00 합계,00 계,{total}")
        college_lines.append(f"{iso},00 합계,대학,{total // 5}")
        foreign_lines.append(f"{iso},{total // 50}")
    (data / "covariates" / "college_educated2000.csv").write_text(
        "\n".join(college_lines) + "\n", encoding="utf-8"
    )
    (data / "covariates" / "foreign_born2000.csv").write_text(
        "\n".join(foreign_lines) + "\n", encoding="utf-8"
    )

    pd.DataFrame({
        "label": [f"district ({iso})" for iso in SMOKE_DISTRICTS],
        "pop": rng.integers(10_000, 500_000, len(SMOKE_DISTRICTS)),
    }).to_excel(data / "population" / "pop2001.xlsx", index=False)
