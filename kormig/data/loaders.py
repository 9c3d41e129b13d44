"""
Raw table loaders.

Government microdata arrive as headerless delimited files whose layouts
change between census years and migration-register eras. Each layout is
declared once as a schema and read through a single parametrized loader.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd

from kormig.errors import SchemaError

logger = logging.getLogger(__name__)

# Suppressed cells in census and register files
NA_MARKERS = ["*" * n for n in range(1, 11)] + ["."]


def read_table(path: str | Path, **kwargs) -> pd.DataFrame:
    """
    Read a csv/xlsx/xls table with string dtype unless overridden.

    Args:
        path: File path; the suffix selects the reader
        **kwargs: Passed to pandas.read_csv / pandas.read_excel

    Returns:
        DataFrame
    """
    path = Path(path)
    kwargs.setdefault("dtype", str)
    suffix = path.suffix.lower()

    if suffix == ".csv":
        return pd.read_csv(path, **kwargs)
    if suffix == ".xlsx":
        return pd.read_excel(path, engine="openpyxl", **kwargs)
    if suffix == ".xls":
        return pd.read_excel(path, engine="xlrd", **kwargs)

    raise SchemaError(f"Unsupported table format: {path.name}")


def find_table(
    directory: str | Path,
    stem: str,
    suffixes: tuple[str, ...] = (".xlsx", ".xls"),
) -> Path:
    """Path of the first existing <stem><suffix> in directory, in suffix order."""
    directory = Path(directory)
    for suffix in suffixes:
        path = directory / f"{stem}{suffix}"
        if path.exists():
            return path
    raise FileNotFoundError(f"No {stem} table ({'/'.join(suffixes)}) in {directory}")


def read_fill_down_sheet(
    path: str | Path,
    names: list[str],
    skip: int = 0,
    sheet: int | str = 0,
    fill: list[str] | None = None,
) -> pd.DataFrame:
    """
    Read a concordance sheet whose merged source cells are blank below the
    first row, carrying the last value down.

    Args:
        path: Spreadsheet path
        names: Positional column names
        skip: Header rows to skip
        sheet: Sheet index (0-based) or name
        fill: Columns to fill down (default: the first column)
    """
    df = read_table(path, sheet_name=sheet, skiprows=skip, header=None)
    if df.shape[1] < len(names):
        raise SchemaError(
            f"{Path(path).name}: expected {len(names)} columns, found {df.shape[1]}"
        )
    df = df.iloc[:, : len(names)]
    df.columns = names

    for col in fill or names[:1]:
        df[col] = df[col].ffill()

    return df


# =============================================================================
# Establishment censuses
# =============================================================================


@dataclass(frozen=True)
class EstablishmentSchema:
    """Positional layout of one establishment census file."""

    year: int
    width: int
    sido: int
    sigungu: int
    industry: tuple[int, ...]
    revision: str  # ksic8 | ksic9 | ksic10
    emp_all: int
    emp_male: int | None = None
    emp_female: int | None = None

    @property
    def has_gender(self) -> bool:
        return self.emp_male is not None and self.emp_female is not None


# 1994-1999: sido, sigungu, ind1-ind5, emp_all
# 2000: adds male/female ahead of the total
# 2001/2010: 30 columns, totals (male, female, all) in the last three
# 2019: 31 columns, coded layout with detail codes appended at the end
ESTABLISHMENT_SCHEMAS: dict[int, EstablishmentSchema] = {
    1994: EstablishmentSchema(1994, 8, 0, 1, (3, 4, 5, 6), "ksic8", emp_all=7),
    1996: EstablishmentSchema(1996, 8, 0, 1, (3, 4, 5, 6), "ksic8", emp_all=7),
    1999: EstablishmentSchema(1999, 8, 0, 1, (3, 4, 5, 6), "ksic8", emp_all=7),
    2000: EstablishmentSchema(
        2000, 10, 0, 1, (3, 4, 5, 6), "ksic8", emp_all=9, emp_male=7, emp_female=8
    ),
    2001: EstablishmentSchema(
        2001, 30, 0, 1, (3, 4, 5, 6), "ksic8", emp_all=29, emp_male=27, emp_female=28
    ),
    2010: EstablishmentSchema(
        2010, 30, 0, 1, (3, 4, 5, 6), "ksic9", emp_all=29, emp_male=27, emp_female=28
    ),
    2019: EstablishmentSchema(
        2019, 31, 1, 2, (9, 10, 29, 30), "ksic10", emp_all=12, emp_male=14, emp_female=16
    ),
}


def load_establishment(path: str | Path, schema: EstablishmentSchema) -> pd.DataFrame:
    """
    Load one establishment census year.

    Returns:
        DataFrame with columns sido, sigungu, <revision>, emp_all, emp_male,
        emp_female, year. Gender columns are null where the census does not
        report them.
    """
    raw = pd.read_csv(
        path,
        header=None,
        dtype=str,
        na_values=NA_MARKERS,
        keep_default_na=False,
    )
    if raw.shape[1] != schema.width:
        raise SchemaError(
            f"Establishment {schema.year}: expected {schema.width} columns, found {raw.shape[1]}"
        )

    industry = raw.iloc[:, list(schema.industry)].fillna("").astype(str)
    df = pd.DataFrame({
        "sido": raw.iloc[:, schema.sido],
        "sigungu": raw.iloc[:, schema.sigungu],
        schema.revision: industry.agg("".join, axis=1),
        "emp_all": pd.to_numeric(raw.iloc[:, schema.emp_all], errors="coerce"),
    })
    if schema.has_gender:
        df["emp_male"] = pd.to_numeric(raw.iloc[:, schema.emp_male], errors="coerce")
        df["emp_female"] = pd.to_numeric(raw.iloc[:, schema.emp_female], errors="coerce")
    else:
        df["emp_male"] = float("nan")
        df["emp_female"] = float("nan")
    df["year"] = schema.year

    logger.info(f"Loaded establishment census {schema.year}: {len(df):,} records")
    return df


# =============================================================================
# Internal migration register
# =============================================================================


@dataclass(frozen=True)
class MigrationEra:
    """
    One schema era of the internal migration register.

    Column positions are 0-based. The migration count of a record is the
    sum of count_columns with missing cells treated as 0.
    """

    name: str
    start_year: int
    end_year: int
    width: int
    dest_sido: int
    dest_sigungu: int
    orig_sido: int
    orig_sigungu: int
    count_columns: tuple[int, ...]
    skip_rows: int = 0
    attributes: dict[str, int] = field(default_factory=dict)

    def covers(self, year: int) -> bool:
        return self.start_year <= year <= self.end_year


_HOUSEHOLD_ATTRIBUTES = {
    "reason": 9,
    "head_relation": 10,
    "head_age": 11,
    "head_sex": 12,
    "household_type": 13,
}

# 1996-2000: 5 id columns then 19 male and 19 female age bands (last = total)
# 2001-2014 and 2015-2020: 17 columns, record-level household moves
MIGRATION_ERAS: list[MigrationEra] = [
    MigrationEra(
        name="age_breakdown",
        start_year=1996,
        end_year=2000,
        width=43,
        dest_sido=0,
        dest_sigungu=1,
        orig_sido=3,
        orig_sigungu=4,
        count_columns=(23, 42),
        skip_rows=1,
    ),
    MigrationEra(
        name="household",
        start_year=2001,
        end_year=2014,
        width=17,
        dest_sido=0,
        dest_sigungu=1,
        orig_sido=6,
        orig_sigungu=7,
        count_columns=(14,),
        attributes=_HOUSEHOLD_ATTRIBUTES,
    ),
    MigrationEra(
        name="coded",
        start_year=2015,
        end_year=2020,
        width=17,
        dest_sido=0,
        dest_sigungu=1,
        orig_sido=6,
        orig_sigungu=7,
        count_columns=(14,),
        attributes=_HOUSEHOLD_ATTRIBUTES,
    ),
]


def era_for_year(year: int, eras: list[MigrationEra] | None = None) -> MigrationEra:
    """Return the schema era covering a register year."""
    for era in eras or MIGRATION_ERAS:
        if era.covers(year):
            return era
    raise SchemaError(f"No migration schema era covers year {year}")


def load_migration_year(
    path: str | Path,
    era: MigrationEra,
    year: int,
    keep_attributes: bool = False,
) -> pd.DataFrame:
    """
    Load one year of migration records.

    Returns:
        DataFrame with columns iso_d_raw, iso_o_raw, year, migration and,
        when keep_attributes is set, the era's attribute columns
    """
    raw = pd.read_csv(
        path,
        header=None,
        dtype=str,
        skiprows=era.skip_rows,
        na_values=NA_MARKERS,
        keep_default_na=False,
    )
    if raw.shape[1] != era.width:
        raise SchemaError(
            f"Migration {year} ({era.name}): expected {era.width} columns, found {raw.shape[1]}"
        )

    counts = raw.iloc[:, list(era.count_columns)].apply(pd.to_numeric, errors="coerce")
    df = pd.DataFrame({
        "iso_d_raw": raw.iloc[:, era.dest_sido].fillna("") + raw.iloc[:, era.dest_sigungu].fillna(""),
        "iso_o_raw": raw.iloc[:, era.orig_sido].fillna("") + raw.iloc[:, era.orig_sigungu].fillna(""),
        "year": year,
        "migration": counts.fillna(0).sum(axis=1),
    })
    if keep_attributes:
        for name, pos in era.attributes.items():
            df[name] = raw.iloc[:, pos]

    logger.info(f"Loaded migration {year} ({era.name}): {len(df):,} records")
    return df
