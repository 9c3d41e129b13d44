"""
Korea trade-shock migration pipeline settings.
"""

from pathlib import Path
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="KORMIG_",
        extra="ignore",
    )

    # Directories
    project_root: Path = Field(
        default_factory=lambda: Path(__file__).parent.parent,
        description="Project root directory",
    )
    data_dir: Path = Field(default=Path("data"), description="Data directory")
    output_dir: Path = Field(default=Path("output"), description="Output directory")
    overrides_path: Path = Field(
        default=Path("config/crosswalk_overrides.yaml"),
        description="Versioned manual override maps (CZ prefixes, legacy codes)",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    # Trade
    trade_countries: list[str] = Field(
        default=["AUS", "CHE", "DEU", "DNK", "ESP", "FIN", "GBR", "JPN", "KOR", "NZL"],
        description="Comtrade reporters pulled for the trade crosswalk",
    )
    home_country: str = Field(default="KOR", description="Country whose shock is the treatment")
    partner_code: int = Field(default=156, description="Comtrade partner code (China)")
    adh_donor_countries: list[str] = Field(
        default=["AUS", "DNK", "FIN", "DEU", "NZL", "ESP", "CHE"],
        description="Multi-country donor set for the instrument",
    )
    single_donor_countries: list[str] = Field(
        default=["JPN"],
        description="Single-country donor set for the mixed export instrument",
    )
    deflator_country: str = Field(default="usa", description="Deflator series used for trade values")
    reference_year: int = Field(default=2019, description="Constant-price reference year")
    shock_scale: float = Field(default=1000.0, description="Shock units (per 1000 currency units)")

    # Benchmark years
    employment_years: list[int] = Field(
        default=[1994, 1996, 1999, 2000, 2001, 2010, 2019],
        description="Establishment census years",
    )
    gender_start_year: int = Field(
        default=2000, description="First census year reporting employment by gender"
    )
    instrument_share_year: int = Field(
        default=1999, description="Employment-share year for the instrument"
    )
    treatment_share_year: int | None = Field(
        default=1999,
        description="Employment-share year for the treatment (None uses period base years)",
    )
    instrument_denominator_year: int = Field(
        default=1999, description="National employment year dividing donor shocks"
    )
    period_years: list[int] = Field(
        default=[2001, 2010, 2019],
        description="Benchmark years bounding the regression periods (period p ends at year p)",
    )
    migration_years: list[int] = Field(
        default=list(range(1996, 2021)), description="Migration register years"
    )
    pre_period_years: tuple[int, int] = Field(
        default=(1996, 2000), description="Years of the pre-period outflow change control"
    )
    control_year: int = Field(default=2000, description="Census year of the CZ covariates")

    # Panel
    excluded_regions: list[str] = Field(
        default=["37430"], description="Canonical region codes excluded from the panel"
    )
    strict_kosis_match: bool = Field(
        default=False,
        description="Drop records whose code is absent from the KOSIS table",
    )

    @property
    def temp_dir(self) -> Path:
        return self.data_dir / "temp"

    @property
    def proc_dir(self) -> Path:
        return self.data_dir / "proc"

    @property
    def tables_dir(self) -> Path:
        return self.output_dir / "tables"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
