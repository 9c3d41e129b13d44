"""
Pipeline orchestration.

Runs the stages in dependency order. Every stage reads its inputs from the
staging area (failing fast when a producer stage has not run), writes whole
tables, and records its main output in the lineage file so that stages run
in separate invocations share one report.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from functools import cached_property
from pathlib import Path
from typing import Callable

import pandas as pd

from config.settings import Settings, get_settings
from kormig.crosswalk.establishment import (
    build_establishment_panel,
    build_ksic_tables,
    harmonize_industries,
    load_ksic_concordance_sheet,
    split_by_year,
)
from kormig.crosswalk.migration import build_migration_flows, exclude_regions, origin_outflows
from kormig.crosswalk.region import (
    CommutingZoneMapper,
    OverrideMaps,
    RegionResolver,
    load_region_tables,
)
from kormig.crosswalk.trade import build_trade_crosswalk
from kormig.data.data_lineage import DataLineageTracker, StageStatus, check_data_quality
from kormig.data.loaders import find_table, read_table
from kormig.data.staging import StagingArea
from kormig.model.controls import (
    build_controls,
    college_share,
    foreign_born_share,
    load_covariate_tables,
    manufacturing_share,
    pre_period_migration_change,
    region_population,
)
from kormig.model.iv_regression import IVRegressionModel, IVSpec, estimate_variants
from kormig.model.panel_data import PanelBuilder, PanelInputs, panel_regions
from kormig.model.shift_share import (
    ExposureBuilder,
    attach_national_employment,
    compute_trade_shocks,
    deflate_trade,
    local_employment_shares,
    national_industry_employment,
)

logger = logging.getLogger(__name__)

STAGES = [
    "crosswalk-trade",
    "crosswalk-establishment",
    "crosswalk-industry",
    "migration",
    "exposure",
    "controls",
    "baseline",
    "analyze",
]

PANEL_FILES = {"adh": "baseline_data.csv", "mixed": "baseline_data_mixed.csv"}


@dataclass
class DataQualityReport:
    """Report on data quality issues."""

    source: str
    total_rows: int
    missing_values: dict[str, int]
    year_range: tuple[int, int] | None
    non_finite: dict[str, int]
    warnings: list[str]
    timestamp: datetime


def generate_quality_report(df: pd.DataFrame, source: str) -> DataQualityReport:
    """Missing values, non-finite numeric values and year/period coverage."""
    warnings = []

    missing = df.isnull().sum().to_dict()
    missing = {k: int(v) for k, v in missing.items() if v > 0}

    numeric = df.select_dtypes("number")
    non_finite = {
        col: int(count)
        for col, count in numeric.isin([float("inf"), float("-inf")]).sum().items()
        if count > 0
    }

    year_range = None
    for col in ("year", "period"):
        if col in df.columns and len(df):
            years = pd.to_numeric(df[col], errors="coerce").dropna()
            if len(years):
                year_range = (int(years.min()), int(years.max()))
                break

    if missing:
        warnings.append(f"Missing values in columns: {list(missing.keys())}")
    if non_finite:
        warnings.append(f"Infinite values in columns: {list(non_finite.keys())}")

    pct_missing = df.isnull().mean().mean() * 100 if len(df) else 0.0
    if pct_missing > 5:
        warnings.append(f"High overall missing rate: {pct_missing:.1f}%")

    return DataQualityReport(
        source=source,
        total_rows=len(df),
        missing_values=missing,
        year_range=year_range,
        non_finite=non_finite,
        warnings=warnings,
        timestamp=datetime.now(),
    )


def format_quality_report(report: DataQualityReport) -> str:
    lines = [
        f"\n{'='*60}",
        f"Data Quality Report: {report.source}",
        f"{'='*60}",
        f"Total rows: {report.total_rows:,}",
        f"Year range: {report.year_range}",
        f"Timestamp: {report.timestamp}",
    ]
    if report.missing_values:
        lines.append("\nMissing values:")
        for col, count in report.missing_values.items():
            pct = count / report.total_rows * 100
            lines.append(f"  - {col}: {count:,} ({pct:.1f}%)")
    if report.non_finite:
        lines.append("\nNon-finite values:")
        for col, count in report.non_finite.items():
            lines.append(f"  - {col}: {count:,}")
    if report.warnings:
        lines.append("\nWarnings:")
        for warning in report.warnings:
            lines.append(f"  ! {warning}")
    return "\n".join(lines)


class MigrationPipeline:
    """Orchestrates crosswalks, exposure construction, panel assembly and estimation."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        root = self.settings.project_root
        self.data_dir = root / self.settings.data_dir
        self.temp = StagingArea(root / self.settings.temp_dir)
        self.proc = StagingArea(root / self.settings.proc_dir)
        self.tables_dir = root / self.settings.tables_dir
        self.lineage_path = root / self.settings.output_dir / "lineage.json"
        self.tracker = DataLineageTracker.load(self.lineage_path)
        self._quality_reports: list[DataQualityReport] = []

    # =========================================================================
    # Shared reference tables
    # =========================================================================

    @cached_property
    def overrides(self) -> OverrideMaps:
        return OverrideMaps.load(self.settings.project_root / self.settings.overrides_path)

    @cached_property
    def region_tables(self) -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
        return load_region_tables(self.data_dir)

    @cached_property
    def cz_mapper(self) -> CommutingZoneMapper:
        _, _, cz_table = self.region_tables
        return CommutingZoneMapper(cz_table, self.overrides.cz_prefix_overrides)

    def resolver(self, purpose: str) -> RegionResolver:
        """
        Region resolver for one data source.

        establishment: no KOSIS step, every code truncated to XXXX0
        migration: KOSIS step, metro-only truncation, legacy remaps
        population: KOSIS step with strict matching, no truncation
        """
        kosis, stat_changes, _ = self.region_tables
        if purpose == "establishment":
            return RegionResolver(None, stat_changes, normalize="all")
        if purpose == "migration":
            return RegionResolver(
                kosis,
                stat_changes,
                legacy_remaps=self.overrides.legacy_code_remaps,
                normalize="metro",
                strict_kosis=self.settings.strict_kosis_match,
            )
        if purpose == "population":
            return RegionResolver(
                kosis,
                stat_changes,
                legacy_remaps=self.overrides.legacy_code_remaps,
                normalize="none",
                strict_kosis=True,
            )
        raise ValueError(f"Unknown resolver purpose: {purpose}")

    # =========================================================================
    # Stage runner
    # =========================================================================

    def _record(self, stage: str, df: pd.DataFrame, output: Path, **kwargs) -> None:
        self.tracker.record_stage(stage, df, output=output, **kwargs)
        self._quality_reports.append(generate_quality_report(df, output.name))

    def run_stage(self, stage: str) -> None:
        """Run one stage by name, recording a failure before re-raising."""
        handlers: dict[str, Callable[[], None]] = {
            "crosswalk-trade": self.crosswalk_trade,
            "crosswalk-establishment": self.crosswalk_establishment,
            "crosswalk-industry": self.crosswalk_industry,
            "migration": self.migration,
            "exposure": self.exposure,
            "controls": self.controls,
            "baseline": self.baseline,
            "analyze": self.analyze,
        }
        if stage not in handlers:
            raise ValueError(f"Unknown stage: {stage}. Expected one of {STAGES}")

        logger.info(f"Running stage {stage}")
        try:
            handlers[stage]()
        except Exception as e:
            self.tracker.record_stage(stage, status=StageStatus.FAILED, notes=[str(e)])
            raise
        finally:
            self.tracker.save(self.lineage_path)

    def run_all(self, stages: list[str] | None = None) -> None:
        """Run stages in dependency order; the first failure stops the run."""
        for stage in stages or STAGES:
            self.run_stage(stage)

    # =========================================================================
    # Stages
    # =========================================================================

    def crosswalk_trade(self) -> None:
        """Comtrade HS records -> ISIC4 -> KSIC10."""
        isic4, table, ksic10 = build_trade_crosswalk(
            self.data_dir / "comtrade",
            self.data_dir / "concordance",
            self.settings.trade_countries,
            self.settings.partner_code,
        )
        self.temp.write(isic4, "comtrade_isic4.csv")
        self.temp.write(table, "isic4_ksic10_table.csv")
        path = self.temp.write(ksic10, "comtrade_ksic10.csv")

        missing = sorted(set(self.settings.trade_countries) - set(ksic10["reporter_iso"].dropna()))
        self._record(
            "crosswalk-trade",
            ksic10,
            path,
            status=StageStatus.PARTIAL if missing else StageStatus.COMPLETED,
            year_column="period",
            notes=[f"Reporters without trade records: {missing}"] if missing else None,
        )

    def crosswalk_establishment(self) -> None:
        """Establishment census records -> canonical district codes."""
        matched, dropped = build_establishment_panel(
            self.data_dir / "est",
            self.resolver("establishment"),
            self.settings.employment_years,
        )
        path = self.temp.write(matched, "est_region_matched.csv")
        self._record(
            "crosswalk-establishment",
            matched,
            path,
            dropped={f"unresolved region {year}": n for year, n in dropped.items()},
            year_column="year",
        )

    def crosswalk_industry(self) -> None:
        """Establishment industry codes -> KSIC10 via chained concordances."""
        est_matched = self.temp.read("est_region_matched.csv")

        ksic_dir = self.data_dir / "concordance" / "ksic"
        ksic8_9, ksic9_10 = build_ksic_tables(
            load_ksic_concordance_sheet(find_table(ksic_dir, "ksic9_8"), "ksic8", "ksic9"),
            load_ksic_concordance_sheet(find_table(ksic_dir, "ksic9_10"), "ksic9", "ksic10"),
        )
        self.temp.write(ksic8_9, "ksic8_9.csv")
        self.temp.write(ksic9_10, "ksic9_10.csv")

        est = harmonize_industries(
            split_by_year(est_matched),
            ksic8_9,
            ksic9_10,
            gender_start_year=self.settings.gender_start_year,
        )
        path = self.temp.write(est, "est_region_industry_matched.csv")
        self._record("crosswalk-industry", est, path, year_column="year")

    def migration(self) -> None:
        """Migration register -> bilateral district flows."""
        flows, stats = build_migration_flows(
            self.data_dir / "migration",
            self.resolver("migration"),
            self.settings.migration_years,
        )
        self.temp.write(flows, "migration_flows_all.csv")

        kept = exclude_regions(flows, self.settings.excluded_regions)
        path = self.temp.write(kept, "migration_flows.csv")
        self.temp.write(
            origin_outflows(kept, list(self.settings.pre_period_years)),
            "migration_origin_pre_period.csv",
        )

        self._record(
            "migration",
            kept,
            path,
            status=StageStatus.PARTIAL if stats.missing_years else StageStatus.COMPLETED,
            dropped={
                "unresolved region": stats.unresolved,
                "intra-district move": stats.same_region,
            },
            year_column="year",
            notes=[f"Missing register years: {stats.missing_years}"] if stats.missing_years else None,
            metadata={"records": stats.records},
        )

    def exposure(self) -> None:
        """Deflated trade shocks with national employment, and CZ industry shares."""
        settings = self.settings
        est = self.temp.read("est_region_industry_matched.csv")
        trade = self.temp.read("comtrade_ksic10.csv")
        deflators = read_table(self.data_dir / "deflator" / "gdp_deflator.csv")

        trade = deflate_trade(trade, deflators, settings.reference_year, settings.deflator_country)
        employment = national_industry_employment(est, settings.employment_years)

        years = sorted(settings.period_years)
        long_diff = compute_trade_shocks(trade, [years[0], years[-1]], settings.shock_scale)
        stacked = compute_trade_shocks(trade, years, settings.shock_scale)
        self.temp.write(attach_national_employment(long_diff, employment), "ssiv_shock_long.csv")
        path = self.temp.write(
            attach_national_employment(stacked, employment), "ssiv_shock_stacked.csv"
        )

        shares = local_employment_shares(est, self.cz_mapper, settings.employment_years)
        self.temp.write(shares, "ssiv_share.csv")

        self._record("exposure", stacked, path, year_column="period")

    def controls(self) -> None:
        """CZ covariates, pre-period migration change and district population."""
        settings = self.settings
        corrections = self.overrides.covariate_code_corrections
        est = self.temp.read("est_region_industry_matched.csv")
        outflows = self.temp.read("migration_origin_pre_period.csv")

        college_raw, foreign_raw = load_covariate_tables(self.data_dir / "covariates")
        college = college_share(college_raw, self.cz_mapper, corrections)
        foreign = foreign_born_share(foreign_raw, college, self.cz_mapper, corrections)
        district_change, cz_change = pre_period_migration_change(
            outflows, self.cz_mapper, settings.pre_period_years
        )

        controls = build_controls(
            manufacturing_share(est, self.cz_mapper, settings.control_year),
            college,
            foreign,
            cz_change,
        )
        path = self.temp.write(controls, "controls.csv")
        self.temp.write(district_change, "migration_change_pre_period.csv")

        pop = read_table(self.data_dir / "population" / "pop2001.xlsx")
        population = region_population(
            pop, self.resolver("population"), self.overrides.province_recodes
        )
        self.temp.write(population, "population.csv")

        self._record("controls", controls, path)

    def baseline(self) -> None:
        """Exposure sets for both donor sets and the two bilateral panel variants."""
        settings = self.settings
        flows = self.temp.read("migration_flows.csv")
        inputs = PanelInputs(
            flows=flows,
            controls=self.temp.read("controls.csv"),
            population=self.temp.read("population.csv"),
        )

        exposure_builder = ExposureBuilder(
            self.temp.read("ssiv_shock_stacked.csv"),
            self.temp.read("ssiv_share.csv"),
            settings.period_years,
            home_country=settings.home_country,
            treatment_share_year=settings.treatment_share_year,
            instrument_share_year=settings.instrument_share_year,
            instrument_denominator_year=settings.instrument_denominator_year,
        )
        multi_donor = exposure_builder.build(settings.adh_donor_countries)
        single_donor = exposure_builder.build(settings.single_donor_countries)

        builder = PanelBuilder(self.cz_mapper, settings.period_years)
        regions = panel_regions(flows, settings.excluded_regions)
        panels = builder.build_variants(regions, inputs, multi_donor, single_donor)

        for variant, panel in panels.items():
            path = self.proc.write(panel, PANEL_FILES[variant])
            self._record(
                "baseline" if variant == "adh" else f"baseline-{variant}",
                panel,
                path,
                year_column="period",
                metadata={"regions": len(regions)},
            )
        self.proc.write(builder.exposure_descriptive(panels["adh"]), "exposure_descriptive.csv")

    def analyze(self, specs: list[IVSpec] | None = None) -> dict[str, IVRegressionModel]:
        """Fit the IV specifications on both panel variants and write result tables."""
        if not check_data_quality(self.tracker):
            logger.warning("Estimating despite critical issues in earlier stages")

        panels = {variant: self.proc.read(name) for variant, name in PANEL_FILES.items()}
        models = estimate_variants(panels, specs)

        results = pd.concat([model.to_frame() for model in models.values()], ignore_index=True)
        self.tables_dir.mkdir(parents=True, exist_ok=True)
        path = self.tables_dir / "iv_results.csv"
        results.to_csv(path, index=False)

        summary_path = self.tables_dir / "iv_summary.txt"
        with open(summary_path, "w") as f:
            for model in models.values():
                f.write(model.summary())
                f.write("\n")
        logger.info(f"Saved regression tables to {self.tables_dir}")

        n_failed = int((results["status"] == "failed").sum()) if len(results) else 0
        self.tracker.record_stage(
            "analyze",
            results,
            status=StageStatus.PARTIAL if n_failed else StageStatus.COMPLETED,
            output=path,
            notes=[f"{n_failed} specifications failed"] if n_failed else None,
        )
        return models

    # =========================================================================
    # Reports
    # =========================================================================

    def get_quality_reports(self) -> list[DataQualityReport]:
        """Get all data quality reports from this run."""
        return self._quality_reports

    def quality_summary(self) -> str:
        """Summary of data quality reports from this run."""
        if not self._quality_reports:
            return "No quality reports generated yet."
        return "\n".join(format_quality_report(r) for r in self._quality_reports)
