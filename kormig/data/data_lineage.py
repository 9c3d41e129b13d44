"""
Stage lineage tracking for the migration pipeline.

Records what every stage produced (rows, missing values, year coverage) and
how many input records it dropped along the way (unresolved region codes,
unmatched industry codes, same-region flows), so that silent data loss
shows up in the lineage report instead of only in the logs.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import pandas as pd

logger = logging.getLogger(__name__)

# Share of input records a stage may drop before it is flagged
DROP_WARNING_SHARE = 0.05


class StageStatus(Enum):
    """Outcome of a pipeline stage."""
    COMPLETED = "completed"  # Ran on all expected inputs
    PARTIAL = "partial"  # Ran, but some inputs were missing
    FAILED = "failed"  # Raised before writing output
    SKIPPED = "skipped"  # Not run in this invocation


class DataQualityLevel(Enum):
    """Quality assessment of a stage output."""
    GOOD = "good"  # No dropped records or missing values of note
    FAIR = "fair"  # Usable with caveats
    POOR = "poor"  # Large share of dropped or missing records
    UNUSABLE = "unusable"  # Should not feed the regressions


@dataclass
class StageRecord:
    """Lineage record for one stage output."""

    stage: str
    status: StageStatus
    quality: DataQualityLevel
    timestamp: datetime
    output: str | None = None
    rows: int = 0
    columns: int = 0
    missing_pct: float = 0.0
    dropped: dict[str, int] = field(default_factory=dict)
    year_range: tuple[int, int] | None = None
    notes: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "stage": self.stage,
            "status": self.status.value,
            "quality": self.quality.value,
            "timestamp": self.timestamp.isoformat(),
            "output": self.output,
            "rows": self.rows,
            "columns": self.columns,
            "missing_pct": self.missing_pct,
            "dropped": self.dropped,
            "year_range": list(self.year_range) if self.year_range else None,
            "notes": self.notes,
            "warnings": self.warnings,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StageRecord":
        year_range = data.get("year_range")
        return cls(
            stage=data["stage"],
            status=StageStatus(data["status"]),
            quality=DataQualityLevel(data["quality"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            output=data.get("output"),
            rows=data.get("rows", 0),
            columns=data.get("columns", 0),
            missing_pct=data.get("missing_pct", 0.0),
            dropped=data.get("dropped", {}),
            year_range=tuple(year_range) if year_range else None,
            notes=data.get("notes", []),
            warnings=data.get("warnings", []),
            metadata=data.get("metadata", {}),
        )


def assess_quality(df: pd.DataFrame, dropped: dict[str, int] | None = None) -> DataQualityLevel:
    """Grade an output by its missing share and the share of records dropped."""
    if df.empty:
        return DataQualityLevel.UNUSABLE

    missing_share = df.isna().to_numpy().mean()
    n_dropped = sum((dropped or {}).values())
    drop_share = n_dropped / (n_dropped + len(df))

    worst = max(missing_share, drop_share)
    if worst > 0.25:
        return DataQualityLevel.POOR
    if worst > DROP_WARNING_SHARE:
        return DataQualityLevel.FAIR
    return DataQualityLevel.GOOD


class DataLineageTracker:
    """
    Tracks stage lineage throughout a pipeline run.

    Each stage records its main output once; re-running a stage replaces
    its record.
    """

    def __init__(self):
        self.records: dict[str, StageRecord] = {}
        self._warnings: list[str] = []
        self._critical_issues: list[str] = []

    def record_stage(
        self,
        stage: str,
        df: pd.DataFrame | None = None,
        status: StageStatus = StageStatus.COMPLETED,
        output: str | Path | None = None,
        dropped: dict[str, int] | None = None,
        year_column: str | None = None,
        notes: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StageRecord:
        """
        Record a stage output.

        Args:
            stage: Stage name
            df: The stage's main output (None for failed or skipped stages)
            status: Stage outcome
            output: Path the output was written to
            dropped: Reason -> number of input records dropped
            year_column: Column whose min/max gives the year coverage
            notes: Additional notes
            metadata: Additional metadata

        Returns:
            The created StageRecord
        """
        previous = self.records.get(stage)
        if previous is not None:
            self._warnings = [w for w in self._warnings if w not in previous.warnings]
            self._critical_issues = [w for w in self._critical_issues if w not in previous.warnings]

        dropped = {k: int(v) for k, v in (dropped or {}).items()}
        warnings = []

        if df is None:
            quality = DataQualityLevel.UNUSABLE
            rows = columns = 0
            missing_pct = 0.0
            year_range = None
        else:
            quality = assess_quality(df, dropped)
            rows, columns = df.shape
            missing_pct = float(df.isna().to_numpy().mean() * 100) if df.size else 0.0
            year_range = None
            if year_column and year_column in df.columns and rows:
                years = pd.to_numeric(df[year_column], errors="coerce").dropna()
                if len(years):
                    year_range = (int(years.min()), int(years.max()))

        if status == StageStatus.FAILED:
            warning = f"FAILED: stage {stage} produced no output"
            warnings.append(warning)
            self._critical_issues.append(warning)
            logger.error(warning)

        if status == StageStatus.PARTIAL:
            warning = f"PARTIAL: stage {stage} ran with missing inputs"
            warnings.append(warning)
            self._warnings.append(warning)
            logger.warning(warning)

        for reason, count in dropped.items():
            if count and rows and count / (count + rows) > DROP_WARNING_SHARE:
                warning = f"DROPPED: {stage} lost {count:,} records ({reason})"
                warnings.append(warning)
                self._warnings.append(warning)
                logger.warning(warning)

        if status != StageStatus.FAILED and quality == DataQualityLevel.UNUSABLE:
            warning = f"UNUSABLE: {stage} output is empty"
            warnings.append(warning)
            self._critical_issues.append(warning)
            logger.error(warning)

        record = StageRecord(
            stage=stage,
            status=status,
            quality=quality,
            timestamp=datetime.now(),
            output=str(output) if output is not None else None,
            rows=rows,
            columns=columns,
            missing_pct=missing_pct,
            dropped=dropped,
            year_range=year_range,
            notes=notes or [],
            warnings=warnings,
            metadata=metadata or {},
        )

        self.records[stage] = record
        return record

    def has_critical_issues(self) -> bool:
        """Check if there are any critical issues."""
        return len(self._critical_issues) > 0

    def get_warnings(self) -> list[str]:
        """Get all warnings."""
        return self._warnings.copy()

    def get_critical_issues(self) -> list[str]:
        """Get all critical issues."""
        return self._critical_issues.copy()

    def generate_report(self) -> str:
        """Generate a human-readable lineage report."""
        lines = []
        lines.append("=" * 70)
        lines.append("PIPELINE LINEAGE REPORT")
        lines.append("=" * 70)
        lines.append(f"Generated: {datetime.now().isoformat()}")
        lines.append("")

        if self._critical_issues:
            lines.append("CRITICAL ISSUES:")
            lines.append("-" * 50)
            for issue in self._critical_issues:
                lines.append(f"  [X] {issue}")
            lines.append("")

        lines.append("STAGES:")
        lines.append("-" * 70)
        lines.append(f"{'Stage':<25} {'Status':<12} {'Quality':<12} {'Rows':>10} {'Dropped':>8}")
        lines.append("-" * 70)

        for name, record in self.records.items():
            status_indicator = {
                StageStatus.COMPLETED: "[OK]",
                StageStatus.PARTIAL: "[??]",
                StageStatus.FAILED: "[XX]",
                StageStatus.SKIPPED: "[--]",
            }.get(record.status, "[??]")

            lines.append(
                f"{status_indicator} {name:<21} "
                f"{record.status.value:<12} "
                f"{record.quality.value:<12} "
                f"{record.rows:>10,} "
                f"{sum(record.dropped.values()):>8,}"
            )

        lines.append("-" * 70)
        lines.append("")

        if self._warnings:
            lines.append("WARNINGS:")
            lines.append("-" * 50)
            for warning in self._warnings:
                lines.append(f"  ! {warning}")
            lines.append("")

        lines.append("DETAILED RECORDS:")
        lines.append("-" * 70)

        for name, record in self.records.items():
            lines.append(f"\n{name}:")
            if record.output:
                lines.append(f"  Output: {record.output}")
            lines.append(f"  Rows: {record.rows}, Columns: {record.columns}")
            lines.append(f"  Missing: {record.missing_pct:.1f}%")
            if record.year_range:
                lines.append(f"  Years: {record.year_range[0]} to {record.year_range[1]}")
            for reason, count in record.dropped.items():
                lines.append(f"  Dropped ({reason}): {count:,}")
            if record.notes:
                lines.append("  Notes:")
                for note in record.notes:
                    lines.append(f"    - {note}")

        lines.append("")
        lines.append("=" * 70)

        return "\n".join(lines)

    def to_dict(self) -> dict:
        """Convert lineage to dictionary for serialization."""
        return {
            "generated": datetime.now().isoformat(),
            "has_critical_issues": self.has_critical_issues(),
            "critical_issues": self._critical_issues,
            "warnings": self._warnings,
            "stages": {
                name: record.to_dict()
                for name, record in self.records.items()
            },
        }

    def save(self, filepath: str | Path) -> None:
        """Save lineage to a JSON file."""
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        with open(filepath, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Saved pipeline lineage to {filepath}")

    @classmethod
    def load(cls, filepath: str | Path) -> "DataLineageTracker":
        """
        Rebuild a tracker from a saved lineage file.

        Stages run in separate invocations accumulate in the same file.
        """
        tracker = cls()
        filepath = Path(filepath)
        if not filepath.exists():
            return tracker

        with open(filepath) as f:
            data = json.load(f)

        for name, record in data.get("stages", {}).items():
            tracker.records[name] = StageRecord.from_dict(record)
        tracker._warnings = list(data.get("warnings", []))
        tracker._critical_issues = list(data.get("critical_issues", []))
        return tracker

    def save_report(self, filepath: str | Path) -> None:
        """Save the human-readable report to a text file."""
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        with open(filepath, "w") as f:
            f.write(self.generate_report())

        logger.info(f"Saved lineage report to {filepath}")


def check_data_quality(tracker: DataLineageTracker) -> bool:
    """
    Check if the recorded stages are fit for estimation.

    Returns:
        True if no critical issues were recorded
    """
    if tracker.has_critical_issues():
        logger.error("CRITICAL DATA QUALITY ISSUES DETECTED")
        for issue in tracker.get_critical_issues():
            logger.error(f"  {issue}")
        return False

    return True
