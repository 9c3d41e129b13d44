"""
Shift-share IV regressions on the bilateral panel.

Two-stage least squares with destination-CZ, origin-CZ and period fixed
effects (absorbed as dummies), standard errors clustered by CZ pair and
origin-population weights:

    migration_change ~ local shares | FE | x_import/x_export (d, o) ~ z_import/z_export (d, o)

Estimation failures are logged and recorded as None so that one failing
specification does not block the rest of the batch.
"""

import logging
from dataclasses import dataclass, field
from typing import Literal

import numpy as np
import pandas as pd
import statsmodels.api as sm
from linearmodels.iv import IV2SLS
from linearmodels.iv.results import IVResults

logger = logging.getLogger(__name__)

TREATMENTS = ["x_import_d", "x_import_o", "x_export_d", "x_export_o"]
INSTRUMENTS = ["z_import_d", "z_import_o", "z_export_d", "z_export_o"]
LOCAL_SHARES = ["local_share_m_d", "local_share_m_o", "local_share_x_d", "local_share_x_o"]


@dataclass
class IVSpec:
    """Specification for a shift-share IV regression."""

    name: str
    outcome: str = "migration_change"
    endogenous: list[str] = field(default_factory=lambda: list(TREATMENTS))
    instruments: list[str] = field(default_factory=lambda: list(INSTRUMENTS))
    controls: list[str] = field(default_factory=lambda: list(LOCAL_SHARES))
    fixed_effects: list[str] = field(default_factory=lambda: ["cz_id_d", "cz_id_o", "period"])
    cluster: str | None = "cz_pair"
    weights: str | None = "pop_o"
    cov_type: Literal["clustered", "robust", "unadjusted"] = "clustered"


# =============================================================================
# MAIN SPECIFICATION: all four shocks, change in log migration
# =============================================================================

MAIN_SPEC = IVSpec(name="main_migration_change")

# Outcome robustness: levels of the migration rate and its transforms
MIG_RATE_SPEC = IVSpec(name="mig_rate", outcome="mig_rate")
ASINH_SPEC = IVSpec(name="asinh_migration", outcome="asinh_mig")
LOG_RATE_SPEC = IVSpec(name="log_mig_rate", outcome="log_mig_rate")

# Import and export shocks separately
IMPORT_SPEC = IVSpec(
    name="import_only",
    endogenous=["x_import_d", "x_import_o"],
    instruments=["z_import_d", "z_import_o"],
    controls=["local_share_m_d", "local_share_m_o"],
)
EXPORT_SPEC = IVSpec(
    name="export_only",
    endogenous=["x_export_d", "x_export_o"],
    instruments=["z_export_d", "z_export_o"],
    controls=["local_share_x_d", "local_share_x_o"],
)

ALL_SPECS = [MAIN_SPEC, IMPORT_SPEC, EXPORT_SPEC, MIG_RATE_SPEC, ASINH_SPEC, LOG_RATE_SPEC]


def prepare_outcomes(panel: pd.DataFrame) -> pd.DataFrame:
    """Add the CZ-pair cluster id and alternative migration outcomes."""
    data = panel.copy()
    data["cz_pair"] = data["cz_id_d"].astype(str) + "_" + data["cz_id_o"].astype(str)
    with np.errstate(divide="ignore", invalid="ignore"):
        data["mig_rate"] = data["migration"] / data["pop_o"] * 1000
        data["asinh_mig"] = np.arcsinh(data["migration"])
        data["log_mig_rate"] = np.log(data["mig_rate"])
    return data


@dataclass
class IVRegressionResult:
    """Results from one IV regression."""

    spec_name: str
    variant: str
    params: pd.Series
    std_errors: pd.Series
    pvalues: pd.Series
    conf_int: pd.DataFrame
    nobs: int
    first_stage_f: dict[str, float]
    cov_type: str
    formula: str
    linearmodels_result: IVResults | None = None


class IVRegressionModel:
    """Shift-share IV model on one panel variant."""

    def __init__(self, panel: pd.DataFrame, variant: str = "adh"):
        """
        Initialize with a bilateral panel.

        Args:
            panel: Output of PanelBuilder.build (outcomes are added here)
            variant: Label of the instrument donor set
        """
        self.data = prepare_outcomes(panel)
        self.variant = variant
        self.results: dict[str, IVRegressionResult | None] = {}

    def _estimation_sample(self, spec: IVSpec) -> pd.DataFrame:
        """Rows with finite values in every column the spec uses."""
        numeric = [spec.outcome] + spec.endogenous + spec.instruments + spec.controls
        if spec.weights:
            numeric.append(spec.weights)
        missing = [c for c in numeric + spec.fixed_effects if c not in self.data.columns]
        if missing:
            raise ValueError(f"Columns not in panel: {missing}")

        values = self.data[numeric].apply(pd.to_numeric, errors="coerce")
        finite = np.isfinite(values.to_numpy(dtype=float)).all(axis=1)
        finite &= self.data[spec.fixed_effects].notna().all(axis=1).to_numpy()
        sample = self.data[finite]

        if len(sample) == 0:
            raise ValueError("No observations with finite values for all variables")
        logger.info(f"{spec.name} [{self.variant}]: {len(sample):,} of {len(self.data):,} rows")
        return sample

    @staticmethod
    def _build_formula(spec: IVSpec) -> str:
        rhs = spec.controls + [f"FE({fe})" for fe in spec.fixed_effects]
        return (
            f"{spec.outcome} ~ {' + '.join(rhs)} "
            f"+ [{' + '.join(spec.endogenous)} ~ {' + '.join(spec.instruments)}]"
        )

    @staticmethod
    def _exog_matrix(sample: pd.DataFrame, spec: IVSpec) -> pd.DataFrame:
        """Controls plus fixed-effect dummies and a constant."""
        parts = [sample[spec.controls].astype(float)]
        for fe in spec.fixed_effects:
            dummies = pd.get_dummies(sample[fe].astype(str), prefix=fe, drop_first=True, dtype=float)
            parts.append(dummies)
        exog = pd.concat(parts, axis=1)
        varying = exog.std(ddof=0) > 0
        constant_controls = [c for c in spec.controls if not varying[c]]
        if constant_controls:
            logger.warning(f"{spec.name}: dropping constant controls {constant_controls}")
        exog = exog.loc[:, varying]
        return sm.add_constant(exog, has_constant="add")

    def fit(self, spec: IVSpec | None = None) -> IVRegressionResult:
        """
        Fit a 2SLS specification.

        Args:
            spec: Regression specification (default MAIN_SPEC)

        Returns:
            IVRegressionResult with estimates and first-stage F statistics
        """
        if spec is None:
            spec = MAIN_SPEC

        sample = self._estimation_sample(spec)
        dependent = sample[spec.outcome].astype(float)
        exog = self._exog_matrix(sample, spec)
        endog = sample[spec.endogenous].astype(float)
        instruments = sample[spec.instruments].astype(float)
        weights = sample[spec.weights].astype(float) if spec.weights else None

        model = IV2SLS(dependent, exog, endog, instruments, weights=weights)
        if spec.cov_type == "clustered":
            clusters = pd.Series(pd.factorize(sample[spec.cluster])[0], index=sample.index)
            result = model.fit(cov_type="clustered", clusters=clusters)
        else:
            result = model.fit(cov_type=spec.cov_type)

        first_stage_f: dict[str, float] = {}
        diagnostics = result.first_stage.diagnostics
        if "f.stat" in diagnostics.columns:
            first_stage_f = {k: float(v) for k, v in diagnostics["f.stat"].items()}

        keep = [c for c in spec.endogenous + spec.controls if c in result.params.index]
        reg_result = IVRegressionResult(
            spec_name=spec.name,
            variant=self.variant,
            params=result.params[keep],
            std_errors=result.std_errors[keep],
            pvalues=result.pvalues[keep],
            conf_int=result.conf_int().loc[keep],
            nobs=int(result.nobs),
            first_stage_f=first_stage_f,
            cov_type=spec.cov_type,
            formula=self._build_formula(spec),
            linearmodels_result=result,
        )

        self.results[spec.name] = reg_result
        return reg_result

    def safe_fit(self, spec: IVSpec) -> IVRegressionResult | None:
        """Fit a specification, logging and recording None on any failure."""
        try:
            return self.fit(spec)
        except Exception as e:
            logger.error(f"[{self.variant}] {spec.name} failed: {e}")
            self.results[spec.name] = None
            return None

    def fit_all_specs(self, specs: list[IVSpec] | None = None) -> dict[str, IVRegressionResult | None]:
        """Fit every specification, isolating failures."""
        for spec in specs or ALL_SPECS:
            self.safe_fit(spec)
        return self.results

    def summary(self, spec_name: str | None = None) -> str:
        """Text table of the fitted specifications."""
        if spec_name:
            results = {spec_name: self.results[spec_name]}
        else:
            results = self.results

        lines = []
        for name, res in results.items():
            lines.append(f"\n{'='*70}")
            lines.append(f"Specification: {name} [{self.variant}]")
            lines.append(f"{'='*70}")
            if res is None:
                lines.append("  ESTIMATION FAILED")
                continue
            lines.append(f"Formula: {res.formula}")
            lines.append(f"N obs: {res.nobs:,}")
            lines.append(f"Covariance: {res.cov_type}")
            for var, f_stat in res.first_stage_f.items():
                lines.append(f"First-stage F ({var}): {f_stat:.2f}")
            lines.append(f"\n{'Coefficient':<30} {'Estimate':>12} {'Std.Err':>12} {'p-value':>12}")
            lines.append("-" * 70)

            for var in res.params.index:
                coef = res.params[var]
                se = res.std_errors[var]
                pval = res.pvalues[var]
                stars = ""
                if pval < 0.01:
                    stars = "***"
                elif pval < 0.05:
                    stars = "**"
                elif pval < 0.1:
                    stars = "*"
                lines.append(f"{var:<30} {coef:>12.4f} {se:>12.4f} {pval:>10.4f}{stars}")

        return "\n".join(lines)

    def to_frame(self) -> pd.DataFrame:
        """Tidy coefficient table across fitted specifications."""
        rows = []
        for name, res in self.results.items():
            if res is None:
                rows.append({"spec": name, "variant": self.variant, "term": None, "status": "failed"})
                continue
            for var in res.params.index:
                rows.append({
                    "spec": name,
                    "variant": self.variant,
                    "term": var,
                    "estimate": float(res.params[var]),
                    "std_error": float(res.std_errors[var]),
                    "pvalue": float(res.pvalues[var]),
                    "ci_lower": float(res.conf_int.loc[var].iloc[0]),
                    "ci_upper": float(res.conf_int.loc[var].iloc[1]),
                    "nobs": res.nobs,
                    "status": "ok",
                })
        return pd.DataFrame(rows)


def estimate_variants(
    panels: dict[str, pd.DataFrame],
    specs: list[IVSpec] | None = None,
) -> dict[str, IVRegressionModel]:
    """
    Fit every specification on every panel variant.

    Args:
        panels: Variant name -> panel
        specs: Specifications (default ALL_SPECS)

    Returns:
        Variant name -> fitted model
    """
    models = {}
    for variant, panel in panels.items():
        model = IVRegressionModel(panel, variant=variant)
        model.fit_all_specs(specs)
        models[variant] = model
    return models
