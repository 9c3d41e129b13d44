"""
Exposure construction, panel assembly and IV estimation.
"""

from kormig.model.shift_share import ExposureBuilder, ExposureSet, compute_trade_shocks
from kormig.model.panel_data import PanelBuilder, PanelInputs
from kormig.model.controls import build_controls
from kormig.model.iv_regression import IVRegressionModel, IVSpec, MAIN_SPEC, estimate_variants

__all__ = [
    "ExposureBuilder",
    "ExposureSet",
    "compute_trade_shocks",
    "PanelBuilder",
    "PanelInputs",
    "build_controls",
    "IVRegressionModel",
    "IVSpec",
    "MAIN_SPEC",
    "estimate_variants",
]
