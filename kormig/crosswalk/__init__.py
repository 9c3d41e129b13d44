"""
Region, industry and trade classification crosswalks.
"""

from kormig.crosswalk.concordance import (
    ConcordanceStep,
    apply_concordance,
    build_proportional_concordance,
    chain_concordance,
)
from kormig.crosswalk.region import CommutingZoneMapper, OverrideMaps, RegionResolver
from kormig.crosswalk.trade import build_trade_crosswalk
from kormig.crosswalk.establishment import build_establishment_panel, harmonize_industries
from kormig.crosswalk.migration import build_migration_flows

__all__ = [
    "ConcordanceStep",
    "apply_concordance",
    "build_proportional_concordance",
    "chain_concordance",
    "CommutingZoneMapper",
    "OverrideMaps",
    "RegionResolver",
    "build_trade_crosswalk",
    "build_establishment_panel",
    "harmonize_industries",
    "build_migration_flows",
]
