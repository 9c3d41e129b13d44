"""
Raw loaders, staging area and lineage tracking.
"""

from kormig.data.loaders import (
    ESTABLISHMENT_SCHEMAS,
    MIGRATION_ERAS,
    EstablishmentSchema,
    MigrationEra,
    era_for_year,
    find_table,
    load_establishment,
    load_migration_year,
    read_table,
)
from kormig.data.staging import StagingArea
from kormig.data.data_lineage import DataLineageTracker, StageStatus, check_data_quality

__all__ = [
    "ESTABLISHMENT_SCHEMAS",
    "MIGRATION_ERAS",
    "EstablishmentSchema",
    "MigrationEra",
    "era_for_year",
    "find_table",
    "load_establishment",
    "load_migration_year",
    "read_table",
    "StagingArea",
    "DataLineageTracker",
    "StageStatus",
    "check_data_quality",
]
