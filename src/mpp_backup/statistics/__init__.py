"""Planner statistics: engine feature detection and the portable codec.

Capture and install live in ``mpp_backup.statistics.codec``.
"""

from mpp_backup.statistics.versions import (
    CATALOG_SLOT_COLUMNS,
    MAX_STATISTIC_SLOTS,
    EngineFeatures,
    EngineVersion,
    StatisticKind,
)

__all__ = [
    "CATALOG_SLOT_COLUMNS",
    "MAX_STATISTIC_SLOTS",
    "EngineFeatures",
    "EngineVersion",
    "StatisticKind",
]
