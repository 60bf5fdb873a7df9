"""Engine versions and the statistics feature set they expose.

The physical layout of planner statistics differs by engine flavor and
major version.  Rather than branching on version strings throughout the
codec, a version is reduced once to an ``EngineFeatures`` value that is
threaded through capture and install.

Usage:
    from mpp_backup.statistics.versions import EngineFeatures, EngineVersion

    version = EngineVersion.parse(
        "PostgreSQL 12.12 (Greenplum Database 7.1.0 build commit:abc)"
    )
    features = EngineFeatures.for_version(version)
    features.supports_collation    # True
"""

import re
from enum import IntEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

# Slots carried by a captured attribute statistic.
MAX_STATISTIC_SLOTS = 3

# stakindN/staopN/... column groups physically present in pg_statistic.
CATALOG_SLOT_COLUMNS = 5


class StatisticKind(IntEnum):
    """Statistic kind tags stored in ``pg_statistic.stakindN``."""

    MCV = 1
    HISTOGRAM = 2
    CORRELATION = 3
    MCELEM = 4
    DECHIST = 5
    RANGE_LENGTH_HISTOGRAM = 6
    BOUNDS_HISTOGRAM = 7
    NDV_BY_SEGMENTS = 8


_BASE_KINDS = frozenset(
    {
        StatisticKind.MCV,
        StatisticKind.HISTOGRAM,
        StatisticKind.CORRELATION,
        StatisticKind.MCELEM,
        StatisticKind.DECHIST,
        StatisticKind.RANGE_LENGTH_HISTOGRAM,
        StatisticKind.BOUNDS_HISTOGRAM,
    }
)

_GPDB_PATTERN = re.compile(r"Greenplum Database (\d+)\.(\d+)(?:\.(\d+))?")
_CBDB_PATTERN = re.compile(r"Cloudberry(?: Database)? (\d+)\.(\d+)(?:\.(\d+))?")
_PG_PATTERN = re.compile(r"PostgreSQL (\d+)(?:\.(\d+))?(?:\.(\d+))?")


class EngineVersion(BaseModel):
    """Flavor and semantic version of a database engine."""

    model_config = ConfigDict(frozen=True)

    flavor: Literal["postgres", "gpdb", "cbdb"]
    major: int
    minor: int = 0
    patch: int = 0

    @classmethod
    def parse(cls, version_string: str) -> "EngineVersion":
        """Parse the output of ``SELECT version()``.

        Greenplum and Cloudberry embed their own version in parentheses
        after the PostgreSQL kernel version; the embedded version wins.

        Raises:
            ValueError: If no known version pattern is found.
        """
        for flavor, pattern in (("cbdb", _CBDB_PATTERN), ("gpdb", _GPDB_PATTERN)):
            match = pattern.search(version_string)
            if match:
                return cls(
                    flavor=flavor,
                    major=int(match.group(1)),
                    minor=int(match.group(2)),
                    patch=int(match.group(3) or 0),
                )

        match = _PG_PATTERN.search(version_string)
        if match:
            return cls(
                flavor="postgres",
                major=int(match.group(1)),
                minor=int(match.group(2) or 0),
                patch=int(match.group(3) or 0),
            )

        raise ValueError(f"Unrecognized engine version: {version_string!r}")

    def at_least(self, version: str) -> bool:
        """True if this version is >= the dotted ``version`` string."""
        parts = [int(p) for p in version.split(".")]
        parts += [0] * (3 - len(parts))
        return (self.major, self.minor, self.patch) >= tuple(parts[:3])

    @property
    def is_greenplum_family(self) -> bool:
        return self.flavor in ("gpdb", "cbdb")

    @property
    def has_declarative_partitions(self) -> bool:
        """``PARTITION BY``/``PARTITION OF`` (PostgreSQL 10 kernel)."""
        if self.flavor == "postgres":
            return self.major >= 10
        return self.flavor == "cbdb" or self.major >= 7

    @property
    def has_legacy_partitions(self) -> bool:
        """Greenplum 6 and older keep partitions in ``pg_partition``."""
        return self.flavor == "gpdb" and self.major < 7

    @property
    def can_lock_views(self) -> bool:
        """``LOCK TABLE`` accepts views from the PostgreSQL 11 kernel on."""
        if self.flavor == "postgres":
            return self.major >= 11
        return self.flavor == "cbdb" or self.major >= 7

    def __str__(self) -> str:
        return f"{self.flavor} {self.major}.{self.minor}.{self.patch}"


class EngineFeatures(BaseModel):
    """Statistics feature set of a source or target engine.

    Attributes:
        label: Human-readable origin (e.g. ``"gpdb 7.1.0"``).
        slot_count: Number of statistic slots the engine exposes
            (at most ``MAX_STATISTIC_SLOTS``).
        supports_collation: Whether ``stacollN`` columns exist.
        supports_ndv_by_segments: Whether kind 8 (segment-summed distinct
            counts) is understood.
    """

    model_config = ConfigDict(frozen=True)

    label: str = "unknown"
    slot_count: int = Field(default=MAX_STATISTIC_SLOTS, ge=1, le=MAX_STATISTIC_SLOTS)
    supports_collation: bool = False
    supports_ndv_by_segments: bool = False

    @classmethod
    def for_version(cls, version: EngineVersion) -> "EngineFeatures":
        if version.flavor == "cbdb":
            collation = True
            ndv = version.at_least("2.1")
        elif version.flavor == "gpdb":
            collation = version.at_least("7")
            ndv = False
        else:
            collation = version.at_least("12")
            ndv = False
        return cls(
            label=str(version),
            supports_collation=collation,
            supports_ndv_by_segments=ndv,
        )

    def with_slot_count(self, slot_count: int) -> "EngineFeatures":
        """Copy with a different exposed slot count."""
        return self.model_copy(
            update={"slot_count": max(1, min(slot_count, MAX_STATISTIC_SLOTS))}
        )

    @property
    def supported_kinds(self) -> frozenset[int]:
        kinds = set(_BASE_KINDS)
        if self.supports_ndv_by_segments:
            kinds.add(StatisticKind.NDV_BY_SEGMENTS)
        return frozenset(int(k) for k in kinds)
