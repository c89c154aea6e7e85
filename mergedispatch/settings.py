# mergeeats-dispatch/mergedispatch/settings.py
"""
Engine settings snapshot.

``EngineSettings`` freezes the values of ``config`` at construction time and
is passed to every engine component. Use ``dataclasses.replace`` to derive a
variant with a few fields changed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple

from . import config


@dataclass(frozen=True)
class EngineSettings:
    """Tunable engine parameters. See ``config.py`` for the meaning of each."""

    merge_radius_km: float = config.MERGE_RADIUS_KM
    restaurant_proximity_km: float = config.RESTAURANT_PROXIMITY_KM
    merge_time_window_mins: float = config.MERGE_TIME_WINDOW_MINS
    max_group_size: int = config.MAX_GROUP_SIZE
    formation_window_mins: float = config.FORMATION_WINDOW_MINS
    assignment_radius_km: float = config.ASSIGNMENT_RADIUS_KM
    offer_timeout_seconds: float = config.OFFER_TIMEOUT_SECONDS
    retry_budget: int = config.ASSIGNMENT_RETRY_BUDGET
    service_area: Optional[Tuple[float, float, float, float]] = config.SERVICE_AREA
    sweep_interval_seconds: float = config.SWEEP_INTERVAL_SECONDS
    directory_staleness_seconds: float = config.DIRECTORY_STALENESS_SECONDS
    geo_cell_size_km: float = config.GEO_CELL_SIZE_KM
    consolidation_enabled: bool = config.CONSOLIDATION_ENABLED

    def __post_init__(self) -> None:
        if self.max_group_size < 2:
            raise ValueError("max_group_size must be at least 2")
        if self.retry_budget < 1:
            raise ValueError("retry_budget must be at least 1")
        if self.merge_radius_km <= 0 or self.assignment_radius_km <= 0:
            raise ValueError("radii must be positive")

    @classmethod
    def from_config(cls) -> "EngineSettings":
        """Build settings from the current values in ``config``."""
        return cls(
            merge_radius_km=config.MERGE_RADIUS_KM,
            restaurant_proximity_km=config.RESTAURANT_PROXIMITY_KM,
            merge_time_window_mins=config.MERGE_TIME_WINDOW_MINS,
            max_group_size=config.MAX_GROUP_SIZE,
            formation_window_mins=config.FORMATION_WINDOW_MINS,
            assignment_radius_km=config.ASSIGNMENT_RADIUS_KM,
            offer_timeout_seconds=config.OFFER_TIMEOUT_SECONDS,
            retry_budget=config.ASSIGNMENT_RETRY_BUDGET,
            service_area=config.SERVICE_AREA,
            sweep_interval_seconds=config.SWEEP_INTERVAL_SECONDS,
            directory_staleness_seconds=config.DIRECTORY_STALENESS_SECONDS,
            geo_cell_size_km=config.GEO_CELL_SIZE_KM,
            consolidation_enabled=config.CONSOLIDATION_ENABLED,
        )

    @property
    def formation_window(self) -> timedelta:
        return timedelta(minutes=self.formation_window_mins)

    @property
    def offer_timeout(self) -> timedelta:
        return timedelta(seconds=self.offer_timeout_seconds)

    @property
    def directory_staleness(self) -> timedelta:
        return timedelta(seconds=self.directory_staleness_seconds)
