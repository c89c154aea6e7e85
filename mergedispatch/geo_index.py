# mergeeats-dispatch/mergedispatch/geo_index.py
"""
Spatial index over mergeable orders and available partners.

Entries live in a uniform lat/lng grid. A radius query only scans the cells
that overlap the bounding box of the search circle, then filters by exact
(equirectangular) distance.

Ordering contract:
    Results are sorted by ascending distance from the query centre, ties
    broken by the earliest timestamp stored with the entry (order time for
    orders, ``idle_since`` for partners), then by id for determinism.

Thread safety:
    Every public method takes the index's own lock for a short critical
    section. Callers must not hold a group lock while calling into the index.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from . import utils
from .models import GeoPoint

logger = logging.getLogger(__name__)

Cell = Tuple[int, int]


@dataclass(frozen=True)
class IndexEntry:
    """A point stored in the index."""
    entry_id: str
    point: GeoPoint
    timestamp: datetime


class GeoIndex:
    """
    Grid-bucketed radius index.

    Attributes:
        name: Label used in log messages ("orders", "partners")
        cell_size_km: Edge length of one grid cell
    """

    def __init__(self, name: str, cell_size_km: float = 1.0) -> None:
        if cell_size_km <= 0:
            raise ValueError("cell_size_km must be positive")
        self.name = name
        self.cell_size_km = cell_size_km
        self._cell_lat_deg = utils.km_to_lat_degrees(cell_size_km)
        self._entries: Dict[str, IndexEntry] = {}
        self._cells: Dict[Cell, Set[str]] = {}
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Grid helpers
    # -------------------------------------------------------------------------

    def _cell_of(self, point: GeoPoint) -> Cell:
        # Longitude width is fixed per row (taken at the row's southern edge)
        # so inserts and queries agree on cell boundaries.
        row = math.floor(point.lat / self._cell_lat_deg)
        lng_deg = utils.km_to_lng_degrees(self.cell_size_km, row * self._cell_lat_deg)
        col = math.floor(point.lng / lng_deg)
        return (row, col)

    def _cells_for_radius(self, center: GeoPoint, radius_km: float) -> List[Cell]:
        lat_span = utils.km_to_lat_degrees(radius_km)
        min_row = math.floor((center.lat - lat_span) / self._cell_lat_deg)
        max_row = math.floor((center.lat + lat_span) / self._cell_lat_deg)

        cells: List[Cell] = []
        for row in range(min_row, max_row + 1):
            row_lat = row * self._cell_lat_deg
            lng_deg = utils.km_to_lng_degrees(self.cell_size_km, row_lat)
            # Widest longitude span of the circle within this row.
            lng_span = utils.km_to_lng_degrees(
                radius_km, max(abs(center.lat), abs(row_lat), abs(row_lat + self._cell_lat_deg))
            )
            min_col = math.floor((center.lng - lng_span) / lng_deg)
            max_col = math.floor((center.lng + lng_span) / lng_deg)
            for col in range(min_col, max_col + 1):
                cells.append((row, col))
        return cells

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def upsert(self, entry_id: str, point: GeoPoint, timestamp: datetime) -> None:
        """Insert an entry, or move it if it is already indexed."""
        with self._lock:
            self._remove_locked(entry_id)
            entry = IndexEntry(entry_id, point, timestamp)
            self._entries[entry_id] = entry
            self._cells.setdefault(self._cell_of(point), set()).add(entry_id)

    def remove(self, entry_id: str) -> bool:
        """Remove an entry. Returns False if it was not indexed."""
        with self._lock:
            return self._remove_locked(entry_id)

    def _remove_locked(self, entry_id: str) -> bool:
        entry = self._entries.pop(entry_id, None)
        if entry is None:
            return False
        cell = self._cell_of(entry.point)
        bucket = self._cells.get(cell)
        if bucket is not None:
            bucket.discard(entry_id)
            if not bucket:
                del self._cells[cell]
        return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._cells.clear()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def query(
        self,
        center: GeoPoint,
        radius_km: float,
        filter: Optional[Callable[[str], bool]] = None,
    ) -> List[str]:
        """
        Find entries within ``radius_km`` of ``center``.

        Args:
            center: Query centre
            radius_km: Inclusive search radius
            filter: Optional predicate on entry ids; entries for which it
                returns False are skipped. Called outside the index lock.

        Returns:
            Entry ids sorted by distance, then timestamp, then id
        """
        with self._lock:
            hits: List[Tuple[float, datetime, str]] = []
            for cell in self._cells_for_radius(center, radius_km):
                for entry_id in self._cells.get(cell, ()):
                    entry = self._entries[entry_id]
                    d = utils.distance_km(center, entry.point)
                    if d <= radius_km:
                        hits.append((d, entry.timestamp, entry_id))

        hits.sort()
        ids = [entry_id for _, _, entry_id in hits]
        if filter is not None:
            ids = [i for i in ids if filter(i)]
        logger.debug(f"[{self.name}] query r={radius_km}km around {center}: {len(ids)} hits")
        return ids

    def get(self, entry_id: str) -> Optional[IndexEntry]:
        with self._lock:
            return self._entries.get(entry_id)

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        with self._lock:
            return entry_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
