from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from itertools import count
from typing import Callable, Dict, List, Optional

from petsos.errors import InvalidArgument
from petsos.models import Coordinates, utcnow

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000.0


def haversine_m(origin: Coordinates, target: Coordinates) -> float:
    lat1, lon1 = math.radians(origin.latitude), math.radians(origin.longitude)
    lat2, lon2 = math.radians(target.latitude), math.radians(target.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


@dataclass(frozen=True)
class _Entry:
    point: Coordinates
    updated_at: datetime
    revision: int


@dataclass(frozen=True)
class Neighbor:
    item_id: str
    distance_meters: float
    point: Coordinates
    updated_at: datetime


class GeoIndex:
    """Point positions keyed by id, queried by great-circle distance.

    Entries older than ``staleness`` are skipped at query time; pass
    ``staleness=None`` for an index whose points never expire.
    """

    def __init__(
        self,
        staleness: Optional[timedelta] = timedelta(seconds=60),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.staleness = staleness
        self.clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._revisions = count(1)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._entries

    def upsert(self, item_id: str, point: Coordinates, at: Optional[datetime] = None) -> None:
        stamp = at or self.clock()
        with self._lock:
            self._entries[item_id] = _Entry(point=point, updated_at=stamp, revision=next(self._revisions))
        logger.debug("geo upsert %s -> (%s, %s)", item_id, point.latitude, point.longitude)

    def remove(self, item_id: str) -> None:
        with self._lock:
            self._entries.pop(item_id, None)

    def position(self, item_id: str) -> Optional[Coordinates]:
        entry = self._entries.get(item_id)
        return entry.point if entry else None

    def is_stale(self, updated_at: datetime, now: Optional[datetime] = None) -> bool:
        if self.staleness is None:
            return False
        return (now or self.clock()) - updated_at > self.staleness

    def nearest(
        self,
        point: Coordinates,
        radius_meters: float,
        limit: int,
        where: Optional[Callable[[str], bool]] = None,
    ) -> List[Neighbor]:
        """Up to ``limit`` fresh entries within the radius, closest first.

        ``where`` drops entries before the limit is applied, so excluded
        entries never take a slot.
        """
        if radius_meters <= 0:
            raise InvalidArgument(f"radius must be positive, got {radius_meters}")
        if limit <= 0:
            raise InvalidArgument(f"limit must be positive, got {limit}")

        with self._lock:
            snapshot = list(self._entries.items())

        now = self.clock()
        ranked = []
        for item_id, entry in snapshot:
            if self.is_stale(entry.updated_at, now):
                continue
            distance = haversine_m(point, entry.point)
            if distance > radius_meters:
                continue
            if where is not None and not where(item_id):
                continue
            ranked.append((distance, -entry.revision, item_id, entry))

        ranked.sort(key=lambda item: (item[0], item[1]))
        return [
            Neighbor(item_id=item_id, distance_meters=distance, point=entry.point, updated_at=entry.updated_at)
            for distance, _, item_id, entry in ranked[:limit]
        ]


def check_coordinates(point: Optional[Coordinates], field_name: str = "location") -> Coordinates:
    if point is None:
        raise InvalidArgument(f"{field_name} is required")
    if not isinstance(point, Coordinates):
        raise InvalidArgument(f"{field_name} must be a latitude/longitude pair")
    if not -90.0 <= point.latitude <= 90.0:
        raise InvalidArgument(f"{field_name} latitude {point.latitude} is outside [-90, 90]")
    if not -180.0 <= point.longitude <= 180.0:
        raise InvalidArgument(f"{field_name} longitude {point.longitude} is outside [-180, 180]")
    return point
