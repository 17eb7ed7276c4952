"""Region boundaries: persistence, spatial index, and Overpass refresh.

Point location is two-phase: an ``STRtree`` bounding-box query narrows the
regions to candidates, and only those candidates get the exact ``covers``
test. When a note already carries an assignment, that region is checked
first by key and the full search runs only if it no longer covers the point.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import httpx
from shapely import wkb
from shapely.geometry import LineString, MultiPolygon, Point, Polygon, shape
from shapely.geometry.base import BaseGeometry
from shapely.ops import polygonize, unary_union
from shapely.strtree import STRtree

from ..errors import DataValidationError
from ..ingestion.feed import raise_for_status
from ..models import NoteRecord, RegionAssignment, utcnow
from ..scheduling.retry import RetryExecutor
from ..scheduling.ticket_queue import TicketQueue
from ..store.note_store import NoteStore

logger = logging.getLogger(__name__)

OVERPASS_RESOURCE = "overpass"


@dataclass
class Region:
    region_id: int
    name: str
    geometry: BaseGeometry
    updated: bool = False

    @property
    def bounds(self):
        return self.geometry.bounds


class RegionIndex:
    """Immutable point-in-region index over a set of regions."""

    def __init__(self, regions: Iterable[Region]) -> None:
        self._regions = sorted(regions, key=lambda r: r.region_id)
        self._by_id: Dict[int, Region] = {r.region_id: r for r in self._regions}
        self._tree = STRtree([r.geometry for r in self._regions]) if self._regions else None

    def __len__(self) -> int:
        return len(self._regions)

    def get(self, region_id: int) -> Optional[Region]:
        return self._by_id.get(region_id)

    def candidates(self, point: Point) -> List[Region]:
        """Regions whose bounding box intersects ``point``."""
        if self._tree is None:
            return []
        indices = sorted(int(i) for i in self._tree.query(point))
        return [self._regions[i] for i in indices]

    def covers(self, region_id: int, longitude: float, latitude: float) -> bool:
        region = self._by_id.get(region_id)
        return region is not None and region.geometry.covers(Point(longitude, latitude))

    def locate(
        self,
        longitude: float,
        latitude: float,
        current: Optional[RegionAssignment] = None,
    ) -> RegionAssignment:
        """Region containing the point.

        Returns ``KnownUnassigned`` when the full search finds no region.
        Overlapping regions resolve to the lowest region id.
        """
        point = Point(longitude, latitude)
        if current is not None and current.is_assigned:
            region = self._by_id.get(current.region_id)
            if region is not None and region.geometry.covers(point):
                return current
        for region in self.candidates(point):
            if region.geometry.covers(point):
                return RegionAssignment.assigned(region.region_id)
        return RegionAssignment.known_unassigned()


REGIONS_SCHEMA = """
CREATE TABLE IF NOT EXISTS regions (
    region_id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    geometry BLOB NOT NULL,
    updated INTEGER NOT NULL DEFAULT 1,
    refreshed_at TEXT NOT NULL
);
"""


class RegionCatalog:
    """SQLite table of region boundaries stored as WKB.

    Upserted regions are flagged ``updated`` until verification has
    re-checked the notes around them.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(REGIONS_SCHEMA)
        self._lock = threading.Lock()

    def close(self) -> None:
        self._conn.close()

    def upsert(self, region: Region, *, mark_updated: bool = True) -> None:
        if region.geometry.is_empty:
            raise DataValidationError(f"Region {region.region_id} has an empty geometry")
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO regions(region_id, name, geometry, updated, refreshed_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(region_id) DO UPDATE SET
                        name = excluded.name,
                        geometry = excluded.geometry,
                        updated = excluded.updated,
                        refreshed_at = excluded.refreshed_at
                    """,
                    (
                        region.region_id,
                        region.name,
                        wkb.dumps(region.geometry),
                        1 if mark_updated else 0,
                        utcnow().isoformat(),
                    ),
                )

    def get(self, region_id: int) -> Optional[Region]:
        with self._lock:
            row = self._conn.execute(
                "SELECT region_id, name, geometry, updated FROM regions WHERE region_id = ?",
                (region_id,),
            ).fetchone()
        return self._row_to_region(row) if row else None

    def all(self) -> List[Region]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT region_id, name, geometry, updated FROM regions ORDER BY region_id"
            ).fetchall()
        return [self._row_to_region(row) for row in rows]

    def updated_regions(self) -> List[Region]:
        return [region for region in self.all() if region.updated]

    def clear_updated(self, region_ids: Iterable[int]) -> None:
        with self._lock:
            with self._conn:
                self._conn.executemany(
                    "UPDATE regions SET updated = 0 WHERE region_id = ?",
                    [(region_id,) for region_id in region_ids],
                )

    def revision(self) -> tuple:
        """Changes whenever a region is added or replaced."""
        with self._lock:
            return tuple(
                self._conn.execute("SELECT COUNT(*), MAX(refreshed_at) FROM regions").fetchone()
            )

    def index(self) -> RegionIndex:
        return RegionIndex(self.all())

    def load_geojson(self, path: Path, *, mark_updated: bool = True) -> int:
        """Upsert every feature of a GeoJSON FeatureCollection.

        The region id comes from the feature ``id`` or a ``region_id`` / ``id``
        property; the name from the ``name`` property.
        """
        with open(path, encoding="utf-8") as f:
            document = json.load(f)
        features = document.get("features") if isinstance(document, dict) else None
        if not isinstance(features, list):
            raise DataValidationError(f"{path} is not a GeoJSON FeatureCollection")

        loaded = 0
        for feature in features:
            properties = feature.get("properties") or {}
            raw_id = feature.get("id", properties.get("region_id", properties.get("id")))
            if raw_id is None:
                raise DataValidationError(f"Feature without id in {path}")
            try:
                geometry = shape(feature["geometry"])
            except (KeyError, TypeError, ValueError) as exc:
                raise DataValidationError(f"Invalid geometry for region {raw_id} in {path}") from exc
            self.upsert(
                Region(
                    region_id=int(raw_id),
                    name=str(properties.get("name", raw_id)),
                    geometry=geometry,
                ),
                mark_updated=mark_updated,
            )
            loaded += 1
        logger.info("Loaded regions from GeoJSON", extra={"path": str(path), "regions": loaded})
        return loaded

    @staticmethod
    def _row_to_region(row: tuple) -> Region:
        region_id, name, geometry, updated = row
        return Region(
            region_id=region_id,
            name=name,
            geometry=wkb.loads(geometry),
            updated=bool(updated),
        )


class RegionResolver:
    """Assigns regions to Unknown notes as they are committed.

    The index is rebuilt only when the catalog's revision changes. With an
    empty catalog nothing is written and notes stay Unknown for the
    assignment pass.
    """

    def __init__(self, store: NoteStore, catalog: RegionCatalog, *, batch_size: int = 5000) -> None:
        self.store = store
        self.catalog = catalog
        self.batch_size = batch_size
        self._index: Optional[RegionIndex] = None
        self._revision: Optional[tuple] = None

    def index(self) -> RegionIndex:
        revision = self.catalog.revision()
        if self._index is None or revision != self._revision:
            self._index = self.catalog.index()
            self._revision = revision
        return self._index

    def resolve(self, notes: Iterable[NoteRecord]) -> int:
        """Record the region of every given note that is Unknown in the store."""
        index = self.index()
        if not len(index):
            return 0
        outcomes = {note.note_id: index.locate(note.longitude, note.latitude) for note in notes}
        ids = list(outcomes)
        resolved = 0
        for i in range(0, len(ids), self.batch_size):
            resolved += self.store.set_regions({k: outcomes[k] for k in ids[i:i + self.batch_size]})
        return resolved

    def resolve_unknown(self) -> int:
        """Resolve every Unknown note in the store, one page at a time."""
        if not len(self.index()):
            return 0
        resolved = 0
        after_id = 0
        while True:
            page = self.store.unknown_notes(after_id, self.batch_size)
            if not page:
                break
            resolved += self.resolve(page)
            after_id = page[-1].note_id
        logger.info("Resolved regions of Unknown notes", extra={"resolved": resolved})
        return resolved


def assemble_boundary(element: Dict[str, Any]) -> BaseGeometry:
    """Build a (multi)polygon from an Overpass ``out geom`` relation.

    Outer way members are polygonized into rings; inner members are cut out.

    Raises:
        DataValidationError: No closed outer ring could be formed
    """
    outer: List[LineString] = []
    inner: List[LineString] = []
    for member in element.get("members", []):
        if member.get("type") != "way" or len(member.get("geometry") or []) < 2:
            continue
        line = LineString([(node["lon"], node["lat"]) for node in member["geometry"]])
        if member.get("role") == "inner":
            inner.append(line)
        else:
            outer.append(line)

    shells = list(polygonize(unary_union(outer))) if outer else []
    if not shells:
        raise DataValidationError(
            f"Relation {element.get('id')} has no closed outer boundary",
            details={"outer_ways": len(outer)},
        )
    geometry = unary_union(shells)
    holes = list(polygonize(unary_union(inner))) if inner else []
    if holes:
        geometry = geometry.difference(unary_union(holes))
    if isinstance(geometry, (Polygon, MultiPolygon)):
        return geometry
    raise DataValidationError(f"Relation {element.get('id')} did not form a polygon")


class BoundaryFetcher:
    """Downloads boundary relations from Overpass."""

    def __init__(
        self,
        interpreter_url: str,
        *,
        tickets: TicketQueue,
        retry: RetryExecutor,
        client: Optional[httpx.Client] = None,
        timeout: float = 300.0,
        turn_timeout: Optional[float] = None,
    ) -> None:
        self.interpreter_url = interpreter_url
        self.tickets = tickets
        self.retry = retry
        self._turn_timeout = turn_timeout
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def fetch(self, relation_id: int) -> Region:
        query = f"[out:json][timeout:250];rel({relation_id});out geom;"

        def fetch_once() -> Region:
            with self.tickets.turn(self._turn_timeout):
                response = self._client.post(self.interpreter_url, data={"data": query})
            raise_for_status(response)
            try:
                elements = response.json().get("elements", [])
            except ValueError as exc:
                raise DataValidationError(f"Overpass returned invalid JSON for {relation_id}") from exc
            relation = next(
                (e for e in elements if e.get("type") == "relation" and e.get("id") == relation_id),
                None,
            )
            if relation is None:
                raise DataValidationError(f"Relation {relation_id} missing from Overpass response")
            tags = relation.get("tags") or {}
            return Region(
                region_id=relation_id,
                name=tags.get("name:en") or tags.get("name") or str(relation_id),
                geometry=assemble_boundary(relation),
                updated=True,
            )

        outcome = self.retry.execute(fetch_once, description=f"boundary {relation_id}")
        region = outcome.unwrap()
        logger.info(
            "Fetched boundary",
            extra={"relation_id": relation_id, "name": region.name, "attempts": outcome.attempts},
        )
        return region

    def refresh(self, catalog: RegionCatalog, relation_ids: Iterable[int]) -> List[Region]:
        """Fetch and upsert boundaries, flagging them for re-verification."""
        refreshed = []
        for relation_id in relation_ids:
            region = self.fetch(relation_id)
            catalog.upsert(region, mark_updated=True)
            refreshed.append(region)
        return refreshed


__all__ = [
    "OVERPASS_RESOURCE",
    "Region",
    "RegionIndex",
    "RegionCatalog",
    "RegionResolver",
    "BoundaryFetcher",
    "assemble_boundary",
]
