"""
Public-metadata pre-filter for candidate trips.

Narrows the field before any expensive confidential computation. Only
public trip metadata is indexed: coarse destination cell, date range,
owner, active flag and creation time.

Supports two implementations:
1. InMemoryPrefilterIndex - columnar numpy arrays, vectorized filtering
2. RemotePrefilterIndex - HTTP client for a pre-filter service
"""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence

import httpx
import numpy as np

from tripmatch.shared.errors import InvalidGeometry, PrefilterUnavailable, ProtocolMismatch
from tripmatch.shared.geo import GeoIndex, cell_from_hex
from tripmatch.shared.protocol import DESTINATION_RESOLUTION, Candidate, DateRange, GeoCell

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50


def _check_query(date_range: DateRange, limit: int) -> None:
    start, end = date_range
    if start > end:
        raise ValueError(f"Query date range starts after it ends: {date_range}")
    if limit < 1:
        raise ValueError(f"limit must be positive, got {limit}")


def stable_order(candidates: Iterable[Candidate]) -> List[Candidate]:
    """Creation time ascending, trip id as tie-break."""
    return sorted(candidates, key=lambda c: (c.created_at, c.trip_id))


class PrefilterIndex(ABC):
    """
    Abstract pre-filter.

    query() returns candidates whose destination cell equals the query cell
    exactly and whose date range overlaps the query's (half-open test),
    skipping inactive trips and excluded owners. Results come in creation
    order ascending (trip id breaks ties) and `limit` keeps the head of
    that order.
    """

    @abstractmethod
    def query(
        self,
        destination_cell: GeoCell,
        date_range: DateRange,
        exclude_owners: Sequence[str] = (),
        limit: int = DEFAULT_LIMIT,
    ) -> List[Candidate]:
        """
        Find candidate trips.

        Raises:
            PrefilterUnavailable: if the backing store cannot be queried
        """
        pass

    @abstractmethod
    def health(self) -> bool:
        pass

    def query_ring(
        self,
        geo: GeoIndex,
        destination_cell: GeoCell,
        ring_radius: int,
        date_range: DateRange,
        exclude_owners: Sequence[str] = (),
        limit: int = DEFAULT_LIMIT,
    ) -> List[Candidate]:
        """
        Query every cell within `ring_radius` of the destination.

        Proximity is built from exact-match queries; results are merged and
        put back into the stable order before truncation.
        """
        merged = {}
        for cell in geo.neighbors(destination_cell, ring_radius):
            for candidate in self.query(cell, date_range, exclude_owners, limit):
                merged[candidate.trip_id] = candidate
        return stable_order(merged.values())[:limit]


class InMemoryPrefilterIndex(PrefilterIndex):
    """
    In-memory columnar index.

    Each attribute lives in its own numpy array so a query is a handful of
    vectorized comparisons. Inserts take a lock; queries read a consistent
    snapshot of the columns.
    """

    def __init__(self, resolution: int = DESTINATION_RESOLUTION):
        """
        Initialize index.

        Args:
            resolution: H3 resolution of indexed destination cells
        """
        self.resolution = resolution
        self.available = True

        self._lock = threading.Lock()
        self._trip_ids: List[str] = []
        self._owners: List[str] = []
        self._cells: List[GeoCell] = []
        self._row_of: dict = {}

        self._dest = np.zeros(0, dtype=np.uint64)
        self._start = np.zeros(0, dtype=np.int64)
        self._end = np.zeros(0, dtype=np.int64)
        self._active = np.zeros(0, dtype=bool)
        self._created = np.zeros(0, dtype=np.int64)

    @property
    def ntotal(self) -> int:
        return len(self._trip_ids)

    def add(self, candidates: Iterable[Candidate]) -> None:
        """Index trips. A trip id already present is replaced."""
        with self._lock:
            for candidate in candidates:
                if candidate.destination_cell.resolution != self.resolution:
                    raise InvalidGeometry(
                        f"Destination cell resolution {candidate.destination_cell.resolution}, "
                        f"index expects {self.resolution}"
                    )
                row = self._row_of.get(candidate.trip_id)
                if row is None:
                    self._append(candidate)
                else:
                    self._overwrite(row, candidate)

    def deactivate(self, trip_id: str) -> bool:
        """Hide a trip from future queries. Returns False if unknown."""
        with self._lock:
            row = self._row_of.get(trip_id)
            if row is None:
                return False
            active = self._active.copy()
            active[row] = False
            self._active = active
            return True

    def _append(self, c: Candidate) -> None:
        self._row_of[c.trip_id] = len(self._trip_ids)
        self._trip_ids.append(c.trip_id)
        self._owners.append(c.owner)
        self._cells.append(c.destination_cell)
        self._dest = np.append(self._dest, np.uint64(c.destination_cell.index))
        self._start = np.append(self._start, np.int64(c.start_date))
        self._end = np.append(self._end, np.int64(c.end_date))
        self._active = np.append(self._active, c.is_active)
        self._created = np.append(self._created, np.int64(c.created_at))

    def _overwrite(self, row: int, c: Candidate) -> None:
        # Copy-on-write keeps concurrent readers on a consistent snapshot
        self._owners[row] = c.owner
        self._cells[row] = c.destination_cell
        for name, value in (
            ("_dest", np.uint64(c.destination_cell.index)),
            ("_start", c.start_date),
            ("_end", c.end_date),
            ("_active", c.is_active),
            ("_created", c.created_at),
        ):
            column = getattr(self, name).copy()
            column[row] = value
            setattr(self, name, column)

    def query(
        self,
        destination_cell: GeoCell,
        date_range: DateRange,
        exclude_owners: Sequence[str] = (),
        limit: int = DEFAULT_LIMIT,
    ) -> List[Candidate]:
        if not self.available:
            raise PrefilterUnavailable("In-memory pre-filter is offline")
        _check_query(date_range, limit)
        if destination_cell.resolution != self.resolution:
            raise InvalidGeometry(
                f"Query cell resolution {destination_cell.resolution}, "
                f"index expects {self.resolution}"
            )

        with self._lock:
            n = len(self._trip_ids)
            dest, start, end = self._dest[:n], self._start[:n], self._end[:n]
            active, created = self._active[:n], self._created[:n]
            trip_ids, owners, cells = list(self._trip_ids), list(self._owners), list(self._cells)

        query_start, query_end = date_range
        mask = (
            (dest == np.uint64(destination_cell.index))
            & active
            & (start < query_end)
            & (end > query_start)
        )
        if exclude_owners:
            excluded = set(exclude_owners)
            mask &= np.fromiter((o not in excluded for o in owners), dtype=bool, count=n)

        rows = np.flatnonzero(mask)
        if rows.size == 0:
            return []

        order = np.lexsort((np.asarray([trip_ids[r] for r in rows]), created[rows]))
        rows = rows[order][:limit]

        return [
            Candidate(
                trip_id=trip_ids[r],
                owner=owners[r],
                destination_cell=cells[r],
                start_date=int(start[r]),
                end_date=int(end[r]),
                is_active=True,
                created_at=int(created[r]),
            )
            for r in rows
        ]

    def health(self) -> bool:
        return self.available


class RemotePrefilterIndex(PrefilterIndex):
    """
    HTTP client for a remote pre-filter service (see tripmatch.server.api).

    Transport errors, timeouts and 5xx answers surface as
    PrefilterUnavailable; an empty candidate list is a normal answer.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        """
        Initialize remote index.

        Args:
            base_url: Service root URL
            timeout: Per-request timeout in seconds
            client: Pre-built httpx client (takes precedence over base_url)
        """
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def query(
        self,
        destination_cell: GeoCell,
        date_range: DateRange,
        exclude_owners: Sequence[str] = (),
        limit: int = DEFAULT_LIMIT,
    ) -> List[Candidate]:
        _check_query(date_range, limit)
        payload = {
            "destination_cell": destination_cell.hex,
            "start_date": date_range[0],
            "end_date": date_range[1],
            "exclude_owners": list(exclude_owners),
            "limit": limit,
        }
        try:
            response = self._client.post("/trips/query", json=payload)
        except httpx.HTTPError as e:
            raise PrefilterUnavailable(f"Pre-filter request failed: {e}") from e

        if response.status_code >= 500:
            raise PrefilterUnavailable(f"Pre-filter service error: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ValueError(f"Pre-filter rejected query: {response.text}")

        try:
            return [
                Candidate(
                    trip_id=c["trip_id"],
                    owner=c["owner"],
                    destination_cell=cell_from_hex(c["destination_cell"]),
                    start_date=c["start_date"],
                    end_date=c["end_date"],
                    is_active=c["is_active"],
                    created_at=c["created_at"],
                )
                for c in response.json()["candidates"]
            ]
        except (ValueError, KeyError, TypeError) as e:
            raise ProtocolMismatch(f"Malformed pre-filter response: {e!r}") from e

    def health(self) -> bool:
        try:
            return self._client.get("/health").status_code == 200
        except httpx.HTTPError:
            return False


def index_from_settings(settings) -> PrefilterIndex:
    """Remote pre-filter when PREFILTER_URL is set, in-memory otherwise."""
    if settings.PREFILTER_URL:
        logger.info("Using remote pre-filter at %s", settings.PREFILTER_URL)
        return RemotePrefilterIndex(settings.PREFILTER_URL, timeout=settings.PREFILTER_TIMEOUT)
    return InMemoryPrefilterIndex()
