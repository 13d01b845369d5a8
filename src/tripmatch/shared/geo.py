"""
H3 quantization for privacy-preserving location handling.

Resolution levels:
- Level 7: ~5 km² per cell (waypoints) - coarse enough to hide the exact
  address, fine enough to tell two routes apart
- Level 6: ~36 km² per cell (destinations) - public, used for pre-filtering

H3 cells form a total hierarchy: every cell has exactly one parent at each
coarser resolution, so a waypoint cell can always be coarsened into its
destination cell.
"""
import math
from typing import Iterable, List, Sequence, Tuple, Union

import h3
import numpy as np

from tripmatch.shared.errors import InvalidGeometry
from tripmatch.shared.protocol import (
    DESTINATION_RESOLUTION,
    MAX_WAYPOINTS,
    WAYPOINT_RESOLUTION,
    GeoCell,
)
from tripmatch.shared.utils import haversine_km

MIN_RESOLUTION = 0
MAX_RESOLUTION = 15

CellLike = Union[GeoCell, int]


def _check_resolution(resolution: int) -> int:
    if isinstance(resolution, bool) or not isinstance(resolution, (int, np.integer)):
        raise InvalidGeometry(f"Resolution must be an integer, got {resolution!r}")
    if not MIN_RESOLUTION <= resolution <= MAX_RESOLUTION:
        raise InvalidGeometry(
            f"Unsupported resolution {resolution}, expected "
            f"{MIN_RESOLUTION}..{MAX_RESOLUTION}"
        )
    return int(resolution)


def _check_coordinates(lat: float, lng: float) -> Tuple[float, float]:
    try:
        lat = float(lat)
        lng = float(lng)
    except (TypeError, ValueError):
        raise InvalidGeometry(f"Coordinates must be numbers, got ({lat!r}, {lng!r})") from None
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise InvalidGeometry(f"Coordinates must be finite, got ({lat}, {lng})")
    if not -90.0 <= lat <= 90.0:
        raise InvalidGeometry(f"Latitude {lat} outside [-90, 90]")
    if not -180.0 <= lng <= 180.0:
        raise InvalidGeometry(f"Longitude {lng} outside [-180, 180]")
    return lat, lng


def is_valid_cell(index: int) -> bool:
    """Check that an integer is a valid H3 cell index."""
    if isinstance(index, bool) or not isinstance(index, (int, np.integer)):
        return False
    if not 0 < index < 2 ** 64:
        return False
    return bool(h3.is_valid_cell(h3.int_to_str(int(index))))


def cell_from_int(index: int) -> GeoCell:
    """
    Rebuild a GeoCell from its 64-bit index.

    Raises:
        InvalidGeometry: if the integer is not a valid H3 cell
    """
    if not is_valid_cell(index):
        raise InvalidGeometry(f"Not a valid H3 cell index: {index!r}")
    return GeoCell(index=int(index), resolution=h3.get_resolution(h3.int_to_str(int(index))))


def cell_from_hex(value: str) -> GeoCell:
    """Parse an H3 hex string ("872830828ffffff", optional 0x prefix)."""
    text = value[2:] if value.lower().startswith("0x") else value
    try:
        index = int(text, 16)
    except ValueError:
        raise InvalidGeometry(f"Not a hex H3 index: {value!r}") from None
    return cell_from_int(index)


def _as_cell(cell: CellLike) -> GeoCell:
    if isinstance(cell, GeoCell):
        if not is_valid_cell(cell.index):
            raise InvalidGeometry(f"Not a valid H3 cell index: {cell.index!r}")
        return cell
    return cell_from_int(cell)


def _cell_indices(cells: Iterable[CellLike]) -> np.ndarray:
    indices = [c.index if isinstance(c, GeoCell) else int(c) for c in cells]
    return np.unique(np.asarray(indices, dtype=np.uint64))


class GeoIndex:
    """
    Coordinate quantization and cell-set arithmetic.

    Stateless apart from the two configured resolutions; safe to share
    between threads.
    """

    def __init__(
        self,
        waypoint_resolution: int = WAYPOINT_RESOLUTION,
        destination_resolution: int = DESTINATION_RESOLUTION,
    ):
        self.waypoint_resolution = _check_resolution(waypoint_resolution)
        self.destination_resolution = _check_resolution(destination_resolution)
        if self.destination_resolution > self.waypoint_resolution:
            raise InvalidGeometry("Destination resolution must be coarser than waypoint resolution")

    def to_cell(self, lat: float, lng: float, resolution: int) -> GeoCell:
        """
        Quantize a coordinate into the cell containing it.

        Args:
            lat: Latitude in [-90, 90]
            lng: Longitude in [-180, 180]
            resolution: H3 resolution 0..15

        Returns:
            GeoCell at the requested resolution
        """
        lat, lng = _check_coordinates(lat, lng)
        resolution = _check_resolution(resolution)
        index = h3.str_to_int(h3.latlng_to_cell(lat, lng, resolution))
        return GeoCell(index=index, resolution=resolution)

    def cell_center(self, cell: CellLike) -> Tuple[float, float]:
        """Center point (lat, lng) of a cell."""
        cell = _as_cell(cell)
        lat, lng = h3.cell_to_latlng(h3.int_to_str(cell.index))
        return lat, lng

    def parent(self, cell: CellLike, coarser_resolution: int) -> GeoCell:
        """
        Ancestor of a cell at a coarser resolution.

        Raises:
            InvalidGeometry: if coarser_resolution is finer than the cell
        """
        cell = _as_cell(cell)
        coarser_resolution = _check_resolution(coarser_resolution)
        if coarser_resolution > cell.resolution:
            raise InvalidGeometry(
                f"Resolution {coarser_resolution} is finer than cell resolution {cell.resolution}"
            )
        if coarser_resolution == cell.resolution:
            return cell
        parent = h3.cell_to_parent(h3.int_to_str(cell.index), coarser_resolution)
        return GeoCell(index=h3.str_to_int(parent), resolution=coarser_resolution)

    def neighbors(self, cell: CellLike, ring_radius: int = 1) -> List[GeoCell]:
        """
        All cells within `ring_radius` grid steps, the center included.

        Returned sorted by index so callers get a stable order.
        """
        cell = _as_cell(cell)
        if isinstance(ring_radius, bool) or not isinstance(ring_radius, int) or ring_radius < 0:
            raise InvalidGeometry(f"Ring radius must be a non-negative integer, got {ring_radius!r}")
        disk = h3.grid_disk(h3.int_to_str(cell.index), ring_radius)
        indices = sorted(h3.str_to_int(c) for c in disk)
        return [GeoCell(index=i, resolution=cell.resolution) for i in indices]

    def route_similarity(
        self,
        cells_a: Iterable[CellLike],
        cells_b: Iterable[CellLike],
    ) -> int:
        """
        Jaccard index of two cell sets as a 0-100 integer.

        Rounds half-up. Returns 0 if either set is empty.
        """
        a = _cell_indices(cells_a)
        b = _cell_indices(cells_b)
        if a.size == 0 or b.size == 0:
            return 0

        intersection = int(np.intersect1d(a, b, assume_unique=True).size)
        union = int(a.size + b.size - intersection)
        # round(100 * i / u) with halves going up, in integer arithmetic
        return (200 * intersection + union) // (2 * union)

    def destination_cell(self, lat: float, lng: float) -> GeoCell:
        """Public pre-filter cell for a destination."""
        return self.to_cell(lat, lng, self.destination_resolution)

    def waypoint_cell(self, lat: float, lng: float) -> GeoCell:
        return self.to_cell(lat, lng, self.waypoint_resolution)

    def waypoint_cells(self, points: Sequence[Tuple[float, float]]) -> List[GeoCell]:
        """
        Quantize a route into waypoint cells.

        Consecutive points in the same cell collapse to one entry; the
        first MAX_WAYPOINTS distinct cells are kept, in route order.
        """
        seen = set()
        cells: List[GeoCell] = []
        for lat, lng in points:
            if len(cells) >= MAX_WAYPOINTS:
                break
            cell = self.waypoint_cell(lat, lng)
            if cell.index not in seen:
                seen.add(cell.index)
                cells.append(cell)
        return cells

    def cell_distance_km(self, cell_a: CellLike, cell_b: CellLike) -> float:
        """Approximate great circle distance between two cell centers."""
        lat1, lng1 = self.cell_center(cell_a)
        lat2, lng2 = self.cell_center(cell_b)
        return haversine_km(lat1, lng1, lat2, lng2)

    @staticmethod
    def cell_area_km2(resolution: int) -> float:
        """Average cell area at a resolution."""
        resolution = _check_resolution(resolution)
        return float(h3.average_hexagon_area(resolution, unit="km^2"))
