"""
grid.py — Map card regions in a multi-card photo onto rows and columns.

Region centres are clustered per axis by gap detection: sorted centre
coordinates that jump by more than GRID_GAP_RATIO x the average card size
start a new row (or column). Boundaries sit halfway across each gap.
"""

from dataclasses import dataclass, field

from config import GRID_GAP_RATIO

# Average size used when there are no regions to measure
_DEFAULT_CARD_SIZE = 100.0


@dataclass
class GridStructure:
    row_boundaries: list = field(default_factory=list)
    col_boundaries: list = field(default_factory=list)
    row_centroids: list = field(default_factory=list)
    col_centroids: list = field(default_factory=list)

    @property
    def num_rows(self):
        return len(self.row_centroids)

    @property
    def num_cols(self):
        return len(self.col_centroids)


def region_center(corners):
    xs = [float(p[0]) for p in corners]
    ys = [float(p[1]) for p in corners]
    return sum(xs) / len(xs), sum(ys) / len(ys)


def average_size(corner_sets):
    """Mean of (width + height) / 2 over the regions' bounding boxes."""
    if not corner_sets:
        return _DEFAULT_CARD_SIZE
    total = 0.0
    for corners in corner_sets:
        xs = [float(p[0]) for p in corners]
        ys = [float(p[1]) for p in corners]
        total += ((max(xs) - min(xs)) + (max(ys) - min(ys))) / 2
    return total / len(corner_sets)


def _cluster(values, gap_threshold):
    """1-D gap clustering. Returns (boundaries, centroids)."""
    ordered = sorted(values)
    groups = [[ordered[0]]]
    boundaries = []
    for prev, cur in zip(ordered, ordered[1:]):
        if cur - prev > gap_threshold:
            boundaries.append((prev + cur) / 2)
            groups.append([cur])
        else:
            groups[-1].append(cur)
    return boundaries, [sum(g) / len(g) for g in groups]


def detect_grid_structure(centers, avg_size, gap_ratio=GRID_GAP_RATIO):
    """
    Args:
        centers: list of (x, y) region centres
        avg_size: average card size in the same units

    Returns:
        GridStructure (empty for no centres)
    """
    if not centers:
        return GridStructure()

    gap = avg_size * gap_ratio
    row_bounds, row_cents = _cluster([c[1] for c in centers], gap)
    col_bounds, col_cents = _cluster([c[0] for c in centers], gap)
    return GridStructure(row_bounds, col_bounds, row_cents, col_cents)


def assign_to_grid_cell(center, grid):
    """(row, col) for a centre: the number of boundaries it lies past on each axis."""
    x, y = center
    row = sum(1 for b in grid.row_boundaries if y > b)
    col = sum(1 for b in grid.col_boundaries if x > b)
    return row, col


def assign_cells(corner_sets):
    """Grid cell for every region, in input order."""
    centers = [region_center(c) for c in corner_sets]
    grid = detect_grid_structure(centers, average_size(corner_sets))
    return grid, [assign_to_grid_cell(c, grid) for c in centers]
