"""
Grid - the assembled crosstab handed to a renderer.
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Tuple

from .table_spec import Path, MeasureSpec, ALL_FIELD


@dataclass(frozen=True)
class HeaderNode:
    node_id: int
    field: Optional[str]
    value: Any
    label: str
    path: Path
    is_total: bool = False
    children: Tuple["HeaderNode", ...] = ()

    @property
    def span(self) -> int:
        if not self.children:
            return 1
        return sum(c.span for c in self.children)


@dataclass(frozen=True)
class CellValue:
    measure: str
    raw: Optional[float]
    formatted: str
    description: str


@dataclass(frozen=True)
class Grid:
    row_headers: Tuple[HeaderNode, ...]
    col_headers: Tuple[HeaderNode, ...]
    row_leaves: Tuple[Path, ...]
    col_leaves: Tuple[Path, ...]
    measures: Tuple[MeasureSpec, ...]
    cells: Dict[Tuple[Path, Path], Tuple[CellValue, ...]] = field(default_factory=dict)

    def cell(self, row_path: Path, col_path: Path, measure: Optional[str] = None) -> Optional[CellValue]:
        values = self.cells.get((tuple(row_path), tuple(col_path)))
        if not values:
            return None
        if measure is None:
            return values[0]
        for v in values:
            if v.measure == measure:
                return v
        return None

    @property
    def shape(self) -> Tuple[int, int]:
        return len(self.row_leaves), len(self.col_leaves)

    def to_dict(self) -> Dict[str, Any]:
        """Flat records, one per row leaf x col leaf x measure."""
        records = []
        for row_path in self.row_leaves:
            for col_path in self.col_leaves:
                for value in self.cells.get((row_path, col_path), ()):
                    records.append({
                        "row": _path_label(row_path),
                        "col": _path_label(col_path),
                        "measure": value.measure,
                        "raw": value.raw,
                        "formatted": value.formatted,
                    })
        return {
            "columns": ["row", "col", "measure", "raw", "formatted"],
            "rows": [list(r.values()) for r in records],
        }

    def to_arrow(self):
        """Same records as ``to_dict`` as a pyarrow Table."""
        import pyarrow as pa

        d = self.to_dict()
        columns = list(zip(*d["rows"])) if d["rows"] else [[] for _ in d["columns"]]
        return pa.table({
            "row": pa.array(columns[0], type=pa.string()),
            "col": pa.array(columns[1], type=pa.string()),
            "measure": pa.array(columns[2], type=pa.string()),
            "raw": pa.array(columns[3], type=pa.float64()),
            "formatted": pa.array(columns[4], type=pa.string()),
        })


def _path_label(path: Path) -> str:
    parts = []
    for f, v in path:
        parts.append("ALL" if f == ALL_FIELD else f"{f}={v}")
    return " / ".join(parts)
