"""
Example usage of the tpl_engine against an in-memory DuckDB table.

Equivalent TPL:
    TABLE WHERE year = 2024
      ROWS region[-2@sales.sum] | ALL 'All regions'
      COLS (product | ALL) * sales.(sum:currency | mean:decimal.1);
"""
import json

import pyarrow as pa

from tpl_engine.backends.ibis_backend import IbisBackend
from tpl_engine.config import TPLConfig
from tpl_engine.controller import TPLController


def main():
    backend = IbisBackend(connection_uri=":memory:")
    backend.register_arrow_dataset("sales", pa.table({
        "region": ["East", "West", "East", "West", "North", "South", "North"],
        "product": ["A", "A", "B", "B", "A", "B", "B"],
        "sales": [100, 200, 150, 250, 80, 300, 120],
        "year": [2024, 2024, 2024, 2024, 2024, 2024, 2025],
    }))

    config = TPLConfig()
    config.configure_logging()
    controller = TPLController(backend=backend, config=config)

    statement = {
        "where": {"type": "comparison", "field": "year", "op": "=", "value": 2024},
        "rows": {"groups": [
            {"items": [{"type": "dimension", "name": "region",
                        "limit": {"count": -2, "order_by": {"field": "sales", "aggregate": "sum"}}}]},
            {"items": [{"type": "all", "label": "All regions"}]},
        ]},
        "cols": {"groups": [{"items": [
            {"type": "axis", "groups": [
                {"items": [{"type": "dimension", "name": "product"}]},
                {"items": [{"type": "all"}]},
            ]},
            {"type": "binding", "measure": "sales", "aggregations": [
                {"method": "sum", "format": "currency"},
                {"method": "mean", "format": "decimal.1"},
            ]},
        ]}]},
    }

    print("\nRunning statement:")
    print(json.dumps(statement, indent=2))

    grid = controller.run(statement)

    print("\nGrid:")
    for row_path in grid.row_leaves:
        for col_path in grid.col_leaves:
            for value in grid.cells[(row_path, col_path)]:
                print(f"  {value.description:<45} {value.formatted:>12}")

    print("\nBackend stats:")
    print(json.dumps(controller.get_stats(), indent=2))
    controller.close()


if __name__ == "__main__":
    main()
