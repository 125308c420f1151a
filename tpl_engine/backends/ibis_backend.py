"""
IbisBackend - reference executor for GroupingQuery over one source table.

Features:
- Ibis query execution (no hand-built SQL)
- Arrow table output, converted to plain rows at the executor boundary
- Async execution offloaded to a thread pool
- Performance metrics
"""
import asyncio
import logging
import math
import threading
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import ibis
import pyarrow as pa

from tpl_engine.common.ibis_expression_builder import IbisExpressionBuilder
from tpl_engine.types.query_plan import GroupingQuery, ResultRows
from tpl_engine.types.schema import Schema

logger = logging.getLogger(__name__)


class IbisBackend:
    """
    Executes grouping queries against one table of an Ibis connection.
    """

    def __init__(
        self,
        connection: Optional[Any] = None,
        connection_uri: Optional[str] = None,
        table_name: Optional[str] = None,
    ):
        """
        Initialize Ibis backend.

        Args:
            connection: An existing Ibis connection
            connection_uri: DuckDB database path, ``duckdb://path`` or ``:memory:``
            table_name: Source table the queries run against
        """
        self.con = connection
        if self.con is None:
            uri = connection_uri or ":memory:"
            if uri.startswith("duckdb://"):
                uri = uri[len("duckdb://"):]
            self.con = ibis.duckdb.connect(uri)

        self.table_name = table_name
        self.expression_builder = IbisExpressionBuilder()
        # DuckDB connections are not safe for concurrent use from several threads
        self._lock = threading.Lock()

        # Track query stats
        self._query_count = 0
        self._total_time = 0.0

    def table(self):
        if self.table_name is None:
            raise ValueError("No source table; pass table_name or call register_arrow_dataset")
        return self.con.table(self.table_name)

    def schema(self) -> Schema:
        return Schema.from_ibis(self.table().schema())

    def execute(self, query: GroupingQuery) -> ResultRows:
        """
        Execute one grouping query.

        Returns:
            List of dicts: grouped field -> value, aggregate alias -> number or None.
        """
        start_time = time.time()
        try:
            with self._lock:
                expr = self.expression_builder.build_query(self.table(), query)
                result: pa.Table = expr.to_pyarrow()
            rows = [_normalize(r) for r in result.to_pylist()]
        except Exception as e:
            logger.error("Error executing query %s: %s", query.describe(), e)
            raise

        elapsed = time.time() - start_time
        with self._lock:
            self._query_count += 1
            self._total_time += elapsed
        logger.debug("%s -> %d rows in %.3fs", query.describe(), len(rows), elapsed)
        return rows

    async def execute_async(self, query: GroupingQuery) -> ResultRows:
        """
        Execute query asynchronously in a thread pool.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.execute, query)

    def register_arrow_dataset(self, name: str, arrow_table: pa.Table, temporary: bool = True):
        """
        Register Arrow table as the queryable source.

        Args:
            name: Name to register as
            arrow_table: Arrow table to register
            temporary: If True, table is session-only
        """
        if temporary:
            self.con.create_table(name, arrow_table, temp=True, overwrite=True)
        else:
            self.con.create_table(name, arrow_table, overwrite=True)
        self.table_name = name

    def get_stats(self) -> Dict[str, Any]:
        """
        Get backend performance statistics.
        """
        avg_time = self._total_time / self._query_count if self._query_count > 0 else 0

        return {
            "query_count": self._query_count,
            "total_time": self._total_time,
            "avg_query_time": avg_time,
            "backend_type": getattr(self.con, 'name', 'unknown') if self.con else 'disconnected'
        }

    def reset_stats(self):
        """Reset performance counters"""
        with self._lock:
            self._query_count = 0
            self._total_time = 0.0

    def close(self):
        """Close database connection"""
        if self.con is not None and hasattr(self.con, 'disconnect'):
            self.con.disconnect()
        self.con = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _normalize(row: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k, v in row.items():
        if isinstance(v, Decimal):
            v = float(v)
        elif isinstance(v, float) and math.isnan(v):
            v = None
        out[k] = v
    return out
