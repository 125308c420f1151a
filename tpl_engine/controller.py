"""
TPLController - runs a TPL statement end to end.

Coordinates: TableSpecBuilder -> QueryPlanGenerator (discovery) -> Backend ->
TableSpecBuilder.resolve -> QueryPlanGenerator (main) -> Backend -> GridAssembler
"""
import asyncio
import logging
from typing import Optional, Any, Dict, Union, Sequence

from .config import TPLConfig, get_config
from .errors import TPLError, ExecutionError
from .grid_assembler import GridAssembler
from .backends.ibis_backend import IbisBackend
from .planner.query_plan_generator import QueryPlanGenerator
from .planner.table_spec_builder import TableSpecBuilder
from .types.ast import TPLStatement
from .types.grid import Grid
from .types.query_plan import GroupingQuery, ResultRows
from .types.schema import Schema
from .types.table_spec import TableSpec

logger = logging.getLogger(__name__)


class TPLController:
    """
    Compiles and executes TPL statements against one executor.

    The executor is anything with ``execute(GroupingQuery) -> rows`` and,
    optionally, ``execute_async``. Without one, an IbisBackend is opened on
    ``config.backend_uri``.
    """

    def __init__(
        self,
        backend: Optional[Any] = None,
        config: Optional[TPLConfig] = None,
        schema: Optional[Schema] = None,
        table_name: Optional[str] = None,
    ):
        self.config = config or get_config()
        self.backend = backend or IbisBackend(connection_uri=self.config.backend_uri, table_name=table_name)
        self._schema = schema
        self.plan_generator = QueryPlanGenerator()
        self.assembler = GridAssembler(self.config)

        self._inflight: Optional[asyncio.Task] = None
        self._request_count = 0

    @property
    def schema(self) -> Schema:
        if self._schema is None:
            self._schema = self.backend.schema()
        return self._schema

    def compile(self, statement: Union[TPLStatement, Dict[str, Any]]) -> TableSpec:
        """Statement -> TableSpec; raises CompileError before anything runs."""
        builder = TableSpecBuilder(self.schema, include_nulls=self.config.include_nulls)
        return builder.build(self._normalize_statement(statement))

    def run(self, statement: Union[TPLStatement, Dict[str, Any]], return_format: str = "grid") -> Union[Grid, Dict[str, Any]]:
        """Execute a statement synchronously."""
        self._request_count += 1
        builder = TableSpecBuilder(self.schema, include_nulls=self.config.include_nulls)
        spec = builder.build(self._normalize_statement(statement))

        discovery = self.plan_generator.discovery(spec)
        discovery_results = {q.key: self._execute(q) for q in discovery.queries}
        resolved = builder.resolve(spec, discovery, discovery_results)

        plan = self.plan_generator.plan(resolved)
        results = {q.key: self._execute(q) for q in plan.main_queries}

        grid = self.assembler.assemble(resolved, plan, results)
        return self._format(grid, return_format)

    async def run_async(self, statement: Union[TPLStatement, Dict[str, Any]], return_format: str = "grid") -> Union[Grid, Dict[str, Any]]:
        """Execute a statement asynchronously.

        Queries of one wave run concurrently; the main wave starts only after
        every discovery query has returned.
        """
        self._request_count += 1
        builder = TableSpecBuilder(self.schema, include_nulls=self.config.include_nulls)
        spec = builder.build(self._normalize_statement(statement))
        semaphore = asyncio.Semaphore(self.config.max_concurrent_queries)

        discovery = self.plan_generator.discovery(spec)
        discovery_results = await self._dispatch(discovery.queries, semaphore)
        resolved = builder.resolve(spec, discovery, discovery_results)

        plan = self.plan_generator.plan(resolved)
        results = await self._dispatch(plan.main_queries, semaphore)

        grid = self.assembler.assemble(resolved, plan, results)
        return self._format(grid, return_format)

    def submit(self, statement: Union[TPLStatement, Dict[str, Any]], return_format: str = "grid") -> asyncio.Task:
        """
        Start a request as a task, cancelling the previous in-flight one.

        Must be called from a running event loop. Awaiting a superseded task
        raises ``asyncio.CancelledError``.
        """
        if self._inflight is not None and not self._inflight.done():
            logger.info("Cancelling superseded request")
            self._inflight.cancel()
        self._inflight = asyncio.ensure_future(self.run_async(statement, return_format))
        return self._inflight

    # ---- execution ----

    def _execute(self, query: GroupingQuery) -> ResultRows:
        try:
            return self.backend.execute(query)
        except TPLError:
            raise
        except Exception as e:
            raise ExecutionError(f"Query failed: {query.describe()}: {e}") from e

    async def _dispatch(self, queries: Sequence[GroupingQuery], semaphore: asyncio.Semaphore) -> Dict[str, ResultRows]:
        if not queries:
            return {}
        logger.info("Dispatching %d %s queries", len(queries), queries[0].purpose)

        tasks = [asyncio.ensure_future(self._execute_async(q, semaphore)) for q in queries]
        try:
            rows = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise
        return {q.key: r for q, r in zip(queries, rows)}

    async def _execute_async(self, query: GroupingQuery, semaphore: asyncio.Semaphore) -> ResultRows:
        async with semaphore:
            if hasattr(self.backend, "execute_async"):
                pending = self.backend.execute_async(query)
            else:
                loop = asyncio.get_running_loop()
                pending = loop.run_in_executor(None, self.backend.execute, query)
            try:
                return await asyncio.wait_for(pending, timeout=self.config.query_timeout)
            except asyncio.TimeoutError as e:
                raise ExecutionError(
                    f"Query timed out after {self.config.query_timeout}s: {query.describe()}"
                ) from e
            except TPLError:
                raise
            except Exception as e:
                raise ExecutionError(f"Query failed: {query.describe()}: {e}") from e

    # ---- helpers ----

    @staticmethod
    def _normalize_statement(statement: Union[TPLStatement, Dict[str, Any]]) -> TPLStatement:
        if isinstance(statement, dict):
            return TPLStatement.from_dict(statement)
        return statement

    @staticmethod
    def _format(grid: Grid, return_format: str) -> Union[Grid, Dict[str, Any]]:
        if return_format == "grid":
            return grid
        if return_format == "dict":
            return grid.to_dict()
        if return_format == "arrow":
            return grid.to_arrow()
        raise ValueError(f"Unknown return_format: {return_format}")

    def get_stats(self) -> Dict[str, Any]:
        stats = {"request_count": self._request_count}
        if hasattr(self.backend, "get_stats"):
            stats["backend"] = self.backend.get_stats()
        return stats

    def close(self):
        if hasattr(self.backend, "close"):
            self.backend.close()
