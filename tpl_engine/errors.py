"""
Exception hierarchy for the TPL compiler core.
"""


class TPLError(Exception):
    """Base error class for the TPL engine."""


class CompileError(TPLError):
    """Raised when a statement references unknown fields/measures or is ill-typed."""


class PlanError(TPLError):
    """Raised when a table spec cannot be turned into a query plan."""


class ExecutionError(TPLError):
    """Raised when the executor fails; the whole request is abandoned."""
