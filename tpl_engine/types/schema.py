"""
Schema of the tabular source a statement is compiled against.
"""
from dataclasses import dataclass, field
from typing import Dict, Any

NUMERIC = "numeric"
STRING = "string"
TEMPORAL = "temporal"
BOOLEAN = "boolean"
OTHER = "other"


@dataclass(frozen=True)
class Schema:
    """Field name -> kind ("numeric", "string", "temporal", "boolean", "other")."""
    fields: Dict[str, str] = field(default_factory=dict)

    def has_field(self, name: str) -> bool:
        return name in self.fields

    def is_numeric(self, name: str) -> bool:
        return self.fields.get(name) == NUMERIC

    @staticmethod
    def from_dict(d: Dict[str, str]) -> "Schema":
        return Schema(fields=dict(d))

    @staticmethod
    def from_arrow(arrow_schema: Any) -> "Schema":
        """Build from a ``pyarrow.Schema``."""
        import pyarrow as pa

        kinds = {}
        for f in arrow_schema:
            if pa.types.is_integer(f.type) or pa.types.is_floating(f.type) or pa.types.is_decimal(f.type):
                kinds[f.name] = NUMERIC
            elif pa.types.is_string(f.type) or pa.types.is_large_string(f.type) or pa.types.is_dictionary(f.type):
                kinds[f.name] = STRING
            elif pa.types.is_temporal(f.type):
                kinds[f.name] = TEMPORAL
            elif pa.types.is_boolean(f.type):
                kinds[f.name] = BOOLEAN
            else:
                kinds[f.name] = OTHER
        return Schema(fields=kinds)

    @staticmethod
    def from_ibis(ibis_schema: Any) -> "Schema":
        """Build from an ``ibis`` table schema (``table.schema()``)."""
        kinds = {}
        for name, dtype in ibis_schema.items():
            if dtype.is_boolean():
                kinds[name] = BOOLEAN
            elif dtype.is_numeric():
                kinds[name] = NUMERIC
            elif dtype.is_string():
                kinds[name] = STRING
            elif dtype.is_temporal():
                kinds[name] = TEMPORAL
            else:
                kinds[name] = OTHER
        return Schema(fields=kinds)
