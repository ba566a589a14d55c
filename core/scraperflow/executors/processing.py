"""
Data-processing executors from the scraper palette.

- JSON Parser: parse a JSON string into data
- Field Extractor: pick dotted-path fields out of records
- Data Filter: keep records matching a condition
- Data Transformer: rename, drop and set fields
- Data Validator: check required fields and value types
- Data Aggregator: combine several input ports (fan-in)

Single-input executors read their data from the ``input`` port. Nodes with no
incoming connection receive the run input instead, so a source-positioned
processor reads the run input's ``input`` key, or the whole run input.
"""

import json
import logging
from typing import Any, Literal

from pydantic import BaseModel, Field

from scraperflow.errors import ExecutionError
from scraperflow.executors.base import ExecutionContext, NodeExecutor

logger = logging.getLogger(__name__)

_MISSING = object()


def primary_input(envelope: dict[str, Any]) -> Any:
    """The value a single-input executor works on."""
    if "input" in envelope:
        return envelope["input"]
    if len(envelope) == 1:
        return next(iter(envelope.values()))
    return envelope


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """
    Look up a dotted path such as ``offers.0.price``.

    Integer segments index into lists; anything unresolvable yields ``default``.
    """
    current = data
    for part in path.split(".") if path else []:
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            idx = int(part)
            current = current[idx] if -len(current) <= idx < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def _records(value: Any, node: str) -> list[Any]:
    if isinstance(value, list):
        return value
    raise ExecutionError(
        f"{node} expects a list of records, got {type(value).__name__}",
        retryable=False,
    )


# ---------------------------------------------------------------------------
# JSON Parser
# ---------------------------------------------------------------------------


class JsonParserConfig(BaseModel):
    field: str | None = Field(default=None, description="Dotted path of the JSON text")
    strict: bool = True


class JsonParserExecutor(NodeExecutor):
    """Parse JSON text. Non-string input passes through unless ``strict``."""

    config_model = JsonParserConfig

    async def execute(
        self,
        input: dict[str, Any],
        config: JsonParserConfig,
        secrets: dict[str, str],
        ctx: ExecutionContext,
    ) -> Any:
        value = primary_input(input)
        if config.field:
            value = get_path(value, config.field)
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        if not isinstance(value, str):
            if config.strict:
                raise ExecutionError(
                    f"JSON Parser expects text, got {type(value).__name__}", retryable=False
                )
            return value
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ExecutionError(f"Malformed JSON: {e}", retryable=False) from e


# ---------------------------------------------------------------------------
# Field Extractor
# ---------------------------------------------------------------------------


class FieldExtractorConfig(BaseModel):
    fields: dict[str, str] | list[str] = Field(
        description="Output name -> dotted path, or a list of paths kept under their own name"
    )
    default: Any = None


class FieldExtractorExecutor(NodeExecutor):
    """Extract fields from one record or from each record of a list."""

    config_model = FieldExtractorConfig

    async def execute(
        self,
        input: dict[str, Any],
        config: FieldExtractorConfig,
        secrets: dict[str, str],
        ctx: ExecutionContext,
    ) -> Any:
        fields = config.fields
        mapping = fields if isinstance(fields, dict) else {path: path for path in fields}

        def extract(record: Any) -> dict[str, Any]:
            return {name: get_path(record, path, config.default) for name, path in mapping.items()}

        value = primary_input(input)
        if isinstance(value, list):
            return [extract(record) for record in value]
        return extract(value)


# ---------------------------------------------------------------------------
# Data Filter
# ---------------------------------------------------------------------------

FilterOperator = Literal["eq", "ne", "gt", "gte", "lt", "lte", "contains", "exists"]


class DataFilterConfig(BaseModel):
    field: str
    operator: FilterOperator = "eq"
    value: Any = None


def _matches(record: Any, config: DataFilterConfig) -> bool:
    actual = get_path(record, config.field, _MISSING)
    if config.operator == "exists":
        present = actual is not _MISSING and actual is not None
        return present if config.value is None else present == bool(config.value)
    if actual is _MISSING:
        return False
    expected = config.value
    try:
        match config.operator:
            case "eq":
                return actual == expected
            case "ne":
                return actual != expected
            case "gt":
                return actual > expected
            case "gte":
                return actual >= expected
            case "lt":
                return actual < expected
            case "lte":
                return actual <= expected
            case "contains":
                return expected in actual
    except TypeError:
        return False
    return False


class DataFilterExecutor(NodeExecutor):
    """Keep the records for which ``field operator value`` holds."""

    config_model = DataFilterConfig

    async def execute(
        self,
        input: dict[str, Any],
        config: DataFilterConfig,
        secrets: dict[str, str],
        ctx: ExecutionContext,
    ) -> list[Any]:
        records = _records(primary_input(input), "Data Filter")
        kept = [record for record in records if _matches(record, config)]
        logger.debug(f"Data Filter kept {len(kept)}/{len(records)} records")
        return kept


# ---------------------------------------------------------------------------
# Data Transformer
# ---------------------------------------------------------------------------


class DataTransformerConfig(BaseModel):
    rename: dict[str, str] = Field(default_factory=dict)
    drop: list[str] = Field(default_factory=list)
    set: dict[str, Any] = Field(default_factory=dict)


class DataTransformerExecutor(NodeExecutor):
    """Rename, then drop, then set top-level fields on each record."""

    config_model = DataTransformerConfig

    async def execute(
        self,
        input: dict[str, Any],
        config: DataTransformerConfig,
        secrets: dict[str, str],
        ctx: ExecutionContext,
    ) -> Any:
        def transform(record: Any) -> Any:
            if not isinstance(record, dict):
                raise ExecutionError(
                    f"Data Transformer expects records, got {type(record).__name__}",
                    retryable=False,
                )
            out = {config.rename.get(key, key): value for key, value in record.items()}
            for key in config.drop:
                out.pop(key, None)
            out.update(config.set)
            return out

        value = primary_input(input)
        if isinstance(value, list):
            return [transform(record) for record in value]
        return transform(value)


# ---------------------------------------------------------------------------
# Data Validator
# ---------------------------------------------------------------------------

JsonType = Literal["string", "number", "integer", "boolean", "object", "array", "null"]

_TYPE_CHECKS: dict[str, Any] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, int | float) and not isinstance(v, bool),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
    "null": lambda v: v is None,
}


class DataValidatorConfig(BaseModel):
    required: list[str] = Field(default_factory=list)
    types: dict[str, JsonType] = Field(default_factory=dict)
    strict: bool = True


def _record_errors(record: Any, config: DataValidatorConfig) -> list[str]:
    errors = []
    for path in config.required:
        if get_path(record, path, _MISSING) in (_MISSING, None):
            errors.append(f"missing required field '{path}'")
    for path, expected in config.types.items():
        value = get_path(record, path, _MISSING)
        if value is not _MISSING and not _TYPE_CHECKS[expected](value):
            errors.append(f"field '{path}' should be {expected}, got {type(value).__name__}")
    return errors


class DataValidatorExecutor(NodeExecutor):
    """
    Validate records against required fields and JSON types.

    With ``strict`` any invalid record fails the node (not retried, since the
    same data would fail again). Otherwise the output splits records into
    ``valid`` and ``invalid`` (with their errors).
    """

    config_model = DataValidatorConfig

    async def execute(
        self,
        input: dict[str, Any],
        config: DataValidatorConfig,
        secrets: dict[str, str],
        ctx: ExecutionContext,
    ) -> Any:
        value = primary_input(input)
        records = value if isinstance(value, list) else [value]

        valid: list[Any] = []
        invalid: list[dict[str, Any]] = []
        for record in records:
            errors = _record_errors(record, config)
            if errors:
                invalid.append({"record": record, "errors": errors})
            else:
                valid.append(record)

        if config.strict:
            if invalid:
                first = invalid[0]["errors"]
                raise ExecutionError(
                    f"{len(invalid)} invalid record(s); first: {'; '.join(first)}",
                    retryable=False,
                )
            return value
        return {"valid": valid, "invalid": invalid}


# ---------------------------------------------------------------------------
# Data Aggregator
# ---------------------------------------------------------------------------


class DataAggregatorConfig(BaseModel):
    mode: Literal["collect", "merge", "concat"] = "collect"


class DataAggregatorExecutor(NodeExecutor):
    """
    Fan-in node: combines the values arriving on its input ports.

    - collect: ``{port: value}``
    - merge: dict union in port order (later ports win)
    - concat: list concatenation in port order (scalars are appended)
    """

    config_model = DataAggregatorConfig

    async def execute(
        self,
        input: dict[str, Any],
        config: DataAggregatorConfig,
        secrets: dict[str, str],
        ctx: ExecutionContext,
    ) -> Any:
        if config.mode == "collect":
            return dict(input)
        if config.mode == "merge":
            merged: dict[str, Any] = {}
            for port, value in input.items():
                if not isinstance(value, dict):
                    raise ExecutionError(
                        f"merge expects objects, port '{port}' carried {type(value).__name__}",
                        retryable=False,
                    )
                merged.update(value)
            return merged
        combined: list[Any] = []
        for value in input.values():
            if isinstance(value, list):
                combined.extend(value)
            else:
                combined.append(value)
        return combined
