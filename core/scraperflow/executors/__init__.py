"""Node executors: the contract, the registry and the built-in node types."""

from scraperflow.executors.base import ExecutionContext, FunctionExecutor, NodeExecutor
from scraperflow.executors.http import HttpRequestExecutor
from scraperflow.executors.processing import (
    DataAggregatorExecutor,
    DataFilterExecutor,
    DataTransformerExecutor,
    DataValidatorExecutor,
    FieldExtractorExecutor,
    JsonParserExecutor,
)
from scraperflow.executors.registry import ExecutorRegistry

BUILTIN_EXECUTORS = {
    "HTTP Request": HttpRequestExecutor,
    "JSON Parser": JsonParserExecutor,
    "Field Extractor": FieldExtractorExecutor,
    "Data Filter": DataFilterExecutor,
    "Data Transformer": DataTransformerExecutor,
    "Data Validator": DataValidatorExecutor,
    "Data Aggregator": DataAggregatorExecutor,
}


def register_builtin_executors(
    registry: ExecutorRegistry | None = None,
    replace: bool = False,
) -> ExecutorRegistry:
    """Register every built-in node type and return the registry."""
    if registry is None:
        registry = ExecutorRegistry()
    for node_type, executor_cls in BUILTIN_EXECUTORS.items():
        registry.register(node_type, executor_cls(), replace=replace)
    return registry


__all__ = [
    "ExecutionContext",
    "NodeExecutor",
    "FunctionExecutor",
    "ExecutorRegistry",
    "HttpRequestExecutor",
    "JsonParserExecutor",
    "FieldExtractorExecutor",
    "DataFilterExecutor",
    "DataTransformerExecutor",
    "DataValidatorExecutor",
    "DataAggregatorExecutor",
    "BUILTIN_EXECUTORS",
    "register_builtin_executors",
]
