"""Executor discovery and registration for node types."""

import inspect
import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel

from scraperflow.errors import ConfigurationError, ExecutorNotFoundError
from scraperflow.executors.base import FunctionExecutor, NodeExecutor

logger = logging.getLogger(__name__)


class ExecutorRegistry:
    """
    Maps node type -> executor.

    Usage:
        registry = ExecutorRegistry()
        registry.register("HTTP Request", HttpRequestExecutor())

        @registry.executor("Uppercase")
        def uppercase(input, config, secrets, ctx):
            return {k: str(v).upper() for k, v in input["input"].items()}
    """

    def __init__(self):
        self._executors: dict[str, NodeExecutor] = {}

    def register(
        self,
        node_type: str,
        executor: NodeExecutor | Callable[..., Any],
        *,
        config_model: type[BaseModel] | None = None,
        replace: bool = False,
    ) -> NodeExecutor:
        """
        Register an executor for a node type.

        Args:
            node_type: Node type key (matches ``NodeSpec.type``)
            executor: A NodeExecutor, or a callable ``(input, config, secrets, ctx)``
            config_model: Config model for callables (ignored for NodeExecutor instances)
            replace: Allow overriding an existing registration

        Returns:
            The registered NodeExecutor

        Raises:
            ConfigurationError: for an empty type, a duplicate registration, an
                executor that is neither a NodeExecutor nor callable, or a
                config model that is not a pydantic model class
        """
        if not node_type or not node_type.strip():
            raise ConfigurationError("Node type must be a non-empty string")
        if node_type in self._executors and not replace:
            raise ConfigurationError(f"Executor for '{node_type}' is already registered")

        if not isinstance(executor, NodeExecutor):
            if not callable(executor):
                raise ConfigurationError(
                    f"Executor for '{node_type}' must be a NodeExecutor or a callable"
                )
            executor = FunctionExecutor(executor, config_model=config_model)

        model = executor.config_model
        if model is not None and not (inspect.isclass(model) and issubclass(model, BaseModel)):
            raise ConfigurationError(
                f"config_model for '{node_type}' must be a pydantic model class, got {model!r}"
            )

        self._executors[node_type] = executor
        logger.debug(f"Registered executor for node type '{node_type}': {executor!r}")
        return executor

    def executor(
        self,
        node_type: str,
        config_model: type[BaseModel] | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of ``register`` for plain functions."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register(node_type, func, config_model=config_model)
            return func

        return decorator

    def unregister(self, node_type: str) -> bool:
        return self._executors.pop(node_type, None) is not None

    def lookup(self, node_type: str) -> NodeExecutor:
        """
        Raises:
            ExecutorNotFoundError: if nothing is registered for ``node_type``
        """
        try:
            return self._executors[node_type]
        except KeyError:
            raise ExecutorNotFoundError(node_type) from None

    def has(self, node_type: str) -> bool:
        return node_type in self._executors

    def types(self) -> list[str]:
        return list(self._executors)

    def __contains__(self, node_type: str) -> bool:
        return self.has(node_type)

    def __len__(self) -> int:
        return len(self._executors)
