"""
Executor contract - how a node type does its work.

An executor receives:
- ``input``: the node's input envelope, a deep copy keyed by input port
- ``config``: the node's config, parsed by ``config_model`` when one is set
- ``secrets``: resolved secret values keyed by logical name
- ``ctx``: an ExecutionContext with the cancellation signal and deadline

and returns a JSON-compatible output, or raises. Executors hold no shared
mutable engine state; any I/O they do must honour ``ctx``.
"""

import asyncio
import inspect
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ValidationError

from scraperflow.errors import ConfigurationError, NodeCancelledError


@dataclass
class ExecutionContext:
    """Per-attempt context handed to executors."""

    run_id: str
    node_id: str
    node_type: str = ""
    attempt: int = 1
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    deadline: float | None = None  # time.monotonic() value, None means no deadline

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise NodeCancelledError(f"Node '{self.node_id}' cancelled")

    async def wait_cancelled(self, timeout: float | None = None) -> bool:
        """Wait until cancellation is requested. Returns False on timeout."""
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def guard(self, awaitable: Any) -> Any:
        """
        Await ``awaitable`` but abandon it as soon as cancellation is
        requested or the deadline passes.

        Raises:
            NodeCancelledError: if cancellation was requested first
            TimeoutError: if the deadline passed first
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()
        if work in done:
            return work.result()
        await asyncio.gather(work, return_exceptions=True)
        self.raise_if_cancelled()
        raise TimeoutError(f"Node '{self.node_id}' ran past its deadline")


class NodeExecutor(ABC):
    """
    Base class for node executors.

    Subclasses set ``config_model`` to a pydantic model to get typed,
    validated configuration instead of a raw dict.

    Example:
        class UppercaseConfig(BaseModel):
            field: str

        class Uppercase(NodeExecutor):
            config_model = UppercaseConfig

            async def execute(self, input, config, secrets, ctx):
                record = input["input"]
                record[config.field] = record[config.field].upper()
                return record
    """

    config_model: type[BaseModel] | None = None

    def parse_config(self, config: dict[str, Any]) -> Any:
        """
        Validate raw node config.

        Raises:
            ConfigurationError: if the config does not match ``config_model``
        """
        if self.config_model is None:
            return config
        try:
            return self.config_model.model_validate(config)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid config: {e}") from e

    @abstractmethod
    async def execute(
        self,
        input: dict[str, Any],
        config: Any,
        secrets: dict[str, str],
        ctx: ExecutionContext,
    ) -> Any:
        """Run the node and return its output."""


class FunctionExecutor(NodeExecutor):
    """Adapts a plain callable (sync or async) to the executor contract."""

    def __init__(
        self,
        func: Callable[..., Any],
        config_model: type[BaseModel] | None = None,
    ):
        self.func = func
        self.config_model = config_model

    async def execute(
        self,
        input: dict[str, Any],
        config: Any,
        secrets: dict[str, str],
        ctx: ExecutionContext,
    ) -> Any:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(input, config, secrets, ctx)
        result = self.func(input, config, secrets, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionExecutor({getattr(self.func, '__name__', self.func)!r})"
