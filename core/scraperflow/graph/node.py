"""
Node Protocol - What a workflow node is.

A node is an immutable definition authored on the canvas:
1. Which executor handles it (``type``)
2. Its configuration (validated lazily by the executor)
3. Which secrets it needs, by opaque reference only
4. Its named input and output ports
5. Optional retry and timeout overrides

Nodes never carry raw secret values. Secret references are resolved by the
SecretResolver immediately before each execution attempt.
"""

import random
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

DEFAULT_INPUT_PORT = "input"
DEFAULT_OUTPUT_PORT = "output"


class RetryPolicy(BaseModel):
    """
    Retry behaviour for a single node.

    Delays grow exponentially: ``base * 2 ** (attempt - 1)``, capped at
    ``backoff_max_seconds``, then scaled by a random factor in
    ``[1 - jitter, 1 + jitter]``.
    """

    max_retries: int = Field(default=0, ge=0)
    backoff_base_seconds: float = Field(default=0.5, ge=0)
    backoff_max_seconds: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.1, ge=0, le=1)
    retry_on_missing_secret: bool = False

    model_config = {"frozen": True}

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int, rng: random.Random) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        delay = self.backoff_base_seconds * (2 ** (attempt - 1))
        delay = min(delay, self.backoff_max_seconds)
        if self.jitter and delay > 0:
            delay *= 1 + self.jitter * (rng.random() * 2 - 1)
        return max(delay, 0.0)


class NodeSpec(BaseModel):
    """
    Specification for a node instance in a workflow graph.

    Example:
        NodeSpec(
            id="fetch",
            type="HTTP Request",
            config={"url": "https://api.example.com/items"},
            secret_refs={"apiKey": "secret-1"},
            retry=RetryPolicy(max_retries=2),
        )

    Canvas documents use ``data`` for the config and ``secretRefs`` for the
    secret references; both spellings are accepted.
    """

    id: str = Field(min_length=1)
    type: str = Field(min_length=1, description="Executor type key")
    name: str = Field(default="", description="Canvas label; defaults to the id")
    config: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("config", "data"),
    )
    secret_refs: dict[str, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("secret_refs", "secretRefs"),
        description="Logical credential name -> opaque secret id",
    )
    inputs: list[str] = Field(default_factory=lambda: [DEFAULT_INPUT_PORT])
    outputs: list[str] = Field(default_factory=lambda: [DEFAULT_OUTPUT_PORT])

    retry: RetryPolicy | None = None
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("timeout_seconds", "timeoutSeconds"),
    )

    model_config = {"frozen": True, "extra": "ignore", "populate_by_name": True}

    @field_validator("config", mode="before")
    @classmethod
    def _none_config(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def label(self) -> str:
        return self.name or self.id

    @property
    def is_source(self) -> bool:
        """A source node declares no input ports."""
        return not self.inputs

    def effective_retry(self, default: RetryPolicy) -> RetryPolicy:
        return self.retry if self.retry is not None else default
