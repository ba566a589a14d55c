"""
HTTP Request executor.

Sends a request with httpx and returns ``{"status_code", "headers", "body"}``.
``{{name}}`` placeholders in the url, headers and params are filled from the
node's resolved secrets, e.g. ``{"X-RapidAPI-Key": "{{apiKey}}"}`` with
``secret_refs={"apiKey": "secret-1"}``.

Failures:
- transport errors, 429 and 5xx responses are retryable ExecutionErrors
- other 4xx responses are not retried
- placeholders naming an unknown secret are a ConfigurationError
"""

import logging
import re
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field

from scraperflow.errors import ConfigurationError, ExecutionError
from scraperflow.executors.base import ExecutionContext, NodeExecutor
from scraperflow.executors.processing import primary_input

logger = logging.getLogger(__name__)

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")


def fill_templates(text: str, secrets: dict[str, str]) -> str:
    """Replace ``{{name}}`` with ``secrets[name]``."""

    def replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in secrets:
            raise ConfigurationError(f"Template references unknown secret '{name}'")
        return secrets[name]

    return TEMPLATE_PATTERN.sub(replace, text)


class HttpRequestConfig(BaseModel):
    url: str
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"] = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    send_input: bool = Field(default=False, description="Send the input as the JSON body")
    timeout_seconds: float = Field(default=30.0, gt=0)
    parse_json: bool = True


class HttpRequestExecutor(NodeExecutor):
    """
    Performs one HTTP request per attempt.

    A shared ``httpx.AsyncClient`` (or a custom transport, as tests do with
    ``httpx.MockTransport``) can be injected; otherwise a client is created
    per attempt.
    """

    config_model = HttpRequestConfig

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = client
        self._transport = transport

    def _timeout(self, config: HttpRequestConfig, ctx: ExecutionContext) -> float:
        remaining = ctx.remaining()
        if remaining is None:
            return config.timeout_seconds
        return max(min(config.timeout_seconds, remaining), 0.001)

    async def execute(
        self,
        input: dict[str, Any],
        config: HttpRequestConfig,
        secrets: dict[str, str],
        ctx: ExecutionContext,
    ) -> dict[str, Any]:
        url = fill_templates(config.url, secrets)
        headers = {k: fill_templates(v, secrets) for k, v in config.headers.items()}
        params = {k: fill_templates(v, secrets) for k, v in config.params.items()}
        body = config.body
        if body is None and config.send_input:
            body = primary_input(input)

        timeout = self._timeout(config, ctx)
        logger.info(f"{config.method} {config.url} (attempt {ctx.attempt})")

        try:
            if self._client is not None:
                response = await ctx.guard(
                    self._client.request(
                        config.method, url, headers=headers, params=params, json=body,
                        timeout=timeout,
                    )
                )
            else:
                async with httpx.AsyncClient(transport=self._transport) as client:
                    response = await ctx.guard(
                        client.request(
                            config.method, url, headers=headers, params=params, json=body,
                            timeout=timeout,
                        )
                    )
        except httpx.TimeoutException as e:
            raise ExecutionError(f"Request to {config.url} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ExecutionError(f"Request to {config.url} failed: {e}") from e

        if response.status_code >= 400:
            retryable = response.status_code == 429 or response.status_code >= 500
            raise ExecutionError(
                f"{config.method} {config.url} returned HTTP {response.status_code}",
                retryable=retryable,
            )

        payload: Any = response.text
        if config.parse_json and "json" in response.headers.get("content-type", ""):
            try:
                payload = response.json()
            except ValueError:
                payload = response.text

        return {
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "body": payload,
        }
