"""
REST Action Executor — performs the outbound HTTP call of an action node.

Url, headers, query params and body are rendered against the context's
variables before the call. Transient failures (network errors, timeouts,
408/429/5xx) are retried with exponential backoff; once the retry budget is
spent, or on a permanent 4xx, ExternalCallError is raised and the engine
treats that as the node's final outcome.
"""
from __future__ import annotations

import json
import time
import structlog
from typing import Any, Optional

import httpx
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential,
)

from channels.base import is_transient_status
from core.errors import ExternalCallError
from models.schemas import ActionNodeData
from utils.conditions import get_nested_value
from utils.templating import render_value

logger = structlog.get_logger()


class ActionResult(BaseModel):
    data: Any = None
    status_code: int
    duration_ms: float = 0.0


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, ExternalCallError) and error.transient


def _render_body(body: Any, variables: dict[str, Any]) -> Any:
    rendered = render_value(body, variables)
    if isinstance(rendered, str):
        # Builder bodies are JSON text; send them as JSON when they parse
        try:
            return json.loads(rendered)
        except json.JSONDecodeError:
            return rendered
    return rendered


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            if body.get(key):
                value = body[key]
                return value if isinstance(value, str) else json.dumps(value, default=str)
    return response.reason_phrase


class RestActionExecutor:
    """Executes action-node REST calls with bounded timeouts and retries."""

    def __init__(
        self, default_timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
        retry_wait: Any = None,
    ):
        self.default_timeout = default_timeout
        self.client = client
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, max=10)

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(follow_redirects=True)
        return self.client

    async def _request(self, method: str, url: str, timeout: float, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, url, timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise ExternalCallError(f"{method} {url} timed out after {timeout}s", transient=True) from e
        except httpx.HTTPError as e:
            raise ExternalCallError(f"{method} {url} failed: {e}", transient=True) from e
        if response.status_code >= 400:
            raise ExternalCallError(
                _error_detail(response),
                status_code=response.status_code,
                transient=is_transient_status(response.status_code),
                response=response.text[:2000],
            )
        return response

    async def call_external(self, config: ActionNodeData, variables: dict[str, Any]) -> ActionResult:
        """Run the configured call. Raises ExternalCallError on final failure."""
        url = render_value(config.url, variables)
        if not url or not isinstance(url, str):
            raise ExternalCallError("action node has no url")
        method = (config.method or "GET").upper()
        timeout = config.effective_timeout(self.default_timeout)

        kwargs: dict[str, Any] = {}
        if config.headers:
            kwargs["headers"] = {k: str(v) for k, v in render_value(config.headers, variables).items()}
        if config.query_params:
            kwargs["params"] = render_value(config.query_params, variables)
        if config.body not in (None, "") and method not in ("GET", "HEAD"):
            body = _render_body(config.body, variables)
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)

        start = time.monotonic()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=self.retry_wait,
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    response = await self._request(method, url, timeout, **kwargs)
        except ExternalCallError as e:
            logger.warning("external_call_failed", method=method, url=url,
                           status_code=e.status_code, transient=e.transient, error=str(e))
            raise
        duration_ms = (time.monotonic() - start) * 1000

        try:
            data: Any = response.json()
        except ValueError:
            data = response.text
        if config.response_path:
            data = get_nested_value(data, config.response_path)

        logger.info("external_call_succeeded", method=method, url=url,
                    status_code=response.status_code, duration_ms=round(duration_ms, 1))
        return ActionResult(data=data, status_code=response.status_code, duration_ms=duration_ms)

    async def close(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()
