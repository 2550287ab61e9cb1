import base64
import logging
import time
from collections.abc import Mapping
from typing import Any, Literal

import httpx
from pydantic import Field

from config.settings import EngineSettings
from core.concurrency import run_cancellable, with_timeout
from core.types_registry import (
    ExecutionContext,
    ExecutionResult,
    NodeConfigError,
    NodeExecutionError,
    NodeTimeoutError,
    error_message,
)
from nodes.base.definition import create_node_definition
from nodes.base.executable import (
    NodeExecutable,
    create_node_executable,
    failure_result,
    get_input_value,
    result_metadata,
    retry_async,
    success_result,
)
from nodes.base.metadata import create_node_metadata
from nodes.base.parameters import create_node_parameters
from nodes.base.ports import create_node_ports

logger = logging.getLogger(__name__)

HttpMethod = Literal["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

_BODYLESS_METHODS = {"GET", "HEAD", "OPTIONS"}

http_request_parameters = create_node_parameters(
    {
        "method": (HttpMethod, Field(default="GET", description="HTTP method to use")),
        "url": (str, Field(default="", description="Request URL")),
        "headers": (dict[str, str], Field(default_factory=dict, description="Request headers")),
        "query": (dict[str, Any], Field(default_factory=dict, description="Query string parameters")),
        "body": (str | dict | list | None, Field(default=None, description="Request body")),
        "response_type": (
            Literal["auto", "json", "text", "binary"],
            Field(default="auto", description="How to decode the response body"),
        ),
        "follow_redirects": (bool, Field(default=True, description="Follow HTTP redirects")),
        "validate_ssl": (bool, Field(default=True, description="Verify TLS certificates")),
        "timeout": (int, Field(default=30000, ge=1000, le=300000, description="Request timeout (ms)")),
        "retries": (int, Field(default=0, ge=0, le=5, description="Retry attempts on failure")),
        "retry_delay": (int, Field(default=1000, ge=0, le=10000, description="Delay between retries (ms)")),
    },
    {
        "method": "GET",
        "url": "",
        "headers": {},
        "query": {},
        "response_type": "auto",
        "follow_redirects": True,
        "validate_ssl": True,
        "timeout": 30000,
        "retries": 0,
        "retry_delay": 1000,
    },
    {
        "method": {
            "control_type": "select",
            "label": "HTTP Method",
            "options": [{"value": m, "label": m} for m in ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS")],
        },
        "url": {"control_type": "text", "label": "Request URL", "placeholder": "https://api.example.com/endpoint"},
        "headers": {"control_type": "textarea", "label": "Headers", "rows": 3},
        "body": {"control_type": "textarea", "label": "Request Body", "rows": 5},
        "follow_redirects": {"control_type": "boolean", "label": "Follow Redirects"},
        "timeout": {"control_type": "number", "label": "Timeout (ms)", "min": 1000, "max": 300000},
        "retries": {"control_type": "number", "label": "Retries", "min": 0, "max": 5},
    },
    model_name="HttpRequestParams",
)

http_request_definition = create_node_definition(
    id="http-request",
    type="http-request",
    metadata=create_node_metadata(
        {
            "id": "http-request",
            "name": "HTTP Request",
            "description": "Call APIs and webhooks",
            "category": "io",
            "icon": "globe-2",
            "keywords": ["http", "request", "api", "rest", "get", "post", "fetch", "web", "network"],
            "tags": ["http", "api", "network", "rest", "web"],
        }
    ),
    parameters=http_request_parameters,
    ports=create_node_ports(
        {
            "input": [
                {"id": "url", "name": "URL", "data_type": "string"},
                {"id": "method", "name": "Method", "data_type": "string"},
                {"id": "headers", "name": "Headers", "data_type": "object"},
                {"id": "body", "name": "Body", "data_type": "string"},
            ],
            "output": [
                {"id": "result", "name": "Result", "data_type": "any"},
                {"id": "data", "name": "Data", "data_type": "any"},
                {"id": "status", "name": "Status", "data_type": "number"},
                {"id": "headers", "name": "Headers", "data_type": "object"},
            ],
            "error": [{"id": "error", "name": "Error", "data_type": "string"}],
        }
    ),
)


class _RetryableStatus(NodeExecutionError):
    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code} {response.reason_phrase}")
        self.response = response


def decode_body(response: httpx.Response, response_type: str) -> Any:
    if response_type == "binary":
        return base64.b64encode(response.content).decode("ascii")
    if response_type == "text":
        return response.text
    if response_type == "json":
        return response.json()
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


def create_http_request_executable(
    settings: EngineSettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> NodeExecutable:
    user_agent = settings.http_user_agent if settings else "node-engine/1.0"

    async def execute(context: ExecutionContext, params: dict[str, Any]) -> ExecutionResult:
        started = time.monotonic()
        url = get_input_value(context, "url", params)
        if not url:
            return failure_result(NodeConfigError("URL is required"))
        try:
            url = httpx.URL(str(url))
        except httpx.InvalidURL as e:
            return failure_result(NodeConfigError(f"Invalid URL '{url}': {e}"))
        method = str(get_input_value(context, "method", params, "GET")).upper()
        extra_headers = get_input_value(context, "headers", params) or {}
        if not isinstance(extra_headers, Mapping):
            return failure_result(
                NodeConfigError(f"Headers must be a mapping, got {type(extra_headers).__name__}")
            )
        headers = {"User-Agent": user_agent, **extra_headers}
        body = get_input_value(context, "body", params)
        query = get_input_value(context, "query", params) or None
        timeout_ms = params["timeout"]

        request_kwargs: dict[str, Any] = {"headers": headers, "params": query}
        if body is not None and method not in _BODYLESS_METHODS:
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = body

        context.logger.info(f"{method} {url}")
        async with httpx.AsyncClient(
            timeout=timeout_ms / 1000,
            follow_redirects=params["follow_redirects"],
            verify=params["validate_ssl"],
            transport=transport,
        ) as client:

            async def attempt(n: int) -> httpx.Response:
                try:
                    response = await run_cancellable(
                        with_timeout(client.request(method, url, **request_kwargs), timeout_ms),
                        context.signal,
                    )
                except httpx.TimeoutException as e:
                    raise NodeTimeoutError(f"Request timed out after {timeout_ms}ms", timeout_ms) from e
                if response.status_code >= 500:
                    raise _RetryableStatus(response)
                return response

            try:
                response = await retry_async(
                    attempt,
                    params["retries"],
                    params["retry_delay"],
                    signal=context.signal,
                    label=f"{method} {url}",
                )
            except _RetryableStatus as e:
                response = e.response
            except (httpx.HTTPError, httpx.InvalidURL, NodeExecutionError) as e:
                context.logger.error(f"{method} {url} failed: {error_message(e)}")
                return failure_result(
                    e, **result_metadata(context, "http-request", timed_out=isinstance(e, NodeTimeoutError))
                )

        try:
            data = decode_body(response, params["response_type"])
        except ValueError as e:
            return failure_result(f"Failed to decode response body: {e}")

        outputs = {
            "result": data,
            "data": data,
            "status": response.status_code,
            "status_text": response.reason_phrase,
            "headers": dict(response.headers),
            "url": str(response.url),
            "duration": int((time.monotonic() - started) * 1000),
            "success": response.is_success,
        }
        metadata = result_metadata(context, "http-request")
        if not response.is_success:
            return failure_result(
                f"HTTP {response.status_code} {response.reason_phrase}", outputs=outputs, **metadata
            )
        return success_result(outputs, **metadata)

    return create_node_executable(execute, validate_config=http_request_parameters.parse)
