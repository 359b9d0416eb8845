"""Agent invocation.

An agent call is an opaque async operation: the engine hands over the node's
input bag and receives an :class:`AgentResponse`. Two invokers ship with the
engine:

- ``HttpAgentInvoker`` posts to the AI-role chat endpoint of the hosting
  backend (``POST {base_url}/ai-roles/{agent_id}/chat``).
- ``EchoAgentInvoker`` answers locally with the query it was given, for dry
  runs and tests.

Any object with a matching ``invoke`` coroutine can be passed instead.
"""

import json
import logging
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import httpx
from pydantic import BaseModel

from canvasflow.core.utils import to_text

logger = logging.getLogger(__name__)

DEFAULT_AGENT_TIMEOUT = 180.0


class AgentInvocationError(Exception):
    """Transport-level failure talking to an agent backend."""

    pass


class AgentResponse(BaseModel):
    """Outcome of one agent call."""

    success: bool
    content: str | None = None
    data: Any = None
    metadata: dict[str, Any] | None = None
    error: str | None = None


@runtime_checkable
class AgentInvoker(Protocol):
    async def invoke(self, agent_id: str, payload: dict[str, Any]) -> AgentResponse: ...


def build_query(payload: Any) -> str:
    """Text sent as the agent query: a ``query`` string in the payload if
    present, otherwise the payload as JSON."""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("query"), str):
        return payload["query"]
    return json.dumps(payload, ensure_ascii=False, default=str)


class HttpAgentInvoker:
    """Invoke agents through the backend's AI-role chat API.

    Request body: ``{"query": str, "inputs": dict}``.
    Response envelope: ``{"success": bool, "data": {...}, "message"?, "error"?}``
    where ``data.answer`` (or ``data.result`` / ``data.content``) is the text.

    Usage:
        async with HttpAgentInvoker("http://localhost:3001/api") as invoker:
            response = await invoker.invoke("writer", {"query": "Hello"})
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_AGENT_TIMEOUT,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = dict(headers or {})
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "HttpAgentInvoker":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=self.headers)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def chat_url(self, agent_id: str) -> str:
        return f"{self.base_url}/ai-roles/{quote(agent_id, safe='')}/chat"

    async def invoke(self, agent_id: str, payload: dict[str, Any]) -> AgentResponse:
        try:
            body = await self._post(agent_id, payload)
        except AgentInvocationError as e:
            logger.error(f"Agent '{agent_id}' call failed: {e}")
            return AgentResponse(success=False, error=str(e))
        return self.parse_envelope(body)

    async def _post(self, agent_id: str, payload: dict[str, Any]) -> Any:
        client = self._get_client()
        request_body = {"query": build_query(payload), "inputs": payload}
        try:
            response = await client.post(self.chat_url(agent_id), json=request_body)
        except httpx.TimeoutException as e:
            raise AgentInvocationError(f"Request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise AgentInvocationError(f"Request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_error:
            message = None
            if isinstance(body, dict):
                message = body.get("error") or body.get("message")
            raise AgentInvocationError(
                f"HTTP {response.status_code}: {message or response.reason_phrase}"
            )
        if not isinstance(body, dict):
            raise AgentInvocationError("Response is not a JSON object")
        return body

    @staticmethod
    def parse_envelope(body: dict[str, Any]) -> AgentResponse:
        """Convert the backend's ``{success, data, error}`` envelope."""
        data = body.get("data")
        if not body.get("success") or data is None:
            return AgentResponse(
                success=False,
                error=body.get("error") or body.get("message") or "Agent execution failed",
            )
        metadata = None
        if isinstance(data, dict):
            content = data.get("answer") or data.get("result") or data.get("content")
            if isinstance(data.get("metadata"), dict):
                metadata = data["metadata"]
        else:
            content = data
        return AgentResponse(
            success=True,
            content=None if content is None else to_text(content),
            data=data,
            metadata=metadata,
        )


class EchoAgentInvoker:
    """Answer every call with its own query; no network access."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def invoke(self, agent_id: str, payload: dict[str, Any]) -> AgentResponse:
        self.calls.append((agent_id, payload))
        return AgentResponse(
            success=True,
            content=f"{self.prefix}{build_query(payload)}",
            data={"agentId": agent_id, "inputs": payload},
            metadata={"invoker": "echo"},
        )
