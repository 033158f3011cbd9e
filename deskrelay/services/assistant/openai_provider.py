import json
from typing import List, Optional

import httpx

from deskrelay.logging_config import get_logger
from deskrelay.services.assistant.base import AssistantProvider, Run, ThreadMessage, ToolCall
from deskrelay.services.errors import (
    FatalConfigError,
    ProviderError,
    RateLimitedError,
    RunConflictError,
    TransientProviderError,
)

logger = get_logger("assistant.openai")

_RUN_CONFLICT_MARKERS = ("while a run", "already has an active run", "is active")


def _text_content(message: dict) -> str:
    parts = []
    for part in message.get("content") or []:
        if part.get("type") == "text":
            parts.append((part.get("text") or {}).get("value") or "")
    return "".join(parts)


def _parse_run(data: dict) -> Run:
    tool_calls = []
    required = data.get("required_action") or {}
    for call in (required.get("submit_tool_outputs") or {}).get("tool_calls") or []:
        function = call.get("function") or {}
        tool_calls.append(
            ToolCall(
                id=call.get("id", ""),
                name=function.get("name", ""),
                arguments=function.get("arguments") or "{}",
            )
        )
    last_error = data.get("last_error")
    return Run(
        id=data["id"],
        thread_id=data.get("thread_id", ""),
        status=data.get("status", "unknown"),
        tool_calls=tool_calls,
        last_error=(last_error or {}).get("message") if last_error else None,
    )


def _parse_message(data: dict) -> ThreadMessage:
    return ThreadMessage(
        id=data["id"],
        role=data.get("role", ""),
        content=_text_content(data),
        run_id=data.get("run_id"),
        created_at=data.get("created_at"),
    )


class OpenAIAssistantProvider(AssistantProvider):
    """OpenAI Assistants v2 over httpx."""

    def __init__(
        self,
        api_key: Optional[str],
        assistant_id: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
        analysis_model: str = "gpt-4o",
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise FatalConfigError("OPENAI_API_KEY is not configured")
        if not assistant_id:
            raise FatalConfigError("OPENAI_ASSISTANT_ID is not configured")
        self.assistant_id = assistant_id
        self.analysis_model = analysis_model
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "OpenAI-Beta": "assistants=v2",
            },
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"OpenAI request timed out: {method} {path}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"OpenAI transport error: {e}") from e

        logger.debug(f"OpenAI {method} {path} -> {response.status_code}")

        if response.status_code >= 400:
            text = response.text
            if response.status_code == 429:
                raise RateLimitedError(f"OpenAI rate limited: {text}")
            if response.status_code >= 500:
                raise TransientProviderError(f"OpenAI server error: {response.status_code}")
            if response.status_code == 401:
                raise FatalConfigError("OpenAI rejected the API key")
            if response.status_code == 400 and any(marker in text for marker in _RUN_CONFLICT_MARKERS):
                raise RunConflictError(f"Run still active on thread: {text}")
            logger.error(f"OpenAI error: {response.status_code} - {text}")
            raise ProviderError(f"OpenAI API error: {response.status_code} - {text}")

        if not response.content:
            return {}
        return response.json()

    async def create_thread(self, metadata: Optional[dict] = None) -> str:
        data = await self._request("POST", "/threads", json={"metadata": metadata or {}})
        logger.info(f"Created thread {data['id']}")
        return data["id"]

    async def append_message(
        self, thread_id: str, content: str, role: str = "user", metadata: Optional[dict] = None
    ) -> ThreadMessage:
        data = await self._request(
            "POST",
            f"/threads/{thread_id}/messages",
            json={"role": role, "content": content, "metadata": metadata or {}},
        )
        return _parse_message(data)

    async def start_run(self, thread_id: str, instructions: Optional[str] = None) -> Run:
        payload = {"assistant_id": self.assistant_id}
        if instructions:
            payload["additional_instructions"] = instructions
        data = await self._request("POST", f"/threads/{thread_id}/runs", json=payload)
        return _parse_run(data)

    async def get_run(self, thread_id: str, run_id: str) -> Run:
        data = await self._request("GET", f"/threads/{thread_id}/runs/{run_id}")
        return _parse_run(data)

    async def list_runs(self, thread_id: str, limit: int = 10) -> List[Run]:
        data = await self._request("GET", f"/threads/{thread_id}/runs", params={"limit": limit})
        return [_parse_run(item) for item in data.get("data", [])]

    async def cancel_run(self, thread_id: str, run_id: str) -> Run:
        data = await self._request("POST", f"/threads/{thread_id}/runs/{run_id}/cancel")
        return _parse_run(data)

    async def submit_tool_outputs(self, thread_id: str, run_id: str, outputs: List[dict]) -> Run:
        data = await self._request(
            "POST",
            f"/threads/{thread_id}/runs/{run_id}/submit_tool_outputs",
            json={"tool_outputs": outputs},
        )
        return _parse_run(data)

    async def list_messages(
        self,
        thread_id: str,
        limit: int = 100,
        order: str = "desc",
        run_id: Optional[str] = None,
    ) -> List[ThreadMessage]:
        params = {"limit": limit, "order": order}
        if run_id:
            params["run_id"] = run_id
        data = await self._request("GET", f"/threads/{thread_id}/messages", params=params)
        return [_parse_message(item) for item in data.get("data", [])]

    async def delete_message(self, thread_id: str, message_id: str) -> None:
        await self._request("DELETE", f"/threads/{thread_id}/messages/{message_id}")

    async def complete_json(self, system_prompt: str, user_prompt: str) -> dict:
        data = await self._request(
            "POST",
            "/chat/completions",
            json={
                "model": self.analysis_model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "response_format": {"type": "json_object"},
            },
        )
        content = ""
        if data.get("choices"):
            content = (data["choices"][0].get("message") or {}).get("content") or ""
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise ProviderError(f"Completion was not valid JSON: {content[:100]}") from e

    async def close(self) -> None:
        await self._client.aclose()
