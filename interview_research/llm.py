import json
import re
from typing import Any, Dict, List, Optional

import httpx

from .errors import ConfigError, MalformedResponseError, TransientNetworkError
from .retry import RETRYABLE_STATUS_CODES, retry_policy


ALLOWED_ROLES = {"system", "user", "assistant"}

_FENCE_PATTERN = re.compile(r"^\s*```(?:json|JSON)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Remove a ```json ... ``` (or bare ```) wrapper around completion output."""
    cleaned = (text or "").strip()
    match = _FENCE_PATTERN.match(cleaned)
    if match:
        return match.group(1).strip()
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
        if cleaned[:4].lower() == "json":
            cleaned = cleaned[4:]
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


def parse_json_content(text: str) -> Optional[Any]:
    """Parse completion text as JSON, retrying once after fence removal."""
    if not text or not text.strip():
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass
    try:
        return json.loads(strip_code_fences(text))
    except ValueError:
        return None


def message_text(response: Any) -> str:
    """Return the first choice's message content, or an empty string."""
    if not isinstance(response, dict):
        return ""
    choices = response.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message") or {}
    content = message.get("content")
    if isinstance(content, str):
        return content
    if content is None:
        return ""
    return json.dumps(content, ensure_ascii=True)


class CompletionClient:
    """OpenAI-compatible chat completion client."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        max_output_tokens: Optional[int] = None,
        max_retries: int = 2,
        retry_initial_delay: float = 1.0,
        timeout: float = 60.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.max_output_tokens = max_output_tokens
        self.max_retries = max_retries
        self.retry_initial_delay = retry_initial_delay
        self.client = httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if content is None:
                continue
            if not isinstance(content, str):
                content = json.dumps(content, ensure_ascii=True)
            if not content.strip():
                continue
            sanitized.append({"role": role, "content": content})
        return sanitized

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except ValueError:
            pass
        return response.text

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        max_tokens: int = 512,
        response_format: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Run one completion; transient failures are retried before raising.

        Raises ConfigError without a key, TransientNetworkError when retries are
        exhausted, and httpx.HTTPStatusError for non-retryable statuses.
        """
        if not self.enabled:
            raise ConfigError("Completion API key is not configured", {"base_url": self.base_url})
        final_max_tokens = max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_tokens, self.max_output_tokens)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": self._sanitize_messages(messages),
            "max_tokens": final_max_tokens,
            "stream": False,
        }
        if not payload["messages"]:
            raise ValueError("messages must include at least one non-empty entry")
        if not str(model or "").strip():
            raise ValueError("model is required")
        if temperature is not None:
            payload["temperature"] = temperature
        if response_format:
            payload["response_format"] = response_format
        url = f"{self.base_url}/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        request_timeout = timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT
        try:
            async for attempt in retry_policy(self.max_retries, self.retry_initial_delay):
                with attempt:
                    resp = await self.client.post(url, json=payload, headers=headers, timeout=request_timeout)
                    resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status in RETRYABLE_STATUS_CODES:
                raise TransientNetworkError(
                    "Completion service unavailable",
                    service="completion",
                    status_code=status,
                    detail=self._extract_error_detail(exc.response)[:500],
                ) from exc
            raise
        except httpx.RequestError as exc:
            raise TransientNetworkError(
                f"Completion request failed: {exc.__class__.__name__}",
                service="completion",
                detail=str(exc),
            ) from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise MalformedResponseError("Completion response was not JSON", {"body": resp.text[:500]}) from exc
        if isinstance(data, dict):
            data["_model_used"] = data.get("model") or model
        return data

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
