from typing import Any, Dict, List, Optional

import httpx

from .retry import retry_policy


class TavilyClient:
    def __init__(
        self,
        api_key: Optional[str],
        max_retries: int = 2,
        retry_initial_delay: float = 1.0,
    ):
        self.api_key = api_key
        self.max_retries = max_retries
        self.retry_initial_delay = retry_initial_delay
        # Concurrent gatherers share one pool instead of opening a TCP connection per request.
        self.client = httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: int = 5,
        topic: Optional[str] = None,
        time_range: Optional[str] = None,
        include_domains: Optional[List[str]] = None,
        exclude_domains: Optional[List[str]] = None,
        include_answer: bool = True,
        include_raw_content: bool = False,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        allowed_topics = {"general", "news", "finance"}
        if topic:
            cleaned = str(topic).strip().lower()
            topic = cleaned if cleaned in allowed_topics else None
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": search_depth,
            "max_results": max_results,
            "include_answer": include_answer,
            "include_raw_content": include_raw_content,
        }
        if topic:
            payload["topic"] = topic
        if time_range:
            payload["time_range"] = time_range
        if include_domains:
            payload["include_domains"] = list(include_domains)
        if exclude_domains:
            payload["exclude_domains"] = list(exclude_domains)
        return await self._post("https://api.tavily.com/search", payload, timeout=timeout)

    async def extract(
        self,
        urls: List[str],
        extract_depth: str = "basic",
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        payload = {"urls": urls, "extract_depth": extract_depth}
        return await self._post("https://api.tavily.com/extract", payload, timeout=timeout)

    async def _post(self, url: str, payload: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        """Shared POST helper; transient failures are retried, the rest become error dicts."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            # Tavily's dev keys expect the key in the JSON payload; include it there and keep the header for compatibility.
            payload = {**payload, "api_key": self.api_key}
            headers["X-API-Key"] = self.api_key
        request_timeout = timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT
        try:
            async for attempt in retry_policy(self.max_retries, self.retry_initial_delay):
                with attempt:
                    resp = await self.client.post(
                        url,
                        json=payload,
                        headers=headers,
                        timeout=request_timeout,
                    )
                    resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.TimeoutException as e:
            return {"error": "timeout", "detail": str(e) or "request timed out"}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}
        try:
            data = resp.json()
        except ValueError:
            return {"error": "invalid_response", "detail": resp.text[:500]}
        if isinstance(data, list):
            return {"results": data}
        if not isinstance(data, dict):
            return {"error": "invalid_response", "detail": str(data)[:500]}
        return data

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()


def format_tavily_error(resp: Any) -> str:
    if not isinstance(resp, dict):
        return "tavily_error"
    message = str(resp.get("error") or "tavily_error")
    detail = resp.get("detail")
    if isinstance(detail, dict):
        nested = detail.get("detail")
        detail_msg = (
            (nested.get("error") if isinstance(nested, dict) else nested)
            or detail.get("error")
            or detail.get("message")
        )
        detail = detail_msg or str(detail)
    if detail:
        message = f"{message}: {detail}"
    status = resp.get("status_code")
    if status:
        message = f"{status} {message}"
    return message
