"""OpenAI-backed agent selection oracle used when resolver_mode=llm."""

from __future__ import annotations

import json
import logging
import time
from typing import Any
from urllib import error, request

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class _AgentChoice(BaseModel):
    model_config = ConfigDict(extra="forbid")

    agent: str
    reason: str = ""


class LlmIntentOracle:
    """Ask a chat model which registered agent should own a request."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str,
        timeout_s: float,
        max_retries: int,
        backoff_s: float,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s

    def propose(self, text: str, agents: list[dict[str, Any]]) -> str:
        if not self.api_key:
            raise RuntimeError("OPENAI_API_KEY is missing")
        response_json = self._request_with_retry(text, agents)
        choice = _AgentChoice.model_validate(json.loads(_extract_content(response_json)))
        return choice.agent.strip()

    def _request_with_retry(self, text: str, agents: list[dict[str, Any]]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request_once(text, agents)
            except (TimeoutError, ValueError, error.URLError, error.HTTPError) as exc:
                last_error = exc
                logger.warning(
                    "OpenAI request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        if last_error is None:
            raise RuntimeError("LLM request failed with unknown error")
        raise last_error

    def _request_once(self, text: str, agents: list[dict[str, Any]]) -> dict[str, Any]:
        catalog = "\n".join(f"- {item['name']}: {item['description']}" for item in agents)
        payload = {
            "model": self.model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {
                    "role": "system",
                    "content": (
                        "You route infrastructure change requests to exactly one specialist agent. "
                        "Return JSON only with keys 'agent' and 'reason'. "
                        "The agent must be one of:\n" + catalog
                    ),
                },
                {"role": "user", "content": text},
            ],
        }
        req = request.Request(
            url=f"{self.base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        with request.urlopen(req, timeout=self.timeout_s) as response:
            body = response.read().decode("utf-8")
        return json.loads(body)


def _extract_content(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices", [])
    if not choices:
        raise ValueError("LLM response did not include choices")
    message = choices[0].get("message", {})
    content = message.get("content")
    if not isinstance(content, str) or not content.strip():
        raise ValueError("LLM response content is empty")
    return content
