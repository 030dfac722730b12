# vision.py
"""Thin async client for a vision-capable chat-completion endpoint.

Requests are sent at temperature 0, except for gpt-5 models: those reject
the parameter and always sample at their default, so their answers can vary
between identical requests. A warning is logged when such a model is used.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from errors import UpstreamError
from prompts import (
    RECOGNITION_SYSTEM_PROMPT,
    RECOGNITION_USER_PROMPT,
    build_character_prompt,
    build_character_user_prompt,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_TIMEOUT_SECONDS = 60.0
RECOGNITION_MAX_TOKENS = 3500
CHARACTERS_MAX_TOKENS = 4000

UPSTREAM_SUGGESTION = "Check OPENAI_API_KEY and that the model supports vision (e.g. gpt-4o-mini)."


def _upstream_message(response: httpx.Response) -> str:
    """Return the provider's own error message when the body carries one."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    return response.text or f"HTTP {response.status_code}"


def _message_text(payload: Dict[str, Any]) -> str:
    """Return the first choice's text; a body without one is an UpstreamError."""
    choices = payload.get("choices")
    choice = choices[0] if isinstance(choices, list) and choices else None
    message = choice.get("message") if isinstance(choice, dict) else None
    if not isinstance(message, dict):
        raise UpstreamError(
            message="Unexpected response body from model provider: no message in choices",
            suggestion=UPSTREAM_SUGGESTION,
        )
    content = message.get("content")
    if isinstance(content, list):
        return "".join(str(part.get("text") or "") for part in content if isinstance(part, dict))
    if isinstance(content, str):
        return content
    return ""


class VisionClient:
    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        if not self.supports_temperature:
            logger.warning("Model %s does not accept temperature; requests run at its default sampling", model)

    @property
    def supports_temperature(self) -> bool:
        return not str(self.model).startswith("gpt-5")

    def _build_body(self, system_prompt: str, user_text: str, image_url: str, max_tokens: int) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": user_text},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                },
            ],
        }
        # gpt-5 variants reject 'temperature' and the legacy 'max_tokens' name
        if not self.supports_temperature:
            body["max_completion_tokens"] = max_tokens
        else:
            body["temperature"] = 0
            body["max_tokens"] = max_tokens
        return body

    async def complete(self, system_prompt: str, user_text: str, image_url: str, max_tokens: int) -> str:
        """Send one image plus instructions and return the model's text.

        Any transport failure, timeout or non-2xx status becomes an
        UpstreamError carrying the provider's message. Nothing is retried.
        """
        body = self._build_body(system_prompt, user_text, image_url, max_tokens)
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self._transport,
            ) as client:
                response = await client.post(f"{self.base_url}/chat/completions", headers=headers, json=body)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            message = _upstream_message(exc.response)
            logger.error("Vision model returned HTTP %s: %s", exc.response.status_code, message)
            raise UpstreamError(message=message, suggestion=UPSTREAM_SUGGESTION) from exc
        except httpx.TimeoutException as exc:
            logger.error("Vision model timed out after %.0fs", self.timeout_seconds)
            raise UpstreamError(
                message=f"Request timed out after {self.timeout_seconds:.0f}s",
                suggestion=UPSTREAM_SUGGESTION,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Vision model request failed: %s", exc)
            raise UpstreamError(message=str(exc), suggestion=UPSTREAM_SUGGESTION) from exc

        if not isinstance(payload, dict):
            raise UpstreamError(message="Unexpected response body from model provider", suggestion=UPSTREAM_SUGGESTION)
        usage = payload.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        logger.info(
            "Vision model %s answered (id=%s, total_tokens=%s)",
            payload.get("model", self.model),
            payload.get("id", ""),
            usage.get("total_tokens", "?"),
        )
        return _message_text(payload)

    async def recognize(self, image_data_url: str, max_tokens: int = RECOGNITION_MAX_TOKENS) -> str:
        return await self.complete(RECOGNITION_SYSTEM_PROMPT, RECOGNITION_USER_PROMPT, image_data_url, max_tokens)

    async def analyze_characters(
        self,
        image_url: str,
        title: str,
        author: str,
        max_tokens: int = CHARACTERS_MAX_TOKENS,
    ) -> str:
        return await self.complete(
            build_character_prompt(title, author),
            build_character_user_prompt(title, author),
            image_url,
            max_tokens,
        )
