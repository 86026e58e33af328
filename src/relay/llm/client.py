"""Text-completion clients for the reasoning backend."""

from __future__ import annotations

import http.client
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal, Protocol
from urllib import request
from urllib.error import HTTPError, URLError

from relay.errors import BackendUnreachable

LOGGER = logging.getLogger(__name__)

MAX_HISTORY_MESSAGES = 10
DEFAULT_OPENAI_URL = "https://api.openai.com/v1/responses"
DEFAULT_OLLAMA_HOST = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "qwen3:1.7b"

PERSONA_PROMPT_PARTS = [
    "You are Relay, a friendly and patient IT assistant that helps non-technical"
    " users solve problems on their own computer.",
    "Speak in plain, simple language and explain why things happen, not just what to do.",
    "Be patient and reassuring; users may be frustrated.",
]

RULES_PROMPT_PARTS = [
    "IMPORTANT RULES:",
    "1. Never suggest or run dangerous actions like deleting system files.",
    "2. Always explain what an action will do before suggesting it.",
    "3. If unsure, ask for more information.",
    "4. Destructive actions need the user's permission; the app will ask them for you.",
    "5. For utility requests, perform the action directly without running diagnostics first.",
]

DIAGNOSTIC_PROTOCOL_PARTS = [
    "DIAGNOSTIC PROTOCOL:",
    "For vague issues (a slow computer, internet trouble, crashes):",
    "1. Acknowledge the problem and list two or three likely causes.",
    "2. Show a checklist of the diagnostics you will run using Markdown checkboxes,"
    " one per line, for example '- [ ] Check CPU and memory usage'.",
    "3. Append the first relevant action tag to your response.",
    "4. When you receive a [SYSTEM_RESULT], mark the finished item as '- [x]',"
    " explain the finding in plain English and, if the cause is still unknown,"
    " append the next action tag.",
    "5. When you have found the cause, propose a fix and stop emitting action tags.",
    "Only the first action tag in a response is run.",
    "",
    "SYSTEM RESULTS:",
    'You will receive data as [SYSTEM_RESULT: queryType="..." output="..."] or'
    ' [SYSTEM_RESULT: queryType="..." error="..."].',
    "Do not repeat raw output; interpret it. If the result is empty or an error,"
    " explain what might be wrong and adapt.",
    "If you are done and waiting for the user, do not include an action tag.",
]

Role = Literal["user", "assistant"]


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: Role
    content: str


class ReasoningBackend(Protocol):
    """Black-box text completion service driving the orchestration loop."""

    model: str

    def complete(self, system_prompt: str, history: Sequence[ChatMessage]) -> str: ...


def build_system_prompt(manifest: str, *, platform: str | None = None) -> str:
    """Assemble operating instructions around the capability manifest."""
    sections = [
        " ".join(PERSONA_PROMPT_PARTS),
        manifest.strip(),
        "\n".join(RULES_PROMPT_PARTS),
        "\n".join(DIAGNOSTIC_PROTOCOL_PARTS),
    ]
    if platform:
        sections.append(f"The user's computer runs {platform}.")
    return "\n\n".join(sections)


def bounded_history(
    history: Sequence[ChatMessage], limit: int = MAX_HISTORY_MESSAGES
) -> list[ChatMessage]:
    if limit <= 0:
        return []
    return list(history[-limit:])


class LLMClient:
    """Small HTTP client for the OpenAI Responses API."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        api_url: str = DEFAULT_OPENAI_URL,
        timeout: float = 60.0,
        reasoning_effort: str | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self.timeout = timeout
        self.reasoning_effort = reasoning_effort

    def complete(self, system_prompt: str, history: Sequence[ChatMessage]) -> str:
        payload = self._build_payload(system_prompt, history)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        raw = _post_json(
            self.api_url,
            payload,
            headers=headers,
            timeout=self.timeout,
            model=self.model,
        )
        return self._extract_output_text(raw)

    def _build_payload(
        self, system_prompt: str, history: Sequence[ChatMessage]
    ) -> dict[str, object]:
        input_messages = [{"role": "system", "content": system_prompt}]
        input_messages.extend(
            {"role": message.role, "content": message.content}
            for message in bounded_history(history)
        )
        payload: dict[str, object] = {"model": self.model, "input": input_messages}
        if self.reasoning_effort:
            payload["reasoning"] = {"effort": self.reasoning_effort}
        return payload

    @staticmethod
    def _extract_output_text(payload: dict[str, object]) -> str:
        direct = payload.get("output_text")
        if isinstance(direct, str):
            return direct

        output_items = payload.get("output")
        if not isinstance(output_items, list):
            raise BackendUnreachable("Model response parsing error: no output items")

        parts: list[str] = []
        for item in output_items:
            if not isinstance(item, dict):
                continue
            content_items = item.get("content")
            if not isinstance(content_items, list):
                continue
            for content in content_items:
                if not isinstance(content, dict):
                    continue
                text = content.get("text")
                if content.get("type") == "output_text" and isinstance(text, str):
                    parts.append(text)
        return "".join(parts)


class OllamaClient:
    """Client for a local Ollama server's ``/api/generate`` endpoint."""

    def __init__(
        self,
        *,
        host: str = DEFAULT_OLLAMA_HOST,
        model: str = DEFAULT_OLLAMA_MODEL,
        timeout: float = 300.0,
    ) -> None:
        self.host = host.rstrip("/")
        self.model = model
        self.timeout = timeout

    def complete(self, system_prompt: str, history: Sequence[ChatMessage]) -> str:
        payload = {
            "model": self.model,
            "system": system_prompt,
            "prompt": self._render_prompt(history),
            "stream": False,
        }
        raw = _post_json(
            f"{self.host}/api/generate",
            payload,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
            model=self.model,
        )
        text = raw.get("response")
        if not isinstance(text, str):
            raise BackendUnreachable("Invalid Ollama response: missing 'response' text")
        return text

    @staticmethod
    def _render_prompt(history: Sequence[ChatMessage]) -> str:
        lines = [
            f"{message.role.upper()}: {message.content}" for message in bounded_history(history)
        ]
        lines.append("RELAY:")
        return "\n".join(lines)


def _post_json(
    url: str,
    payload: dict[str, object],
    *,
    headers: dict[str, str],
    timeout: float,
    model: str,
) -> dict[str, object]:
    body = json.dumps(payload).encode("utf-8")
    LOGGER.debug(
        "llm_request_prepared",
        extra={"api_url": url, "model": model, "payload_bytes": len(body)},
    )
    req = request.Request(url, data=body, headers=headers, method="POST")
    try:
        with request.urlopen(req, timeout=timeout) as resp:  # noqa: S310
            raw_response = json.loads(resp.read().decode("utf-8"))
    except HTTPError as exc:
        body_excerpt = _read_error_body_excerpt(exc)
        LOGGER.error(
            "llm_request_http_error",
            extra={
                "api_url": url,
                "model": model,
                "http_status": exc.code,
                "reason": exc.reason,
                "response_excerpt": body_excerpt,
            },
        )
        details = f"Model request failed with HTTP {exc.code}: {exc.reason}"
        if body_excerpt:
            details = f"{details}. Response body: {body_excerpt}"
        raise BackendUnreachable(details) from exc
    except URLError as exc:
        LOGGER.error(
            "llm_request_transport_error",
            extra={"api_url": url, "model": model, "reason": str(exc.reason)},
        )
        raise BackendUnreachable(f"Model request transport error: {exc.reason}") from exc
    except TimeoutError as exc:
        LOGGER.error(
            "llm_request_timeout",
            extra={"api_url": url, "model": model, "timeout_seconds": timeout},
        )
        raise BackendUnreachable(f"Model request timed out after {timeout:.1f}s") from exc
    except (http.client.HTTPException, OSError) as exc:
        LOGGER.error(
            "llm_request_connection_error",
            extra={"api_url": url, "model": model, "error": repr(exc)},
        )
        raise BackendUnreachable(f"Model request connection error: {exc!r}") from exc
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        LOGGER.error(
            "llm_response_parse_error",
            extra={"api_url": url, "model": model, "error": str(exc)},
        )
        raise BackendUnreachable(f"Model response parsing error: {exc}") from exc

    if not isinstance(raw_response, dict):
        raise BackendUnreachable("Model response parsing error: expected top-level object")
    return {str(key): value for key, value in raw_response.items()}


def _read_error_body_excerpt(exc: HTTPError, *, max_chars: int = 500) -> str | None:
    if exc.fp is None:
        return None
    try:
        raw = exc.read()
    except OSError:
        return None

    if not raw:
        return None

    excerpt = raw.decode("utf-8", errors="replace").replace("\n", " ").strip()
    if len(excerpt) > max_chars:
        return f"{excerpt[:max_chars]}..."
    return excerpt
