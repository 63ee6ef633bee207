"""Inference client: one chat-style generation call against a local LLM (Ollama) per analysis task."""

import json
import logging
import re
import time
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_JSON_BODY_RE = re.compile(r"(\{[\s\S]*\}|\[[\s\S]*\])")


class InferenceServiceError(Exception):
    """Raised when the inference call cannot complete (Ollama unreachable, timeout, bad status or body)."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


class ResponseParseError(Exception):
    """Raised when generated text does not contain parseable JSON."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


def parse_json_response(text: str) -> Any:
    """
    Extract and parse JSON from model output.

    Tolerates a surrounding markdown fence and prose before or after the JSON body.
    Raises ResponseParseError when nothing parseable is found.
    """
    candidate = (text or "").strip()
    fence = _FENCE_RE.search(candidate)
    if fence:
        candidate = fence.group(1).strip()
    body = _JSON_BODY_RE.search(candidate)
    if body:
        candidate = body.group(1)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ResponseParseError(
            f"Model output is not valid JSON: {candidate[:200]!r}",
            cause=e,
        ) from e


def build_options(settings: "Settings") -> dict[str, float | int]:
    """Deterministic generation options sent with every request."""
    return {
        "temperature": settings.OLLAMA_TEMPERATURE,
        "top_p": settings.OLLAMA_TOP_P,
        "repeat_penalty": settings.OLLAMA_REPEAT_PENALTY,
        "seed": settings.OLLAMA_SEED,
        "num_predict": settings.OLLAMA_NUM_PREDICT,
    }


class InferenceClient:
    """Thin async client for Ollama's /api/generate endpoint."""

    def __init__(self, settings: "Settings") -> None:
        self._settings = settings

    @property
    def model(self) -> str:
        return self._settings.OLLAMA_MODEL

    async def generate(self, system_prompt: str, user_prompt: str, task: str) -> str:
        """
        Issue exactly one generation call and return the raw generated text.

        Raises InferenceServiceError on connection failure, timeout, non-200 status or malformed body.
        Parsing the generated text is the caller's concern.
        """
        settings = self._settings
        url = f"{settings.OLLAMA_BASE_URL.rstrip('/')}/api/generate"
        payload = {
            "model": settings.OLLAMA_MODEL,
            "system": system_prompt,
            "prompt": user_prompt,
            "stream": False,
            "format": "json",
            "options": build_options(settings),
        }
        timeout = httpx.Timeout(settings.OLLAMA_REQUEST_TIMEOUT_SEC)
        start = time.perf_counter()
        log_extra: dict[str, float | int | str | None] = {
            "task": task,
            "model": settings.OLLAMA_MODEL,
            "prompt_chars": len(user_prompt),
        }

        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(url, json=payload)
        except httpx.ConnectError as e:
            log_extra.update(llm_latency_seconds=time.perf_counter() - start, status="error")
            logger.info("LLM request failed", extra=log_extra)
            raise InferenceServiceError(
                "Ollama is unreachable. Ensure Ollama is running and OLLAMA_BASE_URL is correct.",
                cause=e,
            ) from e
        except httpx.TimeoutException as e:
            log_extra.update(llm_latency_seconds=time.perf_counter() - start, status="error")
            logger.info("LLM request failed", extra=log_extra)
            raise InferenceServiceError(
                "Ollama request timed out. Try increasing OLLAMA_REQUEST_TIMEOUT_SEC.",
                cause=e,
            ) from e
        except httpx.HTTPError as e:
            log_extra.update(llm_latency_seconds=time.perf_counter() - start, status="error")
            logger.info("LLM request failed", extra=log_extra)
            raise InferenceServiceError("Ollama request failed.", cause=e) from e

        log_extra["llm_latency_seconds"] = time.perf_counter() - start

        if response.status_code != 200:
            raise InferenceServiceError(
                f"Ollama returned status {response.status_code}. Check that the model is pulled (e.g. ollama pull {settings.OLLAMA_MODEL})."
            )

        try:
            body = response.json()
        except json.JSONDecodeError as e:
            raise InferenceServiceError(
                "Ollama response body is not valid JSON.",
                cause=e,
            ) from e

        eval_duration_ns = body.get("eval_duration")
        if eval_duration_ns is not None:
            log_extra["eval_duration_nanoseconds"] = eval_duration_ns
        logger.info("LLM request completed", extra=log_extra)

        generated = body.get("response")
        if generated is None:
            raise InferenceServiceError("Ollama response missing 'response' field.")
        if not isinstance(generated, str):
            # Some proxies hand back the already-decoded JSON document
            return json.dumps(generated)
        return generated
