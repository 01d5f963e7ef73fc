"""
LLM provider layer for structured (JSON) chat and vision calls.

Architecture:
  - ProviderConfig: per-provider settings (model, api_key, base_url, etc.)
  - Degradation chain: primary model -> fallback model
  - Usage tracking: token counts and latency per call
  - Error classification: SDK exceptions -> ApiError (retryable or fatal)
  - Supports: OpenAI, Ollama, any OpenAI-compatible API (vLLM, LiteLLM, etc.)

Configuration via environment variables:
  LLM_PROVIDER          = openai | ollama | custom   (default: openai)
  LLM_MODEL             = gpt-4o-mini                (text model)
  LLM_VISION_MODEL      = gpt-4o-mini                (OCR model, defaults to LLM_MODEL)
  LLM_FALLBACK_MODEL    = gpt-4o                     (fallback on primary failure)
  LLM_TEMPERATURE       = 0
  OPENAI_API_KEY        = sk-...
  OPENAI_BASE_URL       = https://api.openai.com/v1  (or custom endpoint)
  OLLAMA_BASE_URL       = http://localhost:11434/v1  (Ollama OpenAI-compat endpoint)
  OLLAMA_MODEL          = qwen2.5:7b
  MOCK_LLM_ENABLED      = true                       (deterministic offline mode)
"""

from __future__ import annotations

import base64
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any

from audit_runner.errors import ApiError
from audit_runner.timeouts import Deadline

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    provider: str = "openai"
    model: str = ""
    vision_model: str = ""
    fallback_model: str = ""
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.0

    def __post_init__(self) -> None:
        if not self.model:
            self.model = os.environ.get("LLM_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini"
        if not self.vision_model:
            self.vision_model = self.model


@dataclass
class LLMUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    latency_ms: float = 0.0
    degraded: bool = False
    degrade_reason: str = ""


_call_usage_log: list[LLMUsage] = []


def get_usage_log() -> list[LLMUsage]:
    return list(_call_usage_log)


def reset_usage_log() -> None:
    _call_usage_log.clear()


def _get_provider_config() -> ProviderConfig:
    provider = os.environ.get("LLM_PROVIDER", "openai").strip().lower()
    fallback = os.environ.get("LLM_FALLBACK_MODEL", "").strip()
    vision_model = os.environ.get("LLM_VISION_MODEL", "").strip()
    try:
        temperature = float(os.environ.get("LLM_TEMPERATURE", "0").strip() or "0")
    except ValueError:
        temperature = 0.0

    if provider == "ollama":
        return ProviderConfig(
            provider="ollama",
            model=os.environ.get("OLLAMA_MODEL", os.environ.get("LLM_MODEL", "")).strip(),
            vision_model=vision_model,
            fallback_model=fallback,
            api_key=os.environ.get("OPENAI_API_KEY", "ollama").strip() or "ollama",
            base_url=os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434/v1").strip(),
            temperature=temperature,
        )

    return ProviderConfig(
        provider=provider,
        model=os.environ.get("LLM_MODEL", "").strip(),
        vision_model=vision_model,
        fallback_model=fallback,
        api_key=os.environ.get("OPENAI_API_KEY", "").strip(),
        base_url=os.environ.get("OPENAI_BASE_URL", "").strip(),
        temperature=temperature,
    )


def is_real_llm_available() -> bool:
    from audit_runner.mock_llm import mock_llm_enabled

    if mock_llm_enabled():
        return False
    config = _get_provider_config()
    if config.provider == "ollama":
        return bool(config.base_url)
    return bool(config.api_key)


def _create_client(config: ProviderConfig):
    try:
        import openai
    except ImportError:
        raise ApiError(
            code="LLM_NOT_CONFIGURED",
            message="openai package is required. Install with: pip install openai",
            error_class="configuration",
            retryable=False,
            http_status=500,
        )

    # Retries are owned by RetryPolicy, not the SDK.
    kwargs: dict[str, Any] = {"max_retries": 0}
    if config.api_key:
        kwargs["api_key"] = config.api_key
    if config.base_url:
        kwargs["base_url"] = config.base_url

    if config.provider == "ollama" and "api_key" not in kwargs:
        kwargs["api_key"] = "ollama"

    return openai.OpenAI(**kwargs)


def _classify_llm_error(exc: Exception) -> ApiError:
    """Map SDK exceptions onto retryable (rate limit, network, 5xx) or fatal errors."""
    if isinstance(exc, ApiError):
        return exc
    import openai

    name = type(exc).__name__
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ApiError(
            code="LLM_AUTH_FAILED",
            message=f"LLM provider rejected credentials ({name})",
            error_class="configuration",
            retryable=False,
            http_status=502,
        )
    if isinstance(exc, openai.RateLimitError):
        return ApiError(
            code="LLM_RATE_LIMITED",
            message="LLM rate limit exceeded",
            error_class="transient",
            retryable=True,
            http_status=429,
        )
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
        return ApiError(
            code="LLM_UPSTREAM_UNAVAILABLE",
            message=f"LLM provider unreachable ({name})",
            error_class="transient",
            retryable=True,
            http_status=503,
        )
    if isinstance(exc, openai.APIStatusError):
        status = int(getattr(exc, "status_code", 0) or 0)
        if status >= 500 or status == 408:
            return ApiError(
                code="LLM_UPSTREAM_UNAVAILABLE",
                message=f"LLM provider error (HTTP {status})",
                error_class="transient",
                retryable=True,
                http_status=503,
            )
        return ApiError(
            code="LLM_REQUEST_INVALID",
            message=f"LLM provider rejected the request (HTTP {status}): {str(exc)[:300]}",
            error_class="permanent",
            retryable=False,
            http_status=502,
        )
    return ApiError(
        code="LLM_CALL_FAILED",
        message=f"LLM call failed ({name}): {str(exc)[:300]}",
        error_class="permanent",
        retryable=False,
        http_status=502,
    )


def _call_chat(
    *,
    client,
    model: str,
    messages: list[dict[str, Any]],
    temperature: float = 0.0,
    max_tokens: int = 1024,
    json_mode: bool = False,
    timeout_s: float | None = None,
) -> tuple[str, LLMUsage]:
    """Call chat completions and return (content, usage)."""
    t0 = time.monotonic()
    kwargs: dict[str, Any] = {
        "model": model,
        "temperature": temperature,
        "messages": messages,
        "max_tokens": max_tokens,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}
    if timeout_s is not None:
        kwargs["timeout"] = max(0.1, timeout_s)

    response = client.chat.completions.create(**kwargs)
    elapsed_ms = (time.monotonic() - t0) * 1000

    content = response.choices[0].message.content or ""
    usage_data = response.usage
    usage = LLMUsage(
        prompt_tokens=getattr(usage_data, "prompt_tokens", 0) if usage_data else 0,
        completion_tokens=getattr(usage_data, "completion_tokens", 0) if usage_data else 0,
        total_tokens=getattr(usage_data, "total_tokens", 0) if usage_data else 0,
        model=model,
        latency_ms=round(elapsed_ms, 1),
    )
    _call_usage_log.append(usage)
    return content, usage


def _call_with_degradation(
    *,
    config: ProviderConfig,
    messages: list[dict[str, Any]],
    model: str,
    json_mode: bool = False,
    max_tokens: int = 1024,
    deadline: Deadline | None = None,
) -> tuple[str, LLMUsage]:
    """Try primary model, then fallback model, raising a classified ApiError on total failure."""
    client = _create_client(config)

    def _timeout() -> float | None:
        if deadline is None:
            return None
        deadline.check()
        return deadline.remaining()

    timeout_s = _timeout()
    try:
        return _call_chat(
            client=client,
            model=model,
            messages=messages,
            temperature=config.temperature,
            max_tokens=max_tokens,
            json_mode=json_mode,
            timeout_s=timeout_s,
        )
    except Exception as primary_exc:
        classified = _classify_llm_error(primary_exc)
        if not config.fallback_model or classified.code == "LLM_AUTH_FAILED":
            raise classified from primary_exc

        logger.warning(
            "Primary model %s failed (%s), degrading to %s",
            model,
            classified.code,
            config.fallback_model,
        )
        timeout_s = _timeout()
        try:
            content, usage = _call_chat(
                client=client,
                model=config.fallback_model,
                messages=messages,
                temperature=config.temperature,
                max_tokens=max_tokens,
                json_mode=json_mode,
                timeout_s=timeout_s,
            )
        except Exception as fallback_exc:
            raise _classify_llm_error(fallback_exc) from fallback_exc
        usage.degraded = True
        usage.degrade_reason = f"primary_failed:{classified.code}"
        return content, usage


def parse_json_object(content: str) -> dict[str, Any]:
    text = (content or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ApiError(
            code="LLM_OUTPUT_INVALID",
            message=f"LLM returned non-JSON output: {exc.msg}",
            error_class="transient",
            retryable=True,
            http_status=502,
        ) from exc
    if not isinstance(parsed, dict):
        raise ApiError(
            code="LLM_OUTPUT_INVALID",
            message="LLM returned JSON that is not an object",
            error_class="transient",
            retryable=True,
            http_status=502,
        )
    return parsed


def chat_json(
    *,
    system_prompt: str,
    user_prompt: str,
    max_tokens: int = 1400,
    deadline: Deadline | None = None,
) -> tuple[dict[str, Any], LLMUsage]:
    config = _get_provider_config()
    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]
    content, usage = _call_with_degradation(
        config=config,
        messages=messages,
        model=config.model,
        json_mode=True,
        max_tokens=max_tokens,
        deadline=deadline,
    )
    return parse_json_object(content), usage


def vision_json(
    *,
    system_prompt: str,
    user_prompt: str,
    image_bytes: bytes,
    mime_type: str = "image/png",
    max_tokens: int = 1200,
    deadline: Deadline | None = None,
) -> tuple[dict[str, Any], LLMUsage]:
    config = _get_provider_config()
    data_url = f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"
    messages: list[dict[str, Any]] = [
        {"role": "system", "content": system_prompt},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": user_prompt},
                {"type": "image_url", "image_url": {"url": data_url}},
            ],
        },
    ]
    content, usage = _call_with_degradation(
        config=config,
        messages=messages,
        model=config.vision_model,
        json_mode=True,
        max_tokens=max_tokens,
        deadline=deadline,
    )
    return parse_json_object(content), usage


def get_provider_info() -> dict[str, Any]:
    """Return current provider configuration (safe for logging, no secrets)."""
    config = _get_provider_config()
    return {
        "provider": config.provider,
        "model": config.model,
        "vision_model": config.vision_model,
        "fallback_model": config.fallback_model or None,
        "base_url": config.base_url or "(default)",
        "has_api_key": bool(config.api_key),
        "real_llm_available": is_real_llm_available(),
        "temperature": config.temperature,
    }
