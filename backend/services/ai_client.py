"""Anthropic client with optional Helicone proxy.

The analysis tools need one complete response per call, so this wraps
messages.create rather than streaming. Transient provider failures are
retried by the SDK (max_retries); anything left over becomes AIServiceError
with a user-safe message.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import anthropic
from opentelemetry.trace import SpanKind

from backend.observability import AccessMetrics, get_tracer

logger = logging.getLogger(__name__)

HELICONE_BASE_URL = "https://anthropic.helicone.ai"


class AIServiceError(Exception):
    """The AI provider could not produce a response."""

    def __init__(self, message: str, error_type: str = "api_error"):
        super().__init__(message)
        self.error_type = error_type


class AsyncAIClient:
    """Wraps AsyncAnthropic with optional Helicone proxy."""

    def __init__(
        self,
        api_key: str,
        helicone_api_key: Optional[str] = None,
        helicone_enabled: bool = False,
        default_model: str = "claude-sonnet-4-20250514",
        max_retries: int = 2,
        timeout: float = 60.0,
    ) -> None:
        self._default_model = default_model

        kwargs: Dict[str, Any] = {
            "api_key": api_key,
            "max_retries": max_retries,
            "timeout": timeout,
        }
        extra_headers: Dict[str, str] = {}

        if helicone_enabled and helicone_api_key:
            kwargs["base_url"] = HELICONE_BASE_URL
            extra_headers["Helicone-Auth"] = f"Bearer {helicone_api_key}"
            logger.info("AI client configured with Helicone proxy")

        if extra_headers:
            kwargs["default_headers"] = extra_headers

        self._client = anthropic.AsyncAnthropic(**kwargs)

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        system: str,
        model: Optional[str] = None,
        max_tokens: int = 2000,
        temperature: float = 0.3,
    ) -> str:
        """Run one completion and return the concatenated text blocks.

        Raises:
            AIServiceError: Rate limited, API error, or unexpected failure.
        """
        model = model or self._default_model
        start_time = time.time()
        tracer = get_tracer()

        with tracer.start_as_current_span(
            "anthropic.messages.create",
            kind=SpanKind.CLIENT,
            attributes={
                "llm.model": model,
                "llm.max_tokens": max_tokens,
            },
        ) as span:
            try:
                response = await self._client.messages.create(
                    model=model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=messages,
                )
            except anthropic.RateLimitError as e:
                logger.warning("Anthropic rate limit: %s", e)
                span.set_attribute("error.type", "rate_limit")
                raise AIServiceError("AI service is busy. Please try again shortly.", "rate_limit") from e
            except anthropic.APIError as e:
                logger.error("Anthropic API error: %s", e)
                span.set_attribute("error.type", "api_error")
                span.record_exception(e)
                raise AIServiceError("AI service error. Please try again.", "api_error") from e
            except Exception as e:
                logger.error("Unexpected AI client error: %s", e)
                span.set_attribute("error.type", "internal_error")
                span.record_exception(e)
                raise AIServiceError("An unexpected error occurred.", "internal_error") from e

            total_seconds = time.time() - start_time
            AccessMetrics.ai_request_seconds().record(total_seconds, {"model": model})

            usage = getattr(response, "usage", None)
            if usage is not None:
                span.set_attribute("llm.input_tokens", getattr(usage, "input_tokens", 0))
                span.set_attribute("llm.output_tokens", getattr(usage, "output_tokens", 0))
            span.set_attribute("llm.total_seconds", total_seconds)

            text = "".join(
                block.text for block in response.content if getattr(block, "type", None) == "text"
            )
            if not text:
                logger.warning("Anthropic returned no text blocks (stop_reason=%s)", response.stop_reason)
            return text
