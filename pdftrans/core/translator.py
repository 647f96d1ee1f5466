import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import openai
from pydantic import BaseModel, Field

from ..config import Settings, get_openai_client, language_name
from ..errors import (
    AuthenticationFailedError,
    ProtocolError,
    RateLimitedError,
    RequestRejectedError,
    TransientTranslationError,
    TranslationError,
)

logger = logging.getLogger(__name__)

SEGMENT_SEPARATOR = "|||"
_NUMBER_PREFIX = re.compile(r"^(\d+)\.\s*")


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for transient failures."""
    max_attempts: int = Field(3, ge=1)
    base_delay: float = Field(1.0, ge=0)
    multiplier: float = Field(2.0, ge=1)
    max_delay: float = Field(30.0, ge=0)
    total_deadline: Optional[float] = None  # seconds across all attempts


class Translator(ABC):
    """A translation provider: one call translates a positionally aligned batch."""

    name: str = "translator"

    @property
    @abstractmethod
    def model(self) -> str:
        """Model identifier; part of every cache key."""

    @abstractmethod
    def translate(self, texts: List[str], source_lang: str, target_lang: str) -> List[str]:
        """Translates texts, returning exactly one string per input in the same order.

        Raises:
            TranslationError: classified failure (see pdftrans.errors).
        """


class OpenAIChatTranslator(Translator):
    """Translates batches through an OpenAI-compatible chat-completions endpoint.

    Works with llama.cpp, Ollama, OpenAI and Azure OpenAI clients. The client
    holds no state between calls; concurrency limits belong to the caller.
    """

    name = "OpenAI Compatible"

    def __init__(self, client, model: str,
                 retry: Optional[RetryPolicy] = None,
                 request_timeout: float = 60.0,
                 temperature: float = 0.3,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.client = client
        self._model = model
        self.retry = retry or RetryPolicy()
        self.request_timeout = request_timeout
        self.temperature = temperature
        self.sleep = sleep
        self.clock = clock

    @property
    def model(self) -> str:
        return self._model

    def translate(self, texts: List[str], source_lang: str, target_lang: str) -> List[str]:
        if not texts:
            return []
        if source_lang == target_lang and source_lang != "auto":
            return list(texts)

        messages = [
            {"role": "system", "content": self._build_system_prompt(source_lang, target_lang)},
            {"role": "user", "content": self._format_batch(texts)},
        ]
        raw = self._complete_with_retry(messages, len(texts))
        return self._parse_segments(raw, len(texts))

    def _build_system_prompt(self, source_lang: str, target_lang: str) -> str:
        source_hint = "" if source_lang == "auto" else f" from {language_name(source_lang)}"
        return f"""You are an expert translator. Translate the following numbered texts{source_hint} into {language_name(target_lang)}. Maintain the original meaning and context.
Return the translations also numbered and separated EXACTLY by '{SEGMENT_SEPARATOR}' (three pipe characters), one translation per input text, in the same order.
Output only the translations, no explanations.
Example Input:
1. Hello world
2. How are you?

Example Output:
1. <translation of text 1> {SEGMENT_SEPARATOR} 2. <translation of text 2>
"""

    def _format_batch(self, texts: List[str]) -> str:
        return "\n".join(f"{i + 1}. {text}" for i, text in enumerate(texts))

    def _complete_with_retry(self, messages, batch_size: int) -> str:
        started = self.clock()
        delay = self.retry.base_delay

        for attempt in range(1, self.retry.max_attempts + 1):
            try:
                logger.debug("Attempt %d/%d: requesting %d segments from %s",
                             attempt, self.retry.max_attempts, batch_size, self.model)
                return self._request(messages)
            except TranslationError as e:
                if not e.retryable or attempt == self.retry.max_attempts:
                    if e.retryable:
                        logger.error("Translation failed after %d attempts: %s", attempt, e)
                    raise
                wait = self._backoff(e, delay)
                if self.retry.total_deadline is not None and \
                        (self.clock() - started) + wait > self.retry.total_deadline:
                    logger.error("Translation deadline of %.1fs exceeded after %d attempts: %s",
                                 self.retry.total_deadline, attempt, e)
                    raise
                logger.warning("%s. Retrying in %.2fs (attempt %d/%d)",
                               e, wait, attempt, self.retry.max_attempts)
                self.sleep(wait)
                delay = min(delay * self.retry.multiplier, self.retry.max_delay)

        # max_attempts >= 1, so the loop always returns or raises
        raise TranslationError("translation failed after maximum retries")

    def _backoff(self, error: TranslationError, delay: float) -> float:
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            return error.retry_after
        return delay

    def _request(self, messages) -> str:
        """Issues one chat-completions call and classifies its failure modes."""
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                timeout=self.request_timeout,
            )
        except openai.APITimeoutError as e:
            raise TransientTranslationError(f"request timed out after {self.request_timeout}s") from e
        except openai.APIConnectionError as e:
            raise TransientTranslationError(f"connection error: {e}") from e
        except openai.RateLimitError as e:
            raise RateLimitedError(retry_after=_retry_after(e.response)) from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise AuthenticationFailedError(f"authentication failed (HTTP {e.status_code}): {e}") from e
        except openai.APIStatusError as e:
            if e.status_code >= 500 or e.status_code == 408:
                raise TransientTranslationError(f"HTTP {e.status_code}: {e}") from e
            raise RequestRejectedError(f"request rejected (HTTP {e.status_code}): {e}",
                                       status_code=e.status_code) from e

        choices = getattr(response, "choices", None) or []
        if not choices or choices[0].message.content is None:
            raise ProtocolError("response contained no message content", raw_response=repr(response))
        return choices[0].message.content.strip()

    def _parse_segments(self, raw: str, expected: int) -> List[str]:
        """Splits a '|||'-separated response and checks count and numbering."""
        parts = [p.strip() for p in raw.split(SEGMENT_SEPARATOR)]
        if len(parts) > expected and parts and not parts[-1]:
            parts = parts[:-1]

        if len(parts) != expected:
            logger.error("Expected %d translations, got %d. Raw response: %r", expected, len(parts), raw)
            raise ProtocolError(f"expected {expected} segments, got {len(parts)}", raw_response=raw)

        numbers = []
        segments = []
        for part in parts:
            match = _NUMBER_PREFIX.match(part)
            if match:
                numbers.append(int(match.group(1)))
                part = part[match.end():]
            segments.append(_strip_quotes(part.strip()))

        if len(numbers) == expected and numbers != list(range(1, expected + 1)):
            logger.error("Translations returned out of order %s. Raw response: %r", numbers, raw)
            raise ProtocolError(f"segments out of order: {numbers}", raw_response=raw)
        return segments


def _strip_quotes(text: str) -> str:
    if len(text) >= 2 and text[0] == text[-1] == '"':
        return text[1:-1]
    return text


def _retry_after(response) -> Optional[float]:
    """Reads the server's delay hint (Retry-After seconds or retry-after-ms)."""
    if response is None:
        return None
    headers = response.headers
    value = headers.get("retry-after-ms")
    if value is not None:
        try:
            return float(value) / 1000.0
        except ValueError:
            pass
    value = headers.get("retry-after")
    if value is not None:
        try:
            return max(0.0, float(value))
        except ValueError:
            # HTTP-date form; fall back to default backoff
            return None
    return None


def create_translator(settings: Settings) -> Translator:
    """Builds the provider selected by the settings (Azure OpenAI or any OpenAI-compatible server)."""
    translator = OpenAIChatTranslator(
        client=get_openai_client(settings),
        model=settings.model_identifier,
        retry=RetryPolicy(max_attempts=settings.retry_count, base_delay=settings.retry_delay),
        request_timeout=settings.request_timeout,
    )
    if settings.uses_azure:
        translator.name = "Azure OpenAI"
    logger.info("Using %s translator with model '%s'", translator.name, translator.model)
    return translator
