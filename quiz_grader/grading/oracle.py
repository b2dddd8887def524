"""
Grading oracle for open-ended answers.

Defines the oracle interface the grader depends on and an implementation
backed by the OpenAI SDK (any OpenAI-compatible endpoint). Includes retry
logic with exponential backoff and request timeouts.
"""

import time
from typing import Protocol

from loguru import logger
from openai import APIConnectionError, APIStatusError, OpenAI, RateLimitError

from quiz_grader.config import Settings, get_settings
from quiz_grader.grading.prompt_builder import PromptBuilder
from quiz_grader.models import OracleRequest


class OracleError(Exception):
    """Raised when the grading oracle cannot produce a reply."""

    def __init__(self, message: str, cause: Exception | None = None, retryable: bool = False):
        self.cause = cause
        self.retryable = retryable
        super().__init__(message)


class GradingOracle(Protocol):
    """Anything that can score one open-ended answer."""

    def evaluate(self, request: OracleRequest) -> str:
        """Return the oracle's raw reply text. May raise on failure."""
        ...


class LLMGradingOracle:
    """
    Grading oracle backed by a chat-completions endpoint.

    Uses OpenAI SDK with a configurable base URL. Implements retry logic
    with exponential backoff; the SDK's own retries are disabled so that
    the retry budget is governed by settings alone.
    """

    def __init__(self, settings: Settings | None = None):
        """
        Initialize the oracle client.

        Args:
            settings: Configuration settings. Uses global settings if not provided.
        """
        self._settings = settings or get_settings()
        self._client = OpenAI(
            api_key=self._settings.openai_api_key,
            base_url=self._settings.openai_base_url,
            timeout=self._settings.oracle_timeout_seconds,
            max_retries=0,
        )

        # Retry configuration
        self._max_retries = self._settings.oracle_max_retries
        self._base_delay = 1.0  # seconds
        self._max_delay = 30.0  # seconds

    @property
    def model(self) -> str:
        return self._settings.grading_model

    def evaluate(self, request: OracleRequest, max_tokens: int = 500) -> str:
        """
        Ask the model to grade one answer.

        Args:
            request: The question, reference answer and student answer.
            max_tokens: Maximum tokens in response.

        Returns:
            The model's raw reply text (expected to be JSON).

        Raises:
            OracleError: If the call fails after all retries.
        """
        messages: list[dict[str, str]] = [
            {"role": "system", "content": PromptBuilder.get_system_prompt()},
            {"role": "user", "content": PromptBuilder.build_grading_prompt(request)},
        ]

        return self._call_with_retry(messages, max_tokens)

    def _call_with_retry(self, messages: list[dict[str, str]], max_tokens: int) -> str:
        """
        Call the API with exponential backoff retry.

        Raises:
            OracleError: If all retries fail.
        """
        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            try:
                response = self._client.chat.completions.create(
                    model=self._settings.grading_model,
                    messages=messages,  # type: ignore[arg-type]
                    temperature=self._settings.llm_temperature,
                    max_tokens=max_tokens,
                )

                if response.choices and response.choices[0].message.content:
                    return response.choices[0].message.content

                raise OracleError("Empty response from grading model")

            except OracleError:
                raise

            except (RateLimitError, APIConnectionError) as e:
                # APITimeoutError is an APIConnectionError
                last_error = e
                if attempt < self._max_retries:
                    self._backoff(attempt, e)
                    continue
                raise OracleError(
                    f"{type(e).__name__} after {self._max_retries} retries",
                    cause=e,
                    retryable=True,
                ) from e

            except APIStatusError as e:
                # Don't retry on client errors (4xx except 429)
                if 400 <= e.status_code < 500 and e.status_code != 429:
                    raise OracleError(
                        f"API error: {e.message}",
                        cause=e,
                        retryable=False,
                    ) from e

                last_error = e
                if attempt < self._max_retries:
                    self._backoff(attempt, e)
                    continue
                raise OracleError(
                    f"API error after {self._max_retries} retries: {e.message}",
                    cause=e,
                    retryable=True,
                ) from e

            except Exception as e:
                raise OracleError(f"Unexpected error: {e}", cause=e, retryable=False) from e

        raise OracleError(f"Failed after {self._max_retries} retries", cause=last_error)

    def _backoff(self, attempt: int, error: Exception) -> None:
        delay = self._calculate_delay(attempt)
        logger.debug(
            "Oracle call failed with {}, retrying in {:.1f}s (attempt {}/{})",
            type(error).__name__,
            delay,
            attempt + 1,
            self._max_retries,
        )
        time.sleep(delay)

    def _calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay for exponential backoff.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in seconds.
        """
        delay = self._base_delay * (2**attempt)
        return min(delay, self._max_delay)

    def health_check(self) -> bool:
        """
        Check if the API is reachable.

        Returns:
            True if API is healthy, False otherwise.
        """
        try:
            response = self._client.chat.completions.create(
                model=self._settings.grading_model,
                messages=[{"role": "user", "content": "ping"}],
                max_tokens=5,
            )
            return bool(response.choices)
        except Exception as e:
            logger.warning("Oracle health check failed: {}", e)
            return False
