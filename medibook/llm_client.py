"""
LLM Client Module
=================
Structured inference against OpenAI / Azure OpenAI with JSON-mode output
validated by pydantic schemas, wrapped in a bounded retry loop for
transient overload responses.

Every flow in the application (queue prediction, slot optimization,
triage, clinic stats, document interpretation, text-to-speech) goes
through ``invoke_with_retry`` so the retry bound, backoff and overload
detection are the same everywhere; flows only choose which status codes
count as transient.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional, TypeVar

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError

from medibook.errors import InferenceOutputError, MediBookError, RetriesExhaustedError

load_dotenv()
logger = logging.getLogger(__name__)

T = TypeVar("T")
SchemaT = TypeVar("SchemaT", bound=BaseModel)

STATUS_OVERLOADED = 503
STATUS_RATE_LIMITED = 429

_PLACEHOLDER_KEYS = {"", "your-key"}


@dataclass(frozen=True)
class RetryPolicy:
    """Retry bound and linear backoff for one flow.

    Attributes:
        max_attempts: Total number of calls, including the first one.
        backoff_seconds: Base delay; retry ``n`` waits ``n * backoff_seconds``.
        retry_statuses: Provider status codes treated as transient overload.
    """

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    retry_statuses: tuple[int, ...] = (STATUS_OVERLOADED,)

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(os.getenv("LLM_MAX_ATTEMPTS", "3"))),
            backoff_seconds=max(0.0, float(os.getenv("LLM_BACKOFF_SECONDS", "1.0"))),
        )

    def with_statuses(self, *statuses: int) -> "RetryPolicy":
        return replace(self, retry_statuses=tuple(statuses))

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * attempt

    def is_transient(self, exc: BaseException) -> bool:
        """Decide whether ``exc`` is a transient-overload signal.

        SDK errors expose an integer ``status_code``; anything else falls
        back to looking for the status code inside the error message.
        """
        status = getattr(exc, "status_code", None)
        if isinstance(status, int):
            return status in self.retry_statuses
        if isinstance(exc, MediBookError):
            return False
        message = str(exc)
        return any(str(code) in message for code in self.retry_statuses)


def invoke_with_retry(
    operation: Callable[[], T],
    *,
    name: str,
    policy: RetryPolicy,
    on_retry: Optional[Callable[[str], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` retrying transient overload failures.

    Args:
        operation: Zero-argument callable performing one provider call.
        name: Flow name used in logs and in the terminal error.
        policy: Retry bound, backoff and transient status codes.
        on_retry: Optional progress callback receiving a short status line.
        sleep: Sleep function (injected by tests).

    Returns:
        Whatever ``operation`` returns on its first successful call.

    Raises:
        RetriesExhaustedError: The last allowed attempt was still transient.
        Exception: Any non-transient error, re-raised unchanged.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as exc:
            attempt += 1
            if not policy.is_transient(exc):
                raise
            if attempt >= policy.max_attempts:
                logger.error(
                    "%s: still overloaded after %d attempts: %s", name, attempt, exc
                )
                raise RetriesExhaustedError(name, attempt) from exc

            message = (
                f"Model is overloaded, retrying... "
                f"(Attempt {attempt}/{policy.max_attempts})"
            )
            logger.warning("%s: %s", name, message)
            if on_retry is not None:
                on_retry(message)
            sleep(policy.delay_for(attempt))


class StructuredModel:
    """Chat-completions client that returns schema-validated objects.

    Uses Azure OpenAI when ``AZURE_OPENAI_ENDPOINT`` and ``AZURE_OPENAI_KEY``
    are set, otherwise OpenAI when ``OPENAI_API_KEY`` is set. Without
    credentials the model stays unconfigured and flows use their local
    fallbacks.

    Attributes:
        client: OpenAI SDK client, or ``None`` when unconfigured.
        deployment: Chat model / Azure deployment name.
        retry_policy: Default retry policy for ``generate``.
    """

    def __init__(
        self,
        client: Any = None,
        deployment: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.deployment: str = deployment or os.getenv("LLM_DEPLOYMENT", "gpt-4o-mini")
        self.retry_policy = retry_policy or RetryPolicy.from_env()
        self._sleep = sleep
        if self.client is None:
            self._init_openai()

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    def _init_openai(self) -> None:
        """Create the OpenAI or Azure OpenAI client from the environment."""
        azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT", "")
        azure_key = os.getenv("AZURE_OPENAI_KEY", "")
        openai_key = os.getenv("OPENAI_API_KEY", "")

        # max_retries=0: invoke_with_retry is the only retry layer
        try:
            if azure_endpoint and azure_key not in _PLACEHOLDER_KEYS:
                from openai import AzureOpenAI

                kwargs = {
                    "azure_endpoint": azure_endpoint,
                    "api_key": azure_key,
                    "api_version": os.getenv("AZURE_OPENAI_API_VERSION", "2024-12-01-preview"),
                    "max_retries": 0,
                }
                self.client = self._build_client(AzureOpenAI, kwargs)
                logger.info("Azure OpenAI client initialized (deployment=%s).", self.deployment)
            elif openai_key not in _PLACEHOLDER_KEYS:
                from openai import OpenAI

                self.client = self._build_client(OpenAI, {"api_key": openai_key, "max_retries": 0})
                logger.info("OpenAI client initialized (model=%s).", self.deployment)
            else:
                logger.warning(
                    "LLM credentials not configured. "
                    "Flows will use their local rule-based fallbacks."
                )
        except Exception as exc:
            logger.error("Failed to init OpenAI client: %s", exc)
            self.client = None

    @staticmethod
    def _build_client(client_cls: Any, kwargs: dict) -> Any:
        # Some openai SDK / httpx combinations reject the implicit proxy
        # settings; an explicit httpx client respects them.
        try:
            return client_cls(**kwargs)
        except TypeError:
            import httpx

            return client_cls(**kwargs, http_client=httpx.Client())

    # ------------------------------------------------------------------
    # Structured generation
    # ------------------------------------------------------------------

    def generate(
        self,
        name: str,
        system_prompt: str,
        user_content: Any,
        output_schema: type[SchemaT],
        retry_statuses: Optional[tuple[int, ...]] = None,
        on_retry: Optional[Callable[[str], None]] = None,
        max_tokens: int = 1000,
    ) -> SchemaT:
        """Call the model in JSON mode and validate the reply.

        Args:
            name: Flow name for logs and errors.
            system_prompt: Instructions including the expected JSON shape.
            user_content: User message; a string or a list of content parts.
            output_schema: Pydantic model the JSON reply must satisfy.
            retry_statuses: Overrides the transient status codes for this call.
            on_retry: Optional progress callback for retries.
            max_tokens: Completion token budget.

        Returns:
            An instance of ``output_schema``.

        Raises:
            InferenceOutputError: Empty reply or schema validation failure.
            RetriesExhaustedError: The model stayed overloaded.
        """
        if self.client is None:
            raise RuntimeError("StructuredModel.generate called without a client")

        policy = self.retry_policy
        if retry_statuses is not None:
            policy = policy.with_statuses(*retry_statuses)

        def call() -> SchemaT:
            response = self.client.chat.completions.create(
                model=self.deployment,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_content},
                ],
                response_format={"type": "json_object"},
                max_completion_tokens=max_tokens,
            )
            self._log_usage(name, response)
            return self._parse(name, response, output_schema)

        return invoke_with_retry(
            call, name=name, policy=policy, on_retry=on_retry, sleep=self._sleep
        )

    @staticmethod
    def _parse(name: str, response: Any, output_schema: type[SchemaT]) -> SchemaT:
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as exc:
            raise InferenceOutputError(f"{name}: malformed model response") from exc
        if not content:
            raise InferenceOutputError(f"{name}: model returned no output")

        try:
            return output_schema.model_validate(json.loads(content))
        except json.JSONDecodeError as exc:
            raise InferenceOutputError(f"{name}: model output is not JSON") from exc
        except ValidationError as exc:
            logger.error("%s: output failed schema validation: %s", name, exc)
            raise InferenceOutputError(
                f"{name}: model output does not match {output_schema.__name__}"
            ) from exc

    @staticmethod
    def _log_usage(name: str, response: Any) -> None:
        usage = getattr(response, "usage", None)
        if usage:
            logger.info(
                "%s: tokens used: prompt=%s completion=%s total=%s",
                name,
                getattr(usage, "prompt_tokens", "?"),
                getattr(usage, "completion_tokens", "?"),
                getattr(usage, "total_tokens", "?"),
            )
