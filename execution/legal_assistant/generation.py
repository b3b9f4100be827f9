"""
Generation Service for the Legal Study Assistant

Wraps chat-completion backends behind one ``generate(prompt, options)`` call.

Architecture:
    BaseGenerationService      -- validation, error translation, cost estimate
        OpenAIGenerationService    -- OpenAI chat completions (default)
        NvidiaGenerationService    -- NVIDIA NIM, OpenAI-compatible endpoint
        AnthropicGenerationService -- Anthropic Messages API over HTTP
"""

import logging
from dataclasses import dataclass
from typing import Optional

import requests

from .config import GenerationConfig
from .exceptions import (
    InvalidRequestError,
    LegalAssistantError,
    ProviderCallError,
    ProviderUnavailableError,
    UnknownProviderError,
)

logger = logging.getLogger(__name__)


@dataclass
class GenerationOptions:
    """Sampling and timeout options for one generation call."""
    temperature: float = 0.1
    max_tokens: int = 2000
    top_p: float = 1.0
    timeout_seconds: float = 30.0

    @classmethod
    def from_config(cls, config: GenerationConfig) -> "GenerationOptions":
        return cls(
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            top_p=config.top_p,
            timeout_seconds=config.timeout_seconds,
        )


@dataclass
class GenerationResult:
    """Generated text plus token usage for cost accounting."""
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    provider: str = ""

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class BaseGenerationService:
    """
    Base class for generation backends.

    Subclasses implement ``_init_client()`` and ``_complete(prompt, options)``
    and may override ``_cost_rates`` (USD per 1K tokens, longest prefix wins).
    """

    _provider_name: str = "Base"
    _key_hint: str = ""
    _cost_rates: dict = {}
    _default_rate: float = 0.002

    def __init__(self, config: Optional[GenerationConfig] = None):
        self.config = config or GenerationConfig()
        self._client = None

        if not self.config.api_key:
            logger.warning(
                f"{self._key_hint} not set. {self._provider_name} generation is unavailable."
            )
        else:
            self._init_client()

    def _init_client(self):
        raise NotImplementedError("Subclasses must implement _init_client()")

    def _complete(self, prompt: str, options: GenerationOptions) -> GenerationResult:
        raise NotImplementedError("Subclasses must implement _complete()")

    @property
    def provider_name(self) -> str:
        return self.config.provider

    @property
    def model_name(self) -> str:
        return self.config.model

    def is_available(self) -> bool:
        return self._client is not None

    def default_options(self) -> GenerationOptions:
        return GenerationOptions.from_config(self.config)

    def generate(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> GenerationResult:
        """
        Generate a completion for a fully rendered prompt.

        Args:
            prompt: Prompt text
            options: Sampling options. Uses the configured defaults if omitted.

        Returns:
            GenerationResult with text and token usage

        Raises:
            InvalidRequestError: blank prompt
            ProviderUnavailableError: backend not configured
            ProviderCallError: transport error, non-2xx, timeout or empty output
        """
        if prompt is None or not prompt.strip():
            raise InvalidRequestError("Prompt must not be empty")
        if self._client is None:
            raise ProviderUnavailableError(
                f"{self._provider_name} generation provider not available. "
                f"Check {self._key_hint}.",
                provider=self.provider_name,
            )

        options = options or self.default_options()
        try:
            result = self._complete(prompt, options)
        except LegalAssistantError:
            raise
        except Exception as e:
            logger.error(f"{self._provider_name} generation failed: {e}")
            raise ProviderCallError(
                self._provider_name,
                str(e),
                upstream_status=getattr(e, "status_code", None),
            ) from e

        if not result.text or not result.text.strip():
            raise ProviderCallError(self._provider_name, "empty completion")

        logger.debug(
            f"{self._provider_name} generated {result.output_tokens} tokens "
            f"(prompt {result.input_tokens})"
        )
        return result

    def estimate_cost(self, token_count: int) -> float:
        """Blended linear cost estimate in USD for ``token_count`` tokens."""
        rate = self._default_rate
        for prefix in sorted(self._cost_rates, key=len, reverse=True):
            if self.config.model.startswith(prefix):
                rate = self._cost_rates[prefix]
                break
        return (token_count / 1000.0) * rate


class OpenAIGenerationService(BaseGenerationService):
    """OpenAI chat completions."""

    _provider_name = "OpenAI"
    _key_hint = "OPENAI_API_KEY"
    _cost_rates = {
        "gpt-4o-mini": 0.0004,
        "gpt-4o": 0.0075,
        "gpt-4": 0.04,
        "gpt-3.5": 0.002,
    }

    def _init_client(self):
        from openai import OpenAI

        kwargs = {
            "api_key": self.config.api_key,
            "timeout": self.config.timeout_seconds,
            "max_retries": 0,
        }
        if self.config.base_url:
            kwargs["base_url"] = self.config.base_url
        self._client = OpenAI(**kwargs)
        logger.info(f"{self._provider_name} client initialized with model {self.config.model}")

    def _complete(self, prompt, options):
        response = self._client.chat.completions.create(
            model=self.config.model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=options.max_tokens,
            temperature=options.temperature,
            top_p=options.top_p,
            timeout=options.timeout_seconds,
        )
        usage = response.usage
        return GenerationResult(
            text=response.choices[0].message.content or "",
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            model=self.config.model,
            provider=self.provider_name,
        )


class NvidiaGenerationService(OpenAIGenerationService):
    """NVIDIA NIM models through the OpenAI-compatible endpoint."""

    _provider_name = "NVIDIA NIM"
    _key_hint = "NVIDIA_API_KEY"
    _cost_rates = {}
    _default_rate = 0.001


class AnthropicGenerationService(BaseGenerationService):
    """
    Anthropic Messages API called over plain HTTP.

    Non-2xx responses surface as ProviderCallError with the HTTP status and
    the provider's error message.
    """

    _provider_name = "Anthropic"
    _key_hint = "ANTHROPIC_API_KEY"
    _api_version = "2023-06-01"
    _cost_rates = {
        "claude-3-opus": 0.045,
        "claude-opus": 0.045,
    }
    _default_rate = 0.009

    def _init_client(self):
        self._client = requests.Session()
        self._client.headers.update({
            "x-api-key": self.config.api_key,
            "anthropic-version": self._api_version,
            "content-type": "application/json",
        })
        logger.info(f"Anthropic client initialized with model {self.config.model}")

    def _complete(self, prompt, options):
        payload = {
            "model": self.config.model,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if options.top_p != 1.0:
            payload["top_p"] = options.top_p

        try:
            response = self._client.post(
                self.config.base_url,
                json=payload,
                timeout=options.timeout_seconds,
            )
        except requests.Timeout as e:
            raise ProviderCallError(
                self._provider_name,
                f"timed out after {options.timeout_seconds}s",
            ) from e

        if response.status_code >= 400:
            raise ProviderCallError(
                self._provider_name,
                _anthropic_error_message(response),
                upstream_status=response.status_code,
            )

        body = response.json()
        text = "".join(
            block.get("text", "")
            for block in body.get("content", [])
            if block.get("type") == "text"
        )
        usage = body.get("usage", {})
        return GenerationResult(
            text=text,
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            model=self.config.model,
            provider=self.provider_name,
        )


def _anthropic_error_message(response) -> str:
    try:
        return response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return response.text[:500]


GENERATION_BACKENDS = {
    "openai": OpenAIGenerationService,
    "nvidia": NvidiaGenerationService,
    "anthropic": AnthropicGenerationService,
}


def get_generation_service(config: GenerationConfig) -> BaseGenerationService:
    """
    Factory returning the generation backend named by ``config.provider``.

    Raises:
        UnknownProviderError: if the name matches no registered backend
    """
    service_cls = GENERATION_BACKENDS.get(config.provider)
    if service_cls is None:
        raise UnknownProviderError("generation", config.provider, list(GENERATION_BACKENDS))
    return service_cls(config)
