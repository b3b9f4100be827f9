"""
Error taxonomy for the legal study assistant.

Every error carries a stable ``category`` tag and the HTTP status the API
layer reports for it. Messages shown to users come from
``PUBLIC_MESSAGES``; provider bodies and tracebacks stay in the logs.
"""

from typing import Optional


PUBLIC_MESSAGES = {
    "validation": "The request is invalid.",
    "insufficient-context": "Not enough reference material was found to answer.",
    "provider-unavailable": "The answering service is temporarily unavailable. Please try again later.",
    "internal": "An internal error occurred. Please try again later.",
}


class LegalAssistantError(Exception):
    """Base class for all assistant errors."""

    category: str = "internal"
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def public_message(self) -> str:
        return PUBLIC_MESSAGES.get(self.category, PUBLIC_MESSAGES["internal"])


class InvalidRequestError(LegalAssistantError):
    """Malformed or missing request input. Raised before any external call."""

    category = "validation"
    status_code = 400

    @property
    def public_message(self) -> str:
        # Validation messages describe the caller's own input, safe to show.
        return self.message


class InsufficientContextError(LegalAssistantError):
    """Raised only by callers that opt out of the fallback answer."""

    category = "insufficient-context"
    status_code = 200


class ProviderUnavailableError(LegalAssistantError):
    """A backend is not configured (e.g. missing API key)."""

    category = "provider-unavailable"
    status_code = 503

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class UnknownProviderError(ProviderUnavailableError):
    """The configured backend name matches no registered backend."""

    def __init__(self, kind: str, name: str, known: list[str]):
        super().__init__(
            f"Unknown {kind} provider '{name}'. Known providers: {', '.join(sorted(known))}",
            provider=name,
        )
        self.kind = kind


class ProviderCallError(LegalAssistantError):
    """
    Transport failure or non-success response from an external backend.

    The raw provider detail is preserved for diagnostics but never
    returned to API callers.
    """

    category = "provider-unavailable"
    status_code = 503

    def __init__(
        self,
        provider: str,
        detail: str,
        upstream_status: Optional[int] = None,
    ):
        status = f" (HTTP {upstream_status})" if upstream_status else ""
        super().__init__(f"{provider} call failed{status}: {detail}")
        self.provider = provider
        self.detail = detail
        self.upstream_status = upstream_status


class DimensionMismatchError(LegalAssistantError):
    """Vector length does not match the configured dimensionality."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class PipelineError(LegalAssistantError):
    """Unexpected failure inside the RAG pipeline."""

    def __init__(self, message: str, state: Optional[str] = None):
        super().__init__(message)
        self.state = state
