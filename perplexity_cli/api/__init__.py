"""Perplexity chat-completion API client."""

from .perplexity import (
    VALID_MODELS,
    PerplexityAPIError,
    PerplexityClient,
    PerplexityConnectionError,
    classify_api_error,
    is_valid_model,
)

__all__ = [
    "VALID_MODELS",
    "PerplexityAPIError",
    "PerplexityClient",
    "PerplexityConnectionError",
    "classify_api_error",
    "is_valid_model",
]
