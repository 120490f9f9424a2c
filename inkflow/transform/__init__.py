"""Pluggable text formatting / translation backends."""

from .base import TransformProvider, output_token_budget
from .factory import ProviderType, create_provider, create_provider_from_config
from .languages import normalize_language

__all__ = [
    "ProviderType",
    "TransformProvider",
    "create_provider",
    "create_provider_from_config",
    "normalize_language",
    "output_token_budget",
]
