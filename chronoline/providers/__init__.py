"""Model backend layer.

Every model call in chronoline goes through a ModelBackend session.
LiteLLMBackend is the production implementation.
"""

from chronoline.providers.base import Generation, ModelBackend, ModelSession
from chronoline.providers.litellm_provider import LiteLLMBackend
from chronoline.providers.registry import load_app_config, load_models, validate_config

__all__ = [
    "Generation",
    "LiteLLMBackend",
    "ModelBackend",
    "ModelSession",
    "load_app_config",
    "load_models",
    "validate_config",
]
