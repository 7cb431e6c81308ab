from typing import TYPE_CHECKING

from .client import RotatingClient
from .usage_manager import UsageManager
from .fingerprint import FingerprintCache
from .credential_manager import CredentialPool, parse_authorization

if TYPE_CHECKING:
    from .model_definitions import ModelDefinitions

__all__ = [
    "RotatingClient",
    "UsageManager",
    "FingerprintCache",
    "CredentialPool",
    "parse_authorization",
    "ModelDefinitions",
]


def __getattr__(name):
    """Lazy-load ModelDefinitions; only the app's catalog routes need it."""
    if name == "ModelDefinitions":
        from .model_definitions import ModelDefinitions
        return ModelDefinitions
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
