from .auth import RotatingAuth
from .env import load_keyconfigs_from_env
from .manager import AsyncRotationManager, RotationManager, RotationStatus
from .policies import (
    FirstValidPolicy,
    LeastUsedPolicy,
    RoundRobinPolicy,
    SelectionPolicy,
    coerce_policy,
)
from .state import KeyEntry
from .storage import (
    BlobStore,
    JsonFileBlobStore,
    KeyStore,
    MemoryBlobStore,
    PersistenceErrors,
    storage_key,
)
from .types import AuthConfig, KeyConfig, NoActiveKeyError, Result, RotationConfig
from .wrappers import (
    awith_rotating_key,
    awith_rotating_key_result,
    with_rotating_key,
    with_rotating_key_result,
)

__all__ = [
    "KeyEntry",
    "KeyConfig",
    "RotationConfig",
    "AuthConfig",
    "Result",
    "NoActiveKeyError",
    "BlobStore",
    "MemoryBlobStore",
    "JsonFileBlobStore",
    "KeyStore",
    "PersistenceErrors",
    "storage_key",
    "RotationManager",
    "AsyncRotationManager",
    "RotationStatus",
    "SelectionPolicy",
    "FirstValidPolicy",
    "RoundRobinPolicy",
    "LeastUsedPolicy",
    "coerce_policy",
    "RotatingAuth",
    "with_rotating_key",
    "with_rotating_key_result",
    "awith_rotating_key",
    "awith_rotating_key_result",
    "load_keyconfigs_from_env",
]
