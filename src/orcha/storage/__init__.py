"""Cross-invocation persistence for Orcha."""

from .instances import (
    InstanceRegistry,
    generate_instance_id,
    generate_instance_id_with_hash,
)
from .models import InstanceInfo, SessionMetadata
from .sessions import SessionStore

__all__ = [
    "InstanceInfo",
    "InstanceRegistry",
    "SessionMetadata",
    "SessionStore",
    "generate_instance_id",
    "generate_instance_id_with_hash",
]
