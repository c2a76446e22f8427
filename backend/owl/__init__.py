from owl.activity import ActivityBroadcaster, ActivityEvent, ActivityKind
from owl.config import OwlSettings
from owl.errors import (
    CompletionFailed,
    EnvironmentExpired,
    NoEnvironment,
    OwlError,
    ProvisionFailed,
    ToolError,
)
from owl.service import OwlService


__all__ = [
    "ActivityBroadcaster",
    "ActivityEvent",
    "ActivityKind",
    "CompletionFailed",
    "EnvironmentExpired",
    "NoEnvironment",
    "OwlError",
    "OwlService",
    "OwlSettings",
    "ProvisionFailed",
    "ToolError",
]
