from __future__ import annotations


class OwlError(Exception):
    """Base class for failures surfaced by the sandbox manager and agent loop."""

    kind: str = "owl_error"

    def __init__(self, session_key: str, message: str | None = None):
        self.session_key = session_key
        super().__init__(message or f"{self.kind} for session {session_key}")


class NoEnvironment(OwlError):
    """Nothing to acquire for this session; call provision first."""

    kind = "no_environment"


class EnvironmentExpired(NoEnvironment):
    """A previously active environment was found dead and has been discarded."""

    kind = "environment_expired"


class ProvisionFailed(OwlError):
    """The execution provider refused or failed to create an environment."""

    kind = "provision_failed"


class ToolError(OwlError):
    """A single tool invocation failed. Recovered inside the agent loop."""

    kind = "tool_error"


class CompletionFailed(OwlError):
    """The language-model call failed; fatal to the current chat."""

    kind = "completion_failed"
