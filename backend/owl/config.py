import logging
import os
import sys

from dotenv import load_dotenv
from pydantic import BaseModel


current_dir = os.path.dirname(os.path.abspath(__file__))
backend_dir = os.path.dirname(current_dir)

DEFAULT_BASE_URL = "https://ai-gateway.vercel.sh/v1"
DEFAULT_MODEL = "anthropic/claude-sonnet-4.5"

# Keep-alive probes fire at this fraction of the sandbox lifetime budget
KEEPALIVE_RATIO = 12


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class OwlSettings(BaseModel):
    """Runtime settings for the sandbox manager, agent loop and HTTP surface.

    Timing fields are in seconds. The keep-alive interval defaults to 1/12 of
    the lifetime budget so one missed probe never expires a sandbox but two
    consecutive misses do.
    """

    # Sandbox lifecycle
    lifetime_budget_seconds: float = 3600.0
    keepalive_interval_seconds: float = 300.0
    probe_timeout_seconds: float = 5.0
    probe_grace_seconds: float = 2.0
    create_timeout_seconds: float = 120.0
    command_timeout_seconds: float = 60.0
    destroy_timeout_seconds: float = 15.0
    runtime: str = "node22"
    preview_port: int = 3000
    workdir: str = "app"

    # Agent loop
    max_rounds: int = 25
    model: str = DEFAULT_MODEL
    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    completion_timeout_seconds: float = 120.0

    # Activity stream
    activity_history_limit: int = 500

    log_level: str = "INFO"

    @property
    def completion_configured(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def from_env(cls) -> "OwlSettings":
        """Load settings from the process environment (and backend/.env if present)."""
        load_dotenv(os.path.join(backend_dir, ".env"), override=False)

        budget = _env_float("OWL_SANDBOX_TIMEOUT_SECONDS", 3600.0)
        return cls(
            lifetime_budget_seconds=budget,
            keepalive_interval_seconds=_env_float(
                "OWL_KEEPALIVE_INTERVAL_SECONDS", budget / KEEPALIVE_RATIO
            ),
            probe_timeout_seconds=_env_float("OWL_PROBE_TIMEOUT_SECONDS", 5.0),
            probe_grace_seconds=_env_float("OWL_PROBE_GRACE_SECONDS", 2.0),
            create_timeout_seconds=_env_float("OWL_CREATE_TIMEOUT_SECONDS", 120.0),
            command_timeout_seconds=_env_float("OWL_COMMAND_TIMEOUT_SECONDS", 60.0),
            destroy_timeout_seconds=_env_float("OWL_DESTROY_TIMEOUT_SECONDS", 15.0),
            runtime=os.getenv("OWL_SANDBOX_RUNTIME", "node22"),
            preview_port=_env_int("OWL_PREVIEW_PORT", 3000),
            workdir=os.getenv("OWL_SANDBOX_WORKDIR", "app"),
            max_rounds=_env_int("OWL_MAX_ROUNDS", 25),
            model=os.getenv("OWL_MODEL") or os.getenv("DEFAULT_MODEL") or DEFAULT_MODEL,
            api_key=(
                os.getenv("AI_GATEWAY_API_KEY")
                or os.getenv("VERCEL_OIDC_TOKEN")
                or os.getenv("OPENAI_API_KEY")
            ),
            base_url=(
                os.getenv("AI_GATEWAY_BASE_URL")
                or os.getenv("OPENAI_BASE_URL")
                or DEFAULT_BASE_URL
            ),
            completion_timeout_seconds=_env_float("OWL_COMPLETION_TIMEOUT_SECONDS", 120.0),
            activity_history_limit=_env_int("OWL_ACTIVITY_HISTORY_LIMIT", 500),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def validate_timing(self) -> None:
        """Fail fast on timeouts that would let a probe outlive its interval."""
        if not (
            0 < self.probe_timeout_seconds
            < self.keepalive_interval_seconds
            < self.lifetime_budget_seconds
        ):
            raise ValueError(
                "expected probe_timeout < keepalive_interval < lifetime_budget, got "
                f"{self.probe_timeout_seconds} / {self.keepalive_interval_seconds} / "
                f"{self.lifetime_budget_seconds}"
            )
        if self.command_timeout_seconds >= self.lifetime_budget_seconds:
            raise ValueError("command_timeout_seconds must be below the lifetime budget")
        if self.max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        if self.activity_history_limit < 1:
            raise ValueError("activity_history_limit must be at least 1")


def configure_logging(level: str | None = None) -> None:
    if logging.getLogger().handlers:
        return
    logging.basicConfig(
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stdout,
    )
