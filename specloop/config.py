"""Configuration for specloop.

Provides centralized configuration with sensible defaults and environment
variable overrides for budgeting, iteration limits, the coding agent, and
telemetry.
"""

import os
from dataclasses import dataclass, field

DEFAULT_BUDGET = 4

# Exit codes for the run command (Unix conventions)
EXIT_COMPLETE = 0
EXIT_STUCK = 1
EXIT_MAX_ITERATIONS = 2
EXIT_ERROR = 3


@dataclass
class SpecLoopConfig:
    """Configuration for loop execution.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method.
    """

    # Task selection
    budget: int = DEFAULT_BUDGET

    # Iteration control
    max_iterations: int = 1
    max_all_iterations: int = 100
    stuck_threshold: int = 3
    max_task_attempts: int = 3

    # Coding agent settings
    agent_command: str = "claude"
    model: str | None = None
    idle_timeout_seconds: float = 120.0
    allowed_tools: list[str] | None = None

    # Display limits
    activity_log_size: int = 50
    task_text_limit: int = 100

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "specloop"

    @classmethod
    def from_env(cls) -> "SpecLoopConfig":
        """Load config with environment variable overrides.

        Environment variables:
            SPECLOOP_BUDGET: Override budget (default: 4)
            SPECLOOP_MAX_ITERATIONS: Override max_all_iterations (default: 100)
            SPECLOOP_STUCK_THRESHOLD: Override stuck_threshold (default: 3)
            SPECLOOP_MAX_TASK_ATTEMPTS: Override max_task_attempts (default: 3)
            SPECLOOP_IDLE_TIMEOUT: Override idle_timeout_seconds (default: 120)
            SPECLOOP_AGENT_COMMAND: Override agent_command (default: claude)
            SPECLOOP_MODEL: Override model (default: agent's default)
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
        """
        return cls(
            budget=int(os.getenv("SPECLOOP_BUDGET", str(DEFAULT_BUDGET))),
            max_all_iterations=int(os.getenv("SPECLOOP_MAX_ITERATIONS", "100")),
            stuck_threshold=int(os.getenv("SPECLOOP_STUCK_THRESHOLD", "3")),
            max_task_attempts=int(os.getenv("SPECLOOP_MAX_TASK_ATTEMPTS", "3")),
            idle_timeout_seconds=float(os.getenv("SPECLOOP_IDLE_TIMEOUT", "120")),
            agent_command=os.getenv("SPECLOOP_AGENT_COMMAND", "claude"),
            model=os.getenv("SPECLOOP_MODEL") or None,
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
        )
