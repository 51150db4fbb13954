"""
Hollon Orchestrator - Configuration
===================================

Configuration classes for the task orchestration engine.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ModelConfig:
    """LLM model configuration for the decision oracle."""
    provider: str  # "anthropic", "openai", "openrouter", "local"
    model_name: str
    temperature: float = 0.3
    max_tokens: Optional[int] = None


@dataclass
class HierarchyLimits:
    """Decomposition limits for the task tree."""
    max_depth: int = 3
    max_subtasks_per_parent: int = 10


@dataclass
class BackoffConfig:
    """Exponential backoff applied after consecutive task failures."""
    initial_delay_seconds: float = 300.0
    exponential_base: float = 2.0
    max_delay_seconds: float = 3600.0
    max_auto_retries: int = 3

    def delay_for(self, consecutive_failures: int) -> float:
        """Backoff in seconds for the n-th consecutive failure (n >= 1)."""
        n = max(consecutive_failures, 1)
        delay = self.initial_delay_seconds * (self.exponential_base ** (n - 1))
        return min(delay, self.max_delay_seconds)


@dataclass
class ReviewConfig:
    """Bounded review cycle settings."""
    max_review_cycles: int = 3


@dataclass
class OracleConfig:
    """Decision oracle (planner / reviewer / redistributor) settings."""
    model: ModelConfig = field(default_factory=lambda: ModelConfig(
        provider="anthropic",
        model_name="claude-3-5-sonnet-20241022",
        temperature=0.3
    ))
    timeout_seconds: float = 60.0


@dataclass
class OrchestratorConfig:
    """Main orchestrator configuration."""

    limits: HierarchyLimits = field(default_factory=HierarchyLimits)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)

    # Durable store (SqliteTaskStore)
    db_path: str = "orchestrator.db"

    # Feature flags
    enable_metrics: bool = True

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Build a config, applying HOLLON_* environment overrides."""
        config = cls()

        if os.getenv("HOLLON_MAX_DEPTH"):
            config.limits.max_depth = int(os.environ["HOLLON_MAX_DEPTH"])
        if os.getenv("HOLLON_MAX_SUBTASKS"):
            config.limits.max_subtasks_per_parent = int(os.environ["HOLLON_MAX_SUBTASKS"])
        if os.getenv("HOLLON_MAX_REVIEW_CYCLES"):
            config.review.max_review_cycles = int(os.environ["HOLLON_MAX_REVIEW_CYCLES"])
        if os.getenv("HOLLON_ORACLE_TIMEOUT"):
            config.oracle.timeout_seconds = float(os.environ["HOLLON_ORACLE_TIMEOUT"])
        if os.getenv("HOLLON_ORACLE_PROVIDER"):
            config.oracle.model.provider = os.environ["HOLLON_ORACLE_PROVIDER"]
        if os.getenv("HOLLON_ORACLE_MODEL"):
            config.oracle.model.model_name = os.environ["HOLLON_ORACLE_MODEL"]
        if os.getenv("HOLLON_DB_PATH"):
            config.db_path = os.environ["HOLLON_DB_PATH"]

        return config
