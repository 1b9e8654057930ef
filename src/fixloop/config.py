"""Configuration — FixloopConfig from fixloop.yaml.

Sections: engine, poller, metrics, plus a top-level state_dir.
A missing file means defaults. Environment overrides win over the file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from fixloop.engine import APPROVAL_MODES
from fixloop.schemas import PRIORITY_ORDER, WorkSource
from fixloop.test_harness import DEFAULT_COVERAGE_COMMAND, DEFAULT_TEST_COMMAND
from fixloop.workflows import ConfigurationError

CONFIG_FILENAME = "fixloop.yaml"


@dataclass
class EngineConfig:
    """Phase engine settings."""
    approval_mode: str = "after-each-phase"   # after-each-phase | at-end | none
    max_concurrent_runs: int = 4
    max_budget_usd: float = 10.00             # per run, 0 = unlimited
    daily_budget_usd: float = 50.00           # 0 = unlimited
    working_directory: str = "."
    test_command: str = DEFAULT_TEST_COMMAND
    coverage_command: str = DEFAULT_COVERAGE_COMMAND
    coverage_threshold: float = 80.0
    hook_timeout: int = 120                   # seconds per test command
    fix_agents: list[str] = field(default_factory=lambda: ["dev"])


@dataclass
class PollerConfig:
    """Work poller settings."""
    enabled: bool = True
    poll_interval: float = 60.0               # seconds between ticks
    max_queue_size: int = 100
    auto_handle_low_tier: bool = False        # start tier 1-2 work on discovery
    enabled_sources: list[str] = field(default_factory=lambda: [s.value for s in WorkSource])
    min_priority: str = "low"


@dataclass
class MetricsConfig:
    max_stored_cycles: int = 1000


@dataclass
class FixloopConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    state_dir: str = ".fixloop"


def _engine_config(raw: dict) -> EngineConfig:
    return EngineConfig(
        approval_mode=raw.get("approval_mode", EngineConfig.approval_mode),
        max_concurrent_runs=raw.get("max_concurrent_runs", EngineConfig.max_concurrent_runs),
        max_budget_usd=raw.get("max_budget_usd", EngineConfig.max_budget_usd),
        daily_budget_usd=raw.get("daily_budget_usd", EngineConfig.daily_budget_usd),
        working_directory=raw.get("working_directory", "."),
        test_command=raw.get("test_command", DEFAULT_TEST_COMMAND),
        coverage_command=raw.get("coverage_command", DEFAULT_COVERAGE_COMMAND),
        coverage_threshold=raw.get("coverage_threshold", EngineConfig.coverage_threshold),
        hook_timeout=raw.get("hook_timeout", EngineConfig.hook_timeout),
        fix_agents=raw.get("fix_agents", ["dev"]),
    )


def _poller_config(raw: dict) -> PollerConfig:
    return PollerConfig(
        enabled=raw.get("enabled", True),
        poll_interval=raw.get("poll_interval", PollerConfig.poll_interval),
        max_queue_size=raw.get("max_queue_size", PollerConfig.max_queue_size),
        auto_handle_low_tier=raw.get("auto_handle_low_tier", False),
        enabled_sources=raw.get("enabled_sources", PollerConfig().enabled_sources),
        min_priority=raw.get("min_priority", "low"),
    )


def load_config(config_path: str | Path | None = None) -> FixloopConfig:
    """Load config from fixloop.yaml, then apply environment overrides."""
    if config_path is None:
        config_path = Path.cwd() / CONFIG_FILENAME

    config_path = Path(config_path)
    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{config_path}: expected a mapping at top level")

    config = FixloopConfig(
        engine=_engine_config(raw.get("engine") or {}),
        poller=_poller_config(raw.get("poller") or {}),
        metrics=MetricsConfig(
            max_stored_cycles=(raw.get("metrics") or {}).get(
                "max_stored_cycles", MetricsConfig.max_stored_cycles,
            ),
        ),
        state_dir=raw.get("state_dir", ".fixloop"),
    )
    apply_env_overrides(config)
    validate_config(config)
    return config


def apply_env_overrides(config: FixloopConfig, environ: dict[str, str] | None = None) -> FixloopConfig:
    env = os.environ if environ is None else environ
    try:
        if env.get("FIXLOOP_MAX_BUDGET"):
            config.engine.max_budget_usd = float(env["FIXLOOP_MAX_BUDGET"])
        if env.get("FIXLOOP_MAX_CONCURRENT"):
            config.engine.max_concurrent_runs = int(env["FIXLOOP_MAX_CONCURRENT"])
    except ValueError as e:
        raise ConfigurationError(f"Bad environment override: {e}") from e
    if env.get("FIXLOOP_APPROVAL_MODE"):
        config.engine.approval_mode = env["FIXLOOP_APPROVAL_MODE"]
    if env.get("FIXLOOP_STATE_DIR"):
        config.state_dir = env["FIXLOOP_STATE_DIR"]
    return config


def validate_config(config: FixloopConfig) -> None:
    """Raise ConfigurationError on the first out-of-range value."""
    engine, poller = config.engine, config.poller
    if engine.approval_mode not in APPROVAL_MODES:
        raise ConfigurationError(
            f"approval_mode must be one of {', '.join(APPROVAL_MODES)}, got {engine.approval_mode!r}"
        )
    if engine.max_concurrent_runs < 1:
        raise ConfigurationError("max_concurrent_runs must be at least 1")
    if engine.max_budget_usd < 0 or engine.daily_budget_usd < 0:
        raise ConfigurationError("Budgets must be non-negative")
    if not 0 <= engine.coverage_threshold <= 100:
        raise ConfigurationError("coverage_threshold must be between 0 and 100")
    if engine.hook_timeout <= 0:
        raise ConfigurationError("hook_timeout must be positive")
    if poller.poll_interval <= 0:
        raise ConfigurationError("poll_interval must be positive")
    if poller.max_queue_size < 1:
        raise ConfigurationError("max_queue_size must be at least 1")
    if poller.min_priority not in PRIORITY_ORDER:
        raise ConfigurationError(f"Unknown min_priority {poller.min_priority!r}")
    unknown = set(poller.enabled_sources) - {s.value for s in WorkSource}
    if unknown:
        raise ConfigurationError(f"Unknown work sources: {', '.join(sorted(unknown))}")
    if config.metrics.max_stored_cycles < 1:
        raise ConfigurationError("max_stored_cycles must be at least 1")
