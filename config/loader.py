"""
CONFIGURATION LOADER

Loads configuration from:
1. Environment variables (for deployment)
2. YAML files (config/settings.yaml, config/credentials.yaml)
3. Dataclass defaults

Environment variables take precedence over YAML files. Every threshold the
engine uses is a named, overridable setting here; nothing is hard-coded in
the detectors or the state machine.
"""

import os
from pathlib import Path
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field, fields
from loguru import logger

import yaml

from core.clock import DEFAULT_FREQUENCY, FrequencyError, parse_frequency_strict


@dataclass
class HypothesisConfig:
    """Lifecycle thresholds for hypotheses."""
    validation_confidence: float = 0.55
    invalidation_confidence: float = 0.35
    validation_win_rate: float = 0.50
    invalidation_win_rate: float = 0.40
    default_min_sample_size: int = 5
    auto_invalidate_confidence: float = 0.25
    auto_validate_confidence: float = 0.75
    default_confidence: float = 0.5
    testable_min_confidence: float = 0.30
    stale_test_days: int = 14
    confidence_history_limit: int = 500


@dataclass
class CriticalFile:
    """A state document that must exist and stay fresh."""
    document: str
    max_age_hours: float


def _default_critical_files() -> List[CriticalFile]:
    return [
        CriticalFile(document="portfolio", max_age_hours=24),
        CriticalFile(document="hypotheses", max_age_hours=48),
        CriticalFile(document="schedule", max_age_hours=2),
    ]


@dataclass
class PriorityConfig:
    """Signal detector thresholds and override tiers."""
    position_loss_warning_pct: float = -15.0
    position_loss_critical_pct: float = -25.0
    near_stop_loss_buffer: float = 1.10
    market_closing_urgent_hours: float = 24.0
    market_closing_critical_hours: float = 6.0
    stuck_hypothesis_hours: float = 48.0
    low_confidence_threshold: float = 0.30
    min_trades_per_week: int = 5
    max_pipeline_failures: int = 3
    max_errors_per_hour: int = 10
    stale_health_check_hours: float = 6.0
    high_urgency_threshold: int = 70
    medium_urgency_threshold: int = 50
    critical_files: List[CriticalFile] = field(default_factory=_default_critical_files)


@dataclass
class PipelineConfig:
    """A registered scripted pipeline."""
    name: str
    command: List[str]
    frequency: str = DEFAULT_FREQUENCY
    priority: str = "medium"
    description: str = ""


@dataclass
class SchedulerConfig:
    """Daemon loop settings."""
    tick_interval_seconds: int = 60
    state_dir: str = "state"
    default_frequency: str = DEFAULT_FREQUENCY
    sync_enabled: bool = False
    sync_remote: str = "origin"
    sync_branch: str = "main"
    pipelines: Dict[str, PipelineConfig] = field(default_factory=dict)


@dataclass
class WorkerConfig:
    """
    External reasoning worker.

    `command` is an argv list; the literal "{prompt}" element is replaced by
    the focused instructions. Without it, instructions go to stdin.
    """
    command: List[str] = field(default_factory=lambda: ["claude", "-p", "{prompt}"])
    cwd: Optional[str] = None


@dataclass
class TelegramConfig:
    """Telegram bot configuration."""
    bot_token: str
    chat_id: int
    enabled: bool = True


@dataclass
class EngineConfig:
    """Everything the daemon needs."""
    hypothesis: HypothesisConfig = field(default_factory=HypothesisConfig)
    priority: PriorityConfig = field(default_factory=PriorityConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    telegram: Optional[TelegramConfig] = None


def _coerce(value: Any, current: Any) -> Any:
    """Coerce an env/YAML value to the type of the dataclass default."""
    if isinstance(current, bool):
        return value in [True, "true", "1", "yes"]
    if isinstance(current, int) and not isinstance(current, bool):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


class ConfigLoader:
    """
    Loads configuration from environment variables and YAML files.

    Priority:
    1. Environment variables (highest)
    2. credentials.yaml
    3. settings.yaml
    4. Default values (lowest)
    """

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        self._yaml_settings: Dict[str, Any] = {}
        self._yaml_credentials: Dict[str, Any] = {}
        self._load_yaml_files()

    def _load_yaml_files(self):
        """Load YAML configuration files if they exist."""
        settings_path = self.config_dir / "settings.yaml"
        credentials_path = self.config_dir / "credentials.yaml"

        if settings_path.exists():
            try:
                with open(settings_path, 'r') as f:
                    self._yaml_settings = yaml.safe_load(f) or {}
                logger.debug("Loaded settings.yaml")
            except Exception as e:
                logger.warning(f"Could not load settings.yaml: {e}")

        if credentials_path.exists():
            try:
                with open(credentials_path, 'r') as f:
                    self._yaml_credentials = yaml.safe_load(f) or {}
                logger.debug("Loaded credentials.yaml")
            except Exception as e:
                logger.warning(f"Could not load credentials.yaml: {e}")

    def _get_env_or_yaml(
        self,
        env_key: str,
        yaml_path: list,
        default: Any = None,
        credentials: bool = False
    ) -> Any:
        """
        Get value from environment variable or YAML file.

        Args:
            env_key: Environment variable name
            yaml_path: Path to value in YAML (e.g., ["hypothesis", "validation_confidence"])
            default: Default value if not found
            credentials: If True, look in credentials.yaml, else settings.yaml
        """
        env_value = os.environ.get(env_key)
        if env_value is not None:
            return env_value

        yaml_data = self._yaml_credentials if credentials else self._yaml_settings

        try:
            value = yaml_data
            for key in yaml_path:
                value = value[key]

            # Don't return placeholder values
            if isinstance(value, str) and "YOUR_" in value:
                return default

            return value
        except (KeyError, TypeError):
            return default

    def _load_section(self, section: str, cls, skip: tuple = ()):
        """
        Build a flat dataclass section.

        Each field `x` of section `s` is read from env `S_X` or YAML `s.x`.
        """
        instance = cls()
        for f in fields(cls):
            if f.name in skip:
                continue
            current = getattr(instance, f.name)
            raw = self._get_env_or_yaml(
                f"{section.upper()}_{f.name.upper()}",
                [section, f.name],
                default=None
            )
            if raw is None:
                continue
            try:
                setattr(instance, f.name, _coerce(raw, current))
            except (ValueError, TypeError):
                logger.warning(f"Invalid value for {section}.{f.name}: {raw!r}, keeping {current!r}")
        return instance

    def get_hypothesis_config(self) -> HypothesisConfig:
        return self._load_section("hypothesis", HypothesisConfig)

    def get_priority_config(self) -> PriorityConfig:
        config = self._load_section("priority", PriorityConfig, skip=("critical_files",))
        files = self._get_env_or_yaml("PRIORITY_CRITICAL_FILES", ["priority", "critical_files"])
        if isinstance(files, list):
            config.critical_files = [
                CriticalFile(document=str(f["document"]), max_age_hours=float(f["max_age_hours"]))
                for f in files
                if isinstance(f, dict) and "document" in f and "max_age_hours" in f
            ]
        return config

    def get_pipelines(self, default_frequency: str) -> Dict[str, PipelineConfig]:
        """
        Registered pipelines from settings.yaml.

        A pipeline with an unparseable frequency is kept and falls back to the
        default frequency; the scheduler never refuses to start over it.
        """
        scheduler = self._yaml_settings.get("scheduler") or {}
        raw = scheduler.get("pipelines") or {}
        pipelines: Dict[str, PipelineConfig] = {}
        for name, spec in raw.items():
            if not isinstance(spec, dict) or not spec.get("command"):
                logger.warning(f"Pipeline {name} has no command, skipping")
                continue
            command = spec["command"]
            if isinstance(command, str):
                command = command.split()
            frequency = str(spec.get("frequency", default_frequency))
            try:
                parse_frequency_strict(frequency)
            except FrequencyError:
                logger.warning(f"Pipeline {name} has invalid frequency {frequency!r}, using {default_frequency}")
                frequency = default_frequency
            pipelines[name] = PipelineConfig(
                name=name,
                command=[str(part) for part in command],
                frequency=frequency,
                priority=str(spec.get("priority", "medium")),
                description=str(spec.get("description", "")),
            )
        return pipelines

    def get_scheduler_config(self) -> SchedulerConfig:
        config = self._load_section("scheduler", SchedulerConfig, skip=("pipelines",))
        try:
            parse_frequency_strict(config.default_frequency)
        except FrequencyError:
            logger.warning(f"Invalid default frequency {config.default_frequency!r}, using {DEFAULT_FREQUENCY}")
            config.default_frequency = DEFAULT_FREQUENCY
        config.pipelines = self.get_pipelines(config.default_frequency)
        return config

    def get_worker_config(self) -> WorkerConfig:
        config = WorkerConfig()
        command = self._get_env_or_yaml("WORKER_COMMAND", ["worker", "command"])
        if isinstance(command, str):
            command = command.split()
        if command:
            config.command = [str(part) for part in command]
        config.cwd = self._get_env_or_yaml("WORKER_CWD", ["worker", "cwd"], default=None)
        return config

    def get_telegram_config(self) -> Optional[TelegramConfig]:
        """Get Telegram bot configuration."""
        bot_token = self._get_env_or_yaml(
            "TELEGRAM_BOT_TOKEN",
            ["notifications", "telegram", "bot_token"],
            credentials=True
        )

        chat_id = self._get_env_or_yaml(
            "TELEGRAM_CHAT_ID",
            ["notifications", "telegram", "chat_id"],
            credentials=True
        )

        if not bot_token or not chat_id:
            logger.info("Telegram not configured, notifications go to the log")
            return None

        try:
            chat_id = int(chat_id)
        except (ValueError, TypeError):
            logger.warning(f"Invalid Telegram chat_id: {chat_id}")
            return None

        return TelegramConfig(
            bot_token=bot_token,
            chat_id=chat_id,
            enabled=True
        )

    def load(self) -> EngineConfig:
        return EngineConfig(
            hypothesis=self.get_hypothesis_config(),
            priority=self.get_priority_config(),
            scheduler=self.get_scheduler_config(),
            worker=self.get_worker_config(),
            telegram=self.get_telegram_config(),
        )


# Global config instance
_config: Optional[EngineConfig] = None


def get_config(config_dir: str = "config") -> EngineConfig:
    """Get the global engine configuration."""
    global _config
    if _config is None:
        _config = ConfigLoader(config_dir).load()
    return _config
