"""Configuration management for the activity memory pipeline.

Settings live in a YAML file and are mapped onto Python dataclasses, one
per section. Missing fields fall back to the dataclass defaults, unknown
fields are ignored, and bounded knobs are validated both on load and on
every runtime update.

Configuration Sections:
- capture: raw capture cadence and analysis segment length
- grouping: activity grouper thresholds and weights
- habits: habit detector windows and thresholds
- projects: project extractor thresholds
- summaries: summary generator settings
- suggestions: suggestion engine timeouts, cooldowns and trigger thresholds
- storage: database and markdown artifact locations
- pipeline: enabled flag and background tick interval
- ai: vision/LLM provider settings
- web: HTTP server settings

Example:
    >>> from recall.config import ConfigManager
    >>> config_mgr = ConfigManager()
    >>> print(config_mgr.config.capture.interval_seconds)
    5
    >>> config_mgr.update('capture', 'segment_seconds', 120)
    True
"""

import dataclasses
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

import yaml

from .errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class CaptureConfig:
    """Capture timing.

    Two separate knobs: how often the screen is sampled, and how long a
    recorded segment is before it is handed to the analyzer.

    Attributes:
        interval_seconds: Raw capture cadence, 1-15 (default: 5)
        segment_seconds: Analysis segment length, 30-300 (default: 60)
    """
    interval_seconds: int = 5
    segment_seconds: int = 60


@dataclass
class GroupingConfig:
    """Activity grouper settings.

    Attributes:
        max_gap_seconds: Idle gap that always starts a new session (default: 300)
        max_duration_seconds: Longest a single session may run (default: 7200)
        merge_threshold: Continuation score needed to merge (default: 0.5)
        continuation_weight: Weight of the AI continuation flag (default: 0.5)
        same_app_weight: Weight of application equality (default: 0.25)
        tag_overlap_weight: Weight of the tag overlap ratio (default: 0.25)
    """
    max_gap_seconds: int = 300
    max_duration_seconds: int = 7200
    merge_threshold: float = 0.5
    continuation_weight: float = 0.5
    same_app_weight: float = 0.25
    tag_overlap_weight: float = 0.25


@dataclass
class HabitsConfig:
    """Habit detector settings.

    Attributes:
        lookback_days: History window scanned per pass (default: 30)
        min_occurrences: Occurrences needed before a habit is recorded (default: 3)
        min_confidence: Confidence needed before a habit is recorded (default: 0.3)
        cluster_gap_minutes: Time-of-day gap that splits clusters (default: 60)
        max_time_std_minutes: Max time-of-day spread for a time habit (default: 90)
        trigger_window_seconds: Max delay between antecedent and action (default: 300)
        sequence_length: n-gram length for sequence habits (default: 3)
        sequence_window_seconds: Max span of one sequence (default: 1800)
        min_window_days: Days of history for full data confidence (default: 7)
        decay_factor: Confidence multiplier for stale habits (default: 0.7)
        remove_threshold: Stale habits below this confidence are removed (default: 0.15)
        interval_hours: Hours between background detection passes (default: 24)
    """
    lookback_days: int = 30
    min_occurrences: int = 3
    min_confidence: float = 0.3
    cluster_gap_minutes: int = 60
    max_time_std_minutes: int = 90
    trigger_window_seconds: int = 300
    sequence_length: int = 3
    sequence_window_seconds: int = 1800
    min_window_days: int = 7
    decay_factor: float = 0.7
    remove_threshold: float = 0.15
    interval_hours: int = 24


@dataclass
class ProjectsConfig:
    """Project extractor settings.

    Attributes:
        min_confidence: Heuristic detections below this are ignored (default: 0.6)
    """
    min_confidence: float = 0.6


@dataclass
class SummariesConfig:
    """Summary generator settings.

    Attributes:
        min_sessions: Sessions needed for a full summary (default: 1)
        daily_hour: Hour after which today's daily summary is generated (default: 23)
        use_ai: Ask the LLM for the narrative paragraph (default: False)
    """
    min_sessions: int = 1
    daily_hour: int = 23
    use_ai: bool = False


@dataclass
class SuggestionsConfig:
    """Suggestion engine settings."""
    timeout_minutes: int = 60
    cooldown_minutes: int = 30
    idle_threshold_minutes: int = 15
    productivity_window: int = 3
    productivity_drop_threshold: float = 2.0
    habit_min_confidence: float = 0.7
    habit_tolerance_minutes: int = 30
    context_switch_threshold: int = 6
    break_after_minutes: int = 90
    project_inactive_days: int = 7


@dataclass
class StorageConfig:
    """Data storage configuration.

    Attributes:
        data_dir: Directory holding the database and markdown artifacts
        db_name: SQLite file name inside data_dir (default: memory.db)
        memory_dir: Markdown artifact directory inside data_dir (default: memory)
        max_retries: Retries for a locked database before giving up (default: 3)
    """
    data_dir: str = "~/activity-recall-data"
    db_name: str = "memory.db"
    memory_dir: str = "memory"
    max_retries: int = 3


@dataclass
class PipelineConfig:
    """Pipeline switches.

    Attributes:
        enabled: Whether the memory pipeline processes new input (default: True)
        tick_seconds: Interval between background maintenance passes (default: 60)
    """
    enabled: bool = True
    tick_seconds: int = 60


@dataclass
class AIConfig:
    """Vision/LLM provider settings.

    Attributes:
        provider: 'ollama' or 'openai' (any OpenAI-compatible endpoint)
        model: Model name sent to the provider
        host: Base URL of the provider
        api_key: Bearer token for OpenAI-compatible providers (optional)
        timeout: Request timeout in seconds
        max_retries: Extra attempts after a failed analysis call
    """
    provider: str = "ollama"
    model: str = "gemma3:12b-it-qat"
    host: str = "http://localhost:11434"
    api_key: str = ""
    timeout: int = 120
    max_retries: int = 2


@dataclass
class WebConfig:
    """Web server configuration.

    Attributes:
        host: Host address to bind to (default: 127.0.0.1)
        port: Port number for the HTTP API (default: 55556)
    """
    host: str = "127.0.0.1"
    port: int = 55556


@dataclass
class Config:
    """Top-level configuration container."""
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    grouping: GroupingConfig = field(default_factory=GroupingConfig)
    habits: HabitsConfig = field(default_factory=HabitsConfig)
    projects: ProjectsConfig = field(default_factory=ProjectsConfig)
    summaries: SummariesConfig = field(default_factory=SummariesConfig)
    suggestions: SuggestionsConfig = field(default_factory=SuggestionsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    web: WebConfig = field(default_factory=WebConfig)

    @property
    def db_path(self) -> Path:
        return Path(self.storage.data_dir).expanduser() / self.storage.db_name

    @property
    def memory_root(self) -> Path:
        return Path(self.storage.data_dir).expanduser() / self.storage.memory_dir


SECTION_TYPES = {
    'capture': CaptureConfig,
    'grouping': GroupingConfig,
    'habits': HabitsConfig,
    'projects': ProjectsConfig,
    'summaries': SummariesConfig,
    'suggestions': SuggestionsConfig,
    'storage': StorageConfig,
    'pipeline': PipelineConfig,
    'ai': AIConfig,
    'web': WebConfig,
}

# Inclusive (min, max) for bounded numeric settings
BOUNDS = {
    ('capture', 'interval_seconds'): (1, 15),
    ('capture', 'segment_seconds'): (30, 300),
    ('grouping', 'max_gap_seconds'): (1, 86400),
    ('grouping', 'max_duration_seconds'): (60, 86400),
    ('grouping', 'merge_threshold'): (0.0, 1.0),
    ('grouping', 'continuation_weight'): (0.0, 1.0),
    ('grouping', 'same_app_weight'): (0.0, 1.0),
    ('grouping', 'tag_overlap_weight'): (0.0, 1.0),
    ('habits', 'lookback_days'): (1, 365),
    ('habits', 'min_occurrences'): (1, 1000),
    ('habits', 'min_confidence'): (0.0, 1.0),
    ('habits', 'sequence_length'): (2, 6),
    ('habits', 'decay_factor'): (0.0, 1.0),
    ('habits', 'remove_threshold'): (0.0, 1.0),
    ('projects', 'min_confidence'): (0.0, 1.0),
    ('summaries', 'min_sessions'): (0, 1000),
    ('summaries', 'daily_hour'): (0, 23),
    ('suggestions', 'timeout_minutes'): (1, 10080),
    ('suggestions', 'cooldown_minutes'): (0, 10080),
    ('suggestions', 'habit_min_confidence'): (0.0, 1.0),
    ('storage', 'max_retries'): (0, 20),
    ('pipeline', 'tick_seconds'): (1, 3600),
    ('ai', 'max_retries'): (0, 10),
}

PROVIDERS = ('ollama', 'openai')


def check_value(section: str, key: str, value) -> None:
    """Validate one setting against its type and bounds.

    Raises:
        ValidationError: If the value has the wrong type or is out of range.
    """
    default = getattr(SECTION_TYPES[section](), key)
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ValidationError(f"{section}.{key} must be a boolean")
    elif isinstance(default, (int, float)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{section}.{key} must be a number")
        if isinstance(default, int) and not isinstance(default, bool) and value != int(value):
            raise ValidationError(f"{section}.{key} must be a whole number")
    elif isinstance(default, str) and not isinstance(value, str):
        raise ValidationError(f"{section}.{key} must be a string")

    bounds = BOUNDS.get((section, key))
    if bounds and not bounds[0] <= value <= bounds[1]:
        raise ValidationError(
            f"{section}.{key}={value} outside allowed range {bounds[0]}-{bounds[1]}"
        )
    if (section, key) == ('ai', 'provider') and value not in PROVIDERS:
        raise ValidationError(f"ai.provider must be one of {', '.join(PROVIDERS)}")


class ConfigManager:
    """Manages configuration loading, saving, and updates.

    Attributes:
        DEFAULT_PATH: Default configuration file location
        path: Actual configuration file path being used
        config: Current configuration object

    Example:
        >>> config_mgr = ConfigManager()
        >>> config_mgr.update('grouping', 'merge_threshold', 0.6)
        True
    """

    DEFAULT_PATH = Path("~/.config/activity-recall/config.yaml").expanduser()

    def __init__(self, path: Optional[Path] = None, config: Optional[Config] = None):
        """Initialize ConfigManager.

        Args:
            path: Custom config file path (uses DEFAULT_PATH if None)
            config: Pre-built Config to use instead of reading the file
        """
        self.path = Path(path).expanduser() if path else self.DEFAULT_PATH
        self.config = config if config is not None else self._load()

    def _load(self) -> Config:
        """Load configuration from YAML file.

        Returns:
            Config object with loaded or default values

        Note:
            Invalid YAML returns default Config. Out-of-range values are
            replaced by their defaults with a warning.
        """
        if not self.path.exists():
            logger.info(f"No config file at {self.path}, using defaults")
            return Config()

        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning(f"Failed to load config from {self.path}: {e}")
            logger.info("Using default configuration")
            return Config()

        logger.info(f"Loaded configuration from {self.path}")
        return self._dict_to_config(data)

    def _dict_to_config(self, data: dict) -> Config:
        """Construct Config from a dictionary, section by section.

        Args:
            data: Dictionary from YAML file

        Returns:
            Config object with values from dict merged with defaults
        """
        def filter_known_fields(section: str, data_dict, dataclass_type) -> dict:
            if not isinstance(data_dict, dict):
                logger.warning(f"Config section '{section}' is not a mapping, using defaults")
                return {}
            known_fields = {f.name for f in dataclasses.fields(dataclass_type)}
            unknown = set(data_dict.keys()) - known_fields
            if unknown:
                logger.debug(f"Ignoring unknown config fields: {unknown}")
            filtered = {}
            for key, value in data_dict.items():
                if key not in known_fields:
                    continue
                try:
                    check_value(section, key, value)
                except ValidationError as e:
                    logger.warning(f"{e}; using default")
                    continue
                filtered[key] = value
            return filtered

        sections = {}
        for name, section_type in SECTION_TYPES.items():
            section_data = filter_known_fields(name, data.get(name) or {}, section_type)
            sections[name] = section_type(**section_data)
        return Config(**sections)

    def save(self) -> None:
        """Save current configuration to YAML file.

        Raises:
            OSError: If file write fails
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w') as f:
                yaml.dump(
                    asdict(self.config),
                    f,
                    default_flow_style=False,
                    sort_keys=False,
                    indent=2
                )
            logger.info(f"Saved configuration to {self.path}")
        except OSError as e:
            logger.error(f"Failed to save config to {self.path}: {e}")
            raise

    def update(self, section: str, key: str, value) -> bool:
        """Update a single configuration value and save.

        Args:
            section: Config section name (e.g., 'capture', 'grouping')
            key: Setting name within section (e.g., 'segment_seconds')
            value: New value to set

        Returns:
            True if value was changed and saved, False if unchanged or the
            section/key does not exist

        Raises:
            ValidationError: If the value is outside the allowed range.
        """
        section_obj = getattr(self.config, section, None)
        if section_obj is None or section not in SECTION_TYPES:
            logger.warning(f"Invalid config section: {section}")
            return False

        if not hasattr(section_obj, key):
            logger.warning(f"Invalid config key: {section}.{key}")
            return False

        check_value(section, key, value)

        old_value = getattr(section_obj, key)
        if old_value != value:
            setattr(section_obj, key, value)
            self.save()
            logger.info(f"Updated {section}.{key}: {old_value} -> {value}")
            return True

        logger.debug(f"No change for {section}.{key} (already {value})")
        return False

    def to_dict(self) -> dict:
        """Convert configuration to dictionary."""
        return asdict(self.config)

    def reload(self) -> None:
        """Reload configuration from file."""
        self.config = self._load()
        logger.info("Configuration reloaded")

    def create_default_file(self) -> None:
        """Create the config file with default values if it doesn't exist."""
        if not self.path.exists():
            self.save()
            logger.info(f"Created default configuration at {self.path}")
        else:
            logger.warning(f"Configuration file already exists at {self.path}")
