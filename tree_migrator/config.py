import hashlib
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, List, Optional

import click

from .migration.engine import MigrationOptions, available_parallelism
from .migration.progress import ProgressSink
from .utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = "~/.tree-migrator/state"


@dataclass
class TransferConfig:
    buffer_size_kb: int = 128
    hash_algorithm: str = "sha256"


@dataclass
class MigrationConfig:
    workers: int = field(default_factory=available_parallelism)
    verify: bool = True
    preserve_timestamps: bool = True
    allow_existing: bool = False
    skip_existing: bool = False


@dataclass
class StateConfig:
    state_dir: str = DEFAULT_STATE_DIR


@dataclass
class Config:
    transfer: TransferConfig = field(default_factory=TransferConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    state: StateConfig = field(default_factory=StateConfig)

    def validate(self) -> None:
        errors: List[str] = []
        if self.migration.workers <= 0:
            errors.append("migration.workers must be > 0")
        if self.transfer.buffer_size_kb <= 0:
            errors.append("transfer.buffer_size_kb must be > 0")
        if self.transfer.hash_algorithm not in hashlib.algorithms_available:
            errors.append(
                f"transfer.hash_algorithm '{self.transfer.hash_algorithm}' "
                "is not supported"
            )
        if not self.state.state_dir:
            errors.append("state.state_dir must not be empty")
        if errors:
            raise ConfigurationError(
                "Configuration validation failed:\n"
                + "\n".join(f"  - {e}" for e in errors)
            )

    @property
    def state_dir(self) -> Path:
        return Path(self.state.state_dir).expanduser()

    def to_options(
        self,
        copy: bool = True,
        progress_sink: Optional[ProgressSink] = None,
    ) -> MigrationOptions:
        return MigrationOptions(
            copy=copy,
            preserve_timestamps=self.migration.preserve_timestamps,
            verify=self.migration.verify,
            workers=self.migration.workers,
            allow_existing=self.migration.allow_existing,
            skip_existing=self.migration.skip_existing,
            buffer_size=self.transfer.buffer_size_kb * 1024,
            progress_sink=progress_sink,
        )


def validate_config(config: Config) -> None:
    config.validate()


def config_to_dict(config: Config) -> dict:
    return asdict(config)


def config_from_dict(data: dict) -> Config:
    transfer_data = data.get("transfer", {})
    transfer = TransferConfig(
        buffer_size_kb=transfer_data.get("buffer_size_kb", 128),
        hash_algorithm=transfer_data.get("hash_algorithm", "sha256"),
    )

    mig_data = data.get("migration", {})
    migration = MigrationConfig(
        workers=mig_data.get("workers", available_parallelism()),
        verify=mig_data.get("verify", True),
        preserve_timestamps=mig_data.get("preserve_timestamps", True),
        allow_existing=mig_data.get("allow_existing", False),
        skip_existing=mig_data.get("skip_existing", False),
    )

    state_data = data.get("state", {})
    state = StateConfig(state_dir=state_data.get("state_dir", DEFAULT_STATE_DIR))

    return Config(transfer=transfer, migration=migration, state=state)


class ConfigManager:
    """Manages configuration loading, saving, and access for the tree migrator."""

    DEFAULT_CONFIG_DIR = Path.home() / ".tree-migrator"
    DEFAULT_CONFIG_FILE = "config.json"

    def __init__(self, config_path: Optional[Path] = None) -> None:
        self._config_path = config_path or (
            self.DEFAULT_CONFIG_DIR / self.DEFAULT_CONFIG_FILE
        )
        self._config: Optional[Config] = None

    @property
    def config_path(self) -> Path:
        return self._config_path

    @property
    def config(self) -> Config:
        if self._config is None:
            self._config = Config()
        return self._config

    def ensure_config_dir(self) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Config:
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                "Run 'tree-migrator config' to create one."
            )

        try:
            raw = self._config_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration file: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Invalid JSON in configuration file {self._config_path}: {e}"
            ) from e

        config = config_from_dict(data)
        apply_env_overrides(config)
        config.validate()
        self._config = config
        logger.info("Configuration loaded from %s", self._config_path)
        return config

    def load_or_default(self) -> Config:
        """Load the config file if there is one, else defaults plus env overrides."""
        if self.exists():
            return self.load()
        config = Config()
        apply_env_overrides(config)
        config.validate()
        self._config = config
        return config

    def save(self) -> None:
        self.ensure_config_dir()
        if self._config is None:
            self._config = Config()
        data = config_to_dict(self._config)
        try:
            self._config_path.write_text(
                json.dumps(data, indent=2) + "\n", encoding="utf-8"
            )
        except OSError as e:
            raise ConfigurationError(f"Failed to write configuration file: {e}") from e
        logger.info("Configuration saved to %s", self._config_path)

    def get(self, key: str, default: Any = None) -> Any:
        if self._config is None:
            try:
                self.load()
            except ConfigurationError:
                self._config = Config()
        segments = key.split(".")
        obj: Any = self._config
        for segment in segments:
            if not hasattr(obj, segment):
                return default
            obj = getattr(obj, segment)
        return obj

    def set(self, key: str, value: Any) -> None:
        if self._config is None:
            try:
                self.load()
            except ConfigurationError:
                self._config = Config()

        segments = key.split(".")
        obj: Any = self._config
        for segment in segments[:-1]:
            if not hasattr(obj, segment):
                raise ConfigurationError(
                    f"Invalid configuration key: {key} "
                    f"(unknown segment '{segment}')",
                    config_key=key,
                )
            obj = getattr(obj, segment)

        final = segments[-1]
        if not hasattr(obj, final):
            raise ConfigurationError(
                f"Invalid configuration key: {key} (unknown segment '{final}')",
                config_key=key,
            )
        current = getattr(obj, final)
        setattr(obj, final, _coerce(value, current, key))

    def get_or_prompt(self, key: str, prompt_text: str) -> Any:
        existing = self.get(key)
        if existing is not None and existing != "":
            value = click.prompt(prompt_text, default=existing)
        else:
            value = click.prompt(prompt_text)
        self.set(key, value)
        return self.get(key)

    def exists(self) -> bool:
        return self._config_path.exists()


def apply_env_overrides(config: Config) -> None:
    workers = os.environ.get("TREE_MIGRATOR_WORKERS")
    if workers:
        try:
            config.migration.workers = int(workers)
        except ValueError as e:
            raise ConfigurationError(
                f"TREE_MIGRATOR_WORKERS must be an integer, got '{workers}'",
                config_key="migration.workers",
            ) from e
        logger.debug(
            "Overriding migration.workers from TREE_MIGRATOR_WORKERS"
        )

    state_dir = os.environ.get("TREE_MIGRATOR_STATE_DIR")
    if state_dir:
        config.state.state_dir = state_dir
        logger.debug(
            "Overriding state.state_dir from TREE_MIGRATOR_STATE_DIR"
        )


def _coerce(value: Any, current: Any, key: str) -> Any:
    """Convert prompt/CLI strings to the type of the field they replace."""
    if not isinstance(value, str) or isinstance(current, str):
        return value
    if isinstance(current, bool):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "y", "on"):
            return True
        if lowered in ("0", "false", "no", "n", "off"):
            return False
        raise ConfigurationError(f"Expected a boolean for {key}, got '{value}'", key)
    if isinstance(current, int):
        try:
            return int(value)
        except ValueError as e:
            raise ConfigurationError(
                f"Expected an integer for {key}, got '{value}'", key
            ) from e
    return value
