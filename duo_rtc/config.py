"""Configuration management for duo-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (DUO_RTC_SIGNALING_WS, DUO_RTC_ICE_SERVERS, DUO_RTC_ANSWER_TIMEOUT)
3. TOML configuration file
4. Default values (production environment)

Configuration files are loaded from:
- duo-rtc.toml in current working directory
- ~/.duo-rtc/config.toml

Environment selection via DUO_RTC_ENV (development, staging, production).
Defaults to production if not set.

Example TOML config:
    [environments.development]
    signaling_websocket = "ws://localhost:8080"
    ice_servers = ["stun:stun.l.google.com:19302"]
    answer_timeout = 30

    [capture]
    width = 1280
    height = 720
    video_device = "/dev/video0"
    video_format = "v4l2"
"""

import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import List, Optional, get_args

from loguru import logger

from duo_rtc.exceptions import ConfigError


# Default signaling relay (see `duo-rtc serve`)
DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8080"

# Public STUN servers; no TURN relay is configured
DEFAULT_ICE_SERVERS = [
    "stun:openrelay.metered.ca:80",
    "stun:stun.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


@dataclass
class CaptureSettings:
    """Local capture request and device selection.

    Device names and formats left as None are resolved per platform by
    `duo_rtc.media.MediaCapture`.
    """

    width: int = 1280
    height: int = 720
    framerate: int = 30
    audio: bool = True
    video_device: Optional[str] = None
    video_format: Optional[str] = None
    audio_device: Optional[str] = None
    audio_format: Optional[str] = None
    display_device: Optional[str] = None
    display_format: Optional[str] = None

    @property
    def video_size(self) -> str:
        return f"{self.width}x{self.height}"


class Config:
    """Configuration manager for duo-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.ice_servers: List[str] = list(DEFAULT_ICE_SERVERS)
        self.answer_timeout: Optional[float] = None
        self.capture: CaptureSettings = CaptureSettings()
        self.environment: str = "production"
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from DUO_RTC_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("DUO_RTC_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid DUO_RTC_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. duo-rtc.toml in current working directory
        2. ~/.duo-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "duo-rtc.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".duo-rtc" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Unreadable files fall back to defaults; readable files with invalid
        values raise.

        Args:
            config_file: Path to the TOML configuration file.

        Raises:
            ConfigError: If a value in the file has the wrong type.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            return

        self._apply_capture_section(self._config_data.get("capture", {}))

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})

        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )
            return

        if "signaling_websocket" in env_config:
            self.signaling_websocket = env_config["signaling_websocket"]
            logger.debug(
                f"Loaded signaling_websocket from config: {self.signaling_websocket}"
            )

        if "ice_servers" in env_config:
            servers = env_config["ice_servers"]
            if not isinstance(servers, list) or not all(
                isinstance(s, str) for s in servers
            ):
                raise ConfigError(
                    f"ice_servers must be a list of URLs in {config_file}"
                )
            self.ice_servers = servers
            logger.debug(f"Loaded ice_servers from config: {self.ice_servers}")

        if "answer_timeout" in env_config:
            self.answer_timeout = _parse_timeout(
                env_config["answer_timeout"], str(config_file)
            )

    def _apply_capture_section(self, section: dict) -> None:
        """Apply the [capture] section of the config file.

        Raises:
            ConfigError: If a value has the wrong type or a size is not positive.
        """
        field_types = {field.name: field.type for field in fields(CaptureSettings)}
        for key, value in section.items():
            if key not in field_types:
                logger.warning(f"Ignoring unknown capture setting: {key}")
                continue
            # Optional[str] accepts str; bool is an int subclass but never a size
            allowed = tuple(t for t in get_args(field_types[key]) if t is not type(None))
            allowed = allowed or (field_types[key],)
            if (isinstance(value, bool) and bool not in allowed) or not isinstance(value, allowed):
                names = " or ".join(t.__name__ for t in allowed)
                raise ConfigError(f"Capture setting {key} must be {names}, got {value!r}")
            setattr(self.capture, key, value)

        if self.capture.width <= 0 or self.capture.height <= 0:
            raise ConfigError(
                f"Capture size must be positive, got {self.capture.video_size}"
            )
        if self.capture.framerate <= 0:
            raise ConfigError(
                f"Capture framerate must be positive, got {self.capture.framerate}"
            )

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("DUO_RTC_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

        ice_override = os.getenv("DUO_RTC_ICE_SERVERS")
        if ice_override:
            self.ice_servers = [
                url.strip() for url in ice_override.split(",") if url.strip()
            ]
            logger.info(f"Overriding ice_servers from env: {self.ice_servers}")

        timeout_override = os.getenv("DUO_RTC_ANSWER_TIMEOUT")
        if timeout_override:
            self.answer_timeout = _parse_timeout(
                timeout_override, "DUO_RTC_ANSWER_TIMEOUT"
            )
            logger.info(f"Overriding answer_timeout from env: {self.answer_timeout}")


def _parse_timeout(value, source: str) -> Optional[float]:
    """Parse a timeout in seconds; zero or negative disables it."""
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"answer_timeout must be a number ({source}): {value!r}")
    return seconds if seconds > 0 else None


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
