"""
Scraper Configuration

Configuration model, validation rules, and the config-source capability the
orchestrator consumes. Two sources are provided: a TOML file that is polled
for changes, and an in-memory source that is fed programmatically.

Key Features:
- Typed configuration sections built from plain TOML tables
- Validation with descriptive ConfigError messages
- Default config file creation on first load
- Hot-reload stream of validated configurations
"""

import abc
import asyncio
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import structlog

from .errors import ConfigError

_SIZE_MULTIPLIERS = (
    ("TB", 1024**4),
    ("GB", 1024**3),
    ("MB", 1024**2),
    ("KB", 1024),
    ("B", 1),
)

_TIME_MULTIPLIERS = (
    ("s", 1),
    ("m", 60),
    ("h", 3600),
    ("d", 86400),
)

VALID_OUTPUT_FORMATS = ("json", "csv")

DEFAULT_CONFIG_TOML = """\
streamers = ["shroud", "ninja"]

[agents]
max_concurrent = 5
retry_attempts = 3
delay_range = [1000, 5000]
proxy_list = []
auto_scale = false

[output]
format = "json"
directory = "./scraped_data"
rotation_size = "100MB"
rotation_time = "1h"

[monitoring]
api_enabled = true
api_host = "0.0.0.0"
api_port = 8080
api_token = ""
webhook_url = ""
discord_webhook_url = ""

[stealth]
randomize_user_agents = true
fingerprint_randomization = true
proxy_rotation = false
"""


@dataclass
class AgentConfig:
    """Agent pool limits and pacing"""

    max_concurrent: int = 5
    retry_attempts: int = 3
    delay_range: Tuple[int, int] = (1000, 5000)  # milliseconds
    proxy_list: List[str] = field(default_factory=list)
    auto_scale: bool = False


@dataclass
class OutputConfig:
    """Message storage settings"""

    format: str = "json"
    directory: Path = field(default_factory=lambda: Path("./scraped_data"))
    rotation_size: str = "100MB"
    rotation_time: str = "1h"


@dataclass
class MonitorConfig:
    """HTTP API and notification settings"""

    api_enabled: bool = True
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    api_token: Optional[str] = None
    webhook_url: Optional[str] = None
    discord_webhook_url: Optional[str] = None


@dataclass
class StealthConfig:
    """Browser fingerprinting countermeasures"""

    randomize_user_agents: bool = True
    fingerprint_randomization: bool = True
    proxy_rotation: bool = False


@dataclass
class Config:
    """Complete scraper configuration"""

    streamers: List[str] = field(default_factory=lambda: ["shroud", "ninja"])
    agents: AgentConfig = field(default_factory=AgentConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    monitoring: MonitorConfig = field(default_factory=MonitorConfig)
    stealth: StealthConfig = field(default_factory=StealthConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """
        Build a config from parsed TOML tables, filling in defaults.

        Raises:
            ConfigError: on unknown keys or values of the wrong type
        """
        streamers = data.get("streamers", ["shroud", "ninja"])
        if not isinstance(streamers, list) or not all(
            isinstance(streamer, str) for streamer in streamers
        ):
            raise ConfigError("streamers must be a list of strings")

        agents = _section(data, "agents")
        if "delay_range" in agents:
            delay_range = agents["delay_range"]
            if (
                not isinstance(delay_range, (list, tuple))
                or len(delay_range) != 2
                or not all(_is_int(value) for value in delay_range)
            ):
                raise ConfigError("delay_range must be a [min, max] pair of integers")
            agents["delay_range"] = (delay_range[0], delay_range[1])
        if "proxy_list" in agents:
            proxies = agents["proxy_list"] or []
            if not isinstance(proxies, list) or not all(
                isinstance(proxy, str) for proxy in proxies
            ):
                raise ConfigError("proxy_list must be a list of strings")
            agents["proxy_list"] = list(proxies)

        output = _section(data, "output")
        if "directory" in output:
            output["directory"] = Path(output["directory"])

        monitoring = _section(data, "monitoring")
        for key in ("api_token", "webhook_url", "discord_webhook_url"):
            if not monitoring.get(key):
                monitoring[key] = None

        return cls(
            streamers=list(streamers),
            agents=AgentConfig(**agents),
            output=OutputConfig(**output),
            monitoring=MonitorConfig(**monitoring),
            stealth=StealthConfig(**_section(data, "stealth")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "streamers": list(self.streamers),
            "agents": {
                "max_concurrent": self.agents.max_concurrent,
                "retry_attempts": self.agents.retry_attempts,
                "delay_range": list(self.agents.delay_range),
                "proxy_list": list(self.agents.proxy_list),
                "auto_scale": self.agents.auto_scale,
            },
            "output": {
                "format": self.output.format,
                "directory": str(self.output.directory),
                "rotation_size": self.output.rotation_size,
                "rotation_time": self.output.rotation_time,
            },
            "monitoring": {
                "api_enabled": self.monitoring.api_enabled,
                "api_host": self.monitoring.api_host,
                "api_port": self.monitoring.api_port,
                "api_token_set": bool(self.monitoring.api_token),
                "webhook_url_set": bool(self.monitoring.webhook_url),
                "discord_webhook_url_set": bool(self.monitoring.discord_webhook_url),
            },
            "stealth": {
                "randomize_user_agents": self.stealth.randomize_user_agents,
                "fingerprint_randomization": self.stealth.fingerprint_randomization,
                "proxy_rotation": self.stealth.proxy_rotation,
            },
        }


# Keys of each table and the TOML type their values must have
_SECTION_TYPES: Dict[str, Dict[str, type]] = {
    "agents": {
        "max_concurrent": int,
        "retry_attempts": int,
        "delay_range": list,
        "proxy_list": list,
        "auto_scale": bool,
    },
    "output": {
        "format": str,
        "directory": str,
        "rotation_size": str,
        "rotation_time": str,
    },
    "monitoring": {
        "api_enabled": bool,
        "api_host": str,
        "api_port": int,
        "api_token": str,
        "webhook_url": str,
        "discord_webhook_url": str,
    },
    "stealth": {
        "randomize_user_agents": bool,
        "fingerprint_randomization": bool,
        "proxy_rotation": bool,
    },
}


def _is_int(value: Any) -> bool:
    # TOML booleans are ints to Python
    return isinstance(value, int) and not isinstance(value, bool)


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Copy of one TOML table after checking its keys and value types"""
    table = data.get(name, {})
    if not isinstance(table, dict):
        raise ConfigError(f"[{name}] must be a table")

    expected_types = _SECTION_TYPES[name]
    for key, value in table.items():
        expected = expected_types.get(key)
        if expected is None:
            raise ConfigError(f"Unknown configuration key: {name}.{key}")
        if expected is int:
            valid = _is_int(value)
        elif expected is list:
            valid = isinstance(value, (list, tuple))
        else:
            valid = isinstance(value, expected)
        if not valid:
            raise ConfigError(
                f"{name}.{key} must be of type {expected.__name__}, "
                f"got {type(value).__name__}"
            )
    return dict(table)


def parse_size_to_bytes(size_str: str) -> int:
    """Parse sizes like '100MB' or '1gb' into bytes"""
    normalized = size_str.strip().upper()
    for suffix, multiplier in _SIZE_MULTIPLIERS:
        if normalized.endswith(suffix):
            number = normalized[: -len(suffix)]
            if number.isdigit():
                return int(number) * multiplier
            break
    raise ConfigError(f"Invalid size format: {size_str}")


def parse_time_to_seconds(time_str: str) -> int:
    """Parse durations like '30m', '1h' or '1d' into seconds"""
    normalized = time_str.strip().lower()
    for suffix, multiplier in _TIME_MULTIPLIERS:
        if normalized.endswith(suffix):
            number = normalized[: -len(suffix)]
            if number.isdigit():
                return int(number) * multiplier
            break
    raise ConfigError(f"Invalid time format: {time_str}")


def validate_config(config: Config) -> None:
    """
    Validate a configuration.

    Raises:
        ConfigError: describing the first rule that is violated
    """
    if not config.streamers:
        raise ConfigError("Streamers list cannot be empty")

    for streamer in config.streamers:
        if not isinstance(streamer, str):
            raise ConfigError(f"Streamer name must be a string, got {streamer!r}")
        if not streamer.strip():
            raise ConfigError("Streamer name cannot be empty")
        if " " in streamer:
            raise ConfigError(f"Streamer name '{streamer}' cannot contain spaces")
        if len(streamer) > 25:
            raise ConfigError(
                f"Streamer name '{streamer}' is too long (max 25 characters)"
            )

    if len(set(config.streamers)) != len(config.streamers):
        raise ConfigError("Streamers list contains duplicates")

    agents = config.agents
    for name in ("max_concurrent", "retry_attempts"):
        if not _is_int(getattr(agents, name)):
            raise ConfigError(f"{name} must be an integer")
    if len(agents.delay_range) != 2 or not all(
        _is_int(value) for value in agents.delay_range
    ):
        raise ConfigError("delay_range must be a [min, max] pair of integers")
    if agents.max_concurrent <= 0:
        raise ConfigError("max_concurrent must be greater than 0")
    if agents.max_concurrent > 50:
        raise ConfigError("max_concurrent cannot exceed 50 for resource safety")
    if agents.retry_attempts > 10:
        raise ConfigError("retry_attempts cannot exceed 10")
    if agents.delay_range[0] < 0:
        raise ConfigError("delay_range minimum cannot be negative")
    if agents.delay_range[0] >= agents.delay_range[1]:
        raise ConfigError("delay_range minimum must be less than maximum")
    if agents.delay_range[1] > 60000:
        raise ConfigError("delay_range maximum cannot exceed 60 seconds")

    for proxy in agents.proxy_list:
        if ":" not in proxy:
            raise ConfigError(
                f"Invalid proxy format '{proxy}', expected 'host:port'"
            )

    if config.output.format not in VALID_OUTPUT_FORMATS:
        raise ConfigError(
            f"Invalid output format '{config.output.format}', "
            f"must be one of: {', '.join(VALID_OUTPUT_FORMATS)}"
        )
    try:
        parse_size_to_bytes(config.output.rotation_size)
    except ConfigError:
        raise ConfigError(
            f"Invalid rotation_size format '{config.output.rotation_size}', "
            "expected format like '100MB', '1GB'"
        ) from None
    try:
        parse_time_to_seconds(config.output.rotation_time)
    except ConfigError:
        raise ConfigError(
            f"Invalid rotation_time format '{config.output.rotation_time}', "
            "expected format like '1h', '30m', '1d'"
        ) from None

    if not _is_int(config.monitoring.api_port) or not (
        1024 <= config.monitoring.api_port <= 65535
    ):
        raise ConfigError("api_port must be between 1024 and 65535")

    for key in ("webhook_url", "discord_webhook_url"):
        url = getattr(config.monitoring, key)
        if url is not None and not str(url).startswith(("http://", "https://")):
            raise ConfigError(f"{key} must start with http:// or https://")


class ConfigSource(abc.ABC):
    """Capability the orchestrator uses to obtain configuration"""

    @abc.abstractmethod
    async def load(self) -> Config:
        """Load and validate the current configuration"""

    @abc.abstractmethod
    def watch(self) -> AsyncIterator[Config]:
        """Yield every subsequently published valid configuration"""

    def validate(self, config: Config) -> None:
        validate_config(config)


class FileConfigSource(ConfigSource):
    """
    TOML file configuration with change polling.

    The file is created with defaults when it does not exist. Changes are
    detected by polling the file's modification time.
    """

    def __init__(self, config_path: Path, poll_interval: float = 2.0):
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.config_path = Path(config_path)
        self.poll_interval = poll_interval

    async def load(self) -> Config:
        self.logger.info("Loading configuration", path=str(self.config_path))

        if not self.config_path.exists():
            self.logger.warning(
                "Configuration file not found, creating default",
                path=str(self.config_path),
            )
            self._create_default_config()

        try:
            with open(self.config_path, "rb") as f:
                data = tomllib.load(f)
        except OSError as error:
            raise ConfigError(f"Failed to read config file: {error}") from error
        except tomllib.TOMLDecodeError as error:
            raise ConfigError(f"Failed to parse TOML config: {error}") from error

        config = Config.from_dict(data)
        self.validate(config)

        self.logger.info("Configuration loaded", streamers=len(config.streamers))
        return config

    async def watch(self) -> AsyncIterator[Config]:
        last_mtime = self._mtime()
        self.logger.info("Watching configuration file", path=str(self.config_path))

        while True:
            await asyncio.sleep(self.poll_interval)
            mtime = self._mtime()
            if mtime is None or mtime == last_mtime:
                continue
            last_mtime = mtime

            # Give the writer a moment to finish
            await asyncio.sleep(0.1)
            try:
                config = await self.load()
            except ConfigError as error:
                self.logger.error("Failed to reload configuration", error=str(error))
                continue

            self.logger.info("Configuration reloaded")
            yield config

    def _mtime(self) -> Optional[float]:
        try:
            return self.config_path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _create_default_config(self) -> None:
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(DEFAULT_CONFIG_TOML, encoding="utf-8")
        except OSError as error:
            raise ConfigError(f"Failed to write default config: {error}") from error
        self.logger.info("Default configuration created", path=str(self.config_path))


class MemoryConfigSource(ConfigSource):
    """Configuration held in memory; updates are pushed with publish()"""

    def __init__(self, config: Optional[Config] = None):
        self._config = config or Config()
        self._updates: asyncio.Queue = asyncio.Queue()

    async def load(self) -> Config:
        self.validate(self._config)
        return self._config

    async def publish(self, config: Config) -> None:
        self.validate(config)
        self._config = config
        await self._updates.put(config)

    async def watch(self) -> AsyncIterator[Config]:
        while True:
            yield await self._updates.get()


__all__ = [
    "AgentConfig",
    "OutputConfig",
    "MonitorConfig",
    "StealthConfig",
    "Config",
    "ConfigSource",
    "FileConfigSource",
    "MemoryConfigSource",
    "validate_config",
    "parse_size_to_bytes",
    "parse_time_to_seconds",
    "DEFAULT_CONFIG_TOML",
]
