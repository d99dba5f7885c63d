"""
Scraper Error Taxonomy

Exception hierarchy shared by every component, plus the mapping from each
error kind to the recovery strategy callers are expected to apply.
"""

from enum import Enum
from typing import Dict, Type


class RecoveryStrategy(Enum):
    """Suggested reaction to a failure"""

    RETRY_WITH_BACKOFF = "retry_with_backoff"
    RESTART_BROWSER = "restart_browser"
    LOG_AND_CONTINUE = "log_and_continue"
    SWITCH_STORAGE = "switch_storage"
    RELOAD_CONFIG = "reload_config"
    STOP_AGENT = "stop_agent"


class ScrapingError(Exception):
    """Base class for all scraper failures"""

    prefix = "Scraping error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.prefix}: {self.message}"

    @property
    def recovery_strategy(self) -> RecoveryStrategy:
        return recovery_strategy(self)


class NetworkError(ScrapingError):
    prefix = "Network error"


class BrowserError(ScrapingError):
    prefix = "Browser error"


class ParseError(ScrapingError):
    prefix = "Parse error"


class StorageError(ScrapingError):
    prefix = "Storage error"


class ConfigError(ScrapingError):
    prefix = "Configuration error"


class ResourceLimitError(ScrapingError):
    prefix = "Resource limit reached"


class AgentError(ScrapingError):
    prefix = "Agent error"


RECOVERY_STRATEGIES: Dict[Type[ScrapingError], RecoveryStrategy] = {
    NetworkError: RecoveryStrategy.RETRY_WITH_BACKOFF,
    BrowserError: RecoveryStrategy.RESTART_BROWSER,
    ParseError: RecoveryStrategy.LOG_AND_CONTINUE,
    StorageError: RecoveryStrategy.SWITCH_STORAGE,
    ConfigError: RecoveryStrategy.RELOAD_CONFIG,
    ResourceLimitError: RecoveryStrategy.STOP_AGENT,
    AgentError: RecoveryStrategy.RESTART_BROWSER,
}


def _check_strategy_table() -> None:
    missing = [
        kind.__name__
        for kind in ScrapingError.__subclasses__()
        if kind not in RECOVERY_STRATEGIES
    ]
    if missing:
        raise TypeError(f"Error kinds without a recovery strategy: {missing}")


_check_strategy_table()


def recovery_strategy(error: BaseException) -> RecoveryStrategy:
    """
    Map an error to its recovery strategy.

    Errors outside the taxonomy are treated like transient network failures.
    """
    for kind in type(error).__mro__:
        strategy = RECOVERY_STRATEGIES.get(kind)
        if strategy is not None:
            return strategy
    return RecoveryStrategy.RETRY_WITH_BACKOFF


__all__ = [
    "RecoveryStrategy",
    "ScrapingError",
    "NetworkError",
    "BrowserError",
    "ParseError",
    "StorageError",
    "ConfigError",
    "ResourceLimitError",
    "AgentError",
    "RECOVERY_STRATEGIES",
    "recovery_strategy",
]
