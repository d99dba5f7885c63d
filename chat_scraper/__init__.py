"""
Live Chat Scraper

Supervised pool of stealth-configured browser agents that scrape live
stream chat, parse it into structured messages, and fan the messages out
to storage and monitoring consumers.

Version: 1.0.0
"""

from .agent import AgentMetrics, AgentState, AgentStatus, ScrapingAgent
from .broadcast import BroadcastChannel, ChannelClosed, Subscription
from .browser_pool import BrowserInstance, BrowserResourcePool, BrowserUseDriver, PageDriver
from .config import Config, ConfigSource, FileConfigSource, MemoryConfigSource
from .errors import (
    AgentError,
    BrowserError,
    ConfigError,
    NetworkError,
    ParseError,
    RecoveryStrategy,
    ResourceLimitError,
    ScrapingError,
    StorageError,
)
from .models import ChatMessage
from .orchestrator import (
    AgentAssignment,
    AgentMessage,
    AgentMessageType,
    AgentOrchestrator,
    OrchestratorStatus,
    SystemMetrics,
)
from .parser import TwitchChatParser
from .processor import MessageProcessor
from .quality import AlertLevel, QualityAlert, QualityMetricsTracker, QualityThresholds
from .storage import MessageStorage
from .webhooks import DiscordWebhook, JsonWebhook, WebhookManager, WebhookProvider

__version__ = "1.0.0"

__all__ = [
    "AgentOrchestrator",
    "AgentAssignment",
    "AgentMessage",
    "AgentMessageType",
    "OrchestratorStatus",
    "SystemMetrics",
    "ScrapingAgent",
    "AgentState",
    "AgentStatus",
    "AgentMetrics",
    "BroadcastChannel",
    "Subscription",
    "ChannelClosed",
    "BrowserResourcePool",
    "BrowserInstance",
    "BrowserUseDriver",
    "PageDriver",
    "Config",
    "ConfigSource",
    "FileConfigSource",
    "MemoryConfigSource",
    "ChatMessage",
    "TwitchChatParser",
    "MessageProcessor",
    "MessageStorage",
    "QualityMetricsTracker",
    "QualityThresholds",
    "QualityAlert",
    "AlertLevel",
    "WebhookManager",
    "WebhookProvider",
    "DiscordWebhook",
    "JsonWebhook",
    "ScrapingError",
    "NetworkError",
    "BrowserError",
    "ParseError",
    "StorageError",
    "ConfigError",
    "ResourceLimitError",
    "AgentError",
    "RecoveryStrategy",
]
