"""
Agent Orchestrator

Central supervisor for scraping agents. Owns the agent registry and the
streamer assignment table, enforces the concurrency ceiling, and runs the
background loops that keep the fleet healthy.

Key Features:
- Capacity- and streamer-reserving agent spawns with startup stagger
- Priority-ordered distribution of agents over configured streamers
- Resource-aware scaling driven by psutil CPU / memory samples
- Configuration hot-reload from any ConfigSource
- Automatic restart of failed agents within a retry budget
- Chat quality alerts published once per breach
- Lossy broadcast of chat messages and orchestration events
"""

import asyncio
import random
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

import structlog

from .agent import AgentMetrics, AgentStatus, ScrapingAgent
from .broadcast import DEFAULT_CAPACITY, BroadcastChannel, Subscription
from .browser_pool import BrowserResourcePool
from .config import Config, ConfigSource, validate_config
from .errors import AgentError, ResourceLimitError, ScrapingError
from .models import ChatMessage
from .parser import ChatParser, TwitchChatParser
from .quality import AlertLevel, QualityAlert, QualityMetricsTracker

# Alert thresholds (percent)
CPU_ALERT_THRESHOLD = 80.0
MEMORY_ALERT_THRESHOLD = 85.0
CRITICAL_THRESHOLD = 90.0
SCALE_DOWN_CPU = 85.0
SCALE_DOWN_MEMORY = 85.0
SCALE_UP_CPU = 60.0
SCALE_UP_MEMORY = 70.0
MAX_ERROR_RATE = 0.1  # errors per second of uptime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ResourceSample:
    cpu_usage: float
    memory_used: int
    memory_total: int


class ResourceSampler:
    """Host CPU and memory readings via psutil"""

    def sample(self) -> ResourceSample:
        import psutil

        memory = psutil.virtual_memory()
        return ResourceSample(
            cpu_usage=psutil.cpu_percent(interval=None),
            memory_used=memory.used,
            memory_total=memory.total,
        )


@dataclass
class SystemMetrics:
    """Process-wide resource snapshot"""

    cpu_usage: float = 0.0
    memory_usage: int = 0
    memory_total: int = 0
    active_agents: int = 0
    total_messages_scraped: int = 0
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def memory_percent(self) -> float:
        if self.memory_total <= 0:
            return 0.0
        return self.memory_usage / self.memory_total * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cpu_usage": round(self.cpu_usage, 2),
            "memory_usage": self.memory_usage,
            "memory_total": self.memory_total,
            "memory_percent": round(self.memory_percent, 2),
            "active_agents": self.active_agents,
            "total_messages_scraped": self.total_messages_scraped,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class AgentAssignment:
    """Binding of one agent to one streamer"""

    agent_id: str
    streamer: str
    priority: int = 0  # 0 = highest
    assigned_at: datetime = field(default_factory=_utcnow)
    retry_attempts: int = 0
    last_failure: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "streamer": self.streamer,
            "priority": self.priority,
            "assigned_at": self.assigned_at.isoformat(),
            "retry_attempts": self.retry_attempts,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
        }


@dataclass
class OrchestratorStatus:
    active_agents: int
    total_agents_spawned: int
    system_metrics: SystemMetrics
    agent_assignments: List[AgentAssignment]
    error_count: int
    uptime: float  # seconds
    quality: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active_agents": self.active_agents,
            "total_agents_spawned": self.total_agents_spawned,
            "system_metrics": self.system_metrics.to_dict(),
            "agent_assignments": [a.to_dict() for a in self.agent_assignments],
            "error_count": self.error_count,
            "uptime_seconds": round(self.uptime, 3),
            "quality": self.quality,
        }


class AgentMessageType(Enum):
    """Kinds of orchestration events"""

    STATUS_UPDATE = "status_update"
    METRICS_UPDATE = "metrics_update"
    CHAT_MESSAGE = "chat_message"
    RESOURCE_ALERT = "resource_alert"
    ERROR = "error"


@dataclass
class AgentMessage:
    """Event published on the orchestration channel; agent_id is None for system events"""

    message_type: AgentMessageType
    agent_id: Optional[str] = None
    status: Optional[AgentStatus] = None
    metrics: Optional[AgentMetrics] = None
    message: Optional[ChatMessage] = None
    alert: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    @classmethod
    def status_update(cls, agent_id: str, status: AgentStatus) -> "AgentMessage":
        return cls(AgentMessageType.STATUS_UPDATE, agent_id, status=status)

    @classmethod
    def metrics_update(cls, agent_id: str, metrics: AgentMetrics) -> "AgentMessage":
        return cls(AgentMessageType.METRICS_UPDATE, agent_id, metrics=metrics)

    @classmethod
    def chat_message(cls, agent_id: str, message: ChatMessage) -> "AgentMessage":
        return cls(AgentMessageType.CHAT_MESSAGE, agent_id, message=message)

    @classmethod
    def resource_alert(
        cls, alert: str, agent_id: Optional[str] = None
    ) -> "AgentMessage":
        return cls(AgentMessageType.RESOURCE_ALERT, agent_id, alert=alert)

    @classmethod
    def error_event(cls, error: str, agent_id: Optional[str] = None) -> "AgentMessage":
        return cls(AgentMessageType.ERROR, agent_id, error=error)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.message_type.value,
            "agent_id": self.agent_id,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.status is not None:
            data["status"] = self.status.to_dict()
        if self.metrics is not None:
            data["metrics"] = self.metrics.to_dict()
        if self.message is not None:
            data["message"] = self.message.to_dict()
        if self.alert is not None:
            data["alert"] = self.alert
        if self.error is not None:
            data["error"] = self.error
        return data


class AgentOrchestrator:
    """
    Supervisor for the scraping agent fleet.

    The agents and assignments maps are only mutated under self._lock, and
    the lock is never held across agent start/stop or browser I/O.
    """

    def __init__(
        self,
        config: Config,
        pool: BrowserResourcePool,
        parser: Optional[ChatParser] = None,
        sampler: Optional[Any] = None,
        agent_options: Optional[Dict[str, Any]] = None,
        startup_stagger_ms: Tuple[int, int] = (100, 2000),
        startup_timeout: float = 30.0,
        monitor_interval: float = 5.0,
        scaling_interval: float = 30.0,
        recovery_interval: float = 15.0,
        channel_capacity: int = DEFAULT_CAPACITY,
        quality_tracker: Optional[QualityMetricsTracker] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize agent orchestrator.

        Args:
            config: Initial configuration
            pool: Browser pool agents draw pages from
            parser: Chat parser shared by all agents
            sampler: Object with sample() -> ResourceSample, psutil by default
            agent_options: Extra keyword arguments for every ScrapingAgent
            startup_stagger_ms: Random delay range applied before each spawn
            startup_timeout: Seconds an agent may take to reach Running
            monitor_interval: Seconds between system metric refreshes
            scaling_interval: Seconds between scaling evaluations
            recovery_interval: Seconds between failed-agent sweeps
            channel_capacity: Per-subscriber buffer size of both channels
            quality_tracker: Chat quality metrics checked on every monitor tick
        """
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.config = config
        self.pool = pool
        self.parser = parser or TwitchChatParser()
        self.sampler = sampler or ResourceSampler()
        self.agent_options = dict(agent_options or {})
        self.startup_stagger_ms = startup_stagger_ms
        self.startup_timeout = startup_timeout
        self.monitor_interval = monitor_interval
        self.scaling_interval = scaling_interval
        self.recovery_interval = recovery_interval
        self.quality_tracker = quality_tracker
        self._rng = rng or random.Random()

        self._agents: Dict[str, ScrapingAgent] = {}
        self._assignments: Dict[str, AgentAssignment] = {}
        self._pending_streamers: Set[str] = set()
        self._exhausted: Set[str] = set()
        # streamer -> (restarts so far, last failure); outlives failed respawns
        self._restart_history: Dict[str, Tuple[int, datetime]] = {}
        self._active_quality_alerts: Set[str] = set()
        self._lock = asyncio.Lock()

        self.message_channel: BroadcastChannel[AgentMessage] = BroadcastChannel(
            channel_capacity, name="agent_messages"
        )
        self.chat_channel: BroadcastChannel[ChatMessage] = BroadcastChannel(
            channel_capacity, name="chat_messages"
        )

        self._system_metrics = SystemMetrics()
        self._total_agents_spawned = 0
        self._error_count = 0
        self._created_at = time.monotonic()

        self._shutdown = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

        self.logger.info(
            "Agent orchestrator initialized",
            max_concurrent=config.agents.max_concurrent,
            streamers=len(config.streamers),
        )

    # Lifecycle

    async def start(self, config_source: ConfigSource) -> None:
        """Launch the background loops and distribute agents over streamers"""
        if self._tasks:
            raise AgentError("Orchestrator is already running")

        operation_id = self._generate_operation_id()
        self.logger.info(f"[{operation_id}] Starting agent orchestrator")

        self._tasks = [
            asyncio.create_task(self._system_monitor_loop(), name="system-monitor"),
            asyncio.create_task(self._dynamic_scaling_loop(), name="dynamic-scaler"),
            asyncio.create_task(
                self._config_watch_loop(config_source), name="config-watcher"
            ),
            asyncio.create_task(self._agent_recovery_loop(), name="agent-recovery"),
        ]

        await self.distribute_agents()

        self.logger.info(
            f"[{operation_id}] Agent orchestrator started",
            active_agents=len(self._agents),
        )

    async def stop(self) -> None:
        """Stop every agent, wait for the background loops, close channels"""
        self.logger.info("Stopping agent orchestrator")
        self._shutdown.set()

        await self._stop_all_agents()

        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for task, result in zip(self._tasks, results):
            if isinstance(result, BaseException):
                self.logger.error(
                    "Background loop ended with error",
                    loop=task.get_name(),
                    error=str(result),
                )
        self._tasks = []

        # Anything registered while the loops were winding down
        await self._stop_all_agents()

        self.message_channel.close()
        self.chat_channel.close()
        self.logger.info("Agent orchestrator stopped", error_count=self._error_count)

    # Agent operations

    async def spawn_agent(self, streamer: str, priority: int = 0) -> str:
        """
        Start a new agent for a streamer.

        Returns:
            ID of the running agent

        Raises:
            ResourceLimitError: if the concurrency ceiling is reached
            AgentError: if the streamer already has an agent, or startup timed out
            ScrapingError: if the agent failed to start
        """
        return await self._spawn(streamer, priority)

    async def stop_agent(self, agent_id: str) -> bool:
        """
        Stop an agent and drop its assignment.

        Returns:
            False if no such agent exists, True otherwise
        """
        async with self._lock:
            agent = self._agents.pop(agent_id, None)
            assignment = self._assignments.pop(agent_id, None)
            self._exhausted.discard(agent_id)

        if agent is None:
            self.logger.debug(f"Stop requested for unknown agent {agent_id}")
            return False

        await agent.stop()

        self.message_channel.send(
            AgentMessage.status_update(agent_id, agent.get_status())
        )
        self.logger.info(
            f"Stopped agent {agent_id}",
            streamer=assignment.streamer if assignment else agent.streamer,
        )
        return True

    async def restart_agent(self, agent_id: str) -> str:
        """
        Replace an agent with a fresh one for the same streamer and priority.

        Returns:
            ID of the replacement agent

        Raises:
            AgentError: if the agent is unknown
        """
        assignment = self._assignments.get(agent_id)
        if assignment is None:
            raise AgentError(f"Agent {agent_id} not found for restart")

        self.logger.info(
            f"Restarting agent {agent_id}",
            streamer=assignment.streamer,
            retry_attempts=assignment.retry_attempts,
        )

        if not await self.stop_agent(agent_id):
            raise AgentError(f"Agent {agent_id} not found for restart")

        # Recorded before spawning so a failed respawn still counts
        self._restart_history[assignment.streamer] = (
            assignment.retry_attempts + 1,
            _utcnow(),
        )
        return await self._spawn(assignment.streamer, assignment.priority)

    async def distribute_agents(self) -> None:
        """Reconcile running agents with the configured streamer list"""
        streamers = list(self.config.streamers)
        max_concurrent = self.config.agents.max_concurrent

        self.logger.info(
            f"Distributing agents across {len(streamers)} streamers",
            streamers=streamers,
        )

        for agent_id, assignment in list(self._assignments.items()):
            if assignment.streamer not in streamers:
                self.logger.info(
                    f"Stopping agent {agent_id} for removed streamer",
                    streamer=assignment.streamer,
                )
                await self.stop_agent(agent_id)

        for streamer in list(self._restart_history):
            if streamer not in streamers:
                del self._restart_history[streamer]

        assigned_count = 0
        for index, streamer in enumerate(streamers):
            if assigned_count >= max_concurrent or self._shutdown.is_set():
                break

            if self._streamer_taken(streamer):
                assigned_count += 1
                continue

            try:
                await self.spawn_agent(streamer, index)
                assigned_count += 1
            except ScrapingError as error:
                self._error_count += 1
                self.logger.error(
                    "Failed to assign agent to streamer",
                    streamer=streamer,
                    error=str(error),
                )

        self.logger.info(
            f"Agent distribution complete: {assigned_count} agents assigned"
        )

    async def update_config(self, new_config: Config) -> None:
        """
        Swap the configuration; redistribute only if the streamer list changed.

        Raises:
            ConfigError: if the new configuration is invalid
        """
        validate_config(new_config)

        old_streamers = list(self.config.streamers)
        self.config = new_config
        self.pool.apply_config(new_config)
        self.logger.info("Orchestrator configuration updated")

        if old_streamers != list(new_config.streamers):
            self.logger.info("Streamer list changed, redistributing agents")
            await self.distribute_agents()

    async def scale_agents(self) -> Dict[str, Any]:
        """
        Add or remove one agent based on the latest system metrics.

        Returns:
            Scaling decision with the affected agent, if any
        """
        metrics = self._system_metrics
        memory_percent = metrics.memory_percent
        current_agents = len(self._agents)
        max_concurrent = self.config.agents.max_concurrent

        if (
            metrics.cpu_usage > SCALE_DOWN_CPU or memory_percent > SCALE_DOWN_MEMORY
        ) and current_agents > 1:
            self.logger.info(
                "High resource usage, scaling down",
                cpu_usage=metrics.cpu_usage,
                memory_percent=round(memory_percent, 1),
            )
            victim = self._lowest_priority_agent()
            if victim is not None:
                await self.stop_agent(victim)
            return {"action": "scale_down", "agent_id": victim}

        if (
            metrics.cpu_usage < SCALE_UP_CPU
            and memory_percent < SCALE_UP_MEMORY
            and current_agents < max_concurrent
        ):
            for index, streamer in enumerate(self.config.streamers):
                if self._streamer_taken(streamer):
                    continue
                self.logger.info(
                    "Resources available, scaling up", streamer=streamer
                )
                try:
                    agent_id = await self.spawn_agent(streamer, index)
                except ScrapingError as error:
                    self.logger.warning(
                        "Failed to scale up agent", streamer=streamer, error=str(error)
                    )
                    return {"action": "scale_up_failed", "agent_id": None}
                return {"action": "scale_up", "agent_id": agent_id}

        return {"action": "no_change", "agent_id": None}

    async def rebalance_agents(self) -> List[str]:
        """
        Restart agents whose error rate exceeds the allowed maximum.

        Returns:
            IDs of the replacement agents
        """
        replacements = []
        for agent_id, metrics in self.get_agent_performance_metrics().items():
            error_rate = metrics.error_rate()
            if error_rate <= MAX_ERROR_RATE:
                continue

            self.logger.warning(
                f"Agent {agent_id} has high error rate, restarting",
                error_rate=round(error_rate, 2),
            )
            try:
                replacements.append(await self.restart_agent(agent_id))
            except ScrapingError as error:
                self._error_count += 1
                self.logger.error(
                    f"Failed to restart underperforming agent {agent_id}",
                    error=str(error),
                )
        return replacements

    async def recover_agents(self) -> List[str]:
        """
        One pass of failed-agent recovery.

        Agents in Error are restarted while their retry budget lasts; after
        that an Error event is published once and the agent is left visible.

        Returns:
            IDs of the replacement agents
        """
        replacements = []
        retry_limit = self.config.agents.retry_attempts

        failed = [
            agent_id
            for agent_id, agent in list(self._agents.items())
            if agent.get_status().is_error
        ]

        for agent_id in failed:
            assignment = self._assignments.get(agent_id)
            agent = self._agents.get(agent_id)
            if assignment is None or agent is None:
                continue
            reason = agent.get_status().reason

            if assignment.retry_attempts >= retry_limit:
                if agent_id not in self._exhausted:
                    self._exhausted.add(agent_id)
                    self.logger.error(
                        f"Agent {agent_id} exhausted its retry attempts",
                        streamer=assignment.streamer,
                        reason=reason,
                    )
                    self.message_channel.send(
                        AgentMessage.error_event(
                            f"Agent for {assignment.streamer} failed after "
                            f"{assignment.retry_attempts} restarts: {reason}",
                            agent_id,
                        )
                    )
                continue

            self.logger.warning(
                f"Agent {agent_id} is in error state, restarting",
                streamer=assignment.streamer,
                reason=reason,
            )
            try:
                replacements.append(await self.restart_agent(agent_id))
            except ScrapingError as error:
                self._error_count += 1
                self.logger.error(
                    f"Failed to recover agent {agent_id}", error=str(error)
                )
                self.message_channel.send(
                    AgentMessage.error_event(
                        f"Recovery of {assignment.streamer} failed: {error}", agent_id
                    )
                )

        return replacements

    async def refresh_system_metrics(self) -> SystemMetrics:
        """Sample host resources, aggregate agent counters and raise alerts"""
        sample = self.sampler.sample()

        per_agent = self.get_agent_performance_metrics()
        metrics = SystemMetrics(
            cpu_usage=sample.cpu_usage,
            memory_usage=sample.memory_used,
            memory_total=sample.memory_total,
            active_agents=len(per_agent),
            total_messages_scraped=sum(m.messages_scraped for m in per_agent.values()),
        )
        self._system_metrics = metrics

        for agent_id, agent_metrics in per_agent.items():
            self.message_channel.send(
                AgentMessage.metrics_update(agent_id, agent_metrics)
            )

        if metrics.cpu_usage > CPU_ALERT_THRESHOLD:
            self._alert(f"High CPU usage: {metrics.cpu_usage:.1f}%")
        if metrics.memory_percent > MEMORY_ALERT_THRESHOLD:
            self._alert(f"High memory usage: {metrics.memory_percent:.1f}%")

        self.check_quality_alerts()
        return metrics

    def check_quality_alerts(self) -> List[QualityAlert]:
        """
        Publish quality alerts that became active since the previous check.

        Critical alerts go out as Error events, the rest as ResourceAlerts.
        An alert is published again only after it has cleared once.

        Returns:
            Newly published alerts
        """
        if self.quality_tracker is None:
            return []

        alerts = self.quality_tracker.check_alerts()
        fresh = [a for a in alerts if a.key not in self._active_quality_alerts]
        self._active_quality_alerts = {alert.key for alert in alerts}

        for alert in fresh:
            if alert.level is AlertLevel.CRITICAL:
                self.logger.error("Data quality critical", alert=alert.message)
                self.message_channel.send(AgentMessage.error_event(alert.message))
            else:
                self._alert(f"Data quality: {alert.message}")
        return fresh

    # Read accessors

    def get_status(self) -> OrchestratorStatus:
        return OrchestratorStatus(
            active_agents=len(self._agents),
            total_agents_spawned=self._total_agents_spawned,
            system_metrics=replace(self._system_metrics),
            agent_assignments=self.get_assignments(),
            error_count=self._error_count,
            uptime=time.monotonic() - self._created_at,
            quality=self.quality_tracker.to_dict() if self.quality_tracker else None,
        )

    def get_active_agents(self) -> List[str]:
        return list(self._agents)

    def get_agent_status(self, agent_id: str) -> Optional[AgentStatus]:
        agent = self._agents.get(agent_id)
        return agent.get_status() if agent else None

    def get_agent_metrics(self, agent_id: str) -> Optional[AgentMetrics]:
        agent = self._agents.get(agent_id)
        return agent.get_metrics() if agent else None

    def get_agent_performance_metrics(self) -> Dict[str, AgentMetrics]:
        return {
            agent_id: agent.get_metrics()
            for agent_id, agent in list(self._agents.items())
        }

    def get_assignments(self) -> List[AgentAssignment]:
        return sorted(
            (replace(a) for a in self._assignments.values()),
            key=lambda a: (a.priority, a.assigned_at),
        )

    def get_system_metrics(self) -> SystemMetrics:
        return replace(self._system_metrics)

    def find_agent_by_streamer(self, streamer: str) -> Optional[str]:
        for agent_id, assignment in self._assignments.items():
            if assignment.streamer == streamer:
                return agent_id
        return None

    def subscribe_to_messages(self) -> Subscription:
        return self.message_channel.subscribe()

    def subscribe_to_chat_messages(self) -> Subscription:
        return self.chat_channel.subscribe()

    # Internals

    async def _spawn(self, streamer: str, priority: int) -> str:
        if self._shutdown.is_set():
            raise AgentError("Orchestrator is shutting down")

        async with self._lock:
            max_concurrent = self.config.agents.max_concurrent
            if len(self._agents) + len(self._pending_streamers) >= max_concurrent:
                raise ResourceLimitError(
                    f"Maximum concurrent agents ({max_concurrent}) reached"
                )
            if self._streamer_taken(streamer):
                raise AgentError(f"Streamer {streamer} already has an agent")
            self._pending_streamers.add(streamer)

        agent = ScrapingAgent(
            pool=self.pool,
            parser=self.parser,
            chat_channel=self.chat_channel,
            delay_range=self.config.agents.delay_range,
            **self.agent_options,
        )

        try:
            stagger = self._rng.uniform(*self.startup_stagger_ms) / 1000.0
            self.logger.info(
                f"Agent {agent.id} delaying {stagger * 1000:.0f}ms before startup",
                streamer=streamer,
            )
            await asyncio.sleep(stagger)

            try:
                await asyncio.wait_for(
                    agent.start(streamer), timeout=self.startup_timeout
                )
            except asyncio.TimeoutError:
                raise AgentError(f"Agent startup timed out for {streamer}") from None

            if self._shutdown.is_set():
                raise AgentError("Orchestrator is shutting down")

            retry_attempts, last_failure = self._restart_history.get(
                streamer, (0, None)
            )
            async with self._lock:
                self._agents[agent.id] = agent
                self._assignments[agent.id] = AgentAssignment(
                    agent_id=agent.id,
                    streamer=streamer,
                    priority=priority,
                    retry_attempts=retry_attempts,
                    last_failure=last_failure,
                )
                self._pending_streamers.discard(streamer)
        except asyncio.CancelledError:
            await self._release_failed_agent(agent)
            raise
        except Exception as error:
            self.logger.error(
                f"Agent {agent.id} failed to start",
                streamer=streamer,
                error=str(error),
            )
            await self._release_failed_agent(agent)
            raise
        finally:
            self._pending_streamers.discard(streamer)

        self._total_agents_spawned += 1
        self.message_channel.send(
            AgentMessage.status_update(agent.id, agent.get_status())
        )
        self.logger.info(
            f"Spawned agent {agent.id}", streamer=streamer, priority=priority
        )
        return agent.id

    async def _release_failed_agent(self, agent: ScrapingAgent) -> None:
        try:
            await agent.stop()
        except Exception as error:
            self._error_count += 1
            self.logger.warning(
                f"Failed to clean up agent {agent.id}", error=str(error)
            )

    async def _stop_all_agents(self) -> None:
        for agent_id in list(self._agents):
            try:
                await self.stop_agent(agent_id)
            except Exception as error:
                self._error_count += 1
                self.logger.warning(
                    f"Error stopping agent {agent_id}", error=str(error)
                )

    def _streamer_taken(self, streamer: str) -> bool:
        return (
            streamer in self._pending_streamers
            or self.find_agent_by_streamer(streamer) is not None
        )

    def _lowest_priority_agent(self) -> Optional[str]:
        if not self._assignments:
            return None
        victim = max(
            self._assignments.values(), key=lambda a: (a.priority, a.assigned_at)
        )
        return victim.agent_id

    def _alert(self, alert: str) -> None:
        self.logger.warning("Resource alert", alert=alert)
        self.message_channel.send(AgentMessage.resource_alert(alert))

    async def _wait_for_shutdown(self, seconds: float) -> bool:
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _system_monitor_loop(self) -> None:
        """Refresh system metrics on every tick"""
        while not self._shutdown.is_set():
            try:
                await self.refresh_system_metrics()
            except Exception as error:
                self.logger.error("System monitor error", error=str(error))

            if await self._wait_for_shutdown(self.monitor_interval):
                break
        self.logger.debug("System monitor stopped")

    async def _dynamic_scaling_loop(self) -> None:
        """Alert on critical load and, with auto_scale, act on it"""
        while not await self._wait_for_shutdown(self.scaling_interval):
            try:
                metrics = self._system_metrics
                memory_percent = metrics.memory_percent
                current_agents = len(self._agents)

                if (
                    metrics.cpu_usage >= CRITICAL_THRESHOLD
                    or memory_percent >= CRITICAL_THRESHOLD
                ) and current_agents > 1:
                    self._alert(
                        "Resource usage critical - consider scaling down agents. "
                        f"CPU: {metrics.cpu_usage:.1f}%, Memory: {memory_percent:.1f}%"
                    )

                if self.config.agents.auto_scale:
                    decision = await self.scale_agents()
                    if decision["action"] != "no_change":
                        self.logger.info("Scaling decision applied", **decision)
            except Exception as error:
                self.logger.error("Dynamic scaling error", error=str(error))
        self.logger.debug("Dynamic scaler stopped")

    async def _config_watch_loop(self, config_source: ConfigSource) -> None:
        """Apply every configuration published by the source"""
        updates: AsyncIterator[Config] = config_source.watch()
        try:
            while not self._shutdown.is_set():
                next_update = asyncio.ensure_future(updates.__anext__())
                waiter = asyncio.ensure_future(self._shutdown.wait())
                try:
                    await asyncio.wait(
                        {next_update, waiter}, return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    waiter.cancel()

                if not next_update.done():
                    next_update.cancel()
                    try:
                        await next_update
                    except (asyncio.CancelledError, StopAsyncIteration):
                        pass
                    break

                try:
                    new_config = next_update.result()
                except StopAsyncIteration:
                    self.logger.debug("Configuration stream ended")
                    break
                except Exception as error:
                    self._error_count += 1
                    self.logger.error("Configuration watch failed", error=str(error))
                    break

                try:
                    await self.update_config(new_config)
                except Exception as error:
                    self._error_count += 1
                    self.logger.error(
                        "Failed to apply configuration", error=str(error)
                    )
                    continue

                self._alert("Configuration updated")
        finally:
            aclose = getattr(updates, "aclose", None)
            if aclose is not None:
                await aclose()
        self.logger.debug("Config watcher stopped")

    async def _agent_recovery_loop(self) -> None:
        """Restart agents observed in Error"""
        while not await self._wait_for_shutdown(self.recovery_interval):
            try:
                await self.recover_agents()
            except Exception as error:
                self.logger.error("Agent recovery error", error=str(error))
        self.logger.debug("Agent recovery stopped")

    def _generate_operation_id(self) -> str:
        return f"orch_{int(time.time() * 1000)}_{self._rng.randint(1000, 9999)}"


__all__ = [
    "AgentOrchestrator",
    "AgentAssignment",
    "AgentMessage",
    "AgentMessageType",
    "OrchestratorStatus",
    "ResourceSample",
    "ResourceSampler",
    "SystemMetrics",
]
