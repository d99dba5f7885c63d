"""
Chat Data Quality Metrics

Tracks how much of the scraped chat survives processing, per streamer and
overall, and turns threshold breaches into alerts.

Key Features:
- Weighted quality score over valid, spam, duplicate and malformed rates
- Per-streamer rates, average message length and unique users
- Threshold-based alerts with Info / Warning / Critical levels
- Plain-text report for operators
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

import structlog

INACTIVE_STREAMER_MINUTES = 30
MAX_PARSE_ERROR_RATE = 0.1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class QualityAlert:
    """
    One threshold breach.

    `key` identifies the condition (e.g. "spam_rate:shroud") independently of
    the numbers in `message`, so repeated checks can tell new alerts apart.
    """

    level: AlertLevel
    key: str
    message: str

    def __str__(self) -> str:
        return f"{self.level.value.upper()}: {self.message}"


@dataclass
class QualityThresholds:
    min_quality_score: float = 0.7
    max_spam_rate: float = 0.3
    max_duplicate_rate: float = 0.4
    min_processing_rate: float = 10.0  # messages per second


@dataclass
class StreamerQualityMetrics:
    streamer: str
    total_messages: int = 0
    valid_messages: int = 0
    spam_filtered: int = 0
    duplicates_filtered: int = 0
    average_message_length: float = 0.0
    unique_users: int = 0
    last_message_time: Optional[datetime] = None

    @property
    def spam_rate(self) -> float:
        return self.spam_filtered / self.total_messages if self.total_messages else 0.0

    @property
    def duplicate_rate(self) -> float:
        if not self.total_messages:
            return 0.0
        return self.duplicates_filtered / self.total_messages

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_messages": self.total_messages,
            "valid_messages": self.valid_messages,
            "spam_rate": round(self.spam_rate, 4),
            "duplicate_rate": round(self.duplicate_rate, 4),
            "average_message_length": round(self.average_message_length, 2),
            "unique_users": self.unique_users,
            "last_message_time": (
                self.last_message_time.isoformat() if self.last_message_time else None
            ),
        }


@dataclass
class QualityMetrics:
    """Session-wide totals"""

    total_processed: int = 0
    valid_messages: int = 0
    spam_filtered: int = 0
    length_filtered: int = 0
    duplicates_filtered: int = 0
    parse_errors: int = 0
    quality_score: float = 1.0
    processing_rate: float = 0.0  # messages per second
    streamers: Dict[str, StreamerQualityMetrics] = field(default_factory=dict)
    session_start: datetime = field(default_factory=_utcnow)
    last_updated: datetime = field(default_factory=_utcnow)

    def rate(self, count: int) -> float:
        return count / self.total_processed if self.total_processed else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "valid_messages": self.valid_messages,
            "spam_filtered": self.spam_filtered,
            "length_filtered": self.length_filtered,
            "duplicates_filtered": self.duplicates_filtered,
            "parse_errors": self.parse_errors,
            "quality_score": round(self.quality_score, 4),
            "processing_rate": round(self.processing_rate, 3),
            "streamers": {
                name: metrics.to_dict() for name, metrics in self.streamers.items()
            },
            "session_start": self.session_start.isoformat(),
            "last_updated": self.last_updated.isoformat(),
        }


class QualityMetricsTracker:
    """Accumulates processing outcomes and evaluates them against thresholds"""

    # Weights of the quality score components; they sum to 1
    SCORE_WEIGHTS = {
        "valid": 0.4,
        "spam": 0.25,
        "duplicates": 0.2,
        "parse_errors": 0.15,
    }

    def __init__(
        self,
        thresholds: Optional[QualityThresholds] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.thresholds = thresholds or QualityThresholds()
        self._clock = clock
        now = clock()
        self._metrics = QualityMetrics(session_start=now, last_updated=now)
        self._users: Dict[str, Set[str]] = {}
        self._length_totals: Dict[str, int] = {}

    def record_batch(
        self,
        streamer: str,
        total: int,
        valid: int,
        spam: int = 0,
        length_filtered: int = 0,
        duplicates: int = 0,
        parse_errors: int = 0,
        usernames: Sequence[str] = (),
        message_lengths: Sequence[int] = (),
    ) -> None:
        """
        Record the outcome of processing one streamer's batch.

        Args:
            streamer: Channel the batch came from
            total: Messages in the batch
            valid: Messages that passed every filter
            spam, length_filtered, duplicates, parse_errors: Filter counts
            usernames: Authors of the accepted messages
            message_lengths: Lengths of the accepted messages
        """
        metrics = self._metrics
        now = self._clock()

        metrics.total_processed += total
        metrics.valid_messages += valid
        metrics.spam_filtered += spam
        metrics.length_filtered += length_filtered
        metrics.duplicates_filtered += duplicates
        metrics.parse_errors += parse_errors
        metrics.last_updated = now

        elapsed = (now - metrics.session_start).total_seconds()
        if elapsed > 0:
            metrics.processing_rate = metrics.total_processed / elapsed

        per_streamer = metrics.streamers.get(streamer)
        if per_streamer is None:
            per_streamer = StreamerQualityMetrics(streamer)
            metrics.streamers[streamer] = per_streamer

        per_streamer.total_messages += total
        per_streamer.valid_messages += valid
        per_streamer.spam_filtered += spam
        per_streamer.duplicates_filtered += duplicates
        per_streamer.last_message_time = now

        if message_lengths:
            self._length_totals[streamer] = self._length_totals.get(streamer, 0) + sum(
                message_lengths
            )
        if per_streamer.valid_messages:
            per_streamer.average_message_length = (
                self._length_totals.get(streamer, 0) / per_streamer.valid_messages
            )

        users = self._users.setdefault(streamer, set())
        users.update(usernames)
        per_streamer.unique_users = len(users)

        self._update_quality_score()
        self.logger.debug(
            f"Recorded quality for {streamer}",
            total=total,
            valid=valid,
            quality_score=round(metrics.quality_score, 3),
        )

    def check_alerts(self) -> List[QualityAlert]:
        metrics = self._metrics
        thresholds = self.thresholds
        alerts = []

        if metrics.total_processed == 0:
            return alerts

        if metrics.quality_score < thresholds.min_quality_score:
            alerts.append(
                QualityAlert(
                    AlertLevel.WARNING,
                    "quality_score",
                    f"Overall quality score ({metrics.quality_score:.2f}) below "
                    f"threshold ({thresholds.min_quality_score:.2f})",
                )
            )

        if metrics.processing_rate < thresholds.min_processing_rate:
            alerts.append(
                QualityAlert(
                    AlertLevel.WARNING,
                    "processing_rate",
                    f"Processing rate ({metrics.processing_rate:.1f} msg/s) below "
                    f"threshold ({thresholds.min_processing_rate:.1f} msg/s)",
                )
            )

        now = self._clock()
        for name, streamer in metrics.streamers.items():
            if streamer.spam_rate > thresholds.max_spam_rate:
                alerts.append(
                    QualityAlert(
                        AlertLevel.WARNING,
                        f"spam_rate:{name}",
                        f"High spam rate for {name}: {streamer.spam_rate * 100:.1f}% "
                        f"(threshold: {thresholds.max_spam_rate * 100:.1f}%)",
                    )
                )
            if streamer.duplicate_rate > thresholds.max_duplicate_rate:
                alerts.append(
                    QualityAlert(
                        AlertLevel.INFO,
                        f"duplicate_rate:{name}",
                        f"High duplicate rate for {name}: "
                        f"{streamer.duplicate_rate * 100:.1f}% "
                        f"(threshold: {thresholds.max_duplicate_rate * 100:.1f}%)",
                    )
                )
            if streamer.last_message_time is not None:
                idle_minutes = int((now - streamer.last_message_time).total_seconds() // 60)
                if idle_minutes > INACTIVE_STREAMER_MINUTES:
                    alerts.append(
                        QualityAlert(
                            AlertLevel.INFO,
                            f"inactive:{name}",
                            f"No messages from {name} for {idle_minutes} minutes",
                        )
                    )

        error_rate = metrics.rate(metrics.parse_errors)
        if error_rate > MAX_PARSE_ERROR_RATE:
            alerts.append(
                QualityAlert(
                    AlertLevel.CRITICAL,
                    "parse_errors",
                    f"High error rate: {error_rate * 100:.1f}% of messages "
                    "failed to parse",
                )
            )

        return alerts

    def get_metrics(self) -> QualityMetrics:
        """Snapshot of the session totals"""
        return replace(
            self._metrics,
            streamers={
                name: replace(metrics)
                for name, metrics in self._metrics.streamers.items()
            },
        )

    def get_streamer_metrics(self, streamer: str) -> Optional[StreamerQualityMetrics]:
        metrics = self._metrics.streamers.get(streamer)
        return replace(metrics) if metrics else None

    def reset(self) -> None:
        now = self._clock()
        self._metrics = QualityMetrics(session_start=now, last_updated=now)
        self._users.clear()
        self._length_totals.clear()
        self.logger.info("Quality metrics reset for new session")

    def generate_report(self) -> str:
        metrics = self._metrics
        session_minutes = (
            metrics.last_updated - metrics.session_start
        ).total_seconds() / 60

        lines = [
            "=== Quality Metrics Report ===",
            f"Session Duration: {session_minutes:.1f} minutes",
            f"Total Processed: {metrics.total_processed}",
            f"Valid Messages: {metrics.valid_messages} "
            f"({metrics.rate(metrics.valid_messages) * 100:.1f}%)",
            f"Quality Score: {metrics.quality_score:.2f}",
            f"Processing Rate: {metrics.processing_rate:.1f} msg/s",
            f"Spam Filtered: {metrics.spam_filtered} "
            f"({metrics.rate(metrics.spam_filtered) * 100:.1f}%)",
            f"Duplicates Filtered: {metrics.duplicates_filtered}",
            f"Parse Errors: {metrics.parse_errors}",
            "",
            "=== Streamer Breakdown ===",
        ]
        for name, streamer in metrics.streamers.items():
            lines.append(
                f"{name}: {streamer.total_messages} messages, "
                f"{streamer.unique_users} unique users, "
                f"avg length: {streamer.average_message_length:.1f}"
            )
            lines.append(
                f"  Spam: {streamer.spam_rate * 100:.1f}%, "
                f"Duplicates: {streamer.duplicate_rate * 100:.1f}%"
            )

        alerts = self.check_alerts()
        if alerts:
            lines.append("")
            lines.append("=== Active Alerts ===")
            lines.extend(str(alert) for alert in alerts)

        return "\n".join(lines) + "\n"

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self._metrics.to_dict(),
            "alerts": [
                {"level": alert.level.value, "key": alert.key, "message": alert.message}
                for alert in self.check_alerts()
            ],
        }

    def _update_quality_score(self) -> None:
        metrics = self._metrics
        if metrics.total_processed == 0:
            metrics.quality_score = 1.0
            return

        components = {
            "valid": metrics.rate(metrics.valid_messages),
            "spam": 1.0 - metrics.rate(metrics.spam_filtered),
            "duplicates": 1.0 - metrics.rate(metrics.duplicates_filtered),
            "parse_errors": 1.0 - metrics.rate(metrics.parse_errors),
        }
        score = sum(
            value * self.SCORE_WEIGHTS[name] for name, value in components.items()
        )
        metrics.quality_score = min(1.0, max(0.0, score))


__all__ = [
    "AlertLevel",
    "QualityAlert",
    "QualityThresholds",
    "QualityMetrics",
    "StreamerQualityMetrics",
    "QualityMetricsTracker",
]
