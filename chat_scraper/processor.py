"""
Message Quality Processing

Filters parsed chat messages before they reach storage: invalid records,
out-of-range lengths, likely spam, and duplicates seen recently are dropped.
When a quality tracker is attached, every batch outcome is recorded on it.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

from .models import ChatMessage
from .quality import QualityMetricsTracker


@dataclass
class ProcessingStats:
    """Running totals for the processor"""

    accepted: int = 0
    invalid: int = 0
    length_filtered: int = 0
    spam_filtered: int = 0
    duplicates_filtered: int = 0
    per_streamer: Dict[str, int] = field(default_factory=dict)

    @property
    def filtered(self) -> int:
        return (
            self.invalid
            + self.length_filtered
            + self.spam_filtered
            + self.duplicates_filtered
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "accepted": self.accepted,
            "filtered": self.filtered,
            "invalid": self.invalid,
            "length_filtered": self.length_filtered,
            "spam_filtered": self.spam_filtered,
            "duplicates_filtered": self.duplicates_filtered,
        }


class MessageProcessor:
    """
    Validation, spam filtering and de-duplication for chat messages.

    Duplicates are detected by content hash against a bounded LRU of recently
    accepted messages, so memory stays flat on long-running scrapes.
    """

    def __init__(
        self,
        min_message_length: int = 1,
        max_message_length: int = 500,
        filter_spam: bool = True,
        dedup_capacity: int = 10_000,
        quality_tracker: Optional[QualityMetricsTracker] = None,
    ):
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.min_message_length = min_message_length
        self.max_message_length = max_message_length
        self.filter_spam = filter_spam
        self.dedup_capacity = dedup_capacity
        self.quality_tracker = quality_tracker

        self._seen_hashes: "OrderedDict[str, None]" = OrderedDict()
        self.stats = ProcessingStats()

    def process(self, messages: List[ChatMessage]) -> List[ChatMessage]:
        """
        Run every filter over a batch.

        Args:
            messages: Parsed messages in arrival order

        Returns:
            Messages that passed, order preserved
        """
        accepted = []
        outcomes: Dict[str, Dict[str, int]] = {}

        for message in messages:
            outcome = self._classify(message)
            counts = outcomes.setdefault(
                message.streamer, {"total": 0, "accepted": 0}
            )
            counts["total"] += 1
            counts[outcome] = counts.get(outcome, 0) + 1
            if outcome != "accepted":
                continue

            accepted.append(message)
            self.stats.accepted += 1
            self.stats.per_streamer[message.streamer] = (
                self.stats.per_streamer.get(message.streamer, 0) + 1
            )

        if self.quality_tracker is not None:
            self._record_quality(outcomes, accepted)

        if len(accepted) != len(messages):
            self.logger.debug(
                f"Filtered {len(messages)} messages down to {len(accepted)}",
                total_filtered=self.stats.filtered,
            )

        return accepted

    def is_duplicate(self, message: ChatMessage) -> bool:
        return message.content_hash() in self._seen_hashes

    def reset(self) -> None:
        self._seen_hashes.clear()
        self.stats = ProcessingStats()

    def _classify(self, message: ChatMessage) -> str:
        """Name of the first filter that rejects the message, or 'accepted'"""
        if not message.is_valid():
            self.stats.invalid += 1
            return "invalid"

        length = message.message_length()
        if not self.min_message_length <= length <= self.max_message_length:
            self.stats.length_filtered += 1
            return "length"

        if self.filter_spam and message.is_likely_spam():
            self.stats.spam_filtered += 1
            return "spam"

        if not self._remember(message.content_hash()):
            self.stats.duplicates_filtered += 1
            return "duplicate"

        return "accepted"

    def _record_quality(
        self, outcomes: Dict[str, Dict[str, int]], accepted: List[ChatMessage]
    ) -> None:
        for streamer, counts in outcomes.items():
            streamer_messages = [m for m in accepted if m.streamer == streamer]
            self.quality_tracker.record_batch(
                streamer,
                total=counts["total"],
                valid=counts["accepted"],
                spam=counts.get("spam", 0),
                length_filtered=counts.get("length", 0),
                duplicates=counts.get("duplicate", 0),
                # Records the parser could not fill in
                parse_errors=counts.get("invalid", 0),
                usernames=[m.user.username for m in streamer_messages],
                message_lengths=[m.message_length() for m in streamer_messages],
            )

    def _remember(self, content_hash: str) -> bool:
        """Record a hash; False when it was already known"""
        if content_hash in self._seen_hashes:
            self._seen_hashes.move_to_end(content_hash)
            return False

        self._seen_hashes[content_hash] = None
        if len(self._seen_hashes) > self.dedup_capacity:
            self._seen_hashes.popitem(last=False)
        return True


__all__ = ["MessageProcessor", "ProcessingStats"]
