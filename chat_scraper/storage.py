"""
Chat Message Storage

Appends chat messages to JSON-lines or CSV files and rolls over to a new
file once the active one grows past the configured size or age.
"""

import abc
import asyncio
import csv
import io
import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

import structlog

from .broadcast import ChannelClosed, Subscription
from .config import OutputConfig, parse_size_to_bytes, parse_time_to_seconds
from .errors import ConfigError, StorageError
from .models import ChatMessage
from .processor import MessageProcessor


class OutputFormatter(abc.ABC):
    extension = ""

    def header(self) -> Optional[str]:
        return None

    @abc.abstractmethod
    def format_messages(self, messages: List[ChatMessage]) -> str:
        ...


class JsonLinesFormatter(OutputFormatter):
    """One JSON object per line"""

    extension = "jsonl"

    def format_messages(self, messages: List[ChatMessage]) -> str:
        return "".join(
            json.dumps(message.to_dict(), ensure_ascii=False) + "\n"
            for message in messages
        )


class CsvFormatter(OutputFormatter):
    """Flat CSV rows with a configurable column set"""

    extension = "csv"
    DEFAULT_COLUMNS = [
        "timestamp",
        "streamer",
        "username",
        "display_name",
        "message",
        "user_color",
        "badges",
        "emotes",
        "message_id",
    ]

    def __init__(self, columns: Optional[List[str]] = None):
        self.columns = list(columns or self.DEFAULT_COLUMNS)
        unknown = [c for c in self.columns if c not in self.DEFAULT_COLUMNS]
        if unknown:
            raise ConfigError(f"Unknown CSV columns: {', '.join(unknown)}")

    def header(self) -> Optional[str]:
        return self._render([self.columns])

    def format_messages(self, messages: List[ChatMessage]) -> str:
        return self._render([self._row(message) for message in messages])

    def _row(self, message: ChatMessage) -> List[str]:
        values = {
            "timestamp": message.timestamp.isoformat(),
            "streamer": message.streamer,
            "username": message.user.username,
            "display_name": message.user.display_name,
            "message": message.message.text,
            "user_color": message.user.color or "",
            "badges": ";".join(message.user.badges),
            "emotes": ";".join(message.message.emotes),
            "message_id": message.id,
        }
        return [values[column] for column in self.columns]

    @staticmethod
    def _render(rows: List[List[str]]) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerows(rows)
        return buffer.getvalue()


FORMATTERS = {
    "json": JsonLinesFormatter,
    "csv": CsvFormatter,
}


@dataclass
class StorageStats:
    total_messages: int = 0
    files_created: int = 0
    bytes_written: int = 0
    rotations: int = 0
    last_rotation: Optional[datetime] = None


@dataclass
class _ActiveFile:
    path: Path
    size: int
    opened_at: float


class MessageStorage:
    """
    Rotating file sink for chat messages.

    Files are named chat_<UTC timestamp>.<ext> inside the output directory.
    """

    def __init__(
        self,
        directory: Path,
        output_format: str = "json",
        rotation_size: str = "100MB",
        rotation_time: str = "1h",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.directory = Path(directory)

        formatter_class = FORMATTERS.get(output_format)
        if formatter_class is None:
            raise ConfigError(f"Unsupported output format: {output_format}")
        self.formatter: OutputFormatter = formatter_class()

        self.rotation_size = parse_size_to_bytes(rotation_size)
        self.rotation_seconds = parse_time_to_seconds(rotation_time)
        self._clock = clock

        self._active: Optional[_ActiveFile] = None
        self._lock = asyncio.Lock()
        self.stats = StorageStats()

    @classmethod
    def from_config(cls, output: OutputConfig, **kwargs) -> "MessageStorage":
        return cls(
            directory=output.directory,
            output_format=output.format,
            rotation_size=output.rotation_size,
            rotation_time=output.rotation_time,
            **kwargs,
        )

    @property
    def current_file(self) -> Optional[Path]:
        return self._active.path if self._active else None

    async def store(self, messages: List[ChatMessage]) -> int:
        """
        Append messages to the active file.

        Returns:
            Number of messages written

        Raises:
            StorageError: if the file cannot be written
        """
        if not messages:
            return 0

        async with self._lock:
            self._rotate_if_needed()
            is_new_file = self._active is None
            if is_new_file:
                self._active = _ActiveFile(
                    path=self._new_file_path(), size=0, opened_at=self._clock()
                )

            content = self.formatter.format_messages(messages)
            header = self.formatter.header() if is_new_file else None
            if header:
                content = header + content

            written = self._append(self._active.path, content)
            self._active.size += written

            if is_new_file:
                self.stats.files_created += 1
                self.logger.info("Opened output file", path=str(self._active.path))
            self.stats.total_messages += len(messages)
            self.stats.bytes_written += written

        self.logger.debug(f"Stored {len(messages)} messages")
        return len(messages)

    async def consume(
        self,
        subscription: Subscription,
        processor: Optional[MessageProcessor] = None,
        batch_size: int = 100,
        flush_interval: float = 1.0,
    ) -> None:
        """
        Drain a chat subscription into storage until it is closed.

        Messages are batched; a partial batch is flushed after flush_interval
        seconds without new messages and when the subscription closes.
        """
        batch: List[ChatMessage] = []
        try:
            while True:
                try:
                    message = await asyncio.wait_for(
                        subscription.recv(), timeout=flush_interval
                    )
                except asyncio.TimeoutError:
                    await self._flush(batch, processor)
                    continue
                except ChannelClosed:
                    break

                batch.append(message)
                if len(batch) >= batch_size:
                    await self._flush(batch, processor)
        finally:
            await self._flush(batch, processor)
            if subscription.lagged:
                self.logger.warning(
                    "Storage consumer fell behind", dropped=subscription.lagged
                )

    def close(self) -> None:
        if self._active is not None:
            self.logger.info("Closed output file", path=str(self._active.path))
        self._active = None

    async def _flush(
        self, batch: List[ChatMessage], processor: Optional[MessageProcessor]
    ) -> None:
        if not batch:
            return
        messages = processor.process(batch) if processor else list(batch)
        batch.clear()
        try:
            await self.store(messages)
        except StorageError as error:
            self.logger.error(
                "Failed to store messages", error=str(error), count=len(messages)
            )

    def _rotate_if_needed(self) -> None:
        if self._active is None:
            return

        age = self._clock() - self._active.opened_at
        if self._active.size < self.rotation_size and age < self.rotation_seconds:
            return

        self.logger.info(
            "Rotating output file",
            path=str(self._active.path),
            size=self._active.size,
            age_seconds=round(age, 1),
        )
        self._active = None
        self.stats.rotations += 1
        self.stats.last_rotation = datetime.now(timezone.utc)

    def _new_file_path(self) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        return self.directory / f"chat_{stamp}.{self.formatter.extension}"

    def _append(self, path: Path, content: str) -> int:
        data = content.encode("utf-8")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "ab") as f:
                f.write(data)
        except OSError as error:
            raise StorageError(f"Failed to write {path}: {error}") from error
        return len(data)


__all__ = [
    "MessageStorage",
    "StorageStats",
    "OutputFormatter",
    "JsonLinesFormatter",
    "CsvFormatter",
]
