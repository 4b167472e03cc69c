"""
Usage ledger: per-session cost and unit accounting for every model call.

Each active conversation session owns its own accumulator, so concurrent
voice connections never overwrite each other's totals. Entries are buffered
and written to a daily JSON file by LedgerWriter.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ModelCategory(str, Enum):
    SPEECH_TO_TEXT = "speech-to-text"
    GENERATION = "generation"
    SPEECH_SYNTHESIS = "speech-synthesis"


# USD rates. Token models are priced per 1K tokens, whisper per minute of
# audio (input units are seconds), speech synthesis per 1K characters.
MODEL_RATES: Dict[str, Dict[str, Any]] = {
    "gpt-3.5-turbo": {"unit": "1k_tokens", "input": 0.0015, "output": 0.002},
    "gpt-4o-mini": {"unit": "1k_tokens", "input": 0.00015, "output": 0.0006},
    "whisper-1": {"unit": "minute", "input": 0.006},
    "tts-1": {"unit": "1k_chars", "input": 0.015},
    "tts-1-hd": {"unit": "1k_chars", "input": 0.015},
    "eleven_turbo_v2_5": {"unit": "1k_chars", "input": 0.05},
}


def calculate_cost(model_id: str, input_units: float, output_units: float = 0) -> float:
    """
    Price a single model invocation.

    Unknown models cost 0 and log a warning.
    """
    rates = MODEL_RATES.get(model_id)
    if rates is None:
        logger.warning(f"⚠️ Unknown model for cost calculation: {model_id}")
        return 0.0

    unit = rates["unit"]
    if unit == "minute":
        return (input_units / 60) * rates["input"]
    if unit == "1k_chars":
        return (input_units / 1000) * rates["input"]
    return (input_units / 1000) * rates["input"] + (output_units / 1000) * rates["output"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageLedgerEntry(BaseModel):
    kind: str = "usage"
    timestamp: datetime = Field(default_factory=_utcnow)
    session_id: str
    category: ModelCategory
    model_id: str
    input_units: float = 0
    output_units: float = 0
    cost: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionStats(BaseModel):
    session_id: str
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    start_time: datetime
    total_cost: float = 0.0
    total_input_units: float = 0
    total_output_units: float = 0
    call_count: int = 0


class TurnLogEntry(BaseModel):
    kind: str = "turn"
    timestamp: datetime = Field(default_factory=_utcnow)
    session_id: str
    message_id: Optional[str] = None
    user_text: str
    bot_text: str
    processing_time_ms: Optional[int] = None
    session_stats: Optional[SessionStats] = None


LedgerRecord = Union[UsageLedgerEntry, TurnLogEntry]


class SessionUsageAccumulator:
    """Running totals for one conversation session."""

    def __init__(self, session_id: str, user_id: Optional[str] = None, agent_id: Optional[str] = None):
        self.session_id = session_id
        self.user_id = user_id
        self.agent_id = agent_id
        self.start_time = _utcnow()
        self.entries: List[UsageLedgerEntry] = []
        self.total_cost = 0.0
        self.total_input_units: float = 0
        self.total_output_units: float = 0

    def add(self, entry: UsageLedgerEntry) -> None:
        self.entries.append(entry)
        self.total_cost += entry.cost
        self.total_input_units += entry.input_units
        self.total_output_units += entry.output_units

    def snapshot(self) -> SessionStats:
        return SessionStats(
            session_id=self.session_id,
            user_id=self.user_id,
            agent_id=self.agent_id,
            start_time=self.start_time,
            total_cost=self.total_cost,
            total_input_units=self.total_input_units,
            total_output_units=self.total_output_units,
            call_count=len(self.entries),
        )


class LedgerWriter:
    """
    Buffered writer for ledger records.

    Records accumulate in memory; flush() appends them to
    ``<log_dir>/YYYY-MM-DD.json``. schedule_flush() debounces rapid calls
    into one write. Use as an async context manager so pending records are
    flushed on shutdown.
    """

    def __init__(self, log_dir: Union[str, Path], flush_delay_ms: int = 5000):
        self.log_dir = Path(log_dir)
        self.flush_delay_ms = flush_delay_ms
        self._buffer: List[LedgerRecord] = []
        self._flush_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()

    @property
    def pending(self) -> List[LedgerRecord]:
        return list(self._buffer)

    def append(self, record: LedgerRecord) -> None:
        self._buffer.append(record)

    def discard_session(self, session_id: str) -> int:
        """Drop unflushed records of one session. Returns how many were dropped."""
        kept = [r for r in self._buffer if r.session_id != session_id]
        dropped = len(self._buffer) - len(kept)
        self._buffer = kept
        return dropped

    def day_file(self, day: Optional[datetime] = None) -> Path:
        day = day or _utcnow()
        return self.log_dir / f"{day.strftime('%Y-%m-%d')}.json"

    def schedule_flush(self) -> None:
        """Flush after flush_delay_ms unless another call reschedules first."""
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
        self._flush_task = asyncio.create_task(self._delayed_flush())

    async def _delayed_flush(self) -> None:
        try:
            await asyncio.sleep(self.flush_delay_ms / 1000.0)
        except asyncio.CancelledError:
            return
        await self.flush()

    async def flush(self) -> int:
        """
        Write buffered records to their day files. Returns the number written.

        Each record goes to the file of the UTC day it was recorded on.
        """
        async with self._write_lock:
            if not self._buffer:
                return 0

            records, self._buffer = self._buffer, []
            by_day: Dict[Path, List[LedgerRecord]] = {}
            for record in records:
                by_day.setdefault(self.day_file(record.timestamp), []).append(record)

            written = 0
            failed: List[LedgerRecord] = []
            for target, group in by_day.items():
                payload = [r.model_dump(mode="json") for r in group]
                try:
                    await asyncio.to_thread(self._append_to_file, target, payload)
                except (OSError, ValueError) as e:
                    logger.error(f"Error saving ledger records to {target}: {e}")
                    failed.extend(group)
                    continue
                written += len(payload)
                logger.info(f"📊 Flushed {len(payload)} ledger records to {target.name}")

            if failed:
                self._buffer = failed + self._buffer
            return written

    @staticmethod
    def _append_to_file(target: Path, payload: List[dict]) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        existing: List[dict] = []
        if target.exists():
            existing = json.loads(target.read_text(encoding="utf-8") or "[]")
        existing.extend(payload)
        target.write_text(json.dumps(existing, indent=2), encoding="utf-8")

    def read_day(self, day: Optional[datetime] = None) -> List[dict]:
        target = self.day_file(day)
        if not target.exists():
            return []
        try:
            return json.loads(target.read_text(encoding="utf-8") or "[]")
        except (OSError, ValueError) as e:
            logger.error(f"Error reading ledger file {target}: {e}")
            return []

    async def load_day(self, day: Optional[datetime] = None) -> List[dict]:
        return await asyncio.to_thread(self.read_day, day)

    async def aclose(self) -> None:
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
        await self.flush()

    async def __aenter__(self) -> "LedgerWriter":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


class UsageLedger:
    """
    Records model usage per conversation session.

    Responsibilities:
    - One accumulator per active session (start_session / end_session)
    - Hold counting so in-flight work keeps its session open (acquire / release)
    - Cost attribution via the static rate table
    - Turn-level log entries with debounced flushing
    - Session statistics and flushed-log queries
    """

    def __init__(self, writer: LedgerWriter):
        self.writer = writer
        self._accumulators: Dict[str, SessionUsageAccumulator] = {}
        self._current_session_id: Optional[str] = None
        self._holds: Dict[str, int] = {}
        self._held: Set[str] = set()

    def start_session(self, session_id: str, user_id: Optional[str] = None, agent_id: Optional[str] = None) -> None:
        """
        Begin (or restart) accounting for a session.

        Replaces this session's accumulator and drops its unflushed records.
        Other sessions are untouched.
        """
        dropped = self.writer.discard_session(session_id)
        self._accumulators[session_id] = SessionUsageAccumulator(session_id, user_id, agent_id)
        self._current_session_id = session_id
        logger.info(f"📊 Usage session started: {session_id} (dropped {dropped} unflushed records)")

    async def end_session(self, session_id: str) -> None:
        """Release a session's accumulator and flush its records."""
        self._holds.pop(session_id, None)
        self._held.discard(session_id)
        if self._accumulators.pop(session_id, None) is None:
            return
        if self._current_session_id == session_id:
            self._current_session_id = next(reversed(self._accumulators), None)
        await self.writer.flush()
        logger.info(f"🧹 Usage session ended: {session_id}")

    def acquire(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        restart: bool = False,
    ) -> None:
        """
        Take a hold on a session's accumulator, starting it if needed.

        Every holder (a bound voice connection, an in-flight turn, a text
        request) calls release() when done; the accumulator of a session
        started here ends when its last hold is released.
        """
        if restart or session_id not in self._accumulators:
            self.start_session(session_id, user_id=user_id, agent_id=agent_id)
            self._held.add(session_id)
        self._holds[session_id] = self._holds.get(session_id, 0) + 1

    async def release(self, session_id: str) -> None:
        remaining = self._holds.get(session_id, 0) - 1
        if remaining > 0:
            self._holds[session_id] = remaining
            return

        self._holds.pop(session_id, None)
        if session_id in self._held:
            await self.end_session(session_id)

    def hold_count(self, session_id: str) -> int:
        return self._holds.get(session_id, 0)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._accumulators

    def calculate_cost(self, model_id: str, input_units: float, output_units: float = 0) -> float:
        return calculate_cost(model_id, input_units, output_units)

    def record_usage(
        self,
        session_id: str,
        category: ModelCategory,
        model_id: str,
        input_units: float = 0,
        output_units: float = 0,
        cost: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[UsageLedgerEntry]:
        """
        Append a usage entry to the session totals and the flush buffer.

        Returns None (with a warning) when the session is not active.
        """
        accumulator = self._accumulators.get(session_id)
        if accumulator is None:
            logger.warning(
                f"⚠️ No active usage session {session_id} - {category.value} usage will not be tracked"
            )
            return None

        if cost is None:
            cost = calculate_cost(model_id, input_units, output_units)

        entry = UsageLedgerEntry(
            session_id=session_id,
            category=category,
            model_id=model_id,
            input_units=input_units,
            output_units=output_units,
            cost=cost,
            metadata=metadata or {},
        )
        accumulator.add(entry)
        self.writer.append(entry)

        logger.info(
            f"📊 Model usage: {category.value} - {model_id} "
            f"in={input_units} out={output_units} cost=${cost:.6f}"
        )
        return entry

    def record_turn(
        self,
        session_id: str,
        message_id: Optional[str],
        user_text: str,
        bot_text: str,
        processing_time_ms: Optional[int] = None,
    ) -> Optional[TurnLogEntry]:
        """Append a turn entry and schedule a debounced flush."""
        accumulator = self._accumulators.get(session_id)
        if accumulator is None:
            logger.warning(f"⚠️ No active usage session {session_id} - turn will not be logged")
            return None

        entry = TurnLogEntry(
            session_id=session_id,
            message_id=message_id,
            user_text=user_text,
            bot_text=bot_text,
            processing_time_ms=processing_time_ms,
            session_stats=accumulator.snapshot(),
        )
        self.writer.append(entry)
        self.writer.schedule_flush()
        return entry

    def get_session_stats(self, session_id: str) -> Optional[SessionStats]:
        accumulator = self._accumulators.get(session_id)
        return accumulator.snapshot() if accumulator else None

    def get_current_session_stats(self) -> Optional[SessionStats]:
        """Stats of the most recently started active session, or None."""
        if self._current_session_id is None:
            return None
        return self.get_session_stats(self._current_session_id)

    async def get_session_logs(self, session_id: str) -> List[dict]:
        """Flushed records of today's file belonging to one session."""
        return [r for r in await self.writer.load_day() if r.get("session_id") == session_id]

    async def get_all_logs(self) -> List[dict]:
        return await self.writer.load_day()
