"""
Push-to-pull bridge between an upstream byte source and the HTTP response.

The source delivers ``on_data`` / ``on_end`` / ``on_error`` notifications at its
own pace; the response body pulls with ``await session.next()``. Chunks wait in a
bounded FIFO buffer. When the buffer reaches the high-water mark the source is
paused, and it is resumed once the consumer has drained it to the low-water mark.

All session methods, listener callbacks included, must run on the event loop
thread. Sources fed by a worker thread hop onto the loop with
``loop.call_soon_threadsafe`` (see ``provider.HttpPushSource``).
"""
import asyncio
import logging
import threading
from collections import deque
from enum import Enum
from typing import Callable, Deque, Optional

from .errors import RelayCancelled, RelayError, RelayInterrupted
from .models import EncodingDescriptor
from .progress import ProgressTracker
from .provider import PushSource

logger = logging.getLogger(__name__)

DEFAULT_HIGH_WATER_MARK = 8 * 1024 * 1024

SourceOpener = Callable[[EncodingDescriptor], PushSource]


class SessionState(str, Enum):
    OPENING = "opening"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED})


class RelaySession:
    """One relay of one selected encoding, owned by a single request."""

    def __init__(
        self,
        encoding: EncodingDescriptor,
        source: PushSource,
        *,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
        low_water_mark: Optional[int] = None,
        tracker: Optional[ProgressTracker] = None,
        label: Optional[str] = None,
    ):
        self.encoding = encoding
        self.total_length = encoding.content_length
        self.bytes_delivered = 0
        self.state = SessionState.OPENING
        self.label = label or encoding.format_key
        self.high_water_mark = max(1, int(high_water_mark))
        lwm = self.high_water_mark // 2 if low_water_mark is None else int(low_water_mark)
        self.low_water_mark = min(max(0, lwm), self.high_water_mark)
        self.peak_buffered = 0

        self._source = source
        self._tracker = tracker or ProgressTracker()
        self._buffer: Deque[bytes] = deque()
        self._buffered = 0
        self._paused = False
        self._ended = False
        self._source_error: Optional[BaseException] = None
        self._outcome: Optional[RelayError] = None
        self._source_closed = False
        self._wakeup = asyncio.Event()

    @property
    def buffered_bytes(self) -> int:
        return self._buffered

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    # ---------- listener side (producer) ----------
    def _accepting(self) -> bool:
        return not (self.is_terminal or self._ended or self._source_error is not None)

    def _mark_streaming(self):
        if self.state is SessionState.OPENING:
            self.state = SessionState.STREAMING

    def on_data(self, chunk: bytes) -> None:
        if not self._accepting() or not chunk:
            return
        self._mark_streaming()
        self._buffer.append(bytes(chunk))
        self._buffered += len(chunk)
        self.peak_buffered = max(self.peak_buffered, self._buffered)

        if self._buffered > 2 * self.high_water_mark:
            # the source kept pushing after pause(); stop before memory runs away
            self._fail(RelayInterrupted(
                "Upstream ignored backpressure",
                f"{self._buffered} bytes buffered, high-water mark {self.high_water_mark}",
            ))
        elif self._buffered >= self.high_water_mark and not self._paused:
            self._paused = True
            logger.debug("%s: buffer at %d bytes, pausing source", self.label, self._buffered)
            self._call_source("pause")
        self._wakeup.set()

    def on_end(self) -> None:
        if not self._accepting():
            return
        self._mark_streaming()
        self._ended = True
        self._wakeup.set()

    def on_error(self, exc: BaseException) -> None:
        if not self._accepting():
            return
        self._mark_streaming()
        self._source_error = exc
        self._wakeup.set()

    # ---------- consumer side ----------
    async def next(self) -> Optional[bytes]:
        """Next chunk in arrival order, or None once the source has ended.

        Raises RelayInterrupted after a source failure and RelayCancelled after
        cancel(), every time it is called from then on.
        """
        while True:
            if self.state is SessionState.COMPLETED:
                return None
            if self._outcome is not None:
                raise self._outcome

            if self._buffer:
                chunk = self._buffer.popleft()
                self._buffered -= len(chunk)
                if self._paused and self._buffered <= self.low_water_mark:
                    self._paused = False
                    logger.debug("%s: buffer drained to %d bytes, resuming source", self.label, self._buffered)
                    self._call_source("resume")
                self._tracker.observe(self, len(chunk))
                return chunk

            if self._ended:
                self.state = SessionState.COMPLETED
                self._release()
                logger.info("%s: relay completed, %d bytes delivered", self.label, self.bytes_delivered)
                return None

            if self._source_error is not None:
                err = self._source_error
                detail = str(err).strip() or err.__class__.__name__
                self._fail(RelayInterrupted("Upstream stream failed", detail))
                continue

            self._wakeup.clear()
            await self._wakeup.wait()

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.next()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    def cancel(self) -> None:
        """Stop the relay and release the source. No-op once terminal."""
        if self.is_terminal:
            return
        self._buffer.clear()
        self._buffered = 0
        self.state = SessionState.CANCELLED
        self._outcome = RelayCancelled("Relay cancelled")
        logger.info("%s: relay cancelled after %d bytes", self.label, self.bytes_delivered)
        self._release()
        self._wakeup.set()

    # ---------- internals ----------
    def _fail(self, error: RelayError):
        self._buffer.clear()
        self._buffered = 0
        self.state = SessionState.FAILED
        self._outcome = error
        logger.warning("%s: relay failed after %d bytes: %s (%s)",
                       self.label, self.bytes_delivered, error.message, error.detail)
        self._release()
        self._wakeup.set()

    def _call_source(self, name: str):
        try:
            getattr(self._source, name)()
        except Exception:
            logger.warning("%s: source.%s() failed", self.label, name, exc_info=True)

    def _release(self):
        if self._source_closed:
            return
        self._source_closed = True
        self._call_source("close")


def _close_quietly(source: PushSource) -> None:
    logger.debug("closing stream opened after its request was abandoned")
    try:
        source.close()
    except Exception:
        logger.warning("closing orphaned source failed", exc_info=True)


def _open_unless_abandoned(opener: SourceOpener, encoding: EncodingDescriptor,
                           abandoned: threading.Event) -> Optional[PushSource]:
    source = opener(encoding)
    if abandoned.is_set():
        # nobody is waiting; the loop may already be gone
        _close_quietly(source)
        return None
    return source


def _close_orphan(task: "asyncio.Future") -> None:
    if task.cancelled() or task.exception() is not None:
        return
    source = task.result()
    if source is not None:
        _close_quietly(source)


class StreamAdapter:
    """Opens relay sessions with a shared buffer policy."""

    def __init__(
        self,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
        low_water_mark: Optional[int] = None,
        tracker: Optional[ProgressTracker] = None,
    ):
        self.high_water_mark = high_water_mark
        self.low_water_mark = low_water_mark
        self.tracker = tracker or ProgressTracker()

    async def open(self, encoding: EncodingDescriptor, opener: SourceOpener,
                   *, label: Optional[str] = None) -> RelaySession:
        # the opener may block on the origin; keep it off the loop
        abandoned = threading.Event()
        task = asyncio.ensure_future(
            asyncio.to_thread(_open_unless_abandoned, opener, encoding, abandoned)
        )
        try:
            source = await asyncio.shield(task)
        except asyncio.CancelledError:
            abandoned.set()
            task.add_done_callback(_close_orphan)
            raise

        session = RelaySession(
            encoding,
            source,
            high_water_mark=self.high_water_mark,
            low_water_mark=self.low_water_mark,
            tracker=self.tracker,
            label=label,
        )
        try:
            source.start(session)
        except Exception:
            session._release()
            raise
        logger.info("%s: stream opened (%s)", session.label, encoding.format_key)
        return session

    async def next(self, session: RelaySession) -> Optional[bytes]:
        return await session.next()

    def cancel(self, session: RelaySession) -> None:
        session.cancel()
