"""Transient entities created and destroyed within one transcription request."""

import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from speakapper.errors import PipelineCancelled

LOCAL_FILE = 'local_file'
REMOTE_URL = 'remote_url'
MIN_TIMEOUT_SECONDS = 0.01


@dataclass(frozen=True)
class MediaSource:
    kind: str
    path: str = ''
    url: str = ''
    size_bytes: int = 0
    language_hint: str = ''

    def __post_init__(self):
        if self.kind not in {LOCAL_FILE, REMOTE_URL}:
            raise ValueError(f"Unknown media source kind: {self.kind!r}")
        if bool(self.path) == bool(self.url):
            raise ValueError('MediaSource needs exactly one of path or url')
        if self.kind == LOCAL_FILE and not self.path:
            raise ValueError('Local file sources need a path')
        if self.kind == REMOTE_URL and not self.url:
            raise ValueError('Remote URL sources need a url')

    @classmethod
    def local_file(cls, path, size_bytes=0):
        return cls(kind=LOCAL_FILE, path=str(path), size_bytes=int(size_bytes or 0))

    @classmethod
    def remote_url(cls, url, language_hint=''):
        return cls(kind=REMOTE_URL, url=str(url), language_hint=str(language_hint or ''))


@dataclass(frozen=True)
class AcquiredAudio:
    path: str
    size_bytes: int


@dataclass(frozen=True)
class AudioChunk:
    path: str
    sequence_index: int


@dataclass(frozen=True)
class TranscriptionResult:
    text: str


@dataclass
class FallbackAttempt:
    """Diagnostics for one download strategy; never persisted."""
    strategy_name: str
    succeeded: bool
    raw_output: str = ''


@dataclass
class CancelToken:
    """Deadline plus explicit cancel flag shared by every blocking call of one request.

    Subprocesses poll it while running and are killed when it fires; HTTP
    calls see it through clipped timeouts and per-block checks.
    """
    deadline: Optional[float] = None
    _event: threading.Event = field(default_factory=threading.Event, repr=False)

    @classmethod
    def with_timeout(cls, seconds):
        if not seconds:
            return cls()
        return cls(deadline=time.monotonic() + float(seconds))

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self):
        return self._event.is_set()

    def remaining(self):
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self, stage=''):
        if self.cancelled:
            raise PipelineCancelled(details=f"cancelled before {stage}" if stage else 'cancelled')
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise PipelineCancelled(details=f"deadline exceeded before {stage}" if stage else 'deadline exceeded')

    def clip(self, timeout, stage=''):
        """Return ``timeout`` bounded by the time left before the deadline.

        Raises ``PipelineCancelled`` instead of ever returning a zero timeout.
        """
        self.check(stage)
        remaining = self.remaining()
        if remaining is None:
            return timeout
        remaining = max(remaining, MIN_TIMEOUT_SECONDS)
        if timeout is None:
            return remaining
        return min(float(timeout), remaining)

    def sleep(self, seconds):
        if seconds <= 0:
            return
        wait_for = self.clip(seconds)
        if self._event.wait(wait_for):
            raise PipelineCancelled(details='cancelled while waiting between chunks')
