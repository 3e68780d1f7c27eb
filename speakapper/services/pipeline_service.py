"""Long-audio transcription pipeline.

Small inputs go to the transcription API in one call. Inputs above the
segmentation threshold are split into ten-minute chunks which are
transcribed one at a time, in order, and joined with newlines. Any chunk
failure aborts the whole request; partial transcripts are never returned.
All temporary files of an invocation are removed on every exit path.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

from speakapper.logging_config import log_event
from speakapper.models import LOCAL_FILE, CancelToken, MediaSource
from speakapper.services import file_service, temp_service
from speakapper.services.media_service import MediaAcquirer
from speakapper.services.segment_service import Segmenter
from speakapper.services.transcription_client import TranscriptionClient

logger = logging.getLogger(__name__)

SINGLE = 'single'
SEGMENTED = 'segmented'


@dataclass(frozen=True)
class PipelineOutcome:
    transcript: str
    mode: str
    size_bytes: int
    chunk_count: int = 1


class TranscriptionPipeline:
    def __init__(
        self,
        settings,
        *,
        client: Optional[TranscriptionClient] = None,
        segmenter: Optional[Segmenter] = None,
        acquirer: Optional[MediaAcquirer] = None,
        ffmpeg_binary_getter=None,
        sleep_fn=None,
    ):
        self.settings = settings
        self.client = client or TranscriptionClient(settings)
        self.segmenter = segmenter or Segmenter(
            ffmpeg_binary_getter=ffmpeg_binary_getter or file_service.get_ffmpeg_binary,
            segment_seconds=settings.segment_seconds,
            timeout_seconds=settings.segment_timeout_seconds,
        )
        self.acquirer = acquirer or MediaAcquirer(settings)
        self.sleep_fn = sleep_fn

    def select_mode(self, size_bytes):
        if int(size_bytes or 0) > self.settings.segment_threshold_bytes:
            return SEGMENTED
        return SINGLE

    def new_cancel_token(self):
        return CancelToken.with_timeout(self.settings.request_deadline_seconds)

    def transcribe(self, source: MediaSource, language_hint='', *, filename='', cancel_token=None) -> str:
        return self.run(source, language_hint, filename=filename, cancel_token=cancel_token).transcript

    def transcribe_from_url(self, url, language_hint='', *, cancel_token=None) -> str:
        source = MediaSource.remote_url(url, language_hint)
        return self.run(source, language_hint, cancel_token=cancel_token).transcript

    def run(self, source: MediaSource, language_hint='', *, filename='', cancel_token=None, cleanup_source=True) -> PipelineOutcome:
        cancel_token = cancel_token or self.new_cancel_token()
        language = language_hint or source.language_hint
        started = time.monotonic()
        acquired_path = ''
        try:
            with temp_service.workspace('speakapper', temp_root=self.settings.temp_root) as workdir:
                audio = self.acquirer.acquire(source, workdir, cancel_token=cancel_token)
                acquired_path = audio.path
                mode = self.select_mode(audio.size_bytes)
                log_event(logging.INFO, 'transcription_mode', mode=mode, size_bytes=audio.size_bytes, source=source.kind)
                if mode == SINGLE:
                    outcome = self._transcribe_single(audio, language, filename, cancel_token)
                else:
                    outcome = self._transcribe_segmented(audio, workdir, language, cancel_token)
        except Exception as exc:
            log_event(
                logging.WARNING,
                'transcription_failed',
                source=source.kind,
                error=type(exc).__name__,
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )
            raise
        finally:
            if source.kind == LOCAL_FILE and cleanup_source:
                temp_service.remove_path(source.path)
            elif source.kind != LOCAL_FILE and acquired_path:
                temp_service.remove_path(acquired_path)
        log_event(
            logging.INFO,
            'transcription_complete',
            mode=outcome.mode,
            chunks=outcome.chunk_count,
            chars=len(outcome.transcript),
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        return outcome

    def _transcribe_single(self, audio, language, filename, cancel_token):
        cancel_token.check('single-shot transcription')
        result = self.client.transcribe_file(
            audio.path,
            filename or os.path.basename(audio.path),
            language=language,
            timeout=cancel_token.clip(self.settings.single_shot_timeout_seconds),
        )
        return PipelineOutcome(transcript=result.text, mode=SINGLE, size_bytes=audio.size_bytes)

    def _transcribe_segmented(self, audio, workdir, language, cancel_token):
        chunks = sorted(self.segmenter.split(audio, workdir, cancel_token=cancel_token), key=lambda chunk: os.path.basename(chunk.path))
        parts = []
        for position, chunk in enumerate(chunks):
            if position:
                self._pause(cancel_token)
            cancel_token.check(f"chunk {position + 1}/{len(chunks)}")
            log_event(logging.INFO, 'chunk_transcribe', index=chunk.sequence_index, position=position + 1, total=len(chunks))
            result = self.client.transcribe_file(
                chunk.path,
                os.path.basename(chunk.path),
                language=language,
                timeout=cancel_token.clip(self.settings.chunk_timeout_seconds),
            )
            parts.append(result.text.strip() + '\n')
        return PipelineOutcome(
            transcript=''.join(parts),
            mode=SEGMENTED,
            size_bytes=audio.size_bytes,
            chunk_count=len(chunks),
        )

    def _pause(self, cancel_token):
        delay = self.settings.chunk_delay_seconds
        if self.sleep_fn is not None:
            self.sleep_fn(delay)
        else:
            cancel_token.sleep(delay)
