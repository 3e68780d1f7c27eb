"""Split long audio into fixed-length, low-bandwidth chunks with ffmpeg."""

import logging
import os
import re
import shutil
import subprocess
import tempfile
from typing import List, Optional

from speakapper.errors import NoChunksProduced, SegmentationFailed, ToolMissing
from speakapper.logging_config import log_event
from speakapper.models import AudioChunk, CancelToken
from speakapper.services import process_service

logger = logging.getLogger(__name__)

CHANNELS = 1
SAMPLE_RATE_HZ = 16000
BITRATE = '64k'
SEGMENT_SECONDS = 600
CHUNK_PATTERN = 'chunk_%03d.mp3'
CHUNK_NAME_RE = re.compile(r'^chunk_(\d{3,})\.mp3$')


def build_segment_command(ffmpeg_bin, input_path, output_dir, segment_seconds=SEGMENT_SECONDS):
    return [
        ffmpeg_bin,
        '-y',
        '-hide_banner',
        '-loglevel', 'error',
        '-i', input_path,
        '-vn',
        '-ac', str(CHANNELS),
        '-ar', str(SAMPLE_RATE_HZ),
        '-b:a', BITRATE,
        '-f', 'segment',
        '-segment_time', str(segment_seconds),
        os.path.join(output_dir, CHUNK_PATTERN),
    ]


def collect_chunks(output_dir) -> List[AudioChunk]:
    chunks = []
    for name in sorted(os.listdir(output_dir)):
        match = CHUNK_NAME_RE.match(name)
        if not match:
            continue
        path = os.path.join(output_dir, name)
        if os.path.isfile(path):
            chunks.append(AudioChunk(path=path, sequence_index=int(match.group(1))))
    return chunks


class Segmenter:
    def __init__(
        self,
        *,
        ffmpeg_binary_getter,
        subprocess_module=subprocess,
        segment_seconds=SEGMENT_SECONDS,
        timeout_seconds=30 * 60,
    ):
        self.ffmpeg_binary_getter = ffmpeg_binary_getter
        self.subprocess_module = subprocess_module
        self.segment_seconds = segment_seconds
        self.timeout_seconds = timeout_seconds

    def split(self, audio, workdir, cancel_token: Optional[CancelToken] = None) -> List[AudioChunk]:
        cancel_token = cancel_token or CancelToken()
        ffmpeg_bin = self.ffmpeg_binary_getter()
        if not ffmpeg_bin:
            raise ToolMissing('ffmpeg', hint='Install with: brew install ffmpeg (mac) or apt-get install ffmpeg')

        cancel_token.check('segmentation')
        output_dir = tempfile.mkdtemp(prefix='chunks_', dir=workdir)
        cmd = build_segment_command(ffmpeg_bin, audio.path, output_dir, self.segment_seconds)
        timeout = cancel_token.clip(self.timeout_seconds, 'segmentation')
        logger.info('ffmpeg segment cmd=%s', cmd)
        try:
            result = process_service.run_cancellable(
                cmd,
                cancel_token,
                timeout,
                stage='segmentation',
                subprocess_module=self.subprocess_module,
            )
        except subprocess.TimeoutExpired:
            raise SegmentationFailed('ffmpeg segmentation timed out', details=f"timeout after {timeout:.0f}s")
        except OSError as exc:
            raise SegmentationFailed('ffmpeg could not be started', details=str(exc))
        if result.returncode != 0:
            stderr = (result.stderr or result.stdout or '').strip()
            raise SegmentationFailed('ffmpeg segmentation failed', details=stderr[-2000:])

        chunks = collect_chunks(output_dir)
        if not chunks:
            raise NoChunksProduced(details=(result.stderr or '').strip()[-2000:])
        log_event(logging.INFO, 'segmentation_complete', chunks=len(chunks), size_bytes=audio.size_bytes)
        return chunks
