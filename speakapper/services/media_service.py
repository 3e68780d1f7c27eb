"""Resolve a media source into a local audio file.

Remote URLs go through an ordered fallback ladder of download strategies.
Strategies 1-5 drive ``yt-dlp`` anonymously with different YouTube player
clients, strategy 6 retries with cookies when a cookie source is configured,
and strategy 7 asks a Piped API mirror for direct audio stream URLs.
"""

import glob
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional
from urllib.parse import parse_qs, urlparse

import requests

from speakapper.errors import AcquisitionFailed, AuthenticationRequired, ToolMissing
from speakapper.logging_config import log_event
from speakapper.models import LOCAL_FILE, AcquiredAudio, CancelToken, FallbackAttempt
from speakapper.services import file_service, process_service

logger = logging.getLogger(__name__)

PREFERRED_FORMAT = 'bestaudio[ext=m4a]/bestaudio[protocol!=m3u8]/bestaudio/best'
RELAXED_FORMAT = 'bestaudio/best'
CLIENT_FORMAT = 'bestaudio[ext=m4a]/bestaudio/best'
ALTERNATE_CLIENTS = ('android', 'ios', 'tvhtml5')
INTERMEDIATE_SUFFIXES = ('.part', '.ytdl', '.temp', '.tmp', '.txt')
PIPED_CONNECT_TIMEOUT_SECONDS = 20
PIPED_READ_TIMEOUT_SECONDS = 60
DOWNLOAD_BUFFER_BYTES = 256 * 1024
MAX_DETAILS_CHARS = 4000

# Phrases in yt-dlp output that mean anonymous access was refused. Matched as
# substrings of the lower-cased output with typographic quotes folded to ASCII.
# yt-dlp has no dedicated exit code for this, so the table is the only signal.
AUTH_REQUIRED_PHRASES = (
    'sign in to confirm',
    "confirm you're not a bot",
    'confirm your age',
    'age-restricted',
    'inappropriate for some users',
    'login required',
    'this video is private',
    'members-only content',
    'join this channel to get access',
    'not made this video available in your country',
    'use --cookies-from-browser or --cookies',
)

QUOTE_TRANSLATION = str.maketrans({
    '‘': "'",
    '’': "'",
    '‛': "'",
    '′': "'",
    '`': "'",
    '“': '"',
    '”': '"',
})


def normalize_output(text):
    return ' '.join(str(text or '').translate(QUOTE_TRANSLATION).lower().split())


def requires_authentication(output):
    normalized = normalize_output(output)
    return any(phrase in normalized for phrase in AUTH_REQUIRED_PHRASES)


def extract_video_id(url):
    """Return the canonical YouTube video id for ``url``, or ``''``."""
    try:
        parsed = urlparse(str(url or '').strip())
    except ValueError:
        return ''
    host = (parsed.hostname or '').lower()
    candidate = ''
    if host == 'youtu.be':
        candidate = parsed.path.lstrip('/').split('/', 1)[0]
    elif host == 'youtube.com' or host.endswith('.youtube.com'):
        if parsed.path == '/watch':
            candidate = (parse_qs(parsed.query).get('v') or [''])[0]
        else:
            parts = [part for part in parsed.path.split('/') if part]
            if len(parts) >= 2 and parts[0] in {'shorts', 'embed', 'live', 'v'}:
                candidate = parts[1]
    if len(candidate) == 11 and all(ch.isalnum() or ch in '-_' for ch in candidate):
        return candidate
    return ''


def find_downloaded_file(base_path):
    candidates = sorted(
        path for path in glob.glob(f"{glob.escape(base_path)}.*")
        if not path.lower().endswith(INTERMEDIATE_SUFFIXES) and os.path.isfile(path)
    )
    if not candidates:
        return ''
    preferred = [path for path in candidates if path.lower().endswith('.mp3')]
    return preferred[0] if preferred else candidates[0]


def clear_downloaded_files(base_path):
    for path in glob.glob(f"{glob.escape(base_path)}.*"):
        try:
            os.remove(path)
        except OSError as exc:
            logger.warning('Could not remove partial download %s: %s', path, exc)


def build_ytdlp_args(ytdlp_bin, source_url, output_template, *, client, format_selector, cookie_args=(), ffmpeg_bin=''):
    args = [
        ytdlp_bin,
        '-R', '3',
        '--fragment-retries', '3',
        '--force-ipv4',
        '--geo-bypass',
        '--no-playlist',
        '--no-progress',
        '--extractor-args', f"youtube:player_client={client}",
        '-f', format_selector,
        '-x',
        '--audio-format', 'mp3',
    ]
    if ffmpeg_bin:
        args.extend(['--ffmpeg-location', ffmpeg_bin])
    args.extend(cookie_args)
    args.extend(['-o', output_template, '--', source_url])
    return args


def select_best_audio_stream(streams):
    usable = [stream for stream in (streams or []) if isinstance(stream, dict) and stream.get('url')]
    if not usable:
        return None

    def _bitrate(stream):
        try:
            return int(stream.get('bitrate') or 0)
        except (TypeError, ValueError):
            return 0

    return max(usable, key=_bitrate)


@dataclass(frozen=True)
class DownloadStrategy:
    name: str
    invoke: Callable[[], FallbackAttempt]


class MediaAcquirer:
    def __init__(
        self,
        settings,
        *,
        which_func=shutil.which,
        subprocess_module=subprocess,
        http_client=requests,
        imageio_ffmpeg_module=None,
    ):
        self.settings = settings
        self.which_func = which_func
        self.subprocess_module = subprocess_module
        self.http_client = http_client
        self.imageio_ffmpeg_module = imageio_ffmpeg_module

    def acquire(self, source, workdir, cancel_token: Optional[CancelToken] = None) -> AcquiredAudio:
        if source.kind == LOCAL_FILE:
            size_bytes = source.size_bytes or file_service.get_saved_file_size(source.path)
            if size_bytes < 0:
                raise AcquisitionFailed('Uploaded audio file is missing', details=source.path)
            return AcquiredAudio(path=source.path, size_bytes=size_bytes)
        return self.download(source.url, workdir, cancel_token=cancel_token)

    def resolve_cookie_args(self, workdir):
        cookies_path = self.settings.cookies_path
        if cookies_path:
            if os.path.exists(cookies_path):
                log_event(logging.INFO, 'ytdlp_cookies_file', path=cookies_path)
                return ['--cookies', cookies_path]
            logger.warning('cookies file not found at YTDLP_COOKIES=%s (ignored)', cookies_path)
        if self.settings.cookies_content:
            staged = os.path.join(workdir, 'cookies.txt')
            fd = os.open(staged, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, 'w', encoding='utf-8') as handle:
                handle.write(self.settings.cookies_content)
            return ['--cookies', staged]
        if self.settings.cookies_browser:
            return ['--cookies-from-browser', self.settings.cookies_browser]
        return None

    def build_strategies(self, source_url, workdir, base_path, ytdlp_bin, cancel_token) -> List[DownloadStrategy]:
        output_template = f"{base_path}.%(ext)s"
        ffmpeg_bin = file_service.get_ffmpeg_binary(
            which_func=self.which_func,
            imageio_ffmpeg_module=self.imageio_ffmpeg_module,
        )

        def _ytdlp(name, client, format_selector, cookie_args=()):
            args = build_ytdlp_args(
                ytdlp_bin,
                source_url,
                output_template,
                client=client,
                format_selector=format_selector,
                cookie_args=cookie_args,
                ffmpeg_bin=ffmpeg_bin,
            )
            return DownloadStrategy(name, lambda: self._run_ytdlp(name, args, base_path, cancel_token))

        strategies = [
            _ytdlp('web', 'web', PREFERRED_FORMAT),
            _ytdlp('web_relaxed', 'web', RELAXED_FORMAT),
        ]
        for client in ALTERNATE_CLIENTS:
            strategies.append(_ytdlp(client, client, CLIENT_FORMAT))
        cookie_args = self.resolve_cookie_args(workdir)
        if cookie_args:
            strategies.append(_ytdlp('cookies', 'web', CLIENT_FORMAT, cookie_args))
        if self.settings.piped_fallback_enabled and self.settings.piped_api_base_url:
            strategies.append(DownloadStrategy(
                'piped',
                lambda: self._download_via_piped(source_url, base_path, cancel_token),
            ))
        return strategies

    def download(self, source_url, workdir, cancel_token: Optional[CancelToken] = None) -> AcquiredAudio:
        cancel_token = cancel_token or CancelToken()
        ytdlp_bin = file_service.get_ytdlp_binary(which_func=self.which_func)
        if not ytdlp_bin:
            raise ToolMissing('yt-dlp', hint='Install with: pipx install yt-dlp')

        base_path = os.path.join(workdir, 'download')
        strategies = self.build_strategies(source_url, workdir, base_path, ytdlp_bin, cancel_token)
        attempts = []
        for index, strategy in enumerate(strategies, start=1):
            cancel_token.check(f"download strategy {strategy.name}")
            clear_downloaded_files(base_path)
            attempt = strategy.invoke()
            attempts.append(attempt)
            log_event(
                logging.INFO if attempt.succeeded else logging.WARNING,
                'download_attempt',
                strategy=strategy.name,
                position=index,
                total=len(strategies),
                succeeded=attempt.succeeded,
                output_tail=attempt.raw_output[-300:],
            )
            if attempt.succeeded:
                output_path = find_downloaded_file(base_path)
                if output_path:
                    size_bytes = file_service.get_saved_file_size(output_path)
                    log_event(logging.INFO, 'download_complete', strategy=strategy.name, size_bytes=size_bytes)
                    return AcquiredAudio(path=output_path, size_bytes=size_bytes)
                attempt.succeeded = False
                attempt.raw_output += '\ndownload finished but no output file was found'

        clear_downloaded_files(base_path)
        combined = '\n'.join(f"[{attempt.strategy_name}] {attempt.raw_output.strip()}" for attempt in attempts)
        details = combined[-MAX_DETAILS_CHARS:]
        if requires_authentication(combined):
            raise AuthenticationRequired(
                'Could not download audio without authentication',
                details=details,
                attempts=attempts,
            )
        raise AcquisitionFailed(details=details, attempts=attempts)

    def _run_ytdlp(self, name, args, base_path, cancel_token):
        stage = f"download strategy {name}"
        timeout = cancel_token.clip(self.settings.download_timeout_seconds, stage)
        logger.info('yt-dlp strategy=%s args=%s', name, args)
        try:
            result = process_service.run_cancellable(
                args,
                cancel_token,
                timeout,
                stage=stage,
                subprocess_module=self.subprocess_module,
            )
        except subprocess.TimeoutExpired:
            return FallbackAttempt(name, False, f"yt-dlp timed out after {timeout:.0f}s")
        except OSError as exc:
            return FallbackAttempt(name, False, f"yt-dlp could not be started: {exc}")
        output = f"{result.stdout or ''}{result.stderr or ''}"
        return FallbackAttempt(name, result.returncode == 0, output)

    def _download_via_piped(self, source_url, base_path, cancel_token):
        video_id = extract_video_id(source_url)
        if not video_id:
            return FallbackAttempt('piped', False, 'could not resolve a YouTube video id from the URL')
        streams_url = f"{self.settings.piped_api_base_url}/streams/{video_id}"
        try:
            response = self.http_client.get(
                streams_url,
                timeout=cancel_token.clip(PIPED_CONNECT_TIMEOUT_SECONDS + PIPED_READ_TIMEOUT_SECONDS),
            )
            if response.status_code != 200:
                return FallbackAttempt('piped', False, f"piped streams lookup failed: {response.status_code} {response.text[:300]}")
            payload = response.json()
        except requests.RequestException as exc:
            return FallbackAttempt('piped', False, f"piped streams lookup error: {exc}")
        except ValueError as exc:
            return FallbackAttempt('piped', False, f"piped streams response is not JSON: {exc}")

        stream = select_best_audio_stream((payload or {}).get('audioStreams') if isinstance(payload, dict) else None)
        if not stream:
            return FallbackAttempt('piped', False, 'piped returned no audio streams')

        target = f"{base_path}.{file_service.extension_for_mime_type(stream.get('mimeType'))}"
        read_timeout = cancel_token.clip(PIPED_READ_TIMEOUT_SECONDS)
        try:
            with self.http_client.get(stream['url'], stream=True, timeout=(PIPED_CONNECT_TIMEOUT_SECONDS, read_timeout)) as download:
                if download.status_code != 200:
                    return FallbackAttempt('piped', False, f"piped audio download failed: {download.status_code}")
                with open(target, 'wb') as handle:
                    for block in download.iter_content(chunk_size=DOWNLOAD_BUFFER_BYTES):
                        cancel_token.check('piped download')
                        if block:
                            handle.write(block)
        except requests.RequestException as exc:
            return FallbackAttempt('piped', False, f"piped audio download error: {exc}")
        return FallbackAttempt('piped', True, f"downloaded {stream.get('bitrate')}bps {stream.get('mimeType', '')}")
