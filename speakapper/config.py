import os
import tempfile
from dataclasses import dataclass, field

from dotenv import load_dotenv

DEV_ENV_NAMES = {'development', 'dev', 'local', 'test'}
DEFAULT_TRANSCRIPTION_URL = 'https://api.openai.com/v1/audio/transcriptions'
DEFAULT_TRANSCRIPTION_MODEL = 'whisper-1'
DEFAULT_PIPED_API_BASE_URL = 'https://pipedapi.kavin.rocks'
DEFAULT_CORS_ALLOWED_ORIGINS = (
    'http://localhost:3000',
    'http://localhost:3001',
    'http://127.0.0.1:3000',
    'http://127.0.0.1:3001',
)


def env_flag(name, default='0'):
    return str(os.getenv(name, default)).strip().lower() in {'1', 'true', 'yes', 'on'}


def safe_int_env(name, default=0, minimum=1, maximum=100000):
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except Exception:
        value = int(default)
    return min(max(value, minimum), maximum)


def safe_float_env(name, default=0.0, minimum=0.0, maximum=1.0):
    raw = os.getenv(name, str(default)).strip()
    try:
        value = float(raw)
    except Exception:
        return default
    return min(max(value, minimum), maximum)


def env_or_file(name):
    """Return ``$NAME``, falling back to the contents of the file at ``$NAME_FILE``."""
    value = (os.getenv(name, '') or '').strip()
    if value:
        return value
    path = (os.getenv(f"{name}_FILE", '') or '').strip()
    if not path:
        return ''
    try:
        with open(path, 'r', encoding='utf-8') as handle:
            return handle.read().strip()
    except OSError:
        return ''


def runtime_environment():
    return (
        os.getenv('SENTRY_ENVIRONMENT')
        or os.getenv('FLASK_ENV')
        or os.getenv('ENV')
        or ('production' if os.getenv('RENDER') else 'development')
    ).strip().lower()


def parse_cors_allowed_origins():
    raw = (os.getenv('CORS_ALLOWED_ORIGINS', '') or '').strip()
    if raw:
        return frozenset(part.strip().lower() for part in raw.split(',') if part.strip())
    return frozenset(DEFAULT_CORS_ALLOWED_ORIGINS)


@dataclass(frozen=True)
class TranscriptionSettings:
    """Everything the pipeline needs, passed explicitly to its constructors."""

    api_key: str = ''
    api_url: str = DEFAULT_TRANSCRIPTION_URL
    model: str = DEFAULT_TRANSCRIPTION_MODEL
    segment_threshold_bytes: int = 20 * 1024 * 1024
    chunk_delay_seconds: float = 0.5
    single_shot_timeout_seconds: int = 120
    chunk_timeout_seconds: int = 180
    download_timeout_seconds: int = 15 * 60
    segment_timeout_seconds: int = 30 * 60
    request_deadline_seconds: int = 60 * 60
    segment_seconds: int = 600
    cookies_path: str = ''
    cookies_content: str = ''
    cookies_browser: str = ''
    piped_api_base_url: str = DEFAULT_PIPED_API_BASE_URL
    piped_fallback_enabled: bool = True
    temp_root: str = field(default_factory=tempfile.gettempdir)

    @classmethod
    def from_env(cls):
        return cls(
            api_key=env_or_file('OPENAI_API_KEY'),
            api_url=(os.getenv('OPENAI_TRANSCRIPTION_URL', DEFAULT_TRANSCRIPTION_URL) or DEFAULT_TRANSCRIPTION_URL).strip(),
            model=(os.getenv('TRANSCRIPTION_MODEL', DEFAULT_TRANSCRIPTION_MODEL) or DEFAULT_TRANSCRIPTION_MODEL).strip(),
            segment_threshold_bytes=safe_int_env('SEGMENT_THRESHOLD_BYTES', 20 * 1024 * 1024, minimum=1024 * 1024, maximum=25 * 1024 * 1024),
            chunk_delay_seconds=safe_float_env('CHUNK_DELAY_SECONDS', 0.5, minimum=0.0, maximum=10.0),
            single_shot_timeout_seconds=safe_int_env('SINGLE_SHOT_TIMEOUT_SECONDS', 120, minimum=10, maximum=1800),
            chunk_timeout_seconds=safe_int_env('CHUNK_TIMEOUT_SECONDS', 180, minimum=10, maximum=1800),
            download_timeout_seconds=safe_int_env('DOWNLOAD_TIMEOUT_SECONDS', 15 * 60, minimum=30, maximum=4 * 3600),
            segment_timeout_seconds=safe_int_env('SEGMENT_TIMEOUT_SECONDS', 30 * 60, minimum=30, maximum=4 * 3600),
            request_deadline_seconds=safe_int_env('REQUEST_DEADLINE_SECONDS', 60 * 60, minimum=60, maximum=6 * 3600),
            cookies_path=(os.getenv('YTDLP_COOKIES', '') or '').strip(),
            cookies_content=env_or_file('YTDLP_COOKIES_CONTENT'),
            cookies_browser=(os.getenv('YTDLP_COOKIES_BROWSER', '') or '').strip().lower(),
            piped_api_base_url=(os.getenv('PIPED_API_BASE_URL', '') or DEFAULT_PIPED_API_BASE_URL).strip().rstrip('/'),
            piped_fallback_enabled=env_flag('PIPED_FALLBACK_ENABLED', '1'),
            temp_root=(os.getenv('TEMP_ROOT', '') or '').strip() or tempfile.gettempdir(),
        )


@dataclass(frozen=True)
class AppConfig:
    """Central config object for the app factory."""

    flask_secret_key: str = os.getenv('FLASK_SECRET_KEY', '')
    log_level: str = (os.getenv('LOG_LEVEL', 'INFO') or 'INFO').strip().upper()
    environment: str = 'development'
    max_upload_bytes: int = 1024 * 1024 * 1024
    cors_allowed_origins: frozenset = frozenset(DEFAULT_CORS_ALLOWED_ORIGINS)
    sentry_dsn: str = ''
    sentry_environment: str = 'production'
    sentry_release: str = 'speakapper'
    sentry_traces_sample_rate: float = 0.0
    transcription: TranscriptionSettings = field(default_factory=TranscriptionSettings)

    @property
    def is_dev_like(self):
        return self.environment in DEV_ENV_NAMES


def load_config() -> AppConfig:
    load_dotenv()
    config = AppConfig(
        flask_secret_key=os.getenv('FLASK_SECRET_KEY', ''),
        log_level=(os.getenv('LOG_LEVEL', 'INFO') or 'INFO').strip().upper(),
        environment=runtime_environment(),
        max_upload_bytes=safe_int_env('MAX_UPLOAD_BYTES', 1024 * 1024 * 1024, minimum=1024 * 1024, maximum=4 * 1024 * 1024 * 1024),
        cors_allowed_origins=parse_cors_allowed_origins(),
        sentry_dsn=os.getenv('SENTRY_DSN_BACKEND', '').strip(),
        sentry_environment=(os.getenv('SENTRY_ENVIRONMENT', os.getenv('FLASK_ENV', 'production')) or 'production').strip(),
        sentry_release=(os.getenv('SENTRY_RELEASE', 'speakapper') or 'speakapper').strip(),
        sentry_traces_sample_rate=safe_float_env('SENTRY_TRACES_SAMPLE_RATE', 0.0),
        transcription=TranscriptionSettings.from_env(),
    )
    if not config.is_dev_like:
        if not config.flask_secret_key.strip():
            raise RuntimeError('FLASK_SECRET_KEY must be set in non-development environments.')
        if not config.transcription.api_key:
            raise RuntimeError('OPENAI_API_KEY must be set in non-development environments.')
    return config
