import shutil
import uuid

import imageio_ffmpeg
import sentry_sdk
from flask import current_app, g, request
from sentry_sdk.integrations.flask import FlaskIntegration

from speakapper.services import file_service
from speakapper.services.media_service import MediaAcquirer
from speakapper.services.pipeline_service import TranscriptionPipeline
from speakapper.services.segment_service import Segmenter
from speakapper.services.transcription_client import TranscriptionClient

EXTENSION_KEY = 'speakapper'


class ServiceContext:
    """Per-app collaborators shared by the API handlers."""

    def __init__(self, config, pipeline, *, which_func=shutil.which, imageio_ffmpeg_module=imageio_ffmpeg):
        self.config = config
        self.pipeline = pipeline
        self.which_func = which_func
        self.imageio_ffmpeg_module = imageio_ffmpeg_module

    def get_ffmpeg_binary(self):
        return file_service.get_ffmpeg_binary(which_func=self.which_func, imageio_ffmpeg_module=self.imageio_ffmpeg_module)

    def get_ytdlp_binary(self):
        return file_service.get_ytdlp_binary(which_func=self.which_func)

    def runtime_checks(self):
        ffmpeg_available = bool(self.get_ffmpeg_binary())
        ytdlp_available = bool(self.get_ytdlp_binary())
        return {
            'ffmpeg_available': ffmpeg_available,
            'ytdlp_available': ytdlp_available,
            'video_import_available': ffmpeg_available and ytdlp_available,
            'transcription_ready': bool(self.config.transcription.api_key),
            'piped_fallback_enabled': bool(self.config.transcription.piped_fallback_enabled),
            'cookies_configured': bool(
                self.config.transcription.cookies_path
                or self.config.transcription.cookies_content
                or self.config.transcription.cookies_browser
            ),
        }


def build_pipeline(settings, *, which_func=shutil.which, imageio_ffmpeg_module=imageio_ffmpeg):
    def _ffmpeg_binary():
        return file_service.get_ffmpeg_binary(which_func=which_func, imageio_ffmpeg_module=imageio_ffmpeg_module)

    return TranscriptionPipeline(
        settings,
        client=TranscriptionClient(settings),
        segmenter=Segmenter(
            ffmpeg_binary_getter=_ffmpeg_binary,
            segment_seconds=settings.segment_seconds,
            timeout_seconds=settings.segment_timeout_seconds,
        ),
        acquirer=MediaAcquirer(settings, which_func=which_func, imageio_ffmpeg_module=imageio_ffmpeg_module),
    )


def get_service_context() -> ServiceContext:
    return current_app.extensions[EXTENSION_KEY]


def init_sentry(config) -> bool:
    if not config.sentry_dsn:
        return False
    sentry_sdk.init(
        dsn=config.sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=config.sentry_traces_sample_rate,
        send_default_pii=False,
        environment=config.sentry_environment,
        release=config.sentry_release,
    )
    return True


def init_extensions(app, config, pipeline=None) -> ServiceContext:
    context = ServiceContext(config, pipeline or build_pipeline(config.transcription))
    app.extensions[EXTENSION_KEY] = context
    sentry_enabled = init_sentry(config)

    def apply_cors_headers(response):
        origin = str(request.headers.get('Origin', '') or '').strip()
        if not origin or not request.path.startswith('/api/'):
            return response
        if origin.lower() not in config.cors_allowed_origins:
            return response
        response.headers['Access-Control-Allow-Origin'] = origin
        response.headers['Vary'] = 'Origin'
        response.headers['Access-Control-Allow-Headers'] = 'Authorization, Content-Type'
        response.headers['Access-Control-Allow-Methods'] = 'GET, POST, PUT, DELETE, OPTIONS'
        response.headers['Access-Control-Allow-Credentials'] = 'true'
        return response

    @app.before_request
    def handle_api_options_preflight():
        if request.method == 'OPTIONS' and request.path.startswith('/api/'):
            return apply_cors_headers(app.make_default_options_response())
        return None

    @app.before_request
    def attach_request_context():
        request_id = str(request.headers.get('X-Request-ID', '') or '').strip()[:120] or uuid.uuid4().hex
        g.request_id = request_id
        if sentry_enabled:
            sentry_sdk.set_tag('request.id', request_id)
            sentry_sdk.set_tag('route.path', request.path)
            sentry_sdk.set_tag('route.method', request.method)

    @app.after_request
    def attach_response_context(response):
        request_id = str(getattr(g, 'request_id', '') or '').strip()
        if request_id:
            response.headers['X-Request-ID'] = request_id
        response.headers['Cross-Origin-Opener-Policy'] = 'unsafe-none'
        return apply_cors_headers(response)

    return context
