"""Business logic handlers for the transcription APIs."""

import logging

import sentry_sdk
from flask import jsonify

from speakapper.errors import INTERNAL_ERROR, TRANSCRIPTION_FAILED, PipelineError
from speakapper.logging_config import log_event
from speakapper.models import MediaSource
from speakapper.services import file_service, temp_service, url_service

logger = logging.getLogger(__name__)

ALLOWED_MEDIA_EXTENSIONS = {
    'mp3', 'mpga', 'mpeg', 'm4a', 'mp4', 'wav', 'aac', 'ogg', 'oga', 'opus', 'flac', 'webm', 'mov', 'mkv',
}


def json_error(status_code, message, details=None, hint=None):
    payload = {'success': False, 'message': message}
    if details:
        payload['details'] = details
    if hint:
        payload['hint'] = hint
    return jsonify(payload), status_code


def pipeline_error_response(exc: PipelineError, **fields):
    log_event(
        logging.WARNING,
        'pipeline_error',
        category=exc.category,
        error=type(exc).__name__,
        status_code=exc.status_code,
        details=exc.details[:500],
        **fields,
    )
    if exc.category in {INTERNAL_ERROR, TRANSCRIPTION_FAILED}:
        sentry_sdk.set_tag('pipeline.category', exc.category)
        sentry_sdk.capture_exception(exc)
    return jsonify(exc.to_payload()), exc.status_code


def transcribe_upload(app_ctx, request):
    uploaded = request.files.get('audio')
    if uploaded is None or not uploaded.filename:
        return json_error(400, 'No audio file provided')
    if not file_service.allowed_file(uploaded.filename, ALLOWED_MEDIA_EXTENSIONS):
        return json_error(400, 'Unsupported file type', hint='Upload an audio or video file (mp3, m4a, wav, mp4, webm, ...).')
    language = str(request.form.get('language', '') or '').strip()
    settings = app_ctx.config.transcription

    try:
        with temp_service.staged_upload(uploaded, temp_root=settings.temp_root, max_bytes=app_ctx.config.max_upload_bytes) as (path, size_bytes):
            logger.info('Received audio file: %s, size: %s bytes', uploaded.filename, size_bytes)
            if size_bytes <= 0:
                return json_error(400, 'Uploaded audio file is empty')
            outcome = app_ctx.pipeline.run(
                MediaSource.local_file(path, size_bytes),
                language,
                filename=uploaded.filename,
            )
    except temp_service.UploadTooLarge:
        return json_error(413, 'Upload too large')
    except PipelineError as exc:
        return pipeline_error_response(exc, source='upload')

    return jsonify({
        'success': True,
        'transcription': outcome.transcript,
        'filename': uploaded.filename,
        'size': outcome.size_bytes,
        'mode': outcome.mode,
    })


def transcribe_youtube(app_ctx, request, *, validate_url_fn=None):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_error(400, 'Invalid request body')
    validate_url_fn = validate_url_fn or url_service.validate_video_url
    safe_url, error_message = validate_url_fn(data.get('url', ''))
    if not safe_url:
        return json_error(400, error_message)
    language = str(data.get('language', '') or '').strip()
    log_event(logging.INFO, 'youtube_transcribe_start', url=safe_url)

    try:
        outcome = app_ctx.pipeline.run(MediaSource.remote_url(safe_url, language), language)
    except PipelineError as exc:
        return pipeline_error_response(exc, source='youtube')

    log_event(logging.INFO, 'youtube_transcribe_success', url=safe_url, mode=outcome.mode)
    return jsonify({
        'success': True,
        'transcription': outcome.transcript,
        'source': 'youtube',
        'url': safe_url,
        'mode': outcome.mode,
    })


def health(app_ctx):
    return jsonify({'status': 'ok', 'checks': app_ctx.runtime_checks()})
