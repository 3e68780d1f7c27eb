"""Typed failures raised by the transcription pipeline.

Every error carries a short user-facing ``message`` from a closed set of
categories plus free-form ``details`` (tool output, upstream status/body)
for operators. The HTTP layer maps ``status_code`` and ``category``
straight into the JSON error body.
"""

MISSING_DEPENDENCY = 'missing_dependency'
AUTHENTICATION_REQUIRED = 'authentication_required'
TRANSCRIPTION_FAILED = 'transcription_failed'
INTERNAL_ERROR = 'internal_error'

CATEGORY_MESSAGES = {
    MISSING_DEPENDENCY: 'A required server component is not installed.',
    AUTHENTICATION_REQUIRED: 'This video requires sign-in before it can be downloaded.',
    TRANSCRIPTION_FAILED: 'Transcription failed.',
    INTERNAL_ERROR: 'Could not process the audio.',
}


class PipelineError(Exception):
    category = INTERNAL_ERROR
    status_code = 500
    default_hint = ''

    def __init__(self, message='', details='', hint=None):
        self.message = message or CATEGORY_MESSAGES[self.category]
        self.details = str(details or '')
        self.hint = self.default_hint if hint is None else hint
        super().__init__(self.message)

    def to_payload(self):
        payload = {
            'success': False,
            'message': CATEGORY_MESSAGES[self.category],
            'category': self.category,
        }
        if self.details:
            payload['details'] = self.details
        if self.hint:
            payload['hint'] = self.hint
        return payload

    def __str__(self):
        if self.details:
            return f"{self.message}: {self.details[:500]}"
        return self.message


class ToolMissing(PipelineError):
    category = MISSING_DEPENDENCY
    status_code = 424

    def __init__(self, tool_name, hint=None):
        self.tool_name = tool_name
        super().__init__(
            f"{tool_name} is required on the server",
            details=f"{tool_name} was not found on PATH",
            hint=hint if hint is not None else f"Install {tool_name} on the server and make sure it is on PATH.",
        )


class AcquisitionFailed(PipelineError):
    status_code = 502
    default_hint = 'Upload the audio or video file directly instead.'

    def __init__(self, message='', details='', hint=None, attempts=None):
        self.attempts = list(attempts or [])
        super().__init__(message or 'Could not download audio from the URL', details=details, hint=hint)


class AuthenticationRequired(AcquisitionFailed):
    category = AUTHENTICATION_REQUIRED
    status_code = 403
    default_hint = (
        'Upload the file directly, or configure YTDLP_COOKIES with a cookies.txt '
        'exported from a signed-in browser.'
    )


class SegmentationFailed(PipelineError):
    status_code = 500


class NoChunksProduced(SegmentationFailed):

    def __init__(self, details=''):
        super().__init__('Segmentation produced no audio chunks', details=details)


class TranscriptionFailed(PipelineError):
    category = TRANSCRIPTION_FAILED
    status_code = 502

    def __init__(self, message='', status_code=None, body='', details=None):
        self.upstream_status = status_code
        self.upstream_body = str(body or '')
        if details is None:
            details = f"status={status_code} body={self.upstream_body[:2000]}" if status_code else self.upstream_body
        super().__init__(message or 'Transcription request failed', details=details)


class ResponseParseFailed(TranscriptionFailed):

    def __init__(self, body=''):
        super().__init__('Could not parse transcription response', body=body, details=str(body or '')[:2000])


class PipelineCancelled(PipelineError):
    status_code = 504
    default_hint = 'The request took too long. Try a shorter recording or upload the file directly.'

    def __init__(self, details=''):
        super().__init__('Transcription was cancelled', details=details)


class ConfigurationError(PipelineError):
    status_code = 500
