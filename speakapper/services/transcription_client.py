"""Stateless adapter for the remote speech-to-text endpoint."""

import logging

import requests

from speakapper.errors import ConfigurationError, ResponseParseFailed, TranscriptionFailed
from speakapper.models import TranscriptionResult
from speakapper.services.file_service import get_mime_type

logger = logging.getLogger(__name__)

AUTO_LANGUAGE_VALUES = {'', 'auto'}


def normalize_language(language):
    value = str(language or '').strip().lower()
    if value in AUTO_LANGUAGE_VALUES:
        return ''
    return value


class TranscriptionClient:
    """Posts one audio payload per call; retries are left to the caller."""

    def __init__(self, settings, *, http_client=requests):
        self.settings = settings
        self.http_client = http_client

    def transcribe(self, audio_bytes, filename, language='', timeout=None) -> TranscriptionResult:
        if not self.settings.api_key:
            raise ConfigurationError('Transcription API key is not configured', details='OPENAI_API_KEY is empty')
        data = {'model': self.settings.model}
        language = normalize_language(language)
        if language:
            data['language'] = language
        files = {'file': (filename, audio_bytes, get_mime_type(filename))}
        headers = {'Authorization': f"Bearer {self.settings.api_key}"}
        if timeout is None:
            timeout = self.settings.single_shot_timeout_seconds

        try:
            response = self.http_client.post(
                self.settings.api_url,
                headers=headers,
                data=data,
                files=files,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            logger.error('Transcription API request error: %s', exc)
            raise TranscriptionFailed('Transcription request failed', body=str(exc))

        body = response.text or ''
        if response.status_code != 200:
            logger.error('Transcription API error: %s - %s', response.status_code, body[:500])
            raise TranscriptionFailed(status_code=response.status_code, body=body)

        try:
            payload = response.json()
        except ValueError:
            raise ResponseParseFailed(body)
        if not isinstance(payload, dict) or not isinstance(payload.get('text'), str):
            raise ResponseParseFailed(body)
        return TranscriptionResult(text=payload['text'])

    def transcribe_file(self, path, filename, language='', timeout=None) -> TranscriptionResult:
        with open(path, 'rb') as handle:
            audio_bytes = handle.read()
        return self.transcribe(audio_bytes, filename, language=language, timeout=timeout)
