from flask import Blueprint, request

from speakapper.extensions import get_service_context
from speakapper.services import transcribe_api_service

transcribe_bp = Blueprint('transcribe_api', __name__)


@transcribe_bp.route('/api/transcribe', methods=['POST'])
def transcribe():
    return transcribe_api_service.transcribe_upload(get_service_context(), request)


@transcribe_bp.route('/api/transcribe-youtube', methods=['POST'])
def transcribe_youtube():
    return transcribe_api_service.transcribe_youtube(get_service_context(), request)
