from flask import Blueprint

from speakapper.extensions import get_service_context
from speakapper.services import transcribe_api_service

health_bp = Blueprint('health', __name__)


@health_bp.route('/api/health')
def api_health():
    return transcribe_api_service.health(get_service_context())


@health_bp.route('/healthz')
def healthz():
    return transcribe_api_service.health(get_service_context())
