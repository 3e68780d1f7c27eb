from .health import health_bp
from .transcribe import transcribe_bp

__all__ = ['health_bp', 'transcribe_bp']
