import os

from flask import Flask, jsonify
from werkzeug.exceptions import RequestEntityTooLarge

from .config import load_config
from .extensions import init_extensions
from .logging_config import configure_logging


def create_app(config=None, pipeline=None):
    """App factory entrypoint.

    ``config`` and ``pipeline`` can be injected by tests; otherwise both are
    built from the environment.
    """
    config = config or load_config()
    configure_logging(config.log_level)

    app = Flask(__name__)
    app.secret_key = config.flask_secret_key or os.urandom(32).hex()
    # Leave room for multipart framing around the audio part.
    app.config['MAX_CONTENT_LENGTH'] = config.max_upload_bytes + (10 * 1024 * 1024)

    init_extensions(app, config, pipeline)

    from .blueprints import health_bp, transcribe_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(transcribe_bp)

    @app.errorhandler(RequestEntityTooLarge)
    def handle_request_entity_too_large(_error):
        return jsonify({'success': False, 'message': 'Upload too large'}), 413

    return app
