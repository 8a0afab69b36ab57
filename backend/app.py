import os
from pathlib import Path

from dotenv import load_dotenv
from flask import Flask
from flask_cors import CORS

import database
from ingest.logging_config import get_logger

# Load .env from project root (parent directory)
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path, override=False)

logger = get_logger(__name__)

# Get frontend URL from environment, default to localhost:5173
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")


def create_app() -> Flask:
    """Build the Flask application with every API blueprint registered."""
    app = Flask(__name__)

    CORS(app, origins=[FRONTEND_URL, "http://127.0.0.1:5173"])

    app.config["MAX_CONTENT_LENGTH"] = 1 * 1024 * 1024
    app.config["TESTING"] = os.getenv("TESTING", "false").lower() == "true"

    # ========================================================================
    # REGISTER BLUEPRINTS
    # ========================================================================

    from routes import cron_bp, debug_bp, gmail_bp, health_bp, parser_bp, rules_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(gmail_bp)
    app.register_blueprint(parser_bp)
    app.register_blueprint(rules_bp)
    app.register_blueprint(debug_bp)
    app.register_blueprint(cron_bp)

    return app


app = create_app()


# ============================================================================
# APPLICATION STARTUP
# ============================================================================

if __name__ == "__main__":
    database.init_db()

    logger.info("Mail ledger backend starting on http://localhost:5000")
    logger.info("Test health: http://localhost:5000/api/health")

    app.run(debug=False, use_reloader=False, host="0.0.0.0", port=5000)
