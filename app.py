"""Flask status API for the serial fiction factory."""

# Load environment variables from .env file before other imports
from dotenv import load_dotenv  # type: ignore[import-untyped]

load_dotenv()  # noqa: E402

import os  # noqa: E402
import logging  # noqa: E402
from typing import Optional  # noqa: E402

from flask import Flask  # noqa: E402
from flask_cors import CORS  # type: ignore[import-untyped]  # noqa: E402
from flask_limiter import Limiter  # type: ignore[import-untyped]  # noqa: E402
from flask_limiter.util import get_remote_address  # type: ignore[import-untyped]  # noqa: E402

from storyfactory.api import register_routes  # noqa: E402
from storyfactory.config import FactorySettings  # noqa: E402
from storyfactory.services.job_queue import JobQueue  # noqa: E402
from storyfactory.utils.errors import register_error_handlers  # noqa: E402
from storyfactory.utils.repository import ContentStore, create_content_store  # noqa: E402

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[FactorySettings] = None,
    store: Optional[ContentStore] = None,
    config: Optional[dict] = None
) -> Flask:
    """
    Build the status API application.

    Args:
        settings: Factory settings (default: from environment)
        store: Content store (default: SQLite store at settings.db_path)
        config: Extra Flask config overrides (e.g. for tests)

    Returns:
        Configured Flask app
    """
    settings = settings or FactorySettings.from_env()
    store = store or create_content_store(settings.db_path)

    flask_app = Flask(__name__)
    flask_app.config.update(
        CONTENT_STORE=store,
        JOB_QUEUE=JobQueue(store, enable_watchdog=False),
        FACTORY_SETTINGS=settings,
        STATUS_RATE_LIMIT=os.getenv("STATUS_RATE_LIMIT", "120 per minute"),
        ENQUEUE_RATE_LIMIT=os.getenv("ENQUEUE_RATE_LIMIT", "30 per minute"),
    )
    if config:
        flask_app.config.update(config)

    origins = os.getenv("CORS_ORIGINS", "*")
    CORS(flask_app, origins=[o.strip() for o in origins.split(",")] if origins != "*" else "*")

    limiter = Limiter(
        key_func=get_remote_address,
        app=flask_app,
        default_limits=["2000 per day", "500 per hour"],
        storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
        headers_enabled=True,
    )

    # Flask-Limiter keeps only a weak reference to itself; the app config holds the strong one.
    flask_app.config["RATE_LIMITER"] = limiter
    register_routes(flask_app, limiter)
    register_error_handlers(flask_app, debug=os.getenv("FLASK_ENV") == "development")

    logger.info(f"Status API ready (database: {settings.db_path})")
    return flask_app


if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    port = int(os.getenv("PORT", "5000"))
    create_app().run(host="0.0.0.0", port=port, debug=os.getenv("FLASK_ENV") == "development")
