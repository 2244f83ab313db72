# /app/__init__.py
import os
import logging
import threading
from flask import Flask
from dotenv import load_dotenv
from config import ProductionConfig
from services.database import init_db, init_db_command, create_db_manager
from services.config_service import ConfigManager
from services.notifications import EventBroadcaster
from services.session_store import SqliteSessionStore
from services.transfer_service import TransferService
from pathlib import Path
from app.routes import session_bp


load_dotenv()


def init_sentry():
    """Initialize Sentry error tracking if SENTRY_DSN is configured."""
    sentry_dsn = os.getenv("SENTRY_DSN")
    if not sentry_dsn:
        return

    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration
        from sentry_sdk.integrations.logging import LoggingIntegration

        # Determine environment from ENV variable or default to development
        environment = os.getenv("FLASK_ENV") or os.getenv("ENV") or "development"

        sentry_sdk.init(
            dsn=sentry_dsn,
            environment=environment,
            integrations=[
                FlaskIntegration(),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR
                ),
            ],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1")),
            attach_stacktrace=True,
            debug=os.getenv("SENTRY_DEBUG", "0") == "1",
        )
        logging.info(f"Sentry initialized for environment: {environment}")
    except Exception as e:
        logging.error(f"Failed to initialize Sentry: {e}")


def build_transfer_service(app):
    """One shared database connection, store, broadcaster and service per app."""
    db_manager = create_db_manager(app.config["database"])
    init_db(db_manager)
    lock = threading.RLock()
    store = SqliteSessionStore(db_manager, session_id=app.config["SESSION_ID"], lock=lock)
    broadcaster = EventBroadcaster(db_manager, lock=lock)
    app.extensions["db_manager"] = db_manager
    return TransferService(
        store,
        broadcaster,
        audit_timezone=app.config["AUDIT_TIMEZONE"],
        multi_variant_only=app.config["MULTI_VARIANT_ONLY"],
    )


def create_app(config_name: str = "", overrides: dict = None):
    # Initialize Sentry before creating app to catch initialization errors
    init_sentry()

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(ProductionConfig)

    # Secret
    app.secret_key = os.getenv("FLASK_SECRET", os.urandom(24))

    # Merge JSON config, then the named config class on top
    app.config.update(ConfigManager().config)
    if config_name:
        app.config.from_object(f"config.{config_name}Config")
    if overrides:
        app.config.update(overrides)

    # base dirs
    project_root = Path(__file__).resolve().parent.parent
    instance_root = Path(app.instance_path)
    instance_root.mkdir(parents=True, exist_ok=True)
    app.config["PROJECT_ROOT"] = str(project_root)
    app.config["INSTANCE_ROOT"] = str(instance_root)

    def _set_path(key: str, default_rel: str | Path, *, base: str = "instance", is_file: bool = False):
        """
        Resolve a config path and ensure its directory exists.
        - If app.config[key] is absolute, use it as-is.
        - If it's relative, anchor to `instance` (default) or `project`.
        - If it's missing, use `default_rel` anchored to the chosen base.
        - If `is_file=True`, create the parent dir; else create the dir itself.
        """
        val = app.config.get(key)
        base_dir = instance_root if base == "instance" else project_root

        if val:
            p = Path(val)
            if not p.is_absolute():
                p = (base_dir / p).resolve()
        else:
            p = (base_dir / Path(default_rel)).resolve()

        (p.parent if is_file else p).mkdir(parents=True, exist_ok=True)
        app.config[key] = str(p)
        return p

    # 1) Database (file); sqlite's in-memory name is left alone
    if app.config.get("database") != ":memory:":
        _set_path("database", "demand_transfer.db", base="instance", is_file=True)

    # 2) Upload folder (folder)
    _set_path("upload_folder", "uploads", base="instance", is_file=False)

    # Logging (basic)
    logging.basicConfig(
        level=logging.DEBUG if app.config.get("DEBUG") else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        force=True,  # prevent duplicate handlers in some reload scenarios
    )
    logging.debug("upload_folder=%s  database=%s", app.config["upload_folder"], app.config["database"])

    app.extensions["transfer_service"] = build_transfer_service(app)

    # Blueprints
    app.register_blueprint(session_bp)

    # CLI
    app.cli.add_command(init_db_command)  # type: ignore

    return app
