import threading
import pytest
from app import create_app
from services.config_service import ConfigManager
from services.database import create_db_manager, init_db
from services.notifications import EventBroadcaster
from services.session_store import SqliteSessionStore
from services.transfer_service import TransferService
from tests.test_helpers import make_record


@pytest.fixture
def app_context(tmp_path):
    """Fixture for Flask app context backed by an in-memory database."""
    app = create_app("Testing", overrides={"database": ":memory:", "upload_folder": str(tmp_path / "uploads")})
    with app.app_context():
        yield app


@pytest.fixture
def client(app_context):
    return app_context.test_client()


@pytest.fixture(scope="session")
def config_manager():
    """Fixture for initializing ConfigManager."""
    return ConfigManager()


@pytest.fixture(scope="session")
def app_config(config_manager):
    """Fixture for application configuration."""
    return config_manager.config


@pytest.fixture
def get_db_manager():
    """Fixture for database manager with per-test isolation."""
    db_manager = create_db_manager(":memory:")  # Use an in-memory database for isolation
    init_db(db_manager=db_manager)
    yield db_manager
    db_manager.close()  # Ensure database connection is closed after the test


@pytest.fixture
def db_lock():
    return threading.RLock()


@pytest.fixture
def session_store(get_db_manager, db_lock):
    return SqliteSessionStore(get_db_manager, session_id="test", lock=db_lock)


@pytest.fixture
def broadcaster(get_db_manager, db_lock):
    return EventBroadcaster(get_db_manager, lock=db_lock)


@pytest.fixture
def service(session_store, broadcaster):
    return TransferService(session_store, broadcaster, multi_variant_only=False)


@pytest.fixture
def sample_records():
    """D100 has variants A (50) and B (30); D200 has a single variant."""
    return [
        make_record("D100", "A", 20, week=3, location="PlantX"),
        make_record("D100", "A", 30, week=4, location="PlantX"),
        make_record("D100", "B", 30, week=3, location="PlantX"),
        make_record("D200", "C", 10, week=3, location="PlantY", plant="P2", line="L2"),
    ]


@pytest.fixture
def loaded_service(service, sample_records):
    service.upload_records(sample_records, user="alice", filename="demand.xlsx")
    return service
