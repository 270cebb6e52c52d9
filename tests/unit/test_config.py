import importlib.util
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).parent.parent.parent
sys.path.insert(0, str(ROOT / "sandbox-server"))

from sql_sandbox import config  # noqa: E402
from sql_sandbox.reset import DEFAULT_SEED_PATH, DatasetResetManager  # noqa: E402


def _load_seed_script():
    spec = importlib.util.spec_from_file_location(
        "seed_database", ROOT / "scripts" / "seed_database.py"
    )
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def no_dotenv(monkeypatch):
    monkeypatch.setattr(config, "load_dotenv", None)


def test_load_settings_reads_environment(monkeypatch, no_dotenv):
    monkeypatch.setenv("DATABASE_URL", "postgres://admin@db:5432/katas")
    monkeypatch.setenv("ROW_LIMIT", "250")
    monkeypatch.setenv("STATEMENT_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("PROVISION_LEARNER_ROLE", "no")
    monkeypatch.setenv("CORS_ORIGINS", "http://a.test, http://b.test")

    settings = config.load_settings()

    assert settings.database_url == "postgres://admin@db:5432/katas"
    assert settings.learner_dsn == "postgres://admin@db:5432/katas"
    assert settings.row_limit == 250
    assert settings.statement_timeout_seconds == 2.5
    assert settings.provision_learner_role is False
    assert settings.cors_origins == ["http://a.test", "http://b.test"]


def test_create_reset_manager_uses_admin_pool_without_connecting():
    settings = config.Settings(database_url="postgres://admin@db/katas", learner_db_user="kata")
    manager = config.create_reset_manager(settings)

    assert isinstance(manager, DatasetResetManager)
    assert manager.pool.dsn == "postgres://admin@db/katas"
    assert manager.pool.max_size == 2
    assert manager.learner_role == "kata"
    assert manager.seed_path == Path(DEFAULT_SEED_PATH)


def test_seed_script_does_not_depend_on_app_module():
    script = _load_seed_script()
    assert script.load_settings is config.load_settings
    assert not hasattr(script, "create_app")


def test_seed_script_applies_cli_overrides(monkeypatch, no_dotenv):
    script = _load_seed_script()
    seen = {}

    async def fake_seed(settings):
        seen["settings"] = settings
        return True

    monkeypatch.setattr(script, "seed", fake_seed)

    code = script.main(["--seed-path", "custom.sql", "--skip-learner-role"])

    assert code == 0
    assert seen["settings"].seed_path == "custom.sql"
    assert seen["settings"].provision_learner_role is False


def test_seed_script_reports_failure(monkeypatch, no_dotenv):
    script = _load_seed_script()

    async def failing_seed(settings):
        return False

    monkeypatch.setattr(script, "seed", failing_seed)

    assert script.main([]) == 1
