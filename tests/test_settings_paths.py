from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core import settings
from utils.datetime_utils import ensure_utc, seconds_between, to_rfc3339_utc


def test_linux_data_dir_with_xdg():
    env = {"XDG_DATA_HOME": "/tmp/xdg"}
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="linux",
        env=env,
        home=Path("/home/test"),
    )
    assert result == Path("/tmp/xdg") / settings.APP_NAME


def test_linux_data_dir_default_home():
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="linux",
        env={},
        home=Path("/home/test"),
    )
    assert result == Path("/home/test/.local/share") / settings.APP_NAME


def test_macos_data_dir():
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="darwin",
        env={},
        home=Path("/Users/test"),
    )
    expected = Path("/Users/test/Library/Application Support") / settings.APP_NAME
    assert result == expected


def test_data_dir_override():
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="linux",
        env={"INDEXSYNC_DATA_DIR": "/srv/indexsync", "XDG_DATA_HOME": "/tmp/xdg"},
        home=Path("/home/test"),
    )
    assert result == Path("/srv/indexsync")


def test_runtime_paths_inside_data_dir():
    assert settings.DB_PATH.parent == settings.DATA_DIR
    assert settings.SYNC_LOG_PATH.parent == settings.LOG_DIR
    assert settings.LOG_DIR.parent == settings.DATA_DIR


def test_load_settings_defaults():
    loaded = settings.load_settings({})

    assert loaded.worker == settings.WorkerSettings()
    assert loaded.worker.max_retries == 5
    assert loaded.worker.claim_timeout == 300.0
    assert loaded.database.url.startswith("sqlite:///")
    assert loaded.capture.mode == "orm"
    assert loaded.capture.enqueue_when_disabled is True
    assert loaded.index.resolved_base_url() is None


def test_load_settings_from_env():
    loaded = settings.load_settings(
        {
            "DATABASE_URL": "postgresql+psycopg://u:p@db/portal",
            "BATCH_SIZE": "50",
            "POLLING_INTERVAL": "0.5",
            "MAX_RETRIES": "3",
            "CLAIM_TIMEOUT": "60",
            "INDEX_APP_ID": "APP",
            "INDEX_ADMIN_KEY": "secret",
            "CAPTURE_MODE": "trigger",
            "CAPTURE_WHEN_DISABLED": "no",
        }
    )

    assert loaded.database.url == "postgresql+psycopg://u:p@db/portal"
    assert loaded.worker.batch_size == 50
    assert loaded.worker.poll_interval == 0.5
    assert loaded.worker.max_retries == 3
    assert loaded.worker.claim_timeout == 60.0
    assert loaded.index.resolved_base_url() == "https://APP.algolia.net"
    assert loaded.capture.mode == "trigger"
    assert loaded.capture.enqueue_when_disabled is False


@pytest.mark.parametrize(
    "env",
    [
        {"BATCH_SIZE": "many"},
        {"BATCH_SIZE": "0"},
        {"MAX_RETRIES": "0"},
        {"POLLING_INTERVAL": "soon"},
        {"CAPTURE_MODE": "cdc"},
        {"INDEX_BACKEND": "solr"},
    ],
)
def test_load_settings_rejects_bad_values(env):
    with pytest.raises(ValueError):
        settings.load_settings(env)


def test_rfc3339_helpers():
    naive = datetime(2024, 1, 1, 12, 30, 15, 999)
    assert to_rfc3339_utc(naive) == "2024-01-01T12:30:15Z"
    assert ensure_utc(naive).tzinfo == timezone.utc
    assert to_rfc3339_utc(None) is None
    later = ensure_utc(naive) + timedelta(seconds=90)
    assert seconds_between(naive, later) == pytest.approx(90)
