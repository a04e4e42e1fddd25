# indexsync/storage/db.py
from sqlmodel import SQLModel, create_engine, Session

from core.settings import CAPTURE, DATABASE, DB_PATH

# Ensure SQLModel metadata is populated
import models.index_config  # noqa: F401
import models.product  # noqa: F401
import models.queue_item  # noqa: F401
import models.sync_log  # noqa: F401
from storage import migrations


_engine = create_engine(DATABASE.url, echo=DATABASE.echo)


def init_db(engine=None):
    actual_engine = engine or _engine
    if actual_engine.dialect.name == "sqlite" and actual_engine is _engine:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    SQLModel.metadata.create_all(actual_engine)
    migrations.run_all(
        actual_engine,
        capture_mode=CAPTURE.mode,
        enqueue_when_disabled=CAPTURE.enqueue_when_disabled,
    )


def get_engine():
    return _engine


def get_session() -> Session:
    return Session(_engine)
