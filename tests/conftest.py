import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest

# Ensure required secrets are present before any app/settings import during test collection.
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_SECRET", "dev_jwt_secret_32_chars_minimum__123456")
os.environ.setdefault("CRON_SECRET", "dev_cron_secret_32_chars_minimum__123456")
os.environ.setdefault("SLACK_ENABLED", "false")
os.environ.setdefault("EMAIL_ENABLED", "false")

ROOT = Path(__file__).resolve().parent.parent


def _run_alembic_upgrade_head(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config()
    cfg.set_main_option("script_location", str(ROOT / "alembic"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def pytest_configure():
    fd, path = tempfile.mkstemp(prefix="helpdesk_test_", suffix=".db")
    os.close(fd)
    db_url = f"sqlite+pysqlite:///{path}"

    os.environ["HELPDESK_DB_URL"] = db_url
    os.environ["SQLALCHEMY_DATABASE_URL"] = db_url

    _run_alembic_upgrade_head(db_url)


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> datetime:
        self.now = self.now + timedelta(**kw)
        return self.now


class FakeChat:
    def __init__(self):
        self.messages = []
        self.replies = []
        self.fail = False
        self._n = 0

    def _ts(self) -> str:
        self._n += 1
        return f"1700000000.{self._n:06d}"

    def post_message(self, channel, text, cc_ids=None):
        from common_core.errors import TransientDeliveryError

        if self.fail:
            raise TransientDeliveryError("SLACK_UNAVAILABLE", "chat is down")
        self.messages.append({"channel": channel, "text": text, "cc": list(cc_ids or [])})
        return self._ts()

    def post_thread_reply(self, channel, thread_id, text, cc_ids=None):
        from common_core.errors import TransientDeliveryError

        if self.fail:
            raise TransientDeliveryError("SLACK_UNAVAILABLE", "chat is down")
        self.replies.append({"channel": channel, "thread": thread_id, "text": text, "cc": list(cc_ids or [])})
        return self._ts()


class FakeEmail:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, mail):
        from common_core.errors import TransientDeliveryError

        if self.fail:
            raise TransientDeliveryError("SMTP_FAILED", "smtp is down")
        self.sent.append(mail)
        return f"<msg-{len(self.sent)}@helpdesk.test>"


@pytest.fixture
def clock():
    # a Wednesday
    return FixedClock(datetime(2026, 3, 4, 10, 0, 0))


@pytest.fixture
def session_factory(tmp_path):
    from apps.helpdesk_backend import models  # noqa: F401
    from common_core.db import Base, make_engine, make_session

    engine = make_engine(f"sqlite+pysqlite:///{tmp_path / 'helpdesk.db'}")
    Base.metadata.create_all(engine)
    yield make_session(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def seeded(db):
    from apps.helpdesk_backend.models import Committee, User

    db.add_all(
        [
            User(id="stu1", email="stu1@college.edu", full_name="Student One", role="student"),
            User(id="stu2", email="stu2@college.edu", full_name="Student Two", role="student"),
            User(id="com1", email="com1@college.edu", full_name="Committee Head", role="committee"),
            User(id="com2", email="com2@college.edu", full_name="Other Head", role="committee"),
            User(id="adm1", email="adm1@college.edu", full_name="Admin One", role="admin"),
            User(id="adm2", email="adm2@college.edu", full_name="Admin Two", role="admin"),
            User(id="sup1", email="sup1@college.edu", full_name="Super Admin", role="super_admin"),
        ]
    )
    db.flush()
    cultural = Committee(name="Cultural", head_id="com1")
    sports = Committee(name="Sports", head_id="com2")
    db.add_all([cultural, sports])
    db.commit()
    return SimpleNamespace(cultural_id=cultural.id, sports_id=sports.id)


@pytest.fixture
def make_ticket(db, clock, seeded):
    from apps.helpdesk_backend.models import Ticket

    def _make(
        status="open",
        created_by="stu1",
        category="Hostel",
        location=None,
        assigned_to=None,
        group_id=None,
        metadata=None,
        created_at=None,
        updated_at=None,
        escalation_level=0,
        last_escalated_at=None,
    ):
        created = created_at or clock()
        t = Ticket(
            status=status,
            created_by=created_by,
            category=category,
            location=location,
            assigned_to=assigned_to,
            group_id=group_id,
            description="Fan not working",
            escalation_level=escalation_level,
            last_escalated_at_utc=last_escalated_at,
            metadata_json=metadata or {},
            created_at_utc=created,
            updated_at_utc=updated_at or created,
        )
        db.add(t)
        db.commit()
        return t

    return _make


@pytest.fixture
def fake_chat():
    return FakeChat()


@pytest.fixture
def fake_email():
    return FakeEmail()


@pytest.fixture
def handler_ctx(session_factory, fake_chat, fake_email, clock):
    from apps.helpdesk_worker.handlers import HandlerContext

    return HandlerContext(
        session_factory=session_factory,
        chat=fake_chat,
        email=fake_email,
        clock=clock,
        default_cc=["UCC1"],
        category_channels={"hostel": "#hostel", "college": "#college", "committee": "#committee"},
    )
