import os
import sys
import threading
from pathlib import Path


os.environ.setdefault("CONTENT_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("USER_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)
os.environ.setdefault("MAIL_QUEUE_SCHEDULER_ENABLED", "false")

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from member_intranet.db.base import Base, UserBase
from member_intranet.exceptions import TransientGatewayError
from member_intranet.models.intranet_models import Event, InventoryItem
from member_intranet.models.member_models import Member
from member_intranet.services.user_access_service import ActorContext, create_session


BOARD = ActorContext(user_id=1, role="board_internal", email="board@example.org")
MEMBER = ActorContext(user_id=2, role="member", email="anna@example.org")
OTHER_MEMBER = ActorContext(user_id=3, role="member", email="ben@example.org")
AUDITOR = ActorContext(user_id=4, role="alumni_auditor", email="auditor@example.org")


def memory_sessionmaker(metadata):
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    metadata.create_all(bind=engine)
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


def file_sessionmaker(path: Path, metadata):
    engine = create_engine(
        f"sqlite+pysqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )
    metadata.create_all(bind=engine)
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


def content_sessionmaker():
    return memory_sessionmaker(Base.metadata)


def user_sessionmaker():
    return memory_sessionmaker(UserBase.metadata)


def add_item(db, name="Beamer", quantity=5, **kwargs) -> InventoryItem:
    item = InventoryItem(Name=name, Quantity=quantity, **kwargs)
    db.add(item)
    db.commit()
    return item


def add_event(db, title, start_time, location=None, link=None) -> Event:
    event = Event(Title=title, StartTime=start_time, Location=location, RegistrationLink=link)
    db.add(event)
    db.commit()
    return event


def add_member(user_db, user_id, email, first_name=None, last_name=None, role="member", active=True) -> Member:
    member = Member(UserID=user_id, Email=email, FirstName=first_name, LastName=last_name, Role=role, IsActive=active)
    user_db.add(member)
    user_db.commit()
    return member


def session_headers(actor: ActorContext) -> dict:
    token = create_session({"userID": actor.user_id, "role": actor.role, "email": actor.email})
    return {"X-Session-Token": token}


class FakeGateway:
    def __init__(self, failing=(), raising=(), crashing=()):
        self.failing = {email.lower() for email in failing}
        self.raising = {email.lower() for email in raising}
        self.crashing = {email.lower() for email in crashing}
        self.attempts = []
        self.sent = []
        self._lock = threading.Lock()

    def send_email(self, to, subject, html_body):
        with self._lock:
            self.attempts.append(to)
        if to.lower() in self.raising:
            raise TransientGatewayError(f"SMTP delivery to {to} failed")
        if to.lower() in self.crashing:
            raise RuntimeError("gateway bug")
        if to.lower() in self.failing:
            return False
        with self._lock:
            self.sent.append({"to": to, "subject": subject, "html": html_body})
        return True
