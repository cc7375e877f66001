from collections.abc import Generator

from .session import SessionLocalContent, SessionLocalUser


def get_content_db() -> Generator:
    db = SessionLocalContent()
    try:
        yield db
    finally:
        db.close()


def get_user_db() -> Generator:
    db = SessionLocalUser()
    try:
        yield db
    finally:
        db.close()
