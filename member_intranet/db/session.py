from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from member_intranet.config import CONTENT_DB_URL, USER_DB_URL


engine_content = create_engine(
    CONTENT_DB_URL,
    pool_pre_ping=True,
    future=True,
)

engine_user = create_engine(
    USER_DB_URL,
    pool_pre_ping=True,
    future=True,
)

SessionLocalContent = sessionmaker(
    bind=engine_content,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)

SessionLocalUser = sessionmaker(
    bind=engine_user,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def init_db() -> None:
    from member_intranet.db.base import Base, UserBase
    from member_intranet.models import intranet_models, member_models  # noqa: F401

    Base.metadata.create_all(bind=engine_content)
    UserBase.metadata.create_all(bind=engine_user)
