from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from member_intranet.db.base import UserBase


class Member(UserBase):
    __tablename__ = "Members"

    UserID = Column(Integer, primary_key=True)
    Email = Column(String(255), nullable=False, unique=True)
    FirstName = Column(String(100))
    LastName = Column(String(100))
    Role = Column(String(50), nullable=False, default="member")
    IsActive = Column(Boolean, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())
