import enum

from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from member_intranet.db.base import Base


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PENDING_RETURN = "pending_return"
    REJECTED = "rejected"
    RETURNED = "returned"


class LegacyRentalStatus(str, enum.Enum):
    ACTIVE = "active"
    PENDING_RETURN = "pending_return"
    RETURNED = "returned"


class MailJobStatus(str, enum.Enum):
    PAUSED = "paused"
    COMPLETED = "completed"


class RecipientStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class ReturnCondition(str, enum.Enum):
    FUNCTIONAL = "functional"
    DAMAGED = "damaged"


class InventoryItem(Base):
    __tablename__ = "InventoryItems"

    ItemID = Column(Integer, primary_key=True)
    ExternalID = Column(String(64), unique=True)
    Name = Column(String(255), nullable=False)
    Description = Column(String(2000))
    Unit = Column(String(50), default="piece")
    Quantity = Column(Integer, nullable=False, default=0)
    CategoryName = Column(String(100))
    LocationName = Column(String(255))
    LastSyncedAt = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    RentalRequests = relationship("RentalRequest", back_populates="Item")
    LegacyRentals = relationship("LegacyRental", back_populates="Item")


class RentalRequest(Base):
    __tablename__ = "RentalRequests"
    __table_args__ = (
        Index("ix_rentalrequests_item_status", "ItemID", "Status"),
        Index("ix_rentalrequests_user_status", "UserID", "Status"),
    )

    RequestID = Column(Integer, primary_key=True)
    ItemID = Column(Integer, ForeignKey("InventoryItems.ItemID"), nullable=False)
    UserID = Column(Integer, nullable=False)
    Quantity = Column(Integer, nullable=False)
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    Purpose = Column(String(1000), nullable=False)
    Status = Column(String(20), nullable=False, default=RequestStatus.PENDING.value)
    DecidedBy = Column(Integer)
    DecisionDate = Column(DateTime)
    DecisionReason = Column(String(500))
    ReturnRequestedAt = Column(DateTime)
    ReturnedAt = Column(DateTime)
    ReturnCondition = Column(String(20))
    ReturnNotes = Column(String(1000))
    ConfirmedBy = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Item = relationship("InventoryItem", back_populates="RentalRequests")


class LegacyRental(Base):
    __tablename__ = "LegacyRentals"
    __table_args__ = (
        Index("ix_legacyrentals_item_status", "ItemID", "Status"),
        Index("ix_legacyrentals_user_status", "UserID", "Status"),
    )

    RentalID = Column(Integer, primary_key=True)
    ItemID = Column(Integer, ForeignKey("InventoryItems.ItemID"), nullable=False)
    UserID = Column(Integer, nullable=False)
    Quantity = Column(Integer, nullable=False, default=1)
    Purpose = Column(String(1000))
    Status = Column(String(20), nullable=False, default=LegacyRentalStatus.ACTIVE.value)
    RentedAt = Column(DateTime, server_default=func.now())
    ExpectedReturn = Column(Date)
    ReturnedAt = Column(DateTime)
    ReturnCondition = Column(String(20))
    ReturnNotes = Column(String(1000))
    ConfirmedBy = Column(Integer)

    Item = relationship("InventoryItem", back_populates="LegacyRentals")


class Event(Base):
    __tablename__ = "Events"

    EventID = Column(Integer, primary_key=True)
    Title = Column(String(255), nullable=False)
    StartTime = Column(DateTime)
    Location = Column(String(255))
    RegistrationLink = Column(String(1000))


class MassMailJob(Base):
    __tablename__ = "MassMailJobs"
    __table_args__ = (Index("ix_massmailjobs_status_nextrun", "Status", "NextRunAt"),)

    JobID = Column(Integer, primary_key=True)
    Subject = Column(String(255), nullable=False)
    BodyTemplate = Column(Text, nullable=False)
    EventID = Column(Integer, ForeignKey("Events.EventID"))
    EventName = Column(String(255))
    Status = Column(String(20), nullable=False, default=MailJobStatus.PAUSED.value)
    NextRunAt = Column(DateTime)
    TotalRecipients = Column(Integer, nullable=False, default=0)
    SentCount = Column(Integer, nullable=False, default=0)
    FailedCount = Column(Integer, nullable=False, default=0)
    CreatedBy = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())
    CompletedAt = Column(DateTime)

    Recipients = relationship("MassMailRecipient", back_populates="Job", cascade="all, delete-orphan")


class MassMailRecipient(Base):
    __tablename__ = "MassMailRecipients"
    __table_args__ = (Index("ix_massmailrecipients_job_status", "JobID", "Status"),)

    RecipientID = Column(Integer, primary_key=True)
    JobID = Column(Integer, ForeignKey("MassMailJobs.JobID", ondelete="CASCADE"), nullable=False)
    Email = Column(String(255), nullable=False)
    FirstName = Column(String(100))
    LastName = Column(String(100))
    Status = Column(String(20), nullable=False, default=RecipientStatus.PENDING.value)
    ClaimToken = Column(String(64))
    ClaimedAt = Column(DateTime)
    ProcessedAt = Column(DateTime)

    Job = relationship("MassMailJob", back_populates="Recipients")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
