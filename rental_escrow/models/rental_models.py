from sqlalchemy import Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rental_escrow.db.base import Base


class Equipment(Base):
    __tablename__ = "Equipment"

    EquipmentID = Column(Integer, primary_key=True)
    OwnerID = Column(Integer, nullable=False)
    Title = Column(String(255), nullable=False)
    DailyRate = Column(Numeric(10, 2), nullable=False)
    DamageDepositAmount = Column(Numeric(10, 2))
    DamageDepositPercentage = Column(Numeric(5, 2))
    DepositRefundTimelineHours = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    RateOverrides = relationship("EquipmentRateOverride", back_populates="Equipment", cascade="all, delete-orphan")
    Bookings = relationship("BookingRequest", back_populates="Equipment")


class EquipmentRateOverride(Base):
    __tablename__ = "EquipmentRateOverrides"
    __table_args__ = (UniqueConstraint("EquipmentID", "RateDate"),)

    OverrideID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    RateDate = Column(Date, nullable=False)
    CustomRate = Column(Numeric(10, 2), nullable=False)

    Equipment = relationship("Equipment", back_populates="RateOverrides")


class BookingRequest(Base):
    __tablename__ = "BookingRequests"

    BookingID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False, index=True)
    RenterID = Column(Integer, nullable=False, index=True)
    OwnerID = Column(Integer, nullable=False, index=True)
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    Status = Column(String(40), nullable=False, default="pending")
    InsuranceType = Column(String(20), nullable=False, default="none")
    TotalAmount = Column(Numeric(10, 2), nullable=False)
    CancellationReason = Column(String(500))
    CreatedAt = Column(DateTime, server_default=func.now())
    ActivatedAt = Column(DateTime)
    CompletedAt = Column(DateTime)
    UpdatedAt = Column(DateTime, server_default=func.now())
    Version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": Version}

    Equipment = relationship("Equipment", back_populates="Bookings")
    Inspections = relationship("Inspection", back_populates="Booking", order_by="Inspection.InspectionID")
    Payment = relationship("EscrowPayment", back_populates="Booking", uselist=False)
    Claim = relationship("DamageClaim", back_populates="Booking", uselist=False)


class Inspection(Base):
    __tablename__ = "Inspections"
    __table_args__ = (UniqueConstraint("BookingID", "InspectionType"),)

    InspectionID = Column(Integer, primary_key=True)
    BookingID = Column(Integer, ForeignKey("BookingRequests.BookingID"), nullable=False)
    InspectionType = Column(String(10), nullable=False)
    Photos = Column(Text, nullable=False)
    ConditionNotes = Column(String(2000))
    VerifiedByOwner = Column(Boolean, default=False)
    VerifiedByRenter = Column(Boolean, default=False)
    Latitude = Column(Float)
    Longitude = Column(Float)
    SubmittedBy = Column(Integer, nullable=False)
    Timestamp = Column(DateTime, nullable=False)

    Booking = relationship("BookingRequest", back_populates="Inspections")
    ChecklistItems = relationship(
        "InspectionChecklistItem",
        back_populates="Inspection",
        cascade="all, delete-orphan",
        order_by="InspectionChecklistItem.ChecklistItemID",
    )


class InspectionChecklistItem(Base):
    __tablename__ = "InspectionChecklistItems"

    ChecklistItemID = Column(Integer, primary_key=True)
    InspectionID = Column(Integer, ForeignKey("Inspections.InspectionID"), nullable=False)
    ItemName = Column(String(200), nullable=False)
    Status = Column(String(10), nullable=False)
    Notes = Column(String(1000))

    Inspection = relationship("Inspection", back_populates="ChecklistItems")


class EscrowPayment(Base):
    __tablename__ = "EscrowPayments"

    PaymentID = Column(Integer, primary_key=True)
    BookingID = Column(Integer, ForeignKey("BookingRequests.BookingID"), nullable=False, unique=True)
    TotalAmount = Column(Numeric(10, 2), nullable=False)
    Subtotal = Column(Numeric(10, 2), nullable=False)
    ServiceFee = Column(Numeric(10, 2), nullable=False)
    InsuranceAmount = Column(Numeric(10, 2), nullable=False)
    DepositAmount = Column(Numeric(10, 2), nullable=False)
    PaymentStatus = Column(String(30), nullable=False, default="pending")
    EscrowStatus = Column(String(30))
    PaymentReference = Column(String(200))
    OwnerPayout = Column(Numeric(10, 2))
    DepositReturned = Column(Numeric(10, 2))
    ClaimDeduction = Column(Numeric(10, 2))
    RefundAmount = Column(Numeric(10, 2))
    PlatformRetained = Column(Numeric(10, 2))
    CapturedAt = Column(DateTime)
    ReleasedAt = Column(DateTime)

    Booking = relationship("BookingRequest", back_populates="Payment")


class DamageClaim(Base):
    __tablename__ = "DamageClaims"

    ClaimID = Column(Integer, primary_key=True)
    BookingID = Column(Integer, ForeignKey("BookingRequests.BookingID"), nullable=False, unique=True)
    FiledBy = Column(Integer, nullable=False)
    DamageDescription = Column(String(4000), nullable=False)
    EstimatedCost = Column(Numeric(10, 2), nullable=False)
    EvidencePhotos = Column(Text)
    RepairQuotes = Column(Text)
    DegradedItems = Column(Text)
    Status = Column(String(20), nullable=False, default="pending")
    AgreedCost = Column(Numeric(10, 2))
    ResolutionNotes = Column(String(2000))
    FiledAt = Column(DateTime, nullable=False)
    ResolvedAt = Column(DateTime)

    Booking = relationship("BookingRequest", back_populates="Claim")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    BookingID = Column(Integer, index=True)
    EventType = Column(String(50), nullable=False)
    ActorID = Column(Integer)
    NewStatus = Column(String(40))
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
