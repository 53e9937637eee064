from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class User(Base):
    __tablename__ = "Users"

    UserID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    Email = Column(String(255))
    Phone = Column(String(50))
    StudentID = Column(String(50))
    Department = Column(String(100))
    Role = Column(String(50), default="student")
    CreatedDate = Column(DateTime, server_default=func.now())

    Reservations = relationship("Reservation", back_populates="User")


class Equipment(Base):
    __tablename__ = "Equipment"

    EquipmentID = Column(Integer, primary_key=True)
    EquipmentName = Column(String(255), nullable=False)
    CategoryName = Column(String(100))
    Manufacturer = Column(String(255))
    Description = Column(String(1000))
    TotalQuantity = Column(Integer, nullable=False, default=0)
    SortOrder = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Assets = relationship("Asset", back_populates="Equipment")


class Asset(Base):
    __tablename__ = "Assets"

    AssetID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False, index=True)
    EquipmentName = Column(String(255))
    SerialNumber = Column(String(100))
    ManagementCode = Column(String(100))
    Status = Column(String(20), nullable=False, default="available", index=True)
    Note = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("Equipment", back_populates="Assets")


class Reservation(Base):
    __tablename__ = "Reservations"
    __table_args__ = (
        Index("IX_Reservations_Status_Dates", "Status", "StartDate", "EndDate"),
    )

    ReservationID = Column(Integer, primary_key=True)
    ReservationNumber = Column(String(20), nullable=False, unique=True)
    UserID = Column(Integer, ForeignKey("Users.UserID"), nullable=False, index=True)
    Status = Column(String(20), nullable=False, default="pending")
    Purpose = Column(String(200), nullable=False)
    PurposeDetail = Column(String(1000))
    StartDate = Column(String(16), nullable=False)
    EndDate = Column(String(16), nullable=False)
    LeaderName = Column(String(255))
    LeaderPhone = Column(String(50))
    LeaderStudentID = Column(String(50))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    User = relationship("User", back_populates="Reservations")
    ReservationItems = relationship(
        "ReservationItem",
        back_populates="Reservation",
        cascade="all, delete-orphan",
        order_by="ReservationItem.Position",
    )


class ReservationItem(Base):
    __tablename__ = "ReservationItems"

    ReservationItemID = Column(Integer, primary_key=True)
    ReservationID = Column(Integer, ForeignKey("Reservations.ReservationID"), nullable=False, index=True)
    Position = Column(Integer, nullable=False, default=0)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False, index=True)
    Quantity = Column(Integer, nullable=False, default=1)
    Name = Column(String(255))
    CheckedOut = Column(Boolean, default=False)
    Returned = Column(Boolean, default=False)

    Reservation = relationship("Reservation", back_populates="ReservationItems")
    Equipment = relationship("Equipment")
    AssignedAssets = relationship(
        "ReservationItemAsset",
        back_populates="ReservationItem",
        cascade="all, delete-orphan",
        order_by="ReservationItemAsset.ReservationItemAssetID",
    )


class ReservationItemAsset(Base):
    __tablename__ = "ReservationItemAssets"

    ReservationItemAssetID = Column(Integer, primary_key=True)
    ReservationItemID = Column(Integer, ForeignKey("ReservationItems.ReservationItemID"), nullable=False, index=True)
    AssetID = Column(Integer, ForeignKey("Assets.AssetID"), nullable=False, index=True)

    ReservationItem = relationship("ReservationItem", back_populates="AssignedAssets")
    Asset = relationship("Asset")


class Repair(Base):
    __tablename__ = "Repairs"

    RepairID = Column(Integer, primary_key=True)
    ReservationID = Column(Integer, ForeignKey("Reservations.ReservationID"), index=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"))
    AssetID = Column(Integer, ForeignKey("Assets.AssetID"), index=True)
    ReservationNumber = Column(String(20))
    LeaderName = Column(String(255))
    LeaderPhone = Column(String(50))
    EquipmentName = Column(String(255))
    SerialNumber = Column(String(100))
    Stage = Column(String(30), nullable=False, default="damage_confirmed", index=True)
    DamageType = Column(String(30), nullable=False, default="damaged")
    DamageDescription = Column(String(2000))
    DamageConfirmedAt = Column(DateTime)
    ChargeType = Column(String(30))
    ChargeDecidedAt = Column(DateTime)
    EstimateMemo = Column(String(2000))
    EstimateRequestedAt = Column(DateTime)
    FinalAmount = Column(Numeric(12, 2))
    PaymentConfirmedAt = Column(DateTime)
    RepairResult = Column(String(30))
    CompletedAt = Column(DateTime)
    AdminMemo = Column(String(2000))
    IsFixed = Column(Boolean, nullable=False, default=False)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())


class AssetHistory(Base):
    __tablename__ = "AssetHistory"

    HistoryID = Column(Integer, primary_key=True)
    AssetID = Column(Integer, ForeignKey("Assets.AssetID"), nullable=False, index=True)
    ReservationID = Column(Integer, ForeignKey("Reservations.ReservationID"), index=True)
    UserID = Column(Integer)
    UserName = Column(String(255))
    EquipmentName = Column(String(255))
    SerialNumber = Column(String(100))
    Action = Column(String(30), nullable=False)
    ReturnCondition = Column(String(30))
    ReturnNotes = Column(String(1000))
    CreatedAt = Column(DateTime, server_default=func.now())


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
