from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


EQUIPMENT_CATEGORIES = (
    "Centering Plate",
    "Compactor",
    "Cutter",
    "Crane",
    "Other",
)

RENTAL_STATUSES = ("Active", "Payment Due", "Closed")

PAYMENT_KINDS = ("Advance", "Payment", "Credit In", "Credit Out", "Refund")


def _money():
    return Numeric(12, 2, asdecimal=False)


class Customer(Base):
    __tablename__ = "Customers"

    CustomerID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    Address = Column(String(500), nullable=False)
    PhoneNumber = Column(String(50), nullable=False)
    IdProofUrl = Column(String(1000))
    CustomerPhotoUrl = Column(String(1000))
    MediatorName = Column(String(255))
    MediatorPhotoUrl = Column(String(1000))
    IsDeleted = Column(Boolean, default=False, nullable=False)
    DeletedAt = Column(DateTime)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    Rentals = relationship("Rental", back_populates="Customer")


class Equipment(Base):
    __tablename__ = "Equipment"

    EquipmentID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    Category = Column(String(100), nullable=False, default="Other")
    RatePerDay = Column(_money(), nullable=False, default=0)
    TotalManaged = Column(Integer, nullable=False, default=0)
    OnRent = Column(Integer, nullable=False, default=0)
    OnMaintenance = Column(Integer, nullable=False, default=0)
    PhotoUrl = Column(String(1000))
    Version = Column(Integer, nullable=False, default=1)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    RentalItems = relationship("RentalItem", back_populates="Equipment")

    __mapper_args__ = {"version_id_col": Version}

    @property
    def Available(self) -> int:
        remaining = int(self.TotalManaged or 0) - int(self.OnRent or 0) - int(self.OnMaintenance or 0)
        return max(0, remaining)


class Rental(Base):
    __tablename__ = "Rentals"

    RentalID = Column(Integer, primary_key=True)
    CustomerID = Column(Integer, ForeignKey("Customers.CustomerID"), nullable=False)
    CustomerName = Column(String(255), nullable=False)
    RentalAddress = Column(String(500), nullable=False)
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date)
    Status = Column(String(20), nullable=False, default="Active")
    AdvancePayment = Column(_money(), nullable=False, default=0)
    TotalPaidAmount = Column(_money(), nullable=False, default=0)
    TotalCalculatedAmount = Column(_money())
    Notes = Column(String(2000))
    Version = Column(Integer, nullable=False, default=1)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    Customer = relationship("Customer", back_populates="Rentals")
    RentalItems = relationship("RentalItem", back_populates="Rental", cascade="all, delete-orphan")
    Payments = relationship(
        "RentalPayment",
        back_populates="Rental",
        cascade="all, delete-orphan",
        order_by="RentalPayment.PaymentID",
    )

    __mapper_args__ = {"version_id_col": Version}


class RentalItem(Base):
    __tablename__ = "RentalItems"

    RentalItemID = Column(Integer, primary_key=True)
    RentalID = Column(Integer, ForeignKey("Rentals.RentalID"), nullable=False)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    EquipmentName = Column(String(255), nullable=False)
    Quantity = Column(Integer, nullable=False, default=1)
    RatePerDay = Column(_money(), nullable=False, default=0)

    Rental = relationship("Rental", back_populates="RentalItems")
    Equipment = relationship("Equipment", back_populates="RentalItems")


class RentalPayment(Base):
    __tablename__ = "RentalPayments"

    PaymentID = Column(Integer, primary_key=True)
    RentalID = Column(Integer, ForeignKey("Rentals.RentalID"), nullable=False)
    Amount = Column(_money(), nullable=False)
    PaymentDate = Column(Date, nullable=False)
    Notes = Column(String(1000))
    Kind = Column(String(20), nullable=False, default="Payment")
    CreatedAt = Column(DateTime, server_default=func.now())

    Rental = relationship("Rental", back_populates="Payments")


class User(Base):
    __tablename__ = "Users"

    UserID = Column(Integer, primary_key=True)
    Email = Column(String(255), nullable=False, unique=True)
    DisplayName = Column(String(255), nullable=False)
    PasswordHash = Column(String(256))
    PasswordSalt = Column(String(64))
    Role = Column(String(50), nullable=False, default="Staff")
    IsActive = Column(Boolean, default=True, nullable=False)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
