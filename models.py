# models.py
from enum import Enum
from typing import List, Optional
from datetime import date, datetime, timezone
from sqlmodel import SQLModel, Field, Relationship

def utcnow() -> datetime:
  return datetime.now(timezone.utc)

class CustomerStatus(str, Enum):
  ACTIVE = "active"
  INACTIVE = "inactive"
  SUSPENDED = "suspended"

class InvoiceStatus(str, Enum):
  UNPAID = "unpaid"
  PARTIAL = "partial"
  PAID = "paid"
  OVERDUE = "overdue"
  VOID = "void"

class PaymentStatus(str, Enum):
  PENDING = "pending"
  COMPLETED = "completed"
  FAILED = "failed"
  VOIDED = "voided"

class PaymentMethod(str, Enum):
  CASH = "cash"
  BANK_TRANSFER = "bank_transfer"
  CARD = "card"
  E_WALLET = "e_wallet"
  OTHER = "other"

# statuses that still carry a balance
OPEN_STATUSES = (InvoiceStatus.UNPAID, InvoiceStatus.PARTIAL, InvoiceStatus.OVERDUE)

class SubscriptionType(SQLModel, table=True):
  __tablename__ = "subscription_types"

  id: Optional[int] = Field(default=None, primary_key=True)
  name: str = Field(index=True)
  description: Optional[str] = None
  registration_fee: int = 0
  monthly_fee: int = 0
  maintenance_fee: int = 0
  late_fee_percentage: int = 0  # basis points, stored only
  is_active: bool = True
  created_at: datetime = Field(default_factory=utcnow)
  updated_at: datetime = Field(default_factory=utcnow)

class Customer(SQLModel, table=True):
  __tablename__ = "customers"

  id: Optional[int] = Field(default=None, primary_key=True)
  name: str
  email: Optional[str] = None
  phone: Optional[str] = None
  address: Optional[str] = None
  meter_number: Optional[str] = Field(default=None, index=True)
  subscription_type_id: int = Field(foreign_key="subscription_types.id", index=True)
  category_id: Optional[int] = None
  status: CustomerStatus = CustomerStatus.ACTIVE
  created_at: datetime = Field(default_factory=utcnow)

class WaterRate(SQLModel, table=True):
  __tablename__ = "water_rates"

  id: Optional[int] = Field(default=None, primary_key=True)
  subscription_type_id: int = Field(foreign_key="subscription_types.id", index=True)
  category_id: Optional[int] = Field(default=None, index=True)
  amount: int  # per m3
  effective_date: date = Field(index=True)
  active: bool = True
  description: Optional[str] = None
  created_at: datetime = Field(default_factory=utcnow)
  updated_at: datetime = Field(default_factory=utcnow)

class WaterUsage(SQLModel, table=True):
  __tablename__ = "water_usages"

  id: Optional[int] = Field(default=None, primary_key=True)
  customer_id: int = Field(foreign_key="customers.id", index=True)
  usage_month: date = Field(index=True)  # always the 1st
  meter_start: int
  meter_end: int
  usage_m3: int
  amount_calculated: int = 0
  is_anomaly: bool = False
  notes: Optional[str] = None
  recorded_by: Optional[str] = None
  created_at: datetime = Field(default_factory=utcnow)
  updated_at: datetime = Field(default_factory=utcnow)

class Invoice(SQLModel, table=True):
  __tablename__ = "invoices"

  id: Optional[int] = Field(default=None, primary_key=True)
  invoice_number: Optional[str] = Field(default=None, index=True)  # INV-202401-000001
  customer_id: int = Field(foreign_key="customers.id", index=True)
  usage_id: int = Field(foreign_key="water_usages.id", index=True)
  billing_period: str  # YYYY-MM
  subtotal: int = 0
  tax_percentage: int = 0  # basis points
  tax_amount: int = 0
  total_amount: int = 0
  amount_paid: int = 0
  amount_due: int = 0
  status: InvoiceStatus = Field(default=InvoiceStatus.UNPAID, index=True)
  issue_date: date
  due_date: date = Field(index=True)
  voided_at: Optional[datetime] = None
  void_reason: Optional[str] = None
  version: int = 1
  created_at: datetime = Field(default_factory=utcnow)
  updated_at: datetime = Field(default_factory=utcnow)

  items: List["InvoiceItem"] = Relationship(
    back_populates="invoice",
    sa_relationship_kwargs={"cascade": "all, delete-orphan", "order_by": "InvoiceItem.id"},
  )

class InvoiceItem(SQLModel, table=True):
  __tablename__ = "invoice_items"

  id: Optional[int] = Field(default=None, primary_key=True)
  invoice_id: Optional[int] = Field(default=None, foreign_key="invoices.id", index=True)
  description: str
  quantity: int = 1
  unit_price: int
  amount: int

  invoice: Optional[Invoice] = Relationship(back_populates="items")

class Payment(SQLModel, table=True):
  __tablename__ = "payments"

  id: Optional[int] = Field(default=None, primary_key=True)
  invoice_id: int = Field(foreign_key="invoices.id", index=True)
  customer_id: int = Field(foreign_key="customers.id", index=True)
  amount: int
  method: PaymentMethod
  payment_date: date
  reference_number: Optional[str] = None
  notes: Optional[str] = None
  status: PaymentStatus = Field(default=PaymentStatus.COMPLETED, index=True)
  created_at: datetime = Field(default_factory=utcnow)
  updated_at: datetime = Field(default_factory=utcnow)
