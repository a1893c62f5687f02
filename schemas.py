# schemas.py
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import CustomerStatus, InvoiceStatus, PaymentMethod, PaymentStatus


def _month(value):
  # accepts "2024-01" as well as a full date
  if isinstance(value, str) and len(value) == 7:
    value = f"{value}-01"
  return value


# requests

class SubscriptionTypeCreate(BaseModel):
  name: str = Field(min_length=1)
  description: Optional[str] = None
  registration_fee: int = Field(default=0, ge=0)
  monthly_fee: int = Field(default=0, ge=0)
  maintenance_fee: int = Field(default=0, ge=0)
  late_fee_percentage: int = Field(default=0, ge=0)


class CustomerCreate(BaseModel):
  name: str = Field(min_length=1)
  email: Optional[str] = None
  phone: Optional[str] = None
  address: Optional[str] = None
  meter_number: Optional[str] = None
  subscription_type_id: int
  category_id: Optional[int] = None
  status: CustomerStatus = CustomerStatus.ACTIVE


class WaterRateCreate(BaseModel):
  subscription_type_id: int
  amount: int = Field(gt=0)
  effective_date: date
  category_id: Optional[int] = None
  description: Optional[str] = None


class WaterRateUpdate(BaseModel):
  description: Optional[str] = None


class UsageCreate(BaseModel):
  customer_id: int
  usage_month: date
  meter_end: int = Field(ge=0)
  notes: Optional[str] = None
  recorded_by: Optional[str] = None

  @field_validator("usage_month", mode="before")
  @classmethod
  def normalize_month(cls, value):
    return _month(value)


class UsageUpdate(BaseModel):
  meter_end: Optional[int] = Field(default=None, ge=0)
  notes: Optional[str] = None


class InvoiceCreate(BaseModel):
  customer_id: int
  usage_id: int
  issue_date: Optional[date] = None
  tax_percentage: Optional[int] = Field(default=None, ge=0)


class MonthlyRunRequest(BaseModel):
  usage_month: date
  issue_date: Optional[date] = None
  workers: Optional[int] = Field(default=None, ge=1)

  @field_validator("usage_month", mode="before")
  @classmethod
  def normalize_month(cls, value):
    return _month(value)


class PaymentCreate(BaseModel):
  invoice_id: int
  amount: int
  method: PaymentMethod
  payment_date: Optional[date] = None
  reference_number: Optional[str] = None
  notes: Optional[str] = None


class VoidRequest(BaseModel):
  reason: Optional[str] = None


# responses

class InvoiceItemRead(BaseModel):
  model_config = ConfigDict(from_attributes=True)

  description: str
  quantity: int
  unit_price: int
  amount: int


class InvoiceRead(BaseModel):
  model_config = ConfigDict(from_attributes=True)

  id: int
  invoice_number: Optional[str]
  customer_id: int
  usage_id: int
  billing_period: str
  items: List[InvoiceItemRead] = []
  subtotal: int
  tax_percentage: int
  tax_amount: int
  total_amount: int
  amount_paid: int
  amount_due: int
  status: InvoiceStatus
  issue_date: date
  due_date: date
  voided_at: Optional[datetime] = None
  void_reason: Optional[str] = None


class PaymentRead(BaseModel):
  model_config = ConfigDict(from_attributes=True)

  id: int
  invoice_id: int
  customer_id: int
  amount: int
  method: PaymentMethod
  payment_date: date
  reference_number: Optional[str] = None
  notes: Optional[str] = None
  status: PaymentStatus


class ReceiptInvoice(BaseModel):
  invoice_number: Optional[str]
  billing_period: str
  issue_date: date
  due_date: date
  total_amount: int
  amount_paid: int
  amount_due: int


class ReceiptCustomer(BaseModel):
  name: str
  address: Optional[str] = None
  phone: Optional[str] = None
  meter_number: Optional[str] = None


class PaymentReceipt(BaseModel):
  receipt_number: str
  payment: PaymentRead
  invoice: ReceiptInvoice
  customer: ReceiptCustomer
  generated_at: datetime


class PaymentResult(BaseModel):
  payment: PaymentRead
  invoice: InvoiceRead


class BatchFailure(BaseModel):
  customer_id: int
  usage_id: int
  error: str
  detail: str


class BatchResult(BaseModel):
  usage_month: date
  generated: List[int] = []
  failed: List[BatchFailure] = []


# reports

class AgingBucket(BaseModel):
  range: str
  min_days: int
  max_days: Optional[int]
  count: int = 0
  amount: int = 0
  percentage: float = 0.0


class OutstandingInvoice(BaseModel):
  invoice_id: int
  invoice_number: Optional[str]
  customer_id: int
  customer_name: Optional[str] = None
  issue_date: date
  due_date: date
  status: InvoiceStatus
  amount: int
  days_overdue: int
  bucket: str


class AgingReport(BaseModel):
  as_of: date
  start_date: Optional[date] = None
  end_date: Optional[date] = None
  total_outstanding: int
  total_customers: int
  overdue_count: int
  buckets: List[AgingBucket]
  invoices: List[OutstandingInvoice]


class MethodBreakdown(BaseModel):
  method: PaymentMethod
  count: int
  amount: int
  percentage: float


class DailyCollection(BaseModel):
  day: date
  count: int
  amount: int


class PaymentReport(BaseModel):
  start_date: Optional[date] = None
  end_date: Optional[date] = None
  total_collected: int
  total_outstanding: int
  methods: List[MethodBreakdown]
  daily: List[DailyCollection]
  outstanding: List[OutstandingInvoice] = []


class MonthlyRevenue(BaseModel):
  month: str  # YYYY-MM
  revenue: int
  invoices: int


class RevenueByType(BaseModel):
  subscription_type_id: int
  subscription_type: str
  revenue: int
  percentage: float


class RevenueReport(BaseModel):
  start_date: Optional[date] = None
  end_date: Optional[date] = None
  total_revenue: int
  monthly: List[MonthlyRevenue]
  by_subscription_type: List[RevenueByType]


class UsageTrend(BaseModel):
  month: str
  total_usage: int
  average_usage: float
  customer_count: int


class HighConsumer(BaseModel):
  usage_id: int
  customer_id: int
  customer_name: str
  meter_number: Optional[str] = None
  month: str
  usage_m3: int
  is_anomaly: bool


class UsageReport(BaseModel):
  start_month: Optional[date] = None
  end_month: Optional[date] = None
  readings: int
  total_usage: int
  average_usage: float
  trends: List[UsageTrend]
  high_consumers: List[HighConsumer]
