# billing_routes.py
from datetime import date
from typing import List, Optional
from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from db import get_session, transaction
from errors import NotFoundError, ValidationError
from ledger import InvoiceLedger
from models import (
  Customer,
  InvoiceStatus,
  PaymentStatus,
  SubscriptionType,
  WaterRate,
  WaterUsage,
  utcnow,
)
from rates import resolver
from reports import AgingAnalyzer
from schemas import (
  AgingReport,
  BatchResult,
  CustomerCreate,
  InvoiceCreate,
  InvoiceRead,
  MonthlyRunRequest,
  PaymentCreate,
  PaymentRead,
  PaymentReceipt,
  PaymentReport,
  PaymentResult,
  RevenueReport,
  SubscriptionTypeCreate,
  UsageCreate,
  UsageReport,
  UsageUpdate,
  VoidRequest,
  WaterRateCreate,
  WaterRateUpdate,
)
from usage import UsageCalculator

router = APIRouter(prefix="/api", tags=["billing"])

usage_calculator = UsageCalculator()
ledger = InvoiceLedger()
analyzer = AgingAnalyzer()

def _match(q: str, *values: Optional[str]) -> bool:
  ql = q.strip().lower()
  return any(ql in (v or "").lower() for v in values)

# subscription types

@router.get("/subscriptions", response_model=List[SubscriptionType])
def list_subscriptions(q: Optional[str] = None, session: Session = Depends(get_session)):
  rows = session.exec(select(SubscriptionType)).all()
  if not q:
    return rows
  return [r for r in rows if _match(q, r.name, r.description)]

@router.post("/subscriptions", response_model=SubscriptionType)
def create_subscription(body: SubscriptionTypeCreate, session: Session = Depends(get_session)):
  sub = SubscriptionType(**body.model_dump())
  with transaction(session):
    session.add(sub)
  session.refresh(sub)
  return sub

@router.post("/subscriptions/{subscription_id}/deactivate", response_model=SubscriptionType)
def deactivate_subscription(subscription_id: int, session: Session = Depends(get_session)):
  sub = session.get(SubscriptionType, subscription_id)
  if not sub:
    raise NotFoundError(f"Subscription type {subscription_id} not found")
  with transaction(session):
    sub.is_active = False
    sub.updated_at = utcnow()
    session.add(sub)
  session.refresh(sub)
  return sub

# customers

@router.get("/customers", response_model=List[Customer])
def list_customers(q: Optional[str] = None, session: Session = Depends(get_session)):
  rows = session.exec(select(Customer)).all()
  if not q:
    return rows
  return [r for r in rows if _match(q, r.name, r.email, r.meter_number, r.status.value)]

@router.post("/customers", response_model=Customer)
def create_customer(body: CustomerCreate, session: Session = Depends(get_session)):
  sub = session.get(SubscriptionType, body.subscription_type_id)
  if not sub:
    raise NotFoundError(f"Subscription type {body.subscription_type_id} not found")
  if not sub.is_active:
    raise ValidationError(f"Subscription type {sub.name} is not active")
  c = Customer(**body.model_dump())
  with transaction(session):
    session.add(c)
  session.refresh(c)
  return c

# water rates

@router.get("/water-rates", response_model=List[WaterRate])
def list_water_rates(subscription_id: Optional[int] = None, category_id: Optional[int] = None,
                     active: Optional[bool] = None, start_date: Optional[date] = None,
                     end_date: Optional[date] = None, session: Session = Depends(get_session)):
  return resolver.list_rates(session, subscription_id, category_id, active, start_date, end_date)

@router.post("/water-rates", response_model=WaterRate)
def create_water_rate(body: WaterRateCreate, session: Session = Depends(get_session)):
  return resolver.create_rate(session, body.subscription_type_id, body.amount, body.effective_date,
                              body.category_id, body.description)

@router.get("/water-rates/current", response_model=WaterRate)
def current_water_rate(subscription_id: int, as_of: Optional[date] = None, category_id: Optional[int] = None,
                       session: Session = Depends(get_session)):
  return resolver.resolve(session, subscription_id, as_of or date.today(), category_id)

@router.get("/water-rates/history", response_model=List[WaterRate])
def water_rate_history(subscription_id: int, session: Session = Depends(get_session)):
  return resolver.rate_history(session, subscription_id)

@router.put("/water-rates/{rate_id}", response_model=WaterRate)
def update_water_rate(rate_id: int, body: WaterRateUpdate, session: Session = Depends(get_session)):
  # amount and effective date are fixed once created; add a new rate instead
  return resolver.describe_rate(session, rate_id, body.description)

@router.post("/water-rates/{rate_id}/activate", response_model=WaterRate)
def activate_water_rate(rate_id: int, session: Session = Depends(get_session)):
  return resolver.activate_rate(session, rate_id)

@router.post("/water-rates/{rate_id}/deactivate", response_model=WaterRate)
def deactivate_water_rate(rate_id: int, session: Session = Depends(get_session)):
  return resolver.deactivate_rate(session, rate_id)

# meter readings

@router.get("/water-usage", response_model=List[WaterUsage])
def list_water_usage(customer_id: Optional[int] = None, start_month: Optional[date] = None,
                     end_month: Optional[date] = None, is_anomaly: Optional[bool] = None,
                     session: Session = Depends(get_session)):
  return usage_calculator.list_usages(session, customer_id, start_month, end_month, is_anomaly)

@router.post("/water-usage", response_model=WaterUsage)
def record_water_usage(body: UsageCreate, session: Session = Depends(get_session)):
  return usage_calculator.record(session, body.customer_id, body.usage_month, body.meter_end,
                                 notes=body.notes, recorded_by=body.recorded_by)

@router.put("/water-usage/{usage_id}", response_model=WaterUsage)
def update_water_usage(usage_id: int, body: UsageUpdate, session: Session = Depends(get_session)):
  return usage_calculator.update_reading(session, usage_id, meter_end=body.meter_end, notes=body.notes)

# invoices

@router.get("/invoices", response_model=List[InvoiceRead])
def list_invoices(customer_id: Optional[int] = None, status: Optional[InvoiceStatus] = None,
                  billing_period: Optional[str] = None, session: Session = Depends(get_session)):
  return ledger.list_invoices(session, customer_id, status, billing_period)

@router.post("/invoices", response_model=InvoiceRead)
def create_invoice(body: InvoiceCreate, session: Session = Depends(get_session)):
  return ledger.generate(session, body.usage_id, customer_id=body.customer_id,
                         issue_date=body.issue_date, tax_percentage=body.tax_percentage)

@router.post("/invoices/generate-monthly", response_model=BatchResult)
def generate_monthly(body: MonthlyRunRequest, session: Session = Depends(get_session)):
  return ledger.generate_monthly(session.get_bind(), body.usage_month, workers=body.workers,
                                 issue_date=body.issue_date)

@router.post("/invoices/refresh-status")
def refresh_invoice_status(today: Optional[date] = None, session: Session = Depends(get_session)):
  return {"ok": True, "overdue": ledger.refresh_overdue(session, today)}

@router.get("/invoices/{invoice_id}", response_model=InvoiceRead)
def get_invoice(invoice_id: int, session: Session = Depends(get_session)):
  return ledger.get_invoice(session, invoice_id)

@router.get("/invoices/{invoice_id}/payments", response_model=List[PaymentRead])
def invoice_payments(invoice_id: int, session: Session = Depends(get_session)):
  ledger.get_invoice(session, invoice_id)
  return ledger.list_payments(session, invoice_id=invoice_id)

@router.post("/invoices/{invoice_id}/void", response_model=InvoiceRead)
def void_invoice(invoice_id: int, body: Optional[VoidRequest] = None, session: Session = Depends(get_session)):
  return ledger.void_invoice(session, invoice_id, reason=body.reason if body else None)

# payments

@router.get("/payments", response_model=List[PaymentRead])
def list_payments(invoice_id: Optional[int] = None, customer_id: Optional[int] = None,
                  status: Optional[PaymentStatus] = None, session: Session = Depends(get_session)):
  return ledger.list_payments(session, invoice_id, customer_id, status)

@router.post("/payments", response_model=PaymentResult)
def create_payment(body: PaymentCreate, session: Session = Depends(get_session)):
  payment, invoice = ledger.apply_payment(
    session, body.invoice_id, body.amount, body.method,
    reference_number=body.reference_number, payment_date=body.payment_date, notes=body.notes,
  )
  return PaymentResult(payment=PaymentRead.model_validate(payment), invoice=InvoiceRead.model_validate(invoice))

@router.get("/payments/{payment_id}", response_model=PaymentRead)
def get_payment(payment_id: int, session: Session = Depends(get_session)):
  return ledger.get_payment(session, payment_id)

@router.get("/payments/{payment_id}/receipt", response_model=PaymentReceipt)
def payment_receipt(payment_id: int, session: Session = Depends(get_session)):
  return ledger.payment_receipt(session, payment_id)

@router.post("/payments/{payment_id}/void", response_model=InvoiceRead)
def void_payment(payment_id: int, body: Optional[VoidRequest] = None, session: Session = Depends(get_session)):
  return ledger.void_payment(session, payment_id, reason=body.reason if body else None)

# reports

@router.get("/reports/outstanding", response_model=AgingReport)
def outstanding_report(start_date: Optional[date] = None, end_date: Optional[date] = None,
                       today: Optional[date] = None, session: Session = Depends(get_session)):
  return analyzer.build_aging_report(session, start_date, end_date, today)

@router.get("/reports/payments", response_model=PaymentReport)
def payment_report(start_date: Optional[date] = None, end_date: Optional[date] = None,
                   today: Optional[date] = None, session: Session = Depends(get_session)):
  return analyzer.build_payment_report(session, start_date, end_date, today)

@router.get("/reports/revenue", response_model=RevenueReport)
def revenue_report(start_date: Optional[date] = None, end_date: Optional[date] = None,
                   session: Session = Depends(get_session)):
  return analyzer.build_revenue_report(session, start_date, end_date)

@router.get("/reports/usage", response_model=UsageReport)
def usage_report(start_month: Optional[date] = None, end_month: Optional[date] = None, limit: int = 10,
                 session: Session = Depends(get_session)):
  if limit < 1:
    raise ValidationError("limit must be at least 1")
  return analyzer.build_usage_report(session, start_month, end_month, limit)

@router.post("/seed")
def seed_if_empty(session: Session = Depends(get_session)):
  # Seed only if DB is empty
  any_sub = session.exec(select(SubscriptionType)).first()
  if any_sub:
    return {"ok": True, "seeded": False}

  with transaction(session):
    household = SubscriptionType(name="Household", registration_fee=150000, monthly_fee=50000,
                                 maintenance_fee=10000, late_fee_percentage=200)
    business = SubscriptionType(name="Business", registration_fee=500000, monthly_fee=150000,
                                maintenance_fee=25000, late_fee_percentage=300)
    session.add_all([household, business])
    session.flush()

    session.add_all([
      WaterRate(subscription_type_id=household.id, amount=4500, effective_date=date(2023, 1, 1),
                active=True, description="2023 household tariff"),
      WaterRate(subscription_type_id=household.id, amount=5000, effective_date=date(2024, 1, 1),
                active=True, description="2024 household tariff"),
      WaterRate(subscription_type_id=business.id, amount=8500, effective_date=date(2024, 1, 1),
                active=True, description="2024 business tariff"),
    ])

    session.add_all([
      Customer(name="Budi Santoso", email="budi@example.com", meter_number="MTR-0001",
               subscription_type_id=household.id),
      Customer(name="Toko Sinar Jaya", email="sinar@example.com", meter_number="MTR-0002",
               subscription_type_id=business.id),
    ])
  resolver.invalidate()
  return {"ok": True, "seeded": True}
