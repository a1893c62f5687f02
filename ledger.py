# ledger.py
"""Invoice lifecycle: generation, payments, voids and the overdue sweep.

Every mutation runs in one transaction scoped to a single invoice. The
invoice row is locked with SELECT ... FOR UPDATE where the database
supports it, and every write goes through a version check, so two payments
racing on the same invoice can never both see the same amount_due.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import update
from sqlmodel import Session, col, select

from config import BillingSettings, settings as default_settings
from db import transaction
from errors import (
  BillingError,
  ConflictError,
  NotFoundError,
  OverpaymentError,
  StateError,
  ValidationError,
)
from models import (
  Customer,
  CustomerStatus,
  Invoice,
  InvoiceItem,
  InvoiceStatus,
  Payment,
  PaymentMethod,
  PaymentStatus,
  SubscriptionType,
  WaterUsage,
  utcnow,
)
from money import format_rupiah, percent_of
from rates import RateResolver, resolver as default_resolver
from schemas import BatchFailure, BatchResult, PaymentRead, PaymentReceipt, ReceiptCustomer, ReceiptInvoice
from usage import first_of_month

logger = logging.getLogger(__name__)

# Paid only moves back through a payment void. Void is terminal.
TRANSITIONS: Dict[InvoiceStatus, Set[InvoiceStatus]] = {
  InvoiceStatus.UNPAID: {InvoiceStatus.PARTIAL, InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.VOID},
  InvoiceStatus.PARTIAL: {InvoiceStatus.UNPAID, InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.VOID},
  InvoiceStatus.OVERDUE: {InvoiceStatus.PAID, InvoiceStatus.VOID},
  InvoiceStatus.PAID: {InvoiceStatus.UNPAID, InvoiceStatus.PARTIAL},
  InvoiceStatus.VOID: set(),
}


def check_transition(current: InvoiceStatus, target: InvoiceStatus) -> None:
  if current == target:
    return
  if target not in TRANSITIONS[current]:
    raise StateError(f"Invoice cannot move from {current.value} to {target.value}")


def settle_status(current: InvoiceStatus, amount_paid: int, amount_due: int) -> InvoiceStatus:
  """Status after a payment or payment void changed the balance."""
  if amount_due == 0:
    return InvoiceStatus.PAID
  if current == InvoiceStatus.OVERDUE:
    return InvoiceStatus.OVERDUE
  return InvoiceStatus.PARTIAL if amount_paid > 0 else InvoiceStatus.UNPAID


def parse_method(method) -> PaymentMethod:
  try:
    return PaymentMethod(method)
  except ValueError:
    raise ValidationError(f"Unknown payment method: {method}") from None


class InvoiceLedger:
  def __init__(self, settings: Optional[BillingSettings] = None, rates: Optional[RateResolver] = None):
    self.settings = settings or default_settings
    self.rates = rates or default_resolver

  # helpers

  def _lock_invoice(self, session: Session, invoice_id: int) -> Invoice:
    invoice = session.exec(
      select(Invoice)
      .where(Invoice.id == invoice_id)
      .with_for_update()
      .execution_options(populate_existing=True)
    ).first()
    if not invoice:
      raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice

  def _write(self, session: Session, invoice: Invoice, strict: bool = True, **values) -> bool:
    values["version"] = invoice.version + 1
    values["updated_at"] = utcnow()
    result = session.exec(
      update(Invoice)
      .where(Invoice.id == invoice.id, Invoice.version == invoice.version)
      .values(**values)
      .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
      session.expire(invoice)
      return True
    if strict:
      raise ConflictError(f"Invoice {invoice.id} was modified concurrently; retry the operation")
    return False

  def _live_invoice_for(self, session: Session, usage_id: int) -> Optional[Invoice]:
    stmt = select(Invoice).where(Invoice.usage_id == usage_id, Invoice.status != InvoiceStatus.VOID)
    return session.exec(stmt).first()

  def _has_invoices(self, session: Session, customer_id: int) -> bool:
    stmt = select(Invoice.id).where(Invoice.customer_id == customer_id, Invoice.status != InvoiceStatus.VOID)
    return session.exec(stmt).first() is not None

  # generation

  def build_items(self, usage: WaterUsage, subscription: SubscriptionType, rate_amount: int,
                  first_invoice: bool) -> List[InvoiceItem]:
    items = []
    if first_invoice and subscription.registration_fee:
      items.append(InvoiceItem(description="Registration fee", quantity=1,
                               unit_price=subscription.registration_fee, amount=subscription.registration_fee))
    if subscription.monthly_fee:
      items.append(InvoiceItem(description="Monthly fee", quantity=1,
                               unit_price=subscription.monthly_fee, amount=subscription.monthly_fee))
    if subscription.maintenance_fee:
      items.append(InvoiceItem(description="Maintenance fee", quantity=1,
                               unit_price=subscription.maintenance_fee, amount=subscription.maintenance_fee))
    items.append(InvoiceItem(
      description=f"Water usage {usage.usage_month:%Y-%m} ({usage.meter_start}-{usage.meter_end} m3)",
      quantity=usage.usage_m3,
      unit_price=rate_amount,
      amount=usage.usage_m3 * rate_amount,
    ))
    return items

  def generate(self, session: Session, usage_id: int, customer_id: Optional[int] = None,
               issue_date: Optional[date] = None, tax_percentage: Optional[int] = None) -> Invoice:
    issued = issue_date or date.today()
    bps = self.settings.tax_percentage_bps if tax_percentage is None else tax_percentage
    if bps < 0:
      raise ValidationError("Tax percentage cannot be negative")

    with transaction(session):
      usage = session.get(WaterUsage, usage_id)
      if not usage:
        raise NotFoundError(f"Water usage {usage_id} not found")
      if customer_id is not None and usage.customer_id != customer_id:
        raise ValidationError(f"Water usage {usage_id} does not belong to customer {customer_id}")

      # lock the customer so the first-invoice check and registration fee stay consistent
      customer = session.exec(
        select(Customer).where(Customer.id == usage.customer_id).with_for_update()
      ).first()
      if not customer:
        raise NotFoundError(f"Customer {usage.customer_id} not found")

      existing = self._live_invoice_for(session, usage.id)
      if existing:
        raise ConflictError(f"Water usage {usage.id} is already billed on invoice {existing.invoice_number}")

      subscription = session.get(SubscriptionType, customer.subscription_type_id)
      if not subscription:
        raise NotFoundError(f"Subscription type {customer.subscription_type_id} not found")

      rate = self.rates.resolve(session, subscription.id, usage.usage_month, customer.category_id)
      items = self.build_items(usage, subscription, rate.amount, not self._has_invoices(session, customer.id))

      subtotal = sum(i.amount for i in items)
      tax_amount = percent_of(subtotal, bps)
      total = subtotal + tax_amount

      invoice = Invoice(
        customer_id=customer.id,
        usage_id=usage.id,
        billing_period=f"{usage.usage_month:%Y-%m}",
        subtotal=subtotal,
        tax_percentage=bps,
        tax_amount=tax_amount,
        total_amount=total,
        amount_paid=0,
        amount_due=total,
        status=InvoiceStatus.PAID if total == 0 else InvoiceStatus.UNPAID,
        issue_date=issued,
        due_date=issued + timedelta(days=self.settings.grace_period_days),
        items=items,
      )
      session.add(invoice)
      session.flush()
      invoice.invoice_number = f"INV-{usage.usage_month:%Y%m}-{invoice.id:06d}"

      usage.amount_calculated = items[-1].amount
      usage.updated_at = utcnow()
      session.add(usage)
    session.refresh(invoice)

    logger.info("invoice %s generated for customer %s: total %s due %s",
                invoice.invoice_number, invoice.customer_id, format_rupiah(invoice.total_amount), invoice.due_date)
    return invoice

  # payments

  def apply_payment(self, session: Session, invoice_id: int, amount: int, method,
                    reference_number: Optional[str] = None, payment_date: Optional[date] = None,
                    notes: Optional[str] = None) -> Tuple[Payment, Invoice]:
    method = parse_method(method)
    if amount <= 0:
      raise ValidationError("Payment amount must be greater than zero")
    reference = (reference_number or "").strip() or None
    if method != PaymentMethod.CASH and not reference:
      raise ValidationError(f"Reference number is required for {method.value} payments")

    with transaction(session):
      invoice = self._lock_invoice(session, invoice_id)
      if invoice.status == InvoiceStatus.VOID:
        raise StateError(f"Invoice {invoice.invoice_number} is void")
      # a paid invoice has no balance left, so any positive amount overpays it
      if invoice.status == InvoiceStatus.PAID:
        raise OverpaymentError(f"Invoice {invoice.invoice_number} is already paid")
      if amount > invoice.amount_due:
        raise OverpaymentError(
          f"Payment {amount} exceeds the remaining balance {invoice.amount_due} on {invoice.invoice_number}"
        )

      amount_paid = invoice.amount_paid + amount
      amount_due = invoice.total_amount - amount_paid
      status = settle_status(invoice.status, amount_paid, amount_due)
      check_transition(invoice.status, status)

      payment = Payment(
        invoice_id=invoice.id,
        customer_id=invoice.customer_id,
        amount=amount,
        method=method,
        payment_date=payment_date or date.today(),
        reference_number=reference,
        notes=notes,
        status=PaymentStatus.COMPLETED,
      )
      self._write(session, invoice, amount_paid=amount_paid, amount_due=amount_due, status=status)
      session.add(payment)
    session.refresh(invoice)
    session.refresh(payment)

    logger.info("payment %s of %s applied to %s (%s, due %s)",
                payment.id, format_rupiah(amount), invoice.invoice_number, invoice.status.value,
                format_rupiah(invoice.amount_due))
    return payment, invoice

  # voids

  def _lock_payment(self, session: Session, payment_id: int) -> Payment:
    payment = session.exec(
      select(Payment)
      .where(Payment.id == payment_id)
      .with_for_update()
      .execution_options(populate_existing=True)
    ).first()
    if not payment:
      raise NotFoundError(f"Payment {payment_id} not found")
    return payment

  def void_payment(self, session: Session, payment_id: int, reason: Optional[str] = None) -> Invoice:
    with transaction(session):
      payment = session.get(Payment, payment_id)
      if not payment:
        raise NotFoundError(f"Payment {payment_id} not found")

      # invoice first, then a fresh read of the payment under that lock
      invoice = self._lock_invoice(session, payment.invoice_id)
      payment = self._lock_payment(session, payment_id)
      if payment.status != PaymentStatus.COMPLETED:
        raise StateError(f"Payment {payment_id} is {payment.status.value}; only completed payments can be voided")
      if invoice.status == InvoiceStatus.VOID:
        raise StateError(f"Invoice {invoice.invoice_number} is void")

      amount_paid = invoice.amount_paid - payment.amount
      amount_due = invoice.total_amount - amount_paid
      status = settle_status(invoice.status, amount_paid, amount_due)
      check_transition(invoice.status, status)

      notes = payment.notes
      if reason:
        notes = f"{notes}\nVoided: {reason}" if notes else f"Voided: {reason}"
      result = session.exec(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == PaymentStatus.COMPLETED)
        .values(status=PaymentStatus.VOIDED, notes=notes, updated_at=utcnow())
        .execution_options(synchronize_session=False)
      )
      if result.rowcount != 1:
        raise StateError(f"Payment {payment_id} was voided concurrently")
      session.expire(payment)
      self._write(session, invoice, amount_paid=amount_paid, amount_due=amount_due, status=status)
    session.refresh(invoice)

    logger.info("payment %s voided; %s now %s with %s due",
                payment_id, invoice.invoice_number, invoice.status.value, invoice.amount_due)
    return invoice

  def void_invoice(self, session: Session, invoice_id: int, reason: Optional[str] = None) -> Invoice:
    with transaction(session):
      invoice = self._lock_invoice(session, invoice_id)
      check_transition(invoice.status, InvoiceStatus.VOID)
      if invoice.status == InvoiceStatus.VOID:
        raise StateError(f"Invoice {invoice.invoice_number} is already void")

      payments = session.exec(
        select(Payment)
        .where(Payment.invoice_id == invoice.id, Payment.status == PaymentStatus.COMPLETED)
        .execution_options(populate_existing=True)
      ).all()
      now = utcnow()
      for p in payments:
        p.status = PaymentStatus.VOIDED
        p.notes = f"{p.notes}\nVoided with invoice" if p.notes else "Voided with invoice"
        p.updated_at = now
        session.add(p)

      self._write(session, invoice, status=InvoiceStatus.VOID, amount_paid=0, amount_due=0,
                  voided_at=now, void_reason=reason)
    session.refresh(invoice)

    logger.info("invoice %s voided (%d payments reversed)", invoice.invoice_number, len(payments))
    return invoice

  # overdue sweep

  def refresh_overdue(self, session: Session, today: Optional[date] = None) -> int:
    today = today or date.today()
    changed = 0
    with transaction(session):
      stmt = (
        select(Invoice)
        .where(
          col(Invoice.status).in_([InvoiceStatus.UNPAID, InvoiceStatus.PARTIAL]),
          Invoice.due_date < today,
          Invoice.amount_due > 0,
        )
        .with_for_update()
      )
      for invoice in session.exec(stmt).all():
        check_transition(invoice.status, InvoiceStatus.OVERDUE)
        # an invoice that lost a race to a payment is picked up by the next sweep
        if self._write(session, invoice, strict=False, status=InvoiceStatus.OVERDUE):
          changed += 1
    if changed:
      logger.info("overdue sweep marked %d invoices overdue as of %s", changed, today)
    return changed

  # batch

  def pending_usages(self, session: Session, usage_month: date) -> List[Tuple[int, int]]:
    billed = select(Invoice.usage_id).where(Invoice.status != InvoiceStatus.VOID)
    stmt = (
      select(WaterUsage.id, WaterUsage.customer_id)
      .join(Customer, Customer.id == WaterUsage.customer_id)
      .where(
        WaterUsage.usage_month == first_of_month(usage_month),
        Customer.status == CustomerStatus.ACTIVE,
        col(WaterUsage.id).not_in(billed),
      )
      .order_by(WaterUsage.customer_id)
    )
    return [(u, c) for u, c in session.exec(stmt).all()]

  def generate_monthly(self, engine, usage_month: date, workers: Optional[int] = None,
                       issue_date: Optional[date] = None) -> BatchResult:
    with Session(engine) as session:
      targets = self.pending_usages(session, usage_month)

    def run(target: Tuple[int, int]):
      usage_id, customer_id = target
      with Session(engine) as session:
        try:
          return self.generate(session, usage_id, issue_date=issue_date).id, None
        except BillingError as exc:
          logger.warning("batch: customer %s skipped: %s", customer_id, exc.message)
          return None, BatchFailure(customer_id=customer_id, usage_id=usage_id, error=exc.kind, detail=exc.message)
        except Exception as exc:
          logger.exception("batch: customer %s failed", customer_id)
          return None, BatchFailure(customer_id=customer_id, usage_id=usage_id, error="internal_error", detail=str(exc))

    workers = workers or self.settings.batch_workers
    if workers > 1 and len(targets) > 1:
      with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = list(pool.map(run, targets))
    else:
      outcomes = [run(t) for t in targets]

    result = BatchResult(usage_month=first_of_month(usage_month))
    for invoice_id, failure in outcomes:
      if failure:
        result.failed.append(failure)
      else:
        result.generated.append(invoice_id)
    logger.info("batch %s: %d generated, %d failed",
                result.usage_month.strftime("%Y-%m"), len(result.generated), len(result.failed))
    return result

  # reads

  def get_invoice(self, session: Session, invoice_id: int) -> Invoice:
    invoice = session.get(Invoice, invoice_id)
    if not invoice:
      raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice

  def list_invoices(self, session: Session, customer_id: Optional[int] = None,
                    status: Optional[InvoiceStatus] = None, billing_period: Optional[str] = None) -> List[Invoice]:
    stmt = select(Invoice)
    if customer_id is not None:
      stmt = stmt.where(Invoice.customer_id == customer_id)
    if status is not None:
      stmt = stmt.where(Invoice.status == status)
    if billing_period:
      stmt = stmt.where(Invoice.billing_period == billing_period)
    return list(session.exec(stmt.order_by(col(Invoice.issue_date).desc(), col(Invoice.id).desc())).all())

  def list_payments(self, session: Session, invoice_id: Optional[int] = None, customer_id: Optional[int] = None,
                    status: Optional[PaymentStatus] = None) -> List[Payment]:
    stmt = select(Payment)
    if invoice_id is not None:
      stmt = stmt.where(Payment.invoice_id == invoice_id)
    if customer_id is not None:
      stmt = stmt.where(Payment.customer_id == customer_id)
    if status is not None:
      stmt = stmt.where(Payment.status == status)
    return list(session.exec(stmt.order_by(col(Payment.payment_date).desc(), col(Payment.id).desc())).all())

  def get_payment(self, session: Session, payment_id: int) -> Payment:
    payment = session.get(Payment, payment_id)
    if not payment:
      raise NotFoundError(f"Payment {payment_id} not found")
    return payment

  def payment_receipt(self, session: Session, payment_id: int) -> PaymentReceipt:
    """Receipt for a completed payment, built from the current ledger rows.

    Receipts are not stored; the number is derived from the payment so the
    same payment always prints the same receipt number.
    """
    payment = self.get_payment(session, payment_id)
    if payment.status != PaymentStatus.COMPLETED:
      raise StateError(f"Payment {payment_id} is {payment.status.value}; receipts are only issued for completed payments")
    invoice = self.get_invoice(session, payment.invoice_id)
    customer = session.get(Customer, payment.customer_id)
    if not customer:
      raise NotFoundError(f"Customer {payment.customer_id} not found")

    return PaymentReceipt(
      receipt_number=f"RCP-{payment.payment_date:%Y%m}-{payment.id:06d}",
      payment=PaymentRead.model_validate(payment),
      invoice=ReceiptInvoice(
        invoice_number=invoice.invoice_number,
        billing_period=invoice.billing_period,
        issue_date=invoice.issue_date,
        due_date=invoice.due_date,
        total_amount=invoice.total_amount,
        amount_paid=invoice.amount_paid,
        amount_due=invoice.amount_due,
      ),
      customer=ReceiptCustomer(
        name=customer.name,
        address=customer.address,
        phone=customer.phone,
        meter_number=customer.meter_number,
      ),
      generated_at=utcnow(),
    )
