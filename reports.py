# reports.py
import logging
from collections import defaultdict
from datetime import date
from typing import Dict, List, Optional, Tuple

from sqlmodel import Session, col, select

from models import (
  OPEN_STATUSES,
  Customer,
  Invoice,
  InvoiceStatus,
  Payment,
  PaymentMethod,
  PaymentStatus,
  SubscriptionType,
  WaterUsage,
)
from money import share
from schemas import (
  AgingBucket,
  AgingReport,
  DailyCollection,
  HighConsumer,
  MethodBreakdown,
  MonthlyRevenue,
  OutstandingInvoice,
  PaymentReport,
  RevenueByType,
  RevenueReport,
  UsageReport,
  UsageTrend,
)

logger = logging.getLogger(__name__)

# (label, min days overdue, max days overdue); None means unbounded
AGING_BUCKETS: List[Tuple[str, Optional[int], Optional[int]]] = [
  ("current", None, 0),
  ("1-30", 1, 30),
  ("31-60", 31, 60),
  ("61-90", 61, 90),
  ("90+", 91, None),
]


def days_overdue(due_date: date, today: date) -> int:
  return max(0, (today - due_date).days)


def bucket_for(days: int) -> str:
  for label, low, high in AGING_BUCKETS:
    if (low is None or days >= low) and (high is None or days <= high):
      return label
  raise ValueError(f"no aging bucket for {days} days")


class AgingAnalyzer:
  """Read-only views over ledger state for collections reporting."""

  def _open_invoices(self, session: Session, start_date: Optional[date], end_date: Optional[date]):
    stmt = (
      select(Invoice, Customer.name)
      .join(Customer, Customer.id == Invoice.customer_id)
      .where(col(Invoice.status).in_(OPEN_STATUSES))
    )
    if start_date:
      stmt = stmt.where(Invoice.issue_date >= start_date)
    if end_date:
      stmt = stmt.where(Invoice.issue_date <= end_date)
    return session.exec(stmt).all()

  def outstanding_invoices(self, session: Session, start_date: Optional[date] = None,
                           end_date: Optional[date] = None, today: Optional[date] = None) -> List[OutstandingInvoice]:
    """Open invoices with their age, most overdue first."""
    today = today or date.today()
    details = []
    for invoice, customer_name in self._open_invoices(session, start_date, end_date):
      days = days_overdue(invoice.due_date, today)
      details.append(OutstandingInvoice(
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        customer_id=invoice.customer_id,
        customer_name=customer_name,
        issue_date=invoice.issue_date,
        due_date=invoice.due_date,
        status=invoice.status,
        amount=invoice.amount_due,
        days_overdue=days,
        bucket=bucket_for(days),
      ))
    details.sort(key=lambda d: (-d.days_overdue, d.invoice_id))
    return details

  def build_aging_report(self, session: Session, start_date: Optional[date] = None,
                         end_date: Optional[date] = None, today: Optional[date] = None) -> AgingReport:
    today = today or date.today()
    buckets: Dict[str, AgingBucket] = {
      label: AgingBucket(range=label, min_days=low or 0, max_days=high)
      for label, low, high in AGING_BUCKETS
    }
    details = self.outstanding_invoices(session, start_date, end_date, today)
    for d in details:
      bucket = buckets[d.bucket]
      bucket.count += 1
      bucket.amount += d.amount

    total = sum(d.amount for d in details)
    logger.debug("aging report as of %s: %d open invoices, %s outstanding", today, len(details), total)
    for bucket in buckets.values():
      bucket.percentage = share(bucket.amount, total)

    return AgingReport(
      as_of=today,
      start_date=start_date,
      end_date=end_date,
      total_outstanding=total,
      total_customers=len({d.customer_id for d in details}),
      overdue_count=sum(1 for d in details if d.days_overdue > 0),
      buckets=list(buckets.values()),
      invoices=details,
    )

  def build_payment_report(self, session: Session, start_date: Optional[date] = None,
                           end_date: Optional[date] = None, today: Optional[date] = None) -> PaymentReport:
    stmt = select(Payment).where(Payment.status == PaymentStatus.COMPLETED)
    if start_date:
      stmt = stmt.where(Payment.payment_date >= start_date)
    if end_date:
      stmt = stmt.where(Payment.payment_date <= end_date)
    payments = session.exec(stmt).all()

    collected = sum(p.amount for p in payments)
    by_method: Dict[PaymentMethod, List[int]] = defaultdict(lambda: [0, 0])
    by_day: Dict[date, List[int]] = defaultdict(lambda: [0, 0])
    for p in payments:
      by_method[p.method][0] += 1
      by_method[p.method][1] += p.amount
      by_day[p.payment_date][0] += 1
      by_day[p.payment_date][1] += p.amount

    outstanding = self.outstanding_invoices(session, start_date, end_date, today)

    return PaymentReport(
      start_date=start_date,
      end_date=end_date,
      total_collected=collected,
      total_outstanding=sum(d.amount for d in outstanding),
      methods=[
        MethodBreakdown(method=m, count=by_method[m][0], amount=by_method[m][1],
                        percentage=share(by_method[m][1], collected))
        for m in PaymentMethod if m in by_method
      ],
      daily=[DailyCollection(day=d, count=c, amount=a) for d, (c, a) in sorted(by_day.items())],
      outstanding=outstanding,
    )

  def build_revenue_report(self, session: Session, start_date: Optional[date] = None,
                           end_date: Optional[date] = None) -> RevenueReport:
    """Billed revenue: total_amount of every invoice that was not voided."""
    stmt = (
      select(Invoice.billing_period, Invoice.total_amount, SubscriptionType.id, SubscriptionType.name)
      .join(Customer, Customer.id == Invoice.customer_id)
      .join(SubscriptionType, SubscriptionType.id == Customer.subscription_type_id)
      .where(Invoice.status != InvoiceStatus.VOID)
    )
    if start_date:
      stmt = stmt.where(Invoice.issue_date >= start_date)
    if end_date:
      stmt = stmt.where(Invoice.issue_date <= end_date)
    rows = session.exec(stmt).all()

    by_month: Dict[str, List[int]] = defaultdict(lambda: [0, 0])
    by_type: Dict[Tuple[int, str], int] = defaultdict(int)
    for period, total, sub_id, sub_name in rows:
      by_month[period][0] += total
      by_month[period][1] += 1
      by_type[(sub_id, sub_name)] += total
    revenue = sum(by_type.values())

    types = [
      RevenueByType(subscription_type_id=sub_id, subscription_type=name, revenue=amount,
                    percentage=share(amount, revenue))
      for (sub_id, name), amount in by_type.items()
    ]
    types.sort(key=lambda t: (-t.revenue, t.subscription_type))
    return RevenueReport(
      start_date=start_date,
      end_date=end_date,
      total_revenue=revenue,
      monthly=[MonthlyRevenue(month=m, revenue=r, invoices=n) for m, (r, n) in sorted(by_month.items())],
      by_subscription_type=types,
    )

  def build_usage_report(self, session: Session, start_month: Optional[date] = None,
                         end_month: Optional[date] = None, limit: int = 10) -> UsageReport:
    stmt = select(WaterUsage, Customer.name, Customer.meter_number).join(Customer, Customer.id == WaterUsage.customer_id)
    if start_month:
      stmt = stmt.where(WaterUsage.usage_month >= start_month.replace(day=1))
    if end_month:
      stmt = stmt.where(WaterUsage.usage_month <= end_month.replace(day=1))
    rows = session.exec(stmt).all()

    by_month: Dict[date, List[int]] = defaultdict(list)
    for usage, _, _ in rows:
      by_month[usage.usage_month].append(usage.usage_m3)
    total = sum(usage.usage_m3 for usage, _, _ in rows)

    # one reading per customer per month, so the reading count is the customer count
    trends = [
      UsageTrend(month=f"{month:%Y-%m}", total_usage=sum(values),
                 average_usage=round(sum(values) / len(values), 2), customer_count=len(values))
      for month, values in sorted(by_month.items())
    ]
    top = sorted(rows, key=lambda r: (-r[0].usage_m3, r[0].id))[:limit]
    return UsageReport(
      start_month=start_month,
      end_month=end_month,
      readings=len(rows),
      total_usage=total,
      average_usage=round(total / len(rows), 2) if rows else 0.0,
      trends=trends,
      high_consumers=[
        HighConsumer(usage_id=u.id, customer_id=u.customer_id, customer_name=name, meter_number=meter,
                     month=f"{u.usage_month:%Y-%m}", usage_m3=u.usage_m3, is_anomaly=u.is_anomaly)
        for u, name, meter in top
      ],
    )
