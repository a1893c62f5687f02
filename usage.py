# usage.py
import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlmodel import Session, col, select

from config import BillingSettings, settings as default_settings
from db import transaction
from errors import ConflictError, InvalidReadingError, NotFoundError, StateError
from models import Customer, Invoice, InvoiceStatus, WaterUsage, utcnow

logger = logging.getLogger(__name__)


def first_of_month(value: date) -> date:
  return value.replace(day=1)


class UsageCalculator:
  """Turns monthly meter readings into usage, chaining each reading's start
  to the previous reading's end and flagging readings that look off."""

  def __init__(self, settings: Optional[BillingSettings] = None):
    self.settings = settings or default_settings

  def is_anomalous(self, usage_m3: int, previous: Sequence[int]) -> bool:
    if not previous:
      return usage_m3 > self.settings.anomaly_ceiling_m3
    average = Decimal(sum(previous)) / len(previous)
    return Decimal(usage_m3) > average * self.settings.anomaly_factor

  def _latest(self, session: Session, customer_id: int) -> Optional[WaterUsage]:
    stmt = (
      select(WaterUsage)
      .where(WaterUsage.customer_id == customer_id)
      .order_by(col(WaterUsage.usage_month).desc())
    )
    return session.exec(stmt).first()

  def _trailing(self, session: Session, customer_id: int, before: date) -> List[int]:
    stmt = (
      select(WaterUsage.usage_m3)
      .where(WaterUsage.customer_id == customer_id, WaterUsage.usage_month < before)
      .order_by(col(WaterUsage.usage_month).desc())
      .limit(self.settings.anomaly_window)
    )
    return list(session.exec(stmt).all())

  def _lock_customer(self, session: Session, customer_id: int) -> Customer:
    # serializes readings per customer so two writers cannot share a meter_start
    customer = session.exec(
      select(Customer).where(Customer.id == customer_id).with_for_update()
    ).first()
    if not customer:
      raise NotFoundError(f"Customer {customer_id} not found")
    return customer

  def record(self, session: Session, customer_id: int, usage_month: date, meter_end: int,
             notes: Optional[str] = None, recorded_by: Optional[str] = None) -> WaterUsage:
    month = first_of_month(usage_month)
    with transaction(session):
      self._lock_customer(session, customer_id)
      last = self._latest(session, customer_id)
      if last and month <= last.usage_month:
        raise ConflictError(
          f"Customer {customer_id} already has a reading for {last.usage_month:%Y-%m}; "
          f"new readings must be for a later month"
        )

      meter_start = last.meter_end if last else 0
      if meter_end < 0:
        raise InvalidReadingError("Meter reading cannot be negative")
      if meter_end < meter_start:
        raise InvalidReadingError(
          f"Meter end {meter_end} is below the previous reading {meter_start}"
        )

      usage_m3 = meter_end - meter_start
      reading = WaterUsage(
        customer_id=customer_id,
        usage_month=month,
        meter_start=meter_start,
        meter_end=meter_end,
        usage_m3=usage_m3,
        is_anomaly=self.is_anomalous(usage_m3, self._trailing(session, customer_id, month)),
        notes=notes,
        recorded_by=recorded_by,
      )
      session.add(reading)
    session.refresh(reading)

    if reading.is_anomaly:
      logger.warning("anomalous reading %s for customer %s: %s m3", reading.id, customer_id, usage_m3)
    else:
      logger.info("reading %s recorded for customer %s: %s m3", reading.id, customer_id, usage_m3)
    return reading

  def update_reading(self, session: Session, usage_id: int, meter_end: Optional[int] = None,
                     notes: Optional[str] = None) -> WaterUsage:
    reading = session.get(WaterUsage, usage_id)
    if not reading:
      raise NotFoundError(f"Water usage {usage_id} not found")

    with transaction(session):
      if meter_end is not None and meter_end != reading.meter_end:
        self._lock_customer(session, reading.customer_id)
        latest = self._latest(session, reading.customer_id)
        if latest is None or latest.id != reading.id:
          raise StateError("Only the customer's latest reading can change its meter value")
        billed = session.exec(
          select(Invoice.id).where(Invoice.usage_id == reading.id, Invoice.status != InvoiceStatus.VOID)
        ).first()
        if billed is not None:
          raise StateError(f"Reading {reading.id} is billed on invoice {billed}; void the invoice first")
        if meter_end < reading.meter_start:
          raise InvalidReadingError(
            f"Meter end {meter_end} is below the previous reading {reading.meter_start}"
          )

        reading.meter_end = meter_end
        reading.usage_m3 = meter_end - reading.meter_start
        reading.amount_calculated = 0
        reading.is_anomaly = self.is_anomalous(
          reading.usage_m3, self._trailing(session, reading.customer_id, reading.usage_month)
        )
      if notes is not None:
        reading.notes = notes
      reading.updated_at = utcnow()
      session.add(reading)
    session.refresh(reading)
    return reading

  def history(self, session: Session, customer_id: int, limit: int = 12) -> List[WaterUsage]:
    stmt = (
      select(WaterUsage)
      .where(WaterUsage.customer_id == customer_id)
      .order_by(col(WaterUsage.usage_month).desc())
      .limit(limit)
    )
    return list(session.exec(stmt).all())

  def list_usages(self, session: Session, customer_id: Optional[int] = None,
                  start_month: Optional[date] = None, end_month: Optional[date] = None,
                  is_anomaly: Optional[bool] = None) -> List[WaterUsage]:
    stmt = select(WaterUsage)
    if customer_id is not None:
      stmt = stmt.where(WaterUsage.customer_id == customer_id)
    if start_month:
      stmt = stmt.where(WaterUsage.usage_month >= first_of_month(start_month))
    if end_month:
      stmt = stmt.where(WaterUsage.usage_month <= first_of_month(end_month))
    if is_anomaly is not None:
      stmt = stmt.where(WaterUsage.is_anomaly == is_anomaly)
    return list(session.exec(stmt.order_by(col(WaterUsage.usage_month).desc(), col(WaterUsage.id))).all())
