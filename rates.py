# rates.py
"""Effective-dated tariff lookup.

A rate applies from its effective_date until a later active rate for the
same subscription type and category supersedes it. Rates are never deleted;
switching one off keeps it around for historical lookups.
"""
import logging
import threading
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from sqlmodel import Session, col, select

from db import transaction
from errors import NotFoundError, RateConflictError, RateNotFoundError, ValidationError
from models import SubscriptionType, WaterRate, utcnow

logger = logging.getLogger(__name__)

CacheKey = Tuple[int, Optional[int]]


def pick_rate(rates: Iterable[WaterRate], as_of: date) -> Optional[WaterRate]:
  """Latest active rate effective on or before as_of; newest row wins a tie."""
  candidates = [r for r in rates if r.active and r.effective_date <= as_of]
  if not candidates:
    return None
  return max(candidates, key=lambda r: (r.effective_date, r.id or 0))


def _scope(stmt, subscription_type_id: int, category_id: Optional[int]):
  stmt = stmt.where(WaterRate.subscription_type_id == subscription_type_id)
  if category_id is None:
    return stmt.where(col(WaterRate.category_id).is_(None))
  return stmt.where(WaterRate.category_id == category_id)


class RateResolver:
  def __init__(self):
    self._cache: Dict[CacheKey, List[WaterRate]] = {}
    self._generation = 0
    self._lock = threading.Lock()

  def invalidate(self, subscription_type_id: Optional[int] = None, category_id: Optional[int] = None) -> None:
    with self._lock:
      self._generation += 1
      if subscription_type_id is None:
        self._cache.clear()
      else:
        self._cache.pop((subscription_type_id, category_id), None)

  def _load(self, session: Session, key: CacheKey) -> List[WaterRate]:
    rows = session.exec(_scope(select(WaterRate), *key).where(WaterRate.active == True)).all()  # noqa: E712
    # detached copies so cached entries never ride along with a session
    return [WaterRate(**r.model_dump()) for r in rows]

  def _active_rates(self, session: Session, key: CacheKey) -> List[WaterRate]:
    with self._lock:
      cached = self._cache.get(key)
      generation = self._generation
    if cached is not None:
      return cached

    snapshot = self._load(session, key)
    with self._lock:
      # a write that invalidated while we were reading leaves this snapshot stale
      if self._generation == generation:
        self._cache[key] = snapshot
    return snapshot

  def resolve(self, session: Session, subscription_type_id: int, as_of: date,
              category_id: Optional[int] = None) -> WaterRate:
    rate = pick_rate(self._active_rates(session, (subscription_type_id, category_id)), as_of)
    if rate is None:
      raise RateNotFoundError(
        f"No active water rate for subscription type {subscription_type_id}"
        f"{'' if category_id is None else f' category {category_id}'} effective on {as_of.isoformat()}"
      )
    return rate

  # writes

  def _ensure_unambiguous(self, session: Session, rate: WaterRate) -> None:
    stmt = _scope(select(WaterRate), rate.subscription_type_id, rate.category_id)
    stmt = stmt.where(WaterRate.active == True, WaterRate.effective_date == rate.effective_date)  # noqa: E712
    if rate.id is not None:
      stmt = stmt.where(WaterRate.id != rate.id)
    clash = session.exec(stmt).first()
    if clash:
      raise RateConflictError(
        f"Active rate {clash.id} already takes effect on {rate.effective_date.isoformat()} "
        f"for subscription type {rate.subscription_type_id}"
      )

  def create_rate(self, session: Session, subscription_type_id: int, amount: int, effective_date: date,
                  category_id: Optional[int] = None, description: Optional[str] = None) -> WaterRate:
    if amount <= 0:
      raise ValidationError("Rate amount must be greater than zero")
    if not session.get(SubscriptionType, subscription_type_id):
      raise NotFoundError(f"Subscription type {subscription_type_id} not found")

    rate = WaterRate(
      subscription_type_id=subscription_type_id,
      category_id=category_id,
      amount=amount,
      effective_date=effective_date,
      description=description,
    )
    with transaction(session):
      self._ensure_unambiguous(session, rate)
      session.add(rate)
    session.refresh(rate)
    self.invalidate(subscription_type_id, category_id)
    logger.info("water rate %s created: %s/m3 from %s", rate.id, rate.amount, rate.effective_date)
    return rate

  def _get(self, session: Session, rate_id: int) -> WaterRate:
    rate = session.get(WaterRate, rate_id)
    if not rate:
      raise NotFoundError(f"Water rate {rate_id} not found")
    return rate

  def set_active(self, session: Session, rate_id: int, active: bool) -> WaterRate:
    rate = self._get(session, rate_id)
    if rate.active == active:
      return rate
    with transaction(session):
      if active:
        self._ensure_unambiguous(session, rate)
      rate.active = active
      rate.updated_at = utcnow()
      session.add(rate)
    session.refresh(rate)
    self.invalidate(rate.subscription_type_id, rate.category_id)
    logger.info("water rate %s %s", rate.id, "activated" if active else "deactivated")
    return rate

  def activate_rate(self, session: Session, rate_id: int) -> WaterRate:
    return self.set_active(session, rate_id, True)

  def deactivate_rate(self, session: Session, rate_id: int) -> WaterRate:
    return self.set_active(session, rate_id, False)

  def describe_rate(self, session: Session, rate_id: int, description: Optional[str]) -> WaterRate:
    rate = self._get(session, rate_id)
    with transaction(session):
      rate.description = description
      rate.updated_at = utcnow()
      session.add(rate)
    session.refresh(rate)
    self.invalidate(rate.subscription_type_id, rate.category_id)
    return rate

  # reads

  def list_rates(self, session: Session, subscription_type_id: Optional[int] = None,
                 category_id: Optional[int] = None, active: Optional[bool] = None,
                 start_date: Optional[date] = None, end_date: Optional[date] = None) -> List[WaterRate]:
    stmt = select(WaterRate)
    if subscription_type_id is not None:
      stmt = stmt.where(WaterRate.subscription_type_id == subscription_type_id)
    if category_id is not None:
      stmt = stmt.where(WaterRate.category_id == category_id)
    if active is not None:
      stmt = stmt.where(WaterRate.active == active)
    if start_date:
      stmt = stmt.where(WaterRate.effective_date >= start_date)
    if end_date:
      stmt = stmt.where(WaterRate.effective_date <= end_date)
    stmt = stmt.order_by(col(WaterRate.effective_date).desc(), col(WaterRate.id).desc())
    return list(session.exec(stmt).all())

  def rate_history(self, session: Session, subscription_type_id: int) -> List[WaterRate]:
    return self.list_rates(session, subscription_type_id=subscription_type_id)


resolver = RateResolver()
