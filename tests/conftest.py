"""
Pytest fixtures for the billing core.

Each test gets its own in-memory SQLite database with two subscription
types, three customers and the 2024 household tariff.
"""
import os

# must be set before db.py / config.py are imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["OVERDUE_SWEEP_SECONDS"] = "0"

from datetime import date

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from config import BillingSettings
from db import init_db
from ledger import InvoiceLedger
from models import Customer, CustomerStatus, SubscriptionType, WaterRate
from rates import RateResolver
from reports import AgingAnalyzer
from usage import UsageCalculator


@pytest.fixture()
def engine():
  eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
  init_db(eng)
  yield eng
  eng.dispose()


@pytest.fixture()
def session(engine):
  with Session(engine) as s:
    yield s


@pytest.fixture()
def settings():
  return BillingSettings(grace_period_days=14, tax_percentage_bps=0, batch_workers=1)


@pytest.fixture()
def resolver():
  return RateResolver()


@pytest.fixture()
def calculator(settings):
  return UsageCalculator(settings)


@pytest.fixture()
def ledger(settings, resolver):
  return InvoiceLedger(settings, resolver)


@pytest.fixture()
def analyzer():
  return AgingAnalyzer()


@pytest.fixture()
def household(session):
  sub = SubscriptionType(name="Household", registration_fee=0, monthly_fee=50000, maintenance_fee=10000)
  session.add(sub)
  session.commit()
  session.refresh(sub)
  return sub


@pytest.fixture()
def business(session):
  sub = SubscriptionType(name="Business", registration_fee=500000, monthly_fee=150000, maintenance_fee=25000)
  session.add(sub)
  session.commit()
  session.refresh(sub)
  return sub


@pytest.fixture()
def household_rate(session, household):
  rate = WaterRate(subscription_type_id=household.id, amount=5000, effective_date=date(2024, 1, 1))
  session.add(rate)
  session.commit()
  session.refresh(rate)
  return rate


@pytest.fixture()
def customer(session, household, household_rate):
  c = Customer(name="Budi Santoso", meter_number="MTR-0001", subscription_type_id=household.id)
  session.add(c)
  session.commit()
  session.refresh(c)
  return c


@pytest.fixture()
def other_customer(session, household, household_rate):
  c = Customer(name="Siti Aminah", meter_number="MTR-0002", subscription_type_id=household.id)
  session.add(c)
  session.commit()
  session.refresh(c)
  return c


@pytest.fixture()
def inactive_customer(session, household, household_rate):
  c = Customer(name="Joko Widodo", subscription_type_id=household.id, status=CustomerStatus.INACTIVE)
  session.add(c)
  session.commit()
  session.refresh(c)
  return c


@pytest.fixture()
def january_invoice(session, calculator, ledger, customer):
  """260,000 invoice for 40 m3 in January 2024, due 2024-02-14."""
  usage = calculator.record(session, customer.id, date(2024, 1, 1), 40)
  return ledger.generate(session, usage.id, issue_date=date(2024, 1, 31))
