from datetime import date

import pytest
from sqlmodel import Session

from errors import NotFoundError, RateConflictError, RateNotFoundError, ValidationError
from models import WaterRate
from rates import pick_rate


class TestPickRate:
  def test_latest_effective_rate_wins(self):
    rates = [
      WaterRate(id=1, subscription_type_id=1, amount=4000, effective_date=date(2023, 1, 1)),
      WaterRate(id=2, subscription_type_id=1, amount=5000, effective_date=date(2024, 1, 1)),
      WaterRate(id=3, subscription_type_id=1, amount=6000, effective_date=date(2025, 1, 1)),
    ]
    assert pick_rate(rates, date(2024, 6, 1)).id == 2
    assert pick_rate(rates, date(2023, 12, 31)).id == 1
    assert pick_rate(rates, date(2025, 1, 1)).id == 3

  def test_inactive_and_future_rates_are_ignored(self):
    rates = [
      WaterRate(id=1, subscription_type_id=1, amount=4000, effective_date=date(2023, 1, 1)),
      WaterRate(id=2, subscription_type_id=1, amount=5000, effective_date=date(2024, 1, 1), active=False),
    ]
    assert pick_rate(rates, date(2024, 6, 1)).id == 1
    assert pick_rate(rates, date(2022, 6, 1)) is None

  def test_tie_goes_to_newest_row(self):
    rates = [
      WaterRate(id=7, subscription_type_id=1, amount=4000, effective_date=date(2024, 1, 1)),
      WaterRate(id=9, subscription_type_id=1, amount=4500, effective_date=date(2024, 1, 1)),
    ]
    assert pick_rate(rates, date(2024, 1, 1)).id == 9


class TestRateResolver:
  def test_resolve_returns_rate_in_effect(self, session, resolver, household, household_rate):
    resolver.create_rate(session, household.id, 6000, date(2024, 7, 1))
    assert resolver.resolve(session, household.id, date(2024, 1, 15)).amount == 5000
    assert resolver.resolve(session, household.id, date(2024, 7, 1)).amount == 6000

  def test_resolve_is_stable_for_fixed_rates(self, session, resolver, household, household_rate):
    first = resolver.resolve(session, household.id, date(2024, 3, 1))
    second = resolver.resolve(session, household.id, date(2024, 3, 1))
    assert (first.id, first.amount) == (second.id, second.amount)

  def test_no_rate_before_first_effective_date(self, session, resolver, household, household_rate):
    with pytest.raises(RateNotFoundError):
      resolver.resolve(session, household.id, date(2023, 12, 31))

  def test_category_rates_are_separate(self, session, resolver, household, household_rate):
    resolver.create_rate(session, household.id, 3000, date(2024, 1, 1), category_id=2, description="Social")
    assert resolver.resolve(session, household.id, date(2024, 2, 1), category_id=2).amount == 3000
    assert resolver.resolve(session, household.id, date(2024, 2, 1)).amount == 5000
    with pytest.raises(RateNotFoundError):
      resolver.resolve(session, household.id, date(2024, 2, 1), category_id=3)

  def test_same_effective_date_is_rejected(self, session, resolver, household, household_rate):
    with pytest.raises(RateConflictError):
      resolver.create_rate(session, household.id, 5500, date(2024, 1, 1))
    assert len(resolver.list_rates(session, subscription_type_id=household.id)) == 1

  def test_deactivated_rate_frees_its_date(self, session, resolver, household, household_rate):
    resolver.deactivate_rate(session, household_rate.id)
    replacement = resolver.create_rate(session, household.id, 5500, date(2024, 1, 1))
    assert resolver.resolve(session, household.id, date(2024, 2, 1)).id == replacement.id

    with pytest.raises(RateConflictError):
      resolver.activate_rate(session, household_rate.id)

  def test_deactivation_invalidates_cache(self, session, resolver, household, household_rate):
    older = resolver.create_rate(session, household.id, 4500, date(2023, 1, 1))
    assert resolver.resolve(session, household.id, date(2024, 5, 1)).id == household_rate.id

    resolver.deactivate_rate(session, household_rate.id)
    assert resolver.resolve(session, household.id, date(2024, 5, 1)).id == older.id

    resolver.activate_rate(session, household_rate.id)
    assert resolver.resolve(session, household.id, date(2024, 5, 1)).id == household_rate.id

  def test_rates_are_kept_after_deactivation(self, session, resolver, household, household_rate):
    resolver.deactivate_rate(session, household_rate.id)
    history = resolver.rate_history(session, household.id)
    assert [r.id for r in history] == [household_rate.id]
    assert history[0].active is False

  def test_create_validates_input(self, session, resolver, household):
    with pytest.raises(ValidationError):
      resolver.create_rate(session, household.id, 0, date(2024, 1, 1))
    with pytest.raises(NotFoundError):
      resolver.create_rate(session, 999, 5000, date(2024, 1, 1))

  def test_list_rates_newest_first(self, session, resolver, household, household_rate):
    resolver.create_rate(session, household.id, 4500, date(2023, 1, 1))
    resolver.create_rate(session, household.id, 6000, date(2025, 1, 1))
    rates = resolver.list_rates(session, subscription_type_id=household.id, start_date=date(2024, 1, 1))
    assert [r.amount for r in rates] == [6000, 5000]

  def test_rate_created_during_cache_fill_is_seen(self, monkeypatch, engine, session, resolver, household,
                                                  household_rate):
    load = resolver._load
    fired = []

    def load_then_create(s, key):
      rows = load(s, key)
      if not fired:
        fired.append(key)
        with Session(engine) as other:
          resolver.create_rate(other, household.id, 7000, date(2024, 6, 1))
      return rows

    monkeypatch.setattr(resolver, "_load", load_then_create)
    # this read started before the new tariff existed
    assert resolver.resolve(session, household.id, date(2024, 7, 1)).amount == 5000
    assert resolver.resolve(session, household.id, date(2024, 7, 1)).amount == 7000
    assert resolver.resolve(session, household.id, date(2024, 5, 1)).amount == 5000

  def test_cache_is_reused_between_writes(self, monkeypatch, session, resolver, household, household_rate):
    load = resolver._load
    calls = []

    def counting_load(s, key):
      calls.append(key)
      return load(s, key)

    monkeypatch.setattr(resolver, "_load", counting_load)
    resolver.resolve(session, household.id, date(2024, 2, 1))
    resolver.resolve(session, household.id, date(2024, 3, 1))
    assert len(calls) == 1

    resolver.describe_rate(session, household_rate.id, "2024 household tariff")
    resolver.resolve(session, household.id, date(2024, 3, 1))
    assert len(calls) == 2
