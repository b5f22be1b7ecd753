"""
Unit tests for subscription window arithmetic and trials
"""
from datetime import datetime, timedelta

import pytest

from crud.ledger import SubscriptionLedger
from services.subscription import TrialService, add_months, compute_extension, to_iso
from utils.errors import ValidationError

from tests.conftest import FROZEN_NOW, UNIT_PRICE


def test_lapsed_window_restarts_from_now():
    lapsed = FROZEN_NOW - timedelta(days=30)
    start, end, months = compute_extension(lapsed, FROZEN_NOW, 2 * UNIT_PRICE, UNIT_PRICE)

    assert months == 2
    assert start == FROZEN_NOW
    assert end == add_months(FROZEN_NOW, 2)


def test_live_window_is_extended_from_its_end():
    live_end = FROZEN_NOW + timedelta(days=10)
    start, end, months = compute_extension(live_end, FROZEN_NOW, UNIT_PRICE, UNIT_PRICE)

    assert months == 1
    assert start == live_end
    assert end == add_months(live_end, 1)


def test_partial_payment_buys_whole_periods_only():
    _, end, months = compute_extension(None, FROZEN_NOW, UNIT_PRICE + 1000, UNIT_PRICE)
    assert months == 1
    assert end == datetime(2026, 4, 15, 12, 0, 0)


def test_add_months_clamps_day():
    assert add_months(datetime(2026, 1, 31), 1) == datetime(2026, 2, 28)
    assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
    assert add_months(datetime(2026, 11, 30), 3) == datetime(2027, 2, 28)


def test_to_iso_appends_utc_marker():
    assert to_iso(datetime(2026, 3, 15, 12, 0, 0)) == "2026-03-15T12:00:00.000Z"
    assert to_iso(None) is None


@pytest.mark.asyncio
async def test_trial_started_for_new_user(test_db):
    trials = TrialService(SubscriptionLedger(test_db), clock=lambda: FROZEN_NOW)

    end = await trials.start_trial("new-user", 7, email="new@example.com")
    await test_db.commit()

    user = await SubscriptionLedger(test_db).get_user("new-user")
    assert end == FROZEN_NOW + timedelta(days=7)
    assert user.subscription_end_date == end
    assert user.has_used_trial is True
    assert user.email == "new@example.com"
    assert user.role == "user"


@pytest.mark.asyncio
async def test_trial_refused_while_active(test_db):
    ledger = SubscriptionLedger(test_db)
    await ledger.upsert_user("paying-user", {"subscription_end_date": FROZEN_NOW + timedelta(days=3)})
    trials = TrialService(ledger, clock=lambda: FROZEN_NOW)

    with pytest.raises(ValidationError) as exc_info:
        await trials.start_trial("paying-user", 7)
    assert exc_info.value.message == "You already have an active subscription or trial."


@pytest.mark.asyncio
async def test_free_trial_only_once(test_db):
    ledger = SubscriptionLedger(test_db)
    await ledger.upsert_user("returning-user", {
        "subscription_end_date": FROZEN_NOW - timedelta(days=1),
        "has_used_trial": True,
    })
    trials = TrialService(ledger, clock=lambda: FROZEN_NOW)

    with pytest.raises(ValidationError) as exc_info:
        await trials.start_trial("returning-user", 3, once_only=True)
    assert exc_info.value.message == "You have already used your free trial."

    # The repeatable trial is still allowed once the window lapsed
    end = await trials.start_trial("returning-user", 7)
    assert end == FROZEN_NOW + timedelta(days=7)
