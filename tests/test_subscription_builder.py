from datetime import date, datetime
from decimal import Decimal

import pytest

from app.core.exceptions import ValidationError
from app.models import Agency, PlanType, SubscriptionPlan
from app.services.subscription_service import build_subscription_draft

TODAY = date(2026, 3, 2)


def _agency(collection_days=None):
    return Agency(id=1, name="Clean Nairobi", collection_days=collection_days)


def _plan(plan_type=PlanType.STANDARD, agency_id=1, is_active=True):
    return SubscriptionPlan(
        id=7,
        agency_id=agency_id,
        name="Plan",
        price=Decimal("1000.00"),
        currency="KES",
        duration_days=30,
        plan_type=plan_type,
        is_active=is_active,
    )


def test_standard_plan_uses_agency_collection_days():
    draft = build_subscription_draft(5, _agency(["Tuesday", "Friday"]), _plan(), selection=[TODAY], today=TODAY)

    assert draft.collection_days == ["Tuesday", "Friday"]
    assert draft.custom_collection_dates == []
    assert draft.amount == Decimal("1000.00")
    assert draft.currency == "KES"
    assert draft.status == "pending"
    assert draft.user_id == 5
    assert draft.plan_id == 7
    assert draft.duration_days == 30


def test_standard_plan_falls_back_to_default_days():
    draft = build_subscription_draft(5, _agency(None), _plan(), today=TODAY)
    assert draft.collection_days == ["Monday", "Thursday"]


def test_custom_plan_accepts_two_distinct_dates_in_window():
    draft = build_subscription_draft(
        5,
        _agency(),
        _plan(PlanType.CUSTOM),
        selection=[date(2026, 3, 20), "2026-03-05"],
        today=TODAY,
    )

    assert draft.custom_collection_dates == [date(2026, 3, 5), date(2026, 3, 20)]
    assert draft.collection_days == ["Thursday", "Friday"]


def test_custom_plan_accepts_window_edges_and_datetimes():
    draft = build_subscription_draft(
        5,
        _agency(),
        _plan(PlanType.CUSTOM),
        selection=[datetime(2026, 3, 2, 9, 30), date(2026, 4, 1)],
        today=TODAY,
    )
    assert draft.custom_collection_dates == [TODAY, date(2026, 4, 1)]


@pytest.mark.parametrize(
    "selection",
    [
        [],
        [date(2026, 3, 5)],
        [date(2026, 3, 5), date(2026, 3, 6), date(2026, 3, 7)],
        [date(2026, 3, 5), date(2026, 3, 5)],
        [date(2026, 3, 5), date(2026, 4, 2)],
        [date(2026, 3, 1), date(2026, 3, 5)],
        ["2026-03-05", "not-a-date"],
    ],
)
def test_custom_plan_rejects_bad_selection(selection):
    with pytest.raises(ValidationError):
        build_subscription_draft(5, _agency(), _plan(PlanType.CUSTOM), selection=selection, today=TODAY)


def test_custom_plan_rejects_missing_selection():
    with pytest.raises(ValidationError):
        build_subscription_draft(5, _agency(), _plan(PlanType.CUSTOM), selection=None, today=TODAY)


def test_inactive_plan_is_rejected():
    with pytest.raises(ValidationError):
        build_subscription_draft(5, _agency(), _plan(is_active=False), today=TODAY)


def test_plan_from_another_agency_is_rejected():
    with pytest.raises(ValidationError):
        build_subscription_draft(5, _agency(), _plan(agency_id=99), today=TODAY)
