from datetime import timedelta

from conftest import T0
from fines import FinePolicy, calculate_fine

POLICY = FinePolicy(per_day=2000, grace_hours=2, max_fine=50000)


def test_no_fine_before_due_date():
    assert calculate_fine(T0, T0 - timedelta(days=3), POLICY) == 0
    assert calculate_fine(T0, T0, POLICY) == 0


def test_no_fine_inside_grace_window():
    assert calculate_fine(T0, T0 + timedelta(hours=1), POLICY) == 0
    assert calculate_fine(T0, T0 + timedelta(hours=2), POLICY) == 0


def test_every_started_day_is_charged():
    assert calculate_fine(T0, T0 + timedelta(hours=2, seconds=1), POLICY) == 2000
    assert calculate_fine(T0, T0 + timedelta(hours=25), POLICY) == 2000
    assert calculate_fine(T0, T0 + timedelta(hours=49), POLICY) == 4000


def test_fine_is_capped():
    assert calculate_fine(T0, T0 + timedelta(days=40), POLICY) == 50000
    assert calculate_fine(T0, T0 + timedelta(days=400), POLICY) == 50000


def test_fine_never_decreases():
    previous = 0
    for hours in range(0, 24 * 40, 5):
        fine = calculate_fine(T0, T0 + timedelta(hours=hours), POLICY)
        assert fine >= previous
        assert fine <= POLICY.max_fine
        previous = fine


def test_policy_is_injectable():
    policy = FinePolicy(per_day=500, grace_hours=0, max_fine=1200)
    assert calculate_fine(T0, T0 + timedelta(minutes=1), policy) == 500
    assert calculate_fine(T0, T0 + timedelta(days=5), policy) == 1200
