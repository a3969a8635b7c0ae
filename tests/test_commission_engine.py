from decimal import Decimal

import pytest

from commission_engine import CommissionSchedule, compute_distribution
from errors import ExceedsCapError


SCHEDULE = CommissionSchedule(Decimal("20"), Decimal("10"), Decimal("5"))


def test_full_chain_pays_every_level():
    """
    200 bonus with a full 3-level chain: 200 + 20 + 10 + 5 = 235, exactly the cap.
    """
    result = compute_distribution(["L1", "L2", "L3"], SCHEDULE, Decimal("200"), Decimal("235"))

    assert result.new_user_bonus == Decimal("200.000000")
    assert [(c.referrer_address, c.level, c.amount) for c in result.commissions] == [
        ("L1", 1, Decimal("20.000000")),
        ("L2", 2, Decimal("10.000000")),
        ("L3", 3, Decimal("5.000000")),
    ]
    assert result.total == Decimal("235")


def test_two_level_chain_example():
    """
    referrer1 (L1) -> referrer2 (L2), no L3.
    bonus 100, level1 20, level2 10 -> 130 total, no level 3 entry.
    """
    schedule = CommissionSchedule(Decimal("20"), Decimal("10"), Decimal("5"))
    result = compute_distribution(["referrer1", "referrer2", None], schedule, Decimal("100"), Decimal("235"))

    assert [(c.referrer_address, c.amount) for c in result.commissions] == [
        ("referrer1", Decimal("20")),
        ("referrer2", Decimal("10")),
    ]
    assert result.total == Decimal("130")
    assert all(c.level != 3 for c in result.commissions)


def test_missing_levels_produce_no_zero_entries():
    result = compute_distribution(["L1"], SCHEDULE, Decimal("200"), Decimal("235"))
    assert len(result.commissions) == 1
    assert result.commissions[0].level == 1

    result = compute_distribution([], SCHEDULE, Decimal("200"), Decimal("235"))
    assert result.commissions == []
    assert result.total == Decimal("200")


def test_gap_in_chain_ends_it():
    result = compute_distribution(["L1", None, "L3"], SCHEDULE, Decimal("200"), Decimal("235"))
    assert [c.level for c in result.commissions] == [1]


def test_zero_amount_level_is_skipped():
    schedule = CommissionSchedule(Decimal("20"), Decimal("0"), Decimal("5"))
    result = compute_distribution(["L1", "L2", "L3"], schedule, Decimal("200"), Decimal("235"))
    assert [c.level for c in result.commissions] == [1, 3]


def test_exceeding_cap_raises_instead_of_truncating():
    schedule = CommissionSchedule(Decimal("30"), Decimal("10"), Decimal("5"))
    with pytest.raises(ExceedsCapError) as exc:
        compute_distribution(["L1", "L2", "L3"], schedule, Decimal("200"), Decimal("235"))

    assert exc.value.total == Decimal("245")
    assert exc.value.cap == Decimal("235")
    assert exc.value.retriable is False


def test_short_chain_fits_where_full_chain_would_not():
    schedule = CommissionSchedule(Decimal("30"), Decimal("10"), Decimal("5"))
    result = compute_distribution(["L1"], schedule, Decimal("200"), Decimal("235"))
    assert result.total == Decimal("230")


def test_rate_mode_rounds_down_to_6dp():
    schedule = CommissionSchedule(Decimal("0.10"), Decimal("0.05"), Decimal("0.025"), mode="rate")
    result = compute_distribution(["L1", "L2", "L3"], schedule, Decimal("0.333333"), Decimal("1"))

    assert [c.amount for c in result.commissions] == [
        Decimal("0.033333"),
        Decimal("0.016666"),
        Decimal("0.008333"),
    ]


def test_cap_invariant_holds_or_raises():
    """
    for every chain length and schedule: either the total fits under the cap
    or the calculator refuses.
    """
    cap = Decimal("235")
    schedules = [
        CommissionSchedule(Decimal(a), Decimal(b), Decimal(c))
        for a, b, c in [("20", "10", "5"), ("35", "0", "0"), ("20", "10", "6"), ("0", "0", "0"), ("50", "50", "50")]
    ]
    chains = [[], ["A"], ["A", "B"], ["A", "B", "C"]]

    for schedule in schedules:
        for chain in chains:
            for bonus in (Decimal("0"), Decimal("200"), Decimal("235"), Decimal("236")):
                try:
                    result = compute_distribution(chain, schedule, bonus, cap)
                except ExceedsCapError:
                    continue
                assert result.total <= cap


def test_deterministic():
    a = compute_distribution(["L1", "L2"], SCHEDULE, Decimal("200"), Decimal("235"))
    b = compute_distribution(["L1", "L2"], SCHEDULE, Decimal("200"), Decimal("235"))
    assert a == b
