from datetime import timedelta

import pytest

from click_tracker import ClickTracker, detect_browser, detect_device_type, detect_os, hash_ip
from errors import InvalidReferralCodeError
from referral_store import InMemoryReferralStore, ReferralCode, utcnow
from fakes import link, wallet


CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
EDGE = CHROME_WINDOWS + " Edg/120.0"
ANDROID_TABLET = "Mozilla/5.0 (Linux; Android 13; SM-X700) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"


def _tracker(window_days=30):
    return ClickTracker(InMemoryReferralStore(), "salt", timedelta(days=window_days))


def test_user_agent_classification():
    assert detect_device_type(CHROME_WINDOWS) == "desktop"
    assert detect_device_type(SAFARI_IPHONE) == "mobile"
    assert detect_device_type(ANDROID_TABLET) == "tablet"
    assert detect_device_type("") == "unknown"

    assert detect_browser(CHROME_WINDOWS) == "Chrome"
    assert detect_browser(SAFARI_IPHONE) == "Safari"
    assert detect_browser(EDGE) == "Edge"
    assert detect_browser("curl/8.0") == "Other"

    assert detect_os(CHROME_WINDOWS) == "Windows"
    assert detect_os(SAFARI_IPHONE) == "iOS"
    assert detect_os(ANDROID_TABLET) == "Android"


def test_ip_hash_is_salted_and_stable():
    assert hash_ip("1.2.3.4", "a") == hash_ip("1.2.3.4", "a")
    assert hash_ip("1.2.3.4", "a") != hash_ip("1.2.3.4", "b")
    assert "1.2.3.4" not in hash_ip("1.2.3.4", "a")


def test_track_click_stores_metadata():
    tracker = _tracker()
    receipt = tracker.track_click(
        "cg-abc123",
        {"ip": "1.2.3.4", "user_agent": SAFARI_IPHONE, "source": "twitter", "campaign": "launch"},
    )

    click = tracker.store.get_click(receipt.click_id)
    assert click.referral_code == "CG-ABC123"
    assert click.ip_hash == hash_ip("1.2.3.4", "salt")
    assert click.device_type == "mobile"
    assert click.source == "twitter"
    assert click.converted_wallet is None


def test_track_click_rejects_malformed_code():
    with pytest.raises(InvalidReferralCodeError):
        _tracker().track_click("??", {})


def test_first_referral_wins():
    tracker = _tracker()
    first = link(tracker, wallet(1), wallet(2))
    assert first.referrer_address == wallet(2)
    assert first.level == 1

    other_code = tracker.get_or_create_code(wallet(3)).code
    assert tracker.register_referral(wallet(1), other_code) is None
    assert tracker.store.get_edge(wallet(1)).referrer_address == wallet(2)


def test_unknown_and_inactive_codes_register_nothing():
    tracker = _tracker()
    assert tracker.register_referral(wallet(1), "CG-FFFFFF") is None
    assert tracker.register_referral(wallet(1), "not a code") is None

    tracker.store.insert_referral_code(ReferralCode(code="PAUSED1", owner_address=wallet(2), is_active=False))
    assert tracker.register_referral(wallet(1), "paused1") is None
    assert tracker.store.get_edge(wallet(1)) is None


def test_self_referral_rejected():
    tracker = _tracker()
    own = tracker.get_or_create_code(wallet(1)).code
    assert tracker.register_referral(wallet(1), own) is None


def test_cycle_rejected():
    tracker = _tracker()
    link(tracker, wallet(2), wallet(1))
    link(tracker, wallet(3), wallet(2))

    # wallet(1) has no referrer yet; joining under wallet(3) would close a loop
    code = tracker.get_or_create_code(wallet(3)).code
    assert tracker.register_referral(wallet(1), code) is None


def test_edge_level_follows_referrer():
    tracker = _tracker()
    assert link(tracker, wallet(2), wallet(1)).level == 1
    assert link(tracker, wallet(3), wallet(2)).level == 2
    assert link(tracker, wallet(4), wallet(3)).level == 3
    assert link(tracker, wallet(5), wallet(4)).level == 3


def test_click_converts_for_matching_code():
    """
    a click on CG-ABC123 from the same IP converts when the wallet
    registers with CG-ABC123.
    """
    tracker = _tracker()
    tracker.store.insert_referral_code(ReferralCode(code="CG-ABC123", owner_address=wallet(2)))
    receipt = tracker.track_click("CG-ABC123", {"ip": "1.2.3.4"})

    tracker.register_referral(wallet(1), "CG-ABC123")
    assert tracker.mark_click_converted(receipt.ip_hash, wallet(1))

    click = tracker.store.get_click(receipt.click_id)
    assert click.converted_wallet == wallet(1)
    assert click.converted_at is not None

    # converted at most once
    assert not tracker.mark_click_converted(receipt.ip_hash, wallet(1))


def test_click_on_other_code_stays_unconverted():
    tracker = _tracker()
    tracker.store.insert_referral_code(ReferralCode(code="CG-ABC123", owner_address=wallet(2)))
    tracker.store.insert_referral_code(ReferralCode(code="CG-DEF456", owner_address=wallet(3)))
    receipt = tracker.track_click("CG-DEF456", {"ip": "1.2.3.4"})

    tracker.register_referral(wallet(1), "CG-ABC123")
    assert not tracker.mark_click_converted(receipt.ip_hash, wallet(1))
    assert tracker.store.get_click(receipt.click_id).converted_wallet is None


def test_click_outside_window_stays_unconverted():
    tracker = _tracker(window_days=30)
    tracker.store.insert_referral_code(ReferralCode(code="CG-ABC123", owner_address=wallet(2)))
    receipt = tracker.track_click("CG-ABC123", {"ip": "1.2.3.4"})

    old = tracker.store.get_click(receipt.click_id).model_copy(
        update={"created_at": utcnow() - timedelta(days=31)}
    )
    tracker.store.insert_click(old)

    tracker.register_referral(wallet(1), "CG-ABC123")
    assert not tracker.mark_click_converted(receipt.ip_hash, wallet(1))


def test_get_or_create_code_is_stable():
    tracker = _tracker()
    first = tracker.get_or_create_code(wallet(1))
    assert first.code == "CG-010101"
    assert tracker.get_or_create_code(wallet(1)) == first
    assert tracker.get_code_info("cg-010101").owner_address == wallet(1)
    assert tracker.get_code_info("nope") is None


def test_default_code_collision_raises():
    tracker = _tracker()
    # same first six hex chars, different wallet
    tracker.store.insert_referral_code(ReferralCode(code="CG-010101", owner_address="0x" + "01" * 3 + "ff" * 17))
    with pytest.raises(InvalidReferralCodeError):
        tracker.get_or_create_code(wallet(1))


def test_inactive_code_is_not_handed_out():
    tracker = _tracker()
    tracker.store.insert_referral_code(ReferralCode(code="OLDCODE", owner_address=wallet(1), is_active=False))

    code = tracker.get_or_create_code(wallet(1))

    assert code.code == "CG-010101"
    assert code.is_active
    assert tracker.store.get_code_for_owner(wallet(1)).code == "CG-010101"


def test_deactivated_default_code_raises():
    tracker = _tracker()
    tracker.store.insert_referral_code(ReferralCode(code="CG-010101", owner_address=wallet(1), is_active=False))

    with pytest.raises(InvalidReferralCodeError):
        tracker.get_or_create_code(wallet(1))
