import logging

from logging_config import mask_wallets, setup_logging
from fakes import make_settings, wallet


def test_wallet_values_are_shortened():
    event = mask_wallets(
        None,
        "info",
        {"event": "referral_registered", "wallet": wallet(1), "chain": [wallet(2), wallet(3)], "level": 1},
    )

    assert event["wallet"] == "0x0101...0101"
    assert event["chain"] == ["0x0202...0202", "0x0303...0303"]
    assert event["level"] == 1
    assert event["event"] == "referral_registered"


def test_non_wallet_strings_are_left_alone():
    event = mask_wallets(None, "info", {"reference": f"signup:{wallet(1)}:l1", "tx_hash": "0x" + "ab" * 32})
    assert event["reference"] == f"signup:{wallet(1)}:l1"
    assert event["tx_hash"] == "0x" + "ab" * 32


def test_setup_quiets_transfer_client_logging():
    setup_logging(make_settings(log_level="DEBUG", log_format="json"))
    assert logging.getLogger("httpx").level == logging.WARNING
