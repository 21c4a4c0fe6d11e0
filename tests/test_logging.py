"""Tests for log redaction of subscriber addresses."""

import pytest

from mailflow.core.logging import mask_email, mask_subscriber_emails


@pytest.mark.parametrize(
    ("address", "masked"),
    [
        ("alice@example.com", "a***@example.com"),
        ("a@b.io", "a***@b.io"),
        ("not-an-address", "not-an-address"),
        ("@example.com", "@example.com"),
    ],
)
def test_mask_email(address, masked) -> None:
    assert mask_email(address) == masked


def test_processor_masks_only_address_keys() -> None:
    event = {"event": "Message sent", "to": "bob@example.com", "subscriber_id": "sub_1", "email": None}

    result = mask_subscriber_emails(None, "info", dict(event))

    assert result["to"] == "b***@example.com"
    assert result["subscriber_id"] == "sub_1"
    assert result["email"] is None
