from __future__ import annotations

from printvault.services.audit import sanitize_metadata


def test_audit_redacts_tokens_and_machine_ids() -> None:
    payload = {
        "token": "abc",
        "offline_signature": "deadbeef",
        "machine_guid_hash": "ff00",
        "nested": [{"redemption_token": "r-1", "pages": 2}],
        "used_prints": 1,
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["token"] == "[REDACTED]"
    assert sanitized["offline_signature"] == "[REDACTED]"
    assert sanitized["machine_guid_hash"] == "[REDACTED]"
    assert sanitized["nested"][0]["redemption_token"] == "[REDACTED]"
    assert sanitized["nested"][0]["pages"] == 2
    assert sanitized["used_prints"] == 1
