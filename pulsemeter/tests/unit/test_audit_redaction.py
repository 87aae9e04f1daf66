from __future__ import annotations

from pulsemeter.services.audit import sanitize_metadata


def test_audit_redacts_credentials_but_keeps_token_counts() -> None:
    payload = {
        "api_key": "pk-live",
        "client_secret": "super-secret",
        "nested": {"authorization": "Bearer abc", "input_tokens": 1200},
        "items": [{"password": "hunter2", "model": "gpt-4"}],
        "output_tokens": 300,
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["client_secret"] == "[REDACTED]"
    assert sanitized["nested"]["authorization"] == "[REDACTED]"
    assert sanitized["nested"]["input_tokens"] == 1200
    assert sanitized["items"] == [{"password": "[REDACTED]", "model": "gpt-4"}]
    assert sanitized["output_tokens"] == 300
