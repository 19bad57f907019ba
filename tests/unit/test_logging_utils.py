"""
Unit tests for logging_utils module.

Tests cover security-focused logging utilities:
- sanitize_for_log: CRLF injection prevention
- get_safe_error_info: Safe exception logging
- redact_sensitive_fields: Sensitive data redaction
"""

from src.lambdas.shared.logging_utils import (
    get_safe_error_info,
    redact_sensitive_fields,
    sanitize_for_log,
)


class TestSanitizeForLog:
    """Tests for sanitize_for_log function."""

    def test_removes_newlines(self):
        """Forged log lines in provider metadata collapse onto one line."""
        result = sanitize_for_log("user_1\n[INFO] refund issued")
        assert "\n" not in result
        assert result == "user_1 [INFO] refund issued"

    def test_removes_carriage_returns_and_tabs(self):
        assert sanitize_for_log("a\rb\tc") == "a b c"

    def test_removes_control_characters(self):
        result = sanitize_for_log("cus_\x00\x1f1")
        assert "\x00" not in result
        assert "\x1f" not in result

    def test_truncates_long_input(self):
        result = sanitize_for_log("a" * 300)
        assert len(result) == 203  # 200 + "..."
        assert result.endswith("...")

    def test_custom_max_length(self):
        assert len(sanitize_for_log("a" * 100, max_length=50)) == 53

    def test_none_is_empty(self):
        assert sanitize_for_log(None) == ""

    def test_non_string_values(self):
        assert sanitize_for_log(1234) == "1234"


class TestGetSafeErrorInfo:
    def test_only_type_is_exposed(self):
        info = get_safe_error_info(ValueError("cus_123 not found for jane@example.com"))

        assert info == {"error_type": "ValueError"}


class TestRedactSensitiveFields:
    def test_signature_header_is_redacted(self):
        result = redact_sensitive_fields(
            {"content-type": "application/json", "stripe-signature": "t=1,v1=abc"}
        )

        assert result["content-type"] == "application/json"
        assert result["stripe-signature"] == "***REDACTED***"

    def test_header_names_are_normalized(self):
        """Mixed case and hyphenated header names still match."""
        result = redact_sensitive_fields(
            {"Authorization": "Bearer x", "X-Api-Key": "k", "Cookie": "session=1"}
        )

        assert result == {
            "Authorization": "***REDACTED***",
            "X-Api-Key": "***REDACTED***",
            "Cookie": "***REDACTED***",
        }

    def test_nested_dicts(self):
        result = redact_sensitive_fields({"outer": {"webhook_secret": "whsec_1", "id": "evt_1"}})

        assert result["outer"]["webhook_secret"] == "***REDACTED***"
        assert result["outer"]["id"] == "evt_1"

    def test_input_is_not_mutated(self):
        original = {"token": "abc"}
        redact_sensitive_fields(original)
        assert original == {"token": "abc"}
