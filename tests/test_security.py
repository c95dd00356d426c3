"""Tests for security.py: input validation, CSRF store, lockout, audit log."""

import json
import logging

import pytest
from fastapi import HTTPException

from jarvis.security import (
    CsrfTokenStore,
    FailedAttemptTracker,
    log_audit_event,
    sanitize_text,
    sanitize_user_input,
    validate_action,
    validate_uid,
)


class TestValidateUid:
    def test_strips_disallowed_characters(self):
        assert validate_uid("abc.def@x") == "abcdefx"
        assert validate_uid("user_1-A") == "user_1-A"

    @pytest.mark.parametrize("uid", [None, "", "ab", "x" * 51, 12345, ["abc"]])
    def test_rejects(self, uid):
        with pytest.raises(HTTPException) as exc:
            validate_uid(uid)
        assert exc.value.status_code == 400
        assert exc.value.detail == "Invalid user ID format"

    def test_length_bounds_inclusive(self):
        assert validate_uid("abc") == "abc"
        assert validate_uid("y" * 50) == "y" * 50


class TestSanitize:
    def test_sanitize_text(self):
        assert sanitize_text("  <b>hi</b>  ") == "bhi/b"
        assert sanitize_text(None) == ""
        assert len(sanitize_text("a" * 6000)) == 5000

    def test_sanitize_user_input_drops_quotes(self):
        assert sanitize_user_input("it's \"quoted\" <x>") == "its quoted x"


class TestValidateAction:
    def test_defaults_to_task(self):
        assert validate_action({"text": "buy milk"}) == ("task", "buy milk")

    def test_accepts_goal_type(self):
        assert validate_action({"text": "run 5k", "type": "goal"})[0] == "goal"

    @pytest.mark.parametrize("body,detail", [
        ({}, "Invalid action text"),
        ({"text": 5}, "Invalid action text"),
        ({"text": "x" * 501}, "Invalid action text"),
        ({"text": "ok", "type": "errand"}, "Invalid action type"),
    ])
    def test_rejects(self, body, detail):
        with pytest.raises(HTTPException) as exc:
            validate_action(body)
        assert exc.value.detail == detail


class TestCsrfTokenStore:
    def test_issue_validate_consume(self, clock):
        store = CsrfTokenStore(ttl=900, clock=clock)
        token = store.issue("u1")
        assert store.validate("u2", token) is False
        assert store.validate("u1", token) is True
        assert store.validate("u1", token) is False

    def test_missing_token(self, clock):
        assert CsrfTokenStore(clock=clock).validate("u1", None) is False

    def test_expired_tokens_pruned_on_issue(self, clock):
        store = CsrfTokenStore(ttl=10, clock=clock)
        store.issue("u1")
        store.issue("u1")
        assert len(store) == 2
        clock.advance(11)
        store.issue("u1")
        assert len(store) == 1


class TestFailedAttemptTracker:
    def test_lockout_and_expiry(self, clock):
        tracker = FailedAttemptTracker(max_attempts=3, lockout_duration=1800, clock=clock)
        assert tracker.record_failure("u1") is True
        assert tracker.record_failure("u1") is True
        assert tracker.record_failure("u1") is False
        assert tracker.is_locked_out("u1")
        # failures during a lockout do not extend it
        assert tracker.record_failure("u1") is False
        clock.advance(1800)
        assert not tracker.is_locked_out("u1")

    def test_clear(self, clock):
        tracker = FailedAttemptTracker(max_attempts=2, clock=clock)
        tracker.record_failure("u1")
        tracker.clear("u1")
        assert tracker.record_failure("u1") is True
        assert not tracker.is_locked_out("u1")

    def test_unknown_uid_not_locked(self, clock):
        assert FailedAttemptTracker(clock=clock).is_locked_out("nobody") is False


class TestAuditLog:
    def test_secret_fields_removed(self, caplog):
        with caplog.at_level(logging.INFO, logger="jarvis.audit"):
            log_audit_event("OMI_KEY_ADDED", "u1", ip="10.0.0.1", api_key="omi_secret", status=200)
        entry = json.loads(caplog.records[-1].getMessage())
        assert entry["event"] == "OMI_KEY_ADDED"
        assert entry["uid"] == "u1"
        assert entry["ip"] == "10.0.0.1"
        assert entry["metadata"] == {"status": 200}
        assert "omi_secret" not in caplog.text
