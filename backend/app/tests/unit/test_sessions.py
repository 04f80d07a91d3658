############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# test_sessions.py: Unit tests for signed session tokens
#
############################################################

"""Unit tests for session token issue and verification."""

from unittest.mock import patch

import pytest
from itsdangerous import URLSafeTimedSerializer

from backend.app.security.sessions import (
    SESSION_SALT,
    issue_session_token,
    verify_session_token,
)


class TestSessionTokens:

    def test_round_trip(self):
        token = issue_session_token("user-123")
        assert verify_session_token(token) == "user-123"

    def test_missing_token(self):
        assert verify_session_token(None) is None
        assert verify_session_token("") is None

    def test_tampered_token(self):
        token = issue_session_token("user-123")
        assert verify_session_token(token[:-2] + "xx") is None

    def test_token_signed_with_other_key(self):
        forged = URLSafeTimedSerializer("other-key", salt=SESSION_SALT).dumps("user-123")
        assert verify_session_token(forged) is None

    def test_expired_token(self):
        token = issue_session_token("user-123")
        with patch("backend.app.security.sessions.get_settings") as mock_settings:
            mock_settings.return_value.secret_key = "test-secret-key"
            mock_settings.return_value.session_max_age_hours = -1
            assert verify_session_token(token) is None

    def test_empty_user_id_rejected(self):
        with pytest.raises(ValueError):
            issue_session_token("")
