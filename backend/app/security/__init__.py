############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# __init__.py: Security utilities package exports
#
############################################################

"""Security utilities for SandboxRelay."""

from backend.app.security.sessions import issue_session_token, verify_session_token

__all__ = [
    "issue_session_token",
    "verify_session_token",
]
