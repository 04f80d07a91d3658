############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# sessions.py: Signed session tokens carrying the user id
#
############################################################

"""Session token issue and verification.

Tokens are minted by the auth collaborator (or ``scripts/issue_token.py``);
the relay only checks the signature and age and reads the opaque user id.
"""

from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from backend.app.logging_config import get_logger
from backend.app.settings import get_settings

logger = get_logger(__name__)

SESSION_SALT = "session"


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(get_settings().secret_key, salt=SESSION_SALT)


def issue_session_token(user_id: str) -> str:
    """Sign a user id into a session token."""
    if not user_id:
        raise ValueError("user_id must not be empty")
    return _serializer().dumps(user_id)


def verify_session_token(token: Optional[str]) -> Optional[str]:
    """
    Return the user id in a valid token, or None.

    Expired, tampered and malformed tokens are all treated as absent.
    """
    if not token:
        return None
    max_age = get_settings().session_max_age_hours * 3600
    try:
        user_id = _serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        logger.info("session_token_expired")
        return None
    except BadSignature:
        logger.warning("session_token_invalid")
        return None
    if not isinstance(user_id, str) or not user_id:
        return None
    return user_id
