#!/usr/bin/env python3
############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# issue_token.py: Issue a signed session token for a user id
#
############################################################

"""Issue a session token for operators and local testing.

Usage:
    python scripts/issue_token.py <user_id>
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from backend.app.security.sessions import issue_session_token
from backend.app.settings import get_settings


def main():
    parser = argparse.ArgumentParser(description="Issue a SandboxRelay session token")
    parser.add_argument("user_id", help="Opaque user id from the auth provider")
    parser.add_argument(
        "--cookie",
        action="store_true",
        help="Print as a Cookie header instead of a bare token",
    )
    args = parser.parse_args()

    token = issue_session_token(args.user_id)
    if args.cookie:
        print(f"Cookie: {get_settings().session_cookie_name}={token}")
    else:
        print(token)


if __name__ == "__main__":
    main()
