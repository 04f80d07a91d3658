############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# __init__.py: Services package exports
#
############################################################

"""Services for SandboxRelay."""

from backend.app.services.container import AppServices, build_services
from backend.app.services.relay import ErrorCode, SendMessageResult, StreamingRelay

__all__ = ["AppServices", "ErrorCode", "SendMessageResult", "StreamingRelay", "build_services"]
