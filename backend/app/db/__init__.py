############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# __init__.py: Database package initialization and exports
#
############################################################

"""Database package for SandboxRelay."""

from backend.app.db.base import Base
from backend.app.db.session import AsyncSessionLocal, create_engine, create_session_factory, engine

__all__ = ["Base", "AsyncSessionLocal", "create_engine", "create_session_factory", "engine"]
