############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# __init__.py: Application package initialization
#
############################################################

"""SandboxRelay Application Package."""

from backend import __version__

__all__ = ["__version__"]
