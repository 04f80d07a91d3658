############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# __init__.py: Root package initialization and version definition
#
############################################################

"""SandboxRelay - per-user agent sandboxes behind a credit-gated relay."""

__version__ = "0.3.0"
