############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# __init__.py: Core application logic package
#
############################################################

"""Core application logic for SandboxRelay."""
