############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# __init__.py: Credit ledger package
#
############################################################

"""Credit ledger gate and pricing."""

from backend.app.core.ledger.ledger import (
    CreditBalance,
    CreditLedger,
    CreditResult,
    DebitResult,
    UsageCommit,
)
from backend.app.core.ledger.pricing import calculate_credits

__all__ = [
    "CreditBalance",
    "CreditLedger",
    "CreditResult",
    "DebitResult",
    "UsageCommit",
    "calculate_credits",
]
