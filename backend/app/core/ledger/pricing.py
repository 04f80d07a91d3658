############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# pricing.py: Token to credit conversion
#
############################################################

"""Pricing: credits charged for one exchange."""

DEFAULT_INPUT_RATE = 1  # credits per 1K input tokens
DEFAULT_OUTPUT_RATE = 3  # credits per 1K output tokens


def calculate_credits(
    input_tokens: int,
    output_tokens: int,
    input_rate: int = DEFAULT_INPUT_RATE,
    output_rate: int = DEFAULT_OUTPUT_RATE,
) -> int:
    """
    Credits for an exchange: ceil(in/1000 * Rin + out/1000 * Rout).

    Computed in integers so the rounding is exact; any nonzero usage
    costs at least one credit.

    Raises:
        ValueError: if a token count or rate is negative
    """
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("Token counts must be non-negative")
    if input_rate < 0 or output_rate < 0:
        raise ValueError("Rates must be non-negative")
    weighted = input_tokens * input_rate + output_tokens * output_rate
    return -(-weighted // 1000)
