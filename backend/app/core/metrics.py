############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# metrics.py: Prometheus metrics shared by the core services
#
############################################################

"""Prometheus metrics."""

from prometheus_client import Counter, Gauge

RELAY_EXCHANGES = Counter(
    "sandboxrelay_exchanges_total",
    "Relayed chat exchanges by outcome",
    ["result"],  # success, insufficient-credits, machine-error, internal-error
)
CREDITS_DEBITED = Counter(
    "sandboxrelay_credits_debited_total",
    "Credits debited for completed exchanges",
)
TOKENS_RELAYED = Counter(
    "sandboxrelay_tokens_total",
    "Tokens reported by user machines",
    ["type"],  # input, output
)
MACHINE_OPERATIONS = Counter(
    "sandboxrelay_machine_operations_total",
    "Machine lifecycle operations",
    ["operation", "result"],
)
ENDPOINT_NOT_READY = Counter(
    "sandboxrelay_endpoint_not_ready_total",
    "Machine endpoint attempts that found the agent still booting",
)
OPEN_SESSIONS = Gauge(
    "sandboxrelay_open_sessions",
    "Open duplex chat sessions",
)


def record_machine_operation(operation: str, result: str) -> None:
    MACHINE_OPERATIONS.labels(operation=operation, result=result).inc()


def record_exchange(result: str, credits: int = 0, input_tokens: int = 0, output_tokens: int = 0) -> None:
    """Count one relay exchange and, on success, what it consumed."""
    RELAY_EXCHANGES.labels(result=result).inc()
    if credits:
        CREDITS_DEBITED.inc(credits)
    if input_tokens:
        TOKENS_RELAYED.labels(type="input").inc(input_tokens)
    if output_tokens:
        TOKENS_RELAYED.labels(type="output").inc(output_tokens)
