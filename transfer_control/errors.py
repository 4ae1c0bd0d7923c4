"""
Transfer Control Errors

Typed failures raised by the capability implementations. The transfer engine
converts every stage failure into a pending fallback record; only
PersistenceFailure is allowed to escape a pipeline run.
"""

from typing import Optional


class TransferControlError(Exception):
    """Base class for every control-plane failure"""


class ConfigurationError(TransferControlError):
    """Invalid or inconsistent configuration value"""


class AgentUnreachable(TransferControlError):
    """Worker agent status/command endpoint could not be used"""

    def __init__(self, agent_id: str, reason: str):
        self.agent_id = agent_id
        self.reason = reason
        super().__init__(f"Agent {agent_id} unreachable: {reason}")


class ProvisioningFailed(TransferControlError):
    """Single-use credential could not be generated"""


class FundingUnavailable(TransferControlError):
    """Funding provider could not supply value for the ephemeral address"""


class ConversionFailed(TransferControlError):
    """No usable conversion rate, or the converted amount is unusable"""


class BroadcastRejected(TransferControlError):
    """Broadcast network answered with anything but the acceptance code"""

    def __init__(self, code: str, message: Optional[str] = None):
        self.code = code
        self.message = message
        detail = f"{code}: {message}" if message else code
        super().__init__(f"Broadcast rejected ({detail})")


class PersistenceFailure(TransferControlError):
    """Terminal record could not be written; breaks the one-record invariant"""


class VenueNotConnected(TransferControlError):
    """Exchange venue is not in the ready set"""

    def __init__(self, venue: str):
        self.venue = venue
        super().__init__(f"Exchange {venue} not connected")
