"""Exception types shared by the platform client, encoder gateway and handlers."""
from typing import Optional


class PlatformError(Exception):
    """A broadcast platform call failed.

    Attributes:
        status_code: HTTP status when the platform answered, else None.
        reason: Platform error reason (e.g. ``quotaExceeded``) when reported.
        transient: True for network-level failures (no response at all).
    """

    def __init__(self, message: str, status_code: Optional[int] = None,
                 reason: Optional[str] = None, transient: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason
        self.transient = transient

    def __str__(self) -> str:
        msg = super().__str__()
        parts = []
        if self.status_code is not None:
            parts.append(str(self.status_code))
        if self.reason:
            parts.append(self.reason)
        return f"{msg} ({', '.join(parts)})" if parts else msg


class EncoderError(Exception):
    """An encoder control-socket request failed."""


class UnknownActionTypeError(ValueError):
    """An action type outside the supported set was submitted."""
