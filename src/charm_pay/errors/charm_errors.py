"""CharmPayError — base exception class for all charm-pay errors."""

from __future__ import annotations


class CharmPayError(Exception):
    """Base error for all subscription flow operations.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code string.
        step: Pipeline step that failed (e.g. ``"prove"``, ``"broadcast"``).
        remediation: Recommended user action.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "charm-pay-error",
        step: str = "",
        remediation: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.step = step
        self.remediation = remediation

    def describe(self) -> str:
        """Full user-facing explanation: what failed, where, and what to do."""
        text = self.message
        if self.step:
            text = f"{text} (step: {self.step})"
        if self.remediation:
            text = f"{text}. {self.remediation}"
        return text
