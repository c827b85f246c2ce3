"""Flow — subscription create / pay / cancel pipelines.

Provides:
- ``FlowOrchestrator`` — runs one transition end to end
- ``CharmPayEngine`` — builds and owns the clients an orchestrator needs
"""

from __future__ import annotations

from charm_pay.flow.engine import CharmPayEngine
from charm_pay.flow.models import (
    CancelResult,
    CreateResult,
    PaymentResult,
    SubscriptionState,
    new_subscription_id,
)
from charm_pay.flow.orchestrator import FlowOrchestrator

__all__ = [
    "CancelResult",
    "CharmPayEngine",
    "CreateResult",
    "FlowOrchestrator",
    "PaymentResult",
    "SubscriptionState",
    "new_subscription_id",
]
