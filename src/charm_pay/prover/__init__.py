"""Prover — proof requests and response normalization."""

from charm_pay.prover.client import ProverClient
from charm_pay.prover.models import (
    ProveRequest,
    SignedTransactionPair,
    UnsignedTransactionPair,
    normalize_prover_response,
)

__all__ = [
    "ProveRequest",
    "ProverClient",
    "SignedTransactionPair",
    "UnsignedTransactionPair",
    "normalize_prover_response",
]
