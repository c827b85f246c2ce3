"""Funding — UTXO selection and the prover conflict registry."""

from charm_pay.funding.allocator import FundingAllocator, ProofResult
from charm_pay.funding.models import FundingResource, parse_utxo_id
from charm_pay.funding.registry import ConflictRegistry

__all__ = [
    "ConflictRegistry",
    "FundingAllocator",
    "FundingResource",
    "ProofResult",
    "parse_utxo_id",
]
