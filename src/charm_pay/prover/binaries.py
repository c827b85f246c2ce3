"""Contract binary loading for the prover's ``binaries`` map."""

from __future__ import annotations

from pathlib import Path

from charm_pay.errors.flow_errors import ValidationError
from charm_pay.utils.encoding import b64encode


def load_binary(path: str | Path) -> str:
    """Read a compiled contract and return it base64 encoded.

    Raises:
        ValidationError: If the file is missing or empty.
    """
    p = Path(path)
    if not p.is_file():
        msg = f"Contract binary not found at {p}; build the contract first"
        raise ValidationError(msg, step="load-binary")
    data = p.read_bytes()
    if not data:
        msg = f"Contract binary {p} is empty"
        raise ValidationError(msg, step="load-binary")
    return b64encode(data)


def binaries_map(app_vk: str, binary_b64: str) -> dict[str, str]:
    """``{app_vk: binary}`` — the shape the prover expects."""
    if not app_vk:
        msg = "Contract verification key (app_vk) is not configured"
        raise ValidationError(msg, step="load-binary")
    return {app_vk: binary_b64}
