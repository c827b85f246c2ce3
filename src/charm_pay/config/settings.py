"""Application settings loaded from environment variables and config files.

Configuration is loaded from (highest priority first):
1. Environment variables (prefix: ``CHARMPAY_``, nested via ``__``)
2. YAML config file (``config_path`` field or ``CHARMPAY_CONFIG_PATH`` env var)
3. Defaults defined here
"""

from __future__ import annotations

import enum
from pathlib import Path
from typing import Any, Self

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Enums for validated choices
# ---------------------------------------------------------------------------


class Network(enum.StrEnum):
    """Supported Bitcoin networks."""

    MAINNET = "mainnet"
    TESTNET4 = "testnet4"


# ---------------------------------------------------------------------------
# Sub-config models
# ---------------------------------------------------------------------------


class IndexConfig(BaseSettings):
    """Public UTXO / transaction index (mempool.space-compatible Esplora API)."""

    model_config = SettingsConfigDict(
        env_prefix="CHARMPAY_INDEX__",
        case_sensitive=False,
    )

    url: str = "https://mempool.space/testnet4/api"
    timeout: float = 30.0


class ProverConfig(BaseSettings):
    """Charms proving service settings."""

    model_config = SettingsConfigDict(
        env_prefix="CHARMPAY_PROVER__",
        case_sensitive=False,
    )

    url: str = "https://v8.charms.dev/spells/prove"
    chain: str = "bitcoin"
    fee_rate: float = Field(default=1.0, gt=0, description="Fee rate in sat/vbyte")
    timeout: float = 120.0


class ContractConfig(BaseSettings):
    """Subscription contract identity and binary."""

    model_config = SettingsConfigDict(
        env_prefix="CHARMPAY_CONTRACT__",
        case_sensitive=False,
    )

    app_vk: str = ""
    binary_path: str = ""


class WalletConfig(BaseSettings):
    """Wallet signing RPC bridge settings."""

    model_config = SettingsConfigDict(
        env_prefix="CHARMPAY_WALLET__",
        case_sensitive=False,
    )

    url: str = "http://127.0.0.1:8787/rpc"
    timeout: float = 300.0


class FundingConfig(BaseSettings):
    """Funding UTXO allocation and conflict-retry budget."""

    model_config = SettingsConfigDict(
        env_prefix="CHARMPAY_FUNDING__",
        case_sensitive=False,
    )

    max_attempts: int = Field(default=5, ge=1)
    max_refresh_cycles: int = Field(default=3, ge=0)
    refresh_delay: float = Field(default=2.0, ge=0)
    registry_path: str = Field(
        default="",
        description="JSON file persisting used funding UTXOs; empty keeps them in memory",
    )


class BroadcastConfig(BaseSettings):
    """Commit/spell package broadcast settings."""

    model_config = SettingsConfigDict(
        env_prefix="CHARMPAY_BROADCAST__",
        case_sensitive=False,
    )

    propagation_delay: float = Field(default=1.0, ge=0)


class ExplorerConfig(BaseSettings):
    """Block explorer used for user-facing links."""

    model_config = SettingsConfigDict(
        env_prefix="CHARMPAY_EXPLORER__",
        case_sensitive=False,
    )

    url: str = "https://mempool.space/testnet4"


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


def _load_yaml(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file and return its contents as a dict.

    Returns an empty dict if the file doesn't exist or is empty.
    """
    p = Path(path)
    if not p.exists():
        return {}
    text = p.read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    return data if isinstance(data, dict) else {}


class AppConfig(BaseSettings):
    """Top-level application configuration.

    Loads settings from environment variables (``CHARMPAY_`` prefix),
    an optional YAML file, and built-in defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="CHARMPAY_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    debug: bool = False
    network: Network = Network.TESTNET4
    config_path: str = ""

    index: IndexConfig = Field(default_factory=IndexConfig)
    prover: ProverConfig = Field(default_factory=ProverConfig)
    contract: ContractConfig = Field(default_factory=ContractConfig)
    wallet: WalletConfig = Field(default_factory=WalletConfig)
    funding: FundingConfig = Field(default_factory=FundingConfig)
    broadcast: BroadcastConfig = Field(default_factory=BroadcastConfig)
    explorer: ExplorerConfig = Field(default_factory=ExplorerConfig)

    @model_validator(mode="before")
    @classmethod
    def _merge_yaml(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Merge YAML config file contents under the env var overrides."""
        config_path = values.get("config_path", "")
        if not config_path:
            return values
        yaml_data = _load_yaml(config_path)
        # YAML values serve as defaults; env vars (already in *values*) win.
        for key, val in yaml_data.items():
            if key not in values or values[key] is None:
                values[key] = val
            elif isinstance(val, dict) and isinstance(values.get(key), dict):
                values[key] = {**val, **values[key]}
        return values

    @classmethod
    def from_yaml(cls, path: str | Path) -> Self:
        """Construct ``AppConfig`` loading defaults from a YAML file.

        Environment variables still override YAML values.
        """
        return cls(config_path=str(path))
