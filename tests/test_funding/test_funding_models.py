"""Tests for funding resource parsing."""

from __future__ import annotations

import pytest

from charm_pay.funding.models import FundingResource, parse_utxo_id

_TXID = "ab" * 32


class TestFundingResource:
    def test_from_esplora_dict(self) -> None:
        res = FundingResource.from_dict({"txid": _TXID, "vout": 2, "value": 1234})
        assert res == FundingResource(_TXID, 2, 1234)
        assert res.utxo_id == f"{_TXID}:2"

    def test_from_generic_dict(self) -> None:
        res = FundingResource.from_dict({"id": _TXID, "outputIndex": 1, "value": 99})
        assert (res.txid, res.vout, res.value) == (_TXID, 1, 99)

    def test_raw_tx_not_part_of_identity(self) -> None:
        res = FundingResource(_TXID, 0, 1)
        with_raw = res.with_raw_tx("00")
        assert with_raw == res
        assert with_raw.raw_tx == "00"
        assert res.raw_tx is None


class TestParseUtxoId:
    def test_valid(self) -> None:
        assert parse_utxo_id(f"{_TXID}:7") == (_TXID, 7)

    @pytest.mark.parametrize("bad", ["", _TXID, f"{_TXID}:", f"{_TXID}:x", "abc:0"])
    def test_invalid(self, bad: str) -> None:
        with pytest.raises(ValueError, match="Invalid UTXO id"):
            parse_utxo_id(bad)
