# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
import re

import pytest

from ecash_gate.ledger import ProofLedger, new_key
from ecash_gate.models import Proof
from ecash_gate.receipts import issue_receipt, issue_refund, token_hash
from ecash_gate.tokens import decode_stamp


def _proofs(*amounts):
    return [Proof(id="00ab", amount=a, secret=f"s{i}", C="02ff") for i, a in enumerate(amounts)]


def test_key_schema():
    assert re.fullmatch(r"proofs:\d{13}:[a-z0-9]{6}", new_key())


@pytest.mark.asyncio
class TestProofLedger:
    async def test_store_and_balance(self):
        ledger = ProofLedger()
        k1 = await ledger.store("https://a", _proofs(1, 2))
        await ledger.store("https://b", _proofs(8))

        assert k1 != (await ledger.list_all())[1].key
        assert await ledger.balance() == 11
        assert await ledger.balance_by_mint() == {"https://a": 3, "https://b": 8}
        assert (await ledger.get(k1)).amount == 3

    async def test_replace_and_delete(self):
        ledger = ProofLedger()
        key = await ledger.store("https://a", _proofs(16))

        await ledger.replace(key, _proofs(4))
        assert await ledger.balance() == 4

        await ledger.delete_keys([key, "proofs:missing"])
        assert await ledger.balance() == 0
        assert await ledger.get(key) is None


class TestReceipts:
    def test_token_hash_is_short_and_stable(self):
        assert token_hash(_proofs(1, 2)) == token_hash(_proofs(1, 2))
        assert len(token_hash(_proofs(1))) == 16

    def test_receipt_fields(self, make_token):
        stamp = decode_stamp(make_token(4))

        receipt = issue_receipt(stamp, "flat", 4)

        assert receipt.amount == 4
        assert receipt.unit == "usd"
        assert receipt.timestamp.endswith("Z")
        assert receipt.token_hash == token_hash(stamp.proofs)
        assert stamp.proofs[0].secret not in receipt.model_dump_json()

    def test_refund_needs_proofs(self):
        with pytest.raises(ValueError):
            issue_refund([], "https://a", "usd")

    def test_refund_round_trips(self, mint):
        token = issue_refund(mint.issue(6), mint.url, "usd")
        assert decode_stamp(token).amount == 6
