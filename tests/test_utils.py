import re

from utils import (
    GENESIS_PREVIOUS_HASH,
    compute_hash,
    new_batch_id,
    sha256_hex,
    verify_chain,
)


def _chain(n):
    prev = GENESIS_PREVIOUS_HASH
    out = []
    for i in range(n):
        payload = {"batch_id": f"BATCH_{i}", "moisture": 10.0 + i}
        tx_id = f"tx_{i}"
        h = compute_hash(payload, tx_id)
        out.append({"id": tx_id, "payload": payload, "hash": h, "previous_hash": prev})
        prev = h
    return out


def test_sha256_hex_is_256_bit():
    digest = sha256_hex(b"herb")
    assert len(digest) == 64
    assert digest == sha256_hex(b"herb")


def test_compute_hash_ignores_key_order():
    a = compute_hash({"species": "Tulsi", "moisture": 11.0}, "tx_1")
    b = compute_hash({"moisture": 11.0, "species": "Tulsi"}, "tx_1")
    assert a == b


def test_compute_hash_covers_id_and_payload():
    base = compute_hash({"species": "Tulsi"}, "tx_1")
    assert compute_hash({"species": "Tulsi"}, "tx_2") != base
    assert compute_hash({"species": "Neem"}, "tx_1") != base


def test_verify_chain_intact():
    assert verify_chain(_chain(5)) == -1
    assert verify_chain([]) == -1


def test_verify_chain_reports_tampered_payload():
    chain = _chain(5)
    chain[2]["payload"]["moisture"] = 99.0
    assert verify_chain(chain) == 2


def test_verify_chain_reports_broken_link():
    chain = _chain(4)
    chain[3]["previous_hash"] = chain[1]["hash"]
    assert verify_chain(chain) == 3


def test_new_batch_id_format():
    batch_id = new_batch_id("Ashwagandha")
    assert re.match(r"^BATCH_ASH_[0-9]+_[0-9A-F]{4}$", batch_id)
    assert new_batch_id("").startswith("BATCH_HRB_")
