import hashlib
import os
import random
import string

import pytest

from nutwallet.storage import (
    DBProof,
    DLEQProof,
    Invoice,
    KeysetMintURLNotFoundError,
    MeltQuote,
    MintQuote,
    Proof,
    ProofNotFoundError,
    StorageError,
    TransactionType,
    WalletKeyset,
    WalletStorage,
    hash_to_curve,
)

LETTERS = string.ascii_letters + string.digits


@pytest.fixture
def db(tmp_path):
    storage = WalletStorage(tmp_path)
    yield storage
    storage.close()


def random_string(length):
    return "".join(random.choice(LETTERS) for _ in range(length))


def random_proofs(keyset_id, num):
    return [
        Proof(amount=21, id=keyset_id, secret=random_string(64), c=random_string(64))
        for _ in range(num)
    ]


def to_db_proofs(proofs, quote_id):
    return [
        DBProof(
            y=hash_to_curve(p.secret.encode()).hex(),
            amount=p.amount,
            id=p.id,
            secret=p.secret,
            c=p.c,
            dleq=p.dleq,
            melt_quote_id=quote_id,
        )
        for p in proofs
    ]


def by_secret(items):
    return sorted(items, key=lambda p: p.secret)


def generate_keyset(mint):
    keygen = random_string(32)
    keys = {
        2**i: hash_to_curve((keygen + str(2**i)).encode()).hex() for i in range(64)
    }
    return WalletKeyset(
        id=random_string(32),
        mint_url=mint,
        unit="sat",
        active=True,
        public_keys=keys,
        input_fee_ppk=100,
    )


def mint_quote(quote_id, with_key=False):
    quote = MintQuote(
        quote_id=quote_id,
        mint="http://localhost:3338",
        method="bolt11",
        state="UNPAID",
        amount=21,
    )
    if with_key:
        quote.private_key = os.urandom(32).hex()
    return quote


def melt_quote(quote_id):
    return MeltQuote(
        quote_id=quote_id,
        mint="http://localhost:3338",
        method="bolt11",
        state="UNPAID",
        amount=21,
    )


def test_hash_to_curve_known_vector():
    point = hash_to_curve(bytes(32))
    assert point.hex() == "024cce997d3b518f739663b757deaec95bcd9473c30a14ac2fd04023a739d1a725"


def test_hash_to_curve_is_compressed_and_deterministic():
    first = hash_to_curve(b"message")
    assert len(first) == 33
    assert first[0] == 0x02
    assert hash_to_curve("message") == first
    assert hash_to_curve(b"other") != first


def test_proofs(db):
    keyset_id1 = "keysetId12345"
    proofs1 = random_proofs(keyset_id1, 50)
    db.save_proofs(proofs1)
    assert len(db.get_proofs()) == 50

    db.save_proofs(random_proofs("someotherKeysetId123", 100))

    by_id = db.get_proofs_by_keyset_id(keyset_id1)
    assert len(by_id) == 50
    assert by_secret(proofs1) == by_secret(by_id)

    for proof in proofs1[:3]:
        db.delete_proof(proof.secret)
    assert len(db.get_proofs_by_keyset_id(keyset_id1)) == 47
    assert len(db.get_proofs()) == 147


def test_proof_with_dleq_round_trips(db):
    proof = Proof(
        amount=8,
        id="009a1f293253e41e",
        secret=random_string(64),
        c=random_string(66),
        witness='{"signatures":[]}',
        dleq=DLEQProof(e="aa", s="bb", r="cc"),
    )
    db.save_proofs([proof])
    assert db.get_proofs() == [proof]


def test_delete_missing_proof_raises(db):
    with pytest.raises(ProofNotFoundError):
        db.delete_proof("does-not-exist")


def test_pending_proofs(db):
    keyset_id1 = "keysetId12345"
    proofs1 = random_proofs(keyset_id1, 50)
    db.add_pending_proofs(proofs1)

    pending = db.get_pending_proofs()
    assert len(pending) == 50
    assert by_secret(to_db_proofs(proofs1, "")) == by_secret(pending)

    db.delete_pending_proofs([p.y for p in pending[:3]])
    assert len(db.get_pending_proofs()) == 47

    quote_id = "quoteId12345"
    quote_proofs = random_proofs(keyset_id1, 25)
    db.add_pending_proofs_by_quote_id(quote_proofs, quote_id)

    by_quote = db.get_pending_proofs_by_quote_id(quote_id)
    assert len(by_quote) == 25
    assert by_secret(to_db_proofs(quote_proofs, quote_id)) == by_secret(by_quote)

    db.delete_pending_proofs_by_quote_id(quote_id)
    assert db.get_pending_proofs_by_quote_id(quote_id) == []
    assert len(db.get_pending_proofs()) == 47


def test_delete_pending_proofs_invalid_hex(db):
    with pytest.raises(StorageError):
        db.delete_pending_proofs(["not-hex"])


def test_keysets(db):
    keyset1 = generate_keyset("http://localhost:3338")
    keyset2 = generate_keyset("http://localhost:3338")
    keyset3 = generate_keyset("http://localhost:8888")
    for keyset in (keyset1, keyset2, keyset3):
        db.save_keyset(keyset)

    assert len(db.get_keysets()) == 2
    assert db.get_keyset(keyset1.id) == keyset1

    db.increment_keyset_counter(keyset2.id, 5)
    assert db.get_keyset_counter(keyset1.id) == 0
    assert db.get_keyset_counter(keyset2.id) == 5

    db.increment_keyset_counter(keyset2.id, 3)
    assert db.get_keyset_counter(keyset2.id) == 8

    old_url = "http://localhost:3338"
    new_url = "http://localhost:3339"
    keyset1 = db.get_keyset(keyset1.id)
    keyset2 = db.get_keyset(keyset2.id)

    db.update_keyset_mint_url(old_url, new_url)
    keysets = db.get_keysets()
    assert old_url not in keysets
    assert new_url in keysets

    keyset1.mint_url = new_url
    keyset2.mint_url = new_url
    expected = sorted([keyset1, keyset2], key=lambda k: k.id)
    assert sorted(keysets[new_url], key=lambda k: k.id) == expected
    assert db.get_keyset(keyset1.id) == keyset1


def test_increment_missing_keyset_raises(db):
    with pytest.raises(StorageError, match="keyset does not exist"):
        db.increment_keyset_counter("missing", 1)


def test_missing_keyset_lookups(db):
    assert db.get_keyset("missing") is None
    assert db.get_keyset_counter("missing") == 0


def test_update_unknown_mint_url_raises(db):
    with pytest.raises(KeysetMintURLNotFoundError):
        db.update_keyset_mint_url("http://localhost:1", "http://localhost:2")


def test_mint_quotes(db):
    quote = mint_quote("quoteId1")
    db.save_mint_quote(quote)
    for _ in range(50):
        db.save_mint_quote(mint_quote(random_string(32)))

    from_db = db.get_mint_quote_by_id("quoteId1")
    assert from_db == quote
    assert from_db.private_key is None
    assert len(db.get_mint_quotes()) == 51

    keyed = mint_quote("quote-with-privatekey", with_key=True)
    db.save_mint_quote(keyed)
    keyed_from_db = db.get_mint_quote_by_id("quote-with-privatekey")
    assert keyed_from_db == keyed
    assert keyed_from_db.private_key == keyed.private_key


def test_missing_quotes_are_none(db):
    assert db.get_mint_quote_by_id("nope") is None
    assert db.get_melt_quote_by_id("nope") is None


def test_melt_quotes(db):
    quote = melt_quote("quoteId1")
    db.save_melt_quote(quote)
    for _ in range(50):
        db.save_melt_quote(melt_quote(random_string(32)))

    assert db.get_melt_quote_by_id("quoteId1") == quote
    assert len(db.get_melt_quotes()) == 51


def test_mnemonic_and_seed(db):
    assert db.get_mnemonic() == ""
    assert db.get_seed() is None
    seed = hashlib.sha512(b"seed").digest()
    db.save_mnemonic_seed("abandon ability able", seed)
    assert db.get_mnemonic() == "abandon ability able"
    assert db.get_seed() == seed


def test_invoices_lookup(db):
    invoice = Invoice(
        transaction_type=TransactionType.MINT,
        id="quote-a",
        payment_hash="ab" * 32,
        quote_amount=100,
    )
    db.save_invoice(invoice)
    assert db.get_invoice("ab" * 32) == invoice
    assert db.get_invoice_by_quote_id("quote-a") == invoice
    assert db.get_invoice("cd" * 32) is None
    assert db.get_invoice_by_quote_id("other") is None


def test_migrate_invoices_to_quotes(db):
    db.save_invoice(
        Invoice(
            transaction_type=TransactionType.MINT,
            id="mint-quote",
            mint="http://localhost:3338",
            quote_amount=100,
            payment_request="lnbc1mint",
            payment_hash="01" * 32,
            paid=True,
        )
    )
    db.save_invoice(
        Invoice(
            transaction_type=TransactionType.MELT,
            id="melt-quote",
            mint="http://localhost:3338",
            quote_amount=100,
            invoice_amount=90,
            payment_request="lnbc1melt",
            payment_hash="02" * 32,
        )
    )

    db.migrate_invoices_to_quotes()

    mint = db.get_mint_quote_by_id("mint-quote")
    assert mint.state == "PAID"
    assert mint.amount == 100
    assert mint.method == "bolt11"
    assert mint.unit == "sat"

    melt = db.get_melt_quote_by_id("melt-quote")
    assert melt.state == "UNPAID"
    assert melt.fee_reserve == 10
    assert melt.payment_request == "lnbc1melt"

    assert db.get_invoices() == []


def test_reopen_persists_and_migrates(tmp_path):
    with WalletStorage(tmp_path) as first:
        first.save_proofs(random_proofs("keyset", 3))
        first.save_invoice(
            Invoice(transaction_type=TransactionType.MINT, id="q1", payment_hash="03" * 32)
        )
    with WalletStorage(tmp_path) as second:
        assert len(second.get_proofs()) == 3
        assert second.get_mint_quote_by_id("q1").state == "UNPAID"
        assert second.get_invoices() == []


def test_missing_directory_raises(tmp_path):
    with pytest.raises(StorageError):
        WalletStorage(tmp_path / "missing" / "dir")