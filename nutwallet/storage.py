"""Persistent wallet storage for proofs, keysets, quotes and the wallet seed.

Data is kept in a single SQLite file named ``wallet.db`` inside the wallet
directory. Records are grouped into named buckets; keysets are further
grouped by the URL of the mint they belong to.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any, Iterator

KEYSETS_BUCKET = "keysets"
PROOFS_BUCKET = "proofs"
PENDING_PROOFS_BUCKET = "pending_proofs"
MINT_QUOTES_BUCKET = "mint_quotes"
MELT_QUOTES_BUCKET = "melt_quotes"
INVOICES_BUCKET = "invoices"
SEED_BUCKET = "seed"
MNEMONIC_KEY = "mnemonic"

BOLT11_METHOD = "bolt11"
SAT_UNIT = "sat"

_P = 2**256 - 2**32 - 977
_DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"
_MAX_COUNTER = 2**16


class StorageError(Exception):
    """Raised when the wallet database cannot complete an operation."""


class ProofNotFoundError(StorageError):
    """Raised when a proof to delete is not stored."""

    def __init__(self, message: str = "proof not found") -> None:
        super().__init__(message)


class KeysetMintURLNotFoundError(StorageError):
    """Raised when no keysets are stored for a mint URL."""

    def __init__(self, message: str = "keyset with mint url not found") -> None:
        super().__init__(message)


def _is_valid_x(x: int) -> bool:
    if x >= _P:
        return False
    rhs = (pow(x, 3, _P) + 7) % _P
    y = pow(rhs, (_P + 1) // 4, _P)
    return y * y % _P == rhs


def hash_to_curve(message: bytes | str) -> bytes:
    """Map a message to a secp256k1 point, returned in compressed form."""
    if isinstance(message, str):
        message = message.encode()
    msg_hash = hashlib.sha256(_DOMAIN_SEPARATOR + message).digest()
    for counter in range(_MAX_COUNTER):
        candidate = hashlib.sha256(msg_hash + counter.to_bytes(4, "little")).digest()
        if _is_valid_x(int.from_bytes(candidate, "big")):
            return b"\x02" + candidate
    raise ValueError("no valid point found")


class TransactionType(IntEnum):
    MINT = 0
    MELT = 1


@dataclass
class DLEQProof:
    e: str
    s: str
    r: str = ""

    def _to_dict(self) -> dict[str, Any]:
        data = {"e": self.e, "s": self.s}
        if self.r:
            data["r"] = self.r
        return data

    @classmethod
    def _from_dict(cls, data: dict[str, Any] | None) -> DLEQProof | None:
        if not data:
            return None
        return cls(e=data["e"], s=data["s"], r=data.get("r", ""))


def _dleq_dict(dleq: DLEQProof | None) -> dict[str, Any]:
    return {"dleq": dleq._to_dict()} if dleq is not None else {}


@dataclass
class Proof:
    amount: int
    id: str
    secret: str
    c: str
    witness: str = ""
    dleq: DLEQProof | None = None

    def _to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "amount": self.amount,
            "id": self.id,
            "secret": self.secret,
            "C": self.c,
        }
        if self.witness:
            data["witness"] = self.witness
        data.update(_dleq_dict(self.dleq))
        return data

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> Proof:
        return cls(
            amount=int(data["amount"]),
            id=data["id"],
            secret=data["secret"],
            c=data["C"],
            witness=data.get("witness", ""),
            dleq=DLEQProof._from_dict(data.get("dleq")),
        )


@dataclass
class DBProof:
    y: str
    amount: int
    id: str
    secret: str
    c: str
    dleq: DLEQProof | None = None
    melt_quote_id: str = ""

    def _to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "y": self.y,
            "amount": self.amount,
            "id": self.id,
            "secret": self.secret,
            "C": self.c,
        }
        data.update(_dleq_dict(self.dleq))
        if self.melt_quote_id:
            data["melt_quote_id"] = self.melt_quote_id
        return data

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> DBProof:
        return cls(
            y=data["y"],
            amount=int(data["amount"]),
            id=data["id"],
            secret=data["secret"],
            c=data["C"],
            dleq=DLEQProof._from_dict(data.get("dleq")),
            melt_quote_id=data.get("melt_quote_id", ""),
        )


@dataclass
class WalletKeyset:
    id: str
    mint_url: str
    unit: str
    active: bool
    public_keys: dict[int, str] = field(default_factory=dict)
    counter: int = 0
    input_fee_ppk: int = 0

    def _to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mint_url": self.mint_url,
            "unit": self.unit,
            "active": self.active,
            "public_keys": {str(amount): key for amount, key in self.public_keys.items()},
            "counter": self.counter,
            "input_fee_ppk": self.input_fee_ppk,
        }

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> WalletKeyset:
        return cls(
            id=data["id"],
            mint_url=data["mint_url"],
            unit=data["unit"],
            active=bool(data["active"]),
            public_keys={int(amount): key for amount, key in (data.get("public_keys") or {}).items()},
            counter=int(data.get("counter", 0)),
            input_fee_ppk=int(data.get("input_fee_ppk", 0)),
        )


@dataclass
class MintQuote:
    quote_id: str
    mint: str
    method: str
    state: str
    unit: str = ""
    amount: int = 0
    payment_request: str = ""
    created_at: int = 0
    quote_expiry: int = 0
    private_key: str | None = None

    def _to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "quote_id": self.quote_id,
            "mint": self.mint,
            "method": self.method,
            "state": self.state,
            "unit": self.unit,
            "amount": self.amount,
            "payment_request": self.payment_request,
            "created_at": self.created_at,
            "quote_expiry": self.quote_expiry,
        }
        if self.private_key is not None:
            data["private_key"] = self.private_key
        return data

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> MintQuote:
        return cls(
            quote_id=data["quote_id"],
            mint=data["mint"],
            method=data["method"],
            state=data["state"],
            unit=data.get("unit", ""),
            amount=int(data.get("amount", 0)),
            payment_request=data.get("payment_request", ""),
            created_at=int(data.get("created_at", 0)),
            quote_expiry=int(data.get("quote_expiry", 0)),
            private_key=data.get("private_key"),
        )


@dataclass
class MeltQuote:
    quote_id: str
    mint: str
    method: str
    state: str
    unit: str = ""
    payment_request: str = ""
    amount: int = 0
    fee_reserve: int = 0
    preimage: str = ""
    created_at: int = 0
    settled_at: int = 0
    quote_expiry: int = 0

    def _to_dict(self) -> dict[str, Any]:
        return {
            "quote_id": self.quote_id,
            "mint": self.mint,
            "method": self.method,
            "state": self.state,
            "unit": self.unit,
            "payment_request": self.payment_request,
            "amount": self.amount,
            "fee_reserve": self.fee_reserve,
            "preimage": self.preimage,
            "created_at": self.created_at,
            "settled_at": self.settled_at,
            "quote_expiry": self.quote_expiry,
        }

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> MeltQuote:
        return cls(
            quote_id=data["quote_id"],
            mint=data["mint"],
            method=data["method"],
            state=data["state"],
            unit=data.get("unit", ""),
            payment_request=data.get("payment_request", ""),
            amount=int(data.get("amount", 0)),
            fee_reserve=int(data.get("fee_reserve", 0)),
            preimage=data.get("preimage", ""),
            created_at=int(data.get("created_at", 0)),
            settled_at=int(data.get("settled_at", 0)),
            quote_expiry=int(data.get("quote_expiry", 0)),
        )


@dataclass
class Invoice:
    """Legacy record of a mint or melt operation, kept only for migration."""

    transaction_type: TransactionType
    id: str
    mint: str = ""
    quote_amount: int = 0
    invoice_amount: int = 0
    payment_request: str = ""
    payment_hash: str = ""
    preimage: str = ""
    created_at: int = 0
    paid: bool = False
    settled_at: int = 0
    quote_expiry: int = 0

    def _to_dict(self) -> dict[str, Any]:
        return {
            "transaction_type": int(self.transaction_type),
            "id": self.id,
            "mint": self.mint,
            "quote_amount": self.quote_amount,
            "invoice_amount": self.invoice_amount,
            "payment_request": self.payment_request,
            "payment_hash": self.payment_hash,
            "preimage": self.preimage,
            "created_at": self.created_at,
            "paid": self.paid,
            "settled_at": self.settled_at,
            "quote_expiry": self.quote_expiry,
        }

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> Invoice:
        return cls(
            transaction_type=TransactionType(int(data["transaction_type"])),
            id=data["id"],
            mint=data.get("mint", ""),
            quote_amount=int(data.get("quote_amount", 0)),
            invoice_amount=int(data.get("invoice_amount", 0)),
            payment_request=data.get("payment_request", ""),
            payment_hash=data.get("payment_hash", ""),
            preimage=data.get("preimage", ""),
            created_at=int(data.get("created_at", 0)),
            paid=bool(data.get("paid", False)),
            settled_at=int(data.get("settled_at", 0)),
            quote_expiry=int(data.get("quote_expiry", 0)),
        )


def _encode(record: Any) -> bytes:
    return json.dumps(record._to_dict(), separators=(",", ":")).encode()


def _decode(cls: Any, raw: bytes) -> Any:
    try:
        return cls._from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise StorageError(f"invalid record: {exc}") from exc


class WalletStorage:
    """Wallet database stored as ``wallet.db`` in the given directory."""

    def __init__(self, path: str | Path) -> None:
        self._lock = threading.RLock()
        db_file = Path(path) / "wallet.db"
        try:
            self._conn = sqlite3.connect(str(db_file), check_same_thread=False)
            with self._conn:
                self._conn.execute(
                    "CREATE TABLE IF NOT EXISTS entries ("
                    " bucket TEXT NOT NULL,"
                    " sub TEXT NOT NULL DEFAULT '',"
                    " key BLOB NOT NULL,"
                    " value BLOB NOT NULL,"
                    " PRIMARY KEY (bucket, sub, key))"
                )
        except sqlite3.Error as exc:
            raise StorageError(f"error setting up wallet db: {exc}") from exc
        try:
            self.migrate_invoices_to_quotes()
        except StorageError as exc:
            self._conn.close()
            raise StorageError(f"error migrating db: {exc}") from exc

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> WalletStorage:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # low level bucket access

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc

    @staticmethod
    def _put(conn: sqlite3.Connection, bucket: str, key: bytes, value: bytes, sub: str = "") -> None:
        conn.execute(
            "INSERT OR REPLACE INTO entries (bucket, sub, key, value) VALUES (?, ?, ?, ?)",
            (bucket, sub, key, value),
        )

    @staticmethod
    def _get(conn: sqlite3.Connection, bucket: str, key: bytes, sub: str = "") -> bytes | None:
        row = conn.execute(
            "SELECT value FROM entries WHERE bucket = ? AND sub = ? AND key = ?",
            (bucket, sub, key),
        ).fetchone()
        return bytes(row[0]) if row is not None else None

    @staticmethod
    def _items(conn: sqlite3.Connection, bucket: str, sub: str = "") -> list[tuple[bytes, bytes]]:
        rows = conn.execute(
            "SELECT key, value FROM entries WHERE bucket = ? AND sub = ? ORDER BY key",
            (bucket, sub),
        ).fetchall()
        return [(bytes(key), bytes(value)) for key, value in rows]

    @staticmethod
    def _delete(conn: sqlite3.Connection, bucket: str, key: bytes, sub: str = "") -> None:
        conn.execute(
            "DELETE FROM entries WHERE bucket = ? AND sub = ? AND key = ?",
            (bucket, sub, key),
        )

    @staticmethod
    def _subs(conn: sqlite3.Connection, bucket: str) -> list[str]:
        rows = conn.execute(
            "SELECT DISTINCT sub FROM entries WHERE bucket = ? ORDER BY sub", (bucket,)
        ).fetchall()
        return [row[0] for row in rows]

    # seed

    def save_mnemonic_seed(self, mnemonic: str, seed: bytes) -> None:
        with self._transaction() as conn:
            self._put(conn, SEED_BUCKET, SEED_BUCKET.encode(), bytes(seed))
            self._put(conn, SEED_BUCKET, MNEMONIC_KEY.encode(), mnemonic.encode())

    def get_mnemonic(self) -> str:
        with self._transaction() as conn:
            value = self._get(conn, SEED_BUCKET, MNEMONIC_KEY.encode())
        return value.decode() if value is not None else ""

    def get_seed(self) -> bytes | None:
        with self._transaction() as conn:
            return self._get(conn, SEED_BUCKET, SEED_BUCKET.encode())

    # proofs

    def save_proofs(self, proofs: list[Proof]) -> None:
        with self._transaction() as conn:
            for proof in proofs:
                self._put(conn, PROOFS_BUCKET, proof.secret.encode(), _encode(proof))

    def get_proofs(self) -> list[Proof]:
        with self._transaction() as conn:
            items = self._items(conn, PROOFS_BUCKET)
        proofs = []
        for _, value in items:
            try:
                proofs.append(_decode(Proof, value))
            except StorageError:
                continue
        return proofs

    def get_proofs_by_keyset_id(self, keyset_id: str) -> list[Proof]:
        with self._transaction() as conn:
            items = self._items(conn, PROOFS_BUCKET)
        try:
            proofs = [_decode(Proof, value) for _, value in items]
        except StorageError:
            return []
        return [proof for proof in proofs if proof.id == keyset_id]

    def delete_proof(self, secret: str) -> None:
        with self._transaction() as conn:
            if self._get(conn, PROOFS_BUCKET, secret.encode()) is None:
                raise ProofNotFoundError()
            self._delete(conn, PROOFS_BUCKET, secret.encode())

    # pending proofs

    def _add_pending(self, proofs: list[Proof], quote_id: str) -> None:
        with self._transaction() as conn:
            for proof in proofs:
                y = hash_to_curve(proof.secret.encode())
                db_proof = DBProof(
                    y=y.hex(),
                    amount=proof.amount,
                    id=proof.id,
                    secret=proof.secret,
                    c=proof.c,
                    dleq=proof.dleq,
                    melt_quote_id=quote_id,
                )
                self._put(conn, PENDING_PROOFS_BUCKET, y, _encode(db_proof))

    def add_pending_proofs(self, proofs: list[Proof]) -> None:
        self._add_pending(proofs, "")

    def add_pending_proofs_by_quote_id(self, proofs: list[Proof], quote_id: str) -> None:
        self._add_pending(proofs, quote_id)

    def get_pending_proofs(self) -> list[DBProof]:
        with self._transaction() as conn:
            items = self._items(conn, PENDING_PROOFS_BUCKET)
        proofs = []
        for _, value in items:
            try:
                proofs.append(_decode(DBProof, value))
            except StorageError:
                continue
        return proofs

    def get_pending_proofs_by_quote_id(self, quote_id: str) -> list[DBProof]:
        with self._transaction() as conn:
            items = self._items(conn, PENDING_PROOFS_BUCKET)
        try:
            proofs = [_decode(DBProof, value) for _, value in items]
        except StorageError:
            return []
        return [proof for proof in proofs if proof.melt_quote_id == quote_id]

    def delete_pending_proofs(self, ys: list[str]) -> None:
        with self._transaction() as conn:
            for y in ys:
                try:
                    key = bytes.fromhex(y)
                except ValueError as exc:
                    raise StorageError(f"invalid Y: {exc}") from exc
                self._delete(conn, PENDING_PROOFS_BUCKET, key)

    def delete_pending_proofs_by_quote_id(self, quote_id: str) -> None:
        with self._transaction() as conn:
            for _, value in self._items(conn, PENDING_PROOFS_BUCKET):
                proof = _decode(DBProof, value)
                if proof.melt_quote_id == quote_id:
                    try:
                        key = bytes.fromhex(proof.y)
                    except ValueError as exc:
                        raise StorageError(f"invalid Y: {exc}") from exc
                    self._delete(conn, PENDING_PROOFS_BUCKET, key)

    # keysets, grouped by mint URL

    def save_keyset(self, keyset: WalletKeyset) -> None:
        with self._transaction() as conn:
            self._put(conn, KEYSETS_BUCKET, keyset.id.encode(), _encode(keyset), sub=keyset.mint_url)

    def get_keysets(self) -> dict[str, list[WalletKeyset]]:
        with self._transaction() as conn:
            grouped = {
                mint_url: self._items(conn, KEYSETS_BUCKET, sub=mint_url)
                for mint_url in self._subs(conn, KEYSETS_BUCKET)
            }
        try:
            return {
                mint_url: [_decode(WalletKeyset, value) for _, value in items]
                for mint_url, items in grouped.items()
            }
        except StorageError:
            return {}

    def get_keyset(self, keyset_id: str) -> WalletKeyset | None:
        found = None
        with self._transaction() as conn:
            for mint_url in self._subs(conn, KEYSETS_BUCKET):
                value = self._get(conn, KEYSETS_BUCKET, keyset_id.encode(), sub=mint_url)
                if value is None:
                    continue
                try:
                    found = _decode(WalletKeyset, value)
                except StorageError:
                    break
        return found

    def increment_keyset_counter(self, keyset_id: str, num: int) -> None:
        found = False
        with self._transaction() as conn:
            for mint_url in self._subs(conn, KEYSETS_BUCKET):
                value = self._get(conn, KEYSETS_BUCKET, keyset_id.encode(), sub=mint_url)
                if value is None:
                    continue
                try:
                    keyset = _decode(WalletKeyset, value)
                except StorageError as exc:
                    raise StorageError(f"error reading keyset from db: {exc}") from exc
                keyset.counter += num
                self._put(conn, KEYSETS_BUCKET, keyset_id.encode(), _encode(keyset), sub=mint_url)
                found = True
            if not found:
                raise StorageError("keyset does not exist")

    def get_keyset_counter(self, keyset_id: str) -> int:
        keyset = self.get_keyset(keyset_id)
        return keyset.counter if keyset is not None else 0

    def update_keyset_mint_url(self, old_url: str, new_url: str) -> None:
        """Move every keyset stored under ``old_url`` to ``new_url``."""
        with self._transaction() as conn:
            items = self._items(conn, KEYSETS_BUCKET, sub=old_url)
            if not items:
                raise KeysetMintURLNotFoundError()
            updated = []
            for key, value in items:
                keyset = _decode(WalletKeyset, value)
                keyset.mint_url = new_url
                updated.append((key, _encode(keyset)))
            conn.execute(
                "DELETE FROM entries WHERE bucket = ? AND sub = ?", (KEYSETS_BUCKET, old_url)
            )
            for key, value in updated:
                self._put(conn, KEYSETS_BUCKET, key, value, sub=new_url)

    # quotes

    def save_mint_quote(self, quote: MintQuote) -> None:
        with self._transaction() as conn:
            self._put(conn, MINT_QUOTES_BUCKET, quote.quote_id.encode(), _encode(quote))

    def get_mint_quotes(self) -> list[MintQuote]:
        with self._transaction() as conn:
            items = self._items(conn, MINT_QUOTES_BUCKET)
        quotes = []
        for _, value in items:
            try:
                quotes.append(_decode(MintQuote, value))
            except StorageError:
                continue
        return quotes

    def get_mint_quote_by_id(self, quote_id: str) -> MintQuote | None:
        with self._transaction() as conn:
            value = self._get(conn, MINT_QUOTES_BUCKET, quote_id.encode())
        if value is None:
            return None
        try:
            return _decode(MintQuote, value)
        except StorageError:
            return None

    def save_melt_quote(self, quote: MeltQuote) -> None:
        with self._transaction() as conn:
            self._put(conn, MELT_QUOTES_BUCKET, quote.quote_id.encode(), _encode(quote))

    def get_melt_quotes(self) -> list[MeltQuote]:
        with self._transaction() as conn:
            items = self._items(conn, MELT_QUOTES_BUCKET)
        quotes = []
        for _, value in items:
            try:
                quotes.append(_decode(MeltQuote, value))
            except StorageError:
                continue
        return quotes

    def get_melt_quote_by_id(self, quote_id: str) -> MeltQuote | None:
        with self._transaction() as conn:
            value = self._get(conn, MELT_QUOTES_BUCKET, quote_id.encode())
        if value is None:
            return None
        try:
            return _decode(MeltQuote, value)
        except StorageError:
            return None

    # legacy invoices

    def migrate_invoices_to_quotes(self) -> None:
        """Turn stored invoices into mint and melt quotes, then drop the invoices."""
        invoices = self.get_invoices()
        for invoice in invoices:
            if invoice.transaction_type is TransactionType.MINT:
                quote = MintQuote(
                    quote_id=invoice.id,
                    mint=invoice.mint,
                    method=BOLT11_METHOD,
                    state="PAID" if invoice.paid else "UNPAID",
                    unit=SAT_UNIT,
                    amount=invoice.quote_amount,
                    payment_request=invoice.payment_request,
                    created_at=invoice.created_at,
                    quote_expiry=invoice.quote_expiry,
                )
                try:
                    self.save_mint_quote(quote)
                except StorageError as exc:
                    raise StorageError(f"error saving mint quote: {exc}") from exc
            elif invoice.transaction_type is TransactionType.MELT:
                melt_quote = MeltQuote(
                    quote_id=invoice.id,
                    mint=invoice.mint,
                    method=BOLT11_METHOD,
                    state="PAID" if invoice.paid else "UNPAID",
                    unit=SAT_UNIT,
                    payment_request=invoice.payment_request,
                    amount=invoice.quote_amount,
                    fee_reserve=invoice.quote_amount - invoice.invoice_amount,
                    preimage=invoice.preimage,
                    settled_at=invoice.settled_at,
                    quote_expiry=invoice.quote_expiry,
                )
                try:
                    self.save_melt_quote(melt_quote)
                except StorageError as exc:
                    raise StorageError(f"error saving melt quote: {exc}") from exc

        if invoices:
            with self._transaction() as conn:
                conn.execute("DELETE FROM entries WHERE bucket = ?", (INVOICES_BUCKET,))

    def save_invoice(self, invoice: Invoice) -> None:
        try:
            with self._transaction() as conn:
                self._put(conn, INVOICES_BUCKET, invoice.payment_hash.encode(), _encode(invoice))
        except StorageError as exc:
            raise StorageError(f"error saving invoice: {exc}") from exc

    def get_invoice(self, payment_hash: str) -> Invoice | None:
        with self._transaction() as conn:
            value = self._get(conn, INVOICES_BUCKET, payment_hash.encode())
        if value is None:
            return None
        try:
            return _decode(Invoice, value)
        except StorageError:
            return None

    def get_invoice_by_quote_id(self, quote_id: str) -> Invoice | None:
        with self._transaction() as conn:
            items = self._items(conn, INVOICES_BUCKET)
        for _, value in items:
            try:
                invoice = _decode(Invoice, value)
            except StorageError:
                return None
            if invoice.id == quote_id:
                return invoice
        return None

    def get_invoices(self) -> list[Invoice]:
        with self._transaction() as conn:
            items = self._items(conn, INVOICES_BUCKET)
        try:
            return [_decode(Invoice, value) for _, value in items]
        except StorageError:
            return []