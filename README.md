# nutwallet

Building blocks for working with Cashu ecash mints:

- `nutwallet.storage` – wallet storage in a SQLite file (`wallet.db`) for
  proofs, pending proofs, keysets and their counters, mint and melt quotes,
  and the mnemonic and seed.
- `nutwallet.client` – functions for a mint's HTTP API: info, keys, keysets,
  mint and melt quotes, mint, melt, swap, check state and restore.
- `nutwallet.submanager` – a websocket subscription manager for mints that
  advertise NUT-17 support.
- `nutwallet.mintws` – the mint-side handling of websocket subscription
  requests and of quote and proof state updates.

## Installation

```
pip install nutwallet
```

For running the tests:

```
pip install "nutwallet[test]"
pytest
```

## Storage

```python
from nutwallet.storage import WalletStorage, Proof

with WalletStorage("./wallet") as db:
    db.save_proofs([Proof(amount=8, id="009a1f293253e41e", secret="abc", c="02...")])
    print(sum(p.amount for p in db.get_proofs()))
```

`WalletStorage` opens or creates `wallet.db` in the given directory. Proofs are
keyed by their secret; pending proofs are keyed by the point `hash_to_curve`
gives for the secret and may be tied to a melt quote id. Keysets
(`WalletKeyset`) are grouped by mint URL: `get_keysets()` returns a dict from
mint URL to a list of keysets, and `update_keyset_mint_url(old, new)` moves
them all to a new URL. `increment_keyset_counter` raises `StorageError` for an
unknown keyset; `get_keyset_counter` returns 0 for one.

Deleting a proof that is not stored raises `ProofNotFoundError`. Moving keysets
from a mint URL that has none stored raises `KeysetMintURLNotFoundError`. Both
are subclasses of `StorageError`.

On opening, any stored legacy `Invoice` records are turned into `MintQuote` or
`MeltQuote` records and then removed.

## Talking to a mint

```python
from nutwallet import client

info = client.get_mint_info("http://localhost:3338")
keysets = client.get_all_keysets("http://localhost:3338")
```

Requests are plain dictionaries and the functions return the decoded JSON
documents. When the mint answers with HTTP 400 a `MintError` is raised carrying
the mint's `detail` and `code`; any other status than 200 raises `MintError`
with the response text.

## Subscriptions

```python
import threading
from nutwallet.submanager import SubscriptionManager, SubscriptionKind

manager = SubscriptionManager("http://localhost:3338")
threading.Thread(target=manager.run, daemon=True).start()

subscription = manager.subscribe(SubscriptionKind.BOLT11_MINT_QUOTE, ["quote-id"])
notification = subscription.read(timeout=30)
manager.close_subscription(subscription.sub_id())
manager.close()
```

`SubscriptionManager` raises `NUT17NotSupportedError` if the mint does not
advertise websocket support, and `SubscriptionError` if the mint info cannot be
fetched, a kind is not supported, or the mint does not confirm a subscription
within `response_timeout` seconds (10 by default). `websocket_url(mint)` gives
the `ws://` or `wss://` endpoint used for a mint URL.

## Mint-side subscription handling

```python
from nutwallet.mintws import ClientSession

quotes = {"q1": {"id": "q1", "payment_request": "lnbc...", "state": "UNPAID", "expiry": 0}}
session = ClientSession(lambda quote_id: quotes[quote_id])

replies = session.handle_message(
    '{"jsonrpc": "2.0", "method": "subscribe", "id": 0,'
    ' "params": {"kind": "bolt11_mint_quote", "subId": "s1", "filters": ["q1"]}}'
)
# replies: the JSON response, then one notification per quote with its state

update = session.subscriptions["s1"].update({**quotes["q1"], "state": "PAID"})
```

A `ClientSession` accepts `bolt11_mint_quote` subscriptions only, at most 100
per session and 50 filters per subscription. Refused requests come back as
JSON-RPC errors with code 1000 (`WsError`); a message that is not a valid
request is answered with id -1. A sub-client's `update` returns the
notification to send when a tracked quote or proof changed state, and `None`
otherwise. `ProofStatesSubClient` tracks proof states by Y value in the same
way but is not offered through `ClientSession`.

## What this package does not do

- It runs no mint and no websocket server: `nutwallet.mintws` only turns
  incoming messages and published events into replies; accepting connections,
  sending the messages and delivering events are up to the caller.
- It has no wallet operations such as minting, sending, receiving, melting or
  restoring from a mnemonic, and no blinding, unblinding or key derivation.
  `hash_to_curve` is the only cryptographic function it has.
- It has no command-line interface.