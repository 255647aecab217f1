"""Mint side of websocket subscriptions: request handling and quote/proof updates.

A :class:`ClientSession` stands for one websocket connection. It turns raw
JSON-RPC requests into the JSON messages to send back. Each subscription is a
sub-client whose :meth:`update` method takes an event published by the mint and
returns the notification to send, or ``None`` when nothing changed.
"""

from __future__ import annotations

import json
import threading
from typing import Any, Callable, Mapping

BOLT11_MINT_QUOTE_TOPIC = "bolt11_mint_quote_topic"
BOLT11_MELT_QUOTE_TOPIC = "bolt11_melt_quote_topic"
PROOF_STATE_TOPIC = "proof_state_topic"

JSONRPC_2 = "2.0"
SUBSCRIBE = "subscribe"
UNSUBSCRIBE = "unsubscribe"
STATUS_OK = "OK"
BOLT11_MINT_QUOTE_KIND = "bolt11_mint_quote"
UNSPENT = "UNSPENT"

MAX_SUBSCRIPTIONS = 100
MAX_QUOTE_FILTERS = 50
ERROR_CODE = 1000


class WsError(Exception):
    """An error answer to a websocket request."""

    def __init__(self, code: int, message: str, request_id: int) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.id = request_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "jsonrpc": JSONRPC_2,
            "error": {"code": self.code, "message": self.message},
            "id": self.id,
        }


def _load(payload: Any) -> Any:
    if isinstance(payload, (str, bytes, bytearray)):
        return json.loads(payload)
    return payload


def _notification(sub_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_2,
        "method": SUBSCRIBE,
        "params": {"subId": sub_id, "payload": payload},
    }


def _quote_state(quote: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "quote": quote.get("id", ""),
        "request": quote.get("payment_request", ""),
        "state": quote.get("state", ""),
        "expiry": quote.get("expiry", 0),
    }


def _response(sub_id: str, request_id: int) -> dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_2,
        "result": {"status": STATUS_OK, "subId": sub_id},
        "id": request_id,
    }


class MintQuotesSubClient:
    """Tracks the state of a set of mint quotes for one subscription.

    Quotes are mappings with ``id``, ``payment_request``, ``state`` and
    ``expiry`` entries.
    """

    topic = BOLT11_MINT_QUOTE_TOPIC

    def __init__(self, sub_id: str, quotes: list[Mapping[str, Any]]) -> None:
        self.sub_id = sub_id
        self.quotes: dict[str, str] = {quote["id"]: quote["state"] for quote in quotes}
        self.closed = False

    def update(self, payload: Any) -> dict[str, Any] | None:
        """Record a published quote; return a notification if its state changed."""
        if self.closed:
            return None
        try:
            quote = _load(payload)
        except ValueError:
            return None
        if not isinstance(quote, Mapping):
            return None
        quote_id = quote.get("id")
        if quote_id not in self.quotes:
            return None
        state = quote.get("state")
        if self.quotes[quote_id] == state:
            return None
        self.quotes[quote_id] = state
        return _notification(self.sub_id, _quote_state(quote))

    def close(self) -> None:
        self.closed = True


class ProofStatesSubClient:
    """Tracks the spent state of a set of proofs, identified by their Y values."""

    topic = PROOF_STATE_TOPIC

    def __init__(self, sub_id: str, ys: list[str]) -> None:
        self.sub_id = sub_id
        self.proofs: dict[str, str] = {y: UNSPENT for y in ys}
        self.closed = False

    def update(self, payload: Any) -> dict[str, Any] | None:
        """Record published proof states; return a notification with those that changed."""
        if self.closed:
            return None
        try:
            data = _load(payload)
        except ValueError:
            return None
        if not isinstance(data, Mapping):
            return None
        changed = []
        for proof_state in data.get("states") or []:
            y = proof_state.get("Y")
            if y not in self.proofs:
                continue
            if self.proofs[y] != proof_state.get("state"):
                self.proofs[y] = proof_state.get("state")
                changed.append(dict(proof_state))
        if not changed:
            return None
        return _notification(self.sub_id, {"states": changed})

    def close(self) -> None:
        self.closed = True


class ClientSession:
    """Subscriptions held by one websocket connection.

    ``get_mint_quote`` looks up a mint quote by id and raises if it is unknown.
    """

    def __init__(self, get_mint_quote: Callable[[str], Mapping[str, Any]]) -> None:
        self._get_mint_quote = get_mint_quote
        self._lock = threading.Lock()
        self.subscriptions: dict[str, MintQuotesSubClient | ProofStatesSubClient] = {}
        self.closed = False

    def process_request(
        self, request: Mapping[str, Any]
    ) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        """Handle a parsed request.

        Returns the response and the notifications carrying the initial state.
        Raises :class:`WsError` when the request is refused.
        """
        request_id = request.get("id", 0)
        with self._lock:
            if len(self.subscriptions) >= MAX_SUBSCRIPTIONS:
                raise WsError(ERROR_CODE, "reached subscription limit", request_id)
            method = request.get("method")
            if method == SUBSCRIBE:
                return self._subscribe(request, request_id)
            if method == UNSUBSCRIBE:
                return self._unsubscribe(request, request_id), []
        raise WsError(ERROR_CODE, "invalid request method", request_id)

    def _subscribe(
        self, request: Mapping[str, Any], request_id: int
    ) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        params = request.get("params") or {}
        sub_id = params.get("subId", "")
        if sub_id in self.subscriptions:
            raise WsError(
                ERROR_CODE, f"subscription with subId '{sub_id}' already exists", request_id
            )
        if params.get("kind") != BOLT11_MINT_QUOTE_KIND:
            raise WsError(ERROR_CODE, "invalid request method", request_id)

        quote_ids = params.get("filters") or []
        if len(quote_ids) > MAX_QUOTE_FILTERS:
            raise WsError(ERROR_CODE, "too many filters", request_id)

        quotes = []
        for quote_id in quote_ids:
            try:
                quotes.append(self._get_mint_quote(quote_id))
            except Exception:
                raise WsError(
                    ERROR_CODE, f"quote {quote_id} does not exist", request_id
                ) from None

        self.subscriptions[sub_id] = MintQuotesSubClient(sub_id, quotes)
        initial = [_notification(sub_id, _quote_state(quote)) for quote in quotes]
        return _response(sub_id, request_id), initial

    def _unsubscribe(self, request: Mapping[str, Any], request_id: int) -> dict[str, Any]:
        params = request.get("params") or {}
        sub_id = params.get("subId", "")
        sub = self.subscriptions.pop(sub_id, None)
        if sub is None:
            raise WsError(
                ERROR_CODE, f"subscription with subId '{sub_id}' does not exist", request_id
            )
        sub.close()
        return _response(sub_id, request_id)

    def handle_message(self, raw: str | bytes) -> list[str]:
        """Handle one incoming websocket message and return the messages to send."""
        try:
            request = json.loads(raw)
        except ValueError:
            request = None
        if (
            not isinstance(request, dict)
            or not isinstance(request.get("id", 0), int)
            or not isinstance(request.get("params", {}), dict)
        ):
            return [json.dumps(WsError(ERROR_CODE, "invalid request", -1).to_dict())]
        try:
            response, notifications = self.process_request(request)
        except WsError as err:
            return [json.dumps(err.to_dict())]
        return [json.dumps(response)] + [json.dumps(n) for n in notifications]

    def close(self) -> None:
        """Cancel every subscription."""
        with self._lock:
            for sub in self.subscriptions.values():
                sub.close()
            self.subscriptions.clear()
            self.closed = True