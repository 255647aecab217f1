"""Subscriptions to mint events over a websocket connection."""

from __future__ import annotations

import hashlib
import json
import queue
import threading
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

import requests
import websocket

from nutwallet import client
from nutwallet.client import MintError

_BOLT11_METHOD = "bolt11"
_CLOSED = object()


class SubscriptionError(Exception):
    """Raised when a subscription cannot be set up, used or closed."""


class NUT17NotSupportedError(SubscriptionError):
    """Raised when the mint does not offer websocket subscriptions."""

    def __init__(self, message: str = "NUT-17 Not supported") -> None:
        super().__init__(message)


class SubscriptionKind(str, Enum):
    BOLT11_MINT_QUOTE = "bolt11_mint_quote"
    BOLT11_MELT_QUOTE = "bolt11_melt_quote"
    PROOF_STATE = "proof_state"

    def __str__(self) -> str:
        return self.value


def websocket_url(mint: str) -> str:
    """Return the websocket endpoint for a mint URL."""
    try:
        parts = urlsplit(mint)
    except ValueError as exc:
        raise ValueError(f"invalid mint url: {exc}") from exc
    scheme = "wss" if parts.scheme == "https" else "ws"
    return f"{scheme}://{parts.netloc}{parts.path}/v1/ws"


class Subscription:
    """One open subscription; notifications are read with :meth:`read`."""

    def __init__(self, sub_id: str, request_id: int) -> None:
        self._sub_id = sub_id
        self.request_id = request_id
        self._notifications: queue.Queue[Any] = queue.Queue()
        self._replies: queue.Queue[tuple[str, dict[str, Any]]] = queue.Queue()

    def read(self, timeout: float | None = None) -> dict[str, Any]:
        """Wait for the next notification on this subscription."""
        try:
            item = self._notifications.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("no notification received") from None
        if item is _CLOSED:
            self._notifications.put(_CLOSED)
            raise SubscriptionError("could not read from subscription. Channel got closed")
        return item

    def sub_id(self) -> str:
        return self._sub_id

    def _close(self) -> None:
        self._notifications.put(_CLOSED)


class SubscriptionManager:
    """Holds the websocket connection to a mint and its subscriptions.

    :meth:`run` must be running, usually in its own thread, for replies and
    notifications to be delivered.
    """

    response_timeout = 10.0

    def __init__(self, mint: str) -> None:
        try:
            info = client.get_mint_info(mint)
        except (MintError, requests.RequestException) as exc:
            raise SubscriptionError(f"could not get mint info: {exc}") from exc
        nut17 = (info.get("nuts") or {}).get("17") or {}
        supported = nut17.get("supported") or []
        if not supported:
            raise NUT17NotSupportedError()

        self._conn = websocket.create_connection(websocket_url(mint))
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._closed = threading.Event()
        self._subs: dict[str, Subscription] = {}
        self._id_counter = 0
        self._supported_methods: list[dict[str, Any]] = list(supported)

    def run(self) -> None:
        """Read messages from the connection until it is closed."""
        try:
            while not self._closed.is_set():
                try:
                    raw = self._conn.recv()
                except (websocket.WebSocketException, OSError):
                    if self._closed.is_set():
                        return
                    raise
                if raw:
                    self._dispatch(raw)
        finally:
            with self._lock:
                subs = list(self._subs.values())
            for sub in subs:
                sub._close()

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            return
        if not isinstance(message, dict):
            return

        params = message.get("params")
        if isinstance(params, dict):
            with self._lock:
                sub = self._subs.get(params.get("subId"))
            if sub is not None:
                sub._notifications.put(message)
                return

        if "error" in message:
            kind = "error"
        elif "result" in message:
            kind = "response"
        else:
            return
        request_id = message.get("id")
        with self._lock:
            targets = [s for s in self._subs.values() if s.request_id == request_id]
        for sub in targets:
            sub._replies.put((kind, message))

    def _send(self, payload: dict[str, Any]) -> None:
        data = json.dumps(payload)
        with self._send_lock:
            try:
                self._conn.send(data)
            except (websocket.WebSocketException, OSError) as exc:
                raise SubscriptionError(f"could not send request: {exc}") from exc

    def _remove(self, sub_id: str) -> Subscription | None:
        with self._lock:
            return self._subs.pop(sub_id, None)

    def subscribe(self, kind: SubscriptionKind | str, filters: list[str]) -> Subscription:
        """Subscribe to updates of ``kind`` for the given filters."""
        if not filters:
            raise ValueError("filters cannot be empty")
        kind = SubscriptionKind(kind)
        if not self.is_subscription_kind_supported(kind):
            raise SubscriptionError(f"subscription to {kind.value} not supported by mint")

        sub_id = hashlib.sha256(filters[0].encode()).hexdigest()
        with self._lock:
            request_id = self._id_counter
            self._id_counter += 1
            sub = Subscription(sub_id, request_id)
            self._subs[sub_id] = sub

        request = {
            "jsonrpc": "2.0",
            "method": "subscribe",
            "params": {"kind": kind.value, "subId": sub_id, "filters": list(filters)},
            "id": request_id,
        }
        try:
            self._send(request)
        except SubscriptionError:
            self._remove(sub_id)
            raise

        try:
            reply_kind, reply = sub._replies.get(timeout=self.response_timeout)
        except queue.Empty:
            self._remove(sub_id)
            raise SubscriptionError("could not setup subscription to mint") from None

        if reply_kind == "response":
            result = reply.get("result") or {}
            if result.get("status") == "OK":
                return sub
        self._remove(sub_id)
        if reply_kind == "error":
            error = reply.get("error") or {}
            raise SubscriptionError(
                f"could not setup subscription to mint: {error.get('message', '')}"
            )
        raise SubscriptionError("could not setup subscription to mint")

    def close_subscription(self, sub_id: str) -> None:
        """Ask the mint to end a subscription and forget it."""
        with self._lock:
            if sub_id not in self._subs:
                raise SubscriptionError("subscription does not exist")
            request_id = self._id_counter
            self._id_counter += 1
        request = {
            "jsonrpc": "2.0",
            "method": "unsubscribe",
            "params": {"subId": sub_id},
            "id": request_id,
        }
        self._send(request)
        sub = self._remove(sub_id)
        if sub is not None:
            sub._close()

    def is_subscription_kind_supported(self, kind: SubscriptionKind | str) -> bool:
        value = kind.value if isinstance(kind, SubscriptionKind) else str(kind)
        return any(
            method.get("method") == _BOLT11_METHOD and value in (method.get("commands") or [])
            for method in self._supported_methods
        )

    def close(self) -> None:
        """Stop delivering messages and close the connection."""
        self._closed.set()
        self._conn.close()
        with self._lock:
            subs = list(self._subs.values())
        for sub in subs:
            sub._close()