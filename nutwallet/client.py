"""HTTP client for the endpoints a wallet calls on a mint.

Requests are plain JSON-ready dictionaries and responses are the decoded
JSON documents the mint returns.
"""

from __future__ import annotations

from typing import Any

import requests

_JSON = "application/json"


class MintError(Exception):
    """Raised when a mint answers with an error or an unreadable response."""

    def __init__(self, detail: str, code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code

    def __str__(self) -> str:
        return self.detail


def _check(response: requests.Response) -> requests.Response:
    if response.status_code == 400:
        try:
            data = response.json()
        except ValueError as exc:
            raise MintError(f"could not decode error response from mint: {exc}") from exc
        if not isinstance(data, dict):
            raise MintError("could not decode error response from mint: not an object")
        code = data.get("code")
        return_code = int(code) if isinstance(code, (int, float)) else None
        raise MintError(str(data.get("detail", "")), return_code)
    if response.status_code != 200:
        raise MintError(response.text)
    return response


def _decode(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise MintError(f"error reading response from mint: {exc}") from exc


def _get(url: str) -> Any:
    return _decode(_check(requests.get(url)))


def _post(url: str, payload: dict[str, Any]) -> Any:
    response = requests.post(url, json=payload, headers={"Content-Type": _JSON})
    return _decode(_check(response))


def get_mint_info(mint_url: str) -> dict[str, Any]:
    """Fetch the mint's information document."""
    return _get(mint_url + "/v1/info")


def get_active_keysets(mint_url: str) -> dict[str, Any]:
    """Fetch the public keys of the mint's active keysets."""
    return _get(mint_url + "/v1/keys")


def get_all_keysets(mint_url: str) -> dict[str, Any]:
    """Fetch the list of all keysets the mint has had."""
    return _get(mint_url + "/v1/keysets")


def get_keyset_by_id(mint_url: str, keyset_id: str) -> dict[str, Any]:
    """Fetch the public keys of one keyset."""
    return _get(mint_url + "/v1/keys/" + keyset_id)


def post_mint_quote_bolt11(mint_url: str, request: dict[str, Any]) -> dict[str, Any]:
    """Request a quote for minting against a bolt11 invoice."""
    return _post(mint_url + "/v1/mint/quote/bolt11", request)


def get_mint_quote_state(mint_url: str, quote_id: str) -> dict[str, Any]:
    """Fetch the current state of a mint quote."""
    return _get(mint_url + "/v1/mint/quote/bolt11/" + quote_id)


def post_mint_bolt11(mint_url: str, request: dict[str, Any]) -> dict[str, Any]:
    """Mint tokens for a paid quote."""
    return _post(mint_url + "/v1/mint/bolt11", request)


def post_swap(mint_url: str, request: dict[str, Any]) -> dict[str, Any]:
    """Swap proofs for new blinded signatures."""
    return _post(mint_url + "/v1/swap", request)


def post_melt_quote_bolt11(mint_url: str, request: dict[str, Any]) -> dict[str, Any]:
    """Request a quote for paying a bolt11 invoice."""
    return _post(mint_url + "/v1/melt/quote/bolt11", request)


def get_melt_quote_state(mint_url: str, quote_id: str) -> dict[str, Any]:
    """Fetch the current state of a melt quote."""
    return _get(mint_url + "/v1/melt/quote/bolt11/" + quote_id)


def post_melt_bolt11(mint_url: str, request: dict[str, Any]) -> dict[str, Any]:
    """Pay an invoice with proofs against a melt quote."""
    return _post(mint_url + "/v1/melt/bolt11", request)


def post_check_proof_state(mint_url: str, request: dict[str, Any]) -> dict[str, Any]:
    """Ask the mint for the spent state of proofs."""
    return _post(mint_url + "/v1/checkstate", request)


def post_restore(mint_url: str, request: dict[str, Any]) -> dict[str, Any]:
    """Ask the mint for signatures on previously issued outputs."""
    return _post(mint_url + "/v1/restore", request)