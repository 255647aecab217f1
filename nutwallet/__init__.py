"""Wallet storage, a mint HTTP client and websocket subscription handling for Cashu mints."""

__version__ = "0.1.0"
__all__ = ["storage", "client", "submanager", "mintws"]