"""Participant identity handling."""

from hidesis.identity.wallet import WalletValidator

__all__ = ["WalletValidator"]
