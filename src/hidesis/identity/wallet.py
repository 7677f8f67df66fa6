"""Wallet identity canonicalisation.

Signatures are not checked here; the validator only decides whether a
string is a well-formed identity and returns its canonical form.

Accepted forms:
- base58 account addresses, 32-44 characters;
- guest handles, ``guest-`` followed by 4-64 characters of [A-Za-z0-9_-].
"""

from __future__ import annotations

import re
import secrets
from typing import Callable, Optional

from hidesis.errors import InvalidWalletError
from hidesis.models.session import TrustMode


_BASE58 = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
_GUEST = re.compile(r"^guest-[A-Za-z0-9_-]{4,64}$")

GUEST_PREFIX = "guest-"


class WalletValidator:
    """Canonicalises participant wallets per trust mode.

    Usage:
        validator = WalletValidator()
        wallet = validator.resolve("  7xKX...  ", TrustMode.VERIFIED)
    """

    def __init__(self, guest_ids: Callable[[], str] = lambda: secrets.token_hex(6)) -> None:
        self._guest_ids = guest_ids

    def canonicalize(self, wallet: str) -> str:
        """Return the canonical wallet string or raise InvalidWalletError."""
        if not isinstance(wallet, str):
            raise InvalidWalletError(f"Wallet must be a string, got {type(wallet).__name__}")
        candidate = wallet.strip()
        if candidate.lower().startswith(GUEST_PREFIX):
            candidate = GUEST_PREFIX + candidate[len(GUEST_PREFIX):]
            if _GUEST.match(candidate):
                return candidate
            raise InvalidWalletError(f"Malformed guest handle: {wallet!r}")
        if _BASE58.match(candidate):
            return candidate
        raise InvalidWalletError(f"Not a base58 address or guest handle: {wallet!r}")

    def resolve(self, wallet: Optional[str], mode: TrustMode) -> Optional[str]:
        """The wallet a new session keeps.

        bot_suspected sessions never retain one. Guest sessions without a
        wallet get a generated guest handle. Verified sessions keep the
        canonical wallet if one was supplied.
        """
        if mode == TrustMode.BOT_SUSPECTED:
            return None
        if wallet is None or (isinstance(wallet, str) and not wallet.strip()):
            if mode == TrustMode.GUEST:
                return GUEST_PREFIX + self._guest_ids()
            return None
        return self.canonicalize(wallet)
