"""Error taxonomy for the Hide-SIS engine.

Every error is a local-state validation failure, never an I/O failure,
so the engine does not retry any of them. Each carries a stable ``code``
that the service layer passes to callers beside the message.

A failed operation never leaves a partial mutation behind: validation
and outcome derivation complete before the first write.
"""

from __future__ import annotations


class HideSisError(Exception):
    """Base class for all engine errors."""
    code = "hide_sis_error"


class InvalidModeError(HideSisError):
    """Trust mode is not one of verified / guest / bot_suspected."""
    code = "invalid_mode"


class InvalidChoiceError(HideSisError):
    """Committed choice is not among the outstanding quote's options."""
    code = "invalid_choice"


class InvalidWalletError(HideSisError):
    """Wallet identity was rejected by the identity validator."""
    code = "invalid_wallet"


class SessionNotFoundError(HideSisError):
    code = "session_not_found"


class WorldNotFoundError(HideSisError):
    """World id has no member sessions."""
    code = "world_not_found"


class SessionFinalizedError(HideSisError):
    """Operation attempted on a finalized session."""
    code = "session_finalized"


class NoOutstandingQuoteError(HideSisError):
    """Commit attempted without a prior quote. Re-quote and retry."""
    code = "no_outstanding_quote"


class SeedExhaustionError(HideSisError):
    """Session reached its turn bound and must be finalized."""
    code = "seed_exhausted"


class SeedDisclosureError(HideSisError):
    """Seed disclosure requested while the session is still active."""
    code = "seed_not_disclosable"


class WorldMembershipError(HideSisError):
    """Session cannot join the world (already a member elsewhere, or world closed)."""
    code = "world_membership"


class SchemaVersionError(HideSisError):
    """Session record was written by a newer schema than this process supports."""
    code = "schema_version"
