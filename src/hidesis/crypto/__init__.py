"""Seed commitment, outcome reveal and transcript verification."""

from hidesis.crypto.seed_vault import SeedVault, commit_seed, resolve_outcome
from hidesis.crypto.transcript import verify_transcript

__all__ = ["SeedVault", "commit_seed", "resolve_outcome", "verify_transcript"]
