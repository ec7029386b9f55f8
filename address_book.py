"""Program-derived address helpers.

Every address here is a pure function of its seeds and the owning program,
so callers can re-locate accounts without persisting them.
"""

import logging
from typing import Sequence, Tuple

from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

logger = logging.getLogger(__name__)

MAX_SEED_LENGTH = 32
MAX_SEEDS = 16

EVENT_AUTHORITY_SEED = b"__event_authority"
MARKET_AUTHORITY_SEED = b"Market"


def _seed_bytes(seed) -> bytes:
    if isinstance(seed, Pubkey):
        return bytes(seed)
    if isinstance(seed, str):
        return seed.encode('utf-8')
    return bytes(seed)


def _validate_seeds(seeds) -> list:
    seeds = [_seed_bytes(seed) for seed in seeds]
    if len(seeds) > MAX_SEEDS:
        raise ValueError(f"At most {MAX_SEEDS} seeds are allowed, got {len(seeds)}")
    for seed in seeds:
        if len(seed) > MAX_SEED_LENGTH:
            raise ValueError(f"Seed {seed!r} is {len(seed)} bytes, the limit is {MAX_SEED_LENGTH}")
    return seeds


def derive_with_bump(seeds: Sequence, owner: Pubkey) -> Tuple[Pubkey, int]:
    """Find the program address and bump for ``seeds`` under ``owner``."""
    return Pubkey.find_program_address(_validate_seeds(seeds), owner)


def derive(seeds: Sequence, owner: Pubkey) -> Pubkey:
    return derive_with_bump(seeds, owner)[0]


class AddressBook:
    """Derivations used by the configured program's instructions."""

    def __init__(self, program_id: Pubkey):
        self.program_id = program_id

    def derive(self, seeds: Sequence) -> Pubkey:
        return derive(seeds, self.program_id)

    def event_authority(self) -> Pubkey:
        return self.derive([EVENT_AUTHORITY_SEED])

    def market_authority(self, market: Pubkey) -> Pubkey:
        return self.derive([MARKET_AUTHORITY_SEED, market])

    @staticmethod
    def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
        # Owner may be a program-derived (off-curve) address such as a market authority
        return get_associated_token_address(owner, mint)
