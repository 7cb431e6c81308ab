import time
import random
import string
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .error_handler import mask_credential

lib_logger = logging.getLogger("cursor_rotator")

CHECKSUM_PREFIX = "zo"
CHECKSUM_ALPHABET = string.ascii_letters + string.digits


def _random_id(rng: random.Random, size: int) -> str:
    return "".join(rng.choice(CHECKSUM_ALPHABET) for _ in range(size))


def generate_checksum(rng: Optional[random.Random] = None) -> str:
    """Builds a fresh session fingerprint: `zo<6><64>/<64>` random characters."""
    rng = rng or random.SystemRandom()
    return f"{CHECKSUM_PREFIX}{_random_id(rng, 6)}{_random_id(rng, 64)}/{_random_id(rng, 64)}"


@dataclass(frozen=True)
class FingerprintEntry:
    value: str
    created_at: float


class FingerprintCache:
    """
    Per-credential upstream session fingerprints.

    The first request for a credential decides its fingerprint, in this order:
    the request's own override, the process default, a generated value. After
    that the same value is returned for the life of the process, including after
    the credential comes back from the blacklist.
    """

    def __init__(
        self,
        default_checksum: Optional[str] = None,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.default_checksum = default_checksum
        self.clock = clock or time.time
        self.rng = rng
        self._entries: Dict[str, FingerprintEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, credential: str) -> Optional[FingerprintEntry]:
        return self._entries.get(credential)

    def get(self, credential: str, override: Optional[str] = None) -> str:
        entry = self._entries.get(credential)
        if entry is not None:
            return entry.value

        value = override or self.default_checksum or generate_checksum(self.rng)
        self._entries[credential] = FingerprintEntry(value=value, created_at=self.clock())
        lib_logger.debug(f"Created fingerprint for credential {mask_credential(credential)}.")
        return value
