import time
import random
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .error_handler import NoAvailableKeysError, mask_credential

lib_logger = logging.getLogger("cursor_rotator")
lib_logger.propagate = False
if not lib_logger.handlers:
    lib_logger.addHandler(logging.NullHandler())

BLACKLIST_DURATION_SECONDS = 24 * 60 * 60


class UsageManager:
    """
    Process-wide credential state: the blacklist and the usage counters.

    One instance is created at startup and shared by every request. Nothing in
    here awaits, so each method runs to completion without interleaving under
    the asyncio scheduler and no lock is needed. Two requests can still both see
    the same least-used credential before either increments it; load balancing
    is approximate.

    Selection strategy: least-used first. When several candidates share the
    minimum usage count, one of them is picked at random so that equal counts do
    not always resolve to the same credential.

    Args:
        blacklist_duration: Seconds a failed credential stays excluded.
        clock: Returns the current time as a UNIX timestamp.
        rng: Anything with a `choice(seq)` method; used for tie-breaks.
    """

    def __init__(
        self,
        blacklist_duration: float = BLACKLIST_DURATION_SECONDS,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.blacklist_duration = blacklist_duration
        self.clock = clock or time.time
        self.rng = rng or random.Random()
        self._blacklist: Dict[str, float] = {}
        self._usage: Dict[str, int] = {}

    # --- Blacklist ---

    def is_available(self, credential: str) -> bool:
        """Returns False while the credential is blacklisted. Expired entries are dropped on read."""
        expiry = self._blacklist.get(credential)
        if expiry is None:
            return True
        if self.clock() < expiry:
            return False
        del self._blacklist[credential]
        lib_logger.info(f"Blacklist expired for credential {mask_credential(credential)}.")
        return True

    def blacklist(self, credential: str) -> float:
        """Excludes a credential for `blacklist_duration` seconds and returns the expiry timestamp."""
        expiry = self.clock() + self.blacklist_duration
        self._blacklist[credential] = expiry
        expiry_iso = datetime.fromtimestamp(expiry, tz=timezone.utc).isoformat()
        lib_logger.warning(
            f"Credential {mask_credential(credential)} has been blacklisted until {expiry_iso}."
        )
        return expiry

    def blacklisted_until(self, credential: str) -> Optional[float]:
        if not self.is_available(credential):
            return self._blacklist[credential]
        return None

    # --- Usage ---

    def get_usage(self, credential: str) -> int:
        return self._usage.get(credential, 0)

    def record_attempt(self, credential: str) -> int:
        """Counts an attempt that is about to start. Counts only ever grow."""
        count = self._usage.get(credential, 0) + 1
        self._usage[credential] = count
        return count

    def usage_snapshot(self, credentials: Iterable[str]) -> Dict[str, int]:
        return {credential: self.get_usage(credential) for credential in credentials}

    def select_credential(self, candidates: Sequence[str]) -> str:
        """
        Picks the least-used candidate, breaking ties at random.

        Raises:
            NoAvailableKeysError: If `candidates` is empty.
        """
        if not candidates:
            raise NoAvailableKeysError("No valid authorization tokens available")

        if len(candidates) == 1:
            return candidates[0]

        min_usage = min(self.get_usage(credential) for credential in candidates)
        least_used: List[str] = [
            credential for credential in candidates if self.get_usage(credential) == min_usage
        ]
        if len(least_used) == 1:
            return least_used[0]
        return self.rng.choice(least_used)
