import logging
from typing import Iterator, List, Optional

from .error_handler import NoAvailableKeysError
from .usage_manager import UsageManager

lib_logger = logging.getLogger("cursor_rotator")

# A credential may be prefixed with an account label: "<label>::<token>".
# Clients that URL-encode the header send the separator as "%3A%3A".
LABEL_SEPARATORS = ("%3A%3A", "::")


def strip_bearer(value: Optional[str]) -> str:
    """Removes the 'Bearer ' scheme from an Authorization header value."""
    if not value:
        return ""
    value = value.strip()
    if value.startswith("Bearer "):
        return value[len("Bearer "):]
    return value


def _strip_label(entry: str) -> str:
    for separator in LABEL_SEPARATORS:
        if separator in entry:
            parts = entry.split(separator)
            return parts[1].strip()
    return entry


def parse_authorization(value: Optional[str]) -> List[str]:
    """
    Splits a composite authorization value into individual credentials.

    Format: `token1,token2,label::token3,label%3A%3Atoken4`. Labels are discarded,
    empty entries are dropped and duplicates keep their first position.
    """
    raw = strip_bearer(value)
    credentials: List[str] = []
    for entry in raw.split(","):
        credential = _strip_label(entry.strip())
        if credential and credential not in credentials:
            credentials.append(credential)
    return credentials


class CredentialPool:
    """
    The credentials available to one inbound request.

    Built once per request from the caller's authorization value and filtered
    against the blacklist. It only ever shrinks: `discard` blacklists and removes
    the credential that just failed, and `select` drops anything another request
    has blacklisted in the meantime.
    """

    def __init__(self, credentials: List[str], usage_manager: UsageManager):
        self.usage_manager = usage_manager
        self._credentials = [c for c in credentials if c and usage_manager.is_available(c)]
        self.initial_size = len(self._credentials)

    @classmethod
    def from_authorization(cls, value: Optional[str], usage_manager: UsageManager) -> "CredentialPool":
        pool = cls(parse_authorization(value), usage_manager)
        if not pool:
            raise NoAvailableKeysError("No valid authorization tokens available")
        return pool

    def __len__(self) -> int:
        return len(self._credentials)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._credentials))

    def __contains__(self, credential: str) -> bool:
        return credential in self._credentials

    def select(self) -> str:
        """Returns the credential for the next attempt without counting it."""
        self._credentials = [c for c in self._credentials if self.usage_manager.is_available(c)]
        return self.usage_manager.select_credential(self._credentials)

    def discard(self, credential: str) -> float:
        """Blacklists a failed credential and removes it from this pool. Returns the expiry."""
        expiry = self.usage_manager.blacklist(credential)
        self._credentials = [c for c in self._credentials if c != credential]
        return expiry
