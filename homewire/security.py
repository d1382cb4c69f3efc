"""Security module for homewire.

Provides owner-only authorization, identifier masking for log privacy,
and input sanitization for text arriving from the chat platform.
"""

import unicodedata

import structlog

from .exceptions import MissingOwnerConfig

logger = structlog.get_logger("homewire.security")

DENIAL_MESSAGE = "You are not authorized to use this bot."

_BIDI_CHARS = frozenset("\u202a\u202b\u202c\u202d\u202e\u2066\u2067\u2068\u2069")
MAX_INPUT_LENGTH = 10000


def mask_id(value: object) -> str:
    """Mask an identifier down to its last 4 characters for logging."""
    return "..." + str(value)[-4:]


class Authorizer:
    """Owner-only allow-list.

    Holds exactly one owner identifier. check() is a pure comparison
    with no I/O and no state, so one instance can be shared by every
    concurrent invocation.

    Args:
        owner_id: Platform user id of the owner.

    Raises:
        MissingOwnerConfig: If owner_id is empty.
    """

    def __init__(self, owner_id: object):
        owner = str(owner_id).strip() if owner_id is not None else ""
        if not owner:
            raise MissingOwnerConfig()
        self._owner_id = owner

    @property
    def owner_id(self) -> str:
        return self._owner_id

    def is_owner(self, principal: object) -> bool:
        """Compare without logging, for checks that are not access attempts."""
        return principal is not None and str(principal).strip() == self._owner_id

    def check(self, principal: object) -> bool:
        """Return True if principal is the configured owner."""
        if self.is_owner(principal):
            return True
        logger.warning("unauthorized_access_attempt", principal=mask_id(principal))
        return False


def sanitize_input(text: str) -> str:
    """Sanitize user input: strip control characters and enforce length limit."""
    # Remove all control characters except newline, tab, carriage return
    text = "".join(
        ch for ch in text
        if ch in ("\n", "\r", "\t") or not unicodedata.category(ch).startswith("C")
    )
    text = "".join(ch for ch in text if ch not in _BIDI_CHARS)
    if len(text) > MAX_INPUT_LENGTH:
        text = text[:MAX_INPUT_LENGTH]
    return text
