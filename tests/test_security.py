"""Tests for the owner-only authorizer and input sanitization."""

from unittest.mock import patch

import pytest

from homewire.exceptions import MissingOwnerConfig
from homewire.security import MAX_INPUT_LENGTH, Authorizer, mask_id, sanitize_input

OWNER = "+15551234567"


class TestAuthorizer:

    def test_owner_allowed(self):
        assert Authorizer(OWNER).check(OWNER) is True

    def test_surrounding_whitespace_ignored(self):
        """Whitespace around either id doesn't matter."""
        assert Authorizer(f" {OWNER} ").check(f"{OWNER}\n") is True

    @pytest.mark.parametrize("principal", ["+15550000000", "", None, OWNER + "0", OWNER[1:]])
    def test_everyone_else_denied(self, principal):
        assert Authorizer(OWNER).check(principal) is False

    def test_numeric_owner_id_compares_as_text(self):
        """Numeric ids from YAML compare as text."""
        authorizer = Authorizer(123456789012345678)
        assert authorizer.owner_id == "123456789012345678"
        assert authorizer.check("123456789012345678") is True

    @pytest.mark.parametrize("owner", ["", "   ", None])
    def test_empty_owner_refused(self, owner):
        """An empty owner id refuses to construct."""
        with pytest.raises(MissingOwnerConfig):
            Authorizer(owner)

    def test_is_owner_does_not_log(self):
        """is_owner is a plain comparison; only check() records denials."""
        authorizer = Authorizer(OWNER)
        with patch("homewire.security.logger") as security_logger:
            assert authorizer.is_owner(OWNER) is True
            assert authorizer.is_owner("+15550000000") is False
            assert authorizer.check("+15550000000") is False
        assert security_logger.warning.call_count == 1


def test_mask_id_keeps_last_four():
    assert mask_id(OWNER) == "...4567"
    assert mask_id(None) == "...None"


class TestSanitizeInput:

    def test_strips_control_characters(self):
        assert sanitize_input("/health\x00\x07") == "/health"

    def test_keeps_newlines_and_tabs(self):
        assert sanitize_input("a\nb\tc") == "a\nb\tc"

    def test_strips_bidi_overrides(self):
        """Bidi overrides that could disguise a command are removed."""
        assert sanitize_input("/sonarr search \u202eevil\u202c") == "/sonarr search evil"

    def test_truncates(self):
        assert len(sanitize_input("x" * (MAX_INPUT_LENGTH + 50))) == MAX_INPUT_LENGTH
