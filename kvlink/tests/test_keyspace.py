"""
Unit Tests: KeySpace key builders
"""

import pytest

from kvlink.core.types import key_has_prefix
from kvlink.index.keyspace import KEY_LAYOUT, SESSION_LAYOUT, KeySpace


# =============================================================================
# KEYSPACE TESTS
# =============================================================================
class TestKeySpace:
    """Tests for principal and dependent key layout."""

    @pytest.fixture
    def sessions(self):
        return KeySpace().for_kind(SESSION_LAYOUT)

    def test_principal_key(self):
        """Principal keys live under root + principal prefix."""
        assert KeySpace().principal_key("u1") == ("auth", "user", "u1")

    def test_custom_root(self):
        """Root prefix is configurable."""
        space = KeySpace(root=("tenant", "t1"))
        assert space.principal_key("u1") == ("tenant", "t1", "user", "u1")

    def test_dependent_keys(self, sessions):
        """Primary, forward and reverse keys per dependent kind."""
        assert sessions.primary_key("s1") == ("auth", "session", "s1")
        assert sessions.forward_entry_key("u1", "s1") == ("auth", "user_sessions", "u1", "s1")
        assert sessions.forward_set_key("u1") == ("auth", "user_sessions", "u1")
        assert sessions.reverse_key("s1") == ("auth", "session_user", "s1")

    def test_forward_entries_share_owner_prefix(self, sessions):
        """Every forward entry of an owner sits under its forward prefix."""
        prefix = sessions.forward_prefix("u1")
        assert key_has_prefix(sessions.forward_entry_key("u1", "s1"), prefix)
        assert not key_has_prefix(sessions.forward_entry_key("u10", "s1"), prefix)

    def test_kinds_do_not_overlap(self, sessions):
        """Session and key structures never share a prefix."""
        keys = KeySpace().for_kind(KEY_LAYOUT)
        assert keys.primary_key("x") != sessions.primary_key("x")
        assert not key_has_prefix(keys.primary_key("x"), sessions.primary_prefix())
        assert keys.principal_key("u1") == sessions.principal_key("u1")

    def test_primary_prefix_excludes_principals(self, sessions):
        """Scanning the session primary prefix never yields principals."""
        principal = KeySpace().principal_key("u1")
        assert not key_has_prefix(principal, sessions.primary_prefix())
