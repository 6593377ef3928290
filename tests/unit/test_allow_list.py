"""
Tests for AllowList and mention hashtag helpers.

This test suite verifies:
- allow / deny mode semantics
- Disabled entries
- Handle normalization (case, leading @)
- Hashtag extraction used by the required-tag filter
"""

import pytest

from mention_bot.allow_list import AllowList, AllowListEntry
from mention_bot.models import Mention, extract_hashtags


class TestAllowList:
    """Test suite for AllowList."""

    @pytest.fixture
    def allow_list(self):
        return AllowList(["alice", "@Bob", AllowListEntry("carol", enabled=False)])

    def test_allow_mode_admits_listed_handles_only(self, allow_list):
        assert allow_list.is_allowed("alice", "allow") is True
        assert allow_list.is_allowed("mallory", "allow") is False

    def test_deny_mode_blocks_listed_handles(self, allow_list):
        assert allow_list.is_allowed("alice", "deny") is False
        assert allow_list.is_allowed("mallory", "deny") is True

    def test_disabled_entry_never_allowed(self, allow_list):
        assert allow_list.is_allowed("carol", "allow") is False
        assert allow_list.is_allowed("carol", "deny") is False

    def test_handles_are_case_insensitive_without_at(self, allow_list):
        assert allow_list.is_allowed("BOB", "allow") is True
        assert allow_list.is_allowed("@alice", "allow") is True
        assert allow_list.handles() == ["alice", "bob", "carol"]

    def test_empty_list(self):
        empty = AllowList()
        assert len(empty) == 0
        assert empty.is_allowed("anyone", "allow") is False
        assert empty.is_allowed("anyone", "deny") is True

    def test_remove(self, allow_list):
        assert allow_list.remove("@ALICE") is True
        assert allow_list.remove("alice") is False
        assert allow_list.is_allowed("alice", "allow") is False


class TestHashtags:
    def test_extract_hashtags_lowercases(self):
        assert extract_hashtags("Hi #Hey and #AI_news!") == ["hey", "ai_news"]

    def test_has_tag_ignores_case_and_hash(self):
        mention = Mention(id="1", text="hello #HEY", author_handle="alice")
        assert mention.has_tag("hey")
        assert mention.has_tag("#hey")
        assert not mention.has_tag("help")

    def test_tag_must_be_a_hashtag(self):
        mention = Mention(id="1", text="hey there", author_handle="alice")
        assert not mention.has_tag("hey")
