"""Tests for reply target resolution and legacy permalinks."""

import logging
from unittest.mock import Mock

import pytest

from fakes import source_post
from flarum_to_discourse_migrator.cross_references import (
    CrossReferenceResolver,
    PostMention,
    find_post_mention,
    post_permalink,
    topic_permalink,
)
from flarum_to_discourse_migrator.exceptions import TargetCreateError
from flarum_to_discourse_migrator.identity import IdentityMapper, InMemoryMappingStore
from flarum_to_discourse_migrator.models import CreatedPost, EntityKind


def mention(discussion_id: int, number: int | str, post_id: int = 1) -> str:
    return (
        f'<POSTMENTION discussionid="{discussion_id}" displayname="alice" id="{post_id}" number="{number}">'
        "@alice#1</POSTMENTION>"
    )


@pytest.mark.unit
class TestFindPostMention:
    def test_mention_in_same_discussion(self) -> None:
        assert find_post_mention(f"<r>{mention(5, 3, post_id=12)} yes</r>", 5) == PostMention(3, 12)

    def test_mention_of_other_discussion_ignored(self) -> None:
        assert find_post_mention(f"<r>{mention(6, 3)}</r>", 5) is None

    def test_first_matching_mention_wins(self) -> None:
        raw = f"<r>{mention(6, 9)} {mention(5, 2)} {mention(5, 4)}</r>"

        assert find_post_mention(raw, 5) == PostMention(2, 1)

    def test_non_positive_number_ignored(self) -> None:
        assert find_post_mention(mention(5, 0), 5) is None
        assert find_post_mention(mention(5, "x"), 5) is None

    def test_attribute_order_irrelevant(self) -> None:
        raw = '<POSTMENTION number="7" id="1" displayname="a" discussionid="5">@a</POSTMENTION>'

        assert find_post_mention(raw, 5) == PostMention(7, 1)

    def test_missing_post_id(self) -> None:
        raw = '<POSTMENTION discussionid="5" displayname="a" number="2">@a</POSTMENTION>'

        assert find_post_mention(raw, 5) == PostMention(2, None)

    def test_no_content(self) -> None:
        assert find_post_mention(None, 5) is None
        assert find_post_mention("", 5) is None


@pytest.mark.unit
class TestPermalinks:
    def test_topic_permalink(self) -> None:
        assert topic_permalink(5, "hello-world") == "d/5-hello-world"

    def test_post_permalink(self) -> None:
        assert post_permalink(5, "hello-world", 3) == "d/5-hello-world/3"


@pytest.mark.unit
class TestCrossReferenceResolver:
    def setup_method(self) -> None:
        self.target = Mock()
        self.mapper = IdentityMapper(InMemoryMappingStore())
        self.resolver = CrossReferenceResolver(self.target, self.mapper)

    def test_reply_target_resolved_to_created_post_number(self) -> None:
        first = source_post(10, 5, 1, first_post_id=10)
        # Gaps in the source numbering: source #4 became target post 2
        second = source_post(14, 5, 4, first_post_id=10)
        self.resolver.record_created(first, CreatedPost(id=501, topic_id=50, post_number=1))
        self.resolver.record_created(second, CreatedPost(id=502, topic_id=50, post_number=2))

        reply = source_post(15, 5, 5, first_post_id=10, raw=mention(5, 4))

        assert self.resolver.reply_to_post_number(reply) == 2

    def test_unresolved_target_dropped(self) -> None:
        reply = source_post(15, 5, 5, first_post_id=10, raw=mention(5, 4))

        assert self.resolver.reply_to_post_number(reply) is None
        self.target.get_post_number.assert_not_called()

    def test_post_of_earlier_run_resolved_through_mapper(self) -> None:
        self.mapper.register(EntityKind.POST, 14, 502)
        self.target.get_post_number.return_value = 2
        reply = source_post(15, 5, 5, first_post_id=10, raw=mention(5, 4, post_id=14))

        assert self.resolver.reply_to_post_number(reply) == 2
        assert self.resolver.reply_to_post_number(reply) == 2
        self.target.get_post_number.assert_called_once_with(502)

    def test_failed_post_lookup_dropped(self, caplog: pytest.LogCaptureFixture) -> None:
        self.mapper.register(EntityKind.POST, 14, 502)
        self.target.get_post_number.side_effect = TargetCreateError("GET /posts/502.json failed: HTTP 404")
        reply = source_post(15, 5, 5, first_post_id=10, raw=mention(5, 4, post_id=14))

        with caplog.at_level(logging.WARNING):
            assert self.resolver.reply_to_post_number(reply) is None

        assert "Could not look up post 502" in caplog.text

    def test_self_mention_ignored(self) -> None:
        post = source_post(15, 5, 5, first_post_id=10, raw=mention(5, 5))
        self.resolver.record_created(post, CreatedPost(id=505, topic_id=50, post_number=5))

        assert self.resolver.reply_to_post_number(post) is None

    def test_same_number_in_other_discussion_not_confused(self) -> None:
        other = source_post(20, 6, 4, first_post_id=19)
        self.resolver.record_created(other, CreatedPost(id=601, topic_id=60, post_number=4))

        reply = source_post(15, 5, 5, first_post_id=10, raw=mention(5, 4))

        assert self.resolver.reply_to_post_number(reply) is None

    def test_first_post_gets_topic_permalink(self) -> None:
        post = source_post(10, 5, 1, first_post_id=10, slug="hello")

        assert self.resolver.register_permalinks(post, CreatedPost(id=501, topic_id=50, post_number=1))
        self.target.create_permalink.assert_called_once_with("d/5-hello", topic_id=50)

    def test_reply_gets_post_permalink_with_source_number(self) -> None:
        post = source_post(14, 5, 4, first_post_id=10, slug="hello")

        self.resolver.register_permalinks(post, CreatedPost(id=502, topic_id=50, post_number=2))

        self.target.create_permalink.assert_called_once_with("d/5-hello/4", post_id=502)

    def test_permalink_failure_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        self.target.create_permalink.side_effect = TargetCreateError("Url has already been taken")
        post = source_post(10, 5, 1, first_post_id=10, slug="hello")

        with caplog.at_level(logging.WARNING):
            created = self.resolver.register_permalinks(post, CreatedPost(id=501, topic_id=50, post_number=1))

        assert created is False
        assert "d/5-hello" in caplog.text
        assert "Url has already been taken" in caplog.text
