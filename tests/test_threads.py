"""Tests for first-post recovery within discussion groups."""

import pytest

from fakes import source_post
from flarum_to_discourse_migrator.threads import reconstruct_page, reconstruct_thread


def first_post_ids(posts) -> dict[int, int | None]:
    return {post.id: post.first_post_id for post in posts}


@pytest.mark.unit
class TestReconstructThread:
    def test_empty_group(self) -> None:
        assert reconstruct_thread([]) == []

    def test_consistent_pointer_preserved(self) -> None:
        posts = [source_post(10, 5, 1, first_post_id=10), source_post(11, 5, 2, first_post_id=10)]

        result = reconstruct_thread(posts)

        assert result == posts
        assert result[0] is posts[0]

    def test_missing_pointer_gets_smallest_id(self) -> None:
        posts = [source_post(12, 5, 2, first_post_id=None), source_post(11, 5, 1, first_post_id=11)]

        assert first_post_ids(reconstruct_thread(posts)) == {12: 11, 11: 11}

    def test_dangling_pointer_gets_smallest_id(self) -> None:
        posts = [source_post(20, 7, 2, first_post_id=99), source_post(21, 7, 3, first_post_id=99)]

        result = reconstruct_thread(posts)

        assert first_post_ids(result) == {20: 20, 21: 20}
        assert result[0].is_first_post

    def test_known_topic_outside_group_kept(self) -> None:
        posts = [source_post(11, 5, 2, first_post_id=10)]

        result = reconstruct_thread(posts, lambda first_post_id: first_post_id == 10)

        assert first_post_ids(result) == {11: 10}

    def test_unknown_pointer_outside_group_replaced(self) -> None:
        posts = [source_post(11, 5, 2, first_post_id=10)]

        result = reconstruct_thread(posts, lambda first_post_id: False)

        assert first_post_ids(result) == {11: 11}

    def test_migrated_discussion_keeps_its_first_post(self) -> None:
        posts = [source_post(22, 7, 4, first_post_id=99), source_post(23, 7, 5, first_post_id=None)]

        result = reconstruct_thread(posts, migrated_first_post={7: 20}.get)

        assert first_post_ids(result) == {22: 20, 23: 20}
        assert not any(post.is_first_post for post in result)

    def test_migrated_first_post_wins_over_pointer_in_group(self) -> None:
        posts = [source_post(10, 5, 1, first_post_id=10), source_post(11, 5, 2, first_post_id=10)]

        result = reconstruct_thread(posts, migrated_first_post={5: 11}.get)

        assert first_post_ids(result) == {10: 11, 11: 11}

    def test_order_and_other_fields_kept(self) -> None:
        posts = [source_post(31, 8, 2, first_post_id=None, raw="b"), source_post(30, 8, 1, first_post_id=None, raw="a")]

        result = reconstruct_thread(posts)

        assert [post.id for post in result] == [31, 30]
        assert [post.raw for post in result] == ["b", "a"]
        assert posts[0].first_post_id is None  # inputs are not modified


@pytest.mark.unit
class TestReconstructPage:
    def test_discussions_reconstructed_independently(self) -> None:
        page = [
            source_post(40, 1, 1, first_post_id=None),
            source_post(50, 2, 1, first_post_id=99),
            source_post(41, 1, 2, first_post_id=None),
            source_post(51, 2, 2, first_post_id=99),
        ]

        result = reconstruct_page(page)

        assert [post.id for post in result] == [40, 50, 41, 51]
        assert first_post_ids(result) == {40: 40, 41: 40, 50: 50, 51: 50}

    def test_migrated_lookup_per_discussion(self) -> None:
        page = [source_post(50, 2, 3, first_post_id=99), source_post(60, 3, 1, first_post_id=None)]

        result = reconstruct_page(page, migrated_first_post={2: 45}.get)

        assert first_post_ids(result) == {50: 45, 60: 60}

    def test_empty_page(self) -> None:
        assert reconstruct_page([]) == []
