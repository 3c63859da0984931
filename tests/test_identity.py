"""Tests for the identity mapper and its in-memory store."""

import logging
from unittest.mock import Mock

import pytest

from flarum_to_discourse_migrator.exceptions import DuplicateMappingError
from flarum_to_discourse_migrator.identity import (
    IdentityMapper,
    InMemoryMappingStore,
    reaction_key,
    split_reaction_key,
)
from flarum_to_discourse_migrator.models import EntityKind


@pytest.mark.unit
class TestIdentityMapper:
    def setup_method(self) -> None:
        self.store = InMemoryMappingStore()
        self.mapper = IdentityMapper(self.store)

    def test_lookup_unmapped_returns_none(self) -> None:
        assert self.mapper.lookup(EntityKind.USER, 1) is None
        assert self.mapper.lookup(EntityKind.USER, None) is None
        assert not self.mapper.is_mapped(EntityKind.USER, 1)

    def test_register_and_lookup(self) -> None:
        self.mapper.register(EntityKind.POST, 10, 501)

        assert self.mapper.lookup(EntityKind.POST, 10) == 501
        assert self.mapper.reverse_lookup(EntityKind.POST, 501) == 10
        assert self.mapper.is_mapped(EntityKind.POST, 10)
        assert self.mapper.count(EntityKind.POST) == 1

    def test_kinds_are_independent(self) -> None:
        self.mapper.register(EntityKind.TOPIC, 10, 7)
        self.mapper.register(EntityKind.POST, 10, 7)

        assert self.mapper.lookup(EntityKind.TOPIC, 10) == 7
        assert self.mapper.lookup(EntityKind.POST, 10) == 7
        assert self.mapper.lookup(EntityKind.USER, 10) is None

    def test_source_id_registered_once(self) -> None:
        self.mapper.register(EntityKind.USER, 1, 100)

        with pytest.raises(DuplicateMappingError, match="already mapped to 100"):
            self.mapper.register(EntityKind.USER, 1, 101)
        assert self.mapper.lookup(EntityKind.USER, 1) == 100

    def test_target_id_not_shared(self) -> None:
        self.mapper.register(EntityKind.USER, 1, 100)

        with pytest.raises(DuplicateMappingError, match="source id 1"):
            self.mapper.register(EntityKind.USER, 2, 100)
        assert self.mapper.lookup(EntityKind.USER, 2) is None

    def test_distinct_sources_map_to_distinct_targets(self) -> None:
        for source_id in range(1, 50):
            self.mapper.register(EntityKind.CATEGORY, source_id, 1000 + source_id)

        targets = {self.mapper.lookup(EntityKind.CATEGORY, source_id) for source_id in range(1, 50)}
        assert len(targets) == 49

    def test_register_writes_through(self) -> None:
        self.mapper.register(EntityKind.USER, 1, 100)

        assert self.store.load(EntityKind.USER) == {1: 100}

    def test_mappings_of_earlier_run_loaded(self) -> None:
        self.store.save(EntityKind.USER, 1, 100)

        fresh = IdentityMapper(self.store)

        assert fresh.lookup(EntityKind.USER, 1) == 100
        with pytest.raises(DuplicateMappingError):
            fresh.register(EntityKind.USER, 1, 100)

    def test_store_loaded_once_per_kind(self) -> None:
        store = Mock()
        store.load.return_value = {1: 100}
        mapper = IdentityMapper(store)

        mapper.lookup(EntityKind.USER, 1)
        mapper.lookup(EntityKind.USER, 2)
        mapper.is_mapped(EntityKind.POST, 1)

        assert store.load.call_count == 2

    def test_failed_save_leaves_mapping_unregistered(self) -> None:
        store = Mock()
        store.load.return_value = {}
        store.save.side_effect = RuntimeError("disk full")
        mapper = IdentityMapper(store)

        with pytest.raises(RuntimeError):
            mapper.register(EntityKind.USER, 1, 100)
        assert mapper.lookup(EntityKind.USER, 1) is None

    def test_broken_store_reported(self, caplog: pytest.LogCaptureFixture) -> None:
        store = Mock()
        store.load.return_value = {1: 100, 2: 100}

        with caplog.at_level(logging.WARNING):
            mapper = IdentityMapper(store)
            mapper.lookup(EntityKind.USER, 1)

        assert "share target id 100" in caplog.text
        assert mapper.reverse_lookup(EntityKind.USER, 100) == 1


@pytest.mark.unit
class TestReactionKey:
    def test_split_returns_parts(self) -> None:
        assert split_reaction_key(reaction_key(12, 3456)) == (12, 3456)

    def test_same_post_different_users_differ(self) -> None:
        assert reaction_key(1, 2) != reaction_key(2, 1)

    def test_post_id_out_of_range(self) -> None:
        with pytest.raises(ValueError, match="does not fit"):
            reaction_key(1, 2**32)
