"""Tests for the daily-note resolver."""
import datetime
import threading

import pytest

from notetree.config import config
from notetree.exceptions import ErrorCode, ValidationError
from notetree.services.daily_notes import DailyNoteResolver, normalize_date


class TestNormalizeDate:
    """Tests for date normalization."""

    def test_date_and_string(self):
        assert normalize_date(datetime.date(2024, 3, 5)) == "2024-03-05"
        assert normalize_date("2024-03-05") == "2024-03-05"
        assert normalize_date(" 2024-03-05 ") == "2024-03-05"

    def test_datetime_uses_date_part(self):
        assert normalize_date(datetime.datetime(2024, 3, 5, 23, 59)) == "2024-03-05"

    @pytest.mark.parametrize("value", ["2024-02-30", "yesterday", "", "05/03/2024"])
    def test_invalid_strings(self, value):
        with pytest.raises(ValidationError) as exc_info:
            normalize_date(value)
        assert exc_info.value.code == ErrorCode.INVALID_DATE

    def test_invalid_type(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_date(20240305)
        assert exc_info.value.code == ErrorCode.INVALID_DATE


class TestResolveDailyNote:
    """Tests for find-or-create."""

    def test_creates_journal_root(self, daily_resolver):
        note = daily_resolver.resolve_daily_note("2024-03-15")
        assert note.id.startswith("page-")
        assert note.content == "2024-03-15"
        assert note.parent_id is None
        assert note.tags == [config.journal_tag]
        assert note.properties == {"journal_date": "2024-03-15"}
        assert note.version == 1

    def test_idempotent(self, daily_resolver, node_repository):
        first = daily_resolver.resolve_daily_note(datetime.date(2024, 3, 15))
        second = daily_resolver.resolve_daily_note("2024-03-15")
        assert first.id == second.id
        assert node_repository.count_nodes() == 1

    def test_distinct_days(self, daily_resolver):
        a = daily_resolver.resolve_daily_note("2024-03-15")
        b = daily_resolver.resolve_daily_note("2024-03-16")
        assert a.id != b.id

    def test_untagged_node_is_not_a_daily_note(self, daily_resolver, node_repository):
        plain = node_repository.create("2024-03-15")
        note = daily_resolver.resolve_daily_note("2024-03-15")
        assert note.id != plain.id

    def test_child_node_is_not_a_daily_note(self, daily_resolver, node_repository):
        parent = node_repository.create("Parent")
        nested = node_repository.create(
            "2024-03-15", parent_id=parent.id, tags=[config.journal_tag]
        )
        note = daily_resolver.resolve_daily_note("2024-03-15")
        assert note.id != nested.id
        assert note.parent_id is None

    def test_existing_tagged_root_is_found(self, daily_resolver, node_repository):
        existing = node_repository.create("2024-03-15", tags=["#other", config.journal_tag])
        assert daily_resolver.resolve_daily_note("2024-03-15").id == existing.id

    def test_get_daily_note(self, daily_resolver):
        assert daily_resolver.get_daily_note("2024-03-15") is None
        created = daily_resolver.resolve_daily_note("2024-03-15")
        assert daily_resolver.get_daily_note("2024-03-15").id == created.id

    def test_invalid_date_creates_nothing(self, daily_resolver, node_repository):
        with pytest.raises(ValidationError):
            daily_resolver.resolve_daily_note("not-a-date")
        assert node_repository.count_nodes() == 0

    def test_custom_journal_tag(self, node_repository):
        resolver = DailyNoteResolver(node_repository, journal_tag="#Diary")
        note = resolver.resolve_daily_note("2024-03-15")
        assert note.tags == ["#Diary"]

    def test_concurrent_callers_share_one_note(self, daily_resolver, node_repository):
        results = []
        errors = []

        def _resolve():
            try:
                results.append(daily_resolver.resolve_daily_note("2024-03-15").id)
            except Exception as e:  # collected and asserted below
                errors.append(e)

        threads = [threading.Thread(target=_resolve) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(set(results)) == 1
        assert node_repository.count_nodes() == 1
