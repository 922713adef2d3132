"""Tests for the history recorder."""

import logging

import pytest

from ..history import HistoryLog, history_entry_from_dict, parse_history_line, record
from ..types import ChangeOrigin
from .factories import make_token

BEFORE = make_token("t1", "color/primary-500", "#5A94D6", external_ref="v1")
AFTER = BEFORE.with_changes(value="#6BA5E7", last_remote_value="#6BA5E7", version=2)


class TestRecord:
    def test_only_differing_fields(self):
        entry = record("t1", "updated", BEFORE, AFTER, ChangeOrigin.FIGMA, user="u1")
        changes = entry.changes_dict
        assert set(changes) == {"value", "lastRemoteValue"}
        assert (changes["value"].before, changes["value"].after) == ("#5A94D6", "#6BA5E7")
        assert entry.user_id == "u1"
        assert entry.token_name == "color/primary-500"

    def test_version_alone_is_not_a_change(self):
        assert record("t1", "updated", BEFORE, BEFORE.with_changes(version=9), ChangeOrigin.MANUAL) is None

    def test_created_lists_every_set_field(self):
        entry = record("t1", "created", None, BEFORE, ChangeOrigin.FIGMA)
        assert set(entry.changes_dict) == {"name", "value", "type", "category", "externalRef"}
        assert all(c.before is None for c in entry.changes_dict.values())

    def test_deleted(self):
        entry = record("t1", "deleted", BEFORE, None, ChangeOrigin.FIGMA)
        assert entry.changes_dict["value"].after is None

    def test_non_human_origins_carry_no_user(self):
        with pytest.raises(ValueError):
            record("t1", "updated", BEFORE, AFTER, ChangeOrigin.AUTOMATION, user="u1")
        entry = record("t1", "updated", BEFORE, AFTER, ChangeOrigin.AI)
        assert entry.user_id is None

    def test_unknown_action(self):
        with pytest.raises(ValueError):
            record("t1", "renamed", BEFORE, AFTER, ChangeOrigin.MANUAL)

    def test_dict_round_trip(self):
        entry = record("t1", "updated", BEFORE, AFTER, ChangeOrigin.FIGMA, timestamp="2024-01-01T00:00:00+00:00")
        assert history_entry_from_dict(entry.to_dict()) == entry


class TestHistoryLog:
    def test_emit_ignores_none(self):
        log = HistoryLog()
        log.emit(None)
        log.emit(record("t1", "updated", BEFORE, AFTER, ChangeOrigin.FIGMA))
        assert len(log) == 1
        assert len(log.for_token("t1")) == 1

    def test_lines(self, caplog):
        log = HistoryLog()
        log.emit(record("t1", "updated", BEFORE, AFTER, ChangeOrigin.FIGMA, user="u1"))
        text = log.to_plaintext()
        token_id, fields = parse_history_line(text.strip())
        assert token_id == "t1"
        assert fields["value"] == ["#5A94D6", "#6BA5E7"]
        assert fields["lastRemoteValue"] == ["", "#6BA5E7"]
        assert fields["user"] == "u1"

        logger = logging.getLogger("tokensync.test")
        with caplog.at_level(logging.INFO, logger="tokensync.test"):
            log.log_to(logger)
        assert [m for m in caplog.messages if m.startswith("HISTORY")] == [text.strip()]

    def test_empty_plaintext(self):
        assert HistoryLog().to_plaintext() == ""
