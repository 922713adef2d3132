"""Tests for the diff engine."""

import logging

import pytest

from ..config import SyncConfig
from ..diff import diff, divergence_line, log_divergences
from ..types import DivergenceKind, LocalSnapshot, ResolvedType, TokenType
from .factories import DARK, make_remote, make_token, make_variable, rgb


def local(*tokens, dismissed=()):
    return LocalSnapshot(project_id="p", tokens=tuple(tokens), dismissed=frozenset(dismissed))


class TestClassification:
    def test_in_sync_pair_yields_nothing(self):
        remote = make_remote([make_variable("v1", "color/a", rgb("#5A94D6"))])
        assert diff(remote, local(make_token("t1", "color/a", "#5a94d6", external_ref="v1"))) == ()

    def test_modified(self):
        remote = make_remote([make_variable("v1", "color/a", rgb("#6BA5E7"))])
        (d,) = diff(remote, local(make_token("t1", "color/a", "#5A94D6", external_ref="v1", version=3)))
        assert d.kind == DivergenceKind.MODIFIED
        assert d.key == "modified:t1"
        assert (d.local_value, d.remote_value) == ("#5A94D6", "#6BA5E7")
        assert d.local_version == 3
        assert not d.proposed_link

    def test_name_match_is_a_proposed_link(self):
        remote = make_remote([make_variable("v1", "color/a", rgb("#6BA5E7"))])
        (d,) = diff(remote, local(make_token("t1", "color/a", "#5A94D6")))
        assert d.kind == DivergenceKind.MODIFIED
        assert d.proposed_link
        assert d.variable_id == "v1"

    def test_added_uses_inferred_type_and_collection(self):
        remote = make_remote(
            [make_variable("v1", "spacing/lg", 24, ResolvedType.FLOAT, description="Large gap")]
        )
        (d,) = diff(remote, local())
        assert d.kind == DivergenceKind.ADDED
        assert d.key == "added:v1"
        assert d.token_type == TokenType.SPACING
        assert d.category == "Core"
        assert d.remote_value == "24"
        assert d.description == "Large gap"

    def test_removed(self):
        (d,) = diff(make_remote(), local(make_token("t1", "legacy/x", "#000000", external_ref="gone")))
        assert d.kind == DivergenceKind.REMOVED
        assert d.token_id == "t1"
        assert d.remote_value is None

    def test_unlinked_local_tokens_are_ignored(self):
        assert diff(make_remote(), local(make_token("t1", "local/only", "#000000"))) == ()

    def test_dismissed_keys_are_skipped(self):
        remote = make_remote([make_variable("v1", "color/a", rgb("#000000"))])
        tokens = local(
            make_token("t1", "legacy/x", "#000000", external_ref="gone"),
            dismissed={"added:v1", "removed:t1"},
        )
        assert diff(remote, tokens) == ()

    def test_comparison_mode(self):
        remote = make_remote([make_variable("v1", "color/a", rgb("#FFFFFF"), dark_value=rgb("#000000"))])
        tokens = local(make_token("t1", "color/a", "#000000", external_ref="v1"))
        assert len(diff(remote, tokens)) == 1
        assert diff(remote, tokens, SyncConfig(comparison_mode="dark")) == ()

    def test_matched_pair_compares_with_local_type(self):
        # The remote name would infer OTHER, but the token says SPACING.
        remote = make_remote([make_variable("v1", "size/x", 16, ResolvedType.FLOAT)])
        assert diff(remote, local(make_token("t1", "size/x", "16px", TokenType.SPACING, external_ref="v1"))) == ()


class TestDriftSuppression:
    def test_acknowledged_drift_is_not_reported(self):
        remote = make_remote([make_variable("v1", "color/a", rgb("#6BA5E7"))])
        token = make_token("t1", "color/a", "#5A94D6", external_ref="v1", last_remote_value="#6ba5e7ff")
        assert diff(remote, local(token)) == ()

    def test_new_remote_change_is_reported_again(self):
        remote = make_remote([make_variable("v1", "color/a", rgb("#FF0000"))])
        token = make_token("t1", "color/a", "#5A94D6", external_ref="v1", last_remote_value="#6BA5E7")
        (d,) = diff(remote, local(token))
        assert d.remote_value == "#FF0000"


class TestMalformedValues:
    def test_invalid_remote_value_is_flagged_not_raised(self):
        remote = make_remote([make_variable("v1", "color/a", "not-a-color", ResolvedType.COLOR)])
        diagnostics = []
        (d,) = diff(remote, local(make_token("t1", "color/a", "#000000", external_ref="v1")), diagnostics=diagnostics)
        assert d.kind == DivergenceKind.MODIFIED
        assert not d.remote_valid
        assert d.remote_value == "not-a-color"
        assert [x["kind"] for x in diagnostics] == ["tokensync.malformed_value"]
        assert diagnostics[0]["key"] == "modified:t1"

    def test_invalid_local_value(self):
        remote = make_remote([make_variable("v1", "color/a", rgb("#000000"))])
        (d,) = diff(remote, local(make_token("t1", "color/a", "black", external_ref="v1")))
        assert not d.local_valid
        assert d.remote_valid

    def test_dangling_alias(self):
        remote = make_remote(
            [make_variable("v1", "color/a", {"type": "VARIABLE_ALIAS", "id": "nowhere"})]
        )
        (d,) = diff(remote, local())
        assert not d.remote_valid

    def test_alias_is_followed(self):
        remote = make_remote(
            [
                make_variable("v1", "color/a", {"type": "VARIABLE_ALIAS", "id": "v2"}),
                make_variable("v2", "color/base", rgb("#123456")),
            ]
        )
        tokens = local(
            make_token("t1", "color/a", "#123456", external_ref="v1"),
            make_token("t2", "color/base", "#123456", external_ref="v2"),
        )
        assert diff(remote, tokens) == ()

    def test_alias_cycle(self):
        remote = make_remote(
            [
                make_variable("v1", "color/a", {"type": "VARIABLE_ALIAS", "id": "v2"}),
                make_variable("v2", "color/b", {"type": "VARIABLE_ALIAS", "id": "v1"}),
            ]
        )
        divergences = diff(remote, local())
        assert [d.remote_valid for d in divergences] == [False, False]

    @pytest.mark.parametrize(
        "name,raw,resolved_type,local_value",
        [
            ("color/a", "rgb(1.2.3, 0, 0)", ResolvedType.COLOR, "#000000"),
            ("spacing/a", 1e30, ResolvedType.FLOAT, "16px"),
        ],
    )
    def test_unparseable_remote_value_degrades_to_invalid(self, name, raw, resolved_type, local_value):
        remote = make_remote([make_variable("v1", name, raw, resolved_type)])
        token_type = TokenType.COLOR if resolved_type == ResolvedType.COLOR else TokenType.SPACING
        tokens = local(make_token("t1", name, local_value, token_type, external_ref="v1"))
        (d,) = diff(remote, tokens)
        assert d.kind == DivergenceKind.MODIFIED
        assert not d.remote_valid


class TestAmbiguity:
    def test_ambiguous_match_becomes_added_with_candidates(self):
        remote = make_remote([make_variable("v1", "PRIMARY", rgb("#000000"))])
        diagnostics = []
        divergences = diff(
            remote,
            local(make_token("t1", "primary", "#000000"), make_token("t2", "Primary", "#000000")),
            diagnostics=diagnostics,
        )
        (d,) = divergences
        assert d.kind == DivergenceKind.ADDED
        assert d.is_ambiguous
        assert d.candidates == ("t1", "t2")
        assert diagnostics[0]["kind"] == "tokensync.ambiguous_match"

    def test_duplicate_refs_reported(self):
        remote = make_remote([make_variable("v1", "color/a", rgb("#000000"))])
        diagnostics = []
        diff(
            remote,
            local(
                make_token("t1", "color/a", "#000000", external_ref="v1"),
                make_token("t2", "color/b", "#000000", external_ref="v1"),
            ),
            diagnostics=diagnostics,
        )
        assert [x["kind"] for x in diagnostics] == ["tokensync.duplicate_external_ref"]


class TestOrdering:
    def test_added_then_removed_then_modified(self):
        remote = make_remote(
            [
                make_variable("v9", "b/added", rgb("#000000")),
                make_variable("v8", "a/added", rgb("#000000")),
                make_variable("v1", "z/changed", rgb("#FFFFFF")),
                make_variable("v2", "y/changed", rgb("#FFFFFF")),
            ]
        )
        tokens = local(
            make_token("t1", "z/changed", "#000000", external_ref="v1"),
            make_token("t2", "y/changed", "#000000", external_ref="v2"),
            make_token("t3", "x/removed", "#000000", external_ref="gone-1"),
            make_token("t4", "w/removed", "#000000", external_ref="gone-2"),
        )
        keys = [d.key for d in diff(remote, tokens)]
        assert keys == [
            "added:v8",
            "added:v9",
            "removed:t4",
            "removed:t3",
            "modified:t2",
            "modified:t1",
        ]

    def test_log_lines(self, caplog):
        remote = make_remote([make_variable("v1", "color/a", rgb("#6BA5E7"))])
        divergences = diff(remote, local(make_token("t1", "color/a", "#5A94D6", external_ref="v1")))
        line = divergence_line(divergences[0])
        assert line == "MODIFIED key=modified:t1 name=color/a type=COLOR local=#5A94D6 remote=#6BA5E7"
        logger = logging.getLogger("tokensync.test")
        with caplog.at_level(logging.INFO, logger="tokensync.test"):
            log_divergences(divergences, logger)
        assert [m for m in caplog.messages if m.startswith("DIVERGENCE")] == [f"DIVERGENCE {line}"]


def test_multiple_modes_do_not_duplicate_divergences():
    remote = make_remote(
        [make_variable("v1", "color/a", rgb("#FFFFFF"), dark_value=rgb("#111111"))]
    )
    tokens = local(make_token("t1", "color/a", "#000000", external_ref="v1"))
    assert [d.remote_value for d in diff(remote, tokens)] == ["#FFFFFF"]
    assert DARK in remote.variables["v1"].values_by_mode
