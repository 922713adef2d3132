"""Tests for token and remote payload validation."""

from ..types import ResolvedType, TokenType
from ..validation import parse_remote_snapshot, token_to_dict, validate_token
from .factories import COLLECTION_ID, DARK, LIGHT, variables_payload


class TestValidateToken:
    def test_camel_case_record(self):
        result = validate_token(
            {
                "id": "t1",
                "name": "color/primary-500",
                "value": "#5A94D6",
                "type": "COLOR",
                "category": "Core",
                "figmaVariableId": "VariableID:1:2",
                "lastRemoteValue": "#5A94D6",
            }
        )
        assert result.ok
        token = result.value
        assert token.type == TokenType.COLOR
        assert token.external_ref == "VariableID:1:2"
        assert token.version == 1

    def test_collects_every_error(self):
        result = validate_token({"name": "", "value": "", "type": "COLOUR", "category": ""})
        assert not result.ok
        assert len(result.errors) == 5

    def test_length_limits(self):
        result = validate_token(
            {
                "id": "t1",
                "name": "x" * 101,
                "value": "1",
                "type": "OTHER",
                "category": "c",
                "description": "d" * 501,
            }
        )
        assert any("name" in e for e in result.errors)
        assert any("description" in e for e in result.errors)

    def test_version_must_be_positive_int(self):
        base = {"id": "t1", "name": "n", "value": "1", "type": "OTHER", "category": "c"}
        assert not validate_token({**base, "version": 0}).ok
        assert not validate_token({**base, "version": True}).ok
        assert validate_token({**base, "version": 3}).value.version == 3

    def test_round_trip_through_dict(self):
        base = {
            "id": "t1",
            "name": "spacing/lg",
            "value": "24px",
            "type": "SPACING",
            "category": "Core",
            "externalRef": "v1",
            "version": 4,
        }
        token = validate_token(base).value
        assert validate_token(token_to_dict(token)).value == token


class TestParseRemoteSnapshot:
    def test_full_response(self):
        payload = variables_payload(
            {
                "VariableID:1:2": {
                    "name": "color/primary-500",
                    "resolvedType": "COLOR",
                    "valuesByMode": {LIGHT: {"r": 1, "g": 0, "b": 0, "a": 1}},
                }
            }
        )
        result = parse_remote_snapshot(payload)
        assert result.ok and result.errors == []
        snapshot = result.value
        collection = snapshot.collections[COLLECTION_ID]
        assert collection.name == "Core"
        assert [m.mode_id for m in collection.modes] == [LIGHT, DARK]
        variable = snapshot.variables["VariableID:1:2"]
        assert variable.resolved_type == ResolvedType.COLOR

    def test_bare_meta_object(self):
        payload = variables_payload({})["meta"]
        assert parse_remote_snapshot(payload).ok

    def test_error_response_fails(self):
        result = parse_remote_snapshot({"error": True, "status": 403})
        assert not result.ok
        assert "403" in result.errors[0]

    def test_bad_shape_fails(self):
        assert not parse_remote_snapshot([]).ok
        assert not parse_remote_snapshot({"meta": {"variables": []}}).ok

    def test_any_bad_variable_fails_the_payload(self):
        payload = variables_payload(
            {
                "v1": {"name": "ok", "resolvedType": "FLOAT", "valuesByMode": {LIGHT: 4}},
                "v2": {"name": "", "resolvedType": "FLOAT", "valuesByMode": {LIGHT: 4}},
                "v3": {"name": "empty", "resolvedType": "FLOAT", "valuesByMode": {}},
            }
        )
        result = parse_remote_snapshot(payload)
        assert not result.ok
        assert len(result.errors) == 2

    def test_variable_without_collection_fails_the_payload(self):
        payload = variables_payload(
            {"v1": {"name": "ok", "resolvedType": "FLOAT", "valuesByMode": {LIGHT: 4}}}
        )
        del payload["meta"]["variables"]["v1"]["variableCollectionId"]
        result = parse_remote_snapshot(payload)
        assert not result.ok
        assert "variableCollectionId" in result.errors[0]

    def test_unknown_resolved_type(self):
        payload = variables_payload(
            {"v1": {"name": "x", "resolvedType": "GRADIENT", "valuesByMode": {LIGHT: 1}}}
        )
        variable = parse_remote_snapshot(payload).value.variables["v1"]
        assert variable.resolved_type == ResolvedType.UNKNOWN
