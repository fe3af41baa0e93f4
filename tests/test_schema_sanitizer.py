import copy
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from src.schema_sanitizer import (  # noqa: E402
    EMPTY_SCHEMA_PLACEHOLDER_DESCRIPTION,
    EMPTY_SCHEMA_PLACEHOLDER_NAME,
    clean_json_schema,
    sanitize_tool_schema,
    to_gemini_schema,
)


FORBIDDEN_KEYS = {"$ref", "const", "allOf", "anyOf", "oneOf", "additionalProperties", "$defs", "definitions"}


def assert_sanitized(node, path="$"):
    """Walk schema nodes (never property names) and check the sanitized output."""
    assert isinstance(node, dict), f"{path} is not an object"
    for key in node:
        assert key not in FORBIDDEN_KEYS, f"unexpected schema key {key} at {path}"

    if "type" in node:
        assert isinstance(node["type"], str), f"type at {path} is not a string"
        assert node["type"] == node["type"].upper(), f"type at {path} is not upper-case"

    properties = node.get("properties")
    if "required" in node:
        assert isinstance(properties, dict), f"required without properties at {path}"
        for name in node["required"]:
            assert name in properties, f"required entry {name} missing from properties at {path}"

    if node.get("type") == "OBJECT":
        assert properties, f"object without properties at {path}"

    if isinstance(properties, dict):
        for name, sub_schema in properties.items():
            assert_sanitized(sub_schema, f"{path}.properties.{name}")
    if "items" in node:
        assert_sanitized(node["items"], f"{path}.items")


def iter_nodes(value):
    """遍历输出中的每个对象（包括未知关键字下的子树）"""
    if isinstance(value, dict):
        yield value
        for sub in value.values():
            yield from iter_nodes(sub)
    elif isinstance(value, list):
        for sub in value:
            yield from iter_nodes(sub)


def nested_schema(depth):
    schema = {"type": "string"}
    for _ in range(depth):
        schema = {"type": "object", "properties": {"child": schema}}
    return schema


def test_additional_properties_false_becomes_hint():
    schema = {
        "type": "object",
        "additionalProperties": False,
        "properties": {"a": {"type": "string"}},
    }
    assert sanitize_tool_schema(schema) == {
        "type": "OBJECT",
        "properties": {"a": {"type": "STRING"}},
        "description": "(No extra properties allowed)",
    }


def test_const_union_collapses_to_string_enum():
    schema = {"anyOf": [{"const": "a"}, {"const": "b"}]}
    assert sanitize_tool_schema(schema) == {"type": "STRING", "enum": ["a", "b"]}


def test_empty_object_gets_placeholder_property():
    result = sanitize_tool_schema({"type": "object"})
    assert result == {
        "type": "OBJECT",
        "properties": {
            EMPTY_SCHEMA_PLACEHOLDER_NAME: {
                "type": "BOOLEAN",
                "description": EMPTY_SCHEMA_PLACEHOLDER_DESCRIPTION,
            }
        },
        "required": [EMPTY_SCHEMA_PLACEHOLDER_NAME],
    }


def test_missing_schema_defaults_to_empty_object():
    for schema in (None, {}, "not a schema"):
        result = sanitize_tool_schema(schema)
        assert result["type"] == "OBJECT"
        assert list(result["properties"]) == [EMPTY_SCHEMA_PLACEHOLDER_NAME]


def test_ref_becomes_named_hint_without_inlining():
    schema = {
        "type": "object",
        "properties": {"user": {"$ref": "#/$defs/User", "description": "Owner"}},
        "$defs": {"User": {"type": "object", "properties": {"name": {"type": "string"}}}},
    }
    result = sanitize_tool_schema(schema)
    assert "$defs" not in result
    user = result["properties"]["user"]
    assert user["type"] == "OBJECT"
    assert user["description"] == "Owner (See: User)"
    assert "name" not in user["properties"]
    assert_sanitized(result)


def test_enum_hint_only_for_small_enums():
    small = clean_json_schema({"type": "string", "enum": ["a", "b", "c"], "description": "Unit"})
    assert small["description"] == "Unit (Allowed: a, b, c)"
    assert small["enum"] == ["a", "b", "c"]

    single = clean_json_schema({"type": "string", "enum": ["a"]})
    assert "description" not in single

    large = clean_json_schema({"type": "string", "enum": [str(i) for i in range(11)]})
    assert "description" not in large


def test_constraints_move_into_description():
    result = clean_json_schema({"type": "string", "minLength": 1, "format": "email"})
    assert result == {"type": "string", "description": "(minLength: 1) (format: email)"}


def test_object_valued_constraint_is_removed_without_hint():
    result = clean_json_schema({"type": "string", "default": {"nested": True}})
    assert result == {"type": "string"}


def test_all_of_merges_properties_and_required():
    schema = {
        "allOf": [
            {"type": "object", "properties": {"a": {"type": "string"}}, "required": ["a"]},
            {"properties": {"b": {"type": "integer"}}, "required": ["b"]},
        ]
    }
    assert sanitize_tool_schema(schema) == {
        "type": "OBJECT",
        "properties": {"a": {"type": "STRING"}, "b": {"type": "INTEGER"}},
        "required": ["a", "b"],
    }


def test_all_of_first_writer_wins():
    schema = {
        "description": "parent",
        "allOf": [{"description": "first", "type": "string"}, {"description": "second", "type": "integer"}],
    }
    assert clean_json_schema(schema) == {"description": "parent", "type": "string"}


def test_union_picks_object_and_hints_accepted_types():
    schema = {
        "description": "Thing",
        "anyOf": [
            {"type": "null"},
            {"type": "object", "properties": {"x": {"type": "string"}}},
        ],
    }
    assert sanitize_tool_schema(schema) == {
        "description": "Thing (Accepts: null | object)",
        "type": "OBJECT",
        "properties": {"x": {"type": "STRING"}},
    }


def test_union_prefers_array_over_scalar():
    schema = {"oneOf": [{"type": "string"}, {"type": "array", "items": {"type": "integer"}}]}
    result = sanitize_tool_schema(schema)
    assert result["type"] == "ARRAY"
    assert result["items"] == {"type": "INTEGER"}
    assert result["description"] == "(Accepts: string | array)"


def test_union_with_single_type_has_no_hint():
    result = clean_json_schema({"anyOf": [{"type": "string", "description": "a"}, {"type": "string"}]})
    assert result == {"type": "string", "description": "a"}


def test_nullable_type_array_leaves_required():
    schema = {
        "type": "object",
        "properties": {
            "name": {"type": ["string", "null"], "description": "Name"},
            "age": {"type": "integer"},
        },
        "required": ["name", "age"],
    }
    result = sanitize_tool_schema(schema)
    assert result["properties"]["name"] == {"type": "STRING", "description": "Name (nullable)"}
    assert result["required"] == ["age"]


def test_null_only_type_array_defaults_to_string():
    assert clean_json_schema({"type": ["null"]}) == {"type": "string", "description": "(nullable)"}


def test_property_names_that_look_like_keywords_survive():
    schema = {
        "type": "object",
        "properties": {
            "format": {"type": "string"},
            "title": {"type": "string"},
            "pattern": {"type": "string"},
        },
        "required": ["format", "title"],
    }
    result = sanitize_tool_schema(schema)
    assert set(result["properties"]) == {"format", "title", "pattern"}
    assert result["required"] == ["format", "title"]


def test_required_pruned_to_existing_properties():
    schema = {
        "type": "object",
        "properties": {"a": {"type": "string"}},
        "required": ["a", "ghost", "a", 3],
    }
    assert clean_json_schema(schema)["required"] == ["a"]

    no_valid = clean_json_schema({"type": "object", "properties": {"a": {"type": "string"}}, "required": ["ghost"]})
    assert "required" not in no_valid


def test_complex_schema_is_fully_sanitized():
    schema = {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "title": "Config",
        "additionalProperties": False,
        "properties": {
            "mode": {"anyOf": [{"const": "fast"}, {"const": "slow"}]},
            "tags": {"type": "array", "minItems": 1},
            "meta": {"type": ["object", "null"]},
            "ref": {"$ref": "#/definitions/Thing"},
            "combo": {
                "allOf": [
                    {"properties": {"p": {"type": "integer", "default": 3}}},
                    {"required": ["p", "missing"]},
                ]
            },
            "nested": {
                "type": "object",
                "properties": {
                    "deep": {"oneOf": [{"type": "string"}, {"type": "number", "exclusiveMinimum": 0}]},
                },
                "additionalProperties": {"type": "string"},
            },
        },
        "required": ["mode", "meta", "ghost"],
        "definitions": {"Thing": {"type": "object"}},
    }
    result = sanitize_tool_schema(schema)
    assert_sanitized(result)

    props = result["properties"]
    assert result["required"] == ["mode"]
    assert props["mode"] == {"type": "STRING", "enum": ["fast", "slow"]}
    assert props["tags"]["items"] == {"type": "STRING"}
    assert props["tags"]["description"] == "(minItems: 1)"
    assert props["meta"]["type"] == "OBJECT"
    assert props["combo"]["required"] == ["p"]
    assert props["combo"]["properties"]["p"]["description"] == "(default: 3)"
    assert props["nested"]["properties"]["deep"]["type"] == "STRING"


def test_no_unnormalized_subtree_survives():
    schema = {
        "type": "object",
        "properties": {
            "pair": {"type": "array", "prefixItems": [{"type": "integer"}, {"type": "string"}]},
            "bag": {"type": "array", "contains": {"type": "string"}},
            "a": {"type": "object", "properties": {"x": {"type": ["string", "null"]}}},
        },
        "dependencies": {"a": {"properties": {"b": {"$ref": "#/$defs/B"}}}},
        "dependentSchemas": {"a": {"properties": {"c": {"type": "string"}}}},
        "minProperties": 1,
    }
    result = sanitize_tool_schema(schema)
    assert_sanitized(result)

    for node in iter_nodes(result):
        if isinstance(node.get("type"), str):
            assert node["type"] == node["type"].upper(), node
        for key in ("$ref", "prefixItems", "contains", "dependencies", "dependentSchemas", "minProperties"):
            assert key not in node, node

    props = result["properties"]
    assert props["pair"]["items"] == {"type": "INTEGER"}
    assert props["bag"]["items"] == {"type": "STRING"}


def test_prefix_items_folded_into_items():
    result = clean_json_schema({"type": "array", "prefixItems": [{"type": "integer"}, {"type": "string"}]})
    assert result == {"type": "array", "items": {"type": "integer"}}

    kept = clean_json_schema({
        "type": "array",
        "prefixItems": [{"type": "integer"}],
        "items": {"type": "string"},
    })
    assert kept == {"type": "array", "items": {"type": "string"}}


def test_deeply_nested_schema_falls_back_to_placeholder():
    deep = nested_schema(300)
    result = sanitize_tool_schema(deep)
    assert result == {
        "type": "OBJECT",
        "properties": {
            EMPTY_SCHEMA_PLACEHOLDER_NAME: {
                "type": "BOOLEAN",
                "description": EMPTY_SCHEMA_PLACEHOLDER_DESCRIPTION,
            }
        },
        "required": [EMPTY_SCHEMA_PLACEHOLDER_NAME],
    }

    shallow = sanitize_tool_schema(nested_schema(20))
    node = shallow
    for _ in range(20):
        assert node["type"] == "OBJECT"
        node = node["properties"]["child"]
    assert node == {"type": "STRING"}


def test_sanitizer_does_not_mutate_input():
    schema = {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "a": {"anyOf": [{"const": 1}, {"const": 2}]},
            "b": {"type": ["string", "null"], "minLength": 2},
        },
        "required": ["a", "b"],
    }
    snapshot = copy.deepcopy(schema)
    clean_json_schema(schema)
    sanitize_tool_schema(schema)
    assert schema == snapshot


def test_totality_over_json_values():
    values = [
        None,
        0,
        1.5,
        True,
        "text",
        [],
        [1, {"type": ["string", "null"]}],
        {},
        {"type": 5, "properties": "nope", "required": "x", "items": 3},
        {"anyOf": "broken", "allOf": None, "enum": "x"},
        {"properties": {"a": None, "b": [1, 2]}},
        {"$ref": 7, "const": None},
        nested_schema(300),
        [[[[[[[[[[1]]]]]]]]]] * 2,
    ]
    for value in values:
        clean_json_schema(value)
        to_gemini_schema(value)
        to_gemini_schema(clean_json_schema(value))

    assert clean_json_schema(None) is None
    assert to_gemini_schema("text") == "text"


def test_stage_two_is_safe_on_its_own():
    assert to_gemini_schema({"type": "array"}) == {"type": "ARRAY", "items": {"type": "STRING"}}

    schema = {
        "type": "object",
        "properties": {"a": {"type": "string"}},
        "required": ["a", "b"],
        "if": {"properties": {"a": {"const": "x"}}},
        "patternProperties": {"^x": {"type": "string"}},
        "contentEncoding": "base64",
    }
    assert to_gemini_schema(schema) == {
        "type": "OBJECT",
        "properties": {"a": {"type": "STRING"}},
        "required": ["a"],
    }

    assert to_gemini_schema({"anyOf": [{"type": "string"}, {"type": "integer"}]}) == {
        "anyOf": [{"type": "STRING"}, {"type": "INTEGER"}]
    }
    assert to_gemini_schema({"type": "array", "items": [{"type": "integer"}, {"type": "string"}]}) == {
        "type": "ARRAY",
        "items": {"type": "INTEGER"},
    }


def main():
    test_additional_properties_false_becomes_hint()
    test_const_union_collapses_to_string_enum()
    test_empty_object_gets_placeholder_property()
    test_missing_schema_defaults_to_empty_object()
    test_ref_becomes_named_hint_without_inlining()
    test_enum_hint_only_for_small_enums()
    test_constraints_move_into_description()
    test_object_valued_constraint_is_removed_without_hint()
    test_all_of_merges_properties_and_required()
    test_all_of_first_writer_wins()
    test_union_picks_object_and_hints_accepted_types()
    test_union_prefers_array_over_scalar()
    test_union_with_single_type_has_no_hint()
    test_nullable_type_array_leaves_required()
    test_null_only_type_array_defaults_to_string()
    test_property_names_that_look_like_keywords_survive()
    test_required_pruned_to_existing_properties()
    test_complex_schema_is_fully_sanitized()
    test_no_unnormalized_subtree_survives()
    test_prefix_items_folded_into_items()
    test_deeply_nested_schema_falls_back_to_placeholder()
    test_sanitizer_does_not_mutate_input()
    test_totality_over_json_values()
    test_stage_two_is_safe_on_its_own()
    print("OK")


if __name__ == "__main__":
    main()
