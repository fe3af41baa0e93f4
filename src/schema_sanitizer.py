"""JSON Schema 清洗 - 工具参数 schema → Cloud Code functionDeclarations

两个阶段:
- clean_json_schema: 把上游不支持的特性改写为 description 提示，保留语义
- to_gemini_schema: 规范化为 Gemini schema（类型大写、删除不兼容字段）

两个阶段对任意 JSON 值都不会抛出异常，也不会修改输入。
"""
import copy
import json
import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


# VALIDATED 模式要求 object 至少有一个属性
EMPTY_SCHEMA_PLACEHOLDER_NAME = "_placeholder"
EMPTY_SCHEMA_PLACEHOLDER_DESCRIPTION = "Placeholder. Always pass true."

# 枚举值个数在此范围内时添加 "Allowed: ..." 提示
ENUM_HINT_MIN_ITEMS = 2
ENUM_HINT_MAX_ITEMS = 10

# 转为 description 提示的约束关键字
UNSUPPORTED_CONSTRAINTS = [
    "minLength",
    "maxLength",
    "exclusiveMinimum",
    "exclusiveMaximum",
    "pattern",
    "minItems",
    "maxItems",
    "format",
    "default",
    "examples",
]

# 提取提示后删除的关键字
UNSUPPORTED_KEYWORDS = {
    *UNSUPPORTED_CONSTRAINTS,
    "$schema",
    "$defs",
    "definitions",
    "const",
    "$ref",
    "additionalProperties",
    "propertyNames",
    "title",
    "$id",
    "$comment",
    "prefixItems",
}

# Gemini API 不接受的字段
GEMINI_UNSUPPORTED_SCHEMA_FIELDS = {
    *UNSUPPORTED_KEYWORDS,
    "if",
    "then",
    "else",
    "not",
    "patternProperties",
    "unevaluatedProperties",
    "unevaluatedItems",
    "dependentRequired",
    "dependentSchemas",
    "propertyNames",
    "minContains",
    "maxContains",
    "contentMediaType",
    "contentEncoding",
    "contains",
    "additionalItems",
    "dependencies",
    "minProperties",
    "maxProperties",
    "uniqueItems",
    "$anchor",
    "$dynamicRef",
    "$dynamicAnchor",
}

# 子 schema 所在的位置
_SCHEMA_MAP_KEYS = ("properties", "patternProperties", "$defs", "definitions", "dependentSchemas", "dependencies")
_SCHEMA_LIST_KEYS = ("anyOf", "oneOf", "allOf", "prefixItems")
_SCHEMA_SINGLE_KEYS = (
    "items",
    "additionalItems",
    "additionalProperties",
    "not",
    "if",
    "then",
    "else",
    "contains",
    "propertyNames",
    "unevaluatedProperties",
    "unevaluatedItems",
)

# 超过此嵌套深度的 schema 整体替换为占位 object
MAX_SCHEMA_DEPTH = 100

_UNION_KEYS = ("anyOf", "oneOf")
_SCALAR_TYPE_NAMES = (
    (bool, "boolean"),
    (int, "integer"),
    (float, "number"),
    (str, "string"),
    (list, "array"),
    (dict, "object"),
)


# =============================================================================
# 树遍历
# =============================================================================


def _map_subschemas(schema: Dict[str, Any], fn: Callable[[Any], Any]) -> Dict[str, Any]:
    """
    返回 schema 的副本，每个直接子 schema 经过 fn 处理

    properties 一类映射的键是属性名而不是关键字，只处理值
    """
    result = dict(schema)
    for key in _SCHEMA_MAP_KEYS:
        value = result.get(key)
        if isinstance(value, dict):
            result[key] = {name: fn(sub) for name, sub in value.items()}
    for key in _SCHEMA_LIST_KEYS:
        value = result.get(key)
        if isinstance(value, list):
            result[key] = [fn(sub) for sub in value]
    for key in _SCHEMA_SINGLE_KEYS:
        value = result.get(key)
        if isinstance(value, dict):
            result[key] = fn(value)
        elif key == "items" and isinstance(value, list):
            result[key] = [fn(sub) for sub in value]
    return result


def _recursive(transform: Callable[[Dict[str, Any]], Dict[str, Any]]) -> Callable[[Any], Any]:
    """把单节点变换提升为整棵树的先序遍历"""
    def apply(schema: Any) -> Any:
        if not isinstance(schema, dict):
            return schema
        return _map_subschemas(transform(schema), apply)
    return apply


def _hint_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _append_description_hint(schema: Dict[str, Any], hint: str) -> Dict[str, Any]:
    """description 末尾追加 "(hint)" """
    existing = schema.get("description")
    if isinstance(existing, str) and existing:
        description = f"{existing} ({hint})"
    else:
        description = f"({hint})"
    return {**schema, "description": description}


def _type_names(schema: Dict[str, Any]) -> List[str]:
    """推断 schema 接受的 JSON 类型"""
    schema_type = schema.get("type")
    if isinstance(schema_type, str):
        return [schema_type.lower()]
    if isinstance(schema_type, list):
        return [t.lower() for t in schema_type if isinstance(t, str)]
    if isinstance(schema.get("properties"), dict):
        return ["object"]
    if "items" in schema:
        return ["array"]
    enum_values = schema.get("enum")
    if isinstance(enum_values, list) and enum_values:
        value = enum_values[0]
        if value is None:
            return ["null"]
        for py_type, name in _SCALAR_TYPE_NAMES:
            if isinstance(value, py_type):
                return [name]
    return []


def _first_schema(items: List[Any]) -> Optional[Dict[str, Any]]:
    for item in items:
        if isinstance(item, dict):
            return item
    return None


def _nesting_depth(value: Any, limit: int = MAX_SCHEMA_DEPTH) -> int:
    """对象/数组的嵌套层数（迭代计算，超过 limit 即停止）"""
    depth = 0
    stack = [(value, 1)]
    while stack:
        node, level = stack.pop()
        if isinstance(node, dict):
            children = list(node.values())
        elif isinstance(node, list):
            children = node
        else:
            continue
        depth = max(depth, level)
        if depth > limit:
            break
        stack.extend((child, level + 1) for child in children)
    return depth


def _is_too_deep(schema: Any) -> bool:
    depth = _nesting_depth(schema)
    if depth > MAX_SCHEMA_DEPTH:
        logger.warning(f"Schema nesting exceeds {MAX_SCHEMA_DEPTH} levels, replaced with an empty object schema")
        return True
    return False


# =============================================================================
# 阶段一: 保留语义的清洗
# =============================================================================


def _convert_ref_to_hint(schema: Dict[str, Any]) -> Dict[str, Any]:
    """$ref: "#/$defs/Foo" → {type: "object", description: "See: Foo"}"""
    ref = schema.get("$ref")
    if not isinstance(ref, str):
        return schema
    def_name = ref.rsplit("/", 1)[-1] or ref
    result: Dict[str, Any] = {"type": "object"}
    if isinstance(schema.get("description"), str):
        result["description"] = schema["description"]
    return _append_description_hint(result, f"See: {def_name}")


def _convert_const_to_enum(schema: Dict[str, Any]) -> Dict[str, Any]:
    """{const: "foo"} → {enum: ["foo"]}"""
    if "const" not in schema:
        return schema
    result = {key: value for key, value in schema.items() if key != "const"}
    if "enum" not in result:
        result["enum"] = [schema["const"]]
    return result


def _add_enum_hint(schema: Dict[str, Any]) -> Dict[str, Any]:
    enum_values = schema.get("enum")
    if not isinstance(enum_values, list):
        return schema
    if not ENUM_HINT_MIN_ITEMS <= len(enum_values) <= ENUM_HINT_MAX_ITEMS:
        return schema
    values = ", ".join(_hint_value(v) for v in enum_values)
    return _append_description_hint(schema, f"Allowed: {values}")


def _add_additional_properties_hint(schema: Dict[str, Any]) -> Dict[str, Any]:
    if schema.get("additionalProperties") is not False:
        return schema
    result = {key: value for key, value in schema.items() if key != "additionalProperties"}
    return _append_description_hint(result, "No extra properties allowed")


def _move_constraints_to_description(schema: Dict[str, Any]) -> Dict[str, Any]:
    """{minLength: 1} → description "(minLength: 1)"；值为对象的约束留给后面删除"""
    result = schema
    for constraint in UNSUPPORTED_CONSTRAINTS:
        if constraint not in result or isinstance(result[constraint], dict):
            continue
        value = result[constraint]
        result = {key: v for key, v in result.items() if key != constraint}
        result = _append_description_hint(result, f"{constraint}: {_hint_value(value)}")
    return result


def _merge_all_of(schema: Dict[str, Any]) -> Dict[str, Any]:
    """allOf 合并到父节点，同名字段先写入者优先"""
    all_of = schema.get("allOf")
    if "allOf" not in schema:
        return schema

    result = {key: value for key, value in schema.items() if key != "allOf"}
    if not isinstance(all_of, list):
        return result

    properties = dict(result["properties"]) if isinstance(result.get("properties"), dict) else {}
    required = list(result["required"]) if isinstance(result.get("required"), list) else []

    for member in all_of:
        if not isinstance(member, dict):
            continue
        member = _merge_all_of(member)
        member_props = member.get("properties")
        if isinstance(member_props, dict):
            for name, sub_schema in member_props.items():
                properties.setdefault(name, sub_schema)
        member_required = member.get("required")
        if isinstance(member_required, list):
            for name in member_required:
                if name not in required:
                    required.append(name)
        for key, value in member.items():
            if key in ("properties", "required"):
                continue
            result.setdefault(key, value)

    if properties:
        result["properties"] = properties
    if required:
        result["required"] = required
    return result


def _is_single_value_enum(schema: Dict[str, Any]) -> bool:
    """只允许单个值的联合成员（const 转换后的 {enum: [x]}）"""
    enum_values = schema.get("enum")
    if not isinstance(enum_values, list) or len(enum_values) != 1:
        return False
    return not any(key in schema for key in ("properties", "items", "anyOf", "oneOf", "allOf"))


def _score_schema_option(schema: Dict[str, Any]) -> int:
    """object 3 > array 2 > 其他非 null 1 > null 或无类型 0"""
    names = _type_names(schema)
    if "object" in names:
        return 3
    if "array" in names:
        return 2
    if any(name != "null" for name in names):
        return 1
    return 0


def _extract_best_schema_from_union(options: List[Dict[str, Any]]) -> Dict[str, Any]:
    best_option = options[0]
    best_score = _score_schema_option(best_option)
    for option in options[1:]:
        score = _score_schema_option(option)
        if score > best_score:
            best_option, best_score = option, score
    return best_option


def _collapse_union(base: Dict[str, Any], options: List[Any]) -> Dict[str, Any]:
    members = [option for option in options if isinstance(option, dict)]
    if not members:
        return base

    if all(_is_single_value_enum(member) for member in members):
        values: List[Any] = []
        for member in members:
            value = member["enum"][0]
            value = value if isinstance(value, str) else _hint_value(value)
            if value not in values:
                values.append(value)
        return {**base, "type": "string", "enum": values}

    best = _extract_best_schema_from_union(members)
    result = dict(base)
    for key, value in best.items():
        if key == "properties" and isinstance(value, dict) and isinstance(result.get("properties"), dict):
            merged = dict(result["properties"])
            for name, sub_schema in value.items():
                merged.setdefault(name, sub_schema)
            result["properties"] = merged
        elif key == "required" and isinstance(value, list) and isinstance(result.get("required"), list):
            result["required"] = result["required"] + [r for r in value if r not in result["required"]]
        else:
            result.setdefault(key, value)

    type_names: List[str] = []
    for member in members:
        for name in _type_names(member):
            if name not in type_names:
                type_names.append(name)
    if len(type_names) > 1:
        result = _append_description_hint(result, "Accepts: " + " | ".join(type_names))
    return result


def _flatten_unions(schema: Dict[str, Any]) -> Dict[str, Any]:
    """anyOf/oneOf 折叠为一个代表 schema"""
    result = schema
    while any(key in result for key in _UNION_KEYS):
        for key in _UNION_KEYS:
            if key not in result:
                continue
            options = result[key]
            base = {k: v for k, v in result.items() if k != key}
            result = _collapse_union(base, options) if isinstance(options, list) else base
    return result


def _is_nullable_type(schema: Any) -> bool:
    return isinstance(schema, dict) and isinstance(schema.get("type"), list) and "null" in schema["type"]


def _flatten_type_array(schema: Dict[str, Any]) -> Dict[str, Any]:
    """type: ["string", "null"] → type: "string" + "(nullable)"；可空属性移出 required"""
    result = schema

    properties = result.get("properties")
    required = result.get("required")
    if isinstance(properties, dict) and isinstance(required, list):
        nullable = {name for name, sub_schema in properties.items() if _is_nullable_type(sub_schema)}
        if nullable:
            result = {**result, "required": [name for name in required if name not in nullable]}

    schema_type = result.get("type")
    if isinstance(schema_type, list):
        non_null = [t for t in schema_type if isinstance(t, str) and t != "null"]
        result = {**result, "type": non_null[0] if non_null else "string"}
        if "null" in schema_type:
            result = _append_description_hint(result, "nullable")
    return result


def _fold_prefix_items(schema: Dict[str, Any]) -> Dict[str, Any]:
    """元组形式的 prefixItems 折叠为 items（取第一个成员）"""
    prefix_items = schema.get("prefixItems")
    if "prefixItems" not in schema:
        return schema
    result = {key: value for key, value in schema.items() if key != "prefixItems"}
    if not isinstance(result.get("items"), dict) and isinstance(prefix_items, list):
        first = _first_schema(prefix_items)
        if first is not None:
            result["items"] = first
    return result


def _remove_unsupported_keywords(schema: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in schema.items() if key not in UNSUPPORTED_KEYWORDS}


def _fix_required_fields(schema: Dict[str, Any]) -> Dict[str, Any]:
    """删除没有对应属性的 required 项，为空时删除 required"""
    if "required" not in schema:
        return schema
    required = schema["required"]
    properties = schema.get("properties")
    valid_names = set(properties) if isinstance(properties, dict) else set()

    fixed: List[str] = []
    if isinstance(required, list):
        for name in required:
            if isinstance(name, str) and name in valid_names and name not in fixed:
                fixed.append(name)

    result = {key: value for key, value in schema.items() if key != "required"}
    if fixed:
        result["required"] = fixed
    return result


def _add_empty_object_placeholder(schema: Dict[str, Any]) -> Dict[str, Any]:
    schema_type = schema.get("type")
    if not isinstance(schema_type, str) or schema_type.lower() != "object":
        return schema
    properties = schema.get("properties")
    if isinstance(properties, dict) and properties:
        return schema
    return {
        **schema,
        "properties": {
            EMPTY_SCHEMA_PLACEHOLDER_NAME: {
                "type": "boolean",
                "description": EMPTY_SCHEMA_PLACEHOLDER_DESCRIPTION,
            }
        },
        "required": [EMPTY_SCHEMA_PLACEHOLDER_NAME],
    }


_STAGE_ONE_PASSES = [
    _recursive(_convert_ref_to_hint),
    _recursive(_convert_const_to_enum),
    _recursive(_add_enum_hint),
    _recursive(_add_additional_properties_hint),
    _recursive(_move_constraints_to_description),
    _recursive(_merge_all_of),
    _recursive(_flatten_unions),
    _recursive(_flatten_type_array),
    _recursive(_fold_prefix_items),
    _recursive(_remove_unsupported_keywords),
    _recursive(_fix_required_fields),
    _recursive(_add_empty_object_placeholder),
]


def _clean_node(schema: Any) -> Any:
    if isinstance(schema, list):
        return [_clean_node(item) for item in schema]
    if not isinstance(schema, dict):
        return schema

    result = copy.deepcopy(schema)
    for apply_pass in _STAGE_ONE_PASSES:
        result = apply_pass(result)
    return result


def clean_json_schema(schema: Any) -> Any:
    """
    阶段一：把不支持的 JSON Schema 特性改写为 description 提示

    按顺序执行:
    1. $ref → object + "See: <name>" 提示（不内联定义）
    2. const → 单值 enum
    3. 2-10 个值的 enum → "Allowed: ..." 提示
    4. additionalProperties: false → "No extra properties allowed" 提示
    5. 标量约束（minLength、pattern、format 等）→ "key: value" 提示
    6. allOf 合并到父节点
    7. anyOf/oneOf 折叠（枚举联合，或得分最高的成员 + "Accepts" 提示）
    8. type 数组取第一个非 null 类型 + "nullable" 提示
    9. prefixItems 折叠为 items
    10. 删除不支持的关键字（不影响属性名）
    11. required 只保留存在的属性
    12. 空 object 添加 boolean 占位属性

    Args:
        schema: 任意 JSON 值

    Returns:
        新的清洗结果；非对象输入原样返回。嵌套超过 MAX_SCHEMA_DEPTH 时返回空 object schema
    """
    if _is_too_deep(schema):
        return _add_empty_object_placeholder({"type": "object"})
    return _clean_node(schema)


# =============================================================================
# 阶段二: Gemini 规范化
# =============================================================================


def _gemini_node(schema: Any) -> Any:
    if isinstance(schema, list):
        return [_gemini_node(item) for item in schema]
    if not isinstance(schema, dict):
        return schema

    properties = schema.get("properties")
    property_names = set(properties) if isinstance(properties, dict) else set()

    result: Dict[str, Any] = {}
    for key, value in schema.items():
        if key in GEMINI_UNSUPPORTED_SCHEMA_FIELDS:
            continue

        if key == "type":
            if isinstance(value, str):
                result[key] = value.upper()
            elif isinstance(value, list):
                result[key] = [t.upper() if isinstance(t, str) else t for t in value]
            else:
                result[key] = copy.deepcopy(value)
        elif key == "properties" and isinstance(value, dict):
            result[key] = {name: _gemini_node(sub_schema) for name, sub_schema in value.items()}
        elif key == "items":
            if isinstance(value, dict):
                result[key] = _gemini_node(value)
            elif isinstance(value, list):
                # Gemini 只接受单个 items schema
                first = _first_schema(value)
                if first is not None:
                    result[key] = _gemini_node(first)
        elif key in ("anyOf", "oneOf", "allOf") and isinstance(value, list):
            result[key] = [_gemini_node(option) for option in value]
        elif key == "required":
            if isinstance(value, list):
                valid_required: List[str] = []
                for name in value:
                    if isinstance(name, str) and name in property_names and name not in valid_required:
                        valid_required.append(name)
                if valid_required:
                    result[key] = valid_required
        else:
            result[key] = copy.deepcopy(value)

    if result.get("type") == "ARRAY" and not isinstance(result.get("items"), dict):
        result["items"] = {"type": "STRING"}

    return result


def to_gemini_schema(schema: Any) -> Any:
    """
    阶段二：规范化为 Gemini schema

    - type 转大写（object → OBJECT）
    - 删除 Gemini 不兼容的字段
    - 递归处理 properties / items / anyOf / oneOf / allOf
    - required 只保留本节点存在的属性
    - 没有 items 的 ARRAY 补上 items: {type: STRING}

    不依赖阶段一，可以单独使用
    """
    if _is_too_deep(schema):
        return _gemini_node(_add_empty_object_placeholder({"type": "object"}))
    return _gemini_node(schema)


def sanitize_tool_schema(schema: Any) -> Dict[str, Any]:
    """工具 input_schema 依次经过两个阶段（缺失时视为空 object）"""
    if not isinstance(schema, dict) or not schema:
        schema = {"type": "object"}
    return to_gemini_schema(clean_json_schema(schema))
