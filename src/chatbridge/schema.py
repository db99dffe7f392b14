"""Tool schema sanitizer.

Backends accept different subsets of JSON Schema. ``clean_json_schema``
reduces an arbitrary schema to the common subset: no ``$ref``, no
combinators, no annotation-only keywords. Information that cannot be
expressed is folded into the ``description`` so the model still sees it.
"""

from __future__ import annotations

import copy
import re
from typing import Any

_STRIPPED_KEYS = frozenset(
    {
        "$schema",
        "$id",
        "$defs",
        "definitions",
        "$comment",
        "$ref",
        "default",
        "examples",
        "title",
        "readOnly",
        "writeOnly",
        "deprecated",
    }
)
_OPEN_OBJECT_KEYS = ("additionalProperties", "patternProperties", "unevaluatedProperties")

PLACEHOLDER_PROPERTY = "_placeholder"
PLACEHOLDER_DESCRIPTION = "Placeholder. Always pass true."

MAX_TOOL_NAME_LENGTH = 64
_INVALID_TOOL_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.:-]")
_TOOL_NAME_START = re.compile(r"^[a-zA-Z_]")


def _append_description(target: dict[str, Any], note: str) -> None:
    note = note.strip()
    if not note:
        return
    existing = target.get("description")
    if isinstance(existing, str) and existing.strip():
        target["description"] = f"{existing.strip()}\n\n{note}"
    else:
        target["description"] = note


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str) and v]


def _merge_schemas(base: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Merge *incoming* into a copy of *base*.

    Properties and required are unioned, descriptions appended, and any other
    key already present in *base* wins.
    """
    merged = dict(base)
    for key, value in incoming.items():
        if key == "properties":
            if isinstance(value, dict):
                existing = merged.get("properties")
                merged["properties"] = (
                    {**existing, **value} if isinstance(existing, dict) else dict(value)
                )
        elif key == "required":
            if isinstance(merged.get("required"), list) or isinstance(value, list):
                merged["required"] = list(
                    dict.fromkeys(_string_list(merged.get("required")) + _string_list(value))
                )
        elif key == "description":
            if isinstance(value, str) and value.strip():
                _append_description(merged, value)
        elif key not in merged:
            merged[key] = value
    return merged


def _is_null_schema(schema: dict[str, Any]) -> bool:
    return schema.get("type") == "null" and "properties" not in schema


class _SchemaCleaner:
    def __init__(self, root: Any) -> None:
        root = root if isinstance(root, dict) else {}
        defs = root.get("$defs")
        definitions = root.get("definitions")
        self._stores: dict[str, dict[str, Any]] = {
            "$defs": defs if isinstance(defs, dict) else {},
            "definitions": definitions if isinstance(definitions, dict) else {},
        }
        self._resolving: set[str] = set()

    def clean(self, value: Any) -> Any:
        if isinstance(value, list):
            return [self.clean(v) for v in value]
        if not isinstance(value, dict):
            return value

        ref = value.get("$ref")
        if isinstance(ref, str) and ref.startswith("#/") and ref not in self._resolving:
            _, section, *rest = ref.split("/")
            resolved = self._stores.get(section, {}).get(rest[0]) if rest else None
            if resolved is not None:
                siblings = {k: v for k, v in value.items() if k != "$ref"}
                self._resolving.add(ref)
                try:
                    cleaned = self.clean(resolved)
                    if isinstance(cleaned, dict):
                        return self.clean({**cleaned, **siblings})
                    return cleaned
                finally:
                    self._resolving.discard(ref)

        all_of = value.get("allOf")
        if isinstance(all_of, list) and all_of:
            merged = {k: v for k, v in value.items() if k != "allOf"}
            for member in all_of:
                cleaned = self.clean(member)
                if isinstance(cleaned, dict):
                    merged = _merge_schemas(merged, cleaned)
            return self.clean(merged)

        for union_key in ("anyOf", "oneOf"):
            variants = value.get(union_key)
            if isinstance(variants, list) and variants:
                return self.clean(self._simplify_union(union_key, value, variants))

        return self._clean_object(value)

    def _simplify_union(
        self, union_key: str, schema: dict[str, Any], variants: list[Any]
    ) -> dict[str, Any]:
        stripped = {k: v for k, v in schema.items() if k != union_key}
        cleaned = [self.clean(v) for v in variants]
        usable = [v for v in cleaned if isinstance(v, dict) and not _is_null_schema(v)]

        if not usable:
            _append_description(
                stripped,
                f"`{union_key}` present but could not be normalized; "
                "falling back to generic schema.",
            )
            return stripped
        if len(usable) == 1:
            return _merge_schemas(stripped, usable[0])

        merged = dict(stripped)
        properties: dict[str, Any] = {}
        required: list[str] | None = None
        for variant in usable:
            variant_props = variant.get("properties")
            if isinstance(variant_props, dict):
                for name, prop in variant_props.items():
                    properties.setdefault(name, prop)
            variant_required = _string_list(variant.get("required"))
            if required is None:
                required = list(dict.fromkeys(variant_required))
            else:
                required = [r for r in required if r in variant_required]

        if properties:
            merged["properties"] = properties
            merged.setdefault("type", "object")
        elif "type" not in merged:
            first_type = usable[0].get("type")
            if isinstance(first_type, str):
                merged["type"] = first_type
        if required:
            merged["required"] = required
        _append_description(
            merged,
            f"`{union_key}` simplified for tool schema compatibility "
            f"({len(usable)} variants).",
        )
        return merged

    def _clean_object(self, value: dict[str, Any]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key, item in value.items():
            if key in _STRIPPED_KEYS:
                continue
            if key == "const":
                if not isinstance(out.get("enum"), list):
                    out["enum"] = [self.clean(item)]
                continue
            if key in _OPEN_OBJECT_KEYS:
                if isinstance(item, bool):
                    _append_description(
                        out, f"{key}: {'allowed' if item else 'disallowed'}."
                    )
                elif isinstance(item, dict):
                    _append_description(out, f"{key}: schema present (simplified).")
                continue
            if key == "type" and isinstance(item, list):
                non_null = [t for t in item if t != "null"]
                out["type"] = non_null[0] if non_null else "null"
                continue
            if key == "properties" and isinstance(item, dict):
                # Keys here are parameter names, not schema keywords.
                out[key] = {name: self.clean(sub) for name, sub in item.items()}
                continue
            out[key] = self.clean(item)

        properties = out.get("properties")
        if isinstance(properties, dict) and isinstance(out.get("required"), list):
            valid = [r for r in out["required"] if isinstance(r, str) and r in properties]
            if valid:
                out["required"] = valid
            else:
                del out["required"]

        type_ = out.get("type")
        if isinstance(type_, str) and type_.lower() == "array" and "items" not in out:
            out["items"] = {"type": "string"}
        return out


def clean_json_schema(schema: Any) -> Any:
    """Reduce *schema* to the JSON Schema subset every backend accepts.

    Non-dict input is returned unchanged. The input is never mutated.
    """
    cleaned = _SchemaCleaner(schema).clean(copy.deepcopy(schema))
    if isinstance(cleaned, dict):
        cleaned.pop("$defs", None)
        cleaned.pop("definitions", None)
    return cleaned


def normalize_tool_parameters(schema: Any) -> dict[str, Any]:
    """Guarantee an object schema with at least one property.

    Backends reject tools whose parameters have no properties, so an empty
    schema gets a required boolean ``_placeholder`` property.
    """
    out: dict[str, Any] = dict(schema) if isinstance(schema, dict) else {}
    out["type"] = "object"
    raw_props = out.get("properties")
    properties = dict(raw_props) if isinstance(raw_props, dict) else {}
    raw_required = out.get("required")
    required = (
        [r for r in raw_required if isinstance(r, str)]
        if isinstance(raw_required, list)
        else []
    )

    if not properties:
        properties[PLACEHOLDER_PROPERTY] = {
            "type": "boolean",
            "description": PLACEHOLDER_DESCRIPTION,
        }
        if PLACEHOLDER_PROPERTY not in required:
            required.append(PLACEHOLDER_PROPERTY)

    out["properties"] = properties
    if required:
        out["required"] = required
    else:
        out.pop("required", None)
    return out


def sanitize_tool_name(name: str) -> str:
    """Coerce *name* into ``[a-zA-Z_][a-zA-Z0-9_.:-]{0,63}``."""
    trimmed = name.strip()
    if not trimmed:
        return "_"
    sanitized = _INVALID_TOOL_NAME_CHARS.sub("_", trimmed)
    if not _TOOL_NAME_START.match(sanitized):
        sanitized = f"_{sanitized}"
    return sanitized[:MAX_TOOL_NAME_LENGTH]
