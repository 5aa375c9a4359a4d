"""catalog_sync.field_map

YAML field maps: the static alias tables that drive normalization.

A field map names the destination collection, the identity candidates, and
for every logical attribute the ordered source aliases plus a coercion type.
Built-in maps live in ``catalog_sync/field_maps/*.yml``; any other YAML file
with the same shape can be passed by path.

Usage:
    from catalog_sync.field_map import resolve_field_map

    field_map = resolve_field_map("mcp-servers")
    field_map.fields["description"].aliases  # ('description', 'summary')
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BUILTIN_DIR = Path(__file__).parent / "field_maps"

VALID_SOURCE_KINDS = frozenset({"csv", "json"})

VALID_TYPES = frozenset({
    "string", "url", "integer", "decimal", "boolean", "date",
    "list", "blocks", "json", "enum", "links",
})

# Types whose malformed values fail the record instead of clearing the field
STRICT_BY_DEFAULT = frozenset({"date", "json"})

REQUIRED_YAML_KEYS = frozenset({"name", "collection", "source_kind", "identity", "fields"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class FieldMapValidationError(ValueError):
    """Raised when a YAML field map fails schema validation."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldSpec:
    """One logical attribute: ordered aliases and a coercion."""

    name: str
    aliases: tuple[str, ...] = ()
    type: str = "string"
    strict: bool = False
    combine: bool = False
    default: Any = None
    constant: Any = None
    mapping: dict[str, str] = field(default_factory=dict)
    columns: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def has_default(self) -> bool:
        return self.default is not None

    @property
    def is_constant(self) -> bool:
        return self.constant is not None


@dataclass(frozen=True)
class RelationSpec:
    """A relation attribute resolved to ids in another collection."""

    name: str
    collection: str
    aliases: tuple[str, ...]
    create: bool = True
    combine: bool = False


@dataclass(frozen=True)
class SecondaryIdentity:
    field: str
    aliases: tuple[str, ...]


@dataclass(frozen=True)
class IdentitySpec:
    field: str = "slug"
    candidates: tuple[str, ...] = ()
    placeholders: frozenset[str] = frozenset()
    hash_fallback: bool = False
    hash_prefix: str = "item"
    secondary: SecondaryIdentity | None = None


@dataclass(frozen=True)
class PublishOnStatus:
    field: str
    published: str
    draft: str | None = None


@dataclass
class FieldMap:
    """Parsed, validated field map loaded from a YAML file."""

    name: str
    collection: str
    source_kind: str
    identity: IdentitySpec
    fields: dict[str, FieldSpec]
    relations: dict[str, RelationSpec] = field(default_factory=dict)
    required_any: tuple[str, ...] = ()
    publish_on_status: PublishOnStatus | None = None
    yaml_hash: str = ""
    raw_yaml: str = field(repr=False, default="")

    @property
    def relation_names(self) -> frozenset[str]:
        return frozenset(self.relations)


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def resolve_field_map(name_or_path: str) -> FieldMap:
    """Load a built-in map by name, or any YAML file by path."""
    builtin = BUILTIN_DIR / f"{name_or_path}.yml"
    if builtin.exists():
        return load_field_map(builtin)
    path = Path(name_or_path)
    if not path.exists():
        known = ", ".join(sorted(builtin_names()))
        raise FieldMapValidationError(
            f"unknown field map {name_or_path!r} (built-in: {known})"
        )
    return load_field_map(path)


def builtin_names() -> list[str]:
    return sorted(p.stem for p in BUILTIN_DIR.glob("*.yml"))


def load_field_map(yaml_path: Path) -> FieldMap:
    """Load, validate, and return a FieldMap from a YAML file.

    Raises:
        FieldMapValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    if not isinstance(data, dict):
        raise FieldMapValidationError(f"{yaml_path.name}: top level must be a mapping")
    validate_field_map(data)
    field_map = _build_field_map(data)
    field_map.yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    field_map.raw_yaml = raw
    return field_map


def validate_field_map(data: dict[str, Any]) -> None:
    """Raise FieldMapValidationError if data does not match the required schema.

    Validates:
      - Required top-level keys present
      - source_kind is csv or json
      - every field has aliases (or a constant) and a known type
      - enum fields carry a mapping, links fields carry columns or aliases
      - identity candidates are non-empty
    """
    missing = REQUIRED_YAML_KEYS - set(data)
    if missing:
        raise FieldMapValidationError(f"missing required keys: {sorted(missing)}")

    if data["source_kind"] not in VALID_SOURCE_KINDS:
        raise FieldMapValidationError(
            f"source_kind must be one of {sorted(VALID_SOURCE_KINDS)}, "
            f"got {data['source_kind']!r}"
        )

    identity = data["identity"]
    if not isinstance(identity, dict) or not identity.get("candidates"):
        raise FieldMapValidationError("identity.candidates must be a non-empty list")
    secondary = identity.get("secondary")
    if secondary is not None and (
        not isinstance(secondary, dict)
        or not secondary.get("field")
        or not secondary.get("aliases")
    ):
        raise FieldMapValidationError("identity.secondary needs 'field' and 'aliases'")

    fields = data["fields"]
    if not isinstance(fields, dict) or not fields:
        raise FieldMapValidationError("fields must be a non-empty mapping")
    for name, spec in fields.items():
        if not isinstance(spec, dict):
            raise FieldMapValidationError(f"fields.{name} must be a mapping")
        ftype = spec.get("type", "string")
        if ftype not in VALID_TYPES:
            raise FieldMapValidationError(
                f"fields.{name}.type {ftype!r} not in {sorted(VALID_TYPES)}"
            )
        if "constant" not in spec and not spec.get("aliases") and not spec.get("columns"):
            raise FieldMapValidationError(f"fields.{name} needs aliases or a constant")
        if ftype == "enum" and not isinstance(spec.get("mapping"), dict):
            raise FieldMapValidationError(f"fields.{name}: enum fields need a mapping")

    relations = data.get("relations") or {}
    if not isinstance(relations, dict):
        raise FieldMapValidationError("relations must be a mapping")
    for name, spec in relations.items():
        if not isinstance(spec, dict) or not spec.get("collection") or not spec.get("aliases"):
            raise FieldMapValidationError(f"relations.{name} needs 'collection' and 'aliases'")
        if name in fields:
            raise FieldMapValidationError(f"{name!r} is declared as both field and relation")

    publish = data.get("publish_on_status")
    if publish is not None:
        if not isinstance(publish, dict) or not publish.get("field") or not publish.get("published"):
            raise FieldMapValidationError("publish_on_status needs 'field' and 'published'")
        if publish["field"] not in fields:
            raise FieldMapValidationError(
                f"publish_on_status.field {publish['field']!r} is not a declared field"
            )


def _build_field_map(data: dict[str, Any]) -> FieldMap:
    identity_data = data["identity"]
    secondary_data = identity_data.get("secondary")
    identity = IdentitySpec(
        field=str(identity_data.get("field", "slug")),
        candidates=tuple(identity_data["candidates"]),
        placeholders=frozenset(identity_data.get("placeholders") or []),
        hash_fallback=bool(identity_data.get("hash_fallback", False)),
        hash_prefix=str(identity_data.get("hash_prefix", "item")),
        secondary=(
            SecondaryIdentity(
                field=str(secondary_data["field"]),
                aliases=tuple(secondary_data["aliases"]),
            )
            if secondary_data
            else None
        ),
    )

    fields: dict[str, FieldSpec] = {}
    for name, spec in data["fields"].items():
        ftype = spec.get("type", "string")
        fields[name] = FieldSpec(
            name=name,
            aliases=tuple(spec.get("aliases") or ()),
            type=ftype,
            strict=bool(spec.get("strict", ftype in STRICT_BY_DEFAULT)),
            combine=bool(spec.get("combine", False)),
            default=spec.get("default"),
            constant=spec.get("constant"),
            mapping={str(k).lower(): str(v) for k, v in (spec.get("mapping") or {}).items()},
            columns={
                str(k): tuple(v) for k, v in (spec.get("columns") or {}).items()
            },
        )

    relations = {
        name: RelationSpec(
            name=name,
            collection=str(spec["collection"]),
            aliases=tuple(spec["aliases"]),
            create=bool(spec.get("create", True)),
            combine=bool(spec.get("combine", False)),
        )
        for name, spec in (data.get("relations") or {}).items()
    }

    publish_data = data.get("publish_on_status")
    return FieldMap(
        name=str(data["name"]),
        collection=str(data["collection"]),
        source_kind=data["source_kind"],
        identity=identity,
        fields=fields,
        relations=relations,
        required_any=tuple(data.get("required_any") or ()),
        publish_on_status=(
            PublishOnStatus(
                field=str(publish_data["field"]),
                published=str(publish_data["published"]),
                draft=(str(publish_data["draft"]) if publish_data.get("draft") else None),
            )
            if publish_data
            else None
        ),
    )
