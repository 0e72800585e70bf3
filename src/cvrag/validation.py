"""Schema checks and privacy filtering applied to every adapter result.

The validator never raises for malformed input: it always returns a (possibly
empty) :class:`CleanRecord` together with the list of :class:`Violation`
diagnostics explaining what was dropped, truncated or rejected.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from cvrag.models import Fact, SourceName, SourceRecord
from cvrag.telemetry import emit_validation_event

LOGGER = logging.getLogger(__name__)

# Personal data that never enters the corpus regardless of source.
SENSITIVE_FIELDS = frozenset(
    {
        "email",
        "email_address",
        "emails",
        "phone",
        "phone_number",
        "phone_numbers",
        "address",
        "location",
        "birth_date",
        "birthdate",
        "date_of_birth",
        "gender",
        "marital_status",
        "nationality",
        "religion",
        "ssn",
        "twitter_username",
        "hireable",
        "salary",
    }
)

_SCALARS = (str, int, float, bool)


class ViolationKind(str, Enum):
    SCHEMA = "schema"
    DISALLOWED_FIELD = "disallowed_field"
    SENSITIVE_FIELD = "sensitive_field"
    SIZE = "size"
    IDENTITY = "identity"
    DECODE = "decode"


@dataclass(frozen=True, slots=True)
class Violation:
    source: SourceName
    field: str
    kind: ViolationKind
    detail: str = ""


@dataclass(frozen=True, slots=True)
class FieldGroup:
    """One top-level payload member: a single object or a list of objects."""

    name: str
    fields: frozenset[str]
    many: bool = False


Decoder = Callable[[Mapping[str, Any], SourceRecord], Iterable[Fact]]


@dataclass(frozen=True, slots=True)
class SourceSchema:
    source: SourceName
    version: str
    groups: Tuple[FieldGroup, ...]
    identity: Tuple[Tuple[str, str], ...]
    decoder: Decoder
    sensitive: frozenset[str] = SENSITIVE_FIELDS
    max_field_chars: int = 2000
    max_items: int = 50

    def group(self, name: str) -> Optional[FieldGroup]:
        for group in self.groups:
            if group.name == name:
                return group
        return None


@dataclass(frozen=True, slots=True)
class CleanRecord:
    source: SourceName
    subject_id: str
    fetched_at: Any
    payload: Mapping[str, Any] = field(default_factory=dict)
    facts: Tuple[Fact, ...] = ()
    rejected: bool = False


class Validator:
    """Validate :class:`SourceRecord` payloads against per-source schemas."""

    def __init__(self, schemas: Iterable[SourceSchema]) -> None:
        self._schemas: Dict[SourceName, SourceSchema] = {schema.source: schema for schema in schemas}

    def register(self, schema: SourceSchema) -> None:
        self._schemas[schema.source] = schema

    def validate(self, record: SourceRecord) -> Tuple[CleanRecord, List[Violation]]:
        violations: List[Violation] = []
        clean, rejected = self._validate(record, violations)
        emit_validation_event(
            source=record.source.value,
            subject_id=record.subject_id,
            violations=violations,
            rejected=rejected,
        )
        return clean, violations

    def _validate(self, record: SourceRecord, violations: List[Violation]) -> Tuple[CleanRecord, bool]:
        source = record.source

        def reject(field_name: str, kind: ViolationKind, detail: str) -> Tuple[CleanRecord, bool]:
            violations.append(Violation(source, field_name, kind, detail))
            empty = CleanRecord(source=source, subject_id=record.subject_id, fetched_at=record.fetched_at, rejected=True)
            return empty, True

        schema = self._schemas.get(source)
        if schema is None:
            return reject("*", ViolationKind.SCHEMA, "no schema registered for source")
        if str(record.schema_version) != schema.version:
            return reject(
                "*",
                ViolationKind.SCHEMA,
                f"schema version {record.schema_version!r} does not match {schema.version!r}",
            )
        if not isinstance(record.payload, Mapping):
            return reject("*", ViolationKind.SCHEMA, f"payload must be an object, got {type(record.payload).__name__}")

        cleaned: Dict[str, Any] = {}
        for key, value in record.payload.items():
            group = schema.group(str(key))
            if group is None:
                violations.append(self._dropped_field(schema, str(key)))
                continue
            if group.many:
                if not isinstance(value, list):
                    violations.append(Violation(source, group.name, ViolationKind.SCHEMA, "expected a list"))
                    continue
                if len(value) > schema.max_items:
                    violations.append(
                        Violation(source, group.name, ViolationKind.SIZE, f"truncated to {schema.max_items} items")
                    )
                    value = value[: schema.max_items]
                items: List[Dict[str, Any]] = []
                for index, item in enumerate(value):
                    path = f"{group.name}[{index}]"
                    if not isinstance(item, Mapping):
                        violations.append(Violation(source, path, ViolationKind.SCHEMA, "expected an object"))
                        continue
                    items.append(self._clean_object(schema, group, item, path, violations))
                cleaned[group.name] = items
            else:
                if not isinstance(value, Mapping):
                    violations.append(Violation(source, group.name, ViolationKind.SCHEMA, "expected an object"))
                    continue
                cleaned[group.name] = self._clean_object(schema, group, value, group.name, violations)

        for group_name, field_name in schema.identity:
            container = cleaned.get(group_name)
            identity_value = container.get(field_name) if isinstance(container, Mapping) else None
            if identity_value in (None, "") or (isinstance(identity_value, str) and not identity_value.strip()):
                return reject(f"{group_name}.{field_name}", ViolationKind.IDENTITY, "core identity field missing")

        try:
            facts = tuple(schema.decoder(cleaned, record))
        except (KeyError, TypeError, ValueError, AttributeError) as error:
            LOGGER.warning("Decoder for %s failed: %s", source.value, error)
            violations.append(Violation(source, "*", ViolationKind.DECODE, str(error)))
            facts = ()

        clean = CleanRecord(
            source=source,
            subject_id=record.subject_id,
            fetched_at=record.fetched_at,
            payload=cleaned,
            facts=facts,
        )
        return clean, False

    def _dropped_field(self, schema: SourceSchema, path: str) -> Violation:
        leaf = path.rsplit(".", 1)[-1].split("[", 1)[0]
        if leaf.lower() in schema.sensitive:
            return Violation(schema.source, path, ViolationKind.SENSITIVE_FIELD, "personal field removed")
        return Violation(schema.source, path, ViolationKind.DISALLOWED_FIELD, "field not in allow-list")

    def _clean_object(
        self,
        schema: SourceSchema,
        group: FieldGroup,
        obj: Mapping[str, Any],
        path: str,
        violations: List[Violation],
    ) -> Dict[str, Any]:
        cleaned: Dict[str, Any] = {}
        for key, value in obj.items():
            field_path = f"{path}.{key}"
            if key not in group.fields:
                violations.append(self._dropped_field(schema, field_path))
                continue
            if value is None or isinstance(value, (int, float, bool)):
                cleaned[key] = value
            elif isinstance(value, str):
                if len(value) > schema.max_field_chars:
                    violations.append(
                        Violation(schema.source, field_path, ViolationKind.SIZE, f"truncated to {schema.max_field_chars} chars")
                    )
                    value = value[: schema.max_field_chars]
                cleaned[key] = value
            elif isinstance(value, list):
                scalars = [item for item in value if isinstance(item, _SCALARS)]
                if len(scalars) != len(value):
                    violations.append(Violation(schema.source, field_path, ViolationKind.SCHEMA, "non-scalar list items removed"))
                if len(scalars) > schema.max_items:
                    violations.append(
                        Violation(schema.source, field_path, ViolationKind.SIZE, f"truncated to {schema.max_items} items")
                    )
                    scalars = scalars[: schema.max_items]
                cleaned[key] = [str(item)[: schema.max_field_chars] for item in scalars]
            else:
                violations.append(Violation(schema.source, field_path, ViolationKind.SCHEMA, "nested objects are not allowed"))
        return cleaned


__all__ = [
    "CleanRecord",
    "FieldGroup",
    "SENSITIVE_FIELDS",
    "SourceSchema",
    "Validator",
    "Violation",
    "ViolationKind",
]
