"""Entity schemas for the classroom data store.

Records are stored as plain dictionaries so that fields written by older
versions of the application survive every round trip.  The schemas below only
describe the fields the store itself reasons about: which ones must be
present, which defaults a record gains when it is created or migrated, and how
loosely-typed legacy values are coerced.
"""

from __future__ import annotations

import copy
import datetime as dt
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import pytz
from dateutil.parser import ParserError, parse as dateutil_parse

DATE_FORMAT = "%Y-%m-%d"

GOAL_DOMAINS = ("academic", "behavioral", "social-emotional", "physical")
MEASUREMENT_TYPES = ("percentage", "frequency", "duration", "rating", "yes-no", "independence")
GOAL_PRIORITIES = ("high", "medium", "low")
HIGHLIGHT_CATEGORIES = ("academic", "behavioral", "social", "creative", "physical")


class RecordValidationError(ValueError):
    """Raised when record validation fails."""

    def __init__(self, entity_type: str, errors: Dict[str, str]):
        super().__init__(f"{entity_type} validation failed: {errors}")
        self.entity_type = entity_type
        self.errors = errors


def today() -> str:
    return dt.date.today().strftime(DATE_FORMAT)


def utc_now() -> str:
    return dt.datetime.now(pytz.utc).isoformat()


def normalise_date(value: Any) -> Any:
    """Return ``value`` as ``YYYY-MM-DD`` when it parses, untouched otherwise."""
    if not isinstance(value, str) or not value.strip():
        return value
    try:
        return dateutil_parse(value.strip()).strftime(DATE_FORMAT)
    except (ParserError, ValueError, OverflowError):
        return value


def is_blank(value: Any) -> bool:
    """``None``, empty strings and empty containers carry no information."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


@dataclass
class FieldDefinition:
    """Represents a single field inside an entity schema."""

    name: str
    field_type: str = "string"
    required: bool = False
    default: Any = None
    choices: Optional[Sequence[Any]] = None

    def clean(self, value: Any) -> Any:
        """Normalise input data for this field."""
        if value is None:
            return None
        if self.field_type == "string":
            value = str(value)
        elif self.field_type == "integer":
            if value == "":
                return None
            if isinstance(value, bool):
                raise ValueError("expected an integer")
            value = int(float(value))
        elif self.field_type == "number":
            if value == "":
                return None
            if isinstance(value, bool):
                raise ValueError("expected a number")
            number = float(value)
            value = int(number) if number.is_integer() and not isinstance(value, float) else number
        elif self.field_type == "boolean":
            if isinstance(value, str):
                value = value.strip().lower() in {"true", "1", "yes", "y"}
            else:
                value = bool(value)
        elif self.field_type == "date":
            parsed = normalise_date(value)
            if parsed == value and isinstance(value, str) and value.strip():
                try:
                    dt.datetime.strptime(value, DATE_FORMAT)
                except ValueError:
                    raise ValueError(f"unrecognised date {value!r}") from None
            value = parsed
        elif self.field_type == "list":
            if isinstance(value, str):
                value = [part.strip() for part in value.split(",") if part.strip()]
            elif isinstance(value, (list, tuple, set)):
                value = list(value)
            else:
                raise ValueError("expected a list")
        elif self.field_type == "json":
            if not isinstance(value, (dict, list)):
                raise ValueError("expected an object")
        if self.choices is not None and value not in self.choices:
            raise ValueError(f"must be one of {', '.join(map(str, self.choices))}")
        return value

    def default_value(self) -> Any:
        if callable(self.default):
            return self.default()
        return copy.deepcopy(self.default)


@dataclass
class EntitySchema:
    """Describes one entity collection held by the unified document."""

    entity_type: str
    fields: Dict[str, FieldDefinition]
    id_prefix: str = ""

    def apply_defaults(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        """Return a copy of ``record`` with every missing defaulted field filled in."""
        result = dict(record)
        for name, definition in self.fields.items():
            if definition.default is None:
                continue
            if result.get(name) is None:
                result[name] = definition.default_value()
        return result

    def validate(self, payload: Mapping[str, Any], *, partial: bool = False) -> Dict[str, Any]:
        """Coerce known fields of ``payload``; unknown fields pass through untouched."""
        errors: Dict[str, str] = {}
        normalised: Dict[str, Any] = dict(payload)
        for name, definition in self.fields.items():
            if name not in payload or payload[name] in (None, ""):
                if definition.required and not partial and definition.default is None:
                    errors[name] = "Field is required"
                continue
            try:
                normalised[name] = definition.clean(payload[name])
            except (ValueError, TypeError) as exc:
                errors[name] = str(exc)
        if errors:
            raise RecordValidationError(self.entity_type, errors)
        return normalised


class SchemaRegistry:
    """In-memory registry of entity schemas."""

    def __init__(self) -> None:
        self._schemas: Dict[str, EntitySchema] = {}

    def register(self, schema: EntitySchema) -> None:
        self._schemas[schema.entity_type] = schema

    def get(self, entity_type: str) -> EntitySchema:
        if entity_type not in self._schemas:
            raise KeyError(f"Unknown entity type '{entity_type}'")
        return self._schemas[entity_type]

    def has(self, entity_type: str) -> bool:
        return entity_type in self._schemas

    def all(self) -> List[EntitySchema]:
        return list(self._schemas.values())


def _empty_iep_block() -> Dict[str, Any]:
    return {"goals": [], "dataCollection": []}


def _empty_resource_info() -> Dict[str, Any]:
    return {"attendsResource": False, "resourceType": "", "resourceTeacher": "", "timeframe": ""}


def _fields(*definitions: FieldDefinition) -> Dict[str, FieldDefinition]:
    return {definition.name: definition for definition in definitions}


def _builtin_schemas() -> List[EntitySchema]:
    list_default: Callable[[], List[Any]] = list
    return [
        EntitySchema(
            entity_type="student",
            fields=_fields(
                FieldDefinition("id", required=True),
                FieldDefinition("name", required=True),
                FieldDefinition("grade", default=""),
                FieldDefinition("photo"),
                FieldDefinition("isActive", "boolean", default=True),
                FieldDefinition("workingStyle", default="collaborative"),
                FieldDefinition("accommodations", "list", default=list_default),
                FieldDefinition("goals", "list", default=list_default),
                FieldDefinition("behaviorNotes"),
                FieldDefinition("medicalNotes"),
                FieldDefinition("parentName"),
                FieldDefinition("parentEmail"),
                FieldDefinition("parentPhone"),
                FieldDefinition("emergencyContact"),
                FieldDefinition("resourceInfo", "json", default=_empty_resource_info),
                FieldDefinition("preferredPartners", "list", default=list_default),
                FieldDefinition("avoidPartners", "list", default=list_default),
                FieldDefinition("iepData", "json", default=_empty_iep_block),
                FieldDefinition("dateCreated", "date", default=today),
            ),
            id_prefix="student",
        ),
        EntitySchema(
            entity_type="goal",
            fields=_fields(
                FieldDefinition("id", required=True),
                FieldDefinition("studentId", required=True),
                FieldDefinition("title", default=""),
                FieldDefinition("description", default=""),
                FieldDefinition("shortTermObjective", default=""),
                FieldDefinition("domain", default="academic", choices=GOAL_DOMAINS),
                FieldDefinition("measurementType", default="percentage", choices=MEASUREMENT_TYPES),
                FieldDefinition("criteria", default=""),
                FieldDefinition("target", "number", default=0),
                FieldDefinition("currentProgress", "number", default=0),
                FieldDefinition("priority", default="medium", choices=GOAL_PRIORITIES),
                FieldDefinition("dateCreated", "date", default=today),
                FieldDefinition("isActive", "boolean", default=True),
                FieldDefinition("dataPoints", "integer", default=0),
                FieldDefinition("lastDataPoint", "date"),
                FieldDefinition("linkedActivityIds", "list", default=list_default),
            ),
            id_prefix="goal",
        ),
        EntitySchema(
            entity_type="data_point",
            fields=_fields(
                FieldDefinition("id", required=True),
                FieldDefinition("goalId", required=True),
                FieldDefinition("studentId", required=True),
                FieldDefinition("date", "date", required=True),
                FieldDefinition("time", default=""),
                FieldDefinition("value", "number", required=True),
                FieldDefinition("totalOpportunities", "integer"),
                FieldDefinition("notes", default=""),
                FieldDefinition("context", default=""),
                FieldDefinition("collector", default=""),
            ),
            id_prefix="dp",
        ),
        EntitySchema(
            entity_type="staff",
            fields=_fields(
                FieldDefinition("id", required=True),
                FieldDefinition("name", required=True),
                FieldDefinition("role", default=""),
                FieldDefinition("email", default=""),
                FieldDefinition("phone", default=""),
                FieldDefinition("isActive", "boolean", default=True),
                FieldDefinition("specialties", "list", default=list_default),
                FieldDefinition("permissions", "json", default=dict),
                FieldDefinition("dateCreated", "date", default=today),
            ),
            id_prefix="staff",
        ),
        EntitySchema(
            entity_type="activity",
            fields=_fields(
                FieldDefinition("id", required=True),
                FieldDefinition("name", required=True),
                FieldDefinition("category", default="academic"),
                FieldDefinition("duration", "integer", default=30),
                FieldDefinition("materials", "list", default=list_default),
                FieldDefinition("linkedGoalIds", "list", default=list_default),
                FieldDefinition("isCustom", "boolean", default=False),
                FieldDefinition("description", default=""),
            ),
            id_prefix="activity",
        ),
        EntitySchema(
            entity_type="behavior_commitment",
            fields=_fields(
                FieldDefinition("id", required=True),
                FieldDefinition("studentId", required=True),
                FieldDefinition("date", "date", required=True),
                FieldDefinition("commitment", default=""),
                FieldDefinition("status", default="pending"),
                FieldDefinition("notes", default=""),
            ),
            id_prefix="commitment",
        ),
        EntitySchema(
            entity_type="daily_highlight",
            fields=_fields(
                FieldDefinition("id", required=True),
                FieldDefinition("studentId", required=True),
                FieldDefinition("date", "date", required=True),
                FieldDefinition("achievement", default=""),
                FieldDefinition("category", default="academic", choices=HIGHLIGHT_CATEGORIES),
                FieldDefinition("staffMember"),
            ),
            id_prefix="highlight",
        ),
        EntitySchema(
            entity_type="independent_choice",
            fields=_fields(
                FieldDefinition("id", required=True),
                FieldDefinition("studentId", required=True),
                FieldDefinition("date", "date", required=True),
                FieldDefinition("activityId", default=""),
                FieldDefinition("activityName", default=""),
                FieldDefinition("status", default="selected"),
            ),
            id_prefix="choice",
        ),
    ]


_registry = SchemaRegistry()
for _schema in _builtin_schemas():
    _registry.register(_schema)


def get_schema(entity_type: str) -> EntitySchema:
    return _registry.get(entity_type)


def get_schema_registry() -> SchemaRegistry:
    return _registry


__all__ = [
    "DATE_FORMAT",
    "EntitySchema",
    "FieldDefinition",
    "GOAL_DOMAINS",
    "MEASUREMENT_TYPES",
    "RecordValidationError",
    "SchemaRegistry",
    "get_schema",
    "get_schema_registry",
    "is_blank",
    "normalise_date",
    "today",
    "utc_now",
]
