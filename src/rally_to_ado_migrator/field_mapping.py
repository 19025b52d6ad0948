"""Declarative field mapping from Rally records to Azure DevOps fields.

The mapping configuration is an external JSON document loaded once per run.
Per source type it lists the target type and an ordered list of field rules;
each rule has a transformation kind:

- ``direct``: copy the source value
- ``enum``: translate through a value table (supports ``*`` globs)
- ``user``: resolve a source identity to a target identity, falling back
  to the configured default assignee
- ``computed``: derive the value (``constant``, ``date``, ``title_with_id``,
  ``description_with_header``, ``area_path``, ``join``, ``test_steps``)

Test case steps go to the field carrying the ``test_steps`` derivation
(normally ``Microsoft.VSTS.TCM.Steps``). Types without one, or every type when
``testStepsInDescription`` is set, get the steps as a table in the description.

Example::

    {
      "defaultAssignee": "migration@example.com",
      "defaultAreaPath": "Contoso\\\\Migrated",
      "userMappings": {"jdoe@old.example": "jane.doe@example.com"},
      "enumMappings": {"Priority": {"Resolve Immediately": "1", "High*": "2"}},
      "workItemTypeMappings": [
        {
          "sourceType": "HierarchicalRequirement",
          "targetType": "User Story",
          "fieldMappings": [
            {"source": "Name", "target": "System.Title", "transform": "computed",
             "derivation": "title_with_id", "required": true},
            {"source": "Owner", "target": "System.AssignedTo", "transform": "user"},
            {"source": "Priority", "target": "Microsoft.VSTS.Common.Priority",
             "transform": "enum", "default": "3"}
          ]
        }
      ]
    }

The engine is pure: it never calls either backend and never mutates the
configuration.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from .content_builder import build_description, title_with_id
from .exceptions import ConfigurationError, ValidationError
from .steps import build_steps_xml
from .value_translator import ValueTranslator

if TYPE_CHECKING:
    from collections.abc import Callable

    from .models import WorkItemRecord

logger: logging.Logger = logging.getLogger(__name__)

STATE_FIELD: Final[str] = "System.State"
TITLE_FIELD: Final[str] = "System.Title"
TAGS_FIELD: Final[str] = "System.Tags"
AREA_PATH_FIELD: Final[str] = "System.AreaPath"

# Source fields that are structural or bookkeeping, never reported as unmapped
IGNORED_SOURCE_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "ObjectID",
        "ObjectUUID",
        "VersionId",
        "Subscription",
        "Workspace",
        "Project",
        "Parent",
        "PortfolioItem",
        "WorkProduct",
        "Requirement",
        "Children",
        "Tasks",
        "TestCases",
        "UserStories",
        "Discussion",
        "Attachments",
        "Defects",
        "Steps",
        "CreationDate",
        "LastUpdateDate",
        "FormattedID",
    }
)

# Rally state → Azure DevOps state, per Rally type
DEFAULT_STATE_MAPPINGS: Final[dict[str, dict[str, str]]] = {
    "HierarchicalRequirement": {
        "Refining": "New",
        "Defined": "New",
        "In-Progress": "Active",
        "Completed": "Resolved",
        "Accepted": "Closed",
    },
    "Defect": {
        "Submitted": "New",
        "Open": "Active",
        "In-Progress": "Active",
        "Fixed": "Resolved",
        "Completed": "Resolved",
        "Verified": "Closed",
        "Closed": "Closed",
        "Reopened": "Active",
        "Ready": "New",
        "Defined": "New",
        "Blocked": "Active",
    },
    "Task": {
        "Defined": "New",
        "In-Progress": "Active",
        "In Progress": "Active",
        "Completed": "Closed",
        "Open": "Active",
        "Ready": "New",
        "Done": "Closed",
        "Removed": "Removed",
    },
    "TestCase": {
        "Design": "Ready",
        "Defined": "Ready",
        "In-Progress": "Ready",
        "In Progress": "Ready",
        "Ready": "Ready",
        "Completed": "Closed",
        "Closed": "Closed",
        "Done": "Closed",
    },
    "PortfolioItem/Feature": {
        "Open": "New",
        "Discovering": "New",
        "Defined": "New",
        "Developing": "Active",
        "In-Progress": "Active",
        "Done": "Closed",
        "Completed": "Closed",
        "Closed": "Closed",
    },
    "PortfolioItem/Epic": {
        "Open": "New",
        "Discovering": "New",
        "Defined": "New",
        "Developing": "Active",
        "In-Progress": "Active",
        "Done": "Closed",
        "Completed": "Closed",
        "Closed": "Closed",
    },
}

# State when the source state has no mapping entry
_FALLBACK_STATES: Final[dict[str, str]] = {"TestCase": "Ready"}


def source_marker(source_id: str) -> str:
    """Traceability tag encoding a Rally ObjectID."""
    return f"RallyObjectID-{source_id}"


def split_tags(value: Any) -> list[str]:  # noqa: ANN401 - tags come as str or list
    """Split an Azure DevOps tag string ("a; b") into tag names."""
    if not value:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [t.strip() for t in str(value).split(";") if t.strip()]


def join_tags(tags: list[str]) -> str:
    seen: dict[str, str] = {}
    for tag in tags:
        seen.setdefault(tag.lower(), tag)
    return "; ".join(seen.values())


class TransformKind(Enum):
    DIRECT = "direct"
    ENUM = "enum"
    USER = "user"
    COMPUTED = "computed"


@dataclass(frozen=True)
class FieldRule:
    """One source → target field mapping."""

    target: str
    source: str | None = None
    kind: TransformKind = TransformKind.DIRECT
    default: Any = None
    required: bool = False
    requires_review: bool = False
    skip: bool = False
    derivation: str | None = None
    values: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class TypeMapping:
    source_type: str
    target_type: str
    rules: tuple[FieldRule, ...] = ()

    @property
    def covered_source_fields(self) -> frozenset[str]:
        return frozenset(rule.source for rule in self.rules if rule.source)

    @property
    def maps_steps(self) -> bool:
        return any((rule.derivation or "").lower() == "test_steps" and not rule.skip for rule in self.rules)


@dataclass(frozen=True)
class MappingConfiguration:
    """Parsed field mapping configuration. Treated as read-only."""

    type_mappings: tuple[TypeMapping, ...]
    default_assignee: str | None = None
    default_area_path: str | None = None
    area_path_mappings: tuple[tuple[str, str], ...] = ()
    user_mappings: tuple[tuple[str, str], ...] = ()
    trusted_user_domains: tuple[str, ...] = ()
    enum_mappings: tuple[tuple[str, tuple[tuple[str, str], ...]], ...] = ()
    state_mappings: tuple[tuple[str, tuple[tuple[str, str], ...]], ...] = ()
    state_transitions: tuple[tuple[str, tuple[tuple[str, tuple[str, ...]], ...]], ...] = ()
    steps_in_description: bool = False

    def type_mapping(self, source_type: str) -> TypeMapping:
        for mapping in self.type_mappings:
            if mapping.source_type.lower() == source_type.lower():
                return mapping
        msg = f"No work item type mapping for source type '{source_type}'"
        raise ValidationError(msg, field="WorkItemType")

    def target_type_for(self, source_type: str) -> str:
        return self.type_mapping(source_type).target_type

    def transition_paths(self, target_type: str) -> dict[str, list[str]]:
        """Configured intermediate state paths for a target type (target state → path)."""
        for item_type, paths in self.state_transitions:
            if item_type.lower() == target_type.lower():
                return {state: list(path) for state, path in paths}
        return {}

    def state_table(self, source_type: str) -> dict[str, str]:
        table = dict(DEFAULT_STATE_MAPPINGS.get(source_type, {}))
        for item_type, overrides in self.state_mappings:
            if item_type.lower() == source_type.lower():
                table.update(dict(overrides))
        return table


def _pairs(data: Any, context: str) -> tuple[tuple[str, str], ...]:  # noqa: ANN401
    if data is None:
        return ()
    if not isinstance(data, dict):
        msg = f"'{context}' must be an object"
        raise ConfigurationError(msg)
    return tuple((str(k), str(v)) for k, v in data.items())


def _parse_rule(data: dict[str, Any], context: str) -> FieldRule:
    target = data.get("target") or data.get("adoField")
    if not target and not data.get("skip"):
        msg = f"{context}: field mapping needs a 'target'"
        raise ConfigurationError(msg)
    kind_name = str(data.get("transform", "direct")).lower()
    try:
        kind = TransformKind(kind_name)
    except ValueError as e:
        msg = f"{context}: unknown transform '{kind_name}'"
        raise ConfigurationError(msg) from e
    if kind is TransformKind.COMPUTED and not data.get("derivation"):
        msg = f"{context}: computed field '{target}' needs a 'derivation'"
        raise ConfigurationError(msg)
    return FieldRule(
        target=target or "",
        source=data.get("source") or data.get("rallyField"),
        kind=kind,
        default=data.get("default"),
        required=bool(data.get("required", False)),
        requires_review=bool(data.get("requiresReview", False)),
        skip=bool(data.get("skip", False)),
        derivation=data.get("derivation"),
        values=_pairs(data.get("values"), f"{context}.values"),
    )


def parse_mapping_configuration(data: dict[str, Any]) -> MappingConfiguration:
    """Build a ``MappingConfiguration`` from the decoded JSON document.

    Raises:
        ConfigurationError: If the document is malformed
    """
    raw_types = data.get("workItemTypeMappings")
    if not isinstance(raw_types, list) or not raw_types:
        msg = "Mapping configuration has no 'workItemTypeMappings'"
        raise ConfigurationError(msg)

    type_mappings: list[TypeMapping] = []
    for index, raw in enumerate(raw_types):
        context = f"workItemTypeMappings[{index}]"
        source_type = raw.get("sourceType") or raw.get("rallyWorkItemType")
        target_type = raw.get("targetType") or raw.get("adoWorkItemType")
        if not source_type or not target_type:
            msg = f"{context}: 'sourceType' and 'targetType' are required"
            raise ConfigurationError(msg)
        rules = tuple(
            _parse_rule(rule, f"{context}.fieldMappings[{i}]") for i, rule in enumerate(raw.get("fieldMappings", []))
        )
        type_mappings.append(TypeMapping(source_type=source_type, target_type=target_type, rules=rules))

    transitions = data.get("stateTransitions") or {}
    return MappingConfiguration(
        type_mappings=tuple(type_mappings),
        default_assignee=data.get("defaultAssignee"),
        default_area_path=data.get("defaultAreaPath"),
        area_path_mappings=_pairs(data.get("areaPathMappings"), "areaPathMappings"),
        user_mappings=_pairs(data.get("userMappings"), "userMappings"),
        trusted_user_domains=tuple(d.lower() for d in data.get("trustedUserDomains", [])),
        enum_mappings=tuple(
            (name, _pairs(table, f"enumMappings.{name}")) for name, table in (data.get("enumMappings") or {}).items()
        ),
        state_mappings=tuple(
            (name, _pairs(table, f"stateMappings.{name}")) for name, table in (data.get("stateMappings") or {}).items()
        ),
        state_transitions=tuple(
            (item_type, tuple((state, tuple(path)) for state, path in paths.items()))
            for item_type, paths in transitions.items()
        ),
        steps_in_description=bool(data.get("testStepsInDescription", False)),
    )


def load_mapping_configuration(path: str | Path) -> MappingConfiguration:
    """Load and validate the mapping configuration JSON file."""
    config_path = Path(path)
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        msg = f"Field mapping configuration not found: {config_path}"
        raise ConfigurationError(msg) from e
    except json.JSONDecodeError as e:
        msg = f"Field mapping configuration is not valid JSON: {config_path}: {e}"
        raise ConfigurationError(msg) from e
    config = parse_mapping_configuration(data)
    logger.info(f"Loaded {len(config.type_mappings)} work item type mappings from {config_path}")
    return config


@dataclass
class MappedRecord:
    """Target-shaped result of mapping one source record."""

    source_id: str
    target_type: str
    fields: dict[str, Any]
    state: str | None = None
    unmapped: list[str] = field(default_factory=list)
    review: list[str] = field(default_factory=list)
    unresolved_users: list[str] = field(default_factory=list)


class FieldMapper:
    """Applies a ``MappingConfiguration`` to source records."""

    def __init__(
        self,
        config: MappingConfiguration,
        *,
        marker: Callable[[str], str] = source_marker,
        source_url: Callable[[WorkItemRecord], str | None] | None = None,
    ) -> None:
        self.config: MappingConfiguration = config
        self._marker: Callable[[str], str] = marker
        self._source_url: Callable[[WorkItemRecord], str | None] | None = source_url
        self._users: dict[str, str] = {k.lower(): v for k, v in config.user_mappings}
        self._areas: ValueTranslator = ValueTranslator(dict(config.area_path_mappings))
        self._enums: dict[str, ValueTranslator] = {
            name: ValueTranslator(dict(table)) for name, table in config.enum_mappings
        }

    def transform(self, record: WorkItemRecord) -> MappedRecord:
        """Map a source record onto target fields.

        State is returned separately: it is applied after creation so the
        target workflow can be stepped through.

        Raises:
            ValidationError: Missing required field or unmapped required value
        """
        type_mapping = self.config.type_mapping(record.item_type)
        result = MappedRecord(source_id=record.source_id, target_type=type_mapping.target_type, fields={})

        for rule in type_mapping.rules:
            if rule.skip:
                continue
            value = self._apply_rule(rule, record, result)
            if value is None:
                if rule.required:
                    msg = f"{record.label}: required field '{rule.target}' has no value"
                    raise ValidationError(msg, field=rule.target)
                continue
            if rule.requires_review:
                result.review.append(rule.target)
                logger.warning(f"{record.label}: field '{rule.target}' is flagged for review; applied verbatim")
            if rule.target == STATE_FIELD:
                result.state = str(value)
                continue
            result.fields[rule.target] = value

        if result.state is None:
            result.state = self.translate_state(record)
        self._ensure_required(record, result)
        result.unmapped = sorted(
            name
            for name in record.fields
            if name not in type_mapping.covered_source_fields
            and name not in IGNORED_SOURCE_FIELDS
            and not name.startswith("_")
        )
        return result

    def translate_state(self, record: WorkItemRecord) -> str | None:
        """Translate the source state through the per-type state table."""
        if not record.state:
            return _FALLBACK_STATES.get(record.item_type)
        translated = ValueTranslator(self.config.state_table(record.item_type)).lookup(record.state)
        if translated is None:
            fallback = _FALLBACK_STATES.get(record.item_type, "New")
            logger.warning(f"{record.label}: no state mapping for '{record.state}'; using '{fallback}'")
            return fallback
        return translated

    def resolve_user(self, value: Any) -> str | None:  # noqa: ANN401
        """Resolve a source identity, or None if it cannot be resolved."""
        if value is None:
            return None
        name = str(value).strip()
        if not name:
            return None
        mapped = self._users.get(name.lower())
        if mapped:
            return mapped
        if "@" in name and name.rsplit("@", 1)[1].lower() in self.config.trusted_user_domains:
            return name
        return None

    def _apply_rule(self, rule: FieldRule, record: WorkItemRecord, result: MappedRecord) -> Any:  # noqa: ANN401
        raw = record.get_field(rule.source) if rule.source else None

        if rule.kind is TransformKind.COMPUTED:
            return self._derive(rule, record, raw)

        if raw is None or raw == "":
            return rule.default

        if rule.kind is TransformKind.DIRECT:
            return raw

        if rule.kind is TransformKind.ENUM:
            if rule.target == STATE_FIELD:
                return self.translate_state(record)
            table = ValueTranslator(dict(rule.values)) if rule.values else self._enums.get(rule.source or "")
            translated = table.lookup(str(raw)) if table else None
            if translated is not None:
                return translated
            if rule.default is not None:
                return rule.default
            if rule.required:
                msg = f"{record.label}: value '{raw}' of '{rule.source}' has no mapping for '{rule.target}'"
                raise ValidationError(msg, field=rule.target)
            logger.warning(f"{record.label}: dropping unmapped value '{raw}' of '{rule.source}'")
            result.review.append(rule.target)
            return None

        # TransformKind.USER
        resolved = self.resolve_user(raw)
        if resolved is not None:
            return resolved
        result.unresolved_users.append(str(raw))
        fallback = rule.default or self.config.default_assignee
        logger.warning(f"{record.label}: user '{raw}' not found in target; assigning to '{fallback}'")
        return fallback

    def _derive(self, rule: FieldRule, record: WorkItemRecord, raw: Any) -> Any:  # noqa: ANN401
        derivation = (rule.derivation or "").lower()
        if derivation == "constant":
            return rule.default
        if derivation == "title_with_id":
            return title_with_id(record)
        if derivation == "description_with_header":
            url = self._source_url(record) if self._source_url else None
            include_steps = bool(record.steps) and (
                self.config.steps_in_description or not self.config.type_mapping(record.item_type).maps_steps
            )
            return build_description(record, rally_url=url, include_steps=include_steps)
        if derivation == "test_steps":
            return build_steps_xml(record.steps) or None
        if derivation == "date":
            if isinstance(raw, dt.datetime):
                return raw.astimezone(dt.UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
            return raw if raw is not None else rule.default
        if derivation == "area_path":
            if raw:
                area = self._areas.lookup(str(raw))
                if area:
                    return area
            return rule.default or self.config.default_area_path
        if derivation == "join":
            if isinstance(raw, (list, tuple, set, frozenset)):
                return "; ".join(str(v) for v in raw)
            return raw if raw is not None else rule.default
        msg = f"Unknown derivation '{rule.derivation}' for field '{rule.target}'"
        raise ConfigurationError(msg)

    def _ensure_required(self, record: WorkItemRecord, result: MappedRecord) -> None:
        title = result.fields.get(TITLE_FIELD)
        if not title or not str(title).strip():
            title = title_with_id(record)
            if not title or not title.strip():
                msg = f"{record.label}: item has no title"
                raise ValidationError(msg, field=TITLE_FIELD)
            result.fields[TITLE_FIELD] = title

        if AREA_PATH_FIELD not in result.fields and self.config.default_area_path:
            result.fields[AREA_PATH_FIELD] = self.config.default_area_path

        tags = [self._marker(record.source_id)]
        if record.formatted_id:
            tags.append(f"Rally-{record.formatted_id}")
        tags.extend(split_tags(result.fields.get(TAGS_FIELD)))
        result.fields[TAGS_FIELD] = join_tags(tags)


def field_differences(desired: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Return the desired fields whose values differ from the current target values.

    Tags compare as sets; desired tags are merged into the existing ones so
    tags added on the target side are kept.
    """
    differences: dict[str, Any] = {}
    for name, value in desired.items():
        existing = current.get(name)
        if name == TAGS_FIELD:
            existing_tags = split_tags(existing)
            known = {t.lower() for t in existing_tags}
            missing = [t for t in split_tags(value) if t.lower() not in known]
            if missing:
                differences[name] = join_tags(existing_tags + missing)
            continue
        if isinstance(existing, dict) and "uniqueName" in existing:
            # Identity fields come back as objects
            existing = existing["uniqueName"]
        if existing is None and value in ("", None):
            continue
        if isinstance(existing, (int, float)) and not isinstance(value, bool):
            try:
                if float(value) == float(existing):
                    continue
            except (TypeError, ValueError):
                pass
        if existing != value:
            differences[name] = value
    return differences
