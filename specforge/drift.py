"""Contract drift engine.

Structural comparison of two OpenAPI 3.1 documents (references already
resolved). Every difference becomes a typed ``DriftItem`` whose severity is
fixed by its type; the report is sorted by (location, type) and a policy
decides whether the change set is blocked. The engine never raises.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .specforge_logging import log_drift_check, log_performance

# ----------------------------------------------------------------------
# Taxonomy
# ----------------------------------------------------------------------

PATH_REMOVED = "PATH_REMOVED"
METHOD_REMOVED = "METHOD_REMOVED"
NEW_PATH = "NEW_PATH"
NEW_METHOD = "NEW_METHOD"
REQUIRED_FIELD_REMOVED = "REQUIRED_FIELD_REMOVED"
REQUIRED_FIELD_ADDED = "REQUIRED_FIELD_ADDED"
FIELD_TYPE_CHANGED = "FIELD_TYPE_CHANGED"
ENUM_VALUE_REMOVED = "ENUM_VALUE_REMOVED"
ENUM_VALUE_ADDED = "ENUM_VALUE_ADDED"
RESPONSE_REMOVED = "RESPONSE_REMOVED"
ERROR_SCHEMA_CHANGED = "ERROR_SCHEMA_CHANGED"
CONSTRAINT_TIGHTENED = "CONSTRAINT_TIGHTENED"
CONSTRAINT_LOOSENED = "CONSTRAINT_LOOSENED"
FIELD_ADDED = "FIELD_ADDED"
SECURITY_SCHEME_REMOVED = "SECURITY_SCHEME_REMOVED"
SECURITY_LOOSENED = "SECURITY_LOOSENED"
SECURITY_TIGHTENED = "SECURITY_TIGHTENED"
METADATA_CHANGED = "METADATA_CHANGED"

CRITICAL = "CRITICAL"
BREAKING = "BREAKING"
WARNING = "WARNING"
INFO = "INFO"

SEVERITY_BY_TYPE: Dict[str, str] = {
    PATH_REMOVED: CRITICAL,
    METHOD_REMOVED: CRITICAL,
    REQUIRED_FIELD_REMOVED: CRITICAL,
    ENUM_VALUE_REMOVED: CRITICAL,
    RESPONSE_REMOVED: CRITICAL,
    FIELD_TYPE_CHANGED: CRITICAL,
    CONSTRAINT_TIGHTENED: BREAKING,
    REQUIRED_FIELD_ADDED: BREAKING,
    FIELD_ADDED: WARNING,
    NEW_PATH: WARNING,
    NEW_METHOD: WARNING,
    CONSTRAINT_LOOSENED: WARNING,
    ENUM_VALUE_ADDED: WARNING,
    METADATA_CHANGED: INFO,
}

HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")
COMPOSITION_KEYWORDS = ("oneOf", "anyOf", "allOf")
# Raising a lower bound or lowering an upper bound tightens the schema.
LOWER_BOUNDS = ("minLength", "minItems", "minimum")
UPPER_BOUNDS = ("maxLength", "maxItems", "maximum")
# bounds that already hold when absent
IMPLICIT_BOUNDS = {"minLength": 0, "minItems": 0}


def severity_for(drift_type: str) -> str:
    """Severity is a pure function of the drift type; unknown types are INFO."""
    return SEVERITY_BY_TYPE.get(drift_type, INFO)


@dataclass(slots=True)
class DriftItem:
    type: str
    severity: str
    location: str
    baseline: Any = None
    proposed: Any = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity,
            "location": self.location,
            "baseline": self.baseline,
            "proposed": self.proposed,
            "description": self.description,
        }


@dataclass(slots=True)
class DriftPolicy:
    block_on_critical: bool = True
    block_on_breaking: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DriftPolicy":
        data = data or {}
        return cls(
            block_on_critical=bool(data.get("block_on_critical", data.get("blockOnCritical", True))),
            block_on_breaking=bool(data.get("block_on_breaking", data.get("blockOnBreaking", False))),
        )

    def is_blocked(self, critical: int, breaking: int) -> bool:
        return (self.block_on_critical and critical > 0) or (self.block_on_breaking and breaking > 0)


@dataclass(slots=True)
class DriftReport:
    items: List[DriftItem] = field(default_factory=list)
    critical_changes: int = 0
    breaking_changes: int = 0
    warnings: int = 0
    infos: int = 0
    blocked: bool = False

    @classmethod
    def build(cls, items: List[DriftItem], policy: DriftPolicy) -> "DriftReport":
        ordered = sorted(items, key=lambda i: (i.location, i.type))
        counts = {CRITICAL: 0, BREAKING: 0, WARNING: 0, INFO: 0}
        for item in ordered:
            counts[item.severity] = counts.get(item.severity, 0) + 1
        return cls(
            items=ordered,
            critical_changes=counts[CRITICAL],
            breaking_changes=counts[BREAKING],
            warnings=counts[WARNING],
            infos=counts[INFO],
            blocked=policy.is_blocked(counts[CRITICAL], counts[BREAKING]),
        )

    def of_type(self, drift_type: str) -> List[DriftItem]:
        return [i for i in self.items if i.type == drift_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [i.to_dict() for i in self.items],
            "critical_changes": self.critical_changes,
            "breaking_changes": self.breaking_changes,
            "warnings": self.warnings,
            "infos": self.infos,
            "blocked": self.blocked,
        }


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _value_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class DriftEngine:
    """Compare two OpenAPI documents and classify every structural change."""

    def __init__(self, policy: Optional[DriftPolicy] = None):
        self.policy = policy or DriftPolicy()

    @log_performance("drift_compare")
    def compare(self, baseline: Dict[str, Any], proposed: Dict[str, Any],
                policy: Optional[DriftPolicy] = None) -> DriftReport:
        baseline = _as_dict(baseline)
        proposed = _as_dict(proposed)
        items: List[DriftItem] = []
        items.extend(self._compare_paths(_as_dict(baseline.get("paths")), _as_dict(proposed.get("paths"))))
        items.extend(self._compare_components(
            _as_dict(_as_dict(baseline.get("components")).get("schemas")),
            _as_dict(_as_dict(proposed.get("components")).get("schemas")),
        ))
        report = DriftReport.build(items, policy or self.policy)
        log_drift_check("/", report.critical_changes, report.breaking_changes, report.blocked,
                        item_count=len(report.items))
        return report

    def compare_schemas(self, baseline: Dict[str, Any], proposed: Dict[str, Any], location: str = "",
                        policy: Optional[DriftPolicy] = None) -> DriftReport:
        """Compare two bare JSON schemas rooted at ``location``."""
        items = self._compare_schema(_as_dict(baseline), _as_dict(proposed), location)
        return DriftReport.build(items, policy or self.policy)

    # ------------------------------------------------------------------
    # Paths and operations
    # ------------------------------------------------------------------

    @staticmethod
    def _item(drift_type: str, location: str, baseline: Any, proposed: Any, description: str) -> DriftItem:
        return DriftItem(
            type=drift_type,
            severity=severity_for(drift_type),
            location=location,
            baseline=baseline,
            proposed=proposed,
            description=description,
        )

    def _compare_paths(self, baseline: Dict[str, Any], proposed: Dict[str, Any]) -> List[DriftItem]:
        items = []
        for path, base_item in baseline.items():
            if path not in proposed:
                items.append(self._item(PATH_REMOVED, "/paths", path, None, f"Path '{path}' removed"))
                continue
            items.extend(self._compare_operations(path, _as_dict(base_item), _as_dict(proposed[path])))
        for path in proposed:
            if path not in baseline:
                items.append(self._item(NEW_PATH, "/paths", None, path, f"New path '{path}' added"))
        return items

    def _compare_operations(self, path: str, baseline: Dict[str, Any], proposed: Dict[str, Any]) -> List[DriftItem]:
        items = []
        location = f"/paths:{path}"
        base_ops = {m: _as_dict(op) for m, op in baseline.items() if m.lower() in HTTP_METHODS}
        prop_ops = {m: _as_dict(op) for m, op in proposed.items() if m.lower() in HTTP_METHODS}
        for method, base_op in base_ops.items():
            if method not in prop_ops:
                items.append(self._item(METHOD_REMOVED, location, method, None,
                                        f"Method '{method}' removed from path '{path}'"))
                continue
            items.extend(self._compare_operation(f"{location}:{method}", base_op, prop_ops[method]))
        for method in prop_ops:
            if method not in base_ops:
                items.append(self._item(NEW_METHOD, location, None, method,
                                        f"New method '{method}' added to path '{path}'"))
        return items

    def _compare_operation(self, location: str, baseline: Dict[str, Any], proposed: Dict[str, Any]) -> List[DriftItem]:
        items = []

        base_body = baseline.get("requestBody")
        prop_body = proposed.get("requestBody")
        if base_body is not None and prop_body is not None:
            items.extend(self._compare_content(f"{location}:requestBody", _as_dict(base_body), _as_dict(prop_body),
                                               "request body"))
        elif base_body is not None:
            items.append(self._item(REQUIRED_FIELD_REMOVED, location, "requestBody", None, "Request body removed"))

        base_responses = _as_dict(baseline.get("responses"))
        prop_responses = _as_dict(proposed.get("responses"))
        for code, base_resp in base_responses.items():
            if code not in prop_responses:
                items.append(self._item(RESPONSE_REMOVED, f"{location}:responses", code, None,
                                        f"Response '{code}' removed"))
                continue
            items.extend(self._compare_content(f"{location}:responses:{code}", _as_dict(base_resp),
                                               _as_dict(prop_responses[code]), "response"))

        items.extend(self._compare_security(f"{location}:security", _as_list(baseline.get("security")),
                                            _as_list(proposed.get("security"))))
        return items

    def _compare_content(self, location: str, baseline: Dict[str, Any], proposed: Dict[str, Any],
                         label: str) -> List[DriftItem]:
        items = []
        base_content = _as_dict(baseline.get("content"))
        prop_content = _as_dict(proposed.get("content"))
        for media_type, base_media in base_content.items():
            if media_type not in prop_content:
                items.append(self._item(REQUIRED_FIELD_REMOVED, location, media_type, None,
                                        f"Content type '{media_type}' removed from {label}"))
                continue
            items.extend(self._compare_schema(
                _as_dict(_as_dict(base_media).get("schema")),
                _as_dict(_as_dict(prop_content[media_type]).get("schema")),
                f"{location}:{media_type}",
            ))
        return items

    def _compare_security(self, location: str, baseline: List[Any], proposed: List[Any]) -> List[DriftItem]:
        if baseline and not proposed:
            return [self._item(SECURITY_LOOSENED, location, baseline, None, "Security requirements removed")]
        if proposed and not baseline:
            return [self._item(SECURITY_TIGHTENED, location, None, proposed, "Security requirements added")]
        if _value_key(baseline) != _value_key(proposed):
            return [self._item(SECURITY_LOOSENED, location, baseline, proposed, "Security requirements changed")]
        return []

    def _compare_components(self, baseline: Dict[str, Any], proposed: Dict[str, Any]) -> List[DriftItem]:
        items = []
        for name, base_schema in baseline.items():
            if name not in proposed:
                items.append(self._item(REQUIRED_FIELD_REMOVED, "/components/schemas", name, None,
                                        f"Component schema '{name}' removed"))
                continue
            items.extend(self._compare_schema(_as_dict(base_schema), _as_dict(proposed[name]),
                                              f"/components/schemas/{name}"))
        for name in proposed:
            if name not in baseline:
                items.append(self._item(FIELD_ADDED, "/components/schemas", None, name,
                                        f"New component schema '{name}' added"))
        return items

    # ------------------------------------------------------------------
    # Schema walk
    # ------------------------------------------------------------------

    def _compare_schema(self, baseline: Dict[str, Any], proposed: Dict[str, Any], location: str) -> List[DriftItem]:
        if not baseline and not proposed:
            return []
        items = []

        base_type = baseline.get("type")
        prop_type = proposed.get("type")
        if base_type and prop_type and _value_key(base_type) != _value_key(prop_type):
            items.append(self._item(FIELD_TYPE_CHANGED, location, base_type, prop_type,
                                    f"Type changed from {base_type} to {prop_type}"))

        items.extend(self._compare_enums(_as_list(baseline.get("enum")), _as_list(proposed.get("enum")), location))

        base_nullable = bool(baseline.get("nullable", False))
        prop_nullable = bool(proposed.get("nullable", False))
        if not base_nullable and prop_nullable:
            items.append(self._item(CONSTRAINT_LOOSENED, location, False, True, "Field became nullable"))
        elif base_nullable and not prop_nullable:
            items.append(self._item(CONSTRAINT_TIGHTENED, location, True, False, "Field became non-nullable"))

        items.extend(self._compare_required(_as_list(baseline.get("required")),
                                            _as_list(proposed.get("required")), location))
        items.extend(self._compare_constraints(baseline, proposed, location))
        items.extend(self._compare_properties(_as_dict(baseline.get("properties")),
                                              _as_dict(proposed.get("properties")), location))

        if isinstance(baseline.get("items"), dict) and isinstance(proposed.get("items"), dict):
            items.extend(self._compare_schema(baseline["items"], proposed["items"], f"{location}/items"))

        for keyword in COMPOSITION_KEYWORDS:
            items.extend(self._compare_composition(keyword, _as_list(baseline.get(keyword)),
                                                   _as_list(proposed.get(keyword)), location))
        return items

    def _compare_enums(self, baseline: List[Any], proposed: List[Any], location: str) -> List[DriftItem]:
        if not baseline and not proposed:
            return []
        items = []
        base_keys = {_value_key(v) for v in baseline}
        prop_keys = {_value_key(v) for v in proposed}
        for value in baseline:
            if _value_key(value) not in prop_keys:
                items.append(self._item(ENUM_VALUE_REMOVED, location, value, None, f"Enum value '{value}' removed"))
        for value in proposed:
            if _value_key(value) not in base_keys:
                items.append(self._item(ENUM_VALUE_ADDED, location, None, value, f"Enum value '{value}' added"))
        return items

    def _compare_required(self, baseline: List[Any], proposed: List[Any], location: str) -> List[DriftItem]:
        items = []
        for name in baseline:
            if name not in proposed:
                items.append(self._item(REQUIRED_FIELD_REMOVED, location, name, None,
                                        f"Required field '{name}' removed"))
        for name in proposed:
            if name not in baseline:
                items.append(self._item(REQUIRED_FIELD_ADDED, location, None, name,
                                        f"Required field '{name}' added"))
        return items

    def _compare_constraints(self, baseline: Dict[str, Any], proposed: Dict[str, Any],
                             location: str) -> List[DriftItem]:
        items = []
        for keyword in LOWER_BOUNDS + UPPER_BOUNDS:
            base_value = baseline.get(keyword)
            prop_value = proposed.get(keyword)
            if not _is_number(base_value):
                base_value = None
            if not _is_number(prop_value):
                prop_value = None
            if keyword in IMPLICIT_BOUNDS:
                base_value = IMPLICIT_BOUNDS[keyword] if base_value is None else base_value
                prop_value = IMPLICIT_BOUNDS[keyword] if prop_value is None else prop_value
            if base_value == prop_value:
                continue

            constraint_location = f"{location}/{keyword}"
            if base_value is None:
                items.append(self._item(CONSTRAINT_TIGHTENED, constraint_location, None, prop_value,
                                        f"{keyword} added"))
                continue
            if prop_value is None:
                items.append(self._item(CONSTRAINT_LOOSENED, constraint_location, base_value, None,
                                        f"{keyword} removed"))
                continue

            increased = prop_value > base_value
            tightened = increased if keyword in LOWER_BOUNDS else not increased
            direction = "increased" if increased else "decreased"
            items.append(self._item(
                CONSTRAINT_TIGHTENED if tightened else CONSTRAINT_LOOSENED,
                constraint_location,
                base_value,
                prop_value,
                f"{keyword} {direction}",
            ))
        return items

    def _compare_properties(self, baseline: Dict[str, Any], proposed: Dict[str, Any],
                            location: str) -> List[DriftItem]:
        items = []
        for name, base_prop in baseline.items():
            if name not in proposed:
                items.append(self._item(REQUIRED_FIELD_REMOVED, location, name, None, f"Property '{name}' removed"))
                continue
            items.extend(self._compare_schema(_as_dict(base_prop), _as_dict(proposed[name]),
                                              f"{location}/properties/{name}"))
        for name in proposed:
            if name not in baseline:
                items.append(self._item(FIELD_ADDED, location, None, name, f"Property '{name}' added"))
        return items

    def _compare_composition(self, keyword: str, baseline: List[Any], proposed: List[Any],
                             location: str) -> List[DriftItem]:
        if not baseline and not proposed:
            return []
        items = []
        if len(baseline) > len(proposed):
            items.append(self._item(CONSTRAINT_TIGHTENED, f"{location}/{keyword}", len(baseline), len(proposed),
                                    f"{keyword} option(s) removed"))
        elif len(baseline) < len(proposed):
            items.append(self._item(CONSTRAINT_LOOSENED, f"{location}/{keyword}", len(baseline), len(proposed),
                                    f"{keyword} option(s) added"))
        for index in range(min(len(baseline), len(proposed))):
            items.extend(self._compare_schema(_as_dict(baseline[index]), _as_dict(proposed[index]),
                                              f"{location}/{keyword}/{index}"))
        return items


def detect_drift(baseline: Dict[str, Any], proposed: Dict[str, Any],
                 policy: Optional[DriftPolicy] = None) -> DriftReport:
    """Convenience wrapper around ``DriftEngine.compare``."""
    return DriftEngine(policy).compare(baseline, proposed)
