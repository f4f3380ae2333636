"""Application-state invariant checking.

A :class:`StateValidator` holds an ordered registry of :class:`Rule`
descriptors. Each rule's ``check(state)`` is a pure function returning
``None``, a single :class:`StateViolation` or an iterable of them. Every rule
runs on every snapshot, and every violation is recorded.
"""

import copy
import json
import logging
import re
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from bauflex_diagnostics.event_store import EventStore
from bauflex_diagnostics.models import (
    Category,
    LogLevel,
    StateSnapshot,
    StateViolation,
    ViolationType,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

STATUS_NEW = "Новая"
STATUS_IN_PROGRESS = "В работе"
STATUS_COMPLETED = "Завершена"

VALID_STATUSES = (STATUS_NEW, STATUS_IN_PROGRESS, STATUS_COMPLETED)
VALID_TYPES = ("siz", "tools", "equipment", "consumables")
REQUIRED_REQUEST_FIELDS = ("id", "type", "user", "date", "status")
REQUIRED_EMPLOYEE_FIELDS = ("id", "fullName")
REQUIRED_SIZ_FIELDS = ("clothingSeason", "shoeSeason", "height", "clothingSize", "shoeSize")
ITEM_LIST_TYPES = ("tools", "equipment", "consumables")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_STATE_BYTES = 10 * 1024 * 1024

_CRITICAL_TYPES = (ViolationType.MEMORY_LEAK, ViolationType.CIRCULAR_REF)


@dataclass(frozen=True)
class Rule:
    name: str
    check: Callable


def _requests(state):
    requests = state.get("requests") if isinstance(state, dict) else None
    return [r for r in requests if isinstance(r, dict)] if isinstance(requests, list) else []


def _employees(state):
    employees = state.get("employees") if isinstance(state, dict) else None
    return [e for e in employees if isinstance(e, dict)] if isinstance(employees, list) else []


def check_duplicate_ids(state):
    ids = [r.get("id") for r in _requests(state)]
    counts = Counter(ids)
    if len(counts) == len(ids):
        return None
    return StateViolation(
        ViolationType.DUPLICATE,
        "Duplicate IDs found in requests array",
        {
            "totalCount": len(ids),
            "uniqueCount": len(counts),
            "duplicateCount": len(ids) - len(counts),
            "duplicateIds": [i for i, n in counts.items() if n > 1],
        },
    )


def check_request_status(state):
    return [
        StateViolation(
            ViolationType.CONTRADICTION,
            f'Invalid request status: "{r["status"]}"',
            {"requestId": r.get("id"), "invalidStatus": r["status"],
             "validStatuses": list(VALID_STATUSES)},
        )
        for r in _requests(state)
        if r.get("status") and r["status"] not in VALID_STATUSES
    ]


def check_request_type(state):
    return [
        StateViolation(
            ViolationType.CONTRADICTION,
            f'Invalid request type: "{r["type"]}"',
            {"requestId": r.get("id"), "invalidType": r["type"], "validTypes": list(VALID_TYPES)},
        )
        for r in _requests(state)
        if r.get("type") and r["type"] not in VALID_TYPES
    ]


def check_required_fields(state):
    violations = []
    for request in _requests(state):
        missing = [name for name in REQUIRED_REQUEST_FIELDS if not request.get(name)]
        if missing:
            violations.append(StateViolation(
                ViolationType.CONTRADICTION,
                "Request missing required fields",
                {"requestId": request.get("id") or "unknown", "missingFields": missing},
            ))
    return violations


def check_state_size(state, limit=MAX_STATE_BYTES):
    try:
        size = len(json.dumps(state, default=str, ensure_ascii=False).encode("utf-8"))
    except ValueError:
        # circular structures are reported by check_circular_references
        return None
    if size <= limit:
        return None
    return StateViolation(
        ViolationType.MEMORY_LEAK,
        "State size exceeds threshold",
        {
            "currentSize": f"{size / 1024 / 1024:.2f}MB",
            "threshold": f"{limit / 1024 / 1024:.2f}MB",
            "warning": "Potential memory leak detected",
        },
    )


def check_circular_references(state):
    try:
        json.dumps(state, default=str)
    except ValueError as exc:
        if "circular" not in str(exc).lower():
            return None
        return StateViolation(
            ViolationType.CIRCULAR_REF,
            "Circular reference detected in state",
            {"error": str(exc)},
        )
    return None


def check_dates(state):
    now = datetime.now(timezone.utc)
    violations = []
    for request in _requests(state):
        if not request.get("date"):
            continue
        parsed = parse_instant(request["date"])
        if parsed is None:
            violations.append(StateViolation(
                ViolationType.CONTRADICTION,
                "Invalid date format in request",
                {"requestId": request.get("id"), "invalidDate": request["date"]},
            ))
        elif parsed > now:
            violations.append(StateViolation(
                ViolationType.CONTRADICTION,
                "Request date is in the future",
                {"requestId": request.get("id"), "date": str(request["date"]),
                 "now": now.isoformat()},
            ))
    return violations


def check_employees(state):
    violations = []
    for employee in _employees(state):
        if not all(employee.get(name) for name in REQUIRED_EMPLOYEE_FIELDS):
            violations.append(StateViolation(
                ViolationType.CONTRADICTION,
                "Employee missing required fields",
                {"employee": employee, "required": list(REQUIRED_EMPLOYEE_FIELDS)},
            ))
            continue
        email = employee.get("email")
        if email and not EMAIL_PATTERN.match(str(email)):
            violations.append(StateViolation(
                ViolationType.CONTRADICTION,
                "Invalid employee email format",
                {"employeeId": employee["id"], "email": email},
            ))
    return violations


def check_request_details(state):
    violations = []
    for request in _requests(state):
        details = request.get("details")
        if not details:
            continue
        if request.get("type") == "siz":
            missing = [name for name in REQUIRED_SIZ_FIELDS
                       if not (isinstance(details, dict) and details.get(name))]
            if missing:
                violations.append(StateViolation(
                    ViolationType.CONTRADICTION,
                    "SIZ request missing size details",
                    {"requestId": request.get("id"), "missingFields": missing},
                ))
        elif request.get("type") in ITEM_LIST_TYPES and not isinstance(details, list):
            violations.append(StateViolation(
                ViolationType.CONTRADICTION,
                "Non-SIZ request details should be a list",
                {"requestId": request.get("id"), "type": request["type"],
                 "detailsType": type(details).__name__},
            ))
    return violations


DEFAULT_RULES = (
    Rule("no-duplicates-in-arrays", check_duplicate_ids),
    Rule("valid-request-status", check_request_status),
    Rule("valid-request-type", check_request_type),
    Rule("request-required-fields", check_required_fields),
    Rule("state-size-check", check_state_size),
    Rule("no-circular-references", check_circular_references),
    Rule("valid-dates", check_dates),
    Rule("valid-employees", check_employees),
    Rule("valid-request-details", check_request_details),
)


class StateValidator:
    # (from, to) status moves that are never allowed
    FORBIDDEN_TRANSITIONS = (
        (STATUS_COMPLETED, STATUS_NEW),
        (STATUS_COMPLETED, STATUS_IN_PROGRESS),
    )

    def __init__(self, diagnostic_logger, max_snapshots=100, max_state_bytes=MAX_STATE_BYTES,
                 rules=None):
        self._logger = diagnostic_logger
        self._snapshots = EventStore(max_size=max_snapshots)
        self._violations = []
        self._lock = threading.Lock()
        self._rules = []
        for rule in (DEFAULT_RULES if rules is None else rules):
            if rule.name == "state-size-check" and max_state_bytes != MAX_STATE_BYTES:
                rule = Rule(rule.name, lambda state: check_state_size(state, max_state_bytes))
            self._rules.append(rule)

    @classmethod
    def from_config(cls, diagnostic_logger, config):
        state = config["state"]
        return cls(diagnostic_logger, max_snapshots=state["max_snapshots"],
                   max_state_bytes=state["max_state_bytes"])

    @property
    def rule_names(self):
        return [rule.name for rule in self._rules]

    def add_rule(self, name, check):
        """Append a rule; a rule with the same name is replaced in place."""
        rule = Rule(name, check)
        with self._lock:
            for index, existing in enumerate(self._rules):
                if existing.name == name:
                    self._rules[index] = rule
                    return
            self._rules.append(rule)

    def remove_rule(self, name):
        with self._lock:
            before = len(self._rules)
            self._rules = [rule for rule in self._rules if rule.name != name]
            return len(self._rules) != before

    def snapshot(self, store_name, state, action_name=None):
        """Record a deep copy of `state` and validate it; returns the violations found."""
        snap = StateSnapshot(store_name=store_name, state=copy.deepcopy(state),
                             action_name=action_name)
        self._snapshots.add(snap)
        return self.validate(store_name, snap.state, action_name)

    def validate(self, store_name, state, action_name=None):
        with self._lock:
            rules = list(self._rules)
        found = []
        for rule in rules:
            try:
                violations = _as_list(rule.check(state))
            except Exception as exc:
                logger.exception("State rule %s raised", rule.name)
                self._logger.log(
                    LogLevel.ERROR, Category.STATE, f"State rule failed: {rule.name}",
                    {"storeName": store_name, "rule": rule.name, "error": repr(exc)},
                    {"type": "rule_failure"},
                )
                continue
            for violation in violations:
                violation = StateViolation(violation.type, violation.message, violation.details,
                                           rule=rule.name, timestamp=violation.timestamp)
                found.append(violation)
                with self._lock:
                    self._violations.append(violation)
                self._logger.log(
                    LogLevel.CRITICAL if violation.type in _CRITICAL_TYPES else LogLevel.ERROR,
                    Category.STATE,
                    f"State validation failed: {violation.message}",
                    {"storeName": store_name, "actionName": action_name, "rule": rule.name,
                     "violation": violation.details},
                    {"type": "state_violation", "violationType": violation.type.value},
                )
        return found

    def validate_transition(self, store_name, previous_state, new_state, action_name):
        """Flag forbidden status moves between requests sharing an id."""
        previous = {r.get("id"): r for r in _requests(previous_state) if r.get("id") is not None}
        offending = []
        for request in _requests(new_state):
            old = previous.get(request.get("id"))
            if old is None or old.get("status") == request.get("status"):
                continue
            move = (old.get("status"), request.get("status"))
            if move not in self.FORBIDDEN_TRANSITIONS:
                continue
            details = {
                "storeName": store_name,
                "actionName": action_name,
                "requestId": request.get("id"),
                "from": move[0],
                "to": move[1],
                "reason": "Completed requests cannot be reopened",
            }
            offending.append(details)
            with self._lock:
                self._violations.append(StateViolation(
                    ViolationType.INVALID_TRANSITION, "Invalid state transition detected",
                    details, rule="forbidden-transitions",
                ))
            self._logger.log(LogLevel.ERROR, Category.STATE, "Invalid state transition detected",
                             details, {"type": "invalid_transition"})
        return offending

    def get_violations(self, type=None):
        with self._lock:
            violations = list(self._violations)
        if type is not None:
            type = ViolationType(type) if not isinstance(type, ViolationType) else type
            violations = [v for v in violations if v.type is type]
        return violations

    def get_snapshots(self, store_name=None, limit=None):
        snapshots = self._snapshots.get_all()
        if store_name:
            snapshots = [s for s in snapshots if s.store_name == store_name]
        if limit:
            snapshots = snapshots[-limit:]
        return snapshots

    def diff_states(self, before, after):
        return diff_states(before, after)

    def get_statistics(self):
        violations = self.get_violations()
        by_type = Counter(v.type.value for v in violations)
        return {
            "totalSnapshots": len(self._snapshots),
            "totalViolations": len(violations),
            "violationsByType": dict(by_type),
        }

    def export(self):
        return json.dumps({
            "timestamp": utc_now_iso(),
            "snapshots": [s.to_dict() for s in self._snapshots.get_all()],
            "violations": [v.to_dict() for v in self.get_violations()],
            "statistics": self.get_statistics(),
        }, indent=2, default=str, ensure_ascii=False)

    def clear(self):
        with self._lock:
            self._violations = []
        self._snapshots.clear()


def diff_states(before, after, path=""):
    """Key-path diff of two nested dicts; lists and scalars compare as whole leaves."""
    diff = {}
    keys = list(before) + [k for k in after if k not in before]
    for key in keys:
        full_path = f"{path}.{key}" if path else str(key)
        if key not in before:
            diff[full_path] = {"type": "added", "value": after[key]}
        elif key not in after:
            diff[full_path] = {"type": "removed", "value": before[key]}
        elif before[key] != after[key]:
            if isinstance(before[key], dict) and isinstance(after[key], dict):
                diff.update(diff_states(before[key], after[key], full_path))
            else:
                diff[full_path] = {"type": "changed", "from": before[key], "to": after[key]}
    return diff


def parse_instant(value):
    """Parse an ISO string, epoch seconds or datetime into an aware UTC datetime, or None."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_list(result):
    if result is None:
        return []
    if isinstance(result, StateViolation):
        return [result]
    return list(result)
