import json
import os
import threading
from collections import Counter

import jsonschema

DEFAULT_SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)),
                                   "schemas", "diagnostic_event.json")


def _field_of(error):
    """Top-level event field an error belongs to, or '<root>'."""
    if error.path:
        return str(error.path[0])
    if error.validator == "required":
        # jsonschema reports missing properties against the parent object
        missing = error.message.split("'")
        if len(missing) >= 2:
            return missing[1]
    return "<root>"


class EventValidator:
    """Checks events posted to the collector against the DiagnosticEvent schema.

    Error messages are prefixed with the offending field so the client can
    tell a bad ``level`` from a bad ``category`` without parsing prose.
    """

    def __init__(self, schema_path=None):
        with open(schema_path or DEFAULT_SCHEMA_PATH, "r", encoding="utf-8") as f:
            schema = json.load(f)

        self._validator = jsonschema.Draft202012Validator(schema)
        self._lock = threading.Lock()
        self._total = 0
        self._rejected = 0
        self._by_keyword = Counter()
        self._by_field = Counter()

    def validate(self, event):
        """Returns ``(is_valid, errors)`` where errors are ``"field: message"`` strings."""
        failures = sorted(self._validator.iter_errors(event), key=lambda e: [str(p) for p in e.path])
        fields = [_field_of(error) for error in failures]

        with self._lock:
            self._total += 1
            if failures:
                self._rejected += 1
                self._by_keyword.update(error.validator for error in failures)
                self._by_field.update(fields)

        return not failures, [f"{field}: {error.message}"
                              for field, error in zip(fields, failures)]

    def get_stats(self):
        with self._lock:
            return {
                "total": self._total,
                "valid": self._total - self._rejected,
                "invalid": self._rejected,
                "error_types": dict(self._by_keyword),
                "fields": dict(self._by_field),
            }

    def reset_stats(self):
        with self._lock:
            self._total = 0
            self._rejected = 0
            self._by_keyword.clear()
            self._by_field.clear()
