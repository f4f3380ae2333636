"""State container that reports every change to a StateValidator."""

import copy
import threading


class MonitoredStore:
    """Holds one application state dict; each ``set_state`` is snapshotted and
    its transition from the previous state validated.
    """

    def __init__(self, name, initial_state, validator):
        self._name = name
        self._state = copy.deepcopy(initial_state)
        self._validator = validator
        self._lock = threading.Lock()
        self._validator.snapshot(name, self._state, "init")

    @property
    def name(self):
        return self._name

    def get_state(self):
        with self._lock:
            return copy.deepcopy(self._state)

    def set_state(self, partial, replace=False, action=None):
        """Merge `partial` into the state (or replace it) and validate the change.

        `partial` may be a dict or a callable receiving the current state and
        returning one.
        """
        with self._lock:
            previous = copy.deepcopy(self._state)
            update = partial(copy.deepcopy(self._state)) if callable(partial) else partial
            if replace:
                self._state = copy.deepcopy(update)
            else:
                self._state = {**self._state, **copy.deepcopy(update)}
            current = copy.deepcopy(self._state)

        action_name = action or "setState"
        self._validator.snapshot(self._name, current, action_name)
        self._validator.validate_transition(self._name, previous, current, action_name)
        return current
