"""Execution-scoped variable store with path resolution and interpolation."""

import copy
import re
import threading
from typing import Any, Dict, List, Optional, Union

from ..models.core import VariableDataType
from .conditions import MISSING, resolve_path as _walk
from .exceptions import ValidationError, VariableNotFoundError
from .logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

PAYLOAD_SCOPES = ("payload", "trigger")
NODE_SCOPE = "nodes"
VARIABLE_SCOPES = ("variables", "vars")


def infer_data_type(value: Any) -> VariableDataType:
    """Infer the stored data type of a variable value."""
    if value is None:
        return VariableDataType.NULL
    if isinstance(value, bool):
        return VariableDataType.BOOLEAN
    if isinstance(value, (int, float)):
        return VariableDataType.NUMBER
    if isinstance(value, str):
        return VariableDataType.STRING
    if isinstance(value, (list, tuple)):
        return VariableDataType.ARRAY
    return VariableDataType.OBJECT


def _check_type(label: str, field: str, actual: VariableDataType, expected_type) -> None:
    expected = VariableDataType(expected_type)
    if actual != expected:
        raise ValidationError(f"{label} has type {actual.value}, expected {expected.value}", field=field)


class VariableResolver:
    """Resolves names and dot paths for one execution.

    Lookup order for a path's first segment: `payload`/`trigger` (the
    trigger data), `nodes` (node outputs by node key), `variables`,
    then a variable of that name, then a key of the trigger payload.
    """

    def __init__(
        self,
        execution_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
        variables: Optional[Dict[str, Any]] = None,
        node_outputs: Optional[Dict[str, Any]] = None
    ):
        self.execution_id = execution_id
        self.trigger_data = trigger_data or {}
        self._values: Dict[str, Any] = {}
        self._types: Dict[str, VariableDataType] = {}
        self._sources: Dict[str, Optional[str]] = {}
        self._dirty: List[str] = []
        self._node_outputs: Dict[str, Any] = dict(node_outputs or {})
        self._lock = threading.RLock()

        for name, value in (variables or {}).items():
            self._store(name, value, None, mark_dirty=False)

    def _store(self, name: str, value: Any, source: Optional[str], mark_dirty: bool = True):
        with self._lock:
            self._values[name] = value
            self._types[name] = infer_data_type(value)
            self._sources[name] = source
            if mark_dirty and name not in self._dirty:
                self._dirty.append(name)

    def set(self, name: str, value: Any, source: Optional[str] = None) -> VariableDataType:
        """Set a variable, inferring its data type."""
        if not name:
            raise ValidationError("Variable name cannot be empty", field="name")
        self._store(name, value, source)
        logger.debug(f"Set variable '{name}' for execution {self.execution_id}")
        return self._types[name]

    def merge(self, updates: Optional[Dict[str, Any]], source: Optional[str] = None):
        for name, value in (updates or {}).items():
            self.set(name, value, source)

    def has(self, name: str) -> bool:
        return name in self._values

    def get(self, name: str, expected_type: Optional[Union[VariableDataType, str]] = None) -> Any:
        """
        Get a variable by name.

        Args:
            name: Variable name
            expected_type: When given, the stored type must match

        Returns:
            The variable value

        Raises:
            VariableNotFoundError: If no variable has that name
            ValidationError: If the stored type differs from expected_type
        """
        with self._lock:
            if name not in self._values:
                raise VariableNotFoundError(name)
            value = self._values[name]
            actual_type = self._types[name]

        if expected_type is not None:
            _check_type(f"Variable '{name}'", name, actual_type, expected_type)
        return value

    def resolve_typed(self, path: str, expected_type: Union[VariableDataType, str]) -> Any:
        """
        Resolve a dot path and require the value to have ``expected_type``.

        Returns:
            The value, or MISSING when the path does not resolve

        Raises:
            ValidationError: If the value has another data type
        """
        value = self.resolve_path(path)
        if value is not MISSING:
            _check_type(f"'{path}'", path, infer_data_type(value), expected_type)
        return value

    def data_type(self, name: str) -> VariableDataType:
        if name not in self._types:
            raise VariableNotFoundError(name)
        return self._types[name]

    def source(self, name: str) -> Optional[str]:
        return self._sources.get(name)

    def set_node_output(self, node_key: str, output: Any):
        with self._lock:
            self._node_outputs[node_key] = output

    def node_output(self, node_key: str) -> Any:
        return self._node_outputs.get(node_key)

    def resolve_path(self, path: str) -> Any:
        """Resolve a dot path; returns MISSING when nothing matches."""
        if not path:
            return MISSING
        path = path.strip()
        head, _, rest = path.partition(".")

        if head in PAYLOAD_SCOPES:
            return _walk(self.trigger_data, rest)
        if head == NODE_SCOPE:
            return _walk(self._node_outputs, rest)
        if head in VARIABLE_SCOPES and head not in self._values:
            return _walk(self._values, rest)
        if head in self._values:
            return _walk(self._values[head], rest)
        return _walk(self.trigger_data, path)

    def lookup(self, path: str) -> Any:
        """Callable form used by the condition engine."""
        return self.resolve_path(path)

    def interpolate(self, template: Any) -> Any:
        """
        Replace `{{path}}` placeholders.

        A string that is exactly one placeholder yields the raw value, so
        `"{{payload.items}}"` stays a list. Placeholders that do not resolve
        become empty strings. Dicts and lists are interpolated recursively.
        """
        if isinstance(template, dict):
            return {key: self.interpolate(value) for key, value in template.items()}
        if isinstance(template, list):
            return [self.interpolate(value) for value in template]
        if not isinstance(template, str) or "{{" not in template:
            return template

        whole = PLACEHOLDER_PATTERN.fullmatch(template.strip())
        if whole:
            value = self.resolve_path(whole.group(1))
            return "" if value is MISSING else value

        def replace(match):
            value = self.resolve_path(match.group(1))
            if value is MISSING or value is None:
                logger.debug(f"Unresolved placeholder '{match.group(1)}' in execution {self.execution_id}")
                return ""
            return str(value)

        return PLACEHOLDER_PATTERN.sub(replace, template)

    def pop_changes(self) -> Dict[str, Dict[str, Any]]:
        """Return variables changed since the last call, for persistence."""
        with self._lock:
            changes = {
                name: {
                    "value": self._values[name],
                    "data_type": self._types[name].value,
                    "source": self._sources.get(name),
                }
                for name in self._dirty
            }
            self._dirty = []
        return changes

    def child(self, bindings: Optional[Dict[str, Any]] = None) -> "VariableResolver":
        """A resolver seeded with this one's state plus per-iteration bindings.

        Writes to the child do not reach the parent.
        """
        with self._lock:
            child = VariableResolver(
                self.execution_id,
                trigger_data=self.trigger_data,
                variables=copy.deepcopy(self._values),
                node_outputs=self._node_outputs
            )
        for name, value in (bindings or {}).items():
            child._store(name, value, "loop", mark_dirty=False)
        return child
