"""
Per-sensor control registry with dirty-change tracking.

A control is a named, typed property of a sensor. Values only change
through Control.set(), which marks the control's group key dirty when the
value actually differs. The sensor drains the dirty group keys once per
service cycle and notifies every addressable control of each drained group.

Pseudo-controls have no id. They exist so that a change to a hidden value
(e.g. the exposure limits) re-notifies the real control sharing its group.
"""

import enum
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Hashable, Iterator, Optional

from .wire import ControlChanges, ControlEnumOption, ValueKind

logger = logging.getLogger(__name__)


class ControlType(enum.Enum):
    """Closed set of value types a control may carry."""
    INTEGER = (ValueKind.INT, "integer")
    BOOLEAN = (ValueKind.BOOL, "bool")
    STRING = (ValueKind.STRING, "string")

    def __init__(self, kind: ValueKind, dtype: str):
        self.kind = kind
        self.dtype = dtype

    @classmethod
    def of(cls, value: Any) -> "ControlType":
        if isinstance(value, bool):
            return cls.BOOLEAN
        if isinstance(value, int):
            return cls.INTEGER
        if isinstance(value, str):
            return cls.STRING
        raise TypeError(f"Unsupported control value type: {type(value).__name__}")


Getter = Callable[["Control"], ControlChanges]
Setter = Callable[["Control", Any], None]


class Control:
    """One tunable or observable property of a sensor."""

    def __init__(
        self,
        registry: "ControlRegistry",
        control_id: Optional[str],
        value_type: ControlType,
        value: Any,
        getter: Optional[Getter] = None,
        setter: Optional[Setter] = None,
        group_key: Optional[Hashable] = None,
    ):
        if control_id is None and group_key is None:
            raise ValueError("Pseudo-controls (control_id=None) require a group_key")

        self._registry = registry
        self.control_id = control_id
        self.value_type = value_type
        self.getter = getter
        self.setter = setter
        self.group_key = group_key if group_key is not None else control_id
        self._value = value

    @property
    def value(self) -> Any:
        return self._value

    @property
    def is_pseudo(self) -> bool:
        return self.control_id is None

    @property
    def read_only(self) -> bool:
        return self.setter is None

    def set(self, value: Any):
        """Update the tracked value, marking the group dirty on change."""
        with self._registry.lock:
            if self._value != value:
                self._value = value
                self._registry.mark_dirty(self.group_key)

    def changes(self) -> ControlChanges:
        if self.getter is None:
            return ControlChanges(value=self._value, dtype=self.value_type.dtype)
        return self.getter(self)

    def __repr__(self):
        return (
            f"Control(id={self.control_id!r}, group={self.group_key!r}, "
            f"type={self.value_type.name}, value={self._value!r})"
        )


class ControlRegistry:
    """Controls of one sensor, indexed by id and by group key."""

    def __init__(self):
        self.lock = threading.RLock()
        self._controls: dict[str, Control] = {}
        self._groups: dict[Hashable, list[Control]] = {}
        self._dirty: set[Hashable] = set()

    def __iter__(self) -> Iterator[Control]:
        return iter(list(self._controls.values()))

    def __len__(self) -> int:
        return len(self._controls)

    def __contains__(self, control_id: str) -> bool:
        return control_id in self._controls

    def get(self, control_id: str) -> Optional[Control]:
        return self._controls.get(control_id)

    def group(self, group_key: Hashable) -> list[Control]:
        return list(self._groups.get(group_key, []))

    def register(
        self,
        control_id: Optional[str],
        getter: Optional[Getter],
        setter: Optional[Setter],
        value: Any,
        group_key: Optional[Hashable] = None,
        value_type: Optional[ControlType] = None,
    ) -> Control:
        """
        Register a control and return it.

        A duplicate id is logged and replaces the previous control in the id
        index; both stay members of their group. Pseudo-controls are only
        added to their group.
        """
        control = Control(
            self,
            control_id,
            value_type or ControlType.of(value),
            value,
            getter=getter,
            setter=setter,
            group_key=group_key,
        )

        with self.lock:
            if control_id is not None:
                if control_id in self._controls:
                    logger.warning(f"There's already a control registered with id={control_id}!")
                self._controls[control_id] = control
            self._groups.setdefault(control.group_key, []).append(control)

        return control

    def register_int_control(
        self,
        control_id: str,
        caption: str,
        default: int,
        min: int = 0,
        max: int = 0,
        res: int = 1,
        getter: Optional[Callable[[ControlChanges], None]] = None,
        setter: Optional[Callable[[int], None]] = None,
    ) -> Control:
        """Integer range control. `getter` may amend the change record."""
        def get(control: Control) -> ControlChanges:
            changes = ControlChanges(
                value=control.value,
                min=min,
                max=max,
                resolution=res,
                default=default,
                dtype=ControlType.INTEGER.dtype,
                caption=caption,
                readonly=control.read_only,
            )
            if getter is not None:
                getter(changes)
            return changes

        return self.register(
            control_id,
            get,
            _wrap_setter(setter),
            default,
            value_type=ControlType.INTEGER,
        )

    def register_bool_control(
        self,
        control_id: str,
        caption: str,
        default: bool = False,
        getter: Optional[Callable[[ControlChanges], None]] = None,
        setter: Optional[Callable[[bool], None]] = None,
    ) -> Control:
        def get(control: Control) -> ControlChanges:
            changes = ControlChanges(
                value=control.value,
                default=default,
                dtype=ControlType.BOOLEAN.dtype,
                caption=caption,
                readonly=control.read_only,
            )
            if getter is not None:
                getter(changes)
            return changes

        return self.register(
            control_id,
            get,
            _wrap_setter(setter),
            default,
            value_type=ControlType.BOOLEAN,
        )

    def register_string_map_control(
        self,
        control_id: str,
        caption: str,
        default: int,
        values: list[str],
        setter: Callable[[int], None],
    ) -> Control:
        """Enumerated choice; the value is the index into `values`."""
        def get(control: Control) -> ControlChanges:
            return ControlChanges(
                value=control.value,
                default=default,
                dtype="intmapping",
                caption=caption,
                map=[ControlEnumOption(idx, label) for idx, label in enumerate(values)],
            )

        def set_index(control: Control, index: int):
            if index < 0 or index >= len(values):
                logger.warning(f"Attempted to set an invalid index '{index}' on control {control_id}")
                return
            setter(index)

        return self.register(
            control_id,
            get,
            set_index,
            default,
            value_type=ControlType.INTEGER,
        )

    def mark_dirty(self, group_key: Hashable):
        with self.lock:
            self._dirty.add(group_key)

    @property
    def dirty_keys(self) -> set[Hashable]:
        with self.lock:
            return set(self._dirty)

    def consume(self, control: Control):
        """Drop a pending mark that a notification of `control` satisfies."""
        with self.lock:
            members = [c for c in self._groups.get(control.group_key, []) if not c.is_pseudo]
            if members == [control]:
                self._dirty.discard(control.group_key)

    def drain_dirty(self) -> list[Control]:
        """
        Snapshot and clear the dirty set in one critical section.

        Returns the addressable controls of every drained group. A mark made
        after the snapshot stays in the set for the next drain.
        """
        with self.lock:
            drained = list(self._dirty)
            self._dirty.clear()

            pending: list[Control] = []
            for key in drained:
                for control in self._groups.get(key, []):
                    if not control.is_pseudo and control not in pending:
                        pending.append(control)
            return pending

    @contextmanager
    def batch(self):
        """Hold the registry lock so a set of updates drains together."""
        with self.lock:
            yield self


def _wrap_setter(setter: Optional[Callable[[Any], None]]) -> Optional[Setter]:
    if setter is None:
        return None

    def set_value(control: Control, value: Any):
        setter(value)

    return set_value
