"""
latency_model.py - Data Model and Change Detection for the Latency Monitor
Gamepad Input Latency Monitor

This module defines the data shared by every part of the monitor:
- Input categories and keys (button / axis / touch slots)
- Observations produced by the polling and push mechanisms
- Latency reports emitted by the correlator
- Raw device state and device change notifications
- The per-category change detector used by the poll sampler

Change detection rules:
- Buttons: rising edge only (released -> pressed)
- Axes: absolute change larger than a noise threshold
- Touches: any contact transition (down or up)

The detector is parameterized with one ChangeRule per category instead of
keeping separate code paths for each variant of the rules.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional
from enum import Enum


# Default axis noise threshold in normalized axis units
AXIS_NOISE_THRESHOLD = 0.05


class InputCategory(Enum):
    """Kinds of inputs on a gamepad."""

    BUTTONS = "buttons"
    AXES = "axes"
    TOUCHES = "touches"


class EdgeRule(Enum):
    """Which boolean transitions count as a change."""

    RISING_ONLY = "rising"
    BOTH_EDGES = "both"


class FasterMechanism(Enum):
    """Which detection mechanism saw a change first."""

    EVENT = "Event"
    POLLING = "Polling"
    TIE = "Tie"


@dataclass(frozen=True)
class InputKey:
    """
    Identifies one input slot on the tracked device.

    The index is unique per category only: button 2 and axis 2 are
    different keys.
    """

    category: InputCategory
    index: int

    def __post_init__(self):
        if self.index < 0:
            raise ValueError(f"Input index must be non-negative, got {self.index}")

    def __str__(self) -> str:
        return f"{self.category.value} {self.index}"


@dataclass(frozen=True)
class Observation:
    """
    One mechanism's sighting of an input change.

    device_timestamp is the value reported by the device/driver for the
    sampled frame; both mechanisms see the same value when they refer to the
    same physical sample. local_time is the local monotonic clock (ms) at
    the moment the observation was produced.
    """

    device_timestamp: float
    local_time: float


@dataclass(frozen=True)
class LatencyReport:
    """
    Result of matching a poll observation with an event observation.

    delta_ms is poll local time minus event local time, so a positive
    value means the event mechanism observed the change first.
    """

    category: InputCategory
    index: int
    delta_ms: float
    faster: FasterMechanism
    device_timestamp: Optional[float] = None

    @property
    def abs_delta_ms(self) -> float:
        """Absolute latency difference in milliseconds."""
        return abs(self.delta_ms)

    def format_line(self, include_timestamp: bool = False) -> str:
        """
        Render the report as a single text line.

        Args:
            include_timestamp: Append the matched device timestamp

        Returns:
            e.g. "[buttons 2] Event was faster by 2.50 ms"
        """
        prefix = f"[{self.category.value} {self.index}]"
        if self.faster == FasterMechanism.TIE:
            line = f"{prefix} Polling and Event tied at {self.abs_delta_ms:.2f} ms"
        else:
            line = (
                f"{prefix} {self.faster.value} was faster by "
                f"{self.abs_delta_ms:.2f} ms"
            )
        if include_timestamp and self.device_timestamp is not None:
            line += f" (timestamp: {_format_timestamp(self.device_timestamp)})"
        return line


def _format_timestamp(value: float) -> str:
    """Print integral timestamps (packet numbers) without a decimal part."""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.3f}"


def classify_delta(delta_ms: float) -> FasterMechanism:
    """Map a signed poll-minus-event delta to the faster mechanism."""
    if delta_ms > 0:
        return FasterMechanism.EVENT
    if delta_ms < 0:
        return FasterMechanism.POLLING
    return FasterMechanism.TIE


@dataclass
class RawDeviceState:
    """
    Full state of a gamepad as read by the polling mechanism.

    Buttons follow the standard gamepad layout (triggers are buttons 6/7),
    axes are normalized to [-1, 1]. touches is None for devices without a
    touch surface.
    """

    device_index: int
    device_id: str
    device_timestamp: float
    buttons: List[bool] = field(default_factory=list)
    axes: List[float] = field(default_factory=list)
    touches: Optional[List[bool]] = None
    connected: bool = True


@dataclass
class DeviceNotification:
    """
    One push notification from the platform.

    Lists the inputs that changed in a single driver update together with
    the device timestamp of that update.
    """

    device_index: int
    device_id: str
    device_timestamp: float
    buttons_pressed: List[int] = field(default_factory=list)
    buttons_released: List[int] = field(default_factory=list)
    axes_changed: List[int] = field(default_factory=list)
    touches_changed: List[int] = field(default_factory=list)

    def changed_keys(self) -> List[InputKey]:
        """Keys the event listener records (button releases are not changes)."""
        keys = [InputKey(InputCategory.BUTTONS, i) for i in self.buttons_pressed]
        keys += [InputKey(InputCategory.AXES, i) for i in self.axes_changed]
        keys += [InputKey(InputCategory.TOUCHES, i) for i in self.touches_changed]
        return keys

    def to_payload(self) -> Dict:
        """Payload dictionary shown in the raw event panel."""
        return {
            "id": self.device_id,
            "index": self.device_index,
            "axesChanged": list(self.axes_changed),
            "buttonsPressed": list(self.buttons_pressed),
            "buttonsReleased": list(self.buttons_released),
            "touchesChanged": list(self.touches_changed),
            "timestamp": self.device_timestamp,
        }


@dataclass
class ChangeRule:
    """
    Change detection rule for one input category.

    With a threshold the values are compared numerically
    (|current - previous| > threshold) and movement in either direction
    counts, so a threshold requires BOTH_EDGES. Without one the values are
    treated as booleans and edge_rule selects which transitions count.
    """

    edge_rule: EdgeRule = EdgeRule.BOTH_EDGES
    threshold: Optional[float] = None

    def __post_init__(self):
        if self.threshold is None:
            return
        if self.threshold < 0:
            raise ValueError(f"Threshold must be non-negative, got {self.threshold}")
        if self.edge_rule != EdgeRule.BOTH_EDGES:
            raise ValueError(
                f"A threshold rule cannot use {self.edge_rule.name}; use BOTH_EDGES"
            )

    def is_change(self, previous, current) -> bool:
        """Apply the rule to one previous/current value pair."""
        if self.threshold is not None:
            return abs(float(current) - float(previous)) > self.threshold
        if self.edge_rule == EdgeRule.RISING_ONLY:
            return bool(current) and not bool(previous)
        return bool(current) != bool(previous)


def default_change_rules(axis_threshold: float = AXIS_NOISE_THRESHOLD) -> Dict:
    """Standard rules: rising-edge buttons, thresholded axes, both-edge touches."""
    return {
        InputCategory.BUTTONS: ChangeRule(EdgeRule.RISING_ONLY),
        InputCategory.AXES: ChangeRule(EdgeRule.BOTH_EDGES, threshold=axis_threshold),
        InputCategory.TOUCHES: ChangeRule(EdgeRule.BOTH_EDGES),
    }


@dataclass
class DeviceSnapshotState:
    """Last-known value of every input on the tracked device."""

    buttons: Dict[int, bool] = field(default_factory=dict)
    axes: Dict[int, float] = field(default_factory=dict)
    touches: Dict[int, bool] = field(default_factory=dict)

    # Value assumed for an input that has never been sampled
    DEFAULTS = {
        InputCategory.BUTTONS: False,
        InputCategory.AXES: 0.0,
        InputCategory.TOUCHES: False,
    }

    def values_for(self, category: InputCategory) -> Dict:
        """Storage dictionary for a category."""
        if category == InputCategory.BUTTONS:
            return self.buttons
        if category == InputCategory.AXES:
            return self.axes
        return self.touches

    def get_value(self, category: InputCategory, index: int):
        """Last value of an input, or the category default."""
        return self.values_for(category).get(index, self.DEFAULTS[category])

    def clear(self):
        """Forget every stored value."""
        self.buttons.clear()
        self.axes.clear()
        self.touches.clear()


class ChangeDetector:
    """
    Diffs a raw device state against the previous snapshot.

    Used by the poll sampler once per frame. The snapshot is overwritten
    with the current values whether or not anything changed, so every
    comparison is against the immediately preceding sample.
    """

    def __init__(self, rules: Optional[Dict] = None):
        """
        Initialize change detector.

        Args:
            rules: ChangeRule per InputCategory (standard rules if None)
        """
        self.rules = default_change_rules()
        if rules is not None:
            self.rules.update(rules)

    def set_rule(self, category: InputCategory, rule: ChangeRule):
        """Replace the rule for one category."""
        self.rules[category] = rule

    def detect(
        self, snapshot: DeviceSnapshotState, state: RawDeviceState
    ) -> List[InputKey]:
        """
        Find the inputs that changed since the previous sample.

        Args:
            snapshot: Previous values (updated in place)
            state: Newly sampled device state

        Returns:
            Changed keys, buttons first, then axes, then touches
        """
        changed: List[InputKey] = []
        changed += self.update(snapshot, InputCategory.BUTTONS, dict(enumerate(state.buttons)))
        changed += self.update(snapshot, InputCategory.AXES, dict(enumerate(state.axes)))
        if state.touches is not None:
            changed += self.update(
                snapshot, InputCategory.TOUCHES, dict(enumerate(state.touches))
            )
        return changed

    def update(
        self, snapshot: DeviceSnapshotState, category: InputCategory, values: Dict
    ) -> List[InputKey]:
        """
        Apply the category rule to a partial set of new values.

        Used directly by sources that receive one input at a time. Every
        given value is stored, changed or not.

        Args:
            snapshot: Previous values (updated in place)
            category: Category of the values
            values: index -> current value

        Returns:
            Changed keys in the order of values
        """
        rule = self.rules[category]
        stored = snapshot.values_for(category)
        changed = []

        for i, current in values.items():
            previous = snapshot.get_value(category, i)
            if rule.is_change(previous, current):
                changed.append(InputKey(category, i))
            stored[i] = current

        return changed
