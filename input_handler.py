"""
input_handler.py - Gamepad Polling and Notification Sources
Gamepad Input Latency Monitor

This module provides the device side of the latency monitor:
- Xbox Wireless Controller polling (via XInput API on Windows)
- Xbox controller change notifications from a background XInput thread
- A simulated gamepad for running without hardware
- Keyboard shortcuts for the monitor (via the keyboard library)

Both mechanisms report the same device timestamp for the same driver
update: for XInput this is the packet number of the controller state,
for the simulated gamepad a packet counter incremented per change.

Compatible Controllers:
- Xbox Wireless Controller (Series X|S, Xbox One)
- Windows 10/11 compatible Xbox controllers

Reference:
- Microsoft XInput API Documentation
- W3C Gamepad standard mapping (button/axis order)
"""

import time
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Any, Union
from enum import Enum, auto

import numpy as np

from latency_model import (
    AXIS_NOISE_THRESHOLD,
    ChangeDetector,
    ChangeRule,
    DeviceNotification,
    DeviceSnapshotState,
    EdgeRule,
    InputCategory,
    RawDeviceState,
    default_change_rules,
)

# Try to import XInput for Xbox controller support
# (the package raises OSError when the XInput DLL is missing)
XInput: Optional[Any] = None
XINPUT_AVAILABLE = False
try:
    import XInput as _XInput

    XInput = _XInput
    XINPUT_AVAILABLE = True
except (ImportError, OSError):
    print("Warning: XInput not available. Install with: pip install XInput-Python")

# Try to import keyboard for monitor shortcuts
keyboard: Optional[Any] = None
KEYBOARD_AVAILABLE = False
try:
    import keyboard as _keyboard

    keyboard = _keyboard
    KEYBOARD_AVAILABLE = True
except ImportError:
    print("Warning: keyboard library not available. Install with: pip install keyboard")


def monotonic_ms() -> float:
    """Local monotonic clock in milliseconds."""
    return time.perf_counter() * 1000.0


class InputSource(Enum):
    """Input source types."""

    NONE = auto()
    XBOX_CONTROLLER = auto()
    SIMULATED = auto()


class DeviceLifecycle(Enum):
    """Device connection transitions."""

    CONNECTED = auto()
    DISCONNECTED = auto()


@dataclass
class LifecycleSignal:
    """Connect/disconnect notice for one device."""

    kind: DeviceLifecycle
    device_index: int
    device_id: str = ""


# Items handed from a notification source to the frame tick
SourceItem = Union[DeviceNotification, LifecycleSignal]


# XInput button names in standard gamepad order; triggers (6, 7) are
# reported by XInput as analog values and mapped to buttons separately
STANDARD_BUTTON_ORDER = [
    "A",
    "B",
    "X",
    "Y",
    "LEFT_SHOULDER",
    "RIGHT_SHOULDER",
    None,  # left trigger
    None,  # right trigger
    "BACK",
    "START",
    "LEFT_THUMB",
    "RIGHT_THUMB",
    "DPAD_UP",
    "DPAD_DOWN",
    "DPAD_LEFT",
    "DPAD_RIGHT",
]
BUTTON_INDEX = {name: i for i, name in enumerate(STANDARD_BUTTON_ORDER) if name}
TRIGGER_BUTTONS = (6, 7)


@dataclass
class InputConfig:
    """Configuration for device access."""

    # XInput user index (0-3)
    controller_index: int = 0

    # Devices are tracked only if their id contains one of these phrases
    name_filters: Tuple[str, ...] = ("Xbox", "Wireless")

    # Trigger value above which the trigger counts as a pressed button
    trigger_press_threshold: float = 0.5

    # Minimum stick movement reported by the notification thread
    stick_event_threshold: float = AXIS_NOISE_THRESHOLD

    # Notification thread polling rate (Hz)
    event_rate_hz: float = 1000.0

    # Retry interval for an absent controller (s)
    connection_check_interval: float = 1.0

    # Queue size between notification thread and frame tick
    max_queued_items: int = 1024


def contains_any_phrase(text: str, phrases) -> bool:
    """Case-insensitive check whether text contains any of the phrases."""
    lower_text = text.lower()
    return any(phrase.lower() in lower_text for phrase in phrases)


def xinput_device_id(controller_index: int) -> str:
    """Display id for an XInput user slot."""
    return f"Xbox 360 Controller (XInput STANDARD GAMEPAD) #{controller_index}"


class XboxControllerHandler:
    """
    Polling access to an Xbox controller via XInput.

    The Xbox Wireless Controller is connected via:
    - USB cable
    - Xbox Wireless Adapter for Windows
    - Bluetooth (Windows 10/11)

    Every read returns the complete controller state mapped to the
    standard gamepad layout, together with the XInput packet number,
    which the driver increments whenever the state changes.
    """

    def __init__(self, controller_index: int = 0, config: Optional[InputConfig] = None):
        """
        Initialize Xbox controller handler.

        Args:
            controller_index: XInput controller index (0-3)
            config: Input configuration
        """
        self.controller_index = controller_index
        self.config = config if config is not None else InputConfig()
        self.connected = False
        self._next_connection_check = 0.0

    @property
    def device_index(self) -> int:
        return self.controller_index

    @property
    def device_id(self) -> str:
        return xinput_device_id(self.controller_index)

    def read_state(self) -> Optional[RawDeviceState]:
        """
        Poll the controller for its current state.

        While the controller is absent the slot is queried again only
        every connection_check_interval seconds.

        Returns:
            Raw device state, or None if the controller is not connected
        """
        if not XINPUT_AVAILABLE or XInput is None:
            return None

        now = time.perf_counter()
        if not self.connected and now < self._next_connection_check:
            return None

        try:
            state = XInput.get_state(self.controller_index)
        except XInput.XInputNotConnectedError:
            self.connected = False
            self._next_connection_check = now + self.config.connection_check_interval
            return None

        self.connected = True

        button_values = XInput.get_button_values(state)
        left_trigger, right_trigger = XInput.get_trigger_values(state)
        (left_x, left_y), (right_x, right_y) = XInput.get_thumb_values(state)

        buttons = [
            bool(button_values.get(name, False)) if name else False
            for name in STANDARD_BUTTON_ORDER
        ]
        threshold = self.config.trigger_press_threshold
        buttons[TRIGGER_BUTTONS[0]] = left_trigger >= threshold
        buttons[TRIGGER_BUTTONS[1]] = right_trigger >= threshold

        # Standard mapping: stick up is negative
        axes = [float(left_x), -float(left_y), float(right_x), -float(right_y)]

        return RawDeviceState(
            device_index=self.controller_index,
            device_id=self.device_id,
            device_timestamp=state.dwPacketNumber,
            buttons=buttons,
            axes=axes,
            touches=None,
            connected=True,
        )


class XInputEventSource:
    """
    Push-style change notifications for Xbox controllers.

    XInput has no callback API, so a background thread drains
    XInput.get_events() at a high rate and converts every batch of changes
    for one controller into a DeviceNotification. Each notification is
    stamped with the local clock at delivery and queued; the frame tick
    collects them with drain(), so the correlator stays single-threaded.
    """

    def __init__(
        self,
        config: Optional[InputConfig] = None,
        clock: Callable[[], float] = monotonic_ms,
    ):
        """
        Initialize notification source.

        Args:
            config: Input configuration
            clock: Local clock in milliseconds
        """
        self.config = config if config is not None else InputConfig()
        self.clock = clock
        self.items: queue.Queue = queue.Queue(maxsize=self.config.max_queued_items)

        self.running = False
        self.thread: Optional[threading.Thread] = None

        # Last values of the controller, diffed with the poll sampler's rules
        self.detector = ChangeDetector(default_change_rules(self.config.stick_event_threshold))
        self.snapshot = DeviceSnapshotState()

        # Statistics
        self.delivered = 0
        self.dropped = 0

    def get_status(self) -> Dict:
        """Get delivery counters for display."""
        return {"delivered": self.delivered, "dropped": self.dropped}

    def start(self) -> bool:
        """Start the notification thread."""
        if not XINPUT_AVAILABLE or self.running:
            return False
        self.running = True
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.start()
        return True

    def stop(self):
        """Stop the notification thread."""
        self.running = False
        if self.thread:
            self.thread.join(timeout=1.0)
            self.thread = None

    def drain(self) -> List[Tuple[float, SourceItem]]:
        """Collect every queued (local_time, item) pair in delivery order."""
        items = []
        while True:
            try:
                items.append(self.items.get_nowait())
            except queue.Empty:
                return items

    def _run(self):
        period = 1.0 / self.config.event_rate_hz
        while self.running:
            try:
                events = list(XInput.get_events())
            except Exception as e:
                print(f"XInput event error: {e}")
                time.sleep(period)
                continue

            if events:
                now = self.clock()
                for item in self._convert(events):
                    self._deliver(now, item)

            time.sleep(period)

    def _deliver(self, local_time: float, item: SourceItem):
        try:
            self.items.put_nowait((local_time, item))
            self.delivered += 1
        except queue.Full:
            self.dropped += 1

    def _convert(self, events) -> List[SourceItem]:
        """Group one batch of XInput events for the tracked controller."""
        items: List[SourceItem] = []
        notification: Optional[DeviceNotification] = None
        index = self.config.controller_index

        for event in events:
            if event.user_index != index:
                continue

            if event.type == XInput.EVENT_CONNECTED:
                self.snapshot.clear()
                items.append(
                    LifecycleSignal(
                        DeviceLifecycle.CONNECTED, index, xinput_device_id(index)
                    )
                )
                continue
            if event.type == XInput.EVENT_DISCONNECTED:
                notification = None
                items.append(
                    LifecycleSignal(
                        DeviceLifecycle.DISCONNECTED, index, xinput_device_id(index)
                    )
                )
                continue

            if notification is None:
                notification = DeviceNotification(
                    device_index=index,
                    device_id=xinput_device_id(index),
                    device_timestamp=self._packet_number(index),
                )

            if event.type == XInput.EVENT_BUTTON_PRESSED:
                if event.button in BUTTON_INDEX:
                    self._record_button(notification, BUTTON_INDEX[event.button], True)
            elif event.type == XInput.EVENT_BUTTON_RELEASED:
                if event.button in BUTTON_INDEX:
                    self._record_button(notification, BUTTON_INDEX[event.button], False)
            elif event.type == XInput.EVENT_TRIGGER_MOVED:
                button = TRIGGER_BUTTONS[0] if event.trigger == XInput.LEFT else TRIGGER_BUTTONS[1]
                pressed = event.value >= self.config.trigger_press_threshold
                self._record_button(notification, button, pressed)
            elif event.type == XInput.EVENT_STICK_MOVED:
                self._record_stick(notification, event.stick, event.x, event.y)

        # No packet number means the controller vanished mid-batch
        if notification is not None and notification.device_timestamp is not None:
            if (
                notification.buttons_pressed
                or notification.buttons_released
                or notification.axes_changed
            ):
                items.append(notification)

        return items

    def _record_button(self, notification: DeviceNotification, button: int, pressed: bool):
        was_pressed = self.snapshot.get_value(InputCategory.BUTTONS, button)
        for key in self.detector.update(self.snapshot, InputCategory.BUTTONS, {button: pressed}):
            notification.buttons_pressed.append(key.index)
        if was_pressed and not pressed:
            notification.buttons_released.append(button)

    def _record_stick(self, notification: DeviceNotification, stick: int, x: float, y: float):
        base = 0 if stick == XInput.LEFT else 2

        # Standard mapping: stick up is negative
        values = {base: float(x), base + 1: -float(y)}
        for key in self.detector.update(self.snapshot, InputCategory.AXES, values):
            notification.axes_changed.append(key.index)

    def _packet_number(self, index: int) -> Optional[int]:
        try:
            return XInput.get_state(index).dwPacketNumber
        except XInput.XInputNotConnectedError:
            return None


@dataclass
class SimulationConfig:
    """Configuration for the simulated gamepad."""

    num_buttons: int = 17
    num_axes: int = 4
    num_touches: int = 2

    # Random input changes per second (0 = only scripted changes)
    change_rate_hz: float = 4.0

    # Relative likelihood of each kind of change
    button_weight: float = 0.6
    axis_weight: float = 0.3
    touch_weight: float = 0.1

    # Driver -> notification delivery delay (ms)
    event_delay_mean_ms: float = 4.0
    event_delay_jitter_ms: float = 3.0

    # Axis moves at or below this size produce no notification
    axis_event_threshold: float = AXIS_NOISE_THRESHOLD

    seed: Optional[int] = None
    device_id: str = "Xbox Wireless Controller (Simulated)"
    device_index: int = 0


class SimulatedGamepad:
    """
    Stand-in gamepad that drives both detection mechanisms.

    Every input change increments a packet counter (the device timestamp)
    and schedules a change notification after a random delivery delay.
    read_state() returns the driver state as of the clock, drain() returns
    notifications whose delivery time has passed, stamped with that
    delivery time. Changes can be generated randomly (change_rate_hz) or
    scripted with press_button / release_button / move_axis / set_touch.
    """

    def __init__(
        self,
        config: Optional[SimulationConfig] = None,
        clock: Callable[[], float] = monotonic_ms,
    ):
        """
        Initialize simulated gamepad.

        Args:
            config: Simulation configuration
            clock: Local clock in milliseconds
        """
        self.config = config if config is not None else SimulationConfig()
        self.clock = clock
        self.rng = np.random.default_rng(self.config.seed)

        self.buttons = [False] * self.config.num_buttons
        self.axes = [0.0] * self.config.num_axes
        self.touches: Optional[List[bool]] = (
            [False] * self.config.num_touches if self.config.num_touches > 0 else None
        )
        self.packet_number = 0
        self.connected = True

        # Scheduled (delivery_time, item) pairs, ordered by delivery time
        self._scheduled: List[Tuple[float, SourceItem]] = []
        self._change_time: Optional[float] = None
        self._next_change_time = self._draw_next_change(self.clock())

        # Same noise rule the poll sampler applies to axes
        self._axis_rule = ChangeRule(
            EdgeRule.BOTH_EDGES, threshold=self.config.axis_event_threshold
        )

        # Statistics
        self.changes_generated = 0
        self.delivered = 0
        self.dropped = 0

    @property
    def device_index(self) -> int:
        return self.config.device_index

    @property
    def device_id(self) -> str:
        return self.config.device_id

    # ------------------------------------------------------------------
    # Polling / notification interfaces
    # ------------------------------------------------------------------

    def read_state(self) -> Optional[RawDeviceState]:
        """Current driver state (None while disconnected)."""
        self.advance()
        if not self.connected:
            return None
        return RawDeviceState(
            device_index=self.device_index,
            device_id=self.device_id,
            device_timestamp=self.packet_number,
            buttons=list(self.buttons),
            axes=list(self.axes),
            touches=list(self.touches) if self.touches is not None else None,
            connected=True,
        )

    def drain(self) -> List[Tuple[float, SourceItem]]:
        """Notifications and lifecycle signals delivered by now."""
        now = self.advance()
        due = [entry for entry in self._scheduled if entry[0] <= now]
        self._scheduled = [entry for entry in self._scheduled if entry[0] > now]
        due.sort(key=lambda entry: entry[0])
        self.delivered += len(due)
        return due

    def get_status(self) -> Dict:
        """Get generator and delivery counters for display."""
        return {
            "changes_generated": self.changes_generated,
            "delivered": self.delivered,
            "dropped": self.dropped,
        }

    def start(self) -> bool:
        return True

    def stop(self):
        pass

    # ------------------------------------------------------------------
    # Scripted changes
    # ------------------------------------------------------------------

    def press_button(self, index: int, delay_ms: Optional[float] = None):
        self._set_button(index, True, delay_ms)

    def release_button(self, index: int, delay_ms: Optional[float] = None):
        self._set_button(index, False, delay_ms)

    def move_axis(self, index: int, value: float, delay_ms: Optional[float] = None):
        """Move an axis and notify if the move exceeds the noise threshold."""
        value = float(np.clip(value, -1.0, 1.0))
        moved = self._axis_rule.is_change(self.axes[index], value)
        self.axes[index] = value
        self.packet_number += 1
        if moved:
            self._schedule_notification(axes_changed=[index], delay_ms=delay_ms)

    def set_touch(self, index: int, down: bool, delay_ms: Optional[float] = None):
        if self.touches is None or self.touches[index] == down:
            return
        self.touches[index] = down
        self.packet_number += 1
        self._schedule_notification(touches_changed=[index], delay_ms=delay_ms)

    def disconnect(self):
        """Simulate unplugging the controller."""
        if not self.connected:
            return
        now = self.advance()
        self.connected = False

        # Updates the driver had not delivered yet are lost with the device
        kept = [
            entry
            for entry in self._scheduled
            if entry[0] <= now or not isinstance(entry[1], DeviceNotification)
        ]
        self.dropped += len(self._scheduled) - len(kept)
        self._scheduled = kept
        self._scheduled.append(
            (
                now,
                LifecycleSignal(
                    DeviceLifecycle.DISCONNECTED, self.device_index, self.device_id
                ),
            )
        )

    def connect(self):
        """Simulate plugging the controller back in."""
        if self.connected:
            return
        now = self.clock()
        self.connected = True
        self.buttons = [False] * self.config.num_buttons
        self.axes = [0.0] * self.config.num_axes
        if self.touches is not None:
            self.touches = [False] * self.config.num_touches
        self._next_change_time = self._draw_next_change(now)
        self._scheduled.append(
            (
                now,
                LifecycleSignal(
                    DeviceLifecycle.CONNECTED, self.device_index, self.device_id
                ),
            )
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set_button(self, index: int, pressed: bool, delay_ms: Optional[float]):
        if self.buttons[index] == pressed:
            return
        self.buttons[index] = pressed
        self.packet_number += 1
        if pressed:
            self._schedule_notification(buttons_pressed=[index], delay_ms=delay_ms)
        else:
            self._schedule_notification(buttons_released=[index], delay_ms=delay_ms)

    def _schedule_notification(self, delay_ms: Optional[float] = None, **changes):
        if not self.connected:
            return
        if delay_ms is None:
            delay_ms = self._draw_delay()
        notification = DeviceNotification(
            device_index=self.device_index,
            device_id=self.device_id,
            device_timestamp=self.packet_number,
            **changes,
        )
        changed_at = self._change_time if self._change_time is not None else self.clock()
        self._scheduled.append((changed_at + delay_ms, notification))
        self._scheduled.sort(key=lambda entry: entry[0])
        self.changes_generated += 1

    def _draw_delay(self) -> float:
        delay = self.rng.normal(
            self.config.event_delay_mean_ms, self.config.event_delay_jitter_ms
        )
        return max(0.0, float(delay))

    def _draw_next_change(self, now: float) -> Optional[float]:
        if self.config.change_rate_hz <= 0:
            return None
        interval_ms = self.rng.exponential(1000.0 / self.config.change_rate_hz)
        return now + float(interval_ms)

    def advance(self) -> float:
        """Generate the random changes that are due; returns the clock."""
        now = self.clock()
        while (
            self.connected
            and self._next_change_time is not None
            and self._next_change_time <= now
        ):
            # Random changes happen between reads; delivery counts from the change
            self._change_time = self._next_change_time
            try:
                self._random_change()
            finally:
                self._change_time = None
            self._next_change_time = self._draw_next_change(self._next_change_time)
        return now

    def _random_change(self):
        weights = np.array(
            [
                self.config.button_weight if self.config.num_buttons else 0.0,
                self.config.axis_weight if self.config.num_axes else 0.0,
                self.config.touch_weight if self.touches is not None else 0.0,
            ]
        )
        if weights.sum() <= 0:
            return
        kind = self.rng.choice(3, p=weights / weights.sum())

        if kind == 0:
            index = int(self.rng.integers(self.config.num_buttons))
            self._set_button(index, not self.buttons[index], None)
        elif kind == 1:
            index = int(self.rng.integers(self.config.num_axes))
            step = self.rng.uniform(0.1, 0.6) * self.rng.choice([-1.0, 1.0])
            self.move_axis(index, round(self.axes[index] + step, 2))
        else:
            index = int(self.rng.integers(self.config.num_touches))
            self.set_touch(index, not self.touches[index])


class KeyboardShortcuts:
    """
    Global keyboard shortcuts for the monitor.

    Default bindings:
    - c: Clear comparison output
    - r: Reset correlator session
    - esc: Quit
    """

    DEFAULT_BINDINGS = {
        "c": "clear",
        "r": "reset",
        "esc": "quit",
    }

    def __init__(self, bindings: Optional[Dict[str, str]] = None):
        self.bindings = dict(bindings) if bindings is not None else dict(
            self.DEFAULT_BINDINGS
        )
        self._callbacks: Dict[str, Callable[[], None]] = {}
        self._hotkeys: List[Any] = []
        self.active = False

    def set_callback(self, action: str, callback: Callable[[], None]):
        """Set callback for an action name ("clear", "reset", "quit")."""
        self._callbacks[action] = callback

    def start(self) -> bool:
        """Register the hotkeys. Returns False if they cannot be installed."""
        if not KEYBOARD_AVAILABLE or keyboard is None or self.active:
            return False
        try:
            for key, action in self.bindings.items():
                callback = self._callbacks.get(action)
                if callback is not None:
                    self._hotkeys.append(keyboard.add_hotkey(key, callback))
        except (ImportError, OSError) as e:
            # Linux requires root for global hooks
            print(f"Warning: keyboard shortcuts disabled ({e})")
            self._hotkeys.clear()
            return False
        self.active = True
        return True

    def stop(self):
        """Remove the hotkeys."""
        if not self.active or keyboard is None:
            return
        for hotkey in self._hotkeys:
            keyboard.remove_hotkey(hotkey)
        self._hotkeys.clear()
        self.active = False

    def describe(self) -> List[str]:
        return [f"{key}: {action}" for key, action in self.bindings.items()]


def format_device_state(state: RawDeviceState) -> str:
    """Text for the device state panel."""
    lines = [
        f"Gamepad: {state.device_id}",
        f"Gamepad timestamp: {state.device_timestamp}",
        "",
        "Buttons:",
    ]
    for i, pressed in enumerate(state.buttons):
        lines.append(f"Button {i}: {'Pressed' if pressed else 'Released'}")

    lines += ["", "Axes:"]
    for i, value in enumerate(state.axes):
        lines.append(f"Axis {i}: {value:.2f}")

    if state.touches is not None:
        lines += ["", "Touches:"]
        for i, down in enumerate(state.touches):
            lines.append(f"Touch {i}: {'Down' if down else 'Up'}")

    return "\n".join(lines) + "\n"


if __name__ == "__main__":
    print("Input Handler Test")
    print("=" * 50)
    print(f"XInput Available: {XINPUT_AVAILABLE}")
    print(f"Keyboard Available: {KEYBOARD_AVAILABLE}")

    if XINPUT_AVAILABLE:
        device = XboxControllerHandler()
        events = XInputEventSource()
        events.start()
    else:
        print("\nNo XInput, using simulated gamepad")
        device = SimulatedGamepad(SimulationConfig(seed=1))
        events = device

    print("\nPolling input for 10 seconds...")
    start_time = time.perf_counter()
    last_print = start_time

    try:
        while time.perf_counter() - start_time < 10.0:
            state = device.read_state()
            for local_time, item in events.drain():
                print(f"{local_time:10.2f} ms  {item}")

            if state is not None and time.perf_counter() - last_print > 1.0:
                last_print = time.perf_counter()
                print(format_device_state(state))

            time.sleep(1 / 60)

    except KeyboardInterrupt:
        print("\nTest interrupted")

    events.stop()
    print("\nInput handler test complete!")
