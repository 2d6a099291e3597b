"""
main.py - Main Application for the Gamepad Input Latency Monitor
Gamepad Input Latency Monitor

This is the main entry point that integrates all components:
- Xbox controller polling (once per display frame)
- Xbox controller change notifications (background thread)
- Poll/event correlation and latency reporting
- Optional latency statistics
- Visualization GUI (device state, raw event payload, comparison output)
- Frame timing analysis

The poll tick runs at the display refresh rate (60Hz by default). All
correlation work happens on the tick thread: notifications are stamped
when they are delivered and applied at the start of the next tick, GUI and
keyboard commands are queued and applied the same way.
"""

import time
import queue
import threading
import json
import argparse
from typing import Callable, Dict, List, Optional
from dataclasses import dataclass
from collections import deque

from latency_model import (
    AXIS_NOISE_THRESHOLD,
    ChangeRule,
    DeviceNotification,
    EdgeRule,
    InputCategory,
    LatencyReport,
    RawDeviceState,
)
from correlator import CorrelatorSession, LatencyStatistics
from input_handler import (
    DeviceLifecycle,
    InputConfig,
    InputSource,
    KeyboardShortcuts,
    LifecycleSignal,
    SimulatedGamepad,
    SimulationConfig,
    XboxControllerHandler,
    XInputEventSource,
    XINPUT_AVAILABLE,
    contains_any_phrase,
    format_device_state,
    monotonic_ms,
)


@dataclass
class MonitorConfig:
    """Configuration parameters for the monitor."""

    # Timing parameters
    frame_rate_hz: float = 60.0  # Poll tick rate (display refresh)
    gui_update_rate_hz: float = 20.0  # GUI refresh rate

    # Change detection
    axis_threshold: float = AXIS_NOISE_THRESHOLD

    # Reporting
    show_timestamps: bool = False  # Append device timestamp to report lines
    collect_statistics: bool = False  # Attach LatencyStatistics
    max_output_lines: int = 500  # Report lines kept by the console sink

    # Device
    simulate: bool = False  # Use SimulatedGamepad instead of XInput
    controller_index: int = 0
    duration_s: Optional[float] = None  # Stop after this long (None = run until closed)
    seed: Optional[int] = None

    # Timing analysis
    enable_timing_analysis: bool = True

    # Global keyboard shortcuts (c/r/esc)
    enable_shortcuts: bool = True


class TimingAnalyzer:
    """
    Frame tick timing analyzer.

    Tracks the execution time of every tick, the worst/best case
    execution time, period jitter and overruns (ticks that took longer
    than one frame period). A poll tick that overruns delays the poll
    observations of that frame and biases the measured latency toward the
    event mechanism, so overruns are printed with the results.
    """

    def __init__(self, target_period_ms: float, history: int = 1000):
        """
        Initialize timing analyzer.

        Args:
            target_period_ms: Target tick period in milliseconds
            history: Number of ticks kept for averages
        """
        self.target_period_ms = target_period_ms

        self.execution_times: deque = deque(maxlen=history)
        self.periods: deque = deque(maxlen=history)
        self.jitter_values: deque = deque(maxlen=history)

        self.overruns = 0
        self.total_ticks = 0
        self.wcet_ms = 0.0
        self.bcet_ms = float("inf")
        self.last_tick_start: Optional[float] = None

    def record_tick(self, start_ms: float, end_ms: float):
        """
        Record one tick.

        Args:
            start_ms: Tick start (ms, local clock)
            end_ms: Tick end (ms, local clock)
        """
        execution_ms = end_ms - start_ms
        self.execution_times.append(execution_ms)
        self.total_ticks += 1

        self.wcet_ms = max(self.wcet_ms, execution_ms)
        self.bcet_ms = min(self.bcet_ms, execution_ms)

        if execution_ms > self.target_period_ms:
            self.overruns += 1

        if self.last_tick_start is not None:
            period = start_ms - self.last_tick_start
            self.periods.append(period)
            self.jitter_values.append(abs(period - self.target_period_ms))

        self.last_tick_start = start_ms

    def get_statistics(self) -> Dict:
        """Get timing statistics."""
        if not self.execution_times:
            return {
                "wcet_ms": 0.0,
                "bcet_ms": 0.0,
                "avg_execution_ms": 0.0,
                "avg_period_ms": self.target_period_ms,
                "avg_jitter_ms": 0.0,
                "max_jitter_ms": 0.0,
                "overruns": 0,
                "overrun_rate": 0.0,
                "total_ticks": 0,
            }

        periods = list(self.periods) or [self.target_period_ms]
        jitter = list(self.jitter_values) or [0.0]

        return {
            "wcet_ms": self.wcet_ms,
            "bcet_ms": self.bcet_ms,
            "avg_execution_ms": sum(self.execution_times) / len(self.execution_times),
            "avg_period_ms": sum(periods) / len(periods),
            "avg_jitter_ms": sum(jitter) / len(jitter),
            "max_jitter_ms": max(jitter),
            "overruns": self.overruns,
            "overrun_rate": self.overruns / max(1, self.total_ticks) * 100,
            "total_ticks": self.total_ticks,
        }

    def reset(self):
        """Reset all statistics."""
        self.execution_times.clear()
        self.periods.clear()
        self.jitter_values.clear()
        self.overruns = 0
        self.total_ticks = 0
        self.wcet_ms = 0.0
        self.bcet_ms = float("inf")
        self.last_tick_start = None


class ConsoleReportSink:
    """Prints report lines and keeps the most recent ones."""

    def __init__(self, include_timestamp: bool = False, echo: bool = True, max_lines: int = 500):
        self.include_timestamp = include_timestamp
        self.echo = echo
        self.lines: deque = deque(maxlen=max_lines)

    def __call__(self, report: LatencyReport):
        self.write(report.format_line(self.include_timestamp))

    def write(self, line: str):
        self.lines.append(line)
        if self.echo:
            print(line)

    def clear(self):
        self.lines.clear()


class LatencyMonitor:
    """
    Gamepad latency monitor integrating all components.

    Architecture:
    ┌──────────────────────────────────────────────────────────────┐
    │                    Frame Tick (60Hz)                         │
    │  ┌──────────┐   ┌──────────┐   ┌────────────┐   ┌──────────┐ │
    │  │ Commands │──▶│  Drain   │──▶│   Poll     │──▶│ Display  │ │
    │  │ (GUI/kb) │   │  Events  │   │  Sampler   │   │  Update  │ │
    │  └──────────┘   └──────────┘   └────────────┘   └──────────┘ │
    │                      │               │                       │
    │                      ▼               ▼                       │
    │                 ┌──────────────────────────┐                 │
    │                 │   Correlator Session     │──▶ Report sinks │
    │                 └──────────────────────────┘                 │
    └──────────────────────────────────────────────────────────────┘
            ▲
            │ (local_time, notification) queue
    ┌──────────────────┐
    │ Event thread     │
    │ (XInput events)  │
    └──────────────────┘
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        use_gui: bool = True,
        input_config: Optional[InputConfig] = None,
        simulation_config: Optional[SimulationConfig] = None,
        clock: Callable[[], float] = monotonic_ms,
        echo: bool = True,
    ):
        """
        Initialize the monitor.

        Args:
            config: Monitor configuration
            use_gui: Whether to start the visualization GUI
            input_config: Device access configuration
            simulation_config: Simulated gamepad configuration
            clock: Local clock in milliseconds
            echo: Print report and lifecycle lines to the console
        """
        self.config = config if config is not None else MonitorConfig()
        self.input_config = (
            input_config
            if input_config is not None
            else InputConfig(
                controller_index=self.config.controller_index,
                stick_event_threshold=self.config.axis_threshold,
            )
        )
        self.simulation_config = simulation_config
        self.use_gui = use_gui
        self.clock = clock
        self.echo = echo

        self.frame_period_s = 1.0 / self.config.frame_rate_hz
        self.frame_period_ms = self.frame_period_s * 1000

        # Components
        self.device = None  # read_state() provider
        self.events = None  # drain() provider
        self.source = InputSource.NONE
        self.session: Optional[CorrelatorSession] = None
        self.statistics: Optional[LatencyStatistics] = None
        self.console: Optional[ConsoleReportSink] = None
        self.timing_analyzer: Optional[TimingAnalyzer] = None
        self.shortcuts: Optional[KeyboardShortcuts] = None
        self.gui = None

        # Commands from GUI / keyboard threads, applied on the tick thread
        self.commands: queue.Queue = queue.Queue()

        # State
        self.running = False
        self.quit_requested = False
        self.last_state: Optional[RawDeviceState] = None
        self.last_payload: Optional[Dict] = None

        # Statistics
        self.tick_count = 0
        self.start_time = 0.0

        self.loop_thread: Optional[threading.Thread] = None

    def connect(self) -> bool:
        """
        Open the polling and notification sources.

        Returns:
            True if a device source is available
        """
        if self.config.simulate:
            sim_config = self.simulation_config
            if sim_config is None:
                sim_config = SimulationConfig(seed=self.config.seed)
            simulated = SimulatedGamepad(sim_config, clock=self.clock)
            self.device = simulated
            self.events = simulated
            self.source = InputSource.SIMULATED
            self._say(f"Using simulated gamepad: {simulated.device_id}")
            return True

        if not XINPUT_AVAILABLE:
            self._say("XInput is not available. Use --simulate to run without a controller.")
            return False

        self.device = XboxControllerHandler(self.input_config.controller_index, self.input_config)
        self.events = XInputEventSource(self.input_config, clock=self.clock)
        self.source = InputSource.XBOX_CONTROLLER
        self._say(f"Using XInput controller slot {self.input_config.controller_index}")
        return True

    def initialize(self) -> bool:
        """
        Initialize all components.

        Returns:
            True if initialization successful
        """
        if self.device is None or self.events is None:
            self._say("Cannot initialize: no device source")
            return False

        self.session = CorrelatorSession(axis_threshold=self.config.axis_threshold)

        self.console = ConsoleReportSink(
            include_timestamp=self.config.show_timestamps,
            echo=self.echo,
            max_lines=self.config.max_output_lines,
        )
        self.session.add_report_listener(self.console)

        if self.config.collect_statistics:
            self.statistics = LatencyStatistics()
            self.session.add_report_listener(self.statistics.record)

        if self.config.enable_timing_analysis:
            self.timing_analyzer = TimingAnalyzer(self.frame_period_ms)

        if self.use_gui:
            # Imported here so headless runs do not need tkinter
            from visualization import LatencyMonitorGUI

            self.gui = LatencyMonitorGUI("Gamepad Input Latency Monitor")
            self.gui.set_callbacks(
                on_clear=lambda: self.commands.put("clear"),
                on_reset=lambda: self.commands.put("reset"),
            )
            self.session.add_report_listener(self._send_report_to_gui)
            self.gui.start()

        if self.config.enable_shortcuts:
            self.shortcuts = KeyboardShortcuts()
            self.shortcuts.set_callback("clear", lambda: self.commands.put("clear"))
            self.shortcuts.set_callback("reset", lambda: self.commands.put("reset"))
            self.shortcuts.set_callback("quit", lambda: self.commands.put("quit"))
            self.shortcuts.start()

        self.events.start()
        return True

    def update_config(self, **kwargs):
        """
        Update monitor configuration at runtime.

        Args:
            **kwargs: MonitorConfig fields to update
        """
        for key, value in kwargs.items():
            if hasattr(self.config, key):
                setattr(self.config, key, value)

        # Propagate to components
        axis_rule = ChangeRule(EdgeRule.BOTH_EDGES, threshold=self.config.axis_threshold)
        if self.session:
            self.session.change_detector.set_rule(InputCategory.AXES, axis_rule)
        if isinstance(self.events, XInputEventSource):
            self.events.detector.set_rule(InputCategory.AXES, axis_rule)
        if self.console:
            self.console.include_timestamp = self.config.show_timestamps

    def _say(self, message: str):
        if self.echo:
            print(message)

    def _send_report_to_gui(self, report: LatencyReport):
        if self.gui:
            self.gui.append_output(report.format_line(self.config.show_timestamps))

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self) -> List[LatencyReport]:
        """
        Run one frame: apply commands, deliver notifications, poll.

        Returns:
            Reports produced during this tick
        """
        session = self.session
        if session is None:
            raise RuntimeError("Monitor not initialized")

        reports: List[LatencyReport] = []
        self._apply_commands()

        # Push notifications delivered since the last tick
        for local_time, item in self.events.drain():
            reports += self._handle_source_item(local_time, item)

        # Poll sample
        state = self.device.read_state()
        now = self.clock()
        self.last_state = state

        if state is None:
            if session.is_tracking:
                self._on_disconnected()
        elif self._accepts_device(state.device_id):
            if session.device_index != state.device_index:
                self._on_connected(state.device_index, state.device_id)
            reports += session.sample_poll(state, now)

        self.tick_count += 1
        return reports

    def _handle_source_item(self, local_time: float, item) -> List[LatencyReport]:
        session = self.session

        if isinstance(item, LifecycleSignal):
            if item.kind == DeviceLifecycle.CONNECTED:
                if self._accepts_device(item.device_id) and not session.is_tracking:
                    self._on_connected(item.device_index, item.device_id)
            elif item.device_index == session.device_index:
                self._on_disconnected()
            return []

        if not isinstance(item, DeviceNotification):
            return []
        if not self._accepts_device(item.device_id):
            return []

        # A notification from another matching device re-targets tracking
        if session.device_index != item.device_index:
            self._on_connected(item.device_index, item.device_id)

        self.last_payload = item.to_payload()
        if self.gui:
            self.gui.set_payload("Event payload:\n" + json.dumps(self.last_payload, indent=2))

        return session.handle_notification(item, local_time)

    def _accepts_device(self, device_id: str) -> bool:
        return contains_any_phrase(device_id, self.input_config.name_filters)

    def _on_connected(self, device_index: int, device_id: str):
        if self.session.track(device_index, device_id):
            self._say(f"Gamepad connected at index {device_index}: {device_id}")
            if self.gui:
                self.gui.set_status(f"Tracking {device_id}")

    def _on_disconnected(self):
        self.session.disconnect()
        self.last_payload = None
        self._say("Gamepad disconnected")
        if self.console:
            self.console.lines.append("Gamepad disconnected")
        if self.gui:
            self.gui.set_payload("")
            self.gui.append_output("Gamepad disconnected")
            self.gui.set_status("Waiting for gamepad | Press any button to begin")

    def _apply_commands(self):
        while True:
            try:
                command = self.commands.get_nowait()
            except queue.Empty:
                return

            if command == "clear":
                if self.console:
                    self.console.clear()
                if self.gui:
                    self.gui.clear_output()
            elif command == "reset":
                self.session.reset()
                if self.statistics:
                    self.statistics.reset()
                self._say("Session reset")
            elif command == "quit":
                self.quit_requested = True

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _update_gui(self):
        if not self.gui:
            return

        stats = self.statistics.get_summary() if self.statistics else None
        timing = self.timing_analyzer.get_statistics() if self.timing_analyzer else None
        state_text = format_device_state(self.last_state) if self.last_state else ""

        self.gui.update_display(
            state_text=state_text,
            session_status=self.session.get_status(),
            statistics=stats,
            timing=timing,
        )

    def _tick_loop(self):
        """
        Frame loop - runs at the display refresh rate.

        Sleeps to absolute deadlines so the poll sample stays aligned to
        the frame period; an overrun skips to the next slot.
        """
        print(f"\nStarting poll loop at {self.config.frame_rate_hz}Hz")
        print(f"Frame period: {self.frame_period_ms:.2f}ms")
        print("-" * 50)

        gui_every = max(1, int(self.config.frame_rate_hz / self.config.gui_update_rate_hz))
        self.start_time = time.perf_counter()
        next_tick_time = self.start_time

        while self.running:
            tick_start = self.clock()

            try:
                self.tick()
                if self.tick_count % gui_every == 0:
                    self._update_gui()
            except Exception as e:
                print(f"Tick error: {e}")

            if self.timing_analyzer:
                self.timing_analyzer.record_tick(tick_start, self.clock())

            next_tick_time += self.frame_period_s
            sleep_time = next_tick_time - time.perf_counter()

            if sleep_time > 0:
                time.sleep(sleep_time)
            else:
                next_tick_time = time.perf_counter() + self.frame_period_s

        print("\nPoll loop stopped.")

    def start_loop(self):
        """Start the frame loop in a separate thread."""
        if self.running:
            print("Poll loop already running")
            return

        self.running = True
        self.loop_thread = threading.Thread(target=self._tick_loop, daemon=True)
        self.loop_thread.start()

    def stop_loop(self):
        """Stop the frame loop."""
        self.running = False
        if self.loop_thread:
            self.loop_thread.join(timeout=2.0)
            self.loop_thread = None

    def run(self):
        """
        Main run method - handles the overall application flow.
        """
        print("\n" + "=" * 60)
        print("Gamepad Input Latency Monitor - Polling vs Events")
        print("=" * 60)

        if not self.connect():
            print("No input source. Exiting.")
            return

        if not self.initialize():
            print("Failed to initialize components. Exiting.")
            return

        self._print_instructions()
        self.start_loop()

        try:
            print("\nPress Ctrl+C to exit\n")
            started = time.perf_counter()

            while True:
                if self.gui and not self.gui.is_running():
                    print("GUI closed. Exiting...")
                    break
                if self.quit_requested:
                    print("Quit requested. Exiting...")
                    break
                if (
                    self.config.duration_s is not None
                    and time.perf_counter() - started >= self.config.duration_s
                ):
                    break

                time.sleep(0.1)

        except KeyboardInterrupt:
            print("\n\nShutdown requested...")

        self.cleanup()

    def _print_instructions(self):
        """Print usage instructions."""
        print("\n" + "-" * 60)
        print("INSTRUCTIONS")
        print("-" * 60)
        print("\nPress buttons, move sticks or touch the touchpad.")
        print("Each change is reported once both mechanisms have seen it:")
        print("  [buttons 0] Event was faster by 3.12 ms")
        print(f"\nTracked devices must match: {', '.join(self.input_config.name_filters)}")
        print(f"Axis noise threshold: {self.config.axis_threshold}")
        if self.shortcuts and self.shortcuts.active:
            print("\nKeyboard:")
            for line in self.shortcuts.describe():
                print(f"  {line}")
        print("-" * 60)

    def _print_statistics(self):
        """Print latency and timing results."""
        session = self.session
        if session is None:
            return

        status = session.get_status()
        print("\n" + "=" * 50)
        print("LATENCY RESULTS")
        print("=" * 50)
        print(f"Matched changes:      {status['matches']}")
        print(f"Timestamp mismatches: {status['mismatches']}")
        print(f"Overwritten pending:  {status['overwrites']}")
        print(f"Still pending:        {status['pending_poll'] + status['pending_event']}")

        if self.events is not None:
            delivery = self.events.get_status()
            print(f"\nInput source:         {self.source.name}")
            print(f"Notifications:        {delivery['delivered']}")
            print(f"Dropped:              {delivery['dropped']}")

        if self.statistics and self.statistics.total_reports():
            summary = self.statistics.get_summary()
            print(f"\nEvent faster:   {summary['event_faster']}")
            print(f"Polling faster: {summary['polling_faster']}")
            print(f"Ties:           {summary['ties']}")
            for name in ("buttons", "axes", "touches", "all"):
                stats = summary[name]
                if stats["count"] == 0:
                    continue
                print(
                    f"  {name:8s} n={stats['count']:4d}  mean={stats['mean_ms']:+7.2f} ms  "
                    f"std={stats['std_ms']:6.2f} ms  p95={stats['p95_ms']:+7.2f} ms"
                )

        if self.timing_analyzer:
            timing = self.timing_analyzer.get_statistics()
            print("\nFrame Timing:")
            print(f"  Target Period:      {self.frame_period_ms:.3f} ms")
            print(f"  Average Period:     {timing['avg_period_ms']:.3f} ms")
            print(f"  Average Jitter:     {timing['avg_jitter_ms']:.3f} ms")
            print(f"  WCET:               {timing['wcet_ms']:.3f} ms")
            print(f"  Overruns:           {timing['overruns']} ({timing['overrun_rate']:.2f}%)")
        print("=" * 50)

    def cleanup(self):
        """Clean up resources."""
        print("\nCleaning up...")

        self.stop_loop()

        if self.events:
            self.events.stop()

        if self.shortcuts:
            self.shortcuts.stop()

        if self.gui:
            self.gui.stop()

        self._print_statistics()
        print("Cleanup complete. Goodbye!")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Gamepad polling vs event latency monitor")
    parser.add_argument("--no-gui", action="store_true", help="Run without GUI")
    parser.add_argument("--simulate", action="store_true", help="Use a simulated gamepad")
    parser.add_argument("--rate", type=float, default=60.0, help="Poll rate / frame rate (Hz)")
    parser.add_argument(
        "--threshold", type=float, default=AXIS_NOISE_THRESHOLD, help="Axis noise threshold"
    )
    parser.add_argument("--controller", type=int, default=0, help="XInput controller index (0-3)")
    parser.add_argument(
        "--filter",
        action="append",
        default=None,
        help="Device id phrase to track (repeatable, default: Xbox, Wireless)",
    )
    parser.add_argument("--no-keys", action="store_true", help="Disable keyboard shortcuts")
    parser.add_argument("--timestamps", action="store_true", help="Show device timestamps")
    parser.add_argument("--stats", action="store_true", help="Collect latency statistics")
    parser.add_argument("--duration", type=float, default=None, help="Run time (s)")
    parser.add_argument("--seed", type=int, default=None, help="Simulator random seed")
    parser.add_argument(
        "--sim-delay", type=float, default=4.0, help="Simulated event delivery delay (ms)"
    )
    args = parser.parse_args()

    config = MonitorConfig(
        frame_rate_hz=args.rate,
        axis_threshold=args.threshold,
        show_timestamps=args.timestamps,
        collect_statistics=args.stats,
        simulate=args.simulate,
        controller_index=args.controller,
        duration_s=args.duration,
        seed=args.seed,
        enable_shortcuts=not args.no_keys,
    )
    input_config = InputConfig(
        controller_index=args.controller, stick_event_threshold=args.threshold
    )
    if args.filter:
        input_config.name_filters = tuple(args.filter)

    simulation_config = SimulationConfig(
        seed=args.seed,
        event_delay_mean_ms=args.sim_delay,
        axis_event_threshold=args.threshold,
    )

    monitor = LatencyMonitor(
        config=config,
        use_gui=not args.no_gui,
        input_config=input_config,
        simulation_config=simulation_config,
    )
    monitor.run()


if __name__ == "__main__":
    main()
