"""
visualization.py - Real-Time Display for the Gamepad Input Latency Monitor
Gamepad Input Latency Monitor

This module provides a graphical user interface for:
- Device state display (buttons, axes, touches of the tracked gamepad)
- Raw payload of the last change notification
- Comparison output (one line per matched input change)
- Latency statistics and frame timing display
- Clear/Reset functionality

The GUI is built using tkinter for cross-platform compatibility
and uses a separate thread to maintain ~20Hz refresh rate
without blocking the poll tick.
"""

import tkinter as tk
from tkinter import ttk
import threading
import queue
from dataclasses import dataclass
from typing import Optional, Callable, Dict, Tuple


@dataclass
class MonitorDisplayData:
    """Container for periodic display data."""

    # Device state panel text
    state_text: str = ""

    # Tracking
    connected: bool = False
    device_id: str = ""
    pending_poll: int = 0
    pending_event: int = 0
    matches: int = 0
    mismatches: int = 0

    # Latency statistics (None when not collected)
    statistics: Optional[Dict] = None

    # Frame timing (None when not analyzed)
    timing: Optional[Dict] = None


# Text panel operations, applied in order by the GUI thread
OUTPUT_APPEND = "append"
OUTPUT_CLEAR = "clear"
PAYLOAD_SET = "payload"


class LatencyMonitorGUI:
    """
    Main window of the latency monitor.

    Features:
    - Device state text region
    - Event payload text region
    - Comparison output text region (bounded scrollback)
    - Latency statistics and frame timing labels
    - Clear/Reset controls

    The GUI runs in a separate thread and communicates with the
    poll tick via thread-safe queues.
    """

    def __init__(self, title: str = "Gamepad Input Latency Monitor", max_output_lines: int = 500):
        """Initialize the GUI."""
        self.title = title
        self.max_output_lines = max_output_lines
        self.root: Optional[tk.Tk] = None

        # Thread-safe communication
        self.display_queue: queue.Queue = queue.Queue(maxsize=10)
        self.text_queue: queue.Queue = queue.Queue()

        # Callbacks
        self._on_clear: Optional[Callable] = None
        self._on_reset: Optional[Callable] = None

        # State
        self.running = False
        self.gui_thread: Optional[threading.Thread] = None

        # GUI elements (initialized in _create_gui)
        self.state_text: Optional[tk.Text] = None
        self.payload_text: Optional[tk.Text] = None
        self.output_text: Optional[tk.Text] = None
        self.status_label: Optional[ttk.Label] = None
        self.conn_status: Optional[ttk.Label] = None
        self.stats_labels: Dict[str, ttk.Label] = {}
        self.timing_labels: Dict[str, ttk.Label] = {}

    def set_callbacks(
        self,
        on_clear: Optional[Callable[[], None]] = None,
        on_reset: Optional[Callable[[], None]] = None,
    ):
        """Set callback functions for GUI events."""
        self._on_clear = on_clear
        self._on_reset = on_reset

    def _create_gui(self):
        """Create all GUI elements."""
        self.root = tk.Tk()
        self.root.title(self.title)
        self.root.configure(bg="#1a1a2e")
        self.root.geometry("1000x700")
        self.root.minsize(900, 600)

        # Configure styles
        style = ttk.Style()
        style.theme_use("clam")
        style.configure("TFrame", background="#1a1a2e")
        style.configure("TLabel", background="#1a1a2e", foreground="white")
        style.configure("TButton", background="#333355")
        style.configure("Header.TLabel", font=("Arial", 12, "bold"))
        style.configure("Data.TLabel", font=("Consolas", 10))

        main_frame = ttk.Frame(self.root, padding=10)
        main_frame.pack(fill=tk.BOTH, expand=True)

        # Left panel - device state and event payload
        left_frame = ttk.Frame(main_frame)
        left_frame.pack(side=tk.LEFT, fill=tk.Y, padx=(0, 10))

        self._create_device_panel(left_frame)

        # Center panel - comparison output
        center_frame = ttk.Frame(main_frame)
        center_frame.pack(side=tk.LEFT, fill=tk.BOTH, expand=True, padx=(0, 10))

        self._create_output_panel(center_frame)

        # Right panel - controls, statistics, timing
        right_frame = ttk.Frame(main_frame)
        right_frame.pack(side=tk.RIGHT, fill=tk.Y)

        self._create_control_panel(right_frame)
        self._create_statistics_panel(right_frame)

        self._create_status_bar()

        self.root.protocol("WM_DELETE_WINDOW", self._on_close)

    def _make_text(self, parent, width: int, height: int) -> tk.Text:
        text = tk.Text(
            parent,
            width=width,
            height=height,
            bg="#101020",
            fg="#00ff88",
            insertbackground="white",
            font=("Consolas", 9),
            state="disabled",
            wrap="none",
        )
        text.pack(fill=tk.BOTH, expand=True, padx=5, pady=5)
        return text

    def _create_device_panel(self, parent):
        """Create the device state and event payload regions."""
        ttk.Label(parent, text="DEVICE", style="Header.TLabel").pack(pady=(0, 10))

        state_frame = ttk.LabelFrame(parent, text="Polled State")
        state_frame.pack(fill=tk.BOTH, expand=True, pady=5)
        self.state_text = self._make_text(state_frame, width=34, height=24)

        payload_frame = ttk.LabelFrame(parent, text="Last Event Payload")
        payload_frame.pack(fill=tk.X, pady=5)
        self.payload_text = self._make_text(payload_frame, width=34, height=12)

    def _create_output_panel(self, parent):
        """Create the comparison output region."""
        ttk.Label(parent, text="POLLING VS EVENTS", style="Header.TLabel").pack(pady=(0, 10))

        output_frame = ttk.LabelFrame(parent, text="Comparison Output")
        output_frame.pack(fill=tk.BOTH, expand=True, pady=5)

        scrollbar = ttk.Scrollbar(output_frame)
        scrollbar.pack(side=tk.RIGHT, fill=tk.Y)

        self.output_text = self._make_text(output_frame, width=50, height=30)
        self.output_text.configure(yscrollcommand=scrollbar.set)
        scrollbar.configure(command=self.output_text.yview)

    def _create_control_panel(self, parent):
        """Create the control buttons panel."""
        ttk.Label(parent, text="CONTROLS", style="Header.TLabel").pack(pady=(0, 10))

        control_frame = ttk.LabelFrame(parent, text="Session")
        control_frame.pack(fill=tk.X, pady=5)

        btn_frame = ttk.Frame(control_frame)
        btn_frame.pack(fill=tk.X, padx=5, pady=5)

        ttk.Button(btn_frame, text="Clear Output", command=self._on_clear_click).pack(
            side=tk.LEFT, padx=2
        )
        ttk.Button(btn_frame, text="↺ Reset", command=self._on_reset_click).pack(
            side=tk.LEFT, padx=2
        )

        conn_frame = ttk.Frame(control_frame)
        conn_frame.pack(fill=tk.X, padx=5, pady=5)

        ttk.Label(conn_frame, text="Gamepad:").pack(side=tk.LEFT)
        self.conn_status = ttk.Label(conn_frame, text="Disconnected", foreground="red")
        self.conn_status.pack(side=tk.LEFT, padx=5)

    def _create_statistics_panel(self, parent):
        """Create latency statistics and frame timing labels."""
        stats_frame = ttk.LabelFrame(parent, text="Correlation")
        stats_frame.pack(fill=tk.X, pady=5)

        stats = [
            ("matches", "Matched:"),
            ("mismatches", "Mismatches:"),
            ("pending", "Pending (poll/event):"),
            ("event_faster", "Event faster:"),
            ("polling_faster", "Polling faster:"),
            ("ties", "Ties:"),
            ("mean", "Mean delta:"),
            ("p95", "p95 delta:"),
        ]
        self.stats_labels = self._make_label_grid(stats_frame, stats)

        timing_frame = ttk.LabelFrame(parent, text="Frame Timing")
        timing_frame.pack(fill=tk.X, pady=5)

        timing = [
            ("period", "Avg Period:"),
            ("jitter", "Avg Jitter:"),
            ("wcet", "WCET:"),
            ("overruns", "Overruns:"),
        ]
        self.timing_labels = self._make_label_grid(timing_frame, timing)

    def _make_label_grid(self, parent, items) -> Dict[str, ttk.Label]:
        labels = {}
        for i, (key, text) in enumerate(items):
            ttk.Label(parent, text=text).grid(row=i, column=0, sticky="w", padx=5, pady=2)
            lbl = ttk.Label(parent, text="-", style="Data.TLabel")
            lbl.grid(row=i, column=1, sticky="w", padx=5, pady=2)
            labels[key] = lbl
        return labels

    def _create_status_bar(self):
        """Create the status bar at the bottom."""
        status_frame = ttk.Frame(self.root)
        status_frame.pack(side=tk.BOTTOM, fill=tk.X)

        self.status_label = ttk.Label(
            status_frame,
            text="Waiting for gamepad | Press any button to begin",
            relief=tk.SUNKEN,
        )
        self.status_label.pack(fill=tk.X, padx=2, pady=2)

    def _on_clear_click(self):
        """Handle Clear button click."""
        if self._on_clear:
            self._on_clear()

    def _on_reset_click(self):
        """Handle Reset button click."""
        if self.status_label:
            self.status_label.configure(text="Session reset")
        if self._on_reset:
            self._on_reset()

    def _on_close(self):
        """Handle window close."""
        self.running = False
        if self.root:
            self.root.quit()
            self.root.destroy()

    @staticmethod
    def _replace_text(widget: Optional[tk.Text], text: str):
        if widget is None:
            return
        widget.configure(state="normal")
        widget.delete("1.0", tk.END)
        widget.insert(tk.END, text)
        widget.configure(state="disabled")

    def _append_output_line(self, line: str):
        widget = self.output_text
        if widget is None:
            return
        widget.configure(state="normal")
        widget.insert(tk.END, line + "\n")

        # Keep scrollback bounded
        line_count = int(widget.index("end-1c").split(".")[0])
        if line_count > self.max_output_lines:
            widget.delete("1.0", f"{line_count - self.max_output_lines + 1}.0")

        widget.configure(state="disabled")
        widget.see(tk.END)

    def _apply_text_operations(self):
        while True:
            try:
                operation, text = self.text_queue.get_nowait()
            except queue.Empty:
                return

            if operation == OUTPUT_APPEND:
                self._append_output_line(text)
            elif operation == OUTPUT_CLEAR:
                self._replace_text(self.output_text, "")
            elif operation == PAYLOAD_SET:
                self._replace_text(self.payload_text, text)

    def _apply_display_data(self, data: MonitorDisplayData):
        self._replace_text(self.state_text, data.state_text)

        if self.conn_status:
            if data.connected:
                self.conn_status.configure(text=data.device_id or "Connected", foreground="green")
            else:
                self.conn_status.configure(text="Disconnected", foreground="red")

        labels = self.stats_labels
        labels["matches"].configure(text=str(data.matches))
        labels["mismatches"].configure(text=str(data.mismatches))
        labels["pending"].configure(text=f"{data.pending_poll} / {data.pending_event}")

        stats = data.statistics
        if stats is not None:
            labels["event_faster"].configure(text=str(stats["event_faster"]))
            labels["polling_faster"].configure(text=str(stats["polling_faster"]))
            labels["ties"].configure(text=str(stats["ties"]))
            labels["mean"].configure(text=f"{stats['all']['mean_ms']:+.2f} ms")
            labels["p95"].configure(text=f"{stats['all']['p95_ms']:+.2f} ms")

        timing = data.timing
        if timing is not None:
            self.timing_labels["period"].configure(text=f"{timing['avg_period_ms']:.2f} ms")
            self.timing_labels["jitter"].configure(text=f"{timing['avg_jitter_ms']:.2f} ms")
            self.timing_labels["wcet"].configure(text=f"{timing['wcet_ms']:.2f} ms")
            self.timing_labels["overruns"].configure(text=str(timing["overruns"]))

    def _update_gui(self):
        """Update GUI with queued data (called from the GUI thread)."""
        self._apply_text_operations()

        latest: Optional[MonitorDisplayData] = None
        while True:
            try:
                latest = self.display_queue.get_nowait()
            except queue.Empty:
                break
        if latest is not None:
            self._apply_display_data(latest)

        # Schedule next update (~20Hz)
        if self.running and self.root:
            self.root.after(50, self._update_gui)

    def update_display(
        self,
        state_text: str,
        session_status: Dict,
        statistics: Optional[Dict] = None,
        timing: Optional[Dict] = None,
    ):
        """
        Update periodic display data (thread-safe).

        Called from the poll tick thread.
        """
        data = MonitorDisplayData(
            state_text=state_text,
            connected=session_status["device_index"] is not None,
            device_id=session_status["device_id"] or "",
            pending_poll=session_status["pending_poll"],
            pending_event=session_status["pending_event"],
            matches=session_status["matches"],
            mismatches=session_status["mismatches"],
            statistics=statistics,
            timing=timing,
        )
        self._post_display(data)

    def _post_display(self, data: MonitorDisplayData):
        try:
            self.display_queue.put_nowait(data)
        except queue.Full:
            # Drop oldest data
            try:
                self.display_queue.get_nowait()
            except queue.Empty:
                pass
            self.display_queue.put_nowait(data)

    def append_output(self, line: str):
        """Append a line to the comparison output (thread-safe)."""
        self.text_queue.put((OUTPUT_APPEND, line))

    def clear_output(self):
        """Clear the comparison output (thread-safe)."""
        self.text_queue.put((OUTPUT_CLEAR, ""))

    def set_payload(self, text: str):
        """Replace the event payload region (thread-safe)."""
        self.text_queue.put((PAYLOAD_SET, text))

    def set_status(self, message: str):
        """Set status bar message (thread-safe)."""
        if self.root:

            def update_status():
                if self.status_label:
                    self.status_label.configure(text=message)

            self.root.after(0, update_status)

    def start(self):
        """Start the GUI in a separate thread."""
        self.running = True
        self.gui_thread = threading.Thread(target=self._run_gui, daemon=True)
        self.gui_thread.start()

    def _run_gui(self):
        """Run the GUI main loop."""
        self._create_gui()
        if self.root:
            self.root.after(50, self._update_gui)
            self.root.mainloop()

    def stop(self):
        """Stop the GUI."""
        self.running = False
        if self.root:
            try:
                self.root.after(0, self._on_close)
            except (RuntimeError, tk.TclError):
                pass

    def is_running(self) -> bool:
        """Check if GUI is running."""
        return self.running


if __name__ == "__main__":
    # Test the GUI
    import time
    import random

    print("Testing Latency Monitor GUI")
    print("=" * 50)

    gui = LatencyMonitorGUI("Test GUI")
    gui.set_callbacks(
        on_clear=lambda: (print("Clear clicked"), gui.clear_output()),
        on_reset=lambda: print("Reset clicked"),
    )
    gui.start()

    print("\nSimulating reports for 30 seconds...")
    print("Close the window or wait to exit")

    t = 0.0
    matches = 0
    try:
        while gui.is_running() and t < 30:
            if random.random() < 0.2:
                matches += 1
                delta = random.gauss(4.0, 3.0)
                winner = "Event" if delta > 0 else "Polling"
                gui.append_output(
                    f"[buttons {random.randrange(16)}] {winner} was faster by {abs(delta):.2f} ms"
                )

            gui.update_display(
                state_text=f"Gamepad: Test\nGamepad timestamp: {int(t * 100)}",
                session_status={
                    "device_index": 0,
                    "device_id": "Test Gamepad",
                    "pending_poll": 0,
                    "pending_event": 0,
                    "matches": matches,
                    "mismatches": 0,
                },
            )

            time.sleep(0.05)  # 20Hz update
            t += 0.05

    except KeyboardInterrupt:
        print("\nInterrupted")

    gui.stop()
    print("\nGUI test complete!")
