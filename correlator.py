"""
correlator.py - Poll/Event Timestamp Correlation Engine
Gamepad Input Latency Monitor

This module matches observations of the same physical input change made by
two independent mechanisms:
1. Poll Sampler - reads the full device state once per display frame
2. Event Listener - receives change notifications pushed by the driver

Each mechanism writes into its own pending table keyed by (category, index).
Whenever a new observation arrives the correlator looks at the opposite
table: if both tables hold an entry for the key and the device timestamps
agree, the pair is matched, the latency delta is reported and both entries
are removed. If the timestamps disagree both entries stay pending until an
observation with an agreeing timestamp arrives.

Guarantees:
- Each matched device timestamp is reported at most once
- Matching does not depend on which mechanism delivered first
- A newer unmatched observation replaces an older one (latest-wins)
- Disconnect clears every pending entry

All methods are expected to run on one thread (the frame tick); the
correlator itself never blocks and never raises while operating.
"""

import numpy as np
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from latency_model import (
    AXIS_NOISE_THRESHOLD,
    ChangeDetector,
    ChangeRule,
    DeviceNotification,
    DeviceSnapshotState,
    EdgeRule,
    FasterMechanism,
    InputCategory,
    InputKey,
    LatencyReport,
    Observation,
    RawDeviceState,
    classify_delta,
)


ReportListener = Callable[[LatencyReport], None]


class PendingTable:
    """
    Unmatched observations of one mechanism, at most one per key.

    Latest-wins: putting an observation for a key that already holds one
    discards the older entry.
    """

    def __init__(self, name: str = "pending"):
        """
        Initialize an empty table.

        Args:
            name: Identifier for debugging ("poll" / "event")
        """
        self.name = name
        self._entries: Dict[InputKey, Observation] = {}

        # Number of unmatched observations discarded by latest-wins
        self.overwrites = 0

    def put(self, key: InputKey, observation: Observation) -> Optional[Observation]:
        """
        Insert or overwrite the entry for a key.

        Returns:
            The discarded older observation, if any
        """
        previous = self._entries.get(key)
        if previous is not None:
            self.overwrites += 1
        self._entries[key] = observation
        return previous

    def peek(self, key: InputKey) -> Optional[Observation]:
        """Entry for a key without removing it."""
        return self._entries.get(key)

    def take(self, key: InputKey) -> Optional[Observation]:
        """Remove and return the entry for a key."""
        return self._entries.pop(key, None)

    def clear(self):
        """Drop every entry."""
        self._entries.clear()

    def keys(self) -> List[InputKey]:
        return list(self._entries.keys())

    def __contains__(self, key: InputKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self):
        return f"PendingTable(name={self.name!r}, entries={len(self._entries)})"


class CorrelatorSession:
    """
    Correlation state for the single tracked device.

    Owns both pending tables and the device snapshot used by the poll
    sampler. Report listeners are called synchronously for every matched
    pair; the session keeps no reports itself.

    Lifecycle:
    - track(): start following a device (resets if the device changes)
    - sample_poll(): poll sampler entry point, once per frame
    - handle_notification(): event listener entry point
    - disconnect(): device gone, everything pending is discarded
    """

    def __init__(
        self,
        change_detector: Optional[ChangeDetector] = None,
        axis_threshold: Optional[float] = None,
    ):
        """
        Initialize correlator session.

        Args:
            change_detector: Detector used by the poll sampler
            axis_threshold: Overrides the axis noise threshold of the detector
        """
        self.change_detector = (
            change_detector if change_detector is not None else ChangeDetector()
        )
        if axis_threshold is not None:
            self.change_detector.set_rule(
                InputCategory.AXES,
                ChangeRule(EdgeRule.BOTH_EDGES, threshold=axis_threshold),
            )

        self.poll_table = PendingTable("poll")
        self.event_table = PendingTable("event")
        self.snapshot = DeviceSnapshotState()

        # Tracked device
        self.device_index: Optional[int] = None
        self.device_id: Optional[str] = None

        # Listeners
        self._report_listeners: List[ReportListener] = []
        self._on_reset: Optional[Callable[[], None]] = None

        # Counters (per category)
        self.matches: Dict[InputCategory, int] = {c: 0 for c in InputCategory}
        self.mismatches: Dict[InputCategory, int] = {c: 0 for c in InputCategory}

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_report_listener(self, listener: ReportListener):
        """Register a callback invoked with every LatencyReport."""
        self._report_listeners.append(listener)

    def remove_report_listener(self, listener: ReportListener):
        if listener in self._report_listeners:
            self._report_listeners.remove(listener)

    def set_on_reset(self, callback: Callable[[], None]):
        """Set callback for when the pending state is discarded."""
        self._on_reset = callback

    # ------------------------------------------------------------------
    # Device lifecycle
    # ------------------------------------------------------------------

    @property
    def is_tracking(self) -> bool:
        return self.device_index is not None

    def track(self, device_index: int, device_id: str) -> bool:
        """
        Follow a device.

        Switching to a different device resets the session so entries of
        the old device can never match entries of the new one.

        Returns:
            True if the tracked device changed
        """
        if self.device_index == device_index and self.device_id == device_id:
            return False

        if self.is_tracking:
            self.reset()

        self.device_index = device_index
        self.device_id = device_id
        return True

    def disconnect(self):
        """Stop tracking and discard everything pending."""
        self.device_index = None
        self.device_id = None
        self.reset()

    def reset(self):
        """Clear both pending tables and the device snapshot."""
        self.poll_table.clear()
        self.event_table.clear()
        self.snapshot.clear()
        if self._on_reset:
            self._on_reset()

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def sample_poll(
        self, state: RawDeviceState, local_time: float
    ) -> List[LatencyReport]:
        """
        Poll sampler: diff a sampled device state and record its changes.

        Args:
            state: Device state read this frame
            local_time: Local clock at the sampling instant (ms)

        Returns:
            Reports produced by this sample
        """
        if not self._accepts(state.device_index):
            return []

        reports = []
        for key in self.change_detector.detect(self.snapshot, state):
            observation = Observation(state.device_timestamp, local_time)
            report = self.observe_poll(key, observation)
            if report is not None:
                reports.append(report)
        return reports

    def handle_notification(
        self, notification: DeviceNotification, local_time: float
    ) -> List[LatencyReport]:
        """
        Event listener: record every input listed in a push notification.

        Args:
            notification: Changed inputs and device timestamp
            local_time: Local clock when the notification was delivered (ms)

        Returns:
            Reports produced by this notification
        """
        if not self._accepts(notification.device_index):
            return []

        reports = []
        for key in notification.changed_keys():
            observation = Observation(notification.device_timestamp, local_time)
            report = self.observe_event(key, observation)
            if report is not None:
                reports.append(report)
        return reports

    def observe_poll(
        self, key: InputKey, observation: Observation
    ) -> Optional[LatencyReport]:
        """Insert a poll observation and try to correlate the key."""
        self.poll_table.put(key, observation)
        return self.reconcile(key.category, key.index)

    def observe_event(
        self, key: InputKey, observation: Observation
    ) -> Optional[LatencyReport]:
        """Insert an event observation and try to correlate the key."""
        self.event_table.put(key, observation)
        return self.reconcile(key.category, key.index)

    def _accepts(self, device_index: int) -> bool:
        return self.device_index is None or self.device_index == device_index

    # ------------------------------------------------------------------
    # Correlation
    # ------------------------------------------------------------------

    def reconcile(
        self, category: InputCategory, index: int
    ) -> Optional[LatencyReport]:
        """
        Match the pending poll and event entries of one input.

        Returns:
            The report if a pair was matched, otherwise None
        """
        key = InputKey(category, index)
        poll_entry = self.poll_table.peek(key)
        event_entry = self.event_table.peek(key)

        if poll_entry is None or event_entry is None:
            return None

        if poll_entry.device_timestamp != event_entry.device_timestamp:
            # Not the same device sample yet; wait for an agreeing one
            self.mismatches[category] += 1
            return None

        poll_entry = self.poll_table.take(key)
        event_entry = self.event_table.take(key)

        delta_ms = poll_entry.local_time - event_entry.local_time
        report = LatencyReport(
            category=category,
            index=index,
            delta_ms=delta_ms,
            faster=classify_delta(delta_ms),
            device_timestamp=poll_entry.device_timestamp,
        )
        self.matches[category] += 1

        for listener in list(self._report_listeners):
            listener(report)

        return report

    def pending_count(self) -> int:
        """Total number of unmatched observations in both tables."""
        return len(self.poll_table) + len(self.event_table)

    def get_status(self) -> Dict:
        """Get current status for display."""
        return {
            "device_index": self.device_index,
            "device_id": self.device_id,
            "pending_poll": len(self.poll_table),
            "pending_event": len(self.event_table),
            "overwrites": self.poll_table.overwrites + self.event_table.overwrites,
            "matches": sum(self.matches.values()),
            "mismatches": sum(self.mismatches.values()),
        }


class LatencyStatistics:
    """
    Optional report listener that aggregates latency deltas.

    Keeps the most recent signed deltas per category and derives summary
    statistics on demand. Not part of the correlator: attach it with
    session.add_report_listener(stats.record).
    """

    def __init__(self, max_samples: int = 1000):
        """
        Initialize statistics collector.

        Args:
            max_samples: Deltas kept per category
        """
        self.max_samples = max_samples
        self.deltas: Dict[InputCategory, Deque[float]] = {
            c: deque(maxlen=max_samples) for c in InputCategory
        }
        self.winners: Dict[FasterMechanism, int] = {m: 0 for m in FasterMechanism}

    def record(self, report: LatencyReport):
        """Add one report."""
        self.deltas[report.category].append(report.delta_ms)
        self.winners[report.faster] += 1

    def total_reports(self) -> int:
        return sum(self.winners.values())

    def get_statistics(self, category: Optional[InputCategory] = None) -> Dict:
        """
        Summary statistics of the signed deltas.

        Args:
            category: Restrict to one category (all categories if None)

        Returns:
            Dictionary with count, mean, std, min, max, median and p95 (ms)
        """
        if category is None:
            values = [d for c in InputCategory for d in self.deltas[c]]
        else:
            values = list(self.deltas[category])

        if not values:
            return {
                "count": 0,
                "mean_ms": 0.0,
                "std_ms": 0.0,
                "min_ms": 0.0,
                "max_ms": 0.0,
                "median_ms": 0.0,
                "p95_ms": 0.0,
            }

        data = np.asarray(values, dtype=float)
        return {
            "count": int(data.size),
            "mean_ms": float(np.mean(data)),
            "std_ms": float(np.std(data)),
            "min_ms": float(np.min(data)),
            "max_ms": float(np.max(data)),
            "median_ms": float(np.median(data)),
            "p95_ms": float(np.percentile(data, 95)),
        }

    def get_summary(self) -> Dict:
        """Statistics for every category plus the winner counts."""
        summary = {c.value: self.get_statistics(c) for c in InputCategory}
        summary["all"] = self.get_statistics()
        summary["event_faster"] = self.winners[FasterMechanism.EVENT]
        summary["polling_faster"] = self.winners[FasterMechanism.POLLING]
        summary["ties"] = self.winners[FasterMechanism.TIE]
        return summary

    def reset(self):
        """Reset all statistics."""
        for values in self.deltas.values():
            values.clear()
        self.winners = {m: 0 for m in FasterMechanism}


def create_session(axis_threshold: float = AXIS_NOISE_THRESHOLD) -> CorrelatorSession:
    """
    Create a session with the standard change rules.

    Args:
        axis_threshold: Axis noise threshold (normalized units)
    """
    return CorrelatorSession(axis_threshold=axis_threshold)
