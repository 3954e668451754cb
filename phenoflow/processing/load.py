"""Per-source latency and in-flight bookkeeping for dynamic scene assignment."""
import threading
from collections import defaultdict, deque

DEFAULT_LATENCY = 1.0


class SourceLoadTracker:
    """
    Serializes all latency/in-flight mutation for one session.

    Readers get snapshots; nothing outside this object touches the counters.
    """

    def __init__(self, window=10, inflight_penalty=0.5, tie_tolerance=0.2, tie_margin=0.1):
        self.window = window
        self.inflight_penalty = inflight_penalty
        self.tie_tolerance = tie_tolerance
        self.tie_margin = tie_margin
        self._lock = threading.Lock()
        self._latencies = defaultdict(lambda: deque(maxlen=self.window))
        self._in_flight = defaultdict(int)
        self._completed = defaultdict(int)

    def _average(self, source_id):
        recent = self._latencies.get(source_id)
        if not recent:
            return DEFAULT_LATENCY
        return sum(recent) / len(recent)

    def _score(self, source_id):
        return self._average(source_id) + self._in_flight[source_id] * self.inflight_penalty

    def average_latency(self, source_id):
        with self._lock:
            return self._average(source_id)

    def score(self, source_id):
        with self._lock:
            return self._score(source_id)

    def pick(self, source_ids, rng):
        """
        Choose a source for the next dispatch and mark it in flight.

        Candidates scoring within the tie tolerance of the best are chosen
        uniformly at random.

        Args:
            source_ids: Sources that listed the scene
            rng: numpy Generator

        Returns:
            The chosen source id
        """
        if not source_ids:
            raise ValueError("No candidate sources")
        with self._lock:
            if len(source_ids) == 1:
                chosen = source_ids[0]
            else:
                scored = [(sid, self._score(sid)) for sid in source_ids]
                best = min(score for _, score in scored)
                threshold = best * (1 + self.tie_tolerance) + self.tie_margin
                eligible = [sid for sid, score in scored if score <= threshold]
                chosen = eligible[int(rng.integers(len(eligible)))]
            self._in_flight[chosen] += 1
            return chosen

    def finish(self, source_id, seconds, completed=True):
        """Record a finished task (successful or not) for a source."""
        with self._lock:
            self._latencies[source_id].append(seconds)
            self._in_flight[source_id] = max(0, self._in_flight[source_id] - 1)
            if completed:
                self._completed[source_id] += 1

    def in_flight(self, source_id):
        with self._lock:
            return self._in_flight[source_id]

    def snapshot(self):
        """{source_id: (completed, average latency, in flight)}"""
        with self._lock:
            ids = set(self._latencies) | set(self._in_flight) | set(self._completed)
            return {
                sid: (self._completed[sid], self._average(sid), self._in_flight[sid])
                for sid in ids
            }
