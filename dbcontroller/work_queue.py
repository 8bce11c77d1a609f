"""
The WorkQueue decouples event arrival from reconciliation. Watch threads add
Database keys and worker threads pull them. The queue guarantees that a key is
never handed to two workers at once: an add that arrives while the key is in
flight is remembered and replayed when the attempt finishes.
"""

# Standard
from collections import deque
from heapq import heappop, heappush
from typing import Any, Deque, Dict, List, Optional, Set, Tuple
import random
import threading
import time

# First Party
import alog

# Local
from . import config
from .managed_object import ResourceKey
from .utils import parse_time_delta

log = alog.use_channel("WKQUE")


class WorkQueue:  # pylint: disable=too-many-instance-attributes
    """Deduplicating, rate limited work queue keyed by ResourceKey"""

    def __init__(
        self,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        slow_base_delay: Optional[float] = None,
        slow_max_delay: Optional[float] = None,
        jitter: Optional[float] = None,
    ):
        """Construct with the backoff parameters. Any value not given is read
        from the backoff section of the library config.

        Args:
            base_delay:  Optional[float]
                Seconds to wait after the first failure
            max_delay:  Optional[float]
                Cap on the delay between attempts
            slow_base_delay:  Optional[float]
                Seconds to wait after the first authorization failure
            slow_max_delay:  Optional[float]
                Cap on the delay between attempts after authorization failures
            jitter:  Optional[float]
                Fraction of the delay to randomly add or remove
        """
        self.base_delay = _or_config(base_delay, "base_delay")
        self.max_delay = _or_config(max_delay, "max_delay")
        self.slow_base_delay = _or_config(slow_base_delay, "slow_base_delay")
        self.slow_max_delay = _or_config(slow_max_delay, "slow_max_delay")
        self.jitter = float(config.backoff.jitter if jitter is None else jitter)

        self._condition = threading.Condition()
        self._ready: Deque[ResourceKey] = deque()
        self._queued: Set[ResourceKey] = set()
        self._processing: Set[ResourceKey] = set()
        self._dirty: Dict[ResourceKey, Any] = {}
        self._delayed: List[Tuple[float, int, ResourceKey]] = []
        self._delayed_at: Dict[ResourceKey, float] = {}
        self._delay_counter = 0
        self._failures: Dict[ResourceKey, int] = {}
        self._terminal: Dict[ResourceKey, Any] = {}
        self._shutdown = False

    ## Producers ###############################################################

    def add(self, key: ResourceKey, revision: Any = None):
        """Add a key to be reconciled

        Args:
            key:  ResourceKey
                The Database to reconcile
            revision:  Any
                The revision of the Database that caused the add. A key that
                failed permanently is only re-admitted for a different revision.
        """
        with self._condition:
            self._add(key, revision)

    def add_after(self, key: ResourceKey, delay: float):
        """Add a key once the given number of seconds has passed. If the key is
        already scheduled earlier the earlier time is kept.
        """
        if delay <= 0:
            self.add(key)
            return
        with self._condition:
            if self._shutdown:
                return
            ready_at = time.monotonic() + delay
            current = self._delayed_at.get(key)
            if current is not None and current <= ready_at:
                log.debug4("Key %s already scheduled sooner", key)
                return
            log.debug3("Scheduling %s in %.2fs", key, delay)
            self._delayed_at[key] = ready_at
            self._delay_counter += 1
            heappush(self._delayed, (ready_at, self._delay_counter, key))
            self._condition.notify_all()

    ## Consumers ###############################################################

    def get(self, timeout: Optional[float] = None) -> Optional[ResourceKey]:
        """Block until a key is eligible and mark it in flight

        Args:
            timeout:  Optional[float]
                Max seconds to wait. If None, wait until shutdown.

        Returns:
            key:  Optional[ResourceKey]
                The key to reconcile or None on shutdown or timeout
        """
        end_time = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while True:
                if self._shutdown:
                    return None

                self._promote_delayed()
                if self._ready:
                    key = self._ready.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    log.debug2("Handing out %s", key)
                    return key

                wait_time = self._time_to_next_delayed()
                if end_time is not None:
                    remaining = end_time - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait_time = remaining if wait_time is None else min(wait_time, remaining)
                self._condition.wait(timeout=wait_time)

    def done(self, key: ResourceKey):
        """Release a key handed out by get. If the key was added while in
        flight it is queued again.
        """
        with self._condition:
            self._processing.discard(key)
            if key in self._dirty:
                revision = self._dirty.pop(key)
                log.debug2("Re-queueing %s changed while in flight", key)
                self._add(key, revision)

    def mark_failed(self, key: ResourceKey, slow: bool = False) -> float:
        """Record a failed attempt and schedule the key with exponential
        backoff

        Args:
            key:  ResourceKey
                The key whose attempt failed
            slow:  bool
                Use the slow backoff for failures that need operator action

        Returns:
            delay:  float
                Seconds until the key becomes eligible again
        """
        with self._condition:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            delay = self.backoff_delay(failures, slow)
            log.debug("Attempt %d for %s failed. Retrying in %.2fs", failures, key, delay)
            self.add_after(key, delay)
            return delay

    def forget(self, key: ResourceKey):
        """Reset the failure count of a key"""
        with self._condition:
            self._failures.pop(key, None)

    def mark_terminal(self, key: ResourceKey, revision: Any):
        """Stop retrying a key until it is added with a different revision"""
        with self._condition:
            log.debug("Marking %s terminal at revision %s", key, revision)
            self._terminal[key] = revision
            self._failures.pop(key, None)
            self._delayed_at.pop(key, None)
            if key in self._dirty and self._dirty[key] in (None, revision):
                del self._dirty[key]
            if key in self._queued:
                self._queued.discard(key)
                self._ready.remove(key)

    def num_requeues(self, key: ResourceKey) -> int:
        with self._condition:
            return self._failures.get(key, 0)

    def is_terminal(self, key: ResourceKey) -> bool:
        with self._condition:
            return key in self._terminal

    def is_processing(self, key: ResourceKey) -> bool:
        with self._condition:
            return key in self._processing

    def shutdown(self):
        """Stop handing out keys and wake every waiting consumer"""
        with self._condition:
            log.debug("Shutting down work queue")
            self._shutdown = True
            self._condition.notify_all()

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def __len__(self):
        """Number of keys eligible right now"""
        with self._condition:
            self._promote_delayed()
            return len(self._ready)

    ## Backoff #################################################################

    def backoff_delay(self, failures: int, slow: bool = False) -> float:
        """Exponential delay for the given number of consecutive failures with
        jitter applied. The result never exceeds the cap.
        """
        base = self.slow_base_delay if slow else self.base_delay
        cap = self.slow_max_delay if slow else self.max_delay
        delay = min(cap, base * (2 ** max(failures - 1, 0)))
        if self.jitter:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, min(cap, delay))

    ## Implementation Details ##################################################

    def _add(self, key: ResourceKey, revision: Any):
        """Add a key with the condition held"""
        if self._shutdown:
            return
        if key in self._terminal:
            if revision is None or revision == self._terminal[key]:
                log.debug3("Dropping add of terminal key %s", key)
                return
            log.debug("Revision of terminal key %s changed to %s", key, revision)
            del self._terminal[key]
            self._failures.pop(key, None)
        if key in self._processing:
            if revision is not None or key not in self._dirty:
                self._dirty[key] = revision
            return
        if key in self._queued:
            return
        self._ready.append(key)
        self._queued.add(key)
        self._condition.notify()

    def _promote_delayed(self):
        """Move every delayed key whose time has come to the ready queue"""
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            ready_at, _, key = heappop(self._delayed)
            if self._delayed_at.get(key) != ready_at:
                continue
            del self._delayed_at[key]
            self._add(key, None)

    def _time_to_next_delayed(self) -> Optional[float]:
        while self._delayed and self._delayed_at.get(self._delayed[0][2]) != self._delayed[0][0]:
            heappop(self._delayed)
        if not self._delayed:
            return None
        return max(0.0, self._delayed[0][0] - time.monotonic())


def _or_config(value: Optional[float], name: str) -> float:
    """Use the given value or parse the named backoff duration from config"""
    if value is not None:
        return float(value)
    return parse_time_delta(config.backoff[name]).total_seconds()
