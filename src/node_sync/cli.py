#!/usr/bin/env python3
"""node-sync - Scaleway resource synchronization for Kubernetes nodes

Watches the nodes of a Kubernetes cluster and keeps Scaleway resources in line
with their membership and addresses, similar in spirit to a cloud controller
manager. Three resources are reconciled for every node:

    - reserved IP:   a flexible IP from a configured pool attached to the node
    - reverse DNS:   the PTR record of the node's public IP set to <node>.<domain>
    - database ACL:  managed database ACL rules admitting the node's public IP

Environment variables:

    Features (an empty value disables the feature):
        REVERSE_IP_DOMAIN      Domain suffix for reverse DNS records
        DATABASE_IDS           Comma-separated managed database instance IDs
        RESERVED_IPS_POOL      Comma-separated flexible IP IDs available to nodes

    Config file:
        NODE_SYNC_CONFIG_PATH  YAML file (or directory of .yaml files) providing
                               the same settings as the feature variables
                               (default: /config/node-sync.yaml)
                               Example config file:
                                 reverse_ip_domain: "nodes.example.com"
                                 database_ids:
                                   - "11111111-1111-1111-1111-111111111111"
                                 reserved_ips_pool:
                                   - "22222222-2222-2222-2222-222222222222"
                               Environment variables win over the file.

    Scaleway:
        SCW_SECRET_KEY         API secret key (required when a feature is enabled)
        SCW_DEFAULT_ZONE       Zone of the instances and flexible IPs (default: fr-par-1)
        SCW_DEFAULT_REGION     Region of the managed databases (default: fr-par)
        SCW_API_URL            API base URL (default: https://api.scaleway.com)

    Kubernetes:
        In-cluster service account credentials are used when available,
        otherwise the kubeconfig (KUBECONFIG or ~/.kube/config).

    Runtime:
        WORKERS                      Number of reconciliation workers (default: 1)
        MAX_RETRIES                  Retries before a node is given up (default: 3)
        CACHE_SYNC_TIMEOUT_SECONDS   Start-up wait for the initial node list, 0 waits
                                     until stopped (default: 120)
        RESYNC_PERIOD_SECONDS        Periodic full resync, 0 disables (default: 0)
        LOG_LEVEL                    DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import heapq
import ipaddress
import json
import logging
import os
import random
import signal
import sys
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from queue import Empty, Queue
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

import requests
import yaml
from kubernetes import client as kube_client
from kubernetes import config as kube_config
from kubernetes import watch
from kubernetes.client import ApiException

# =============================================================================
# Configuration
# =============================================================================

NODE_SYNC_CONFIG_PATH = os.getenv("NODE_SYNC_CONFIG_PATH", "/config/node-sync.yaml")

# Scaleway configuration
SCW_SECRET_KEY = os.getenv("SCW_SECRET_KEY", "")
SCW_DEFAULT_ZONE = os.getenv("SCW_DEFAULT_ZONE", "fr-par-1")
SCW_DEFAULT_REGION = os.getenv("SCW_DEFAULT_REGION", "fr-par")
SCW_API_URL = os.getenv("SCW_API_URL", "https://api.scaleway.com")

# Runtime configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DEFAULT_WORKERS = 1
DEFAULT_MAX_RETRIES = 3
DEFAULT_CACHE_SYNC_TIMEOUT_SECONDS = 120.0

# Description tag of the database ACL rules owned by a node
ACL_DESCRIPTION_PREFIX = "k8s-node:"

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Enums
# =============================================================================


class SyncTarget(Enum):
    """External resources reconciled for every node, in reconciliation order."""

    RESERVED_IP = "reserved-ip"
    REVERSE_DNS = "reverse-dns"
    DATABASE_ACL = "database-acl"


class ControllerState(Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    STOPPED = "stopped"


# =============================================================================
# Errors
# =============================================================================


class ProvisioningError(Exception):
    """A provisioning call against the cloud provider failed."""


class InitializationError(Exception):
    """The controller could not complete start-up."""


# =============================================================================
# Data Classes
# =============================================================================

EXTERNAL_IP = "ExternalIP"


@dataclass(frozen=True)
class NodeAddress:
    """One (address-type, address-value) pair reported by a node."""

    type: str
    address: str


@dataclass(frozen=True)
class NodeSnapshot:
    """Observed state of a node at a point in time."""

    name: str
    resource_version: str
    addresses: Tuple[NodeAddress, ...] = ()
    provider_id: str = ""

    def addresses_by_type(self) -> Dict[str, Set[str]]:
        grouped: Dict[str, Set[str]] = {}
        for address in self.addresses:
            grouped.setdefault(address.type, set()).add(address.address)
        return grouped


@dataclass(frozen=True)
class NodeAdded:
    snapshot: NodeSnapshot


@dataclass(frozen=True)
class NodeUpdated:
    old: NodeSnapshot
    new: NodeSnapshot


@dataclass(frozen=True)
class NodeRemoved:
    name: str


ChangeEvent = Union[NodeAdded, NodeUpdated, NodeRemoved]


@dataclass(frozen=True)
class TargetFailure:
    target: SyncTarget
    error: str


@dataclass(frozen=True)
class SyncOutcome:
    """Result of one reconciliation pass: success, or the failed targets."""

    failures: Tuple[TargetFailure, ...] = ()

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def failed_targets(self) -> List[SyncTarget]:
        return [f.target for f in self.failures]

    def __str__(self) -> str:
        if self.success:
            return "success"
        return "; ".join(f"{f.target.value}: {f.error}" for f in self.failures)


@dataclass(frozen=True)
class ControllerSettings:
    """Settings of the controller, loaded from environment and config file."""

    reverse_ip_domain: str = ""
    database_ids: Tuple[str, ...] = ()
    reserved_ips: Tuple[str, ...] = ()
    workers: int = DEFAULT_WORKERS
    max_retries: int = DEFAULT_MAX_RETRIES
    cache_sync_timeout: float = DEFAULT_CACHE_SYNC_TIMEOUT_SECONDS
    resync_period: float = 0.0

    @property
    def features_enabled(self) -> bool:
        return bool(self.reverse_ip_domain or self.database_ids or self.reserved_ips)


# =============================================================================
# Utility Functions
# =============================================================================


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml config files in directory or return single file.

    Args:
        config_path: Path to config file or directory

    Returns:
        List of config file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    return []


def load_config_files(config_path: str) -> Dict[str, Any]:
    """Merge the mappings of every config file found at config_path.

    Later files (in name order) override earlier ones. Unreadable or
    malformed files are logged and skipped.
    """
    merged: Dict[str, Any] = {}
    for config_file in find_config_files(config_path):
        try:
            with open(config_file, "r") as f:
                data = yaml.safe_load(f)
        except Exception as e:
            logger.error(f"Failed to load config from {config_file}: {e}")
            continue

        if data is None:
            continue
        if not isinstance(data, dict):
            logger.warning(f"Config file {config_file} is not a mapping, ignoring it")
            continue
        merged.update(data)
    return merged


def _parse_id_list(value: Any) -> Tuple[str, ...]:
    """Parse a comma-separated string (or a YAML list) of identifiers."""
    if not value:
        return ()
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        items = [value]

    parsed = [str(item).strip() for item in items if item is not None]
    return tuple(dict.fromkeys(item for item in parsed if item))


def _parse_number(
    environ: Mapping[str, str],
    name: str,
    default: float,
    *,
    cast: Callable[[str], Any] = int,
    minimum: Optional[float] = None,
) -> Any:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    return value


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    config_path: Optional[str] = None,
) -> ControllerSettings:
    """Build ControllerSettings from environment variables and the config file."""
    env = os.environ if environ is None else environ
    path = config_path if config_path is not None else env.get(
        "NODE_SYNC_CONFIG_PATH", NODE_SYNC_CONFIG_PATH
    )
    file_data = load_config_files(path) if path else {}

    reverse_ip_domain = env.get("REVERSE_IP_DOMAIN", "").strip() or str(
        file_data.get("reverse_ip_domain") or ""
    ).strip()
    database_ids = _parse_id_list(env.get("DATABASE_IDS")) or _parse_id_list(
        file_data.get("database_ids")
    )
    reserved_ips = _parse_id_list(env.get("RESERVED_IPS_POOL")) or _parse_id_list(
        file_data.get("reserved_ips_pool")
    )

    return ControllerSettings(
        reverse_ip_domain=reverse_ip_domain,
        database_ids=database_ids,
        reserved_ips=reserved_ips,
        workers=_parse_number(env, "WORKERS", DEFAULT_WORKERS),
        max_retries=_parse_number(env, "MAX_RETRIES", DEFAULT_MAX_RETRIES),
        cache_sync_timeout=_parse_number(
            env,
            "CACHE_SYNC_TIMEOUT_SECONDS",
            DEFAULT_CACHE_SYNC_TIMEOUT_SECONDS,
            cast=float,
            minimum=0,
        ),
        resync_period=_parse_number(env, "RESYNC_PERIOD_SECONDS", 0.0, cast=float, minimum=0),
    )


def _ip_to_cidr(value: str) -> str:
    """Return the single-host CIDR of an IP address (/32 or /128)."""
    if "/" in value:
        return value
    ip = ipaddress.ip_address(value)
    return f"{value}/32" if ip.version == 4 else f"{value}/128"


def node_snapshot_from_object(node: Any) -> NodeSnapshot:
    """Convert a Kubernetes V1Node into a NodeSnapshot."""
    metadata = getattr(node, "metadata", None)
    status = getattr(node, "status", None)
    spec = getattr(node, "spec", None)

    addresses = []
    for entry in getattr(status, "addresses", None) or []:
        address_type = getattr(entry, "type", None)
        address = getattr(entry, "address", None)
        if address_type and address:
            addresses.append(NodeAddress(type=str(address_type), address=str(address)))

    return NodeSnapshot(
        name=str(getattr(metadata, "name", None) or ""),
        resource_version=str(getattr(metadata, "resource_version", None) or ""),
        addresses=tuple(addresses),
        provider_id=str(getattr(spec, "provider_id", None) or ""),
    )


# =============================================================================
# Rate Limiters
# =============================================================================
#
# Rate limiters are not synchronized on their own: RateLimitingQueue only
# calls them while holding its lock.


class RateLimiter(ABC):
    """Decides how long an item waits before it is re-queued."""

    @abstractmethod
    def when(self, item: str) -> float:
        """Return the delay in seconds for item and record one more requeue."""
        pass

    @abstractmethod
    def forget(self, item: str) -> None:
        pass

    @abstractmethod
    def num_requeues(self, item: str) -> int:
        pass


class ItemExponentialFailureRateLimiter(RateLimiter):
    """Per-item exponential backoff: base_delay * 2**failures, capped at max_delay."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._failures: Dict[str, int] = {}

    def when(self, item: str) -> float:
        failures = self._failures.get(item, 0)
        self._failures[item] = failures + 1
        # Avoid float overflow for very long failure streaks
        if failures > 62:
            return self._max_delay
        return min(self._base_delay * (2**failures), self._max_delay)

    def forget(self, item: str) -> None:
        self._failures.pop(item, None)

    def num_requeues(self, item: str) -> int:
        return self._failures.get(item, 0)


class BucketRateLimiter(RateLimiter):
    """Overall token bucket shared by every item (qps refill, burst capacity)."""

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._qps = qps
        self._burst = float(burst)
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()

    def when(self, item: str) -> float:
        now = self._clock()
        self._tokens = min(self._burst, self._tokens + (now - self._last) * self._qps)
        self._last = now
        self._tokens -= 1.0
        if self._tokens >= 0:
            return 0.0
        return -self._tokens / self._qps

    def forget(self, item: str) -> None:
        pass

    def num_requeues(self, item: str) -> int:
        return 0


class MaxOfRateLimiter(RateLimiter):
    """Combine rate limiters; the longest delay wins."""

    def __init__(self, *limiters: RateLimiter):
        if not limiters:
            raise ValueError("MaxOfRateLimiter needs at least one rate limiter")
        self._limiters = limiters

    def when(self, item: str) -> float:
        return max(limiter.when(item) for limiter in self._limiters)

    def forget(self, item: str) -> None:
        for limiter in self._limiters:
            limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return max(limiter.num_requeues(item) for limiter in self._limiters)


def default_controller_rate_limiter() -> RateLimiter:
    """Per-item exponential backoff (5ms to 1000s) bounded by a 10 qps / 100 burst bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(0.005, 1000.0),
        BucketRateLimiter(qps=10.0, burst=100),
    )


# =============================================================================
# Reconciliation Queue
# =============================================================================

_QUEUED = "queued"
_PROCESSING = "processing"
_PROCESSING_DIRTY = "processing-dirty"


class RateLimitingQueue:
    """Deduplicating, rate-limited work queue keyed by node identity.

    Every key is in one of four states: absent, queued, processing or
    processing-dirty. A key is handed to at most one get() caller at a time;
    adding a key that is being processed marks it dirty so done() puts it
    back in the queue. Delayed keys wait in a heap and are promoted by get()
    once due.
    """

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock
        self._cond = threading.Condition()
        self._ready: Deque[str] = deque()
        self._states: Dict[str, str] = {}
        self._waiting: List[Tuple[float, int, str]] = []
        self._waiting_ready_at: Dict[str, float] = {}
        self._sequence = 0
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._ready)

    def _add_locked(self, item: str) -> None:
        state = self._states.get(item)
        if state is None:
            self._states[item] = _QUEUED
            self._ready.append(item)
            self._cond.notify()
        elif state == _PROCESSING:
            self._states[item] = _PROCESSING_DIRTY

    def add(self, item: str) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(item)

    def add_after(self, item: str, delay: float) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(item)
                return

            ready_at = self._clock() + delay
            current = self._waiting_ready_at.get(item)
            if current is not None and current <= ready_at:
                return
            self._waiting_ready_at[item] = ready_at
            self._sequence += 1
            heapq.heappush(self._waiting, (ready_at, self._sequence, item))
            self._cond.notify_all()

    def add_rate_limited(self, item: str) -> None:
        with self._cond:
            delay = self._rate_limiter.when(item)
        self.add_after(item, delay)

    def forget(self, item: str) -> None:
        with self._cond:
            self._rate_limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        with self._cond:
            return self._rate_limiter.num_requeues(item)

    def _promote_due_locked(self) -> Optional[float]:
        """Move due delayed keys to the ready queue; return seconds to the next one."""
        now = self._clock()
        while self._waiting:
            ready_at, _, item = self._waiting[0]
            if self._waiting_ready_at.get(item) != ready_at:
                heapq.heappop(self._waiting)
                continue
            if ready_at > now:
                return ready_at - now
            heapq.heappop(self._waiting)
            del self._waiting_ready_at[item]
            self._add_locked(item)
        return None

    def get(self) -> Tuple[Optional[str], bool]:
        """Block until a key is ready or the queue shuts down.

        Returns (key, False), or (None, True) once shut down.
        """
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                next_due = self._promote_due_locked()
                if self._ready:
                    item = self._ready.popleft()
                    self._states[item] = _PROCESSING
                    return item, False
                self._cond.wait(timeout=next_due)

    def done(self, item: str) -> None:
        with self._cond:
            state = self._states.get(item)
            if state == _PROCESSING:
                del self._states[item]
            elif state == _PROCESSING_DIRTY:
                if self._shutting_down:
                    del self._states[item]
                    return
                self._states[item] = _QUEUED
                self._ready.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down


# =============================================================================
# Change Filter
# =============================================================================


def needs_resync(old: NodeSnapshot, new: NodeSnapshot) -> bool:
    """Decide whether a node update is worth a reconciliation.

    An unchanged revision marker means a forced resync from the watch
    source. Otherwise only address types present on both sides are
    compared, as unordered sets of values.
    """
    if old.resource_version == new.resource_version:
        return True

    old_addresses = old.addresses_by_type()
    new_addresses = new.addresses_by_type()
    for address_type in old_addresses.keys() & new_addresses.keys():
        if old_addresses[address_type] != new_addresses[address_type]:
            return True
    return False


class NodeChangeFilter:
    """Turn node lifecycle events into reconciliation requests."""

    def __init__(self, queue: RateLimitingQueue):
        self._queue = queue

    def on_added(self, snapshot: NodeSnapshot) -> None:
        logger.debug(f"Node '{snapshot.name}' added")
        self._queue.add(snapshot.name)

    def on_updated(self, old: NodeSnapshot, new: NodeSnapshot) -> None:
        if not needs_resync(old, new):
            logger.debug(f"Ignoring update of node '{new.name}' (no address change)")
            return
        logger.debug(f"Node '{new.name}' updated (revision {new.resource_version})")
        self._queue.add(new.name)

    def on_removed(self, identity: str) -> None:
        logger.debug(f"Node '{identity}' removed")
        self._queue.add(identity)

    def handle(self, event: ChangeEvent) -> None:
        if isinstance(event, NodeAdded):
            self.on_added(event.snapshot)
        elif isinstance(event, NodeUpdated):
            self.on_updated(event.old, event.new)
        elif isinstance(event, NodeRemoved):
            self.on_removed(event.name)
        else:
            raise TypeError(f"Unsupported event type: {type(event)!r}")

    def consume(self, events: "Queue[ChangeEvent]", stop_event: threading.Event) -> None:
        """Drain the event channel until stop_event is set."""
        while not stop_event.is_set():
            try:
                event = events.get(timeout=0.5)
            except Empty:
                continue
            try:
                self.handle(event)
            except Exception:
                logger.exception(f"Failed to handle node event {event!r}")


# =============================================================================
# Node Watch Source Interface and Implementations
# =============================================================================


class NodeWatchSource(ABC):
    """Abstract source of node lifecycle events."""

    @abstractmethod
    def run(self, events: "Queue[ChangeEvent]", stop_event: threading.Event) -> None:
        """Publish change events until stop_event is set. Blocks."""
        pass

    @abstractmethod
    def has_synced(self) -> bool:
        """Return True once the initial full listing has been delivered."""
        pass

    @abstractmethod
    def get(self, identity: str) -> Optional[NodeSnapshot]:
        """Return the latest known snapshot of a node, None if it is gone."""
        pass

    def has_failed(self) -> bool:
        """Return True once run() gave up for good, e.g. on denied access."""
        return False

    def stop(self) -> None:
        """Interrupt a blocking run() as soon as possible."""
        pass


class KubernetesNodeWatcher(NodeWatchSource):
    """List-then-watch Kubernetes nodes and keep an index of their snapshots.

    The index is written only by the thread running run() and read under a
    lock by reconciliation workers. After a 410 Gone the nodes are listed
    again and every known node is re-published as an update, which carries
    an unchanged revision marker when the node itself did not change.
    """

    def __init__(
        self,
        core_api: Any,
        *,
        resync_period: float = 0.0,
        watch_timeout_seconds: int = 300,
    ):
        self._core_api = core_api
        self._resync_period = resync_period
        self._watch_timeout_seconds = watch_timeout_seconds
        self._index: Dict[str, NodeSnapshot] = {}
        self._lock = threading.Lock()
        self._synced = threading.Event()
        self._failed = threading.Event()
        self._stop = threading.Event()
        self._active_watch: Optional[watch.Watch] = None
        self._resource_version: Optional[str] = None
        self._next_resync = time.monotonic() + resync_period

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def has_failed(self) -> bool:
        return self._failed.is_set()

    def get(self, identity: str) -> Optional[NodeSnapshot]:
        with self._lock:
            return self._index.get(identity)

    def stop(self) -> None:
        self._stop.set()
        with self._lock:
            active_watch = self._active_watch
        if active_watch is not None:
            active_watch.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._stop.is_set()

    def relist(self, events: "Queue[ChangeEvent]") -> None:
        """List all nodes, replace the index and publish the differences."""
        result = self._core_api.list_node()
        self._resource_version = getattr(
            getattr(result, "metadata", None), "resource_version", None
        )

        listed: Dict[str, NodeSnapshot] = {}
        for item in getattr(result, "items", None) or []:
            snapshot = node_snapshot_from_object(item)
            if snapshot.name:
                listed[snapshot.name] = snapshot

        with self._lock:
            previous = self._index
            self._index = dict(listed)

        for name, snapshot in listed.items():
            old = previous.get(name)
            events.put(NodeAdded(snapshot) if old is None else NodeUpdated(old, snapshot))
        for name in sorted(previous.keys() - listed.keys()):
            events.put(NodeRemoved(name))

        logger.info(f"Listed {len(listed)} node(s) at resourceVersion {self._resource_version}")

    def handle_watch_event(self, event_type: str, obj: Any, events: "Queue[ChangeEvent]") -> None:
        snapshot = node_snapshot_from_object(obj)
        if snapshot.resource_version:
            self._resource_version = snapshot.resource_version

        if event_type == "BOOKMARK" or not snapshot.name:
            return
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            logger.warning(f"Ignoring unexpected watch event type '{event_type}'")
            return

        with self._lock:
            old = self._index.get(snapshot.name)
            if event_type == "DELETED":
                self._index.pop(snapshot.name, None)
            else:
                self._index[snapshot.name] = snapshot

        if event_type == "DELETED":
            events.put(NodeRemoved(snapshot.name))
        elif old is None:
            events.put(NodeAdded(snapshot))
        else:
            events.put(NodeUpdated(old, snapshot))

    def resync(self, events: "Queue[ChangeEvent]") -> None:
        """Re-publish every indexed node with an unchanged revision marker."""
        with self._lock:
            snapshots = list(self._index.values())
        logger.debug(f"Periodic resync of {len(snapshots)} node(s)")
        for snapshot in snapshots:
            events.put(NodeUpdated(snapshot, snapshot))

    def _maybe_resync(self, events: "Queue[ChangeEvent]") -> None:
        if self._resync_period <= 0:
            return
        now = time.monotonic()
        if now >= self._next_resync:
            self.resync(events)
            self._next_resync = now + self._resync_period

    def _next_watch_timeout(self) -> int:
        if self._resync_period <= 0:
            return self._watch_timeout_seconds
        remaining = max(1.0, self._next_resync - time.monotonic())
        return int(min(self._watch_timeout_seconds, remaining))

    def run(self, events: "Queue[ChangeEvent]", stop_event: threading.Event) -> None:
        backoff_seconds = 1
        while not self._should_stop(stop_event):
            try:
                self.relist(events)
                self._synced.set()
                break
            except ApiException as e:
                if e.status in {401, 403}:
                    logger.error(
                        f"Kubernetes API access denied while listing nodes (status={e.status}). "
                        "Check controller RBAC and service account permissions."
                    )
                    self._failed.set()
                    return
                logger.error(f"Initial node list failed: {e}")
            except Exception as e:
                logger.error(f"Unexpected error during initial node list: {e}", exc_info=True)

            stop_event.wait(backoff_seconds * (0.5 + random.random()))
            backoff_seconds = min(backoff_seconds * 2, 30)

        backoff_seconds = 1
        while not self._should_stop(stop_event):
            watcher = watch.Watch()
            with self._lock:
                self._active_watch = watcher
            try:
                stream = watcher.stream(
                    self._core_api.list_node,
                    resource_version=self._resource_version,
                    timeout_seconds=self._next_watch_timeout(),
                )
                for event in stream:
                    if self._should_stop(stop_event):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    self.handle_watch_event(str(event.get("type", "")), obj, events)
                    self._maybe_resync(events)

                self._maybe_resync(events)
                backoff_seconds = 1
            except ApiException as e:
                if e.status == 410:
                    logger.warning("Node watch resource version expired, re-listing")
                    try:
                        self.relist(events)
                        continue
                    except ApiException as relist_error:
                        logger.error(f"Failed to re-list nodes after 410: {relist_error}")
                        self._resource_version = None
                elif e.status in {401, 403}:
                    logger.error(
                        f"Kubernetes API watch denied (status={e.status}). "
                        "Check controller RBAC and service account permissions."
                    )
                    self._failed.set()
                    return
                else:
                    logger.error(f"Kubernetes API watch error: {e}")

                stop_event.wait(backoff_seconds * (0.5 + random.random()))
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception as e:
                logger.error(f"Unexpected node watch error: {e}", exc_info=True)
                stop_event.wait(backoff_seconds * (0.5 + random.random()))
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._lock:
                    if self._active_watch is watcher:
                        self._active_watch = None

        logger.info("Node watch stopped")


def load_kubernetes_config() -> None:
    """Load in-cluster credentials, falling back to the local kubeconfig."""
    try:
        kube_config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes configuration")
    except kube_config.ConfigException:
        kube_config.load_kube_config()
        logger.info("Using kubeconfig Kubernetes configuration")


# =============================================================================
# Provisioner Interfaces
# =============================================================================


class ReservedIPProvisioner(ABC):
    """Attaches a reserved public IP to a node."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def assign_reserved_ip(self, identity: str, addresses: Tuple[NodeAddress, ...]) -> None:
        """Ensure the node holds a reserved IP. Raises on failure."""
        pass


class ReverseDNSProvisioner(ABC):
    """Maintains the reverse DNS record of a node's public IP."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def set_reverse_record(
        self, identity: str, addresses: Tuple[NodeAddress, ...], domain_suffix: str
    ) -> None:
        """Ensure the PTR record of the node's public IP. Raises on failure."""
        pass


class DatabaseACLProvisioner(ABC):
    """Maintains database ACL rules admitting a node."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def update_database_acls(
        self, identity: str, addresses: Tuple[NodeAddress, ...], database_ids: Tuple[str, ...]
    ) -> None:
        """Ensure the ACLs of every database admit the node. Raises on failure."""
        pass


# =============================================================================
# Scaleway Implementations
# =============================================================================


class ScalewayAPI:
    """Thin Scaleway REST client shared by the provisioners."""

    def __init__(
        self,
        secret_key: str,
        *,
        zone: str = "fr-par-1",
        region: str = "fr-par",
        url: str = "https://api.scaleway.com",
        timeout: float = 10.0,
    ):
        self.zone = zone
        self.region = region
        self._url = url.rstrip("/")
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"X-Auth-Token": secret_key})

    def instance_path(self, suffix: str) -> str:
        return f"/instance/v1/zones/{self.zone}/{suffix.lstrip('/')}"

    def rdb_path(self, suffix: str) -> str:
        return f"/rdb/v1/regions/{self.region}/{suffix.lstrip('/')}"

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            response = self._session.request(
                method,
                f"{self._url}{path}",
                params=params,
                json=body,
                timeout=self._timeout,
            )
            response.raise_for_status()
            if not response.content:
                return {}
            data = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise ProvisioningError(f"{method} {path} failed: {e}") from e

        if not isinstance(data, dict):
            raise ProvisioningError(
                f"{method} {path}: unexpected response type {type(data).__name__}"
            )
        return data

    def test_connection(self) -> bool:
        try:
            self.request("GET", self.instance_path("ips"), params={"per_page": 1})
            logger.info("Scaleway API connection successful")
            return True
        except ProvisioningError as e:
            logger.error(f"Failed to connect to Scaleway API: {e}")
            return False

    def list_ips(self, per_page: int = 50) -> List[Dict[str, Any]]:
        """Return every flexible IP of the zone."""
        ips: List[Dict[str, Any]] = []
        page = 1
        while True:
            data = self.request(
                "GET", self.instance_path("ips"), params={"page": page, "per_page": per_page}
            )
            batch = [ip for ip in data.get("ips") or [] if isinstance(ip, dict)]
            ips.extend(batch)
            if len(batch) < per_page:
                return ips
            page += 1


class ScalewayReservedIPProvisioner(ReservedIPProvisioner):
    """Attach a flexible IP from the pool to the instance backing a node.

    Kapsule names instances after their node, so the server is looked up by
    name. A node already holding a pool IP is left untouched.
    """

    def __init__(self, api: ScalewayAPI, reserved_ips: Iterable[str]):
        self._api = api
        self._pool = tuple(reserved_ips)

    @property
    def name(self) -> str:
        return "Scaleway reserved IP"

    def _pool_ips(self) -> List[Dict[str, Any]]:
        ips = []
        for ip_id in self._pool:
            data = self._api.request("GET", self._api.instance_path(f"ips/{ip_id}"))
            ip = data.get("ip")
            if not isinstance(ip, dict):
                raise ProvisioningError(f"Reserved IP {ip_id} not found")
            ips.append(ip)
        return ips

    def _find_server_id(self, identity: str) -> str:
        data = self._api.request(
            "GET", self._api.instance_path("servers"), params={"name": identity}
        )
        # The name filter matches substrings
        for server in data.get("servers") or []:
            if isinstance(server, dict) and server.get("name") == identity:
                return str(server["id"])
        raise ProvisioningError(f"No instance named '{identity}' in zone {self._api.zone}")

    def assign_reserved_ip(self, identity: str, addresses: Tuple[NodeAddress, ...]) -> None:
        if not self._pool:
            return
        if not addresses:
            logger.debug(f"Node '{identity}' is gone, nothing to assign")
            return

        pool_ips = self._pool_ips()
        for ip in pool_ips:
            server = ip.get("server") or {}
            if server.get("name") == identity:
                logger.debug(f"Node '{identity}' already holds reserved IP {ip.get('address')}")
                return

        free = [ip for ip in pool_ips if not ip.get("server")]
        if not free:
            raise ProvisioningError(f"No free reserved IP left in pool for node '{identity}'")

        server_id = self._find_server_id(identity)
        chosen = free[0]
        self._api.request(
            "PATCH", self._api.instance_path(f"ips/{chosen['id']}"), body={"server": server_id}
        )
        logger.info(f"Attached reserved IP {chosen.get('address')} to node '{identity}'")


class ScalewayReverseDNSProvisioner(ReverseDNSProvisioner):
    """Set the reverse of every flexible IP matching a node's ExternalIP."""

    def __init__(self, api: ScalewayAPI):
        self._api = api

    @property
    def name(self) -> str:
        return "Scaleway reverse DNS"

    def set_reverse_record(
        self, identity: str, addresses: Tuple[NodeAddress, ...], domain_suffix: str
    ) -> None:
        domain_suffix = domain_suffix.strip().strip(".")
        if not domain_suffix:
            return

        external_ips = {a.address for a in addresses if a.type == EXTERNAL_IP}
        if not external_ips:
            logger.debug(f"Node '{identity}' has no external IP, skipping reverse DNS")
            return

        reverse = f"{identity}.{domain_suffix}"
        for ip in self._api.list_ips():
            if ip.get("address") not in external_ips:
                continue
            if ip.get("reverse") == reverse:
                continue
            self._api.request(
                "PATCH", self._api.instance_path(f"ips/{ip['id']}"), body={"reverse": reverse}
            )
            logger.info(f"Set reverse DNS {ip.get('address')} -> {reverse}")


class ScalewayDatabaseACLProvisioner(DatabaseACLProvisioner):
    """Keep one ACL rule per node public IP on every managed database.

    Rules owned by a node carry the description k8s-node:<node>; stale rules
    of that node are removed, missing ones added. A removed node ends up with
    no rules at all.
    """

    def __init__(self, api: ScalewayAPI):
        self._api = api

    @property
    def name(self) -> str:
        return "Scaleway database ACL"

    def _sync_database(self, database_id: str, identity: str, desired: Set[str]) -> None:
        path = self._api.rdb_path(f"instances/{database_id}/acls")
        description = f"{ACL_DESCRIPTION_PREFIX}{identity}"

        rules = self._api.request("GET", path).get("rules") or []
        existing = {
            str(rule.get("ip"))
            for rule in rules
            if isinstance(rule, dict) and rule.get("description") == description
        }

        stale = sorted(existing - desired)
        missing = sorted(desired - existing)
        if stale:
            self._api.request("DELETE", path, body={"acl_rule_ips": stale})
            logger.info(f"Removed ACL rule(s) {', '.join(stale)} of node '{identity}' from {database_id}")
        if missing:
            self._api.request(
                "POST",
                path,
                body={"rules": [{"ip": ip, "description": description} for ip in missing]},
            )
            logger.info(f"Added ACL rule(s) {', '.join(missing)} for node '{identity}' to {database_id}")

    def update_database_acls(
        self, identity: str, addresses: Tuple[NodeAddress, ...], database_ids: Tuple[str, ...]
    ) -> None:
        if not database_ids:
            return

        try:
            desired = {_ip_to_cidr(a.address) for a in addresses if a.type == EXTERNAL_IP}
        except ValueError as e:
            raise ProvisioningError(f"Invalid external IP of node '{identity}': {e}") from e
        errors: List[str] = []
        for database_id in database_ids:
            try:
                self._sync_database(database_id, identity, desired)
            except ProvisioningError as e:
                logger.warning(f"ACL sync of database {database_id} failed for node '{identity}': {e}")
                errors.append(f"{database_id}: {e}")

        if errors:
            raise ProvisioningError("; ".join(errors))


# =============================================================================
# Sync Orchestrator
# =============================================================================


class NodeSyncer:
    """Reconcile the three external resources of a node.

    Targets run in a fixed order and each exactly once per pass. A failing
    target never prevents the following ones from running.
    """

    def __init__(
        self,
        *,
        lookup: Callable[[str], Optional[NodeSnapshot]],
        reserved_ip_provisioner: ReservedIPProvisioner,
        reverse_dns_provisioner: ReverseDNSProvisioner,
        acl_provisioner: DatabaseACLProvisioner,
        settings: ControllerSettings,
    ):
        self.lookup = lookup
        self.reserved_ip_provisioner = reserved_ip_provisioner
        self.reverse_dns_provisioner = reverse_dns_provisioner
        self.acl_provisioner = acl_provisioner
        self.settings = settings

    def reconcile(self, identity: str) -> SyncOutcome:
        snapshot = self.lookup(identity)
        addresses = snapshot.addresses if snapshot is not None else ()

        steps: List[Tuple[SyncTarget, Callable[[], None]]] = [
            (
                SyncTarget.RESERVED_IP,
                lambda: self.reserved_ip_provisioner.assign_reserved_ip(identity, addresses),
            ),
            (
                SyncTarget.REVERSE_DNS,
                lambda: self.reverse_dns_provisioner.set_reverse_record(
                    identity, addresses, self.settings.reverse_ip_domain
                ),
            ),
            (
                SyncTarget.DATABASE_ACL,
                lambda: self.acl_provisioner.update_database_acls(
                    identity, addresses, self.settings.database_ids
                ),
            ),
        ]

        failures: List[TargetFailure] = []
        for target, step in steps:
            try:
                step()
            except Exception as e:
                logger.error(f"Failed to sync {target.value} for node {identity}: {e}")
                failures.append(TargetFailure(target=target, error=str(e) or type(e).__name__))

        return SyncOutcome(failures=tuple(failures))


# =============================================================================
# Worker Loop
# =============================================================================


class Worker(threading.Thread):
    """Pull node identities from the queue and reconcile them until shutdown."""

    def __init__(
        self,
        queue: RateLimitingQueue,
        syncer: NodeSyncer,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        name: str = "worker",
        crash_delay: float = 1.0,
    ):
        super().__init__(name=name, daemon=True)
        self._queue = queue
        self._syncer = syncer
        self._max_retries = max_retries
        self._crash_delay = crash_delay

    def process_next_item(self) -> bool:
        """Process one key. Returns False once the queue is shut down."""
        key, shutdown = self._queue.get()
        if shutdown or key is None:
            return False

        try:
            outcome = self._syncer.reconcile(key)
            self._handle_outcome(key, outcome)
        finally:
            self._queue.done(key)
        return True

    def _handle_outcome(self, key: str, outcome: SyncOutcome) -> None:
        if outcome.success:
            self._queue.forget(key)
            logger.debug(f"Node '{key}' in sync")
            return

        retries = self._queue.num_requeues(key)
        if retries < self._max_retries:
            logger.info(f"Retrying node '{key}' (attempt {retries + 1}/{self._max_retries}): {outcome}")
            self._queue.add_rate_limited(key)
            return

        self._queue.forget(key)
        logger.error(f"Too many retries for node '{key}', giving up: {outcome}")

    def run(self) -> None:
        while True:
            try:
                if not self.process_next_item():
                    break
            except Exception:
                logger.exception(f"{self.name} crashed, resuming in {self._crash_delay}s")
                time.sleep(self._crash_delay)
        logger.debug(f"{self.name} stopped")


# =============================================================================
# Controller Lifecycle
# =============================================================================


def wait_for_cache_sync(
    stop_event: threading.Event,
    has_synced: Callable[[], bool],
    *,
    has_failed: Optional[Callable[[], bool]] = None,
    timeout: Optional[float] = None,
    poll_interval: float = 0.1,
) -> bool:
    """Wait until has_synced() is true. False on stop, failure or timeout."""
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        if has_synced():
            return True
        if stop_event.is_set():
            return False
        if has_failed is not None and has_failed():
            return False
        if deadline is not None and time.monotonic() >= deadline:
            return False
        stop_event.wait(poll_interval)


class NodeSyncController:
    """Wire watch source, change filter, queue and workers together."""

    def __init__(
        self,
        *,
        watch_source: NodeWatchSource,
        syncer: NodeSyncer,
        queue: Optional[RateLimitingQueue] = None,
        workers: int = DEFAULT_WORKERS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        cache_sync_timeout: Optional[float] = DEFAULT_CACHE_SYNC_TIMEOUT_SECONDS,
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.watch_source = watch_source
        self.syncer = syncer
        self.queue = queue if queue is not None else RateLimitingQueue()
        self.change_filter = NodeChangeFilter(self.queue)
        self.workers = workers
        self.max_retries = max_retries
        self.cache_sync_timeout = cache_sync_timeout
        self.state = ControllerState.INITIALIZING
        self._events: "Queue[ChangeEvent]" = Queue()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._workers: List[Worker] = []

    def _start_thread(self, target: Callable[..., None], name: str, *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _stop_sources(self) -> None:
        self._stop.set()
        self.queue.shut_down()
        self.watch_source.stop()

    def _join_threads(self, timeout: float = 5.0) -> None:
        for worker in self._workers:
            worker.join()
        for thread in self._threads:
            thread.join(timeout)

    def run(self, stop_event: threading.Event) -> None:
        """Run until stop_event is set. Raises InitializationError on start-up failure."""
        self.state = ControllerState.INITIALIZING
        logger.info("Starting node watch")
        self._start_thread(self.watch_source.run, "node-watch", self._events, self._stop)
        self._start_thread(self.change_filter.consume, "change-filter", self._events, self._stop)

        if not wait_for_cache_sync(
            stop_event,
            self.watch_source.has_synced,
            has_failed=self.watch_source.has_failed,
            timeout=self.cache_sync_timeout,
        ):
            failed = self.watch_source.has_failed()
            self._stop_sources()
            self._join_threads()
            self.state = ControllerState.STOPPED
            if failed:
                raise InitializationError("node watch failed before caches synced")
            raise InitializationError("timed out waiting for caches to sync")

        logger.info(f"Node cache synced, starting {self.workers} worker(s)")
        for index in range(self.workers):
            worker = Worker(
                self.queue, self.syncer, max_retries=self.max_retries, name=f"worker-{index}"
            )
            worker.start()
            self._workers.append(worker)
        self.state = ControllerState.RUNNING

        stop_event.wait()

        self.state = ControllerState.SHUTTING_DOWN
        logger.info("Shutting down controller")
        self._stop_sources()
        self._join_threads()
        self.state = ControllerState.STOPPED
        logger.info("Controller stopped")


# =============================================================================
# Main
# =============================================================================


def validate_config(settings: ControllerSettings, secret_key: str = SCW_SECRET_KEY) -> bool:
    """Validate configuration."""
    errors = []

    if settings.workers < 1:
        errors.append(f"WORKERS must be >= 1, got {settings.workers}")
    if settings.max_retries < 0:
        errors.append(f"MAX_RETRIES must be >= 0, got {settings.max_retries}")

    if settings.features_enabled:
        if not secret_key:
            errors.append("SCW_SECRET_KEY is required when a sync feature is enabled")
    else:
        logger.warning(
            "⚠️  REVERSE_IP_DOMAIN, DATABASE_IDS and RESERVED_IPS_POOL are all unset. "
            "Nodes will be watched but nothing is synchronized."
        )

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def build_syncer(
    settings: ControllerSettings,
    api: ScalewayAPI,
    lookup: Callable[[str], Optional[NodeSnapshot]],
) -> NodeSyncer:
    return NodeSyncer(
        lookup=lookup,
        reserved_ip_provisioner=ScalewayReservedIPProvisioner(api, settings.reserved_ips),
        reverse_dns_provisioner=ScalewayReverseDNSProvisioner(api),
        acl_provisioner=ScalewayDatabaseACLProvisioner(api),
        settings=settings,
    )


def main():
    """Main entry point."""
    try:
        settings = load_settings()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    if not validate_config(settings):
        logger.error("Configuration validation failed")
        sys.exit(1)

    logger.info(f"node-sync: kubernetes nodes -> scaleway ({SCW_DEFAULT_ZONE}, {SCW_DEFAULT_REGION})")
    logger.info(f"Reverse DNS domain: {settings.reverse_ip_domain or 'disabled'}")
    logger.info(f"Databases: {', '.join(settings.database_ids) or 'disabled'}")
    logger.info(f"Reserved IP pool: {', '.join(settings.reserved_ips) or 'disabled'}")
    logger.info(f"Workers: {settings.workers}, max retries: {settings.max_retries}")

    api = ScalewayAPI(
        SCW_SECRET_KEY, zone=SCW_DEFAULT_ZONE, region=SCW_DEFAULT_REGION, url=SCW_API_URL
    )
    if settings.features_enabled and not api.test_connection():
        logger.error("Cannot connect to Scaleway API. Exiting.")
        sys.exit(1)

    load_kubernetes_config()
    watcher = KubernetesNodeWatcher(
        kube_client.CoreV1Api(), resync_period=settings.resync_period
    )
    controller = NodeSyncController(
        watch_source=watcher,
        syncer=build_syncer(settings, api, watcher.get),
        workers=settings.workers,
        max_retries=settings.max_retries,
        cache_sync_timeout=settings.cache_sync_timeout or None,
    )

    stop_event = threading.Event()

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        controller.run(stop_event)
    except InitializationError as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
