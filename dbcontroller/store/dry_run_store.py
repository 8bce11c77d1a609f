"""
The DryRunStore implements the ResourceStoreBase interface but does not
actually interact with the cluster and instead holds the state of the cluster in
a local map. It models the parts of the API server the controller relies on:
resourceVersion concurrency, generation bumps, finalizers and owner reference
garbage collection.
"""

# Standard
from datetime import datetime, timezone
from queue import Empty, Queue
from threading import RLock
from typing import Dict, Iterator, List, Optional, Tuple
import copy
import time
import uuid

# First Party
import alog

# Local
from .. import constants
from ..exceptions import ConflictError, ResourceNotFoundError, StoreUnavailableError
from ..managed_object import ManagedObject, ResourceKey
from .base import ResourceStoreBase
from .kube_event import KubeEventType, KubeWatchEvent
from .owner_references import is_owned_by, set_owner_reference

log = alog.use_channel("DRY-RUN")

# Sentinel put on a watch queue to end the stream
_STOP_WATCH = object()

# Key used to index stored objects
_StoreKey = Tuple[str, str, str, str]

# Number of changes kept for watches that start from a resourceVersion
DEFAULT_HISTORY_LIMIT = 1000


class DryRunStore(ResourceStoreBase):
    """
    Resource store which doesn't actually talk to a cluster!
    """

    def __init__(
        self,
        resources: Optional[List[dict]] = None,
        auto_ready: bool = False,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        """Construct with an optional set of initial resources

        Args:
            resources:  Optional[List[dict]]
                Manifests to load as if a user had applied them
            auto_ready:  bool
                If True, StatefulSets and PersistentVolumeClaims report ready
                as soon as they are applied
            history_limit:  int
                Number of changes kept for watches that start from a
                resourceVersion
        """
        self.auto_ready = auto_ready
        self.history_limit = history_limit

        self._lock = RLock()
        self._cluster_content: Dict[_StoreKey, dict] = {}
        self._resource_version = 0

        # Recent changes so that watches can start from a resourceVersion. Any
        # version at or below _compacted_version is no longer in the log.
        self._change_log: List[Tuple[int, KubeWatchEvent]] = []
        self._compacted_version = 0
        self._watch_queues: List[Tuple[str, str, Optional[str], Queue]] = []

        # Recordings for inspection
        self.events: List[dict] = []
        self.status_history: Dict[ResourceKey, List[dict]] = {}
        self.writes: List[Tuple[str, str]] = []

        # Fault injection: method name -> list of errors to raise in order
        self._faults: Dict[str, List[Exception]] = {}
        # Simulated latency: method name -> seconds per call
        self._latency: Dict[str, float] = {}

        for resource in resources or []:
            self.put_resource(resource)

    ## Interface ###############################################################

    def get(
        self, key: ResourceKey, timeout: Optional[float] = None
    ) -> Optional[ManagedObject]:
        self._maybe_raise("get", timeout)
        log.debug2("DRY RUN get [%s]", key)
        current = self._get_manifest(
            constants.DATABASE_API_VERSION,
            constants.DATABASE_KIND,
            key.namespace,
            key.name,
        )
        if current is None:
            return None
        return ManagedObject(current)

    def list_children(
        self, owner: ManagedObject, timeout: Optional[float] = None
    ) -> List[dict]:
        self._maybe_raise("list_children", timeout)
        log.debug2("DRY RUN list_children of [%s]", owner.key)
        children = []
        with self._lock:
            for (api_version, kind, namespace, _), manifest in sorted(
                self._cluster_content.items()
            ):
                if (api_version, kind) not in constants.CHILD_RESOURCE_TYPES:
                    continue
                if namespace != owner.namespace:
                    continue
                labels = manifest["metadata"].get("labels") or {}
                if labels.get(constants.INSTANCE_LABEL) != owner.name:
                    continue
                if not is_owned_by(manifest, owner.uid):
                    continue
                children.append(copy.deepcopy(manifest))
        return children

    def apply_child(
        self, owner: ManagedObject, manifest: dict, timeout: Optional[float] = None
    ) -> dict:
        self._maybe_raise("apply_child", timeout)
        manifest = copy.deepcopy(manifest)
        set_owner_reference(owner.definition, manifest)
        log.debug2(
            "DRY RUN apply [%s/%s] for [%s]",
            manifest["kind"],
            manifest["metadata"]["name"],
            owner.key,
        )
        with self._lock:
            self.writes.append(("apply", self._describe(manifest)))
            current = self._get_manifest(*self._store_key(manifest))
            if current is not None:
                # Server side apply keeps fields the manifest does not own
                manifest["metadata"].pop("resourceVersion", None)
                if "status" in current:
                    manifest["status"] = current["status"]
            applied = self._put(manifest)
            if self.auto_ready:
                applied = self._make_ready(applied)
            return copy.deepcopy(applied)

    def delete_child(self, manifest: dict, timeout: Optional[float] = None) -> bool:
        self._maybe_raise("delete_child", timeout)
        with self._lock:
            store_key = self._store_key(manifest)
            if store_key not in self._cluster_content:
                log.debug2("DRY RUN delete of missing [%s]", store_key)
                return False
            self.writes.append(("delete", self._describe(manifest)))
            self._remove(store_key)
            return True

    def update_status(
        self,
        key: ResourceKey,
        status: dict,
        resource_version: str,
        timeout: Optional[float] = None,
    ) -> str:
        self._maybe_raise("update_status", timeout)
        log.debug2("DRY RUN update_status of [%s]: %s", key, status)
        with self._lock:
            current = self._get_for_write(key, resource_version)
            self.writes.append(("status", str(key)))
            current["status"] = copy.deepcopy(status)
            updated = self._put(current, bump_generation=False)
            self.status_history.setdefault(key, []).append(copy.deepcopy(status))
            return updated["metadata"]["resourceVersion"]

    def update_finalizers(
        self,
        key: ResourceKey,
        finalizers: List[str],
        resource_version: str,
        timeout: Optional[float] = None,
    ) -> Optional[str]:
        self._maybe_raise("update_finalizers", timeout)
        log.debug2("DRY RUN update_finalizers of [%s]: %s", key, finalizers)
        with self._lock:
            current = self._get_for_write(key, resource_version)
            self.writes.append(("finalizers", str(key)))
            current["metadata"]["finalizers"] = list(finalizers)
            if current["metadata"].get("deletionTimestamp") and not finalizers:
                self._remove(self._store_key(current))
                return None
            updated = self._put(current, bump_generation=False)
            return updated["metadata"]["resourceVersion"]

    def create_event(
        self,
        owner: ManagedObject,
        event_type: str,
        reason: str,
        message: str,
        timeout: Optional[float] = None,
    ):
        self._maybe_raise("create_event", timeout)
        log.debug2("DRY RUN event on [%s] %s: %s", owner.key, reason, message)
        with self._lock:
            self.events.append(
                {
                    "involvedObject": {
                        "apiVersion": owner.api_version,
                        "kind": owner.kind,
                        "name": owner.name,
                        "namespace": owner.namespace,
                        "uid": owner.uid,
                    },
                    "type": event_type,
                    "reason": reason,
                    "message": message,
                    "source": {"component": constants.CONTROLLER_NAME},
                }
            )

    def list_objects(
        self,
        kind: str,
        api_version: str,
        namespace: Optional[str] = None,
    ) -> Tuple[List[ManagedObject], Optional[str]]:
        self._maybe_raise("list_objects")
        with self._lock:
            objects = [
                ManagedObject(copy.deepcopy(manifest))
                for (obj_api_version, obj_kind, obj_namespace, _), manifest in sorted(
                    self._cluster_content.items()
                )
                if obj_api_version == api_version
                and obj_kind == kind
                and (not namespace or obj_namespace == namespace)
            ]
            return objects, str(self._resource_version)

    def watch_objects(
        self,
        kind: str,
        api_version: str,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> Iterator[KubeWatchEvent]:
        """Watch the DryRunStore for resource changes. Changes made after the
        given resource_version are replayed before any new change. If those
        changes have been compacted away, the current objects are replayed as
        ADDED instead, the same as a relist.
        """
        self._maybe_raise("watch_objects")
        event_queue = Queue()
        watch_entry = (kind, api_version, namespace, event_queue)
        start_version = int(resource_version or 0)
        with self._lock:
            if start_version < self._compacted_version:
                log.debug2("DRY RUN watch from compacted version %s", start_version)
                for _, manifest in sorted(self._cluster_content.items()):
                    event = KubeWatchEvent(
                        type=KubeEventType.ADDED,
                        resource=ManagedObject(copy.deepcopy(manifest)),
                    )
                    if self._matches(event.resource, kind, api_version, namespace):
                        event_queue.put(event)
            else:
                for version, event in self._change_log:
                    if version > start_version and self._matches(
                        event.resource, kind, api_version, namespace
                    ):
                        event_queue.put(event)
            self._watch_queues.append(watch_entry)

        log.debug2("DRY RUN watch of [%s/%s] in [%s]", api_version, kind, namespace)
        try:
            while True:
                try:
                    event = event_queue.get(timeout=0.1)
                except Empty:
                    continue
                if event is _STOP_WATCH:
                    return
                if isinstance(event, Exception):
                    raise event
                log.debug3("Yielding event %s", event)
                yield event
        finally:
            with self._lock:
                if watch_entry in self._watch_queues:
                    self._watch_queues.remove(watch_entry)

    def stop_watches(
        self,
        kind: Optional[str] = None,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
    ):
        with self._lock:
            for watch_kind, watch_api_version, watch_namespace, event_queue in (
                self._watch_queues
            ):
                if (
                    (kind is None or kind == watch_kind)
                    and (api_version is None or api_version == watch_api_version)
                    and (namespace is None or namespace == watch_namespace)
                ):
                    event_queue.put(_STOP_WATCH)

    ## Dry Run Methods #########################################################

    def put_resource(self, manifest: dict) -> dict:
        """Create or update an object the way a user apply would. The status
        subresource, finalizers and deletionTimestamp of an existing object are
        preserved and the generation is bumped when the spec changes.
        """
        manifest = copy.deepcopy(manifest)
        metadata = manifest.setdefault("metadata", {})
        metadata.setdefault("namespace", constants.DEFAULT_NAMESPACE)
        with self._lock:
            current = self._get_manifest(*self._store_key(manifest))
            if current is not None:
                metadata.pop("resourceVersion", None)
                for field in ["finalizers", "deletionTimestamp"]:
                    if field in current["metadata"] and field not in metadata:
                        metadata[field] = current["metadata"][field]
                if "status" in current:
                    manifest["status"] = current["status"]
            return copy.deepcopy(self._put(manifest))

    def delete_resource(self, kind: str, api_version: str, namespace: str, name: str):
        """Request deletion of an object. If it holds finalizers only the
        deletionTimestamp is set, otherwise it is removed along with everything
        it owns.
        """
        with self._lock:
            store_key = (api_version, kind, namespace, name)
            current = self._get_manifest(*store_key)
            if current is None:
                return
            if current["metadata"].get("finalizers"):
                if not current["metadata"].get("deletionTimestamp"):
                    current["metadata"]["deletionTimestamp"] = _timestamp()
                    self._put(current, bump_generation=False)
            else:
                self._remove(store_key)

    def get_resource(
        self, kind: str, api_version: str, namespace: str, name: str
    ) -> Optional[dict]:
        """Get a copy of any stored object"""
        with self._lock:
            return self._get_manifest(api_version, kind, namespace, name)

    def mark_children_ready(self, owner_key: ResourceKey):
        """Simulate the kubelet and volume provisioner bringing up the children
        of the given Database
        """
        with self._lock:
            for (api_version, kind, namespace, name), manifest in list(
                self._cluster_content.items()
            ):
                labels = manifest["metadata"].get("labels") or {}
                if (
                    namespace == owner_key.namespace
                    and labels.get(constants.INSTANCE_LABEL) == owner_key.name
                ):
                    self._make_ready(
                        self._get_manifest(api_version, kind, namespace, name)
                    )

    def mark_children_unready(self, owner_key: ResourceKey):
        """Simulate the workload of the given Database losing its replicas"""
        with self._lock:
            for store_key, manifest in list(self._cluster_content.items()):
                labels = manifest["metadata"].get("labels") or {}
                if (
                    store_key[1] == "StatefulSet"
                    and store_key[2] == owner_key.namespace
                    and labels.get(constants.INSTANCE_LABEL) == owner_key.name
                ):
                    updated = copy.deepcopy(manifest)
                    updated.setdefault("status", {})["readyReplicas"] = 0
                    self._put(updated, bump_generation=False)

    def inject_fault(self, method: str, error: Exception, count: int = 1):
        """Make the next count calls to the named method raise the error"""
        with self._lock:
            self._faults.setdefault(method, []).extend([error] * count)

    def inject_latency(self, method: str, seconds: float):
        """Make every call to the named method take the given time. A call
        whose timeout is shorter gives up when the timeout runs out.
        """
        with self._lock:
            self._latency[method] = seconds

    def break_watches(self, error: Optional[Exception] = None):
        """End every running watch stream with an error as if the connection
        dropped
        """
        error = error or StoreUnavailableError("Simulated watch disconnect")
        with self._lock:
            for _, _, _, event_queue in self._watch_queues:
                event_queue.put(error)

    def children_of(self, owner_key: ResourceKey) -> Dict[Tuple[str, str], dict]:
        """Get the children of a Database indexed by (kind, name)"""
        with self._lock:
            return {
                (kind, name): copy.deepcopy(manifest)
                for (_, kind, namespace, name), manifest in self._cluster_content.items()
                if namespace == owner_key.namespace
                and (manifest["metadata"].get("labels") or {}).get(
                    constants.INSTANCE_LABEL
                )
                == owner_key.name
            }

    ## Implementation Details ##################################################

    @staticmethod
    def _store_key(manifest: dict) -> _StoreKey:
        metadata = manifest.get("metadata", {})
        return (
            manifest.get("apiVersion"),
            manifest.get("kind"),
            metadata.get("namespace"),
            metadata.get("name"),
        )

    @staticmethod
    def _describe(manifest: dict) -> str:
        metadata = manifest.get("metadata", {})
        return f"{manifest.get('kind')}/{metadata.get('namespace')}/{metadata.get('name')}"

    @staticmethod
    def _matches(
        resource: ManagedObject, kind: str, api_version: str, namespace: Optional[str]
    ) -> bool:
        return (
            resource.kind == kind
            and resource.api_version == api_version
            and (not namespace or resource.namespace == namespace)
        )

    def _maybe_raise(self, method: str, timeout: Optional[float] = None):
        with self._lock:
            latency = self._latency.get(method)
            faults = self._faults.get(method)
            error = faults.pop(0) if faults else None

        if latency:
            if timeout is not None and latency > timeout:
                time.sleep(timeout)
                raise StoreUnavailableError(f"{method} timed out after {timeout}s")
            time.sleep(latency)
        if error is not None:
            log.debug("DRY RUN raising injected fault for %s: %s", method, error)
            raise error

    def _get_manifest(
        self, api_version: str, kind: str, namespace: str, name: str
    ) -> Optional[dict]:
        with self._lock:
            current = self._cluster_content.get((api_version, kind, namespace, name))
            return copy.deepcopy(current) if current is not None else None

    def _get_for_write(self, key: ResourceKey, resource_version: str) -> dict:
        current = self._get_manifest(
            constants.DATABASE_API_VERSION,
            constants.DATABASE_KIND,
            key.namespace,
            key.name,
        )
        if current is None:
            raise ResourceNotFoundError(f"Database {key} not found")
        current_version = current["metadata"].get("resourceVersion")
        if resource_version != current_version:
            raise ConflictError(
                f"Stale resourceVersion for {key}: {resource_version} != {current_version}"
            )
        return current

    def _next_resource_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def _put(self, manifest: dict, bump_generation: bool = True) -> dict:
        """Store the manifest, bumping the resourceVersion if anything changed
        and notifying watches
        """
        with self._lock:
            metadata = manifest.setdefault("metadata", {})
            current = self._cluster_content.get(self._store_key(manifest))
            if current is not None:
                current_meta = current["metadata"]
                metadata["uid"] = current_meta["uid"]
                metadata["creationTimestamp"] = current_meta["creationTimestamp"]
                metadata["generation"] = current_meta.get("generation", 1)
                if bump_generation and manifest.get("spec") != current.get("spec"):
                    metadata["generation"] += 1
                metadata["resourceVersion"] = current_meta["resourceVersion"]
                if manifest == current:
                    return manifest
                event_type = KubeEventType.MODIFIED
            else:
                metadata["uid"] = str(uuid.uuid4())
                metadata["creationTimestamp"] = _timestamp()
                metadata["generation"] = 1
                event_type = KubeEventType.ADDED

            metadata["resourceVersion"] = self._next_resource_version()
            self._cluster_content[self._store_key(manifest)] = copy.deepcopy(manifest)
            self._notify(event_type, manifest)
            return manifest

    def _remove(self, store_key: _StoreKey):
        """Remove an object and garbage collect everything it owns"""
        with self._lock:
            manifest = self._cluster_content.pop(store_key, None)
            if manifest is None:
                return
            self._resource_version += 1
            self._notify(KubeEventType.DELETED, manifest)
            owner_uid = manifest["metadata"].get("uid")
            for child_key, child in list(self._cluster_content.items()):
                if is_owned_by(child, owner_uid):
                    log.debug2("DRY RUN garbage collecting %s", child_key)
                    self._remove(child_key)

    def _notify(self, event_type: KubeEventType, manifest: dict):
        event = KubeWatchEvent(
            type=event_type, resource=ManagedObject(copy.deepcopy(manifest))
        )
        self._change_log.append((self._resource_version, event))
        if len(self._change_log) > self.history_limit:
            dropped = self._change_log[: -self.history_limit]
            self._change_log = self._change_log[-self.history_limit :]
            self._compacted_version = dropped[-1][0]
        for kind, api_version, namespace, event_queue in self._watch_queues:
            if self._matches(event.resource, kind, api_version, namespace):
                event_queue.put(event)

    def _make_ready(self, manifest: dict) -> dict:
        """Fill in the status the platform would report for a healthy child"""
        updated = copy.deepcopy(manifest)
        if updated["kind"] == "StatefulSet":
            replicas = updated.get("spec", {}).get("replicas", 1)
            updated["status"] = {
                "replicas": replicas,
                "readyReplicas": replicas,
                "observedGeneration": updated["metadata"].get("generation", 1),
            }
        elif updated["kind"] == "PersistentVolumeClaim":
            updated["status"] = {"phase": "Bound"}
        else:
            return manifest
        return self._put(updated, bump_generation=False)


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
