"""
This store is responsible for delegating cluster operations to the openshift
library. It is the one that will be used when the controller is running in the
cluster or outside the cluster making live changes.
"""
# Standard
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Tuple
import copy
import threading

# Third Party
from kubernetes import client
from kubernetes.watch import Watch
from openshift.dynamic import DynamicClient
from openshift.dynamic import exceptions as dynamic_exceptions
from openshift.dynamic.resource import Resource
import kubernetes
import urllib3

# First Party
import alog

# Local
from .. import constants
from ..exceptions import (
    ConflictError,
    ForbiddenError,
    ResourceNotFoundError,
    StoreUnavailableError,
    assert_store,
)
from ..managed_object import ManagedObject, ResourceKey
from .base import ResourceStoreBase
from .kube_event import KubeEventType, KubeWatchEvent
from .owner_references import is_owned_by, set_owner_reference

log = alog.use_channel("OSFTS")

## Store #######################################################################


# See this document for value reasonings
# https://github.com/kubernetes-client/python/blob/master/examples/watch/timeout-settings.md
SERVER_WATCH_TIMEOUT = 3600
CLIENT_WATCH_TIMEOUT = 30

# Content type used for metadata patches
MERGE_PATCH = "application/merge-patch+json"


class OpenshiftStore(ResourceStoreBase):
    """This store uses the openshift DynamicClient to interact with the
    cluster
    """

    def __init__(self, dynamic_client: Optional[DynamicClient] = None):
        """
        Args:
            dynamic_client:  Optional[DynamicClient]
                A preconfigured client. If not given, one is created on first
                use from the in-cluster config or the local kubeconfig.
        """
        log.debug("Initializing openshift client")
        self._client = dynamic_client

        # Running watches and what they stream so that they can be stopped
        self._watches: Dict[Watch, Tuple[str, str, Optional[str]]] = {}
        self._watches_lock = threading.Lock()

    @property
    def client(self) -> DynamicClient:
        """Lazy property access to the client"""
        if self._client is None:
            self._client = self._setup_client()
        return self._client

    ## Interface ###############################################################

    def get(
        self, key: ResourceKey, timeout: Optional[float] = None
    ) -> Optional[ManagedObject]:
        handle = self._get_resource_handle(
            constants.DATABASE_KIND, constants.DATABASE_API_VERSION
        )
        with _store_errors(f"get {key}"):
            try:
                resource = handle.get(
                    name=key.name,
                    namespace=key.namespace,
                    **_request_kwargs(timeout),
                )
            except dynamic_exceptions.NotFoundError:
                log.debug2("No Database named [%s] found", key)
                return None
        return ManagedObject(resource.to_dict())

    def list_children(
        self, owner: ManagedObject, timeout: Optional[float] = None
    ) -> List[dict]:
        children = []
        selector = f"{constants.INSTANCE_LABEL}={owner.name}"
        for api_version, kind in constants.CHILD_RESOURCE_TYPES:
            handle = self._get_resource_handle(kind, api_version)
            with _store_errors(f"list {kind} for {owner.key}"):
                items = (
                    handle.get(
                        namespace=owner.namespace,
                        label_selector=selector,
                        **_request_kwargs(timeout),
                    )
                    .to_dict()
                    .get("items", [])
                )
            for item in items:
                # Items of a list response do not carry their own type
                item.setdefault("apiVersion", api_version)
                item.setdefault("kind", kind)
                if is_owned_by(item, owner.uid):
                    children.append(item)
        log.debug3("Found %d children of [%s]", len(children), owner.key)
        return children

    @alog.logged_function(log.debug2)
    def apply_child(
        self, owner: ManagedObject, manifest: dict, timeout: Optional[float] = None
    ) -> dict:
        manifest = copy.deepcopy(manifest)
        set_owner_reference(owner.definition, manifest)
        kind = manifest["kind"]
        name = manifest["metadata"]["name"]
        namespace = manifest["metadata"]["namespace"]

        # Strip out managedFields to let the sever set them
        manifest["metadata"]["managedFields"] = None

        handle = self._get_resource_handle(kind, manifest["apiVersion"])
        log.debug2("Attempting to apply [%s/%s] in %s", kind, name, namespace)
        with _store_errors(f"apply {kind}/{name}"):
            try:
                return handle.server_side_apply(
                    manifest,
                    name=name,
                    namespace=namespace,
                    field_manager=constants.CONTROLLER_NAME,
                    **_request_kwargs(timeout),
                ).to_dict()
            except dynamic_exceptions.ConflictError:
                log.debug(
                    "Overriding field manager conflict for [%s/%s] in %s",
                    kind,
                    name,
                    namespace,
                )
                return handle.server_side_apply(
                    manifest,
                    name=name,
                    namespace=namespace,
                    field_manager=constants.CONTROLLER_NAME,
                    force_conflicts=True,
                    **_request_kwargs(timeout),
                ).to_dict()

    def delete_child(self, manifest: dict, timeout: Optional[float] = None) -> bool:
        kind = manifest.get("kind")
        metadata = manifest.get("metadata", {})
        name = metadata.get("name")
        namespace = metadata.get("namespace")
        handle = self._get_resource_handle(kind, manifest.get("apiVersion"))
        log.debug2("Attempting to delete [%s/%s] from %s", kind, name, namespace)
        with _store_errors(f"delete {kind}/{name}"):
            try:
                handle.delete(
                    name=name,
                    namespace=namespace,
                    body={"propagationPolicy": "Background"},
                    **_request_kwargs(timeout),
                )
            except dynamic_exceptions.NotFoundError:
                log.debug2("[%s/%s] already gone", kind, name)
                return False
        return True

    def update_status(
        self,
        key: ResourceKey,
        status: dict,
        resource_version: str,
        timeout: Optional[float] = None,
    ) -> str:
        handle = self._get_resource_handle(
            constants.DATABASE_KIND, constants.DATABASE_API_VERSION
        )
        body = {
            "apiVersion": constants.DATABASE_API_VERSION,
            "kind": constants.DATABASE_KIND,
            "metadata": {
                "name": key.name,
                "namespace": key.namespace,
                "resourceVersion": resource_version,
            },
            "status": status,
        }
        with _store_errors(f"update status of {key}"):
            updated = handle.status.replace(
                body=body, **_request_kwargs(timeout)
            ).to_dict()
        log.debug2("Successfully set the status for [%s]", key)
        return updated["metadata"]["resourceVersion"]

    def update_finalizers(
        self,
        key: ResourceKey,
        finalizers: List[str],
        resource_version: str,
        timeout: Optional[float] = None,
    ) -> Optional[str]:
        handle = self._get_resource_handle(
            constants.DATABASE_KIND, constants.DATABASE_API_VERSION
        )
        body = {
            "metadata": {
                "finalizers": finalizers,
                "resourceVersion": resource_version,
            }
        }
        with _store_errors(f"update finalizers of {key}"):
            updated = handle.patch(
                body=body,
                name=key.name,
                namespace=key.namespace,
                content_type=MERGE_PATCH,
                **_request_kwargs(timeout),
            ).to_dict()
        if updated["metadata"].get("deletionTimestamp") and not finalizers:
            return None
        return updated["metadata"]["resourceVersion"]

    def create_event(
        self,
        owner: ManagedObject,
        event_type: str,
        reason: str,
        message: str,
        timeout: Optional[float] = None,
    ):
        handle = self._get_resource_handle("Event", "v1")
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{owner.name}.",
                "namespace": owner.namespace,
            },
            "involvedObject": {
                "apiVersion": owner.api_version,
                "kind": owner.kind,
                "name": owner.name,
                "namespace": owner.namespace,
                "uid": owner.uid,
                "resourceVersion": owner.resource_version,
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
            "source": {"component": constants.CONTROLLER_NAME},
            "reportingComponent": constants.CONTROLLER_NAME,
        }
        with _store_errors(f"create event for {owner.key}"):
            handle.create(
                body=body, namespace=owner.namespace, **_request_kwargs(timeout)
            )

    def list_objects(
        self,
        kind: str,
        api_version: str,
        namespace: Optional[str] = None,
    ) -> Tuple[List[ManagedObject], Optional[str]]:
        handle = self._get_resource_handle(kind, api_version)
        with _store_errors(f"list {kind}"):
            list_obj = handle.get(namespace=namespace or None).to_dict()
        objects = []
        for item in list_obj.get("items", []):
            item.setdefault("apiVersion", api_version)
            item.setdefault("kind", kind)
            objects.append(ManagedObject(item))
        return objects, list_obj.get("metadata", {}).get("resourceVersion")

    def watch_objects(
        self,
        kind: str,
        api_version: str,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        watch_manager: Optional[Watch] = None,
    ) -> Iterator[KubeWatchEvent]:
        watch_manager = watch_manager if watch_manager else Watch()
        resource_handle = self._get_resource_handle(kind, api_version)
        with self._watches_lock:
            self._watches[watch_manager] = (kind, api_version, namespace)

        try:
            while True:
                try:
                    for event_obj in watch_manager.stream(
                        resource_handle.get,
                        resource_version=resource_version,
                        namespace=namespace or None,
                        serialize=False,
                        timeout_seconds=SERVER_WATCH_TIMEOUT,
                        _request_timeout=CLIENT_WATCH_TIMEOUT,
                    ):
                        event_type = KubeEventType(event_obj["type"])
                        event_resource = ManagedObject(event_obj["object"])
                        resource_version = event_resource.resource_version
                        yield KubeWatchEvent(event_type, event_resource)
                except client.exceptions.ApiException as exception:
                    if exception.status == 410:
                        # Watching without a resourceVersion replays every
                        # current object as ADDED which acts as a relist
                        log.debug2(
                            "Resource age expired, restarting watch %s/%s",
                            kind,
                            api_version,
                        )
                        resource_version = None
                    else:
                        log.info("Unknown ApiException received, re-raising")
                        raise _translate(exception, f"watch {kind}") from exception
                except urllib3.exceptions.ReadTimeoutError:
                    log.debug4("Watch Socket closed, restarting watch %s/%s", kind, api_version)
                except urllib3.exceptions.ProtocolError:
                    log.debug2(
                        "Invalid Chunk from server, restarting watch %s/%s",
                        kind,
                        api_version,
                    )
                except urllib3.exceptions.HTTPError as err:
                    raise StoreUnavailableError(f"Watch of {kind} failed: {err}") from err

                # This is hidden attribute so probably not best to check
                if watch_manager._stop:  # pylint: disable=protected-access
                    log.debug(
                        "Internal watch stopped. Stopping store watch for %s/%s",
                        kind,
                        api_version,
                    )
                    return
        finally:
            with self._watches_lock:
                self._watches.pop(watch_manager, None)

    def stop_watches(
        self,
        kind: Optional[str] = None,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
    ):
        with self._watches_lock:
            for watch_manager, (
                watch_kind,
                watch_api_version,
                watch_namespace,
            ) in self._watches.items():
                if (
                    (kind is None or kind == watch_kind)
                    and (api_version is None or api_version == watch_api_version)
                    and (namespace is None or namespace == watch_namespace)
                ):
                    watch_manager.stop()

    ## Implementation Helpers ##################################################

    @staticmethod
    def _setup_client():
        """Create a DynamicClient that will work based on where the controller
        is running
        """
        # Try in-cluster config
        try:
            log.debug2("Running with in-cluster config")

            # Create Empty Config and load in-cluster information
            kube_config = kubernetes.client.Configuration()
            kubernetes.config.load_incluster_config(client_configuration=kube_config)

            # Generate ApiClient and return Openshift DynamicClient
            api_client = kubernetes.client.ApiClient(kube_config)
            return DynamicClient(api_client)

        # Fall back to out-of-cluster config
        except kubernetes.config.ConfigException:
            log.debug2("Running with out-of-cluster config")
            return DynamicClient(kubernetes.config.new_client_from_config())

    def _get_resource_handle(self, kind: str, api_version: str) -> Resource:
        """Get the openshift resource handle for a specified kind and api_version"""
        resources = None
        with _store_errors(f"discover {api_version}/{kind}"):
            try:
                resources = self.client.resources.get(kind=kind, api_version=api_version)
            except (
                dynamic_exceptions.ResourceNotFoundError,
                dynamic_exceptions.ResourceNotUniqueError,
            ):
                log.debug(
                    "No objects of kind [%s] found or multiple objects matching request found",
                    kind,
                )
        assert_store(
            resources is not None,
            f"Failed to fetch resource handle for {api_version}/{kind}",
        )
        return resources


## Error Translation ###########################################################


def _request_kwargs(timeout: Optional[float]) -> dict:
    """Client kwargs bounding a single request, if a timeout is given"""
    if timeout is None:
        return {}
    return {"_request_timeout": timeout}


def _translate(err: Exception, operation: str) -> Exception:
    """Map a client error onto the controller's error taxonomy"""
    status = getattr(err, "status", None)
    message = f"Failed to {operation}: {getattr(err, 'reason', None) or err}"
    if status == 409:
        return ConflictError(message)
    if status == 403:
        return ForbiddenError(message)
    if status == 404:
        return ResourceNotFoundError(message)
    return StoreUnavailableError(message)


@contextmanager
def _store_errors(operation: str):
    """Context manager that converts client and transport failures raised
    inside it into dbcontroller exceptions
    """
    try:
        yield
    except client.exceptions.ApiException as err:
        log.debug2("API error during %s: %s", operation, err)
        raise _translate(err, operation) from err
    except urllib3.exceptions.HTTPError as err:
        log.debug2("Transport error during %s: %s", operation, err)
        raise StoreUnavailableError(f"Failed to {operation}: {err}") from err
