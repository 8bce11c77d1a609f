"""
This defines the base class for all resource store types. A store is the
controller's only view of the declarative API: it reads Databases, applies and
lists their children, writes status and streams watch events.
"""

# Standard
from typing import Iterator, List, Optional, Tuple
import abc

# Local
from ..managed_object import ManagedObject, ResourceKey
from .kube_event import KubeWatchEvent


class ResourceStoreBase(abc.ABC):
    """Base class for resource stores. All implementations raise the errors
    from dbcontroller.exceptions: ConflictError for stale writes,
    ForbiddenError for RBAC denials, StoreUnavailableError for transport or
    server failures and ResourceNotFoundError when a written object is gone.
    """

    @abc.abstractmethod
    def get(
        self, key: ResourceKey, timeout: Optional[float] = None
    ) -> Optional[ManagedObject]:
        """Fetch the current state of a Database

        Args:
            key:  ResourceKey
                The namespace/name of the Database
            timeout:  Optional[float]
                Seconds to wait for the server before giving up

        Returns:
            resource:  Optional[ManagedObject]
                The current object including spec, status and resourceVersion,
                or None if it does not exist
        """

    @abc.abstractmethod
    def list_children(
        self, owner: ManagedObject, timeout: Optional[float] = None
    ) -> List[dict]:
        """List every child object owned by the given Database

        Args:
            owner:  ManagedObject
                The owning Database
            timeout:  Optional[float]
                Seconds to wait for the server before giving up

        Returns:
            children:  List[dict]
                The current manifests of all owned children across all child
                kinds
        """

    @abc.abstractmethod
    def apply_child(
        self, owner: ManagedObject, manifest: dict, timeout: Optional[float] = None
    ) -> dict:
        """Create or update a child object, setting its owner reference to the
        given Database

        Args:
            owner:  ManagedObject
                The owning Database
            manifest:  dict
                The desired child manifest
            timeout:  Optional[float]
                Seconds to wait for the server before giving up

        Returns:
            applied:  dict
                The manifest as stored after the apply
        """

    @abc.abstractmethod
    def delete_child(self, manifest: dict, timeout: Optional[float] = None) -> bool:
        """Delete a child object if it exists

        Args:
            manifest:  dict
                A manifest holding at least apiVersion, kind and metadata
                name/namespace
            timeout:  Optional[float]
                Seconds to wait for the server before giving up

        Returns:
            changed:  bool
                True if a delete was issued, False if the object was already
                gone
        """

    @abc.abstractmethod
    def update_status(
        self,
        key: ResourceKey,
        status: dict,
        resource_version: str,
        timeout: Optional[float] = None,
    ) -> str:
        """Replace the status subresource of a Database

        Args:
            key:  ResourceKey
                The Database to update
            status:  dict
                The full status to write
            resource_version:  str
                The resourceVersion the status was computed from
            timeout:  Optional[float]
                Seconds to wait for the server before giving up

        Returns:
            resource_version:  str
                The resourceVersion after the write
        """

    @abc.abstractmethod
    def update_finalizers(
        self,
        key: ResourceKey,
        finalizers: List[str],
        resource_version: str,
        timeout: Optional[float] = None,
    ) -> str:
        """Replace metadata.finalizers of a Database

        Args:
            key:  ResourceKey
                The Database to update
            finalizers:  List[str]
                The full list of finalizers to set
            resource_version:  str
                The resourceVersion the list was computed from
            timeout:  Optional[float]
                Seconds to wait for the server before giving up

        Returns:
            resource_version:  str
                The resourceVersion after the write. If removing the last
                finalizer completed a pending deletion this is None.
        """

    @abc.abstractmethod
    def create_event(
        self,
        owner: ManagedObject,
        event_type: str,
        reason: str,
        message: str,
        timeout: Optional[float] = None,
    ):
        """Create a core/v1 Event about the given object

        Args:
            owner:  ManagedObject
                The object the event is about
            event_type:  str
                Normal or Warning
            reason:  str
                Short CamelCase reason
            message:  str
                Human-readable description
            timeout:  Optional[float]
                Seconds to wait for the server before giving up
        """

    @abc.abstractmethod
    def list_objects(
        self,
        kind: str,
        api_version: str,
        namespace: Optional[str] = None,
    ) -> Tuple[List[ManagedObject], Optional[str]]:
        """List all objects of a kind

        Args:
            kind:  str
                The kind of the objects to list
            api_version:  str
                The api_version of the objects to list
            namespace:  Optional[str]
                The namespace to list in. If None, list cluster wide

        Returns:
            objects:  List[ManagedObject]
                The current objects
            resource_version:  Optional[str]
                The list resourceVersion to start a watch from
        """

    @abc.abstractmethod
    def watch_objects(
        self,
        kind: str,
        api_version: str,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> Iterator[KubeWatchEvent]:
        """Stream change events for a kind. The stream is infinite until the
        store is asked to stop it or the connection fails with an error that
        requires a relist.

        Args:
            kind:  str
                The kind of the objects to watch
            api_version:  str
                The api_version of the objects to watch
            namespace:  Optional[str]
                The namespace to watch. If None, watch cluster wide
            resource_version:  Optional[str]
                Only stream changes newer than this resourceVersion

        Returns:
            watch_stream: Iterator[KubeWatchEvent]
                A stream of KubeWatchEvents generated while watching
        """

    def stop_watches(
        self,
        kind: Optional[str] = None,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
    ):
        """Stop running watch streams. Optional for implementations whose
        streams end on their own.

        Args:
            kind:  Optional[str]
                Only stop streams of this kind. If None, any kind
            api_version:  Optional[str]
                Only stop streams of this api_version. If None, any api_version
            namespace:  Optional[str]
                Only stop streams of this namespace. If None, any namespace
        """
