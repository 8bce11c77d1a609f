"""
Helper objects to represent kubernetes objects seen by the controller and the
keys used to address Database resources
"""
# Standard
from typing import NamedTuple, Optional, Tuple
import copy

KUBE_LIST_IDENTIFIER = "List"


class ResourceKey(NamedTuple):
    """Identity of a Database within the store. This is the unit of work in the
    queue.
    """

    namespace: str
    name: str

    def __str__(self):
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_resource(cls, resource: dict) -> "ResourceKey":
        """Make a key from a resource manifest"""
        metadata = resource.get("metadata", {})
        return cls(namespace=metadata.get("namespace"), name=metadata.get("name"))

    @classmethod
    def parse(cls, key: str) -> "ResourceKey":
        """Parse a key from its namespace/name string form"""
        namespace, _, name = key.partition("/")
        assert namespace and name, f"Invalid resource key [{key}]"
        return cls(namespace=namespace, name=name)


class ManagedObject:  # pylint: disable=too-many-instance-attributes
    """Basic struct to represent a kubernetes object read from the store"""

    def __init__(self, definition: dict):
        self.kind = definition.get("kind")
        self.metadata = definition.get("metadata", {})
        self.name = self.metadata.get("name")
        self.namespace = self.metadata.get("namespace")
        self.uid = self.metadata.get("uid")
        self.resource_version = self.metadata.get("resourceVersion")
        self.api_version = definition.get("apiVersion")
        self.definition = definition

        # If resource is not list then check name
        assert self.kind is not None, "No kind found"
        assert self.api_version is not None, "No apiVersion found"
        if KUBE_LIST_IDENTIFIER not in self.kind:
            assert self.name is not None, "No name found"

    ## Database accessors ######################################################

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(namespace=self.namespace, name=self.name)

    @property
    def spec(self) -> dict:
        return self.definition.get("spec") or {}

    @property
    def status(self) -> dict:
        return self.definition.get("status") or {}

    @property
    def generation(self) -> int:
        return self.metadata.get("generation") or 0

    @property
    def deletion_timestamp(self) -> Optional[str]:
        return self.metadata.get("deletionTimestamp")

    @property
    def finalizers(self) -> list:
        return list(self.metadata.get("finalizers") or [])

    @property
    def annotations(self) -> dict:
        return self.metadata.get("annotations") or {}

    @property
    def revision(self) -> Tuple[int, bool]:
        """The spec revision of this object. A resource that failed permanently
        is only retried once this changes.
        """
        return (self.generation, self.deletion_timestamp is not None)

    ## Helpers #################################################################

    def get(self, *args, **kwargs):
        """Pass get calls to the objects definition"""
        return self.definition.get(*args, **kwargs)

    def copy(self) -> "ManagedObject":
        return ManagedObject(copy.deepcopy(self.definition))

    def __str__(self):
        return f"{self.api_version}/{self.kind}/{self.namespace}/{self.name}"

    def __repr__(self):
        return str(self)

    def __hash__(self):
        """Hash explicitly excludes the definition so that the object's
        identifier in a map is based only on the unique identifier of the
        resource in the cluster, falling back to apiVersion/kind/namespace/name
        """
        return hash(self.uid or str(self))

    def __eq__(self, other):
        return hash(self) == hash(other)
