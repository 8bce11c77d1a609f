"""
This module holds the ownerReference helpers shared by the store
implementations. An owner reference is a one-way link from a child to its
Database; the controller never keeps a live parent/child object graph.
"""

# Standard
from typing import List, Optional

# First Party
import alog

# Local
from .. import constants
from ..managed_object import ResourceKey

log = alog.use_channel("OWNRF")


def set_owner_reference(owner_cr: dict, child_obj: dict):
    """Make the given CR the single owner of the child object and stamp the
    lookup labels used to list the children of a Database

    Args:
        owner_cr:  dict
            The full manifest of the owning Database
        child_obj:  dict
            The child manifest to update in place
    """
    _validate_object_struct(owner_cr)
    _validate_object_struct(child_obj)

    owner_meta = owner_cr["metadata"]
    child_meta = child_obj["metadata"]
    assert child_meta["namespace"] == owner_meta["namespace"], (
        "Owner references across namespaces are not allowed: "
        f"{child_meta['namespace']} != {owner_meta['namespace']}"
    )

    log.debug3(
        "Setting owner of %s/%s to %s",
        child_obj["kind"],
        child_meta["name"],
        owner_meta["name"],
    )
    child_meta["ownerReferences"] = [make_owner_reference(owner_cr)]
    labels = child_meta.setdefault("labels", {})
    labels[constants.INSTANCE_LABEL] = owner_meta["name"]
    labels[constants.MANAGED_BY_LABEL] = constants.CONTROLLER_NAME


def make_owner_reference(owner_cr: dict) -> dict:
    """Make an owner reference for the given CR instance

    Error Semantics: This function makes a best-effort and does not validate the
    content of the owner_cr, so the resulting ownerReference may contain None
    entries.
    """
    metadata = owner_cr.get("metadata", {})
    return {
        "apiVersion": owner_cr.get("apiVersion"),
        "kind": owner_cr.get("kind"),
        "name": metadata.get("name"),
        "uid": metadata.get("uid"),
        "controller": True,
        # The parent will not be deleted until this object completes its
        # deletion
        "blockOwnerDeletion": True,
    }


def get_owner_key(
    child_obj: dict,
    owner_kind: str = constants.DATABASE_KIND,
    owner_api_version: str = constants.DATABASE_API_VERSION,
) -> Optional[ResourceKey]:
    """Find the key of the Database that owns the given child, if any"""
    metadata = child_obj.get("metadata", {})
    for ref in metadata.get("ownerReferences") or []:
        if ref.get("kind") == owner_kind and ref.get("apiVersion") == owner_api_version:
            return ResourceKey(namespace=metadata.get("namespace"), name=ref.get("name"))
    return None


def is_owned_by(child_obj: dict, owner_uid: Optional[str]) -> bool:
    """Determine whether the child references the owner with the given uid"""
    refs: List[dict] = child_obj.get("metadata", {}).get("ownerReferences") or []
    return any(ref.get("uid") == owner_uid for ref in refs)


## Implementation Details ######################################################


def _validate_object_struct(obj: dict):
    """Ensure that the required portions of an object are present (kind,
    apiVersion, metadata.namespace, metadata.name)
    """
    assert "kind" in obj, "Got object without 'kind'"
    assert "apiVersion" in obj, "Got object without 'apiVersion'"
    metadata = obj.get("metadata")
    assert isinstance(metadata, dict), "Got object with non-dict 'metadata'"
    assert "name" in metadata, "Got object without 'metadata.name'"
    assert "namespace" in metadata, "Got object without 'metadata.namespace'"
