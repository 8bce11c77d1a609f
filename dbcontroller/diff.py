"""
Structural comparison of desired and observed children. Only fields the
controller declares are compared, so defaults filled in by the API server and
fields owned by other writers never cause an update.
"""

# Standard
from dataclasses import dataclass, field
from typing import Dict, List, Tuple
import copy

# Third Party
from deepdiff import DeepDiff

# First Party
import alog

# Local
from . import constants
from .engines import is_create_only
from .exceptions import assert_valid
from .utils import nested_get, nested_set, to_quantity

log = alog.use_channel("DIFF")

# Condition reason for a request to make the data volume smaller
STORAGE_SHRINK_NOT_SUPPORTED = "StorageShrinkNotSupported"

# DeepDiff report types that mean the observed object must be rewritten.
# Removed dictionary items are fields present only on the observed object and
# are left alone.
MEANINGFUL_CHANGES = [
    "values_changed",
    "type_changes",
    "dictionary_item_added",
    "iterable_item_added",
    "iterable_item_removed",
]

# Metadata fields that change on every write
VOLATILE_METADATA = [
    "resourceVersion",
    "generation",
    "managedFields",
    "uid",
    "creationTimestamp",
]

STORAGE_REQUEST_PATH = "spec.resources.requests.storage"


@dataclass
class ChildPlan:
    """The mutations that bring the observed children to the desired ones"""

    to_apply: List[dict] = field(default_factory=list)
    to_delete: List[dict] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.to_apply and not self.to_delete


def child_key(manifest: dict) -> Tuple[str, str]:
    """Children are addressed by (kind, name) within their namespace"""
    return (manifest.get("kind"), manifest.get("metadata", {}).get("name"))


def plan_children(desired: List[dict], actual: List[dict]) -> ChildPlan:
    """Compute which children to apply and which to delete

    Args:
        desired:  List[dict]
            The rendered children in apply order
        actual:  List[dict]
            The children currently owned by the Database

    Returns:
        plan:  ChildPlan
            Children to apply in desired order and children to delete in
            reverse dependency order

    Raises:
        ValidationError: if the data volume would shrink
    """
    actual_by_key: Dict[Tuple[str, str], dict] = {
        child_key(child): child for child in actual
    }
    plan = ChildPlan()
    for manifest in desired:
        current = actual_by_key.pop(child_key(manifest), None)
        if current is None:
            log.debug2("Child %s missing", child_key(manifest))
            plan.to_apply.append(manifest)
        elif is_create_only(manifest):
            log.debug3("Child %s is create-only and exists", child_key(manifest))
        elif needs_update(current, manifest):
            plan.to_apply.append(manifest)

    plan.to_delete = sorted(actual_by_key.values(), key=deletion_order)
    log.debug(
        "Planned %d applies and %d deletes", len(plan.to_apply), len(plan.to_delete)
    )
    return plan


def needs_update(actual: dict, desired: dict) -> bool:
    """Determine whether the observed child differs from the desired one in
    any field the desired manifest declares
    """
    if desired.get("kind") == "PersistentVolumeClaim":
        desired = _align_storage_request(actual, desired)
    actual, desired = clean_manifest(actual, desired)
    diff = DeepDiff(actual, desired)
    changed = any(change in diff for change in MEANINGFUL_CHANGES)
    log.debug2("Found change in %s? %s", child_key(desired), changed)
    if changed:
        log.debug3("Diff: %s", diff)
    return changed


def clean_manifest(actual: dict, desired: dict) -> Tuple[dict, dict]:
    """Clean two manifests before being compared. This keeps only the top
    level sections the desired manifest declares and removes fields that
    change every write.

    Returns:
        Tuple[dict, dict]: The cleaned manifests
    """
    actual = {key: copy.deepcopy(actual.get(key)) for key in desired}
    desired = copy.deepcopy(desired)
    for manifest in [actual, desired]:
        metadata = manifest.get("metadata") or {}
        for metadata_field in VOLATILE_METADATA:
            metadata.pop(metadata_field, None)
    return actual, desired


## Implementation Details ######################################################


def _align_storage_request(actual: dict, desired: dict) -> dict:
    """Compare storage requests as quantities so that equal sizes written
    differently (20Gi and 20480Mi) match. A smaller request is rejected.
    """
    actual_size = nested_get(actual, STORAGE_REQUEST_PATH)
    desired_size = nested_get(desired, STORAGE_REQUEST_PATH)
    actual_bytes = to_quantity(actual_size)
    desired_bytes = to_quantity(desired_size)
    if actual_bytes is None or desired_bytes is None:
        return desired

    assert_valid(
        desired_bytes >= actual_bytes,
        f"Cannot shrink storage from {actual_size} to {desired_size}",
        STORAGE_SHRINK_NOT_SUPPORTED,
    )
    if desired_bytes == actual_bytes and actual_size != desired_size:
        desired = copy.deepcopy(desired)
        nested_set(desired, STORAGE_REQUEST_PATH, actual_size)
    return desired


def deletion_order(manifest: dict) -> int:
    """Delete dependents before their dependencies"""
    type_key = (manifest.get("apiVersion"), manifest.get("kind"))
    if type_key in constants.CHILD_RESOURCE_TYPES:
        return -constants.CHILD_RESOURCE_TYPES.index(type_key)
    return 0
