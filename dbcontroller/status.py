"""
This module holds the common functionality used to represent the status of
Database resources

The controller supports the following status conditions:

* Ready: True if the database is accepting connections
* Progressing: True while the controller is rolling out a change
* Degraded: Only present when the database is degraded or failed

The top-level status schema is:
{
    "phase": "Pending|Provisioning|Running|Degraded|Deleting|Failed",
    "observedGeneration": int,
    "availableReplicas": int,
    "endpoint": "host:port",
    "conditions": [...],
    "engine": str,
    "version": str,
    "backup": {...},
}
"""

# Standard
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
import copy

# Third Party
from deepdiff import DeepDiff

# First Party
import alog

# Local
from .managed_object import ManagedObject, ResourceKey
from .store import ResourceStoreBase

log = alog.use_channel("STTUS")

## Public ######################################################################

# The "type" values in the condition
READY_CONDITION = "Ready"
PROGRESSING_CONDITION = "Progressing"
DEGRADED_CONDITION = "Degraded"

# The key in the condition used for the timestamp
TIMESTAMP_KEY = "lastTransitionTime"

# Status fields
PHASE = "phase"
OBSERVED_GENERATION = "observedGeneration"
AVAILABLE_REPLICAS = "availableReplicas"
ENDPOINT = "endpoint"
CONDITIONS = "conditions"


class Phase(Enum):
    """The lifecycle phase of a Database"""

    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    RUNNING = "Running"
    DEGRADED = "Degraded"
    DELETING = "Deleting"
    FAILED = "Failed"


class Reason(Enum):
    """Condition reasons set by the controller itself. Validation reasons
    come from the spec parser.
    """

    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    RUNNING = "Running"
    DELETING = "Deleting"
    CHILDREN_UNHEALTHY = "ChildrenUnhealthy"
    APPLY_FAILED = "ApplyFailed"
    FORBIDDEN = "Forbidden"
    CLEANUP_FAILED = "CleanupFailed"


def make_status(  # pylint: disable=too-many-arguments
    phase: Phase,
    reason: Optional[str] = None,
    message: str = "",
    observed_generation: Optional[int] = None,
    available_replicas: int = 0,
    endpoint: Optional[str] = None,
    previous_status: Optional[dict] = None,
    extra_status: Optional[dict] = None,
) -> dict:
    """Create a full status object for a Database

    Args:
        phase:  Phase
            The phase to report
        reason:  Optional[str]
            The reason for the conditions. Defaults to the phase.
        message:  str
            Plain-text message explaining the conditions
        observed_generation:  Optional[int]
            The generation the status was computed from
        available_replicas:  int
            Number of ready database replicas
        endpoint:  Optional[str]
            host:port of the database service once running
        previous_status:  Optional[dict]
            The current status. Condition timestamps are carried over for
            conditions whose status does not change.
        extra_status:  Optional[dict]
            Additional key/value status elements to include

    Returns:
        status:  dict
            Dict representation of the status for the Database
    """
    previous_status = previous_status or {}
    reason = reason or phase.value
    now = datetime.now(timezone.utc)
    conditions = merge_conditions(
        previous_status.get(CONDITIONS, []),
        _make_conditions(phase, reason, message, now),
    )

    status = copy.deepcopy(extra_status or {})
    status[PHASE] = phase.value
    if observed_generation is None:
        observed_generation = previous_status.get(OBSERVED_GENERATION)
    if observed_generation is not None:
        status[OBSERVED_GENERATION] = observed_generation
    status[AVAILABLE_REPLICAS] = available_replicas
    if endpoint:
        status[ENDPOINT] = endpoint
    status[CONDITIONS] = conditions
    log.debug3("Made status: %s", status)
    return status


def merge_conditions(previous: List[dict], new: List[dict]) -> List[dict]:
    """Merge new conditions onto previous ones. A condition whose status is
    unchanged keeps its lastTransitionTime. The order of the new list wins.
    """
    previous_map = {cond.get("type"): cond for cond in previous or []}
    merged = []
    for condition in new:
        condition = dict(condition)
        previous_cond = previous_map.get(condition["type"])
        if previous_cond and previous_cond.get("status") == condition["status"]:
            condition[TIMESTAMP_KEY] = previous_cond.get(
                TIMESTAMP_KEY, condition[TIMESTAMP_KEY]
            )
        merged.append(condition)
    return merged


def status_changed(current_status: dict, new_status: dict) -> bool:
    """Compare two status objects to determine if there is a meaningful change
    between the current status and the proposed new status. A meaningful change
    is defined as any change besides a timestamp.

    Args:
        current_status:  dict
            The raw status dict from the current CR
        new_status:  dict
            The proposed new status

    Returns:
        status_changed:  bool
            True if there is a meaningful change between the current status and
            the new status
    """
    # Status objects must be dicts
    if not isinstance(current_status, dict) or not isinstance(new_status, dict):
        return True

    # Perform a deep diff, excluding timestamps
    return bool(
        DeepDiff(
            current_status,
            new_status,
            exclude_obj_callback=lambda _, path: path.endswith(f"{TIMESTAMP_KEY}']"),
        )
    )


def get_condition(type_name: str, current_status: dict) -> dict:
    """Extract the given condition type from a status object

    Args:
        type_name:  str
            The condition type to fetch
        current_status:  dict
            The dict representation of the status for a given Database

    Returns:
        condition:  dict
            The condition object if found, empty dict otherwise
    """
    cond = [
        cond
        for cond in (current_status or {}).get(CONDITIONS, [])
        if cond.get("type") == type_name
    ]
    if cond:
        assert len(cond) == 1, f"Found multiple condition entries for {type_name}"
        return cond[0]
    return {}


def get_phase(current_status: dict) -> Optional[Phase]:
    """Get the phase from a status object if one is set"""
    phase = (current_status or {}).get(PHASE)
    try:
        return Phase(phase) if phase else None
    except ValueError:
        log.warning("Unknown phase in status: %s", phase)
        return None


class StatusReporter:
    """Writes Database status and emits events through the store"""

    def __init__(self, store: ResourceStoreBase):
        self._store = store

    def update_status(
        self,
        key: ResourceKey,
        status: dict,
        resource_version: str,
        timeout: Optional[float] = None,
    ) -> str:
        """Write the full status of a Database. Errors propagate so that the
        caller can re-fetch on a conflict.
        """
        log.debug("Updating status of [%s] to phase %s", key, status.get(PHASE))
        log.debug3("Status: %s", status)
        return self._store.update_status(
            key, status, resource_version, timeout=timeout
        )

    def record_event(
        self,
        owner: ManagedObject,
        event_type: str,
        reason: str,
        message: str,
        timeout: Optional[float] = None,
    ):
        """Emit an event about a Database. This is best-effort and never
        raises.
        """
        try:
            self._store.create_event(
                owner, event_type, reason, message, timeout=timeout
            )
        except Exception as err:  # pylint: disable=broad-except
            log.warning(
                "Failed to record %s event for [%s]: %s", reason, owner.key, err
            )


## Implementation Details ######################################################


def _make_status_condition(
    type_name: str,
    status: bool,
    reason: str,
    message: str,
    last_transition_time: datetime,
):
    """Convert the condition to the dict representation to be added to the
    kubernetes object
    """
    return {
        "type": type_name,
        "status": str(status),
        "reason": reason,
        "message": message,
        TIMESTAMP_KEY: last_transition_time.strftime("%Y-%m-%dT%H:%M:%SZ"),
    }


def _make_conditions(
    phase: Phase,
    reason: str,
    message: str,
    now: datetime,
) -> List[dict]:
    """Derive the conditions for a phase"""
    ready = phase == Phase.RUNNING
    progressing = phase in [Phase.PENDING, Phase.PROVISIONING, Phase.DELETING]
    degraded = phase in [Phase.DEGRADED, Phase.FAILED]
    log.debug2("Conditions for %s: ready=%s degraded=%s", phase.value, ready, degraded)

    conditions = [
        _make_status_condition(READY_CONDITION, ready, reason, message, now),
        _make_status_condition(
            PROGRESSING_CONDITION, progressing, reason, message, now
        ),
    ]
    if degraded:
        conditions.append(
            _make_status_condition(DEGRADED_CONDITION, True, reason, message, now)
        )
    return conditions
