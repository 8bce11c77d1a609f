"""
The Reconciler drives a single Database toward its desired state. Every call
reads the latest snapshot from the store and recomputes everything from it, so
a missed watch event or a hand-edited child is corrected by the next pass.
"""

# Standard
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple
import copy
import time

# First Party
import alog

# Local
from . import constants, status
from .context import ControllerContext
from .database import DatabaseSpec, parse_spec
from .diff import ChildPlan, child_key, plan_children
from .engines import (
    available_replicas,
    desired_children,
    endpoint,
    fill_credentials,
    is_child_healthy,
    is_create_only,
)
from .exceptions import (
    ConflictError,
    ControllerError,
    ControllerExpectedError,
    ForbiddenError,
    ReconcileTimeoutError,
    ResourceNotFoundError,
    ValidationError,
)
from .finalizer import CleanupResult
from .log_format import reconcile_context
from .managed_object import ManagedObject, ResourceKey
from .status import Phase, Reason

log = alog.use_channel("RECON")

# Smallest timeout handed to a store call once the budget is nearly spent
MIN_REQUEST_TIMEOUT = 0.001

## Data models #################################################################


class ResultKind(Enum):
    """What the queue should do with a key after an attempt"""

    # Converged for now. Requeue after requeue_after if set.
    DONE = "Done"
    # The Database is gone or not ours. Forget the key.
    DROP = "Drop"
    # Re-run immediately without backoff
    REQUEUE = "Requeue"
    # Transient failure. Retry with backoff.
    RETRY = "Retry"
    # Authorization failure. Retry with the slow backoff.
    RETRY_SLOW = "RetrySlow"
    # Permanent failure. Do not retry until the revision changes.
    TERMINAL = "Terminal"


@dataclass
class ReconcileResult:
    """ReconcileResult is the result of a single reconciliation attempt"""

    kind: ResultKind
    # Seconds until the next periodic check of a converged resource
    requeue_after: Optional[float] = None
    # Revision a terminal result is bound to
    revision: Optional[Tuple[int, bool]] = None
    # Phase written by the attempt, if any
    phase: Optional[Phase] = None
    # The error that ended the attempt, if any
    exception: Optional[Exception] = None


class Deadline:
    """Time budget of one attempt, checked before every store call"""

    def __init__(self, timeout: Optional[float]):
        self._end_time = time.monotonic() + timeout if timeout else None

    @property
    def expired(self) -> bool:
        return self._end_time is not None and time.monotonic() >= self._end_time

    @property
    def remaining(self) -> Optional[float]:
        """Seconds left for a single store call, None when unbounded"""
        if self._end_time is None:
            return None
        return max(self._end_time - time.monotonic(), MIN_REQUEST_TIMEOUT)

    def check(self, operation: str):
        if self.expired:
            raise ReconcileTimeoutError(f"Deadline exceeded before {operation}")


## Reconciler ##################################################################


class Reconciler:
    """The core decision engine. One instance is shared by every worker, all
    per-attempt state lives on the stack.
    """

    def __init__(self, context: ControllerContext):
        self.context = context
        self.store = context.store
        self.settings = context.settings
        self.status_reporter = context.status_reporter
        self.cleanup_manager = context.cleanup_manager

    @alog.logged_function(log.debug)
    @alog.timed_function(log.debug, "Reconcile finished in: ")
    def reconcile(self, key: ResourceKey, attempt: int = 0) -> ReconcileResult:
        """This is the main entrypoint for reconciliations. The general
        reconcile path is as follows:

            1. Fetch the Database, dropping the key if it is gone
            2. Run cleanup if the Database is being deleted
            3. Ensure the finalizer and an initial Pending status
            4. Validate the spec
            5. Diff the desired children against the owned ones and apply
            6. Recompute the phase from child health and write status

        Args:
            key:  ResourceKey
                The Database to reconcile
            attempt:  int
                Number of consecutive failed attempts before this one

        Returns:
            result:  ReconcileResult
                What the queue should do with the key next
        """
        deadline = Deadline(self.settings.reconcile_timeout)
        try:
            return self._reconcile(key, attempt, deadline)
        except ResourceNotFoundError:
            log.debug("Database [%s] deleted during reconcile", key)
            return ReconcileResult(ResultKind.DROP)
        except ConflictError as err:
            log.debug("Conflict reconciling [%s]: %s", key, err)
            return ReconcileResult(ResultKind.REQUEUE, exception=err)
        except ForbiddenError as err:
            log.warning("Forbidden while reconciling [%s]: %s", key, err)
            return ReconcileResult(ResultKind.RETRY_SLOW, exception=err)
        except ControllerExpectedError as err:
            log.info("Transient failure reconciling [%s]: %s", key, err)
            return ReconcileResult(ResultKind.RETRY, exception=err)

    ## Reconciliation Stages ###################################################

    def _reconcile(
        self, key: ResourceKey, attempt: int, deadline: Deadline
    ) -> ReconcileResult:
        deadline.check("get")
        database = self.store.get(key, timeout=deadline.remaining)
        if database is None:
            log.debug("Database [%s] not found. Dropping", key)
            return ReconcileResult(ResultKind.DROP)

        with reconcile_context(database.definition, attempt):
            if self._is_paused(database):
                log.info("Database [%s] is paused. Skipping reconcile", key)
                return ReconcileResult(ResultKind.DONE)

            if database.deletion_timestamp:
                return self._finalize(database, deadline)

            try:
                database = self._ensure_finalizer(database, deadline)
                database = self._ensure_initial_status(database, deadline)

                try:
                    spec = parse_spec(database.spec)
                except ValidationError as err:
                    return self._fail(database, err, deadline)

                return self._converge(database, spec, attempt, deadline)
            except ForbiddenError as err:
                return self._forbidden(database, Phase.DEGRADED, err, deadline)

    def _converge(
        self,
        database: ManagedObject,
        spec: DatabaseSpec,
        attempt: int,
        deadline: Deadline,
    ) -> ReconcileResult:
        """Bring the children in line with the spec and report the outcome"""
        desired = desired_children(
            database,
            spec,
            images=self.settings.images,
            storage_class=self.settings.storage_class,
        )
        deadline.check("list children")
        actual = self.store.list_children(database, timeout=deadline.remaining)
        try:
            plan = plan_children(desired, actual)
        except ValidationError as err:
            return self._fail(database, err, deadline)

        try:
            children = self._apply_plan(database, plan, actual, deadline)
        except ConflictError as err:
            log.debug("Conflict applying children of [%s]: %s", database.key, err)
            return ReconcileResult(ResultKind.REQUEUE, exception=err)
        except ReconcileTimeoutError:
            raise
        except ControllerExpectedError as err:
            log.info("Failed to apply children of [%s]: %s", database.key, err)
            phase = None
            if attempt + 1 >= self.settings.degraded_after_retries:
                phase = Phase.DEGRADED
                self._report(
                    database,
                    phase,
                    Reason.APPLY_FAILED.value,
                    f"Failed to apply children after {attempt + 1} attempts: {err}",
                    deadline,
                    event_type=constants.EVENT_TYPE_WARNING,
                )
            return ReconcileResult(ResultKind.RETRY, phase=phase, exception=err)

        phase, reason, message = self._compute_phase(database, desired, children)
        replicas = available_replicas(list(children.values()))
        self._write_status(
            database,
            status.make_status(
                phase,
                reason=reason,
                message=message,
                observed_generation=database.generation,
                available_replicas=replicas,
                endpoint=endpoint(database.name, database.namespace, spec.engine)
                if phase == Phase.RUNNING
                else None,
                previous_status=database.status,
                extra_status=self._spec_summary(spec),
            ),
            deadline,
            event_type=constants.EVENT_TYPE_WARNING
            if phase == Phase.DEGRADED
            else constants.EVENT_TYPE_NORMAL,
        )

        requeue_after = (
            self.settings.resync_period
            if phase == Phase.RUNNING
            else self.settings.provisioning_poll_period
        )
        return ReconcileResult(ResultKind.DONE, requeue_after=requeue_after, phase=phase)

    def _apply_plan(
        self,
        database: ManagedObject,
        plan: ChildPlan,
        actual: List[dict],
        deadline: Deadline,
    ) -> Dict[Tuple[str, str], dict]:
        """Apply the plan and return the resulting children by (kind, name)"""
        children = {child_key(child): child for child in actual}
        for manifest in plan.to_apply:
            deadline.check(f"apply {child_key(manifest)}")
            if is_create_only(manifest):
                manifest = fill_credentials(copy.deepcopy(manifest))
            log.debug("Applying %s for [%s]", child_key(manifest), database.key)
            children[child_key(manifest)] = self.store.apply_child(
                database, manifest, timeout=deadline.remaining
            )
        for manifest in plan.to_delete:
            deadline.check(f"delete {child_key(manifest)}")
            log.debug("Deleting extraneous %s of [%s]", child_key(manifest), database.key)
            self.store.delete_child(manifest, timeout=deadline.remaining)
            children.pop(child_key(manifest), None)

        if not plan.empty:
            changed = ["{}/{}".format(*child_key(child)) for child in plan.to_apply]
            changed += ["-{}/{}".format(*child_key(child)) for child in plan.to_delete]
            self.status_reporter.record_event(
                database,
                constants.EVENT_TYPE_NORMAL,
                "ChildrenUpdated",
                "Updated children: " + ", ".join(changed),
                timeout=deadline.remaining,
            )
        return children

    def _compute_phase(
        self,
        database: ManagedObject,
        desired: List[dict],
        children: Dict[Tuple[str, str], dict],
    ) -> Tuple[Phase, str, str]:
        """Derive the phase from the health of the children"""
        unhealthy = []
        for manifest in desired:
            current = children.get(child_key(manifest))
            if current is None or not is_child_healthy(current):
                unhealthy.append("{}/{}".format(*child_key(manifest)))

        if not unhealthy:
            return Phase.RUNNING, Reason.RUNNING.value, "All children are ready"

        message = "Waiting for " + ", ".join(unhealthy)
        previous_phase = status.get_phase(database.status)
        observed_generation = database.status.get(status.OBSERVED_GENERATION)
        if observed_generation != database.generation or previous_phase in [
            None,
            Phase.PENDING,
            Phase.PROVISIONING,
            Phase.FAILED,
        ]:
            return Phase.PROVISIONING, Reason.PROVISIONING.value, message
        return (
            Phase.DEGRADED,
            Reason.CHILDREN_UNHEALTHY.value,
            "Not ready: " + ", ".join(unhealthy),
        )

    def _finalize(self, database: ManagedObject, deadline: Deadline) -> ReconcileResult:
        """Run cleanup for a Database that is being deleted and release the
        finalizer once it is done
        """
        finalizer = self.settings.finalizer
        if finalizer not in database.finalizers:
            log.debug("Database [%s] deleting without our finalizer", database.key)
            return ReconcileResult(ResultKind.DROP)

        try:
            if status.get_phase(database.status) != Phase.DELETING:
                database = self._write_status(
                    database,
                    status.make_status(
                        Phase.DELETING,
                        message="Releasing owned resources",
                        previous_status=database.status,
                        extra_status=_extra_fields(database.status),
                    ),
                    deadline,
                )
        except ForbiddenError as err:
            return self._forbidden(database, Phase.DELETING, err, deadline)

        result = self.cleanup_manager.cleanup(database.key, database.spec)
        if result == CleanupResult.RETRY:
            log.debug("Cleanup of [%s] not done yet", database.key)
            return ReconcileResult(ResultKind.RETRY, phase=Phase.DELETING)

        if result == CleanupResult.FATAL:
            self._report(
                database,
                Phase.FAILED,
                Reason.CLEANUP_FAILED.value,
                "Cleanup failed permanently. Remove the finalizer "
                f"{finalizer} manually once the owned resources are released",
                deadline,
                event_type=constants.EVENT_TYPE_WARNING,
            )
            return ReconcileResult(
                ResultKind.TERMINAL, revision=database.revision, phase=Phase.FAILED
            )

        self.status_reporter.record_event(
            database,
            constants.EVENT_TYPE_NORMAL,
            "CleanupComplete",
            "Owned resources released",
            timeout=deadline.remaining,
        )
        deadline.check("remove finalizer")
        try:
            self.store.update_finalizers(
                database.key,
                [name for name in database.finalizers if name != finalizer],
                database.resource_version,
                timeout=deadline.remaining,
            )
        except ForbiddenError as err:
            return self._forbidden(database, Phase.DELETING, err, deadline)
        log.info("Released finalizer of [%s]", database.key)
        return ReconcileResult(ResultKind.DONE, phase=Phase.DELETING)

    ## Implementation Details ##################################################

    def _ensure_finalizer(
        self, database: ManagedObject, deadline: Deadline
    ) -> ManagedObject:
        finalizer = self.settings.finalizer
        if finalizer in database.finalizers:
            return database
        log.debug("Adding finalizer %s to [%s]", finalizer, database.key)
        deadline.check("add finalizer")
        finalizers = database.finalizers + [finalizer]
        resource_version = self.store.update_finalizers(
            database.key, finalizers, database.resource_version,
            timeout=deadline.remaining,
        )
        database = _with_resource_version(database, resource_version)
        database.metadata["finalizers"] = finalizers
        return database

    def _ensure_initial_status(
        self, database: ManagedObject, deadline: Deadline
    ) -> ManagedObject:
        if database.status:
            return database
        return self._write_status(
            database,
            status.make_status(Phase.PENDING, message="Waiting to provision"),
            deadline,
        )

    def _fail(
        self, database: ManagedObject, err: ValidationError, deadline: Deadline
    ) -> ReconcileResult:
        """Report a spec that can never be reconciled as written"""
        log.warning("Invalid spec for [%s]: %s", database.key, err)
        self._write_status(
            database,
            status.make_status(
                Phase.FAILED,
                reason=err.reason,
                message=str(err),
                observed_generation=database.generation,
                available_replicas=available_replicas([]),
                previous_status=database.status,
                extra_status=_extra_fields(database.status),
            ),
            deadline,
            event_type=constants.EVENT_TYPE_WARNING,
        )
        return ReconcileResult(
            ResultKind.TERMINAL,
            revision=database.revision,
            phase=Phase.FAILED,
            exception=err,
        )

    def _forbidden(
        self,
        database: ManagedObject,
        phase: Phase,
        err: ForbiddenError,
        deadline: Deadline,
    ) -> ReconcileResult:
        """Surface a permission failure on the Database and retry slowly"""
        log.warning("Forbidden while reconciling [%s]: %s", database.key, err)
        self._report(
            database,
            phase,
            Reason.FORBIDDEN.value,
            str(err),
            deadline,
            event_type=constants.EVENT_TYPE_WARNING,
        )
        return ReconcileResult(ResultKind.RETRY_SLOW, phase=phase, exception=err)

    def _report(
        self,
        database: ManagedObject,
        phase: Phase,
        reason: str,
        message: str,
        deadline: Deadline,
        event_type: str = constants.EVENT_TYPE_NORMAL,
    ):  # pylint: disable=too-many-arguments
        """Write a failure status on a path that already has a result. A store
        error here is logged and does not change the result.
        """
        previous = database.status
        try:
            self._write_status(
                database,
                status.make_status(
                    phase,
                    reason=reason,
                    message=message,
                    available_replicas=previous.get(status.AVAILABLE_REPLICAS, 0),
                    previous_status=previous,
                    extra_status=_extra_fields(previous),
                ),
                deadline,
                event_type=event_type,
            )
        except ReconcileTimeoutError:
            raise
        except ControllerError as err:
            log.warning("Failed to report %s for [%s]: %s", reason, database.key, err)

    def _write_status(
        self,
        database: ManagedObject,
        new_status: dict,
        deadline: Deadline,
        event_type: str = constants.EVENT_TYPE_NORMAL,
    ) -> ManagedObject:
        """Write the status if it changed meaningfully and emit an event when
        the phase or reason changes. Returns the Database as written.
        """
        previous = database.status
        if not status.status_changed(previous, new_status):
            log.debug2("Status of [%s] unchanged", database.key)
            return database

        deadline.check("update status")
        resource_version = self.status_reporter.update_status(
            database.key, new_status, database.resource_version,
            timeout=deadline.remaining,
        )
        updated = _with_resource_version(database, resource_version)
        updated.definition["status"] = new_status

        new_ready = status.get_condition(status.READY_CONDITION, new_status)
        old_ready = status.get_condition(status.READY_CONDITION, previous)
        if (
            previous.get(status.PHASE) != new_status.get(status.PHASE)
            or old_ready.get("reason") != new_ready.get("reason")
        ):
            log.info(
                "Database [%s] is now %s (%s)",
                database.key,
                new_status[status.PHASE],
                new_ready.get("reason"),
            )
            self.status_reporter.record_event(
                database,
                event_type,
                new_ready.get("reason") or new_status[status.PHASE],
                new_ready.get("message") or new_status[status.PHASE],
                timeout=deadline.remaining,
            )
        return updated

    @staticmethod
    def _spec_summary(spec: DatabaseSpec) -> dict:
        summary = {"engine": spec.engine.value, "version": spec.version}
        if spec.backup is not None:
            summary["backup"] = spec.backup.to_dict()
        return summary

    @staticmethod
    def _is_paused(database: ManagedObject) -> bool:
        paused = database.annotations.get(constants.PAUSE_ANNOTATION_NAME)
        return bool(paused) and paused.lower() == "true"


def _with_resource_version(
    database: ManagedObject, resource_version: Optional[str]
) -> ManagedObject:
    """Copy of the Database carrying the resourceVersion of a write"""
    updated = database.copy()
    updated.metadata["resourceVersion"] = resource_version
    updated.resource_version = resource_version
    return updated


def _extra_fields(previous_status: dict) -> dict:
    """Status fields other than the ones make_status owns"""
    owned = {
        status.PHASE,
        status.OBSERVED_GENERATION,
        status.AVAILABLE_REPLICAS,
        status.ENDPOINT,
        status.CONDITIONS,
    }
    return {
        key: value for key, value in (previous_status or {}).items() if key not in owned
    }
