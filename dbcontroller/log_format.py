"""
Custom logging formats that contain more detailed controller logs
"""

# Standard
from contextlib import contextmanager
from typing import Optional
import threading

# First Party
from alog import AlogJsonFormatter
import alog

log = alog.use_channel("CTRLR")

# Resource being reconciled by the current thread
_reconcile_context = threading.local()


@contextmanager
def reconcile_context(resource: Optional[dict], attempt: int = 0):
    """Attach the resource being reconciled and the attempt number to every
    log line this thread emits inside the context
    """
    previous = getattr(_reconcile_context, "value", None)
    _reconcile_context.value = (resource, attempt)
    try:
        yield
    finally:
        _reconcile_context.value = previous


class DatabaseJsonFormatter(AlogJsonFormatter):
    """Custom Log Format that extends AlogJsonFormatter to add multiple
    controller specific fields to the json. This includes identifiers of the
    resource being reconciled, the attempt number and thread information
    """

    _FIELDS_TO_PRINT = AlogJsonFormatter._FIELDS_TO_PRINT + [
        "thread",
        "threadName",
        "kind",
        "namespace",
        "resourceName",
        "resourceVersion",
        "attempt",
    ]

    def format(self, record):
        resource, attempt = getattr(_reconcile_context, "value", None) or (None, None)
        resource = getattr(record, "resource", resource)
        if resource:
            record.kind = resource.get("kind")
            metadata = resource.get("metadata", {})
            record.namespace = metadata.get("namespace")
            record.resourceName = metadata.get("name")
            record.resourceVersion = metadata.get("resourceVersion")
        if attempt is not None:
            record.attempt = attempt

        return super().format(record)
