"""
The store is the abstraction in charge of interacting with the kubernetes
cluster to read Databases, apply and look up their children, write status and
watch for changes.
"""

# Local
from .base import ResourceStoreBase
from .dry_run_store import DryRunStore
from .kube_event import KubeEventType, KubeWatchEvent
from .openshift_store import OpenshiftStore
