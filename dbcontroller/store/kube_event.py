"""
Types for the changes yielded by a store's watch streams
"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

# Local
from ..managed_object import ManagedObject


class KubeEventType(Enum):
    """The change kinds reported by a kubernetes watch"""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class KubeWatchEvent:
    """A single change on a watch stream. For DELETED events the resource
    holds the last state the store saw.
    """

    type: KubeEventType
    resource: ManagedObject
    received: datetime = field(default_factory=datetime.now)
