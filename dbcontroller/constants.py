"""
Shared module to hold constant values for the controller
"""

# The custom resource handled by this controller
DATABASE_GROUP = "db.example.com"
DATABASE_VERSION = "v1"
DATABASE_API_VERSION = f"{DATABASE_GROUP}/{DATABASE_VERSION}"
DATABASE_KIND = "Database"

# Name reported as the field manager and event source
CONTROLLER_NAME = "dbcontroller"

# (apiVersion, kind) of every child type a Database may own. The order is the
# apply order; deletion runs in reverse.
CHILD_RESOURCE_TYPES = [
    ("v1", "Secret"),
    ("v1", "ConfigMap"),
    ("v1", "PersistentVolumeClaim"),
    ("apps/v1", "StatefulSet"),
    ("v1", "Service"),
]

# Labels stamped on every owned child. The instance label is the lookup index
# used to find the children of a given Database.
INSTANCE_LABEL = "app.kubernetes.io/instance"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
COMPONENT_LABEL = "app.kubernetes.io/component"
ENGINE_LABEL = "db.example.com/engine"

# Children carrying this annotation are only ever created, never rewritten
CREATE_ONLY_ANNOTATION = "db.example.com/create-only"

# Pause annotation. A paused Database is skipped by the reconciler.
PAUSE_ANNOTATION_NAME = "db.example.com/pause-reconcile"

# Default namespace if none given
DEFAULT_NAMESPACE = "default"

# Delimiter used for nested dict keys
NESTED_DICT_DELIM = "."

# Event types understood by the core/v1 Event API
EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"
