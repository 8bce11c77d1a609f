"""
Per-engine child templates. The set of engines is closed: every member of
Engine has exactly one EngineProfile and desired_children renders the same
manifests for the same spec every time.
"""

# Standard
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple
import secrets

# First Party
import alog

# Local
from . import constants
from .managed_object import ManagedObject

if TYPE_CHECKING:
    # Local
    from .database import DatabaseSpec

log = alog.use_channel("ENGIN")


class Engine(Enum):
    """The supported database engines"""

    POSTGRES = "postgres"
    MYSQL = "mysql"
    MONGODB = "mongodb"
    REDIS = "redis"

    @classmethod
    def values(cls) -> List[str]:
        return [member.value for member in cls]


@dataclass(frozen=True)
class ConfigFile:
    """An engine configuration file shipped in the config ConfigMap"""

    file_name: str
    mount_path: str
    contents: str


@dataclass(frozen=True)
class EngineProfile:
    """Everything that differs between engines when rendering children"""

    port: int
    data_path: str
    password_env: str
    username: str
    env: Dict[str, str] = field(default_factory=dict)
    username_env: Optional[str] = None
    config_file: Optional[ConfigFile] = None
    args: Tuple[str, ...] = ()


ENGINE_PROFILES: Dict[Engine, EngineProfile] = {
    Engine.POSTGRES: EngineProfile(
        port=5432,
        data_path="/var/lib/postgresql/data",
        password_env="POSTGRES_PASSWORD",
        username="postgres",
        username_env="POSTGRES_USER",
        env={"PGDATA": "/var/lib/postgresql/data/pgdata"},
        config_file=ConfigFile(
            file_name="postgresql.conf",
            mount_path="/etc/postgresql",
            contents="\n".join(
                [
                    "listen_addresses = '*'",
                    "max_connections = 100",
                    "shared_buffers = 128MB",
                    "",
                ]
            ),
        ),
        args=("-c", "config_file=/etc/postgresql/postgresql.conf"),
    ),
    Engine.MYSQL: EngineProfile(
        port=3306,
        data_path="/var/lib/mysql",
        password_env="MYSQL_ROOT_PASSWORD",
        username="root",
        config_file=ConfigFile(
            file_name="my.cnf",
            mount_path="/etc/mysql/conf.d",
            contents="\n".join(
                [
                    "[mysqld]",
                    "bind-address = 0.0.0.0",
                    "max_connections = 151",
                    "",
                ]
            ),
        ),
    ),
    Engine.MONGODB: EngineProfile(
        port=27017,
        data_path="/data/db",
        password_env="MONGO_INITDB_ROOT_PASSWORD",
        username="admin",
        username_env="MONGO_INITDB_ROOT_USERNAME",
    ),
    Engine.REDIS: EngineProfile(
        port=6379,
        data_path="/data",
        password_env="REDIS_PASSWORD",
        username="default",
        config_file=ConfigFile(
            file_name="redis.conf",
            mount_path="/usr/local/etc/redis",
            contents="\n".join(
                [
                    "bind 0.0.0.0",
                    "appendonly yes",
                    "dir /data",
                    "",
                ]
            ),
        ),
        args=(
            "redis-server",
            "/usr/local/etc/redis/redis.conf",
            "--requirepass",
            "$(REDIS_PASSWORD)",
        ),
    ),
}

# Every engine must be renderable
assert set(ENGINE_PROFILES) == set(Engine), "Missing engine profile for: " + ", ".join(
    engine.value for engine in set(Engine) - set(ENGINE_PROFILES)
)

## Child names #################################################################

COMPONENT_DATABASE = "database"
COMPONENT_STORAGE = "storage"
COMPONENT_CONFIG = "config"
COMPONENT_CREDENTIALS = "credentials"

PASSWORD_KEY = "password"
USERNAME_KEY = "username"


def data_volume_name(name: str) -> str:
    return f"{name}-data"


def config_map_name(name: str) -> str:
    return f"{name}-config"


def credentials_name(name: str) -> str:
    return f"{name}-credentials"


def endpoint(name: str, namespace: str, engine: Engine) -> str:
    """The in-cluster address clients use to reach the Database"""
    return f"{name}.{namespace}.svc.cluster.local:{ENGINE_PROFILES[engine].port}"


## Templates ###################################################################


def desired_children(
    owner: ManagedObject,
    spec: "DatabaseSpec",
    images: Dict[str, str],
    storage_class: str = "",
) -> List[dict]:
    """Render the children of a Database. This is a pure function of its
    arguments.

    Args:
        owner:  ManagedObject
            The Database the children belong to
        spec:  DatabaseSpec
            The validated spec
        images:  Dict[str, str]
            Image repository per engine name
        storage_class:  str
            StorageClass for the data volume. Empty for the cluster default.

    Returns:
        children:  List[dict]
            The desired manifests in apply order
    """
    profile = ENGINE_PROFILES[spec.engine]
    name = owner.name
    namespace = owner.namespace
    image = f"{images[spec.engine.value]}:{spec.version}"
    log.debug2("Rendering %s children for [%s] with %s", spec.engine.value, owner.key, image)

    children = [_credentials(name, namespace, spec.engine, profile)]
    if profile.config_file is not None:
        children.append(_config_map(name, namespace, spec.engine, profile.config_file))
    children.extend(
        [
            _data_volume(name, namespace, spec, storage_class),
            _stateful_set(name, namespace, spec.engine, profile, image),
            _service(name, namespace, spec.engine, profile),
        ]
    )
    return children


def is_create_only(manifest: dict) -> bool:
    """Children marked create-only are never rewritten once they exist"""
    annotations = manifest.get("metadata", {}).get("annotations") or {}
    return annotations.get(constants.CREATE_ONLY_ANNOTATION) == "true"


def fill_credentials(manifest: dict) -> dict:
    """Generate a password into a credentials Secret that is about to be
    created
    """
    string_data = manifest.setdefault("stringData", {})
    if not string_data.get(PASSWORD_KEY):
        string_data[PASSWORD_KEY] = secrets.token_urlsafe(24)
    return manifest


## Health ######################################################################


def is_child_healthy(manifest: dict) -> bool:
    """Determine whether an existing child reports itself ready"""
    kind = manifest.get("kind")
    status = manifest.get("status") or {}
    if kind == "StatefulSet":
        replicas = manifest.get("spec", {}).get("replicas", 1)
        generation = manifest.get("metadata", {}).get("generation", 0)
        return (
            status.get("readyReplicas", 0) >= replicas
            and status.get("observedGeneration", 0) >= generation
        )
    if kind == "PersistentVolumeClaim":
        return status.get("phase") == "Bound"
    return True


def available_replicas(children: List[dict]) -> int:
    """Number of ready database replicas among the children"""
    for child in children:
        if child.get("kind") == "StatefulSet":
            return (child.get("status") or {}).get("readyReplicas", 0)
    return 0


## Implementation Details ######################################################


def _labels(name: str, engine: Engine, component: str) -> dict:
    return {
        constants.INSTANCE_LABEL: name,
        constants.MANAGED_BY_LABEL: constants.CONTROLLER_NAME,
        constants.COMPONENT_LABEL: component,
        constants.ENGINE_LABEL: engine.value,
    }


def _metadata(name: str, namespace: str, labels: dict, **kwargs) -> dict:
    return {"name": name, "namespace": namespace, "labels": labels, **kwargs}


def _credentials(name: str, namespace: str, engine: Engine, profile: EngineProfile):
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _metadata(
            credentials_name(name),
            namespace,
            _labels(name, engine, COMPONENT_CREDENTIALS),
            annotations={constants.CREATE_ONLY_ANNOTATION: "true"},
        ),
        "type": "Opaque",
        "stringData": {USERNAME_KEY: profile.username},
    }


def _config_map(name: str, namespace: str, engine: Engine, config_file: ConfigFile):
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(
            config_map_name(name), namespace, _labels(name, engine, COMPONENT_CONFIG)
        ),
        "data": {config_file.file_name: config_file.contents},
    }


def _data_volume(name: str, namespace: str, spec: "DatabaseSpec", storage_class: str):
    pvc_spec = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": spec.storage_size}},
    }
    if storage_class:
        pvc_spec["storageClassName"] = storage_class
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": _metadata(
            data_volume_name(name),
            namespace,
            _labels(name, spec.engine, COMPONENT_STORAGE),
        ),
        "spec": pvc_spec,
    }


def _secret_env(env_name: str, secret_name: str, key: str) -> dict:
    return {
        "name": env_name,
        "valueFrom": {"secretKeyRef": {"name": secret_name, "key": key}},
    }


def _stateful_set(
    name: str,
    namespace: str,
    engine: Engine,
    profile: EngineProfile,
    image: str,
):  # pylint: disable=too-many-arguments
    selector = {
        constants.INSTANCE_LABEL: name,
        constants.COMPONENT_LABEL: COMPONENT_DATABASE,
    }
    secret_name = credentials_name(name)
    env = [_secret_env(profile.password_env, secret_name, PASSWORD_KEY)]
    if profile.username_env:
        env.append(_secret_env(profile.username_env, secret_name, USERNAME_KEY))
    env.extend({"name": key, "value": value} for key, value in sorted(profile.env.items()))

    volume_mounts = [{"name": "data", "mountPath": profile.data_path}]
    volumes = [
        {
            "name": "data",
            "persistentVolumeClaim": {"claimName": data_volume_name(name)},
        }
    ]
    if profile.config_file is not None:
        volume_mounts.append(
            {"name": "config", "mountPath": profile.config_file.mount_path}
        )
        volumes.append({"name": "config", "configMap": {"name": config_map_name(name)}})

    container = {
        "name": engine.value,
        "image": image,
        "ports": [{"name": engine.value, "containerPort": profile.port}],
        "env": env,
        "volumeMounts": volume_mounts,
    }
    if profile.args:
        container["args"] = list(profile.args)

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _metadata(name, namespace, _labels(name, engine, COMPONENT_DATABASE)),
        "spec": {
            "replicas": 1,
            "serviceName": name,
            "selector": {"matchLabels": selector},
            "template": {
                "metadata": {"labels": {**selector, constants.ENGINE_LABEL: engine.value}},
                "spec": {"containers": [container], "volumes": volumes},
            },
        },
    }


def _service(name: str, namespace: str, engine: Engine, profile: EngineProfile):
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(name, namespace, _labels(name, engine, COMPONENT_DATABASE)),
        "spec": {
            "selector": {
                constants.INSTANCE_LABEL: name,
                constants.COMPONENT_LABEL: COMPONENT_DATABASE,
            },
            "ports": [
                {
                    "name": engine.value,
                    "port": profile.port,
                    "targetPort": profile.port,
                }
            ],
        },
    }
