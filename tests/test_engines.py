"""
Tests for the per-engine child templates
"""

# Third Party
import pytest

# Local
from dbcontroller import constants, engines
from dbcontroller.database import parse_spec
from dbcontroller.engines import Engine
from dbcontroller.managed_object import ManagedObject
from dbcontroller.test_helpers.helpers import (
    TEST_NAME,
    TEST_NAMESPACE,
    make_database,
)

IMAGES = {
    "postgres": "registry.local/postgres",
    "mysql": "registry.local/mysql",
    "mongodb": "registry.local/mongo",
    "redis": "registry.local/redis",
}

## Helpers #####################################################################


def render(storage_class="", **spec_overrides):
    manifest = make_database(**spec_overrides)
    manifest["metadata"]["uid"] = "1234"
    owner = ManagedObject(manifest)
    return engines.desired_children(
        owner, parse_spec(owner.spec), IMAGES, storage_class=storage_class
    )


def by_kind(children):
    return {child["kind"]: child for child in children}


## desired_children ############################################################


def test_postgres_children():
    """Postgres renders all five children in dependency order"""
    children = render()
    assert [child["kind"] for child in children] == [
        "Secret",
        "ConfigMap",
        "PersistentVolumeClaim",
        "StatefulSet",
        "Service",
    ]
    for child in children:
        metadata = child["metadata"]
        assert metadata["namespace"] == TEST_NAMESPACE
        assert metadata["labels"][constants.INSTANCE_LABEL] == TEST_NAME
        assert metadata["labels"][constants.MANAGED_BY_LABEL] == constants.CONTROLLER_NAME


def test_mongodb_has_no_config_map():
    children = by_kind(render(engine="mongodb", version="7.0"))
    assert "ConfigMap" not in children
    container = children["StatefulSet"]["spec"]["template"]["spec"]["containers"][0]
    assert [volume["name"] for volume in container["volumeMounts"]] == ["data"]


@pytest.mark.parametrize(
    ["engine", "port"],
    [("postgres", 5432), ("mysql", 3306), ("mongodb", 27017), ("redis", 6379)],
)
def test_engine_port_and_image(engine, port):
    """The workload and service expose the engine's port and the image is
    tagged with the spec version
    """
    children = by_kind(render(engine=engine, version="7.2"))
    container = children["StatefulSet"]["spec"]["template"]["spec"]["containers"][0]
    assert container["image"] == f"{IMAGES[engine]}:7.2"
    assert container["ports"][0]["containerPort"] == port
    assert children["Service"]["spec"]["ports"][0]["port"] == port


def test_password_comes_from_secret():
    children = by_kind(render())
    container = children["StatefulSet"]["spec"]["template"]["spec"]["containers"][0]
    password_env = [env for env in container["env"] if env["name"] == "POSTGRES_PASSWORD"]
    assert password_env == [
        {
            "name": "POSTGRES_PASSWORD",
            "valueFrom": {
                "secretKeyRef": {
                    "name": engines.credentials_name(TEST_NAME),
                    "key": engines.PASSWORD_KEY,
                }
            },
        }
    ]


def test_data_volume_storage():
    """The PVC requests the spec's storage and uses the configured class"""
    pvc = by_kind(render(storageSize="50Gi"))["PersistentVolumeClaim"]
    assert pvc["spec"]["resources"]["requests"]["storage"] == "50Gi"
    assert "storageClassName" not in pvc["spec"]

    pvc = by_kind(render(storage_class="fast"))["PersistentVolumeClaim"]
    assert pvc["spec"]["storageClassName"] == "fast"


def test_render_is_pure():
    """Rendering the same spec twice yields the same manifests"""
    assert render() == render()


## Credentials #################################################################


def test_credentials_are_create_only():
    secret = by_kind(render())["Secret"]
    assert engines.is_create_only(secret)
    assert engines.PASSWORD_KEY not in secret["stringData"]
    assert not engines.is_create_only(by_kind(render())["Service"])


def test_fill_credentials_generates_password():
    secret = by_kind(render())["Secret"]
    filled = engines.fill_credentials(secret)
    password = filled["stringData"][engines.PASSWORD_KEY]
    assert len(password) >= 24
    assert engines.fill_credentials(filled)["stringData"][engines.PASSWORD_KEY] == password


## Health ######################################################################


def test_stateful_set_health():
    stateful_set = by_kind(render())["StatefulSet"]
    stateful_set["metadata"]["generation"] = 2
    assert not engines.is_child_healthy(stateful_set)

    stateful_set["status"] = {"readyReplicas": 1, "observedGeneration": 1}
    assert not engines.is_child_healthy(stateful_set)

    stateful_set["status"] = {"readyReplicas": 1, "observedGeneration": 2}
    assert engines.is_child_healthy(stateful_set)
    assert engines.available_replicas([stateful_set]) == 1


def test_pvc_health():
    pvc = by_kind(render())["PersistentVolumeClaim"]
    assert not engines.is_child_healthy(pvc)
    pvc["status"] = {"phase": "Bound"}
    assert engines.is_child_healthy(pvc)


def test_other_children_always_healthy():
    assert engines.is_child_healthy(by_kind(render())["Service"])
    assert engines.available_replicas([]) == 0


def test_endpoint():
    assert (
        engines.endpoint("orders", "prod", Engine.REDIS)
        == "orders.prod.svc.cluster.local:6379"
    )
