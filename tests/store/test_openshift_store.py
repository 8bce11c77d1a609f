"""
Tests for the OpenshiftStore
"""

# Standard
from unittest import mock

# Third Party
from kubernetes.client.exceptions import ApiException
from openshift.dynamic import exceptions as dynamic_exceptions
import pytest
import urllib3

# First Party
import alog

# Local
from dbcontroller import constants
from dbcontroller.exceptions import (
    ConflictError,
    ForbiddenError,
    ResourceNotFoundError,
    StoreUnavailableError,
)
from dbcontroller.managed_object import ManagedObject
from dbcontroller.store import KubeEventType, OpenshiftStore
from dbcontroller.test_helpers.helpers import TEST_KEY, TEST_NAMESPACE, make_database

log = alog.use_channel("TEST")

## Helpers #####################################################################


def make_owner():
    manifest = make_database()
    manifest["metadata"].update({"uid": "owner-uid", "resourceVersion": "7"})
    return ManagedObject(manifest)


def make_service(name="orders", owner_uid="owner-uid"):
    manifest = {
        "metadata": {"name": name, "namespace": TEST_NAMESPACE},
        "spec": {"ports": [{"port": 5432}]},
    }
    if owner_uid:
        manifest["metadata"]["ownerReferences"] = [{"uid": owner_uid}]
    return manifest


def response(content):
    """Mimic the ResourceInstance returned by the dynamic client"""
    resp = mock.MagicMock()
    resp.to_dict.return_value = content
    return resp


def not_found():
    return dynamic_exceptions.NotFoundError(ApiException(status=404, reason="Not Found"))


def setup_testable_store():
    """Make a store around a mocked DynamicClient. Every kind shares a single
    resource handle which is returned alongside the store.
    """
    dynamic_client = mock.MagicMock()
    handle = mock.MagicMock()
    dynamic_client.resources.get.return_value = handle
    return OpenshiftStore(dynamic_client), handle


class FakeWatch:
    """Stand in for kubernetes.watch.Watch which serves canned streams"""

    def __init__(self, *streams):
        self.streams = list(streams)
        self.calls = []
        self._stop = False

    def stream(self, func, **kwargs):
        self.calls.append(kwargs)
        result = self.streams.pop(0)
        if not self.streams:
            self._stop = True
        if isinstance(result, Exception):
            raise result
        return iter(result)

    def stop(self):
        self._stop = True


def watch_event(event_type, name, resource_version):
    manifest = make_database(name=name)
    manifest["metadata"]["resourceVersion"] = resource_version
    return {"type": event_type, "object": manifest}


## Reads #######################################################################


def test_get():
    store, handle = setup_testable_store()
    handle.get.return_value = response(make_database())
    database = store.get(TEST_KEY)
    assert database.key == TEST_KEY
    handle.get.assert_called_once_with(name=TEST_KEY.name, namespace=TEST_KEY.namespace)


def test_get_missing():
    store, handle = setup_testable_store()
    handle.get.side_effect = not_found()
    assert store.get(TEST_KEY) is None


@pytest.mark.parametrize(
    ["error", "expected"],
    [
        (ApiException(status=409, reason="Conflict"), ConflictError),
        (ApiException(status=403, reason="Forbidden"), ForbiddenError),
        (ApiException(status=404, reason="Not Found"), ResourceNotFoundError),
        (ApiException(status=500, reason="Internal"), StoreUnavailableError),
        (ApiException(status=422, reason="Unprocessable"), StoreUnavailableError),
        (urllib3.exceptions.HTTPError("connection refused"), StoreUnavailableError),
    ],
)
def test_error_translation(error, expected):
    """Client errors surface as controller errors"""
    store, handle = setup_testable_store()
    handle.status.replace.side_effect = error
    with pytest.raises(expected):
        store.update_status(TEST_KEY, {}, "1")


def test_missing_resource_handle():
    store, _ = setup_testable_store()
    store.client.resources.get.side_effect = dynamic_exceptions.ResourceNotFoundError(
        "no such kind"
    )
    with pytest.raises(StoreUnavailableError):
        store.get(TEST_KEY)


def test_list_children_filters_unowned():
    """Only labeled objects owned by this Database come back, with their type
    filled in
    """
    store, handle = setup_testable_store()
    handle.get.side_effect = lambda **_: response(
        {"items": [make_service(), make_service(name="stranger", owner_uid="other-uid")]}
    )
    children = store.list_children(make_owner())

    assert len(children) == len(constants.CHILD_RESOURCE_TYPES)
    assert {child["metadata"]["name"] for child in children} == {"orders"}
    assert {(child["apiVersion"], child["kind"]) for child in children} == set(
        constants.CHILD_RESOURCE_TYPES
    )
    for call in handle.get.call_args_list:
        assert call.kwargs == {
            "namespace": TEST_NAMESPACE,
            "label_selector": f"{constants.INSTANCE_LABEL}=orders",
        }


def test_list_objects():
    store, handle = setup_testable_store()
    handle.get.return_value = response(
        {"metadata": {"resourceVersion": "99"}, "items": [make_database()]}
    )
    objects, resource_version = store.list_objects(
        constants.DATABASE_KIND, constants.DATABASE_API_VERSION
    )
    assert [obj.name for obj in objects] == ["orders"]
    assert resource_version == "99"
    handle.get.assert_called_once_with(namespace=None)


## Writes ######################################################################


def test_apply_child():
    store, handle = setup_testable_store()
    handle.server_side_apply.return_value = response({"applied": True})
    manifest = {"apiVersion": "v1", "kind": "Service", **make_service(owner_uid=None)}

    assert store.apply_child(make_owner(), manifest) == {"applied": True}
    applied = handle.server_side_apply.call_args.args[0]
    assert applied["metadata"]["ownerReferences"][0]["uid"] == "owner-uid"
    assert applied["metadata"]["managedFields"] is None
    assert handle.server_side_apply.call_args.kwargs == {
        "name": "orders",
        "namespace": TEST_NAMESPACE,
        "field_manager": constants.CONTROLLER_NAME,
    }
    assert "ownerReferences" not in manifest["metadata"]


def test_apply_child_forces_field_conflicts():
    """A field manager conflict is resolved by taking ownership"""
    store, handle = setup_testable_store()
    conflict = dynamic_exceptions.ConflictError(ApiException(status=409, reason="Conflict"))
    handle.server_side_apply.side_effect = [conflict, response({"applied": True})]
    manifest = {"apiVersion": "v1", "kind": "Service", **make_service(owner_uid=None)}

    assert store.apply_child(make_owner(), manifest) == {"applied": True}
    assert handle.server_side_apply.call_count == 2
    assert handle.server_side_apply.call_args.kwargs["force_conflicts"] is True


def test_delete_child():
    store, handle = setup_testable_store()
    manifest = {"apiVersion": "v1", "kind": "Service", **make_service()}
    assert store.delete_child(manifest)
    handle.delete.assert_called_once_with(
        name="orders",
        namespace=TEST_NAMESPACE,
        body={"propagationPolicy": "Background"},
    )

    handle.delete.side_effect = not_found()
    assert not store.delete_child(manifest)


def test_update_status():
    store, handle = setup_testable_store()
    handle.status.replace.return_value = response({"metadata": {"resourceVersion": "8"}})
    assert store.update_status(TEST_KEY, {"phase": "Running"}, "7") == "8"
    body = handle.status.replace.call_args.kwargs["body"]
    assert body["metadata"]["resourceVersion"] == "7"
    assert body["status"] == {"phase": "Running"}


def test_update_finalizers():
    store, handle = setup_testable_store()
    handle.patch.return_value = response({"metadata": {"resourceVersion": "8"}})
    assert store.update_finalizers(TEST_KEY, ["a"], "7") == "8"
    kwargs = handle.patch.call_args.kwargs
    assert kwargs["body"] == {"metadata": {"finalizers": ["a"], "resourceVersion": "7"}}
    assert kwargs["content_type"] == "application/merge-patch+json"


def test_update_finalizers_releases_deleted():
    store, handle = setup_testable_store()
    handle.patch.return_value = response(
        {"metadata": {"resourceVersion": "8", "deletionTimestamp": "now"}}
    )
    assert store.update_finalizers(TEST_KEY, [], "7") is None


def test_create_event():
    store, handle = setup_testable_store()
    store.create_event(make_owner(), "Warning", "InvalidEngine", "nope")
    kwargs = handle.create.call_args.kwargs
    assert kwargs["namespace"] == TEST_NAMESPACE
    body = kwargs["body"]
    assert body["involvedObject"]["uid"] == "owner-uid"
    assert body["type"] == "Warning"
    assert body["reason"] == "InvalidEngine"
    assert body["metadata"]["generateName"] == "orders."


def test_request_timeout_forwarded():
    """A timeout bounds each request, no timeout leaves the client default"""
    store, handle = setup_testable_store()
    handle.get.return_value = response(make_database())
    store.get(TEST_KEY, timeout=2.0)
    assert handle.get.call_args.kwargs["_request_timeout"] == 2.0

    store.get(TEST_KEY)
    assert "_request_timeout" not in handle.get.call_args.kwargs

    handle.patch.return_value = response({"metadata": {"resourceVersion": "8"}})
    store.update_finalizers(TEST_KEY, ["a"], "7", timeout=1.5)
    assert handle.patch.call_args.kwargs["_request_timeout"] == 1.5

    handle.status.replace.return_value = response({"metadata": {"resourceVersion": "9"}})
    store.update_status(TEST_KEY, {"phase": "Running"}, "8", timeout=0.5)
    assert handle.status.replace.call_args.kwargs["_request_timeout"] == 0.5


def test_read_timeout_is_unavailable():
    store, handle = setup_testable_store()
    handle.get.side_effect = urllib3.exceptions.ReadTimeoutError(
        None, "/apis", "Read timed out."
    )
    with pytest.raises(StoreUnavailableError):
        store.get(TEST_KEY, timeout=0.1)


## Watch #######################################################################


def test_watch_yields_events():
    store, _ = setup_testable_store()
    watch = FakeWatch(
        [watch_event("ADDED", "a", "10"), watch_event("MODIFIED", "a", "11")]
    )
    events = list(
        store.watch_objects(
            constants.DATABASE_KIND,
            constants.DATABASE_API_VERSION,
            resource_version="9",
            watch_manager=watch,
        )
    )
    assert [event.type for event in events] == [
        KubeEventType.ADDED,
        KubeEventType.MODIFIED,
    ]
    assert watch.calls[0]["resource_version"] == "9"
    assert watch.calls[0]["namespace"] is None


def test_watch_restarts_from_last_version():
    """A dropped connection resumes from the last seen resourceVersion"""
    store, _ = setup_testable_store()
    watch = FakeWatch(
        [watch_event("ADDED", "a", "10")],
        urllib3.exceptions.ProtocolError("bad chunk"),
        [],
    )
    events = list(
        store.watch_objects(
            constants.DATABASE_KIND,
            constants.DATABASE_API_VERSION,
            namespace=TEST_NAMESPACE,
            watch_manager=watch,
        )
    )
    assert len(events) == 1
    assert [call["resource_version"] for call in watch.calls] == [None, "10", "10"]
    assert watch.calls[0]["namespace"] == TEST_NAMESPACE


def test_watch_expired_version_relists():
    store, _ = setup_testable_store()
    watch = FakeWatch(ApiException(status=410, reason="Gone"), [])
    list(
        store.watch_objects(
            constants.DATABASE_KIND,
            constants.DATABASE_API_VERSION,
            resource_version="5",
            watch_manager=watch,
        )
    )
    assert [call["resource_version"] for call in watch.calls] == ["5", None]


def test_watch_other_errors_raise():
    store, _ = setup_testable_store()
    watch = FakeWatch(ApiException(status=403, reason="Forbidden"))
    with pytest.raises(ForbiddenError):
        list(
            store.watch_objects(
                constants.DATABASE_KIND,
                constants.DATABASE_API_VERSION,
                watch_manager=watch,
            )
        )


def test_stop_watches():
    store, _ = setup_testable_store()
    watch = FakeWatch([watch_event("ADDED", "a", "10")], [])
    stream = store.watch_objects(
        constants.DATABASE_KIND,
        constants.DATABASE_API_VERSION,
        watch_manager=watch,
    )
    next(stream)
    store.stop_watches()
    assert watch._stop
    stream.close()


def test_stop_watches_by_kind():
    """Stopping one kind leaves the other streams running"""
    store, _ = setup_testable_store()
    database_watch = FakeWatch([watch_event("ADDED", "a", "10")], [])
    service_watch = FakeWatch([watch_event("ADDED", "b", "11")], [])
    database_stream = store.watch_objects(
        constants.DATABASE_KIND,
        constants.DATABASE_API_VERSION,
        namespace=TEST_NAMESPACE,
        watch_manager=database_watch,
    )
    service_stream = store.watch_objects(
        "Service", "v1", namespace=TEST_NAMESPACE, watch_manager=service_watch
    )
    next(database_stream)
    next(service_stream)

    store.stop_watches("Service", "v1", TEST_NAMESPACE)
    assert service_watch._stop
    assert not database_watch._stop

    store.stop_watches()
    assert database_watch._stop
    database_stream.close()
    service_stream.close()
