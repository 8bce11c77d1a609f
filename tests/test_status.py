"""
Test the construction and management of status objects
"""

# Standard
from unittest import mock

# Third Party
import pytest

# First Party
import alog

# Local
from dbcontroller import status
from dbcontroller.managed_object import ManagedObject
from dbcontroller.status import Phase, Reason, StatusReporter
from dbcontroller.test_helpers.helpers import TEST_KEY, make_database, setup_store

log = alog.use_channel("TEST")

## Helpers #####################################################################


def strip_timestamps(res):
    for entry in res.get(status.CONDITIONS, []):
        assert status.TIMESTAMP_KEY in entry
        del entry[status.TIMESTAMP_KEY]
    return res


def condition_states(res):
    return {
        cond["type"]: cond["status"] for cond in res.get(status.CONDITIONS, [])
    }


## make_status #################################################################


def test_make_status_running():
    """Running is Ready and not Progressing"""
    res = status.make_status(
        Phase.RUNNING,
        message="All good",
        observed_generation=3,
        available_replicas=1,
        endpoint="orders.test.svc.cluster.local:5432",
    )
    assert strip_timestamps(res) == {
        status.PHASE: "Running",
        status.OBSERVED_GENERATION: 3,
        status.AVAILABLE_REPLICAS: 1,
        status.ENDPOINT: "orders.test.svc.cluster.local:5432",
        status.CONDITIONS: [
            {
                "type": status.READY_CONDITION,
                "status": "True",
                "reason": "Running",
                "message": "All good",
            },
            {
                "type": status.PROGRESSING_CONDITION,
                "status": "False",
                "reason": "Running",
                "message": "All good",
            },
        ],
    }


@pytest.mark.parametrize(
    ["phase", "expected"],
    [
        (Phase.PENDING, {"Ready": "False", "Progressing": "True"}),
        (Phase.PROVISIONING, {"Ready": "False", "Progressing": "True"}),
        (Phase.DELETING, {"Ready": "False", "Progressing": "True"}),
        (Phase.DEGRADED, {"Ready": "False", "Progressing": "False", "Degraded": "True"}),
        (Phase.FAILED, {"Ready": "False", "Progressing": "False", "Degraded": "True"}),
    ],
)
def test_make_status_conditions_per_phase(phase, expected):
    assert condition_states(status.make_status(phase)) == expected


def test_make_status_reason_override():
    res = status.make_status(Phase.FAILED, reason="InvalidEngine", message="nope")
    assert {cond["reason"] for cond in res[status.CONDITIONS]} == {"InvalidEngine"}


def test_make_status_keeps_observed_generation():
    """observedGeneration is carried over when not given"""
    previous = status.make_status(Phase.RUNNING, observed_generation=4)
    res = status.make_status(Phase.DEGRADED, previous_status=previous)
    assert res[status.OBSERVED_GENERATION] == 4


def test_make_status_extra_status():
    res = status.make_status(Phase.RUNNING, extra_status={"engine": "redis"})
    assert res["engine"] == "redis"


## merge_conditions ############################################################


def test_merge_conditions_keeps_timestamp_when_unchanged():
    previous = [
        {"type": "Ready", "status": "True", status.TIMESTAMP_KEY: "old"},
        {"type": "Progressing", "status": "False", status.TIMESTAMP_KEY: "old"},
    ]
    new = [
        {"type": "Ready", "status": "False", status.TIMESTAMP_KEY: "new"},
        {"type": "Progressing", "status": "False", status.TIMESTAMP_KEY: "new"},
    ]
    merged = status.merge_conditions(previous, new)
    assert merged[0][status.TIMESTAMP_KEY] == "new"
    assert merged[1][status.TIMESTAMP_KEY] == "old"


## status_changed ##############################################################


def test_status_changed_ignores_timestamps():
    current = status.make_status(Phase.RUNNING, observed_generation=1)
    new = status.make_status(Phase.RUNNING, observed_generation=1)
    for cond in new[status.CONDITIONS]:
        cond[status.TIMESTAMP_KEY] = "2000-01-01T00:00:00Z"
    assert not status.status_changed(current, new)


def test_status_changed_detects_phase():
    current = status.make_status(Phase.PROVISIONING)
    new = status.make_status(Phase.RUNNING, previous_status=current)
    assert status.status_changed(current, new)


def test_status_changed_non_dict():
    assert status.status_changed(None, {})


## Accessors ###################################################################


def test_get_condition_and_phase():
    res = status.make_status(Phase.DEGRADED, reason=Reason.CHILDREN_UNHEALTHY.value)
    assert status.get_condition(status.DEGRADED_CONDITION, res)["reason"] == (
        "ChildrenUnhealthy"
    )
    assert status.get_condition("Unknown", res) == {}
    assert status.get_phase(res) == Phase.DEGRADED
    assert status.get_phase({}) is None
    assert status.get_phase({status.PHASE: "Sideways"}) is None


## StatusReporter ##############################################################


def test_reporter_update_status_writes_through():
    store = setup_store()
    database = store.get(TEST_KEY)
    reporter = StatusReporter(store)
    new_status = status.make_status(Phase.PENDING)
    resource_version = reporter.update_status(
        TEST_KEY, new_status, database.resource_version
    )
    assert store.get(TEST_KEY).status == new_status
    assert store.get(TEST_KEY).resource_version == resource_version


def test_reporter_record_event_never_raises():
    """Event failures are logged and swallowed"""
    store = setup_store()
    store.inject_fault("create_event", RuntimeError("events down"))
    reporter = StatusReporter(store)
    owner = ManagedObject(make_database())
    reporter.record_event(owner, "Normal", "Testing", "first")
    reporter.record_event(owner, "Normal", "Testing", "second")
    assert [event["message"] for event in store.events] == ["second"]
    assert store.events[0]["involvedObject"]["name"] == owner.name


def test_reporter_update_status_propagates_errors():
    store = mock.MagicMock()
    store.update_status.side_effect = RuntimeError("boom")
    with pytest.raises(RuntimeError):
        StatusReporter(store).update_status(TEST_KEY, {}, "1")
