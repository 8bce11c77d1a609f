"""
Tests for the run command
"""

# Standard
from unittest import mock
import argparse

# Third Party
import pytest
import yaml

# Local
from dbcontroller import config
from dbcontroller.cmd import RunControllerCmd
from dbcontroller.store import DryRunStore, OpenshiftStore
from dbcontroller.test_helpers.helpers import (
    library_config,
    make_database,
)

## Helpers #####################################################################


def parse(*argv):
    parser = argparse.ArgumentParser()
    subparsers = parser.add_subparsers(dest="command")
    RunControllerCmd().register(subparsers)
    return parser.parse_args(["run", *argv])


def write_yaml(path, *docs):
    path.write_text(yaml.safe_dump_all(docs))
    return str(path)


## Argument validation #########################################################


@pytest.mark.parametrize(
    "argv",
    [
        ["--cr", "some/bad/file.yaml"],
        ["--resource_dir", "some/bad/path"],
        ["--once"],
    ],
)
def test_dry_run_only_args(argv):
    with library_config(dry_run=False):
        args = parse(*argv)
        with pytest.raises(AssertionError):
            args.func(args)


def test_cr_must_be_file(tmp_path):
    with library_config(dry_run=True):
        args = parse("--cr", str(tmp_path))
        with pytest.raises(AssertionError):
            args.func(args)


def test_cr_not_yaml(tmp_path):
    bad_file = tmp_path / "bad.yaml"
    bad_file.write_text("{not\nyaml\n  really")
    with library_config(dry_run=True):
        args = parse("--cr", str(bad_file), "--once")
        with pytest.raises(yaml.YAMLError):
            args.func(args)


## Resource parsing ############################################################


def test_parse_resource_dir(tmp_path):
    """Only yaml files are read and the namespace defaults to default"""
    write_yaml(tmp_path / "b.yaml", make_database(name="second"))
    write_yaml(
        tmp_path / "a.yml",
        make_database(name="first", namespace="prod"),
        make_database(name="extra"),
    )
    (tmp_path / "notes.txt").write_text("ignored")
    first = make_database(name="unnamespaced")
    del first["metadata"]["namespace"]
    write_yaml(tmp_path / "c.yaml", first)

    resources = RunControllerCmd._parse_resource_dir(str(tmp_path))
    assert [
        (res["metadata"]["namespace"], res["metadata"]["name"]) for res in resources
    ] == [
        ("prod", "first"),
        ("test", "extra"),
        ("test", "second"),
        ("default", "unnamespaced"),
    ]


def test_setup_store():
    with library_config(dry_run=True):
        store = RunControllerCmd._setup_store([make_database()])
        assert isinstance(store, DryRunStore)
        assert store.auto_ready
    with library_config(dry_run=False):
        assert isinstance(RunControllerCmd._setup_store([]), OpenshiftStore)


## Running #####################################################################


def test_once_prints_status(tmp_path, capsys):
    """--once reconciles every Database until it settles"""
    resource_dir = tmp_path / "resources"
    resource_dir.mkdir()
    write_yaml(resource_dir / "other.yaml", make_database(name="inventory", engine="redis"))
    cr_file = write_yaml(tmp_path / "cr.yaml", make_database(spec={"engine": "oracle"}))

    with library_config(dry_run=True, watch_namespace=""):
        args = parse("--once", "--cr", cr_file, "--resource_dir", str(resource_dir))
        args.func(args)

    printed = {}
    for doc in yaml.safe_load_all(capsys.readouterr().out):
        if doc:
            printed.update(doc)
    assert printed["test/inventory"]["phase"] == "Running"
    assert printed["test/inventory"]["engine"] == "redis"
    assert printed["test/orders"]["phase"] == "Failed"


def test_namespace_arg_limits_watch(tmp_path, capsys):
    cr_file = write_yaml(
        tmp_path / "cr.yaml",
        make_database(name="seen", namespace="prod"),
        make_database(name="unseen", namespace="dev"),
    )
    with library_config(dry_run=True, watch_namespace=""):
        args = parse("--once", "--cr", cr_file, "--namespace", "prod")
        args.func(args)
        assert config.watch_namespace == "prod"

    out = capsys.readouterr().out
    assert "prod/seen" in out
    assert "dev/unseen" not in out


@pytest.mark.parametrize(["failed_watch", "exits"], [(None, False), ("watch", True)])
def test_runs_manager(failed_watch, exits):
    """Without --once the manager runs until stopped and a failed watch makes
    the process exit non-zero
    """
    with library_config(dry_run=False, watch_namespace=""):
        with mock.patch(
            "dbcontroller.cmd.run_controller_cmd.ControllerManager"
        ) as manager_class, mock.patch(
            "dbcontroller.cmd.run_controller_cmd.signal.signal"
        ) as signal_mock:
            manager_class.return_value.failed_watch = failed_watch
            args = parse()
            if exits:
                with pytest.raises(SystemExit) as exc_info:
                    args.func(args)
                assert exc_info.value.code == 1
            else:
                args.func(args)

    manager_class.return_value.run.assert_called_once()
    context = manager_class.call_args.args[0]
    assert isinstance(context.store, OpenshiftStore)
    assert signal_mock.call_count == 2
