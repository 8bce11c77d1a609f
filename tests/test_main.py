"""
Tests for the __main__.py entrypoint to the library as an executable
"""

# Standard
from datetime import datetime, timedelta
import argparse

# Third Party
import pytest
import yaml

# First Party
import aconfig
import alog

# Local
from dbcontroller import config
from dbcontroller.__main__ import add_library_config_args, main
from dbcontroller.manager.threads import HeartbeatThread
from dbcontroller.test_helpers.helpers import (
    configure_logging,
    library_config,
    make_database,
)

log = alog.use_channel("TEST")

## Helpers #####################################################################


@pytest.fixture(autouse=True)
def restore_logging():
    """main reconfigures logging from the library config"""
    yield
    configure_logging()


def write_beat(path, age_seconds=0):
    beat = datetime.now() - timedelta(seconds=age_seconds)
    path.write_text(beat.strftime(HeartbeatThread._DATE_FORMAT))
    return str(path)


## Library config args #########################################################


def test_library_config_args():
    """Every config value gets an override flag named by its dotted path"""
    parser = argparse.ArgumentParser()
    config_obj = aconfig.Config(
        {"count": 1, "nested": {"name": "x"}, "flag": False, "items": ["a"]},
        override_env_vars=False,
    )
    setters = add_library_config_args(parser, config_obj=config_obj)
    assert setters == {
        "count": ["count"],
        "nested_name": ["nested", "name"],
        "flag": ["flag"],
        "items": ["items"],
    }

    args = parser.parse_args(
        ["--count", "3", "--nested.name", "y", "--flag", "--items", "b", "c"]
    )
    assert args.count == 3
    assert args.nested_name == "y"
    assert args.flag is True
    assert args.items == ["b", "c"]

    defaults = parser.parse_args([])
    assert defaults.count == 1
    assert defaults.flag is False


def test_library_config_override():
    with library_config(max_concurrent_reconciles=4):
        with pytest.raises(FileNotFoundError):
            main(
                [
                    "check-heartbeat",
                    "--delta",
                    "10",
                    "--file",
                    "/some/file",
                    "--max_concurrent_reconciles",
                    "8",
                ]
            )
        assert config.max_concurrent_reconciles == 8
    assert config.max_concurrent_reconciles == 4


## Run command #################################################################


def test_run_is_default_command(tmp_path, capsys):
    """Without a subcommand the controller runs"""
    cr_file = tmp_path / "cr.yaml"
    cr_file.write_text(yaml.safe_dump(make_database()))
    with library_config(dry_run=False, watch_namespace=""):
        main(["--dry_run", "--once", "--cr", str(cr_file)])
        assert config.dry_run
    status = yaml.safe_load(capsys.readouterr().out)
    assert status["test/orders"]["phase"] == "Running"


def test_run_explicit_command(tmp_path, capsys):
    cr_file = tmp_path / "cr.yaml"
    cr_file.write_text(yaml.safe_dump(make_database(version="not a version")))
    with library_config(dry_run=True, watch_namespace=""):
        main(["run", "--once", "--cr", str(cr_file)])
    status = yaml.safe_load(capsys.readouterr().out)
    assert status["test/orders"]["phase"] == "Failed"


def test_cr_without_dry_run(tmp_path):
    cr_file = tmp_path / "cr.yaml"
    cr_file.write_text(yaml.safe_dump(make_database()))
    with library_config(dry_run=False):
        with pytest.raises(AssertionError):
            main(["--cr", str(cr_file)])


## Health Check CMD ############################################################


def test_valid_health_check(tmp_path):
    beat_file = write_beat(tmp_path / "heartbeat.txt")
    main(["check-heartbeat", "--file", beat_file, "--delta", "120"])


def test_too_old_health_check(tmp_path):
    beat_file = write_beat(tmp_path / "heartbeat.txt", age_seconds=100)
    with pytest.raises(KeyError):
        main(["check-heartbeat", "--file", beat_file, "--delta", "10"])


def test_no_file_health_check():
    with pytest.raises(FileNotFoundError):
        main(["check-heartbeat", "--file", "/some/file", "--delta", "10"])
