"""
Parsing and validation of the Database spec. A spec that passes parse_spec can
always be turned into a set of children; one that fails carries the condition
reason to report.
"""

# Standard
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union
import re

# First Party
import alog

# Local
from .engines import Engine
from .exceptions import assert_valid
from .utils import to_quantity

log = alog.use_channel("DBSPC")

## Condition reasons ###########################################################

INVALID_ENGINE = "InvalidEngine"
INVALID_VERSION = "InvalidVersion"
INVALID_STORAGE_SIZE = "InvalidStorageSize"
INVALID_BACKUP = "InvalidBackup"

## Patterns ####################################################################

VERSION_PATTERN = re.compile(r"^\d+(\.\d+){0,2}$")
RETENTION_PATTERN = re.compile(r"^[1-9]\d*[hdw]?$")
CRON_MACROS = {
    "@yearly",
    "@annually",
    "@monthly",
    "@weekly",
    "@daily",
    "@midnight",
    "@hourly",
}
CRON_FIELD_PATTERN = re.compile(r"^[\d*/,\-A-Za-z?]+$")


@dataclass(frozen=True)
class BackupSpec:
    """Backup settings of a Database. These are descriptive only and are
    reported back in the status.
    """

    schedule: str
    retention: Optional[Union[int, str]] = None

    def to_dict(self) -> dict:
        out = {"schedule": self.schedule}
        if self.retention is not None:
            out["retention"] = self.retention
        return out


@dataclass(frozen=True)
class DatabaseSpec:
    """Validated desired state of a Database"""

    engine: Engine
    version: str
    storage_size: str
    storage_bytes: Decimal
    backup: Optional[BackupSpec] = None


def parse_spec(spec: dict) -> DatabaseSpec:
    """Validate a raw Database spec

    Args:
        spec:  dict
            The spec section of the Database

    Returns:
        database_spec:  DatabaseSpec
            The validated spec

    Raises:
        ValidationError: with the reason of the first problem found
    """
    assert_valid(isinstance(spec, dict), "spec must be an object", INVALID_ENGINE)

    engine_name = spec.get("engine")
    assert_valid(
        isinstance(engine_name, str) and engine_name in Engine.values(),
        f"Unsupported engine {engine_name!r}. Supported engines: "
        + ", ".join(Engine.values()),
        INVALID_ENGINE,
    )

    version = spec.get("version")
    assert_valid(
        isinstance(version, str) and VERSION_PATTERN.match(version) is not None,
        f"Invalid version {version!r}. Expected a version like 15, 15.3 or 15.3.1",
        INVALID_VERSION,
    )

    storage_size = spec.get("storageSize")
    storage_bytes = to_quantity(storage_size) if isinstance(storage_size, str) else None
    assert_valid(
        storage_bytes is not None and storage_bytes > 0,
        f"Invalid storageSize {storage_size!r}. Expected a positive quantity like 20Gi",
        INVALID_STORAGE_SIZE,
    )

    backup = _parse_backup(spec.get("backup"))
    log.debug3("Parsed spec %s %s with %s", engine_name, version, storage_size)
    return DatabaseSpec(
        engine=Engine(engine_name),
        version=version,
        storage_size=storage_size,
        storage_bytes=storage_bytes,
        backup=backup,
    )


## Implementation Details ######################################################


def _parse_backup(backup) -> Optional[BackupSpec]:
    if backup is None:
        return None
    assert_valid(isinstance(backup, dict), "backup must be an object", INVALID_BACKUP)

    schedule = backup.get("schedule")
    assert_valid(
        isinstance(schedule, str) and _is_cron(schedule),
        f"Invalid backup schedule {schedule!r}. Expected a cron expression",
        INVALID_BACKUP,
    )

    retention = backup.get("retention")
    if retention is not None:
        valid = (
            isinstance(retention, int)
            and not isinstance(retention, bool)
            and retention > 0
        ) or (isinstance(retention, str) and RETENTION_PATTERN.match(retention))
        assert_valid(
            bool(valid),
            f"Invalid backup retention {retention!r}. Expected a count like 7 or a "
            "duration like 7d",
            INVALID_BACKUP,
        )
    return BackupSpec(schedule=schedule, retention=retention)


def _is_cron(schedule: str) -> bool:
    schedule = schedule.strip()
    if schedule in CRON_MACROS:
        return True
    fields = schedule.split()
    return len(fields) == 5 and all(CRON_FIELD_PATTERN.match(field) for field in fields)
