"""
Check that the controller's heartbeat file is recent enough
"""
# Standard
from datetime import datetime, timedelta
from pathlib import Path
import argparse

# First Party
import alog

# Local
from .. import config
from ..manager.threads.heartbeat import HeartbeatThread
from .base import CmdBase

log = alog.use_channel("MAIN")


class CheckHeartbeatCmd(CmdBase):
    __doc__ = __doc__

    ## Interface ##

    def add_subparser(
        self,
        subparsers: argparse._SubParsersAction,
    ) -> argparse.ArgumentParser:
        parser = subparsers.add_parser("check-heartbeat", help=__doc__)
        runtime_args = parser.add_argument_group("Check Heartbeat Configuration")
        runtime_args.add_argument(
            "--delta",
            "-d",
            required=True,
            type=int,
            help="Max seconds allowed since the last beat",
        )
        runtime_args.add_argument(
            "--file",
            "-f",
            default=config.heartbeat_file or None,
            help="Location of the heartbeat file. Defaults to config based.",
        )
        return parser

    def cmd(self, args: argparse.Namespace):
        """Run command to validate a heartbeat file"""

        # Validate args
        assert args.delta is not None
        assert args.file, "No heartbeat file given or configured"

        # Ensure file exists
        file_path = Path(args.file)
        if not file_path.exists():
            log.error("Heartbeat check failed: %s does not exist", file_path)
            raise FileNotFoundError(str(file_path))

        # Read the most recent time from the heartbeat
        last_beat = file_path.read_text(encoding="utf-8").strip()
        last_time = datetime.strptime(
            last_beat, HeartbeatThread._DATE_FORMAT  # pylint: disable=protected-access
        )

        if last_time + timedelta(seconds=args.delta) < datetime.now():
            msg = f"Heartbeat check failed: {last_beat} is too old"
            log.error(msg)
            raise KeyError(msg)
        log.info("Heartbeat %s is healthy", last_beat)
