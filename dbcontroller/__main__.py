#!/usr/bin/env python
"""
The main module provides the executable entrypoint for dbcontroller
"""

# Standard
from typing import Dict, List
import argparse
import sys

# First Party
import aconfig
import alog

# Local
from .cmd import CheckHeartbeatCmd, CmdBase, RunControllerCmd
from .config import configure_logging, library_config

## Constants ###################################################################

log = alog.use_channel("MAIN")

## Helpers #####################################################################


def add_library_config_args(parser, config_obj=None, path=None) -> Dict[str, List[str]]:
    """Automatically add args for all elements of the library config. Nested
    keys are addressed as --<dotted.key>.
    """
    path = path or []
    setters = {}
    config_obj = config_obj or library_config
    for key, val in config_obj.items():
        sub_path = path + [key]

        # If this is a nested arg, recurse
        if isinstance(val, aconfig.AttributeAccessDict):
            setters.update(
                add_library_config_args(parser, config_obj=val, path=sub_path)
            )
            continue

        arg_name = ".".join(sub_path)
        dest_name = "_".join(sub_path)
        kwargs = {
            "default": val,
            "dest": dest_name,
            "help": f"Library config override for {arg_name} (see dbcontroller.config)",
        }
        if isinstance(val, list):
            kwargs["nargs"] = "*"
        elif isinstance(val, bool):
            kwargs["action"] = "store_true"
        elif val is not None:
            kwargs["type"] = type(val)

        if (
            f"--{arg_name}"
            not in parser._option_string_actions  # pylint: disable=protected-access
        ):
            parser.add_argument(f"--{arg_name}", **kwargs)
            setters[dest_name] = sub_path
    return setters


def update_library_config(args, setters):
    """Update the library config values based on the parsed arguments"""
    for dest_name, config_path in setters.items():
        config_obj = library_config
        for part in config_path[:-1]:
            config_obj = config_obj[part]
        config_obj[config_path[-1]] = getattr(args, dest_name)


def add_command(
    subparsers: argparse._SubParsersAction,
    cmd: CmdBase,
) -> Dict[str, List[str]]:
    """Add the subparser for a command along with the library config
    overrides. Returns the config setters for the command.
    """
    parser = cmd.register(subparsers)
    library_args = parser.add_argument_group("Library Configuration")
    return add_library_config_args(library_args)


## Main ########################################################################


def main(argv=None):
    """The main module provides the executable entrypoint for dbcontroller"""
    parser = argparse.ArgumentParser(description=__doc__)

    # Add the subcommands
    subparsers = parser.add_subparsers(help="Available commands", dest="command")
    setters = {}
    for cmd in [RunControllerCmd(), CheckHeartbeatCmd()]:
        setters[cmd] = add_command(subparsers, cmd)

    # Use a preliminary parser to check for the presence of a command and fall
    # back to the run command if not found
    check_parser = argparse.ArgumentParser(add_help=False)
    check_parser.add_argument("command", nargs="?")
    check_args, _ = check_parser.parse_known_args(argv)
    if check_args.command not in subparsers.choices:
        argv = ["run"] + list(argv if argv is not None else sys.argv[1:])
    args = parser.parse_args(argv)

    # Provide overrides to the library configs
    update_library_config(args, setters[args.func.__self__])

    # Reconfigure logging
    configure_logging(library_config)

    # Run the command's function
    args.func(args)


if __name__ == "__main__":  # pragma: no cover
    main()
