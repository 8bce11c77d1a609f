"""
Base class for all dbcontroller commands
"""

# Standard
import abc
import argparse


class CmdBase(abc.ABC):
    """A subcommand of the dbcontroller entrypoint"""

    @abc.abstractmethod
    def add_subparser(
        self,
        subparsers: argparse._SubParsersAction,
    ) -> argparse.ArgumentParser:
        """Add this command's argument parser subcommand

        Args:
            subparsers (argparse._SubParsersAction): The subparser section for
                the central main parser

        Returns:
            subparser (argparse.ArgumentParser): The configured parser for this
                command
        """

    @abc.abstractmethod
    def cmd(self, args: argparse.Namespace):
        """Execute the command with the parsed arguments

        Args:
            args (argparse.Namespace): The parsed command line arguments
        """

    def register(self, subparsers: argparse._SubParsersAction) -> argparse.ArgumentParser:
        """Add the subparser and route it to this command"""
        parser = self.add_subparser(subparsers)
        parser.set_defaults(func=self.cmd)
        return parser
