"""
This is the main entrypoint command for running the controller
"""
# Standard
from typing import List, Optional
import argparse
import os
import signal
import sys

# Third Party
import yaml

# First Party
import alog

# Local
from .. import config, constants
from ..context import ControllerContext, ControllerSettings
from ..manager import ControllerManager
from ..reconciler import Reconciler, ResultKind
from ..store import DryRunStore, OpenshiftStore, ResourceStoreBase
from .base import CmdBase

log = alog.use_channel("MAIN")

# Upper bound of reconcile passes per Database when running --once
MAX_ONCE_PASSES = 10


class RunControllerCmd(CmdBase):
    __doc__ = __doc__

    ## Interface ##

    def add_subparser(
        self,
        subparsers: argparse._SubParsersAction,
    ) -> argparse.ArgumentParser:
        parser = subparsers.add_parser("run", help=__doc__)
        runtime_args = parser.add_argument_group("Runtime Configuration")
        runtime_args.add_argument(
            "--namespace",
            "-n",
            default=None,
            help="Comma-separated namespaces to watch. Overrides watch_namespace.",
        )
        runtime_args.add_argument(
            "--cr",
            "-c",
            default=None,
            help="(dry run) A Database manifest yaml to apply directly",
        )
        runtime_args.add_argument(
            "--resource_dir",
            "-r",
            default=None,
            help="(dry run) Path to a directory of yaml files that should exist in the cluster",
        )
        runtime_args.add_argument(
            "--once",
            action="store_true",
            default=False,
            help="(dry run) Reconcile every Database until it settles, print the "
            "resulting status and exit",
        )
        return parser

    def cmd(self, args: argparse.Namespace):
        # Validate args
        assert args.cr is None or (
            config.dry_run and os.path.isfile(args.cr)
        ), "Can only specify --cr with dry run and it must point to a valid file"
        assert args.resource_dir is None or (
            config.dry_run and os.path.isdir(args.resource_dir)
        ), "Can only specify --resource_dir with dry run and it must point to a valid directory"
        assert not args.once or config.dry_run, "Can only specify --once with dry run"

        if args.namespace is not None:
            config.library_config["watch_namespace"] = args.namespace

        # Parse pre-populated resources if needed
        resources = self._parse_resource_dir(args.resource_dir)
        if args.cr:
            log.info("Applying CR [%s]", args.cr)
            resources.extend(self._parse_yaml_file(args.cr))

        store = self._setup_store(resources)
        context = ControllerContext.create(store, settings=ControllerSettings.from_config())

        if args.once:
            self._run_once(context)
            return

        manager = ControllerManager(context)

        # Register the signal handlers to stop the threads
        def do_stop(*_, **__):  # pragma: no cover
            manager.stop()

        signal.signal(signal.SIGINT, do_stop)
        signal.signal(signal.SIGTERM, do_stop)

        log.info("Starting controller")
        manager.run()

        # All done!
        log.info("SHUTTING DOWN")
        if manager.failed_watch is not None:
            sys.exit(1)

    ## Impl ##

    @staticmethod
    def _setup_store(resources: List[dict]) -> ResourceStoreBase:
        if config.dry_run:
            log.info("Running DRY RUN")
            return DryRunStore(resources=resources, auto_ready=True)
        return OpenshiftStore()

    @staticmethod
    def _run_once(context: ControllerContext):
        """Reconcile every Database in the store until it settles and print the
        resulting statuses
        """
        reconciler = Reconciler(context)
        databases = []
        for namespace in context.settings.namespaces:
            objects, _ = context.store.list_objects(
                constants.DATABASE_KIND, constants.DATABASE_API_VERSION, namespace
            )
            databases.extend(objects)

        for database in databases:
            for attempt in range(MAX_ONCE_PASSES):
                result = reconciler.reconcile(database.key, attempt=attempt)
                log.debug("Pass %d of [%s]: %s", attempt, database.key, result.kind.value)
                if result.kind in [ResultKind.DROP, ResultKind.TERMINAL]:
                    break
                if result.kind == ResultKind.DONE and result.requeue_after in [
                    None,
                    context.settings.resync_period,
                ]:
                    break

            current = context.store.get(database.key)
            if current is not None:
                print(
                    yaml.safe_dump(
                        {str(database.key): current.status}, default_flow_style=False
                    )
                )

    @classmethod
    def _parse_resource_dir(cls, resource_dir: Optional[str]) -> List[dict]:
        """If given, this will parse all yaml files found in the given directory"""
        all_resources = []
        if resource_dir is not None:
            for fname in sorted(os.listdir(resource_dir)):
                if fname.endswith(".yaml") or fname.endswith(".yml"):
                    resource_path = os.path.join(resource_dir, fname)
                    log.debug3("Reading resource file [%s]", resource_path)
                    all_resources.extend(cls._parse_yaml_file(resource_path))
        return all_resources

    @staticmethod
    def _parse_yaml_file(path: str) -> List[dict]:
        with open(path, encoding="utf-8") as handle:
            resources = [doc for doc in yaml.safe_load_all(handle) if doc]
        for resource in resources:
            resource.setdefault("metadata", {}).setdefault(
                "namespace", constants.DEFAULT_NAMESPACE
            )
        return resources
