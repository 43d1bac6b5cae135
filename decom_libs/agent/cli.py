"""Command line of the cleanup agent.

Usage:
    python3 -m decom_libs.agent clean job          # in the cleanup job pod, starts the host cleanup container
    python3 -m decom_libs.agent clean node         # in the host cleanup container, cleans up the host
    python3 -m decom_libs.agent clean step Paths   # runs a single cleanup step
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import PurePath, PurePosixPath, PureWindowsPath

import docker
import docker.errors

from decom_libs.agent.job import CleanupJobRunner
from decom_libs.agent.node import HostCleaner
from decom_libs.cleanup.gateway import GatewayError, LocalHelperGateway
from decom_libs.cleanup.scripts import CleanupScriptError, CleanupStepName, get_cleanup_script
from decom_libs.config import DecomConfig
from decom_libs.k8s.nodes import NodeOS

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def get_default_node_os() -> NodeOS:
    """The NODE_OS set by the cleanup job, or the one we are running on."""
    from_env = os.environ.get("NODE_OS")
    if from_env:
        return NodeOS.from_label(from_env)

    return NodeOS.WINDOWS if sys.platform == "win32" else NodeOS.LINUX


def argument_parser() -> argparse.ArgumentParser:
    """Parser for the agent command line."""
    parser = argparse.ArgumentParser(prog="decom_libs.agent", description=__doc__.splitlines()[0])
    parser.add_argument(
        "--node-os",
        choices=list(NodeOS),
        type=NodeOS,
        default=get_default_node_os(),
        help="Operating system of the node being cleaned up (default: %(default)s).",
    )
    parser.add_argument(
        "--host-root",
        default=None,
        help="Where the host filesystem is mounted (default: /host on linux, c:\\host on windows).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug logs.")

    subparsers = parser.add_subparsers(dest="command", required=True)
    clean_parser = subparsers.add_parser("clean", help="Clean up the node.")
    clean_subparsers = clean_parser.add_subparsers(dest="target", required=True)
    clean_subparsers.add_parser("job", help="Start the host cleanup container, if not started already.")
    clean_subparsers.add_parser("node", help="Run the whole host cleanup.")
    step_parser = clean_subparsers.add_parser("step", help="Run a single host cleanup step.")
    step_parser.add_argument("step", choices=list(CleanupStepName), type=CleanupStepName)
    return parser


def _host_root(args: argparse.Namespace) -> PurePath | None:
    if args.host_root is None:
        return None

    return PureWindowsPath(args.host_root) if args.node_os == NodeOS.WINDOWS else PurePosixPath(args.host_root)


def _get_host_cleaner(args: argparse.Namespace, client: docker.DockerClient, config: DecomConfig) -> HostCleaner:
    script = get_cleanup_script(node_os=args.node_os, config=config)
    return HostCleaner(
        client=client,
        script=script,
        gateway=LocalHelperGateway(script=script, host_root=_host_root(args)),
        managed_image_prefix=config.managed_image_prefix,
    )


def run(args: argparse.Namespace, client: docker.DockerClient, config: DecomConfig) -> int:
    """Run the parsed command."""
    if args.target == "job":
        CleanupJobRunner(client=client, config=config, node_os=args.node_os).run()
        return 0

    cleaner = _get_host_cleaner(args=args, client=client, config=config)
    try:
        if args.target == "node":
            cleaner.run()
        else:
            if not args.step.runs_in_agent:
                cleaner.gateway.install_script()
            cleaner.run_step(args.step)
    except (CleanupScriptError, GatewayError) as error:
        LOGGER.error("Host cleanup failed: %s", error)
        return 1

    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point."""
    args = argument_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)
    config = DecomConfig.from_env()

    try:
        client = docker.from_env()
    except docker.errors.DockerException as error:
        LOGGER.error("Unable to connect to the container engine: %s", error)
        return 1

    try:
        return run(args=args, client=client, config=config)
    finally:
        client.close()
