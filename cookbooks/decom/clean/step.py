r"""Decom - Run host cleanup steps on a linux host over cumin

Useful to finish by hand the cleanup of a host whose cleanup job did not complete. It installs the cleanup script
on the host and runs the given steps (all the script ones by default) in order.

Usage example:
    cookbook decom.clean.step \
        --host toolsbeta-test-worker-4.toolsbeta.eqiad1.wikimedia.cloud \
        --step Paths --step Network
"""
from __future__ import annotations

import argparse
import logging
from dataclasses import replace

from spicerack import Spicerack
from spicerack.cookbook import ArgparseFormatter, CookbookBase

from decom_libs.cleanup.gateway import CuminHostGateway
from decom_libs.cleanup.scripts import CleanupStepName, LinuxCleanupScript
from decom_libs.common import CommonOpts, DecomCookbookRunnerBase, add_common_opts, with_common_opts

LOGGER = logging.getLogger(__name__)

SCRIPT_STEPS = [step for step in CleanupStepName if not step.runs_in_agent]


class CleanStep(CookbookBase):
    """Decom cookbook to run host cleanup steps over cumin."""

    title = __doc__

    def argument_parser(self):
        """Parse the command line arguments for this cookbook."""
        parser = argparse.ArgumentParser(
            prog=__name__,
            description=__doc__,
            formatter_class=ArgparseFormatter,
        )
        add_common_opts(parser)
        parser.add_argument(
            "--host",
            required=True,
            help="FQDN of the host to clean up.",
        )
        parser.add_argument(
            "--step",
            dest="steps",
            action="append",
            choices=SCRIPT_STEPS,
            type=CleanupStepName,
            help="Step to run, can be passed more than once, defaults to all of them.",
        )
        parser.add_argument(
            "--prefix-path",
            required=False,
            default=None,
            help="Prefix of the cluster state directories on the host (defaults to the configured one).",
        )

        return parser

    def get_runner(self, args: argparse.Namespace) -> DecomCookbookRunnerBase:
        """Get runner"""
        return with_common_opts(self.spicerack, args, CleanStepRunner)(
            host=args.host,
            steps=args.steps or SCRIPT_STEPS,
            prefix_path=args.prefix_path,
            spicerack=self.spicerack,
        )


class CleanStepRunner(DecomCookbookRunnerBase):
    """Runner for CleanStep"""

    def __init__(
        self,
        common_opts: CommonOpts,
        host: str,
        steps: list[CleanupStepName],
        prefix_path: str | None,
        spicerack: Spicerack,
    ):
        """Init"""
        self.host = host
        self.steps = steps
        self.prefix_path = prefix_path
        super().__init__(spicerack=spicerack, common_opts=common_opts)

    @property
    def runtime_description(self) -> str:
        """Return a nicely formatted string that represents the cookbook action."""
        return f"for host {self.host} ({', '.join(str(step) for step in self.steps)})"

    def run(self) -> None:
        """Main entry point"""
        config = self.decom_config
        if self.prefix_path:
            config = replace(config, prefix_path=self.prefix_path)

        gateway = CuminHostGateway(
            script=LinuxCleanupScript(config=config),
            host=self.spicerack.remote().query(f"D{{{self.host}}}", use_sudo=True),
        )
        gateway.install_script()
        for step in self.steps:
            gateway.run_step(step)

        self.sal_log("Ran cleanup steps %s on %s", ", ".join(str(step) for step in self.steps), self.host)
