"""Ways to run a single step of the cleanup script on the host."""
from __future__ import annotations

import logging
import subprocess
from abc import ABCMeta, abstractmethod
from pathlib import PurePath

from spicerack.remote import RemoteExecutionError, RemoteHosts

from decom_libs.cleanup.scripts import CleanupStepName, PlatformCleanupScript
from decom_libs.common import CUMIN_UNSAFE_WITHOUT_OUTPUT, DecomError, run_one_raw, simple_create_file
from decom_libs.k8s.nodes import NodeOS

LOGGER = logging.getLogger(__name__)

STEP_TIMEOUT_SECONDS = 600
NSENTER_ARGS = ["nsenter", "--target", "1", "--mount", "--uts", "--ipc", "--net", "--pid", "--"]


class GatewayError(DecomError):
    """Risen when a cleanup step could not be run on the host."""


class RemoteExecGateway(metaclass=ABCMeta):
    """Runs steps of a persisted cleanup script on a host."""

    def __init__(self, script: PlatformCleanupScript):
        """Init."""
        self.script = script

    @abstractmethod
    def install_script(self) -> None:
        """Persist the cleanup script on the host, overwriting any previous version."""

    @abstractmethod
    def run_step(self, step_name: CleanupStepName) -> None:
        """Run the given step of the script, raises GatewayError if it fails."""

    def _check_step(self, step_name: CleanupStepName) -> None:
        if step_name.runs_in_agent:
            raise GatewayError(f"Step {step_name} needs the container engine and can't run through the script")


class LocalHelperGateway(RemoteExecGateway):
    """Runs the steps from inside the cleanup container, through the helper that reaches the host.

    On linux that's nsenter into the namespaces of the host init process, on windows the wins process runner.
    """

    def __init__(
        self,
        script: PlatformCleanupScript,
        host_root: PurePath | None = None,
        timeout_seconds: int = STEP_TIMEOUT_SECONDS,
    ):
        """Init."""
        super().__init__(script=script)
        self.host_root = host_root
        self.timeout_seconds = timeout_seconds

    def install_script(self) -> None:
        self.script.write(host_root=self.host_root)

    def get_command(self, step_name: CleanupStepName) -> list[str]:
        """Command line that runs the given step."""
        script_path = str(self.script.script_path)
        if self.script.node_os == NodeOS.WINDOWS:
            return ["wins.exe", "cli", "prc", "run", "--path", f'"{script_path}"', "--args", f'"-Tasks {step_name}"']

        return [*NSENTER_ARGS, "bash", script_path, "-Tasks", str(step_name)]

    def run_step(self, step_name: CleanupStepName) -> None:
        self._check_step(step_name)
        command = self.get_command(step_name)
        LOGGER.info("Running cleanup step %s: %s", step_name, " ".join(command))
        try:
            result = subprocess.run(
                command, check=True, capture_output=True, text=True, timeout=self.timeout_seconds
            )
        except subprocess.CalledProcessError as error:
            raise GatewayError(
                f"Cleanup step {step_name} failed with exit code {error.returncode}:\n{error.stdout}{error.stderr}"
            ) from error
        except subprocess.TimeoutExpired as error:
            raise GatewayError(f"Cleanup step {step_name} timed out after {self.timeout_seconds}s") from error
        except OSError as error:
            raise GatewayError(f"Unable to run the host helper {command[0]}: {error}") from error

        LOGGER.info("Cleanup step %s done:\n%s", step_name, result.stdout)


class CuminHostGateway(RemoteExecGateway):
    """Runs the steps directly on the host over cumin, for hosts we can reach that way (linux only)."""

    def __init__(
        self,
        script: PlatformCleanupScript,
        host: RemoteHosts,
        timeout_seconds: int = STEP_TIMEOUT_SECONDS,
    ):
        """Init."""
        if script.node_os != NodeOS.LINUX:
            raise GatewayError(f"Only linux hosts can be cleaned up over cumin, got a {script.node_os} one")

        super().__init__(script=script)
        self.host = host
        self.timeout_seconds = timeout_seconds

    def install_script(self) -> None:
        script_path = str(self.script.script_path)
        LOGGER.info("Installing the cleanup script on %s:%s", self.host, script_path)
        try:
            run_one_raw(
                command=["mkdir", "-p", str(self.script.script_path.parent)],
                node=self.host,
                cumin_params=CUMIN_UNSAFE_WITHOUT_OUTPUT,
            )
            simple_create_file(
                dst_node=self.host,
                contents=self.script.render(),
                remote_path=script_path,
                cumin_params=CUMIN_UNSAFE_WITHOUT_OUTPUT,
            )
            run_one_raw(
                command=["chmod", "755", script_path], node=self.host, cumin_params=CUMIN_UNSAFE_WITHOUT_OUTPUT
            )
        except RemoteExecutionError as error:
            raise GatewayError(f"Unable to install the cleanup script on {self.host}: {error}") from error

    def run_step(self, step_name: CleanupStepName) -> None:
        self._check_step(step_name)
        LOGGER.info("Running cleanup step %s on %s", step_name, self.host)
        try:
            output = run_one_raw(
                command=["bash", str(self.script.script_path), "-Tasks", str(step_name)],
                node=self.host,
                timeout=self.timeout_seconds,
                cumin_params=CUMIN_UNSAFE_WITHOUT_OUTPUT,
            )
        except RemoteExecutionError as error:
            raise GatewayError(f"Cleanup step {step_name} failed on {self.host}: {error}") from error

        LOGGER.info("Cleanup step %s done on %s:\n%s", step_name, self.host, output)
