"""Host cleanup sequences, one variant per node operating system.

Each variant is an ordered list of named steps. The first two steps need the container engine and are run by the
cleanup agent itself, the rest are rendered into a script (bash or powershell) that is persisted on the host and run
one task at a time through the host helper, see decom_libs.cleanup.gateway.

Every action only makes sure its targets are gone, so every step can be re-run safely.
"""
from __future__ import annotations

import logging
import os
from abc import ABCMeta, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath

from decom_libs.common import ArgparsableEnum, DecomError
from decom_libs.config import DecomConfig
from decom_libs.k8s.nodes import NodeOS

LOGGER = logging.getLogger(__name__)

SCRIPT_DIR = ("etc", "node-decom")
SCRIPT_MODE = 0o755

LINUX_CLEANUP_DIRS = (
    "/etc/ceph",
    "/etc/cni",
    "/etc/kubernetes",
    "/opt/cni",
    "/opt/rke",
    "/run/secrets/kubernetes.io",
    "/run/calico",
    "/run/flannel",
    "/var/lib/calico",
    "/var/lib/weave",
    "/var/lib/etcd",
    "/var/lib/cni",
    "/var/lib/kubelet/*",
    "/var/lib/rancher/rke/log",
    "/var/log/containers",
    "/var/log/pods",
    "/var/run/calico",
)
LINUX_CLEANUP_INTERFACES = ("flannel.1", "cni0", "tunl0", "weave", "datapath", "vxlan-6784")
LINUX_IPTABLES_TABLES = ("nat", "mangle", "filter")

WINDOWS_CLEANUP_DIRS = ("run", "opt", "var", "etc")
WINDOWS_ENGINE_DATA_DIR = "c:\\ProgramData\\docker\\containers"
WINDOWS_HNS_NETWORKS = ("vxlan0", "cbr0", "nat")
WINDOWS_HELPER_PATTERN = "rancher-wins-*"


class CleanupScriptError(DecomError):
    """Risen when the cleanup script can't be persisted on the host."""


class CleanupStepName(ArgparsableEnum):
    """Named steps of the host cleanup, in the order they run."""

    WAIT_FOR_WORKLOADS = "WaitForWorkloads"
    STOP_CONTAINERS = "StopContainers"
    PATHS = "Paths"
    NETWORK = "Network"
    DOCKER = "Docker"
    FIREWALL = "Firewall"

    @property
    def runs_in_agent(self) -> bool:
        """Steps that talk to the container engine directly instead of running on the host script."""
        return self in (CleanupStepName.WAIT_FOR_WORKLOADS, CleanupStepName.STOP_CONTAINERS)


class HostAction(metaclass=ABCMeta):
    """Something to make sure is gone from the host."""

    @property
    @abstractmethod
    def targets(self) -> tuple[str, ...]:
        """What this action removes, for logging and reporting."""

    def bash(self) -> list[str]:
        """Bash lines that apply this action."""
        raise NotImplementedError(f"{type(self).__name__} is not supported on linux")

    def powershell(self) -> list[str]:
        """Powershell lines that apply this action."""
        raise NotImplementedError(f"{type(self).__name__} is not supported on windows")


def _bash_path(path: str) -> str:
    # keep globs expandable
    return path if "*" in path else f"'{path}'"


@dataclass(frozen=True)
class UnmountTmpfs(HostAction):
    """Unmount every tmpfs under the given directory."""

    under: str

    @property
    def targets(self) -> tuple[str, ...]:
        return (self.under,)

    def bash(self) -> list[str]:
        return [
            'techo "Unmounting filesystems..."',
            f"for mount in $(mount | grep tmpfs | grep '{self.under}' | awk '{{ print $3 }}'); do",
            '  umount "${mount}"',
            "done",
        ]


@dataclass(frozen=True)
class RemovePaths(HostAction):
    """Recursively remove the given paths, globs allowed."""

    paths: tuple[str, ...]

    @property
    def targets(self) -> tuple[str, ...]:
        return self.paths

    def bash(self) -> list[str]:
        lines = ['techo "Removing directories..."']
        for path in self.paths:
            lines.extend([f'techo "Removing {path}"', f"rm -rf {_bash_path(path)}"])

        return lines

    def powershell(self) -> list[str]:
        path_list = "\n".join(f'    "{path}"' for path in self.paths)
        return [
            "Get-Item -ErrorAction Ignore -Path @(",
            path_list,
            ") | ForEach-Object {",
            '    Log-Info "Cleaning up data $($_.FullName) ..."',
            "    try {",
            "        $_ | Remove-Item -ErrorAction Ignore -Recurse -Force | Out-Null",
            "    } catch {",
            '        Log-Warn "Could not clean: $($_.Exception.Message)"',
            "    }",
            "}",
        ]


@dataclass(frozen=True)
class StopProcesses(HostAction):
    """Force stop the processes matching the given name pattern."""

    pattern: str

    @property
    def targets(self) -> tuple[str, ...]:
        return (self.pattern,)

    def powershell(self) -> list[str]:
        return [
            f'Get-Process -ErrorAction Ignore -Name "{self.pattern}" | ForEach-Object {{',
            '    Log-Info "Stopping process $($_.Name) ..."',
            "    $_ | Stop-Process -ErrorAction Ignore -Force",
            "}",
        ]


@dataclass(frozen=True)
class DeleteInterfaces(HostAction):
    """Delete the given network links, when present."""

    names: tuple[str, ...]

    @property
    def targets(self) -> tuple[str, ...]:
        return self.names

    def bash(self) -> list[str]:
        lines = ['techo "Removing interfaces..."']
        for name in self.names:
            lines.extend(
                [
                    f"if ip link show '{name}' > /dev/null 2>&1; then",
                    f'  techo "Removing {name}"',
                    f"  ip link delete '{name}'",
                    "fi",
                ]
            )

        return lines


@dataclass(frozen=True)
class DeleteHnsObjects(HostAction):
    """Delete the host network service networks, policy lists and endpoints."""

    network_names: tuple[str, ...]

    @property
    def targets(self) -> tuple[str, ...]:
        return (*self.network_names, "policylists", "endpoints")

    def powershell(self) -> list[str]:
        names = ", ".join(f"'{name}'" for name in self.network_names)
        return [
            "try {",
            '    Invoke-HNSRequest -Method "GET" -Type "networks" |',
            f"        Where-Object {{ $_.Name -in @({names}) }} | ForEach-Object {{",
            '        Log-Info "Cleaning up HnsNetwork $($_.Name) ..."',
            '        Invoke-HNSRequest -Method "DELETE" -Type "networks" -Id $_.Id',
            "    }",
            '    Invoke-HNSRequest -Method "GET" -Type "policylists" |',
            "        Where-Object { -not [string]::IsNullOrEmpty($_.Id) } | ForEach-Object {",
            '        Log-Info "Cleaning up HNSPolicyList $($_.Id) ..."',
            '        Invoke-HNSRequest -Method "DELETE" -Type "policylists" -Id $_.Id',
            "    }",
            '    Invoke-HNSRequest -Method "GET" -Type "endpoints" |',
            "        Where-Object { -not [string]::IsNullOrEmpty($_.Id) } | ForEach-Object {",
            '        Log-Info "Cleaning up HnsEndpoint $($_.Name) ..."',
            '        Invoke-HNSRequest -Method "DELETE" -Type "endpoints" -Id $_.Id',
            "    }",
            "} catch {",
            '    Log-Warn "Could not clean: $($_.Exception.Message)"',
            "}",
        ]


@dataclass(frozen=True)
class PruneEngineState(HostAction):
    """Remove the dangling container engine images and volumes."""

    @property
    def targets(self) -> tuple[str, ...]:
        return ("dangling-images", "dangling-volumes")

    def bash(self) -> list[str]:
        return [
            'techo "Pruning container images and volumes..."',
            "docker image prune --force",
            "docker volume prune --force",
        ]

    def powershell(self) -> list[str]:
        return [
            'Log-Info "Pruning container images and volumes ..."',
            "docker.exe image prune --force | Out-Null",
            "docker.exe volume prune --force | Out-Null",
        ]


@dataclass(frozen=True)
class FlushIptables(HostAction):
    """Flush and delete all the chains of the given iptables tables."""

    tables: tuple[str, ...]

    @property
    def targets(self) -> tuple[str, ...]:
        return self.tables

    def bash(self) -> list[str]:
        lines = ['techo "Flushing iptables..."']
        for table in self.tables:
            lines.extend([f"iptables -F -t {table}", f"iptables -X -t {table}"])

        return lines


@dataclass(frozen=True)
class RemoveFirewallRules(HostAction):
    """Remove the firewall rules matching the given name pattern."""

    pattern: str

    @property
    def targets(self) -> tuple[str, ...]:
        return (self.pattern,)

    def powershell(self) -> list[str]:
        return [
            f'Get-NetFirewallRule -PolicyStore ActiveStore -Name "{self.pattern}" -ErrorAction Ignore |',
            "    ForEach-Object {",
            '    Log-Info "Cleaning up firewall rule $($_.Name) ..."',
            "    $_ | Remove-NetFirewallRule -ErrorAction Ignore | Out-Null",
            "}",
        ]


@dataclass(frozen=True)
class RestartEngine(HostAction):
    """Restart the container engine service so it picks up the cleaned up network state."""

    service: str = "docker"

    @property
    def targets(self) -> tuple[str, ...]:
        return ()

    def bash(self) -> list[str]:
        return [
            f'techo "Restarting {self.service}..."',
            f"if systemctl list-units --full --all | grep -q '{self.service}.service'; then",
            f"  systemctl restart '{self.service}'",
            "else",
            f"  '/etc/init.d/{self.service}' restart",
            "fi",
        ]

    def powershell(self) -> list[str]:
        return [
            "try {",
            f'    Log-Info "Restarting the {self.service} service"',
            f"    Stop-Service {self.service}",
            "    Start-Sleep -Seconds 5",
            f"    Start-Service {self.service}",
            "} catch {",
            f'    Log-Fatal "Could not restart {self.service}: $($_.Exception.Message)"',
            "}",
        ]


@dataclass(frozen=True)
class CleanupStep:
    """A named group of host actions."""

    name: CleanupStepName
    actions: tuple[HostAction, ...] = ()


BASH_HEADER = """#!/bin/bash
# Node decommission host cleanup, regenerated on every run.
# Usage: cleanup.sh [-Tasks <task>]...

timestamp() {
  date "+%Y-%m-%d %H:%M:%S"
}

techo() {
  echo "$(timestamp): $*"
}
"""

BASH_FOOTER = """
if [[ $EUID -ne 0 ]]; then
  techo "This script must be run as root"
  exit 1
fi

TASKS=()
while test $# -gt 0; do
  case ${1} in
    -Tasks)
      shift
      # wins style invocations pass all the tasks in one comma separated argument
      IFS=',' read -r -a NEW_TASKS <<< "${1}"
      TASKS+=("${NEW_TASKS[@]}")
      shift
      ;;
    *)
      techo "Unknown argument ${1}"
      exit 1
      ;;
  esac
done
"""

POWERSHELL_HEADER = """#Requires -RunAsAdministrator
<#
.SYNOPSIS
    Node decommission host cleanup, regenerated on every run.
.EXAMPLE
    cleanup.ps1 -Tasks Paths,Network
#>
param (
    [parameter(Mandatory = $false)] [string[]] $Tasks = @()
)
$ErrorActionPreference = 'Stop'
$WarningPreference = 'SilentlyContinue'
$VerbosePreference = 'SilentlyContinue'
$DebugPreference = 'SilentlyContinue'
$InformationPreference = 'SilentlyContinue'

function Log-Info
{
    Write-Host -NoNewline -ForegroundColor Blue "INFO: "
    Write-Host -ForegroundColor Gray ("{0,-44}" -f ($args -join " "))
}

function Log-Warn
{
    Write-Host -NoNewline -ForegroundColor DarkYellow "WARN: "
    Write-Host -ForegroundColor Gray ("{0,-44}" -f ($args -join " "))
}

function Log-Fatal
{
    Write-Host -NoNewline -ForegroundColor DarkRed "FATA: "
    Write-Host -ForegroundColor Gray ("{0,-44}" -f ($args -join " "))
    exit 255
}

function Get-VmComputeNativeMethods()
{
    $ret = 'VmCompute.PrivatePInvoke.NativeMethods' -as [type]
    if (-not $ret) {
        $signature = @'
[DllImport("vmcompute.dll")]
public static extern void HNSCall(
    [MarshalAs(UnmanagedType.LPWStr)] string method,
    [MarshalAs(UnmanagedType.LPWStr)] string path,
    [MarshalAs(UnmanagedType.LPWStr)] string request,
    [MarshalAs(UnmanagedType.LPWStr)] out string response);
'@
        $ret = Add-Type -MemberDefinition $signature -Namespace VmCompute.PrivatePInvoke -Name "NativeMethods" -PassThru
    }
    return $ret
}

function Invoke-HNSRequest
{
    param
    (
        [ValidateSet('GET', 'DELETE')]
        [parameter(Mandatory = $true)] [string] $Method,
        [ValidateSet('networks', 'endpoints', 'policylists')]
        [parameter(Mandatory = $true)] [string] $Type,
        [parameter(Mandatory = $false)] [Guid] $Id = [Guid]::Empty
    )
    $hnsPath = "/$Type"
    if ($Id -ne [Guid]::Empty) {
        $hnsPath += "/$Id"
    }
    $response = ""
    $hnsApi = Get-VmComputeNativeMethods
    $hnsApi::HNSCall($Method, $hnsPath, "", [ref]$response)
    $output = @()
    if ($response) {
        $output = ($response | ConvertFrom-Json)
        if ($output.Error) {
            Log-Warn $output.Error
            return @()
        }
        $output = $output.Output
    }
    return $output
}
"""


class PlatformCleanupScript(metaclass=ABCMeta):
    """Ordered and named host cleanup steps for one operating system."""

    node_os: NodeOS
    script_name: str
    default_host_root: PurePath

    def __init__(self, config: DecomConfig):
        """Init."""
        self.config = config

    @abstractmethod
    def _script_steps(self) -> list[CleanupStep]:
        """Steps that run on the host through the script."""

    @abstractmethod
    def render(self) -> str:
        """Full script contents."""

    @property
    @abstractmethod
    def script_path(self) -> PurePath:
        """Where the script lives, as seen from the host."""

    @abstractmethod
    def helper_path(self, host_root: PurePath) -> PurePath:
        """Where the script lives, as seen from the cleanup container that has the host mounted on host_root."""

    def steps(self) -> list[CleanupStep]:
        """All the steps, in the order they must run."""
        return [
            CleanupStep(name=CleanupStepName.WAIT_FOR_WORKLOADS),
            CleanupStep(name=CleanupStepName.STOP_CONTAINERS),
            *self._script_steps(),
        ]

    def get_step(self, name: CleanupStepName) -> CleanupStep:
        """Get a single step by name."""
        return next(step for step in self.steps() if step.name == name)

    def script_step_names(self) -> list[CleanupStepName]:
        """Names of the steps that run through the script."""
        return [step.name for step in self._script_steps()]

    def _prune_actions(self) -> tuple[HostAction, ...]:
        return (PruneEngineState(),) if self.config.prune_engine_state else ()

    def write(self, host_root: PurePath | None = None) -> Path:
        """Persist the script on the host, overwriting any previous one.

        Returns the path it was written to, from the point of view of this process.
        """
        path = Path(self.helper_path(host_root if host_root is not None else self.default_host_root))
        LOGGER.info("Writing the %s cleanup script to %s", self.node_os, path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(self.render(), encoding="utf-8")
            os.chmod(path, SCRIPT_MODE)
        except OSError as error:
            raise CleanupScriptError(f"Error writing the cleanup script to the host at {path}: {error}") from error

        return path


class LinuxCleanupScript(PlatformCleanupScript):
    """Bash based cleanup for linux nodes."""

    node_os = NodeOS.LINUX
    script_name = "cleanup.sh"
    default_host_root = PurePosixPath("/host")

    def _prefixed(self, path: str) -> str:
        return str(PurePosixPath(self.config.prefix_path) / path.lstrip("/"))

    def _script_steps(self) -> list[CleanupStep]:
        return [
            CleanupStep(
                name=CleanupStepName.PATHS,
                actions=(
                    UnmountTmpfs(under=self._prefixed("/var/lib/kubelet")),
                    RemovePaths(paths=tuple(self._prefixed(path) for path in LINUX_CLEANUP_DIRS)),
                ),
            ),
            CleanupStep(name=CleanupStepName.NETWORK, actions=(DeleteInterfaces(names=LINUX_CLEANUP_INTERFACES),)),
            CleanupStep(name=CleanupStepName.DOCKER, actions=self._prune_actions()),
            CleanupStep(
                name=CleanupStepName.FIREWALL,
                actions=(FlushIptables(tables=LINUX_IPTABLES_TABLES), RestartEngine(service="docker")),
            ),
        ]

    @property
    def script_path(self) -> PurePosixPath:
        return PurePosixPath(self.config.prefix_path).joinpath(*SCRIPT_DIR, self.script_name)

    def helper_path(self, host_root: PurePath) -> PurePath:
        return host_root / str(self.script_path).lstrip("/")

    def render(self) -> str:
        lines = [BASH_HEADER]
        steps = self._script_steps()
        for step in steps:
            lines.append(f"task_{step.name}() {{")
            lines.append(f'  techo "Running task {step.name}..."')
            for action in step.actions:
                lines.extend(f"  {line}" for line in action.bash())
            lines.append("}")
            lines.append("")

        lines.append(BASH_FOOTER)
        lines.append("if [[ ${#TASKS[@]} -eq 0 ]]; then")
        lines.append(f"  TASKS=({' '.join(str(step.name) for step in steps)})")
        lines.append("fi")
        lines.append("")
        lines.append('for TASK in "${TASKS[@]}"; do')
        lines.append("  case ${TASK} in")
        for step in steps:
            lines.append(f"    {step.name})")
            lines.append(f"      task_{step.name}")
            lines.append("      ;;")
        lines.append("    *)")
        lines.append('      techo "Unknown task ${TASK}"')
        lines.append("      exit 1")
        lines.append("      ;;")
        lines.append("  esac")
        lines.append("done")
        lines.append('techo "Done!"')
        return "\n".join(lines) + "\n"


class WindowsCleanupScript(PlatformCleanupScript):
    """Powershell based cleanup for windows nodes."""

    node_os = NodeOS.WINDOWS
    script_name = "cleanup.ps1"
    default_host_root = PureWindowsPath("c:\\host")

    def _script_steps(self) -> list[CleanupStep]:
        prefix = PureWindowsPath(self.config.windows_prefix_path)
        return [
            CleanupStep(
                name=CleanupStepName.PATHS,
                actions=(
                    StopProcesses(pattern=WINDOWS_HELPER_PATTERN),
                    RemovePaths(
                        paths=(
                            *(str(prefix / directory / "*") for directory in WINDOWS_CLEANUP_DIRS),
                            str(PureWindowsPath(WINDOWS_ENGINE_DATA_DIR) / "*"),
                        )
                    ),
                ),
            ),
            CleanupStep(name=CleanupStepName.NETWORK, actions=(DeleteHnsObjects(network_names=WINDOWS_HNS_NETWORKS),)),
            CleanupStep(name=CleanupStepName.DOCKER, actions=self._prune_actions()),
            CleanupStep(
                name=CleanupStepName.FIREWALL,
                actions=(RemoveFirewallRules(pattern=WINDOWS_HELPER_PATTERN), RestartEngine(service="docker")),
            ),
        ]

    @property
    def script_path(self) -> PureWindowsPath:
        return PureWindowsPath(self.config.windows_prefix_path).joinpath(*SCRIPT_DIR, self.script_name)

    def helper_path(self, host_root: PurePath) -> PurePath:
        # c:\etc\... is at c:\host\etc\... inside the container
        relative = self.script_path.relative_to(self.script_path.anchor)
        return host_root / str(relative)

    def render(self) -> str:
        lines = [POWERSHELL_HEADER]
        steps = self._script_steps()
        for step in steps:
            lines.append(f"function Invoke-{step.name}")
            lines.append("{")
            lines.append(f'    Log-Info "Running task {step.name} ..."')
            for action in step.actions:
                lines.extend(f"    {line}" for line in "\n".join(action.powershell()).splitlines())
            lines.append("}")
            lines.append("")

        lines.append("if ($Tasks.Count -eq 0) {")
        lines.append(f"    $Tasks = @({', '.join(repr(str(step.name)) for step in steps)})")
        lines.append("}")
        lines.append("")
        lines.append("foreach ($task in ($Tasks -split ',')) {")
        lines.append("    switch ($task.Trim()) {")
        for step in steps:
            lines.append(f'        "{step.name}" {{ Invoke-{step.name} }}')
        lines.append('        default { Log-Fatal "Unknown task $task" }')
        lines.append("    }")
        lines.append("}")
        lines.append('Log-Info "Finished!"')
        return "\n".join(lines) + "\n"


CLEANUP_SCRIPTS: dict[NodeOS, type[PlatformCleanupScript]] = {
    NodeOS.LINUX: LinuxCleanupScript,
    NodeOS.WINDOWS: WindowsCleanupScript,
}


def get_cleanup_script(node_os: NodeOS, config: DecomConfig) -> PlatformCleanupScript:
    """Get the cleanup script variant for the given operating system."""
    return CLEANUP_SCRIPTS[node_os](config=config)
