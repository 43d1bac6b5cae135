#!/usr/bin/env python3
"""Node decommission cookbooks common helpers."""
# pylint: disable=too-many-arguments
from __future__ import annotations

import argparse
import base64
import json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from enum import Enum
from functools import partial
from itertools import chain
from typing import Any, Callable, Generator
from unittest import mock

from ClusterShell.MsgTree import MsgTreeElem
from cumin.transports import Command
from spicerack import Spicerack
from spicerack.cookbook import CookbookRunnerBase
from spicerack.remote import Remote, RemoteHosts
from wmflib.config import load_yaml_config

from decom_libs.config import DecomConfig

LOGGER = logging.getLogger(__name__)
DECOM_CONFIG_FILE_NAME = "decom.yaml"


class DecomError(Exception):
    """Parent class for the errors of the decommission libs that are not about the control plane."""


class ArgparsableEnum(Enum):
    """Enum that behaves well with argparse.

    Example usage:

    class MyEnum(ArgparsableEnum):
        OPT1 = "option 1"
        OPT2 = "option 2"

    parser.add_argument(
        "--my-enum",
        choices=list(MyEnum),
        type=MyEnum,
        default=MyEnum.OPT1,
    )
    """

    def __str__(self):
        """Needed to show the nice string values and for argparse to use those to call the `type` parameter."""
        return self.value


@dataclass(frozen=True)
class CuminParams:
    """Bundle of the parameters that run_sync allows."""

    print_output: bool = True
    print_progress_bars: bool = True
    is_safe: bool = False


# Handy pre-set common cumin params
CUMIN_SAFE_WITHOUT_OUTPUT = CuminParams(print_output=False, print_progress_bars=False, is_safe=True)
CUMIN_UNSAFE_WITHOUT_OUTPUT = CuminParams(print_output=False, print_progress_bars=False)


@dataclass(frozen=True)
class CommonOpts:
    """Common decommission cookbook options."""

    task_id: str | None = None
    no_dologmsg: bool = False


def add_common_opts(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """Adds the common options to a cookbook parser."""
    parser.add_argument(
        "--task-id",
        required=False,
        default=None,
        help="Id of the task related to this operation (ex. T123456).",
    )
    parser.add_argument(
        "--no-dologmsg",
        required=False,
        action="store_true",
        help="To disable dologmsg calls (no SAL messages on IRC).",
    )

    return parser


def with_common_opts(spicerack: Spicerack, args: argparse.Namespace, runner: Callable) -> Callable:
    """Helper to add CommonOpts to a cookbook instantiation."""
    no_dologmsg = bool(spicerack.dry_run or args.no_dologmsg)
    common_opts = CommonOpts(task_id=args.task_id, no_dologmsg=no_dologmsg)

    return partial(runner, common_opts=common_opts)


def run_one_raw(
    command: list[str] | Command,
    node: RemoteHosts,
    capture_errors: bool = False,
    timeout: float | None = None,
    cumin_params: CuminParams | None = None,
) -> str:
    """Run a command on a node.

    The timeout (in seconds) is enforced by cumin, when it expires the command fails with a RemoteExecutionError.

    Returns the raw output.
    """
    if not isinstance(command, Command):
        command = Command(command=" ".join(command), timeout=timeout, ok_codes=[] if capture_errors else [0])

    run_sync_params = asdict(cumin_params) if cumin_params else {}

    try:
        result = next(node.run_sync(command, **run_sync_params))

    except StopIteration:
        return ""

    message = result[1].message()
    # Avoid crashing if we can't decode properly
    return message.decode("utf-8", "backslashreplace")


def run_one_as_dict(
    command: list[str] | Command,
    node: RemoteHosts,
    capture_errors: bool = False,
    timeout: float | None = None,
    cumin_params: CuminParams | None = None,
) -> dict[str, Any]:
    """Run a command that outputs a JSON object and return it."""
    raw_result = run_one_raw(
        command=command,
        node=node,
        capture_errors=capture_errors,
        timeout=timeout,
        cumin_params=cumin_params,
    )

    try:
        result = json.loads(raw_result)
    except json.JSONDecodeError as error:
        raise ValueError(f"Unable to parse output of command as json:\n{raw_result}") from error

    if not isinstance(result, dict):
        raise TypeError(f"Was expecting a dict, got {result}")

    return result


def simple_create_file(
    dst_node: RemoteHosts,
    contents: str,
    remote_path: str,
    use_root: bool = True,
    cumin_params: CuminParams | None = None,
) -> None:
    """Creates a file on the remote host/hosts with the given content."""
    # this makes it easier to get away with quotes or similar
    base64_content = base64.b64encode(contents.encode("utf8"))
    full_command = ["echo", f"'{base64_content.decode()}'", "|", "base64", "--decode", "|"]
    if use_root:
        full_command.extend(["sudo", "-i"])

    full_command.extend(["tee", remote_path, ">", "/dev/null"])

    run_one_raw(node=dst_node, command=full_command, cumin_params=cumin_params)


@contextmanager
def with_temporary_file(
    dst_node: RemoteHosts, contents: str, use_root: bool = True, cumin_params: CuminParams | None = None
) -> Generator[str, None, None]:
    """Context manager to do something with on a remote system with a temporary file."""
    file_path = f"/tmp/{str(uuid.uuid4())}"  # nosec B108

    try:
        simple_create_file(
            dst_node=dst_node, contents=contents, remote_path=file_path, use_root=use_root, cumin_params=cumin_params
        )

        yield file_path
    finally:
        run_one_raw(node=dst_node, command=["rm", "-f", file_path], cumin_params=cumin_params)


# Poor man's namespace to compensate for the restriction to not create modules
@dataclass(frozen=True)
class UtilsForTesting:
    """Generic testing utilities."""

    @staticmethod
    def to_parametrize(test_cases: dict[str, dict[str, Any]]) -> dict[str, str | list[Any]]:
        """Helper for parametrized tests.

        Use like:
        @pytest.mark.parametrize(**_to_parametrize(
            {
                "Test case 1": {"param1": "value1", "param2": "value2"},
                # will set the value of the missing params as `None`
                "Test case 2": {"param1": "value1"},
                ...
            }
        ))
        """
        _param_names = sorted(set(chain(*[list(params.keys()) for params in test_cases.values()])))

        def _fill_up_params(test_case_params):
            return [test_case_params.get(must_param, None) for must_param in _param_names]

        if len(_param_names) == 1:
            argvalues = [_fill_up_params(test_case_params)[0] for test_case_params in test_cases.values()]

        else:
            argvalues = [_fill_up_params(test_case_params) for test_case_params in test_cases.values()]

        return {"argnames": ",".join(_param_names), "argvalues": argvalues, "ids": list(test_cases.keys())}

    @staticmethod
    def get_fake_remote_hosts(
        responses: list[str] | None = None, side_effect: list[Any] | None = None
    ) -> mock.MagicMock:
        """Create a fake RemoteHosts object.

        Each run_one_raw call on it will get the next response in the list.
        If side_effect is passed, it will override the responses and set that as side_effect of the mock on run_sync.
        """
        responses = responses if responses is not None else []
        fake_hosts = mock.create_autospec(spec=RemoteHosts, spec_set=True)

        def _get_fake_msg_tree(msg_tree_response: str):
            fake_msg_tree = mock.create_autospec(spec=MsgTreeElem, spec_set=True)
            fake_msg_tree.message.return_value = msg_tree_response.encode()
            return fake_msg_tree

        if side_effect is not None:
            fake_hosts.run_sync.side_effect = side_effect
        else:
            # the return type of run_sync is Iterator[Tuple[NodeSet, MsgTreeElem]]
            fake_hosts.run_sync.return_value = (
                (None, _get_fake_msg_tree(msg_tree_response=response)) for response in responses
            )

        return fake_hosts

    @staticmethod
    def get_fake_remote(responses: list[str] | None = None, side_effect: list[Any] | None = None) -> mock.MagicMock:
        """Create a fake remote that returns a fake RemoteHosts on query (see get_fake_remote_hosts)."""
        fake_hosts = UtilsForTesting.get_fake_remote_hosts(responses=responses, side_effect=side_effect)
        fake_remote = mock.create_autospec(spec=Remote, spec_set=True)

        fake_remote.query.return_value = fake_hosts

        return fake_remote

    @staticmethod
    def get_fake_spicerack(fake_remote: mock.MagicMock) -> mock.MagicMock:
        """Create a fake spicerack."""
        fake_spicerack = mock.create_autospec(spec=Spicerack)
        fake_spicerack.remote.return_value = fake_remote
        return fake_spicerack


class DecomCookbookRunnerBase(CookbookRunnerBase):
    """Decommission tweaks to the base cookbook runner.

    Current tweaks:
    * Loads the decommission config (decom.yaml) from the spicerack config dir into `self.decom_config`.
    * Prefixes the SAL messages with the task id, or disables them with --no-dologmsg.
    """

    def __init__(self, spicerack: Spicerack, common_opts: CommonOpts):
        """Init"""
        self.spicerack = spicerack
        self.common_opts = common_opts
        self._setup_logging(common_opts)
        self.decom_config = self._load_config()

    def _load_config(self) -> DecomConfig:
        config_path = self.spicerack.config_dir / DECOM_CONFIG_FILE_NAME
        if not config_path.exists():
            LOGGER.debug("No decommission config found on %s, using the environment and defaults.", config_path)
            return DecomConfig.from_env()

        LOGGER.info("Loading decommission config from %s", config_path)
        return DecomConfig.from_dict(load_yaml_config(config_file=config_path, raises=False))

    def _setup_logging(self, common_opts: CommonOpts):
        if common_opts.no_dologmsg:
            self.spicerack.sal_logger.handlers.clear()
            return

        task_id = f" ({common_opts.task_id})" if common_opts.task_id else ""
        formatter = logging.Formatter(f"%(message)s{task_id}")
        for handler in self.spicerack.sal_logger.handlers:
            handler.setFormatter(formatter)

    def sal_log(self, message: str, *args: Any) -> None:
        """Log a message to the SAL, and to the local log as well."""
        LOGGER.info(message, *args)
        self.spicerack.sal_logger.info(message, *args)
