"""Decommission configuration.

The configuration is an explicit object passed to every component at construction time, it can be loaded from the
cookbooks config file (decom.yaml in the spicerack config dir) or, for the agent running on the node, from the
environment that the cleanup job sets.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Mapping

DEFAULT_AGENT_IMAGE = "node-decom/agent:latest"
DEFAULT_PREFIX_PATH = "/"
DEFAULT_WINDOWS_PREFIX_PATH = "c:\\"
DEFAULT_MANAGED_IMAGE_PREFIX = "rancher/"

TRUE_STRINGS = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class DecomConfig:
    """Decommission settings.

    Recognized options and their fallbacks:
    * agent_image: image of the cleanup agent (env AGENT_IMAGE), defaults to DEFAULT_AGENT_IMAGE.
    * prefix_path: root under which the cluster state lives on linux hosts (env PREFIX_PATH), defaults to '/'.
    * windows_prefix_path: same for windows hosts (env WINDOWS_PREFIX_PATH), defaults to 'c:\\'.
    * managed_image_prefix: containers running images with this prefix are killed on cleanup.
    * prune_engine_state: if set, the container engine images and volumes are pruned (env PRUNE_ENGINE_STATE).
    * clusters: raw cluster definitions, see decom_libs.inventory.
    """

    agent_image: str = DEFAULT_AGENT_IMAGE
    prefix_path: str = DEFAULT_PREFIX_PATH
    windows_prefix_path: str = DEFAULT_WINDOWS_PREFIX_PATH
    managed_image_prefix: str = DEFAULT_MANAGED_IMAGE_PREFIX
    prune_engine_state: bool = False
    clusters: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "DecomConfig":
        """Load the config from the environment, empty values fall back to the defaults."""
        environ = os.environ if environ is None else environ
        return cls(
            agent_image=environ.get("AGENT_IMAGE") or DEFAULT_AGENT_IMAGE,
            prefix_path=environ.get("PREFIX_PATH") or DEFAULT_PREFIX_PATH,
            windows_prefix_path=environ.get("WINDOWS_PREFIX_PATH") or DEFAULT_WINDOWS_PREFIX_PATH,
            managed_image_prefix=environ.get("MANAGED_IMAGE_PREFIX") or DEFAULT_MANAGED_IMAGE_PREFIX,
            prune_engine_state=environ.get("PRUNE_ENGINE_STATE", "").lower() in TRUE_STRINGS,
        )

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> "DecomConfig":
        """Load the config from the parsed decom.yaml contents, the environment fills the missing values."""
        from_env = cls.from_env()
        return cls(
            agent_image=config.get("agent_image") or from_env.agent_image,
            prefix_path=config.get("prefix_path") or from_env.prefix_path,
            windows_prefix_path=config.get("windows_prefix_path") or from_env.windows_prefix_path,
            managed_image_prefix=config.get("managed_image_prefix") or from_env.managed_image_prefix,
            prune_engine_state=bool(config.get("prune_engine_state", from_env.prune_engine_state)),
            clusters=dict(config.get("clusters") or {}),
        )

    def to_env(self) -> dict[str, str]:
        """Environment to pass down to the cleanup agent, the inverse of from_env."""
        return {
            "AGENT_IMAGE": self.agent_image,
            "PREFIX_PATH": self.prefix_path,
            "WINDOWS_PREFIX_PATH": self.windows_prefix_path,
            "MANAGED_IMAGE_PREFIX": self.managed_image_prefix,
            "PRUNE_ENGINE_STATE": "true" if self.prune_engine_state else "false",
        }
