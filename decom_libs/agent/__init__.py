"""Cleanup agent, runs on the node being removed (see decom_libs.agent.cli)."""
