"""Kubernetes control plane helpers."""
