"""Isolated execution of package test cases."""

from skill_trust.sandbox.backends import DockerBackend, Execution, ProcessBackend, SandboxBackend, create_backend
from skill_trust.sandbox.runner import SandboxRunner, check_output

__all__ = [
    "DockerBackend",
    "Execution",
    "ProcessBackend",
    "SandboxBackend",
    "SandboxRunner",
    "check_output",
    "create_backend",
]
