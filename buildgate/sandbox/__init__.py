"""Path policy and process execution for tools that touch the host."""

from buildgate.sandbox.executor import ExecutionResult, ProcessExecutor
from buildgate.sandbox.paths import PathSandbox, ValidatedPath

__all__ = ["ExecutionResult", "PathSandbox", "ProcessExecutor", "ValidatedPath"]
