"""buildgate - authenticated remote build and execution gateway.

Exposes a fixed menu of host operations (commands, batch scripts, process
control, file sync) to trusted callers over a single MCP-style HTTP endpoint.
"""

__version__ = "0.1.0"
