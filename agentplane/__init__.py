"""agentplane: the patch-and-execution control plane behind an autonomous coding agent.

The package is organised leaves first:
- core.patch: unified-diff parsing and all-or-nothing application to an in-memory file set
- core.policy: tool risk classification and permission evaluation
- core.gateway: per-actor rate limiting, audit ring buffer, gated tool invocation
- core.runner: logical execution sessions and cwd bookkeeping
- core.agent: the bounded think -> act -> verify loop that drives the rest
"""

from __future__ import annotations

__version__ = "0.1.0"
