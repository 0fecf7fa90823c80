"""
GridRun Worker Agent
====================

Runs on each worker host: registers with the coordinator, heartbeats, polls
for assigned jobs and executes them inside Docker sandboxes.

Entry point: `gridrun-agent` (gridrun_agent.agent:main).
"""

__version__ = "0.1.0"
