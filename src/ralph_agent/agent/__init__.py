"""Job-lifecycle orchestration for the worker agent.

The agent is a single claim → execute → report loop talking to a remote
coordinator over HTTP:

- ``gateway`` wraps the coordinator API (long-poll claim, status
  transitions, heartbeat, progress, events, metadata).
- ``orchestrator`` drives the loop and owns the per-job ordering rules.
- ``heartbeat`` renews the job lease on a side thread while a job runs.
- ``throttle`` and ``failure_window`` are pure sliding-window helpers.
- ``workspace`` creates one git worktree per job.
- ``executor`` runs the coding CLI inside the workspace.
"""
