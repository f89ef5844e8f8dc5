"""Job/task orchestration around an external coding agent.

A job is one operator request. Each task runs in its own git worktree:
the agent edits files, the orchestrator commits (repairing hook failures by
asking the agent again), pushes, and opens a pull request. Address tasks
revisit an existing pull request and answer reviewers in their threads.
"""
