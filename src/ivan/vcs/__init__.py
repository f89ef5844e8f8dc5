"""Git plumbing and isolated worktree management."""
