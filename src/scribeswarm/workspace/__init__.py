"""Git plumbing and per-task worktree isolation."""
