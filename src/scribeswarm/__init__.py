"""scribeswarm: run coding agents in parallel worktrees and integrate their branches."""

__version__ = "0.3.0"
