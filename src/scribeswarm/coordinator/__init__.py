"""Session orchestration: decomposition, scheduling and supervision."""
