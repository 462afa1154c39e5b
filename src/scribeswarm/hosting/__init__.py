"""Code hosting collaborators (push, pull requests, issues)."""
