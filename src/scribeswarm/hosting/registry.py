"""Host registry."""

from __future__ import annotations

from scribeswarm.hosting.base import RepoHost
from scribeswarm.hosting.github import GitHubCliHost


def get_host(name: str, *, remote: str = "origin") -> RepoHost:
    if name.lower() == "github":
        return GitHubCliHost(remote=remote)
    raise ValueError(f"Unsupported host: {name}")
