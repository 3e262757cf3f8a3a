"""Git metadata for the working directory an assistant runs in."""

import re
import subprocess
from pathlib import Path


def _git(cwd: str, *args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", "-C", cwd, *args],
            capture_output=True, text=True, timeout=2
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, NotADirectoryError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def get_git_branch(cwd: str) -> str | None:
    """Current branch name, or None outside a repo or on a detached HEAD."""
    if not cwd:
        return None
    branch = _git(cwd, "rev-parse", "--abbrev-ref", "HEAD")
    if branch == "HEAD":
        return None
    return branch


def get_project_id(cwd: str) -> str | None:
    """Project id from the origin remote (e.g., 'org/repo').

    Falls back to the working directory's name when there is no remote.
    """
    if not cwd:
        return None
    url = _git(cwd, "remote", "get-url", "origin")
    if url:
        if url.startswith("git@"):
            match = re.search(r":(.+?)(?:\.git)?$", url)
        else:
            match = re.search(r"[:/]([^/]+/[^/]+?)(?:\.git)?$", url)
        if match:
            return match.group(1).removesuffix(".git")
    return Path(cwd).name or None
