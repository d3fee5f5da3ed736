from __future__ import annotations

from typing import Iterable

import git


class WorkspaceError(RuntimeError):
    """Base class for every failure surfaced to callers of the workspace core."""

    kind = "workspace_error"
    retryable = False

    def __init__(self, message: str, paths: Iterable[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.paths = sorted(set(paths or ()))

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "message": self.message,
            "paths": self.paths,
            "retryable": self.retryable,
        }


class NotInitialized(WorkspaceError):
    kind = "not_initialized"


class AuthenticationFailed(WorkspaceError):
    kind = "authentication_failed"


class NetworkUnavailable(WorkspaceError):
    kind = "network_unavailable"
    retryable = True

    def __init__(
        self, message: str, paths: Iterable[str] | None = None, *, timed_out: bool = False
    ) -> None:
        super().__init__(message, paths)
        self.timed_out = timed_out


class RejectedNonFastForward(WorkspaceError):
    kind = "rejected_non_fast_forward"


class DivergedHistory(WorkspaceError):
    kind = "diverged_history"


class LocalChangesWouldBeOverwritten(WorkspaceError):
    """Raised when a pull refuses to touch uncommitted local edits."""

    kind = "local_changes"
    retryable = True


class ManualResolutionRequired(WorkspaceError):
    kind = "manual_resolution_required"


class CorruptMetadata(WorkspaceError):
    kind = "corrupt_metadata"


class DocumentNotFound(WorkspaceError):
    kind = "document_not_found"


class InvalidPath(WorkspaceError):
    kind = "invalid_path"


class GitOperationFailed(WorkspaceError):
    """A git command failed for a reason outside the known taxonomy."""

    kind = "git_error"

    def __init__(
        self, message: str, paths: Iterable[str] | None = None, *, stderr: str = ""
    ) -> None:
        super().__init__(message, paths)
        self.stderr = stderr


_LOCAL_CHANGES_MARKERS = (
    "would be overwritten by merge",
    "would be overwritten by checkout",
    "please commit your changes or stash them",
    "untracked working tree files would be",
)
_DIVERGED_MARKERS = (
    "not possible to fast-forward",
    "divergent branches",
    "have diverged",
)
_CONFLICT_MARKERS = (
    "conflict (",
    "automatic merge failed",
    "fix conflicts and then commit",
    "you have not concluded your merge",
    "refusing to merge unrelated histories",
)
_REJECTED_MARKERS = (
    "[rejected]",
    "non-fast-forward",
    "fetch first",
    "updates were rejected",
)
_AUTH_MARKERS = (
    "authentication failed",
    "could not read username",
    "could not read password",
    "permission denied (publickey",
    "invalid username or password",
    "the requested url returned error: 403",
    "the requested url returned error: 401",
)
_NETWORK_MARKERS = (
    "could not resolve host",
    "connection timed out",
    "connection refused",
    "network is unreachable",
    "unable to access",
    "could not read from remote repository",
    "the remote end hung up unexpectedly",
    "operation timed out",
)
_TIMEOUT_MARKER = "did not complete in"


def _overwritten_paths(stderr: str) -> list[str]:
    # git lists the affected files indented by a tab between the error line and the hint
    return [
        line.strip()
        for line in stderr.splitlines()
        if line.startswith("\t") and line.strip()
    ]


def _conflict_paths(text: str) -> list[str]:
    # GitPython prefixes captured output with "stdout: '" so the marker may sit mid-line
    paths = []
    for line in text.splitlines():
        start = line.find("CONFLICT (")
        if start >= 0 and " in " in line[start:]:
            paths.append(line[start:].rsplit(" in ", 1)[1].strip().strip("'"))
    return paths


def classify_git_error(exc: git.GitCommandError, operation: str = "git") -> WorkspaceError:
    """Map a failed git invocation onto the workspace error taxonomy."""
    stderr = str(exc.stderr or "")
    stdout = str(getattr(exc, "stdout", "") or "")
    text = f"{stderr}\n{stdout}".lower()
    summary = stderr.strip().splitlines()[-1] if stderr.strip() else str(exc)

    if _TIMEOUT_MARKER in text:
        return NetworkUnavailable(f"{operation} timed out", timed_out=True)
    if any(marker in text for marker in _LOCAL_CHANGES_MARKERS):
        return LocalChangesWouldBeOverwritten(
            f"{operation} blocked by local changes", _overwritten_paths(stderr)
        )
    if any(marker in text for marker in _DIVERGED_MARKERS):
        return DivergedHistory(f"{operation}: local and remote histories have diverged")
    if any(marker in text for marker in _CONFLICT_MARKERS):
        return ManualResolutionRequired(
            f"{operation} stopped on conflicts", _conflict_paths(f"{stdout}\n{stderr}")
        )
    if any(marker in text for marker in _REJECTED_MARKERS):
        return RejectedNonFastForward(
            f"{operation} rejected: the remote has commits that are not present locally; pull first"
        )
    if any(marker in text for marker in _AUTH_MARKERS):
        return AuthenticationFailed(f"{operation}: remote rejected the credentials")
    if any(marker in text for marker in _NETWORK_MARKERS):
        return NetworkUnavailable(f"{operation}: remote unreachable ({summary})")
    return GitOperationFailed(f"{operation} failed: {summary}", stderr=stderr)
