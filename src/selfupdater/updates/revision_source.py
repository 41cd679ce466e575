"""
Revision source abstraction.

A revision source is the version-control side of the updater: it fetches
upstream changes and answers questions about revisions. Revisions are opaque
strings compared by equality only.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

Revision = str


class RevisionSource(ABC):
    """
    Abstract base class for revision sources.

    Concrete implementations include:
    - GitRevisionSource: a git working copy driven through the git CLI
    """

    @abstractmethod
    async def current_revision(self) -> Revision | None:
        """
        Return the revision currently checked out.

        Returns:
            Revision identifier, or None if it cannot be determined.
        """

    @abstractmethod
    async def pull(self, branch: str) -> None:
        """
        Fetch and merge the latest upstream state of a branch.

        Raises:
            PullError: On network, merge or timeout failure.
        """

    @abstractmethod
    async def changed_paths(self, from_rev: Revision, to_rev: Revision) -> set[str]:
        """
        List repository paths that differ between two revisions.

        Returns:
            Set of repository-relative POSIX paths.

        Raises:
            DiffError: If the diff cannot be computed.
        """

    @abstractmethod
    async def reset_hard(self, rev: Revision) -> None:
        """
        Discard local state and check out a revision.

        Raises:
            ResetError: If the reset fails.
        """
