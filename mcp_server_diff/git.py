"""Git primitives for materializing the comparison ref.

All functions shell out to the ``git`` executable.  Operations that only
tidy up (removing a worktree, returning to the previous ref) are best
effort; the in-place checkout is the one primitive that must succeed.
"""

from __future__ import annotations

import asyncio
import logging
import re
import subprocess

logger = logging.getLogger(__name__)

_SHA_RE = re.compile(r"^[0-9a-f]{7,40}$", re.IGNORECASE)


class GitError(Exception):
    """Raised when a required git operation fails."""


class GitRepo:
    """A git working copy at ``path``.

    Methods are coroutines; each git invocation runs in a worker thread.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    def _run(self, *args: str) -> str:
        completed = subprocess.run(
            ["git", *args],
            cwd=self.path,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
        )
        if completed.returncode != 0:
            raise GitError(
                f"git {' '.join(args)} failed ({completed.returncode}): {completed.stderr.strip()}"
            )
        return completed.stdout.strip()

    async def _git(self, *args: str) -> str:
        return await asyncio.to_thread(self._run, *args)

    async def _git_or_none(self, *args: str) -> str | None:
        try:
            return await self._git(*args)
        except (GitError, OSError) as exc:
            logger.debug("%s", exc)
            return None

    # --- Refs ---

    async def current_branch(self) -> str:
        """Return the checked-out branch name, or ``HEAD`` when detached/unknown."""
        return await self._git_or_none("rev-parse", "--abbrev-ref", "HEAD") or "HEAD"

    async def determine_compare_ref(
        self, explicit_ref: str | None = None, github_ref: str | None = None
    ) -> str:
        """Pick the ref to compare against.

        Priority: an explicit ref; on a tag push the previous tag (or the
        first commit); otherwise the merge-base of HEAD with the main branch.
        """
        if explicit_ref:
            logger.info("Using explicit compare ref: %s", explicit_ref)
            return explicit_ref

        if github_ref and github_ref.startswith("refs/tags/"):
            current_tag = github_ref.removeprefix("refs/tags/")
            logger.info("Detected tag push: %s", current_tag)
            previous = await self.previous_tag(current_tag)
            if previous and previous != current_tag:
                logger.info("Auto-detected previous tag: %s", previous)
                return previous
            logger.warning("No previous tag found, comparing against initial commit")
            return await self.first_commit()

        main = await self.main_branch()
        merge_base = await self._git_or_none("merge-base", "HEAD", main) or main
        logger.info("Using merge-base with %s: %s", main, merge_base)
        return merge_base

    async def previous_tag(self, current_tag: str) -> str | None:
        output = await self._git_or_none("tag", "--sort=-v:refname")
        if not output:
            return None
        tags = output.splitlines()
        if current_tag in tags:
            index = tags.index(current_tag)
            if index < len(tags) - 1:
                return tags[index + 1]
        return None

    async def first_commit(self) -> str:
        output = await self._git("rev-list", "--max-parents=0", "HEAD")
        return output.splitlines()[0]

    async def main_branch(self) -> str:
        for candidate in ("origin/main", "main"):
            if await self._git_or_none("rev-parse", "--verify", "--quiet", candidate) is not None:
                return candidate
        return await self.first_commit()

    async def ref_display_name(self, ref: str) -> str:
        """Return a readable name for ``ref``: branch, then tag, then short SHA."""
        if not _SHA_RE.match(ref):
            return ref

        branches = await self._git_or_none("branch", "--points-at", ref, "--format=%(refname:short)")
        if branches:
            names = [b for b in branches.splitlines() if b]
            for preferred in ("main", "master"):
                if preferred in names:
                    return preferred
            if names:
                return names[0]

        tags = await self._git_or_none("tag", "--points-at", ref)
        if tags:
            return tags.splitlines()[0]

        return await self._git_or_none("rev-parse", "--short", ref) or ref[:7]

    # --- Working copies ---

    async def create_worktree(self, ref: str, path: str) -> bool:
        """Add a linked worktree for ``ref`` at ``path``; False on failure."""
        try:
            await self._git("worktree", "add", "--quiet", path, ref)
        except (GitError, OSError) as exc:
            logger.info("Worktree not available: %s", exc)
            return False
        return True

    async def remove_worktree(self, path: str) -> None:
        await self._git_or_none("worktree", "remove", "--force", path)

    async def checkout(self, ref: str) -> None:
        """Check out ``ref`` in place.

        Raises:
            GitError: If the checkout fails.
        """
        await self._git("checkout", "--quiet", ref)

    async def checkout_previous(self) -> None:
        await self._git_or_none("checkout", "--quiet", "-")
