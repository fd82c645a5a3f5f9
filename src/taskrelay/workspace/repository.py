"""Git repository access: root discovery, state snapshots and identity."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import subprocess
from pathlib import Path
from typing import Protocol

from taskrelay.protocol.models import RepositoryState

log = logging.getLogger(__name__)

_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


class Repository(Protocol):
    async def get_root(self) -> str: ...

    async def capture_state(self) -> RepositoryState | None: ...


async def _git(cwd: Path, *args: str) -> tuple[int, str]:
    process = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        log.debug("git %s failed: %s", " ".join(args), stderr.decode("utf-8", errors="replace").strip())
    return process.returncode or 0, stdout.decode("utf-8", errors="replace")


class GitRepository:
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).resolve()
        self._root: str | None = None

    async def get_root(self) -> str:
        if self._root is None:
            try:
                code, out = await _git(self._path, "rev-parse", "--show-toplevel")
            except OSError as exc:
                log.warning("git unavailable (%s); using %s as repository root", exc, self._path)
                code, out = 1, ""
            self._root = out.strip() if code == 0 and out.strip() else str(self._path)
        return self._root

    async def capture_state(self) -> RepositoryState | None:
        """Snapshot HEAD, porcelain status and a hash of the working-tree diff.

        Returns ``None`` when the state cannot be read, e.g. outside a git
        checkout.
        """
        root = Path(await self.get_root())
        try:
            head_code, head = await _git(root, "rev-parse", "HEAD")
            status_code, status = await _git(root, "status", "--porcelain")
            diff_code, diff = await _git(root, "diff", "HEAD")
        except OSError as exc:
            log.debug("Could not capture repository state: %s", exc)
            return None
        if status_code != 0:
            return None

        diff_hash = None
        if diff_code == 0 and diff:
            diff_hash = hashlib.sha256(diff.encode("utf-8")).hexdigest()
        return RepositoryState(
            commit_hash=head.strip() if head_code == 0 else None,
            has_changes=bool(status.strip()),
            status_output=status,
            diff_hash=diff_hash,
        )

    def repository_identity(self) -> str:
        root = self._root or str(self._path)
        try:
            result = subprocess.run(
                ["git", "remote", "get-url", "origin"],
                cwd=root,
                check=True,
                capture_output=True,
                text=True,
            )
            remote = result.stdout.strip()
        except (subprocess.CalledProcessError, OSError):
            remote = ""
        if remote:
            return normalize_remote(remote)
        digest = hashlib.sha256(str(Path(root).resolve()).encode("utf-8")).hexdigest()[:16]
        return f"local-{digest}"


def normalize_remote(remote: str) -> str:
    """``git@github.com:owner/repo.git`` -> ``github.com_owner_repo``."""
    value = _SCHEME.sub("", remote.strip())
    if "@" in value.split("/", 1)[0]:
        value = value.split("@", 1)[1]
    if value.endswith(".git"):
        value = value[:-4]
    value = value.replace(":", "/").strip("/")
    parts = [p for p in value.split("/") if p and p not in (".", "..")]
    return "_".join(parts)
