"""Persistence for "always allow" permission rules.

Two backing files are kept:

* the workspace settings file (``.claude/settings.local.json``), shaped
  ``{"permissions": {"allow": [...], "deny": [...]}}`` and read by the agent
  CLI itself;
* an optional shared store under ``$XDG_CONFIG_HOME/taskrelay/shared/<id>/``
  so that every checkout of the same repository sees the same rules.

Writes are read-merge-write. Concurrent writers may race; last writer wins
but the file is never left half-written.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from taskrelay.protocol.io import read_json, write_json_atomic
from taskrelay.protocol.locks import exclusive_lock_file, locked_file
from taskrelay.protocol.models import utc_now_iso

logger = logging.getLogger(__name__)

SETTINGS_RELATIVE_PATH = Path(".claude") / "settings.local.json"


def shared_store_root() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "taskrelay" / "shared"


def _rule_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


def _permission_lists(data: Any) -> tuple[list[str], list[str]]:
    if not isinstance(data, dict):
        return [], []
    permissions = data.get("permissions")
    if not isinstance(permissions, dict):
        return [], []
    return _rule_list(permissions.get("allow")), _rule_list(permissions.get("deny"))


class PermissionStore:
    def __init__(
        self,
        settings_path: Path | None,
        shared_path: Path | None = None,
        repository_id: str = "",
    ) -> None:
        self.settings_path = settings_path
        self.shared_path = shared_path
        self.repository_id = repository_id

    @classmethod
    def for_repository(
        cls,
        repo_root: str | Path,
        repository_id: str,
        *,
        settings_path: str | Path | None = None,
        shared: bool = True,
    ) -> "PermissionStore":
        settings = Path(settings_path) if settings_path else Path(repo_root) / SETTINGS_RELATIVE_PATH
        shared_path = None
        if shared and repository_id:
            shared_path = shared_store_root() / repository_id / "permissions.json"
        return cls(settings, shared_path, repository_id)

    def load_allowed(self) -> list[str]:
        allowed: list[str] = []
        if self.settings_path is not None:
            allowed += _permission_lists(read_json(self.settings_path, {}))[0]
        if self.shared_path is not None:
            for rule in _permission_lists(read_json(self.shared_path, {}))[0]:
                if rule not in allowed:
                    allowed.append(rule)
        return allowed

    def load_denied(self) -> list[str]:
        if self.settings_path is None:
            return []
        return _permission_lists(read_json(self.settings_path, {}))[1]

    def persist_allow(self, rule: str) -> None:
        """Record *rule* in every backing file. Failures are logged, not raised."""
        if self.settings_path is not None:
            try:
                self._add_to_settings(rule)
            except OSError as exc:
                logger.warning("Could not save permission %s to %s: %s", rule, self.settings_path, exc)
        if self.shared_path is not None:
            try:
                self._add_to_shared(rule)
            except OSError as exc:
                logger.debug("Shared permission store update failed for %s: %s", rule, exc)

    def _add_to_settings(self, rule: str) -> None:
        assert self.settings_path is not None
        lock_path = self.settings_path.with_name(self.settings_path.name + ".lock")
        with locked_file(lock_path):
            data = read_json(self.settings_path, {})
            if not isinstance(data, dict):
                data = {}
            allow, deny = _permission_lists(data)
            if rule in allow:
                return
            allow.append(rule)
            existing = data.get("permissions")
            extra = existing if isinstance(existing, dict) else {}
            data["permissions"] = {**extra, "allow": allow, "deny": deny}
            write_json_atomic(self.settings_path, data)
        logger.info("Added %s to %s", rule, self.settings_path)

    def _add_to_shared(self, rule: str) -> None:
        assert self.shared_path is not None
        lock_path = self.shared_path.with_name(self.shared_path.name + ".lock")
        with exclusive_lock_file(lock_path):
            data = read_json(self.shared_path, {})
            allow, deny = _permission_lists(data)
            if rule in allow:
                return
            allow.append(rule)
            version = data.get("version", 0) if isinstance(data, dict) else 0
            write_json_atomic(
                self.shared_path,
                {
                    "repositoryId": self.repository_id,
                    "version": (version if isinstance(version, int) else 0) + 1,
                    "permissions": {"allow": allow, "deny": deny},
                    "updatedAt": utc_now_iso(),
                },
            )
