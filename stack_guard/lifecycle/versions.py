"""
Version Store
~~~~~~~~~~~~~

Reads and writes per-service image tags kept in the project's ``.env``
file (e.g. ``STACK_BACKEND_TAG=1.4.2``). Other lines are preserved
verbatim.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from pathlib import Path

__all__ = ["VersionStore", "read_env", "write_env_values"]

logger = logging.getLogger(__name__)


def _parse_line(line: str) -> tuple[str, str] | None:
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None
    key, _, value = stripped.partition("=")
    key = key.removeprefix("export ").strip()
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        value = value[1:-1]
    return key, value


def read_env(path: str | Path) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines; a missing file yields an empty dict."""
    path = Path(path)
    if not path.exists():
        return {}
    values: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        parsed = _parse_line(line)
        if parsed:
            values[parsed[0]] = parsed[1]
    return values


def write_env_values(path: str | Path, updates: Mapping[str, str | None]) -> None:
    """
    Set keys in an env file, replacing existing lines in place and
    appending new keys. A None value removes the key. The file is
    rewritten atomically.
    """
    path = Path(path)
    lines = path.read_text(encoding="utf-8").splitlines() if path.exists() else []
    pending = dict(updates)
    out: list[str] = []
    for line in lines:
        parsed = _parse_line(line)
        if parsed and parsed[0] in pending:
            value = pending.pop(parsed[0])
            if value is not None:
                out.append(f"{parsed[0]}={value}")
        else:
            out.append(line)
    out.extend(f"{key}={value}" for key, value in pending.items() if value is not None)

    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text("\n".join(out) + "\n", encoding="utf-8")
    if path.exists():
        os.chmod(tmp, path.stat().st_mode & 0o777)
    os.replace(tmp, path)


class VersionStore:
    """
    Per-service version tags in an env file.

    Args:
        env_file: The project's ``.env``.
        services: Managed service names.
        template: Variable name template; ``{SERVICE}`` is the upper-cased
            service name and ``{service}`` the name as given.
    """

    def __init__(
        self,
        env_file: str | Path,
        services: Iterable[str],
        template: str = "STACK_{SERVICE}_TAG",
    ) -> None:
        self._env_file = Path(env_file)
        self._services = list(services)
        self._template = template

    def variable(self, service: str) -> str:
        """Env variable that pins ``service``'s image tag."""
        return self._template.format(SERVICE=service.upper().replace("-", "_"), service=service)

    def current_versions(self) -> dict[str, str | None]:
        """Return ``{service: tag}``; None where no tag is set."""
        values = read_env(self._env_file)
        return {s: values.get(self.variable(s)) for s in self._services}

    def set_versions(self, versions: Mapping[str, str | None]) -> None:
        """
        Write tags for the given services.

        A service mapped to None has its tag removed.
        """
        updates = {self.variable(s): v for s, v in versions.items()}
        if not updates:
            return
        write_env_values(self._env_file, updates)
        logger.info("Set version tags: %s", ", ".join(f"{k}={v}" for k, v in updates.items()))
