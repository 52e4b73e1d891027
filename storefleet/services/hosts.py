from __future__ import annotations

import logging
import os
from pathlib import Path
import stat
import tempfile
import threading
from typing import Protocol

logger = logging.getLogger(__name__)

MANAGED_MARKER = "# storefleet"


class NameRegistry(Protocol):
    def register(self, hostname: str) -> None: ...

    def deregister(self, hostname: str) -> None: ...

    def lookup(self, hostname: str) -> str | None: ...


class NullRegistry:
    """Registry for deployments where DNS or ingress already resolves store hostnames."""

    def register(self, hostname: str) -> None:
        logger.debug("Name registration disabled; not registering %s", hostname)

    def deregister(self, hostname: str) -> None:
        logger.debug("Name registration disabled; not deregistering %s", hostname)

    def lookup(self, hostname: str) -> str | None:
        return None


def _line_hostnames(line: str) -> list[str]:
    content = line.split("#", 1)[0].split()
    return content[1:] if len(content) > 1 else []


class HostsFileRegistry:
    """Best-effort hostname registration in an /etc/hosts style file.

    Entries are matched on exact hostname tokens. Failures are logged and
    never raised.
    """

    def __init__(self, path: str | Path = "/etc/hosts", *, address: str = "127.0.0.1") -> None:
        self._path = Path(path)
        self._address = address
        self._lock = threading.Lock()

    def _read_lines(self) -> list[str]:
        if not self._path.exists():
            return []
        return self._path.read_text(encoding="utf-8").splitlines()

    def _write_lines(self, lines: list[str]) -> None:
        """Replace the file in one rename so readers never see a partial write."""
        mode = stat.S_IMODE(self._path.stat().st_mode) if self._path.exists() else 0o644
        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write("\n".join(lines) + ("\n" if lines else ""))
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def register(self, hostname: str) -> None:
        with self._lock:
            try:
                lines = self._read_lines()
                if any(hostname in _line_hostnames(line) for line in lines):
                    logger.debug("Host entry already exists: %s", hostname)
                    return
                lines.append(f"{self._address} {hostname} {MANAGED_MARKER}")
                self._write_lines(lines)
                logger.info("Added host entry: %s -> %s", hostname, self._address)
            except OSError as exc:
                logger.error("Failed to add host entry for %s in %s: %s", hostname, self._path, exc)

    def deregister(self, hostname: str) -> None:
        with self._lock:
            try:
                lines = self._read_lines()
                kept = [line for line in lines if hostname not in _line_hostnames(line)]
                if len(kept) == len(lines):
                    logger.debug("Host entry not found: %s", hostname)
                    return
                self._write_lines(kept)
                logger.info("Removed host entry: %s", hostname)
            except OSError as exc:
                logger.error("Failed to remove host entry for %s in %s: %s", hostname, self._path, exc)

    def lookup(self, hostname: str) -> str | None:
        try:
            lines = self._read_lines()
        except OSError as exc:
            logger.warning("Failed to read %s: %s", self._path, exc)
            return None
        for line in lines:
            if hostname in _line_hostnames(line):
                return line.split()[0]
        return None
