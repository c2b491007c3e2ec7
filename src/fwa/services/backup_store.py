"""Firewall state backups.

Each backup is a YAML document under ``<root>/<host>/<timestamp>.yaml``
holding the raw snapshot text of the host's firewall before a
deployment touched it. Backups are written once, never updated in
place and never expired automatically.
"""

import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

import yaml

from fwa.core.exceptions import BackupError, NotFoundError, ValidationError
from fwa.core.validation import validate_host_name
from fwa.services.backends.base import BackendKind


DEFAULT_BACKUP_DIR = Path("backups")
TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"
BACKUP_SUFFIX = ".yaml"
FORMAT_VERSION = 1


def backup_key(host: str, timestamp: datetime) -> str:
    """Storage key for a host's backup taken at ``timestamp``."""
    ts = timestamp.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)
    return f"{host}/{ts}"


@dataclass(frozen=True)
class Backup:
    """Point-in-time snapshot of one host's firewall."""
    host: str
    timestamp: datetime
    backend: BackendKind
    raw_snapshot: str
    key: str

    @classmethod
    def create(
        cls,
        host: str,
        backend: BackendKind,
        raw_snapshot: str,
        timestamp: Optional[datetime] = None,
    ) -> "Backup":
        ts = timestamp or datetime.now(timezone.utc)
        return cls(
            host=host,
            timestamp=ts,
            backend=backend,
            raw_snapshot=raw_snapshot,
            key=backup_key(host, ts),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for YAML serialization."""
        return {
            "version": FORMAT_VERSION,
            "host": self.host,
            "timestamp": self.timestamp.isoformat(),
            "backend": self.backend.value,
            "key": self.key,
            "snapshot": self.raw_snapshot,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Backup":
        """Create from dictionary (YAML deserialization)."""
        return cls(
            host=d["host"],
            timestamp=datetime.fromisoformat(d["timestamp"]),
            backend=BackendKind(d.get("backend", BackendKind.UNKNOWN.value)),
            raw_snapshot=d.get("snapshot", ""),
            key=d["key"],
        )

    def __str__(self) -> str:
        return f"{self.key} ({self.backend.value})"


class BackupListing:
    """Lazy, restartable view of one host's backups, newest first.

    Each iteration re-reads the directory, so a listing reflects backups
    saved after it was created.
    """

    def __init__(self, store: "BackupStore", host: str) -> None:
        self._store = store
        self._host = host

    def __iter__(self) -> Iterator[Backup]:
        host_dir = self._store.root / self._host
        if not host_dir.is_dir():
            return
        names = sorted(
            (p.name for p in host_dir.iterdir() if p.suffix == BACKUP_SUFFIX),
            reverse=True,
        )
        for name in names:
            yield self._store.load(f"{self._host}/{name[:-len(BACKUP_SUFFIX)]}")


class BackupStore:
    """Append-only filesystem store for backups.

    Safe for concurrent writers: keys are unique per host and timestamp
    and files are created exclusively, never replaced.
    """

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root or DEFAULT_BACKUP_DIR)

    def _path_for(self, key: str) -> Path:
        host, sep, stamp = key.partition("/")
        try:
            validate_host_name(host)
        except ValidationError as e:
            raise NotFoundError(f"Invalid backup key: {key!r}") from e
        if not sep or not stamp or "/" in stamp or stamp.startswith("."):
            raise NotFoundError(f"Invalid backup key: {key!r}")
        return self.root / host / f"{stamp}{BACKUP_SUFFIX}"

    def save(self, backup: Backup) -> str:
        """Persist a backup.

        Returns:
            The backup key

        Raises:
            BackupError: If the file cannot be written or already exists
        """
        target = self._path_for(backup.key)
        content = yaml.safe_dump(backup.to_dict(), default_flow_style=False, sort_keys=False)

        tmp_path = target.with_suffix(f".tmp_{secrets.token_hex(8)}")
        created = False
        try:
            target.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            created = True
            with os.fdopen(fd, "w") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            # link() refuses to replace an existing backup
            os.link(tmp_path, target)
        except FileExistsError as e:
            raise BackupError(
                f"Backup already exists: {backup.key}",
                hint="Backups are immutable; retry to get a new timestamp",
            ) from e
        except OSError as e:
            raise BackupError(
                f"Cannot write backup {backup.key}: {e}",
                hint=f"Check permissions on {self.root}",
            ) from e
        finally:
            if created:
                tmp_path.unlink()

        return backup.key

    def load(self, key: str) -> Backup:
        """Load a backup by key.

        Raises:
            NotFoundError: If no backup exists under ``key``
        """
        path = self._path_for(key)
        try:
            data = yaml.safe_load(path.read_text())
        except FileNotFoundError:
            raise NotFoundError(
                f"Backup not found: {key}",
                hint="List backups with: fwa backup --list --host <name>",
            ) from None
        except (OSError, yaml.YAMLError) as e:
            raise BackupError(f"Cannot read backup {key}: {e}") from e

        if not isinstance(data, dict):
            raise BackupError(f"Backup {key} is not a valid backup document")
        return Backup.from_dict(data)

    def list(self, host: str) -> BackupListing:
        """All backups of ``host``, newest first (lazy, restartable)."""
        validate_host_name(host)
        return BackupListing(self, host)

    def latest(self, host: str) -> Backup:
        """Newest backup of ``host``.

        Raises:
            NotFoundError: If the host has no backups
        """
        for backup in self.list(host):
            return backup
        raise NotFoundError(
            f"No backups for host {host}",
            hint="Create one with: fwa backup --host <name>",
        )

    def hosts(self) -> "list[str]":
        """Host names that have at least one backup."""
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())
