from __future__ import annotations

import contextlib
import os
import secrets
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Optional, Tuple

from homestead.config import Settings
from homestead.logging import get_logger
from homestead.service.errors import FatalConfigurationError

logger = get_logger(__name__)

ACCESS_KEY_NAME = "JWT_SECRET"
REFRESH_KEY_NAME = "JWT_REFRESH_SECRET"
ENCRYPTION_KEY_NAME = "ENCRYPTION_KEY"

_FILE_HEADER = (
    "# Auto-generated secrets file",
    "# DO NOT EDIT MANUALLY",
    "# Backup this file securely!",
    "#",
)


@dataclass(frozen=True)
class SecretsBundle:
    access_signing_key: str
    refresh_signing_key: str
    encryption_key: str

    @classmethod
    def from_mapping(cls, values: Mapping[str, Optional[str]]) -> Optional["SecretsBundle"]:
        """Build a bundle only when all three named keys carry a value."""

        access = values.get(ACCESS_KEY_NAME)
        refresh = values.get(REFRESH_KEY_NAME)
        encryption = values.get(ENCRYPTION_KEY_NAME)
        if not (access and refresh and encryption):
            return None
        return cls(
            access_signing_key=access,
            refresh_signing_key=refresh,
            encryption_key=encryption,
        )

    @classmethod
    def generate(cls) -> "SecretsBundle":
        return cls(
            access_signing_key=secrets.token_hex(32),
            refresh_signing_key=secrets.token_hex(32),
            encryption_key=secrets.token_hex(32),
        )

    def to_file_text(self, generated_at: datetime) -> str:
        lines = [
            *_FILE_HEADER,
            f"{ACCESS_KEY_NAME}={self.access_signing_key}",
            f"{REFRESH_KEY_NAME}={self.refresh_signing_key}",
            f"{ENCRYPTION_KEY_NAME}={self.encryption_key}",
            "",
            f"# Generated on: {generated_at.isoformat()}",
            "",
        ]
        return "\n".join(lines)


@dataclass(frozen=True)
class BackupInfo:
    secrets: SecretsBundle
    secrets_file: str
    source: str
    generated_at: str


def parse_secrets_file(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines, skipping blanks and ``#`` comments.

    Only the first ``=`` separates key from value so values may contain ``=``.
    """

    values: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep or not key.strip():
            continue
        values[key.strip()] = value.strip()
    return values


class SecretStore:
    """Loads or generates the process-wide signing and encryption keys.

    Resolution order is configuration, then the secrets file, then fresh
    generation persisted to the secrets file. The result is computed once and
    is read-only for the life of the process.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.path = Path(settings.secrets_file)
        self._lock = threading.Lock()
        self._bundle: Optional[SecretsBundle] = None
        self.source: Optional[str] = None

    def get_or_create_secrets(self) -> SecretsBundle:
        with self._lock:
            if self._bundle is None:
                self._bundle, self.source = self._resolve()
                logger.info("secrets_loaded", source=self.source, path=str(self.path))
            return self._bundle

    def backup_info(self) -> BackupInfo:
        bundle = self.get_or_create_secrets()
        return BackupInfo(
            secrets=bundle,
            secrets_file=str(self.path),
            source=self.source or "unknown",
            generated_at=self.generated_at(),
        )

    def generated_at(self) -> str:
        """Last-modified time of the secrets file, or now when no file backs the keys."""

        try:
            mtime = self.path.stat().st_mtime
        except OSError:
            return datetime.now(timezone.utc).isoformat()
        return datetime.fromtimestamp(mtime, timezone.utc).isoformat()

    def _resolve(self) -> Tuple[SecretsBundle, str]:
        configured = SecretsBundle.from_mapping(
            {
                ACCESS_KEY_NAME: self.settings.jwt_secret,
                REFRESH_KEY_NAME: self.settings.jwt_refresh_secret,
                ENCRYPTION_KEY_NAME: self.settings.encryption_key,
            }
        )
        if configured:
            return configured, "environment"

        persisted = self._read_file()
        if persisted is not None:
            bundle = SecretsBundle.from_mapping(persisted)
            if bundle is None:
                # Regenerating here would orphan every session and encrypted value
                logger.error("secrets_file_incomplete", path=str(self.path))
                raise FatalConfigurationError(
                    "secrets file is incomplete; restore it from backup",
                    detail={"path": str(self.path)},
                )
            return bundle, "file"

        logger.warning("secrets_generating", path=str(self.path))
        return self._publish(SecretsBundle.generate())

    def _read_file(self) -> Optional[dict[str, str]]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.error("secrets_file_read_failed", path=str(self.path), error=str(exc))
            raise FatalConfigurationError(
                "secrets file is unreadable", detail={"path": str(self.path)}
            ) from exc
        return parse_secrets_file(text)

    def _publish(self, bundle: SecretsBundle) -> Tuple[SecretsBundle, str]:
        """Write ``bundle`` to a temp file and hard-link it into place.

        ``os.link`` refuses to replace an existing path, so exactly one
        concurrent writer wins; the others adopt the winner's file.
        """

        directory = self.path.parent
        tmp_path: Optional[str] = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(directory), prefix=".secrets_", suffix=".tmp"
            )
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(bundle.to_file_text(datetime.now(timezone.utc)))
                handle.flush()
                os.fsync(handle.fileno())
            os.link(tmp_path, str(self.path))
        except FileExistsError:
            logger.info("secrets_generation_race_lost", path=str(self.path))
            winner = self._read_file()
            winner_bundle = SecretsBundle.from_mapping(winner or {})
            if winner_bundle is None:
                raise FatalConfigurationError(
                    "secrets file is incomplete; restore it from backup",
                    detail={"path": str(self.path)},
                )
            return winner_bundle, "file"
        except OSError as exc:
            logger.error("secrets_persist_failed", path=str(self.path), error=str(exc))
            raise FatalConfigurationError(
                "unable to persist secrets; make the secrets directory writable "
                "or set JWT_SECRET, JWT_REFRESH_SECRET and ENCRYPTION_KEY",
                detail={"path": str(self.path)},
            ) from exc
        finally:
            if tmp_path:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
        return bundle, "generated"
