"""
Per-domain store of captured browser sessions.

One JSON file per domain under the session directory, holding
``{"metadata": {...}, "storageState": {...}}``. Saves are last-write-wins.
"""

import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from pydantic import ValidationError

from ..exceptions import InvalidUrl, SessionVaultError
from ..models import SessionMetadata, StoredSession
from ..urls import to_full_url

logger = logging.getLogger(__name__)


def sanitize_domain(domain: str) -> str:
    """Filesystem-safe key for a domain."""
    return re.sub(r"[^a-z0-9.-]", "_", domain, flags=re.IGNORECASE)


def session_domain(url: str) -> str:
    """Vault key for a URL: its lowercased host name."""
    host = urlsplit(to_full_url(url)).hostname
    if not host:
        raise InvalidUrl(f"Invalid URL '{url}': no host")
    return host.lower()


def _now_ms() -> int:
    return int(time.time() * 1000)


class SessionVault:
    """Saves and replays login sessions keyed by domain."""

    def __init__(self, vault_dir: Optional[Path] = None):
        self.vault_dir = Path(vault_dir or Path.home() / ".marrow" / "sessions")
        try:
            self.vault_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SessionVaultError(f"Cannot create session directory {self.vault_dir}: {e}") from e

    def session_path(self, domain: str) -> Path:
        return self.vault_dir / f"{sanitize_domain(domain)}.json"

    def save(self, domain: str, storage_state: Dict[str, Any]) -> SessionMetadata:
        now = _now_ms()
        session = StoredSession(
            metadata=SessionMetadata(domain=domain, created_at=now, last_used=now),
            storage_state=storage_state,
        )
        self._write(self.session_path(domain), session)
        logger.info(f"[SessionVault] Saved session for {domain}")
        return session.metadata

    def load(self, domain: str) -> Optional[Dict[str, Any]]:
        """Return the stored browser state and refresh its last-used time."""
        path = self.session_path(domain)
        if not path.exists():
            return None

        session = self._read(path)
        session.metadata.last_used = _now_ms()
        self._write(path, session)
        return session.storage_state

    def exists(self, domain: str) -> bool:
        return self.session_path(domain).exists()

    def delete(self, domain: str) -> bool:
        path = self.session_path(domain)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise SessionVaultError(f"Cannot delete session {path}: {e}") from e
        logger.info(f"[SessionVault] Deleted session for {domain}")
        return True

    def list(self) -> List[str]:
        return sorted(p.stem for p in self.vault_dir.glob("*.json"))

    def get_metadata(self, domain: str) -> Optional[SessionMetadata]:
        path = self.session_path(domain)
        if not path.exists():
            return None
        return self._read(path).metadata

    def _read(self, path: Path) -> StoredSession:
        try:
            with open(path, encoding="utf-8") as f:
                return StoredSession.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise SessionVaultError(f"Cannot read session file {path}: {e}") from e

    def _write(self, path: Path, session: StoredSession):
        tmp = path.with_suffix(".json.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(session.model_dump(by_alias=True), f, indent=2)
            os.replace(tmp, path)
        except OSError as e:
            raise SessionVaultError(f"Cannot write session file {path}: {e}") from e
