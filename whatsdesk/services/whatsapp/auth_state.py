import json
import shutil
from pathlib import Path
from typing import Any, Optional

from whatsdesk.logging_config import get_logger
from whatsdesk.services.whatsapp.base import AuthState

logger = get_logger("whatsapp.auth_state")


class AuthStateStore:
    """Provider credentials kept as one JSON file per entry in an account directory.

    When the primary directory cannot be read or written the legacy directory
    is used instead.
    """

    def __init__(self, auth_dir: str, legacy_dir: Optional[str] = None):
        self.auth_dir = Path(auth_dir)
        self.legacy_dir = Path(legacy_dir) if legacy_dir else None
        self.active_dir = self.auth_dir

    def _read_dir(self, directory: Path) -> dict[str, Any]:
        files: dict[str, Any] = {}
        if not directory.exists():
            return files
        for path in sorted(directory.glob("*.json")):
            files[path.stem] = json.loads(path.read_text(encoding="utf-8"))
        return files

    def load(self) -> AuthState:
        try:
            files = self._read_dir(self.auth_dir)
            self.active_dir = self.auth_dir
        except (OSError, ValueError) as e:
            if self.legacy_dir is None:
                raise
            logger.warning(f"Auth dir unreadable, using legacy path: {e}")
            files = self._read_dir(self.legacy_dir)
            self.active_dir = self.legacy_dir
        return AuthState(path=str(self.active_dir), files=files)

    def _write(self, directory: Path, name: str, payload: Any) -> None:
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / f"{name}.json"
        tmp = target.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
        tmp.replace(target)

    def save(self, name: str, payload: Any) -> None:
        try:
            self._write(self.active_dir, name, payload)
        except OSError as e:
            if self.legacy_dir is None or self.active_dir == self.legacy_dir:
                raise
            logger.warning(f"Auth write failed, using legacy path: {e}")
            self.active_dir = self.legacy_dir
            self._write(self.legacy_dir, name, payload)

    def _clear(self, directory: Path) -> None:
        if not directory.exists():
            return
        for path in directory.iterdir():
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()

    def wipe(self) -> None:
        """Remove stored credentials so the next connect starts a fresh QR login."""
        try:
            self._clear(self.auth_dir)
        except OSError as e:
            logger.error(f"Failed to wipe auth dir: {e}")
            if self.legacy_dir is None:
                raise
        if self.legacy_dir is not None:
            try:
                self._clear(self.legacy_dir)
            except OSError as e:
                logger.error(f"Failed to wipe legacy auth dir: {e}")
        self.active_dir = self.auth_dir
        logger.warning("Stored WhatsApp credentials wiped")
