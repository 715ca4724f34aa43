"""Persistence of the template record through two JSON file backends."""

import json
import logging
import os
import threading
from typing import List, Optional

logger = logging.getLogger("pixel_overlay.storage")


class StorageError(IOError):
    """Raised when no backend could persist the record."""


def _validate_record(data) -> bool:
    """Reject documents whose structure cannot be a template record."""
    if not isinstance(data, dict):
        return False
    templates = data.get("templates")
    if templates is not None:
        if not isinstance(templates, dict):
            return False
        for key, entry in templates.items():
            if not isinstance(key, str) or not isinstance(entry, dict):
                return False
            tiles = entry.get("tiles")
            if tiles is not None and not isinstance(tiles, dict):
                return False
    return True


class FileBackend:
    """One JSON file written atomically (temp file + ``os.replace``)."""

    def __init__(self, path: str, name: str = "file"):
        self.path = path
        self.name = name
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return f"FileBackend({self.name}={self.path!r})"

    def _cleanup_temp_files(self) -> None:
        parent = os.path.dirname(self.path) or "."
        prefix = os.path.basename(self.path) + ".tmp."
        try:
            for name in os.listdir(parent):
                if name.startswith(prefix) and name[len(prefix):].split(".")[0] == str(os.getpid()):
                    try:
                        os.remove(os.path.join(parent, name))
                    except OSError:
                        pass
        except OSError:
            pass

    def write(self, record: dict) -> None:
        with self._lock:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            tmp_path = f"{self.path}.tmp.{os.getpid()}.{threading.get_ident()}"
            try:
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(record, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            finally:
                if os.path.exists(tmp_path):
                    try:
                        os.remove(tmp_path)
                    except OSError:
                        pass

    def read(self) -> Optional[dict]:
        """Return the stored record, or ``None`` if the file does not exist."""
        with self._lock:
            if not os.path.exists(self.path):
                return None
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not _validate_record(data):
                raise ValueError(f"{self.path} does not hold a template record")
            return data

    def delete(self) -> None:
        with self._lock:
            try:
                os.remove(self.path)
            except FileNotFoundError:
                pass
            self._cleanup_temp_files()


class TemplateStore:
    """Primary backend with a secondary fallback."""

    def __init__(self, primary_path: str, secondary_path: Optional[str] = None):
        self.backends: List[FileBackend] = [FileBackend(primary_path, "primary")]
        if secondary_path and os.path.abspath(secondary_path) != os.path.abspath(primary_path):
            self.backends.append(FileBackend(secondary_path, "secondary"))
        self.last_backend: Optional[str] = None

    @classmethod
    def from_config(cls, cfg) -> "TemplateStore":
        return cls(cfg.primary_path, cfg.secondary_path)

    def save(self, record: dict) -> str:
        """Persist ``record``; returns the name of the backend that took it."""
        errors = []
        for backend in self.backends:
            try:
                backend.write(record)
            except (OSError, TypeError, ValueError) as e:
                logger.warning("Failed to save templates to %s backend: %s", backend.name, e)
                errors.append(f"{backend.name}: {e}")
                continue
            if errors:
                logger.info("Templates saved to %s backend after fallback", backend.name)
            else:
                logger.debug("Templates saved to %s", backend.path)
            self.last_backend = backend.name
            return backend.name
        raise StorageError("Failed to save templates to every backend: " + "; ".join(errors))

    def load(self) -> Optional[dict]:
        """Return the first readable record, or ``None`` when nothing is stored."""
        for backend in self.backends:
            try:
                data = backend.read()
            except (OSError, json.JSONDecodeError, ValueError) as e:
                logger.warning("Failed to load templates from %s backend: %s", backend.name, e)
                continue
            if data is not None:
                logger.info(
                    "Loaded template record from %s backend (%d templates)",
                    backend.name, len(data.get("templates", {})),
                )
                self.last_backend = backend.name
                return data
        return None

    def clear(self) -> None:
        for backend in self.backends:
            try:
                backend.delete()
            except OSError as e:
                logger.warning("Failed to remove %s: %s", backend.path, e)
