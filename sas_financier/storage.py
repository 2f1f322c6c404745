from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Iterable

from sas_financier.exceptions import StoreError, ValidationError
from sas_financier.logging import get_logger

logger = get_logger(__name__)

RECEIPT_EXTENSIONS = {".pdf", ".jpg", ".jpeg", ".png"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}

MAX_UPLOAD_BYTES = 10 * 1024 * 1024  # 10MB


def file_extension(filename: str, allowed: set[str]) -> str:
    ext = PurePosixPath(filename or "").suffix.lower()
    if ext not in allowed:
        raise ValidationError(
            "Type de fichier non accepté (" + ", ".join(sorted(allowed)) + ")"
        )
    return ext


class ObjectStore:
    """Binary objects (receipts, logos, avatars) kept on the local disk.

    Object paths are posix-style keys such as ``receipts/12-1700000000.pdf``.
    """

    def __init__(self, root: Path | str, base_url: str = "/files") -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def _resolve(self, path: str) -> Path:
        key = PurePosixPath(path)
        if key.is_absolute() or ".." in key.parts or not key.parts:
            raise ValidationError(f"Chemin de fichier invalide: {path}")
        return self.root.joinpath(*key.parts)

    def upload(self, path: str, data: bytes, overwrite: bool = False) -> None:
        if len(data) > MAX_UPLOAD_BYTES:
            raise ValidationError("Fichier trop volumineux (10 Mo maximum)")
        target = self._resolve(path)
        if target.exists() and not overwrite:
            raise StoreError(f"Le fichier existe déjà: {path}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            logger.exception("Upload failed for %s", path)
            raise StoreError("Erreur lors de l'upload du fichier") from e
        logger.info("Stored object %s (%d bytes)", path, len(data))

    def get_public_url(self, path: str) -> str:
        self._resolve(path)
        return f"{self.base_url}/{path}"

    def path_from_url(self, url: str) -> str | None:
        prefix = self.base_url + "/"
        if url and url.startswith(prefix):
            return url[len(prefix):]
        return None

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def remove(self, paths: Iterable[str]) -> None:
        for path in paths:
            target = self._resolve(path)
            try:
                target.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.exception("Removal failed for %s", path)
                raise StoreError("Erreur lors de la suppression du fichier") from e
            logger.info("Removed object %s", path)
