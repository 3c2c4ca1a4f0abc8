from __future__ import annotations
from typing import Optional, List
from pathlib import Path
import os, re, tempfile
from pdp_core.storage.provider import KeyStore, PRIVATE, PUBLIC, CERTIFICATE, METADATA

SUFFIXES = {
    PRIVATE: ".key.encrypted",
    PUBLIC: ".pub",
    CERTIFICATE: ".cert",
    METADATA: ".metadata.json",
}

_KEY_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


class FileKeyStore(KeyStore):
    """
    One directory, four files per key id. Writes go through a temp file and
    os.replace so a reader never sees a half-written artifact.
    """

    def __init__(self, path="hsm-simulator"):
        self.root = Path(path)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key_id: str, kind: str) -> Path:
        if not _KEY_ID.match(key_id):
            raise ValueError(f"invalid key id: {key_id!r}")
        return self.root / f"{key_id}{SUFFIXES[kind]}"

    def put(self, key_id: str, kind: str, data: bytes) -> None:
        target = self._path(key_id, kind)
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            if kind == PRIVATE:
                os.chmod(tmp, 0o600)
            os.replace(tmp, target)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, key_id: str, kind: str) -> Optional[bytes]:
        p = self._path(key_id, kind)
        try:
            return p.read_bytes()
        except FileNotFoundError:
            return None

    def has(self, key_id: str, kind: str) -> bool:
        return self._path(key_id, kind).exists()

    def delete(self, key_id: str) -> bool:
        # private first: once it is gone the key no longer resolves
        deleted = False
        for kind in (PRIVATE, PUBLIC, CERTIFICATE, METADATA):
            p = self._path(key_id, kind)
            try:
                p.unlink()
                if kind in (PRIVATE, PUBLIC):
                    deleted = True
            except FileNotFoundError:
                continue
        return deleted

    def key_ids(self) -> List[str]:
        suffix = SUFFIXES[METADATA]
        return sorted(
            p.name[: -len(suffix)]
            for p in self.root.iterdir()
            if p.name.endswith(suffix)
        )

    def describe(self) -> str:
        return str(self.root)
