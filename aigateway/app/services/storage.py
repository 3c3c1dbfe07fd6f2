from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

logger = logging.getLogger("aigateway")

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "text/html": "html",
}


class AssetStore(Protocol):
    """Blocking store; callers run ``store`` in a worker thread."""

    def store(self, data: bytes, content_type: str, metadata: dict) -> str:
        ...


class LocalAssetStore:
    """Writes each asset under ``asset_dir`` with a JSON metadata file beside it."""

    def __init__(self, asset_dir: str | Path):
        self.root = Path(asset_dir)

    def _path(self, asset_ref: str) -> Path:
        path = (self.root / asset_ref).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Invalid asset reference: {asset_ref}")
        return path

    def store(self, data: bytes, content_type: str, metadata: dict) -> str:
        ext = _EXTENSIONS.get(content_type, "bin")
        day = datetime.now(timezone.utc).strftime("%Y%m%d")
        asset_ref = f"{day}/{uuid.uuid4().hex}.{ext}"
        path = self._path(asset_ref)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        sidecar = {
            **metadata,
            "asset_ref": asset_ref,
            "content_type": content_type,
            "size": len(data),
            "stored_at": datetime.now(timezone.utc).isoformat(),
        }
        path.with_name(path.name + ".json").write_text(
            json.dumps(sidecar, ensure_ascii=False, indent=2), encoding="utf-8"
        )
        logger.info("Asset stored", extra={"asset_ref": asset_ref, "content_type": content_type, "size": len(data)})
        return asset_ref

    def load(self, asset_ref: str) -> tuple[bytes, dict]:
        path = self._path(asset_ref)
        if not path.is_file():
            raise FileNotFoundError(asset_ref)
        sidecar = path.with_name(path.name + ".json")
        metadata = json.loads(sidecar.read_text(encoding="utf-8")) if sidecar.is_file() else {}
        return path.read_bytes(), metadata
