from __future__ import annotations

import json
import re
import shutil
from dataclasses import asdict
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel

from intenthealer.core.metadata import UiSnapshot

BundleT = TypeVar("BundleT", bound=BaseModel)

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


class ArtifactManager:
    """Creates and manages healer artifact files."""

    def __init__(self, root: str | Path = "artifacts") -> None:
        self.root = Path(root)
        self.snapshot_root = self.root / "snapshots"
        self.screenshot_root = self.root / "screenshots"
        self.bundle_root = self.root / "bundles"
        self._ensure_structure()

    def _ensure_structure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.snapshot_root.mkdir(parents=True, exist_ok=True)
        self.screenshot_root.mkdir(parents=True, exist_ok=True)
        self.bundle_root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def timestamp() -> str:
        return datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")

    @staticmethod
    def safe_name(value: str) -> str:
        return _UNSAFE_NAME.sub("_", value).strip("_")[:80] or "element"

    def write_snapshot(self, label: str, snapshot: UiSnapshot, timestamp: str | None = None) -> Path:
        stamp = timestamp or self.timestamp()
        path = self.snapshot_root / f"{stamp}_{self.safe_name(label)}.json"
        path.write_text(json.dumps(asdict(snapshot), indent=2, ensure_ascii=False), encoding="utf-8")
        return path

    def screenshot_path(self, label: str, timestamp: str | None = None) -> Path:
        stamp = timestamp or self.timestamp()
        return self.screenshot_root / f"{stamp}_{self.safe_name(label)}.png"

    def bundle_path(self, name: str) -> Path:
        return self.bundle_root / f"{self.safe_name(name)}.json"

    def write_bundle(self, name: str, bundle: BaseModel) -> Path:
        path = self.bundle_path(name)
        path.write_text(bundle.model_dump_json(indent=2), encoding="utf-8")
        return path

    def read_bundle(self, name: str, model: type[BundleT]) -> BundleT | None:
        path = self.bundle_path(name)
        if not path.exists():
            return None
        return model.model_validate_json(path.read_text(encoding="utf-8"))

    def reset(self, keep_bundles: bool = True) -> int:
        """Clears per-run output (audit log, snapshots, screenshots); persisted bundles survive unless asked."""

        self._ensure_structure()
        removed = sum(_remove(child) for child in list(self.root.iterdir()) if child.is_file())
        directories = [self.snapshot_root, self.screenshot_root]
        if not keep_bundles:
            directories.append(self.bundle_root)
        for directory in directories:
            removed += sum(_remove(child) for child in list(directory.iterdir()))
        return removed


def _remove(path: Path) -> int:
    if path.name == ".gitkeep":
        return 0
    if path.is_dir():
        shutil.rmtree(path)
    else:
        path.unlink()
    return 1
