from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from image_builder.domain.recipe import BuildRecipe

METADATA_VERSION = 1


class ImageMetadataError(ValueError):
    """Raised when the image metadata file is missing or malformed."""


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_utc_iso(value: datetime) -> str:
    normalized = value.astimezone(UTC).replace(microsecond=0)
    return normalized.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ImageMetadata:
    work_dir: str
    user: str
    exposed_ports: list[str]
    cmd: list[str]
    base_image: str
    created_at: str
    steps: list[str] = field(default_factory=list)

    @classmethod
    def from_recipe(
        cls,
        recipe: BuildRecipe,
        *,
        steps: list[str],
        now: datetime | None = None,
    ) -> ImageMetadata:
        return cls(
            work_dir=str(recipe.work_dir),
            user=str(recipe.runtime_uid),
            exposed_ports=[recipe.exposed_port_spec],
            cmd=list(recipe.start_command),
            base_image=recipe.base_image,
            created_at=to_utc_iso(now or utc_now()),
            steps=list(steps),
        )

    @property
    def exposed_port(self) -> int | None:
        if len(self.exposed_ports) != 1:
            return None
        port_text = self.exposed_ports[0].split("/", 1)[0]
        return int(port_text) if port_text.isdigit() else None

    def to_dict(self) -> dict[str, object]:
        return {
            "version": METADATA_VERSION,
            "config": {
                "WorkingDir": self.work_dir,
                "User": self.user,
                "ExposedPorts": {port: {} for port in self.exposed_ports},
                "Cmd": list(self.cmd),
            },
            "base_image": self.base_image,
            "created_at": self.created_at,
            "steps": list(self.steps),
        }

    @classmethod
    def from_dict(cls, raw: object) -> ImageMetadata:
        if not isinstance(raw, dict):
            raise ImageMetadataError("metadata root must be an object")
        config = raw.get("config")
        if not isinstance(config, dict):
            raise ImageMetadataError("metadata.config must be an object")
        exposed = config.get("ExposedPorts")
        cmd = config.get("Cmd")
        if not isinstance(exposed, dict):
            raise ImageMetadataError("metadata.config.ExposedPorts must be an object")
        if not isinstance(cmd, list) or not cmd:
            raise ImageMetadataError("metadata.config.Cmd must be a non-empty list")
        steps = raw.get("steps") or []
        return cls(
            work_dir=str(config.get("WorkingDir", "")),
            user=str(config.get("User", "")),
            exposed_ports=[str(port) for port in exposed],
            cmd=[str(part) for part in cmd],
            base_image=str(raw.get("base_image", "")),
            created_at=str(raw.get("created_at", "")),
            steps=[str(step) for step in steps],
        )


def load_image_metadata(path: Path) -> ImageMetadata:
    if not path.exists():
        raise ImageMetadataError(f"image metadata not found: {path}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ImageMetadataError(f"image metadata unreadable: {path}: {exc}") from exc
    return ImageMetadata.from_dict(raw)


def save_image_metadata(path: Path, metadata: ImageMetadata, *, mode: int = 0o444) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(metadata.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)
    tmp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            delete=False,
            prefix=f".{path.name}.",
            suffix=".tmp",
        ) as handle:
            handle.write(payload + "\n")
            handle.flush()
            os.fsync(handle.fileno())
            tmp_path = Path(handle.name)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
        tmp_path = None
    finally:
        if tmp_path is not None and tmp_path.exists():
            tmp_path.unlink()
