from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from image_builder.settings import (
    DEFAULT_ARTIFACT_DIRS,
    DEFAULT_BASE_IMAGE,
    DEFAULT_EXPOSED_PORT,
    DEFAULT_FILE_MODE,
    DEFAULT_MANIFEST_PATTERN,
    DEFAULT_NPM_CACHE_DIR,
    DEFAULT_RUNTIME_UID,
    DEFAULT_SERVICE_GROUP,
    DEFAULT_SERVICE_USER,
    DEFAULT_START_COMMAND,
    DEFAULT_WORK_DIR,
    Settings,
)


class BuildStep(str, Enum):
    WORKDIR = "workdir"
    INSTALL = "install"
    CACHE = "cache"
    PROVISION = "provision"
    POPULATE = "populate"
    SECURE = "secure"
    DECLARE = "declare"
    DEPRIVILEGE = "deprivilege"
    RUN = "run"


# Steps executed while building; the last two belong to the launcher.
BUILD_STEPS: tuple[BuildStep, ...] = (
    BuildStep.WORKDIR,
    BuildStep.INSTALL,
    BuildStep.CACHE,
    BuildStep.PROVISION,
    BuildStep.POPULATE,
    BuildStep.SECURE,
    BuildStep.DECLARE,
)
LAUNCH_STEPS: tuple[BuildStep, ...] = (BuildStep.DEPRIVILEGE, BuildStep.RUN)


@dataclass(frozen=True)
class PermissionSpec:
    user: str = DEFAULT_SERVICE_USER
    group: str = DEFAULT_SERVICE_GROUP
    mode: int = DEFAULT_FILE_MODE

    @property
    def owner(self) -> str:
        return f"{self.user}:{self.group}"

    @property
    def mode_text(self) -> str:
        return format(self.mode, "o")


@dataclass(frozen=True)
class BuildRecipe:
    work_dir: Path = Path(DEFAULT_WORK_DIR)
    base_image: str = DEFAULT_BASE_IMAGE
    manifest_pattern: str = DEFAULT_MANIFEST_PATTERN
    npm_cache_dir: str = DEFAULT_NPM_CACHE_DIR
    artifact_dirs: tuple[str, ...] = tuple(DEFAULT_ARTIFACT_DIRS)
    permissions: PermissionSpec = field(default_factory=PermissionSpec)
    runtime_uid: int = DEFAULT_RUNTIME_UID
    exposed_port: int = DEFAULT_EXPOSED_PORT
    start_command: tuple[str, ...] = tuple(DEFAULT_START_COMMAND)

    def __post_init__(self) -> None:
        if self.runtime_uid <= 0:
            raise ValueError(f"runtime_uid must be a non-root uid. Received: {self.runtime_uid}")
        if not 1 <= self.exposed_port <= 65535:
            raise ValueError(f"exposed_port out of range. Received: {self.exposed_port}")
        if not self.start_command:
            raise ValueError("start_command must not be empty.")

    @property
    def cache_path(self) -> Path:
        return self.work_dir / self.npm_cache_dir

    @property
    def artifact_paths(self) -> list[Path]:
        return [self.work_dir / name for name in self.artifact_dirs]

    @property
    def exposed_port_spec(self) -> str:
        return f"{self.exposed_port}/tcp"

    def relocated(self, work_dir: Path) -> BuildRecipe:
        """Same recipe rooted at another directory (used for staging builds)."""
        return BuildRecipe(
            work_dir=work_dir,
            base_image=self.base_image,
            manifest_pattern=self.manifest_pattern,
            npm_cache_dir=self.npm_cache_dir,
            artifact_dirs=self.artifact_dirs,
            permissions=self.permissions,
            runtime_uid=self.runtime_uid,
            exposed_port=self.exposed_port,
            start_command=self.start_command,
        )


def recipe_from_settings(settings: Settings) -> BuildRecipe:
    return BuildRecipe(
        work_dir=settings.work_dir,
        base_image=settings.base_image,
        manifest_pattern=settings.manifest_pattern,
        npm_cache_dir=settings.npm_cache_dir,
        artifact_dirs=tuple(settings.artifact_dirs),
        permissions=PermissionSpec(
            user=settings.service_user,
            group=settings.service_group,
            mode=settings.file_mode,
        ),
        runtime_uid=settings.runtime_uid,
        exposed_port=settings.exposed_port,
        start_command=tuple(settings.start_command),
    )
