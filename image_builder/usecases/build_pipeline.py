from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import NoReturn

from image_builder.domain.image_metadata import (
    ImageMetadata,
    ImageMetadataError,
    save_image_metadata,
)
from image_builder.domain.recipe import BUILD_STEPS, BuildRecipe, BuildStep
from image_builder.logging_utils import log_event, redact_sensitive_text
from image_builder.observability import events
from image_builder.services.filesystem import (
    apply_permissions,
    copy_manifest_files,
    overlay_copy_tree,
    provision_directories,
    remove_tree,
)
from image_builder.services.npm import NpmClient, NpmCommandError, read_declared_dependencies
from image_builder.services.privilege import PrivilegeError, resolve_service_account

# Never copied from the build context on top of the built tree.
CONTEXT_IGNORE_NAMES = {"node_modules", ".git"}


class BuildError(RuntimeError):
    """Raised when a build step fails. The image is not produced."""

    def __init__(self, message: str, *, step: BuildStep, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.step = step
        self.cause = cause


@dataclass
class BuildResult:
    work_dir: Path
    metadata_file: Path
    dry_run: bool = False
    steps: list[str] = field(default_factory=list)
    manifest_files: list[str] = field(default_factory=list)
    cached_packages: list[str] = field(default_factory=list)
    skipped_packages: list[str] = field(default_factory=list)
    provisioned_dirs: list[str] = field(default_factory=list)
    files_copied: int = 0
    entries_secured: int = 0


def staging_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.staging")


def previous_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.previous")


def metadata_inside_work_dir(metadata_file: Path, work_dir: Path) -> bool:
    return Path(os.path.abspath(metadata_file)).is_relative_to(Path(os.path.abspath(work_dir)))


class BuildPipelineUseCase:
    def __init__(
        self,
        recipe: BuildRecipe,
        source_dir: Path,
        metadata_file: Path,
        npm_client: NpmClient,
        logger: logging.Logger | None = None,
        *,
        dry_run: bool = False,
        resolve_account_fn: Callable[[str, str], tuple[int, int]] = resolve_service_account,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        # Promotion replaces the whole work dir, so the metadata must live outside it.
        if metadata_inside_work_dir(metadata_file, recipe.work_dir):
            raise ValueError(
                f"metadata file {metadata_file} must be outside the working directory "
                f"{recipe.work_dir}"
            )
        self.recipe = recipe
        self.source_dir = source_dir
        self.metadata_file = metadata_file
        self.npm_client = npm_client
        self.logger = logger or logging.getLogger("image_builder.pipeline")
        self.dry_run = dry_run
        self.resolve_account_fn = resolve_account_fn
        self.now_fn = now_fn
        self.staging_dir = staging_path(recipe.work_dir)
        self.staged = recipe.relocated(self.staging_dir)
        self.staged_metadata_file = staging_path(metadata_file)
        self.previous_dir = previous_path(recipe.work_dir)

    def run(self) -> BuildResult:
        result = BuildResult(
            work_dir=self.recipe.work_dir,
            metadata_file=self.metadata_file,
            dry_run=self.dry_run,
        )
        self.logger.info(
            log_event(
                events.BUILD_START,
                work_dir=str(self.recipe.work_dir),
                source_dir=str(self.source_dir),
                staging_dir=str(self.staging_dir),
                dry_run=self.dry_run,
            )
        )

        if self.dry_run:
            for step in BUILD_STEPS:
                self.logger.info(log_event(events.BUILD_STEP_DRY_RUN, step=step.value))
                result.steps.append(step.value)
            return result

        handlers: dict[BuildStep, Callable[[BuildResult], None]] = {
            BuildStep.WORKDIR: self._establish_workdir,
            BuildStep.INSTALL: self._install_dependencies,
            BuildStep.CACHE: self._configure_cache,
            BuildStep.PROVISION: self._provision_artifact_dirs,
            BuildStep.POPULATE: self._populate,
            BuildStep.SECURE: self._secure,
            BuildStep.DECLARE: self._declare,
        }
        for step in BUILD_STEPS:
            self.logger.info(log_event(events.BUILD_STEP_START, step=step.value))
            try:
                handlers[step](result)
            except (NpmCommandError, PrivilegeError, ImageMetadataError, OSError) as exc:
                self._fail(step, exc)
            result.steps.append(step.value)
            self.logger.info(log_event(events.BUILD_STEP_COMPLETE, step=step.value))

        try:
            self._promote()
        except OSError as exc:
            self._fail(BuildStep.DECLARE, exc)
        self._discard_previous()

        self.logger.info(
            log_event(
                events.BUILD_COMPLETE,
                work_dir=str(result.work_dir),
                metadata_file=str(result.metadata_file),
                steps=result.steps,
                files_copied=result.files_copied,
                cached_packages=len(result.cached_packages),
            )
        )
        return result

    def _fail(self, step: BuildStep, exc: Exception) -> NoReturn:
        error = redact_sensitive_text(exc)
        self.logger.error(log_event(events.BUILD_FAILED, step=step.value, error=error))
        self._discard_staging()
        raise BuildError(f"build step {step.value} failed: {error}", step=step, cause=exc) from exc

    def _discard_staging(self) -> None:
        for path in (self.staging_dir, self.staged_metadata_file):
            if path.exists() or path.is_symlink():
                remove_tree(path)
                self.logger.info(log_event(events.BUILD_STAGING_DISCARDED, path=str(path)))

    def _discard_previous(self) -> None:
        if not (self.previous_dir.exists() or self.previous_dir.is_symlink()):
            return
        try:
            remove_tree(self.previous_dir)
        except OSError as exc:
            # The new image is already live; a leftover copy of the old one is not a failure.
            self.logger.warning(
                log_event(
                    events.BUILD_PREVIOUS_RETAINED,
                    path=str(self.previous_dir),
                    error=redact_sensitive_text(exc),
                )
            )

    def _establish_workdir(self, result: BuildResult) -> None:
        if self.staging_dir.exists() or self.staging_dir.is_symlink():
            remove_tree(self.staging_dir)
        self.staging_dir.mkdir(parents=True)

    def _install_dependencies(self, result: BuildResult) -> None:
        copied = copy_manifest_files(
            self.source_dir,
            self.staging_dir,
            self.recipe.manifest_pattern,
        )
        result.manifest_files = [path.name for path in copied]
        self.npm_client.install(self.staging_dir)

    def _configure_cache(self, result: BuildResult) -> None:
        provision_directories([self.staged.cache_path], logger=self.logger.getChild("fs"))
        self.npm_client.set_cache(self.recipe.npm_cache_dir, cwd=self.staging_dir)

        specs, skipped = read_declared_dependencies(self.staging_dir / "package.json")
        for spec in skipped:
            self.logger.info(log_event(events.NPM_CACHE_SEED_SKIPPED, spec=spec))
        for spec in specs:
            self.npm_client.cache_add(spec, cwd=self.staging_dir)
        result.cached_packages = specs
        result.skipped_packages = skipped

        self.npm_client.verify_cache(cwd=self.staging_dir)

    def _provision_artifact_dirs(self, result: BuildResult) -> None:
        created = provision_directories(
            self.staged.artifact_paths,
            logger=self.logger.getChild("fs"),
        )
        result.provisioned_dirs = [path.name for path in created]

    def _populate(self, result: BuildResult) -> None:
        ignore_names = {
            *CONTEXT_IGNORE_NAMES,
            self.recipe.npm_cache_dir,
            *self.recipe.artifact_dirs,
        }
        # A build context that contains the build outputs at any depth must not copy them.
        source_root = self.source_dir.resolve()
        ignore_paths = {
            path
            for path in (
                self.staging_dir.resolve(),
                self.recipe.work_dir.resolve(),
                self.previous_dir.resolve(),
                self.metadata_file.resolve(),
                self.staged_metadata_file.resolve(),
            )
            if path.is_relative_to(source_root)
        }
        result.files_copied = overlay_copy_tree(
            self.source_dir,
            self.staging_dir,
            ignore_names=ignore_names,
            ignore_paths=ignore_paths,
            logger=self.logger.getChild("fs"),
        )

    def _secure(self, result: BuildResult) -> None:
        permissions = self.recipe.permissions
        uid, gid = self.resolve_account_fn(permissions.user, permissions.group)
        result.entries_secured = apply_permissions(
            self.staging_dir,
            uid=uid,
            gid=gid,
            mode=permissions.mode,
            logger=self.logger.getChild("fs"),
        )

    def _declare(self, result: BuildResult) -> None:
        metadata = ImageMetadata.from_recipe(
            self.recipe,
            steps=[*result.steps, BuildStep.DECLARE.value],
            now=self.now_fn() if self.now_fn else None,
        )
        save_image_metadata(self.staged_metadata_file, metadata)

    def _promote(self) -> None:
        """Swap the staged tree and metadata in; roll back to the previous image on error."""
        work_dir = self.recipe.work_dir
        if self.previous_dir.exists() or self.previous_dir.is_symlink():
            remove_tree(self.previous_dir)

        moved_aside = False
        swapped = False
        try:
            if work_dir.exists() or work_dir.is_symlink():
                work_dir.rename(self.previous_dir)
                moved_aside = True
            self.staging_dir.rename(work_dir)
            swapped = True
            os.replace(self.staged_metadata_file, self.metadata_file)
        except OSError:
            # Put the new tree back in staging so _fail discards it.
            if swapped:
                work_dir.rename(self.staging_dir)
            if moved_aside:
                self.previous_dir.rename(work_dir)
            raise

        self.logger.info(
            log_event(
                events.BUILD_PROMOTED,
                work_dir=str(work_dir),
                metadata_file=str(self.metadata_file),
            )
        )
