from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import NoReturn

from image_builder.domain.image_metadata import ImageMetadata, load_image_metadata
from image_builder.domain.recipe import BuildRecipe
from image_builder.logging_utils import log_event
from image_builder.observability import events
from image_builder.services.privilege import (
    PrivilegeError,
    RuntimeIdentity,
    drop_privileges,
    lookup_runtime_identity,
)


class LaunchError(RuntimeError):
    """Raised when the image cannot be started under its declared identity."""


ExecFn = Callable[[str, list[str], Mapping[str, str]], NoReturn]


def _flush_log_handlers(logger: logging.Logger) -> None:
    # exec replaces the process without running atexit hooks.
    current: logging.Logger | None = logger
    while current is not None:
        for handler in current.handlers:
            handler.flush()
        current = current.parent if current.propagate else None


class LaunchUseCase:
    def __init__(
        self,
        recipe: BuildRecipe,
        metadata_file: Path,
        logger: logging.Logger | None = None,
        *,
        load_metadata_fn: Callable[[Path], ImageMetadata] = load_image_metadata,
        lookup_identity_fn: Callable[[int], RuntimeIdentity] = lookup_runtime_identity,
        drop_privileges_fn: Callable[[RuntimeIdentity], bool] = drop_privileges,
        geteuid_fn: Callable[[], int] = os.geteuid,
        chdir_fn: Callable[[Path], None] = os.chdir,
        exec_fn: ExecFn = os.execvpe,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.recipe = recipe
        self.metadata_file = metadata_file
        self.logger = logger or logging.getLogger("image_builder.launcher")
        self.load_metadata_fn = load_metadata_fn
        self.lookup_identity_fn = lookup_identity_fn
        self.drop_privileges_fn = drop_privileges_fn
        self.geteuid_fn = geteuid_fn
        self.chdir_fn = chdir_fn
        self.exec_fn = exec_fn
        self.environ = environ if environ is not None else os.environ

    def _check_metadata(self) -> ImageMetadata:
        metadata = self.load_metadata_fn(self.metadata_file)
        if metadata.user != str(self.recipe.runtime_uid):
            raise LaunchError(
                f"image declares user {metadata.user}, launcher is configured "
                f"for uid {self.recipe.runtime_uid}"
            )
        if metadata.work_dir != str(self.recipe.work_dir):
            raise LaunchError(
                f"image declares workdir {metadata.work_dir}, launcher is configured "
                f"for {self.recipe.work_dir}"
            )
        return metadata

    def _child_environment(self, identity: RuntimeIdentity) -> dict[str, str]:
        env = dict(self.environ)
        env["USER"] = identity.name
        if identity.home:
            env["HOME"] = identity.home
        return env

    def run(self) -> NoReturn:
        metadata = self._check_metadata()
        identity = self.lookup_identity_fn(self.recipe.runtime_uid)

        switched = self.drop_privileges_fn(identity)
        effective_uid = self.geteuid_fn()
        if effective_uid == 0 or effective_uid != identity.uid:
            raise PrivilegeError(
                f"refusing to launch as uid {effective_uid}; expected {identity.uid}"
            )
        self.logger.info(
            log_event(
                events.LAUNCH_PRIVILEGE_DROPPED if switched else events.LAUNCH_PRIVILEGE_UNCHANGED,
                uid=identity.uid,
                gid=identity.gid,
                user=identity.name,
            )
        )

        self.chdir_fn(self.recipe.work_dir)
        argv = list(metadata.cmd)
        self.logger.info(
            log_event(
                events.LAUNCH_EXEC,
                argv=argv,
                work_dir=str(self.recipe.work_dir),
                exposed_ports=metadata.exposed_ports,
            )
        )
        _flush_log_handlers(self.logger)
        self.exec_fn(argv[0], argv, self._child_environment(identity))
