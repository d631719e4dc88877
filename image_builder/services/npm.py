from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path

from image_builder.logging_utils import log_event, redact_sensitive_text
from image_builder.observability import events

STDERR_TAIL_LINES = 20
NON_REGISTRY_PREFIXES = ("file:", "link:", "git+", "git:", "github:", "http:", "https:", "workspace:")

CommandRunner = Callable[..., subprocess.CompletedProcess]


class NpmCommandError(RuntimeError):
    """Raised when an npm invocation exits non-zero or cannot be started."""

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr


def _tail(text: str, lines: int = STDERR_TAIL_LINES) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


def read_declared_dependencies(manifest_file: Path) -> tuple[list[str], list[str]]:
    """Return (registry specs, skipped specs) from the manifest's ``dependencies``."""
    try:
        raw = json.loads(manifest_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise NpmCommandError(f"manifest unreadable: {manifest_file}: {exc}") from exc
    if not isinstance(raw, dict):
        raise NpmCommandError(f"manifest root must be an object: {manifest_file}")

    dependencies = raw.get("dependencies") or {}
    if not isinstance(dependencies, dict):
        raise NpmCommandError(f"manifest dependencies must be an object: {manifest_file}")

    specs: list[str] = []
    skipped: list[str] = []
    for name, version_range in sorted(dependencies.items()):
        spec = f"{name}@{version_range}"
        if str(version_range).startswith(NON_REGISTRY_PREFIXES):
            skipped.append(spec)
            continue
        specs.append(spec)
    return specs, skipped


class NpmClient:
    def __init__(
        self,
        npm_bin: str = "npm",
        *,
        runner: CommandRunner = subprocess.run,
        logger: logging.Logger | None = None,
    ) -> None:
        self.npm_bin = npm_bin
        self.runner = runner
        self.logger = logger or logging.getLogger("image_builder.npm")

    def install(self, work_dir: Path) -> None:
        self._run(["install"], cwd=work_dir)

    def set_cache(self, cache_dir: str, *, cwd: Path) -> None:
        self._run(["config", "set", "cache", f"./{cache_dir}", "--global"], cwd=cwd)

    def cache_add(self, spec: str, *, cwd: Path) -> None:
        self._run(["cache", "add", spec], cwd=cwd)

    def verify_cache(self, *, cwd: Path) -> None:
        self._run(["--global", "cache", "verify"], cwd=cwd)

    def _run(self, args: list[str], *, cwd: Path) -> subprocess.CompletedProcess:
        command = [self.npm_bin, *args]
        self.logger.info(log_event(events.NPM_COMMAND_START, command=command, cwd=str(cwd)))
        try:
            result = self.runner(
                command,
                cwd=str(cwd),
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            self.logger.error(
                log_event(
                    events.NPM_COMMAND_FAILED,
                    command=command,
                    error=redact_sensitive_text(exc),
                )
            )
            raise NpmCommandError(
                f"could not start {self.npm_bin}: {exc}",
                command=command,
            ) from exc

        if result.returncode != 0:
            stderr_tail = redact_sensitive_text(_tail(result.stderr or ""))
            self.logger.error(
                log_event(
                    events.NPM_COMMAND_FAILED,
                    command=command,
                    returncode=result.returncode,
                    stderr=stderr_tail,
                )
            )
            raise NpmCommandError(
                f"{' '.join(command)} exited with {result.returncode}",
                command=command,
                returncode=result.returncode,
                stderr=stderr_tail,
            )

        self.logger.info(
            log_event(events.NPM_COMMAND_COMPLETE, command=command, returncode=result.returncode)
        )
        return result
