from __future__ import annotations

import argparse
import sys
from collections.abc import Callable
from pathlib import Path
from typing import TextIO

from image_builder.domain.dockerfile import DockerfileAuditReport, audit_dockerfile, render_dockerfile
from image_builder.domain.image_metadata import ImageMetadataError
from image_builder.entrypoints.runtime_builder import BuilderRuntime
from image_builder.logging_utils import log_event, redact_sensitive_text
from image_builder.observability import events
from image_builder.services.privilege import PrivilegeError
from image_builder.usecases.build_pipeline import BuildError, BuildPipelineUseCase
from image_builder.usecases.image_verifier import ImageVerificationReport, verify_image
from image_builder.usecases.launcher import LaunchError, LaunchUseCase


def build_image(
    runtime: BuilderRuntime,
    *,
    source_dir: str | None = None,
    pipeline_factory: Callable[..., BuildPipelineUseCase] = BuildPipelineUseCase,
) -> int:
    settings = runtime.settings
    pipeline = pipeline_factory(
        recipe=runtime.recipe,
        source_dir=Path(source_dir) if source_dir else settings.source_dir,
        metadata_file=settings.metadata_file,
        npm_client=runtime.npm_client,
        logger=runtime.logger.getChild("pipeline"),
        dry_run=settings.dry_run,
    )
    try:
        pipeline.run()
    except BuildError:
        # The pipeline has already logged build.failed with the failing step.
        return 1
    return 0


def launch_image(
    runtime: BuilderRuntime,
    *,
    launcher_factory: Callable[..., LaunchUseCase] = LaunchUseCase,
) -> int:
    launcher = launcher_factory(
        recipe=runtime.recipe,
        metadata_file=runtime.settings.metadata_file,
        logger=runtime.logger.getChild("launcher"),
    )
    try:
        launcher.run()
    except (LaunchError, PrivilegeError, ImageMetadataError, OSError) as exc:
        runtime.logger.error(
            log_event(
                events.LAUNCH_FAILED,
                error_type=type(exc).__name__,
                error=redact_sensitive_text(exc),
            )
        )
        return 1
    return 0


def verify_built_image(
    runtime: BuilderRuntime,
    *,
    skip_cache_verify: bool = False,
    allow_artifact_contents: bool = False,
    verify_fn: Callable[..., ImageVerificationReport] = verify_image,
) -> int:
    settings = runtime.settings
    report = verify_fn(
        runtime.recipe,
        settings.metadata_file,
        npm_client=None if skip_cache_verify else runtime.npm_client,
        allow_artifact_contents=allow_artifact_contents,
    )
    payload = {
        "work_dir": str(settings.work_dir),
        "metadata_file": str(settings.metadata_file),
        **report.to_dict(),
    }
    if report.passed:
        runtime.logger.info(log_event(events.IMAGE_VERIFY_COMPLETE, **payload))
        return 0

    runtime.logger.error(log_event(events.IMAGE_VERIFY_FAILED, **payload))
    return 1


def render_dockerfile_command(
    runtime: BuilderRuntime,
    *,
    output: str | None = None,
    stream: TextIO | None = None,
) -> int:
    content = render_dockerfile(runtime.recipe)
    if output:
        target = Path(output)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    else:
        (stream or sys.stdout).write(content)
    runtime.logger.info(
        log_event(events.DOCKERFILE_RENDERED, output=output or "-", lines=content.count("\n"))
    )
    return 0


def _audit_payload(dockerfile: str, report: DockerfileAuditReport) -> dict[str, object]:
    return {
        "dockerfile": dockerfile,
        "passed": report.passed,
        "error_count": report.error_count,
        "warning_count": report.warning_count,
        "findings": [
            {
                "line": finding.line,
                "severity": finding.severity,
                "code": finding.code,
                "detail": finding.detail,
            }
            for finding in report.findings
        ],
    }


def audit_dockerfile_command(runtime: BuilderRuntime, *, dockerfile: str) -> int:
    try:
        text = Path(dockerfile).read_text(encoding="utf-8")
    except OSError as exc:
        runtime.logger.error(
            log_event(events.DOCKERFILE_AUDIT_FAILED, dockerfile=dockerfile, error=str(exc))
        )
        return 1

    report = audit_dockerfile(text)
    payload = _audit_payload(dockerfile, report)
    if report.passed:
        runtime.logger.info(log_event(events.DOCKERFILE_AUDIT_COMPLETE, **payload))
        return 0

    runtime.logger.error(log_event(events.DOCKERFILE_AUDIT_FAILED, **payload))
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Node.js service image builder and launcher")
    subparsers = parser.add_subparsers(dest="command")

    build_parser_ = subparsers.add_parser(
        "build",
        help="Install dependencies, provision directories and secure the working directory",
    )
    build_parser_.add_argument(
        "--source",
        default=None,
        help="Build context directory (defaults to IMAGE_SOURCE_DIR)",
    )

    subparsers.add_parser(
        "launch",
        help="Drop to the runtime uid and exec the start command",
    )

    verify_parser = subparsers.add_parser(
        "verify",
        help="Check ownership, directories, cache and declared metadata of a built image",
    )
    verify_parser.add_argument(
        "--skip-cache-verify",
        action="store_true",
        help="Do not run npm cache verify",
    )
    verify_parser.add_argument(
        "--allow-artifact-contents",
        action="store_true",
        help="Report non-empty download/upload directories as warnings",
    )

    render_parser = subparsers.add_parser(
        "render-dockerfile",
        help="Print the equivalent Dockerfile for the configured recipe",
    )
    render_parser.add_argument(
        "--output",
        default=None,
        help="Write to this path instead of stdout",
    )

    audit_parser = subparsers.add_parser(
        "audit-dockerfile",
        help="Check a Dockerfile for ordering and least-privilege invariants",
    )
    audit_parser.add_argument("dockerfile", help="Path to the Dockerfile")
    return parser
