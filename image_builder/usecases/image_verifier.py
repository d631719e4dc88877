from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from image_builder.domain.image_metadata import ImageMetadataError, load_image_metadata
from image_builder.domain.recipe import BuildRecipe
from image_builder.services.filesystem import is_empty_dir, permission_mismatches
from image_builder.services.npm import NpmClient, NpmCommandError
from image_builder.services.privilege import PrivilegeError, resolve_service_account

MAX_REPORTED_MISMATCHES = 10


@dataclass(frozen=True)
class VerificationIssue:
    check: str
    severity: str
    code: str
    detail: str


@dataclass(frozen=True)
class ImageVerificationReport:
    checks: list[str]
    issues: list[VerificationIssue]

    @property
    def error_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == "error")

    @property
    def warning_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == "warning")

    @property
    def passed(self) -> bool:
        return self.error_count == 0

    def to_dict(self) -> dict[str, object]:
        return {
            "passed": self.passed,
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "checks": list(self.checks),
            "issues": [
                {
                    "check": issue.check,
                    "severity": issue.severity,
                    "code": issue.code,
                    "detail": issue.detail,
                }
                for issue in self.issues
            ],
        }


def _issue(check: str, severity: str, code: str, detail: str) -> VerificationIssue:
    return VerificationIssue(check=check, severity=severity, code=code, detail=detail)


def _verify_ownership(
    recipe: BuildRecipe,
    resolve_account_fn: Callable[[str, str], tuple[int, int]],
) -> list[VerificationIssue]:
    permissions = recipe.permissions
    try:
        uid, gid = resolve_account_fn(permissions.user, permissions.group)
    except PrivilegeError as exc:
        return [_issue("ownership", "error", "account_unknown", str(exc))]

    mismatches = permission_mismatches(recipe.work_dir, uid=uid, gid=gid, mode=permissions.mode)
    if not mismatches:
        return []
    sample = ", ".join(mismatches[:MAX_REPORTED_MISMATCHES])
    return [
        _issue(
            "ownership",
            "error",
            "permission_mismatch",
            f"{len(mismatches)} entries differ from {permissions.owner} "
            f"mode {permissions.mode_text}: {sample}",
        )
    ]


def _verify_artifact_dirs(recipe: BuildRecipe, *, allow_contents: bool) -> list[VerificationIssue]:
    issues: list[VerificationIssue] = []
    for path in recipe.artifact_paths:
        if not path.is_dir():
            issues.append(_issue("artifact_dirs", "error", "artifact_dir_missing", str(path)))
            continue
        if not is_empty_dir(path):
            severity = "warning" if allow_contents else "error"
            issues.append(_issue("artifact_dirs", severity, "artifact_dir_not_empty", str(path)))
    return issues


def _verify_cache(recipe: BuildRecipe, npm_client: NpmClient | None) -> list[VerificationIssue]:
    if not recipe.cache_path.is_dir():
        return [_issue("cache", "error", "cache_missing", str(recipe.cache_path))]
    if npm_client is None:
        return []
    try:
        npm_client.verify_cache(cwd=recipe.work_dir)
    except NpmCommandError as exc:
        return [_issue("cache", "error", "cache_verify_failed", str(exc))]
    return []


def _verify_metadata(recipe: BuildRecipe, metadata_file: Path) -> list[VerificationIssue]:
    try:
        metadata = load_image_metadata(metadata_file)
    except ImageMetadataError as exc:
        return [_issue("metadata", "error", "metadata_unreadable", str(exc))]

    issues: list[VerificationIssue] = []
    if metadata.user.split(":", 1)[0] in {"0", "root"}:
        issues.append(_issue("metadata", "error", "runtime_user_root", f"declared {metadata.user}"))
    if len(metadata.exposed_ports) != 1:
        issues.append(
            _issue("metadata", "error", "port_count", f"declared ports: {metadata.exposed_ports}")
        )
    elif metadata.exposed_port != recipe.exposed_port:
        issues.append(
            _issue(
                "metadata",
                "error",
                "port_mismatch",
                f"declared {metadata.exposed_ports[0]}, expected {recipe.exposed_port_spec}",
            )
        )
    if metadata.user != str(recipe.runtime_uid):
        issues.append(
            _issue(
                "metadata",
                "error",
                "user_mismatch",
                f"declared {metadata.user}, expected {recipe.runtime_uid}",
            )
        )
    if metadata.cmd != list(recipe.start_command):
        issues.append(
            _issue(
                "metadata",
                "warning",
                "cmd_mismatch",
                f"declared {metadata.cmd}, configured {list(recipe.start_command)}",
            )
        )
    return issues


def verify_image(
    recipe: BuildRecipe,
    metadata_file: Path,
    *,
    npm_client: NpmClient | None = None,
    allow_artifact_contents: bool = False,
    resolve_account_fn: Callable[[str, str], tuple[int, int]] = resolve_service_account,
) -> ImageVerificationReport:
    checks = ["metadata"]
    issues: list[VerificationIssue] = []
    issues.extend(_verify_metadata(recipe, metadata_file))

    if not recipe.work_dir.is_dir():
        issues.append(_issue("workdir", "error", "workdir_missing", str(recipe.work_dir)))
        return ImageVerificationReport(checks=[*checks, "workdir"], issues=issues)

    checks.extend(["workdir", "ownership", "artifact_dirs", "cache"])
    issues.extend(_verify_ownership(recipe, resolve_account_fn))
    issues.extend(_verify_artifact_dirs(recipe, allow_contents=allow_artifact_contents))
    issues.extend(_verify_cache(recipe, npm_client))
    return ImageVerificationReport(checks=checks, issues=issues)
