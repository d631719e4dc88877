from __future__ import annotations

import json
import re
import shlex
from dataclasses import dataclass

from image_builder.domain.recipe import BuildRecipe

ROOT_USERS = {"root", "0"}
RE_NPM_INSTALL = re.compile(r"\bnpm\s+(install|ci|i)\b")
RE_CHOWN = re.compile(r"\bchown\b")


def render_dockerfile(recipe: BuildRecipe) -> str:
    work_dir = str(recipe.work_dir)
    cache_dir = f"./{recipe.npm_cache_dir}"
    artifact_dirs = " ".join(f"./{name}" for name in recipe.artifact_dirs)
    permissions = recipe.permissions
    lines = [
        f"FROM {recipe.base_image}",
        "",
        "# Default node app location",
        f"WORKDIR {work_dir}",
        "",
        "# Copy and install node dependencies",
        f"COPY {recipe.manifest_pattern} ./",
        "RUN npm install",
        "",
        "# Change cache settings",
        "# Not seeded here: node-image-builder build also runs npm cache add per dependency",
        f"RUN mkdir -p {cache_dir} \\",
        f"    && npm config set cache {cache_dir} --global \\",
        "    && npm --global cache verify",
        "",
        "# Create downloads directory",
        f"RUN mkdir -p {artifact_dirs}",
        "",
        "# Copy the rest of the app",
        "COPY . .",
        "",
        "# Permissions",
        f"RUN chmod -R {permissions.mode_text} {work_dir} \\",
        f"    && chown -R {permissions.owner} {work_dir}",
        "",
        "# Entrypoint",
        f"USER {recipe.runtime_uid}",
        f"EXPOSE {recipe.exposed_port}",
        f"CMD {json.dumps(list(recipe.start_command))}",
        "",
    ]
    return "\n".join(lines)


@dataclass(frozen=True)
class DockerInstruction:
    line: int
    keyword: str
    arguments: str


@dataclass(frozen=True)
class DockerfileFinding:
    line: int
    severity: str
    code: str
    detail: str


@dataclass(frozen=True)
class DockerfileAuditReport:
    findings: list[DockerfileFinding]

    @property
    def error_count(self) -> int:
        return sum(1 for finding in self.findings if finding.severity == "error")

    @property
    def warning_count(self) -> int:
        return sum(1 for finding in self.findings if finding.severity == "warning")

    @property
    def passed(self) -> bool:
        return self.error_count == 0


def parse_instructions(text: str) -> list[DockerInstruction]:
    instructions: list[DockerInstruction] = []
    buffer: list[str] = []
    start_line = 0
    for number, raw_line in enumerate(text.splitlines(), start=1):
        stripped = raw_line.strip()
        if not buffer and (not stripped or stripped.startswith("#")):
            continue
        if buffer and stripped.startswith("#"):
            continue
        if not buffer:
            start_line = number
        if stripped.endswith("\\"):
            buffer.append(stripped[:-1].strip())
            continue
        buffer.append(stripped)
        joined = " ".join(part for part in buffer if part)
        buffer = []
        keyword, _, arguments = joined.partition(" ")
        instructions.append(
            DockerInstruction(line=start_line, keyword=keyword.upper(), arguments=arguments.strip())
        )
    if buffer:
        joined = " ".join(part for part in buffer if part)
        keyword, _, arguments = joined.partition(" ")
        instructions.append(
            DockerInstruction(line=start_line, keyword=keyword.upper(), arguments=arguments.strip())
        )
    return instructions


def _user_name(arguments: str) -> str:
    return arguments.split(":", 1)[0].strip()


def _exposed_ports(arguments: str) -> list[str]:
    return [token.split("/", 1)[0] for token in arguments.split() if token]


def _copies_manifest(arguments: str) -> bool:
    try:
        tokens = shlex.split(arguments)
    except ValueError:
        tokens = arguments.split()
    sources = [token for token in tokens[:-1] if not token.startswith("--")]
    return any("package" in source or source == "." for source in sources)


def _copies_with_service_owner(arguments: str) -> bool:
    """COPY/ADD that sets a non-root owner itself (``--chown=node:node``)."""
    for token in arguments.split():
        if token.startswith("--chown="):
            owner = token[len("--chown="):]
            return bool(owner) and _user_name(owner) not in ROOT_USERS
    return False


def _finding(line: int, severity: str, code: str, detail: str) -> DockerfileFinding:
    return DockerfileFinding(line=line, severity=severity, code=code, detail=detail)


def _audit_identity(instructions: list[DockerInstruction]) -> list[DockerfileFinding]:
    findings: list[DockerfileFinding] = []
    users = [item for item in instructions if item.keyword == "USER"]
    if not users:
        return [_finding(0, "error", "user_missing", "no USER instruction; image runs as root")]

    final_user = users[-1]
    if _user_name(final_user.arguments) in ROOT_USERS:
        findings.append(
            _finding(final_user.line, "error", "user_root", f"final USER is {final_user.arguments}")
        )

    dropped = False
    for item in users:
        is_root = _user_name(item.arguments) in ROOT_USERS
        if dropped and is_root:
            findings.append(
                _finding(item.line, "error", "privilege_regained", f"USER {item.arguments}")
            )
        dropped = dropped or not is_root

    first_drop = next(
        (item.line for item in users if _user_name(item.arguments) not in ROOT_USERS),
        None,
    )
    if first_drop is not None:
        for item in instructions:
            if item.keyword == "RUN" and item.line > first_drop:
                findings.append(
                    _finding(
                        item.line,
                        "warning",
                        "run_after_user",
                        "RUN executes as the runtime user and cannot fix ownership",
                    )
                )
    return findings


def _audit_ordering(instructions: list[DockerInstruction]) -> list[DockerfileFinding]:
    findings: list[DockerfileFinding] = []
    copy_lines = [
        item.line
        for item in instructions
        if item.keyword in {"COPY", "ADD"} and not _copies_with_service_owner(item.arguments)
    ]
    chown_lines = [
        item.line
        for item in instructions
        if item.keyword == "RUN" and RE_CHOWN.search(item.arguments)
    ]
    if not chown_lines:
        findings.append(
            _finding(0, "warning", "chown_missing", "no recursive ownership change found")
        )
    elif copy_lines and max(copy_lines) > max(chown_lines):
        findings.append(
            _finding(
                max(copy_lines),
                "error",
                "copy_after_chown",
                "files copied after ownership was applied keep build-time ownership",
            )
        )

    manifest_copied = False
    for item in instructions:
        if item.keyword in {"COPY", "ADD"} and _copies_manifest(item.arguments):
            manifest_copied = True
        if item.keyword == "RUN" and RE_NPM_INSTALL.search(item.arguments) and not manifest_copied:
            findings.append(
                _finding(
                    item.line,
                    "error",
                    "install_before_manifest",
                    "dependency install runs before the manifest is copied",
                )
            )
    return findings


def _audit_runtime(instructions: list[DockerInstruction]) -> list[DockerfileFinding]:
    findings: list[DockerfileFinding] = []
    ports: list[str] = []
    for item in instructions:
        if item.keyword == "EXPOSE":
            ports.extend(_exposed_ports(item.arguments))
    if len(set(ports)) != 1:
        findings.append(
            _finding(
                0,
                "error",
                "expose_count",
                f"expected exactly one exposed port, found {sorted(set(ports))}",
            )
        )

    commands = [item for item in instructions if item.keyword == "CMD"]
    if not commands:
        findings.append(_finding(0, "error", "cmd_missing", "no CMD instruction"))
    elif not commands[-1].arguments.startswith("["):
        findings.append(
            _finding(
                commands[-1].line,
                "warning",
                "cmd_shell_form",
                "shell-form CMD wraps the process in /bin/sh; exit codes and signals go to the shell",
            )
        )
    return findings


def audit_dockerfile(text: str) -> DockerfileAuditReport:
    instructions = parse_instructions(text)
    findings = [
        *_audit_identity(instructions),
        *_audit_ordering(instructions),
        *_audit_runtime(instructions),
    ]
    return DockerfileAuditReport(findings=findings)
