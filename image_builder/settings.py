from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_WORK_DIR = "/usr/src/app"
DEFAULT_BASE_IMAGE = "node:18-bullseye"
DEFAULT_NPM_CACHE_DIR = "my_cache"
DEFAULT_MANIFEST_PATTERN = "package*.json"
DEFAULT_ARTIFACT_DIRS = ["downloads", "uploads"]
DEFAULT_START_COMMAND = ["npm", "start"]
DEFAULT_SERVICE_USER = "node"
DEFAULT_SERVICE_GROUP = "node"
DEFAULT_FILE_MODE = 0o775
DEFAULT_RUNTIME_UID = 1000
DEFAULT_EXPOSED_PORT = 8080


class SettingsError(ValueError):
    """Raised when required environment settings are missing or malformed."""


def _strip_optional_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def _load_dotenv_if_exists(env_file: Path) -> None:
    if not env_file.exists() or not env_file.is_file():
        return

    for raw_line in env_file.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].strip()
        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = _strip_optional_quotes(value.strip())
        os.environ.setdefault(key, value)


def _parse_json_env(name: str, default: str, expected_type: type) -> Any:
    raw = os.getenv(name, default)
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SettingsError(f"{name} must be valid JSON. Received: {raw}") from exc
    if not isinstance(value, expected_type):
        raise SettingsError(f"{name} must be a JSON {expected_type.__name__}.")
    return value


def _parse_int_env(
    name: str,
    default: int,
    minimum: int = 0,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise SettingsError(f"{name} must be an integer. Received: {raw}") from exc
    if value < minimum:
        raise SettingsError(f"{name} must be >= {minimum}. Received: {value}")
    if maximum is not None and value > maximum:
        raise SettingsError(f"{name} must be <= {maximum}. Received: {value}")
    return value


def _parse_octal_mode_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    text = raw.strip()
    if text.lower().startswith("0o"):
        text = text[2:]
    try:
        value = int(text, 8)
    except ValueError as exc:
        raise SettingsError(f"{name} must be an octal file mode. Received: {raw}") from exc
    if value > 0o777:
        raise SettingsError(f"{name} must be <= 777. Received: {raw}")
    return value


def _parse_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    raise SettingsError(
        f"{name} must be a boolean value "
        f"(true/false, 1/0, yes/no). Received: {raw}"
    )


def _parse_str_env(name: str, default: str) -> str:
    """환경변수를 문자열로 파싱합니다.

    값이 없거나 공백만 있으면 default를 반환합니다.
    os.getenv의 두 번째 인자와 달리, 빈 문자열·공백 전용 값도 default로 처리합니다.
    """
    raw = os.getenv(name, "").strip()
    return raw if raw else default


def _parse_timezone_env(name: str, default: str) -> str:
    value = _parse_str_env(name, default)
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, KeyError, ValueError):
        raise SettingsError(f"{name} is not a valid IANA timezone name. Received: {value}")
    return value


def _parse_non_empty_json_list_env(name: str, default: list[str]) -> list[str]:
    raw_default = json.dumps(default, ensure_ascii=False)
    raw_list = _parse_json_env(name, raw_default, list)
    values = [str(item).strip() for item in raw_list if str(item).strip()]
    if not values:
        raise SettingsError(f"{name} must include at least one non-empty value.")
    return values


def _validate_segment_name(name: str, value: str) -> None:
    # Must stay a direct child of the working directory.
    parts = PurePosixPath(value).parts
    if len(parts) != 1 or value in {".", ".."} or "/" in value:
        raise SettingsError(
            f"{name} must be a single relative directory name. Received: {value}"
        )


@dataclass(frozen=True)
class _LayoutConfig:
    work_dir: Path
    source_dir: Path
    metadata_file: Path
    npm_cache_dir: str
    manifest_pattern: str
    artifact_dirs: list[str]


@dataclass(frozen=True)
class _IdentityConfig:
    service_user: str
    service_group: str
    file_mode: int
    runtime_uid: int


@dataclass(frozen=True)
class _RuntimeConfig:
    base_image: str
    npm_bin: str
    exposed_port: int
    start_command: list[str]
    timezone: str
    log_level: str
    dry_run: bool


def _parse_layout_config() -> _LayoutConfig:
    work_dir_raw = _parse_str_env("IMAGE_WORK_DIR", DEFAULT_WORK_DIR)
    work_dir = Path(work_dir_raw)
    if not work_dir.is_absolute():
        raise SettingsError(f"IMAGE_WORK_DIR must be an absolute path. Received: {work_dir_raw}")
    if work_dir == Path(work_dir.anchor):
        raise SettingsError("IMAGE_WORK_DIR must not be the filesystem root.")

    source_dir = Path(_parse_str_env("IMAGE_SOURCE_DIR", "."))
    metadata_file = Path(
        _parse_str_env("IMAGE_METADATA_FILE", str(default_metadata_file(work_dir)))
    )
    if Path(os.path.abspath(metadata_file)).is_relative_to(Path(os.path.abspath(work_dir))):
        raise SettingsError(
            "IMAGE_METADATA_FILE must be outside IMAGE_WORK_DIR. "
            f"Received: {metadata_file}"
        )

    npm_cache_dir = _parse_str_env("NPM_CACHE_DIR", DEFAULT_NPM_CACHE_DIR)
    _validate_segment_name("NPM_CACHE_DIR", npm_cache_dir)

    artifact_dirs = _parse_non_empty_json_list_env("ARTIFACT_DIRS", DEFAULT_ARTIFACT_DIRS)
    for artifact_dir in artifact_dirs:
        _validate_segment_name("ARTIFACT_DIRS", artifact_dir)
    if npm_cache_dir in artifact_dirs:
        raise SettingsError("ARTIFACT_DIRS must not include NPM_CACHE_DIR.")

    return _LayoutConfig(
        work_dir=work_dir,
        source_dir=source_dir,
        metadata_file=metadata_file,
        npm_cache_dir=npm_cache_dir,
        manifest_pattern=_parse_str_env("NPM_MANIFEST_PATTERN", DEFAULT_MANIFEST_PATTERN),
        artifact_dirs=artifact_dirs,
    )


def _parse_identity_config() -> _IdentityConfig:
    return _IdentityConfig(
        service_user=_parse_str_env("SERVICE_USER", DEFAULT_SERVICE_USER),
        service_group=_parse_str_env("SERVICE_GROUP", DEFAULT_SERVICE_GROUP),
        file_mode=_parse_octal_mode_env("FILE_MODE", DEFAULT_FILE_MODE),
        runtime_uid=_parse_int_env("RUNTIME_UID", DEFAULT_RUNTIME_UID, minimum=1),
    )


def _parse_runtime_config() -> _RuntimeConfig:
    return _RuntimeConfig(
        base_image=_parse_str_env("IMAGE_BASE", DEFAULT_BASE_IMAGE),
        npm_bin=_parse_str_env("NPM_BIN", "npm"),
        exposed_port=_parse_int_env(
            "EXPOSED_PORT",
            DEFAULT_EXPOSED_PORT,
            minimum=1,
            maximum=65535,
        ),
        start_command=_parse_non_empty_json_list_env("START_COMMAND", DEFAULT_START_COMMAND),
        timezone=_parse_timezone_env("TIMEZONE", "UTC"),
        log_level=_parse_str_env("LOG_LEVEL", "INFO").upper(),
        dry_run=_parse_bool_env("DRY_RUN", default=False),
    )


def default_metadata_file(work_dir: Path) -> Path:
    return work_dir.with_name(f"{work_dir.name}.image.json")


@dataclass(frozen=True)
class Settings:
    work_dir: Path = Path(DEFAULT_WORK_DIR)
    source_dir: Path = Path(".")
    metadata_file: Path = field(default_factory=lambda: default_metadata_file(Path(DEFAULT_WORK_DIR)))
    npm_cache_dir: str = DEFAULT_NPM_CACHE_DIR
    manifest_pattern: str = DEFAULT_MANIFEST_PATTERN
    artifact_dirs: list[str] = field(default_factory=lambda: list(DEFAULT_ARTIFACT_DIRS))
    service_user: str = DEFAULT_SERVICE_USER
    service_group: str = DEFAULT_SERVICE_GROUP
    file_mode: int = DEFAULT_FILE_MODE
    runtime_uid: int = DEFAULT_RUNTIME_UID
    base_image: str = DEFAULT_BASE_IMAGE
    npm_bin: str = "npm"
    exposed_port: int = DEFAULT_EXPOSED_PORT
    start_command: list[str] = field(default_factory=lambda: list(DEFAULT_START_COMMAND))
    timezone: str = "UTC"
    log_level: str = "INFO"
    dry_run: bool = False

    @classmethod
    def from_env(cls, env_file: str | Path | None = ".env") -> Settings:
        if env_file:
            _load_dotenv_if_exists(Path(env_file))

        layout = _parse_layout_config()
        identity = _parse_identity_config()
        runtime = _parse_runtime_config()

        return cls(
            work_dir=layout.work_dir,
            source_dir=layout.source_dir,
            metadata_file=layout.metadata_file,
            npm_cache_dir=layout.npm_cache_dir,
            manifest_pattern=layout.manifest_pattern,
            artifact_dirs=layout.artifact_dirs,
            service_user=identity.service_user,
            service_group=identity.service_group,
            file_mode=identity.file_mode,
            runtime_uid=identity.runtime_uid,
            base_image=runtime.base_image,
            npm_bin=runtime.npm_bin,
            exposed_port=runtime.exposed_port,
            start_command=runtime.start_command,
            timezone=runtime.timezone,
            log_level=runtime.log_level,
            dry_run=runtime.dry_run,
        )
