from __future__ import annotations

from pathlib import Path

import pytest

from image_builder.domain.recipe import (
    BUILD_STEPS,
    LAUNCH_STEPS,
    BuildRecipe,
    BuildStep,
    PermissionSpec,
    recipe_from_settings,
)
from image_builder.settings import Settings


def test_build_steps_follow_declared_sequence() -> None:
    assert [step.value for step in (*BUILD_STEPS, *LAUNCH_STEPS)] == [
        "workdir",
        "install",
        "cache",
        "provision",
        "populate",
        "secure",
        "declare",
        "deprivilege",
        "run",
    ]
    assert BUILD_STEPS.index(BuildStep.SECURE) > BUILD_STEPS.index(BuildStep.POPULATE)


def test_default_recipe_paths() -> None:
    recipe = BuildRecipe()

    assert recipe.work_dir == Path("/usr/src/app")
    assert recipe.cache_path == Path("/usr/src/app/my_cache")
    assert recipe.artifact_paths == [Path("/usr/src/app/downloads"), Path("/usr/src/app/uploads")]
    assert recipe.exposed_port_spec == "8080/tcp"
    assert recipe.permissions.owner == "node:node"
    assert recipe.permissions.mode_text == "775"


@pytest.mark.parametrize(
    "overrides",
    [
        {"runtime_uid": 0},
        {"exposed_port": 0},
        {"exposed_port": 65536},
        {"start_command": ()},
    ],
)
def test_recipe_rejects_invalid_contract(overrides: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        BuildRecipe(**overrides)


def test_relocated_keeps_everything_but_work_dir(tmp_path: Path) -> None:
    recipe = BuildRecipe(
        work_dir=tmp_path / "app",
        permissions=PermissionSpec(user="svc", group="svc", mode=0o750),
        exposed_port=3000,
    )

    staged = recipe.relocated(tmp_path / ".app.staging")

    assert staged.work_dir == tmp_path / ".app.staging"
    assert staged.cache_path == tmp_path / ".app.staging" / "my_cache"
    assert staged.permissions == recipe.permissions
    assert staged.exposed_port == 3000
    assert staged.start_command == recipe.start_command


def test_recipe_from_settings() -> None:
    settings = Settings(
        work_dir=Path("/opt/svc"),
        artifact_dirs=["incoming"],
        service_user="svc",
        service_group="staff",
        file_mode=0o750,
        runtime_uid=1234,
        exposed_port=9000,
        start_command=["node", "server.js"],
    )

    recipe = recipe_from_settings(settings)

    assert recipe.work_dir == Path("/opt/svc")
    assert recipe.artifact_dirs == ("incoming",)
    assert recipe.permissions == PermissionSpec(user="svc", group="staff", mode=0o750)
    assert recipe.runtime_uid == 1234
    assert recipe.exposed_port == 9000
    assert recipe.start_command == ("node", "server.js")
