from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from image_builder.domain.recipe import BuildRecipe, recipe_from_settings
from image_builder.logging_utils import log_event, setup_logging
from image_builder.observability import events
from image_builder.services.npm import NpmClient
from image_builder.settings import Settings, SettingsError


@dataclass(frozen=True)
class BuilderRuntime:
    settings: Settings
    logger: logging.Logger
    recipe: BuildRecipe
    npm_client: NpmClient


def build_runtime(
    settings: Settings,
    *,
    setup_logging_fn: Callable[..., logging.Logger] = setup_logging,
    npm_client_factory: Callable[..., NpmClient] = NpmClient,
) -> BuilderRuntime:
    logger = setup_logging_fn(settings.log_level, settings.timezone)
    recipe = recipe_from_settings(settings)
    npm_client = npm_client_factory(
        settings.npm_bin,
        logger=logger.getChild("npm"),
    )
    return BuilderRuntime(
        settings=settings,
        logger=logger,
        recipe=recipe,
        npm_client=npm_client,
    )


def load_runtime(
    *,
    settings_from_env: Callable[..., Settings] = Settings.from_env,
    setup_logging_fn: Callable[..., logging.Logger] = setup_logging,
    build_runtime_fn: Callable[[Settings], BuilderRuntime] = build_runtime,
) -> BuilderRuntime | None:
    bootstrap_logger = setup_logging_fn()
    try:
        settings = settings_from_env()
    except SettingsError as exc:
        bootstrap_logger.critical(log_event(events.STARTUP_INVALID_CONFIG, error=str(exc)))
        return None
    return build_runtime_fn(settings)
