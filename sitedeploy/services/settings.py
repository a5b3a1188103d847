"""Load pipeline settings and wire the pipeline components together."""

from __future__ import annotations

import functools
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

import yaml
from pydantic import ValidationError

from sitedeploy.models.settings import PipelineSettings
from sitedeploy.services.acquire import SourceAcquirer
from sitedeploy.services.commands import CommandRunner
from sitedeploy.services.credentials import resolve_deploy_key
from sitedeploy.services.ledger import RunLedger
from sitedeploy.services.pipeline import PipelineController, SupportsRunLedger
from sitedeploy.services.publisher import GitPublisher, remote_url_for
from sitedeploy.services.renderer import HugoRenderer
from sitedeploy.services.run_lock import shared_run_lock

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME: Final[str] = "sitedeploy.yaml"

# Environment variable -> location in the settings document.
_ENV_OVERRIDES: Final[dict[str, tuple[str, ...]]] = {
    "SITEDEPLOY_THEME": ("build", "theme"),
    "SITEDEPLOY_EXTERNAL_REPOSITORY": ("deploy", "external_repository"),
    "SITEDEPLOY_PUBLISH_BRANCH": ("deploy", "publish_branch"),
    "SITEDEPLOY_FETCH_DEPTH": ("checkout", "fetch_depth"),
    "SITEDEPLOY_WORKSPACE": ("workspace",),
    "SITEDEPLOY_DB_PATH": ("ledger_path",),
    "SITEDEPLOY_LOCK_DIR": ("lock_dir",),
}


class SettingsError(ValueError):
    """Raised when the configuration cannot be loaded or validated."""


def _set_path(document: dict[str, Any], keys: tuple[str, ...], value: Any) -> None:
    node = document
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = value


def _apply_env_overrides(document: dict[str, Any], environ: Mapping[str, str]) -> None:
    branches = environ.get("SITEDEPLOY_BRANCHES")
    if branches:
        _set_path(document, ("trigger", "branches"), [item.strip() for item in branches.split(",")])

    for variable, keys in _ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value:
            _set_path(document, keys, value)


def load_settings(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> PipelineSettings:
    """Read the YAML settings file, apply environment overrides and validate.

    Without an explicit ``path``, ``SITEDEPLOY_CONFIG`` or ``sitedeploy.yaml``
    in the working directory is used when present.
    """

    environ = os.environ if environ is None else environ
    config_path = Path(path or environ.get("SITEDEPLOY_CONFIG") or DEFAULT_CONFIG_FILENAME)

    document: dict[str, Any] = {}
    if config_path.is_file():
        try:
            payload = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise SettingsError(f"{config_path} is not valid YAML: {exc}") from exc
        if payload is not None and not isinstance(payload, dict):
            raise SettingsError(f"{config_path} must contain a mapping at the top level")
        document = payload or {}
    elif path is not None:
        raise SettingsError(f"Configuration file {config_path} does not exist")

    _apply_env_overrides(document, environ)

    try:
        settings = PipelineSettings.model_validate(document)
    except ValidationError as exc:
        raise SettingsError(f"Invalid configuration in {config_path}:\n{exc}") from exc

    logger.debug("Loaded settings from %s", config_path)
    return settings


def build_controller(
    settings: PipelineSettings,
    source_url: str,
    *,
    runner: CommandRunner | None = None,
    ledger: SupportsRunLedger | None = None,
    environ: Mapping[str, str] | None = None,
) -> PipelineController:
    """Construct a :class:`PipelineController` from ``settings``."""

    runner = runner or CommandRunner()
    deploy = settings.deploy

    acquirer = SourceAcquirer(
        source_url=source_url,
        runner=runner,
        submodules=settings.checkout.submodules,
        fetch_depth=settings.checkout.fetch_depth,
        themes_dir=settings.build.themes_dir,
    )
    renderer = HugoRenderer(
        command=list(settings.build.command),
        extra_args=list(settings.build.extra_args),
        runner=runner,
    )
    publisher = GitPublisher(
        target=deploy.target,
        remote_url=remote_url_for(deploy.external_repository, deploy.remote_url_template),
        runner=runner,
        user_name=deploy.user_name,
        user_email=deploy.user_email,
        commit_message=deploy.commit_message,
        force_orphan=deploy.force_orphan,
        allow_empty_commit=deploy.allow_empty_commit,
    )

    if ledger is None and settings.ledger_path is not None:
        ledger = RunLedger(settings.ledger_path)

    return PipelineController(
        acquirer=acquirer,
        renderer=renderer,
        publisher=publisher,
        target=deploy.target,
        theme=settings.build.theme,
        workspace=settings.workspace,
        credential_resolver=functools.partial(
            resolve_deploy_key, deploy.deploy_key_env, deploy.deploy_key_file, environ
        ),
        branches=tuple(settings.trigger.branches),
        output_dir=settings.build.output_dir,
        ledger=ledger,
        lock=shared_run_lock(settings.lock_dir),
    )
