"""Pipeline configuration, validated with pydantic.

The layout mirrors a CI workflow definition: which branches trigger a run,
how the source is checked out, how the site is built and where it is deployed.
"""

from __future__ import annotations

from pathlib import Path, PurePosixPath

from pydantic import BaseModel, Field, field_validator

from sitedeploy.models.pipeline import PublishTarget


class TriggerSettings(BaseModel):
    branches: list[str] = Field(default_factory=lambda: ["main"])

    @field_validator("branches")
    @classmethod
    def _ensure_branches(cls, value: list[str]) -> list[str]:
        cleaned = [branch.strip() for branch in value if branch and branch.strip()]
        if not cleaned:
            raise ValueError("At least one trigger branch must be configured.")
        return cleaned


class CheckoutSettings(BaseModel):
    submodules: bool = True
    fetch_depth: int = Field(default=0, ge=0, description="0 fetches the full history.")


class BuildSettings(BaseModel):
    theme: str
    command: list[str] = Field(default_factory=lambda: ["hugo"])
    output_dir: str = "public"
    themes_dir: str = "themes"
    extra_args: list[str] = Field(default_factory=list)

    @field_validator("theme")
    @classmethod
    def _ensure_theme(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Theme name must not be empty.")
        if "/" in cleaned or "\\" in cleaned:
            raise ValueError("Theme name must be a single directory name.")
        return cleaned

    @field_validator("command")
    @classmethod
    def _ensure_command(cls, value: list[str]) -> list[str]:
        if not value or not value[0].strip():
            raise ValueError("Build command must not be empty.")
        return value

    @field_validator("output_dir", "themes_dir")
    @classmethod
    def _ensure_relative(cls, value: str) -> str:
        cleaned = value.strip().rstrip("/")
        if not cleaned or cleaned == ".":
            raise ValueError("Directory must not be empty or the source root.")
        path = PurePosixPath(cleaned)
        if path.is_absolute() or "\\" in cleaned or ".." in path.parts:
            raise ValueError(f"Directory must be relative to the source root: {value!r}")
        return cleaned


class DeploySettings(BaseModel):
    external_repository: str
    publish_branch: str = "main"
    deploy_key_env: str = "ACTIONS_DEPLOY_KEY"
    deploy_key_file: Path | None = None
    remote_url_template: str = "git@github.com:{repository}.git"
    user_name: str = "sitedeploy[bot]"
    user_email: str = "sitedeploy@users.noreply.github.com"
    commit_message: str = "deploy: {commit}"
    force_orphan: bool = False
    allow_empty_commit: bool = False

    @field_validator("external_repository", "publish_branch")
    @classmethod
    def _ensure_not_blank(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Value must not be empty.")
        return cleaned

    @field_validator("commit_message")
    @classmethod
    def _ensure_known_placeholders(cls, value: str) -> str:
        try:
            value.format(commit="0" * 40, short_commit="0" * 7, build_id="0" * 64)
        except (AttributeError, KeyError, IndexError, ValueError) as exc:
            raise ValueError(
                f"Commit message may only use {{commit}}, {{short_commit}} and {{build_id}}: {value!r}"
            ) from exc
        return value

    @property
    def target(self) -> PublishTarget:
        return PublishTarget(repository=self.external_repository, branch=self.publish_branch)


class PipelineSettings(BaseModel):
    """Top-level configuration document."""

    trigger: TriggerSettings = Field(default_factory=TriggerSettings)
    checkout: CheckoutSettings = Field(default_factory=CheckoutSettings)
    build: BuildSettings
    deploy: DeploySettings
    source_url: str | None = None
    workspace: Path = Path(".sitedeploy")
    ledger_path: Path | None = None
    lock_dir: Path | None = None
    webhook_secret_env: str = "SITEDEPLOY_WEBHOOK_SECRET"
