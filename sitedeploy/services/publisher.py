"""Publisher that pushes a build to a branch of an external Git repository."""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from sitedeploy.models.errors import PublishFailure
from sitedeploy.models.pipeline import BuildOutput, PublicationResult, PublishTarget
from sitedeploy.services.commands import CommandRunner, describe_failure
from sitedeploy.services.credentials import deploy_key_file, ssh_environment

logger = logging.getLogger(__name__)

_LS_REMOTE_NO_MATCH = 2


def remote_url_for(repository: str, template: str = "git@github.com:{repository}.git") -> str:
    """Return the push URL for ``repository``.

    ``owner/repo`` shorthands are expanded through ``template``; URLs, scp-style
    addresses and filesystem paths are used as given.
    """

    candidate = repository.strip()
    if "://" in candidate or "@" in candidate:
        return candidate
    if candidate.startswith(("/", ".", "~")):
        return str(Path(candidate).expanduser())
    return template.format(repository=candidate)


@dataclass(slots=True)
class GitPublisher:
    """Replace the content of ``target`` with a build, as one new commit."""

    target: PublishTarget
    remote_url: str
    runner: CommandRunner = field(default_factory=CommandRunner)
    user_name: str = "sitedeploy[bot]"
    user_email: str = "sitedeploy@users.noreply.github.com"
    commit_message: str = "deploy: {commit}"
    force_orphan: bool = False
    allow_empty_commit: bool = False

    def publish(
        self,
        build: BuildOutput,
        *,
        deploy_key: str,
        source_commit: str | None = None,
    ) -> PublicationResult:
        """Push ``build`` as the sole content of the target branch."""

        branch = self.target.branch
        with deploy_key_file(deploy_key) as key_path, tempfile.TemporaryDirectory(
            prefix="sitedeploy-publish-"
        ) as scratch:
            env = ssh_environment(key_path)
            workdir = Path(scratch)

            self._run_git("init", "--quiet", cwd=workdir, env=env)
            self._run_git("remote", "add", "origin", self.remote_url, cwd=workdir, env=env)

            exists = self._branch_exists(workdir, env)
            if exists and not self.force_orphan:
                self._run_git(
                    "fetch", "--quiet", "--depth=1", "origin", f"refs/heads/{branch}", cwd=workdir, env=env
                )
                self._run_git("checkout", "--quiet", "-B", branch, "FETCH_HEAD", cwd=workdir, env=env)
            else:
                self._run_git("symbolic-ref", "HEAD", f"refs/heads/{branch}", cwd=workdir, env=env)

            self._replace_tree(workdir, build)
            # Ignore rules, whether shipped in the build or set globally, must not drop files.
            self._run_git(
                "-c", "core.excludesFile=/dev/null", "add", "--all", "--force", ".", cwd=workdir, env=env
            )
            self._verify_index(workdir, env, build)
            changed = bool(self._run_git("status", "--porcelain", cwd=workdir, env=env).stdout.strip())

            if changed or self.allow_empty_commit:
                message = self.commit_message.format(
                    commit=source_commit or "unknown",
                    short_commit=(source_commit or "unknown")[:7],
                    build_id=build.build_id,
                )
                commit_args = [
                    "-c", f"user.name={self.user_name}",
                    "-c", f"user.email={self.user_email}",
                    "-c", "commit.gpgsign=false",
                    "commit", "--quiet", "-m", message,
                ]
                if not changed:
                    commit_args.append("--allow-empty")
                self._run_git(*commit_args, cwd=workdir, env=env)
            else:
                logger.info("Target %s already matches build %s; nothing to commit", self.target.key, build.build_id[:12])

            push_args = ["push", "--quiet", "origin", f"HEAD:refs/heads/{branch}"]
            if self.force_orphan:
                push_args.insert(1, "--force")
            self._run_git(*push_args, cwd=workdir, env=env)

            commit_hash = self._run_git("rev-parse", "HEAD", cwd=workdir, env=env).stdout.strip()

        logger.info("Published build %s to %s at %s", build.build_id[:12], self.target.key, commit_hash)
        return PublicationResult(target=self.target, commit_hash=commit_hash, changed=changed)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _branch_exists(self, workdir: Path, env: Mapping[str, str]) -> bool:
        result = self._git(
            "ls-remote", "--exit-code", "--heads", "origin", f"refs/heads/{self.target.branch}",
            cwd=workdir, env=env,
        )
        if result.returncode == 0:
            return True
        if result.returncode == _LS_REMOTE_NO_MATCH:
            return False
        raise PublishFailure(
            f"Could not reach {self.target.repository}: {describe_failure(result)}",
            exit_code=result.returncode,
        )

    @staticmethod
    def _replace_tree(workdir: Path, build: BuildOutput) -> None:
        """Make the work tree hold exactly the files of ``build``."""

        for entry in workdir.iterdir():
            if entry.name == ".git":
                continue
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()

        for relative in sorted(build.files):
            destination = workdir / relative
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(build.path / relative, destination)

    def _verify_index(self, workdir: Path, env: Mapping[str, str], build: BuildOutput) -> None:
        listing = self._run_git("ls-files", "-z", cwd=workdir, env=env).stdout
        staged = {name for name in listing.split("\0") if name}
        expected = set(build.files)
        if staged != expected:
            missing = sorted(expected - staged)
            extra = sorted(staged - expected)
            raise PublishFailure(
                f"Staged tree does not match build {build.build_id[:12]}: missing={missing} extra={extra}"
            )

    def _git(self, *args: str, cwd: Path, env: Mapping[str, str]) -> subprocess.CompletedProcess[str]:
        try:
            return self.runner.git(*args, cwd=cwd, env=env)
        except FileNotFoundError as exc:
            raise PublishFailure(f"git executable not found: {exc}", exit_code=127) from exc

    def _run_git(self, *args: str, cwd: Path, env: Mapping[str, str]) -> subprocess.CompletedProcess[str]:
        """Execute a Git command in the publish work tree and raise on error."""

        result = self._git(*args, cwd=cwd, env=env)
        if result.returncode != 0:
            command = next((arg for arg in args if not arg.startswith("-") and "=" not in arg), args[0])
            raise PublishFailure(
                f"git {command} failed: {describe_failure(result)}",
                exit_code=result.returncode,
            )
        return result
