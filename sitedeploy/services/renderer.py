"""Invoke the static site generator as an external collaborator."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from sitedeploy.models.errors import RenderFailure
from sitedeploy.models.pipeline import BuildOutput, SourceSnapshot
from sitedeploy.services.build_output import snapshot_output
from sitedeploy.services.commands import CommandRunner, describe_failure

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HugoRenderer:
    """Run ``hugo --theme=<name>`` from the source root and collect its output."""

    command: list[str] = field(default_factory=lambda: ["hugo"])
    extra_args: list[str] = field(default_factory=list)
    runner: CommandRunner = field(default_factory=CommandRunner)

    def render(self, snapshot: SourceSnapshot, output_dir: Path) -> BuildOutput:
        """Render ``snapshot`` into ``output_dir`` and return the resulting build."""

        args = [
            *self.command,
            f"--theme={snapshot.theme.name}",
            f"--destination={output_dir}",
            *self.extra_args,
        ]
        try:
            result = self.runner.run(args, cwd=snapshot.path)
        except FileNotFoundError as exc:
            raise RenderFailure(f"Renderer executable not found: {self.command[0]}", exit_code=127) from exc

        if result.stdout:
            logger.debug("Renderer output:\n%s", result.stdout.rstrip())
        if result.returncode != 0:
            raise RenderFailure(
                f"Renderer exited with status {result.returncode}: {describe_failure(result)}",
                exit_code=result.returncode,
            )

        build = snapshot_output(output_dir)
        if build.is_empty:
            raise RenderFailure(f"Renderer produced no output in {output_dir}", exit_code=0)

        logger.info("Rendered %s files (build %s)", build.file_count, build.build_id[:12])
        return build
