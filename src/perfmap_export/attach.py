"""On-demand generation of per-process symbol maps.

A manifest entry named ``perf-<pid>.map`` refers to a map that only exists
once an agent has been attached to the running process and asked to write
it. The attach mechanism itself is external; this module wraps it behind
``ProcessMapGenerator`` and converts every failure into a
``GENERATION_FAILED`` result.
"""

from __future__ import annotations

import logging
import subprocess
from typing import Protocol, Sequence

from perfmap_export.archive import ArchiveWriter, ArtifactResult
from perfmap_export.config import DEFAULT_ATTACH_COMMAND, DEFAULT_ATTACH_OPTIONS, AttachConfig
from perfmap_export.manifest import ArtifactReference

LOGGER = logging.getLogger(__name__)


class ProcessMapGenerationError(RuntimeError):
    """The external attach action failed."""


class ProcessMapGenerator(Protocol):
    """Attach to ``process_id`` and make it write its symbol map."""

    def generate(self, process_id: str, options: str) -> bool: ...


class CommandProcessMapGenerator:
    """Run an external attach command, e.g. perf-map-agent's ``AttachOnce``.

    ``command`` is an argv template; ``{pid}`` and ``{options}`` are
    substituted in every element. The call blocks until the command exits.
    """

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_ATTACH_COMMAND,
        timeout_seconds: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if not command:
            raise ValueError("attach command must not be empty")
        self.command = tuple(command)
        self.timeout_seconds = timeout_seconds
        self._logger = logger or LOGGER

    @classmethod
    def from_config(cls, config: AttachConfig, logger: logging.Logger | None = None) -> "CommandProcessMapGenerator":
        return cls(command=config.command, timeout_seconds=config.timeout_seconds, logger=logger)

    def build_argv(self, process_id: str, options: str) -> list[str]:
        return [part.format(pid=process_id, options=options) for part in self.command]

    def generate(self, process_id: str, options: str) -> bool:
        argv = self.build_argv(process_id, options)
        self._logger.info("attach.run pid=%s argv=%s", process_id, argv)
        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ProcessMapGenerationError(f"attach timed out after {exc.timeout}s") from exc
        except OSError as exc:
            raise ProcessMapGenerationError(f"unable to launch {argv[0]!r}: {exc}") from exc

        if completed.returncode != 0:
            detail = (completed.stderr or completed.stdout or "").strip()
            raise ProcessMapGenerationError(f"attach exited with code {completed.returncode}: {detail}")
        return True


def trigger_process_map(
    reference: ArtifactReference,
    generator: ProcessMapGenerator,
    writer: ArchiveWriter,
    *,
    options: str = DEFAULT_ATTACH_OPTIONS,
    logger: logging.Logger | None = None,
) -> ArtifactResult:
    """Generate a pending process map, then archive it like any other file."""

    effective_logger = logger or LOGGER
    process_id = reference.process_id
    if process_id is None:
        raise ValueError(f"{reference.path} is not a process map reference")

    try:
        succeeded = generator.generate(process_id, options)
        if not succeeded:
            raise ProcessMapGenerationError("attach reported failure")
        if not reference.path.exists():
            raise ProcessMapGenerationError(f"Expected map was not generated at {reference.path.absolute()}")
    except Exception as exc:
        effective_logger.warning(
            "attach.generation_failed pid=%s path=%s outcome=GENERATION_FAILED error=%r",
            process_id,
            reference.path,
            exc,
        )
        return ArtifactResult(
            path=reference.path,
            kind=reference.kind,
            outcome="GENERATION_FAILED",
            process_id=process_id,
            message=str(exc),
        )

    return writer.add_artifact(reference)
