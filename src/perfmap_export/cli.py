"""Typer CLI entrypoint for perfmap_export."""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path

import typer
import yaml

from perfmap_export.archive import ArchiveContainerError, list_archive_entries
from perfmap_export.attach import CommandProcessMapGenerator
from perfmap_export.config import AppSettings, ExportConfig, load_settings
from perfmap_export.logging_utils import configure_logging
from perfmap_export.manifest import ArtifactReference, parse_manifest
from perfmap_export.pipeline import ExportResult, export_artifacts, export_to_path
from perfmap_export.report import write_export_report

app = typer.Typer(
    add_completion=False,
    help="Bundle the symbol files and JIT process maps a perf dump needs into one zip archive.",
    no_args_is_help=True,
)


def _load_and_optionally_configure_logger(
    config_file: Path | None,
    configure: bool,
) -> tuple[AppSettings, logging.Logger]:
    settings = load_settings(config_file=config_file)
    if configure:
        logger = configure_logging(settings.logging.log_file, level=settings.logging.level)
    else:
        logger = logging.getLogger("perfmap_export")
    return settings, logger


def _read_manifest(
    manifest: Path | None,
    working_dir: Path,
    config: ExportConfig,
    logger: logging.Logger,
) -> list[ArtifactReference]:
    if manifest is None:
        return parse_manifest(typer.get_binary_stream("stdin"), working_dir, config=config, logger=logger)
    with manifest.open("rb") as stream:
        return parse_manifest(stream, working_dir, config=config, logger=logger)


def _echo_summary(result: ExportResult) -> None:
    counts = result.outcome_counts()
    typer.echo(f"run_id: {result.run_id}", err=True)
    typer.echo(f"artifacts_total: {len(result.results)}", err=True)
    typer.echo(f"entries_written: {result.entries_written}", err=True)
    typer.echo(f"bytes_written: {result.bytes_written}", err=True)
    typer.echo(f"missing: {counts['MISSING']}", err=True)
    typer.echo(f"access_denied: {counts['ACCESS_DENIED']}", err=True)
    typer.echo(f"generation_failed: {counts['GENERATION_FAILED']}", err=True)


@app.command("export")
def export_cmd(
    manifest: Path | None = typer.Argument(
        None,
        help="Manifest of '<build-id> <path>' pairs. Reads stdin when omitted.",
        dir_okay=False,
    ),
    output: Path | None = typer.Argument(
        None,
        help="Archive to write. Writes to stdout when omitted.",
        dir_okay=False,
    ),
    working_dir: Path | None = typer.Option(
        None,
        "--working-dir",
        help="Base for relative manifest paths (default: the manifest's directory, or cwd for stdin).",
        file_okay=False,
    ),
    attach_options: str | None = typer.Option(
        None,
        "--attach-options",
        help="Option string passed to the attach command (overrides attach.options).",
    ),
    report_dir: Path | None = typer.Option(
        None,
        "--report-dir",
        help="Optional directory for export_summary.json and artifact_results.parquet.",
        file_okay=False,
    ),
    config_file: Path | None = typer.Option(
        None,
        "--config-file",
        help="Optional settings YAML path.",
        exists=False,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
) -> None:
    """Export every artifact named by a manifest into one zip archive."""

    settings, logger = _load_and_optionally_configure_logger(config_file, configure=True)
    config = ExportConfig.from_settings(settings, attach_options=attach_options)
    if working_dir is not None:
        effective_working_dir = working_dir
    elif manifest is not None:
        effective_working_dir = manifest.parent
    else:
        effective_working_dir = Path.cwd()

    try:
        references = _read_manifest(manifest, effective_working_dir, config, logger)
    except OSError as exc:
        logger.error("export.manifest_unreadable manifest=%s error=%s", manifest or "<stdin>", exc)
        raise typer.Exit(code=1) from exc

    generator = CommandProcessMapGenerator.from_config(settings.attach, logger=logger)
    try:
        if output is None:
            stdout = typer.get_binary_stream("stdout")
            result = export_artifacts(references, stdout, config=config, generator=generator, logger=logger)
            stdout.flush()
        else:
            result = export_to_path(references, output, config=config, generator=generator, logger=logger)
    except (ArchiveContainerError, OSError) as exc:
        logger.exception("export.failed output=%s", output or "<stdout>")
        raise typer.Exit(code=1) from exc

    if report_dir is not None:
        try:
            report_paths = write_export_report(result, report_dir, archive_path=output)
        except OSError as exc:
            logger.exception("export.report_failed report_dir=%s", report_dir)
            raise typer.Exit(code=1) from exc
        logger.info(
            "export.report_written summary=%s results=%s",
            report_paths.summary_path,
            report_paths.results_path,
        )

    _echo_summary(result)


@app.command("list")
def list_cmd(
    archive: Path = typer.Argument(
        ...,
        help="Archive produced by the export command.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
) -> None:
    """List the entries of an exported archive with their timestamps."""

    try:
        entries = list_archive_entries(archive)
    except (zipfile.BadZipFile, OSError) as exc:
        raise typer.BadParameter(f"{archive} is not a readable zip archive: {exc}") from exc

    for entry in entries:
        typer.echo(f"{entry.modified.isoformat()}\t{entry.size}\t{entry.name}")


@app.command("show-config")
def show_config(
    config_file: Path | None = typer.Option(
        None,
        "--config-file",
        help="Optional settings YAML path.",
        exists=False,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
) -> None:
    """Print the effective configuration after env overrides."""

    settings, _ = _load_and_optionally_configure_logger(config_file, configure=False)
    rendered = yaml.safe_dump(settings.as_dict(), sort_keys=False)
    typer.echo(rendered)


def main() -> None:
    """CLI script entrypoint."""

    app()


if __name__ == "__main__":
    main()
