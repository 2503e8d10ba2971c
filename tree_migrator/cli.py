import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Optional

import click
from tqdm import tqdm

from . import __version__
from .config import Config, ConfigManager, ConfigurationError, config_to_dict
from .migration.checkpoint import CheckpointStore
from .migration.engine import MigrationEngine, MigrationOptions
from .migration.progress import MigrationOutcome, MigrationProgress, MigrationResult
from .transfer.integrity import IntegrityVerifier
from .utils.exceptions import MigratorError, PreconditionError
from .utils.logger import log_file_for, setup_logging

logger = logging.getLogger(__name__)

EXIT_FAILED = 1
EXIT_CANCELLED = 130


@click.group()
@click.version_option(version=__version__, prog_name="tree-migrator")
def main() -> None:
    pass


@main.command()
def config() -> None:
    """Create or update the configuration file interactively."""
    mgr = ConfigManager()

    if mgr.exists():
        click.echo(f"Configuration file found: {mgr.config_path}")
        if not click.confirm("Overwrite existing configuration?", default=False):
            click.echo("Aborted.")
            return
        try:
            mgr.load()
        except ConfigurationError as e:
            click.echo(f"Existing configuration is invalid, starting over: {e}")
    else:
        click.echo("No configuration file found. Creating a new one.")

    click.echo("\n--- Migration ---")
    mgr.get_or_prompt("migration.workers", "Parallel workers")
    mgr.get_or_prompt("migration.verify", "Verify copies by hash")
    mgr.get_or_prompt("migration.preserve_timestamps", "Preserve timestamps")

    click.echo("\n--- Transfer ---")
    mgr.get_or_prompt("transfer.buffer_size_kb", "Chunk size (KiB)")
    mgr.get_or_prompt("transfer.hash_algorithm", "Hash algorithm")

    click.echo("\n--- State ---")
    mgr.get_or_prompt("state.state_dir", "Checkpoint directory")

    try:
        mgr.config.validate()
    except ConfigurationError as e:
        click.echo(f"\nValidation error: {e}", err=True)
        raise SystemExit(1)

    mgr.save()
    click.echo(f"\nConfiguration saved to {mgr.config_path}")


@main.command()
def show() -> None:
    """Print the effective configuration."""
    mgr = ConfigManager()
    try:
        cfg = mgr.load_or_default()
    except ConfigurationError as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        raise SystemExit(1)

    source = mgr.config_path if mgr.exists() else "defaults"
    click.echo(f"Configuration: {source}\n")
    click.echo(json.dumps(config_to_dict(cfg), indent=2))


def _load_config() -> Config:
    try:
        return ConfigManager().load_or_default()
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1)


def _create_engine(cfg: Config, state_id: Optional[str]) -> MigrationEngine:
    return MigrationEngine(
        store=CheckpointStore(state_id=state_id, state_dir=cfg.state_dir),
        verifier=IntegrityVerifier(algorithm=cfg.transfer.hash_algorithm),
    )


def _run_with_progress(
    engine: MigrationEngine,
    source: Path,
    destination: Path,
    options: MigrationOptions,
    desc: str,
) -> MigrationResult:
    progress_bar = tqdm(desc=desc, unit="B", unit_scale=True, unit_divisor=1024)

    def on_progress(progress: MigrationProgress) -> None:
        progress_bar.total = progress.total_bytes
        progress_bar.n = progress.bytes_copied
        progress_bar.set_postfix_str(
            f"{progress.files_completed}/{progress.total_files} files"
        )
        progress_bar.refresh()

    options.progress_sink = on_progress

    async def run() -> MigrationResult:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, engine.request_cancel)
        except NotImplementedError:
            logger.debug("Signal handlers unsupported; Ctrl-C will abort hard")
        try:
            return await engine.migrate(source, destination, options)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except NotImplementedError:
                pass

    try:
        return asyncio.run(run())
    finally:
        progress_bar.close()


def _print_summary(result: MigrationResult) -> None:
    click.echo("\n--- Migration Summary ---")
    click.echo(f"  Outcome:        {result.outcome.value}")
    click.echo(f"  Files:          {result.files_completed}/{result.total_files}")
    click.echo(f"  Bytes:          {result.bytes_copied}/{result.total_bytes}")
    if result.resumed:
        click.echo("  Resumed:        yes")
    for failure in result.failures:
        click.echo(f"  Failed:         {failure.relative_path}: {failure.reason}")
    if result.outcome != MigrationOutcome.COMPLETED:
        click.echo(f"\nResume with --state-id {result.state_id}")


def _migrate_command(
    source: Path,
    destination: Path,
    copy: bool,
    workers: Optional[int],
    no_verify: bool,
    no_timestamps: bool,
    allow_existing: bool,
    skip_existing: bool,
    state_id: Optional[str],
    verbose: bool,
    log: bool,
) -> None:
    cfg = _load_config()
    engine = _create_engine(cfg, state_id)
    setup_logging(
        level="DEBUG" if verbose else None,
        log_file=log_file_for(engine.store.state_id) if log else None,
    )

    options = cfg.to_options(copy=copy)
    if workers is not None:
        options.workers = workers
    if no_verify:
        options.verify = False
    if no_timestamps:
        options.preserve_timestamps = False
    if allow_existing:
        options.allow_existing = True
    if skip_existing:
        options.allow_existing = True
        options.skip_existing = True

    verb = "Copying" if copy else "Moving"
    click.echo(f"{verb} {source} -> {destination} (state id {engine.store.state_id})")

    try:
        result = _run_with_progress(engine, source, destination, options, verb)
    except PreconditionError as e:
        click.echo(f"Cannot start migration: {e}", err=True)
        raise SystemExit(EXIT_FAILED)
    except MigratorError as e:
        click.echo(f"Migration aborted: {e}", err=True)
        raise SystemExit(EXIT_FAILED)

    _print_summary(result)
    if result.outcome == MigrationOutcome.FAILED:
        raise SystemExit(EXIT_FAILED)
    if result.outcome == MigrationOutcome.CANCELLED:
        raise SystemExit(EXIT_CANCELLED)


def _migration_options(func):  # type: ignore[no-untyped-def]
    decorators = [
        click.argument("source", type=click.Path(path_type=Path)),
        click.argument("destination", type=click.Path(path_type=Path)),
        click.option(
            "--workers", type=int, default=None, help="Number of parallel workers"
        ),
        click.option("--no-verify", is_flag=True, help="Skip hash verification"),
        click.option(
            "--no-timestamps", is_flag=True, help="Do not copy file timestamps"
        ),
        click.option(
            "--allow-existing", is_flag=True, help="Allow an existing destination"
        ),
        click.option(
            "--skip-existing",
            is_flag=True,
            help="Skip files already identical at the destination",
        ),
        click.option(
            "--state-id", default=None, help="Checkpoint id to create or resume"
        ),
        click.option("--verbose", is_flag=True, help="Enable debug logging"),
        click.option("--log", is_flag=True, help="Also log to a file per state id"),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


@main.command()
@_migration_options
def copy(
    source: Path,
    destination: Path,
    workers: Optional[int],
    no_verify: bool,
    no_timestamps: bool,
    allow_existing: bool,
    skip_existing: bool,
    state_id: Optional[str],
    verbose: bool,
    log: bool,
) -> None:
    """Copy SOURCE to DESTINATION, resuming a matching checkpoint."""
    _migrate_command(
        source,
        destination,
        True,
        workers,
        no_verify,
        no_timestamps,
        allow_existing,
        skip_existing,
        state_id,
        verbose,
        log,
    )


@main.command()
@_migration_options
def move(
    source: Path,
    destination: Path,
    workers: Optional[int],
    no_verify: bool,
    no_timestamps: bool,
    allow_existing: bool,
    skip_existing: bool,
    state_id: Optional[str],
    verbose: bool,
    log: bool,
) -> None:
    """Move SOURCE to DESTINATION, resuming a matching checkpoint."""
    _migrate_command(
        source,
        destination,
        False,
        workers,
        no_verify,
        no_timestamps,
        allow_existing,
        skip_existing,
        state_id,
        verbose,
        log,
    )


@main.command()
@click.option("--state-id", required=True, help="Checkpoint id")
def status(state_id: str) -> None:
    """Show the progress recorded in a checkpoint."""
    cfg = _load_config()
    store = CheckpointStore(state_id=state_id, state_dir=cfg.state_dir)
    state = store.load()
    if state is None:
        click.echo(f"No checkpoint found for state id {state_id}")
        raise SystemExit(1)

    click.echo(f"Migration status for state id {state_id}\n")
    click.echo(f"  Source:         {state.source_root}")
    click.echo(f"  Destination:    {state.dest_root}")
    click.echo(f"  Total files:    {state.total_files}")
    click.echo(f"  Completed:      {len(state.completed_paths)}")
    click.echo(f"  Pending:        {len(state.pending_tasks)}")
    partial = [t for t in state.pending_tasks if t.bytes_copied > 0]
    click.echo(f"  Partial:        {len(partial)}")
    if state.last_updated is not None:
        click.echo(f"  Last updated:   {state.last_updated.isoformat()}")

    if state.total_bytes > 0:
        pct = (state.completed_bytes / state.total_bytes) * 100
        click.echo(f"\n  Progress:       {pct:.1f}%")
    else:
        click.echo("\n  Progress:       0.0%")


if __name__ == "__main__":
    main()
