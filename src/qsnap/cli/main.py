"""
Command Line Interface for Quantum Snap.

Every invocation loads the persisted session, runs one operation on it and
lets the session snapshot its state back to disk.
"""

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.prompt import Confirm
from rich.table import Table

from qsnap import __version__
from qsnap.ai.client import GeminiClient
from qsnap.config import (
    APIKeyManager,
    AppConfig,
    ConfigError,
    KeySource,
    get_config,
    load_config,
)
from qsnap.core.errors import QSnapError
from qsnap.core.models import AnalysisProfile, AppState, GeneratedImage, GenerationProgress
from qsnap.export import AlbumExporter
from qsnap.imaging import center_square_crop, load_image_file
from qsnap.session import StudioSession
from qsnap.storage.persistence import SessionPersistence
from qsnap.storage.store import JsonFileStore
from qsnap.utils.logging import LogContext, setup_logging

logger = logging.getLogger(__name__)

console = Console()


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def print_header(text: str) -> None:
    """Print a styled header."""
    console.print()
    console.print(Panel(text, style="bold magenta", expand=False))
    console.print()


def print_success(text: str) -> None:
    console.print(f"[bold green]✓[/bold green] {text}")


def print_warning(text: str) -> None:
    console.print(f"[bold yellow]⚠[/bold yellow] {text}")


def print_error(text: str) -> None:
    console.print(f"[bold red]✗[/bold red] {text}")


def print_info_panel(title: str, content: str, border_style: str = "blue") -> None:
    console.print(Panel(content, title=title, border_style=border_style))


def confirm(prompt: str, default: bool = False) -> bool:
    """Prompt for yes/no confirmation."""
    return Confirm.ask(prompt, default=default, console=console)


def create_progress() -> Progress:
    """Create standard progress bar setup."""
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    )


def abort(error: QSnapError) -> None:
    """Print a surfaced error with its remediation and exit non-zero."""
    print_error(error.user_message())
    sys.exit(1)


def print_profile(profile: AnalysisProfile) -> None:
    if profile.is_degraded:
        print_info_panel("Profile (restored)", f"Summary: {profile.summary()}", "yellow")
        return
    lines = [
        f"[bold]Face:[/bold] {profile.description}",
        f"[bold]Outfit:[/bold] {profile.outfit}",
        f"[bold]Environment:[/bold] {profile.environment}",
        f"[bold]Camera style:[/bold] {profile.photographic_style}",
        f"[bold]Key features:[/bold] {', '.join(profile.key_features) or '-'}",
    ]
    if profile.vibe_summary:
        lines.append(f"[bold]Vibe:[/bold] {profile.vibe_summary}")
    if profile.consistency_notes:
        lines.append(f"[bold]Consistent:[/bold] {profile.consistency_notes}")
    if profile.composite_confidence is not None:
        lines.append(f"[bold]Composite confidence:[/bold] {profile.composite_confidence:.0%}")
    print_info_panel("Identity Profile", "\n".join(lines), "magenta")


def print_images_table(title: str, images: tuple[GeneratedImage, ...]) -> None:
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Image ID", style="cyan")
    table.add_column("Pose", style="green")
    table.add_column("Created")
    for index, image in enumerate(images, start=1):
        table.add_row(
            str(index), image.id, image.scenario_id, image.created_at.strftime("%Y-%m-%d %H:%M")
        )
    console.print(table)


def _config(ctx: click.Context) -> AppConfig:
    return ctx.obj["config"]


def _session(ctx: click.Context) -> StudioSession:
    """Build (once per invocation) and load the persisted session."""
    if "session" not in ctx.obj:
        config = _config(ctx)
        config.paths.ensure_dirs_exist()
        persistence = SessionPersistence(JsonFileStore(config.paths.state_dir))
        session = StudioSession(GeminiClient(config), persistence, config)
        session.load()
        ctx.obj["session"] = session
    return ctx.obj["session"]


# =============================================================================
# MAIN CLI GROUP
# =============================================================================


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug mode")
@click.option("--config", "config_path", type=click.Path(), help="Custom config file")
@click.version_option(__version__, prog_name="qsnap")
@click.pass_context
def qsnap(ctx, verbose, debug, config_path):
    """
    Quantum Snap - candid photo albums of one person, synthesized by Gemini.

    Add reference photos, let Gemini lock their identity, then generate
    "friend POV" albums. Past albums are kept in history.
    """
    ctx.ensure_object(dict)
    if "config" not in ctx.obj:
        ctx.obj["config"] = load_config(Path(config_path)) if config_path else get_config()
    config = ctx.obj["config"]

    debug = debug or config.debug
    level = "DEBUG" if debug else "INFO" if (verbose or config.verbose) else "WARNING"
    log_file = config.paths.log_dir / "qsnap.log" if debug else None
    setup_logging(level=level, log_file=log_file)


# =============================================================================
# REFERENCE PHOTOS
# =============================================================================


@qsnap.command()
@click.argument("images", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--interactive", "-i", is_flag=True, help="Ask before keeping each photo")
@click.pass_context
def add(ctx, images, interactive):
    """
    Add reference photos of the person.

    Each photo is cropped to a centred square for identity analysis. The
    first photo ever added starts the identity scan automatically.

    Example:
        qsnap add me1.jpg me2.jpg
    """
    session = _session(ctx)

    try:
        raw_images = [load_image_file(Path(p)) for p in images]
        session.upload(raw_images)
    except QSnapError as e:
        abort(e)

    async def _crop_all() -> None:
        index = 0
        while session.pending_crop is not None:
            name = Path(images[index]).name
            index += 1
            if interactive and not confirm(f"Keep {name}?", default=True):
                session.cancel_crop()
                print_warning(f"Skipped {name}")
                continue
            cropped = center_square_crop(session.pending_crop.raw_image)
            if session.pending_count == 1 and not session.assets:
                console.print("[magenta]Scanning identity...[/magenta]")
            asset = await session.confirm_crop(cropped)
            if asset is None:
                print_warning(f"{name}: {session.status_message}")
            else:
                suffix = " (primary)" if asset.is_primary else ""
                print_success(f"Added {name} as {asset.id}{suffix}")

    try:
        asyncio.run(_crop_all())
    except QSnapError as e:
        abort(e)

    if session.state == AppState.ERROR:
        print_error(session.status_message)
        sys.exit(1)
    if session.state == AppState.READY_TO_GENERATE and session.profile is not None:
        print_profile(session.profile)
    console.print(session.status_message)


@qsnap.command()
@click.pass_context
def assets(ctx):
    """List reference photos."""
    session = _session(ctx)
    if not session.assets:
        print_warning("No reference photos yet. Add some with 'qsnap add'.")
        return

    table = Table(title=f"Reference Photos ({len(session.assets)}/{session.config.album.max_assets})")
    table.add_column("Asset ID", style="cyan")
    table.add_column("Primary", justify="center")
    table.add_column("Added")
    for asset in session.assets:
        table.add_row(
            asset.id,
            "★" if asset.is_primary else "",
            asset.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@qsnap.command()
@click.argument("asset_id")
@click.pass_context
def remove(ctx, asset_id):
    """Remove a reference photo."""
    session = _session(ctx)
    try:
        removed = session.remove_asset(asset_id)
    except QSnapError as e:
        abort(e)

    if removed is None:
        print_error(f"No reference photo with id '{asset_id}'")
        sys.exit(1)
    print_success(f"Removed {asset_id}")
    if session.primary is not None and removed.is_primary:
        console.print(f"New primary: {session.primary.id}")
    if session.profile is not None and session.assets:
        print_warning("The identity profile may be stale. Run 'qsnap analyze' to refresh it.")


@qsnap.command()
@click.argument("asset_id")
@click.pass_context
def primary(ctx, asset_id):
    """Make a reference photo the generation anchor."""
    session = _session(ctx)
    try:
        session.set_primary(asset_id)
    except KeyError:
        print_error(f"No reference photo with id '{asset_id}'")
        sys.exit(1)
    except QSnapError as e:
        abort(e)
    print_success(f"{asset_id} is now the primary reference")


# =============================================================================
# ANALYSIS & GENERATION
# =============================================================================


@qsnap.command()
@click.pass_context
def analyze(ctx):
    """
    Scan the reference photos and lock the identity profile.

    A non-empty active album is archived to history first.
    """
    session = _session(ctx)
    print_header("🔬 Identity Scan")

    try:
        with console.status(f"[magenta]Scanning {len(session.assets)} reference(s)...[/magenta]"):
            profile = asyncio.run(session.analyze())
    except QSnapError as e:
        abort(e)

    print_profile(profile)
    print_success(session.status_message)


@qsnap.command()
@click.option("--count", "-n", type=int, default=None, help="Number of photos to generate")
@click.pass_context
def generate(ctx, count):
    """
    Generate a new album from the identity profile.

    Photos are generated one at a time. A failed pose is skipped; the rest
    of the album still completes. The previous album is archived first.

    Example:
        qsnap generate -n 5
    """
    session = _session(ctx)
    count = count if count is not None else session.config.ai.default_image_count
    print_header("📸 Synthesizing Friend POV")

    with create_progress() as progress:
        task = progress.add_task("Synthesizing Friend POV...", total=count)

        def on_progress(p: GenerationProgress) -> None:
            progress.update(task, total=p.total, completed=p.resolved, description=p.to_status_line())

        try:
            result = asyncio.run(session.generate(count, on_progress=on_progress))
        except QSnapError as e:
            progress.stop()
            abort(e)

    print_images_table("Album", session.gallery)
    for failure in result.failures:
        print_warning(failure.message)
    print_success(session.status_message)


@qsnap.command()
@click.pass_context
def status(ctx):
    """Show the current session."""
    session = _session(ctx)

    table = Table(title="Session", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("State", session.state.value)
    table.add_row("Reference photos", f"{len(session.assets)}/{session.config.album.max_assets}")
    table.add_row("Primary", session.primary.id if session.primary else "-")
    table.add_row("Profile", session.profile.summary() if session.profile else "-")
    table.add_row("Active album", f"{len(session.gallery)} photo(s)")
    table.add_row("History", f"{len(session.history)} album(s)")
    console.print(table)

    if session.status_message:
        console.print(session.status_message)


# =============================================================================
# HISTORY GROUP
# =============================================================================


@qsnap.group()
def history():
    """Browse, restore and delete archived albums."""
    pass


@history.command("list")
@click.pass_context
def history_list(ctx):
    """List archived albums, most recent first."""
    session = _session(ctx)
    if not session.history:
        print_warning("No archived albums yet.")
        return

    table = Table(title="Archive")
    table.add_column("Album ID", style="cyan")
    table.add_column("Created")
    table.add_column("Photos", justify="right")
    table.add_column("Refs", justify="right")
    table.add_column("Summary", style="green")
    for album in session.history:
        table.add_row(
            album.id,
            album.created_at.strftime("%Y-%m-%d %H:%M"),
            str(len(album.images)),
            str(len(album.reference_assets)),
            album.analysis_summary,
        )
    console.print(table)


@history.command("show")
@click.argument("album_id")
@click.pass_context
def history_show(ctx, album_id):
    """Show the photos of one archived album."""
    session = _session(ctx)
    try:
        album = session.get_album(album_id)
    except QSnapError as e:
        abort(e)

    print_info_panel(f"Album {album.id}", album.analysis_summary)
    print_images_table("Photos", album.images)


@history.command("restore")
@click.argument("album_id")
@click.pass_context
def history_restore(ctx, album_id):
    """Make an archived album the active one."""
    session = _session(ctx)
    try:
        restored = session.restore(album_id)
    except QSnapError as e:
        abort(e)

    if restored.archived is not None:
        console.print(f"Previous album archived as {restored.archived.id}")
    print_success(session.status_message)


@history.command("delete")
@click.argument("album_id")
@click.option("--force", is_flag=True, help="Skip confirmation")
@click.pass_context
def history_delete(ctx, album_id, force):
    """Delete an archived album permanently."""
    session = _session(ctx)
    if not force and not confirm(f"Delete album {album_id}? This cannot be undone."):
        return
    try:
        session.delete_album(album_id)
    except QSnapError as e:
        abort(e)
    print_success(f"Deleted album {album_id}")


# =============================================================================
# EXPORT & RESET
# =============================================================================


@qsnap.command()
@click.option("--album", "album_id", default=None, help="Export an archived album instead")
@click.option("--out", "out_dir", type=click.Path(file_okay=False), default=None, help="Output directory")
@click.pass_context
def export(ctx, album_id, out_dir):
    """Save album photos as image files."""
    session = _session(ctx)
    try:
        images = session.get_album(album_id).images if album_id else session.gallery
    except QSnapError as e:
        abort(e)

    if not images:
        print_warning("Nothing to export.")
        return

    exporter = AlbumExporter(
        Path(out_dir) if out_dir else session.config.paths.export_dir, session.config.album
    )
    try:
        with LogContext(f"Exporting {len(images)} photo(s)", logger=logger):
            paths = asyncio.run(
                exporter.export_batch(images, on_file=lambda p: console.print(f"  {p}"))
            )
    except QSnapError as e:
        abort(e)
    except OSError as e:
        print_error(f"Export failed: {e}")
        sys.exit(1)
    print_success(f"Exported {len(paths)} photo(s) to {exporter.out_dir}")


@qsnap.command()
@click.option("--factory", is_flag=True, help="Also wipe history")
@click.option("--force", is_flag=True, help="Skip confirmation")
@click.pass_context
def reset(ctx, factory, force):
    """Start a new session. The active album is archived unless --factory."""
    session = _session(ctx)
    if factory:
        if not force and not confirm("WARNING: This will wipe all saved albums. Proceed?"):
            return
        session.factory_reset()
        print_success("Everything wiped")
        return

    archived = session.reset()
    if archived is not None:
        console.print(f"Active album archived as {archived.id}")
    print_success("Session reset")


# =============================================================================
# CONFIG GROUP
# =============================================================================


@qsnap.group()
def config():
    """Manage configuration settings."""
    pass


@config.command()
@click.pass_context
def show(ctx):
    """Display current configuration."""
    cfg = _config(ctx)
    manager = APIKeyManager(paths_config=cfg.paths)
    key_source = manager.get_key_source() if manager.get_key() else KeySource.NONE

    print_header("Current Configuration")
    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("API key", "configured" if key_source != KeySource.NONE else "[red]missing[/red]")
    table.add_row("Key source", key_source.value)
    table.add_row("Analysis model", cfg.ai.analysis_model)
    table.add_row("Image model", cfg.ai.image_model)
    table.add_row("Temperature", str(cfg.ai.analysis_temperature))
    table.add_row("Timeout", f"{cfg.ai.timeout_seconds}s")
    table.add_row("Reference images per call", str(cfg.ai.max_reference_images))
    table.add_row("Default album size", str(cfg.ai.default_image_count))
    table.add_row("Max reference photos", str(cfg.album.max_assets))
    table.add_row("State directory", str(cfg.paths.state_dir))
    table.add_row("Export directory", str(cfg.paths.export_dir))
    console.print(table)


@config.command("set-key")
@click.option("--backend", type=click.Choice(["keyring", "file"]), default="keyring")
@click.pass_context
def set_key(ctx, backend):
    """Store the Gemini API key securely."""
    print_header("🔑 Set Gemini API Key")
    api_key = click.prompt("Enter your Gemini API key", hide_input=True)

    destination = KeySource.KEYRING if backend == "keyring" else KeySource.ENCRYPTED_FILE
    manager = APIKeyManager(paths_config=_config(ctx).paths)
    try:
        manager.store_key(api_key, destination)
    except ConfigError as e:
        print_error(str(e))
        sys.exit(1)

    print_success(f"API key stored in {destination.value}")
    print_info_panel(
        "Next Steps",
        "Add a reference photo to start:\n  qsnap add me.jpg",
    )


@config.command("delete-key")
@click.option("--backend", type=click.Choice(["keyring", "file"]), default="keyring")
@click.option("--force", is_flag=True, help="Skip confirmation")
@click.pass_context
def delete_key(ctx, backend, force):
    """Remove the stored API key."""
    if not force and not confirm("Remove API key?"):
        return

    source = KeySource.KEYRING if backend == "keyring" else KeySource.ENCRYPTED_FILE
    try:
        APIKeyManager(paths_config=_config(ctx).paths).delete_key(source)
    except ConfigError as e:
        print_error(str(e))
        sys.exit(1)
    print_success("API key removed")


def main():
    """Entry point for the console script."""
    qsnap(obj={})


if __name__ == "__main__":
    main()
