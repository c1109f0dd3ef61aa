"""``relforge create-release [MANIFEST]`` — build a dev or final release.

Without MANIFEST, fingerprints every package, job and the license in the
release tree, builds what the build indices do not already have, and
allocates a release version. With MANIFEST, re-creates the tarball of an
existing release from the manifest and the build indices alone.
"""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError
from rich.panel import Panel
from rich.table import Table

from relforge.cli.output import configure_logging, console, print_error
from relforge.config import RelforgeSettings
from relforge.core.assembler import ReleaseAssembler, ReleaseResult
from relforge.core.errors import ReleaseError
from relforge.models.config import ReleaseOptions
from relforge.source.vcs import detect_vcs_status


def _render(result: ReleaseResult) -> None:
    status = "[green]created[/green]" if result.created else "[yellow]unchanged[/yellow]"
    lines = [
        f"[bold]Release:[/bold]   {result.name}",
        f"[bold]Version:[/bold]   {result.version} ({result.mode.value}, {status})",
        f"[bold]Commit:[/bold]    {result.manifest.commit_hash}"
        + (" [yellow](dirty)[/yellow]" if result.manifest.uncommitted_changes else ""),
        f"[bold]Manifest:[/bold]  {result.manifest_path}",
    ]
    if result.tarball_path is not None:
        lines.append(f"[bold]Tarball:[/bold]   {result.tarball_path}")
    console.print(Panel("\n".join(lines), title="Release", border_style="green"))

    if not result.artifacts:
        return
    table = Table(title="Artifacts")
    table.add_column("Kind")
    table.add_column("Name", style="cyan")
    table.add_column("Fingerprint", style="dim")
    table.add_column("Build", justify="center")
    for artifact in result.artifacts:
        build = "[dim]reused[/dim]" if artifact.reused else "[green]new[/green]"
        table.add_row(artifact.kind.value, artifact.name, artifact.fingerprint[:12], build)
    console.print(table)


def create_release_cmd(
    manifest: Path = typer.Argument(
        None,
        help="Existing release manifest to re-create a tarball from.",
    ),
    release_dir: Path = typer.Option(
        Path("."),
        "--dir",
        help="Release source tree.",
    ),
    final: bool = typer.Option(False, "--final", help="Create a final release."),
    force: bool = typer.Option(
        False,
        "--force",
        help="Allocate a new version even if the content is unchanged.",
    ),
    name: str = typer.Option(None, "--name", help="Release name."),
    version: str = typer.Option(None, "--version", help="Explicit release version."),
    tarball: Path = typer.Option(None, "--tarball", help="Write the release tarball here."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Create a dev or final release from the release source tree."""
    settings = RelforgeSettings()
    configure_logging(settings, verbose=verbose)

    vcs = detect_vcs_status(release_dir)
    try:
        options = ReleaseOptions(
            release_dir=release_dir,
            name=name,
            final=final,
            force=force,
            version=version,
            tarball_path=tarball,
            commit_hash=vcs.commit_hash,
            uncommitted_changes=vcs.uncommitted_changes,
        )
    except ValidationError as exc:
        console.print(f"[bold red]Invalid options:[/bold red] {exc.errors()[0]['msg']}")
        raise typer.Exit(code=1)

    if manifest is not None and not manifest.exists():
        console.print(f"[bold red]Manifest not found:[/bold red] {manifest}")
        raise typer.Exit(code=1)

    try:
        assembler = ReleaseAssembler(options, settings=settings)
        if manifest is not None:
            result = assembler.create_from_manifest(manifest)
        else:
            result = assembler.create_release()
    except ReleaseError as exc:
        print_error(exc)
        raise typer.Exit(code=1)

    _render(result)
