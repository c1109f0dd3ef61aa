"""``relforge releases`` — list allocated release versions."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from relforge.cli.output import console, print_error
from relforge.core.errors import ReleaseError
from relforge.core.release_index import ReleaseIndex
from relforge.models.versioning import ReleaseMode, ReleaseVersion
from relforge.source.release_dir import ReleaseDirectory


def releases_cmd(
    release_dir: Path = typer.Option(Path("."), "--dir", help="Release source tree."),
    final: bool = typer.Option(False, "--final/--dev", help="List final or dev releases."),
    name: str = typer.Option(None, "--name", help="Release name."),
) -> None:
    """Show the versions recorded in the release index."""
    mode = ReleaseMode.FINAL if final else ReleaseMode.DEV
    try:
        release_name = name or ReleaseDirectory(release_dir).default_name(mode)
        index = ReleaseIndex(release_dir, release_name, mode)
        entries = index.entries()
    except ReleaseError as exc:
        print_error(exc)
        raise typer.Exit(code=1)

    if not entries:
        console.print(f"[dim]No {mode.value} releases of '{release_name}'.[/dim]")
        return

    def _order(item: tuple[str, str]) -> tuple:
        parsed = ReleaseVersion.parse(item[1])
        return parsed.sort_key if parsed else ((), 0)

    table = Table(title=f"{mode.value.capitalize()} releases of '{release_name}'")
    table.add_column("Version", style="green")
    table.add_column("Key", style="dim")
    table.add_column("Manifest", justify="center")
    for key, version in sorted(entries.items(), key=_order):
        present = "[green]Yes[/green]" if index.manifest_path(version).exists() else "[red]No[/red]"
        table.add_row(version, key[:12], present)
    console.print(table)
