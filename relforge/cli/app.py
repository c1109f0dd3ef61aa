"""Main Typer application — imports and registers all CLI commands.

Entry point: ``relforge`` (configured via pyproject.toml console_scripts).

Commands: create-release, releases, register-jobs.
"""

from __future__ import annotations

import typer

from relforge.cli.commands.create_release import create_release_cmd
from relforge.cli.commands.register_jobs import register_jobs_cmd
from relforge.cli.commands.releases import releases_cmd

app = typer.Typer(
    name="relforge",
    help="Relforge: content-addressed dev and final release bundles.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="create-release", help="Create a dev or final release.")(create_release_cmd)
app.command(name="releases", help="List allocated release versions.")(releases_cmd)
app.command(name="register-jobs", help="Register job metadata from a release manifest.")(
    register_jobs_cmd
)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
