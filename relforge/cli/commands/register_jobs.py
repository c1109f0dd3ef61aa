"""``relforge register-jobs MANIFEST`` — record job metadata of a release.

Reads each job tarball named by the manifest (local cache first, then the
blobstore via the build index), parses its ``job.MF`` and stores the result
in the job metadata registry.
"""

from __future__ import annotations

from pathlib import Path

import typer
import yaml
from rich.table import Table

from relforge.cli.output import configure_logging, console, print_error
from relforge.config import RelforgeSettings
from relforge.core.archiver import read_member
from relforge.core.assembler import ReleaseAssembler
from relforge.core.errors import InvalidSpecError, ReleaseError
from relforge.core.job_registry import JobTemplateRecord, JobTemplateRegistry
from relforge.models.artifacts import ArtifactKind
from relforge.models.config import ReleaseOptions
from relforge.models.manifest import ReleaseManifest


def register_release_jobs(
    manifest_path: Path,
    registry: JobTemplateRegistry,
    assembler: ReleaseAssembler,
) -> list[JobTemplateRecord]:
    """Register every job of the release described by *manifest_path*."""
    manifest = ReleaseManifest.read(manifest_path)
    saved: list[JobTemplateRecord] = []
    for job in manifest.jobs:
        tarball = assembler.fetch_recorded(ArtifactKind.JOB, job.name, job.fingerprint, job.sha1)
        raw = read_member(tarball, "job.MF")
        if raw is None:
            raise InvalidSpecError(f"Job '{job.name}' tarball has no job.MF", artifact_name=job.name)
        try:
            job_manifest = yaml.safe_load(raw) or {}
        except yaml.YAMLError as exc:
            raise InvalidSpecError(
                f"Job '{job.name}' has an unreadable job.MF: {exc}", artifact_name=job.name
            ) from exc

        record = assembler.lookup_build(ArtifactKind.JOB, job.name, job.fingerprint)
        job_meta = job.model_dump()
        job_meta["blobstore_id"] = record.blobstore_id if record else None
        template = registry.find_or_init_from_release_meta(manifest.name, job_meta, job_manifest)
        saved.append(registry.save(template))
    return saved


def register_jobs_cmd(
    manifest: Path = typer.Argument(..., help="Release manifest to register."),
    release_dir: Path = typer.Option(Path("."), "--dir", help="Release source tree."),
    registry_db: Path = typer.Option(
        None,
        "--registry",
        help="Job registry database (defaults to RELFORGE_REGISTRY_PATH).",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Register the jobs of a release in the job metadata registry."""
    settings = RelforgeSettings()
    configure_logging(settings, verbose=verbose)

    if not manifest.exists():
        console.print(f"[bold red]Manifest not found:[/bold red] {manifest}")
        raise typer.Exit(code=1)

    registry = JobTemplateRegistry(registry_db or settings.registry_path)
    try:
        assembler = ReleaseAssembler(ReleaseOptions(release_dir=release_dir), settings=settings)
        records = register_release_jobs(manifest, registry, assembler)
    except ReleaseError as exc:
        print_error(exc)
        raise typer.Exit(code=1)

    table = Table(title="Registered jobs")
    table.add_column("Name", style="cyan")
    table.add_column("Version", style="dim")
    table.add_column("Packages")
    table.add_column("Errand", justify="center")
    for record in records:
        errand = "[green]Yes[/green]" if record.runs_as_errand else "No"
        table.add_row(record.name, record.version[:12], ", ".join(record.package_names), errand)
    console.print(table)
