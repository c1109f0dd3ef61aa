"""Job metadata registry backed by SQLite.

Stores one row per (release, job name, version) with the job's parsed
``job.MF`` metadata. Structured fields are JSON-encoded only at the storage
boundary; in memory a job is a frozen ``JobTemplateRecord``.

Design:
- ``find_or_init_from_release_meta`` never writes; ``save`` does.
- Unique key (release_name, name, version).
- WAL journal mode for concurrent readers.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from relforge.core.build_index import IndexIntegrityError
from relforge.core.errors import InvalidSpecError
from relforge.models.artifacts import ERRAND_RUN_TARGETS

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_TEMPLATES = """
CREATE TABLE IF NOT EXISTS job_templates (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    release_name        TEXT NOT NULL,
    name                TEXT NOT NULL,
    version             TEXT NOT NULL,
    fingerprint         TEXT NOT NULL,
    sha1                TEXT NOT NULL DEFAULT '',
    blobstore_id        TEXT,
    package_names_json  TEXT NOT NULL DEFAULT '[]',
    logs_json           TEXT NOT NULL DEFAULT 'null',
    properties_json     TEXT NOT NULL DEFAULT 'null',
    provides_json       TEXT NOT NULL DEFAULT 'null',
    consumes_json       TEXT NOT NULL DEFAULT 'null',
    templates_json      TEXT NOT NULL DEFAULT 'null',
    UNIQUE (release_name, name, version)
);
"""

_CREATE_IDX_RELEASE = """
CREATE INDEX IF NOT EXISTS idx_templates_release ON job_templates(release_name, name);
"""

_COLUMNS = (
    "id, release_name, name, version, fingerprint, sha1, blobstore_id, "
    "package_names_json, logs_json, properties_json, provides_json, "
    "consumes_json, templates_json"
)


def _json_encode(value: Any) -> str:
    return "null" if value is None else json.dumps(value, sort_keys=True)


def _object_or_none(value: str | None) -> Any:
    if value is None or value == "null":
        return None
    return json.loads(value)


def parse_package_names(name: str, job_manifest: dict[str, Any]) -> list[str]:
    """The ``packages`` list of a job manifest (empty when absent)."""
    packages = job_manifest.get("packages")
    if packages is None:
        return []
    if not isinstance(packages, list):
        raise InvalidSpecError(f"Job '{name}' has invalid package spec format", artifact_name=name)
    return [str(p) for p in packages]


class JobTemplateRecord(BaseModel):
    """One job of one release version, as the registry stores it.

    ``id`` is ``None`` until the record has been saved.
    """

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    release_name: str
    name: str
    version: str
    fingerprint: str
    sha1: str = ""
    blobstore_id: str | None = None
    package_names: list[str] = Field(default_factory=list)
    logs: Any = None
    properties: dict[str, Any] = Field(default_factory=dict)
    provides: Any = None
    consumes: Any = None
    templates: dict[str, str] | None = None

    @field_validator("properties", mode="before")
    @classmethod
    def _properties_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def runs_as_errand(self) -> bool:
        if self.templates is None:
            return False
        return any(target in ERRAND_RUN_TARGETS for target in self.templates.values())


class JobTemplateRegistry:
    """Persistent job metadata.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_TEMPLATES)
            conn.execute(_CREATE_IDX_RELEASE)
            conn.commit()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def find(
        self, release_name: str, name: str, fingerprint: str, version: str
    ) -> JobTemplateRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM job_templates "
                "WHERE release_name = ? AND name = ? AND fingerprint = ? AND version = ?",
                (release_name, name, fingerprint, version),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def list_for_release(self, release_name: str) -> list[JobTemplateRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM job_templates WHERE release_name = ? ORDER BY name, id",
                (release_name,),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM job_templates").fetchone()[0]

    def find_or_init_from_release_meta(
        self,
        release_name: str,
        job_meta: dict[str, Any],
        job_manifest: dict[str, Any],
    ) -> JobTemplateRecord:
        """Return the stored record for *job_meta*, or a new unsaved one.

        Parameters
        ----------
        release_name:
            Release the job belongs to.
        job_meta:
            The job's manifest entry: ``name``, ``version``, ``fingerprint``,
            ``sha1`` and optionally ``blobstore_id``.
        job_manifest:
            The parsed ``job.MF``; its metadata fields overwrite whatever the
            stored record had.

        Nothing is written; call ``save`` on the result.
        """
        name = str(job_meta["name"])
        fingerprint = str(job_meta["fingerprint"])
        version = str(job_meta["version"])
        sha1 = str(job_meta.get("sha1") or "")

        existing = self.find(release_name, name, fingerprint, version)
        if existing is not None:
            if existing.sha1 and sha1 and existing.sha1 != sha1:
                raise IndexIntegrityError(
                    f"Job '{name}' {version} of release '{release_name}' is registered "
                    f"with sha1 {existing.sha1}, refusing to change it to {sha1}"
                )
            base = existing.model_dump()
            base["sha1"] = existing.sha1 or sha1
        else:
            base = {
                "release_name": release_name,
                "name": name,
                "version": version,
                "fingerprint": fingerprint,
                "sha1": sha1,
                "blobstore_id": job_meta.get("blobstore_id"),
            }

        base.update(
            package_names=parse_package_names(name, job_manifest),
            logs=job_manifest.get("logs"),
            properties=job_manifest.get("properties"),
            templates=job_manifest.get("templates"),
        )
        if job_manifest.get("provides"):
            base["provides"] = job_manifest["provides"]
        if job_manifest.get("consumes"):
            base["consumes"] = job_manifest["consumes"]
        return JobTemplateRecord.model_validate(base)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def save(self, record: JobTemplateRecord) -> JobTemplateRecord:
        """Insert or update *record*; returns it with ``id`` set."""
        values = (
            record.release_name,
            record.name,
            record.version,
            record.fingerprint,
            record.sha1,
            record.blobstore_id,
            _json_encode(record.package_names),
            _json_encode(record.logs),
            _json_encode(record.properties),
            _json_encode(record.provides),
            _json_encode(record.consumes),
            _json_encode(record.templates),
        )
        with self._connect() as conn:
            if record.id is None:
                cursor = conn.execute(
                    """
                    INSERT INTO job_templates
                        (release_name, name, version, fingerprint, sha1, blobstore_id,
                         package_names_json, logs_json, properties_json, provides_json,
                         consumes_json, templates_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values,
                )
                record_id = cursor.lastrowid
            else:
                conn.execute(
                    """
                    UPDATE job_templates SET
                        release_name = ?, name = ?, version = ?, fingerprint = ?,
                        sha1 = ?, blobstore_id = ?, package_names_json = ?, logs_json = ?,
                        properties_json = ?, provides_json = ?, consumes_json = ?,
                        templates_json = ?
                    WHERE id = ?
                    """,
                    (*values, record.id),
                )
                record_id = record.id
            conn.commit()
        logger.debug("Registered job %s/%s %s", record.release_name, record.name, record.version)
        return record.model_copy(update={"id": record_id})

    @staticmethod
    def _row_to_record(row: tuple[Any, ...]) -> JobTemplateRecord:
        return JobTemplateRecord(
            id=row[0],
            release_name=row[1],
            name=row[2],
            version=row[3],
            fingerprint=row[4],
            sha1=row[5],
            blobstore_id=row[6],
            package_names=_object_or_none(row[7]) or [],
            logs=_object_or_none(row[8]),
            properties=_object_or_none(row[9]),
            provides=_object_or_none(row[10]),
            consumes=_object_or_none(row[11]),
            templates=_object_or_none(row[12]),
        )
