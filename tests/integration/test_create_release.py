"""Integration tests: full create-release runs against real release trees.

Each test drives ReleaseAssembler end to end: tree loading, fingerprinting,
build indices, the shared content cache, uploads, version allocation,
manifest emission and release tarballs.
"""

from __future__ import annotations

import itertools
import shutil
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

from relforge.core.archiver import list_members, read_member
from relforge.core.assembler import ArtifactUnavailableError, ReleaseAssembler, _Plan
from relforge.core.blobstore import BlobstoreConnectionError
from relforge.core.build_index import BuildIndex, IndexIntegrityError
from relforge.core.content_cache import LocalContentCache
from relforge.core.dependency_graph import UnresolvedDependencyError
from relforge.core.errors import ReleaseError
from relforge.core.release_index import ReleaseIndex
from relforge.models.artifacts import ArtifactKind
from relforge.models.versioning import ReleaseMode

MakeAssembler = Callable[..., ReleaseAssembler]


def _fingerprints(result) -> dict[str, str]:
    return {a.name: a.fingerprint for a in result.artifacts}


def _clear_cache(cache: LocalContentCache) -> None:
    for entry in cache.cache_dir.iterdir():
        entry.unlink()


class TestDevRelease:
    def test_first_dev_release(self, release_dir: Path, make_assembler: MakeAssembler, blobstore):
        result = make_assembler(release_dir).create_release()

        assert result.name == "bosh-release"
        assert result.version == "0+dev.1"
        assert result.created is True
        assert result.manifest_path == (
            release_dir / "dev_releases" / "bosh-release" / "bosh-release-0+dev.1.yml"
        )
        assert result.manifest_path.exists()
        # Dev builds are never uploaded.
        assert blobstore.puts == 0
        index = BuildIndex.for_artifact(release_dir, ReleaseMode.DEV, ArtifactKind.PACKAGE, "a")
        assert index.lookup(result.manifest.packages[2].fingerprint).blobstore_id is None

    def test_manifest_contents(self, release_dir: Path, make_assembler: MakeAssembler):
        result = make_assembler(release_dir).create_release()
        manifest = yaml.safe_load(result.manifest_path.read_text())

        assert manifest["name"] == "bosh-release"
        assert manifest["version"] == "0+dev.1"
        assert manifest["commit_hash"] == "non-git"
        assert manifest["uncommitted_changes"] is False
        assert [p["name"] for p in manifest["packages"]] == ["c", "b", "a", "foo", "bar"]
        assert {p["name"]: p["dependencies"] for p in manifest["packages"]} == {
            "c": [],
            "b": ["c"],
            "a": ["b"],
            "foo": [],
            "bar": ["foo"],
        }
        assert [j["name"] for j in manifest["jobs"]] == ["smoke", "web"]
        for entry in manifest["packages"] + manifest["jobs"] + [manifest["license"]]:
            assert entry["version"] == entry["fingerprint"]
            assert len(entry["sha1"]) == 40

    def test_idempotent(self, release_dir: Path, make_assembler: MakeAssembler, cache):
        first = make_assembler(release_dir).create_release()
        manifest_bytes = first.manifest_path.read_bytes()
        second = make_assembler(release_dir).create_release()

        assert second.version == first.version
        assert second.created is False
        assert all(a.reused for a in second.artifacts)
        assert first.manifest_path.read_bytes() == manifest_bytes
        index = ReleaseIndex(release_dir, "bosh-release", ReleaseMode.DEV)
        assert len(index.entries()) == 1
        assert len(list(index.directory.glob("*.yml"))) == 2  # index + one manifest

    def test_force_new_version(self, release_dir: Path, make_assembler: MakeAssembler):
        make_assembler(release_dir).create_release()
        forced = make_assembler(release_dir, force=True).create_release()

        assert forced.version == "0+dev.2"
        assert forced.created is True
        index = ReleaseIndex(release_dir, "bosh-release", ReleaseMode.DEV)
        assert sorted(index.versions()) == ["0+dev.1", "0+dev.2"]

    def test_dependency_fingerprint_propagation(self, release_dir: Path, make_assembler: MakeAssembler):
        before = _fingerprints(make_assembler(release_dir).create_release())
        (release_dir / "src" / "c" / "c.txt").write_text("new contents of c\n")
        after_result = make_assembler(release_dir).create_release()
        after = _fingerprints(after_result)

        assert after_result.version == "0+dev.2"
        for changed in ("c", "b", "a"):
            assert before[changed] != after[changed]
        for unchanged in ("foo", "bar", "web", "smoke", "license"):
            assert before[unchanged] == after[unchanged]
        reused = {a.name for a in after_result.artifacts if a.reused}
        assert reused == {"foo", "bar", "web", "smoke", "license"}

    def test_name_switch_restarts_numbering(self, release_dir: Path, make_assembler: MakeAssembler):
        make_assembler(release_dir).create_release()
        other = make_assembler(release_dir, name="other-release").create_release()

        assert other.version == "0+dev.1"
        assert other.manifest_path.parent == release_dir / "dev_releases" / "other-release"

    def test_dev_version_follows_final(self, release_dir: Path, make_assembler: MakeAssembler):
        make_assembler(release_dir, final=True).create_release()
        (release_dir / "src" / "foo" / "foo.txt").write_text("changed\n")
        assert make_assembler(release_dir).create_release().version == "1+dev.1"


class TestFinalRelease:
    def test_final_uploads_and_records(self, release_dir: Path, make_assembler: MakeAssembler, blobstore):
        result = make_assembler(release_dir, final=True).create_release()

        assert result.version == "1"
        assert result.manifest_path == release_dir / "releases" / "bosh-release" / "bosh-release-1.yml"
        assert blobstore.puts == len(result.artifacts) == 8
        for artifact in result.artifacts:
            assert artifact.blobstore_id in blobstore.blobs
            record = BuildIndex.for_artifact(
                release_dir, ReleaseMode.FINAL, artifact.kind, artifact.name
            ).lookup(artifact.fingerprint)
            assert record.sha1 == artifact.sha1

    def test_unchanged_final_is_not_reuploaded(self, release_dir: Path, make_assembler: MakeAssembler, blobstore):
        make_assembler(release_dir, final=True).create_release()
        again = make_assembler(release_dir, final=True).create_release()

        assert again.version == "1"
        assert blobstore.puts == 8

    def test_dev_builds_promoted_to_final(self, release_dir: Path, make_assembler: MakeAssembler, blobstore):
        dev = make_assembler(release_dir).create_release()
        final = make_assembler(release_dir, final=True).create_release()

        assert {a.name: a.sha1 for a in dev.artifacts} == {a.name: a.sha1 for a in final.artifacts}
        assert blobstore.puts == 8
        assert final.version == "1"

    def test_final_builds_reused_by_dev(self, release_dir: Path, make_assembler: MakeAssembler):
        final = make_assembler(release_dir, final=True).create_release()
        dev = make_assembler(release_dir).create_release()

        assert all(a.reused for a in dev.artifacts)
        assert {a.name: a.blobstore_id for a in dev.artifacts} == {
            a.name: a.blobstore_id for a in final.artifacts
        }

    def test_custom_version_then_default(self, release_dir: Path, make_assembler: MakeAssembler):
        custom = make_assembler(release_dir, final=True, version="5").create_release()
        assert custom.version == "5"
        assert custom.manifest_path.name == "bosh-release-5.yml"

        (release_dir / "src" / "a" / "a.txt").write_text("changed\n")
        assert make_assembler(release_dir, final=True).create_release().version == "6"


class TestCacheSharing:
    def test_two_working_directories(
        self,
        make_release_tree,
        make_assembler: MakeAssembler,
        cache: LocalContentCache,
        blobstore,
    ):
        first_dir = make_release_tree("clone-1")
        second_dir = make_release_tree("clone-2")

        first = make_assembler(first_dir).create_release()
        hits_before = cache.hits
        second = make_assembler(second_dir).create_release()

        assert {a.name: a.sha1 for a in first.artifacts} == {a.name: a.sha1 for a in second.artifacts}
        assert cache.hits - hits_before == len(second.artifacts)
        assert blobstore.puts == 0

    def test_final_releases_from_two_working_directories_upload_once(
        self, make_release_tree, make_assembler: MakeAssembler, blobstore
    ):
        first = make_assembler(make_release_tree("clone-1"), final=True).create_release()
        assert blobstore.puts == 8

        second = make_assembler(make_release_tree("clone-2"), final=True).create_release()

        assert blobstore.puts == 8
        assert {a.name: a.blobstore_id for a in second.artifacts} == {
            a.name: a.blobstore_id for a in first.artifacts
        }
        assert not any(a.reused for a in second.artifacts)

    def test_uploads_again_when_remembered_blob_is_gone(
        self, make_release_tree, make_assembler: MakeAssembler, blobstore
    ):
        make_assembler(make_release_tree("clone-1"), final=True).create_release()
        blobstore.blobs.clear()

        second = make_assembler(make_release_tree("clone-2"), final=True).create_release()

        assert blobstore.puts == 16
        assert all(a.blobstore_id in blobstore.blobs for a in second.artifacts)

    def test_committed_final_indices_avoid_reupload(
        self, make_release_tree, make_assembler: MakeAssembler, blobstore
    ):
        first_dir = make_release_tree("clone-1")
        second_dir = make_release_tree("clone-2")

        make_assembler(first_dir, final=True).create_release()
        shutil.copytree(first_dir / ".final_builds", second_dir / ".final_builds")
        result = make_assembler(second_dir, final=True).create_release()

        assert blobstore.puts == 8
        assert all(a.reused for a in result.artifacts)

    def test_corrupt_cache_entry_is_rebuilt(
        self, make_release_tree, make_assembler: MakeAssembler, cache: LocalContentCache
    ):
        first_dir = make_release_tree("clone-1")
        first = make_assembler(first_dir).create_release()
        sha1 = next(a.sha1 for a in first.artifacts if a.name == "a")
        cache.path_for(sha1).write_bytes(b"corrupted")

        second = make_assembler(make_release_tree("clone-2")).create_release()
        assert next(a.sha1 for a in second.artifacts if a.name == "a") == sha1
        assert cache.get(sha1) is not None


class TestTarballs:
    def test_release_tarball_layout(self, release_dir: Path, tmp_dir: Path, make_assembler: MakeAssembler):
        result = make_assembler(release_dir, tarball_path=tmp_dir / "out" / "release.tgz").create_release()
        tarball = result.tarball_path.read_bytes()

        assert sorted(list_members(tarball)) == sorted(
            [
                "./LICENSE",
                "./jobs/smoke.tgz",
                "./jobs/web.tgz",
                "./license.tgz",
                "./packages/a.tgz",
                "./packages/b.tgz",
                "./packages/bar.tgz",
                "./packages/c.tgz",
                "./packages/foo.tgz",
                "./release.MF",
            ]
        )
        assert read_member(tarball, "LICENSE") == b"Apache License 2.0\n"
        assert yaml.safe_load(read_member(tarball, "release.MF"))["version"] == "0+dev.1"

    def test_excluded_file_not_packaged(self, release_dir: Path, tmp_dir: Path, make_assembler: MakeAssembler):
        result = make_assembler(release_dir, tarball_path=tmp_dir / "release.tgz").create_release()
        foo = read_member(result.tarball_path.read_bytes(), "packages/foo.tgz")
        members = list_members(foo)

        assert "./foo/foo" in members
        assert "./foo/excluded_file" not in members
        assert "./packaging" in members

    def test_job_tarball_contents(self, release_dir: Path, tmp_dir: Path, make_assembler: MakeAssembler):
        result = make_assembler(release_dir, tarball_path=tmp_dir / "release.tgz").create_release()
        web = read_member(result.tarball_path.read_bytes(), "jobs/web.tgz")

        assert sorted(list_members(web)) == [
            "./job.MF",
            "./monit",
            "./templates/config.yml.erb",
            "./templates/ctl.erb",
        ]

    def test_tarball_for_unchanged_release(self, release_dir: Path, tmp_dir: Path, make_assembler: MakeAssembler):
        first = make_assembler(release_dir, tarball_path=tmp_dir / "one.tgz").create_release()
        second = make_assembler(release_dir, tarball_path=tmp_dir / "two.tgz").create_release()

        assert second.created is False
        assert first.tarball_path.read_bytes() == second.tarball_path.read_bytes()


class TestRoundTrip:
    def test_recreate_from_manifest(self, release_dir: Path, tmp_dir: Path, make_assembler: MakeAssembler):
        built = make_assembler(release_dir, final=True, tarball_path=tmp_dir / "built.tgz").create_release()
        recreated = make_assembler(release_dir, tarball_path=tmp_dir / "again.tgz").create_from_manifest(
            built.manifest_path
        )

        original = built.tarball_path.read_bytes()
        copy = recreated.tarball_path.read_bytes()
        for member in list_members(original):
            assert read_member(copy, member) == read_member(original, member)
        assert recreated.version == "1"
        assert recreated.mode is ReleaseMode.FINAL

    def test_recreate_from_blobstore(
        self, release_dir: Path, tmp_dir: Path, make_assembler: MakeAssembler, cache, blobstore
    ):
        built = make_assembler(release_dir, final=True, tarball_path=tmp_dir / "built.tgz").create_release()
        _clear_cache(cache)
        recreated = make_assembler(release_dir, tarball_path=tmp_dir / "again.tgz").create_from_manifest(
            built.manifest_path
        )

        assert blobstore.gets == 8
        assert recreated.tarball_path.read_bytes() == built.tarball_path.read_bytes()

    def test_recreate_does_not_fingerprint(self, release_dir: Path, tmp_dir: Path, make_assembler: MakeAssembler):
        built = make_assembler(release_dir, final=True).create_release()
        # Source changes after the release must not leak into the re-created tarball.
        (release_dir / "src" / "a" / "a.txt").write_text("changed after release\n")
        recreated = make_assembler(release_dir, tarball_path=tmp_dir / "again.tgz").create_from_manifest(
            built.manifest_path
        )
        a = read_member(recreated.tarball_path.read_bytes(), "packages/a.tgz")
        assert read_member(a, "a/a.txt") == b"contents of a\n"

    def test_dev_release_without_cache_is_unavailable(
        self, release_dir: Path, tmp_dir: Path, make_assembler: MakeAssembler, cache
    ):
        built = make_assembler(release_dir).create_release()
        _clear_cache(cache)
        with pytest.raises(ArtifactUnavailableError):
            make_assembler(release_dir, tarball_path=tmp_dir / "again.tgz").create_from_manifest(
                built.manifest_path
            )

    def test_tarball_path_required(self, release_dir: Path, make_assembler: MakeAssembler):
        built = make_assembler(release_dir).create_release()
        with pytest.raises(ReleaseError, match="tarball path"):
            make_assembler(release_dir).create_from_manifest(built.manifest_path)


class TestFailures:
    def test_unresolved_job_package_fails_before_building(
        self, release_dir: Path, make_assembler: MakeAssembler
    ):
        (release_dir / "jobs" / "web" / "spec").write_text(
            yaml.safe_dump({"name": "web", "templates": {"ctl.erb": "bin/ctl"}, "packages": ["nope"]})
        )
        with pytest.raises(UnresolvedDependencyError, match="nope"):
            make_assembler(release_dir).create_release()
        assert not (release_dir / ".dev_builds").exists()
        assert not (release_dir / "dev_releases").exists()

    def test_upload_failure_writes_no_manifest(
        self, release_dir: Path, make_assembler: MakeAssembler, blobstore, monkeypatch
    ):
        real_put = blobstore.put
        attempts = itertools.count(1)

        def _put(data: bytes) -> str:
            if next(attempts) > 3:
                raise BlobstoreConnectionError("connection reset")
            return real_put(data)

        monkeypatch.setattr(blobstore, "put", _put)
        with pytest.raises(BlobstoreConnectionError):
            make_assembler(release_dir, final=True).create_release()

        assert not (release_dir / "releases").exists()
        recorded = [
            entry
            for path in (release_dir / ".final_builds").rglob("index.yml")
            for entry in yaml.safe_load(path.read_text())["builds"].values()
        ]
        assert len(recorded) == 3
        assert all(entry["blobstore_id"] in blobstore.blobs for entry in recorded)

    def test_index_sha1_mismatch_is_fatal(
        self, release_dir: Path, tmp_dir: Path, make_assembler: MakeAssembler, cache, blobstore
    ):
        built = make_assembler(release_dir, final=True).create_release()
        victim = next(a for a in built.artifacts if a.name == "c")
        blobstore.blobs[victim.blobstore_id] = b"tampered"
        _clear_cache(cache)

        with pytest.raises(IndexIntegrityError):
            make_assembler(release_dir, final=True, tarball_path=tmp_dir / "r.tgz").create_release()

    def test_unbuilt_artifact_cannot_be_recorded(self, release_dir: Path, make_assembler: MakeAssembler):
        assembler = make_assembler(release_dir, final=True)
        source = assembler.directory.load().packages[0]
        plan = _Plan(source, "f" * 40)

        with pytest.raises(ReleaseError, match="no built tarball"):
            assembler._upload_and_record([plan])
        assert not (release_dir / ".final_builds").exists()
