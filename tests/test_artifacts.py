"""Tests for artifacts.py module."""

import hashlib
import json
import logging

import pytest

from buildcache.artifacts import (
    ArtifactBundle,
    ArtifactError,
    collect_bundles,
    compute_file_hash,
    handoff_filename,
    locate_output_file,
    read_sidecar,
    stage_artifact,
)
from buildcache.types import Architecture, ArtifactKind


class TestHandoffFilename:
    """Tests for handoff_filename function."""

    def test_container_image(self):
        name = handoff_filename(ArtifactKind.CONTAINER_IMAGE, Architecture.ARM64)
        assert name == "oci-image-arm64.tar.gz"

    def test_binary(self):
        assert handoff_filename(ArtifactKind.BINARY, Architecture.AMD64) == "conduit-amd64"

    def test_package_with_custom_name(self):
        name = handoff_filename(ArtifactKind.PACKAGE, Architecture.AMD64, name="matrix")
        assert name == "matrix-amd64.deb"


class TestComputeFileHash:
    def test_matches_hashlib(self, tmp_path):
        f = tmp_path / "data"
        f.write_bytes(b"x" * 100_000)
        assert compute_file_hash(f, chunk_size=1024) == hashlib.sha256(b"x" * 100_000).hexdigest()


class TestLocateOutputFile:
    """Tests for locate_output_file function."""

    def test_file_output(self, tmp_path):
        out = tmp_path / "image.tar.gz"
        out.write_bytes(b"img")
        assert locate_output_file(out, ArtifactKind.CONTAINER_IMAGE, "conduit") == out

    def test_binary_under_bin(self, tmp_path):
        (tmp_path / "bin").mkdir()
        (tmp_path / "bin" / "conduit").write_bytes(b"\x7fELF")
        found = locate_output_file(tmp_path, ArtifactKind.BINARY, "conduit")
        assert found == tmp_path / "bin" / "conduit"

    def test_package_in_tree(self, tmp_path):
        (tmp_path / "debian").mkdir()
        deb = tmp_path / "debian" / "conduit_0.1_amd64.deb"
        deb.write_bytes(b"!<arch>")
        assert locate_output_file(tmp_path, ArtifactKind.PACKAGE, "conduit") == deb

    def test_missing_output(self, tmp_path):
        with pytest.raises(ArtifactError) as exc_info:
            locate_output_file(tmp_path / "result", ArtifactKind.BINARY, "conduit")
        assert exc_info.value.code == "output_missing"

    def test_missing_binary(self, tmp_path):
        with pytest.raises(ArtifactError):
            locate_output_file(tmp_path, ArtifactKind.BINARY, "conduit")


class TestStageArtifact:
    """Tests for stage_artifact function."""

    def test_stages_image_with_sidecar(self, tmp_path):
        out = tmp_path / "out.tar.gz"
        out.write_bytes(b"image-bytes")
        dest_dir = tmp_path / "artifacts"

        bundle = stage_artifact(
            out,
            ArtifactKind.CONTAINER_IMAGE,
            Architecture.AMD64,
            dest_dir,
            metadata={"target": ".#oci-image"},
        )

        assert bundle.file_path == dest_dir / "oci-image-amd64.tar.gz"
        assert bundle.file_path.read_bytes() == b"image-bytes"
        sidecar = read_sidecar(bundle)
        assert sidecar["sha256"] == hashlib.sha256(b"image-bytes").hexdigest()
        assert sidecar["size_bytes"] == len(b"image-bytes")
        assert sidecar["architecture"] == "amd64"
        assert sidecar["metadata"] == {"target": ".#oci-image"}

    def test_binary_is_executable(self, tmp_path):
        out = tmp_path / "result"
        (out / "bin").mkdir(parents=True)
        (out / "bin" / "conduit").write_bytes(b"\x7fELF")
        out_file = out / "bin" / "conduit"
        out_file.chmod(0o444)

        bundle = stage_artifact(out, ArtifactKind.BINARY, Architecture.ARM64, tmp_path / "a")
        assert bundle.file_path.name == "conduit-arm64"
        assert bundle.file_path.stat().st_mode & 0o777 == 0o755

    def test_restage_overwrites(self, tmp_path):
        out = tmp_path / "out.tar.gz"
        out.write_bytes(b"v1")
        stage_artifact(out, ArtifactKind.CONTAINER_IMAGE, Architecture.AMD64, tmp_path / "a")
        out.write_bytes(b"v2")
        bundle = stage_artifact(
            out, ArtifactKind.CONTAINER_IMAGE, Architecture.AMD64, tmp_path / "a"
        )
        assert bundle.file_path.read_bytes() == b"v2"


class TestReadSidecar:
    def test_absent(self, tmp_path):
        bundle = ArtifactBundle(Architecture.AMD64, ArtifactKind.BINARY, tmp_path / "x")
        assert read_sidecar(bundle) is None

    def test_malformed(self, tmp_path):
        bundle = ArtifactBundle(Architecture.AMD64, ArtifactKind.BINARY, tmp_path / "x")
        bundle.sidecar_path.write_text(json.dumps([1, 2]))
        with pytest.raises(ArtifactError):
            read_sidecar(bundle)


class TestCollectBundles:
    """Tests for collect_bundles function."""

    def test_collects_present_only(self, tmp_path, caplog):
        (tmp_path / "oci-image-amd64.tar.gz").write_bytes(b"a")

        with caplog.at_level(logging.WARNING):
            bundles = collect_bundles(
                tmp_path,
                ArtifactKind.CONTAINER_IMAGE,
                [Architecture.AMD64, Architecture.ARM64],
            )

        assert list(bundles) == [Architecture.AMD64]
        assert bundles[Architecture.AMD64].kind == ArtifactKind.CONTAINER_IMAGE
        assert "arm64" in caplog.text
