"""Tests for images/engine.py module.

Uses mocked subprocess for docker invocations.
"""

import hashlib
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from buildcache.images.engine import (
    DockerEngine,
    EngineError,
    LoadError,
    is_transient_push_failure,
    parse_loaded_image,
)


def _completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


class FakeDockerStore:
    """Mimics the docker image store: every load claims the name conduit:next."""

    def __init__(self):
        self.tags = {}

    @staticmethod
    def id_of(content):
        return "sha256:" + hashlib.sha256(content).hexdigest()

    def __call__(self, cmd, **kwargs):
        args = cmd[1:]
        if args[0] == "load":
            self.tags["conduit:next"] = self.id_of(Path(args[2]).read_bytes())
            return _completed(stdout="Loaded image: conduit:next\n")
        if args[:2] == ["image", "inspect"]:
            return _completed(stdout=self.tags[args[-1]] + "\n")
        if args[0] == "tag":
            source, target = args[1], args[2]
            self.tags[target] = self.tags.get(source, source)
            return _completed()
        return _completed()


class TestParseLoadedImage:
    """Tests for parse_loaded_image function."""

    def test_named_image(self):
        assert parse_loaded_image("Loaded image: conduit:latest\n") == "conduit:latest"

    def test_image_id(self):
        out = "Loaded image ID: sha256:abc123\n"
        assert parse_loaded_image(out) == "sha256:abc123"

    def test_last_wins(self):
        out = "Loaded image: a:1\nLoaded image: b:2\n"
        assert parse_loaded_image(out) == "b:2"

    def test_no_image(self):
        with pytest.raises(LoadError):
            parse_loaded_image("open /tmp/x: no such file or directory")


class TestIsTransientPushFailure:
    def test_rate_limited(self):
        assert is_transient_push_failure("toomanyrequests: Rate exceeded")

    def test_denied(self):
        assert not is_transient_push_failure("denied: requested access to the resource is denied")


class TestDockerEngine:
    """Tests for DockerEngine."""

    def test_isolated_config_dir(self, tmp_path):
        engine = DockerEngine(environ={"PATH": "/bin"}).with_config_dir(tmp_path)
        with patch("buildcache.images.engine.subprocess.run", return_value=_completed()) as run:
            engine.tag("conduit:latest", "matrixconduit/matrix-conduit:abc-amd64")

        kwargs = run.call_args.kwargs
        assert kwargs["env"]["DOCKER_CONFIG"] == str(tmp_path)
        assert kwargs["env"]["PATH"] == "/bin"
        assert run.call_args.args[0] == [
            "docker",
            "tag",
            "conduit:latest",
            "matrixconduit/matrix-conduit:abc-amd64",
        ]

    def test_no_config_dir_by_default(self):
        engine = DockerEngine(environ={})
        with patch("buildcache.images.engine.subprocess.run", return_value=_completed()) as run:
            engine.push("x/y:1")
        assert "DOCKER_CONFIG" not in run.call_args.kwargs["env"]

    def test_login_uses_stdin(self):
        engine = DockerEngine(environ={})
        with patch("buildcache.images.engine.subprocess.run", return_value=_completed()) as run:
            engine.login("registry.gitlab.com", "ci", "s3cret")

        cmd = run.call_args.args[0]
        assert cmd == [
            "docker",
            "login",
            "--username",
            "ci",
            "--password-stdin",
            "registry.gitlab.com",
        ]
        assert "s3cret" not in cmd
        assert run.call_args.kwargs["input"] == "s3cret"

    def test_login_docker_hub(self):
        engine = DockerEngine(environ={})
        with patch("buildcache.images.engine.subprocess.run", return_value=_completed()) as run:
            engine.login(None, "user", "pw")
        assert run.call_args.args[0][-1] == "--password-stdin"

    def test_manifest_commands(self):
        engine = DockerEngine(environ={})
        with patch("buildcache.images.engine.subprocess.run", return_value=_completed()) as run:
            engine.manifest_create("x/y:next", ["x/y:abc-amd64", "x/y:abc-arm64"])
            engine.manifest_push("x/y:next")

        create, push = [c.args[0] for c in run.call_args_list]
        assert create == [
            "docker",
            "manifest",
            "create",
            "--amend",
            "x/y:next",
            "x/y:abc-amd64",
            "x/y:abc-arm64",
        ]
        assert push == ["docker", "manifest", "push", "x/y:next"]

    def test_failure_classification(self):
        engine = DockerEngine(environ={})
        with patch(
            "buildcache.images.engine.subprocess.run",
            return_value=_completed(1, stderr="503 Service Unavailable"),
        ):
            with pytest.raises(EngineError) as exc_info:
                engine.push("x/y:1")
        assert exc_info.value.retryable

        with patch(
            "buildcache.images.engine.subprocess.run",
            return_value=_completed(1, stderr="denied: access forbidden"),
        ):
            with pytest.raises(EngineError) as exc_info:
                engine.push("x/y:1")
        assert not exc_info.value.retryable

    def test_timeout_is_retryable(self):
        engine = DockerEngine(environ={}, timeout=5)
        with patch(
            "buildcache.images.engine.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="docker", timeout=5),
        ):
            with pytest.raises(EngineError) as exc_info:
                engine.push("x/y:1")
        assert exc_info.value.retryable
        assert exc_info.value.code == "timeout"


class TestLoad:
    """Tests for DockerEngine.load."""

    def test_missing_archive(self, tmp_path):
        with pytest.raises(LoadError) as exc_info:
            DockerEngine(environ={}).load(tmp_path / "oci-image-amd64.tar.gz")
        assert exc_info.value.code == "archive_missing"

    def test_loads(self, tmp_path):
        archive = tmp_path / "oci-image-amd64.tar.gz"
        archive.write_bytes(b"tar")
        with patch(
            "buildcache.images.engine.subprocess.run",
            side_effect=[
                _completed(stdout="Loaded image: conduit:next\n"),
                _completed(stdout="sha256:aaa\n"),
            ],
        ) as run:
            image = DockerEngine(environ={}).load(archive)
        assert image == "sha256:aaa"
        load_cmd, inspect_cmd = [c.args[0] for c in run.call_args_list]
        assert load_cmd == ["docker", "load", "-i", str(archive)]
        assert inspect_cmd == [
            "docker",
            "image",
            "inspect",
            "--format",
            "{{.Id}}",
            "conduit:next",
        ]

    def test_loaded_id_used_as_is(self, tmp_path):
        archive = tmp_path / "oci-image-amd64.tar.gz"
        archive.write_bytes(b"tar")
        with patch(
            "buildcache.images.engine.subprocess.run",
            return_value=_completed(stdout="Loaded image ID: sha256:bbb\n"),
        ) as run:
            image = DockerEngine(environ={}).load(archive)
        assert image == "sha256:bbb"
        assert run.call_count == 1

    def test_same_name_loads_keep_distinct_images(self, tmp_path):
        """Both architectures load as conduit:next; each keeps its own ID."""
        docker = FakeDockerStore()
        amd64 = tmp_path / "oci-image-amd64.tar.gz"
        arm64 = tmp_path / "oci-image-arm64.tar.gz"
        amd64.write_bytes(b"amd64")
        arm64.write_bytes(b"arm64")
        engine = DockerEngine(environ={})
        with patch("buildcache.images.engine.subprocess.run", side_effect=docker):
            first = engine.load(amd64)
            second = engine.load(arm64)
            engine.tag(first, "x/conduit:abc-amd64")
            engine.tag(second, "x/conduit:abc-arm64")

        assert first != second
        assert docker.tags["x/conduit:abc-amd64"] == docker.id_of(b"amd64")
        assert docker.tags["x/conduit:abc-arm64"] == docker.id_of(b"arm64")

    def test_unresolvable_loaded_name(self, tmp_path):
        archive = tmp_path / "oci-image-amd64.tar.gz"
        archive.write_bytes(b"tar")
        with patch(
            "buildcache.images.engine.subprocess.run",
            side_effect=[
                _completed(stdout="Loaded image: conduit:next\n"),
                _completed(1, stderr="No such image: conduit:next"),
            ],
        ):
            with pytest.raises(LoadError) as exc_info:
                DockerEngine(environ={}).load(archive)
        assert exc_info.value.archive == archive

    def test_corrupt_archive(self, tmp_path):
        archive = tmp_path / "oci-image-amd64.tar.gz"
        archive.write_bytes(b"garbage")
        with patch(
            "buildcache.images.engine.subprocess.run",
            return_value=_completed(1, stderr="unexpected EOF"),
        ):
            with pytest.raises(LoadError) as exc_info:
                DockerEngine(environ={}).load(archive)
        assert exc_info.value.archive == archive

    def test_unparseable_output(self, tmp_path):
        archive = tmp_path / "oci-image-amd64.tar.gz"
        archive.write_bytes(b"tar")
        with patch(
            "buildcache.images.engine.subprocess.run",
            return_value=_completed(stdout="nothing useful\n"),
        ):
            with pytest.raises(LoadError) as exc_info:
                DockerEngine(environ={}).load(archive)
        assert exc_info.value.archive == archive
