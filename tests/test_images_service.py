"""Tests for images/service.py module.

Uses a fake engine that records every docker operation in order.
"""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from buildcache.artifacts import ArtifactBundle, write_sidecar
from buildcache.cancellation import CancellationToken, Cancelled
from buildcache.images.engine import DockerEngine, EngineError, LoadError
from buildcache.images.models import ManifestError, RegistryTarget, TriggerContext
from buildcache.images.registries import DEFAULT_REGISTRIES
from buildcache.images.service import ImagePublisher, verify_bundle
from buildcache.retry import RetryPolicy
from buildcache.types import Architecture, ArtifactKind, RegistryStatus, TagKind

SHA = "0123456789abcdef0123456789abcdef01234567"
BOTH = [Architecture.AMD64, Architecture.ARM64]
GITLAB_IMAGE = "registry.gitlab.com/famedly/conduit/matrix-conduit"
HUB_IMAGE = "matrixconduit/matrix-conduit"

ENV = {
    "CI_REGISTRY": "registry.gitlab.com",
    "CI_REGISTRY_IMAGE": "registry.gitlab.com/famedly/conduit",
    "CI_REGISTRY_USER": "gitlab-ci-token",
    "CI_REGISTRY_PASSWORD": "job-token",
    "DOCKER_HUB_USER": "conduitbot",
    "DOCKER_HUB_PASSWORD": "hub-token",
}


class FakeEngine:
    """Records operations; optionally fails pushes matching a prefix."""

    def __init__(self, log=None, config_dir=None, fail_push=None, flaky_pushes=0):
        self.log = [] if log is None else log
        self.config_dir = config_dir
        self.fail_push = fail_push
        self.flaky_pushes = flaky_pushes

    def with_config_dir(self, config_dir):
        return FakeEngine(self.log, config_dir, self.fail_push, self.flaky_pushes)

    def load(self, archive):
        self.log.append(("load", archive.name))
        return f"conduit:{archive.name}"

    def tag(self, source, target):
        self.log.append(("tag", source, target))

    def push(self, ref):
        if self.fail_push and ref.startswith(self.fail_push):
            raise EngineError(f"push {ref} denied", stderr="denied")
        if self.flaky_pushes:
            self.flaky_pushes -= 1
            raise EngineError("503 Service Unavailable", retryable=True)
        self.log.append(("push", ref))

    def login(self, server, username, password):
        self.log.append(("login", server, username, self.config_dir))

    def manifest_create(self, ref, images):
        self.log.append(("manifest_create", ref, tuple(images)))

    def manifest_push(self, ref):
        self.log.append(("manifest_push", ref))

    def ops(self, name):
        return [entry[1:] for entry in self.log if entry[0] == name]


def _bundles(tmp_path, arches=BOTH, sidecar=True):
    bundles = {}
    for arch in arches:
        path = tmp_path / f"oci-image-{arch.value}.tar.gz"
        path.write_bytes(f"image-{arch.value}".encode())
        bundle = ArtifactBundle(arch, ArtifactKind.CONTAINER_IMAGE, path)
        if sidecar:
            write_sidecar(bundle)
        bundles[arch] = bundle
    return bundles


def _publisher(engine, tmp_path, registries=None, environ=None, **kwargs):
    return ImagePublisher(
        engine,
        registries=registries or list(DEFAULT_REGISTRIES),
        architectures=BOTH,
        publish_branches=["next", "master"],
        environ=ENV if environ is None else environ,
        retry_policy=RetryPolicy(max_attempts=3, backoff_base=0),
        sleep=lambda _: None,
        config_root=tmp_path,
        **kwargs,
    )


@pytest.fixture
def branch():
    return TriggerContext(commit_sha=SHA, ref_name="next")


@pytest.fixture
def release():
    return TriggerContext(commit_sha=SHA, ref_name="v0.7.0", tag="v0.7.0")


class TestBranchBuild:
    """Scenario: both archives present on a publish branch."""

    def test_pushes_per_arch_images_then_manifests(self, tmp_path, branch):
        engine = FakeEngine()
        report = _publisher(engine, tmp_path).publish(_bundles(tmp_path), branch)

        assert report.success
        assert report.tags == {TagKind.COMMIT: SHA, TagKind.REF: "next"}
        assert [r.status for r in report.registries] == [RegistryStatus.SUCCEEDED] * 2
        assert engine.ops("push") == [
            (f"{GITLAB_IMAGE}:{SHA}-amd64",),
            (f"{GITLAB_IMAGE}:{SHA}-arm64",),
            (f"{HUB_IMAGE}:{SHA}-amd64",),
            (f"{HUB_IMAGE}:{SHA}-arm64",),
        ]
        assert engine.ops("manifest_push") == [
            (f"{GITLAB_IMAGE}:{SHA}",),
            (f"{GITLAB_IMAGE}:next",),
            (f"{HUB_IMAGE}:{SHA}",),
            (f"{HUB_IMAGE}:next",),
        ]

    def test_manifest_references_both_architectures(self, tmp_path, branch):
        engine = FakeEngine()
        _publisher(engine, tmp_path).publish(_bundles(tmp_path), branch)
        ref, images = engine.ops("manifest_create")[1]
        assert ref == f"{GITLAB_IMAGE}:next"
        assert images == (f"{GITLAB_IMAGE}:{SHA}-amd64", f"{GITLAB_IMAGE}:{SHA}-arm64")

    def test_no_latest(self, tmp_path, branch):
        engine = FakeEngine()
        _publisher(engine, tmp_path).publish(_bundles(tmp_path), branch)
        assert not any(ref.endswith(":latest") for (ref,) in engine.ops("manifest_push"))

    def test_each_archive_loaded_once(self, tmp_path, branch):
        engine = FakeEngine()
        _publisher(engine, tmp_path).publish(_bundles(tmp_path), branch)
        assert engine.ops("load") == [("oci-image-amd64.tar.gz",), ("oci-image-arm64.tar.gz",)]

    def test_isolated_credentials(self, tmp_path, branch):
        engine = FakeEngine()
        _publisher(engine, tmp_path).publish(_bundles(tmp_path), branch)
        (gitlab_login, hub_login) = engine.ops("login")
        assert gitlab_login[:2] == ("registry.gitlab.com", "gitlab-ci-token")
        assert hub_login[:2] == (None, "conduitbot")
        assert gitlab_login[2] != hub_login[2]
        assert not gitlab_login[2].exists()


class TestDockerEngineTagging:
    """Archives that load under one shared name are tagged by image ID."""

    def test_each_arch_tag_gets_its_own_image(self, tmp_path, branch):
        images = {}
        calls = []

        def fake_docker(cmd, **kwargs):
            calls.append(cmd[1:])
            if cmd[1] == "load":
                images["conduit:next"] = "sha256:" + Path(cmd[3]).name
                return MagicMock(returncode=0, stdout="Loaded image: conduit:next\n", stderr="")
            if cmd[1:3] == ["image", "inspect"]:
                return MagicMock(returncode=0, stdout=images[cmd[-1]] + "\n", stderr="")
            return MagicMock(returncode=0, stdout="", stderr="")

        registry = RegistryTarget(
            name="hub", image="x/conduit", username_env="HUB_USER", password_env="HUB_PASSWORD"
        )
        environ = {"HUB_USER": "u", "HUB_PASSWORD": "p"}
        engine = DockerEngine(environ={})
        with patch("buildcache.images.engine.subprocess.run", side_effect=fake_docker):
            report = _publisher(
                engine, tmp_path, registries=[registry], environ=environ
            ).publish(_bundles(tmp_path), branch)

        assert report.success
        tags = [c for c in calls if c[0] == "tag"]
        assert tags == [
            ["tag", "sha256:oci-image-amd64.tar.gz", f"x/conduit:{SHA}-amd64"],
            ["tag", "sha256:oci-image-arm64.tar.gz", f"x/conduit:{SHA}-arm64"],
        ]


class TestReleaseTag:
    """Scenario: a release tag also updates latest."""

    def test_adds_latest(self, tmp_path, release):
        engine = FakeEngine()
        report = _publisher(engine, tmp_path).publish(_bundles(tmp_path), release)

        assert report.tags[TagKind.LATEST] == "latest"
        hub_manifests = report.registries[1].pushed_manifests
        assert hub_manifests == [
            f"{HUB_IMAGE}:{SHA}",
            f"{HUB_IMAGE}:v0.7.0",
            f"{HUB_IMAGE}:latest",
        ]


class TestIncompleteArchitectures:
    """Scenario: only one architecture archive is present."""

    def test_manifest_error_before_any_manifest_push(self, tmp_path, branch):
        engine = FakeEngine()
        publisher = _publisher(engine, tmp_path)

        with pytest.raises(ManifestError) as exc_info:
            publisher.publish(_bundles(tmp_path, [Architecture.AMD64]), branch)

        assert exc_info.value.missing == [Architecture.ARM64]
        assert engine.ops("push") == [(f"{GITLAB_IMAGE}:{SHA}-amd64",)]
        assert engine.ops("manifest_create") == []
        assert engine.ops("manifest_push") == []


class TestRegistryIsolation:
    """A failing registry does not stop the others."""

    def test_one_registry_fails(self, tmp_path, branch):
        engine = FakeEngine(fail_push=GITLAB_IMAGE)
        report = _publisher(engine, tmp_path).publish(_bundles(tmp_path), branch)

        assert not report.success
        assert report.failed_registries == ["gitlab"]
        gitlab, hub = report.registries
        assert gitlab.status == RegistryStatus.FAILED
        assert "denied" in gitlab.error
        assert hub.status == RegistryStatus.SUCCEEDED
        assert hub.pushed_manifests == [f"{HUB_IMAGE}:{SHA}", f"{HUB_IMAGE}:next"]

    def test_missing_credentials(self, tmp_path, branch):
        env = {k: v for k, v in ENV.items() if not k.startswith("DOCKER_HUB")}
        engine = FakeEngine()
        report = _publisher(engine, tmp_path, environ=env).publish(_bundles(tmp_path), branch)

        assert report.failed_registries == ["dockerhub"]
        assert "DOCKER_HUB_USER" in report.registries[1].error
        assert report.registries[0].status == RegistryStatus.SUCCEEDED

    def test_transient_push_is_retried(self, tmp_path, branch):
        engine = FakeEngine(flaky_pushes=2)
        hub_only = [DEFAULT_REGISTRIES[1]]
        report = _publisher(engine, tmp_path, registries=hub_only).publish(
            _bundles(tmp_path), branch
        )
        assert report.success
        assert len(engine.ops("push")) == 2

    def test_malformed_reference_fails_only_that_registry(self, tmp_path, branch):
        broken = RegistryTarget(
            name="broken",
            image="registry.example.org/$ conduit",
            username_env="DOCKER_HUB_USER",
            password_env="DOCKER_HUB_PASSWORD",
        )
        engine = FakeEngine()
        report = _publisher(
            engine, tmp_path, registries=[broken, DEFAULT_REGISTRIES[1]]
        ).publish(_bundles(tmp_path), branch)

        assert report.failed_registries == ["broken"]
        assert "Invalid variable reference" in report.registries[0].error
        assert report.registries[1].status == RegistryStatus.SUCCEEDED


class TestLoadFailures:
    """Missing or corrupted archives abort the run."""

    def test_missing_archive(self, tmp_path, branch):
        bundles = _bundles(tmp_path)
        bundles[Architecture.ARM64].file_path.unlink()
        engine = FakeEngine()
        with pytest.raises(LoadError):
            _publisher(engine, tmp_path).publish(bundles, branch)
        assert engine.ops("push") == []

    def test_checksum_mismatch(self, tmp_path, branch):
        bundles = _bundles(tmp_path)
        bundles[Architecture.AMD64].file_path.write_bytes(b"tampered")
        with pytest.raises(LoadError) as exc_info:
            _publisher(FakeEngine(), tmp_path).publish(bundles, branch)
        assert exc_info.value.code == "checksum_mismatch"

    def test_without_sidecar(self, tmp_path):
        bundle = _bundles(tmp_path, [Architecture.AMD64], sidecar=False)[Architecture.AMD64]
        verify_bundle(bundle)


class TestBranchGate:
    def test_other_branch_skipped(self, tmp_path):
        engine = FakeEngine()
        trigger = TriggerContext(commit_sha=SHA, ref_name="feature/x")
        report = _publisher(engine, tmp_path).publish(_bundles(tmp_path), trigger)

        assert report.success
        assert report.skipped_reason
        assert report.registries == []
        assert engine.log == []


class TestCancellation:
    def test_cancelled_before_push(self, tmp_path, branch):
        token = CancellationToken()
        token.cancel("SIGINT")
        engine = FakeEngine()
        with pytest.raises(Cancelled):
            _publisher(engine, tmp_path, cancel_token=token).publish(_bundles(tmp_path), branch)
        assert engine.log == []


class TestCustomRegistry:
    def test_single_registry_with_port(self, tmp_path, branch):
        target = RegistryTarget(
            name="local",
            server="localhost:5000",
            image="localhost:5000/conduit",
            username_env="LOCAL_USER",
            password_env="LOCAL_PASSWORD",
        )
        engine = FakeEngine()
        report = _publisher(
            engine,
            tmp_path,
            registries=[target],
            environ={"LOCAL_USER": "u", "LOCAL_PASSWORD": "p"},
        ).publish(_bundles(tmp_path), branch)

        assert report.registries[0].image == "localhost:5000/conduit"
        assert engine.ops("push")[0] == (f"localhost:5000/conduit:{SHA}-amd64",)
