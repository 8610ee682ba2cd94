"""
Unit tests for the image setup job and its pull/build policies.
"""
import io

import pytest

from coreprov.errors import BuildError, ImageNotFoundError, PullError, RuntimeClientError
from coreprov.MANAGERS.image_setup import ImageSetup
from coreprov.MODELS.config import ImageBuildSpec, ImagePullSpec, ImageSpec, PullPolicy


class FakeBuilderFactory:
    """Stands in for ImageBuilder; builds succeed by tagging the image in the runtime."""

    def __init__(self, error=None):
        self.error = error
        self.builds = []

    def __call__(self, spec, image_name, runtime, output):
        factory = self

        class Builder:
            def build(self):
                factory.builds.append(image_name)
                if factory.error is not None:
                    raise factory.error
                runtime.images.append(image_name)

        return Builder()


def make_spec(policy=None, build=True, registry=""):
    return ImageSpec(
        name="coreprov/app:1",
        pull=ImagePullSpec(policy=policy, registry=registry) if policy is not None else None,
        build=ImageBuildSpec(source="/src/app") if build else None,
    )


class TestNoPullNoBuild:

    def test_present_image_is_done(self, fake_runtime):
        fake_runtime.images.append("coreprov/app:1")
        job = ImageSetup(make_spec(build=False), fake_runtime)

        assert job.execute() is None
        assert fake_runtime.pulls == []

    def test_absent_image_fails(self, fake_runtime):
        job = ImageSetup(make_spec(build=False), fake_runtime)
        assert isinstance(job.execute(), ImageNotFoundError)

    def test_existence_is_an_exact_tag_match(self, fake_runtime):
        fake_runtime.images.append("coreprov/app:10")
        job = ImageSetup(make_spec(build=False), fake_runtime)
        assert isinstance(job.execute(), ImageNotFoundError)


class TestIfBuildFails:

    def test_failing_build_pulls_exactly_once(self, fake_runtime):
        fake_runtime.pull_error = PullError("registry unreachable")
        builder = FakeBuilderFactory(error=BuildError("RUN exited 1"))
        job = ImageSetup(make_spec(PullPolicy.IF_BUILD_FAILS), fake_runtime, builder_factory=builder)

        error = job.execute()

        assert isinstance(error, BuildError)
        assert fake_runtime.pulls == ["coreprov/app:1"]
        assert job.build_attempts == 1
        assert job.pull_attempts == 1

    def test_succeeding_build_never_pulls(self, fake_runtime):
        builder = FakeBuilderFactory()
        job = ImageSetup(make_spec(PullPolicy.IF_BUILD_FAILS), fake_runtime, builder_factory=builder)

        assert job.execute() is None
        assert builder.builds == ["coreprov/app:1"]
        assert fake_runtime.pulls == []
        assert job.pull_attempts == 0

    def test_pull_recovers_failed_build(self, fake_runtime):
        builder = FakeBuilderFactory(error=BuildError("RUN exited 1"))
        job = ImageSetup(make_spec(PullPolicy.IF_BUILD_FAILS), fake_runtime, builder_factory=builder)

        assert job.execute() is None
        assert fake_runtime.pulls == ["coreprov/app:1"]

    def test_present_image_is_kept(self, fake_runtime):
        fake_runtime.images.append("coreprov/app:1")
        builder = FakeBuilderFactory()
        job = ImageSetup(make_spec(PullPolicy.IF_BUILD_FAILS), fake_runtime, builder_factory=builder)

        assert job.execute() is None
        assert builder.builds == []
        assert fake_runtime.pulls == []


class TestPullFirst:

    def test_if_not_present_pulls_absent_image(self, fake_runtime):
        builder = FakeBuilderFactory()
        job = ImageSetup(make_spec(PullPolicy.IF_NOT_PRESENT), fake_runtime, builder_factory=builder)

        assert job.execute() is None
        assert fake_runtime.pulls == ["coreprov/app:1"]
        assert builder.builds == []

    def test_if_not_present_skips_present_image(self, fake_runtime):
        fake_runtime.images.append("coreprov/app:1")
        job = ImageSetup(make_spec(PullPolicy.IF_NOT_PRESENT), fake_runtime)

        assert job.execute() is None
        assert fake_runtime.pulls == []

    def test_always_pulls_present_image(self, fake_runtime):
        fake_runtime.images.append("coreprov/app:1")
        job = ImageSetup(make_spec(PullPolicy.ALWAYS), fake_runtime)

        assert job.execute() is None
        assert fake_runtime.pulls == ["coreprov/app:1"]

    def test_always_keeps_present_image_when_pull_fails(self, fake_runtime):
        fake_runtime.images.append("coreprov/app:1")
        fake_runtime.pull_error = PullError("registry unreachable")
        builder = FakeBuilderFactory()
        job = ImageSetup(make_spec(PullPolicy.ALWAYS), fake_runtime, builder_factory=builder)

        assert job.execute() is None
        assert builder.builds == []

    @pytest.mark.parametrize("policy", [PullPolicy.ALWAYS, PullPolicy.IF_NOT_PRESENT])
    def test_failed_pull_falls_back_to_build(self, fake_runtime, policy):
        fake_runtime.pull_error = PullError("registry unreachable")
        builder = FakeBuilderFactory()
        job = ImageSetup(make_spec(policy), fake_runtime, builder_factory=builder)

        assert job.execute() is None
        assert builder.builds == ["coreprov/app:1"]

    def test_failed_pull_without_build_fails(self, fake_runtime):
        fake_runtime.pull_error = PullError("registry unreachable")
        job = ImageSetup(make_spec(PullPolicy.IF_NOT_PRESENT, build=False), fake_runtime)

        assert isinstance(job.execute(), PullError)

    def test_registry_prefix(self, fake_runtime):
        job = ImageSetup(make_spec(PullPolicy.IF_NOT_PRESENT, registry="registry.example.com"), fake_runtime)
        job.execute()
        assert fake_runtime.pulls == ["registry.example.com/coreprov/app:1"]


class TestJobContract:

    def test_existence_check_failure_is_fatal(self, fake_runtime):
        fake_runtime.list_error = RuntimeClientError("daemon down")
        builder = FakeBuilderFactory()
        job = ImageSetup(make_spec(PullPolicy.IF_NOT_PRESENT), fake_runtime, builder_factory=builder)

        assert job.execute() is fake_runtime.list_error
        assert fake_runtime.pulls == []
        assert builder.builds == []

    def test_failure_is_written_to_log(self, fake_runtime):
        output = io.StringIO()
        job = ImageSetup(make_spec(build=False), fake_runtime, output=output)
        job.execute()
        assert "Image setup failed with error:\nImage coreprov/app:1 not found" in output.getvalue()

    def test_output_reaches_waiters(self, fake_runtime):
        output = io.StringIO()
        job = ImageSetup(make_spec(PullPolicy.IF_NOT_PRESENT), fake_runtime, output=output)
        job.execute()
        assert "Pulled coreprov/app:1" in output.getvalue()

    def test_execute_runs_once(self, fake_runtime):
        job = ImageSetup(make_spec(PullPolicy.ALWAYS, build=False), fake_runtime)
        assert job.execute() is None
        assert job.execute() is None
        assert job.wait() is None
        assert job.wait() is None
        assert fake_runtime.pulls == ["coreprov/app:1"]
        assert job.done
