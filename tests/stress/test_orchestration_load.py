import time

from coreprov.MANAGERS.setup import Setup
from coreprov.MODELS.config import Config, ContainerSpec, ImagePullSpec, ImageSpec
from coreprov.PARSERS.config_parser import ConfigParser


def test_stress_orchestration(fake_runtime):
    """
    Stress test by reconciling 50 containers over 5 shared images simultaneously.
    """
    images = {f"image_{i}:latest": ImageSpec(pull=ImagePullSpec()) for i in range(5)}
    containers = {
        f"container_{i}": ContainerSpec(image=f"image_{i % 5}:latest", cmd=["/bin/sleep", "infinity"])
        for i in range(50)
    }
    config = Config(images=images, containers=containers)
    config.fill_private_fields()
    setup = Setup(config, fake_runtime)

    start_time = time.time()
    error = setup.execute()
    end_time = time.time()

    print(f"Reconciled 55 jobs in {end_time - start_time:.2f}s")

    assert error is None
    assert setup.completed_jobs == 55
    # Each image job runs once no matter how many containers wait on it.
    assert sorted(fake_runtime.pulls) == sorted(images)
    assert len(fake_runtime.created) == 50
    assert len({c["name"] for c in fake_runtime.created}) == 50


def test_large_config_parsing():
    parser = ConfigParser({})

    # Generate a large config file
    content = "containers:\n"
    for i in range(1000):
        content += f"  container_{i}:\n"
        content += f"    image: image_{i}:latest\n"
        content += f"    env:\n"
        content += f"      - VAR_{i}=VALUE_{i}\n"

    start_time = time.time()
    config = parser.parse_from_string(content)
    end_time = time.time()

    assert len(config.containers) == 1000
    assert end_time - start_time < 5.0
