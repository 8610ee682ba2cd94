"""
Preparation of tarred build contexts and single runtime builds.
"""
import logging
import os
import secrets
from typing import Any, Dict, List, Optional

from docker.utils.build import tar

from ..errors import BuildError
from ..RUNTIME.docker_client import RuntimeClient

logger = logging.getLogger(__name__)


def read_dockerignore(context_dir: str) -> List[str]:
    """
    Reads exclusion patterns from the context's .dockerignore, if any.
    """
    path = os.path.join(context_dir, ".dockerignore")
    if not os.path.exists(path):
        return []
    with open(path, "r") as f:
        lines = [line.strip() for line in f.read().splitlines()]
    return [line for line in lines if line and not line.startswith("#")]


def docker_build(runtime: RuntimeClient, context_dir: str, tag: str, writer: Any,
                 dockerfile: str = "Dockerfile", dockerfile_text: Optional[str] = None,
                 forcerm: bool = True, squash: bool = False,
                 buildargs: Optional[Dict[str, str]] = None) -> None:
    """
    Builds one image from a context directory.

    :param runtime: Runtime client performing the build.
    :param context_dir: Build context; its .dockerignore is honored.
    :param tag: Tag for the resulting image.
    :param writer: Receives build progress.
    :param dockerfile: Dockerfile path relative to the context.
    :param dockerfile_text: Dockerfile contents to use instead of the file on disk.
    :param forcerm: Always remove intermediate containers.
    :param squash: Squash the result into a single layer.
    :param buildargs: Build-time variables.
    :raises BuildError: If the context is invalid or the build fails.
    """
    if not os.path.isdir(context_dir):
        raise BuildError(f"Build context {context_dir} is not a directory")

    exclude = read_dockerignore(context_dir)
    if dockerfile_text is not None:
        name = f".dockerfile.{secrets.token_hex(10)}"
        spec = (name, dockerfile_text)
    else:
        name = os.path.normpath(dockerfile or "Dockerfile")
        if not os.path.isfile(os.path.join(context_dir, name)):
            raise BuildError(f"Dockerfile {name} not found in {context_dir}")
        spec = (name, None)

    logger.debug("Sending build context %s for %s", context_dir, tag)
    context = tar(context_dir, exclude=exclude, dockerfile=spec)
    try:
        runtime.build(context, name, tag, writer,
                      forcerm=forcerm, squash=squash, buildargs=buildargs)
    finally:
        context.close()
