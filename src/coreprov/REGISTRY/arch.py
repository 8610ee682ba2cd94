"""
Host architecture detection and base-image compatibility tables.
"""
import logging
import os
import platform
import re
from enum import Enum
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

ARCH_ENV_VAR = "COREPROV_ARCH"


class KnownArch(str, Enum):
    """
    CPU architecture classes used for base image compatibility.
    """
    NONE = "none"
    AMD64 = "amd64"
    ARM = "arm"
    ARM64 = "arm64"


# Most Docker images are compatible with this architecture by default.
DEFAULT_ARCH = KnownArch.AMD64

# Tried in order; aarch64/arm64 must win over the generic arm patterns.
KNOWN_ARCH_NAMES: List[Tuple[str, KnownArch]] = [
    (r"^(aarch64|arm64)", KnownArch.ARM64),
    (r"^armv", KnownArch.ARM),
    (r"^arm", KnownArch.ARM),
    (r"^(x86_64|amd64)$", KnownArch.AMD64),
    (r"^i[3-6]86$", KnownArch.AMD64),
]

# ARM64 can run ARM images.
KNOWN_ARCH_COMPAT: Dict[KnownArch, List[KnownArch]] = {
    KnownArch.ARM64: [KnownArch.ARM],
}

# Known equivalents for amd64 library images on other architectures.
ARCH_BASE_IMAGES: Dict[KnownArch, Dict[str, str]] = {
    KnownArch.ARM: {
        "library/ubuntu": "ioft/armhf-ubuntu",
        "library/alpine": "container4armhf/armhf-alpine",
        "library/busybox": "container4armhf/armhf-busybox",
        "library/archlinux": "armv7/armhf-archlinux",
        "library/debian": "armbuild/debian",
    },
}


def parse_arch(machine: str) -> Tuple[KnownArch, bool]:
    """
    Determines which architecture a `uname -m` style string represents.

    :param machine: Machine identifier, e.g. 'x86_64', 'armv7l', 'aarch64'.
    :return: The architecture and whether it was recognized.
             Unrecognized input maps to (AMD64, False).
    """
    machine = (machine or "").strip().lower()
    for pattern, arch in KNOWN_ARCH_NAMES:
        if re.match(pattern, machine):
            return arch, True
    return DEFAULT_ARCH, False


def detect_machine_id() -> str:
    """Returns the host machine identifier (uname -m)."""
    return platform.machine()


def detect_arch(override: Optional[str] = None) -> KnownArch:
    """
    Detects the target architecture.

    The explicit override wins, then the COREPROV_ARCH environment variable,
    then the host machine id.
    """
    machine = override or os.environ.get(ARCH_ENV_VAR) or detect_machine_id()
    arch, ok = parse_arch(machine)
    if not ok:
        logger.warning("Unknown architecture %r, assuming %s", machine, arch.value)
    return arch


def compatible_base_image(target: KnownArch, image: str) -> Tuple[str, bool]:
    """
    Looks up an equivalent image for a target architecture.

    :param target: Architecture the image must run on.
    :param image: Repository path without tag, e.g. 'library/alpine'.
    :return: (substitute, True) if known, ('', False) otherwise. AMD64 returns
             the image itself.
    """
    if target == KnownArch.AMD64:
        return image, True

    for arch in [target] + KNOWN_ARCH_COMPAT.get(target, []):
        substitute = ARCH_BASE_IMAGES.get(arch, {}).get(image)
        if substitute:
            return substitute, True
    return "", False
