import subprocess
import logging
from importlib.metadata import PackageNotFoundError, version

logger = logging.getLogger(__name__)

DISTRIBUTION = 'zfs-glacier-sync'


def get_version():
    """Version of a git checkout, else of the installed distribution."""
    try:
        return subprocess.check_output(
            ['git', 'describe', '--tags', '--dirty=-dev'],
            stderr=subprocess.DEVNULL,
            text=True
        ).strip()
    except (subprocess.CalledProcessError, FileNotFoundError):
        pass

    try:
        return f"v{version(DISTRIBUTION)}"
    except PackageNotFoundError:
        logger.warning("Could not determine version from git or package metadata, using fallback")
        return "v0.0.0"


__version__ = get_version()
