"""Worker image resolution."""

import logging
from pathlib import Path

from ..config.constants import PROJECT_DOCKERFILE
from ..exceptions import BuildFileNotFoundError
from ..runtime.docker import DockerRuntime

logger = logging.getLogger(__name__)


def ensure_image(
    runtime: DockerRuntime,
    image: str,
    project_root: Path,
    plugin_root: Path,
    force_build: bool = False,
) -> bool:
    """Build ``image`` when forced or missing locally.

    The project's ``Dockerfile.worker`` wins over the plugin default; the
    build context is the root the Dockerfile was found under.

    Returns:
        True if an image was built.

    Raises:
        BuildFileNotFoundError: A build is needed but no Dockerfile exists.
        RuntimeCommandError: The build failed.
    """
    if not force_build and runtime.image_exists(image):
        logger.debug("Image %s present", image)
        return False

    build_file = runtime.resolve_build_file(project_root, plugin_root)
    if build_file is None:
        raise BuildFileNotFoundError(str(project_root), str(plugin_root))

    context = Path(project_root) if build_file.name == PROJECT_DOCKERFILE else Path(plugin_root)
    logger.info("Building %s using %s", image, build_file)
    runtime.build_image(image, context, build_file)
    return True
