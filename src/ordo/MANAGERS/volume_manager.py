"""
Volume management for the process runtime: named volumes are directories,
mounts are symlinks from the service's root into them.
"""
import logging
import os
import shutil
from typing import Dict, List, Optional

from ..MODELS.project_spec import ProjectSpec
from ..MODELS.service_spec import VolumeMount

logger = logging.getLogger(__name__)


class VolumeManager:
    """
    Manages named volume directories and mount links.
    """
    def __init__(self, base_dir: str = ".", volumes_root: str = ".ordo/volumes"):
        """
        Initializes the volume manager.

        :param base_dir: The base directory for resolving relative host paths.
        :param volumes_root: The root directory for named volume storage.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.volumes_root = os.path.abspath(os.path.join(base_dir, volumes_root))
        os.makedirs(self.volumes_root, exist_ok=True)

    def volume_path(self, name: str) -> str:
        return os.path.join(self.volumes_root, name)

    def exists(self, name: str) -> bool:
        return os.path.isdir(self.volume_path(name))

    def create(self, name: str) -> str:
        """
        Creates a named volume directory. Existing data is left untouched.

        :return: The volume path.
        """
        path = self.volume_path(name)
        os.makedirs(path, exist_ok=True)
        return path

    def remove(self, name: str) -> bool:
        """
        Deletes a named volume and its data.

        :return: True if the volume existed.
        """
        path = self.volume_path(name)
        if not os.path.isdir(path):
            return False
        shutil.rmtree(path)
        return True

    def list_volumes(self) -> List[str]:
        return sorted(
            entry for entry in os.listdir(self.volumes_root)
            if os.path.isdir(self.volume_path(entry))
        )

    def prepare_mounts(self,
                       mounts: List[VolumeMount],
                       project: ProjectSpec,
                       root_dir: str,
                       working_dir: Optional[str] = None) -> Dict[str, str]:
        """
        Links each mount target to its source.

        :param mounts: Mounts of one service.
        :param project: Project, for runtime volume names.
        :param root_dir: Directory standing in for the container's filesystem root.
        :param working_dir: Directory relative targets resolve against.
        :return: Mapping from target path to source path.
        """
        links = {}
        for mount in mounts:
            if mount.is_named:
                source_path = self.create(project.volume_name(mount.source))
            else:
                source_path = self.resolve_source(mount.source)
                if not os.path.exists(source_path):
                    os.makedirs(source_path, exist_ok=True)
            target_path = self.resolve_target(mount.target, root_dir, working_dir)

            logger.debug("Mapping volume: %s -> %s", source_path, target_path)

            # Ensure target parent directory exists
            target_parent = os.path.dirname(target_path)
            if target_parent:
                os.makedirs(target_parent, exist_ok=True)

            if os.path.islink(target_path):
                if os.path.realpath(target_path) == os.path.realpath(source_path):
                    links[target_path] = source_path
                    continue
                os.unlink(target_path)
            elif os.path.isdir(target_path):
                shutil.rmtree(target_path)
            elif os.path.exists(target_path):
                os.remove(target_path)

            os.symlink(source_path, target_path, target_is_directory=os.path.isdir(source_path))
            links[target_path] = source_path
        return links

    def resolve_source(self, source: str) -> str:
        """
        Resolves a host path source against the base directory.

        :param source: Absolute, relative or ~ path.
        :return: The absolute path to the source.
        """
        return os.path.abspath(os.path.join(self.base_dir, os.path.expanduser(source)))

    def resolve_target(self, target: str, root_dir: str, working_dir: Optional[str] = None) -> str:
        """
        Resolves the target path of a volume.

        :param target: The target path inside the "container".
        :param root_dir: Directory standing in for "/".
        :param working_dir: The working directory of the service.
        :return: The absolute path to the target.
        """
        if target.startswith('/'):
            # normpath collapses leading '..' at '/', so the result stays under root_dir
            return os.path.abspath(os.path.join(root_dir, os.path.normpath(target).lstrip('/')))

        # Relative to working_dir if provided, else the root
        root = working_dir if working_dir else root_dir
        return os.path.abspath(os.path.join(root, target))
