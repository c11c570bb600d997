"""Package archive extraction"""

import logging
import shutil
import uuid
import zipfile
from pathlib import Path, PurePosixPath

from extension_host.core.extensions.exceptions import InstallationError

logger = logging.getLogger(__name__)


def extract_archive(zip_path: Path, target_dir: Path) -> None:
    """
    Extract a zip into target_dir with path traversal protection

    Raises:
        InstallationError: If the archive is unsafe or extraction fails
    """
    logger.debug(f"Extracting {zip_path.name} to {target_dir}")

    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        target_dir_resolved = target_dir.resolve()

        with zipfile.ZipFile(zip_path, "r") as zf:
            for member in zf.namelist():
                relative_path = PurePosixPath(member.replace("\\", "/"))

                if ".." in relative_path.parts:
                    raise InstallationError(f"Path traversal detected in archive: {member}")

                if relative_path.is_absolute() or Path(member).is_absolute():
                    raise InstallationError(f"Absolute path detected in archive: {member}")

                target_path = target_dir.joinpath(*relative_path.parts)

                try:
                    target_path.resolve().relative_to(target_dir_resolved)
                except ValueError:
                    raise InstallationError(
                        f"Archive extraction would escape target directory: {member}"
                    )

                if member.endswith("/"):
                    target_path.mkdir(parents=True, exist_ok=True)
                    continue

                target_path.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(member) as source, open(target_path, "wb") as target:
                    shutil.copyfileobj(source, target)

    except InstallationError:
        raise
    except (OSError, zipfile.BadZipFile) as e:
        raise InstallationError(f"Failed to extract {zip_path.name}: {e}") from e


def install_archive(zip_path: Path, package_dir: Path) -> None:
    """
    Extract an archive into its package folder

    Extraction happens in a temporary sibling folder that is renamed into
    place, so an interrupted install never leaves a half-populated package
    folder behind.
    """
    staging_dir = package_dir.parent / f".{package_dir.name}.{uuid.uuid4().hex[:8]}.partial"
    try:
        extract_archive(zip_path, staging_dir)
        if package_dir.exists():
            shutil.rmtree(package_dir)
        staging_dir.rename(package_dir)
    finally:
        if staging_dir.exists():
            shutil.rmtree(staging_dir, ignore_errors=True)

    logger.info(f"Installed {zip_path.name} -> {package_dir}")
