"""Disk image naming rules on the appliance."""

import posixpath
from dataclasses import dataclass
from urllib.parse import urlparse

import structlog

from .config import Settings
from .freebox_client import FreeboxClient

logger = structlog.get_logger()

COMPRESSED_EXTENSIONS = (".xz", ".gz", ".bz2", ".zip", ".tar")
DEFAULT_DISK_EXTENSION = ".raw"

RAW_DISK = "raw"
QCOW2_DISK = "qcow2"


def image_filename(image_url: str) -> str:
    """Return the file name an image URL downloads to."""
    return posixpath.basename(urlparse(image_url).path)


def is_compressed(filename: str) -> bool:
    """Check if a file name ends with a known compressed extension."""
    return posixpath.splitext(filename)[1].lower() in COMPRESSED_EXTENSIONS


def strip_compression_suffix(filename: str) -> str:
    """Remove at most one trailing compressed extension.

    >>> strip_compression_suffix("nocloud.raw.xz")
    'nocloud.raw'
    """
    lower = filename.lower()
    for ext in COMPRESSED_EXTENSIONS:
        if lower.endswith(ext):
            return filename[: -len(ext)]
    return filename


def disk_extension(filename: str) -> str:
    """Extension of the underlying disk image, ``.raw`` when there is none."""
    ext = posixpath.splitext(strip_compression_suffix(filename))[1]
    return ext or DEFAULT_DISK_EXTENSION


def final_image_path(storage_dir: str, vm_name: str, filename: str) -> str:
    """Path of the VM disk: ``<storage-dir>/<vm-name><ext>``."""
    return posixpath.join(storage_dir, vm_name + disk_extension(filename))


def extracted_path(storage_dir: str, filename: str) -> str:
    """Path an archive lands at once extracted into ``storage_dir``."""
    return posixpath.join(storage_dir, strip_compression_suffix(filename))


def copied_path(storage_dir: str, filename: str) -> str:
    """Path a file lands at once copied into ``storage_dir``."""
    return posixpath.join(storage_dir, filename)


def disk_type(path: str) -> str:
    """Freebox disk type for an image path."""
    if posixpath.splitext(path)[1].lower() == ".qcow2":
        return QCOW2_DISK
    return RAW_DISK


@dataclass(frozen=True)
class StorageLayout:
    """Where images are downloaded and where VM disks live on the appliance."""

    download_dir: str
    vm_storage_path: str


def resolve_storage_layout(settings: Settings, freebox: FreeboxClient) -> StorageLayout:
    """Use configured directories, asking the appliance for the missing ones."""
    download_dir = settings.download_dir or freebox.get_download_dir()
    vm_storage_path = settings.vm_storage_path or freebox.get_vm_storage_path()
    logger.info(
        "Resolved Freebox storage layout",
        download_dir=download_dir,
        vm_storage_path=vm_storage_path,
    )
    return StorageLayout(download_dir=download_dir, vm_storage_path=vm_storage_path)
