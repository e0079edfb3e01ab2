"""Image pipeline: download, extract or copy, rename, resize.

Each invocation performs at most one transition and never re-submits a step
whose task id is already recorded in ``status.progress``.
"""

import structlog

from . import phase as phases
from .config import Settings
from .exceptions import RemoteTaskFailed
from .freebox_client import FreeboxClient
from .images import StorageLayout, final_image_path, image_filename
from .models import ConditionStatus, ConditionType, set_condition
from .result import ReconcileResult
from .scope import MachineScope

logger = structlog.get_logger()


class ImagePipeline:
    """Drives a machine's disk image to the ready state."""

    def __init__(self, settings: Settings, freebox: FreeboxClient, storage: StorageLayout) -> None:
        """Initialize the image pipeline."""
        self.settings = settings
        self.freebox = freebox
        self.storage = storage

    def advance(self, scope: MachineScope) -> ReconcileResult | None:
        """Perform the next pipeline step.

        Returns None once the image is resized and marked ready, so the caller
        continues with VM creation in the same invocation.
        """
        machine = scope.machine
        filename = image_filename(machine.spec.image_url)
        current = phases.decode(machine.status.progress)

        if isinstance(current, phases.NotStarted):
            return self._start_download(scope, filename)
        if isinstance(current, phases.Downloading):
            return self._poll_download(scope, current, filename)
        task_id = current.task_id
        if isinstance(current, (phases.Extracting, phases.Copying)):
            if task_id is None:
                return self._submit_transfer(scope, current)
            return self._poll_transfer(scope, current, task_id, filename)
        if isinstance(current, phases.Renaming):
            if task_id is None:
                return self._submit_rename(scope, current)
            return self._poll_rename(scope, task_id)
        if task_id is None:
            return self._submit_resize(scope, current)
        return self._poll_resize(scope, task_id)

    def final_path(self, scope: MachineScope) -> str:
        """Final disk path of the machine's image."""
        machine = scope.machine
        return final_image_path(
            self.storage.vm_storage_path,
            machine.vm_name,
            image_filename(machine.spec.image_url),
        )

    # Steps

    def _start_download(self, scope: MachineScope, filename: str) -> ReconcileResult:
        image_url = scope.machine.spec.image_url
        logger.info(
            "Starting image download",
            machine=scope.machine.key,
            url=image_url,
            dest=self.storage.download_dir,
        )
        task_id = self.freebox.add_download_task([image_url], self.storage.download_dir, filename)
        self._transition(scope, phases.Downloading(task_id=task_id), "Downloading image")
        return ReconcileResult.requeue(self.settings.poll_interval_seconds)

    def _poll_download(
        self, scope: MachineScope, current: phases.Downloading, filename: str
    ) -> ReconcileResult:
        task = self.freebox.get_download_task(current.task_id)
        if task.is_error:
            return self._fail(scope, "download", "DownloadFailed", "Image download failed")
        if not task.is_done:
            logger.debug(
                "Download in progress",
                machine=scope.machine.key,
                task_id=current.task_id,
                status=task.status,
                rx_bytes=task.rx_bytes,
                size=task.size,
            )
            return ReconcileResult.requeue(self.settings.poll_interval_seconds)

        logger.info("Download completed", machine=scope.machine.key, task_id=current.task_id)
        following = phases.after_download(
            filename, self.storage.download_dir, self.storage.vm_storage_path
        )
        self._transition(scope, following, f"{following.tag} image")
        return ReconcileResult.requeue(self.settings.step_interval_seconds)

    def _submit_transfer(
        self, scope: MachineScope, current: phases.Extracting | phases.Copying
    ) -> ReconcileResult:
        if isinstance(current, phases.Extracting):
            task = self.freebox.extract_file(current.src, current.dst)
        else:
            task = self.freebox.copy_files([current.src], current.dst)
        logger.info(
            f"{current.tag} started",
            machine=scope.machine.key,
            task_id=task.id,
            src=current.src,
            dst=current.dst,
        )
        self._transition(scope, phases.with_task(current, task.id), f"{current.tag} image")
        return ReconcileResult.requeue(self.settings.poll_interval_seconds)

    def _poll_transfer(
        self,
        scope: MachineScope,
        current: phases.Extracting | phases.Copying,
        task_id: int,
        filename: str,
    ) -> ReconcileResult:
        task = self.freebox.get_filesystem_task(task_id)
        if task.is_error:
            if isinstance(current, phases.Extracting):
                return self._fail(
                    scope, "extraction", "ExtractionFailed", "Image extraction failed", task.error
                )
            return self._fail(scope, "copy", "CopyFailed", "Image copy failed", task.error)
        if not task.is_done:
            return ReconcileResult.requeue(self.settings.poll_interval_seconds)

        logger.info(f"{current.tag} completed", machine=scope.machine.key, task_id=task_id)
        following = phases.after_transfer(
            current, filename, self.storage.vm_storage_path, scope.machine.vm_name
        )
        self._transition(scope, following, f"{following.tag} image")
        return ReconcileResult.requeue(self.settings.step_interval_seconds)

    def _submit_rename(self, scope: MachineScope, current: phases.Renaming) -> ReconcileResult:
        task = self.freebox.move_files([current.src], current.dst)
        logger.info(
            "Rename task started",
            machine=scope.machine.key,
            task_id=task.id,
            src=current.src,
            dst=current.dst,
        )
        self._transition(scope, phases.with_task(current, task.id), "Renaming image")
        return ReconcileResult.requeue(self.settings.poll_interval_seconds)

    def _poll_rename(self, scope: MachineScope, task_id: int) -> ReconcileResult:
        task = self.freebox.get_filesystem_task(task_id)
        if task.is_error:
            return self._fail(scope, "rename", "RenameFailed", "Image rename failed", task.error)
        if not task.is_done:
            return ReconcileResult.requeue(self.settings.poll_interval_seconds)

        logger.info("Rename completed", machine=scope.machine.key, task_id=task_id)
        self._transition(scope, phases.after_rename(), "Resizing image")
        return ReconcileResult.requeue(self.settings.step_interval_seconds)

    def _submit_resize(self, scope: MachineScope, current: phases.Resizing) -> ReconcileResult:
        machine = scope.machine
        # Shrinking is never requested so a smaller target cannot truncate the image.
        task_id = self.freebox.resize_virtual_disk(
            self.final_path(scope), machine.disk_size_bytes, shrink_allow=False
        )
        logger.info(
            "Resize task started",
            machine=machine.key,
            task_id=task_id,
            size_bytes=machine.disk_size_bytes,
        )
        self._transition(scope, phases.with_task(current, task_id), "Resizing image")
        return ReconcileResult.requeue(self.settings.poll_interval_seconds)

    def _poll_resize(self, scope: MachineScope, task_id: int) -> ReconcileResult | None:
        task = self.freebox.get_virtual_disk_task(task_id)
        if not task.done:
            return ReconcileResult.requeue(self.settings.poll_interval_seconds)
        if task.error:
            return self._fail(scope, "resize", "ResizeFailed", "Disk resize failed")

        logger.info("Disk resize completed", machine=scope.machine.key, task_id=task_id)
        machine = scope.machine
        set_condition(
            machine.status.conditions,
            ConditionType.IMAGE_READY.value,
            ConditionStatus.TRUE,
            "ImageReady",
            "Image downloaded, extracted, renamed, and resized",
            machine.generation,
        )
        if not scope.save_status():
            return ReconcileResult.requeue(self.settings.step_interval_seconds)
        return None

    # Helpers

    def _transition(self, scope: MachineScope, following: phases.Phase, message: str) -> None:
        """Persist the next phase. A lost write is re-derived on the next invocation."""
        machine = scope.machine
        machine.status.progress = phases.encode(following)
        set_condition(
            machine.status.conditions,
            ConditionType.IMAGE_READY.value,
            ConditionStatus.FALSE,
            following.tag,
            message,
            machine.generation,
        )
        if not scope.save_status():
            logger.warning(
                "Progress not persisted, step may be repeated",
                machine=machine.key,
                phase=following.tag,
            )

    def _fail(
        self, scope: MachineScope, step: str, reason: str, message: str, detail: str = ""
    ) -> ReconcileResult:
        """Record a remote-reported failure and surface it to the driver."""
        machine = scope.machine
        logger.error(f"Image {step} failed", machine=machine.key, reason=reason, detail=detail)
        set_condition(
            machine.status.conditions,
            ConditionType.IMAGE_READY.value,
            ConditionStatus.FALSE,
            reason,
            f"{message}: {detail}" if detail else message,
            machine.generation,
        )
        scope.save_status()
        return ReconcileResult.failed(RemoteTaskFailed(step, reason, detail))
