"""Tests for the image pipeline."""

from typing import Any
from unittest.mock import MagicMock

import pytest

from freebox_machine_controller.config import Settings
from freebox_machine_controller.exceptions import RemoteTaskFailed
from freebox_machine_controller.freebox_client import DownloadTask, FileSystemTask, VirtualDiskTask
from freebox_machine_controller.images import StorageLayout
from freebox_machine_controller.models import find_condition
from freebox_machine_controller.pipeline import ImagePipeline
from freebox_machine_controller.scope import MachineScope

from .conftest import DOWNLOAD_DIR, VM_STORAGE, FakeStore

IMAGE_URL = "https://images.example.com/debian.qcow2"


def scope_at(store: FakeStore, progress: dict[str, Any]) -> MachineScope:
    """Scope over the stored machine with the given progress marker."""
    store.stored("default", "worker-0")["status"]["progress"] = progress
    machine = store.get_machine("default", "worker-0")
    assert machine is not None
    return MachineScope(machine, store)  # type: ignore[arg-type]


def stored_progress(store: FakeStore) -> dict[str, Any]:
    return store.stored("default", "worker-0")["status"].get("progress", {})


def image_condition(store: FakeStore) -> dict[str, Any]:
    for condition in store.stored("default", "worker-0")["status"].get("conditions", []):
        if condition["type"] == "ImageReady":
            return condition
    raise AssertionError("ImageReady condition not set")


@pytest.fixture
def pipeline(settings: Settings, mock_freebox: MagicMock, storage: StorageLayout) -> ImagePipeline:
    """Create an image pipeline over the mock appliance."""
    return ImagePipeline(settings, mock_freebox, storage)


class TestDownload:
    """Tests for the download step."""

    def test_submits_download(
        self, pipeline: ImagePipeline, scope: MachineScope, mock_freebox: MagicMock
    ) -> None:
        """Test a fresh machine submits exactly one download."""
        result = pipeline.advance(scope)

        mock_freebox.add_download_task.assert_called_once_with(
            [IMAGE_URL], DOWNLOAD_DIR, "debian.qcow2"
        )
        assert result is not None
        assert result.requeue_after == 10
        assert stored_progress(scope.store) == {"phase": "Downloading", "taskId": 11}  # type: ignore[arg-type]
        assert image_condition(scope.store)["reason"] == "Downloading"  # type: ignore[arg-type]

    def test_in_progress_download_is_polled(
        self, pipeline: ImagePipeline, finalized_store: FakeStore, mock_freebox: MagicMock
    ) -> None:
        """Test an in-flight download is polled without re-submission or writes."""
        mock_freebox.get_download_task.return_value = DownloadTask(
            id=11, status="downloading", rx_bytes=10, size=100
        )
        scope = scope_at(finalized_store, {"phase": "Downloading", "taskId": 11})
        writes = finalized_store.status_writes

        result = pipeline.advance(scope)

        mock_freebox.add_download_task.assert_not_called()
        mock_freebox.get_download_task.assert_called_once_with(11)
        assert result is not None
        assert result.requeue_after == 10
        assert finalized_store.status_writes == writes

    def test_completed_download_moves_to_copy(
        self, pipeline: ImagePipeline, finalized_store: FakeStore
    ) -> None:
        """Test an uncompressed image is copied next."""
        scope = scope_at(finalized_store, {"phase": "Downloading", "taskId": 11})

        result = pipeline.advance(scope)

        assert result is not None
        assert result.requeue_after == 1
        assert stored_progress(finalized_store) == {
            "phase": "Copying",
            "src": f"{DOWNLOAD_DIR}/debian.qcow2",
            "dst": VM_STORAGE,
        }

    def test_compressed_download_moves_to_extract(
        self, pipeline: ImagePipeline, finalized_store: FakeStore
    ) -> None:
        """Test a compressed image is extracted next."""
        finalized_store.stored("default", "worker-0")["spec"]["imageURL"] = (
            "https://images.example.com/nocloud.raw.xz"
        )
        scope = scope_at(finalized_store, {"phase": "Downloading", "taskId": 11})

        pipeline.advance(scope)

        assert stored_progress(finalized_store)["phase"] == "Extracting"

    def test_download_error(
        self, pipeline: ImagePipeline, finalized_store: FakeStore, mock_freebox: MagicMock
    ) -> None:
        """Test a failed download records DownloadFailed and stops."""
        mock_freebox.get_download_task.return_value = DownloadTask(id=11, status="error")
        scope = scope_at(finalized_store, {"phase": "Downloading", "taskId": 11})

        result = pipeline.advance(scope)

        assert result is not None
        assert result.is_failed
        assert isinstance(result.error, RemoteTaskFailed)
        assert image_condition(finalized_store)["status"] == "False"
        assert image_condition(finalized_store)["reason"] == "DownloadFailed"
        assert stored_progress(finalized_store) == {"phase": "Downloading", "taskId": 11}
        mock_freebox.copy_files.assert_not_called()
        mock_freebox.extract_file.assert_not_called()


class TestTransfer:
    """Tests for the extract and copy steps."""

    def test_copy_submitted_once(
        self, pipeline: ImagePipeline, finalized_store: FakeStore, mock_freebox: MagicMock
    ) -> None:
        """Test entering Copying submits the copy and records its task."""
        src = f"{DOWNLOAD_DIR}/debian.qcow2"
        scope = scope_at(finalized_store, {"phase": "Copying", "src": src, "dst": VM_STORAGE})

        result = pipeline.advance(scope)

        mock_freebox.copy_files.assert_called_once_with([src], VM_STORAGE)
        assert result is not None
        assert result.requeue_after == 10
        assert stored_progress(finalized_store)["taskId"] == 22

    def test_recorded_copy_is_polled_not_resubmitted(
        self, pipeline: ImagePipeline, finalized_store: FakeStore, mock_freebox: MagicMock
    ) -> None:
        """Test resuming after a crash polls the recorded task."""
        src = f"{DOWNLOAD_DIR}/debian.qcow2"
        scope = scope_at(
            finalized_store, {"phase": "Copying", "taskId": 22, "src": src, "dst": VM_STORAGE}
        )

        pipeline.advance(scope)

        mock_freebox.copy_files.assert_not_called()
        mock_freebox.get_filesystem_task.assert_called_once_with(22)
        assert stored_progress(finalized_store) == {
            "phase": "Renaming",
            "src": f"{VM_STORAGE}/debian.qcow2",
            "dst": f"{VM_STORAGE}/worker-0.qcow2",
        }

    def test_extract_submitted(
        self, pipeline: ImagePipeline, finalized_store: FakeStore, mock_freebox: MagicMock
    ) -> None:
        """Test entering Extracting submits the extraction."""
        src = f"{DOWNLOAD_DIR}/nocloud.raw.xz"
        scope = scope_at(finalized_store, {"phase": "Extracting", "src": src, "dst": VM_STORAGE})

        pipeline.advance(scope)

        mock_freebox.extract_file.assert_called_once_with(src, VM_STORAGE)
        assert stored_progress(finalized_store)["taskId"] == 21

    def test_extract_error(
        self, pipeline: ImagePipeline, finalized_store: FakeStore, mock_freebox: MagicMock
    ) -> None:
        """Test a failed extraction records the remote error."""
        mock_freebox.get_filesystem_task.side_effect = None
        mock_freebox.get_filesystem_task.return_value = FileSystemTask(
            id=21, state="failed", error="archive_read_failed"
        )
        scope = scope_at(
            finalized_store,
            {"phase": "Extracting", "taskId": 21, "src": "/dl/a.raw.xz", "dst": VM_STORAGE},
        )

        result = pipeline.advance(scope)

        assert result is not None
        assert result.is_failed
        condition = image_condition(finalized_store)
        assert condition["reason"] == "ExtractionFailed"
        assert "archive_read_failed" in condition["message"]

    def test_copy_error(
        self, pipeline: ImagePipeline, finalized_store: FakeStore, mock_freebox: MagicMock
    ) -> None:
        """Test a failed copy records CopyFailed."""
        mock_freebox.get_filesystem_task.side_effect = None
        mock_freebox.get_filesystem_task.return_value = FileSystemTask(id=22, state="error")
        scope = scope_at(
            finalized_store,
            {"phase": "Copying", "taskId": 22, "src": "/dl/a.qcow2", "dst": VM_STORAGE},
        )

        pipeline.advance(scope)

        assert image_condition(finalized_store)["reason"] == "CopyFailed"


class TestRenameAndResize:
    """Tests for the rename and resize steps."""

    def test_rename_submitted(
        self, pipeline: ImagePipeline, finalized_store: FakeStore, mock_freebox: MagicMock
    ) -> None:
        """Test the output is moved to its final path."""
        src = f"{VM_STORAGE}/debian.qcow2"
        dst = f"{VM_STORAGE}/worker-0.qcow2"
        scope = scope_at(finalized_store, {"phase": "Renaming", "src": src, "dst": dst})

        pipeline.advance(scope)

        mock_freebox.move_files.assert_called_once_with([src], dst)
        assert stored_progress(finalized_store)["taskId"] == 23

    def test_rename_done(self, pipeline: ImagePipeline, finalized_store: FakeStore) -> None:
        """Test a completed rename moves to resize."""
        scope = scope_at(
            finalized_store, {"phase": "Renaming", "taskId": 23, "src": "/a", "dst": "/b"}
        )

        pipeline.advance(scope)

        assert stored_progress(finalized_store) == {"phase": "Resizing"}

    def test_rename_error(
        self, pipeline: ImagePipeline, finalized_store: FakeStore, mock_freebox: MagicMock
    ) -> None:
        """Test a failed rename records RenameFailed."""
        mock_freebox.get_filesystem_task.side_effect = None
        mock_freebox.get_filesystem_task.return_value = FileSystemTask(id=23, state="failed")
        scope = scope_at(
            finalized_store, {"phase": "Renaming", "taskId": 23, "src": "/a", "dst": "/b"}
        )

        pipeline.advance(scope)

        assert image_condition(finalized_store)["reason"] == "RenameFailed"

    def test_resize_submitted(
        self, pipeline: ImagePipeline, finalized_store: FakeStore, mock_freebox: MagicMock
    ) -> None:
        """Test the final image is grown without shrinking."""
        scope = scope_at(finalized_store, {"phase": "Resizing"})

        pipeline.advance(scope)

        mock_freebox.resize_virtual_disk.assert_called_once_with(
            f"{VM_STORAGE}/worker-0.qcow2", 10 * 1024**3, shrink_allow=False
        )
        assert stored_progress(finalized_store) == {"phase": "Resizing", "taskId": 31}

    def test_resize_done_marks_image_ready(
        self, pipeline: ImagePipeline, finalized_store: FakeStore
    ) -> None:
        """Test resize completion falls through to VM creation."""
        scope = scope_at(finalized_store, {"phase": "Resizing", "taskId": 31})

        result = pipeline.advance(scope)

        assert result is None
        assert image_condition(finalized_store)["status"] == "True"
        condition = find_condition(scope.machine.status.conditions, "ImageReady")
        assert condition is not None
        assert condition.status == "True"

    def test_resize_in_progress(
        self, pipeline: ImagePipeline, finalized_store: FakeStore, mock_freebox: MagicMock
    ) -> None:
        """Test an unfinished resize keeps polling."""
        mock_freebox.get_virtual_disk_task.return_value = VirtualDiskTask(
            id=31, done=False, error=False
        )
        scope = scope_at(finalized_store, {"phase": "Resizing", "taskId": 31})

        result = pipeline.advance(scope)

        assert result is not None
        assert result.requeue_after == 10
        mock_freebox.resize_virtual_disk.assert_not_called()

    def test_resize_error(
        self, pipeline: ImagePipeline, finalized_store: FakeStore, mock_freebox: MagicMock
    ) -> None:
        """Test a failed resize records ResizeFailed."""
        mock_freebox.get_virtual_disk_task.return_value = VirtualDiskTask(
            id=31, done=True, error=True
        )
        scope = scope_at(finalized_store, {"phase": "Resizing", "taskId": 31})

        result = pipeline.advance(scope)

        assert result is not None
        assert result.is_failed
        assert image_condition(finalized_store)["reason"] == "ResizeFailed"


class TestConflicts:
    """Tests for lost progress writes."""

    def test_conflict_still_requeues(
        self, pipeline: ImagePipeline, finalized_store: FakeStore, mock_freebox: MagicMock
    ) -> None:
        """Test a conflicting progress write does not raise."""
        scope = scope_at(finalized_store, {"phase": "Downloading", "taskId": 11})
        finalized_store.conflicts_remaining = 1

        result = pipeline.advance(scope)

        assert result is not None
        assert result.requeue_after == 1
        assert stored_progress(finalized_store) == {"phase": "Downloading", "taskId": 11}
