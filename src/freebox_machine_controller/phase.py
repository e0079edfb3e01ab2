"""Provisioning progress of a FreeboxMachine image.

The progress is persisted in ``status.progress`` and is the only memory the
controller keeps between invocations. Each phase is a frozen dataclass; a
``task_id`` of ``None`` means the step was entered but its remote operation has
not been submitted yet.

VM creation, address discovery and readiness are not phases: a recorded
``status.vmId`` marks the VM as created, and ``status.addresses`` /
``status.ready`` carry the rest.
"""

from dataclasses import dataclass
from typing import Any, Union

from .exceptions import PhaseDecodeError
from .images import (
    copied_path,
    extracted_path,
    final_image_path,
    is_compressed,
)


@dataclass(frozen=True)
class NotStarted:
    """Nothing has been submitted yet."""

    tag = "NotStarted"


@dataclass(frozen=True)
class Downloading:
    """The image download was submitted."""

    task_id: int
    tag = "Downloading"


@dataclass(frozen=True)
class Extracting:
    """The downloaded archive is extracted into the VM storage directory."""

    src: str
    dst: str
    task_id: int | None = None
    tag = "Extracting"


@dataclass(frozen=True)
class Copying:
    """The downloaded image is copied into the VM storage directory."""

    src: str
    dst: str
    task_id: int | None = None
    tag = "Copying"


@dataclass(frozen=True)
class Renaming:
    """The transferred image is moved to its final, VM-named path."""

    src: str
    dst: str
    task_id: int | None = None
    tag = "Renaming"


@dataclass(frozen=True)
class Resizing:
    """The final image is grown to the requested disk size."""

    task_id: int | None = None
    tag = "Resizing"


Phase = Union[NotStarted, Downloading, Extracting, Copying, Renaming, Resizing]
TransferPhase = Union[Extracting, Copying]

_PHASES_BY_TAG: dict[str, type] = {
    cls.tag: cls for cls in (NotStarted, Downloading, Extracting, Copying, Renaming, Resizing)
}


def encode(phase: Phase) -> dict[str, Any]:
    """Encode a phase for ``status.progress``."""
    if isinstance(phase, NotStarted):
        return {}

    data: dict[str, Any] = {"phase": phase.tag}
    if phase.task_id is not None:
        data["taskId"] = phase.task_id
    if isinstance(phase, (Extracting, Copying, Renaming)):
        data["src"] = phase.src
        data["dst"] = phase.dst
    return data


def decode(data: dict[str, Any] | None) -> Phase:
    """Rebuild a phase from ``status.progress``."""
    if not data:
        return NotStarted()

    tag = data.get("phase")
    cls = _PHASES_BY_TAG.get(tag) if isinstance(tag, str) else None
    if cls is None:
        raise PhaseDecodeError(f"unknown phase {tag!r} in progress {data!r}")

    raw_task_id = data.get("taskId")
    try:
        task_id = int(raw_task_id) if raw_task_id is not None else None
    except (TypeError, ValueError) as e:
        raise PhaseDecodeError(f"invalid task id {raw_task_id!r} for {tag}") from e

    if cls is NotStarted:
        return NotStarted()
    if cls is Downloading:
        if task_id is None:
            raise PhaseDecodeError("Downloading progress without a task id")
        return Downloading(task_id=task_id)
    if cls is Resizing:
        return Resizing(task_id=task_id)

    src = data.get("src")
    dst = data.get("dst")
    if not src or not dst:
        raise PhaseDecodeError(f"{tag} progress requires src and dst, got {data!r}")
    return cls(src=src, dst=dst, task_id=task_id)


def with_task(phase: Phase, task_id: int) -> Phase:
    """Record the task id of a submitted step."""
    if isinstance(phase, NotStarted):
        return Downloading(task_id=task_id)
    if isinstance(phase, Resizing):
        return Resizing(task_id=task_id)
    if isinstance(phase, (Extracting, Copying, Renaming)):
        return type(phase)(src=phase.src, dst=phase.dst, task_id=task_id)
    raise ValueError(f"{phase.tag} has no step to submit")


def after_download(filename: str, download_dir: str, storage_dir: str) -> TransferPhase:
    """Phase following a completed download."""
    src = f"{download_dir.rstrip('/')}/{filename}"
    if is_compressed(filename):
        return Extracting(src=src, dst=storage_dir)
    return Copying(src=src, dst=storage_dir)


def after_transfer(
    phase: TransferPhase, filename: str, storage_dir: str, vm_name: str
) -> Renaming | Resizing:
    """Phase following a completed extraction or copy."""
    if isinstance(phase, Extracting):
        output = extracted_path(storage_dir, filename)
    else:
        output = copied_path(storage_dir, filename)

    final = final_image_path(storage_dir, vm_name, filename)
    if output != final:
        return Renaming(src=output, dst=final)
    return Resizing()


def after_rename() -> Resizing:
    """Phase following a completed rename."""
    return Resizing()
