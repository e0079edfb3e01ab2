"""Command-line interface for the Freebox machine controller."""

import structlog
import typer
from rich.console import Console
from rich.table import Table

from .config import Settings, get_settings
from .controller import Controller
from .exceptions import PhaseDecodeError
from .freebox_client import FreeboxClient
from .images import resolve_storage_layout
from .kubernetes_client import KubernetesClient
from .logging_config import configure_logging
from .phase import decode
from .reconciler import ClusterReconciler, MachineReconciler

app = typer.Typer(
    name="freebox-machine-controller",
    help="Cluster API infrastructure controller for Freebox VMs",
    add_completion=False,
)
console = Console()
logger = structlog.get_logger()


def _setup() -> Settings:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    return settings


def _machine_reconciler(settings: Settings, k8s: KubernetesClient) -> MachineReconciler:
    freebox = FreeboxClient(settings)
    storage = resolve_storage_layout(settings, freebox)
    return MachineReconciler(settings, k8s, freebox, storage)


@app.command()
def run() -> None:
    """Watch FreeboxMachines and FreeboxClusters and reconcile them."""
    settings = _setup()
    try:
        k8s = KubernetesClient(settings)
        controller = Controller(
            settings,
            _machine_reconciler(settings, k8s),
            ClusterReconciler(settings, k8s),
        )
    except Exception as e:
        logger.exception("Controller startup failed", error=str(e))
        raise typer.Exit(1) from e

    controller.run()


@app.command()
def reconcile(
    namespace: str = typer.Argument(..., help="Namespace of the FreeboxMachine"),
    name: str = typer.Argument(..., help="Name of the FreeboxMachine"),
) -> None:
    """Run a single reconcile of one FreeboxMachine and print the outcome."""
    settings = _setup()
    try:
        k8s = KubernetesClient(settings)
        reconciler = _machine_reconciler(settings, k8s)
    except Exception as e:
        console.print(f"❌ Failed to initialize: {e}")
        raise typer.Exit(1) from e

    result = reconciler.reconcile(namespace, name)
    if result.is_failed:
        console.print(f"❌ {namespace}/{name}: {result.describe()}")
        raise typer.Exit(1)
    console.print(f"✅ {namespace}/{name}: {result.describe()}")


@app.command()
def machines(
    namespace: str = typer.Option("", help="Namespace to list, empty for all"),
) -> None:
    """List FreeboxMachines with their provisioning state."""
    settings = _setup()
    try:
        k8s = KubernetesClient(settings)
        items = k8s.list_machines(namespace)
    except Exception as e:
        console.print(f"❌ Failed to list FreeboxMachines: {e}")
        raise typer.Exit(1) from e

    table = Table(title="FreeboxMachines")
    table.add_column("Namespace", style="cyan")
    table.add_column("Name", style="cyan")
    table.add_column("Phase", style="yellow")
    table.add_column("VM ID", style="blue")
    table.add_column("Addresses", style="green")
    table.add_column("Ready", style="green")

    for machine in items:
        try:
            phase = decode(machine.status.progress).tag
        except PhaseDecodeError:
            phase = "invalid"
        if machine.status.vm_id is not None:
            phase = "VMCreated"
        table.add_row(
            machine.namespace,
            machine.name,
            phase,
            str(machine.status.vm_id) if machine.status.vm_id is not None else "-",
            ", ".join(a.address for a in machine.status.addresses) or "-",
            "✅" if machine.is_ready else "❌",
        )

    console.print(table)


if __name__ == "__main__":
    app()
