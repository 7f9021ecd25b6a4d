#!/usr/bin/env python3
"""
sessionbox Admin CLI - operator tooling for session containers.

Usage:
  python scripts/admin_cli.py containers     # Managed containers
  python scripts/admin_cli.py cleanup        # Remove every managed container
  python scripts/admin_cli.py image          # Ensure the base image exists

Features:
  - Lists containers found by session label or name prefix
  - Bulk cleanup of orphaned containers after a crash or forced exit
  - Builds the base image on demand and shows the build log tail on failure
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional

# Add the project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Load .env file if it exists
from dotenv import load_dotenv
load_dotenv(Path(__file__).parent.parent / ".env")

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.prompt import Confirm
from rich import box

from sessionbox.config import settings
from sessionbox.models.container import CleanupOptions, ContainerStatus
from sessionbox.models.errors import EngineUnavailableError
from sessionbox.services.container import (
    ContainerManager,
    DockerClientFactory,
    ImageProvisioner,
    format_bytes,
)
from sessionbox.utils.logging import setup_logging

console = Console()

BUILD_LOG_TAIL = 20


# ============================================================================
# Service Initialization
# ============================================================================

def get_docker_client():
    """Get a Docker client or exit with a readable error."""
    try:
        return DockerClientFactory().get_client()
    except EngineUnavailableError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        console.print("\nEnsure Docker is running and accessible.")
        sys.exit(1)


def get_container_manager() -> ContainerManager:
    return ContainerManager(get_docker_client(), settings.docker)


# ============================================================================
# Formatting Helpers
# ============================================================================

STATUS_STYLES = {
    ContainerStatus.RUNNING: "green",
    ContainerStatus.CREATED: "cyan",
    ContainerStatus.STOPPED: "yellow",
    ContainerStatus.ERROR: "red",
}


def format_status(status: ContainerStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def parse_build_args(values: Optional[List[str]]) -> Optional[Dict[str, str]]:
    """Parse repeated ``KEY=VALUE`` options."""
    if not values:
        return None
    build_args = {}
    for value in values:
        key, sep, val = value.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"Invalid build arg (expected KEY=VALUE): {value}")
        build_args[key] = val
    return build_args


# ============================================================================
# CLI Commands
# ============================================================================

async def cmd_containers(args):
    """List managed containers."""
    manager = get_container_manager()
    records = await manager.list_managed_containers()

    if not records:
        console.print("[yellow]No managed containers found[/yellow]")
        return

    table = Table(title="Managed Containers", box=box.ROUNDED)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Session", style="dim")
    table.add_column("Status")
    table.add_column("Created")
    table.add_column("Ports")

    for record in sorted(records, key=lambda r: r.created_at):
        ports = ", ".join(
            f"{p.host}->{p.container}/{p.protocol}" for p in record.ports
        ) or "-"
        table.add_row(
            record.short_id,
            record.name,
            record.session_id or "-",
            format_status(record.status),
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            ports,
        )

    console.print()
    console.print(table)
    console.print()


async def cmd_cleanup(args):
    """Stop and remove every managed container."""
    manager = get_container_manager()
    records = await manager.list_managed_containers()
    if not records:
        console.print("[green]Nothing to clean up[/green]")
        return

    if not args.yes:
        if not Confirm.ask(f"Remove {len(records)} managed container(s)?", default=False):
            console.print("[yellow]Cancelled[/yellow]")
            return

    result = await manager.cleanup_all_by_session_label(
        CleanupOptions(
            force=args.force,
            remove_volumes=args.volumes,
            timeout=settings.container_stop_timeout,
        )
    )

    lines = [f"[cyan]Removed:[/cyan] {len(result.containers_removed)}"]
    for container_id in result.containers_removed:
        lines.append(f"  [dim]{container_id[:12]}[/dim]")
    if result.errors:
        lines.append(f"\n[red]Errors:[/red] {len(result.errors)}")
        lines.extend(f"  {error}" for error in result.errors)
        lines.append("\n[yellow]Manual cleanup may be required: docker container prune[/yellow]")

    console.print()
    console.print(Panel(
        "\n".join(lines),
        title="[bold]Cleanup Summary[/bold]",
        border_style="green" if result.success else "red",
    ))
    if not result.success:
        sys.exit(1)


async def cmd_image(args):
    """Ensure the base image exists, building it if necessary."""
    provisioner = ImageProvisioner(get_docker_client(), settings.docker)

    if args.info:
        info = await provisioner.engine_info()
        if info:
            console.print(
                f"[cyan]Engine:[/cyan] Docker {info.get('ServerVersion', 'unknown')} "
                f"({info.get('OperatingSystem', 'unknown')}), "
                f"{info.get('Containers', 0)} containers"
            )

    if args.rebuild:
        build = await provisioner.build(parse_build_args(args.build_arg))
        logs = build.build_logs
        result = await provisioner.inspect() if build.success else None
        error = build.error
    else:
        result, logs = await provisioner.ensure_with_logs()
        error = result.error

    if result is None or not result.exists:
        tail = "\n".join(logs[-BUILD_LOG_TAIL:]) or "(no build output)"
        console.print(Panel(
            f"[bold red]Image not available:[/bold red] {error}\n\n[dim]{tail}[/dim]",
            title=f"[bold]{provisioner.image_name}[/bold]",
            border_style="red",
        ))
        sys.exit(1)

    image = result.image_info
    console.print(Panel(
        f"[bold green]Image ready[/bold green]\n\n"
        f"[cyan]ID:[/cyan]      {image.id[:12] if image else '-'}\n"
        f"[cyan]Tags:[/cyan]    {', '.join(image.tags) if image else '-'}\n"
        f"[cyan]Size:[/cyan]    {format_bytes(image.size) if image else '-'}\n"
        f"[cyan]Created:[/cyan] {image.created if image else '-'}",
        title=f"[bold]{provisioner.image_name}[/bold]",
        border_style="green",
    ))


def main():
    parser = argparse.ArgumentParser(
        description="sessionbox Admin CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s containers                # List managed containers
  %(prog)s cleanup                   # Stop and remove them (asks first)
  %(prog)s cleanup -y --force        # Remove without stopping gracefully
  %(prog)s image                     # Build the base image if missing
  %(prog)s image --rebuild --build-arg NODE_VERSION=20
"""
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # containers
    subparsers.add_parser("containers", help="List managed containers")

    # cleanup
    cleanup_p = subparsers.add_parser("cleanup", help="Remove every managed container")
    cleanup_p.add_argument("-y", "--yes", action="store_true", help="Skip confirmation")
    cleanup_p.add_argument("-f", "--force", action="store_true", help="Remove even if stop fails")
    cleanup_p.add_argument("--volumes", action="store_true", help="Also remove anonymous volumes")

    # image
    image_p = subparsers.add_parser("image", help="Ensure the base image exists")
    image_p.add_argument("--rebuild", action="store_true", help="Build even if the image exists")
    image_p.add_argument("--build-arg", action="append", metavar="KEY=VALUE", help="Build argument")
    image_p.add_argument("--info", action="store_true", help="Show engine information")

    args = parser.parse_args()

    setup_logging(settings.logging)

    handlers = {
        "containers": cmd_containers,
        "cleanup": cmd_cleanup,
        "image": cmd_image,
    }

    try:
        asyncio.run(handlers[args.command](args))
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(0)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))


if __name__ == "__main__":
    main()
