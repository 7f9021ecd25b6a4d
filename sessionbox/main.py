"""sessionbox entry point.

Provisions the session container, opens the terminal server, and then
hands control to the shutdown coordinator until a signal or fatal error
decides the exit code.
"""

import argparse
import asyncio
import getpass
import os
import sys
from dataclasses import dataclass, field
from typing import List, Optional

import structlog
from rich.console import Console

from .config import Settings, settings
from .core.context import AppContext
from .models.cleanup import ResourceKind
from .models.container import ContainerConfig, PortMapping
from .models.errors import (
    ContainerCreateError,
    ContainerStartError,
    ImageBuildError,
    SessionboxException,
)
from .models.session import Session, SessionStatus
from .services.cleanup import container_resource, server_resource
from .services.container.exec import ExecSessionManager
from .services.container.image import ImageProvisioner
from .services.container.manager import (
    ContainerManager,
    container_environment,
    generate_session_id,
)
from .services.container.utils import short_id
from .services.reaper import SessionExpiryReaper
from .services.session_store import SessionExpirySweeper
from .services.terminal import TerminalServer
from .utils.logging import setup_logging

logger = structlog.get_logger(__name__)
console = Console(stderr=True)


@dataclass
class ProvisionedSession:
    session_id: str
    container_id: str
    container_name: str
    container_manager: ContainerManager
    exec_manager: ExecSessionManager
    ports: List[PortMapping] = field(default_factory=list)


async def provision(
    ctx: AppContext, workspace_dir: str, session_id: Optional[str] = None
) -> ProvisionedSession:
    """Ensure the image, run the session container and bind an exec manager.

    Raises:
        EngineUnavailableError: Docker is not reachable
        ImageBuildError: The base image is missing and could not be built
        ContainerCreateError: The container could not be created
        ContainerStartError: The container could not be started (it was rolled back)
    """
    docker_config = ctx.settings.docker
    client = ctx.docker_factory.get_client()

    provisioner = ImageProvisioner(client, docker_config)
    image_result, build_logs = await provisioner.ensure_with_logs()
    if not image_result.exists:
        raise ImageBuildError(
            docker_config.base_image_name,
            image_result.error or "image not available",
            build_logs,
        )

    manager = ContainerManager(client, docker_config)
    session_id = session_id or generate_session_id(docker_config.container_name_prefix)
    environment = container_environment(
        session_id,
        docker_config.container_workspace_path,
        ctx.settings.workspace_api_key,
    )
    run_result = await manager.run(
        ContainerConfig(
            session_id=session_id,
            workspace_dir=os.path.abspath(workspace_dir),
            image=docker_config.base_image_name,
            environment=environment,
        )
    )
    if not run_result.success:
        if run_result.step == "create" or not run_result.container_id:
            raise ContainerCreateError(session_id, run_result.error or "unknown error")
        raise ContainerStartError(run_result.container_id, run_result.error or "unknown error")

    container_id = run_result.container_id
    ctx.registry.register(container_resource(manager, container_id, session_id))

    exec_manager = ExecSessionManager(
        client,
        container_id,
        ctx.event_bus,
        default_working_dir=docker_config.container_workspace_path,
    )
    return ProvisionedSession(
        session_id=session_id,
        container_id=container_id,
        container_name=manager.container_name(session_id),
        container_manager=manager,
        exec_manager=exec_manager,
        ports=run_result.ports,
    )


async def start_services(ctx: AppContext, provisioned: ProvisionedSession) -> TerminalServer:
    """Record the session, open the terminal server and start the expiry loops."""
    lifecycle = ctx.settings.lifecycle
    api = ctx.settings.api

    await ctx.session_store.create_session(
        Session(
            id=provisioned.session_id,
            user_id=getpass.getuser(),
            status=SessionStatus.RUNNING,
            container_id=provisioned.container_id,
            container_name=provisioned.container_name,
        )
    )

    server = TerminalServer(
        provisioned.exec_manager,
        ctx.event_bus,
        host=api.api_host,
        port=api.api_port,
        shell=api.terminal_shell,
        working_dir=ctx.settings.docker.container_workspace_path,
        session_store=ctx.session_store,
        session_id=provisioned.session_id,
        touch_interval=lifecycle.session_touch_interval_seconds,
    )
    await server.start()
    ctx.registry.register(server_resource("terminal", server))

    reaper = SessionExpiryReaper(
        ctx.session_store,
        provisioned.container_manager,
        ctx.event_bus,
        interval_seconds=lifecycle.reaper_interval_seconds,
        batch_size=lifecycle.reaper_batch_size,
        max_retries=lifecycle.reaper_max_retries,
    )
    await reaper.start()
    ctx.registry.register(
        server_resource("session-reaper", reaper, description="Session expiry reaper")
    )

    sweeper = SessionExpirySweeper(
        ctx.session_store, interval_seconds=lifecycle.session_sweep_interval_seconds
    )
    await sweeper.start()
    ctx.registry.register(
        server_resource("session-sweeper", sweeper, description="Session expiry sweeper")
    )
    return server


async def run(app_settings: Settings, workspace_dir: str, session_id: Optional[str] = None) -> int:
    """Run until shutdown and return the process exit code."""
    ctx = AppContext.create(app_settings)
    ctx.coordinator.install()

    try:
        provisioned = await provision(ctx, workspace_dir, session_id)
        server = await start_services(ctx, provisioned)
        logger.info(
            "Session ready",
            session_id=provisioned.session_id,
            container_id=short_id(provisioned.container_id),
            ports={f"{p.container}/{p.protocol}": p.host for p in provisioned.ports},
            terminal=f"ws://{app_settings.api_host}:{server.port}/ws/terminal",
            containers=len(
                [r for r in ctx.registry.resources() if r.kind == ResourceKind.CONTAINER]
            ),
        )
    except SessionboxException as e:
        console.print(f"[red]{e.user_message()}[/red]")
        ctx.coordinator.handle_critical_error("startup", e)
    except Exception as e:
        logger.exception("Startup failed")
        ctx.coordinator.handle_critical_error("startup", e)

    exit_code = await ctx.coordinator.wait()
    ctx.coordinator.remove()
    await ctx.close()
    return exit_code


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a sandboxed session container with a websocket terminal"
    )
    parser.add_argument(
        "--workspace",
        default=os.getcwd(),
        help="Directory mounted read-only into the container (default: cwd)",
    )
    parser.add_argument("--session-id", help="Reuse a session id instead of generating one")
    parser.add_argument("--host", help="Terminal server bind address")
    parser.add_argument("--port", type=int, help="Terminal server port")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    overrides = {}
    if args.host:
        overrides["api_host"] = args.host
    if args.port:
        overrides["api_port"] = args.port
    app_settings = settings.model_copy(update=overrides) if overrides else settings

    setup_logging(app_settings.logging)

    if not os.path.isdir(args.workspace):
        console.print(f"[red]Workspace directory not found: {args.workspace}[/red]")
        sys.exit(1)

    sys.exit(asyncio.run(run(app_settings, args.workspace, args.session_id)))


if __name__ == "__main__":
    main()
