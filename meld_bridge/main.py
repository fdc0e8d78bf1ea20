"""
main.py — meld-bridge application entrypoint.

Bootstraps:
  1. Config loading
  2. Descriptor store (the in-process host)
  3. Meld instance (Transport → WebChannel → session mirror)
  4. TouchOSC/OSC bridge
  5. FastAPI server (uvicorn)

CLI:
  python run.py start              start the bridge
  python run.py init-config        create a default config.yaml
  python run.py check              test Meld connectivity
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table
from rich.logging import RichHandler

from meld_bridge import __version__
from meld_bridge.config import MeldSettings, get_settings, reload_settings
from meld_bridge.core import ConnectionStatus, init_meld_instance, build_meld_instance
from meld_bridge.host import DescriptorStore
from meld_bridge.osc import OSCBridge
from meld_bridge.api import create_app, set_managers

console = Console()
app = typer.Typer(name="meld-bridge", help="Meld Studio WebChannel bridge — actions, feedbacks and presets")


def setup_logging(level: str = "info") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


async def build_and_run(config_path: Optional[Path] = None) -> None:
    settings = reload_settings(config_path)
    setup_logging(settings.api.log_level)
    log = logging.getLogger("meld_bridge")

    console.rule(f"[bold blue]meld-bridge v{__version__}[/bold blue]")

    # 1. Host + Meld instance (connection runs in the background, reconnecting)
    store = DescriptorStore()
    instance = init_meld_instance(store, settings.meld)
    instance.start()

    # 2. OSC bridge
    osc_bridge: Optional[OSCBridge] = None
    if settings.osc.enabled:
        osc_bridge = OSCBridge(
            listen_host=settings.osc.listen_host,
            listen_port=settings.osc.listen_port,
            reply_port=settings.osc.reply_port,
            client_host=settings.osc.client_host,
            instance=instance,
            store=store,
        )
        await osc_bridge.start()

    # 3. Wire managers into API
    set_managers(store, osc_bridge)

    # 4. Startup summary
    console.print(f"\n[green]✓ Meld[/green]      {instance.endpoint.url} (root object '{settings.meld.root_object}')")
    if osc_bridge:
        console.print(f"[green]✓ OSC[/green]       UDP :{settings.osc.listen_port} → reply :{settings.osc.reply_port}")

    loop = asyncio.get_running_loop()
    stopped = asyncio.Event()
    server: Optional[uvicorn.Server] = None

    def shutdown():
        log.info("Shutdown signal received.")
        if server is not None:
            server.should_exit = True
        stopped.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown)
        except NotImplementedError:
            pass  # Windows

    try:
        if settings.api.enabled:
            console.print(f"[green]✓ API[/green]       http://{settings.api.host}:{settings.api.port}")
            console.print(f"[green]✓ WS[/green]        ws://{settings.api.host}:{settings.api.port}/ws")
            if settings.api.api_key:
                console.print(f"[green]✓ Auth[/green]      API key set — Bearer token required")
                console.print(f"[dim]            WS auth: ws://host:{settings.api.port}/ws?token=YOUR_KEY[/dim]")
            else:
                console.print(f"[yellow]⚠ Auth[/yellow]      No API key set — open access (fine for LAN, not internet)")
            console.print(f"[green]✓ Docs[/green]      http://{settings.api.host}:{settings.api.port}/docs\n")

            config = uvicorn.Config(
                create_app(),
                host=settings.api.host,
                port=settings.api.port,
                log_level=settings.api.log_level,
                loop="asyncio",
            )
            server = uvicorn.Server(config)
            await server.serve()
        else:
            console.print("[yellow]⚠ API[/yellow]       disabled\n")
            await stopped.wait()
    finally:
        if osc_bridge:
            await osc_bridge.stop()
        await instance.aclose()


# ──────────────────────────────────────────────────────────────────────────────
# CLI commands
# ──────────────────────────────────────────────────────────────────────────────

@app.command()
def start(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    host: Optional[str] = typer.Option(None, "--host", help="API bind host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="API port"),
    meld_host: Optional[str] = typer.Option(None, "--meld-host", help="Meld Studio host"),
    meld_port: Optional[int] = typer.Option(None, "--meld-port", help="Meld WebChannel port"),
):
    """Start the meld-bridge server."""
    import os
    if host:
        os.environ["API_HOST"] = host
    if port:
        os.environ["API_PORT"] = str(port)
    if meld_host:
        os.environ["MELD_HOST"] = meld_host
    if meld_port:
        os.environ["MELD_PORT"] = str(meld_port)
    asyncio.run(build_and_run(config))


@app.command("init-config")
def init_config(
    output: Path = typer.Option(Path("config.yaml"), "--output", "-o"),
):
    """Generate a default config.yaml."""
    from meld_bridge.config import Settings
    s = Settings.load()
    s.to_yaml(output)
    console.print(f"[green]✓[/green] Config written to [bold]{output}[/bold]")


@app.command("check")
def check_meld(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(13376, "--port"),
    timeout: float = typer.Option(8.0, "--timeout", help="Seconds to wait for the handshake"),
):
    """Test Meld Studio WebChannel connectivity."""
    setup_logging(get_settings().api.log_level)

    async def _check() -> bool:
        store = DescriptorStore()
        ready = asyncio.Event()

        def on_event(event, payload):
            if event == "status" and payload["status"] == ConnectionStatus.OK.value:
                ready.set()

        store.subscribe(on_event)
        settings = MeldSettings(host=host, port=port, max_reconnect_attempts=1)
        instance = build_meld_instance(store, settings)
        instance.start()
        try:
            await asyncio.wait_for(ready.wait(), timeout)
        except asyncio.TimeoutError:
            reason = instance.status_reason or instance.status.value
            console.print(f"[red]✗ Could not reach Meld at {host}:{port}[/red] ({reason})")
            await instance.aclose()
            return False

        root = instance.root
        console.print(f"[green]✓ Connected to Meld[/green] at {instance.endpoint.url}")
        console.print(f"  Objects:    {', '.join(sorted(instance.channel.objects))}")
        console.print(f"  Methods:    {', '.join(sorted(root.method_names))}")
        console.print(f"  Properties: {', '.join(sorted(root.property_names))}")

        state = instance.state
        table = Table(title=f"Scenes ({len(state.scenes)})", show_header=True)
        table.add_column("ID", style="cyan")
        table.add_column("Name", style="green")
        table.add_column("Live", style="red")
        for scene in state.scenes:
            table.add_row(scene.id, scene.name, "●" if scene.id == state.current_scene_id else "")
        console.print(table)
        console.print(f"  Recording: {'ON' if state.is_recording else 'OFF'}   Streaming: {'ON' if state.is_streaming else 'OFF'}")
        await instance.aclose()
        return True

    if not asyncio.run(_check()):
        sys.exit(1)


if __name__ == "__main__":
    app()
