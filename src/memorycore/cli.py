from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

from .assistant import Assistant, open_capabilities
from .chat.session import Message
from .config import Settings, SystemConfig, read_system_config, save_system_config
from .errors import ConfigIncomplete, ConfigMissing
from .graph.service import GraphService
from .logging_config import setup_logging
from .store.kv import SQLiteKeyValueStore
from .store.messages import MessageStore


app = typer.Typer(add_completion=False, help="Memory Core: chat with a model and grow a knowledge graph from saved replies.")
console = Console()

config_app = typer.Typer(add_completion=False, help="Show or change the API / MCP configuration.")
saved_app = typer.Typer(add_completion=False, help="Saved replies.")
graph_app = typer.Typer(add_completion=False, help="Knowledge graph view.")
app.add_typer(config_app, name="config")
app.add_typer(saved_app, name="saved")
app.add_typer(graph_app, name="graph")


DbOption = typer.Option(None, "--db", help="Local key-value DB (defaults to MEMORYCORE_DB_PATH)")


@app.callback()
def main(
    log_level: str | None = typer.Option(None, "--log-level", help="Override MEMORYCORE_LOG_LEVEL"),
):
    setup_logging(log_level)


def _open_kv(db: Path | None) -> SQLiteKeyValueStore:
    return SQLiteKeyValueStore(db or Settings().db_path)


def _notify(title: str, description: str, level: str = "info") -> None:
    style = "red" if level == "error" else "cyan"
    console.print(f"[{title}] {description}", style=style, markup=False)


def _mask(secret: str) -> str:
    if not secret:
        return ""
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}...{secret[-4:]}"


def _config_error(e: Exception) -> None:
    console.print(str(e), style="red", markup=False)
    console.print("Fix: `memorycore config set --api-url ... --api-key ... --model ...`", style="yellow", markup=False)


@config_app.command("show")
def config_show(db: Path | None = DbOption):
    """Print the saved configuration (API key masked)."""
    kv = _open_kv(db)
    try:
        cfg = read_system_config(kv)
    finally:
        kv.close()

    if cfg is None:
        console.print("No configuration saved.", style="yellow")
        raise typer.Exit(code=1)

    table = Table(title="System Configuration")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("mcpAddress", Text(cfg.mcp_address or "(local graph store)"))
    table.add_row("apiUrl", Text(cfg.api_url))
    table.add_row("apiKey", Text(_mask(cfg.api_key)))
    table.add_row("aiModel", Text(cfg.ai_model))
    console.print(table)

    missing = cfg.missing_fields()
    if missing:
        console.print(f"Missing: {', '.join(missing)}", style="yellow")


@config_app.command("set")
def config_set(
    db: Path | None = DbOption,
    mcp_address: str | None = typer.Option(None, "--mcp-address", help="MCP server URL; empty string for the local store"),
    api_url: str | None = typer.Option(None, "--api-url", help="Chat-completions URL"),
    api_key: str | None = typer.Option(None, "--api-key", help="Bearer token"),
    model: str | None = typer.Option(None, "--model", help="Model name"),
):
    """Update configuration fields; unspecified fields keep their value."""
    kv = _open_kv(db)
    try:
        cur = read_system_config(kv) or SystemConfig()
        cfg = SystemConfig(
            mcp_address=cur.mcp_address if mcp_address is None else mcp_address,
            api_url=cur.api_url if api_url is None else api_url,
            api_key=cur.api_key if api_key is None else api_key,
            ai_model=cur.ai_model if model is None else model,
        )
        save_system_config(kv, cfg)
    finally:
        kv.close()
    console.print("Configuration saved.", style="green")


def _printer():
    printed = 0

    def on_update(msg: Message) -> None:
        nonlocal printed
        if len(msg.content) < printed:
            # Content was replaced (failure apology).
            console.print()
            printed = 0
        console.print(msg.content[printed:], end="", markup=False, highlight=False)
        printed = len(msg.content)

    return on_update


async def _ask(db: Path | None, question: str) -> None:
    settings = Settings()
    kv = _open_kv(db)
    try:
        cfg = read_system_config(kv)
        async with open_capabilities(settings, cfg.mcp_address if cfg else None) as registry:
            assistant = Assistant(kv=kv, registry=registry, settings=settings, notify=_notify)
            await assistant.send_message(question, on_update=_printer())
            console.print()
            await assistant.tasks.wait_idle()
    finally:
        kv.close()


@app.command()
def ask(
    question: str = typer.Argument(...),
    db: Path | None = DbOption,
):
    """Send one message and stream the reply."""
    try:
        asyncio.run(_ask(db, question))
    except (ConfigMissing, ConfigIncomplete) as e:
        _config_error(e)
        raise typer.Exit(code=2)


CHAT_HELP = "Commands: /save (save last reply), /graph (show graph), /saved (list saved), /quit"


async def _chat(db: Path | None) -> None:
    settings = Settings()
    kv = _open_kv(db)
    try:
        cfg = read_system_config(kv)
        async with open_capabilities(settings, cfg.mcp_address if cfg else None) as registry:
            assistant = Assistant(kv=kv, registry=registry, settings=settings, notify=_notify)
            console.print(CHAT_HELP, style="dim")
            while True:
                line = (await asyncio.to_thread(console.input, "[bold]> [/bold]")).strip()
                if not line:
                    continue
                if line in {"/quit", "/exit"}:
                    break
                if line == "/save":
                    reply = assistant.last_reply()
                    if reply is None:
                        console.print("Nothing to save yet.", style="yellow")
                    else:
                        assistant.save_message(reply.id)
                    continue
                if line == "/graph":
                    await assistant.graph.refresh()
                    _print_graph(assistant.graph)
                    continue
                if line == "/saved":
                    _print_saved(assistant.store)
                    continue

                try:
                    await assistant.send_message(line, on_update=_printer())
                except (ConfigMissing, ConfigIncomplete) as e:
                    _config_error(e)
                    continue
                console.print()

            if assistant.tasks.pending:
                console.print("Waiting for background extraction to finish...", style="dim")
                await assistant.tasks.wait_idle()
    finally:
        kv.close()


@app.command()
def chat(db: Path | None = DbOption):
    """Interactive streaming chat."""
    try:
        asyncio.run(_chat(db))
    except (KeyboardInterrupt, EOFError):
        console.print()


def _print_saved(store: MessageStore) -> None:
    table = Table(title="Saved Replies")
    table.add_column("#", justify="right", width=4)
    table.add_column("saved at")
    table.add_column("preview")
    for i, m in enumerate(store.list()):
        preview = " ".join(m.content.split())
        if len(preview) > 120:
            preview = preview[:120].rstrip() + "..."
        table.add_row(Text(str(i)), Text(m.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S")), Text(preview))
    console.print(table)


@saved_app.command("list")
def saved_list(db: Path | None = DbOption):
    """List saved replies."""
    kv = _open_kv(db)
    try:
        _print_saved(MessageStore(kv))
    finally:
        kv.close()


@saved_app.command("remove")
def saved_remove(
    index: int = typer.Argument(..., help="Index as shown by `saved list`"),
    db: Path | None = DbOption,
):
    """Delete one saved reply."""
    kv = _open_kv(db)
    try:
        try:
            MessageStore(kv).remove(index)
        except IndexError as e:
            console.print(str(e), style="red")
            raise typer.Exit(code=2)
    finally:
        kv.close()
    console.print(f"Removed saved reply {index}.", style="green")


async def _extract_saved(db: Path | None, index: int) -> None:
    settings = Settings()
    kv = _open_kv(db)
    try:
        cfg = read_system_config(kv)
        async with open_capabilities(settings, cfg.mcp_address if cfg else None) as registry:
            assistant = Assistant(kv=kv, registry=registry, settings=settings, notify=_notify)
            assistant.extract_saved(index)
            await assistant.tasks.wait_idle()
            if assistant.graph.refresh_count:
                _print_graph(assistant.graph)
    finally:
        kv.close()


@saved_app.command("extract")
def saved_extract(
    index: int = typer.Argument(..., help="Index as shown by `saved list`"),
    db: Path | None = DbOption,
):
    """Extract entities/relations from a saved reply into the graph."""
    try:
        asyncio.run(_extract_saved(db, index))
    except IndexError:
        console.print(f"No saved message at index {index}", style="red")
        raise typer.Exit(code=2)


def _print_graph(graph: GraphService) -> None:
    if graph.error:
        console.print(graph.error, style="red", markup=False)
    view = graph.view

    nodes = Table(title=f"Entities ({len(view.nodes)})")
    nodes.add_column("name")
    nodes.add_column("type")
    nodes.add_column("observations")
    for n in view.nodes:
        nodes.add_row(Text(n.label, style=n.color), Text(n.type), Text("; ".join(n.properties.get("observations", []))))
    console.print(nodes)

    edges = Table(title=f"Relations ({len(view.edges)})")
    edges.add_column("id", width=5)
    edges.add_column("from")
    edges.add_column("relation")
    edges.add_column("to")
    for e in view.edges:
        edges.add_row(
            Text(e.id),
            Text(view.display_name(e.from_)),
            Text(e.label, style=e.color),
            Text(view.display_name(e.to)),
        )
    console.print(edges)


async def _graph_show(db: Path | None) -> bool:
    settings = Settings()
    kv = _open_kv(db)
    try:
        cfg = read_system_config(kv)
        async with open_capabilities(settings, cfg.mcp_address if cfg else None) as registry:
            graph = GraphService(registry)
            await graph.refresh()
            _print_graph(graph)
            return graph.error is None
    finally:
        kv.close()


@graph_app.command("show")
def graph_show(db: Path | None = DbOption):
    """Read the graph store and print its entities and relations."""
    if not asyncio.run(_graph_show(db)):
        raise typer.Exit(code=1)


REQUIRED_TOOLS = ["read_graph", "create_entities", "create_relations"]
OPTIONAL_CAPABILITIES = ["update_user_preference", "user_preference_extract_prompt"]


async def _doctor(db: Path | None) -> bool:
    settings = Settings()
    ok = True
    kv = _open_kv(db)
    try:
        console.print("Configuration:")
        cfg = read_system_config(kv)
        if cfg is None:
            console.print("- Not configured.", style="red")
            console.print("  Fix: `memorycore config set --api-url ... --api-key ... --model ...`", style="yellow")
            ok = False
        elif cfg.missing_fields():
            console.print(f"- Missing: {', '.join(cfg.missing_fields())}", style="red")
            ok = False
        else:
            console.print(f"- API OK: {cfg.api_url} (model {cfg.ai_model})", style="green")

        console.print("\nCapabilities:")
        address = cfg.mcp_address if cfg else None
        try:
            async with open_capabilities(settings, address) as registry:
                where = address or f"local store {settings.graph_db_path}"
                console.print(f"- Connected to {where} ({len(registry.tool_names)} tool(s))", style="green")
                for name in REQUIRED_TOOLS:
                    if registry.tool(name) is None:
                        console.print(f"- Missing tool: {name}", style="red")
                        ok = False
                for name in OPTIONAL_CAPABILITIES:
                    if registry.tool(name) is None and registry.prompt(name) is None:
                        console.print(f"- Optional capability absent: {name} (preference extraction disabled)", style="yellow")
        except Exception as e:
            console.print(f"- Not reachable at {address}: {e}", style="red")
            ok = False
    finally:
        kv.close()
    return ok


@app.command()
def doctor(db: Path | None = DbOption):
    """Check configuration and capability provider, and print actionable fixes."""
    if not asyncio.run(_doctor(db)):
        raise typer.Exit(code=1)


@app.command()
def serve(
    db: Path | None = DbOption,
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
):
    """Run the JSON/streaming web API (FastAPI)."""
    try:
        import uvicorn
    except Exception:
        console.print("Missing web dependencies. Install: `pip install -e '.[web]'`", style="red")
        raise typer.Exit(code=2)

    from .web.server import create_app

    app_ = create_app(db_path=str(db) if db else None)
    uvicorn.run(app_, host=host, port=int(port))


if __name__ == "__main__":
    app()
