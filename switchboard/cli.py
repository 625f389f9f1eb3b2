# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Switchboard CLI - serve the API or run workflows from the terminal."""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from switchboard.api.events import describe_delta
from switchboard.config.settings import Settings, configure_logging, load_settings
from switchboard.core.errors import SwitchboardError
from switchboard.framework.checkpointer import create_checkpointer
from switchboard.framework.engine import CompiledGraph, RunOutcome, error_details
from switchboard.models.client import create_chat_model
from switchboard.workflows.registry import build_graphs, get_workflow, list_workflows
from switchboard.workflows.support import chat_input, resume_input

app = typer.Typer(help="Switchboard - chat orchestration workflows")
console = Console()


def _settings(log_level: Optional[str]) -> Settings:
    settings = load_settings()
    configure_logging(log_level or settings.log_level, settings.log_file)
    return settings


def _parse_inputs(pairs: list[str]) -> dict[str, str]:
    inputs = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            console.print(f"[red]Invalid input '{pair}', expected key=value[/red]")
            raise typer.Exit(1)
        inputs[key.strip()] = value
    return inputs


def _print_outcome(outcome: RunOutcome) -> None:
    if outcome.completed:
        console.print(f"[green]Completed[/green] after {outcome.steps} step(s)")
    elif outcome.interrupted and outcome.interrupt is not None:
        console.print(
            f"[yellow]Interrupted[/yellow] at {outcome.interrupt.node}: {outcome.interrupt.reason}"
        )
    else:
        details = error_details(outcome.error) if outcome.error else {}
        console.print(f"[red]Failed[/red] at {outcome.pending_node}: {details.get('error')}")
    console.print(f"[dim]thread: {outcome.thread_id}[/dim]")


async def _stream(
    graph: CompiledGraph, input: dict, thread_id: Optional[str], resume: bool = False
) -> RunOutcome:
    handle = graph.stream(input, thread_id=thread_id, resume=resume)
    async for result in handle:
        content = describe_delta(result.state_delta) or ""
        console.print(
            Panel(
                content,
                title=f"[bold blue]{result.step}. {result.node_name}[/bold blue]",
                expand=False,
            )
        )
    assert handle.outcome is not None
    return handle.outcome


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Host to bind to"),
    port: Optional[int] = typer.Option(None, help="Port to listen on"),
    log_level: Optional[str] = typer.Option(None, help="Logging level"),
):
    """Start the HTTP/WebSocket API server."""
    from switchboard.api.server import SwitchboardServer

    settings = _settings(log_level)
    if host:
        settings.host = host
    if port:
        settings.port = port

    SwitchboardServer(settings=settings).run()


@app.command()
def workflows():
    """List available workflows."""
    table = Table(title="Workflows")
    table.add_column("Name", style="cyan")
    table.add_column("Inputs", style="magenta")
    table.add_column("Streams")
    table.add_column("Description", style="green")

    for spec in list_workflows():
        table.add_row(
            spec.name,
            ", ".join(spec.required_inputs),
            "yes" if spec.streams else "no",
            spec.description,
        )

    console.print(table)


@app.command()
def run(
    name: str = typer.Argument(..., help="Workflow name"),
    inputs: list[str] = typer.Option([], "--input", "-i", help="Input as key=value"),
    thread_id: Optional[str] = typer.Option(None, help="Thread to continue"),
    log_level: Optional[str] = typer.Option(None, help="Logging level"),
):
    """Run a workflow and print each stage."""
    spec = get_workflow(name)
    if spec is None:
        console.print(f"[red]Unknown workflow: {name}[/red]")
        console.print(f"Available workflows: {', '.join(s.name for s in list_workflows())}")
        raise typer.Exit(1)

    settings = _settings(log_level)
    try:
        run_input = spec.make_input(_parse_inputs(inputs))
    except SwitchboardError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    async def main() -> RunOutcome:
        model = create_chat_model(settings)
        try:
            graph = build_graphs(model, create_checkpointer(settings), settings)[name]
            return await _stream(graph, run_input, thread_id)
        finally:
            await model.close()

    outcome = asyncio.run(main())
    _print_outcome(outcome)
    if outcome.failed:
        raise typer.Exit(1)


@app.command()
def chat(
    log_level: Optional[str] = typer.Option("WARNING", help="Logging level"),
):
    """Chat with the customer support workflow."""
    settings = _settings(log_level)

    console.print(
        Panel(
            "[bold blue]Switchboard customer support[/bold blue]\n"
            "Type your messages below. Press Ctrl+D to exit.",
            title="Welcome",
        )
    )

    async def main() -> None:
        model = create_chat_model(settings)
        graph = build_graphs(model, create_checkpointer(settings), settings)["customer-support"]
        thread_id: Optional[str] = None
        try:
            while True:
                try:
                    user_input = console.input("\n[bold cyan]You:[/bold cyan] ")
                except (EOFError, KeyboardInterrupt):
                    console.print("\n[yellow]Goodbye![/yellow]")
                    break
                if not user_input.strip():
                    continue

                outcome = await _stream(graph, chat_input(user_input), thread_id)
                thread_id = outcome.thread_id

                while outcome.interrupted and outcome.interrupt is not None:
                    console.print(f"[yellow]{outcome.interrupt.reason}[/yellow]")
                    if not Confirm.ask("Authorize?", console=console):
                        # Leave the paused thread behind; the next message starts fresh
                        thread_id = None
                        break
                    outcome = await _stream(
                        graph, resume_input(True), thread_id, resume=True
                    )

                if outcome.failed:
                    _print_outcome(outcome)
        finally:
            await model.close()

    asyncio.run(main())


if __name__ == "__main__":
    app()
