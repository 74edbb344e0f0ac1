# apps/cli/__init__.py
from __future__ import annotations
import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer

from relay import settings
from relay.catalog import load_catalog
from relay.models import AgentStatus, PipelineState, Stage
from relay.normalize import INPUT_PREVIEW_CHARS, format_bytes, truncate
from relay.pipeline import PipelineRunner


class TerminalPrinter:
    """Echo streamed tokens as they arrive: the architect buffer, then each agent's text."""

    def __init__(self, quiet: bool = False):
        self.quiet = quiet
        self._architect_len = 0
        self._agent_id: Optional[str] = None
        self._agent_len = 0

    def __call__(self, state: PipelineState) -> None:
        if self.quiet:
            return
        if state.stage is Stage.ARCHITECT:
            new = state.architect_buffer[self._architect_len:]
            self._architect_len = len(state.architect_buffer)
            if new:
                typer.echo(new, nl=False)
        elif state.stage is Stage.RUN and state.executions:
            current = state.executions[-1]
            if current.id != self._agent_id:
                self._agent_id, self._agent_len = current.id, 0
                typer.secho(f"\n\n## Step {len(state.executions)}: {current.name}\n", bold=True)
            new = current.text[self._agent_len:]
            self._agent_len = len(current.text)
            if new:
                typer.echo(new, nl=False)


def _build_app() -> typer.Typer:
    app = typer.Typer(help="Agent Relay - plan a team of agents, then run them in sequence")

    @app.callback()
    def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log requests and stage changes")):
        logging.basicConfig(
            level=logging.INFO if verbose else logging.WARNING,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    @app.command("demos")
    def demos_cmd(config: Optional[str] = typer.Option(None, "--config", help="Catalog JSON path")):
        """List the demo problems in the catalog."""
        catalog = load_catalog(config)
        for index, demo in enumerate(catalog.demos):
            typer.echo(f"[{index}] {demo.title} - {demo.body}")
            for entry in demo.inputs:
                typer.echo(f"      · {entry.title} [{entry.type.value}]")

    @app.command("plan-run")
    def plan_run_cmd(
        demo: Optional[int] = typer.Option(None, "--demo", "-d", help="Catalog index of the demo"),
        problem: Optional[str] = typer.Option(None, "--problem", "-p", help="Custom problem statement"),
        note: Optional[str] = typer.Option(None, "--note", help="Inline notes passed to every agent"),
        files: Optional[List[Path]] = typer.Option(
            None, "--file", "-f", exists=True, dir_okay=False, help="Attach a text, CSV or JSON file (repeatable)"
        ),
        model: Optional[str] = typer.Option(None, "--model", help="Chat model name"),
        max_agents: Optional[int] = typer.Option(None, "--max-agents", help="Agent limit (2-6)"),
        config: Optional[str] = typer.Option(None, "--config", help="Catalog JSON path"),
        quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not stream tokens to the terminal"),
    ):
        """Stream the architect plan, then run every planned agent."""
        if demo is None and not problem:
            typer.echo("⚠️ Pass --demo N or --problem TEXT.")
            raise typer.Exit(code=2)

        runner = PipelineRunner(
            load_catalog(config),
            endpoint=settings.endpoint_from_env(),
            model=model,
            max_agents=max_agents,
            timeout=settings.request_timeout(),
        )
        runner.subscribe(TerminalPrinter(quiet=quiet))

        async def _go() -> PipelineState:
            if demo is not None:
                st = await runner.plan_demo(demo)
            else:
                st = await runner.plan_custom(problem or "")
            if st.stage is not Stage.DATA:
                return st
            _print_plan(st)
            for path in files or []:
                entry = runner.add_upload(path.name, path.read_text(encoding="utf-8", errors="replace"),
                                          path.stat().st_size)
                typer.echo(f"  📎 {entry.title} [{entry.type.value}] ({format_bytes(entry.size)})")
            if note:
                runner.set_notes(note)
            return await runner.start_agents()

        try:
            final = asyncio.run(_go())
        except IndexError as e:
            typer.echo(f"⚠️ {e}")
            raise typer.Exit(code=2)

        typer.echo("")
        if final.error:
            _print_summary(final)
            typer.secho(f"⚠️ {final.error}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        _print_summary(final)
        typer.echo("✅ Done.")

    return app


def _print_plan(state: PipelineState) -> None:
    typer.echo("\n")
    typer.secho(f"Plan ({len(state.plan)} agents)", bold=True)
    for index, agent in enumerate(state.plan, start=1):
        typer.echo(f"  {index}. {agent.agent_name} - {agent.initial_task}")
    typer.secho("Inputs", bold=True)
    for entry in state.suggested_inputs:
        typer.echo(f"  · {entry.title} [{entry.type.value}]")
        typer.echo(f"    {truncate(entry.content, INPUT_PREVIEW_CHARS)}")


def _print_summary(state: PipelineState) -> None:
    for index, execution in enumerate(state.executions, start=1):
        mark = {AgentStatus.DONE: "done", AgentStatus.ERROR: "error"}.get(execution.status, "running")
        typer.echo(f"   Step {index} {execution.name}: {mark} ({len(execution.text)} chars)")


# The Typer group we will invoke from __main__
app = _build_app()
