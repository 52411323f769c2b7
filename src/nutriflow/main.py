"""
NutriFlow - CLI Entry Point.

Usage:
    nutriflow onboard         Run the onboarding flow in the terminal
    nutriflow status          Show saved onboarding progress
    nutriflow reset           Discard saved progress
    nutriflow health          Check configuration
    nutriflow serve           Start the API server
    nutriflow --help          Show help
"""

import asyncio
import logging

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

load_dotenv()

app = typer.Typer(
    name="nutriflow",
    help="NutriFlow - conversational onboarding.",
    add_completion=False,
)
console = Console()

COMMANDS_HELP = (
    "[dim]Enter = next  |  /back = previous  |  /voice <words> = answer as if spoken  |  /quit = save and exit[/dim]"
)


def _configure_logging(verbose: bool) -> None:
    from nutriflow.config import settings

    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _render_question(orchestrator) -> None:
    """Print the active section/question with its options and errors."""
    from onboarding.questions import QuestionKind

    machine = orchestrator.active
    section = machine.section
    question = machine.current_question

    console.print(
        f"\n[bold green]{section.title}[/bold green] "
        f"[dim]({orchestrator.section_index + 1}/{len(orchestrator.sections)}, "
        f"question {machine.question_index + 1}/{len(section.questions)})[/dim]"
    )
    console.print(f"[bold]{question.text}[/bold]")

    current = machine.answers.get(question.id)
    if question.kind in (QuestionKind.SINGLE_SELECT, QuestionKind.MULTI_SELECT):
        for option in question.options:
            selected = option.value == current or (isinstance(current, set) and option.value in current)
            marker = "[green]x[/green]" if selected else " "
            console.print(f"  [{marker}] {option.label} [dim]({option.value})[/dim]")
        if question.kind == QuestionKind.MULTI_SELECT:
            console.print("[dim]Comma-separated to replace the selection, or +value / -value to toggle.[/dim]")
    elif question.kind == QuestionKind.FORM:
        for form_field in question.fields:
            value = (current or {}).get(form_field.id)
            shown = f" [cyan]{value}[/cyan]" if value is not None else ""
            console.print(f"  {form_field.label}{shown}")

    for key, message in machine.errors_for(question.id).items():
        console.print(f"[red]  {key}: {message}[/red]")


async def _prompt_input(label: str) -> str:
    """Read a line without blocking the event loop, so autosave keeps ticking."""
    return (await asyncio.to_thread(console.input, label)).strip()


async def _answer_form(orchestrator, text: str) -> None:
    """Prompt every field of a form question, seeded with `text` for the first."""
    question = orchestrator.active.current_question
    values = {}
    for i, form_field in enumerate(question.fields):
        raw = text if i == 0 else await _prompt_input(f"  {form_field.label}: ")
        if raw:
            values[form_field.id] = raw
    if values:
        orchestrator.answer(question.id, values)


async def _handle_input(orchestrator, text: str) -> None:
    from onboarding.questions import QuestionKind
    from onboarding.section_machine import MachineState

    machine = orchestrator.active
    question = machine.current_question

    if machine.state == MachineState.AWAITING_DETAIL and machine.pending_detail:
        orchestrator.detail(machine.pending_detail, text)
        return

    if question.kind == QuestionKind.MULTI_SELECT:
        if text[:1] in "+-" and len(text) > 1:
            orchestrator.toggle(question.id, text[1:].strip())
        else:
            orchestrator.answer(question.id, [part.strip() for part in text.split(",") if part.strip()])
    elif question.kind == QuestionKind.FORM:
        await _answer_form(orchestrator, text)
    else:
        orchestrator.answer(question.id, text)


async def run_session(orchestrator) -> None:
    """
    Interactive loop for one orchestrator.

    Autosave runs on this loop for the whole session; input is read in a
    worker thread so failed saves are retried while the user is typing.
    """
    from onboarding.errors import AnswerValidationError
    from onboarding.orchestrator import FlowStatus
    from onboarding.section_machine import MachineState

    orchestrator.store.start_autosave()
    seen_messages = len(orchestrator.messages)
    try:
        while orchestrator.status == FlowStatus.IN_PROGRESS:
            _render_question(orchestrator)
            machine = orchestrator.active
            if machine.state == MachineState.AWAITING_DETAIL:
                question = machine.section.question(machine.pending_detail)
                console.print(f"[yellow]{question.detail.prompt}[/yellow]")

            text = await _prompt_input("\n[bold blue]You:[/bold blue] ")

            if text.lower() in ("/quit", "/exit", "/q"):
                console.print("\n[dim]Progress saved. Run `nutriflow onboard` to continue.[/dim]")
                break
            if text.lower() == "/back":
                if not orchestrator.previous():
                    console.print("[yellow]Can't go back from here.[/yellow]")
                continue
            if not text:
                orchestrator.next()
                continue

            try:
                if text.lower().startswith("/voice"):
                    result = await orchestrator.handle_transcript(text[len("/voice"):].strip())
                    console.print(f"[dim]voice: {result.outcome.value}[/dim]")
                else:
                    await _handle_input(orchestrator, text)
            except (KeyError, AnswerValidationError) as e:
                console.print(f"[red]{e}[/red]")

            for message in orchestrator.messages[seen_messages:]:
                console.print(f"[bold green]NutriFlow:[/bold green] {message}")
            seen_messages = len(orchestrator.messages)
    finally:
        await orchestrator.aclose()


@app.command()
def onboard(
    user: str = typer.Option("local", "--user", "-u", help="User id for saved progress"),
    log_parses: bool = typer.Option(False, "--log-parses", "-l", help="Log every parsing-gateway call to parse_logs/"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Run the onboarding flow interactively."""
    from nutriflow.observability import SessionLogger
    from nutriflow.observability.parse_logger import enable_parse_logging, get_run_log_dir
    from onboarding.orchestrator import FlowStatus, build_orchestrator

    _configure_logging(verbose)
    if log_parses:
        enable_parse_logging(True)
        console.print("[dim]Parse logging enabled. Check parse_logs/ after the session.[/dim]")

    session_logger = SessionLogger(session_id=f"onboarding_{user}")
    orchestrator = build_orchestrator(user, session_logger=session_logger)
    orchestrator.start()

    console.print(
        Panel.fit(
            "[bold green]NutriFlow[/bold green]\n"
            "Let's set up your profile.\n\n"
            f"{COMMANDS_HELP}",
            title="Welcome",
            border_style="green",
        )
    )

    try:
        asyncio.run(run_session(orchestrator))
    except (KeyboardInterrupt, EOFError):
        console.print("\n\n[dim]Session interrupted. Progress saved.[/dim]")
    finally:
        session_logger.close()

    if orchestrator.status == FlowStatus.COMPLETE:
        console.print("\n[bold green]All done![/bold green] Your responses were saved.")

    if log_parses:
        log_dir = get_run_log_dir()
        if log_dir:
            console.print(f"\n[dim]Parse calls logged to: {log_dir}[/dim]")


@app.command()
def status(
    user: str = typer.Option("local", "--user", "-u", help="User id for saved progress"),
) -> None:
    """Show saved onboarding progress."""
    from onboarding.catalog import get_sections
    from onboarding.progress import build_store

    record = build_store(user).load()
    sections = get_sections()

    table = Table(title=f"Onboarding progress ({user})")
    table.add_column("#", justify="right")
    table.add_column("Section")
    table.add_column("Status")

    for i, section in enumerate(sections):
        if section.id in record.completed_sections:
            label = "[green]complete[/green]"
        elif i == record.current_section_index and not record.flow_complete:
            label = f"[yellow]in progress (question {record.current_question_index + 1})[/yellow]"
        else:
            label = "[dim]pending[/dim]"
        table.add_row(str(i + 1), section.title, label)

    console.print(table)
    console.print(f"Flow complete: {'yes' if record.flow_complete else 'no'}")
    console.print(f"[dim]Last updated: {record.last_updated.isoformat()}[/dim]")


@app.command()
def reset(
    user: str = typer.Option("local", "--user", "-u", help="User id for saved progress"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Discard saved onboarding progress."""
    from onboarding.progress import build_store

    if not yes and not typer.confirm(f"Discard onboarding progress for {user}?"):
        raise typer.Exit(0)

    build_store(user).reset()
    console.print("[green]Progress cleared.[/green]")


@app.command()
def health() -> None:
    """Check system health and configuration."""
    from nutriflow.config import get_settings

    console.print("\n[bold]NutriFlow Health Check[/bold]\n")

    try:
        settings = get_settings()
        console.print("[green]OK[/green] Configuration loaded")
        console.print(f"   Environment: {settings.nutriflow_env}")
        console.print(f"   Log level: {settings.log_level}")
        console.print(f"   Progress backend: {settings.progress_backend}")

        if settings.parsing_backend == "http":
            if settings.parsing_service_url:
                console.print(f"[green]OK[/green] Parsing service: {settings.parsing_service_url}")
            else:
                console.print("[red]FAIL[/red] PARSING_BACKEND=http but PARSING_SERVICE_URL is missing")
        elif settings.llm_enabled:
            console.print(f"[green]OK[/green] OpenAI parsing enabled ({settings.parsing_model})")
        else:
            console.print("[yellow]WARN[/yellow] No OpenAI API key, voice answers use local matching only")

        if settings.transcription_enabled:
            console.print("[green]OK[/green] Transcription service configured")
        else:
            console.print("[yellow]WARN[/yellow] Transcription service not configured, voice capture disabled")

        if settings.progress_backend == "supabase":
            if settings.supabase_url and settings.supabase_url.startswith("https://"):
                console.print("[green]OK[/green] Supabase URL configured")
            else:
                console.print("[red]FAIL[/red] Supabase URL missing or invalid")
                raise typer.Exit(1)

        console.print("\n[green]Checks complete.[/green]")

    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"\n[red]FAIL Configuration error: {e}[/red]")
        console.print("[dim]Make sure you have a .env file with required variables.[/dim]")
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    from nutriflow import __version__

    console.print(f"NutriFlow version {__version__}")


@app.command()
def serve(
    port: int = typer.Option(8000, "--port", "-p", help="Port to run on"),
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable auto-reload for development"),
) -> None:
    """Start the API server."""
    import os

    import uvicorn

    _configure_logging(False)
    actual_port = int(os.environ.get("PORT", port))

    console.print("\n[bold green]NutriFlow API[/bold green]")
    console.print(f"Starting server on http://localhost:{actual_port}")
    console.print("[dim]Press Ctrl+C to stop[/dim]\n")

    uvicorn.run(
        "nutriflow.web:app",
        host="0.0.0.0",
        port=actual_port,
        reload=reload,
    )


if __name__ == "__main__":
    app()
