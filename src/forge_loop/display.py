# display.py
# All terminal output for the forge-loop orchestrator.
#
# This module owns presentation entirely. harness.py never formats strings;
# it calls named functions here. Swap this file to change the entire UI.
#
# Colour language:
#   cyan: routing / pass boundaries
#   blue: model calls and responses
#   yellow: approval prompts and verification
#   green: success
#   red: failures, transport errors, interrupts
#   magenta: dispatch internals (action / outcome)

from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from forge_loop.errors import ForgeError
from forge_loop.models import (
    Action,
    ApprovalLevel,
    Executed,
    Failed,
    ModelContract,
    Observation,
    Outcome,
    Skipped,
    UsageCounter,
    VerifyMode,
    describe_action,
)

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Collaborators backed by the terminal
# ---------------------------------------------------------------------------


def confirm(prompt: str, default: bool = False) -> bool:
    """Default confirmation collaborator. Blocks until the human answers."""
    return Confirm.ask(f"[bold yellow]{prompt}[/bold yellow]", default=default, console=console)


def ask_input() -> str:
    return Prompt.ask("[bold cyan]forge[/bold cyan]", console=console)


# ---------------------------------------------------------------------------
# Session entry
# ---------------------------------------------------------------------------


def banner(model: str, approval: ApprovalLevel, verify: VerifyMode, allow_dangerous: bool) -> None:
    override = "\n[bold red]FORGE_ALLOW_DANGEROUS is set: approval prompts are disabled.[/bold red]" if allow_dangerous else ""
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]forge-loop[/bold cyan]\n"
            "[dim]Model proposals → approval gate → tools → observations[/dim]\n\n"
            f"[dim]Model    :[/dim] [white]{model}[/white]\n"
            f"[dim]Approval :[/dim] [white]{approval.value}[/white]\n"
            f"[dim]Verify   :[/dim] [white]{verify.value}[/white]"
            f"{override}",
            border_style="cyan",
            padding=(1, 4),
        )
    )
    console.print("[dim]Type /exit to quit.[/dim]")


def prompt_received(prompt: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW TURN[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{prompt}[/white]",
            title=_label("USER", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


def calling_model(pass_number: int, max_passes: int):
    """Spinner shown while the model response is pending. Use as a context manager."""
    return console.status(f"[blue]Pass {pass_number}/{max_passes}: waiting for model…[/blue]", spinner="dots")


def raw_response(text: str) -> None:
    console.print()
    console.print(
        Panel(
            Markdown(text) if text.strip() else "[dim](empty response)[/dim]",
            title=_label("MODEL", "blue"),
            border_style="blue",
            padding=(0, 2),
        )
    )


def transport_error(error: ForgeError) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold red]{error.display_message()}[/bold red]\n"
            "[dim]The pass was aborted. Conversation state is unchanged.[/dim]",
            title=_label("MODEL UNAVAILABLE ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


def contract_parsed(contract: ModelContract) -> None:
    console.print()
    body = Text()
    for index, step in enumerate(contract.plan, start=1):
        body.append(f"{index}. ", style="bold cyan")
        body.append(f"{step}\n", style="white")
    if contract.rationale:
        body.append(f"\n{contract.rationale}", style="dim")
    if not body.plain.strip():
        body.append("(no plan)", style="dim")

    console.print(
        Panel(
            body,
            title=_label("PLAN", "cyan"),
            subtitle=f"[dim]{len(contract.actions)} action(s)[/dim]",
            border_style="cyan",
            padding=(0, 2),
        )
    )

    if not contract.actions:
        return

    table = Table(box=box.SIMPLE_HEAVY, border_style="cyan", header_style="bold cyan", padding=(0, 1))
    table.add_column("#", justify="center", width=4)
    table.add_column("Tool", style="bold white", width=16)
    table.add_column("Target", style="dim white")
    for index, action in enumerate(contract.actions, start=1):
        table.add_row(str(index), action.tool, _mono(describe_action(action), 80))
    console.print(table)


def validation_issues(issues: list[Observation]) -> None:
    for issue in issues:
        console.print(f"  [yellow]⚠ {issue.title}[/yellow]  [dim]{_mono(issue.body, 160)}[/dim]")


def model_message(message: str) -> None:
    console.print()
    console.print(Markdown(message))


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def action_start(index: int, total: int, action: Action) -> None:
    console.print()
    console.print(
        f"[bold magenta]  ACTION [{index + 1}/{total}][/bold magenta]  [white]{_mono(describe_action(action))}[/white]"
    )


def action_outcome(outcome: Outcome) -> None:
    if isinstance(outcome, Skipped):
        console.print(f"  [yellow]🚫 Skipped[/yellow]  [dim]{outcome.reason}[/dim]")
    elif isinstance(outcome, Failed):
        message = outcome.error.display_message() if isinstance(outcome.error, ForgeError) else str(outcome.error)
        console.print(f"  [bold red]✗ Failed[/bold red]  [white]{_mono(message, 200)}[/white]")
    elif isinstance(outcome, Executed):
        result = outcome.result
        if outcome.action.tool == "open_file":
            state = "truncated" if result.get("truncated") else "full"
            console.print(f"  [bold green]✓ Read[/bold green]  [dim]{result.get('path')} ({state})[/dim]")
        elif outcome.action.tool == "write_file":
            console.print(f"  [bold green]✓ Wrote[/bold green]  [dim]{result.get('bytes')} bytes[/dim]")
        elif outcome.action.tool == "run":
            output = (result.get("stdout") or result.get("stderr") or "").strip()
            console.print(f"  [bold green]✓ exit 0[/bold green]  [dim]{_mono(output or '(no output)', 200)}[/dim]")
        else:
            detail = result.get("strategy") or result.get("output") or "ok"
            console.print(f"  [bold green]✓ Done[/bold green]  [dim]{_mono(str(detail), 200)}[/dim]")


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def verification_start(mode: VerifyMode) -> None:
    console.print()
    console.print(Rule(f"[yellow]VERIFY ({mode.value})[/yellow]", style="yellow"))


def verification_result(ok: bool, summary: str) -> None:
    color = "green" if ok else "red"
    title = "VERIFY: OK ✓" if ok else "VERIFY: ISSUES ✗"
    console.print(
        Panel(
            Text(_mono(summary, 4000)),
            title=_label(title, color),
            border_style=color,
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Pass / turn boundaries
# ---------------------------------------------------------------------------


def observations_folded(count: int, passes_left: int) -> None:
    console.print()
    if passes_left > 0:
        console.print(
            _label("LOOP", "cyan"),
            f"[cyan] {count} observation(s) fed back to the model ({passes_left} pass(es) left).[/cyan]",
        )
    else:
        console.print(
            _label("LOOP", "cyan"),
            f"[cyan] {count} observation(s) recorded; pass limit reached.[/cyan]",
        )


def interrupted() -> None:
    console.print()
    console.print(
        Panel(
            "[bold white]Interrupted. In-flight work was aborted; "
            "partial edits are left as-is (use git to inspect).[/bold white]",
            title=_label("INTERRUPT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def turn_done(passes: int, usage: UsageCounter) -> None:
    tokens = f" · {usage.total_tokens} tokens this session" if usage.total_tokens else ""
    console.print(f"[dim]  done after {passes} pass(es){tokens}[/dim]")
    console.print()


def error(message: str) -> None:
    console.print(
        Panel(
            f"[bold white]{message}[/bold white]",
            title=_label("ERROR", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
