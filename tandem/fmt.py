"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)

PREVIEW_CHARS = 100


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


def preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    """First `limit` characters of text, with ... when cut."""
    if len(text) > limit:
        return text[:limit] + "..."
    return text


# -- Round structure ---------------------------------------------------------


def round_header(n: int, max_n: int | None, token_est: int | None = None) -> None:
    title = f"Round {n}" if max_n is None else f"Round {n}/{max_n}"
    if token_est is not None:
        title += f" (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str | None, tool_requests: int) -> None:
    style = "yellow" if finish_reason == "length" else "green"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    if tool_requests:
        text.append(f"  tool_requests={tool_requests}", style=style)
    _console.print(text)


def completion(rounds: int) -> None:
    noun = "round" if rounds == 1 else "rounds"
    _console.print(Text(f"  \u2713 Agent finished: {rounds} {noun}", style="bold green"))


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    if args_json:
        header.append(f"({args_json})", style="dim")
    _console.print(header)


def tool_result(name: str, elapsed: float, result: str) -> None:
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if result:
        _console.print(Text(f"    {preview(result)}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


# -- REPL --------------------------------------------------------------------


def repl_banner() -> None:
    _console.print(Text("Coding agent started. Type 'exit' to quit.", style="dim"))


def thinking() -> None:
    _console.print(Text("Agent: working on it...", style="dim italic"))


def separator() -> None:
    _console.print(Rule(style="dim"))


def goodbye() -> None:
    _console.print(Text("Goodbye!", style="dim"))
