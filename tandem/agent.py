import argparse
import os
import platform
import sys
from datetime import datetime
from importlib import metadata
from pathlib import Path

from . import fmt
from .config import (
    _POSITIVE_INT_KEYS,
    _UNSET,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
)
from .loop import OrchestrationLoop
from .model import PROVIDERS, ModelClient
from .report import AgentError, ConfigError, ReportCollector
from .tools import ToolRegistry, default_registry

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
EXIT_COMMAND = "exit"


def build_system_prompt(
    registry: ToolRegistry, base_dir: str = ".", system_prompt: str | None = None
) -> str:
    """Prompt template (or an override) plus the tool list and the local environment."""
    if system_prompt:
        content = system_prompt
    else:
        content = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").rstrip()

    tool_lines = "\n".join(f"- {s.name}: {s.description}" for s in registry.catalog())
    if tool_lines:
        content += f"\n\nAvailable tools:\n{tool_lines}"

    now = datetime.now().astimezone()
    content += (
        f"\n\nCurrent working directory: {Path(base_dir).resolve()}"
        f"\nOperating system: {platform.system() or sys.platform}"
        f"\nCurrent date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"
    )
    return content


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="tandem",
        usage="%(prog)s [options] [question]",
        description=(
            "A conversational coding assistant: the model reads, edits, searches "
            "and runs things in your project through tools. "
            "Without a question, starts an interactive session."
        ),
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Answer this single question and exit (omit for interactive mode).",
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session, after answering the question if one is given.",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider: anthropic (default), openrouter, or lmstudio (local).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default for anthropic: claude-sonnet-4-5-20250929).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides ANTHROPIC_API_KEY / OPENROUTER_API_KEY).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: provider default, http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per model call (default: 4000).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--max-rounds",
        type=int,
        default=_UNSET,
        help="Stop a message after this many model rounds (default: no limit).",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=_UNSET,
        help="Maximum tools run concurrently within one round (default: 8).",
    )
    parser.add_argument(
        "--tool-timeout",
        type=int,
        default=_UNSET,
        help="Timeout in seconds for bash, code_search and web_search (default: 120).",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Directory tools operate in (default: current directory).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="Replace the built-in system prompt template.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print answers.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON report of the exchange to FILE. Single-question mode only.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a template config file and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, write <base-dir>/tandem.toml instead of the global config.",
    )

    return parser


def _handle_init_config(args) -> None:
    if args.project:
        dest = Path(args.base_dir).resolve() / "tandem.toml"
    else:
        dest = global_config_dir() / "config.toml"
    if dest.exists():
        fmt.error(f"{dest} already exists, not overwriting")
        sys.exit(1)
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_text(generate_config(project=args.project), encoding="utf-8")
    print(f"Wrote {dest}")


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("tandem")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        _handle_init_config(args)
        sys.exit(0)

    try:
        config = load_config(args.base_dir)
    except ConfigError as e:
        parser.error(str(e))
    apply_config_to_args(args, config)

    args.verbose = not args.quiet
    if args.report and (args.repl or args.question is None):
        parser.error("--report needs a question and is incompatible with --repl")

    fmt.init(color=args.color, no_color=args.no_color)

    report = ReportCollector() if args.report else None
    try:
        _run_main(args, report)
    except AgentError as e:
        fmt.error(str(e))
        if report:
            _write_report(args, report, "error", exit_code=1, error_message=str(e))
        sys.exit(1)


def _write_report(args, report, outcome, *, answer=None, exit_code=0, error_message=None):
    report.finalize(
        task=args.question or "",
        model=getattr(args, "_resolved_model", args.model or "unknown"),
        provider=args.provider,
        settings={
            "max_output_tokens": args.max_output_tokens,
            "temperature": args.temperature,
            "max_rounds": args.max_rounds,
            "max_workers": args.max_workers,
            "tool_timeout": args.tool_timeout,
        },
        outcome=outcome,
        answer=answer,
        exit_code=exit_code,
        error_message=error_message,
    )
    try:
        report.write(args.report)
    except OSError as e:
        fmt.error(f"Failed to write report to {args.report}: {e}")
        return
    if args.verbose:
        fmt.info(f"Report written to {args.report}")


def build_loop(args) -> OrchestrationLoop:
    """Wire registry, model client, and system prompt from resolved CLI args."""
    base_dir = args.base_dir
    if not Path(base_dir).is_dir():
        raise ConfigError(f"--base-dir is not a directory: {base_dir}")
    for dest in sorted(_POSITIVE_INT_KEYS):
        value = getattr(args, dest)
        if value is not None and value < 1:
            flag = "--" + dest.replace("_", "-")
            raise ConfigError(f"{flag} must be at least 1, got {value}")

    registry = default_registry(base_dir, timeout=args.tool_timeout)
    client = ModelClient(
        provider=args.provider,
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
        max_output_tokens=args.max_output_tokens,
        temperature=args.temperature,
        verbose=args.verbose,
    )
    args._resolved_model = client.model_id
    return OrchestrationLoop(
        client,
        registry,
        build_system_prompt(registry, base_dir, args.system_prompt),
        max_rounds=args.max_rounds,
        max_workers=args.max_workers,
        verbose=args.verbose,
    )


def _run_main(args, report):
    loop = build_loop(args)

    if args.question is not None:
        answer = loop.chat(args.question, report=report)
        print(answer)
        if report:
            _write_report(args, report, "success", answer=answer)
        if not args.repl:
            return

    repl_loop(loop, base_dir=args.base_dir, verbose=args.verbose)


def repl_loop(loop: OrchestrationLoop, *, base_dir: str = ".", verbose: bool = True) -> None:
    """Interactive read-eval-print loop: one chat() per line, 'exit' to quit."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(base_dir, ".tandem", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "You: ")])

    fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if line.lower() == EXIT_COMMAND:
            break
        if not line:
            continue

        if verbose:
            fmt.thinking()
        try:
            answer = loop.chat(line)
        except KeyboardInterrupt:
            fmt.warning("interrupted, message aborted.")
            continue
        except AgentError as e:
            fmt.error(str(e))
        else:
            print(answer)
        fmt.separator()

    fmt.goodbye()


if __name__ == "__main__":
    main()
