"""ANSI-formatted stderr output using Rich."""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)
_log_handler: RichHandler | None = None


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console.

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


def init_logging(level: int = logging.INFO) -> logging.Logger:
    """Attach a Rich handler to the ``harvest`` logger on first call.

    Later calls only adjust the level and return the same logger.
    """
    global _log_handler
    logger = logging.getLogger("harvest")
    if _log_handler is None:
        _log_handler = RichHandler(
            console=_console, show_path=False, markup=False, rich_tracebacks=False
        )
        logger.addHandler(_log_handler)
        logger.propagate = False
    logger.setLevel(level)
    return logger


# -- Round structure ---------------------------------------------------------


def turn_header(n: int, max_n: int, phase: str, token_est: int) -> None:
    title = f"Round {n}/{max_n} [{phase}] (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, tool_choice: str, usage: dict | None) -> None:
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style="green")
    text.append(f"  tool_choice={escape(tool_choice)}", style="green")
    if usage:
        text.append(
            f"  in={usage.get('input_tokens', 0)} out={usage.get('output_tokens', 0)}",
            style="dim",
        )
    _console.print(text)


def completion(rounds: int, outcome: str) -> None:
    if outcome == "ok":
        _console.print(
            Text(f"  ✓ Agent finished: {rounds} rounds", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {rounds} rounds, exit={outcome}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Phases and context ------------------------------------------------------


def phase_change(old_phase: str, new_phase: str, submits: int) -> None:
    line = Text()
    line.append("  ↪ Phase: ", style="bold yellow")
    line.append(f"{old_phase} → {new_phase}", style="yellow")
    line.append(f"  (submits={submits})", style="dim")
    _console.print(line)


def compaction(level: int, removed: int, tokens_before: int, tokens_after: int) -> None:
    line = Text()
    line.append(f"  [compact L{level}] ", style="yellow")
    line.append(
        f"{removed} affected, ~{tokens_before} → ~{tokens_after} tokens",
        style="dim italic",
    )
    _console.print(line)


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)
