"""ANSI-formatted output using Rich: diagnostics on stderr, answers on stdout."""

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

_console = Console(stderr=True)
_out = Console(highlight=False)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level consoles from CLI flags.

    Call once at startup, before any output.
    """
    global _console, _out
    kwargs: dict = {}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(stderr=True, **kwargs)
    _out = Console(highlight=False, **kwargs)


def console() -> Console:
    return _console


# -- Assistant text ----------------------------------------------------------


def assistant_delta(text: str) -> None:
    """Stream a fragment of the answer to stdout as it arrives."""
    _out.print(text, end="", markup=False, soft_wrap=True)


def end_answer() -> None:
    _out.print()


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, preview: str) -> None:
    _console.print(Text(f"  ✓ {name}", style="green"))
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Todo updates ------------------------------------------------------------


def todo_update(action: str, detail: str) -> None:
    prefix_map = {"add": "+1", "done": "✓", "remove": "-1", "cleared": "cleared"}
    tag = prefix_map.get(action, action)
    line = Text()
    line.append(f"  [todo {tag}]", style="yellow")
    line.append(f" {detail}", style="dim italic")
    _console.print(line)


# -- MCP ---------------------------------------------------------------------


def mcp_server_start(name: str, tool_count: int) -> None:
    _console.print(Text(f"  MCP server {name}: {tool_count} tools", style="dim"))


def mcp_server_error(name: str, msg: str) -> None:
    line = Text()
    line.append(f"  ⚠ MCP server {name}: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def mcp_status(status: dict[str, str]) -> None:
    if not status:
        info("no MCP servers configured")
        return
    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("server")
    table.add_column("status")
    for name, state in sorted(status.items()):
        style = "yellow" if state.startswith("unavailable") else None
        table.add_row(escape(name), Text(state, style=style or ""))
    _console.print(table)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def context_summary(text: str) -> None:
    for line in text.splitlines():
        _console.print(Text(f"  {line}", style="cyan"))


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


def aborted() -> None:
    _console.print(Text("  ✗ aborted", style="bold yellow"))


def repl_banner(model: str) -> None:
    _console.print(
        Text(
            f"zai ({model}) interactive mode. Type /help for commands, /exit or Ctrl-D to quit.",
            style="dim",
        )
    )
