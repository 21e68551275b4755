import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal as signal_module
import sys
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from importlib import metadata
from pathlib import Path
from typing import AsyncIterator, Callable

from . import fmt
from .config import (
    _UNSET,
    apply_config_to_args,
    generate_config,
    load_config,
    resolve_mcp_servers,
)
from .context import (
    KEEP_RECENT,
    MAX_ENTRIES,
    ContextManager,
    ConversationEntry,
    EntryKind,
    ToolCallRequest,
    ToolResult,
)
from .dispatch import ToolDispatcher
from .errors import (
    AgentBusyError,
    AgentError,
    ContextOverflowError,
    ModelChannelError,
)
from .llm import PROVIDERS, LlmClient, ModelDelta, ModelTurn, count_tokens
from .mcp_client import McpClient
from .todo import TodoState
from .tools import build_local_tools, cleanup_old_cmd_outputs

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
DEFAULT_MAX_TOOL_ROUNDS = 10
MAX_ARG_LOG = 1000
MAX_INSTRUCTIONS_CHARS = 10_000
INSTRUCTION_FILES = ("AGENTS.md", "ZAI.md", ".zai/ZAI.md", ".zai/AGENTS.md")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_ROUND_LIMIT = 2
EXIT_ABORTED = 130


class EventKind(str, Enum):
    CONTENT = "content"
    TOOL_CALL_ANNOUNCED = "tool_call_announced"
    TOOL_RESULT = "tool_result"
    ROUND_COMPLETE = "round_complete"
    TOKEN_COUNT = "token_count"
    ABORTED = "aborted"
    ERROR = "error"


@dataclass
class StreamEvent:
    kind: EventKind
    content: str = ""
    tool_call: ToolCallRequest | None = None
    tool_result: ToolResult | None = None
    token_count: int | None = None
    round_limit_exceeded: bool = False


class AbortSignal:
    """Cooperative cancellation flag for one submission."""

    def __init__(self):
        self._event = asyncio.Event()

    def abort(self) -> None:
        self._event.set()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class AgentLoop:
    """Drives one conversation: model turns, tool rounds, streamed events.

    ``submit()`` is the only way the transcript grows. Tool calls of one
    model turn run concurrently, but their results are appended and
    reported strictly in the order the model requested them.
    """

    def __init__(
        self,
        llm,
        dispatcher: ToolDispatcher,
        context: ContextManager | None = None,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        system_prompt: str | None = None,
        token_counter: Callable[[list, list | None], int] = count_tokens,
    ):
        if max_tool_rounds < 1:
            raise ValueError("max_tool_rounds must be at least 1")
        self.llm = llm
        self.dispatcher = dispatcher
        self.context = context if context is not None else ContextManager()
        self.max_tool_rounds = max_tool_rounds
        self.token_counter = token_counter
        if system_prompt and not len(self.context):
            self.context.append(ConversationEntry(kind=EntryKind.SYSTEM, content=system_prompt))
        self._signal: AbortSignal | None = None

    # --- Public API ---

    @property
    def busy(self) -> bool:
        return self._signal is not None

    @property
    def history(self) -> tuple[ConversationEntry, ...]:
        return self.context.entries

    @property
    def context_summary(self) -> str:
        return self.context.summary

    def abort(self) -> None:
        """Abort the submission in flight, if any."""
        if self._signal is not None:
            self._signal.abort()

    def clear(self) -> int:
        return self.context.clear(keep_system=True)

    def compact(self) -> str | None:
        return self.context.check_and_compress(force=True)

    def add_agent_activity(
        self,
        agent_type: str,
        name: str,
        status: str,
        task_id: str | None = None,
        duration: float | None = None,
        error: str | None = None,
    ) -> None:
        """Record a sub-agent notification; kept in history, never sent to the model."""
        info = {"type": agent_type, "name": name, "status": status}
        for key, value in (("task_id", task_id), ("duration", duration), ("error", error)):
            if value is not None:
                info[key] = value
        content = f"{agent_type} agent {name}: {status}"
        if error:
            content += f" ({error})"
        self.context.append(
            ConversationEntry(kind=EntryKind.AGENT_ACTIVITY, content=content, agent_info=info)
        )

    async def submit(
        self, user_text: str, signal: AbortSignal | None = None
    ) -> AsyncIterator[StreamEvent]:
        """Run one user turn to completion, yielding StreamEvents.

        Raises AgentBusyError if another submission is still running.
        """
        if self._signal is not None:
            raise AgentBusyError("a submission is already in progress")
        self._signal = signal if signal is not None else AbortSignal()
        try:
            async for event in self._run(user_text, self._signal):
                yield event
        finally:
            self._signal = None

    # --- Round loop ---

    async def _run(self, user_text: str, signal: AbortSignal) -> AsyncIterator[StreamEvent]:
        self.context.append(ConversationEntry(kind=EntryKind.USER, content=user_text))

        for round_no in range(1, self.max_tool_rounds + 1):
            if signal.aborted:
                yield StreamEvent(EventKind.ABORTED, content="aborted before model call")
                return

            self.context.check_and_compress()
            tools = self.dispatcher.schemas()
            logger.debug("round %d/%d", round_no, self.max_tool_rounds)

            text_parts: list[str] = []
            turn: ModelTurn | None = None
            overflow_retried = False
            while True:
                try:
                    async with contextlib.aclosing(
                        self.llm.stream(self.context.to_messages(), tools)
                    ) as stream:
                        async for item in stream:
                            if signal.aborted:
                                break
                            if isinstance(item, ModelDelta):
                                text_parts.append(item.text)
                                yield StreamEvent(EventKind.CONTENT, content=item.text)
                            else:
                                turn = item
                    break
                except ContextOverflowError as e:
                    if (
                        overflow_retried
                        or text_parts
                        or self.context.check_and_compress(force=True) is None
                    ):
                        yield StreamEvent(EventKind.ERROR, content=str(e))
                        return
                    overflow_retried = True
                    logger.info("context overflow, compressed transcript and retrying")
                except ModelChannelError as e:
                    yield StreamEvent(EventKind.ERROR, content=str(e))
                    return

            if signal.aborted:
                partial = "".join(text_parts)
                if partial:
                    self.context.append(
                        ConversationEntry(kind=EntryKind.ASSISTANT, content=partial, aborted=True)
                    )
                yield StreamEvent(EventKind.ABORTED, content="aborted during model response")
                return

            if turn is None:
                yield StreamEvent(
                    EventKind.ERROR, content="model stream ended without a completed turn"
                )
                return

            if not turn.tool_calls:
                self.context.append(
                    ConversationEntry(kind=EntryKind.ASSISTANT, content=turn.content)
                )
                yield self._token_event(tools)
                yield StreamEvent(EventKind.ROUND_COMPLETE, content=turn.content)
                return

            self.context.append(
                ConversationEntry(
                    kind=EntryKind.TOOL_CALL,
                    content=turn.content,
                    tool_calls=list(turn.tool_calls),
                )
            )
            yield self._token_event(tools)

            reported_abort = False
            async for event in self._run_tools(turn.tool_calls, signal):
                reported_abort = event.kind == EventKind.ABORTED
                yield event
            if signal.aborted:
                if not reported_abort:
                    yield StreamEvent(EventKind.ABORTED, content="aborted after tool round")
                return

        yield StreamEvent(
            EventKind.ROUND_COMPLETE,
            content=(
                f"Maximum tool execution rounds ({self.max_tool_rounds}) reached. "
                "Stopping to prevent an endless loop."
            ),
            round_limit_exceeded=True,
        )

    async def _run_tools(
        self, calls: list[ToolCallRequest], signal: AbortSignal
    ) -> AsyncIterator[StreamEvent]:
        for call in calls:
            yield StreamEvent(EventKind.TOOL_CALL_ANNOUNCED, tool_call=call)

        tasks: list[asyncio.Task | None] = []
        for call in calls:
            if signal.aborted:
                tasks.append(None)
                continue
            tasks.append(
                asyncio.create_task(self.dispatcher.dispatch(call), name=f"tool-{call.name}")
            )

        resolved = 0
        for call, task in zip(calls, tasks):
            if task is None or not await self._await_unless_aborted(task, signal):
                break
            result = task.result()
            self.context.append(
                ConversationEntry(
                    kind=EntryKind.TOOL_RESULT,
                    content=result.as_text(),
                    tool_call=call,
                    tool_result=result,
                )
            )
            resolved += 1
            yield StreamEvent(EventKind.TOOL_RESULT, tool_call=call, tool_result=result)

        if resolved == len(calls):
            return

        # Aborted: let running tools finish, discard what they return.
        pending = [t for t in tasks if t is not None and not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for call in calls[resolved:]:
            result = ToolResult.fail("aborted by user before a result was recorded")
            self.context.append(
                ConversationEntry(
                    kind=EntryKind.TOOL_RESULT,
                    content=result.as_text(),
                    tool_call=call,
                    tool_result=result,
                    aborted=True,
                )
            )
        yield StreamEvent(
            EventKind.ABORTED,
            content=f"aborted with {len(calls) - resolved} tool call(s) unresolved",
        )

    @staticmethod
    async def _await_unless_aborted(task: asyncio.Task, signal: AbortSignal) -> bool:
        """Wait for task; False if the abort signal fired first (or meanwhile)."""
        if signal.aborted:
            return False
        waiter = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        return task.done() and not signal.aborted

    def _token_event(self, tools: list) -> StreamEvent:
        try:
            tokens = self.token_counter(self.context.to_messages(), tools)
        except Exception as e:
            logger.debug("token count failed, using estimate: %s", e)
            tokens = self.context.estimate_tokens()
        return StreamEvent(EventKind.TOKEN_COUNT, token_count=tokens)


# --- CLI ---------------------------------------------------------------------


def load_instructions(base_dir: str, verbose: bool) -> tuple[str, list[str]]:
    """Load AGENTS.md / ZAI.md (root or .zai/) from base_dir, if present.

    Returns (combined_text, filenames_loaded).
    """
    sections = []
    loaded: list[str] = []
    base = Path(base_dir).resolve()
    for filename in INSTRUCTION_FILES:
        path = base / filename
        if not path.is_file():
            continue
        try:
            with path.open(encoding="utf-8", errors="replace") as f:
                content = f.read(MAX_INSTRUCTIONS_CHARS + 1).strip()
        except OSError:
            continue
        if not content:
            continue
        if len(content) > MAX_INSTRUCTIONS_CHARS:
            content = (
                content[:MAX_INSTRUCTIONS_CHARS]
                + f"\n[truncated, {filename} exceeds {MAX_INSTRUCTIONS_CHARS} character limit]"
            )
        if verbose:
            fmt.info(f"Loaded {filename} from {base}")
        sections.append(f'<project-instructions source="{filename}">\n{content}\n</project-instructions>')
        loaded.append(filename)
    return "\n\n".join(sections), loaded


def build_system_prompt(args) -> str | None:
    if args.no_system_prompt:
        return None
    if args.system_prompt:
        content = args.system_prompt
    else:
        content = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
        if not args.no_instructions:
            instructions, _ = load_instructions(args.base_dir, args.verbose)
            if instructions:
                content += "\n\n" + instructions
    now = datetime.now().astimezone()
    content += f"\n\nCurrent working directory: {Path(args.base_dir).resolve()}"
    content += f"\nCurrent date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"
    return content


def build_parser():
    """Build and return the argument parser.

    Options that can also come from a config file default to _UNSET so
    apply_config_to_args() can tell "not given" from "given".
    """
    parser = argparse.ArgumentParser(
        prog="zai",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A coding assistant CLI for Z.ai GLM models with local tools and MCP servers.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--provider",
        choices=PROVIDERS,
        default=_UNSET,
        help="LLM provider: zai (default), openrouter, generic (any OpenAI-compatible API).",
    )
    parser.add_argument("--model", default=_UNSET, help="Model identifier (default: glm-4.6).")
    parser.add_argument(
        "--api-key", default=_UNSET, help="API key for the provider (overrides env var)."
    )
    parser.add_argument(
        "--base-url", default=_UNSET, help="API base URL (required for --provider generic)."
    )
    parser.add_argument(
        "--max-output-tokens", type=int, default=_UNSET, help="Maximum output tokens per turn."
    )
    parser.add_argument(
        "--temperature", type=float, default=_UNSET, help="Sampling temperature."
    )
    parser.add_argument(
        "--max-tool-rounds",
        type=int,
        default=_UNSET,
        help="Maximum model calls per question (default: 10).",
    )
    parser.add_argument(
        "--max-entries",
        type=int,
        default=_UNSET,
        help=f"Compress the conversation beyond this many entries (default: {MAX_ENTRIES}).",
    )
    parser.add_argument(
        "--keep-recent",
        type=int,
        default=_UNSET,
        help=f"Entries kept verbatim when compressing (default: {KEEP_RECENT}).",
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Also compress when the estimated token count exceeds this.",
    )

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument(
        "--system-prompt", default=_UNSET, help="System prompt to use instead of the default."
    )
    prompt_group.add_argument(
        "--no-system-prompt",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Omit the system message entirely.",
    )
    parser.add_argument(
        "--no-instructions",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Don't load AGENTS.md or ZAI.md from the base directory.",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Base directory for file tools (default: current directory).",
    )
    parser.add_argument(
        "--yolo",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable the filesystem sandbox.",
    )

    parser.add_argument(
        "--no-mcp",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Don't connect to any MCP server.",
    )
    parser.add_argument(
        "--no-builtin-mcp",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Don't add the built-in Z.ai MCP servers.",
    )
    parser.add_argument(
        "--mcp-config",
        default=_UNSET,
        metavar="FILE",
        help="Path to an .mcp.json file (default: <base-dir>/.mcp.json if present).",
    )
    parser.add_argument(
        "--mcp-timeout",
        type=float,
        default=_UNSET,
        help="Seconds before an MCP call is abandoned (default: 120).",
    )

    parser.add_argument(
        "-q",
        "--quiet",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Suppress diagnostics; only print the answer.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (zai.toml) flavour.",
    )
    return parser


def _setup_logging(debug: bool) -> None:
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=fmt.console(), show_path=False)],
    )
    if not debug:
        # httpx logs every request at INFO
        logging.getLogger("httpx").setLevel(logging.WARNING)


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("zai-cli")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
        apply_config_to_args(args, config)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(EXIT_ERROR)

    args.verbose = not args.quiet
    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")

    fmt.init(color=args.color, no_color=args.no_color)
    _setup_logging(args.debug)

    try:
        exit_code = asyncio.run(_run_main(args, config))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(EXIT_ERROR)
    except KeyboardInterrupt:
        sys.exit(EXIT_ABORTED)
    sys.exit(exit_code)


async def _run_main(args, config: dict) -> int:
    base_dir = args.base_dir
    if not Path(base_dir).is_dir():
        raise AgentError(f"base directory does not exist: {base_dir}")

    llm = LlmClient(
        model=args.model,
        provider=args.provider,
        base_url=args.base_url,
        api_key=args.api_key,
        max_output_tokens=args.max_output_tokens,
        temperature=args.temperature,
    )

    mcp = None
    if not args.no_mcp:
        servers = resolve_mcp_servers(
            config, base_dir, args.mcp_config, include_builtin=not args.no_builtin_mcp
        )
        if servers:
            mcp = McpClient(servers, timeout=args.mcp_timeout)

    removed = cleanup_old_cmd_outputs(base_dir)
    if removed and args.verbose:
        fmt.info(f"Cleaned up {removed} stale cmd_output file(s) from .zai/")

    todo_state = TodoState(notes_dir=base_dir, verbose=args.verbose)
    dispatcher = ToolDispatcher(build_local_tools(base_dir, todo_state, unrestricted=args.yolo), mcp)

    try:
        if mcp is not None:
            await _register_mcp(dispatcher, mcp, args.verbose)

        agent = AgentLoop(
            llm,
            dispatcher,
            context=ContextManager(args.max_entries, args.keep_recent, args.max_context_tokens),
            max_tool_rounds=args.max_tool_rounds,
            system_prompt=build_system_prompt(args),
        )

        if not args.repl:
            exit_code = await run_submission(agent, args.question, args.verbose)
            if exit_code == EXIT_ROUND_LIMIT:
                fmt.warning("max tool rounds reached, agent stopped.")
            summary = todo_state.summary_line()
            if summary and args.verbose:
                fmt.info(summary)
            return exit_code

        if args.question:
            await run_submission(agent, args.question, args.verbose)
        await repl_loop(agent, todo_state, mcp, base_dir, args.verbose, args.model)
        return EXIT_OK
    finally:
        if mcp is not None:
            await mcp.close()


async def _register_mcp(dispatcher: ToolDispatcher, mcp: McpClient, verbose: bool) -> None:
    failures = await dispatcher.register_remote_tools()
    for name, reason in failures.items():
        fmt.mcp_server_error(name, reason)
    if verbose:
        counts: dict[str, int] = {}
        for server, _ in mcp.tool_map.values():
            counts[server] = counts.get(server, 0) + 1
        for name in mcp.configs:
            if name not in failures:
                fmt.mcp_server_start(name, counts.get(name, 0))


class _EventRenderer:
    """Turns StreamEvents into terminal output and an exit code."""

    def __init__(self, verbose: bool):
        self.verbose = verbose
        self.exit_code = EXIT_OK
        self._mid_line = False

    def _break_line(self) -> None:
        if self._mid_line:
            fmt.end_answer()
            self._mid_line = False

    def __call__(self, event: StreamEvent) -> None:
        kind = event.kind
        if kind == EventKind.CONTENT:
            fmt.assistant_delta(event.content)
            self._mid_line = not event.content.endswith("\n")
        elif kind == EventKind.TOOL_CALL_ANNOUNCED:
            self._break_line()
            if self.verbose:
                try:
                    pretty = json.dumps(event.tool_call.parse_arguments(), indent=2)
                except AgentError:
                    pretty = event.tool_call.arguments or ""
                if len(pretty) > MAX_ARG_LOG:
                    pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
                fmt.tool_call(event.tool_call.name, pretty)
        elif kind == EventKind.TOOL_RESULT:
            if self.verbose:
                result = event.tool_result
                if result.success:
                    fmt.tool_result(event.tool_call.name, result.as_text()[:500])
                else:
                    fmt.tool_error(event.tool_call.name, result.error)
        elif kind == EventKind.TOKEN_COUNT:
            logger.debug("context is ~%d tokens", event.token_count)
            if self.verbose:
                self._break_line()
                fmt.context_stats("context", event.token_count)
        elif kind == EventKind.ROUND_COMPLETE:
            self._break_line()
            if event.round_limit_exceeded:
                fmt.warning(event.content)
                self.exit_code = EXIT_ROUND_LIMIT
        elif kind == EventKind.ABORTED:
            self._break_line()
            fmt.aborted()
            self.exit_code = EXIT_ABORTED
        elif kind == EventKind.ERROR:
            self._break_line()
            fmt.error(event.content)
            self.exit_code = EXIT_ERROR


async def run_submission(agent: AgentLoop, text: str, verbose: bool) -> int:
    """Submit one question, rendering events; Ctrl-C aborts the submission."""
    render = _EventRenderer(verbose)
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal_module.SIGINT, agent.abort)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False
    try:
        async for event in agent.submit(text):
            render(event)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal_module.SIGINT)
    return render.exit_code


# --- REPL --------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset conversation to initial state\n"
        "  /compact           Compress the conversation into a summary now\n"
        "  /summary           Show the current context summary\n"
        "  /mcp               Show MCP server status\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_clear(agent: AgentLoop, todo_state: TodoState) -> None:
    dropped = agent.clear()
    todo_state.reset()
    fmt.info(f"context cleared ({dropped} entries removed)")


def _repl_compact(agent: AgentLoop) -> None:
    before = agent.context.estimate_tokens()
    if agent.compact() is None:
        fmt.info("nothing to compact")
        return
    after = agent.context.estimate_tokens()
    fmt.info(f"compacted: ~{before} -> ~{after} tokens ({before - after} saved)")


def _repl_summary(agent: AgentLoop) -> None:
    if agent.context_summary:
        fmt.context_summary(agent.context_summary)
    else:
        fmt.info("no context summary yet (the conversation has not been compressed)")


async def repl_loop(
    agent: AgentLoop,
    todo_state: TodoState,
    mcp: McpClient | None,
    base_dir: str,
    verbose: bool,
    model: str,
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(base_dir, ".zai", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "zai> ")])

    if verbose:
        fmt.repl_banner(model)

    while True:
        try:
            print(file=sys.stderr)
            line = await session.prompt_async(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        # Only known commands are intercepted; unknown /foo goes to the model.
        cmd = line.split(None, 1)[0].lower()
        if cmd == "/help":
            _repl_help()
        elif cmd == "/clear":
            _repl_clear(agent, todo_state)
        elif cmd == "/compact":
            _repl_compact(agent)
        elif cmd == "/summary":
            _repl_summary(agent)
        elif cmd == "/mcp":
            fmt.mcp_status(mcp.status() if mcp is not None else {})
        else:
            await run_submission(agent, line, verbose)


if __name__ == "__main__":
    main()
