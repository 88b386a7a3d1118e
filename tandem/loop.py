"""The orchestration loop: ask the model, run requested tools, repeat.

One chat() call owns one fresh Transcript. Each round is

    AWAITING_MODEL -> (EXECUTING_TOOLS -> AWAITING_MODEL)* -> DONE

Tools requested in the same round run concurrently and are joined before
the next model call; their results are appended in request order, so a
given model response always yields the same ToolResultTurn no matter
which tool finished first.
"""

import enum
import json
import time
from concurrent.futures import ThreadPoolExecutor

from . import fmt
from .model import encode_transcript, estimate_tokens, tool_schema
from .report import AgentError, ReportCollector, TransportError
from .tools import ToolOutcome, ToolRegistry
from .transcript import (
    AssistantTurn,
    ToolRequestBlock,
    ToolResult,
    ToolResultTurn,
    Transcript,
    UserText,
)

MAX_ARG_LOG = 1000
DEFAULT_MAX_WORKERS = 8
EMPTY_RESULT = "Tool executed successfully"


class LoopState(enum.Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"


def outcome_to_result(block: ToolRequestBlock, outcome: ToolOutcome) -> ToolResult:
    """Fold a ToolOutcome into the transcript entry answering block."""
    if outcome.success:
        return ToolResult(request_id=block.id, content=outcome.result or EMPTY_RESULT)
    return ToolResult(request_id=block.id, content=f"Error: {outcome.error}", is_error=True)


class OrchestrationLoop:
    """Drives model rounds for a single user message at a time.

    client must provide send(transcript, system_prompt, catalog) returning
    an AssistantTurn. max_rounds is an optional safety ceiling on model
    calls per chat(); None means the model alone decides when to stop.
    """

    def __init__(
        self,
        client,
        registry: ToolRegistry,
        system_prompt: str | None = None,
        *,
        max_rounds: int | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        verbose: bool = False,
    ):
        if max_rounds is not None and max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.client = client
        self.registry = registry
        self.system_prompt = system_prompt
        self.max_rounds = max_rounds
        self.max_workers = max_workers
        self.verbose = verbose
        self.last_transcript: Transcript | None = None

    def chat(self, text: str, *, report: ReportCollector | None = None) -> str:
        """Answer one user message, returning all assistant text of the exchange.

        Model failures propagate (nothing partial is returned); tool
        failures are handed back to the model as error results.
        """
        transcript = Transcript(UserText(text))
        self.last_transcript = transcript

        output: list[str] = []
        state = LoopState.AWAITING_MODEL
        pending: AssistantTurn | None = None
        rounds = 0

        while state is not LoopState.DONE:
            if state is LoopState.AWAITING_MODEL:
                if self.max_rounds is not None and rounds >= self.max_rounds:
                    raise AgentError(
                        f"stopped after {rounds} rounds without a final answer "
                        f"(max rounds is {self.max_rounds})"
                    )
                rounds += 1
                turn = self._ask_model(transcript, rounds, report)
                output.extend(block.text for block in turn.text_blocks)

                if turn.tool_requests:
                    if self.verbose and turn.text:
                        fmt.assistant_text(turn.text)
                    pending = turn
                    state = LoopState.EXECUTING_TOOLS
                else:
                    transcript.append(turn)
                    state = LoopState.DONE

            elif state is LoopState.EXECUTING_TOOLS:
                results = self._run_tools(pending.tool_requests, rounds, report)
                transcript.append(pending)
                transcript.append(ToolResultTurn(results=tuple(results)))
                pending = None
                state = LoopState.AWAITING_MODEL

        if self.verbose:
            fmt.completion(rounds)
        return "".join(output)

    def _ask_model(
        self, transcript: Transcript, round_no: int, report: ReportCollector | None
    ) -> AssistantTurn:
        catalog = self.registry.catalog()

        token_est = 0
        if self.verbose or report:
            token_est = estimate_tokens(
                encode_transcript(transcript.snapshot(), self.system_prompt),
                [tool_schema(spec) for spec in catalog],
            )
        if self.verbose:
            fmt.round_header(round_no, self.max_rounds, token_est)

        t0 = time.monotonic()
        try:
            turn = self.client.send(transcript.snapshot(), self.system_prompt, catalog)
        except AgentError:
            if report:
                report.record_llm_call(round_no, time.monotonic() - t0, token_est, "error")
            raise
        elapsed = time.monotonic() - t0

        try:
            _check_request_ids(turn)
        except TransportError:
            if report:
                report.record_llm_call(round_no, elapsed, token_est, "error")
            raise

        n_requests = len(turn.tool_requests)
        if self.verbose:
            fmt.llm_timing(elapsed, turn.finish_reason, n_requests)
        if report:
            report.record_llm_call(
                round_no, elapsed, token_est, str(turn.finish_reason), n_requests
            )
        return turn

    def _run_tools(
        self,
        blocks: list[ToolRequestBlock],
        round_no: int,
        report: ReportCollector | None,
    ) -> list[ToolResult]:
        """Run every request of one round and wait for all of them."""
        if len(blocks) == 1:
            runs = [self._run_one(blocks[0])]
        else:
            workers = min(self.max_workers, len(blocks))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tool") as pool:
                futures = [pool.submit(self._run_one, block) for block in blocks]
                runs = [f.result() for f in futures]

        results = []
        for block, (result, elapsed) in zip(blocks, runs):
            if report:
                report.record_tool_call(
                    round_no,
                    block.name,
                    block.input,
                    not result.is_error,
                    elapsed,
                    len(result.content),
                    error=result.content if result.is_error else None,
                )
            results.append(result)
        return results

    def _run_one(self, block: ToolRequestBlock) -> tuple[ToolResult, float]:
        if self.verbose:
            fmt.tool_call(block.name, _format_args(block.input))

        t0 = time.monotonic()
        try:
            outcome = self.registry.execute(block.name, block.input)
        except Exception as e:
            outcome = ToolOutcome.fail(str(e) or type(e).__name__)
        elapsed = time.monotonic() - t0

        if self.verbose:
            if outcome.success:
                fmt.tool_result(block.name, elapsed, outcome.result or "")
            else:
                fmt.tool_error(block.name, outcome.error or "")
        return outcome_to_result(block, outcome), elapsed


def _check_request_ids(turn: AssistantTurn) -> None:
    """Reject a response whose tool requests share an id, before anything runs."""
    seen: set[str] = set()
    for block in turn.tool_requests:
        if block.id in seen:
            raise TransportError(f"duplicate tool call id {block.id!r} in model response")
        seen.add(block.id)


def _format_args(args) -> str:
    text = args if isinstance(args, str) else json.dumps(args, ensure_ascii=False)
    if len(text) > MAX_ARG_LOG:
        text = text[:MAX_ARG_LOG] + "... (truncated)"
    return text
