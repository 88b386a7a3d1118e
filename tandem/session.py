"""Public library API for tandem: Session class and Result dataclass."""

from dataclasses import dataclass

from .report import ReportCollector
from .tools import DEFAULT_TIMEOUT, ToolRegistry


@dataclass
class Result:
    """Result of a session run."""

    answer: str
    transcript: tuple
    report: dict | None


class Session:
    """Programmatic interface to the orchestration loop.

    Stores configuration as plain attributes; the model client, registry and
    system prompt are built lazily on the first run(). Every run() starts a
    fresh transcript, so questions do not share context.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "anthropic",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int = 4000,
        temperature: float | None = None,
        max_rounds: int | None = None,
        max_workers: int = 8,
        tool_timeout: int = DEFAULT_TIMEOUT,
        system_prompt: str | None = None,
        verbose: bool = False,
        registry: ToolRegistry | None = None,
        client=None,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.max_rounds = max_rounds
        self.max_workers = max_workers
        self.tool_timeout = tool_timeout
        self.system_prompt = system_prompt
        self.verbose = verbose
        self.registry = registry
        self.client = client

        self._loop = None

    @classmethod
    def from_config(cls, base_dir: str = ".", **overrides) -> "Session":
        """Build a Session from the global and project config files.

        Keyword overrides win over config values, as CLI flags do.
        """
        from .config import config_to_session_kwargs, load_config

        kwargs = config_to_session_kwargs(load_config(base_dir))
        kwargs.update(overrides)
        return cls(base_dir=base_dir, **kwargs)

    def _setup(self):
        """Build client, registry, system prompt and loop once."""
        if self._loop is not None:
            return self._loop

        from .agent import build_system_prompt
        from .loop import OrchestrationLoop
        from .model import ModelClient
        from .tools import default_registry

        if self.registry is None:
            self.registry = default_registry(self.base_dir, timeout=self.tool_timeout)
        if self.client is None:
            self.client = ModelClient(
                provider=self.provider,
                model=self.model,
                api_key=self.api_key,
                base_url=self.base_url,
                max_output_tokens=self.max_output_tokens,
                temperature=self.temperature,
                verbose=self.verbose,
            )
        if self.verbose:
            from . import fmt

            fmt.init()

        self._loop = OrchestrationLoop(
            self.client,
            self.registry,
            build_system_prompt(self.registry, self.base_dir, self.system_prompt),
            max_rounds=self.max_rounds,
            max_workers=self.max_workers,
            verbose=self.verbose,
        )
        return self._loop

    def run(self, question: str, *, report: bool = False) -> Result:
        """Answer one question with a fresh transcript."""
        loop = self._setup()

        collector = ReportCollector() if report else None
        answer = loop.chat(question, report=collector)

        report_dict = None
        if collector:
            report_dict = collector.build_report(
                task=question,
                model=getattr(self.client, "model_id", "unknown"),
                provider=self.provider,
                settings={
                    "max_output_tokens": self.max_output_tokens,
                    "temperature": self.temperature,
                    "max_rounds": self.max_rounds,
                    "max_workers": self.max_workers,
                },
                outcome="success",
                answer=answer,
                exit_code=0,
            )

        return Result(
            answer=answer,
            transcript=loop.last_transcript.snapshot(),
            report=report_dict,
        )
