"""Tool catalog, dispatch, and the host-side tool implementations."""

import functools
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Iterable


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_schema: dict = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass(frozen=True)
class ToolOutcome:
    """Uniform tool result: result is meaningful on success, error otherwise."""

    success: bool
    result: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, result: str) -> "ToolOutcome":
        return cls(success=True, result=result)

    @classmethod
    def fail(cls, error: str) -> "ToolOutcome":
        return cls(success=False, error=error)


class ToolError(Exception):
    """Raised by a tool implementation for an expected, reportable failure."""


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

LIST_FILES_TOOL = ToolSpec(
    name="list_files",
    description=(
        "List files and directories at a given path. "
        "If no path is provided, lists files in the current directory."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The directory path to list files from",
            },
        },
    },
)

BASH_TOOL = ToolSpec(
    name="bash",
    description=(
        "Execute a shell command with sh -c and return its standard output. "
        "A non-zero exit status is reported as an error together with stderr."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute",
            },
        },
        "required": ["command"],
    },
)

EDIT_FILE_TOOL = ToolSpec(
    name="edit_file",
    description=(
        "Edit a file by replacing old_str with new_str. "
        "If old_str is empty, creates a new file with new_str content."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The file path to edit",
            },
            "old_str": {
                "type": "string",
                "description": "The string to replace (empty for new file)",
            },
            "new_str": {
                "type": "string",
                "description": "The string to replace with",
            },
        },
        "required": ["path", "old_str", "new_str"],
    },
)

CODE_SEARCH_TOOL = ToolSpec(
    name="code_search",
    description=(
        "Search for code patterns using ripgrep. Use this to find code patterns, "
        "function definitions, variable usage, or any text in the codebase."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "The search pattern (regex supported)",
            },
            "path": {
                "type": "string",
                "description": "The directory to search in (default: current directory)",
            },
            "file_type": {
                "type": "string",
                "description": "File type to filter by (e.g., 'js', 'ts', 'py')",
            },
        },
        "required": ["pattern"],
    },
)

WEB_SEARCH_TOOL = ToolSpec(
    name="web_search",
    description=(
        "Fetch the content of a URL and return it as readable text "
        "(HTML is converted to markdown). Use this to read documentation or web pages."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "url": {
                "type": "string",
                "description": "The URL to fetch (must start with http:// or https://).",
            },
        },
        "required": ["url"],
    },
)

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
DEFAULT_TIMEOUT = 120
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


def validate_input(schema: dict, value) -> str | None:
    """Check a tool input against its JSON-schema subset.

    Supports object type, required keys, per-property primitive types and
    enums. Returns an error description, or None when the input is valid.
    """
    if not isinstance(value, dict):
        return f"expected a JSON object, got {_json_type_name(value)}"

    for key in schema.get("required", []):
        if key not in value:
            return f"missing required property {key!r}"

    properties = schema.get("properties", {})
    if schema.get("additionalProperties") is False:
        extra = sorted(set(value) - set(properties))
        if extra:
            return f"unexpected properties: {', '.join(extra)}"

    for key, prop in properties.items():
        if key not in value:
            continue
        expected = prop.get("type")
        item = value[key]
        if expected in _JSON_TYPES:
            # bool is an int subclass; only accept it where a boolean is expected
            if isinstance(item, bool) and expected != "boolean":
                return f"property {key!r} expected {expected}, got boolean"
            if not isinstance(item, _JSON_TYPES[expected]):
                return f"property {key!r} expected {expected}, got {_json_type_name(item)}"
        if "enum" in prop and item not in prop["enum"]:
            allowed = ", ".join(repr(v) for v in prop["enum"])
            return f"property {key!r} must be one of {allowed}"
    return None


def _json_type_name(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    for name, kind in _JSON_TYPES.items():
        if name != "number" and isinstance(value, kind):
            return name
    if isinstance(value, float):
        return "number"
    return type(value).__name__


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Immutable catalog of tools plus name-based dispatch.

    Each implementation takes the validated input dict and returns a
    ToolOutcome (a bare string counts as a successful result). Nothing an
    implementation raises escapes execute().
    """

    def __init__(self, tools: Iterable[tuple[ToolSpec, Callable]]):
        specs: list[ToolSpec] = []
        impls: dict[str, Callable] = {}
        for spec, impl in tools:
            if spec.name in impls:
                raise ValueError(f"duplicate tool name: {spec.name!r}")
            specs.append(spec)
            impls[spec.name] = impl
        self._specs = tuple(specs)
        self._by_name = MappingProxyType({s.name: s for s in specs})
        self._impls = MappingProxyType(impls)

    def catalog(self) -> tuple[ToolSpec, ...]:
        return self._specs

    def names(self) -> list[str]:
        return [s.name for s in self._specs]

    def __contains__(self, name) -> bool:
        return name in self._impls

    def __len__(self) -> int:
        return len(self._specs)

    def execute(self, name: str, args) -> ToolOutcome:
        impl = self._impls.get(name)
        if impl is None:
            return ToolOutcome.fail(f"Unknown tool: {name}")

        problem = validate_input(self._by_name[name].input_schema, args)
        if problem:
            return ToolOutcome.fail(f"Invalid input for {name}: {problem}")

        try:
            outcome = impl(args)
        except Exception as e:
            return ToolOutcome.fail(str(e) or type(e).__name__)

        if isinstance(outcome, str):
            return ToolOutcome.ok(outcome)
        if not isinstance(outcome, ToolOutcome):
            return ToolOutcome.fail(
                f"tool {name!r} returned {type(outcome).__name__}, not a ToolOutcome"
            )
        return outcome


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


def _resolve(path: str, base_dir: str) -> Path:
    """Resolve path against base_dir unless it is already absolute."""
    p = Path(path).expanduser()
    if not p.is_absolute():
        p = Path(base_dir) / p
    return p.resolve()


def _truncate(text: str) -> str:
    encoded = text.encode("utf-8")
    if len(encoded) <= MAX_OUTPUT_BYTES:
        return text
    kept = encoded[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore")
    return kept + f"\n[output truncated at {MAX_OUTPUT_BYTES // 1024}KB, total was {len(encoded)} bytes]"


def _list_files(args: dict, base_dir: str = ".") -> ToolOutcome:
    """List one directory level, directories suffixed with /."""
    try:
        target = _resolve(args.get("path") or ".", base_dir)
        names = sorted(os.listdir(target))
    except OSError as e:
        raise ToolError(f"Failed to list files: {e}") from e

    lines = []
    for name in names:
        full = target / name
        try:
            if full.is_dir():
                lines.append(f"{name}/")
            elif full.is_file():
                lines.append(f"{name} ({full.stat().st_size} bytes)")
            else:
                lines.append(name)
        except OSError:
            lines.append(name)

    return ToolOutcome.ok(_truncate(f"Files in {target}:\n" + "\n".join(lines)))


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable


def _spawn(argv: list[str], cwd: str) -> subprocess.Popen:
    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=cwd,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    return subprocess.Popen(argv, **popen_kwargs)


def _communicate(proc: subprocess.Popen, timeout: int) -> tuple[str, str, bool]:
    """Wait for proc, killing its whole group on timeout.

    Returns (stdout, stderr, timed_out). The process is always reaped.
    """
    timed_out = False
    try:
        out, err = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)
        try:
            out, err = proc.communicate(timeout=_KILL_WAIT_TIMEOUT)
        except (subprocess.TimeoutExpired, OSError, ValueError):
            out, err = b"", b""
    finally:
        if proc.poll() is None:
            _kill_process_tree(proc)
    return (
        (out or b"").decode("utf-8", errors="replace"),
        (err or b"").decode("utf-8", errors="replace"),
        timed_out,
    )


def _bash(args: dict, base_dir: str = ".", timeout: int = DEFAULT_TIMEOUT) -> ToolOutcome:
    """Run a shell string via sh -c (Unix) or cmd.exe /c (Windows)."""
    command = args["command"]
    if sys.platform == "win32":
        argv = ["cmd.exe", "/c", command]
    else:
        argv = ["/bin/sh", "-c", command]

    try:
        proc = _spawn(argv, base_dir)
    except OSError as e:
        raise ToolError(f"Failed to execute command: {e}") from e

    stdout, stderr, timed_out = _communicate(proc, timeout)
    if timed_out:
        raise ToolError(f"Command timed out after {timeout}s")
    if proc.returncode != 0:
        raise ToolError(
            f"Command failed with exit code {proc.returncode}: {_truncate(stderr or stdout)}"
        )
    return ToolOutcome.ok(_truncate(stdout) if stdout else "(no output)")


def _edit_file(args: dict, base_dir: str = ".") -> ToolOutcome:
    """Replace the first occurrence of old_str, or create the file when old_str is empty."""
    path = args["path"]
    old_str = args["old_str"]
    new_str = args["new_str"]

    try:
        resolved = _resolve(path, base_dir)
        if old_str == "":
            data = new_str.encode("utf-8")
            resolved.parent.mkdir(parents=True, exist_ok=True)
            resolved.write_bytes(data)
            return ToolOutcome.ok(f"Created new file: {path} ({len(data)} bytes)")

        if not resolved.is_file():
            raise ToolError(f"File does not exist: {path}")

        content = resolved.read_text(encoding="utf-8")
        if old_str not in content:
            raise ToolError(f'String not found in file: "{old_str}"')

        resolved.write_text(content.replace(old_str, new_str, 1), encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ToolError(f"Failed to edit file: {e}") from e

    return ToolOutcome.ok(f"Successfully edited file: {path}")


def _code_search(
    args: dict, base_dir: str = ".", timeout: int = DEFAULT_TIMEOUT
) -> ToolOutcome:
    """Search with ripgrep; exit status 1 means no matches, which is not a failure."""
    pattern = args["pattern"]
    rg = shutil.which("rg")
    if rg is None:
        raise ToolError("Failed to search code: ripgrep (rg) not found on PATH")

    argv = [rg, "--line-number", "--column", "--color=never"]
    if args.get("file_type"):
        argv += ["--type", args["file_type"]]
    argv += ["-e", pattern, args.get("path") or "."]

    try:
        proc = _spawn(argv, base_dir)
    except OSError as e:
        raise ToolError(f"Failed to search code: {e}") from e

    stdout, stderr, timed_out = _communicate(proc, timeout)
    if timed_out:
        raise ToolError(f"Search timed out after {timeout}s")

    if proc.returncode == 0:
        count = len(stdout.strip().split("\n"))
        return ToolOutcome.ok(
            _truncate(f"Found {count} matches for pattern: {pattern}\n\n{stdout}")
        )
    if proc.returncode == 1:
        return ToolOutcome.ok(f"No matches found for pattern: {pattern}")
    raise ToolError(f"Search failed: {stderr.strip() or 'Unknown error'}")


def default_registry(base_dir: str = ".", timeout: int = DEFAULT_TIMEOUT) -> ToolRegistry:
    """Build the standard tool set rooted at base_dir."""
    from .fetch import web_search

    return ToolRegistry(
        [
            (LIST_FILES_TOOL, functools.partial(_list_files, base_dir=base_dir)),
            (BASH_TOOL, functools.partial(_bash, base_dir=base_dir, timeout=timeout)),
            (EDIT_FILE_TOOL, functools.partial(_edit_file, base_dir=base_dir)),
            (
                CODE_SEARCH_TOOL,
                functools.partial(_code_search, base_dir=base_dir, timeout=timeout),
            ),
            (WEB_SEARCH_TOOL, functools.partial(web_search, timeout=timeout)),
        ]
    )
