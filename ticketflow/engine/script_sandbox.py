"""
Script Sandbox - Isolated execution of user scripts

Used by `custom` conditions and `script` actions. Each run happens in a fresh
child process with:
- only the explicit bindings {ticket, user, context} (JSON-safe copies)
- a whitelist of builtins (no import, open, eval, getattr, ...)
- no access to private, frame or generator attributes (rejected before execution)
- CPU and address-space rlimits
- a wall-clock deadline after which the child is killed

A script is either a single expression (its value is the result) or a function
body that uses `return`.
"""
import ast
import builtins
import math
import multiprocessing
import resource
import textwrap
import time
from typing import Any, Dict, Optional

from ..config.settings import settings
from ..domain.errors import ActionTimeoutError, ScriptError
from ..utils.logger import get_logger

logger = get_logger(__name__)


SAFE_BUILTINS = (
    "abs", "all", "any", "bool", "dict", "enumerate", "filter", "float", "int",
    "isinstance", "len", "list", "map", "max", "min", "range", "reversed", "round",
    "set", "sorted", "str", "sum", "tuple", "zip", "True", "False", "None",
    "ValueError", "KeyError", "TypeError", "Exception",
)

FORBIDDEN_ATTRIBUTES = frozenset({"format", "format_map", "mro", "with_traceback"})

# Frame, code, generator and traceback internals reach the child's module globals
FORBIDDEN_ATTRIBUTE_PREFIXES = ("_", "f_", "gi_", "cr_", "ag_", "tb_", "co_", "func_")

FORBIDDEN_NODES = (
    ast.Import, ast.ImportFrom, ast.Global, ast.Nonlocal,
    ast.AsyncFunctionDef, ast.Await, ast.Yield, ast.YieldFrom,
)

SCRIPT_FUNCTION = "__script__"


def _restricted_builtins() -> Dict[str, Any]:
    return {name: getattr(builtins, name) for name in SAFE_BUILTINS}


def _forbidden_attribute(name: str) -> bool:
    return name.startswith(FORBIDDEN_ATTRIBUTE_PREFIXES) or name in FORBIDDEN_ATTRIBUTES


def compile_script(code: str) -> Any:
    """
    Parse and vet a script, returning a code object that defines __script__

    Raises:
        ScriptError: syntax error or a forbidden construct
    """
    source = textwrap.dedent(code).strip()
    if not source:
        raise ScriptError("Script is empty")

    try:
        ast.parse(source, mode="eval")
        body = f"return ({source})"
    except SyntaxError:
        body = source

    wrapped = f"def {SCRIPT_FUNCTION}(ticket, user, context):\n" + textwrap.indent(body, "    ")
    try:
        tree = ast.parse(wrapped, mode="exec")
    except SyntaxError as e:
        raise ScriptError(f"Script syntax error: {e.msg} (line {e.lineno})")

    for node in ast.walk(tree):
        if isinstance(node, FORBIDDEN_NODES):
            raise ScriptError(f"'{type(node).__name__}' is not allowed in scripts")
        if isinstance(node, ast.Attribute) and _forbidden_attribute(node.attr):
            raise ScriptError(f"Access to attribute '{node.attr}' is not allowed")
        if isinstance(node, ast.Name) and node.id.startswith("__") and node.id != SCRIPT_FUNCTION:
            raise ScriptError(f"Name '{node.id}' is not allowed")

    return compile(tree, "<script>", "exec")


def _set_limit(limit: int, value: int) -> bool:
    """Lower a soft/hard rlimit pair; False when the platform refuses"""
    try:
        _, hard = resource.getrlimit(limit)
        if hard != resource.RLIM_INFINITY:
            value = min(value, hard)
        resource.setrlimit(limit, (value, value))
        return True
    except (ValueError, OSError):
        return False


def _current_address_space() -> int:
    try:
        with open("/proc/self/statm") as statm:
            return int(statm.read().split()[0]) * resource.getpagesize()
    except (OSError, ValueError, IndexError):
        return 0


def _run_child(code: str, bindings: Dict[str, Any], conn: Any, cpu_seconds: int, memory_limit_mb: int) -> None:
    """Child process entry point; reports ("ok", value) or ("error", message)"""
    # The wall-clock deadline in the parent still applies if a limit cannot be set
    _set_limit(resource.RLIMIT_CPU, cpu_seconds)
    if memory_limit_mb > 0:
        # Budget on top of what the interpreter already maps
        _set_limit(resource.RLIMIT_AS, _current_address_space() + memory_limit_mb * 1024 * 1024)

    try:
        compiled = compile_script(code)
        namespace: Dict[str, Any] = {"__builtins__": _restricted_builtins()}
        exec(compiled, namespace)
        result = namespace[SCRIPT_FUNCTION](
            bindings.get("ticket", {}), bindings.get("user", {}), bindings.get("context", {})
        )
        conn.send(("ok", result))
    except MemoryError:
        conn.send(("error", "Script exceeded its memory limit"))
    except ScriptError as e:
        conn.send(("error", e.message))
    except Exception as e:
        # User code can raise anything
        conn.send(("error", f"{type(e).__name__}: {e}"))
    finally:
        conn.close()


class ScriptSandbox:
    """
    Runs scripts in a killable child process

    Args:
        timeout_ms: Default wall-clock deadline
        memory_limit_mb: Extra address space granted to the script
        start_method: multiprocessing start method ("fork", "spawn", "forkserver")
    """

    def __init__(
        self,
        timeout_ms: Optional[int] = None,
        memory_limit_mb: Optional[int] = None,
        start_method: Optional[str] = None,
    ):
        self.timeout_ms = timeout_ms or settings.script_timeout_ms
        self.memory_limit_mb = memory_limit_mb if memory_limit_mb is not None else settings.script_memory_limit_mb
        method = start_method or settings.script_start_method or None
        if method is None:
            method = "fork" if "fork" in multiprocessing.get_all_start_methods() else "spawn"
        self._context = multiprocessing.get_context(method)

    def validate(self, code: str) -> None:
        """Syntax and construct check without running anything"""
        compile_script(code)

    def run(self, code: str, bindings: Dict[str, Any], timeout_ms: Optional[int] = None) -> Any:
        """
        Execute a script against bindings

        Returns:
            The script's value (must be picklable)

        Raises:
            ScriptError: rejected script or an exception inside it
            ActionTimeoutError: deadline exceeded; the child has been killed
        """
        compile_script(code)
        deadline_ms = timeout_ms or self.timeout_ms
        timeout_s = deadline_ms / 1000.0
        # CPU limit sits past the wall-clock deadline so the deadline fires first
        cpu_seconds = math.ceil(timeout_s) + 1

        receiver, sender = self._context.Pipe(duplex=False)
        process = self._context.Process(
            target=_run_child,
            args=(code, bindings, sender, cpu_seconds, self.memory_limit_mb),
            daemon=True,
        )
        started = time.monotonic()
        process.start()
        sender.close()

        try:
            if not receiver.poll(timeout_s):
                raise ActionTimeoutError(
                    f"Script exceeded its {deadline_ms} ms deadline",
                    details={"timeout_ms": deadline_ms}
                )
            try:
                status, payload = receiver.recv()
            except EOFError:
                raise ScriptError(
                    "Script process exited without a result",
                    details={"exit_code": process.exitcode}
                )
        finally:
            receiver.close()
            self._reap(process)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if status != "ok":
            raise ScriptError(str(payload), details={"duration_ms": elapsed_ms})
        logger.debug(f"Script finished in {elapsed_ms}ms", extra={"duration_ms": elapsed_ms})
        return payload

    @staticmethod
    def _reap(process: Any) -> None:
        process.join(0.05)
        if process.is_alive():
            process.terminate()
            process.join(0.5)
        if process.is_alive():
            process.kill()
            process.join()
