"""Expression evaluation, code execution sandbox and HTTP egress policy.

This module provides:
- Safe expression evaluation (safe_eval_expr) for CONDITION/CODE nodes
- A subprocess sandbox for python CODE nodes with resource limits
- Host allowlisting for HTTP and NOTIFICATION egress
"""
from __future__ import annotations

import ast
import asyncio
import ipaddress
import json
import operator
import os
import resource
import sys
import tempfile
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

from flowkernel.logging import get_logger

logger = get_logger(__name__)

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.FloorDiv: operator.floordiv,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

# Pure builtins expressions may call
SAFE_CALLABLES = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "sum": sum,
    "sorted": sorted,
    "list": list,
}

_MAX_RECURSION_DEPTH = 100


def _eval_node(
    node: ast.AST,
    names: Mapping[str, Any],
    allowed_callables: Mapping[str, Any] | None,
    _depth: int = 0,
) -> Any:
    if _depth > _MAX_RECURSION_DEPTH:
        raise ValueError("expression too deeply nested")
    depth = _depth + 1

    if isinstance(node, ast.Expression):
        return _eval_node(node.body, names, allowed_callables, depth)

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id in names:
            return names[node.id]
        if node.id in ("true", "false", "null"):
            return {"true": True, "false": False, "null": None}[node.id]
        raise ValueError(f"unknown name {node.id}")

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = _eval_node(value, names, allowed_callables, depth)
                if not result:
                    break
            return bool(result)
        if isinstance(node.op, ast.Or):
            result = False
            for value in node.values:
                result = _eval_node(value, names, allowed_callables, depth)
                if result:
                    break
            return bool(result)
        raise ValueError("unsupported boolean operator")

    if isinstance(node, ast.UnaryOp):
        operand = _eval_node(node.operand, names, allowed_callables, depth)
        if isinstance(node.op, ast.Not):
            return not bool(operand)
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ValueError("unsupported unary operator")

    if isinstance(node, ast.BinOp):
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ValueError("unsupported binary operator")
        left = _eval_node(node.left, names, allowed_callables, depth)
        right = _eval_node(node.right, names, allowed_callables, depth)
        if isinstance(node.op, ast.Pow) and isinstance(right, (int, float)) and abs(right) > 64:
            raise ValueError("exponent too large")
        return op(left, right)

    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, names, allowed_callables, depth)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise ValueError("unsupported comparator")
            right = _eval_node(comparator, names, allowed_callables, depth)
            try:
                if not op(left, right):
                    return False
            except TypeError as exc:
                raise ValueError(f"cannot compare values: {exc}") from exc
            left = right
        return True

    if isinstance(node, ast.IfExp):
        if _eval_node(node.test, names, allowed_callables, depth):
            return _eval_node(node.body, names, allowed_callables, depth)
        return _eval_node(node.orelse, names, allowed_callables, depth)

    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name):
            raise ValueError("callable references must be simple names")
        if not allowed_callables or node.func.id not in allowed_callables:
            raise ValueError(f"callable {node.func.id} is not permitted")
        func = allowed_callables[node.func.id]
        args = [_eval_node(arg, names, allowed_callables, depth) for arg in node.args]
        for kw in node.keywords:
            if kw.arg is None:
                raise ValueError("keyword unpacking (**kwargs) not permitted")
        kwargs = {
            kw.arg: _eval_node(kw.value, names, allowed_callables, depth)
            for kw in node.keywords
        }
        return func(*args, **kwargs)

    if isinstance(node, ast.Subscript):
        target = _eval_node(node.value, names, allowed_callables, depth)
        index = _eval_node(node.slice, names, allowed_callables, depth)
        if not isinstance(target, (Mapping, Sequence, str)):
            raise ValueError("subscript targets must be sequences or mappings")
        try:
            return target[index]
        except (KeyError, IndexError, TypeError) as exc:
            raise ValueError(f"invalid subscript access: {exc}") from exc

    if isinstance(node, (ast.Tuple, ast.List)):
        items = [_eval_node(elt, names, allowed_callables, depth) for elt in node.elts]
        return tuple(items) if isinstance(node, ast.Tuple) else items

    if isinstance(node, ast.Dict):
        return {
            _eval_node(k, names, allowed_callables, depth): _eval_node(
                v, names, allowed_callables, depth
            )
            for k, v in zip(node.keys, node.values)
        }

    raise ValueError(f"unsupported expression node: {type(node).__name__}")


def safe_eval_expr(
    expr: str,
    names: Mapping[str, Any],
    allowed_callables: Mapping[str, Any] | None = None,
) -> Any:
    """Evaluate an expression with a constrained AST allowlist.

    Supports boolean logic, comparisons, conditional expressions, indexing,
    arithmetic and calls to ``allowed_callables`` (defaults to SAFE_CALLABLES).
    Attribute access, comprehensions and lambdas are rejected.
    """

    try:
        parsed = ast.parse(expr.strip(), mode="eval")
    except SyntaxError as exc:
        raise ValueError("invalid expression") from exc

    for node in ast.walk(parsed):
        if isinstance(
            node,
            (
                ast.Attribute,
                ast.Lambda,
                ast.ListComp,
                ast.SetComp,
                ast.DictComp,
                ast.GeneratorExp,
                ast.Await,
                ast.Yield,
                ast.YieldFrom,
                ast.NamedExpr,
            ),
        ):
            raise ValueError("disallowed syntax in expression")

    callables = SAFE_CALLABLES if allowed_callables is None else allowed_callables
    return _eval_node(parsed, names, callables)


# =========================================================================
# Code execution sandbox
# =========================================================================


class SandboxError(Exception):
    """Raised when sandbox constraints are violated."""


BLOCKED_MODULES = frozenset(
    {
        "subprocess",
        "multiprocessing",
        "socket",
        "ctypes",
        "pickle",
        "importlib",
        "ftplib",
        "smtplib",
        "telnetlib",
        "http.server",
        "shutil",
        "pty",
    }
)
BLOCKED_OS_CALLS = frozenset(
    {"system", "popen", "fork", "forkpty", "kill", "remove", "unlink", "rmdir", "removedirs"}
)
BLOCKED_OS_CALLS |= frozenset(name for name in dir(os) if name.startswith(("exec", "spawn")))
BLOCKED_BUILTINS = frozenset({"exec", "eval", "compile", "__import__", "breakpoint", "input"})

CODE_TIMEOUT_BOUNDS_MS = (100, 10000)
CODE_OUTPUT_BOUNDS = (1000, 256000)


def _clamp(value: int, bounds: tuple) -> int:
    low, high = bounds
    return max(low, min(high, int(value)))


def validate_python_code(code: str) -> list[str]:
    """Static check run before any python CODE node is executed.

    Returns a list of violations; empty means the code may run.
    """
    try:
        tree = ast.parse(code)
    except SyntaxError as exc:
        return [f"syntax error on line {exc.lineno}: {exc.msg}"]

    problems: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                if _is_blocked_module(alias.name):
                    problems.append(f"import of '{alias.name}' is not allowed")
        elif isinstance(node, ast.ImportFrom):
            module = node.module or ""
            if _is_blocked_module(module) or any(
                _is_blocked_module(f"{module}.{alias.name}") for alias in node.names
            ):
                problems.append(f"import from '{module}' is not allowed")
            elif module == "os" and any(alias.name in BLOCKED_OS_CALLS for alias in node.names):
                problems.append("importing process or file-removal calls from 'os' is not allowed")
        elif isinstance(node, ast.Attribute):
            if node.attr.startswith("__") and node.attr.endswith("__"):
                problems.append(f"access to '{node.attr}' is not allowed")
            elif (
                isinstance(node.value, ast.Name)
                and node.value.id == "os"
                and node.attr in BLOCKED_OS_CALLS
            ):
                problems.append(f"'os.{node.attr}' is not allowed")
        elif isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
            if node.func.id in BLOCKED_BUILTINS:
                problems.append(f"'{node.func.id}()' is not allowed")
            elif node.func.id == "open" and _opens_for_write(node):
                problems.append("writing files is not allowed")
    return problems


def _is_blocked_module(name: str) -> bool:
    parts = name.split(".")
    return any(".".join(parts[: i + 1]) in BLOCKED_MODULES for i in range(len(parts)))


def _opens_for_write(call: ast.Call) -> bool:
    mode_node = call.args[1] if len(call.args) > 1 else None
    for kw in call.keywords:
        if kw.arg == "mode":
            mode_node = kw.value
    if mode_node is None:
        return False
    if not isinstance(mode_node, ast.Constant) or not isinstance(mode_node.value, str):
        # non-literal mode cannot be proven read-only
        return True
    return any(flag in mode_node.value for flag in "wax+")


@dataclass
class SandboxConfig:
    """Resource limits applied to sandboxed code subprocesses.

    Attributes:
        max_memory_mb: Address-space cap in MB
        max_cpu_seconds: CPU time cap in seconds
        max_file_size_mb: Largest file the child may create
        scratch_dir: Working directory for the child process
    """

    max_memory_mb: int = 512
    max_cpu_seconds: int = 10
    max_file_size_mb: int = 1
    scratch_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.scratch_dir is None:
            self.scratch_dir = Path(tempfile.gettempdir()) / "flowkernel_sandbox"


def apply_resource_limits(config: SandboxConfig, *, log: bool = True) -> dict[str, bool]:
    """Apply rlimits to the current process; children inherit them.

    Pass ``log=False`` when running as a subprocess preexec hook, where the
    child's stdout belongs to the sandboxed code.
    """
    limits = {
        "memory": (resource.RLIMIT_AS, config.max_memory_mb * 1024 * 1024),
        "cpu": (resource.RLIMIT_CPU, config.max_cpu_seconds),
        "file_size": (resource.RLIMIT_FSIZE, config.max_file_size_mb * 1024 * 1024),
        "core": (resource.RLIMIT_CORE, 0),
    }
    results = {}
    for name, (kind, value) in limits.items():
        hard = value + 5 if name == "cpu" else value
        try:
            resource.setrlimit(kind, (value, hard))
            results[name] = True
        except (ValueError, OSError) as exc:
            if log:
                logger.warning("sandbox_limit_failed", limit=name, error=str(exc))
            results[name] = False
    return results


def ensure_scratch_dir(config: SandboxConfig) -> Path:
    if config.scratch_dir is None:
        config.scratch_dir = Path(tempfile.gettempdir()) / "flowkernel_sandbox"
    config.scratch_dir.mkdir(parents=True, exist_ok=True)
    return config.scratch_dir


# Runs inside the child: user prints go to stderr as they happen so partial
# logs survive a kill; the final JSON envelope is the only stdout write.
_PYTHON_WRAPPER = r'''
import json, sys
_payload = json.loads(sys.stdin.read() or "{}")
_real_stdout = sys.stdout
sys.stdout = sys.stderr
_scope = {"__name__": "__sandbox__", "input": _payload.get("input"), "inputs": _payload.get("input")}
_envelope = {"ok": True}
try:
    exec(compile(_payload["code"], "<code-node>", "exec"), _scope)
except Exception as _exc:
    _envelope = {"ok": False, "error": type(_exc).__name__ + ": " + str(_exc)}
sys.stdout.flush()
_result = _scope.get("result")
try:
    json.dumps(_result)
except (TypeError, ValueError):
    _result = repr(_result)
_envelope["result"] = _result
_real_stdout.write(json.dumps(_envelope, ensure_ascii=False, default=str))
_real_stdout.flush()
'''


@dataclass
class CodeExecutionResult:
    ok: bool
    result: Any = None
    logs: str = ""
    error: Optional[str] = None
    duration_ms: int = 0


async def _drain(stream: asyncio.StreamReader, sink: bytearray, limit: int) -> None:
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            return
        room = limit + 1 - len(sink)
        if room > 0:
            sink.extend(chunk[:room])


class CodeSandbox:
    """Runs CODE node programs with bounded time and output."""

    def __init__(
        self,
        *,
        python_executable: Optional[str] = None,
        default_timeout_ms: int = 2000,
        default_max_output: int = 32000,
        config: Optional[SandboxConfig] = None,
        enabled: bool = True,
    ) -> None:
        self.python_executable = python_executable or sys.executable
        self.default_timeout_ms = default_timeout_ms
        self.default_max_output = default_max_output
        self.config = config or SandboxConfig()
        self.enabled = enabled

    async def execute(
        self,
        language: str,
        code: str,
        input: Any = None,
        *,
        timeout_ms: Optional[int] = None,
        max_output_bytes: Optional[int] = None,
    ) -> CodeExecutionResult:
        timeout = _clamp(timeout_ms or self.default_timeout_ms, CODE_TIMEOUT_BOUNDS_MS)
        max_output = _clamp(max_output_bytes or self.default_max_output, CODE_OUTPUT_BOUNDS)
        if language == "expression":
            return self._evaluate_expression(code, input)
        if language != "python":
            return CodeExecutionResult(ok=False, error=f"unsupported language '{language}'")
        if not self.enabled:
            return CodeExecutionResult(ok=False, error="python code execution is disabled")
        problems = validate_python_code(code)
        if problems:
            return CodeExecutionResult(ok=False, error="; ".join(problems))
        return await self._run_python(code, input, timeout, max_output)

    def _evaluate_expression(self, code: str, input: Any) -> CodeExecutionResult:
        started = time.monotonic()
        names = dict(input) if isinstance(input, Mapping) else {}
        names.setdefault("input", input)
        names.setdefault("inputs", input)
        try:
            value = safe_eval_expr(code, names)
        except (ValueError, TypeError, ZeroDivisionError, OverflowError) as exc:
            return CodeExecutionResult(
                ok=False, error=str(exc), duration_ms=int((time.monotonic() - started) * 1000)
            )
        return CodeExecutionResult(
            ok=True, result=value, duration_ms=int((time.monotonic() - started) * 1000)
        )

    async def _run_python(
        self, code: str, input: Any, timeout_ms: int, max_output: int
    ) -> CodeExecutionResult:
        scratch = ensure_scratch_dir(self.config)
        limits = SandboxConfig(
            max_memory_mb=self.config.max_memory_mb,
            max_cpu_seconds=max(1, -(-timeout_ms // 1000)),
            max_file_size_mb=self.config.max_file_size_mb,
            scratch_dir=scratch,
        )
        payload = json.dumps({"code": code, "input": input}, ensure_ascii=False, default=str)
        started = time.monotonic()
        proc = await asyncio.create_subprocess_exec(
            self.python_executable,
            "-I",
            "-u",
            "-c",
            _PYTHON_WRAPPER,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(scratch),
            preexec_fn=lambda: apply_resource_limits(limits, log=False),
        )
        stdout = bytearray()
        logs = bytearray()
        readers = [
            asyncio.create_task(_drain(proc.stdout, stdout, max_output)),
            asyncio.create_task(_drain(proc.stderr, logs, max_output)),
        ]
        timed_out = False
        try:
            proc.stdin.write(payload.encode())
            await proc.stdin.drain()
            proc.stdin.close()
            await asyncio.wait_for(proc.wait(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            timed_out = True
            proc.kill()
            await proc.wait()
        except (BrokenPipeError, ConnectionResetError):
            await proc.wait()
        await asyncio.gather(*readers)
        duration_ms = int((time.monotonic() - started) * 1000)
        log_text = logs[:max_output].decode("utf-8", errors="replace")

        if timed_out:
            return CodeExecutionResult(
                ok=False,
                logs=log_text,
                error=f"execution timed out after {timeout_ms}ms",
                duration_ms=duration_ms,
            )
        if len(stdout) > max_output or len(logs) > max_output:
            return CodeExecutionResult(
                ok=False,
                logs=log_text,
                error=f"output exceeds {max_output} bytes",
                duration_ms=duration_ms,
            )
        try:
            envelope = json.loads(stdout.decode("utf-8", errors="replace"))
        except ValueError:
            return CodeExecutionResult(
                ok=False,
                logs=log_text,
                error=f"process exited with code {proc.returncode} without a result",
                duration_ms=duration_ms,
            )
        return CodeExecutionResult(
            ok=bool(envelope.get("ok")),
            result=envelope.get("result"),
            logs=log_text,
            error=envelope.get("error"),
            duration_ms=duration_ms,
        )


# =========================================================================
# HTTP egress
# =========================================================================


class EgressError(SandboxError):
    """Outbound request refused by the egress policy."""


@dataclass
class EgressPolicy:
    """Hosts HTTP and NOTIFICATION nodes may reach.

    An empty allowlist leaves egress unrestricted.
    """

    allowlist: list[str] = field(default_factory=list)
    connect_timeout: float = 10.0

    def permits(self, host: str) -> bool:
        if not self.allowlist:
            return True
        return _host_matches_allowlist(host, self.allowlist)


def build_egress_policy(allowlist: Sequence[str] | None) -> EgressPolicy:
    normalized = [entry.strip().lower() for entry in allowlist or [] if entry.strip()]
    return EgressPolicy(allowlist=normalized)


def _host_matches_allowlist(host: str, allowlist: Sequence[str]) -> bool:
    if not host:
        return False
    lowered = host.lower()
    for entry in allowlist:
        candidate = entry.lower()
        if candidate.startswith("*."):
            if lowered.endswith(candidate[1:]):
                return True
        elif lowered == candidate:
            return True
        elif "/" in candidate:
            try:
                if ipaddress.ip_address(host) in ipaddress.ip_network(candidate, strict=False):
                    return True
            except ValueError:
                continue
    return False


class EgressClient:
    """Shared async HTTP client that enforces the egress policy."""

    def __init__(
        self,
        policy: Optional[EgressPolicy] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.policy = policy or EgressPolicy()
        self._client = httpx.AsyncClient(transport=transport, follow_redirects=False)

    def check(self, url: str) -> str:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise EgressError(f"unsupported URL scheme '{parsed.scheme or ''}'")
        host = parsed.hostname
        if not host:
            raise EgressError("URL is missing a host")
        if not self.policy.permits(host):
            raise EgressError(f"egress host '{host}' is not allowlisted")
        return host

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        params: Optional[dict[str, str]] = None,
        json: Any = None,
        content: Optional[str | bytes] = None,
        data: Optional[dict[str, Any]] = None,
        timeout: float = 30.0,
    ) -> httpx.Response:
        self.check(url)
        return await self._client.request(
            method,
            url,
            headers=headers,
            params=params,
            json=json,
            content=content,
            data=data,
            timeout=httpx.Timeout(timeout, connect=min(timeout, self.policy.connect_timeout)),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
