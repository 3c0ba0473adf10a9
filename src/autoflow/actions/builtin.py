"""Built-in action types: shell.exec, http.request, file.read, data.set."""

import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Any, Dict, Literal, Optional
from urllib.parse import urlparse

import requests
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..errors import ActionTimeoutError, ErrorCategory, ExecutionCancelledError
from ..utils.process_utils import kill_process_tree, terminate_process_group
from .registry import ActionContext, ActionDefinition, ActionRegistry, ActionResult

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 1024 * 1024  # 1MB per stream


class _ActionModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# shell.exec

class ShellExecInput(_ActionModel):
    command: str
    working_directory: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Shell action requires a command")
        return v


class ShellExecOutput(_ActionModel):
    stdout: str
    stderr: str
    exit_code: int


def _truncate(text: str) -> str:
    if len(text) > MAX_OUTPUT_BYTES:
        return text[:MAX_OUTPUT_BYTES] + "\n[truncated]"
    return text


def shell_exec(params: ShellExecInput, ctx: ActionContext) -> ActionResult:
    """Run a command through /bin/sh; non-zero exit fails the node."""
    if ctx.settings is not None and not ctx.settings.shell_enabled:
        return ActionResult.fail("shell.exec is disabled by configuration", ErrorCategory.PERMANENT)

    env = {**os.environ, **params.env}
    proc = subprocess.Popen(
        ["/bin/sh", "-c", params.command],
        cwd=params.working_directory,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        start_new_session=True,
    )
    ctx.logger.debug(f"shell.exec pid={proc.pid}: {params.command}")

    # Poll so cancellation is observed while the command runs
    while True:
        remaining = ctx.remaining
        slice_timeout = 0.1 if remaining is None else max(0.0, min(0.1, remaining))
        try:
            stdout, stderr = proc.communicate(timeout=slice_timeout)
            break
        except subprocess.TimeoutExpired:
            if ctx.cancel_token.cancelled:
                terminate_process_group(proc)
                raise ExecutionCancelledError(f"Command cancelled: {params.command}")
            if remaining is not None and remaining <= 0:
                kill_process_tree(proc.pid, signal.SIGKILL)
                proc.communicate()
                raise ActionTimeoutError(f"Command timed out: {params.command}")

    output = ShellExecOutput(
        stdout=_truncate(stdout or ""),
        stderr=_truncate(stderr or ""),
        exit_code=proc.returncode,
    )
    if proc.returncode != 0:
        return ActionResult.fail(
            f"Command exited with code {proc.returncode}",
            ErrorCategory.TRANSIENT,
            output=output,
        )
    return ActionResult.ok(output)


# http.request

class HttpRequestInput(_ActionModel):
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD"] = "GET"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)
    body: Optional[str] = None
    json_body: Any = None

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"url must start with http:// or https://, got '{v}'")
        return v


class HttpRequestOutput(_ActionModel):
    status: int
    headers: Dict[str, str]
    body: str
    json_data: Any = None


def http_target(params: HttpRequestInput) -> Optional[str]:
    return urlparse(params.url).hostname


def http_request(params: HttpRequestInput, ctx: ActionContext) -> ActionResult:
    """Send an HTTP request; 4xx is a permanent failure, 5xx/429 transient."""
    try:
        response = ctx.http.request(
            params.method,
            params.url,
            headers=params.headers or None,
            params=params.params or None,
            data=params.body if params.json_body is None and params.method != "GET" else None,
            json=params.json_body,
            timeout=ctx.remaining,
        )
    except requests.Timeout as e:
        raise ActionTimeoutError(f"HTTP {params.method} {params.url} timed out") from e

    json_data = None
    if "json" in response.headers.get("content-type", ""):
        try:
            json_data = response.json()
        except ValueError:
            ctx.logger.debug(f"Response from {params.url} claims JSON but does not parse")

    output = HttpRequestOutput(
        status=response.status_code,
        headers=dict(response.headers),
        body=_truncate(response.text),
        json_data=json_data,
    )
    if response.ok:
        return ActionResult.ok(output)

    if response.status_code == 429 or response.status_code >= 500:
        category = ErrorCategory.TRANSIENT
    else:
        category = ErrorCategory.PERMANENT
    return ActionResult.fail(f"HTTP {response.status_code}: {response.reason}", category, output=output)


# file.read

class FileReadInput(_ActionModel):
    path: str
    encoding: str = "utf-8"
    max_bytes: int = 10 * 1024 * 1024


class FileReadOutput(_ActionModel):
    content: str
    size: int
    encoding: str


def file_read(params: FileReadInput, ctx: ActionContext) -> ActionResult:
    """Read a text file, optionally confined to the configured root."""
    path = Path(params.path).expanduser()
    root = ctx.settings.file_root if ctx.settings is not None else None
    if root is not None:
        root = root.resolve()
        if not path.is_absolute():
            path = root / path
        path = path.resolve()
        if not path.is_relative_to(root):
            return ActionResult.fail(f"Path {params.path} is outside {root}", ErrorCategory.PERMANENT)

    try:
        size = path.stat().st_size
        if size > params.max_bytes:
            return ActionResult.fail(
                f"File {path} is {size} bytes, larger than max_bytes={params.max_bytes}",
                ErrorCategory.PERMANENT,
            )
        content = path.read_text(encoding=params.encoding)
    except (FileNotFoundError, IsADirectoryError, PermissionError, UnicodeDecodeError, LookupError) as e:
        return ActionResult.fail(str(e), ErrorCategory.PERMANENT)

    return ActionResult.ok(FileReadOutput(content=content, size=size, encoding=params.encoding))


# data.set

class DataSetInput(_ActionModel):
    values: Dict[str, Any] = Field(default_factory=dict)


def data_set(params: DataSetInput, ctx: ActionContext) -> ActionResult:
    """Publish resolved values as node output (useful for shaping data between nodes)."""
    return ActionResult.ok(params.values)


def register_builtin_actions(registry: ActionRegistry) -> None:
    registry.register(ActionDefinition(
        type_id="shell.exec",
        executor=shell_exec,
        input_model=ShellExecInput,
        output_model=ShellExecOutput,
        description="Run a shell command",
        per_node_breaker=True,
    ))
    registry.register(ActionDefinition(
        type_id="http.request",
        executor=http_request,
        input_model=HttpRequestInput,
        output_model=HttpRequestOutput,
        description="Send an HTTP request",
        target_resolver=http_target,
    ))
    registry.register(ActionDefinition(
        type_id="file.read",
        executor=file_read,
        input_model=FileReadInput,
        output_model=FileReadOutput,
        description="Read a text file",
        target_resolver=lambda params: "localhost:fs",
    ))
    registry.register(ActionDefinition(
        type_id="data.set",
        executor=data_set,
        input_model=DataSetInput,
        description="Emit static or templated values",
    ))
