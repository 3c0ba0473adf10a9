"""Tests for the built-in action types."""

import logging
import threading
from unittest.mock import MagicMock

import pytest
import requests

from autoflow.actions.builtin import (
    DataSetInput,
    FileReadInput,
    HttpRequestInput,
    ShellExecInput,
    data_set,
    file_read,
    http_request,
    http_target,
    register_builtin_actions,
    shell_exec,
)
from autoflow.actions.registry import ActionContext, ActionRegistry, SecretAccessor
from autoflow.core.cancellation import CancellationToken, Deadline
from autoflow.core.config import ActionsConfig
from autoflow.errors import ActionTimeoutError, ErrorCategory, ExecutionCancelledError
from autoflow.utils.rich_logging import ContextLogger


def _make_ctx(settings=None, http=None, timeout=5.0, token=None):
    return ActionContext(
        run_id="run-1",
        workflow_id="wf",
        node_id="node",
        attempt=1,
        logger=ContextLogger(logging.getLogger("autoflow.test"), run_id="run-1"),
        secrets=SecretAccessor({"token": "t"}),
        http=http or MagicMock(spec=requests.Session),
        cancel_token=token or CancellationToken(),
        deadline=Deadline(timeout),
        settings=settings or ActionsConfig(),
    )


def _response(status=200, text="", headers=None, json_data=None):
    response = MagicMock()
    response.status_code = status
    response.ok = status < 400
    response.reason = "Reason"
    response.text = text
    response.headers = headers or {}
    response.json.return_value = json_data
    return response


class TestRegistration:
    def test_all_builtins_registered(self):
        registry = ActionRegistry()
        register_builtin_actions(registry)
        assert registry.types() == ["data.set", "file.read", "http.request", "shell.exec"]

    def test_duplicate_registration_rejected(self):
        registry = ActionRegistry()
        register_builtin_actions(registry)
        with pytest.raises(ValueError, match="already registered by core"):
            register_builtin_actions(registry)


class TestShellExec:
    def test_captures_output(self):
        result = shell_exec(ShellExecInput(command="echo hello; echo oops >&2"), _make_ctx())

        assert result.success
        assert result.output.stdout == "hello\n"
        assert result.output.stderr == "oops\n"
        assert result.output.exit_code == 0

    def test_env_and_cwd(self, tmp_path):
        params = ShellExecInput(command="echo $GREETING; pwd -P", workingDirectory=str(tmp_path), env={"GREETING": "hi"})
        result = shell_exec(params, _make_ctx())
        assert result.output.stdout.splitlines() == ["hi", str(tmp_path.resolve())]

    def test_non_zero_exit_is_transient_failure(self):
        result = shell_exec(ShellExecInput(command="exit 3"), _make_ctx())

        assert not result.success
        assert result.error_category == ErrorCategory.TRANSIENT
        assert result.output.exit_code == 3

    def test_disabled_by_config(self):
        result = shell_exec(ShellExecInput(command="true"), _make_ctx(settings=ActionsConfig(shell_enabled=False)))
        assert result.error_category == ErrorCategory.PERMANENT

    def test_deadline_kills_command(self):
        with pytest.raises(ActionTimeoutError):
            shell_exec(ShellExecInput(command="sleep 5"), _make_ctx(timeout=0.2))

    def test_cancellation_kills_command(self):
        token = CancellationToken()
        threading.Timer(0.2, token.cancel).start()
        with pytest.raises(ExecutionCancelledError):
            shell_exec(ShellExecInput(command="sleep 5"), _make_ctx(token=token))

    def test_blank_command_rejected(self):
        with pytest.raises(ValueError):
            ShellExecInput(command="   ")


class TestHttpRequest:
    def test_json_response(self):
        session = MagicMock(spec=requests.Session)
        session.request.return_value = _response(
            200, '{"id": 1}', {"content-type": "application/json"}, {"id": 1}
        )
        params = HttpRequestInput(method="post", url="https://api.example.com/items", jsonBody={"a": 1})

        result = http_request(params, _make_ctx(http=session))

        assert result.success
        assert result.output.status == 200
        assert result.output.json_data == {"id": 1}
        args, kwargs = session.request.call_args
        assert args == ("POST", "https://api.example.com/items")
        assert kwargs["json"] == {"a": 1}
        assert kwargs["data"] is None

    @pytest.mark.parametrize("status,category", [
        (404, ErrorCategory.PERMANENT),
        (429, ErrorCategory.TRANSIENT),
        (503, ErrorCategory.TRANSIENT),
    ])
    def test_error_status_categories(self, status, category):
        session = MagicMock(spec=requests.Session)
        session.request.return_value = _response(status, "nope")

        result = http_request(HttpRequestInput(url="http://svc/x"), _make_ctx(http=session))

        assert not result.success
        assert result.error_category == category
        assert result.output.status == status

    def test_timeout(self):
        session = MagicMock(spec=requests.Session)
        session.request.side_effect = requests.Timeout("slow")
        with pytest.raises(ActionTimeoutError):
            http_request(HttpRequestInput(url="http://svc/x"), _make_ctx(http=session))

    def test_url_scheme_required(self):
        with pytest.raises(ValueError):
            HttpRequestInput(url="ftp://files")

    def test_target_is_hostname(self):
        assert http_target(HttpRequestInput(url="https://api.example.com:8443/v1")) == "api.example.com"


class TestFileRead:
    def test_reads_file(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("hello")

        result = file_read(FileReadInput(path=str(path)), _make_ctx())

        assert result.output.content == "hello"
        assert result.output.size == 5

    def test_root_confinement(self, tmp_path):
        root = tmp_path / "root"
        root.mkdir()
        (root / "inside.txt").write_text("ok")
        (tmp_path / "outside.txt").write_text("secret")
        ctx = _make_ctx(settings=ActionsConfig(file_root=root))

        assert file_read(FileReadInput(path="inside.txt"), ctx).output.content == "ok"
        escaped = file_read(FileReadInput(path="../outside.txt"), ctx)
        assert not escaped.success
        assert escaped.error_category == ErrorCategory.PERMANENT

    def test_missing_and_oversized(self, tmp_path):
        big = tmp_path / "big.txt"
        big.write_text("x" * 100)

        assert file_read(FileReadInput(path=str(tmp_path / "nope")), _make_ctx()).error_category == ErrorCategory.PERMANENT
        too_big = file_read(FileReadInput(path=str(big), maxBytes=10), _make_ctx())
        assert "larger than max_bytes" in too_big.error


class TestDataSet:
    def test_echoes_values(self):
        result = data_set(DataSetInput(values={"a": [1, 2]}), _make_ctx())
        assert result.output == {"a": [1, 2]}
