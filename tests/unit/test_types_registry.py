import asyncio
import logging

import pytest

from core.types_registry import (
    AggregateNodeError,
    ExecutionContext,
    ExecutionResult,
    NodeExecutionError,
    NodeTimeoutError,
    NodeValidationError,
    ProgressState,
    error_message,
)
from utils.logging_config import NodeLoggerAdapter, get_node_logger


@pytest.fixture
def events():
    return []


def test_execution_result_to_dict_omits_absent_fields():
    assert ExecutionResult(success=True).to_dict() == {"success": True}
    assert ExecutionResult(success=False, error="bad", metadata={"a": 1}).to_dict() == {
        "success": False,
        "error": "bad",
        "metadata": {"a": 1},
    }


def test_execution_result_from_mapping():
    result = ExecutionResult.from_mapping({"success": 1, "outputs": {"x": 1}})
    assert result.success is True
    assert result.outputs == {"x": 1}
    assert result.error is None


def test_derive_shares_signal_but_not_inputs(events):
    signal = asyncio.Event()
    parent = ExecutionContext(
        node_id="parent", inputs={"a": 1}, signal=signal, report_progress=events.append
    )

    child = parent.derive(node_id="child", inputs={"b": 2})

    assert child.signal is signal
    assert child.report_progress is parent.report_progress
    assert child.inputs == {"b": 2}
    assert parent.inputs == {"a": 1}
    assert child.metadata == {}


def test_cancelled_follows_signal():
    signal = asyncio.Event()
    context = ExecutionContext(node_id="n", signal=signal)
    assert context.cancelled is False
    signal.set()
    assert context.cancelled is True
    assert ExecutionContext(node_id="n").cancelled is False


def test_emit_progress_clamps(events):
    context = ExecutionContext(node_id="n", report_progress=events.append)

    context.emit_progress(ProgressState.UPDATE, 150.0, "almost")
    context.emit_progress(ProgressState.DONE)

    assert events[0] == {"node_id": "n", "state": ProgressState.UPDATE, "progress": 100.0, "text": "almost"}
    assert events[1] == {"node_id": "n", "state": ProgressState.DONE}


def test_emit_progress_without_callback_is_noop():
    ExecutionContext(node_id="n").emit_progress(ProgressState.START, 0.0)


def test_default_logger_prefixes_node_id(caplog):
    context = ExecutionContext(node_id="node-7")
    assert isinstance(context.logger, NodeLoggerAdapter)

    with caplog.at_level(logging.INFO, logger="nodes"):
        context.logger.info("hello")

    assert "[node-7] hello" in caplog.text


def test_explicit_log_is_used():
    log = logging.getLogger("custom")
    assert ExecutionContext(node_id="n", log=log).logger is log
    assert get_node_logger("x").extra == {"node_id": "x"}


def test_error_taxonomy():
    timeout = NodeTimeoutError("slow", 100)
    aggregate = AggregateNodeError("many", [ValueError("a"), ValueError("b")])
    validation = NodeValidationError("bad", [{"path": ["x"], "message": "m"}])

    assert isinstance(timeout, NodeExecutionError)
    assert timeout.timed_out is True
    assert timeout.timeout_ms == 100
    assert len(aggregate.errors) == 2
    assert validation.issues[0]["path"] == ["x"]
    assert NodeValidationError("bad").issues == []


def test_error_message_falls_back_to_class_name():
    assert error_message(ValueError("boom")) == "boom"
    assert error_message(TimeoutError()) == "TimeoutError"
