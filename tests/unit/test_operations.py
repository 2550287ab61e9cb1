import pytest

from core.operations import invoke_node, is_node_invocation, operation_factory, processor_factory
from core.types_registry import ExecutionContext, NodeConfigError, NodeExecutionError


@pytest.fixture
def parent():
    return ExecutionContext(node_id="parent")


def test_is_node_invocation():
    assert is_node_invocation({"type": "transform"}) is True
    assert is_node_invocation({"type": 3}) is False
    assert is_node_invocation("transform") is False


@pytest.mark.asyncio
async def test_operation_factory_shapes(parent):
    async def async_op():
        return "async"

    assert await operation_factory(lambda: "sync", 0, parent, None)() == "sync"
    assert await operation_factory(async_op, 1, parent, None)() == "async"
    assert await operation_factory({"plain": "value"}, 2, parent, None)() == {"plain": "value"}


@pytest.mark.asyncio
async def test_invocation_without_registry(parent):
    with pytest.raises(NodeConfigError, match="without a registry"):
        await operation_factory({"type": "transform"}, 0, parent, None)()


@pytest.mark.asyncio
async def test_invoke_node_child_context(registry, parent):
    outputs = await invoke_node(
        registry,
        {"type": "transform", "parameters": {"operation": "reverse"}, "inputs": {"data": [1, 2]}},
        parent,
        "parent:0",
    )
    assert outputs["result"] == [2, 1]


@pytest.mark.asyncio
async def test_invoke_node_failure_raises(registry, parent):
    with pytest.raises(NodeExecutionError, match="Unknown node type: nope"):
        await invoke_node(registry, {"type": "nope"}, parent, "parent:0")


@pytest.mark.asyncio
async def test_processor_factory(parent):
    passthrough = processor_factory(None, parent, None)
    callable_body = processor_factory(lambda value, index: (value, index), parent, None)

    assert await passthrough("x", 3) == "x"
    assert await callable_body("x", 3) == ("x", 3)
    with pytest.raises(NodeConfigError):
        processor_factory("not a processor", parent, None)
