import asyncio
import logging
import os
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import Field

from core.types_registry import ExecutionContext, ExecutionResult, NodeConfigError, NodeExecutionError
from nodes.base.definition import create_node_definition
from nodes.base.executable import (
    NodeExecutable,
    create_node_executable,
    failure_result,
    get_input_value,
    result_metadata,
    success_result,
)
from nodes.base.metadata import create_node_metadata
from nodes.base.parameters import create_node_parameters
from nodes.base.ports import create_node_ports

logger = logging.getLogger(__name__)

FileOperation = Literal["read", "write", "create", "list", "delete", "copy", "move", "exists"]

file_system_parameters = create_node_parameters(
    {
        "operation": (FileOperation, Field(default="read", description="File system operation")),
        "path": (str, Field(default="", description="File or directory path")),
        "content": (str | None, Field(default=None, description="Content for write")),
        "target_path": (str | None, Field(default=None, description="Destination for copy and move")),
        "encoding": (str, Field(default="utf-8", description="Text encoding")),
        "overwrite": (bool, Field(default=True, description="Replace existing files")),
        "create_directories": (bool, Field(default=True, description="Create missing parent directories")),
        "recursive": (bool, Field(default=False, description="Recurse for list, create and delete")),
        "file_filter": (str | None, Field(default=None, description="Regex applied to names when listing")),
        "include_hidden": (bool, Field(default=False, description="Include dotfiles when listing")),
    },
    {
        "operation": "read",
        "path": "",
        "encoding": "utf-8",
        "overwrite": True,
        "create_directories": True,
        "recursive": False,
        "include_hidden": False,
    },
    {
        "operation": {
            "control_type": "select",
            "label": "Operation",
            "placeholder": "Default: read",
            "options": [
                {"value": "read", "label": "Read File"},
                {"value": "write", "label": "Write File"},
                {"value": "create", "label": "Create Directory"},
                {"value": "list", "label": "List Directory"},
                {"value": "delete", "label": "Delete"},
                {"value": "copy", "label": "Copy"},
                {"value": "move", "label": "Move"},
                {"value": "exists", "label": "Check Exists"},
            ],
        },
        "path": {"control_type": "text", "label": "Path", "placeholder": "/path/to/file.txt"},
        "content": {"control_type": "textarea", "label": "Content", "rows": 6},
        "target_path": {"control_type": "text", "label": "Target path"},
        "file_filter": {"control_type": "text", "label": "Filter", "placeholder": r"\.txt$"},
    },
    model_name="FileSystemParams",
)

file_system_definition = create_node_definition(
    id="file-system",
    type="file-system",
    metadata=create_node_metadata(
        {
            "id": "file-system",
            "name": "File System",
            "description": "Read, write, list, copy, move and delete files",
            "category": "io",
            "icon": "folder",
            "keywords": ["file", "system", "read", "write", "directory", "folder", "copy", "move", "delete"],
        }
    ),
    parameters=file_system_parameters,
    ports=create_node_ports(
        {
            "input": [
                {"id": "path", "name": "Path", "data_type": "string"},
                {"id": "content", "name": "Content", "data_type": "string"},
                {"id": "target_path", "name": "Target path", "data_type": "string"},
            ],
            "output": [
                {"id": "result", "name": "Result", "data_type": "any"},
                {"id": "content", "name": "Content", "data_type": "string"},
                {"id": "files", "name": "Files", "data_type": "array"},
                {"id": "exists", "name": "Exists", "data_type": "boolean"},
            ],
            "error": [{"id": "error", "name": "Error", "data_type": "string"}],
        }
    ),
)


def path_stats(path: Path) -> dict[str, Any]:
    try:
        stat = path.stat()
    except OSError:
        return {"exists": False, "size": 0, "modified": None, "is_directory": False, "is_file": False}
    return {
        "exists": True,
        "size": stat.st_size,
        "modified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
        "is_directory": path.is_dir(),
        "is_file": path.is_file(),
    }


def _read(path: Path, params: dict[str, Any], content: Any, target: Any) -> dict[str, Any]:
    if not path.exists():
        raise NodeExecutionError(f"File does not exist: {path}")
    if not path.is_file():
        raise NodeExecutionError(f"Path is not a file: {path}")
    text = path.read_text(encoding=params["encoding"])
    return {"result": text, "content": text}


def _write(path: Path, params: dict[str, Any], content: Any, target: Any) -> dict[str, Any]:
    if content is None:
        raise NodeConfigError("Content is required for write")
    if not params["overwrite"] and path.exists():
        raise NodeExecutionError(f"File already exists and overwrite is disabled: {path}")
    if params["create_directories"]:
        path.parent.mkdir(parents=True, exist_ok=True)
    text = content if isinstance(content, str) else str(content)
    path.write_text(text, encoding=params["encoding"])
    return {"result": str(path), "content": text}


def _create(path: Path, params: dict[str, Any], content: Any, target: Any) -> dict[str, Any]:
    if path.is_dir():
        return {"result": str(path), "created": False}
    path.mkdir(parents=params["recursive"] or params["create_directories"], exist_ok=True)
    return {"result": str(path), "created": True}


def _list(path: Path, params: dict[str, Any], content: Any, target: Any) -> dict[str, Any]:
    if not path.exists():
        raise NodeExecutionError(f"Directory does not exist: {path}")
    if not path.is_dir():
        raise NodeExecutionError(f"Path is not a directory: {path}")
    pattern = re.compile(params["file_filter"]) if params.get("file_filter") else None
    entries = path.rglob("*") if params["recursive"] else path.iterdir()
    files: list[str] = []
    for entry in sorted(entries):
        relative = entry.relative_to(path)
        if not params["include_hidden"] and any(part.startswith(".") for part in relative.parts):
            continue
        if pattern is not None and not pattern.search(entry.name):
            continue
        files.append(str(entry))
    return {"result": files, "files": files, "count": len(files)}


def _delete(path: Path, params: dict[str, Any], content: Any, target: Any) -> dict[str, Any]:
    if not path.exists():
        raise NodeExecutionError(f"Path does not exist: {path}")
    if path.is_dir():
        if params["recursive"]:
            shutil.rmtree(path)
        else:
            path.rmdir()
    else:
        path.unlink()
    return {"result": str(path), "deleted": True}


def _transfer(path: Path, params: dict[str, Any], target: Any, move: bool) -> dict[str, Any]:
    if not target:
        raise NodeConfigError(f"target_path is required for {'move' if move else 'copy'}")
    destination = Path(target)
    if not path.exists():
        raise NodeExecutionError(f"Source does not exist: {path}")
    if destination.exists() and not params["overwrite"]:
        raise NodeExecutionError(f"Target already exists and overwrite is disabled: {destination}")
    if params["create_directories"]:
        destination.parent.mkdir(parents=True, exist_ok=True)
    if move:
        shutil.move(str(path), str(destination))
    elif path.is_dir():
        shutil.copytree(path, destination, dirs_exist_ok=params["overwrite"])
    else:
        shutil.copy2(path, destination)
    return {"result": str(destination), "target_path": str(destination)}


def _copy(path: Path, params: dict[str, Any], content: Any, target: Any) -> dict[str, Any]:
    return _transfer(path, params, target, move=False)


def _move(path: Path, params: dict[str, Any], content: Any, target: Any) -> dict[str, Any]:
    return _transfer(path, params, target, move=True)


def _exists(path: Path, params: dict[str, Any], content: Any, target: Any) -> dict[str, Any]:
    return {"result": path.exists()}


OPERATIONS = {
    "read": _read,
    "write": _write,
    "create": _create,
    "list": _list,
    "delete": _delete,
    "copy": _copy,
    "move": _move,
    "exists": _exists,
}

_FAILURE_VERBS = {
    "read": "read file",
    "write": "write file",
    "create": "create directory",
    "list": "list directory",
    "delete": "delete",
    "copy": "copy",
    "move": "move",
    "exists": "check path",
}


def create_file_system_executable() -> NodeExecutable:
    async def execute(context: ExecutionContext, params: dict[str, Any]) -> ExecutionResult:
        raw_path = get_input_value(context, "path", params)
        if not raw_path:
            return failure_result("Path is required")
        operation = params["operation"]
        path = Path(os.path.expanduser(str(raw_path)))
        content = get_input_value(context, "content", params)
        target = get_input_value(context, "target_path", params)

        try:
            outputs = await asyncio.to_thread(OPERATIONS[operation], path, params, content, target)
        except (OSError, UnicodeError, LookupError, NodeExecutionError, NodeConfigError, re.error) as e:
            context.logger.error(f"File system {operation} failed for {path}: {e}")
            return failure_result(f"Failed to {_FAILURE_VERBS[operation]}: {e}")

        stats_path = Path(outputs["target_path"]) if operation in ("copy", "move") else path
        outputs = {**outputs, **path_stats(stats_path), "path": str(path), "success": True}
        context.logger.info(f"File system {operation} completed for {path}")
        return success_result(outputs, **result_metadata(context, "file-system", operation=operation))

    return create_node_executable(execute, validate_config=file_system_parameters.parse)
