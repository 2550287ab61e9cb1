import asyncio
import io
import logging
from typing import Any

import pandas as pd
from pydantic import Field

from core.types_registry import ExecutionContext, ExecutionResult
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

csv_reader_parameters = create_node_parameters(
    {
        "path": (str, Field(default="", description="Path to the CSV file")),
        "csv_data": (str | None, Field(default=None, description="Inline CSV text used instead of a file")),
        "delimiter": (str, Field(default=",", min_length=1, description="Field delimiter")),
        "has_header": (bool, Field(default=True, description="First row holds column names")),
        "encoding": (str, Field(default="utf-8", description="File encoding")),
        "skip_empty_lines": (bool, Field(default=True, description="Ignore blank lines")),
        "limit": (int | None, Field(default=None, ge=1, description="Maximum rows to read")),
    },
    {
        "path": "",
        "delimiter": ",",
        "has_header": True,
        "encoding": "utf-8",
        "skip_empty_lines": True,
    },
    {
        "path": {"control_type": "text", "label": "Path", "placeholder": "data/input.csv", "required": True},
        "has_header": {"control_type": "boolean", "label": "Has headers", "placeholder": "Default: true"},
        "delimiter": {
            "control_type": "text",
            "label": "Delimiter",
            "placeholder": "Default: ,",
            "options": [
                {"value": ",", "label": "Comma (,)"},
                {"value": ";", "label": "Semicolon (;)"},
                {"value": "\t", "label": "Tab"},
                {"value": "|", "label": "Pipe (|)"},
            ],
        },
        "limit": {"control_type": "number", "label": "Row limit", "min": 1},
    },
    model_name="CsvReaderParams",
)

csv_reader_definition = create_node_definition(
    id="csv-reader",
    type="csv-reader",
    metadata=create_node_metadata(
        {
            "id": "csv-reader",
            "name": "CSV Reader",
            "description": "Read CSV files into rows of records",
            "category": "data",
            "icon": "table",
            "keywords": ["csv", "reader", "spreadsheet", "table", "parse", "data", "import"],
        }
    ),
    parameters=csv_reader_parameters,
    ports=create_node_ports(
        {
            "input": [
                {"id": "path", "name": "Path", "data_type": "string"},
                {"id": "csv_data", "name": "CSV data", "data_type": "string"},
            ],
            "output": [
                {"id": "result", "name": "Result", "data_type": "array"},
                {"id": "data", "name": "Data", "data_type": "array"},
                {"id": "headers", "name": "Headers", "data_type": "array"},
                {"id": "row_count", "name": "Row count", "data_type": "number"},
            ],
            "error": [{"id": "error", "name": "Error", "data_type": "string"}],
        }
    ),
)


def read_frame(source: Any, params: dict[str, Any]) -> pd.DataFrame:
    try:
        frame = pd.read_csv(
            source,
            sep=params["delimiter"],
            header=0 if params["has_header"] else None,
            encoding=params["encoding"],
            skip_blank_lines=params["skip_empty_lines"],
            nrows=params.get("limit"),
            dtype=str,
            keep_default_na=False,
        )
    except pd.errors.EmptyDataError:
        return pd.DataFrame()
    if not params["has_header"]:
        frame.columns = [f"column_{i + 1}" for i in range(len(frame.columns))]
    return frame


def create_csv_reader_executable() -> NodeExecutable:
    async def execute(context: ExecutionContext, params: dict[str, Any]) -> ExecutionResult:
        csv_data = get_input_value(context, "csv_data", params)
        path = get_input_value(context, "path", params)
        if csv_data is None and not path:
            return failure_result("Either a path or csv_data is required")

        source: Any = io.StringIO(csv_data) if csv_data is not None else path
        try:
            frame = await asyncio.to_thread(read_frame, source, params)
        except (OSError, ValueError, pd.errors.ParserError) as e:
            context.logger.error(f"Failed to read CSV {path or '<inline>'}: {e}")
            return failure_result(f"Failed to read CSV: {e}")

        headers = [str(c) for c in frame.columns]
        records = frame.to_dict(orient="records")
        context.logger.info(f"Read {len(records)} rows with {len(headers)} columns")
        outputs = {
            "result": records,
            "data": records,
            "headers": headers,
            "row_count": len(records),
            "column_count": len(headers),
            "success": True,
        }
        return success_result(outputs, **result_metadata(context, "csv-reader"))

    return create_node_executable(execute, validate_config=csv_reader_parameters.parse)
