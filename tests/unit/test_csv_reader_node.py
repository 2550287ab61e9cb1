import pytest

SAMPLE = "name,age\nalice,30\nbob,25\n\ncarol,41\n"


async def _run(registry, make_context, params, inputs=None):
    return await registry.execute("csv-reader", make_context(inputs or {}, params, node_id="csv-1"))


class TestCsvReaderNode:
    @pytest.mark.asyncio
    async def test_reads_file_with_header(self, registry, make_context, tmp_path):
        path = tmp_path / "people.csv"
        path.write_text(SAMPLE)

        result = await _run(registry, make_context, {"path": str(path)})

        assert result.success is True
        outputs = result.outputs
        assert outputs["headers"] == ["name", "age"]
        assert outputs["row_count"] == 3
        assert outputs["column_count"] == 2
        assert outputs["data"][0] == {"name": "alice", "age": "30"}
        assert outputs["result"] == outputs["data"]

    @pytest.mark.asyncio
    async def test_inline_data_without_header(self, registry, make_context):
        result = await _run(registry, make_context, {"has_header": False}, {"csv_data": "1,2\n3,4"})

        assert result.outputs["headers"] == ["column_1", "column_2"]
        assert result.outputs["row_count"] == 2
        assert result.outputs["data"][1] == {"column_1": "3", "column_2": "4"}

    @pytest.mark.asyncio
    async def test_custom_delimiter(self, registry, make_context):
        result = await _run(registry, make_context, {"delimiter": ";", "has_header": False, "csv_data": "1;2\n3;4"})

        assert result.outputs["headers"] == ["column_1", "column_2"]
        assert result.outputs["data"] == [
            {"column_1": "1", "column_2": "2"},
            {"column_1": "3", "column_2": "4"},
        ]

    @pytest.mark.asyncio
    async def test_limit(self, registry, make_context):
        result = await _run(registry, make_context, {"csv_data": SAMPLE, "limit": 2})
        assert [row["name"] for row in result.outputs["data"]] == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_empty_values_stay_strings(self, registry, make_context):
        result = await _run(registry, make_context, {"csv_data": "a,b\n1,\n"})
        assert result.outputs["data"] == [{"a": "1", "b": ""}]

    @pytest.mark.asyncio
    async def test_empty_input(self, registry, make_context):
        result = await _run(registry, make_context, {"csv_data": ""})

        assert result.success is True
        assert result.outputs["row_count"] == 0
        assert result.outputs["headers"] == []

    @pytest.mark.asyncio
    async def test_missing_file(self, registry, make_context, tmp_path):
        result = await _run(registry, make_context, {"path": str(tmp_path / "missing.csv")})

        assert result.success is False
        assert result.error.startswith("Failed to read CSV")

    @pytest.mark.asyncio
    async def test_requires_a_source(self, registry, make_context):
        result = await _run(registry, make_context, {})

        assert result.success is False
        assert result.error == "Either a path or csv_data is required"
