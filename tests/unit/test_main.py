import json

import pytest

import main
from config.settings import EngineSettings, load_settings


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(main, "setup_logging", lambda *args, **kwargs: None)


class TestCli:
    def test_list(self, registry, capsys):
        assert main.main(["list"], registry=registry) == 0
        out = capsys.readouterr().out
        assert len(out.strip().splitlines()) == 9
        assert "csv-reader" in out

    def test_list_by_category(self, registry, capsys):
        main.main(["list", "--category", "logic"], registry=registry)
        lines = capsys.readouterr().out.strip().splitlines()
        assert sorted(line.split()[0] for line in lines) == ["loop", "parallel"]

    def test_search(self, registry, capsys):
        assert main.main(["search", "shell"], registry=registry) == 0
        assert "shell-command" in capsys.readouterr().out
        assert main.main(["search", "nothing-matches"], registry=registry) == 1

    def test_describe(self, registry, capsys):
        assert main.main(["describe", "loop"], registry=registry) == 0
        described = json.loads(capsys.readouterr().out)
        assert described["type"] == "loop"
        assert described["parameters"]["max_iterations"] == 1000
        assert [p["id"] for p in described["input_ports"]] == ["items", "data", "processor"]

    def test_describe_unknown(self, registry, capsys):
        assert main.main(["describe", "nope"], registry=registry) == 1
        assert "Unknown node type: nope" in capsys.readouterr().err

    def test_run_prints_result_json(self, registry, capsys):
        code = main.main(
            [
                "run",
                "transform",
                "--params",
                '{"transform_function": "item * 2"}',
                "--inputs",
                '{"data": [1, 2, 3]}',
            ],
            registry=registry,
        )

        result = json.loads(capsys.readouterr().out)
        assert code == 0
        assert result["success"] is True
        assert result["outputs"]["result"] == [2, 4, 6]

    def test_run_composite_graph(self, registry, capsys):
        graph = {
            "nodes": [
                {"id": "double", "type": "transform", "parameters": {"transform_function": "item * 2"}},
                {"id": "sum", "type": "transform", "parameters": {"operation": "reduce"}},
            ],
            "edges": [{"source": "double", "target": "sum", "source_handle": "result", "target_handle": "data"}],
        }

        code = main.main(
            ["run", "composite", "--inputs", '{"data": [1, 2]}', "--graph", json.dumps(graph)],
            registry=registry,
        )

        result = json.loads(capsys.readouterr().out)
        assert code == 0
        assert result["outputs"]["result"]["result"] == 6

    def test_run_failure_exit_code(self, registry, capsys):
        assert main.main(["run", "does-not-exist"], registry=registry) == 1
        assert json.loads(capsys.readouterr().out)["error"] == "Unknown node type: does-not-exist"

    def test_invalid_json_argument(self, registry):
        with pytest.raises(SystemExit):
            main.main(["run", "transform", "--params", "{not json"], registry=registry)


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("LOG_LEVEL", "ENGINE_DEFAULT_SHELL", "ENGINE_MAX_CONCURRENCY"):
            monkeypatch.delenv(name, raising=False)

        settings = load_settings()

        assert settings.log_level == "INFO"
        assert settings.default_shell == "bash"
        assert settings.max_parallel_concurrency == 50

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("ENGINE_MAX_CONCURRENCY", "4")
        monkeypatch.setenv("ENGINE_TEMP_DIR", str(tmp_path))

        settings = load_settings()

        assert settings == EngineSettings(
            log_level="DEBUG",
            default_shell=settings.default_shell,
            http_user_agent=settings.http_user_agent,
            max_parallel_concurrency=4,
            temp_dir=str(tmp_path),
        )
