import json

import pytest

import load_runner_cli
from run_stats import RunStats


@pytest.fixture
def files(tmp_path):
    config_path = tmp_path / "config.json"
    api_path = tmp_path / "api.json"
    config_path.write_text(json.dumps({
        "totalRequests": 2,
        "concurrency": 1,
        "workflow": ["ping"],
        "baseURL": "http://127.0.0.1:9",
    }), encoding="utf-8")
    api_path.write_text(json.dumps({"ping": {"url": "/ping"}}), encoding="utf-8")
    return config_path, api_path


@pytest.fixture
def fake_run(monkeypatch):
    captured = {}

    async def run(self):
        captured["config"] = self.config
        return RunStats(total_requests=2, success_requests=2, status_codes={200: 2}, percentiles={50: 0.01})

    monkeypatch.setattr(load_runner_cli.LoadRunner, "run", run)
    return captured


def test_parse_args_defaults():
    args = load_runner_cli.parse_args([])
    assert args.config == "config.json"
    assert args.api == "api.json"
    assert args.testdata is None
    assert args.cycle_test_data is False
    assert args.as_json is False


def test_main_prints_text_report(files, fake_run, capsys):
    config_path, api_path = files
    code = load_runner_cli.main(["--config", str(config_path), "--api", str(api_path), "--concurrency", "4", "--cycle-test-data"])

    assert code == 0
    assert fake_run["config"].concurrency == 4
    assert fake_run["config"].test_data_mode == "cycle"
    out = capsys.readouterr().out
    assert "Total requests: 2" in out
    assert "p50: 10.00ms" in out


def test_main_prints_json(files, fake_run, capsys):
    config_path, api_path = files
    code = load_runner_cli.main(["--config", str(config_path), "--api", str(api_path), "--json"])

    assert code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["total_requests"] == 2
    assert payload["success_rate"] == 100.0
    assert payload["status_codes"] == {"200": 2}


def test_main_rejects_undefined_step(tmp_path, fake_run):
    config_path = tmp_path / "config.json"
    api_path = tmp_path / "api.json"
    config_path.write_text(json.dumps({"workflow": ["login"], "baseURL": "http://x"}), encoding="utf-8")
    api_path.write_text(json.dumps({}), encoding="utf-8")

    assert load_runner_cli.main(["--config", str(config_path), "--api", str(api_path)]) == 2
    assert "config" not in fake_run


def test_main_reports_missing_files(tmp_path):
    assert load_runner_cli.main(["--config", str(tmp_path / "nope.json"), "--api", str(tmp_path / "nope2.json")]) == 2
