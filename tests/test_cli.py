# tests/test_cli.py
import json

import pytest

from structgen.cli import build_parser, main

KEY_VARS = ("GEMINI_API_KEY", "GOOGLE_AI_API_KEY", "GOOGLE_API_KEY",
            "OPENAI_API_KEY", "ANTHROPIC_API_KEY")


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    for var in KEY_VARS:
        monkeypatch.delenv(var, raising=False)
    for var in ("STRUCTGEN_MAX_RETRIES", "STRUCTGEN_VARIANTS_PRO", "STRUCTGEN_VARIANTS_LITE",
                "STRUCTGEN_VARIANTS_REVIEW"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr("structgen.config.load_dotenv", lambda *a, **kw: False)
    monkeypatch.setattr("dotenv.load_dotenv", lambda *a, **kw: False)


def test_no_subcommand_prints_help(capsys):
    assert main([]) == 2
    assert "estimate" in capsys.readouterr().out


def test_estimate_single_file(tmp_path, capsys):
    path = tmp_path / "prompt.txt"
    path.write_text("I want to learn Python", encoding="utf-8")
    assert main(["estimate", str(path)]) == 0
    out = capsys.readouterr().out
    assert out.split() == ["6", str(path)]


def test_estimate_several_files_prints_total(tmp_path, capsys):
    a = tmp_path / "a.txt"
    b = tmp_path / "b.txt"
    a.write_text("abcd", encoding="utf-8")
    b.write_text("abcdefgh", encoding="utf-8")
    assert main(["estimate", str(a), str(b)]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[-1].split() == ["3", "total"]


def test_budgets_table(capsys):
    assert main(["budgets"]) == 0
    out = capsys.readouterr().out
    assert "S1" in out and "6000" in out and "5000" in out
    assert "Variants per tier: Lite=1, Pro=2, Review=1" in out


def test_budgets_from_config_file(tmp_path, capsys):
    cfg = tmp_path / "cfg.yml"
    cfg.write_text("stage_budgets:\n  S4: {max_per_turn: 10, max_total: 12345, warning_threshold: 11}\n",
                   encoding="utf-8")
    assert main(["budgets", "--config", str(cfg)]) == 0
    assert "12345" in capsys.readouterr().out


def test_run_without_api_key_reports_failure(tmp_path, capsys):
    code = main(["run", "--stage", "S1", "--prompt", "I want to learn Python",
                 "--tier", "Lite", "--session", "cli-test", "--sqlite", str(tmp_path / "s.db")])
    assert code == 1
    payload = json.loads(capsys.readouterr().out)
    assert payload["ok"] is False
    assert payload["error_code"] == "NO_API_KEY"
    assert payload["attempts"] == 1


def test_run_requires_a_prompt_source():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["run", "--stage", "S1"])


def test_run_rejects_unknown_stage():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["run", "--stage", "S7", "--prompt", "x"])
