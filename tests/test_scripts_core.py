import json
import os
import runpy
import sys
from pathlib import Path

import pytest

import scripts.jws_eval as jws_eval
import scripts.mutation_test as mutation_test


def test_jws_eval_missing_files(monkeypatch, tmp_path):
    monkeypatch.setattr(jws_eval, "REPO_ROOT", tmp_path)
    report = jws_eval.run_evals()
    assert report["summary"]["failed"] >= 2
    names = {r["name"] for r in report["results"]}
    assert "testvector_signing" in names
    assert "p256_key_rejected" in names


def test_jws_eval_success():
    report = jws_eval.run_evals()
    assert report["summary"]["failed"] == 0
    assert report["summary"]["total"] == 6


def test_jws_eval_detects_unverifiable_signature(monkeypatch):
    monkeypatch.setattr(jws_eval, "signature_verifies", lambda _jws, _key: False)
    report = jws_eval.run_evals()
    failed = {r["name"] for r in report["results"] if not r["passed"]}
    assert failed == {"testvector_signature_verifies"}


def test_jws_eval_detects_accepted_tamper(monkeypatch):
    monkeypatch.setattr(jws_eval, "signature_verifies", lambda _jws, _key: True)
    report = jws_eval.run_evals()
    failed = {r["name"] for r in report["results"] if not r["passed"]}
    assert failed == {"tampered_payload_rejected"}


def test_jws_eval_detects_missing_curve_check(monkeypatch, tmp_path):
    repo_root = Path(__file__).resolve().parent.parent
    p521 = (repo_root / "es512-testvector-private-p521.pem").read_bytes()
    (tmp_path / "es512-testvector-private-p521.pem").write_bytes(p521)
    (tmp_path / "es512-testvector-private-p256.pem").write_bytes(p521)
    (tmp_path / "es512-testvector-payload.json").write_text('{"foo":"bar"}')
    monkeypatch.setattr(jws_eval, "REPO_ROOT", tmp_path)
    report = jws_eval.run_evals()
    failed = {r["name"] for r in report["results"] if not r["passed"]}
    assert failed == {"p256_key_rejected"}


def test_jws_eval_detects_header_order(monkeypatch):
    monkeypatch.setattr(jws_eval.es512ctl.JwsHeader, "to_json", lambda self: '{"kid":"x","alg":"ES512"}')
    report = jws_eval.run_evals()
    assert report["summary"]["failed"] >= 1
    assert report["results"][0]["name"] == "header_field_order"
    assert report["results"][0]["passed"] is False


def test_jws_eval_main_writes_output(tmp_path):
    out = tmp_path / "eval.json"
    assert jws_eval.main(["--output", str(out)]) == 0
    data = json.loads(out.read_text(encoding="utf-8"))
    assert data["summary"]["failed"] == 0


def test_jws_eval_main_prints(monkeypatch, capsys):
    monkeypatch.setattr(jws_eval, "run_evals", lambda: {"summary": {"failed": 0}, "results": []})
    assert jws_eval.main([]) == 0
    assert capsys.readouterr().out.strip().startswith("{")


def test_jws_eval_main_fails(monkeypatch):
    monkeypatch.setattr(jws_eval, "run_evals", lambda: {"summary": {"failed": 1}, "results": []})
    assert jws_eval.main([]) == 1


def test_jws_eval_runpath_inserts_sys_path(tmp_path, monkeypatch):
    out = tmp_path / "eval.json"
    repo_root = Path(__file__).resolve().parent.parent
    original_path = list(sys.path)
    try:
        sys.path = [p for p in sys.path if p != str(repo_root)]
        monkeypatch.setattr(sys, "argv", ["jws_eval.py", "--output", str(out)])
        with pytest.raises(SystemExit) as excinfo:
            runpy.run_path(str(repo_root / "scripts" / "jws_eval.py"), run_name="__main__")
        assert excinfo.value.code == 0
        assert str(repo_root) in sys.path
    finally:
        sys.path = original_path


def test_mutation_needles_present():
    source = (Path(__file__).resolve().parent.parent / "es512ctl.py").read_text(encoding="utf-8")
    for mutation in mutation_test.MUTATIONS:
        mutated = mutation_test.apply_mutation(source, mutation["needle"], mutation["replacement"])
        assert mutated != source


def test_mutation_apply_mutation_error():
    with pytest.raises(ValueError):
        mutation_test.apply_mutation("abc", "needle", "x")


def test_mutation_main_pass(monkeypatch, tmp_path):
    monkeypatch.setattr(mutation_test, "run_pytest", lambda env, cwd, test_path: (1, "fail"))
    assert mutation_test.main(["--output", str(tmp_path / "m.json"), "--min-score", "0.5"]) == 0
    report = json.loads((tmp_path / "m.json").read_text(encoding="utf-8"))
    assert report["summary"]["killed"] == len(mutation_test.MUTATIONS)


def test_mutation_main_fail(monkeypatch, tmp_path):
    monkeypatch.setattr(mutation_test, "run_pytest", lambda env, cwd, test_path: (0, "ok"))
    assert mutation_test.main(["--output", str(tmp_path / "m.json"), "--min-score", "1.0"]) == 1


def test_mutation_main_uses_mutated_module_first(monkeypatch, tmp_path):
    seen = []

    def fake_run_pytest(env, cwd, test_path):
        first = env["PYTHONPATH"].split(os.pathsep)[0]
        seen.append((Path(first) / "es512ctl.py").read_text(encoding="utf-8"))
        return 1, "fail"

    monkeypatch.setattr(mutation_test, "run_pytest", fake_run_pytest)
    mutation_test.main(["--output", str(tmp_path / "m.json")])
    assert len(seen) == len(mutation_test.MUTATIONS)
    assert 'minimal.ljust(size, b"\\x00")' in seen[0]


def test_mutation_run_pytest(monkeypatch, tmp_path):
    class Result:
        returncode = 0
        stdout = "out"
        stderr = "err"

    captured = {}

    def fake_run(cmd, **_kwargs):
        captured["cmd"] = cmd
        return Result()

    monkeypatch.setattr(mutation_test.subprocess, "run", fake_run)
    rc, output = mutation_test.run_pytest({}, tmp_path, tmp_path / "test.py")
    assert rc == 0
    assert "out" in output and "err" in output
    assert "pythonpath=" in captured["cmd"]


def test_mutation_main_prints(monkeypatch, capsys):
    monkeypatch.setattr(mutation_test, "run_pytest", lambda env, cwd, test_path: (1, "fail"))
    assert mutation_test.main([]) == 0
    assert capsys.readouterr().out.strip().startswith("{")
