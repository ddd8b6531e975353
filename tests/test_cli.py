import json

from kaleido import run_cli


def test_literal_source(capsys):
    status = run_cli(["-source", "def f(x) x * 2; f(21);", "--quiet"])
    captured = capsys.readouterr()
    assert status == 0
    assert captured.out == "Evaluated to 42.000000\n"
    assert captured.err == ""


def test_source_file(tmp_path, capsys):
    program = tmp_path / "program.ks"
    program.write_text("extern printd(x);\nprintd(1.5);\n", encoding="utf-8")
    assert run_cli([str(program), "-quiet"]) == 0
    captured = capsys.readouterr()
    assert captured.out == "1.500000\nEvaluated to 0.000000\n"


def test_units_are_dumped_by_default(capsys):
    assert run_cli(["-source", "1 + 1;"]) == 0
    captured = capsys.readouterr()
    assert "Read top-level expression:" in captured.err
    assert "Evaluated to 2.000000" in captured.out


def test_diagnostics_carry_the_file_name(tmp_path, capsys):
    program = tmp_path / "broken.ks"
    program.write_text("def f(x) y;\n", encoding="utf-8")
    assert run_cli([str(program), "--quiet"]) == 0
    captured = capsys.readouterr()
    assert f"Unknown variable name 'y' at {program}:1:10" in captured.err


def test_missing_file(tmp_path, capsys):
    assert run_cli([str(tmp_path / "nope.ks")]) == 1
    assert "Failed to read" in capsys.readouterr().err


def test_execution_error_exits_nonzero(capsys):
    assert run_cli(["-source", "extern nothere(x); nothere(1);", "--quiet"]) == 1
    assert "ExecutionError:" in capsys.readouterr().err


def test_log_json(capsys):
    assert run_cli(["-source", "def f(x) x; f(3);", "--quiet", "--log-json"]) == 0
    captured = capsys.readouterr()
    entries = json.loads(captured.err)
    assert [entry["form"] for entry in entries] == ["definition", "expression"]
    assert entries[1]["value"] == 3.0
    assert entries[0]["location"] == "<string>:1:1"


def test_undecodable_file(tmp_path, capsys):
    program = tmp_path / "binary.ks"
    program.write_bytes(b"\xff\xfe\x00def")
    assert run_cli([str(program)]) == 1
    assert "Failed to read" in capsys.readouterr().err
