import io
import json

import pytest

try:
    import clubc as cc
except Exception as e:  # pragma: no cover
    pytest.skip(f"clubc unavailable: {e}", allow_module_level=True)


def test_compile_from_stdin(monkeypatch, capsys, scenario):
    monkeypatch.setattr("sys.stdin", io.StringIO(scenario))
    assert cc.main(["compile"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[-1] == "    ; time 350"
    assert "C,100,50,20" in out


def test_compile_file_with_labels_and_club(tmp_path, capsys, aup_file):
    src = tmp_path / "show.club"
    src.write_text("CLUBS,2\nC,9,9,9\nE\nTIME,chorus\nD,10\n")
    assert cc.main(["compile", str(src), "--club", "2", "--labels", str(aup_file)]) == 0
    assert capsys.readouterr().out.splitlines() == [
        "C,9,9,9",
        "D,1250",
        "    ; time 1250",
        "D,10",
        "    ; time 1260",
    ]


def test_compile_json_to_file(tmp_path, scenario):
    src = tmp_path / "show.club"
    src.write_text(scenario)
    dst = tmp_path / "out.json"
    assert cc.main(["compile", str(src), "--format", "json", "-o", str(dst)]) == 0
    events = json.loads(dst.read_text())
    assert [e["t"] for e in events] == [0, 200, 300]


def test_parse_dumps_tree(tmp_path, capsys):
    src = tmp_path / "show.club"
    src.write_text("L,2\nD,5\nE\n")
    assert cc.main(["parse", str(src)]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data[0]["op"] == "L"
    assert data[0]["args"] == ["2"]
    assert data[0]["children"][0]["line"] == "D,5"


def test_labels_command(capsys, aup_file):
    assert cc.main(["labels", str(aup_file)]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["chorus"] == {"start": 1250, "end": 2025}


def test_errors_go_to_stderr_with_nonzero_exit(tmp_path, capsys):
    src = tmp_path / "bad.club"
    src.write_text("TIME,100\nTIME,50\n")
    assert cc.main(["compile", str(src)]) == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "Error in line 2" in captured.err


def test_missing_file(tmp_path, capsys):
    assert cc.main(["compile", str(tmp_path / "nope.club")]) == 1
    assert "Error" in capsys.readouterr().err
