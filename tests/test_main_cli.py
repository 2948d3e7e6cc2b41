from pathlib import Path

import pytest

import main
from src.slim.output_paths import layout_output_path, parameterization_output_path

GRID_OBJ = """\
v 0 0 0
v 1 0 0
v 2 0 0.2
v 0 1 0
v 1 1 0
v 2 1 0.2
f 1 2 5
f 1 5 4
f 2 3 6
f 2 6 5
"""

CLOSED_OBJ = """\
v 0 0 0
v 1 0 0
v 0 1 0
v 0 0 1
f 1 3 2
f 1 2 4
f 1 4 3
f 2 3 4
"""


@pytest.fixture(autouse=True)
def _isolated_logs(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "state"))


def _write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_output_paths_follow_input_name():
    assert parameterization_output_path("scan/face.ply") == Path("scan/face.uv.obj")
    assert layout_output_path("scan/face.ply") == Path("scan/face.layout.png")
    assert layout_output_path("scan/face.ply", "out/flat.obj") == Path("out/flat.layout.png")
    assert layout_output_path("scan/face.ply", "out/preview.png") == Path("out/preview.png")


def test_param_command_writes_mesh_and_preview(tmp_path):
    mesh_path = _write(tmp_path, "strip.obj", GRID_OBJ)
    out = tmp_path / "out" / "flat.obj"

    code = main.run_cli(
        ["--param", str(mesh_path), str(out), "--energy", "conformal", "--iterations", "3"]
    )

    assert code == 0
    assert out.exists()
    assert (tmp_path / "out" / "flat.layout.png").exists()


def test_bare_path_uses_defaults(tmp_path):
    mesh_path = _write(tmp_path, "strip.obj", GRID_OBJ)

    assert main.run_cli([str(mesh_path)]) == 0
    assert (tmp_path / "strip.uv.obj").exists()
    assert (tmp_path / "strip.layout.png").exists()


def test_closed_mesh_fails_cleanly(tmp_path):
    mesh_path = _write(tmp_path, "closed.obj", CLOSED_OBJ)
    assert main.run_cli(["--param", str(mesh_path), "--iterations", "1"]) == 1


@pytest.mark.parametrize(
    "extra",
    [["--bogus"], ["--iterations"], ["--iterations", "many"], ["--iterations", "-1"]],
)
def test_bad_param_options(tmp_path, extra):
    mesh_path = _write(tmp_path, "strip.obj", GRID_OBJ)
    assert main.run_cli(["--param", str(mesh_path), *extra]) == 2


def test_unknown_energy_is_reported(tmp_path):
    mesh_path = _write(tmp_path, "strip.obj", GRID_OBJ)
    assert main.run_cli(["--param", str(mesh_path), "--energy", "stretchy"]) == 1


def test_unknown_command(tmp_path):
    assert main.run_cli([str(tmp_path / "missing.obj")]) == 2


def test_help_and_info(tmp_path, capsys):
    assert main.run_cli(["--help"]) == 0
    assert "Usage" in capsys.readouterr().out

    mesh_path = _write(tmp_path, "strip.obj", GRID_OBJ)
    assert main.run_cli(["--info", str(mesh_path)]) == 0
    assert "n_faces: 4" in capsys.readouterr().out

    assert main.run_cli(["--info", str(tmp_path / "missing.obj")]) == 1
