import pytest

from sncompare.config import load_json_config


def test_loads_json_object(tmp_path):
    path = tmp_path / "run.json"
    path.write_text('{"samples": [{"label": "WT", "path": "wt"}]}')
    assert load_json_config(path)["samples"][0]["label"] == "WT"


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_json_config(tmp_path / "nope.json")


def test_rejects_non_json_suffix(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text("samples: []")
    with pytest.raises(ValueError, match="Unsupported config format"):
        load_json_config(path)


def test_reports_position_of_malformed_json(tmp_path):
    path = tmp_path / "run.json"
    path.write_text('{"samples": [\n  oops ]}')
    with pytest.raises(ValueError, match="line 2"):
        load_json_config(path)


def test_rejects_non_object_root(tmp_path):
    path = tmp_path / "run.json"
    path.write_text("[1, 2]")
    with pytest.raises(ValueError, match="expected JSON object"):
        load_json_config(path)
