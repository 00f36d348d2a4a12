import logging
import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

sys.path.insert(0, os.fspath(Path(__file__).resolve().parent.parent))

import utils
from utils import (
    ConfigNotFoundError,
    InvalidConfigError,
    load_gitignore,
    load_yaml_config,
    newline_bytes,
    split_patterns,
    validate_config,
    validate_encoding,
    validate_glob_pattern,
)


def test_load_yaml_config_reads_mapping(tmp_path):
    cfg = tmp_path / "combine.yml"
    cfg.write_text(yaml.safe_dump({"patterns": ["*.py"], "output": "out.txt"}), encoding="utf-8")
    assert load_yaml_config(cfg) == {"patterns": ["*.py"], "output": "out.txt"}

def test_load_yaml_config_missing_file(tmp_path):
    with pytest.raises(ConfigNotFoundError, match="not found"):
        load_yaml_config(tmp_path / "nope.yml")

def test_load_yaml_config_empty_file(tmp_path):
    cfg = tmp_path / "empty.yml"
    cfg.write_text("", encoding="utf-8")
    with pytest.raises(InvalidConfigError, match="empty or invalid"):
        load_yaml_config(cfg)

def test_load_yaml_config_requires_mapping(tmp_path):
    cfg = tmp_path / "list.yml"
    cfg.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(InvalidConfigError, match="mapping"):
        load_yaml_config(cfg)

def test_load_yaml_config_reports_location(tmp_path):
    cfg = tmp_path / "broken.yml"
    cfg.write_text('patterns: "*.py\noutput: x\n', encoding="utf-8")
    with pytest.raises(InvalidConfigError) as excinfo:
        load_yaml_config(cfg)
    message = str(excinfo.value)
    assert "at line" in message
    assert "missing closing quotes" in message

def test_validate_config_applies_defaults():
    config = validate_config({"patterns": "*.py, *.txt,,", "output": "out.txt"})
    assert config == {
        "patterns": ["*.py", "*.txt"],
        "output": "out.txt",
        "exclude": [],
        "root": ".",
        "no_separator": False,
        "encoding": "utf-8",
        "newline": "lf",
        "max_size": utils.DEFAULT_MAX_SIZE,
        "ignore_gitignore": False,
    }

def test_validate_config_does_not_share_default_lists():
    first = validate_config({})
    first["exclude"].append("x")
    assert validate_config({})["exclude"] == []

def test_validate_config_warns_about_unknown_keys(caplog):
    with caplog.at_level(logging.WARNING):
        config = validate_config({"colour": "blue"}, source="combine.yml")
    assert "colour" not in config
    assert "Unknown setting 'colour' in combine.yml" in caplog.text

def test_validate_config_normalizes_values():
    config = validate_config({"newline": "CRLF", "max_size": "2KB", "exclude": ["a", " b "]})
    assert config["newline"] == "crlf"
    assert config["max_size"] == 2048
    assert config["exclude"] == ["a", "b"]

@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"newline": "lfcr"}, "Invalid newline type"),
        ({"encoding": "klingon-8"}, "Unknown encoding"),
        ({"max_size": "huge"}, "Invalid size value"),
        ({"no_separator": "yes"}, "'no_separator' must be a boolean"),
        ({"ignore_gitignore": 1}, "'ignore_gitignore' must be a boolean"),
        ({"output": 5}, "'output' must be a string"),
        ({"patterns": 42}, "comma-separated string or a list"),
        ({"exclude": ["ok", 3]}, "Pattern must be a string"),
    ],
)
def test_validate_config_rejects_bad_values(overrides, message):
    with pytest.raises(InvalidConfigError, match=message):
        validate_config(dict(overrides))

def test_parse_size_value():
    assert utils.parse_size_value("100") == 100
    assert utils.parse_size_value(100) == 100
    assert utils.parse_size_value("100B") == 100
    assert utils.parse_size_value("1k") == 1024
    assert utils.parse_size_value("1.5KB") == 1536
    assert utils.parse_size_value("2.5 MB") == int(2.5 * 1024 ** 2)
    assert utils.parse_size_value("1g") == 1024 ** 3
    assert utils.parse_size_value("1tb") == 1024 ** 4
    assert utils.parse_size_value("") == 0
    assert utils.parse_size_value(None) == 0

    for bad in ("invalid", "100XB", "-5", True):
        with pytest.raises(InvalidConfigError):
            utils.parse_size_value(bad)
    with pytest.raises(InvalidConfigError, match="negative"):
        utils.parse_size_value(-1)

def test_split_patterns():
    assert split_patterns("*.py, *.go ,,") == ["*.py", "*.go"]
    assert split_patterns(["a", "  ", " b"]) == ["a", "b"]
    assert split_patterns("") == []
    assert split_patterns(None) == []

def test_newline_bytes():
    assert newline_bytes("lf") == b"\n"
    assert newline_bytes("CRLF") == b"\r\n"
    assert newline_bytes("cr") == b"\r"
    with pytest.raises(InvalidConfigError, match="lf, crlf, cr"):
        newline_bytes("windows")

def test_validate_encoding():
    assert validate_encoding("latin-1") == "latin-1"
    with pytest.raises(InvalidConfigError):
        validate_encoding("not-a-codec")

def test_validate_glob_pattern_normalizes_backslashes_on_windows(caplog, monkeypatch):
    monkeypatch.setattr(utils.os, "sep", "\\")
    with caplog.at_level(logging.WARNING):
        assert validate_glob_pattern("src\\\\lib\\*.py") == "src/lib/*.py"
    assert "backslashes" in caplog.text

def test_validate_glob_pattern_keeps_backslashes_on_posix(caplog, monkeypatch):
    monkeypatch.setattr(utils.os, "sep", "/")
    with caplog.at_level(logging.WARNING):
        assert validate_glob_pattern("a\\[1\\].txt") == "a\\[1\\].txt"
    assert "backslashes" not in caplog.text

@pytest.mark.parametrize(
    "pattern, warning",
    [
        ("/abs/*.py", "absolute path"),
        ("(a|b).py", "regular expression"),
        ("[ab.py", "mismatched brackets"),
    ],
)
def test_validate_glob_pattern_warnings(pattern, warning, caplog):
    with caplog.at_level(logging.WARNING):
        assert validate_glob_pattern(pattern) == pattern
    assert warning in caplog.text

def test_validate_glob_pattern_rejects_non_strings():
    with pytest.raises(InvalidConfigError):
        validate_glob_pattern(7)

def test_load_gitignore_skips_comments_and_blank_lines(tmp_path, caplog):
    (tmp_path / ".gitignore").write_text(
        "# comment\n\nnode_modules/\n   *.pyc   \n#another\ndist\n", encoding="utf-8"
    )
    with caplog.at_level(logging.INFO):
        assert load_gitignore(tmp_path) == ["node_modules/", "*.pyc", "dist"]
    assert "Loaded 3 patterns from .gitignore" in caplog.text

def test_load_gitignore_missing_file_is_empty(tmp_path, caplog):
    with caplog.at_level(logging.WARNING):
        assert load_gitignore(tmp_path) == []
    assert caplog.text == ""

def test_load_gitignore_unreadable_file_warns(tmp_path, caplog):
    (tmp_path / ".gitignore").write_text("dist\n", encoding="utf-8")
    with patch("builtins.open", side_effect=PermissionError("denied")):
        with caplog.at_level(logging.WARNING):
            assert load_gitignore(tmp_path) == []
    assert "Could not read" in caplog.text
