"""Configuration loading tests."""

import json

import pytest

from otterc.config import CompilerConfig, find_config, load_config


class TestLoadConfig:
    def test_defaults_without_a_file(self, tmp_path):
        config = load_config(start_dir=str(tmp_path))
        assert config == CompilerConfig()
        assert (config.target, config.entry, config.prelude) == ("native", "main", True)

    def test_yaml(self, tmp_path):
        path = tmp_path / ".otterrc.yml"
        path.write_text("target: wasm32\nentry: start\nmax_errors: 5\n")
        config = load_config(str(path))
        assert config.target == "wasm32"
        assert config.entry == "start"
        assert config.max_errors == 5
        assert config.warnings_as_errors is False

    def test_json(self, tmp_path):
        path = tmp_path / "otter.config.json"
        path.write_text(json.dumps({"prelude": False, "warnings_as_errors": True}))
        config = load_config(str(path))
        assert config.prelude is False
        assert config.warnings_as_errors is True

    def test_unknown_keys_are_ignored(self, tmp_path):
        path = tmp_path / ".otterrc.yml"
        path.write_text("target: native\ncolour: blue\n")
        assert load_config(str(path)) == CompilerConfig()

    @pytest.mark.parametrize("content", ["target: [unclosed\n", "- just\n- a list\n", ""])
    def test_malformed_yaml_gives_defaults(self, tmp_path, content):
        path = tmp_path / ".otterrc.yml"
        path.write_text(content)
        assert load_config(str(path)) == CompilerConfig()

    def test_malformed_json_gives_defaults(self, tmp_path):
        path = tmp_path / ".otterrc.json"
        path.write_text("{not json")
        assert load_config(str(path)) == CompilerConfig()

    @pytest.mark.parametrize("text,expected", [
        ('"false"', False), ('"0"', False), ('"no"', False),
        ('"true"', True), ('"1"', True), ("1", True), ("0", False),
    ])
    def test_boolean_options_parse_strings(self, tmp_path, text, expected):
        path = tmp_path / ".otterrc.yml"
        path.write_text(f"prelude: {text}\nwarnings_as_errors: {text}\n")
        config = load_config(str(path))
        assert config.prelude is expected
        assert config.warnings_as_errors is expected

    def test_unreadable_boolean_raises(self, tmp_path):
        path = tmp_path / ".otterrc.json"
        path.write_text(json.dumps({"prelude": "maybe"}))
        with pytest.raises(ValueError, match="maybe"):
            load_config(str(path))

    def test_unknown_target_raises(self, tmp_path):
        path = tmp_path / ".otterrc.yml"
        path.write_text("target: sparc\n")
        with pytest.raises(ValueError, match="sparc"):
            load_config(str(path))


class TestFindConfig:
    def test_walks_up_to_the_nearest_file(self, tmp_path):
        (tmp_path / ".otterrc.yml").write_text("entry: outer\n")
        nested = tmp_path / "src" / "pkg"
        nested.mkdir(parents=True)
        assert find_config(str(nested)) == str((tmp_path / ".otterrc.yml").resolve())
        assert load_config(start_dir=str(nested)).entry == "outer"

    def test_priority_order(self, tmp_path):
        (tmp_path / "otter.config.yml").write_text("entry: low\n")
        (tmp_path / ".otterrc.yml").write_text("entry: high\n")
        assert load_config(start_dir=str(tmp_path)).entry == "high"
