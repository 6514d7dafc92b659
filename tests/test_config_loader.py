"""Tests for discord_archiver.config_loader: finding and reading the YAML file."""

import textwrap

import pytest
import yaml

from discord_archiver.config_loader import (
    CONFIG_ENV_VAR,
    ensure_config,
    expand_env,
    find_config_file,
    load_config_file,
)


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run with an empty CWD and HOME and no explicit config path."""
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    return tmp_path


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


class TestExpandEnv:
    def test_set_variable(self, monkeypatch):
        monkeypatch.setenv("ARCHIVER_TOKEN", "abc.def")
        assert expand_env("Bot ${ARCHIVER_TOKEN}") == "Bot abc.def"

    def test_fallback_for_unset_or_empty(self, monkeypatch):
        monkeypatch.delenv("UNSET_VAR_XYZ", raising=False)
        monkeypatch.setenv("EMPTY_VAR_XYZ", "")
        assert expand_env("${UNSET_VAR_XYZ:-./out}") == "./out"
        assert expand_env("${EMPTY_VAR_XYZ:-./out}") == "./out"
        assert expand_env("${UNSET_VAR_XYZ}") == ""

    def test_incomplete_reference_left_alone(self):
        assert expand_env("cost ${5") == "cost ${5"
        assert expand_env("$HOME") == "$HOME"


class TestFindConfigFile:
    def test_nothing_found(self, isolated):
        assert find_config_file() is None

    def test_explicit_path_wins(self, isolated, monkeypatch):
        explicit = _write(isolated / "custom.yml", "a: 1\n")
        _write(isolated / ".discord_archiver" / "config.yml", "b: 2\n")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(explicit))

        assert find_config_file() == explicit

    def test_project_file_before_global(self, isolated):
        _write(
            isolated / "home" / ".config" / "discord_archiver" / "config.yml",
            "d: 4\n",
        )
        alternate = _write(
            isolated / ".discord_archiver" / "config.yaml", "c: 3\n"
        )

        assert find_config_file() == alternate

    def test_global_file_as_last_resort(self, isolated):
        global_cfg = _write(
            isolated / "home" / ".config" / "discord_archiver" / "config.yml",
            "d: 4\n",
        )
        assert find_config_file() == global_cfg

    def test_missing_explicit_path_falls_through(self, isolated, monkeypatch):
        project = _write(
            isolated / ".discord_archiver" / "config.yml", "b: 2\n"
        )
        monkeypatch.setenv(CONFIG_ENV_VAR, str(isolated / "gone.yml"))

        assert find_config_file() == project


class TestLoadConfigFile:
    def test_no_file_gives_empty_dict(self, isolated):
        assert load_config_file() == {}

    def test_only_the_first_file_is_read(self, isolated):
        """A project file replaces the global one entirely."""
        _write(
            isolated / "home" / ".config" / "discord_archiver" / "config.yml",
            """\
            logging:
              level: DEBUG
            """,
        )
        _write(
            isolated / ".discord_archiver" / "config.yml",
            """\
            discord:
              channel_id: "2"
            """,
        )

        assert load_config_file() == {"discord": {"channel_id": "2"}}

    def test_env_references_are_expanded(self, isolated, monkeypatch):
        monkeypatch.setenv("API_TOKEN", "s3cret")
        monkeypatch.setenv("TAG_A", "bug")
        _write(
            isolated / ".discord_archiver" / "config.yml",
            """\
            discord:
              token: "${API_TOKEN}"
            archive:
              filter_tags: ["${TAG_A}", ui]
              max_fetch_size: 5
            """,
        )

        assert load_config_file() == {
            "discord": {"token": "s3cret"},
            "archive": {"filter_tags": ["bug", "ui"], "max_fetch_size": 5},
        }

    def test_explicit_path_argument(self, tmp_path):
        path = _write(tmp_path / "elsewhere.yml", "logging: {level: WARNING}\n")
        assert load_config_file(path) == {"logging": {"level": "WARNING"}}

    def test_empty_file_gives_empty_dict(self, isolated):
        _write(isolated / ".discord_archiver" / "config.yml", "# nothing\n")
        assert load_config_file() == {}

    def test_non_mapping_root_raises(self, isolated):
        _write(isolated / ".discord_archiver" / "config.yml", "- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config_file()

    def test_include_tags_are_rejected(self, isolated):
        _write(
            isolated / ".discord_archiver" / "config.yml",
            "discord: !include secrets.yml\n",
        )
        with pytest.raises(yaml.YAMLError):
            load_config_file()

    def test_invalid_yaml_raises(self, isolated):
        _write(isolated / ".discord_archiver" / "config.yml", "a: [1, 2\n")
        with pytest.raises(yaml.YAMLError):
            load_config_file()


class TestEnsureConfig:
    def test_creates_starter_config(self, isolated):
        path = ensure_config()

        assert path == isolated / ".discord_archiver" / "config.yml"
        content = path.read_text(encoding="utf-8")
        assert "discord-archiver configuration" in content
        # Everything is commented out, so it parses as empty
        assert yaml.safe_load(content) is None
        assert load_config_file() == {}

    def test_keeps_existing_config(self, isolated):
        existing = _write(
            isolated / ".discord_archiver" / "config.yml", "logging: {}\n"
        )

        assert ensure_config() == existing
        assert existing.read_text(encoding="utf-8") == "logging: {}\n"
