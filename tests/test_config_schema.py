"""Tests for the unified config schema (Pydantic models)."""

import pytest
from pydantic import ValidationError

from discord_archiver.config_schema import (
    ArchiveConfig,
    DiscordConfig,
    FormatterConfig,
    LoggingConfig,
    UnifiedConfig,
    build_config,
    to_fallbacks,
)


class TestDefaults:
    def test_zero_config_is_valid(self):
        unified = build_config({})
        assert unified == UnifiedConfig()
        assert unified.discord.token is None
        assert unified.logging.level == "INFO"
        assert unified.format.marker_template == "### Message {id}"

    def test_missing_sections_get_defaults(self):
        unified = build_config({"logging": {"level": "DEBUG"}})
        assert unified.logging.level == "DEBUG"
        assert unified.archive == ArchiveConfig()


class TestDiscordConfig:
    def test_numeric_channel_id_is_coerced(self):
        """Unquoted snowflakes in YAML arrive as int."""
        assert DiscordConfig(channel_id=123456789012345678).channel_id == (
            "123456789012345678"
        )


class TestArchiveConfig:
    @pytest.mark.parametrize(
        "field, value",
        [
            ("max_fetch_size", 0),
            ("max_fetch_size", 101),
            ("reply_timeout", 0),
            ("max_parallel_backfills", 33),
        ],
    )
    def test_out_of_range_values_rejected(self, field, value):
        with pytest.raises(ValidationError):
            ArchiveConfig(**{field: value})


class TestFormatterConfig:
    @pytest.mark.parametrize(
        "field",
        ["marker_template", "reply_link_template", "reply_deleted_template"],
    )
    def test_id_placeholder_required(self, field):
        with pytest.raises(ValidationError, match="must contain"):
            FormatterConfig(**{field: "no placeholder"})

    def test_whitespace_fence_rejected(self):
        with pytest.raises(ValidationError, match="whitespace"):
            FormatterConfig(fence_char=" ")

    def test_multi_char_fence_rejected(self):
        with pytest.raises(ValidationError):
            FormatterConfig(fence_char="``")

    def test_short_fence_rejected(self):
        with pytest.raises(ValidationError):
            FormatterConfig(min_fence_length=2)

    def test_marker_starting_with_fence_rejected(self):
        with pytest.raises(ValidationError, match="fence character"):
            FormatterConfig(marker_template="```{id}")

    def test_separator_of_fence_chars_rejected(self):
        with pytest.raises(ValidationError, match="separator"):
            FormatterConfig(fence_char="-")

    def test_custom_templates_accepted(self):
        cfg = FormatterConfig(
            marker_template="## {id}",
            fence_char="~",
            separator="***",
        )
        assert cfg.marker_template == "## {id}"


class TestLoggingConfig:
    def test_unknown_format_rejected(self):
        with pytest.raises(ValidationError):
            LoggingConfig(format="xml")


class TestToFallbacks:
    def test_drops_unset_values(self):
        assert to_fallbacks(UnifiedConfig()) == {}

    def test_flattens_discord_and_archive(self):
        unified = build_config(
            {
                "discord": {"token": "tok", "channel_id": "100"},
                "archive": {
                    "output_root": "/srv/archive",
                    "filter_tags": ["bug"],
                    "reply_timeout": 2.5,
                },
            }
        )
        assert to_fallbacks(unified) == {
            "api_token": "tok",
            "channel_id": "100",
            "output_root": "/srv/archive",
            "filter_tags": ["bug"],
            "reply_timeout": 2.5,
        }
