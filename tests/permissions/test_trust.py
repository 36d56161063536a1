"""Tests for trust flag parsing."""

import pytest

from tessera.permissions.trust import (
    TrustDirectives,
    TrustEffect,
    TrustFlagConfig,
    TrustFlagPresets,
    TrustTarget,
)


class TestParseArgs:
    def test_equals_form(self):
        directives = TrustFlagConfig().parse_args(["--trust-plugin=hello", "--trust-command=db:migrate"])
        assert directives.trusted_plugins == ["hello"]
        assert directives.trusted_commands == ["db:migrate"]

    def test_separate_value(self):
        directives = TrustFlagConfig().parse_args(["--trust-plugin", "hello", "run"])
        assert directives.trusted_plugins == ["hello"]

    def test_unrelated_args_ignored(self):
        directives = TrustFlagConfig().parse_args(["run", "--verbose", "--trust-plugin"])
        assert not directives.has_any()

    def test_empty_name_ignored(self):
        assert not TrustFlagConfig().parse_args(["--trust-plugin="]).has_any()

    def test_disabled(self):
        directives = TrustFlagPresets.disabled().parse_args(["--trust-plugin=hello"])
        assert not directives.has_any()

    def test_custom_template(self):
        config = TrustFlagPresets.allow_style()
        assert config.generate_flag(TrustTarget.COMMAND) == "--allow-command"
        directives = config.parse_args(["--allow-plugin=hello", "--trust-plugin=other"])
        assert directives.trusted_plugins == ["hello"]

    def test_alias(self):
        config = TrustFlagPresets.short_style()
        directives = config.parse_args(["-ta", "-tplugin=x"])
        assert directives.trust_all
        assert directives.trusted_plugins == ["x"]

    def test_session_alias(self):
        config = TrustFlagConfig().with_alias("--session", TrustEffect.trust_session())
        assert config.aliases[0].description == "Trust permissions for this session only"
        assert config.parse_args(["--session"]).trust_session


class TestSplitArgs:
    def test_leading_flags_are_consumed(self):
        directives, rest = TrustFlagConfig().split_args(
            ["--trust-plugin", "hello", "--trust-command=db", "db", "--force"]
        )
        assert directives.trusted_plugins == ["hello"]
        assert directives.trusted_commands == ["db"]
        assert rest == ["db", "--force"]

    def test_flags_after_name_are_left_alone(self):
        directives, rest = TrustFlagConfig().split_args(["db", "--trust-plugin=hello"])
        assert not directives.has_any()
        assert rest == ["db", "--trust-plugin=hello"]

    def test_flag_without_value_ends_parsing(self):
        directives, rest = TrustFlagConfig().split_args(["--trust-plugin"])
        assert not directives.has_any()
        assert rest == ["--trust-plugin"]

    def test_alias(self):
        config = TrustFlagConfig().with_alias("--session", TrustEffect.trust_session())
        directives, rest = config.split_args(["--session", "db"])
        assert directives.trust_session
        assert rest == ["db"]

    def test_disabled(self):
        directives, rest = TrustFlagPresets.disabled().split_args(["--trust-plugin=hello", "db"])
        assert not directives.has_any()
        assert rest == ["--trust-plugin=hello", "db"]


class TestDirectives:
    def test_is_trusted(self):
        directives = TrustDirectives(trusted_plugins=["hello"], trusted_commands=["db"])
        assert directives.is_plugin_trusted("hello")
        assert not directives.is_plugin_trusted("db")
        assert directives.is_command_trusted("db")

    def test_trust_all_trusts_everything(self):
        directives = TrustDirectives(trust_all=True)
        assert directives.is_plugin_trusted("anything")
        assert directives.is_command_trusted("anything")

    @pytest.mark.parametrize(
        "directives,expected",
        [
            (TrustDirectives(), False),
            (TrustDirectives(trust_session=True), True),
            (TrustDirectives(trusted_commands=["x"]), True),
        ],
    )
    def test_has_any(self, directives, expected):
        assert directives.has_any() is expected


def test_generate_help():
    config = TrustFlagConfig()
    assert config.generate_help(TrustTarget.PLUGIN, "hello") == "Trust plugin 'hello' for this run"
    assert TrustEffect.named(TrustTarget.COMMAND, "db").description == "Trust command 'db'"
