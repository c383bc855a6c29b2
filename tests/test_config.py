"""Tests for settings, option models and configuration assembly."""

import pytest
from pydantic import ValidationError

from jupyter_kernel_session.config import (
    ClientSettings,
    CoreOptions,
    ServerSettings,
    deep_merge,
    default_options,
    make_configuration,
)
from jupyter_kernel_session.events import make_events


class TestClientSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("KERNEL_SESSION_BASE_URL", raising=False)
        settings = ClientSettings(_env_file=None)
        assert settings.BASE_URL == "http://localhost:8888"
        assert settings.KERNEL_NAME == "python3"
        assert settings.EXECUTE_TIMEOUT is None

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("KERNEL_SESSION_BASE_URL", "https://hub.example.org/user/me")
        monkeypatch.setenv("KERNEL_SESSION_READY_TIMEOUT", "5")
        settings = ClientSettings(_env_file=None)
        assert settings.BASE_URL == "https://hub.example.org/user/me"
        assert settings.READY_TIMEOUT == 5.0

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValidationError):
            ClientSettings(_env_file=None, READY_TIMEOUT=0)


class TestServerSettings:
    def test_trailing_slash_stripped(self):
        settings = ServerSettings(base_url="http://localhost:8888/")
        assert settings.base_url == "http://localhost:8888"

    def test_rejects_non_http_url(self):
        with pytest.raises(ValidationError):
            ServerSettings(base_url="ftp://localhost")

    def test_websocket_url_derived(self):
        assert ServerSettings(base_url="https://a.b/c").websocket_url() == "wss://a.b/c"
        assert ServerSettings(base_url="http://a.b").websocket_url() == "ws://a.b"

    def test_explicit_websocket_url(self):
        settings = ServerSettings(base_url="http://a.b", ws_url="ws://other:9000/")
        assert settings.websocket_url() == "ws://other:9000"

    def test_auth_headers(self):
        assert ServerSettings(base_url="http://a.b").auth_headers() == {}
        assert ServerSettings(base_url="http://a.b", token="t0k").auth_headers() == {
            "Authorization": "token t0k"
        }

    def test_frozen(self):
        settings = ServerSettings(base_url="http://a.b")
        with pytest.raises(ValidationError):
            settings.token = "changed"


class TestDeepMerge:
    def test_nested_merge(self):
        base = {"a": {"x": 1, "y": 2}, "b": 1}
        merged = deep_merge(base, {"a": {"y": 3}})
        assert merged == {"a": {"x": 1, "y": 3}, "b": 1}
        # Inputs untouched
        assert base == {"a": {"x": 1, "y": 2}, "b": 1}

    def test_none_never_overrides(self):
        assert deep_merge({"a": 1}, {"a": None}) == {"a": 1}

    def test_scalar_replaces_dict(self):
        assert deep_merge({"a": {"x": 1}}, {"a": 5}) == {"a": 5}


class TestMakeConfiguration:
    def test_defaults(self, settings):
        config = make_configuration(None, settings=settings)

        assert config.server_settings.base_url == "http://jupyter.test:8888"
        assert config.server_settings.token == "secret"
        assert config.kernel_options.kernel_name == "python3"
        assert config.binder_options.repo == "binder-examples/requirements"
        assert config.binder_options.binder_url == "https://mybinder.org"
        assert config.saved_session_options.enabled is False
        assert config.ready_timeout == 1.0

    def test_partial_dict_options(self, settings):
        config = make_configuration(
            {"server_settings": {"token": "override"}, "kernel_options": {"kernel_name": "ir"}},
            settings=settings,
        )
        assert config.server_settings.base_url == "http://jupyter.test:8888"
        assert config.server_settings.token == "override"
        assert config.kernel_options.kernel_name == "ir"
        assert config.kernel_options.path == "."

    def test_core_options_only_set_fields_override(self, settings):
        options = CoreOptions(server_settings=ServerSettings(base_url="http://other:1234"))
        config = make_configuration(options, settings=settings)

        assert config.server_settings.base_url == "http://other:1234"
        assert config.binder_options.repo == "binder-examples/requirements"

    def test_other_server_does_not_inherit_default_token(self, settings):
        options = CoreOptions(server_settings=ServerSettings(base_url="http://other.example:9999"))
        config = make_configuration(options, settings=settings)

        assert config.server_settings.token == ""
        assert config.server_settings.auth_headers() == {}

    def test_same_server_keeps_default_token(self, settings):
        config = make_configuration(
            {"server_settings": {"base_url": "http://jupyter.test:8888/", "append_token": True}},
            settings=settings,
        )
        assert config.server_settings.token == "secret"
        assert config.server_settings.append_token is True

    def test_other_server_with_its_own_token(self, settings):
        config = make_configuration(
            {"server_settings": {"base_url": "http://other.example:9999", "token": "theirs"}},
            settings=settings,
        )
        assert config.server_settings.auth_headers() == {"Authorization": "token theirs"}

    def test_events_bound_but_not_serialized(self, settings):
        events = make_events()
        config = make_configuration(None, events=events, settings=settings)

        assert config.events is events
        assert "events" not in config.model_dump()

    def test_unknown_option_rejected(self, settings):
        with pytest.raises(ValidationError):
            make_configuration({"no_such_option": True}, settings=settings)

    def test_default_options_from_settings(self, settings):
        options = default_options(settings)
        assert options.server_settings.token == "secret"
        assert options.mathjax.config == "TeX-AMS_CHTML-full,Safe"
