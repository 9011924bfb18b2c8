"""
Tests for the auth context configurator
"""
import asyncio

import pytest

from authscan.context import (
    BINARY_EXCLUSIONS, COOKIE_RULE_NAME, EXCLUDE_PATTERNS, AuthContextConfigurator,
    build_cookie_header, build_include_patterns,
)
from authscan.errors import ConfigurationError, ZapApiError
from tests.conftest import no_sleep


def make_configurator(zap, settings):
    return AuthContextConfigurator(zap, settings, sleep=no_sleep)


class TestPatterns:

    def test_include_patterns_cover_domain_and_subdomains(self):
        assert build_include_patterns("https://app.example.com/login?next=/") == [
            r"https?://app\.example\.com.*",
            r"https?://.*\.app\.example\.com.*",
        ]

    def test_invalid_target_rejected(self):
        with pytest.raises(ConfigurationError):
            build_include_patterns("not a url")

    def test_cookie_header(self, cookies):
        assert build_cookie_header(cookies) == "sid=abc123; csrf=xyz"
        assert build_cookie_header([{"name": "a", "value": "1"}]) == "a=1"

    def test_binary_exclusions(self):
        assert r".*\.mp4.*" in BINARY_EXCLUSIONS
        assert r".*\.zip$" in BINARY_EXCLUSIONS
        assert r".*\.woff2$" in BINARY_EXCLUSIONS
        assert r".*logout.*" in EXCLUDE_PATTERNS


class TestCreateContext:

    def test_creates_scoped_context(self, zap, settings):
        configurator = make_configurator(zap, settings)
        context = asyncio.run(configurator.create_context("https://app.example.com", "s1"))

        assert context.context_name == "auth_scan_s1"
        assert context.context_id == "1"
        assert len(zap.called("include_in_context")) == 2
        assert len(zap.called("exclude_from_context")) == len(EXCLUDE_PATTERNS) + len(BINARY_EXCLUSIONS)
        assert zap.called("set_context_in_scope") == [("set_context_in_scope", "auth_scan_s1")]

    def test_context_creation_failure(self, zap, settings):
        zap.failures["new_context"] = [ZapApiError("Internal error", code="internal_error")]
        configurator = make_configurator(zap, settings)

        with pytest.raises(ConfigurationError):
            asyncio.run(configurator.create_context("https://app.example.com", "s1"))

    def test_scope_failure(self, zap, settings):
        zap.failures["set_context_in_scope"] = [ZapApiError("Internal error", code="internal_error")]
        configurator = make_configurator(zap, settings)

        with pytest.raises(ConfigurationError):
            asyncio.run(configurator.create_context("https://app.example.com", "s1"))

    def test_include_failure_only_warns(self, zap, settings):
        zap.failures["include_in_context"] = [ZapApiError("Bad regex", code="illegal_parameter")]
        configurator = make_configurator(zap, settings)
        context = asyncio.run(configurator.create_context("https://app.example.com", "s1"))

        assert len(context.include_patterns) == 1


class TestInjectCookies:

    def test_adds_verified_rule(self, zap, settings, cookies):
        configurator = make_configurator(zap, settings)

        async def scenario():
            context = await configurator.create_context("https://app.example.com", "s1")
            await configurator.inject_cookies(context, cookies)
            return context

        context = asyncio.run(scenario())
        assert context.cookie_rule == COOKIE_RULE_NAME
        assert zap.called("add_replacer_rule") == [
            ("add_replacer_rule", "auth_cookie", "REQ_HEADER", "Cookie", "sid=abc123; csrf=xyz")
        ]
        assert zap.rules["auth_cookie"]["enabled"] == "true"

    def test_replaces_existing_rule(self, zap, settings, cookies):
        zap.rules["auth_cookie"] = {"description": "auth_cookie", "enabled": "true", "replacement": "old=1"}
        configurator = make_configurator(zap, settings)

        async def scenario():
            context = await configurator.create_context("https://app.example.com", "s1")
            await configurator.inject_cookies(context, cookies)

        asyncio.run(scenario())
        assert zap.names().index("remove_replacer_rule") < zap.names().index("add_replacer_rule")
        assert zap.rules["auth_cookie"]["replacement"] == "sid=abc123; csrf=xyz"

    def test_no_cookies(self, zap, settings):
        configurator = make_configurator(zap, settings)

        async def scenario():
            context = await configurator.create_context("https://app.example.com", "s1")
            await configurator.inject_cookies(context, [])

        with pytest.raises(ConfigurationError):
            asyncio.run(scenario())

    def test_inactive_rule_fails_verification(self, zap, settings, cookies):
        zap.activate_rules = False
        configurator = make_configurator(zap, settings)

        async def scenario():
            context = await configurator.create_context("https://app.example.com", "s1")
            await configurator.inject_cookies(context, cookies)

        with pytest.raises(ConfigurationError):
            asyncio.run(scenario())


class TestRemove:

    def test_remove_is_idempotent(self, zap, settings, cookies):
        configurator = make_configurator(zap, settings)

        async def scenario():
            context = await configurator.create_context("https://app.example.com", "s1")
            await configurator.inject_cookies(context, cookies)
            first = await configurator.remove(context, "s1")
            second = await configurator.remove(context, "s1")
            return first, second

        first, second = asyncio.run(scenario())
        assert first == []
        assert second == []
        assert zap.contexts == {}
        assert zap.rules == {}

    def test_remove_failure_becomes_warning(self, zap, settings):
        zap.contexts["auth_scan_s1"] = "1"
        zap.failures["remove_context"] = [ZapApiError("Internal error", code="internal_error")]
        configurator = make_configurator(zap, settings)

        warnings = asyncio.run(configurator.remove(None, "s1"))
        assert warnings == ["Cleanup: failed to remove scan context"]
