"""Tests for the GlobalConfigProvider cache."""

import pytest

from envforge.core.config import BUILD_DEFAULTS, DOMAIN_DEFAULTS, GlobalConfigProvider, StaticConfigSource


@pytest.fixture()
def source():
    return StaticConfigSource({BUILD_DEFAULTS: {"engine": "buildkit"}, DOMAIN_DEFAULTS: {"host": "example.dev"}})


class TestGlobalConfigProvider:
    @pytest.mark.asyncio
    async def test_section_fetched_once(self, source):
        provider = GlobalConfigProvider(source)
        assert await provider.build_defaults() == {"engine": "buildkit"}
        assert await provider.build_defaults() == {"engine": "buildkit"}
        assert source.fetch_count == 1

    @pytest.mark.asyncio
    async def test_refresh_single_section(self, source):
        provider = GlobalConfigProvider(source)
        await provider.build_defaults()
        await provider.domain_defaults()

        source.set(BUILD_DEFAULTS, {"engine": "kaniko"})
        provider.refresh(BUILD_DEFAULTS)

        assert await provider.build_defaults() == {"engine": "kaniko"}
        assert await provider.domain_defaults() == {"host": "example.dev"}
        assert source.fetch_count == 3

    @pytest.mark.asyncio
    async def test_refresh_all(self, source):
        provider = GlobalConfigProvider(source)
        await provider.build_defaults()
        provider.refresh()
        await provider.build_defaults()
        assert source.fetch_count == 2

    @pytest.mark.asyncio
    async def test_missing_section_is_empty(self, source):
        provider = GlobalConfigProvider(source)
        assert await provider.lifecycle_defaults() == {}
