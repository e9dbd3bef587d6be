"""Shared fixtures: mocked GitHub adapter and builder, fake clock, wired
manager."""

from unittest.mock import MagicMock

import pytest
from helpers import FakeClock

from prsite.adapters.base import GitPlatformAdapter
from prsite.builder import SiteBuilder
from prsite.comments import CommentComposer, TemplateRegistry, register_default_templates
from prsite.instances import InstanceManager
from prsite.ports import PortAllocator
from prsite.scheduler import DelayedScheduler


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler(clock: FakeClock) -> DelayedScheduler:
    return DelayedScheduler(clock=clock)


@pytest.fixture
def adapter() -> MagicMock:
    return MagicMock(spec=GitPlatformAdapter)


@pytest.fixture
def builder() -> MagicMock:
    return MagicMock(spec=SiteBuilder)


@pytest.fixture
def composer(adapter: MagicMock) -> CommentComposer:
    return CommentComposer(
        register_default_templates(TemplateRegistry()),
        adapter,
        link_domain="preview.example.com",
        bot_login=lambda: "prsite-bot",
    )


@pytest.fixture
def ports() -> PortAllocator:
    return PortAllocator(9000, 9003)


@pytest.fixture
def manager(
    ports: PortAllocator,
    builder: MagicMock,
    composer: CommentComposer,
    scheduler: DelayedScheduler,
) -> InstanceManager:
    return InstanceManager(ports, builder, composer, scheduler=scheduler)
