from __future__ import annotations

import pytest

from intenthealer.config.schema import HealerConfig
from intenthealer.core.context import HealerContext
from intenthealer.logging.artifacts import ArtifactManager
from tests.helpers import FakeClock


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def artifact_manager(tmp_path):
    return ArtifactManager(tmp_path / "artifacts")


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def make_context(tmp_path, sleeps):
    def build(providers=None, config=None, **kwargs) -> HealerContext:
        return HealerContext.create(
            config or HealerConfig(),
            providers or {},
            artifacts_root=str(tmp_path / "artifacts"),
            sleep=sleeps.append,
            **kwargs,
        )

    return build
