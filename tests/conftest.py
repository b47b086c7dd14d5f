from __future__ import annotations

import pytest

from fakes import FakeResourceClient
from kube_pitr.config import PITRConfig


@pytest.fixture
def resources() -> FakeResourceClient:
    return FakeResourceClient()


@pytest.fixture
def pitr_config() -> PITRConfig:
    return PITRConfig(
        restore_image="apecloud/kubeblocks-tools:test",
        data_volume_name="data",
        data_mount_path="/data",
        log_mount_path="/pitr-log",
        conflict_retries=3,
    )
