from __future__ import annotations

from unittest import mock

import pytest
import yaml

from decom_libs.common import UtilsForTesting
from tests.unit.conftest import get_dummy_config


def get_fake_spicerack(tmp_path, fake_remote: mock.MagicMock | None = None) -> mock.MagicMock:
    fake_spicerack = UtilsForTesting.get_fake_spicerack(fake_remote=fake_remote or UtilsForTesting.get_fake_remote())
    fake_spicerack.config_dir = tmp_path
    fake_spicerack.sal_logger = mock.MagicMock()
    fake_spicerack.sal_logger.handlers = []
    fake_spicerack.dry_run = False
    return fake_spicerack


@pytest.fixture
def config_dir(tmp_path):
    (tmp_path / "decom.yaml").write_text(yaml.safe_dump({"clusters": get_dummy_config().clusters}))
    return tmp_path
