"""容器装配测试：连接器同步实现由配置加载。"""

from __future__ import annotations

from datetime import datetime

import pytest

from gtm_orchestrator.application.container import load_connector_syncer
from gtm_orchestrator.config import Settings
from gtm_orchestrator.domain.enums import SyncMode


class StaticSyncer:
    def sync(self, workspace_id: str, mode: SyncMode, since: datetime | None) -> int:
        return 7


def test_connector_syncers_setting_is_parsed() -> None:
    settings = Settings(connector_syncers="hubspot=acme.sync.hubspot:HubSpotSyncer, ,salesforce = acme.sync.sf:build")

    assert settings.connector_syncers_map() == {
        "hubspot": "acme.sync.hubspot:HubSpotSyncer",
        "salesforce": "acme.sync.sf:build",
    }
    assert Settings(connector_syncers="").connector_syncers_map() == {}


def test_load_connector_syncer_imports_and_calls_factory() -> None:
    syncer = load_connector_syncer(f"{__name__}:StaticSyncer")

    assert isinstance(syncer, StaticSyncer)
    assert syncer.sync("ws-1", SyncMode.full, None) == 7
    with pytest.raises(ValueError):
        load_connector_syncer("acme.sync.hubspot")
