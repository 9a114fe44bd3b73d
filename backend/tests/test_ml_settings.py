import uuid

import pytest

from ml.settings import DEFAULT_ML_SETTINGS, get_ml_settings, merge_ml_settings, update_ml_settings


class TestMerge:
    def test_defaults_when_nothing_stored(self):
        assert merge_ml_settings(None) == DEFAULT_ML_SETTINGS

    def test_update_overrides_stored_per_key(self):
        merged = merge_ml_settings(
            {"anomalies": {"zscore_threshold": 2.5}},
            {"anomalies": {"enabled": False}},
        )
        assert merged["anomalies"]["zscore_threshold"] == 2.5
        assert merged["anomalies"]["enabled"] is False
        assert merged["anomalies"]["auto_alert"] is True

    def test_unknown_sections_and_keys_ignored(self):
        merged = merge_ml_settings({"forecasting": {"x": 1}, "clustering": {"bogus": 1}})
        assert "forecasting" not in merged
        assert "bogus" not in merged["clustering"]

    def test_defaults_not_mutated(self):
        merge_ml_settings(None, {"clustering": {"default_num_clusters": 9}})
        assert DEFAULT_ML_SETTINGS["clustering"]["default_num_clusters"] != 9


@pytest.mark.asyncio
async def test_update_persists(test_db, org):
    org_id = uuid.UUID(str(org.org_id))
    await update_ml_settings(test_db, org_id, {"recommendations": {"min_confidence": 0.9}})
    settings = await get_ml_settings(test_db, org_id)
    assert settings["recommendations"]["min_confidence"] == 0.9
    assert settings["seasonality"] == DEFAULT_ML_SETTINGS["seasonality"]
