"""
Tests for feature flags (feature_flags.py).
"""

import pytest

from campaign_engine.feature_flags import FeatureFlags


class TestFeatureFlagsBasic:
    """Basic FeatureFlags tests"""

    def test_default_values_exist(self):
        """Engine flags have defaults"""
        for name in ("emotional_state", "sentiment_heuristics", "spintax", "typing_presence", "config_error_alerts"):
            assert name in FeatureFlags.DEFAULTS

    def test_unknown_flag_returns_false(self):
        """Unknown flags are off"""
        assert FeatureFlags().is_enabled("nonexistent_flag_xyz") is False

    def test_properties(self):
        """Typed properties mirror is_enabled"""
        ff = FeatureFlags()
        assert ff.spintax == ff.is_enabled("spintax")
        assert ff.emotional_state == ff.is_enabled("emotional_state")


class TestOverrides:
    """Runtime overrides"""

    def test_override_and_clear(self):
        ff = FeatureFlags()
        ff.set_override("spintax", False)
        assert ff.spintax is False
        ff.clear_override("spintax")
        assert ff.spintax is True

    def test_clear_all(self):
        ff = FeatureFlags()
        ff.set_override("typing_presence", False)
        ff.set_override("spintax", False)
        ff.clear_all_overrides()
        assert ff.get_enabled_flags() >= {"typing_presence", "spintax"}

    def test_env_override(self, monkeypatch):
        """FF_<FLAG> wins over settings"""
        monkeypatch.setenv("FF_TYPING_PRESENCE", "false")
        assert FeatureFlags().typing_presence is False

    def test_reload_drops_overrides(self):
        ff = FeatureFlags()
        ff.set_override("config_error_alerts", False)
        ff.reload()
        assert ff.config_error_alerts is True


class TestGroups:
    """Flag groups"""

    def test_disable_group(self):
        ff = FeatureFlags()
        ff.disable_group("emotion")
        assert ff.emotional_state is False
        assert ff.sentiment_heuristics is False
        assert ff.is_group_enabled("emotion") is False

    @pytest.mark.parametrize("require_all,expected", [(True, False), (False, True)])
    def test_partial_group(self, require_all, expected):
        ff = FeatureFlags()
        ff.enable_group("humanization")
        ff.set_override("typing_presence", False)
        assert ff.is_group_enabled("humanization", require_all=require_all) is expected

    def test_unknown_group(self):
        assert FeatureFlags().is_group_enabled("nope") is False
