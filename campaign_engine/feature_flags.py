"""
Feature flags for the campaign engine.

Gradual rollout of engine behaviours without a deploy.

Usage:
    from campaign_engine.feature_flags import flags

    if flags.emotional_state:
        pad = estimator.observe_text(pad, body)

    if flags.is_enabled("custom_flag"):
        pass
"""

import os
from typing import Dict, List, Set

from campaign_engine.settings import settings


class FeatureFlags:
    """
    Feature flag registry.

    Features:
    - Loaded from settings.yaml (feature_flags section)
    - Environment override via FF_<FLAG>
    - Typed properties for the main flags
    - Runtime overrides for tests
    - Flag groups
    """

    DEFAULTS: Dict[str, bool] = {
        # Emotional state (PAD) tracking and prompt injection
        "emotional_state": True,
        # Lexicon heuristics on inbound text (otherwise only LLM sentiment)
        "sentiment_heuristics": True,

        # Broadcast rendering
        "spintax": True,

        # Typing indicator before each outbound text
        "typing_presence": True,

        # Operator alerts on repeated graph configuration errors
        "config_error_alerts": True,
    }

    GROUPS: Dict[str, List[str]] = {
        "emotion": ["emotional_state", "sentiment_heuristics"],
        "humanization": ["spintax", "typing_presence"],
        "safe": ["spintax", "config_error_alerts"],
    }

    def __init__(self):
        self._flags: Dict[str, bool] = {}
        self._overrides: Dict[str, bool] = {}
        self._load_flags()

    def _load_flags(self) -> None:
        """Load flags from settings and environment"""
        self._flags = self.DEFAULTS.copy()

        settings_flags = settings.get_nested("feature_flags", {})
        if isinstance(settings_flags, dict):
            for key, value in settings_flags.items():
                if isinstance(value, bool):
                    self._flags[key] = value

        # Environment has the highest priority
        for key in self._flags:
            env_value = os.environ.get(f"FF_{key.upper()}")
            if env_value is not None:
                self._flags[key] = env_value.lower() in ("true", "1", "yes", "on")

    def reload(self) -> None:
        """Reload flags from settings"""
        self._overrides.clear()
        self._load_flags()

    def is_enabled(self, flag: str) -> bool:
        """
        Check whether a flag is enabled.

        Args:
            flag: Flag name

        Returns:
            True if enabled
        """
        if flag in self._overrides:
            return self._overrides[flag]
        return self._flags.get(flag, False)

    def set_override(self, flag: str, value: bool) -> None:
        """Set a runtime override (tests, dynamic control)"""
        self._overrides[flag] = value

    def clear_override(self, flag: str) -> None:
        """Remove a runtime override"""
        self._overrides.pop(flag, None)

    def clear_all_overrides(self) -> None:
        """Remove all runtime overrides"""
        self._overrides.clear()

    def get_all_flags(self) -> Dict[str, bool]:
        """All flags with their current values"""
        result = self._flags.copy()
        result.update(self._overrides)
        return result

    def get_enabled_flags(self) -> Set[str]:
        """Set of enabled flags"""
        return {k for k, v in self.get_all_flags().items() if v}

    def is_group_enabled(self, group: str, require_all: bool = False) -> bool:
        """
        Check whether a flag group is enabled.

        Args:
            group: Group name
            require_all: True = every flag must be on, False = at least one
        """
        flags_in_group = self.GROUPS.get(group, [])
        if not flags_in_group:
            return False

        if require_all:
            return all(self.is_enabled(f) for f in flags_in_group)
        return any(self.is_enabled(f) for f in flags_in_group)

    def enable_group(self, group: str) -> None:
        """Enable every flag in a group (via overrides)"""
        for flag in self.GROUPS.get(group, []):
            self.set_override(flag, True)

    def disable_group(self, group: str) -> None:
        """Disable every flag in a group (via overrides)"""
        for flag in self.GROUPS.get(group, []):
            self.set_override(flag, False)

    # =========================================================================
    # Typed properties
    # =========================================================================

    @property
    def emotional_state(self) -> bool:
        """PAD tracking and emotional prompt injection"""
        return self.is_enabled("emotional_state")

    @property
    def sentiment_heuristics(self) -> bool:
        """Lexicon heuristics on inbound text"""
        return self.is_enabled("sentiment_heuristics")

    @property
    def spintax(self) -> bool:
        """Spintax expansion in broadcast templates"""
        return self.is_enabled("spintax")

    @property
    def typing_presence(self) -> bool:
        """Typing indicator before outbound text"""
        return self.is_enabled("typing_presence")

    @property
    def config_error_alerts(self) -> bool:
        """Operator alerts on repeated graph errors"""
        return self.is_enabled("config_error_alerts")


# Singleton
flags = FeatureFlags()
