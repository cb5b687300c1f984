"""
Feature Flags

Named switches with environment scoping, per-user overrides and
percentage rollout. Flags persist to a JSON file so toggles survive a
restart.

Evaluation order for is_enabled():
1. User override (feature:user key)
2. Environment restriction ("all" matches every environment)
3. Global enabled switch
4. Rollout percentage (deterministic per user, random without a user)
"""

import json
import logging
import random
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, List

logger = logging.getLogger("feature_flags")


@dataclass
class FeatureFlag:
    """A single feature flag."""
    name: str
    enabled: bool = False
    rollout_percentage: int = 0
    description: str = ""
    environment: List[str] = field(default_factory=lambda: ["all"])
    created_at: str = field(default_factory=lambda: datetime.utcnow().isoformat(timespec="seconds"))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "FeatureFlag":
        environment = data.get("environment", ["all"])
        if isinstance(environment, str):
            environment = [environment]
        return cls(
            name=name,
            enabled=bool(data.get("enabled", False)),
            rollout_percentage=_clamp(int(data.get("rollout_percentage", 0))),
            description=data.get("description", ""),
            environment=list(environment),
            created_at=data.get("created_at") or datetime.utcnow().isoformat(timespec="seconds"),
        )


DEFAULT_FLAGS: Dict[str, Dict[str, Any]] = {
    "ai-task-generation": {
        "enabled": True,
        "rollout_percentage": 100,
        "description": "Break approved requests into tasks with the LLM",
        "environment": ["all"],
    },
    "conversational-pm": {
        "enabled": True,
        "rollout_percentage": 100,
        "description": "Answer free-form chat messages as the PM",
        "environment": ["all"],
    },
    "auto-assignment": {
        "enabled": True,
        "rollout_percentage": 100,
        "description": "Assign backlog tasks to specialist agents on each tick",
        "environment": ["all"],
    },
    "git-automation": {
        "enabled": False,
        "rollout_percentage": 0,
        "description": "Agents commit deliverables to a branch and open a PR",
        "environment": ["all"],
    },
    "weekly-report": {
        "enabled": True,
        "rollout_percentage": 100,
        "description": "Post the Friday weekly report",
        "environment": ["all"],
    },
}


def _clamp(value: int) -> int:
    return min(100, max(0, value))


def string_hash(value: str) -> int:
    """Non-negative 32-bit rolling string hash (h * 31 + c)."""
    h = 0
    for ch in value:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


class FeatureFlags:
    """Feature flag registry with optional JSON persistence."""

    def __init__(
        self,
        flags_file: Optional[Path] = None,
        environment: str = "production",
        rng: Optional[random.Random] = None,
    ):
        self.flags_file = Path(flags_file) if flags_file else None
        self.environment = environment
        self._rng = rng or random.Random()
        self._flags: Dict[str, FeatureFlag] = {}
        self._user_overrides: Dict[str, bool] = {}
        for name, config in DEFAULT_FLAGS.items():
            self._flags[name] = FeatureFlag.from_dict(name, config)
        self.load()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def load(self) -> None:
        if not self.flags_file or not self.flags_file.exists():
            return
        try:
            data = json.loads(self.flags_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load feature flags from {self.flags_file}: {e}")
            return
        self.import_flags(data, persist=False)
        logger.info(f"Loaded {len(self._flags)} feature flags")

    def save(self) -> None:
        if not self.flags_file:
            return
        try:
            self.flags_file.parent.mkdir(parents=True, exist_ok=True)
            self.flags_file.write_text(json.dumps(self.export(), indent=2), encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to save feature flags: {e}")

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def is_enabled(
        self,
        name: str,
        user_id: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> bool:
        """Check whether a feature is on for a user in an environment."""
        if user_id is not None:
            key = f"{name}:{user_id}"
            if key in self._user_overrides:
                return self._user_overrides[key]

        flag = self._flags.get(name)
        if not flag:
            logger.debug(f"Unknown feature flag: {name}")
            return False

        env = environment or self.environment
        if "all" not in flag.environment and env not in flag.environment:
            return False

        if not flag.enabled:
            return False

        return self._in_rollout(name, flag.rollout_percentage, user_id)

    def _in_rollout(self, name: str, percentage: int, user_id: Optional[str]) -> bool:
        if percentage >= 100:
            return True
        if percentage <= 0:
            return False
        if user_id is None:
            return self._rng.random() * 100 < percentage
        return string_hash(f"{name}:{user_id}") % 100 < percentage

    # -------------------------------------------------------------------------
    # Management
    # -------------------------------------------------------------------------

    def enable(
        self,
        name: str,
        rollout_percentage: Optional[int] = None,
        environment: Optional[List[str]] = None,
    ) -> bool:
        flag = self._flags.get(name)
        if not flag:
            logger.warning(f"Cannot enable unknown feature: {name}")
            return False
        flag.enabled = True
        if rollout_percentage is not None:
            flag.rollout_percentage = _clamp(rollout_percentage)
        elif flag.rollout_percentage == 0:
            flag.rollout_percentage = 100
        if environment:
            flag.environment = list(environment)
        self.save()
        logger.info(f"Enabled feature: {name} ({flag.rollout_percentage}%)")
        return True

    def disable(self, name: str) -> bool:
        flag = self._flags.get(name)
        if not flag:
            logger.warning(f"Cannot disable unknown feature: {name}")
            return False
        flag.enabled = False
        self.save()
        logger.info(f"Disabled feature: {name}")
        return True

    def gradual_rollout(self, name: str, target_percentage: int, increment: int = 10) -> bool:
        """Raise rollout by one increment. Returns True once the target is reached."""
        flag = self._flags.get(name)
        if not flag:
            logger.warning(f"Cannot roll out unknown feature: {name}")
            return False
        current = flag.rollout_percentage
        flag.rollout_percentage = _clamp(min(target_percentage, current + increment))
        self.save()
        logger.info(f"Gradual rollout: {name} {current}% -> {flag.rollout_percentage}%")
        return flag.rollout_percentage >= target_percentage

    def set_user_override(self, name: str, user_id: str, enabled: bool) -> None:
        self._user_overrides[f"{name}:{user_id}"] = enabled
        self.save()
        logger.info(f"User override: {name} for {user_id} = {enabled}")

    def remove_user_override(self, name: str, user_id: str) -> None:
        self._user_overrides.pop(f"{name}:{user_id}", None)
        self.save()

    def create_flag(
        self,
        name: str,
        enabled: bool = False,
        rollout_percentage: int = 0,
        description: str = "",
        environment: Optional[List[str]] = None,
    ) -> bool:
        if name in self._flags:
            logger.warning(f"Feature already exists: {name}")
            return False
        self._flags[name] = FeatureFlag(
            name=name,
            enabled=enabled,
            rollout_percentage=_clamp(rollout_percentage),
            description=description,
            environment=list(environment or ["all"]),
        )
        self.save()
        logger.info(f"Created feature flag: {name}")
        return True

    def get_flag(self, name: str) -> Optional[Dict[str, Any]]:
        flag = self._flags.get(name)
        return flag.to_dict() if flag else None

    def get_all_flags(self) -> List[Dict[str, Any]]:
        return [flag.to_dict() for flag in self._flags.values()]

    def emergency_disable_all(self, exceptions: Optional[List[str]] = None) -> None:
        """Kill switch: disable every flag except the named ones."""
        logger.warning("EMERGENCY: Disabling all features")
        keep = set(exceptions or [])
        for name, flag in self._flags.items():
            if name not in keep:
                flag.enabled = False
        self.save()

    def export(self) -> Dict[str, Any]:
        return {
            "flags": {name: flag.to_dict() for name, flag in self._flags.items()},
            "user_overrides": dict(self._user_overrides),
            "exported_at": datetime.utcnow().isoformat(timespec="seconds"),
        }

    def import_flags(self, data: Dict[str, Any], persist: bool = True) -> None:
        for name, config in (data.get("flags") or {}).items():
            self._flags[name] = FeatureFlag.from_dict(name, config)
        for key, value in (data.get("user_overrides") or {}).items():
            self._user_overrides[key] = bool(value)
        if persist:
            self.save()

    def get_stats(self) -> Dict[str, Any]:
        flags = list(self._flags.values())
        return {
            "total": len(flags),
            "enabled": sum(1 for f in flags if f.enabled),
            "disabled": sum(1 for f in flags if not f.enabled),
            "partial_rollout": sum(1 for f in flags if f.enabled and 0 < f.rollout_percentage < 100),
            "user_overrides": len(self._user_overrides),
        }
